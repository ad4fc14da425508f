"""
Command Router — turns incoming Telegram updates into replies.

Commands:
  /start                  register the user, send the welcome text
  /joke [reddit|anekdot]  random joke, optionally from one source
  /stats                  joke and user totals
  /help                   command list
  anything else           usage hint

Replies go onto `outbound-messages` for the delivery consumer. When no
outbox is configured they are sent directly through the chat sender.
"""
from __future__ import annotations

import structlog
from typing import Any, Optional

from channels.base import ChatSender
from database.store_base import BaseJokeStore
from models.schemas import Joke, JokeSource, OutboundMessage, User

logger = structlog.get_logger()


WELCOME_TEXT = (
    "*Welcome to Anek Bot!*\n\n"
    "I'll send you random jokes from Reddit and anekdot.ru.\n\n"
    "Commands:\n"
    "- /joke - Get a random joke\n"
    "- /joke reddit - Get a joke from Reddit\n"
    "- /joke anekdot - Get a joke from anekdot.ru\n"
    "- /stats - Bot statistics\n"
    "- /help - Show this help message"
)

HELP_TEXT = (
    "*Help*\n\n"
    "Commands:\n"
    "- /start - Start the bot\n"
    "- /joke - Get a random joke\n"
    "- /joke reddit - Get a joke from Reddit\n"
    "- /joke anekdot - Get a joke from anekdot.ru\n"
    "- /stats - Show bot statistics\n"
    "- /help - Show this help message"
)

UNKNOWN_SOURCE_TEXT = "Unknown source. Use: /joke, /joke reddit, or /joke anekdot"
NO_JOKES_TEXT = "Sorry, no jokes available right now. Try again later!"
STATS_FAILED_TEXT = "Failed to get statistics"
FALLBACK_TEXT = "Use /joke to get a joke!"


def format_joke(joke: Joke) -> str:
    return f"*Joke*\n\n{joke.content}\n\n{joke.source_label}"


def parse_command(text: str) -> tuple[str, list[str]]:
    """Split "/joke@AnekBot reddit" into ("/joke", ["reddit"])."""
    parts = text.strip().split()
    if not parts or not parts[0].startswith("/"):
        return "", parts
    command = parts[0].split("@", 1)[0].lower()
    return command, parts[1:]


class CommandRouter:
    """Dispatches one update at a time; never raises for a bad update."""

    def __init__(
        self,
        store: BaseJokeStore,
        outbox: Any = None,
        sender: Optional[ChatSender] = None,
        parse_mode: Optional[str] = "Markdown",
    ):
        if outbox is None and sender is None:
            raise ValueError("CommandRouter needs an outbox or a sender")
        self.store = store
        self.outbox = outbox        # anything with publish_outbound(OutboundMessage)
        self.sender = sender
        self.parse_mode = parse_mode
        self._handlers = {
            "/start": self._handle_start,
            "/joke": self._handle_joke,
            "/stats": self._handle_stats,
            "/help": self._handle_help,
        }

    async def handle_update(self, update: dict[str, Any]) -> Optional[str]:
        """Handle a raw Bot API update. Returns the reply text, if any."""
        message = update.get("message")
        if not message or "text" not in message:
            logger.debug("update_ignored", update_id=update.get("update_id"))
            return None

        sender = message.get("from") or {}
        chat_id = (message.get("chat") or {}).get("id", sender.get("id"))
        if chat_id is None:
            return None

        text = message["text"]
        logger.info("incoming_text_message",
                    user_id=sender.get("id"),
                    username=sender.get("username", ""),
                    text=text)

        command, args = parse_command(text)
        handler = self._handlers.get(command)
        if handler is None:
            reply = FALLBACK_TEXT
        else:
            reply = await handler(sender, args)

        await self.reply(chat_id, reply)
        return reply

    async def reply(self, chat_id: int, text: str) -> None:
        """Queue-or-send: publish to the outbox, or send directly when there is none."""
        if self.outbox is not None:
            try:
                await self.outbox.publish_outbound(OutboundMessage(chat_id=chat_id, text=text))
            except Exception as e:
                logger.error("reply_queue_failed", chat_id=chat_id, error=str(e))
            return
        try:
            await self.sender.send(chat_id, text, self.parse_mode)
        except Exception as e:
            logger.error("reply_send_failed", chat_id=chat_id, error=str(e))

    # ── Handlers ──────────────────────────────────────────────

    async def _handle_start(self, sender: dict[str, Any], args: list[str]) -> str:
        if "id" in sender:
            user = User(
                telegram_id=sender["id"],
                username=sender.get("username", ""),
                first_name=sender.get("first_name", ""),
                last_name=sender.get("last_name", ""),
            )
            try:
                await self.store.upsert_user(user)
            except Exception as e:
                logger.error("user_save_failed", telegram_id=user.telegram_id, error=str(e))
        return WELCOME_TEXT

    async def _handle_joke(self, sender: dict[str, Any], args: list[str]) -> str:
        try:
            if args:
                try:
                    source = JokeSource(args[0].lower())
                except ValueError:
                    return UNKNOWN_SOURCE_TEXT
                joke = await self.store.get_random_by_source(source)
            else:
                joke = await self.store.get_random()
        except Exception as e:
            logger.error("joke_lookup_failed", error=str(e))
            return NO_JOKES_TEXT

        if joke is None:
            return NO_JOKES_TEXT
        return format_joke(joke)

    async def _handle_stats(self, sender: dict[str, Any], args: list[str]) -> str:
        try:
            total = await self.store.count()
        except Exception as e:
            logger.error("stats_lookup_failed", error=str(e))
            return STATS_FAILED_TEXT

        counts = {}
        for source in JokeSource:
            try:
                counts[source] = await self.store.count_by_source(source)
            except Exception as e:
                logger.warning("stats_source_count_failed", source=source.value, error=str(e))
                counts[source] = 0
        try:
            users = await self.store.count_users()
        except Exception as e:
            logger.warning("stats_user_count_failed", error=str(e))
            users = 0

        return (
            "*Bot Statistics*\n\n"
            f"Total jokes: {total}\n"
            f"Reddit jokes: {counts[JokeSource.REDDIT]}\n"
            f"Anekdot jokes: {counts[JokeSource.ANEKDOT]}\n"
            f"Total users: {users}"
        )

    async def _handle_help(self, sender: dict[str, Any], args: list[str]) -> str:
        return HELP_TEXT
