"""
Joke fetchers — pull-style scrapers that turn a source page into candidates.

Each fetch() call returns a finite (possibly empty) list of JokeCandidate
with the content hash already computed. Fetchers never touch the store;
the scheduler publishes what they return onto the `jokes` topic.

Sources:
  RedditFetcher   — /r/<sub>/hot.json, self-post text
  AnekdotFetcher  — anekdot.ru random page, <div class="text"> blocks
"""
from __future__ import annotations

import html
import re
import structlog
from abc import ABC, abstractmethod
from typing import Any, Optional

import httpx

from ingestion.fingerprint import fingerprint_text
from models.schemas import JokeCandidate, JokeSource

logger = structlog.get_logger()

USER_AGENT = "anek-bot/1.0"
# Size limits are in UTF-8 bytes
MAX_JOKE_BYTES = 3000
MIN_ANEKDOT_BYTES = 10


def utf8_len(text: str) -> int:
    return len(text.encode("utf-8"))


def truncate_utf8(text: str, max_bytes: int) -> str:
    """Cut to at most `max_bytes` encoded bytes without splitting a character."""
    encoded = text.encode("utf-8")
    if len(encoded) <= max_bytes:
        return text
    return encoded[:max_bytes].decode("utf-8", errors="ignore")


class FetchError(Exception):
    """A source could not be fetched or parsed this cycle."""

    def __init__(self, message: str, source: str = ""):
        self.source = source
        super().__init__(message)


class JokeFetcher(ABC):
    """Base for all joke sources."""

    source: JokeSource

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None,
                 timeout: float = 30.0):
        self._transport = transport
        self._timeout = timeout

    @property
    def name(self) -> str:
        return self.source.value

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=httpx.Timeout(self._timeout, connect=10.0),
            headers={"User-Agent": USER_AGENT},
            follow_redirects=True,
            transport=self._transport,
        )

    def _candidate(self, content: str, source_url: str) -> JokeCandidate:
        return JokeCandidate(
            content=content,
            source=self.source,
            source_url=source_url,
            content_hash=fingerprint_text(content),
        )

    @abstractmethod
    async def fetch(self) -> list[JokeCandidate]:
        ...


class RedditFetcher(JokeFetcher):
    """Reads self-post text from the hot listing of each configured subreddit."""

    source = JokeSource.REDDIT
    BASE_URL = "https://www.reddit.com"

    def __init__(self, subreddits: list[str], limit: int = 25, **kwargs):
        super().__init__(**kwargs)
        self.subreddits = list(subreddits)
        self.limit = limit

    async def fetch(self) -> list[JokeCandidate]:
        jokes: list[JokeCandidate] = []
        async with self._client() as client:
            for subreddit in self.subreddits:
                jokes.extend(await self._fetch_subreddit(client, subreddit))
        logger.info("reddit_fetch_complete", subreddits=len(self.subreddits), jokes=len(jokes))
        return jokes

    async def _fetch_subreddit(self, client: httpx.AsyncClient, subreddit: str) -> list[JokeCandidate]:
        url = f"{self.BASE_URL}/r/{subreddit}/hot.json"
        try:
            resp = await client.get(url, params={"limit": self.limit})
        except httpx.HTTPError as e:
            logger.warning("reddit_fetch_failed", subreddit=subreddit, error=str(e))
            return []
        if resp.status_code != 200:
            logger.warning("reddit_bad_status", subreddit=subreddit, status=resp.status_code)
            return []

        try:
            posts = resp.json()["data"]["children"]
        except (ValueError, KeyError, TypeError) as e:
            logger.warning("reddit_parse_failed", subreddit=subreddit, error=str(e))
            return []

        jokes = []
        for post in posts:
            data: dict[str, Any] = post.get("data") or {}
            content = (data.get("selftext") or "").strip()
            if not content:
                continue
            content = truncate_utf8(content, MAX_JOKE_BYTES)
            jokes.append(self._candidate(content, f"https://reddit.com{data.get('permalink', '')}"))
        return jokes


_TEXT_BLOCK = re.compile(r'<div class="text">([\s\S]*?)</div>')
_TAG = re.compile(r"<[^>]*>")


def clean_html(text: str) -> str:
    """Drop tags and decode entities; non-breaking spaces become plain spaces."""
    return html.unescape(_TAG.sub("", text)).replace("\xa0", " ")


def extract_anekdots(page: str, limit: int) -> list[str]:
    """Pull joke texts out of an anekdot.ru page."""
    texts = []
    for match in _TEXT_BLOCK.finditer(page):
        if len(texts) >= limit:
            break
        text = clean_html(match.group(1)).strip()
        if MIN_ANEKDOT_BYTES <= utf8_len(text) <= MAX_JOKE_BYTES:
            texts.append(text)
    return texts


class AnekdotFetcher(JokeFetcher):
    """Scrapes the random-anekdot page of anekdot.ru."""

    source = JokeSource.ANEKDOT
    PAGE_URL = "https://anekdot.ru/random/anekdot/"
    SOURCE_URL = "https://anekdot.ru"

    def __init__(self, limit: int = 20, **kwargs):
        super().__init__(**kwargs)
        self.limit = limit

    async def fetch(self) -> list[JokeCandidate]:
        async with self._client() as client:
            try:
                resp = await client.get(self.PAGE_URL)
            except httpx.HTTPError as e:
                raise FetchError(f"anekdot.ru request failed: {e}", self.name) from e
        if resp.status_code != 200:
            raise FetchError(f"anekdot.ru returned status {resp.status_code}", self.name)

        jokes = [self._candidate(text, self.SOURCE_URL)
                 for text in extract_anekdots(resp.text, self.limit)]
        logger.info("anekdot_fetch_complete", jokes=len(jokes))
        return jokes
