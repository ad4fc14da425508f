"""
Core data models for the Anek Bot pipeline.
These are the universal types shared across all modules.

Wire formats (JSON, one object per queue message):
  jokes              {"content", "source", "source_url", "hash"}
  outbound-messages  {"chat_id", "text"}
"""
from __future__ import annotations

import re
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

INT64_MIN = -(2 ** 63)
INT64_MAX = 2 ** 63 - 1

_HEX64 = re.compile(r"^[0-9a-f]{64}$")


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class JokeSource(str, Enum):
    REDDIT = "reddit"
    ANEKDOT = "anekdot"


# ──────────────────────────────────────────────────────────────
#  Queue payloads
# ──────────────────────────────────────────────────────────────

class JokeCandidate(BaseModel):
    """A scraped joke on its way to the store. Transient."""
    model_config = ConfigDict(populate_by_name=True)

    content: str
    source: JokeSource
    source_url: str = ""
    content_hash: str = Field(alias="hash")      # sha256 hex of content bytes

    @field_validator("content_hash")
    @classmethod
    def _check_hash(cls, value: str) -> str:
        if not _HEX64.match(value):
            raise ValueError("hash must be 64 lowercase hex characters")
        return value

    def to_wire(self) -> dict:
        return {
            "content": self.content,
            "source": self.source.value,
            "source_url": self.source_url,
            "hash": self.content_hash,
        }


class OutboundMessage(BaseModel):
    """A chat reply waiting for delivery."""
    chat_id: int = Field(strict=True, ge=INT64_MIN, le=INT64_MAX)
    text: str

    def to_wire(self) -> dict:
        return {"chat_id": self.chat_id, "text": self.text}


# ──────────────────────────────────────────────────────────────
#  Persisted entities (owned by the store)
# ──────────────────────────────────────────────────────────────

class Joke(BaseModel):
    id: int
    content: str
    source: JokeSource
    source_url: str = ""
    content_hash: str
    created_at: Optional[datetime] = None
    used_count: int = 0

    @property
    def source_label(self) -> str:
        return f"[{self.source.value}]"


class User(BaseModel):
    """A chat user who has talked to the bot."""
    telegram_id: int
    username: str = ""
    first_name: str = ""
    last_name: str = ""
    created_at: Optional[datetime] = None
    last_interaction: Optional[datetime] = None
