"""Content fingerprinting for dedup and idempotency."""
from __future__ import annotations

import hashlib

FINGERPRINT_LENGTH = 64


def fingerprint(content: bytes) -> str:
    """SHA-256 hex digest of the exact bytes, no normalization."""
    return hashlib.sha256(content).hexdigest()


def fingerprint_text(content: str) -> str:
    return fingerprint(content.encode("utf-8"))
