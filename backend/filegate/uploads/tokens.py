"""In-memory upload token store with per-token inactivity timers.

Tokens bridge a WebSocket session to a single HTTP upload request. They are
NEVER written to disk and live for the process lifetime only.

Every token owns one ``asyncio.TimerHandle``. ``ping`` replaces the handle
with a fresh one, ``consume`` pops the entry and cancels it, and the handle's
callback deletes the entry when it fires. All of this runs on the event loop,
so each mutation is atomic per token without a lock.
"""
from __future__ import annotations

import asyncio
import logging
import secrets
from dataclasses import dataclass
from typing import Dict, Optional

logger = logging.getLogger(__name__)

# Default inactivity window for an issued token
UPLOAD_TOKEN_TTL_SECONDS = 60.0


@dataclass
class UploadToken:
    token: str
    owner: str
    timer: asyncio.TimerHandle


class TokenStore:
    """Single-writer store exposing only issue / ping / consume."""

    def __init__(self, ttl_seconds: float = UPLOAD_TOKEN_TTL_SECONDS) -> None:
        self._tokens: Dict[str, UploadToken] = {}
        self._ttl = ttl_seconds

    @property
    def ttl_seconds(self) -> float:
        return self._ttl

    def configure(self, ttl_seconds: float) -> None:
        """Change the TTL used for tokens scheduled from now on."""
        self._ttl = ttl_seconds

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def issue(self, owner: str) -> str:
        """Register a fresh token for *owner* and return it."""
        token = secrets.token_urlsafe(16)
        self._tokens[token] = UploadToken(
            token=token,
            owner=owner,
            timer=self._schedule_expiry(token),
        )
        logger.debug("Upload token issued for %s (TTL=%ss)", owner, self._ttl)
        return token

    def ping(self, token: object) -> None:
        """Restart the inactivity timer of *token*; no-op when unknown."""
        if not isinstance(token, str):
            return

        entry = self._tokens.get(token)
        if entry is None:
            return

        entry.timer.cancel()
        entry.timer = self._schedule_expiry(token)

    def consume(self, token: object) -> Optional[str]:
        """Remove *token* and return its owner, or None if it is not live."""
        if not isinstance(token, str):
            return None

        entry = self._tokens.pop(token, None)
        if entry is None:
            return None

        entry.timer.cancel()
        return entry.owner

    def clear(self) -> None:
        """Cancel every timer and drop all tokens."""
        for entry in self._tokens.values():
            entry.timer.cancel()
        self._tokens.clear()

    def __len__(self) -> int:
        return len(self._tokens)

    def __contains__(self, token: object) -> bool:
        return token in self._tokens

    # ------------------------------------------------------------------
    # Expiry
    # ------------------------------------------------------------------

    def _schedule_expiry(self, token: str) -> asyncio.TimerHandle:
        loop = asyncio.get_running_loop()
        return loop.call_later(self._ttl, self._expire, token)

    def _expire(self, token: str) -> None:
        if self._tokens.pop(token, None) is not None:
            logger.debug("Upload token expired")


# Process-wide store shared by the session and upload routers
token_store = TokenStore()


def get_token_store() -> TokenStore:
    return token_store
