"""
Bearer-token gate backed by a flat file.

The file holds one token per line; blank lines and ``#`` comments are ignored.
It is re-read whenever its modification time changes, and the in-memory set is
replaced as a whole so concurrent readers only ever see a complete set.
"""
import asyncio
import logging
import os
from pathlib import Path
from typing import FrozenSet, Optional

from .errors import AuthForbiddenError, AuthMissingError, AuthUnavailableError

logger = logging.getLogger(__name__)

BEARER_PREFIX = "Bearer "


def parse_tokens(content: str) -> FrozenSet[str]:
    tokens = (line.strip() for line in content.split("\n"))
    return frozenset(t for t in tokens if t and not t.startswith("#"))


def token_prefix(token: str) -> str:
    return token[:8] + "..."


class TokenAuthenticator:
    def __init__(self):
        self.path: Optional[Path] = None
        self.tokens: FrozenSet[str] = frozenset()
        self.last_mtime: Optional[int] = None

    @property
    def enabled(self) -> bool:
        return self.path is not None

    def initialize(self, path: Optional[str]) -> None:
        if not path:
            logger.info("[AUTH] No token file specified - authentication disabled")
            return

        resolved = Path(path).resolve()
        if not resolved.exists():
            logger.warning("[AUTH] Token file not found: %s - authentication disabled", resolved)
            return

        self.path = resolved
        self.reload()
        logger.info("[AUTH] Authentication enabled with %d token(s)", len(self.tokens))

    def reload(self) -> None:
        """Re-read the token file if it changed since the last load."""
        try:
            mtime = os.stat(self.path).st_mtime_ns
            if self.last_mtime is not None and mtime == self.last_mtime:
                return
            content = self.path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            logger.error("[AUTH] Error loading tokens: %s", e)
            # Fail closed until a readable file shows up again.
            self.tokens = frozenset()
            self.last_mtime = None
            return

        self.tokens = parse_tokens(content)
        self.last_mtime = mtime
        logger.info("[AUTH] Loaded %d token(s) from %s", len(self.tokens), self.path)

    def check(self, authorization: Optional[str]) -> None:
        """Raise an ``AuthError`` unless ``authorization`` carries a known token."""
        if not self.enabled:
            return

        self.reload()
        self._verify(authorization)

    def _verify(self, authorization: Optional[str]) -> None:
        tokens = self.tokens

        if not tokens:
            logger.warning("[AUTH] No tokens configured - denying access")
            raise AuthUnavailableError("Authentication is enabled but no tokens are configured")

        if not authorization:
            logger.warning("[AUTH] Missing Authorization header")
            raise AuthMissingError("Missing Authorization header")

        token = authorization[len(BEARER_PREFIX):] if authorization.startswith(BEARER_PREFIX) else authorization

        if token not in tokens:
            logger.warning("[AUTH] Invalid token (prefix %s)", token_prefix(token))
            raise AuthForbiddenError("Invalid authentication token")

        logger.debug("[AUTH] Token validated successfully")

    async def authenticate(self, authorization: Optional[str]) -> None:
        if not self.enabled:
            return
        # stat/read happen off the event loop
        await asyncio.to_thread(self.reload)
        self._verify(authorization)
