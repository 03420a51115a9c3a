from __future__ import annotations

import logging
import os
import threading
import time
from typing import Callable, Dict, List, Optional

from handoff.auth.errors import InternalError, ValidationError
from handoff.auth.models import Identity, IssuedSession
from handoff.auth.util import random_token

logger = logging.getLogger(__name__)

MIN_TOKEN_BYTES = 32  # 256 bits


class TokenMinter:
    """
    Generates opaque bearer tokens.

    Tokens are url-safe base64 (no padding) of at least 32 random bytes, so they can be
    placed unescaped in a query string.
    """

    def __init__(self, random_bytes: Callable[[int], bytes] = os.urandom, nbytes: int = MIN_TOKEN_BYTES):
        if nbytes < MIN_TOKEN_BYTES:
            raise ValidationError(f"token entropy must be at least {MIN_TOKEN_BYTES} bytes")
        self._random_bytes = random_bytes
        self._nbytes = nbytes

    def mint(self) -> str:
        return random_token(self._nbytes, random_bytes=self._random_bytes)


class SessionStore:
    """
    Issued handoff tokens with a short TTL.

    Lookups are O(1) dict hits keyed by the token itself; the token is a random map key,
    so no constant-time comparison is needed here.
    """

    # Collisions need a broken random source; give up quickly instead of looping.
    _MINT_ATTEMPTS = 3

    def __init__(self, minter: TokenMinter, ttl: float, clock: Callable[[], float] = time.time):
        if ttl <= 0:
            raise ValidationError("session ttl must be positive")
        self._minter = minter
        self._ttl = ttl
        self._clock = clock
        self._sessions: Dict[str, IssuedSession] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def mint(self, identity: Identity) -> IssuedSession:
        """Mint a token for a verified identity and store it."""
        if not identity.user_id:
            raise ValidationError("identity must carry a user id")

        for _ in range(self._MINT_ATTEMPTS):
            token = self._minter.mint()
            with self._lock:
                if token in self._sessions:
                    continue
                now = self._clock()
                session = IssuedSession(token=token, identity=identity, created_at=now, expires_at=now + self._ttl)
                self._sessions[token] = session
            logger.info("Issued handoff session for user %s (ttl=%ss)", identity.login or identity.user_id, self._ttl)
            return session
        raise InternalError("could not mint a unique token")

    def lookup(self, token: Optional[str]) -> Optional[IssuedSession]:
        if not token:
            return None
        with self._lock:
            session = self._sessions.get(token)
            if session is None:
                return None
            if session.is_expired(self._clock()):
                del self._sessions[token]
                return None
            return session

    def revoke(self, token: Optional[str]) -> bool:
        """Delete a token immediately. Returns True if it existed."""
        if not token:
            return False
        with self._lock:
            return self._sessions.pop(token, None) is not None

    def revoke_identity(self, user_id: str) -> int:
        """Revoke every session bound to `user_id` (e.g. on detected compromise)."""
        with self._lock:
            doomed: List[str] = [t for t, s in self._sessions.items() if s.identity.user_id == user_id]
            for token in doomed:
                del self._sessions[token]
        if doomed:
            logger.info("Revoked %d handoff sessions for user id %s", len(doomed), user_id)
        return len(doomed)

    def sweep(self) -> int:
        with self._lock:
            now = self._clock()
            expired = [t for t, s in self._sessions.items() if s.is_expired(now)]
            for token in expired:
                del self._sessions[token]
        if expired:
            logger.debug("Swept %d expired handoff sessions", len(expired))
        return len(expired)
