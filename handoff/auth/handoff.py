"""
Handoff service: the two delivery strategies on top of the registry and session store.

Loopback redirect:
  start_loopback(state, redirect_uri) -> registered
  complete_loopback(state, identity)  -> URL to redirect the browser to (token + state)

Poll handoff:
  start_poll()                                  -> loginId / browserToken / pollToken
  complete_poll(loginId, browserToken, identity) -> pending -> complete
  poll_status(loginId, pollToken)               -> pending | complete (once) | expired
"""

from __future__ import annotations

import logging
import os
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from handoff.auth.config import HandoffConfig, load_handoff_config
from handoff.auth.errors import HandoffError, NotFoundOrExpired, ValidationError
from handoff.auth.models import Identity, IssuedSession, ValidatedRedirect
from handoff.auth.rate_limit import RateLimiter
from handoff.auth.redirect import append_query, validate_redirect
from handoff.auth.registry import LoginRegistry
from handoff.auth.sweeper import ExpirySweeper
from handoff.auth.tokens import SessionStore, TokenMinter
from handoff.auth.util import constant_time_equals, is_urlsafe_id, random_token, short_id

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PollLogin:
    login_id: str
    browser_token: str
    poll_token: str
    expires_at: float


@dataclass(frozen=True)
class PollResult:
    status: str  # pending|complete|expired
    token: Optional[str] = None
    identity: Optional[Identity] = None

    @classmethod
    def expired(cls) -> "PollResult":
        return cls(status="expired")


class HandoffService:
    def __init__(
        self,
        cfg: HandoffConfig,
        *,
        clock: Callable[[], float] = time.time,
        random_bytes: Callable[[int], bytes] = os.urandom,
        minter: Optional[TokenMinter] = None,
    ):
        self.cfg = cfg
        self._random_bytes = random_bytes
        self.registry = LoginRegistry(clock=clock)
        self.sessions = SessionStore(minter or TokenMinter(random_bytes=random_bytes), cfg.session_ttl_seconds, clock)
        self.limiter = RateLimiter(cfg.max_failed_attempts, cfg.failed_window_seconds, clock=clock)
        self.sweeper = ExpirySweeper([self.registry, self.sessions], cfg.sweep_interval_seconds)

    # ---- loopback redirect ----

    def start_loopback(self, state: str, redirect_uri: str) -> ValidatedRedirect:
        """
        Validate and register a loopback login. Nothing is stored if either input is bad.

        Raises:
            ValidationError / InvalidRedirect: malformed state or redirect target
            DuplicateCorrelationId: state already in use
        """
        if not is_urlsafe_id(state):
            raise ValidationError("state must be 1-256 url-safe characters")
        target = validate_redirect(redirect_uri)
        self.registry.register(state, target.url, self.cfg.pending_ttl_seconds, delivery_mode="loopback")
        logger.info("Loopback login %s registered for port %d", short_id(state), target.port)
        return target

    def complete_loopback(self, state: str, identity: Identity) -> str:
        """
        Consume the pending login, mint a token, and return the callback URL carrying it.

        Raises:
            NotFoundOrExpired / AlreadyConsumed / InvalidTransition
        """
        if not is_urlsafe_id(state):
            raise NotFoundOrExpired()
        entry = self.registry.try_transition(
            state, "pending", "consumed", guard=lambda e: e.delivery_mode == "loopback", identity=identity
        )
        # Stored targets were validated at registration; re-check before handing out a token.
        target = validate_redirect(entry.delivery_target)
        session = self.sessions.mint(identity)
        logger.info("Loopback login %s completed for %s", short_id(state), identity.login)
        return append_query(target, [("token", session.token), ("state", state)])

    # ---- poll handoff ----

    def start_poll(self) -> PollLogin:
        login_id = random_token(16, random_bytes=self._random_bytes)
        browser_token = random_token(32, random_bytes=self._random_bytes)
        poll_token = random_token(32, random_bytes=self._random_bytes)
        entry = self.registry.register(
            login_id, browser_token, self.cfg.poll_ttl_seconds, delivery_mode="poll", poll_token=poll_token
        )
        logger.info("Poll login %s started", short_id(login_id))
        return PollLogin(
            login_id=login_id, browser_token=browser_token, poll_token=poll_token, expires_at=entry.expires_at
        )

    def complete_poll(self, login_id: str, browser_token: str, identity: Identity) -> None:
        """
        Bind a minted token to a pending poll login.

        Every failure (unknown id, wrong browser token, expired, repeated completion) is
        raised as `NotFoundOrExpired` so the caller cannot learn which ids exist.
        """

        def _matches(e) -> bool:
            return e.delivery_mode == "poll" and constant_time_equals(browser_token, e.delivery_target)

        if not is_urlsafe_id(login_id) or not is_urlsafe_id(browser_token):
            raise NotFoundOrExpired()
        current = self.registry.get(login_id)
        if current is None or current.status != "pending" or not _matches(current):
            raise NotFoundOrExpired()

        session = self.sessions.mint(identity)
        try:
            self.registry.try_transition(
                login_id, "pending", "complete", guard=_matches, session_token=session.token, identity=identity
            )
        except HandoffError:
            # Lost a race against another completion or expiry; the token must not linger.
            self.sessions.revoke(session.token)
            raise NotFoundOrExpired() from None
        logger.info("Poll login %s completed for %s", short_id(login_id), identity.login)

    def poll_status(self, login_id: str, poll_token: str) -> PollResult:
        """
        Report the state of a poll login to the CLI.

        The first call after completion atomically consumes the entry and returns the
        token; later calls, wrong poll tokens and unknown ids all read as expired.
        """

        def _matches(e) -> bool:
            return e.delivery_mode == "poll" and constant_time_equals(poll_token, e.poll_token)

        if not is_urlsafe_id(login_id) or not is_urlsafe_id(poll_token):
            return PollResult.expired()
        current = self.registry.get(login_id)
        if current is None or not _matches(current):
            return PollResult.expired()
        if current.status == "pending":
            return PollResult(status="pending")
        if current.status != "complete":
            return PollResult.expired()

        try:
            entry = self.registry.try_transition(login_id, "complete", "consumed", guard=_matches)
        except HandoffError:
            return PollResult.expired()
        logger.info("Poll login %s delivered", short_id(login_id))
        return PollResult(status="complete", token=entry.session_token, identity=entry.identity)

    # ---- issued sessions ----

    def lookup_session(self, token: Optional[str]) -> Optional[IssuedSession]:
        return self.sessions.lookup(token)

    def revoke_session(self, token: Optional[str]) -> bool:
        return self.sessions.revoke(token)

    def stats(self) -> Dict[str, int]:
        out = {f"logins_{k}": v for k, v in self.registry.stats().items()}
        out["sessions"] = len(self.sessions)
        return out


_service: Optional[HandoffService] = None
_service_lock = threading.Lock()


def get_handoff_service() -> HandoffService:
    """Process-wide service built from the environment on first use."""
    global _service
    with _service_lock:
        if _service is None:
            _service = HandoffService(load_handoff_config())
        return _service


def set_handoff_service(service: Optional[HandoffService]) -> Optional[HandoffService]:
    """Swap the process-wide service (tests, embedding). Returns the previous one."""
    global _service
    with _service_lock:
        previous, _service = _service, service
        return previous
