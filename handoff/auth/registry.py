from __future__ import annotations

import logging
import threading
import time
from dataclasses import replace
from typing import Any, Callable, Dict, List, Optional

from handoff.auth.errors import (
    AlreadyConsumed,
    DuplicateCorrelationId,
    InvalidTransition,
    NotFoundOrExpired,
    ValidationError,
)
from handoff.auth.models import DeliveryMode, LoginStatus, PendingLogin
from handoff.auth.util import short_id

logger = logging.getLogger(__name__)

# Entries examined per write for amortized sweep-on-access.
_LAZY_SWEEP_BATCH = 8
# Keys deleted per lock acquisition during a full sweep.
_SWEEP_CHUNK = 256


class LoginRegistry:
    """
    In-memory registry of pending CLI logins, keyed by correlation id.

    Every check-and-mutate runs under a single lock acquisition, so of several callers
    racing on the same id exactly one observes a given transition. Consumed entries stay
    behind as inert tombstones (secrets cleared) until their original expiry, which lets a
    replay be told `AlreadyConsumed` instead of silently re-registering.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._entries: Dict[str, PendingLogin] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def register(
        self,
        correlation_id: str,
        delivery_target: str,
        ttl: float,
        *,
        delivery_mode: DeliveryMode = "loopback",
        poll_token: Optional[str] = None,
    ) -> PendingLogin:
        """
        Store a new pending login.

        Raises:
            ValidationError: empty id/target or non-positive TTL
            DuplicateCorrelationId: a live entry (pending, complete or tombstone) exists
        """
        if not correlation_id:
            raise ValidationError("correlation id is required")
        if not delivery_target:
            raise ValidationError("delivery target is required")
        if ttl <= 0:
            raise ValidationError("ttl must be positive")

        with self._lock:
            now = self._clock()
            self._lazy_sweep_locked(now)
            existing = self._entries.get(correlation_id)
            if existing is not None and not existing.is_expired(now):
                raise DuplicateCorrelationId("correlation id already registered")

            entry = PendingLogin(
                correlation_id=correlation_id,
                created_at=now,
                expires_at=now + ttl,
                delivery_mode=delivery_mode,
                delivery_target=delivery_target,
                poll_token=poll_token,
            )
            self._entries[correlation_id] = entry
            logger.debug("Registered %s login %s (ttl=%ss)", delivery_mode, short_id(correlation_id), ttl)
            return replace(entry)

    def try_transition(
        self,
        correlation_id: str,
        /,
        expected_from: LoginStatus,
        to: LoginStatus,
        *,
        guard: Optional[Callable[[PendingLogin], bool]] = None,
        **updates: Any,
    ) -> PendingLogin:
        """
        Atomically move an entry from `expected_from` to `to`.

        `guard` runs under the lock against the live entry (e.g. a constant-time secret
        check); a failing guard is reported as `NotFoundOrExpired` so callers cannot tell
        a wrong secret from a missing id. `updates` are applied to the entry together with
        the status change.

        Returns a snapshot of the entry after the transition. When `to == "consumed"` the
        snapshot still carries the delivery data, but the stored tombstone does not.

        Raises:
            NotFoundOrExpired: unknown id, expired entry, or failed guard
            AlreadyConsumed: the entry was consumed earlier
            InvalidTransition: the entry is in a different state than `expected_from`
        """
        with self._lock:
            now = self._clock()
            entry = self._entries.get(correlation_id)
            if entry is None:
                raise NotFoundOrExpired()
            if entry.is_expired(now):
                del self._entries[correlation_id]
                raise NotFoundOrExpired()
            if guard is not None and not guard(entry):
                raise NotFoundOrExpired()
            if entry.status == "consumed":
                raise AlreadyConsumed()
            if entry.status != expected_from:
                raise InvalidTransition(f"expected {expected_from}, found {entry.status}")

            bad = [k for k in updates if not hasattr(entry, k) or k in ("correlation_id", "created_at", "status")]
            if bad:
                raise ValidationError(f"cannot update field(s) {', '.join(sorted(bad))}")
            for key, value in updates.items():
                setattr(entry, key, value)
            entry.status = to
            snapshot = replace(entry)

            if to == "consumed":
                entry.delivery_target = ""
                entry.poll_token = None
                entry.session_token = None
                entry.identity = None

            logger.debug("Login %s: %s -> %s", short_id(correlation_id), expected_from, to)
            return snapshot

    def consume(self, correlation_id: str) -> PendingLogin:
        """
        One-time redemption of a pending login (loopback delivery).

        Returns the entry as registered, including its delivery target.
        """
        return self.try_transition(correlation_id, "pending", "consumed")

    def get(self, correlation_id: str) -> Optional[PendingLogin]:
        """Return a copy of a live entry, or None. Expired entries are dropped on access."""
        with self._lock:
            entry = self._entries.get(correlation_id)
            if entry is None:
                return None
            if entry.is_expired(self._clock()):
                del self._entries[correlation_id]
                return None
            return replace(entry)

    def sweep(self) -> int:
        """
        Purge every entry past its expiry. Returns the number removed.

        Candidates are collected in one pass and deleted in chunks, re-checking expiry,
        so concurrent handlers are never blocked for a whole-store rewrite.
        """
        with self._lock:
            now = self._clock()
            candidates: List[str] = [k for k, e in self._entries.items() if e.is_expired(now)]

        removed = 0
        for i in range(0, len(candidates), _SWEEP_CHUNK):
            with self._lock:
                now = self._clock()
                for key in candidates[i : i + _SWEEP_CHUNK]:
                    entry = self._entries.get(key)
                    if entry is not None and entry.is_expired(now):
                        del self._entries[key]
                        removed += 1
        if removed:
            logger.debug("Swept %d expired pending logins", removed)
        return removed

    def stats(self) -> Dict[str, int]:
        with self._lock:
            now = self._clock()
            live = [e for e in self._entries.values() if not e.is_expired(now)]
        return {
            "total": len(live),
            "pending": sum(1 for e in live if e.status == "pending"),
            "complete": sum(1 for e in live if e.status == "complete"),
            "consumed": sum(1 for e in live if e.status == "consumed"),
        }

    def _lazy_sweep_locked(self, now: float) -> None:
        # Oldest registrations first (dicts keep insertion order).
        stale = []
        for i, (key, entry) in enumerate(self._entries.items()):
            if i >= _LAZY_SWEEP_BATCH:
                break
            if entry.is_expired(now):
                stale.append(key)
        for key in stale:
            del self._entries[key]
