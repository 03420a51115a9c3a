from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional


@dataclass(frozen=True)
class HandoffConfig:
    # Public URLs
    public_base_url: Optional[str]  # Used to build the browser URL returned to poll-mode CLIs
    signin_url: str  # External OAuth sign-in entry point (accepts `next`)

    # Browser identity cookie (set by the OAuth collaborator)
    session_secret: Optional[str]  # Required for cookie signing
    browser_session_ttl_seconds: int
    cookie_secure: bool

    # Handoff lifetimes
    pending_ttl_seconds: int  # Loopback-mode pending login
    poll_ttl_seconds: int  # Poll-mode pending login
    session_ttl_seconds: int  # Issued handoff token
    sweep_interval_seconds: float

    # Failed completion/poll attempts per client
    max_failed_attempts: int
    failed_window_seconds: int

    debug_stats: bool


def _env_str(name: str) -> Optional[str]:
    return (os.getenv(name, "") or "").strip() or None


def _env_int(name: str, default: int, *, minimum: int) -> int:
    raw = (os.getenv(name, "") or "").strip()
    try:
        value = int(float(raw)) if raw else default
    except ValueError:
        value = default
    return max(value, minimum)


def _env_flag(name: str) -> Optional[bool]:
    raw = (os.getenv(name, "") or "").strip().lower()
    if raw in ("1", "true", "yes", "on"):
        return True
    if raw in ("0", "false", "no", "off"):
        return False
    return None


@lru_cache(maxsize=1)
def load_handoff_config() -> HandoffConfig:
    """
    Load handoff server configuration from environment variables.

    TTLs are clamped to sane minimums. The sweep interval defaults to a fifth of the
    shortest configured TTL (never below one second).
    """
    public_base_url = _env_str("HANDOFF_PUBLIC_BASE_URL")
    if public_base_url:
        public_base_url = public_base_url.rstrip("/")

    cookie_secure = _env_flag("HANDOFF_COOKIE_SECURE")
    if cookie_secure is None:
        # Default: secure cookies when base URL is https; otherwise allow local dev.
        cookie_secure = (public_base_url or "").startswith("https://")

    pending_ttl = _env_int("HANDOFF_PENDING_TTL_SECONDS", 300, minimum=10)
    poll_ttl = _env_int("HANDOFF_POLL_TTL_SECONDS", 600, minimum=10)
    session_ttl = _env_int("HANDOFF_SESSION_TTL_SECONDS", 900, minimum=60)

    shortest_ttl = min(pending_ttl, poll_ttl, session_ttl)
    sweep_raw = (os.getenv("HANDOFF_SWEEP_INTERVAL_SECONDS", "") or "").strip()
    try:
        sweep_interval = float(sweep_raw) if sweep_raw else shortest_ttl / 5.0
    except ValueError:
        sweep_interval = shortest_ttl / 5.0
    sweep_interval = max(sweep_interval, 1.0)

    return HandoffConfig(
        public_base_url=public_base_url,
        signin_url=_env_str("HANDOFF_SIGNIN_URL") or "/auth/signin",
        session_secret=_env_str("HANDOFF_SESSION_SECRET"),
        browser_session_ttl_seconds=_env_int("HANDOFF_BROWSER_SESSION_TTL_SECONDS", 43200, minimum=60),  # 12h
        cookie_secure=cookie_secure,
        pending_ttl_seconds=pending_ttl,
        poll_ttl_seconds=poll_ttl,
        session_ttl_seconds=session_ttl,
        sweep_interval_seconds=sweep_interval,
        max_failed_attempts=_env_int("HANDOFF_MAX_FAILED_ATTEMPTS", 10, minimum=1),
        failed_window_seconds=_env_int("HANDOFF_FAILED_WINDOW_SECONDS", 300, minimum=1),
        debug_stats=bool(_env_flag("HANDOFF_DEBUG_STATS")),
    )
