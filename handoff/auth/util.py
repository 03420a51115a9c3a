from __future__ import annotations

import base64
import hmac
import os
import re
from typing import Callable, Optional

_URLSAFE_ID_RE = re.compile(r"[A-Za-z0-9_\-]{1,256}")


def b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def random_token(nbytes: int = 32, *, random_bytes: Callable[[int], bytes] = os.urandom) -> str:
    return b64url(random_bytes(nbytes))


def constant_time_equals(supplied: Optional[str], expected: Optional[str]) -> bool:
    """
    Compare a caller-supplied secret against a stored one without leaking timing.

    Missing values never match, not even each other.
    """
    if not supplied or not expected:
        return False
    return hmac.compare_digest(supplied.encode("utf-8"), expected.encode("utf-8"))


def is_urlsafe_id(value: Optional[str]) -> bool:
    """Correlation ids and handoff secrets are url-safe base64 / uuid-ish strings."""
    return bool(value) and _URLSAFE_ID_RE.fullmatch(value or "") is not None


def short_id(value: Optional[str]) -> str:
    """Log-safe prefix of an id; never log whole secrets."""
    v = value or ""
    return (v[:6] + "…") if len(v) > 6 else v


def sanitize_next_path(next_path: str | None) -> str:
    """
    Prevent open-redirects: allow only relative paths like `/login/continue?...`.
    """
    p = (next_path or "").strip()
    if not p:
        return "/"
    if not p.startswith("/"):
        return "/"
    # Disallow scheme-relative: `//evil.com` (and the backslash variant browsers normalise).
    if p.startswith("//") or p.startswith("/\\"):
        return "/"
    p = p.replace("\r", "").replace("\n", "")
    return p or "/"
