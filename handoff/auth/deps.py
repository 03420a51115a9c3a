from __future__ import annotations

from typing import Optional

from fastapi import Request

from handoff.auth.config import load_handoff_config
from handoff.auth.models import Identity


def authenticate_browser(request: Request) -> Optional[Identity]:
    """
    Return the verified identity behind a browser request, if any.

    Only the signed session cookie counts; a missing secret fails closed.
    """
    from handoff.auth.session import decode_session, session_cookie_name

    cfg = load_handoff_config()
    return decode_session(cfg, request.cookies.get(session_cookie_name(cfg)))


def bearer_token(request: Request) -> Optional[str]:
    """Extract `Authorization: Bearer <token>`; anything else yields None."""
    header = (request.headers.get("authorization") or "").strip()
    scheme, _, value = header.partition(" ")
    if scheme.lower() != "bearer":
        return None
    token = value.strip()
    return token or None
