"""
Signed browser identity cookie.

The OAuth collaborator sets this cookie after a successful sign-in; the handoff
endpoints only read it to learn which verified identity is completing a login.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

from itsdangerous import BadSignature, URLSafeTimedSerializer

from handoff.auth.config import HandoffConfig
from handoff.auth.models import Identity

SESSION_SALT = "handoff-browser-session-v1"


def session_cookie_name(cfg: HandoffConfig) -> str:
    # `__Host-` requires Secure + Path=/ + no Domain; browsers may reject it on HTTP.
    return "__Host-handoff_session" if cfg.cookie_secure else "handoff_session"


def _serializer(cfg: HandoffConfig) -> Optional[URLSafeTimedSerializer]:
    if not cfg.session_secret:
        return None
    return URLSafeTimedSerializer(secret_key=cfg.session_secret, salt=SESSION_SALT)


def _identity_claims(identity: Identity) -> Dict[str, Any]:
    claims: Dict[str, Any] = {"user_id": identity.user_id, "login": identity.login}
    if identity.name:
        claims["name"] = identity.name
    if identity.email:
        claims["email"] = identity.email
    return claims


def _identity_from_claims(claims: Any) -> Optional[Identity]:
    if not isinstance(claims, dict):
        return None
    user_id = str(claims.get("user_id") or "").strip()
    login = str(claims.get("login") or "").strip()
    if not user_id or not login:
        return None
    name, email = claims.get("name"), claims.get("email")
    return Identity(user_id=user_id, login=login, name=str(name) if name else None, email=str(email) if email else None)


def encode_session(cfg: HandoffConfig, identity: Identity) -> Optional[str]:
    """Sign an identity into a cookie value. None when no secret is configured."""
    s = _serializer(cfg)
    if s is None:
        return None
    return s.dumps(_identity_claims(identity))


def decode_session(cfg: HandoffConfig, value: str | None) -> Optional[Identity]:
    """Verified identity from a cookie value; anything unsigned, stale or partial is None."""
    if not value:
        return None
    s = _serializer(cfg)
    if s is None:
        return None
    try:
        claims = s.loads(value, max_age=cfg.browser_session_ttl_seconds)
    except (BadSignature, ValueError):
        return None
    return _identity_from_claims(claims)
