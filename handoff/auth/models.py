from __future__ import annotations

from dataclasses import dataclass
from typing import Literal, Optional

DeliveryMode = Literal["loopback", "poll"]
LoginStatus = Literal["pending", "complete", "consumed", "expired"]


@dataclass(frozen=True)
class Identity:
    """Verified identity handed over by the OAuth collaborator."""

    user_id: str
    login: str
    name: Optional[str] = None
    email: Optional[str] = None


@dataclass
class PendingLogin:
    """
    One in-flight CLI login, keyed by its correlation id.

    `delivery_target` is the validated redirect URL (loopback) or the browser secret (poll).
    """

    correlation_id: str
    created_at: float
    expires_at: float
    delivery_mode: DeliveryMode
    delivery_target: str
    status: LoginStatus = "pending"
    poll_token: Optional[str] = None
    session_token: Optional[str] = None
    identity: Optional[Identity] = None

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


@dataclass(frozen=True)
class IssuedSession:
    """Handoff token bound to one identity for its whole lifetime."""

    token: str
    identity: Identity
    created_at: float
    expires_at: float

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


@dataclass(frozen=True)
class ValidatedRedirect:
    """Loopback callback URL that passed `validate_redirect`."""

    url: str
    host: str
    port: int
    path: str
    query: str = ""

    @property
    def netloc(self) -> str:
        return loopback_netloc(self.host, self.port)


def loopback_netloc(host: str, port: int) -> str:
    return f"[{host}]:{port}" if ":" in host else f"{host}:{port}"
