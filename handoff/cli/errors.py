from __future__ import annotations

from typing import Optional

RELOGIN_HINT = "Run `python main.py --login` again."


class LoginError(RuntimeError):
    """CLI login failure with a user-facing remediation hint."""

    def __init__(self, message: str, *, code: str = "login_failed", remediation: Optional[str] = RELOGIN_HINT):
        super().__init__(message)
        self.code = code
        self.remediation = remediation


def format_login_error(error: Exception) -> str:
    if not isinstance(error, LoginError):
        return f"Login failed: {error}"
    if error.remediation:
        return f"Login failed: {error} {error.remediation}"
    return f"Login failed: {error}"
