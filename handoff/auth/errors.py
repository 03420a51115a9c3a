from __future__ import annotations


class HandoffError(RuntimeError):
    """Base error for handoff store and protocol failures."""

    code = "handoff_error"

    def __init__(self, message: str = "", *, code: str | None = None) -> None:
        super().__init__(message or self.__class__.__name__)
        if code:
            self.code = code


class ValidationError(HandoffError):
    """Malformed input; rejected before any state is touched."""

    code = "validation_error"


class InvalidRedirect(ValidationError):
    code = "invalid_redirect"


class DuplicateCorrelationId(HandoffError):
    code = "duplicate_correlation_id"


class NotFoundOrExpired(HandoffError):
    """Raised identically for ids that never existed and ids past their TTL."""

    code = "not_found_or_expired"


class AlreadyConsumed(HandoffError):
    code = "already_consumed"


class InvalidTransition(HandoffError):
    """The entry exists but is not in the state the caller expected."""

    code = "invalid_transition"


class InternalError(HandoffError):
    code = "internal_error"
