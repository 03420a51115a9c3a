"""
Loopback redirect validation.

A loopback-mode CLI tells the backend where to send the freshly minted token. The
only acceptable destination is a listener on the user's own machine, so anything
other than `http://<loopback>:<port>/...` is rejected outright. There is no
"safer default" fallback: an invalid target aborts the login before it is
registered.
"""

from __future__ import annotations

from typing import List, Tuple
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from handoff.auth.errors import InvalidRedirect
from handoff.auth.models import ValidatedRedirect, loopback_netloc

LOOPBACK_HOSTS = ("127.0.0.1", "localhost", "::1")

_MAX_REDIRECT_LENGTH = 2048


def _has_forbidden_chars(value: str) -> bool:
    for ch in value:
        if ch.isspace() or ch == "\\" or ord(ch) < 0x20 or ord(ch) == 0x7F:
            return True
    return False


def validate_redirect(candidate: str) -> ValidatedRedirect:
    """
    Validate a CLI-supplied callback URL.

    All of the following must hold:
    - scheme is exactly `http` (loopback has no certificate to verify);
    - host is one of 127.0.0.1, localhost, ::1;
    - an explicit numeric port in 1..65535 is present;
    - the authority is exactly `host:port` (no userinfo, no percent-encoding,
      no trailing dots, no suffixes like `127.0.0.1.attacker.example`);
    - no fragment, whitespace, backslashes or control characters.

    Raises:
        InvalidRedirect: on any violation.
    """
    if not isinstance(candidate, str) or not candidate:
        raise InvalidRedirect("redirect_uri is required")
    if len(candidate) > _MAX_REDIRECT_LENGTH:
        raise InvalidRedirect("redirect_uri is too long")
    if _has_forbidden_chars(candidate):
        raise InvalidRedirect("redirect_uri contains forbidden characters")
    if "#" in candidate:
        raise InvalidRedirect("redirect_uri must not contain a fragment")

    try:
        parts = urlsplit(candidate)
    except ValueError:
        raise InvalidRedirect("redirect_uri is not a valid URL") from None

    if parts.scheme != "http" or not candidate[:7].lower() == "http://":
        raise InvalidRedirect("redirect_uri must use http")

    netloc = parts.netloc
    if not netloc:
        raise InvalidRedirect("redirect_uri must include a host")
    if "@" in netloc:
        raise InvalidRedirect("redirect_uri must not contain credentials")

    host = (parts.hostname or "").lower()
    if host not in LOOPBACK_HOSTS:
        raise InvalidRedirect("redirect_uri must target a loopback address")

    try:
        port = parts.port
    except ValueError:
        raise InvalidRedirect("redirect_uri port is invalid") from None
    if port is None:
        raise InvalidRedirect("redirect_uri must include an explicit port")
    if not (1 <= port <= 65535):
        raise InvalidRedirect("redirect_uri port is out of range")

    canonical_netloc = loopback_netloc(host, port)
    # Anything beyond the canonical authority is ambiguous; refuse it.
    if netloc.lower() != canonical_netloc:
        raise InvalidRedirect("redirect_uri host is ambiguous")

    path = parts.path or "/"
    if not path.startswith("/"):
        raise InvalidRedirect("redirect_uri path is invalid")

    url = urlunsplit(("http", canonical_netloc, path, parts.query, ""))
    return ValidatedRedirect(url=url, host=host, port=port, path=path, query=parts.query)


def append_query(target: ValidatedRedirect, params: List[Tuple[str, str]]) -> str:
    """
    Append query parameters to a validated redirect, replacing same-named ones.

    Parameter order is preserved so the resulting URL is deterministic.
    """
    names = {k for k, _ in params}
    existing = [(k, v) for k, v in parse_qsl(target.query, keep_blank_values=True) if k not in names]
    query = urlencode(existing + list(params))
    return urlunsplit(("http", target.netloc, target.path, query, ""))
