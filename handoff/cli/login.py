from __future__ import annotations

import logging
import time
import webbrowser
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional
from urllib.parse import urlencode, urlsplit

import requests

from handoff.auth.util import random_token
from handoff.cli.callback_server import LoopbackListener
from handoff.cli.credentials import ClientConfig, Credentials, save_credentials
from handoff.cli.errors import LoginError

logger = logging.getLogger(__name__)

_HTTP_TIMEOUT = 10


@dataclass(frozen=True)
class LoginResult:
    token: str
    login: Optional[str] = None
    user_id: Optional[str] = None


def generate_state() -> str:
    return random_token(16)


def validate_app_url(app_url: str) -> str:
    """Reject a malformed backend URL before any network call is made."""
    parts = urlsplit(app_url or "")
    if parts.scheme not in ("http", "https") or not parts.netloc or "@" in parts.netloc:
        raise LoginError(
            f"Invalid backend URL {app_url!r}.",
            code="validation_error",
            remediation="Set HANDOFF_APP_URL to an http(s) URL such as https://app.example.com.",
        )
    return app_url.rstrip("/")


def build_login_url(app_url: str, state: str, redirect_uri: str) -> str:
    return f"{app_url}/login?" + urlencode({"state": state, "redirect_uri": redirect_uri})


def open_browser(url: str) -> bool:
    """Best-effort browser launch; the URL is always printed for manual use too."""
    try:
        return bool(webbrowser.open(url))
    except webbrowser.Error:
        return False


def _request(http: Any, method: str, url: str, **kwargs: Any) -> requests.Response:
    try:
        return http.request(method, url, timeout=_HTTP_TIMEOUT, **kwargs)
    except requests.RequestException as e:
        raise LoginError(
            f"Could not reach the login server ({type(e).__name__}).",
            code="network_error",
            remediation="Check your connection and run the login command again.",
        ) from e


def _json(resp: requests.Response) -> Dict[str, Any]:
    try:
        data = resp.json()
    except ValueError:
        data = None
    if not isinstance(data, dict):
        raise LoginError(f"Unexpected response from the login server (status={resp.status_code}).", code="bad_response")
    return data


def fetch_session(app_url: str, token: str, *, http: Any = None) -> Dict[str, Any]:
    """Ask the backend who a handoff token belongs to (`GET /cli/session`)."""
    http = http or requests.Session()
    resp = _request(http, "GET", f"{app_url}/cli/session", headers={"Authorization": f"Bearer {token}"})
    if resp.status_code == 401:
        raise LoginError("The login server rejected the received token.", code="invalid_token")
    if resp.status_code >= 400:
        raise LoginError(f"Failed to fetch the CLI session (status={resp.status_code}).", code="server_error")
    return _json(resp)


def _resolve_identity(app_url: str, token: str, http: Any) -> LoginResult:
    session = fetch_session(app_url, token, http=http)
    return LoginResult(
        token=token,
        login=str(session.get("login") or "") or None,
        user_id=str(session.get("userId") or "") or None,
    )


def loopback_login(
    cfg: ClientConfig,
    *,
    timeout: Optional[float] = None,
    open_url: Callable[[str], bool] = open_browser,
    echo: Callable[[str], None] = print,
    http: Any = None,
) -> LoginResult:
    """
    Loopback-redirect login.

    Binds a local listener, sends the browser to the backend with a fresh `state`, and
    waits for the redirect carrying the token. Only a callback echoing our `state` is
    accepted.
    """
    app_url = validate_app_url(cfg.app_url)
    wait_seconds = cfg.login_timeout_seconds if timeout is None else timeout
    state = generate_state()
    http = http or requests.Session()

    with LoopbackListener(expected_state=state) as listener:
        url = build_login_url(app_url, state, listener.redirect_uri)
        echo("Opening browser for login...")
        if not open_url(url):
            echo("Could not open a browser automatically.")
        echo(f"If your browser didn't open, visit:\n  {url}")
        echo(f"Waiting up to {int(wait_seconds)}s for the login to finish...")
        result = listener.wait(timeout=wait_seconds)

    logger.debug("Received loopback callback; resolving identity")
    return _resolve_identity(app_url, result.token, http)


def poll_login(
    cfg: ClientConfig,
    *,
    timeout: Optional[float] = None,
    interval: float = 2.0,
    open_url: Callable[[str], bool] = open_browser,
    echo: Callable[[str], None] = print,
    http: Any = None,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> LoginResult:
    """
    Poll-handoff login.

    The browser receives only `browserToken` (inside `loginUrl`); `pollToken` never
    leaves this process. Polls until complete, expired, or `timeout`.
    """
    app_url = validate_app_url(cfg.app_url)
    wait_seconds = cfg.login_timeout_seconds if timeout is None else timeout
    http = http or requests.Session()

    resp = _request(http, "POST", f"{app_url}/cli/login")
    if resp.status_code >= 400:
        raise LoginError(f"Could not start a login session (status={resp.status_code}).", code="server_error")
    started = _json(resp)
    login_id = str(started.get("loginId") or "")
    browser_token = str(started.get("browserToken") or "")
    poll_token = str(started.get("pollToken") or "")
    if not login_id or not browser_token or not poll_token:
        raise LoginError("The login server returned an incomplete login session.", code="bad_response")
    url = str(started.get("loginUrl") or "") or (
        f"{app_url}/cli/login/browser?" + urlencode({"loginId": login_id, "browserToken": browser_token})
    )

    echo("Opening browser for login...")
    if not open_url(url):
        echo("Could not open a browser automatically.")
    echo(f"If your browser didn't open, visit:\n  {url}")

    deadline = clock() + max(0.0, wait_seconds)
    delay = interval
    while True:
        resp = _request(http, "GET", f"{app_url}/cli/login/status", params={"loginId": login_id, "pollToken": poll_token})
        if resp.status_code == 429:
            delay = min(delay * 2, 30.0)
        elif resp.status_code >= 400:
            raise LoginError(f"Login status check failed (status={resp.status_code}).", code="server_error")
        else:
            body = _json(resp)
            status = body.get("status")
            if status == "complete":
                token = str(body.get("token") or "")
                if not token:
                    raise LoginError("The login server reported completion without a token.", code="bad_response")
                user = body.get("user") if isinstance(body.get("user"), dict) else {}
                return LoginResult(
                    token=token,
                    login=str(user.get("login") or "") or None,
                    user_id=str(user.get("id") or "") or None,
                )
            if status == "expired":
                raise LoginError("The login session expired or was already used.", code="expired")
            if status != "pending":
                raise LoginError(f"Unexpected login status {status!r}.", code="bad_response")
            delay = interval

        remaining = deadline - clock()
        if remaining <= 0:
            raise LoginError("Timed out waiting for the browser login to finish.", code="timeout")
        sleep(min(delay, remaining))


def login(
    cfg: ClientConfig,
    *,
    mode: str = "loopback",
    timeout: Optional[float] = None,
    **kwargs: Any,
) -> Credentials:
    """Run a login in the requested delivery mode and persist the resulting token."""
    if mode == "loopback":
        result = loopback_login(cfg, timeout=timeout, **kwargs)
    elif mode == "poll":
        result = poll_login(cfg, timeout=timeout, **kwargs)
    else:
        raise LoginError(f"Unknown login mode {mode!r}.", code="validation_error", remediation="Use loopback or poll.")

    creds = Credentials(token=result.token, login=result.login, user_id=result.user_id, app_url=cfg.app_url)
    path = save_credentials(cfg, creds)
    logger.info("Stored CLI credentials in %s", path)
    return creds


def logout(cfg: ClientConfig, token: str, *, http: Any = None) -> bool:
    """Revoke a token on the backend. Returns False when the server could not be reached."""
    http = http or requests.Session()
    try:
        resp = _request(http, "POST", f"{validate_app_url(cfg.app_url)}/cli/logout", headers={"Authorization": f"Bearer {token}"})
    except LoginError as e:
        logger.warning("Logout request failed: %s", e)
        return False
    return resp.status_code < 400
