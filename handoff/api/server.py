"""
HTTP surface of the CLI login handoff.

Browser-facing endpoints answer with small HTML pages that never contain tokens or
internals; CLI-facing endpoints answer JSON. Expired, unknown and already-used login
ids are reported identically.
"""

from __future__ import annotations

import html
import logging
import os
import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from urllib.parse import urlencode

from fastapi import FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse
from pydantic import BaseModel, ConfigDict, Field

from handoff.auth.deps import authenticate_browser, bearer_token
from handoff.auth.errors import (
    AlreadyConsumed,
    DuplicateCorrelationId,
    InvalidTransition,
    NotFoundOrExpired,
    ValidationError,
)
from handoff.auth.handoff import get_handoff_service
from handoff.auth.models import Identity
from handoff.auth.util import sanitize_next_path

logger = logging.getLogger(__name__)

app = FastAPI(title="CLI login handoff")

_RETRY_HINT = "Return to your terminal and run the login command again."


class CompleteLoginRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    login_id: str = Field(alias="loginId")
    browser_token: str = Field(alias="browserToken")


def _iso(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def _client_id(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def _user_payload(identity: Optional[Identity]) -> Optional[Dict[str, Any]]:
    if identity is None:
        return None
    return {"id": identity.user_id, "login": identity.login, "name": identity.name, "email": identity.email}


def _page(status_code: int, title: str, message: str) -> HTMLResponse:
    body = (
        "<!DOCTYPE html><html><head><meta charset=\"utf-8\">"
        f"<title>{html.escape(title)}</title></head>"
        "<body style=\"font-family: sans-serif; text-align: center; padding: 4rem;\">"
        f"<h1>{html.escape(title)}</h1><p>{html.escape(message)}</p>"
        "</body></html>"
    )
    return HTMLResponse(status_code=status_code, content=body, headers={"Cache-Control": "no-store"})


def _expired_page() -> HTMLResponse:
    return _page(400, "Login link expired", f"This login link is invalid, expired or was already used. {_RETRY_HINT}")


def _expired_json(status_code: int = 410) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"status": "expired"}, headers={"Cache-Control": "no-store"})


def _internal_error_json() -> JSONResponse:
    return JSONResponse(status_code=500, content={"detail": "Internal error, please retry"})


def _signin_redirect(next_path: str) -> RedirectResponse:
    cfg = get_handoff_service().cfg
    sep = "&" if "?" in cfg.signin_url else "?"
    url = f"{cfg.signin_url}{sep}{urlencode({'next': sanitize_next_path(next_path)})}"
    return RedirectResponse(url=url, status_code=302)


def _public_base_url(request: Request) -> str:
    cfg = get_handoff_service().cfg
    return cfg.public_base_url or str(request.base_url).rstrip("/")


@app.exception_handler(RequestValidationError)
async def _invalid_request(request: Request, exc: RequestValidationError) -> JSONResponse:
    # The error list echoes request data; never return it.
    logger.info("Rejected malformed request to %s (%d errors)", request.url.path, len(exc.errors()))
    return JSONResponse(status_code=400, content={"detail": "Invalid request"})


@app.on_event("startup")
def _startup_sweeper() -> None:
    svc = get_handoff_service()
    svc.sweeper.start()
    logger.info(
        "Handoff config: pending_ttl=%ss poll_ttl=%ss session_ttl=%ss sweep_interval=%.1fs",
        svc.cfg.pending_ttl_seconds,
        svc.cfg.poll_ttl_seconds,
        svc.cfg.session_ttl_seconds,
        svc.cfg.sweep_interval_seconds,
    )


@app.on_event("shutdown")
def _shutdown_sweeper() -> None:
    get_handoff_service().sweeper.stop()


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log incoming requests by path only; query strings carry secrets."""
    start_time = time.time()
    try:
        response = await call_next(request)
        process_time = time.time() - start_time
        logger.debug("%s %s - %d (%.3fs)", request.method, request.url.path, response.status_code, process_time)
        return response
    except Exception as e:
        process_time = time.time() - start_time
        logger.exception("%s %s - ERROR after %.3fs: %s", request.method, request.url.path, process_time, type(e).__name__)
        return _internal_error_json()


@app.get("/healthz")
def healthz() -> Dict[str, Any]:
    return {"ok": True}


# ---- loopback redirect ----


def _finish_loopback(state: str, identity: Identity):
    try:
        url = get_handoff_service().complete_loopback(state, identity)
    except (NotFoundOrExpired, AlreadyConsumed, InvalidTransition, ValidationError):
        return _expired_page()
    resp = RedirectResponse(url=url, status_code=302)
    resp.headers["Cache-Control"] = "no-store"
    resp.headers["Referrer-Policy"] = "no-referrer"
    return resp


@app.get("/login")
def login_loopback(
    request: Request,
    state: str = Query(""),
    redirect_uri: str = Query(""),
):
    """
    Start a loopback-mode CLI login.

    The redirect target is validated before anything is registered; an invalid target
    ends the flow here.
    """
    svc = get_handoff_service()
    try:
        svc.start_loopback(state, redirect_uri)
    except ValidationError as e:
        logger.info("Rejected loopback login: %s", e)
        return _page(400, "Invalid login request", f"The login request from your terminal was rejected. {_RETRY_HINT}")
    except DuplicateCorrelationId:
        return _page(409, "Login already in progress", f"This login request was already started. {_RETRY_HINT}")

    identity = authenticate_browser(request)
    if identity is not None:
        return _finish_loopback(state, identity)
    return _signin_redirect(f"/login/continue?{urlencode({'state': state})}")


@app.get("/login/continue")
def login_loopback_continue(request: Request, state: str = Query("")):
    """Return point after the OAuth collaborator has signed the browser in."""
    identity = authenticate_browser(request)
    if identity is None:
        return _page(401, "Sign-in required", f"You need to sign in before the CLI login can finish. {_RETRY_HINT}")
    return _finish_loopback(state, identity)


# ---- poll handoff ----


@app.post("/cli/login")
def cli_login_start(request: Request) -> JSONResponse:
    svc = get_handoff_service()
    login = svc.start_poll()
    login_url = f"{_public_base_url(request)}/cli/login/browser?" + urlencode(
        {"loginId": login.login_id, "browserToken": login.browser_token}
    )
    return JSONResponse(
        status_code=200,
        content={
            "loginId": login.login_id,
            "browserToken": login.browser_token,
            "pollToken": login.poll_token,
            "expiresAt": _iso(login.expires_at),
            "loginUrl": login_url,
        },
        headers={"Cache-Control": "no-store"},
    )


@app.get("/cli/login/browser")
def cli_login_browser(
    request: Request,
    login_id: str = Query("", alias="loginId"),
    browser_token: str = Query("", alias="browserToken"),
):
    """Browser landing page for poll-mode logins."""
    identity = authenticate_browser(request)
    if identity is None:
        next_path = "/cli/login/browser?" + urlencode({"loginId": login_id, "browserToken": browser_token})
        return _signin_redirect(next_path)

    svc = get_handoff_service()
    client = _client_id(request)
    if svc.limiter.is_limited(client):
        return _page(429, "Too many attempts", "Please wait a few minutes and try again.")
    try:
        svc.complete_poll(login_id, browser_token, identity)
    except NotFoundOrExpired:
        svc.limiter.record_failure(client)
        return _expired_page()
    return _page(200, "Login complete", "You're signed in. You can close this window and return to your terminal.")


@app.post("/cli/login/complete")
def cli_login_complete(request: Request, body: CompleteLoginRequest) -> JSONResponse:
    identity = authenticate_browser(request)
    if identity is None:
        return JSONResponse(status_code=401, content={"detail": "Unauthorized"})

    svc = get_handoff_service()
    client = _client_id(request)
    if svc.limiter.is_limited(client):
        return JSONResponse(status_code=429, content={"detail": "Too many attempts"})
    try:
        svc.complete_poll(body.login_id, body.browser_token, identity)
    except NotFoundOrExpired:
        svc.limiter.record_failure(client)
        return _expired_json()
    return JSONResponse(status_code=200, content={"ok": True})


@app.get("/cli/login/status")
def cli_login_status(
    request: Request,
    login_id: str = Query("", alias="loginId"),
    poll_token: str = Query("", alias="pollToken"),
) -> JSONResponse:
    svc = get_handoff_service()
    client = _client_id(request)
    if svc.limiter.is_limited(client):
        return JSONResponse(status_code=429, content={"detail": "Too many attempts"})

    result = svc.poll_status(login_id, poll_token)
    if result.status == "expired":
        svc.limiter.record_failure(client)
        return JSONResponse(status_code=200, content={"status": "expired"}, headers={"Cache-Control": "no-store"})
    content: Dict[str, Any] = {"status": result.status}
    if result.status == "complete":
        content["token"] = result.token
        content["user"] = _user_payload(result.identity)
    return JSONResponse(status_code=200, content=content, headers={"Cache-Control": "no-store"})


@app.get("/cli/login/stats")
def cli_login_stats() -> JSONResponse:
    svc = get_handoff_service()
    if not svc.cfg.debug_stats:
        return JSONResponse(status_code=404, content={"detail": "Not Found"})
    return JSONResponse(status_code=200, content={"ok": True, **svc.stats()})


# ---- issued sessions ----


@app.get("/cli/session")
def cli_session(request: Request) -> JSONResponse:
    session = get_handoff_service().lookup_session(bearer_token(request))
    if session is None:
        return JSONResponse(status_code=401, content={"detail": "Unauthorized"})
    return JSONResponse(
        status_code=200,
        content={
            "token": session.token,
            "userId": session.identity.user_id,
            "login": session.identity.login,
            "name": session.identity.name,
            "expiresAt": _iso(session.expires_at),
        },
        headers={"Cache-Control": "no-store"},
    )


@app.post("/cli/logout")
def cli_logout(request: Request) -> Dict[str, Any]:
    revoked = get_handoff_service().revoke_session(bearer_token(request))
    if revoked:
        logger.info("Handoff session revoked on logout")
    return {"ok": True}


def run(host: str = "127.0.0.1", port: int = 8080) -> None:
    import uvicorn

    log_level = os.getenv("LOG_LEVEL", "info").upper()
    logging.basicConfig(
        level=getattr(logging, log_level, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    logger.setLevel(getattr(logging, log_level, logging.INFO))

    # Map Python logging levels to uvicorn log levels
    uvicorn_log_level = (
        log_level.lower() if log_level.lower() in ["critical", "error", "warning", "info", "debug", "trace"] else "info"
    )

    logger.info("Starting handoff server on %s:%d (log_level=%s)", host, port, log_level)
    # uvicorn's access log prints query strings, which carry tokens and secrets.
    uvicorn.run(app, host=host, port=port, log_level=uvicorn_log_level, access_log=False)
