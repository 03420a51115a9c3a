"""
Local HTTP listener that receives the loopback redirect carrying the handoff token.

Binds an ephemeral port on 127.0.0.1, serves a single `/callback` path, and accepts
a token only when the echoed `state` matches the one this process generated. A
callback with the wrong state is answered with an error page and otherwise ignored,
so another local process racing for the port cannot end (or hijack) the attempt.
"""

from __future__ import annotations

import http.server
import logging
import queue
import threading
import time
from dataclasses import dataclass
from typing import Optional
from urllib.parse import parse_qs, urlsplit

from handoff.auth.util import constant_time_equals
from handoff.cli.errors import LoginError

logger = logging.getLogger(__name__)

CALLBACK_PATH = "/callback"
LOOPBACK_HOST = "127.0.0.1"

_SUCCESS_HTML = """<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>CLI login complete</title></head>
<body style="font-family: sans-serif; text-align: center; padding: 4rem;">
<h1>Login successful</h1>
<p>You can close this window and return to your terminal.</p>
</body>
</html>
"""

_ERROR_HTML = """<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>CLI login failed</title></head>
<body style="font-family: sans-serif; text-align: center; padding: 4rem;">
<h1>Login failed</h1>
<p>{message}</p>
</body>
</html>
"""


@dataclass(frozen=True)
class CallbackResult:
    token: str
    state: str


class _CallbackHTTPServer(http.server.ThreadingHTTPServer):
    daemon_threads = True

    expected_state: str = ""
    lock: threading.Lock
    results: "queue.Queue[CallbackResult]"
    done: threading.Event
    rejected: int = 0


class _CallbackHandler(http.server.BaseHTTPRequestHandler):
    server: _CallbackHTTPServer
    # Seconds before an idle connection is dropped.
    timeout = 10

    def do_GET(self) -> None:  # noqa: N802
        parts = urlsplit(self.path)
        if parts.path != CALLBACK_PATH:
            self._respond(404, "Not found.")
            return
        params = parse_qs(parts.query)
        state = (params.get("state") or [""])[0]
        token = (params.get("token") or [""])[0]

        with self.server.lock:
            if self.server.done.is_set():
                error: Optional[str] = "This login has already completed."
                status = 410
            elif not constant_time_equals(state, self.server.expected_state):
                # Never trust a token that arrives with the wrong state; keep waiting.
                self.server.rejected += 1
                logger.warning("Discarded login callback with mismatched state")
                error, status = "Invalid state. Return to your terminal and try again.", 400
            elif not token:
                error, status = "Missing token. Return to your terminal and try again.", 400
            else:
                self.server.done.set()
                error, status = None, 200
        if error is None:
            self.server.results.put(CallbackResult(token=token, state=state))
        self._respond(status, error)

    def _respond(self, status: int, error: Optional[str]) -> None:
        body = _SUCCESS_HTML if error is None else _ERROR_HTML.format(message=error)
        data = body.encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "text/html; charset=utf-8")
        self.send_header("Content-Length", str(len(data)))
        self.send_header("Cache-Control", "no-store")
        self.send_header("Referrer-Policy", "no-referrer")
        self.end_headers()
        self.wfile.write(data)

    def log_message(self, format, *args) -> None:  # noqa: A002
        # The default handler logs the request line to stderr, token included.
        return


class LoopbackListener:
    """
    One-shot callback listener for a loopback-mode login.

    Usage:
        with LoopbackListener(expected_state=state) as listener:
            open_browser(build_login_url(app_url, state, listener.redirect_uri))
            result = listener.wait(timeout=120)
    """

    def __init__(self, expected_state: str, *, port: int = 0):
        if not expected_state:
            raise LoginError("state is required", code="validation_error", remediation=None)
        self._expected_state = expected_state
        self._port = port
        self._server: Optional[_CallbackHTTPServer] = None
        self._thread: Optional[threading.Thread] = None

    @property
    def port(self) -> int:
        if self._server is None:
            raise RuntimeError("listener is not started")
        return int(self._server.server_address[1])

    @property
    def redirect_uri(self) -> str:
        return f"http://{LOOPBACK_HOST}:{self.port}{CALLBACK_PATH}"

    @property
    def rejected_callbacks(self) -> int:
        return self._server.rejected if self._server is not None else 0

    def start(self) -> str:
        """Bind the listener and start serving. Returns the redirect URI."""
        try:
            server = _CallbackHTTPServer((LOOPBACK_HOST, self._port), _CallbackHandler)
        except OSError as e:
            raise LoginError(
                f"Could not open a local callback port on {LOOPBACK_HOST} ({e.strerror or e}).",
                code="bind_failed",
                remediation="Check that local networking is available, or use `--mode poll`.",
            ) from e
        server.expected_state = self._expected_state
        server.results = queue.Queue(maxsize=1)
        server.done = threading.Event()
        server.lock = threading.Lock()
        self._server = server
        self._thread = threading.Thread(target=server.serve_forever, name="handoff-callback", daemon=True)
        self._thread.start()
        logger.debug("Callback listener bound on port %d", self.port)
        return self.redirect_uri

    def wait(self, timeout: float) -> CallbackResult:
        """
        Block until the genuine callback arrives or `timeout` seconds pass.

        Ctrl-C propagates as KeyboardInterrupt; callers close the listener either way.
        """
        if self._server is None:
            raise RuntimeError("listener is not started")
        deadline = time.monotonic() + max(0.0, timeout)
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise LoginError("Timed out waiting for the browser login to finish.", code="timeout")
            try:
                # Short slices keep the main thread responsive to Ctrl-C on every platform.
                return self._server.results.get(timeout=min(remaining, 0.5))
            except queue.Empty:
                continue

    def close(self) -> None:
        server, self._server = self._server, None
        if server is None:
            return
        server.shutdown()
        server.server_close()
        if self._thread is not None:
            self._thread.join(timeout=1)
            self._thread = None

    def __enter__(self) -> "LoopbackListener":
        self.start()
        return self

    def __exit__(self, *exc) -> None:
        self.close()
