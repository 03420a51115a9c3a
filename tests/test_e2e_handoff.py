"""E2E tests for the CLI login handoff.

These tests require a running server (`python main.py --serve`) and are executed in CI
or manually. Run with: pytest -m e2e

Browser sign-in is simulated with a cookie signed by HANDOFF_SESSION_SECRET, which must
match the server's.
"""

import os
import time
from typing import Generator
from urllib.parse import parse_qs, urlsplit

import pytest
import requests
from itsdangerous import URLSafeTimedSerializer

from handoff.auth.session import SESSION_SALT

BASE_URL = os.getenv("HANDOFF_E2E_BASE_URL", "http://localhost:8080")
SESSION_SECRET = os.getenv("HANDOFF_SESSION_SECRET", "")

pytestmark = pytest.mark.e2e


@pytest.fixture(scope="module")
def wait_for_server() -> Generator[None, None, None]:
    """Wait for server to be ready."""
    max_retries = 30
    for i in range(max_retries):
        try:
            r = requests.get(f"{BASE_URL}/healthz", timeout=2)
            if r.status_code == 200:
                break
        except requests.RequestException:
            if i == max_retries - 1:
                raise Exception("Server failed to start within 30 seconds")
            time.sleep(1)
    yield


@pytest.fixture
def browser() -> requests.Session:
    """A browser session that is already signed in."""
    if not SESSION_SECRET:
        pytest.skip("HANDOFF_SESSION_SECRET not set")
    s = URLSafeTimedSerializer(secret_key=SESSION_SECRET, salt=SESSION_SALT)
    cookie = s.dumps({"user_id": "e2e-user", "login": "e2e"})
    session = requests.Session()
    session.cookies.set("handoff_session", cookie)
    return session


def test_healthz_endpoint(wait_for_server):
    r = requests.get(f"{BASE_URL}/healthz")
    assert r.status_code == 200
    assert r.json()["ok"] is True


def test_invalid_redirect_is_rejected(wait_for_server):
    r = requests.get(
        f"{BASE_URL}/login",
        params={"state": f"e2e-{time.time_ns()}", "redirect_uri": "http://127.0.0.1.evil.example"},
        allow_redirects=False,
    )
    assert r.status_code == 400
    assert "location" not in {k.lower() for k in r.headers.keys()}


def test_unsigned_browser_is_sent_to_sign_in(wait_for_server):
    state = f"e2e-{time.time_ns()}"
    r = requests.get(
        f"{BASE_URL}/login",
        params={"state": state, "redirect_uri": "http://127.0.0.1:51823/callback"},
        allow_redirects=False,
    )
    assert r.status_code == 302
    next_path = parse_qs(urlsplit(r.headers["location"]).query)["next"][0]
    assert next_path == f"/login/continue?state={state}"


def test_poll_requires_browser_identity(wait_for_server):
    started = requests.post(f"{BASE_URL}/cli/login").json()
    r = requests.post(
        f"{BASE_URL}/cli/login/complete",
        json={"loginId": started["loginId"], "browserToken": started["browserToken"]},
    )
    assert r.status_code == 401

    r = requests.get(
        f"{BASE_URL}/cli/login/status",
        params={"loginId": started["loginId"], "pollToken": started["pollToken"]},
    )
    assert r.json() == {"status": "pending"}


def test_poll_flow(wait_for_server, browser):
    started = requests.post(f"{BASE_URL}/cli/login").json()

    r = browser.post(
        f"{BASE_URL}/cli/login/complete",
        json={"loginId": started["loginId"], "browserToken": started["browserToken"]},
    )
    assert r.status_code == 200

    status_params = {"loginId": started["loginId"], "pollToken": started["pollToken"]}
    body = requests.get(f"{BASE_URL}/cli/login/status", params=status_params).json()
    assert body["status"] == "complete"
    token = body["token"]

    assert requests.get(f"{BASE_URL}/cli/login/status", params=status_params).json() == {"status": "expired"}

    auth = {"Authorization": f"Bearer {token}"}
    r = requests.get(f"{BASE_URL}/cli/session", headers=auth)
    assert r.status_code == 200
    assert r.json()["login"] == "e2e"

    assert requests.post(f"{BASE_URL}/cli/logout", headers=auth).status_code == 200
    assert requests.get(f"{BASE_URL}/cli/session", headers=auth).status_code == 401


def test_loopback_flow(wait_for_server, browser):
    state = f"e2e-{time.time_ns()}"
    callback = "http://127.0.0.1:51823/callback"
    r = browser.get(
        f"{BASE_URL}/login",
        params={"state": state, "redirect_uri": callback},
        allow_redirects=False,
    )
    assert r.status_code == 302
    parts = urlsplit(r.headers["location"])
    assert f"{parts.scheme}://{parts.netloc}{parts.path}" == callback
    assert parse_qs(parts.query)["state"] == [state]

    # Replaying the same state never yields a second token.
    r = browser.get(f"{BASE_URL}/login/continue", params={"state": state}, allow_redirects=False)
    assert r.status_code == 400
