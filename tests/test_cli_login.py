from __future__ import annotations

import os
import stat
from unittest.mock import MagicMock
from urllib.parse import parse_qs, urlsplit

import pytest
import requests
import yaml
from fastapi.testclient import TestClient

import handoff.api.server as srv
from handoff.auth.config import load_handoff_config
from handoff.auth.handoff import HandoffService, set_handoff_service
from handoff.auth.models import Identity
from handoff.auth.session import encode_session
from handoff.cli.credentials import ClientConfig, credentials_path, load_credentials
from handoff.cli.errors import LoginError, format_login_error
from handoff.cli.login import build_login_url, login, logout, loopback_login, poll_login, validate_app_url

ALICE = Identity(user_id="u-1", login="alice", name="Alice")

_direct = requests.Session()
_direct.trust_env = False


def _resp(status: int, body=None) -> MagicMock:
    r = MagicMock()
    r.status_code = status
    r.json.return_value = body
    return r


def _cfg(tmp_path, app_url: str = "https://app.example.com") -> ClientConfig:
    return ClientConfig(app_url=app_url, config_dir=str(tmp_path / "cfg"), login_timeout_seconds=30)


def _started() -> dict:
    return {
        "loginId": "L1",
        "browserToken": "B1",
        "pollToken": "P1",
        "expiresAt": "2026-01-01T00:00:00+00:00",
        "loginUrl": "https://app.example.com/cli/login/browser?loginId=L1&browserToken=B1",
    }


def test_validate_app_url() -> None:
    assert validate_app_url("https://app.example.com/") == "https://app.example.com"
    for bad in ["", "app.example.com", "ftp://app.example.com", "https://user@app.example.com"]:
        with pytest.raises(LoginError) as exc:
            validate_app_url(bad)
        assert exc.value.code == "validation_error"


def test_build_login_url_encodes_redirect() -> None:
    url = build_login_url("https://app.example.com", "abc123", "http://127.0.0.1:51823/callback")
    parts = urlsplit(url)
    assert parts.path == "/login"
    assert parse_qs(parts.query) == {"state": ["abc123"], "redirect_uri": ["http://127.0.0.1:51823/callback"]}


# ---- poll handoff client ----


def test_poll_login_backs_off_then_returns_token(tmp_path) -> None:
    http = MagicMock()
    http.request.side_effect = [
        _resp(200, _started()),
        _resp(429, {"detail": "Too many attempts"}),
        _resp(200, {"status": "pending"}),
        _resp(200, {"status": "complete", "token": "tok_abc", "user": {"id": "u-1", "login": "alice"}}),
    ]
    opened = []
    sleeps = []

    result = poll_login(
        _cfg(tmp_path),
        http=http,
        open_url=lambda url: opened.append(url) or True,
        echo=lambda msg: None,
        sleep=sleeps.append,
        clock=lambda: 0.0,
    )

    assert result.token == "tok_abc"
    assert result.login == "alice"
    assert result.user_id == "u-1"
    assert opened == [_started()["loginUrl"]]
    assert sleeps == [4.0, 2.0]
    # The poll token goes to the status endpoint only, never to the browser.
    assert "P1" not in opened[0]
    status_call = http.request.call_args_list[-1]
    assert status_call.args[:2] == ("GET", "https://app.example.com/cli/login/status")
    assert status_call.kwargs["params"] == {"loginId": "L1", "pollToken": "P1"}


def test_poll_login_expired(tmp_path) -> None:
    http = MagicMock()
    http.request.side_effect = [_resp(200, _started()), _resp(200, {"status": "expired"})]
    with pytest.raises(LoginError) as exc:
        poll_login(_cfg(tmp_path), http=http, open_url=lambda url: True, echo=lambda msg: None, sleep=lambda s: None)
    assert exc.value.code == "expired"


def test_poll_login_times_out(tmp_path, clock) -> None:
    http = MagicMock()
    http.request.side_effect = [_resp(200, _started())] + [_resp(200, {"status": "pending"})] * 10

    with pytest.raises(LoginError) as exc:
        poll_login(
            _cfg(tmp_path),
            timeout=5,
            http=http,
            open_url=lambda url: True,
            echo=lambda msg: None,
            sleep=clock.advance,
            clock=clock,
        )
    assert exc.value.code == "timeout"
    # start + polls at t=0, 2, 4, 5
    assert http.request.call_count == 5


def test_poll_login_rejects_incomplete_start_response(tmp_path) -> None:
    http = MagicMock()
    http.request.return_value = _resp(200, {"loginId": "L1"})
    with pytest.raises(LoginError) as exc:
        poll_login(_cfg(tmp_path), http=http, open_url=lambda url: True, echo=lambda msg: None)
    assert exc.value.code == "bad_response"


def test_network_error_has_remediation(tmp_path) -> None:
    http = MagicMock()
    http.request.side_effect = requests.ConnectionError("boom")
    with pytest.raises(LoginError) as exc:
        poll_login(_cfg(tmp_path), http=http, open_url=lambda url: True, echo=lambda msg: None)
    assert exc.value.code == "network_error"
    assert "run the login command again" in format_login_error(exc.value)


def test_invalid_app_url_fails_before_any_request(tmp_path) -> None:
    http = MagicMock()
    with pytest.raises(LoginError) as exc:
        poll_login(_cfg(tmp_path, app_url="not a url"), http=http, open_url=lambda url: True, echo=lambda msg: None)
    assert exc.value.code == "validation_error"
    http.request.assert_not_called()


# ---- loopback client ----


def test_loopback_login_receives_token_from_listener(tmp_path) -> None:
    http = MagicMock()
    http.request.return_value = _resp(200, {"token": "tok_xyz", "userId": "u-1", "login": "alice"})

    def fake_backend(url: str) -> bool:
        # Play the backend: redirect straight back to the listener with the token.
        params = parse_qs(urlsplit(url).query)
        redirect_uri, state = params["redirect_uri"][0], params["state"][0]
        _direct.get(redirect_uri, params={"token": "tok_xyz", "state": state}, timeout=5)
        return True

    result = loopback_login(_cfg(tmp_path), timeout=5, open_url=fake_backend, echo=lambda msg: None, http=http)

    assert result.token == "tok_xyz"
    assert result.login == "alice"
    call = http.request.call_args
    assert call.args == ("GET", "https://app.example.com/cli/session")
    assert call.kwargs["headers"] == {"Authorization": "Bearer tok_xyz"}


def test_loopback_login_ignores_forged_callback(tmp_path) -> None:
    http = MagicMock()
    http.request.return_value = _resp(200, {"token": "tok_xyz", "userId": "u-1", "login": "alice"})

    def racing_backend(url: str) -> bool:
        params = parse_qs(urlsplit(url).query)
        redirect_uri, state = params["redirect_uri"][0], params["state"][0]
        _direct.get(redirect_uri, params={"token": "attacker", "state": "guessed"}, timeout=5)
        _direct.get(redirect_uri, params={"token": "tok_xyz", "state": state}, timeout=5)
        return True

    result = loopback_login(_cfg(tmp_path), timeout=5, open_url=racing_backend, echo=lambda msg: None, http=http)
    assert result.token == "tok_xyz"


def test_loopback_login_times_out_without_callback(tmp_path) -> None:
    with pytest.raises(LoginError) as exc:
        loopback_login(_cfg(tmp_path), timeout=0.2, open_url=lambda url: False, echo=lambda msg: None, http=MagicMock())
    assert exc.value.code == "timeout"


def test_loopback_login_rejected_token(tmp_path) -> None:
    http = MagicMock()
    http.request.return_value = _resp(401, {"detail": "Unauthorized"})

    def fake_backend(url: str) -> bool:
        params = parse_qs(urlsplit(url).query)
        _direct.get(params["redirect_uri"][0], params={"token": "bad", "state": params["state"][0]}, timeout=5)
        return True

    with pytest.raises(LoginError) as exc:
        loopback_login(_cfg(tmp_path), timeout=5, open_url=fake_backend, echo=lambda msg: None, http=http)
    assert exc.value.code == "invalid_token"


# ---- login / logout ----


def test_login_persists_credentials_privately(tmp_path) -> None:
    http = MagicMock()
    http.request.side_effect = [
        _resp(200, _started()),
        _resp(200, {"status": "complete", "token": "tok_abc", "user": {"id": "u-1", "login": "alice"}}),
    ]
    cfg = _cfg(tmp_path)

    creds = login(cfg, mode="poll", http=http, open_url=lambda url: True, echo=lambda msg: None, sleep=lambda s: None)

    path = credentials_path(cfg)
    assert stat.S_IMODE(os.stat(path).st_mode) == 0o600
    assert yaml.safe_load(path.read_text()) == {
        "token": "tok_abc",
        "login": "alice",
        "user_id": "u-1",
        "app_url": "https://app.example.com",
    }
    assert load_credentials(cfg) == creds
    assert [p.name for p in path.parent.iterdir()] == ["credentials.yaml"]


def test_login_unknown_mode(tmp_path) -> None:
    with pytest.raises(LoginError) as exc:
        login(_cfg(tmp_path), mode="carrier-pigeon")
    assert exc.value.code == "validation_error"


def test_logout(tmp_path) -> None:
    http = MagicMock()
    http.request.return_value = _resp(200, {"ok": True})
    assert logout(_cfg(tmp_path), "tok_abc", http=http) is True
    assert http.request.call_args.kwargs["headers"] == {"Authorization": "Bearer tok_abc"}

    http.request.side_effect = requests.ConnectionError("down")
    assert logout(_cfg(tmp_path), "tok_abc", http=http) is False


# ---- CLI against the real app ----


def _backend(monkeypatch) -> TestClient:
    monkeypatch.setenv("HANDOFF_SESSION_SECRET", "test-secret-key-for-testing-purposes-only")
    load_handoff_config.cache_clear()
    set_handoff_service(HandoffService(load_handoff_config()))
    return TestClient(srv.app, follow_redirects=False)


def _browser_cookie() -> dict:
    return {"Cookie": f"handoff_session={encode_session(load_handoff_config(), ALICE)}"}


def test_loopback_cli_against_app(tmp_path, monkeypatch) -> None:
    backend = _backend(monkeypatch)
    cfg = _cfg(tmp_path, app_url="http://testserver")

    def browser(url: str) -> bool:
        r = backend.get(url, headers=_browser_cookie())
        assert r.status_code == 302
        _direct.get(r.headers["location"], timeout=5)
        return True

    creds = login(cfg, mode="loopback", timeout=5, open_url=browser, echo=lambda msg: None, http=backend)

    assert creds.login == "alice"
    assert creds.user_id == "u-1"
    assert load_credentials(cfg).token == creds.token  # type: ignore[union-attr]
    assert backend.get("/cli/session", headers={"Authorization": f"Bearer {creds.token}"}).status_code == 200


def test_poll_cli_against_app(tmp_path, monkeypatch) -> None:
    backend = _backend(monkeypatch)
    cfg = _cfg(tmp_path, app_url="http://testserver")

    def browser(url: str) -> bool:
        assert backend.get(url, headers=_browser_cookie()).status_code == 200
        return True

    creds = login(cfg, mode="poll", timeout=5, open_url=browser, echo=lambda msg: None, http=backend, sleep=lambda s: None)

    assert creds.login == "alice"
    assert backend.get("/cli/session", headers={"Authorization": f"Bearer {creds.token}"}).json()["userId"] == "u-1"
    assert logout(cfg, creds.token, http=backend) is True
    assert backend.get("/cli/session", headers={"Authorization": f"Bearer {creds.token}"}).status_code == 401
