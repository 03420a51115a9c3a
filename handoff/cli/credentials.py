from __future__ import annotations

import logging
import os
import stat
import tempfile
from dataclasses import asdict, dataclass
from functools import lru_cache
from pathlib import Path
from typing import Optional

import yaml

logger = logging.getLogger(__name__)

CREDENTIALS_FILE = "credentials.yaml"


@dataclass(frozen=True)
class ClientConfig:
    app_url: str  # Backend base URL, no trailing slash
    config_dir: str  # Where credentials.yaml lives
    login_timeout_seconds: int


@dataclass(frozen=True)
class Credentials:
    token: str
    login: Optional[str] = None
    user_id: Optional[str] = None
    app_url: Optional[str] = None


def _default_config_dir() -> str:
    base = (os.getenv("XDG_CONFIG_HOME", "") or "").strip() or os.path.join(os.path.expanduser("~"), ".config")
    return os.path.join(base, "handoff")


@lru_cache(maxsize=1)
def load_client_config() -> ClientConfig:
    """
    Load CLI configuration from environment variables.

    HANDOFF_APP_URL is not validated here; the login commands reject a bad URL before
    any network call.
    """
    timeout_raw = (os.getenv("HANDOFF_LOGIN_TIMEOUT_SECONDS", "") or "").strip()
    try:
        timeout = int(float(timeout_raw)) if timeout_raw else 120
    except ValueError:
        timeout = 120

    return ClientConfig(
        app_url=((os.getenv("HANDOFF_APP_URL", "") or "").strip() or "http://127.0.0.1:8080").rstrip("/"),
        config_dir=(os.getenv("HANDOFF_CONFIG_DIR", "") or "").strip() or _default_config_dir(),
        login_timeout_seconds=max(timeout, 5),
    )


def credentials_path(cfg: ClientConfig) -> Path:
    return Path(cfg.config_dir) / CREDENTIALS_FILE


def load_credentials(cfg: ClientConfig) -> Optional[Credentials]:
    path = credentials_path(cfg)
    if not path.exists():
        return None
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except (OSError, yaml.YAMLError) as e:
        logger.warning("Ignoring unreadable credentials file %s: %s", path, e)
        return None
    if not isinstance(data, dict) or not data.get("token"):
        return None
    return Credentials(
        token=str(data["token"]),
        login=str(data["login"]) if data.get("login") else None,
        user_id=str(data["user_id"]) if data.get("user_id") else None,
        app_url=str(data["app_url"]) if data.get("app_url") else None,
    )


def save_credentials(cfg: ClientConfig, creds: Credentials) -> Path:
    """
    Persist credentials readable by the current user only.

    Written to a temp file in the same directory and renamed into place, so a crash never
    leaves a half-written token file behind.
    """
    path = credentials_path(cfg)
    path.parent.mkdir(parents=True, exist_ok=True)
    payload = yaml.safe_dump({k: v for k, v in asdict(creds).items() if v is not None}, sort_keys=True)

    fd, tmp = tempfile.mkstemp(prefix=".credentials-", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(payload)
        os.chmod(tmp, stat.S_IRUSR | stat.S_IWUSR)
        os.replace(tmp, path)
    except BaseException:
        if os.path.exists(tmp):
            os.unlink(tmp)
        raise
    logger.debug("Saved credentials to %s", path)
    return path


def clear_credentials(cfg: ClientConfig) -> bool:
    path = credentials_path(cfg)
    try:
        path.unlink()
        return True
    except FileNotFoundError:
        return False
