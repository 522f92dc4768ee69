"""Environment-driven settings for the POS engine, its sync worker and HTTP adapter."""
import logging
import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

LOG_FORMAT = "[%s] %%(asctime)s %%(levelname)s %%(name)s %%(message)s"


def _env_string(name: str, default: Optional[str] = None) -> Optional[str]:
    """Return trimmed string-valued env vars, normalizing empty strings to the default."""
    raw = os.getenv(name, default)
    if raw is None:
        return default
    clean = raw.strip()
    return clean if clean else default


def _env_int(name: str, default: int) -> int:
    try:
        return int(_env_string(name, str(default)))
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    try:
        return float(_env_string(name, str(default)))
    except ValueError:
        return default


def _env_flag(name: str, default: bool = False) -> bool:
    return (_env_string(name, "1" if default else "0") or "").lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    db_path: str = "pos.db"
    schema_path: Optional[str] = None
    location_id: str = "1"
    till_id: str = ""
    api_base: Optional[str] = None
    api_path: str = "/connector/api"
    api_token: Optional[str] = None
    login_url: Optional[str] = None
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None
    sync_max_attempts: int = 3
    sync_backoff: str = "exponential"
    sync_base_delay: float = 1.0
    sync_max_delay: float = 30.0
    request_timeout: float = 30.0
    resync_enabled: bool = True
    resync_interval: float = 30.0
    log_level: str = "INFO"
    host: str = "0.0.0.0"
    port: int = 5000

    @classmethod
    def from_env(cls, dotenv_path: Optional[str] = None) -> "Settings":
        """Read settings from the process environment after loading `.env` (existing vars win)."""
        load_dotenv(dotenv_path, override=False)
        api_base = _env_string("POS_API_BASE")
        return cls(
            db_path=_env_string("POS_DB_PATH", "pos.db"),
            schema_path=_env_string("POS_SCHEMA_PATH"),
            location_id=_env_string("POS_LOCATION_ID", "1"),
            till_id=_env_string("POS_TILL_ID", ""),
            api_base=api_base,
            api_path=_env_string("POS_API_PATH", "/connector/api"),
            api_token=_env_string("POS_API_TOKEN"),
            login_url=_env_string("POS_LOGIN_URL", f"{api_base.rstrip('/')}/oauth/token" if api_base else None),
            client_id=_env_string("POS_CLIENT_ID"),
            client_secret=_env_string("POS_CLIENT_SECRET"),
            username=_env_string("POS_USERNAME"),
            password=_env_string("POS_PASSWORD"),
            sync_max_attempts=max(1, _env_int("POS_SYNC_MAX_ATTEMPTS", 3)),
            sync_backoff=(_env_string("POS_SYNC_BACKOFF", "exponential") or "exponential").lower(),
            sync_base_delay=_env_float("POS_SYNC_BASE_DELAY", 1.0),
            sync_max_delay=_env_float("POS_SYNC_MAX_DELAY", 30.0),
            request_timeout=_env_float("POS_REQUEST_TIMEOUT", 30.0),
            resync_enabled=_env_flag("POS_RESYNC_ENABLED", True),
            resync_interval=_env_float("POS_RESYNC_INTERVAL", 30.0),
            log_level=(_env_string("POS_LOG_LEVEL", "INFO") or "INFO").upper(),
            host=_env_string("HOST", "0.0.0.0"),
            port=_env_int("PORT", 5000),
        )

    @property
    def has_password_grant(self) -> bool:
        return all((self.login_url, self.client_id, self.client_secret, self.username, self.password))


def configure_logging(level_name: str = "INFO", prefix: str = "pos"):
    level = getattr(logging, (level_name or "INFO").upper(), logging.INFO)
    logging.basicConfig(level=level, format=LOG_FORMAT % prefix)
    logging.getLogger().setLevel(level)
    logging.getLogger("werkzeug").setLevel(level)
