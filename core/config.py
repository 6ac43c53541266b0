"""
Backend Configuration for the Practice Sync service.

This module centralizes every setting the sync core needs to reach its remote
REST + storage backend: the endpoint, credentials, the active backend mode and
the application-private directory where durable state is kept.

Key Components:
- `BackendMode`: The three operating modes. Only the two network-enabled modes
  let the flush engine talk to the backend; local simulation keeps everything
  queued.
- `BackendSettings`: An immutable snapshot of configuration read from the
  environment by `load_settings()`.
- `SessionTokenStore`: Holds the current bearer token and the injected refresh
  callable used by the transport's auth-challenge retry.
"""

import os
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Awaitable, Callable, List, Optional

from core.exceptions import ConfigurationError
from core.logging_config import get_logger

logger = get_logger(__name__)

DEFAULT_DATA_DIR = Path.home() / ".practice_sync"
QUEUE_FILE_NAME = "publish_queue_v2.json"
PRIVACY_FILE_NAME = "attachment_privacy.json"


class BackendMode(str, Enum):
    LOCAL_SIMULATION = "local_simulation"
    BACKEND_PREVIEW = "backend_preview"
    BACKEND_LIVE = "backend_live"

    @property
    def is_network_enabled(self) -> bool:
        return self in (BackendMode.BACKEND_PREVIEW, BackendMode.BACKEND_LIVE)

    @property
    def display_title(self) -> str:
        return self.value.replace("_", " ").title()

    @classmethod
    def parse(cls, raw: Optional[str]) -> "BackendMode":
        """Parse a mode name, falling back to local simulation for unknown values."""
        if not raw:
            return cls.LOCAL_SIMULATION
        try:
            return cls(raw.strip().lower())
        except ValueError:
            logger.warning(f"Unknown BACKEND_MODE '{raw}', using local_simulation")
            return cls.LOCAL_SIMULATION


@dataclass(frozen=True)
class BackendSettings:
    """Configuration snapshot for the sync core"""

    mode: BackendMode = BackendMode.LOCAL_SIMULATION
    base_url: Optional[str] = None
    api_key: Optional[str] = None
    access_token: Optional[str] = None
    owner_user_id: Optional[str] = None
    data_dir: Path = DEFAULT_DATA_DIR
    signed_url_ttl_seconds: int = 60
    media_cache_size: int = 256
    http_timeout_seconds: float = 30.0
    local_api_key: Optional[str] = None

    @property
    def is_configured(self) -> bool:
        return bool(self.base_url) and bool(self.api_key)

    @property
    def queue_file(self) -> Path:
        return self.data_dir / QUEUE_FILE_NAME

    @property
    def privacy_file(self) -> Path:
        return self.data_dir / PRIVACY_FILE_NAME

    def with_overrides(self, **changes) -> "BackendSettings":
        return replace(self, **changes)

    def validate(self) -> bool:
        """
        Validate settings, collecting every problem before raising.

        Raises:
            ConfigurationError: If any setting is invalid.
        """
        errors: List[str] = []

        if self.mode.is_network_enabled:
            if not self.base_url:
                errors.append(f"BACKEND_BASE_URL is required in {self.mode.value} mode")
            elif not self.base_url.startswith(("http://", "https://")):
                errors.append(f"BACKEND_BASE_URL must be http(s), got {self.base_url}")
            if not self.api_key:
                errors.append(f"BACKEND_API_KEY is required in {self.mode.value} mode")

        if self.signed_url_ttl_seconds < 0:
            errors.append(
                f"SIGNED_URL_TTL_SECONDS must be >= 0, got {self.signed_url_ttl_seconds}"
            )
        if self.media_cache_size < 1:
            errors.append(f"MEDIA_CACHE_SIZE must be >= 1, got {self.media_cache_size}")
        if self.http_timeout_seconds <= 0:
            errors.append(
                f"HTTP_TIMEOUT_SECONDS must be positive, got {self.http_timeout_seconds}"
            )

        if errors:
            raise ConfigurationError(errors)
        return True

    def summary(self) -> dict:
        """Configuration summary without secrets, for startup logging."""
        return {
            "mode": self.mode.value,
            "base_url": self.base_url,
            "api_key": "•••" if self.api_key else None,
            "access_token": "•••" if self.access_token else None,
            "owner_user_id": self.owner_user_id,
            "data_dir": str(self.data_dir),
        }


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError([f"{name} must be an integer, got {raw!r}"])


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigurationError([f"{name} must be a number, got {raw!r}"])


def _str_env(name: str) -> Optional[str]:
    raw = os.getenv(name)
    if raw is None:
        return None
    raw = raw.strip()
    return raw or None


def load_settings() -> BackendSettings:
    """Read backend settings from environment variables"""
    data_dir = _str_env("SYNC_DATA_DIR")
    return BackendSettings(
        mode=BackendMode.parse(os.getenv("BACKEND_MODE")),
        base_url=_str_env("BACKEND_BASE_URL"),
        api_key=_str_env("BACKEND_API_KEY"),
        access_token=_str_env("BACKEND_ACCESS_TOKEN"),
        owner_user_id=_str_env("BACKEND_OWNER_USER_ID"),
        data_dir=Path(data_dir).expanduser() if data_dir else DEFAULT_DATA_DIR,
        signed_url_ttl_seconds=_int_env("SIGNED_URL_TTL_SECONDS", 60),
        media_cache_size=_int_env("MEDIA_CACHE_SIZE", 256),
        http_timeout_seconds=_float_env("HTTP_TIMEOUT_SECONDS", 30.0),
        local_api_key=_str_env("LOCAL_API_KEY"),
    )


RefreshCallable = Callable[[], Awaitable[Optional[str]]]


@dataclass
class SessionTokenStore:
    """
    Current bearer token plus an optional refresh hook.

    The refresh hook returns a new access token, or None when the session
    could not be refreshed.
    """

    access_token: Optional[str] = None
    refresher: Optional[RefreshCallable] = field(default=None, repr=False)

    def set_token(self, token: Optional[str]) -> None:
        self.access_token = token or None

    def clear(self) -> None:
        self.access_token = None

    async def refresh(self) -> bool:
        if self.refresher is None:
            return False
        try:
            token = await self.refresher()
        except Exception as e:
            logger.warning(f"Session refresh failed: {e}")
            return False
        if not token:
            return False
        self.access_token = token
        logger.info("Session token refreshed")
        return True
