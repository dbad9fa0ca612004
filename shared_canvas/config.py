"""
Service configuration.

Settings come from environment variables and, optionally, a YAML file:

```yaml
canvas:
  width: 1000
  height: 1000
  throttle_seconds: 30
  board_container: boards
  board_name: default
  blob_root: ./blobs
reader:
  poll_delay: 5
  start_from_beginning: true
endpoints:
  getBoardEndpoint: https://example.net/api/board
  ...
```

Environment variables override file values. Missing required settings
raise ConfigurationError when the config is built, never per request.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any

import yaml

from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_THROTTLE_SECONDS = 30
DEFAULT_CHUNK_SIZE = 300
DEFAULT_POLL_DELAY = 5.0
ADMIN_IDENTITY_PROVIDER = "aad"


def _load_yaml(path: Path | str | None) -> dict[str, Any]:
    if path is None:
        return {}
    path = Path(path)
    if not path.exists():
        raise ConfigurationError(str(path), "config file does not exist")
    with path.open() as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ConfigurationError(str(path), "top level must be a mapping")
    return data


def _int_env(name: str, default: int) -> int:
    """Parse an integer env var, falling back to ``default`` if unset or unparsable."""
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"Ignoring non-integer {name}={raw!r}, using {default}")
        return default


@dataclass
class CanvasConfig:
    """Board geometry and write policy.

    Attributes:
        width: Board width in pixels
        height: Board height in pixels
        throttle_seconds: Cooldown between a non-admin user's accepted writes
        append_chunk_size: Maximum pixels per change log document
        admin_identity_provider: Identity provider value that grants admin
        board_container: Blob container holding the board snapshot
        board_name: Blob name of the board snapshot
        blob_root: Directory for the local blob store
    """

    width: int = 1000
    height: int = 1000
    throttle_seconds: int = DEFAULT_THROTTLE_SECONDS
    append_chunk_size: int = DEFAULT_CHUNK_SIZE
    admin_identity_provider: str = ADMIN_IDENTITY_PROVIDER
    board_container: str = "boards"
    board_name: str = "default"
    blob_root: str = "./blobs"

    def __post_init__(self) -> None:
        if self.width <= 0 or self.height <= 0:
            raise ConfigurationError("width/height", "board dimensions must be positive")
        if self.append_chunk_size < 1:
            raise ConfigurationError("append_chunk_size", "must be >= 1")
        if self.throttle_seconds < 0:
            raise ConfigurationError("throttle_seconds", "must be >= 0")

    @property
    def cursor_blob_name(self) -> str:
        """Blob holding the compactor's change log position."""
        return f"{self.board_name}.cursor.json"

    @property
    def reader_cursor_blob_name(self) -> str:
        """Blob holding the live reader's change log position."""
        return f"{self.board_name}.reader-cursor.json"

    @classmethod
    def from_env(cls, config_path: Path | str | None = None) -> CanvasConfig:
        """Create config from an optional YAML file overlaid with environment variables.

        Environment variables:
        - CANVAS_WIDTH / CANVAS_HEIGHT
        - CANVAS_THROTTLE_RATE: cooldown in seconds
        - CANVAS_APPEND_CHUNK_SIZE
        - CANVAS_ADMIN_IDP
        - CANVAS_BOARD_CONTAINER / CANVAS_BOARD_NAME
        - CANVAS_BLOB_ROOT
        """
        section = _load_yaml(config_path).get("canvas", {})
        known = {f.name for f in fields(cls)}
        values: dict[str, Any] = {k: v for k, v in section.items() if k in known}

        defaults = cls.__dataclass_fields__
        values["width"] = _int_env("CANVAS_WIDTH", values.get("width", defaults["width"].default))
        values["height"] = _int_env("CANVAS_HEIGHT", values.get("height", defaults["height"].default))
        values["throttle_seconds"] = _int_env(
            "CANVAS_THROTTLE_RATE",
            values.get("throttle_seconds", DEFAULT_THROTTLE_SECONDS),
        )
        values["append_chunk_size"] = _int_env(
            "CANVAS_APPEND_CHUNK_SIZE",
            values.get("append_chunk_size", DEFAULT_CHUNK_SIZE),
        )
        for attr, env in (
            ("admin_identity_provider", "CANVAS_ADMIN_IDP"),
            ("board_container", "CANVAS_BOARD_CONTAINER"),
            ("board_name", "CANVAS_BOARD_NAME"),
            ("blob_root", "CANVAS_BLOB_ROOT"),
        ):
            if os.environ.get(env):
                values[attr] = os.environ[env]

        return cls(**values)

    @classmethod
    def from_yaml(cls, path: Path | str) -> CanvasConfig:
        """Load the ``canvas`` section of a YAML file; environment variables still win."""
        return cls.from_env(config_path=path)


@dataclass
class ReaderConfig:
    """Change log reader behaviour.

    Attributes:
        poll_delay: Seconds to sleep after an empty page or a retriable error
        start_from_beginning: With no saved cursor, replay the whole log (True)
            or only follow new entries (False)
        default_max_item_count: First explicit page size used when an
            unbounded request is reported as too large
        channel: Push channel name for change notifications
    """

    poll_delay: float = DEFAULT_POLL_DELAY
    start_from_beginning: bool = True
    default_max_item_count: int = 100
    channel: str = "Changes"

    @classmethod
    def from_env(cls, config_path: Path | str | None = None) -> ReaderConfig:
        """Environment: CANVAS_POLL_INTERVAL (seconds), CANVAS_START_FROM_BEGINNING."""
        section = _load_yaml(config_path).get("reader", {})
        known = {f.name for f in fields(cls)}
        values: dict[str, Any] = {k: v for k, v in section.items() if k in known}

        poll = os.environ.get("CANVAS_POLL_INTERVAL")
        if poll:
            try:
                values["poll_delay"] = float(poll)
            except ValueError as e:
                raise ConfigurationError("CANVAS_POLL_INTERVAL", f"not a number: {poll!r}") from e
        start = os.environ.get("CANVAS_START_FROM_BEGINNING")
        if start:
            values["start_from_beginning"] = start.lower() == "true"
        return cls(**values)


# Metadata document key -> environment variable; all are required
_ENDPOINT_ENV = {
    "getBoardEndpoint": "CANVAS_GETBOARD_ENDPOINT",
    "loginEndpoint": "CANVAS_LOGIN_ENDPOINT",
    "updatePixelEndpoint": "CANVAS_UPDATEPIXEL_ENDPOINT",
    "websocketEndpoint": "CANVAS_WEBSOCKET_ENDPOINT",
    "userEndpoint": "CANVAS_USER_ENDPOINT",
    "adminEndpoint": "CANVAS_ADMIN_ENDPOINT",
    "logoutEndpoint": "CANVAS_LOGOUT_ENDPOINT",
}


@dataclass
class ServiceEndpoints:
    """The metadata document clients fetch on startup."""

    get_board: str
    login: str
    update_pixel: str
    websocket: str
    user: str
    admin: str
    logout: str
    throttle_rate: int = DEFAULT_THROTTLE_SECONDS

    def to_dict(self) -> dict[str, Any]:
        return {
            "getBoardEndpoint": self.get_board,
            "loginEndpoint": self.login,
            "updatePixelEndpoint": self.update_pixel,
            "websocketEndpoint": self.websocket,
            "userEndpoint": self.user,
            "adminEndpoint": self.admin,
            "logoutEndpoint": self.logout,
            "throttleRate": self.throttle_rate,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any], throttle_rate: int = DEFAULT_THROTTLE_SECONDS) -> ServiceEndpoints:
        missing = [key for key in _ENDPOINT_ENV if not data.get(key)]
        if missing:
            raise ConfigurationError(", ".join(missing), "required endpoint not configured")
        return cls(
            get_board=data["getBoardEndpoint"],
            login=data["loginEndpoint"],
            update_pixel=data["updatePixelEndpoint"],
            websocket=data["websocketEndpoint"],
            user=data["userEndpoint"],
            admin=data["adminEndpoint"],
            logout=data["logoutEndpoint"],
            throttle_rate=int(data.get("throttleRate", throttle_rate)),
        )

    @classmethod
    def from_env(
        cls,
        throttle_rate: int = DEFAULT_THROTTLE_SECONDS,
        config_path: Path | str | None = None,
    ) -> ServiceEndpoints:
        """Build from the ``endpoints`` YAML section overlaid with CANVAS_*_ENDPOINT variables.

        Raises:
            ConfigurationError: If any endpoint is missing
        """
        data = dict(_load_yaml(config_path).get("endpoints", {}))
        for key, env in _ENDPOINT_ENV.items():
            if os.environ.get(env):
                data[key] = os.environ[env]
        return cls.from_dict(data, throttle_rate=throttle_rate)
