"""Sync configuration loaded from .env, env vars, or programmatic input."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

ENV_PREFIX = "CONTACT_SYNC_"
TRANSPORT_MODES = ("auto", "broadcast", "storage")


def _env(name: str, default: str | None = None) -> str | None:
    return os.getenv(f"{ENV_PREFIX}{name}", default)


def _parse_bool(raw: str | None, default: bool) -> bool:
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _parse_number(raw: str | None, default: float, cast: type = float):
    if raw is None or raw == "":
        return default
    try:
        return cast(raw)
    except ValueError:
        return None


@dataclass
class SyncSettings:
    """Settings for one tab: bus channel, shared storage and entity backend."""

    api_base_url: str = "http://localhost:5000"
    base_path: str = "/api/contacts"
    channel_name: str = "contacts-x-tab-v1"
    storage_dir: Path | None = None
    transport: str = "auto"
    request_timeout: float | None = 10.0
    retry_attempts: int | None = 3
    retry_backoff: float | None = 0.25
    replay_per_type: bool = True
    poll_interval: float | None = 0.5
    validate_events: bool = False

    @classmethod
    def from_env(cls, env_file: str | Path | None = None) -> SyncSettings:
        """
        Load settings from CONTACT_SYNC_* environment variables and a .env file.

        Unparseable numbers are kept as None so validate() can report them.
        """
        load_dotenv(env_file)
        defaults = cls()
        storage_dir = _env("STORAGE_DIR")
        return cls(
            api_base_url=_env("API_BASE_URL", defaults.api_base_url),
            base_path=_env("BASE_PATH", defaults.base_path),
            channel_name=_env("CHANNEL", defaults.channel_name),
            storage_dir=Path(storage_dir) if storage_dir else None,
            transport=(_env("TRANSPORT", defaults.transport) or "").strip().lower(),
            request_timeout=_parse_number(_env("REQUEST_TIMEOUT"), defaults.request_timeout),
            retry_attempts=_parse_number(_env("RETRY_ATTEMPTS"), defaults.retry_attempts, int),
            retry_backoff=_parse_number(_env("RETRY_BACKOFF"), defaults.retry_backoff),
            replay_per_type=_parse_bool(_env("REPLAY_PER_TYPE"), defaults.replay_per_type),
            poll_interval=_parse_number(_env("POLL_INTERVAL"), defaults.poll_interval),
            validate_events=_parse_bool(_env("VALIDATE_EVENTS"), defaults.validate_events),
        )

    def validate(self) -> list[str]:
        """Return list of validation errors, empty if settings are valid."""
        errors = []
        if not self.api_base_url:
            errors.append(f"{ENV_PREFIX}API_BASE_URL is not set.")
        if not self.channel_name:
            errors.append(f"{ENV_PREFIX}CHANNEL must not be empty.")
        if self.transport not in TRANSPORT_MODES:
            errors.append(
                f"{ENV_PREFIX}TRANSPORT must be one of {', '.join(TRANSPORT_MODES)}, "
                f"got '{self.transport}'."
            )
        if self.request_timeout is None or self.request_timeout <= 0:
            errors.append(f"{ENV_PREFIX}REQUEST_TIMEOUT must be a positive number of seconds.")
        if self.retry_attempts is None or self.retry_attempts < 1:
            errors.append(f"{ENV_PREFIX}RETRY_ATTEMPTS must be an integer >= 1.")
        if self.retry_backoff is None or self.retry_backoff < 0:
            errors.append(f"{ENV_PREFIX}RETRY_BACKOFF must be a non-negative number.")
        if self.poll_interval is None or self.poll_interval <= 0:
            errors.append(f"{ENV_PREFIX}POLL_INTERVAL must be a positive number of seconds.")
        return errors
