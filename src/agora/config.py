"""Server settings for agora.

Settings are read from a YAML file (``$XDG_CONFIG_HOME/agora/config.yaml``
by default, or the path in ``AGORA_CONFIG``) and then overridden by
environment variables:

- AGORA_DB: SQLite path (":memory:" for a process-shared in-memory DB)
- AGORA_REGISTRY: connection registry backend ("memory" or "database")
- AGORA_PUSH_ENDPOINT: HTTP push gateway URL (enables HttpPushTransport)
- AGORA_LEASE_SECONDS: connection lease duration
- AGORA_REAP_INTERVAL: seconds between lease reaper runs (0 disables)
"""

from __future__ import annotations

import os
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any

import yaml

REGISTRY_BACKENDS = ("memory", "database")

DEFAULT_LEASE_SECONDS = 86400
DEFAULT_REAP_INTERVAL = 300


class AgoraConfigError(Exception):
    """Raised when settings are invalid."""

    pass


def get_config_dir() -> Path:
    """Get the configuration directory path."""
    config_home = os.environ.get("XDG_CONFIG_HOME", os.path.expanduser("~/.config"))
    return Path(config_home) / "agora"


def get_config_path() -> Path:
    """Get the settings file path, honouring AGORA_CONFIG."""
    explicit = os.environ.get("AGORA_CONFIG")
    if explicit:
        return Path(explicit)
    return get_config_dir() / "config.yaml"


@dataclass
class Settings:
    """Runtime settings for the agora server."""

    db_path: str = ":memory:"
    registry_backend: str = "memory"
    push_endpoint: str | None = None
    lease_seconds: int = DEFAULT_LEASE_SECONDS
    reap_interval: int = DEFAULT_REAP_INTERVAL
    push_timeout: float = 10.0

    def __post_init__(self) -> None:
        self._validate()

    def _validate(self) -> None:
        if self.registry_backend not in REGISTRY_BACKENDS:
            raise AgoraConfigError(
                f"Unknown registry backend {self.registry_backend!r}. "
                f"Expected one of: {', '.join(REGISTRY_BACKENDS)}"
            )
        # Each worker only holds its own sockets, so a shared registry needs
        # a shared push gateway or fan-out would prune other workers' connections
        if self.registry_backend == "database" and not self.push_endpoint:
            raise AgoraConfigError("registry_backend 'database' requires push_endpoint")
        if self.lease_seconds <= 0:
            raise AgoraConfigError("lease_seconds must be positive")
        if self.reap_interval < 0:
            raise AgoraConfigError("reap_interval cannot be negative")
        if self.push_timeout <= 0:
            raise AgoraConfigError("push_timeout must be positive")

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for YAML serialization."""
        data = asdict(self)
        if data["push_endpoint"] is None:
            del data["push_endpoint"]
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Settings":
        """Create from dictionary, ignoring unknown keys."""
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


def _env_overrides() -> dict[str, Any]:
    overrides: dict[str, Any] = {}

    if os.environ.get("AGORA_DB"):
        overrides["db_path"] = os.environ["AGORA_DB"]
    if os.environ.get("AGORA_REGISTRY"):
        overrides["registry_backend"] = os.environ["AGORA_REGISTRY"]
    if os.environ.get("AGORA_PUSH_ENDPOINT"):
        overrides["push_endpoint"] = os.environ["AGORA_PUSH_ENDPOINT"]

    for key, env_name in (
        ("lease_seconds", "AGORA_LEASE_SECONDS"),
        ("reap_interval", "AGORA_REAP_INTERVAL"),
    ):
        raw = os.environ.get(env_name)
        if raw:
            try:
                overrides[key] = int(raw)
            except ValueError as e:
                raise AgoraConfigError(f"{env_name} must be an integer, got {raw!r}") from e

    return overrides


def load_settings(path: str | Path | None = None) -> Settings:
    """Load settings from YAML (if present) and apply environment overrides."""
    config_path = Path(path) if path is not None else get_config_path()

    data: dict[str, Any] = {}
    if config_path.exists():
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise AgoraConfigError(f"{config_path} must contain a mapping")

    data.update(_env_overrides())
    return Settings.from_dict(data)


def save_settings(settings: Settings, path: str | Path | None = None) -> Path:
    """Write settings to YAML. Returns the path written."""
    config_path = Path(path) if path is not None else get_config_path()
    config_path.parent.mkdir(parents=True, exist_ok=True)

    with open(config_path, "w") as f:
        yaml.safe_dump(settings.to_dict(), f, default_flow_style=False, sort_keys=False)

    return config_path


_settings: Settings | None = None


def get_settings() -> Settings:
    """Get the process-wide settings, loading them on first use."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def set_settings(settings: Settings) -> None:
    global _settings
    _settings = settings


def reset_settings() -> None:
    """Forget loaded settings (for testing)."""
    global _settings
    _settings = None
