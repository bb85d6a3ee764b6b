"""Configuration for the dashboard server."""

from __future__ import annotations

import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any

import yaml

from .errors import ConfigError, InvalidSettingError

DEFAULT_TOWN_ROOT = Path.home() / "gt"
EVENTS_FILE_NAME = ".events.jsonl"
BEADS_DIR_NAME = ".beads"

# Environment variable for each setting. Names without the GT_DASHBOARD_
# prefix are shared with the control plane's own tooling.
ENV_VARS = {
    "town_root": "TOWN_ROOT",
    "gt_bin": "GT_BIN",
    "bd_bin": "BD_BIN",
    "host": "GT_DASHBOARD_HOST",
    "port": "PORT",
    "command_timeout": "GT_DASHBOARD_TIMEOUT",
    "event_poll_interval": "GT_DASHBOARD_EVENT_INTERVAL",
    "convoy_poll_interval": "GT_DASHBOARD_CONVOY_INTERVAL",
    "peek_grace_period": "GT_DASHBOARD_PEEK_GRACE",
    "cors_origins": "GT_DASHBOARD_CORS_ORIGINS",
}
CONFIG_ENV_VAR = "GT_DASHBOARD_CONFIG"


def _parse_origins(value: str | list[str]) -> list[str]:
    """Parse ``a,b,c`` (or an already-split YAML list) into origins."""
    if isinstance(value, list):
        return [str(v).strip() for v in value if str(v).strip()]
    return [part.strip() for part in value.split(",") if part.strip()]


def _coerce_float(name: str, value: Any) -> float:
    try:
        result = float(value)
    except (TypeError, ValueError):
        raise InvalidSettingError(name, value, "a number of seconds") from None
    if result <= 0:
        raise InvalidSettingError(name, value, "a positive number of seconds")
    return result


def _coerce_port(value: Any) -> int:
    try:
        port = int(value)
    except (TypeError, ValueError):
        raise InvalidSettingError("port", value, "an integer") from None
    if not 0 < port < 65536:
        raise InvalidSettingError("port", value, "1-65535")
    return port


@dataclass
class DashboardConfig:
    """Settings for the control-plane binaries, server and real-time feeds.

    All durations are in seconds. Values come from (highest first) explicit
    overrides, a YAML file, environment variables, and the defaults below.
    """

    town_root: Path = DEFAULT_TOWN_ROOT
    gt_bin: str = "gt"
    bd_bin: str = "bd"
    host: str = "0.0.0.0"
    port: int = 3001
    command_timeout: float = 30.0
    event_poll_interval: float = 2.0
    convoy_poll_interval: float = 5.0
    peek_grace_period: float = 5.0
    cors_origins: list[str] = field(default_factory=lambda: ["*"])

    @property
    def beads_dir(self) -> Path:
        return self.town_root / BEADS_DIR_NAME

    @property
    def events_file(self) -> Path:
        return self.town_root / EVENTS_FILE_NAME

    def with_overrides(self, **overrides: Any) -> DashboardConfig:
        """Return a copy with non-None overrides applied and validated."""
        values = {k: v for k, v in overrides.items() if v is not None}
        return _normalize(replace(self, **values))

    @classmethod
    def from_dict(cls, data: dict[str, Any], base: DashboardConfig | None = None) -> DashboardConfig:
        """Create config from a mapping (e.g., parsed YAML) on top of ``base``."""
        dashboard_data = data.get("dashboard", data)
        if not isinstance(dashboard_data, dict):
            raise ConfigError("'dashboard' must be a mapping")

        known = {f.name for f in fields(cls)}
        unknown = sorted(set(dashboard_data) - known)
        if unknown:
            raise ConfigError(f"unknown settings: {', '.join(unknown)}")

        return (base or cls()).with_overrides(**dashboard_data)

    @classmethod
    def from_yaml(cls, path: str | Path, base: DashboardConfig | None = None) -> DashboardConfig:
        """Load config from a YAML file."""
        path = Path(path).expanduser()
        if not path.exists():
            raise ConfigError(f"config file not found: {path}")

        try:
            with open(path, encoding="utf-8") as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as exc:
            raise ConfigError(f"could not parse {path}: {exc}") from exc

        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ConfigError(f"config file must contain a YAML mapping: {path}")
        return cls.from_dict(data, base=base)

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None) -> DashboardConfig:
        """Create config from environment variables over the defaults."""
        env = os.environ if environ is None else environ
        values: dict[str, Any] = {}
        for name, var in ENV_VARS.items():
            raw = env.get(var)
            if raw:
                values[name] = raw
        return cls().with_overrides(**values)

    @classmethod
    def load(
        cls,
        config_path: str | None = None,
        environ: dict[str, str] | None = None,
        **overrides: Any,
    ) -> DashboardConfig:
        """Load config with precedence: overrides > YAML file > env vars > defaults.

        Args:
            config_path: Explicit YAML path. Falls back to $GT_DASHBOARD_CONFIG.
            environ: Environment mapping (defaults to ``os.environ``).
            **overrides: Individual settings, typically CLI options. ``None``
                values are ignored.

        Returns:
            Loaded dashboard config.
        """
        env = os.environ if environ is None else environ
        config = cls.from_env(env)

        resolved_path = config_path or env.get(CONFIG_ENV_VAR)
        if resolved_path:
            config = cls.from_yaml(resolved_path, base=config)

        return config.with_overrides(**overrides)


def _normalize(config: DashboardConfig) -> DashboardConfig:
    """Coerce loosely typed values (env strings, YAML scalars) to field types."""
    config.town_root = Path(config.town_root).expanduser()
    config.gt_bin = str(config.gt_bin)
    config.bd_bin = str(config.bd_bin)
    config.host = str(config.host)
    config.port = _coerce_port(config.port)
    config.command_timeout = _coerce_float("command_timeout", config.command_timeout)
    config.event_poll_interval = _coerce_float("event_poll_interval", config.event_poll_interval)
    config.convoy_poll_interval = _coerce_float("convoy_poll_interval", config.convoy_poll_interval)
    config.peek_grace_period = _coerce_float("peek_grace_period", config.peek_grace_period)
    config.cors_origins = _parse_origins(config.cors_origins) or ["*"]
    return config
