from __future__ import annotations

from pathlib import Path

import pytest

from gastown_dashboard.config import DashboardConfig
from gastown_dashboard.errors import ConfigError, InvalidSettingError


def test_defaults_when_environment_is_empty() -> None:
    config = DashboardConfig.load(environ={})

    assert config.town_root == Path.home() / "gt"
    assert config.gt_bin == "gt"
    assert config.bd_bin == "bd"
    assert config.port == 3001
    assert config.command_timeout == 30.0
    assert config.event_poll_interval == 2.0
    assert config.convoy_poll_interval == 5.0
    assert config.peek_grace_period == 5.0
    assert config.cors_origins == ["*"]


def test_derived_paths_follow_town_root(tmp_path) -> None:
    config = DashboardConfig(town_root=tmp_path)

    assert config.events_file == tmp_path / ".events.jsonl"
    assert config.beads_dir == tmp_path / ".beads"


def test_environment_values_are_coerced(tmp_path) -> None:
    config = DashboardConfig.from_env(
        {
            "TOWN_ROOT": str(tmp_path),
            "PORT": "8080",
            "GT_DASHBOARD_TIMEOUT": "12.5",
            "GT_DASHBOARD_PEEK_GRACE": "1",
            "GT_DASHBOARD_CORS_ORIGINS": "http://a.test, http://b.test,",
            "GT_BIN": "/opt/gt",
        }
    )

    assert config.town_root == tmp_path
    assert config.port == 8080
    assert config.command_timeout == 12.5
    assert config.peek_grace_period == 1.0
    assert config.cors_origins == ["http://a.test", "http://b.test"]
    assert config.gt_bin == "/opt/gt"


def test_precedence_overrides_then_yaml_then_env(tmp_path) -> None:
    config_file = tmp_path / "dashboard.yaml"
    config_file.write_text(
        "dashboard:\n"
        "  port: 4000\n"
        "  event_poll_interval: 0.5\n"
    )
    env = {"PORT": "5000", "GT_DASHBOARD_HOST": "127.0.0.1", "GT_DASHBOARD_EVENT_INTERVAL": "9"}

    config = DashboardConfig.load(str(config_file), environ=env, port=6000, host=None)

    assert config.port == 6000  # override wins
    assert config.event_poll_interval == 0.5  # yaml beats env
    assert config.host == "127.0.0.1"  # env beats default


def test_config_path_from_environment(tmp_path) -> None:
    config_file = tmp_path / "dashboard.yaml"
    config_file.write_text("gt_bin: /usr/local/bin/gt\ncors_origins: [http://x.test]\n")

    config = DashboardConfig.load(environ={"GT_DASHBOARD_CONFIG": str(config_file)})

    assert config.gt_bin == "/usr/local/bin/gt"
    assert config.cors_origins == ["http://x.test"]


def test_unknown_yaml_settings_are_rejected(tmp_path) -> None:
    config_file = tmp_path / "dashboard.yaml"
    config_file.write_text("prot: 80\n")

    with pytest.raises(ConfigError, match="unknown settings: prot"):
        DashboardConfig.from_yaml(config_file)


def test_missing_and_malformed_files(tmp_path) -> None:
    with pytest.raises(ConfigError, match="not found"):
        DashboardConfig.from_yaml(tmp_path / "nope.yaml")

    bad = tmp_path / "bad.yaml"
    bad.write_text("- just\n- a list\n")
    with pytest.raises(ConfigError, match="mapping"):
        DashboardConfig.from_yaml(bad)


@pytest.mark.parametrize(
    ("name", "value"),
    [
        ("port", "http"),
        ("port", 70000),
        ("command_timeout", "soon"),
        ("peek_grace_period", 0),
    ],
)
def test_invalid_values_raise(name: str, value: object) -> None:
    with pytest.raises(InvalidSettingError) as excinfo:
        DashboardConfig().with_overrides(**{name: value})

    assert name in str(excinfo.value)
    assert isinstance(excinfo.value, ValueError)
