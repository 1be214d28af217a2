"""Tests for configuration loading."""

import os
from datetime import timedelta
from pathlib import Path
from unittest.mock import patch

import pytest

from delaysync.config import (
    DEFAULT_DELAYED_GROUP_SUFFIX,
    DEFAULT_MAX_CHANGES_PER_GROUP,
    DEFAULT_THRESHOLD_HOURS,
    Config,
    ConfigurationError,
)
from delaysync.spec_loader import SpecLoadError


class TestConfig:
    """Tests for Config class."""

    def test_valid_config(self) -> None:
        config = Config(source_group_prefix="Autopilot - ")

        assert config.source_group_prefix == "Autopilot - "
        assert config.delayed_group_suffix == DEFAULT_DELAYED_GROUP_SUFFIX
        assert config.threshold_hours == DEFAULT_THRESHOLD_HOURS
        assert config.threshold == timedelta(hours=8)
        assert config.dry_run is False
        assert config.max_changes_per_group == DEFAULT_MAX_CHANGES_PER_GROUP

    def test_missing_prefix(self) -> None:
        with pytest.raises(ConfigurationError) as exc_info:
            Config(source_group_prefix="")

        assert "SOURCE_GROUP_PREFIX is required" in str(exc_info.value)

    def test_blank_prefix(self) -> None:
        with pytest.raises(ConfigurationError):
            Config(source_group_prefix="   ")

    def test_prefix_with_control_characters(self) -> None:
        with pytest.raises(ConfigurationError) as exc_info:
            Config(source_group_prefix="Autopilot\n")

        assert "control characters" in str(exc_info.value)

    def test_empty_suffix(self) -> None:
        with pytest.raises(ConfigurationError) as exc_info:
            Config(source_group_prefix="Autopilot", delayed_group_suffix="")

        assert "DELAYED_GROUP_SUFFIX" in str(exc_info.value)

    def test_prefix_ending_with_suffix_rejected(self) -> None:
        with pytest.raises(ConfigurationError) as exc_info:
            Config(source_group_prefix="Autopilot - Delayed", delayed_group_suffix=" - Delayed")

        assert "must not end with DELAYED_GROUP_SUFFIX" in str(exc_info.value)

    @pytest.mark.parametrize("hours", [0, -1, 721])
    def test_threshold_out_of_bounds(self, hours: int) -> None:
        with pytest.raises(ConfigurationError) as exc_info:
            Config(source_group_prefix="Autopilot", threshold_hours=hours)

        assert "QUALIFICATION_THRESHOLD_HOURS" in str(exc_info.value)

    @pytest.mark.parametrize("hours", [1, 8, 720])
    def test_threshold_within_bounds(self, hours: int) -> None:
        config = Config(source_group_prefix="Autopilot", threshold_hours=hours)
        assert config.threshold == timedelta(hours=hours)

    def test_max_changes_out_of_bounds(self) -> None:
        with pytest.raises(ConfigurationError) as exc_info:
            Config(source_group_prefix="Autopilot", max_changes_per_group=0)

        assert "MAX_CHANGES_PER_GROUP" in str(exc_info.value)

    def test_graph_base_url_must_be_https(self) -> None:
        with pytest.raises(ConfigurationError) as exc_info:
            Config(source_group_prefix="Autopilot", graph_base_url="http://graph.local/v1.0")

        assert "https" in str(exc_info.value)

    def test_graph_timeout_bounds(self) -> None:
        with pytest.raises(ConfigurationError):
            Config(source_group_prefix="Autopilot", graph_timeout_seconds=1)

    def test_invalid_client_id(self) -> None:
        with pytest.raises(ConfigurationError) as exc_info:
            Config(source_group_prefix="Autopilot", managed_identity_client_id="not-a-guid")

        assert "AZURE_CLIENT_ID" in str(exc_info.value)

    def test_errors_are_collected(self) -> None:
        with pytest.raises(ConfigurationError) as exc_info:
            Config(source_group_prefix="", threshold_hours=0, max_changes_per_group=0)

        message = str(exc_info.value)
        assert "SOURCE_GROUP_PREFIX" in message
        assert "QUALIFICATION_THRESHOLD_HOURS" in message
        assert "MAX_CHANGES_PER_GROUP" in message

    def test_with_overrides_revalidates(self) -> None:
        config = Config(source_group_prefix="Autopilot")

        assert config.with_overrides(dry_run=True).dry_run is True
        with pytest.raises(ConfigurationError):
            config.with_overrides(threshold_hours=0)

    def test_config_is_frozen(self) -> None:
        config = Config(source_group_prefix="Autopilot")

        with pytest.raises(AttributeError):
            config.dry_run = True  # type: ignore[misc]


class TestConfigFromEnv:
    """Tests for loading configuration from environment variables."""

    def test_from_env_defaults(self) -> None:
        with patch.dict(os.environ, {"SOURCE_GROUP_PREFIX": "Autopilot - "}, clear=True):
            config = Config.from_env()

        assert config.source_group_prefix == "Autopilot - "
        assert config.delayed_group_suffix == " - Delayed"
        assert config.threshold_hours == 8
        assert config.enable_audit_logging is True
        assert config.managed_identity_client_id is None
        assert config.sync_spec_path is None

    def test_from_env_all_values(self) -> None:
        env = {
            "SOURCE_GROUP_PREFIX": "Kiosk",
            "DELAYED_GROUP_SUFFIX": " (Delayed)",
            "QUALIFICATION_THRESHOLD_HOURS": "24",
            "DRY_RUN": "true",
            "MAX_CHANGES_PER_GROUP": "50",
            "ENABLE_AUDIT_LOGGING": "false",
            "GRAPH_BASE_URL": "https://graph.microsoft.us/v1.0/",
            "GRAPH_TIMEOUT": "60",
            "AZURE_CLIENT_ID": "12345678-1234-1234-1234-123456789012",
        }
        with patch.dict(os.environ, env, clear=True):
            config = Config.from_env()

        assert config.source_group_prefix == "Kiosk"
        assert config.delayed_group_suffix == " (Delayed)"
        assert config.threshold_hours == 24
        assert config.dry_run is True
        assert config.max_changes_per_group == 50
        assert config.enable_audit_logging is False
        assert config.graph_base_url == "https://graph.microsoft.us/v1.0"
        assert config.graph_timeout_seconds == 60
        assert config.managed_identity_client_id == "12345678-1234-1234-1234-123456789012"

    def test_from_env_missing_prefix(self) -> None:
        with patch.dict(os.environ, {}, clear=True):
            with pytest.raises(ConfigurationError) as exc_info:
                Config.from_env()

        assert "SOURCE_GROUP_PREFIX" in str(exc_info.value)

    def test_from_env_non_integer_threshold(self) -> None:
        env = {"SOURCE_GROUP_PREFIX": "Autopilot", "QUALIFICATION_THRESHOLD_HOURS": "eight"}
        with patch.dict(os.environ, env, clear=True):
            with pytest.raises(ConfigurationError) as exc_info:
                Config.from_env()

        assert "must be an integer" in str(exc_info.value)

    def test_spec_overrides_environment(self, tmp_path: Path) -> None:
        spec_file = tmp_path / "sync.yaml"
        spec_file.write_text("groupPrefix: Kiosk\nthresholdHours: 48\n")
        env = {"SOURCE_GROUP_PREFIX": "Autopilot", "QUALIFICATION_THRESHOLD_HOURS": "4"}

        with patch.dict(os.environ, env, clear=True):
            config = Config.from_env(spec_file)

        assert config.source_group_prefix == "Kiosk"
        assert config.threshold_hours == 48
        assert config.sync_spec_path == spec_file

    def test_spec_path_from_environment(self, tmp_path: Path) -> None:
        spec_file = tmp_path / "sync.yaml"
        spec_file.write_text("groupPrefix: Kiosk\ndryRun: true\n")

        with patch.dict(os.environ, {"SYNC_SPEC_PATH": str(spec_file)}, clear=True):
            config = Config.from_env()

        assert config.source_group_prefix == "Kiosk"
        assert config.dry_run is True

    def test_missing_spec_file(self, tmp_path: Path) -> None:
        with patch.dict(os.environ, {"SOURCE_GROUP_PREFIX": "Autopilot"}, clear=True):
            with pytest.raises(SpecLoadError):
                Config.from_env(tmp_path / "missing.yaml")
