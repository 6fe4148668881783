"""Tests for configuration loading."""

import os
from unittest.mock import patch

import pytest

from stackops.config import (
    DEFAULT_WAITER_DELAY_SECONDS,
    DEFAULT_WAITER_MAX_ATTEMPTS,
    Config,
    ConfigurationError,
    dry_run_from_env,
)


class TestConfig:
    """Tests for Config class."""

    def test_valid_config(self) -> None:
        """Test creating a valid configuration."""
        config = Config(region="us-east-1", env_name="qa")

        assert config.region == "us-east-1"
        assert config.env_name == "qa"
        assert config.dry_run is True
        assert config.waiter_delay_seconds == DEFAULT_WAITER_DELAY_SECONDS

    def test_missing_region(self) -> None:
        """Test that missing region raises error."""
        with pytest.raises(ConfigurationError) as exc_info:
            Config(region="")

        assert "STACKOPS_REGION" in str(exc_info.value)

    def test_invalid_region(self) -> None:
        """Region names must look like AWS region names."""
        with pytest.raises(ConfigurationError) as exc_info:
            Config(region="westeurope")

        assert "valid region name" in str(exc_info.value)

    def test_reserved_env_name(self) -> None:
        """The reserved name 'external' cannot be an environment."""
        with pytest.raises(ConfigurationError) as exc_info:
            Config(region="us-east-1", env_name="external")

        assert "reserved word" in str(exc_info.value)

    def test_invalid_env_name(self) -> None:
        """Environment names must start with a letter."""
        with pytest.raises(ConfigurationError):
            Config(region="us-east-1", env_name="1qa")

    def test_invalid_waiter_delay(self) -> None:
        """Test that out-of-range waiter delay raises error."""
        with pytest.raises(ConfigurationError) as exc_info:
            Config(region="us-east-1", waiter_delay_seconds=301)

        assert "STACKOPS_WAITER_DELAY" in str(exc_info.value)

    def test_collects_every_violation(self) -> None:
        """All problems are reported in one error."""
        with pytest.raises(ConfigurationError) as exc_info:
            Config(region="", waiter_max_attempts=0, template_bucket_region="nowhere")

        message = str(exc_info.value)
        assert "STACKOPS_REGION" in message
        assert "STACKOPS_WAITER_MAX_ATTEMPTS" in message
        assert "STACKOPS_TEMPLATE_BUCKET_REGION" in message

    def test_is_production(self) -> None:
        """The production flag compares against the configured production name."""
        assert Config(region="us-east-1", env_name="production").is_production
        assert not Config(region="us-east-1", env_name="qa").is_production
        assert not Config(region="us-east-1").is_production
        assert Config(
            region="us-east-1", env_name="prod", production_env_name="prod"
        ).is_production


class TestConfigFromEnv:
    """Tests for Config.from_env."""

    def test_from_env_defaults(self) -> None:
        """Test loading config from environment variables with defaults."""
        env = {"STACKOPS_REGION": "eu-west-1"}

        with patch.dict(os.environ, env, clear=False):
            config = Config.from_env()

        assert config.region == "eu-west-1"
        assert config.env_name is None
        assert config.dry_run is True
        assert config.infer_capabilities is True
        assert config.waiter_max_attempts == DEFAULT_WAITER_MAX_ATTEMPTS

    def test_from_env_all_settings(self) -> None:
        """Every documented variable is read."""
        env = {
            "STACKOPS_REGION": "us-west-2",
            "STACKOPS_ENV_NAME": "qa",
            "STACKOPS_PRODUCTION_ENV_NAME": "prod",
            "STACKOPS_TEMPLATE_BUCKET": "templates",
            "STACKOPS_TEMPLATE_BUCKET_REGION": "us-east-1",
            "STACKOPS_TEMPLATE_BUCKET_FOLDER": "cfn",
            "STACKOPS_WAITER_DELAY": "5",
            "STACKOPS_WAITER_MAX_ATTEMPTS": "20",
            "STACKOPS_INFER_CAPABILITIES": "false",
            "STACKOPS_INFER_PARAMETER_DEFAULTS": "false",
            "STACKOPS_KEY_PAIR_NAME": "deploy",
            "STACKOPS_DRY_RUN": "false",
            "STACKOPS_GITHUB_TOKEN": "token",
        }

        with patch.dict(os.environ, env, clear=False):
            config = Config.from_env()

        assert config.env_name == "qa"
        assert config.production_env_name == "prod"
        assert config.template_bucket == "templates"
        assert config.template_bucket_region == "us-east-1"
        assert config.template_bucket_folder == "cfn"
        assert config.waiter_delay_seconds == 5
        assert config.waiter_max_attempts == 20
        assert config.infer_capabilities is False
        assert config.infer_parameter_defaults is False
        assert config.key_pair_name == "deploy"
        assert config.dry_run is False
        assert config.github_token == "token"

    def test_blank_env_name_is_none(self) -> None:
        """A blank environment name means no environment."""
        env = {"STACKOPS_REGION": "us-east-1", "STACKOPS_ENV_NAME": "  "}

        with patch.dict(os.environ, env, clear=False):
            config = Config.from_env()

        assert config.env_name is None

    def test_non_integer_delay(self) -> None:
        """Non-numeric integers are rejected with the variable name."""
        env = {"STACKOPS_REGION": "us-east-1", "STACKOPS_WAITER_DELAY": "soon"}

        with patch.dict(os.environ, env, clear=False):
            with pytest.raises(ConfigurationError) as exc_info:
                Config.from_env()

        assert "STACKOPS_WAITER_DELAY" in str(exc_info.value)

    def test_overrides_win_unless_none(self) -> None:
        """Keyword overrides replace environment values; None keeps them."""
        env = {"STACKOPS_REGION": "us-east-1", "STACKOPS_ENV_NAME": "qa"}

        with patch.dict(os.environ, env, clear=False):
            config = Config.from_env(region="eu-central-1", env_name=None, dry_run=False)

        assert config.region == "eu-central-1"
        assert config.env_name == "qa"
        assert config.dry_run is False

    @pytest.mark.parametrize(
        ("value", "expected"),
        [("false", False), ("0", False), ("TRUE", True), ("yes", True), ("", True)],
    )
    def test_dry_run_without_region(self, value: str, expected: bool) -> None:
        """The dry-run setting alone is readable without a region."""
        with patch.dict(os.environ, {"STACKOPS_DRY_RUN": value}, clear=True):
            assert dry_run_from_env() is expected
