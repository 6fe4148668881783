"""Configuration management with validation.

Every component receives its configuration explicitly through its constructor;
there is no module-level mutable configuration. Invalid settings are rejected
at load time so that no remote call is ever made with a half-valid setup.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_WAITER_DELAY_SECONDS = 30
MIN_WAITER_DELAY_SECONDS = 0  # 0 is allowed for tests and local fakes
MAX_WAITER_DELAY_SECONDS = 300

DEFAULT_WAITER_MAX_ATTEMPTS = 120
MIN_WAITER_MAX_ATTEMPTS = 1
MAX_WAITER_MAX_ATTEMPTS = 10000

DEFAULT_PRODUCTION_ENV_NAME = "production"

# Parameter store delete API accepts at most 10 names per call
MAX_SECRET_DELETE_BATCH = 10

MAX_STACK_NAME_LENGTH = 128
MAX_SPEC_FILE_SIZE_BYTES = 1024 * 1024  # 1MB max deployment spec
MAX_TEMPLATE_FILE_SIZE_BYTES = 1024 * 1024  # engine limit for templates passed by URL

# Names that cannot be used as environment names because they namespace
# other data in the parameter store
RESERVED_ENV_NAMES: frozenset[str] = frozenset({"external"})

# Input validation patterns
VALID_REGION_PATTERN = r"^[a-z]{2}(-gov|-iso[a-z]?)?-[a-z]+-\d+$"
VALID_ENV_NAME_PATTERN = r"^[a-zA-Z][a-zA-Z0-9-]{0,62}$"
VALID_STACK_NAME_PATTERN = r"^[a-zA-Z][-a-zA-Z0-9]*$"


def env_bool(key: str, default: bool) -> bool:
    """A boolean environment variable; blank or unset means the default."""
    value = os.environ.get(key, "").lower()
    if not value:
        return default
    return value in ("true", "1", "yes")


def dry_run_from_env() -> bool:
    """STACKOPS_DRY_RUN on its own, for commands that need no region."""
    return env_bool("STACKOPS_DRY_RUN", True)


@dataclass(frozen=True)
class Config:
    """Deployment tooling configuration.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing at runtime.
    """

    region: str

    # Environment
    env_name: str | None = None
    production_env_name: str = DEFAULT_PRODUCTION_ENV_NAME

    # Template storage
    template_bucket: str | None = None
    template_bucket_region: str | None = None
    template_bucket_folder: str | None = None

    # Waiting
    waiter_delay_seconds: int = DEFAULT_WAITER_DELAY_SECONDS
    waiter_max_attempts: int = DEFAULT_WAITER_MAX_ATTEMPTS

    # Conventions
    infer_capabilities: bool = True
    infer_parameter_defaults: bool = True
    key_pair_name: str | None = None

    # Behavior
    dry_run: bool = True

    # Artifact source
    github_token: str | None = None

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if not self.region:
            errors.append("STACKOPS_REGION is required")
        elif not re.match(VALID_REGION_PATTERN, self.region):
            errors.append(f"STACKOPS_REGION must be a valid region name: {self.region}")

        if self.env_name is not None:
            if self.env_name in RESERVED_ENV_NAMES:
                errors.append(
                    f"{self.env_name} is a reserved word and cannot be used as an environment name"
                )
            elif not re.match(VALID_ENV_NAME_PATTERN, self.env_name):
                errors.append(
                    f"STACKOPS_ENV_NAME must match pattern {VALID_ENV_NAME_PATTERN}: "
                    f"{self.env_name}"
                )

        if self.template_bucket_region and not re.match(
            VALID_REGION_PATTERN, self.template_bucket_region
        ):
            errors.append(
                "STACKOPS_TEMPLATE_BUCKET_REGION must be a valid region name: "
                f"{self.template_bucket_region}"
            )

        if not (
            MIN_WAITER_DELAY_SECONDS <= self.waiter_delay_seconds <= MAX_WAITER_DELAY_SECONDS
        ):
            errors.append(
                f"STACKOPS_WAITER_DELAY must be between {MIN_WAITER_DELAY_SECONDS} "
                f"and {MAX_WAITER_DELAY_SECONDS} seconds"
            )

        if not (
            MIN_WAITER_MAX_ATTEMPTS <= self.waiter_max_attempts <= MAX_WAITER_MAX_ATTEMPTS
        ):
            errors.append(
                f"STACKOPS_WAITER_MAX_ATTEMPTS must be between {MIN_WAITER_MAX_ATTEMPTS} "
                f"and {MAX_WAITER_MAX_ATTEMPTS}"
            )

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @property
    def is_production(self) -> bool:
        """True when the configured environment is the production environment."""
        return self.env_name is not None and self.env_name == self.production_env_name

    @classmethod
    def from_env(cls, **overrides: object) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            STACKOPS_REGION: Region all stacks are deployed to (required)
            STACKOPS_ENV_NAME: Environment name, e.g. "qa" (blank means none)
            STACKOPS_PRODUCTION_ENV_NAME: Name of the production env (default: production)
            STACKOPS_TEMPLATE_BUCKET: Bucket templates are uploaded to
            STACKOPS_TEMPLATE_BUCKET_REGION: Region of the template bucket
            STACKOPS_TEMPLATE_BUCKET_FOLDER: Key prefix inside the template bucket
            STACKOPS_WAITER_DELAY: Seconds between status polls (default: 30)
            STACKOPS_WAITER_MAX_ATTEMPTS: Polls before a wait gives up (default: 120)
            STACKOPS_INFER_CAPABILITIES: Infer IAM capabilities from templates (default: true)
            STACKOPS_INFER_PARAMETER_DEFAULTS: Infer conventional defaults (default: true)
            STACKOPS_KEY_PAIR_NAME: Default for KeyName/KeyPairName parameters
            STACKOPS_DRY_RUN: If "false", mutations are sent (default: true)
            STACKOPS_GITHUB_TOKEN: Token for fetching secret specifications

        Keyword overrides (e.g. from command-line options) win over the
        environment when they are not None.
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_optional(key: str) -> str | None:
            value = os.environ.get(key, "").strip()
            return value or None

        values: dict[str, object] = {
            "region": os.environ.get("STACKOPS_REGION", ""),
            "env_name": get_optional("STACKOPS_ENV_NAME"),
            "production_env_name": os.environ.get(
                "STACKOPS_PRODUCTION_ENV_NAME", DEFAULT_PRODUCTION_ENV_NAME
            ),
            "template_bucket": get_optional("STACKOPS_TEMPLATE_BUCKET"),
            "template_bucket_region": get_optional("STACKOPS_TEMPLATE_BUCKET_REGION"),
            "template_bucket_folder": get_optional("STACKOPS_TEMPLATE_BUCKET_FOLDER"),
            "waiter_delay_seconds": get_int("STACKOPS_WAITER_DELAY", DEFAULT_WAITER_DELAY_SECONDS),
            "waiter_max_attempts": get_int(
                "STACKOPS_WAITER_MAX_ATTEMPTS", DEFAULT_WAITER_MAX_ATTEMPTS
            ),
            "infer_capabilities": env_bool("STACKOPS_INFER_CAPABILITIES", True),
            "infer_parameter_defaults": env_bool("STACKOPS_INFER_PARAMETER_DEFAULTS", True),
            "key_pair_name": get_optional("STACKOPS_KEY_PAIR_NAME"),
            "dry_run": dry_run_from_env(),
            "github_token": get_optional("STACKOPS_GITHUB_TOKEN"),
        }
        values.update({key: value for key, value in overrides.items() if value is not None})

        # Allow a blank env_name but normalize it to None
        if values.get("env_name") == "":
            values["env_name"] = None

        return cls(**values)  # type: ignore[arg-type]
