"""Configuration management with validation.

Configuration is validated at load time so that a misconfigured operator
fails before it issues a single call against the AWS control plane.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any


class FailedResourcePolicy(str, Enum):
    """What to do with a resource that reports a terminal failure state."""

    RETAIN = "retain"
    DELETE = "delete"


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_OPERATION_TIMEOUT_SECONDS = 600
MIN_OPERATION_TIMEOUT_SECONDS = 1
MAX_OPERATION_TIMEOUT_SECONDS = 3600

DEFAULT_POLL_MIN_TIMEOUT_SECONDS = 5
DEFAULT_POLL_MAX_INTERVAL_SECONDS = 10
DEFAULT_NOT_FOUND_CHECKS = 20

DEFAULT_STATE_FILE = "/state/provisioner-state.json"

# Limits on local files
MAX_SPEC_FILE_SIZE_BYTES = 1024 * 1024  # 1MB max manifest file
MAX_STATE_FILE_SIZE_BYTES = 16 * 1024 * 1024  # 16MB max state file
MAX_RESOURCES_PER_MANIFEST = 500

# Input validation patterns
VALID_REGION_PATTERN = r"^[a-z]{2}(-[a-z]+)+-\d+$"
VALID_PARTITIONS = ("aws", "aws-cn", "aws-us-gov")


@dataclass(frozen=True)
class TimeoutConfig:
    """Per-operation wait budgets in seconds."""

    create: int = DEFAULT_OPERATION_TIMEOUT_SECONDS
    update: int = DEFAULT_OPERATION_TIMEOUT_SECONDS
    delete: int = DEFAULT_OPERATION_TIMEOUT_SECONDS


@dataclass(frozen=True)
class Config:
    """Operator configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing mid-apply.
    """

    # Required fields
    region: str

    # AWS context
    profile: str | None = None
    partition: str = "aws"

    # Paths
    specs_dir: Path = field(default_factory=lambda: Path("/specs"))
    state_file: Path = field(default_factory=lambda: Path(DEFAULT_STATE_FILE))

    # Timing
    timeouts: TimeoutConfig = field(default_factory=TimeoutConfig)
    poll_min_timeout_seconds: int = DEFAULT_POLL_MIN_TIMEOUT_SECONDS
    poll_max_interval_seconds: int = DEFAULT_POLL_MAX_INTERVAL_SECONDS

    # Behavior
    failed_resource_policy: FailedResourcePolicy = FailedResourcePolicy.RETAIN
    prune: bool = False
    dry_run: bool = False
    ignore_tag_prefixes: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if not self.region:
            errors.append("AWS_REGION is required")
        elif not re.match(VALID_REGION_PATTERN, self.region):
            errors.append(f"AWS_REGION must be a valid AWS region: {self.region}")

        if self.partition not in VALID_PARTITIONS:
            errors.append(
                f"AWS_PARTITION must be one of {list(VALID_PARTITIONS)}: {self.partition}"
            )

        for name in ("create", "update", "delete"):
            value = getattr(self.timeouts, name)
            if not MIN_OPERATION_TIMEOUT_SECONDS <= value <= MAX_OPERATION_TIMEOUT_SECONDS:
                errors.append(
                    f"{name.upper()}_TIMEOUT must be between {MIN_OPERATION_TIMEOUT_SECONDS} "
                    f"and {MAX_OPERATION_TIMEOUT_SECONDS} seconds"
                )

        if self.poll_max_interval_seconds < 1:
            errors.append("POLL_MAX_INTERVAL must be at least 1 second")
        if self.poll_min_timeout_seconds < 1:
            errors.append("POLL_MIN_TIMEOUT must be at least 1 second")
        elif self.poll_min_timeout_seconds > self.poll_max_interval_seconds:
            errors.append("POLL_MIN_TIMEOUT cannot exceed POLL_MAX_INTERVAL")

        # Path validation
        if not self.specs_dir.exists():
            errors.append(f"Specs directory does not exist: {self.specs_dir}")

        if not self.state_file.parent.exists():
            errors.append(f"State file directory does not exist: {self.state_file.parent}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @classmethod
    def from_env(cls, **overrides: Any) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            AWS_REGION: Target region (falls back to AWS_DEFAULT_REGION)
            AWS_PROFILE: Optional named profile for the boto3 session
            AWS_PARTITION: aws, aws-cn or aws-us-gov (default: aws)
            SPECS_DIR: Path to YAML manifests (default: /specs)
            STATE_FILE: Path to the local state file
            CREATE_TIMEOUT / UPDATE_TIMEOUT / DELETE_TIMEOUT: Wait budgets (default: 600)
            POLL_MIN_TIMEOUT: Minimum wait between state refreshes (default: 5)
            POLL_MAX_INTERVAL: Cap for the refresh backoff (default: 10)
            FAILED_RESOURCE_POLICY: retain or delete (default: retain)
            PRUNE: If "true", delete recorded resources missing from the manifests
            DRY_RUN: If "true", plan only without calling mutating APIs
            IGNORE_TAG_PREFIXES: Comma separated tag key prefixes to ignore on read

        Keyword arguments that are not None override the matching field.
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_bool(key: str, default: bool) -> bool:
            value = os.environ.get(key, "").lower()
            if not value:
                return default
            return value in ("true", "1", "yes")

        def get_policy(value: str | None) -> FailedResourcePolicy:
            if not value:
                return FailedResourcePolicy.RETAIN
            try:
                return FailedResourcePolicy(value.lower())
            except ValueError as e:
                valid = [p.value for p in FailedResourcePolicy]
                raise ConfigurationError(
                    f"FAILED_RESOURCE_POLICY must be one of {valid}: {value}"
                ) from e

        prefixes = tuple(
            p.strip() for p in os.environ.get("IGNORE_TAG_PREFIXES", "").split(",") if p.strip()
        )

        values: dict[str, Any] = {
            "region": os.environ.get("AWS_REGION") or os.environ.get("AWS_DEFAULT_REGION", ""),
            "profile": os.environ.get("AWS_PROFILE") or None,
            "partition": os.environ.get("AWS_PARTITION", "aws"),
            "specs_dir": Path(os.environ.get("SPECS_DIR", "/specs")),
            "state_file": Path(os.environ.get("STATE_FILE", DEFAULT_STATE_FILE)),
            "timeouts": TimeoutConfig(
                create=get_int("CREATE_TIMEOUT", DEFAULT_OPERATION_TIMEOUT_SECONDS),
                update=get_int("UPDATE_TIMEOUT", DEFAULT_OPERATION_TIMEOUT_SECONDS),
                delete=get_int("DELETE_TIMEOUT", DEFAULT_OPERATION_TIMEOUT_SECONDS),
            ),
            "poll_min_timeout_seconds": get_int(
                "POLL_MIN_TIMEOUT", DEFAULT_POLL_MIN_TIMEOUT_SECONDS
            ),
            "poll_max_interval_seconds": get_int(
                "POLL_MAX_INTERVAL", DEFAULT_POLL_MAX_INTERVAL_SECONDS
            ),
            "failed_resource_policy": get_policy(os.environ.get("FAILED_RESOURCE_POLICY")),
            "prune": get_bool("PRUNE", False),
            "dry_run": get_bool("DRY_RUN", False),
            "ignore_tag_prefixes": prefixes,
        }
        # Explicit overrides (e.g. CLI options) win over the environment
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)
