"""Configuration management with validation.

All settings come from environment variables and are validated at load
time, so a misconfigured deployment fails before any directory call.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field, replace
from datetime import timedelta
from pathlib import Path


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_DELAYED_GROUP_SUFFIX = " - Delayed"
DEFAULT_THRESHOLD_HOURS = 8
MIN_THRESHOLD_HOURS = 1
MAX_THRESHOLD_HOURS = 720  # 30 days

DEFAULT_MAX_CHANGES_PER_GROUP = 500
MAX_CHANGES_PER_GROUP_LIMIT = 10000

DEFAULT_GRAPH_BASE_URL = "https://graph.microsoft.com/v1.0"
DEFAULT_GRAPH_TIMEOUT_SECONDS = 30
MIN_GRAPH_TIMEOUT_SECONDS = 5
MAX_GRAPH_TIMEOUT_SECONDS = 300

MAX_GRAPH_RETRIES = 4
RETRY_BACKOFF_BASE_SECONDS = 2
MAX_RETRY_AFTER_SECONDS = 120

# Bounds on data pulled from Graph (prevent OOM on runaway pagination)
MAX_PAGES_PER_LISTING = 5000
MAX_SPEC_FILE_SIZE_BYTES = 1024 * 1024  # 1MB max sync spec

# Entra limits
MAX_GROUP_DISPLAY_NAME_LENGTH = 256
MAX_MAIL_NICKNAME_LENGTH = 64

# Input validation patterns
VALID_CLIENT_ID_PATTERN = r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$"
# Single quotes are escaped before use in OData filters, control characters are not
INVALID_NAME_CHARS_PATTERN = r"[\x00-\x1f]"


@dataclass(frozen=True)
class Config:
    """Reconciler configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing mid-run.
    """

    # Required
    source_group_prefix: str

    # Group pairing
    delayed_group_suffix: str = DEFAULT_DELAYED_GROUP_SUFFIX
    threshold_hours: int = DEFAULT_THRESHOLD_HOURS

    # Behavior
    dry_run: bool = False
    max_changes_per_group: int = DEFAULT_MAX_CHANGES_PER_GROUP
    enable_audit_logging: bool = True

    # Graph transport
    graph_base_url: str = DEFAULT_GRAPH_BASE_URL
    graph_timeout_seconds: int = DEFAULT_GRAPH_TIMEOUT_SECONDS

    # Identity: None means system-assigned managed identity
    managed_identity_client_id: str | None = None

    # Optional YAML sync spec the values above were merged from
    sync_spec_path: Path | None = field(default=None)

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if not self.source_group_prefix or not self.source_group_prefix.strip():
            errors.append("SOURCE_GROUP_PREFIX is required")
        elif re.search(INVALID_NAME_CHARS_PATTERN, self.source_group_prefix):
            errors.append("SOURCE_GROUP_PREFIX must not contain control characters")

        if not self.delayed_group_suffix or not self.delayed_group_suffix.strip():
            errors.append("DELAYED_GROUP_SUFFIX must not be empty")
        elif re.search(INVALID_NAME_CHARS_PATTERN, self.delayed_group_suffix):
            errors.append("DELAYED_GROUP_SUFFIX must not contain control characters")
        elif len(self.delayed_group_suffix) >= MAX_GROUP_DISPLAY_NAME_LENGTH:
            errors.append(
                f"DELAYED_GROUP_SUFFIX exceeds maximum length of {MAX_GROUP_DISPLAY_NAME_LENGTH}"
            )

        if self.source_group_prefix and self.delayed_group_suffix:
            # A prefix that itself ends with the suffix would select only delayed groups
            if self.source_group_prefix.endswith(self.delayed_group_suffix):
                errors.append("SOURCE_GROUP_PREFIX must not end with DELAYED_GROUP_SUFFIX")

        if not (MIN_THRESHOLD_HOURS <= self.threshold_hours <= MAX_THRESHOLD_HOURS):
            errors.append(
                f"QUALIFICATION_THRESHOLD_HOURS must be between {MIN_THRESHOLD_HOURS} "
                f"and {MAX_THRESHOLD_HOURS}"
            )

        if not (1 <= self.max_changes_per_group <= MAX_CHANGES_PER_GROUP_LIMIT):
            errors.append(
                f"MAX_CHANGES_PER_GROUP must be between 1 and {MAX_CHANGES_PER_GROUP_LIMIT}"
            )

        if not self.graph_base_url.startswith("https://"):
            errors.append(f"GRAPH_BASE_URL must use https: {self.graph_base_url}")

        if not (
            MIN_GRAPH_TIMEOUT_SECONDS <= self.graph_timeout_seconds <= MAX_GRAPH_TIMEOUT_SECONDS
        ):
            errors.append(
                f"GRAPH_TIMEOUT must be between {MIN_GRAPH_TIMEOUT_SECONDS} "
                f"and {MAX_GRAPH_TIMEOUT_SECONDS} seconds"
            )

        if self.managed_identity_client_id and not re.match(
            VALID_CLIENT_ID_PATTERN, self.managed_identity_client_id.lower()
        ):
            errors.append(
                f"AZURE_CLIENT_ID must be a valid GUID: {self.managed_identity_client_id}"
            )

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @property
    def threshold(self) -> timedelta:
        """Qualification threshold as a duration."""
        return timedelta(hours=self.threshold_hours)

    def with_overrides(self, **changes: object) -> Config:
        """Return a validated copy with the given fields replaced."""
        return replace(self, **changes)

    @classmethod
    def from_env(cls, spec_path: Path | None = None) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            SOURCE_GROUP_PREFIX: Display-name prefix selecting source groups (required)
            DELAYED_GROUP_SUFFIX: Suffix appended to derive delayed group names
                (default: " - Delayed")
            QUALIFICATION_THRESHOLD_HOURS: Minimum enrollment age in hours (default: 8)
            DRY_RUN: If "true", compute plans without writing (default: false)
            MAX_CHANGES_PER_GROUP: Per-group add+remove ceiling (default: 500)
            ENABLE_AUDIT_LOGGING: Emit per-change audit events (default: true)
            GRAPH_BASE_URL: Microsoft Graph endpoint (default: v1.0 global cloud)
            GRAPH_TIMEOUT: Per-request timeout in seconds (default: 30)
            AZURE_CLIENT_ID: Client ID of a user-assigned managed identity
            SYNC_SPEC_PATH: Optional YAML sync spec; values it sets override the above

        Args:
            spec_path: Sync spec path, takes precedence over SYNC_SPEC_PATH.

        Raises:
            ConfigurationError: If any value is malformed or out of bounds.
            SpecLoadError: If the sync spec cannot be loaded.
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None or value == "":
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

        values: dict[str, object] = {
            "source_group_prefix": os.environ.get("SOURCE_GROUP_PREFIX", ""),
            "delayed_group_suffix": os.environ.get(
                "DELAYED_GROUP_SUFFIX", DEFAULT_DELAYED_GROUP_SUFFIX
            ),
            "threshold_hours": get_int("QUALIFICATION_THRESHOLD_HOURS", DEFAULT_THRESHOLD_HOURS),
            "dry_run": get_bool("DRY_RUN", False),
            "max_changes_per_group": get_int(
                "MAX_CHANGES_PER_GROUP", DEFAULT_MAX_CHANGES_PER_GROUP
            ),
            "enable_audit_logging": get_bool("ENABLE_AUDIT_LOGGING", True),
            "graph_base_url": os.environ.get("GRAPH_BASE_URL", DEFAULT_GRAPH_BASE_URL).rstrip("/"),
            "graph_timeout_seconds": get_int("GRAPH_TIMEOUT", DEFAULT_GRAPH_TIMEOUT_SECONDS),
            "managed_identity_client_id": os.environ.get("AZURE_CLIENT_ID") or None,
        }

        if spec_path is None and os.environ.get("SYNC_SPEC_PATH"):
            spec_path = Path(os.environ["SYNC_SPEC_PATH"])

        if spec_path is not None:
            # Imported here to avoid a circular import (spec_loader reads our bounds)
            from .spec_loader import load_sync_spec

            spec = load_sync_spec(spec_path)
            values.update(spec.to_config_overrides())
            values["sync_spec_path"] = spec_path

        return cls(**values)  # type: ignore[arg-type]
