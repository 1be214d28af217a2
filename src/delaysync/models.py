"""Pydantic models for directory records and the sync spec.

These models provide:
1. Type-safe parsing of Microsoft Graph payloads (camelCase aliases)
2. Normalization of join keys at the boundary
3. Validation of the optional YAML sync spec
"""

from __future__ import annotations

from typing import Annotated, Any

from pydantic import BaseModel, Field, field_validator

from .config import MAX_CHANGES_PER_GROUP_LIMIT, MAX_THRESHOLD_HOURS, MIN_THRESHOLD_HOURS

# Intune reports this for managed devices with no Entra registration
EMPTY_GUID = "00000000-0000-0000-0000-000000000000"

DEVICE_ODATA_TYPE = "#microsoft.graph.device"


def _normalize_external_id(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip().lower()
    if not text or text == EMPTY_GUID:
        return None
    return text


# =============================================================================
# Directory Records
# =============================================================================


class DeviceRecord(BaseModel):
    """Intune managed device, as returned by deviceManagement/managedDevices.

    ``enrolled_at`` is kept as the raw string Graph returned; parsing (and
    deciding what counts as malformed) belongs to the qualification step.
    """

    model_config = {"extra": "ignore", "frozen": True, "populate_by_name": True}

    id: str
    external_id: str | None = Field(None, alias="azureADDeviceId")
    enrolled_at: str | None = Field(None, alias="enrolledDateTime")
    device_name: str | None = Field(None, alias="deviceName")

    @field_validator("external_id", mode="before")
    @classmethod
    def normalize_external_id(cls, v: Any) -> str | None:
        return _normalize_external_id(v)

    @field_validator("enrolled_at", mode="before")
    @classmethod
    def stringify_enrolled_at(cls, v: Any) -> str | None:
        if v is None:
            return None
        return str(v)


class GroupMember(BaseModel):
    """Entry in a group's members listing.

    Non-device members (users, nested groups) carry no ``external_id``.
    """

    model_config = {"extra": "ignore", "frozen": True, "populate_by_name": True}

    id: str
    display_name: str | None = Field(None, alias="displayName")
    external_id: str | None = Field(None, alias="deviceId")
    odata_type: str | None = Field(None, alias="@odata.type")

    @field_validator("external_id", mode="before")
    @classmethod
    def normalize_external_id(cls, v: Any) -> str | None:
        return _normalize_external_id(v)

    @property
    def label(self) -> str:
        """Human-readable label for log lines."""
        return self.display_name or self.id

    @property
    def is_device(self) -> bool:
        return self.external_id is not None or self.odata_type == DEVICE_ODATA_TYPE


class DirectoryGroup(BaseModel):
    """Entra group (source or delayed)."""

    model_config = {"extra": "ignore", "frozen": True, "populate_by_name": True}

    # Empty id marks a delayed group that would be created (dry-run)
    id: str
    display_name: str = Field(alias="displayName")
    description: str | None = None

    @property
    def exists(self) -> bool:
        return bool(self.id)


# =============================================================================
# Sync Spec
# =============================================================================


class SyncSpec(BaseModel):
    """Optional YAML sync spec.

    Example:
        apiVersion: delaysync/v1
        kind: DelayedGroupSync
        spec:
          groupPrefix: "Intune - Autopilot"
          delayedSuffix: " - Delayed"
          thresholdHours: 8
    """

    model_config = {"extra": "forbid", "populate_by_name": True}

    group_prefix: Annotated[str, Field(min_length=1, max_length=256, alias="groupPrefix")]
    delayed_suffix: str | None = Field(None, min_length=1, alias="delayedSuffix")
    threshold_hours: int | None = Field(
        None, ge=MIN_THRESHOLD_HOURS, le=MAX_THRESHOLD_HOURS, alias="thresholdHours"
    )
    max_changes_per_group: int | None = Field(
        None, ge=1, le=MAX_CHANGES_PER_GROUP_LIMIT, alias="maxChangesPerGroup"
    )
    dry_run: bool | None = Field(None, alias="dryRun")

    @field_validator("group_prefix")
    @classmethod
    def validate_prefix(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("groupPrefix must not be blank")
        return v

    def to_config_overrides(self) -> dict[str, Any]:
        """Convert to Config field overrides; unset fields are left to the environment."""
        overrides: dict[str, Any] = {"source_group_prefix": self.group_prefix}

        if self.delayed_suffix is not None:
            overrides["delayed_group_suffix"] = self.delayed_suffix
        if self.threshold_hours is not None:
            overrides["threshold_hours"] = self.threshold_hours
        if self.max_changes_per_group is not None:
            overrides["max_changes_per_group"] = self.max_changes_per_group
        if self.dry_run is not None:
            overrides["dry_run"] = self.dry_run

        return overrides
