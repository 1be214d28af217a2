"""Source → delayed group pairing.

Each source group has exactly one delayed group, named by appending a
fixed suffix. The delayed group is looked up by exact display name and
created on first encounter.
"""

from __future__ import annotations

import logging
import re
from typing import Protocol

from .config import MAX_GROUP_DISPLAY_NAME_LENGTH, MAX_MAIL_NICKNAME_LENGTH
from .graph_client import GraphAuthenticationError, GraphError
from .models import DirectoryGroup
from .security import log_security_audit_event

logger = logging.getLogger(__name__)

_WHITESPACE = re.compile(r"\s+")


class GroupProvisioningError(Exception):
    """Raised when a delayed group can neither be found nor created."""

    pass


class GroupDirectory(Protocol):
    """The part of the Graph client the resolver needs."""

    def find_groups_by_name(self, display_name: str) -> list[DirectoryGroup]: ...

    def create_group(
        self, display_name: str, description: str, mail_nickname: str
    ) -> DirectoryGroup: ...


def delayed_group_name(source_name: str, suffix: str) -> str:
    return source_name + suffix


def is_delayed_group_name(name: str, suffix: str) -> bool:
    return name.endswith(suffix)


def mail_nickname_for(display_name: str) -> str:
    """Derive a mail nickname: the display name with all whitespace removed."""
    return _WHITESPACE.sub("", display_name)[:MAX_MAIL_NICKNAME_LENGTH]


class GroupPairResolver:
    """Find or create the delayed group for a source group.

    Lookup and creation are not transactional with later membership
    writes. Two concurrent runs may both create the group; that race is
    accepted and surfaces as a duplicate-name warning on later lookups.
    """

    def __init__(
        self,
        directory: GroupDirectory,
        suffix: str,
        threshold_hours: int,
        *,
        dry_run: bool = False,
        audit: bool = True,
        log: logging.Logger | None = None,
    ) -> None:
        self._directory = directory
        self._suffix = suffix
        self._threshold_hours = threshold_hours
        self._dry_run = dry_run
        self._audit = audit
        self._log = log or logger

    @property
    def suffix(self) -> str:
        return self._suffix

    def resolve(self, source: DirectoryGroup) -> DirectoryGroup:
        """Return the delayed group paired with ``source``.

        In dry-run mode a missing group is not created; a placeholder with
        an empty id is returned instead.

        Raises:
            GroupProvisioningError: If lookup or creation fails.
            GraphAuthenticationError: If Graph rejects the credential.
        """
        name = delayed_group_name(source.display_name, self._suffix)

        if len(name) > MAX_GROUP_DISPLAY_NAME_LENGTH:
            raise GroupProvisioningError(
                f"Delayed group name for '{source.display_name}' exceeds "
                f"{MAX_GROUP_DISPLAY_NAME_LENGTH} characters"
            )

        try:
            matches = self._directory.find_groups_by_name(name)
        except GraphAuthenticationError:
            raise
        except GraphError as e:
            raise GroupProvisioningError(f"Lookup of delayed group '{name}' failed: {e}") from e

        if matches:
            if len(matches) > 1:
                self._log.warning(
                    "Multiple delayed groups share a name, using the first",
                    extra={
                        "delayed_group": name,
                        "group_ids": [g.id for g in matches],
                    },
                )
            return matches[0]

        description = (
            f"Devices from '{source.display_name}' enrolled at least "
            f"{self._threshold_hours} hours ago. Managed automatically."
        )

        if self._dry_run:
            self._log.info(
                "Dry-run: delayed group would be created",
                extra={"source_group": source.display_name, "delayed_group": name},
            )
            return DirectoryGroup(id="", display_name=name, description=description)

        try:
            created = self._directory.create_group(name, description, mail_nickname_for(name))
        except GraphAuthenticationError:
            raise
        except GraphError as e:
            if self._audit:
                log_security_audit_event(
                    "group_created", name, action="create", result="failure", audit_logger=self._log
                )
            raise GroupProvisioningError(f"Creation of delayed group '{name}' failed: {e}") from e

        self._log.info(
            "Created delayed group",
            extra={
                "source_group": source.display_name,
                "delayed_group": created.display_name,
                "group_id": created.id,
            },
        )
        if self._audit:
            log_security_audit_event(
                "group_created",
                created.id,
                target_object=created.display_name,
                action="create",
                result="success",
                audit_logger=self._log,
            )
        return created
