"""Membership diff between a source group and its delayed group.

The delayed group converges on the set of source devices that have been
enrolled for at least the threshold. Adds and removes follow different
rules:

- ADD is gated by qualification: a source device joins the delayed group
  only once it qualifies.
- REMOVE is gated by source membership alone: a delayed member leaves
  only when its device is no longer in the source group. Qualification is
  never re-checked for removal, so a device that qualified once stays
  until it leaves the source.

Both sides are matched on the device's external (Entra device) id, never
on the directory object id. Everything here is pure: no I/O, no clock,
no logging.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from .models import GroupMember
from .qualification import Qualification, evaluate
from .registry import DeviceRegistryIndex


@dataclass
class ReconcilePlan:
    """Changes needed to converge one delayed group.

    Attributes:
        to_add: Qualified source members missing from the delayed group.
        to_remove: Delayed members whose device left the source group.
        not_qualified: Source devices enrolled too recently.
        unresolved: Source devices with no inventory record.
        invalid: Source devices whose enrollment time is missing or malformed.
        ignored: Source members that are not devices (users, groups).
        skipped: True when the source group was empty and nothing was computed.
    """

    to_add: list[GroupMember] = field(default_factory=list)
    to_remove: list[GroupMember] = field(default_factory=list)
    not_qualified: list[GroupMember] = field(default_factory=list)
    unresolved: list[GroupMember] = field(default_factory=list)
    invalid: list[GroupMember] = field(default_factory=list)
    ignored: list[GroupMember] = field(default_factory=list)
    skipped: bool = False

    @property
    def change_count(self) -> int:
        return len(self.to_add) + len(self.to_remove)

    @property
    def is_empty(self) -> bool:
        return self.change_count == 0


def _unique_by_id(members: Iterable[GroupMember]) -> list[GroupMember]:
    seen: set[str] = set()
    unique = []
    for member in members:
        if member.id in seen:
            continue
        seen.add(member.id)
        unique.append(member)
    return unique


def reconcile(
    source_members: Sequence[GroupMember],
    delayed_members: Sequence[GroupMember],
    index: DeviceRegistryIndex,
    now: datetime,
    threshold: timedelta,
) -> ReconcilePlan:
    """Compute the add and remove sets for one source/delayed pair.

    An empty source listing yields a skipped plan rather than "remove
    everything", so a transient empty fetch can never wipe a delayed group.

    Non-device members are treated differently on each side. In the source
    group they are ignored (reported in ``plan.ignored``). In the delayed
    group they are removed: a user, nested group or device object without
    an external id can never match a source device, so the delayed group
    holds only devices copied from the source.

    Args:
        source_members: Current members of the source group.
        delayed_members: Current members of the delayed group (empty if
            the group is new or its listing failed).
        index: Device registry for enrollment lookups.
        now: Reference time for the whole run (timezone-aware).
        threshold: Minimum enrollment age to qualify.

    Returns:
        ReconcilePlan; output order follows input order.
    """
    if not source_members:
        return ReconcilePlan(skipped=True)

    plan = ReconcilePlan()
    source = _unique_by_id(source_members)
    delayed = _unique_by_id(delayed_members)

    source_external_ids = {m.external_id for m in source if m.external_id}
    delayed_external_ids = {m.external_id for m in delayed if m.external_id}
    queued: set[str] = set()

    for member in source:
        if not member.is_device:
            plan.ignored.append(member)
            continue

        match evaluate(member, index, now, threshold):
            case Qualification.QUALIFIED:
                # external_id is set: evaluate() only qualifies resolved devices
                assert member.external_id is not None
                if member.external_id in delayed_external_ids or member.external_id in queued:
                    continue
                queued.add(member.external_id)
                plan.to_add.append(member)
            case Qualification.NOT_QUALIFIED:
                plan.not_qualified.append(member)
            case Qualification.UNRESOLVED:
                plan.unresolved.append(member)
            case Qualification.INVALID:
                plan.invalid.append(member)

    # Removal ignores qualification entirely; only absence from source counts
    for member in delayed:
        if member.external_id is None or member.external_id not in source_external_ids:
            plan.to_remove.append(member)

    return plan
