"""Apply a reconcile plan to the directory, one member at a time."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Protocol

from .engine import ReconcilePlan
from .graph_client import GraphAuthenticationError, GraphError
from .models import DirectoryGroup, GroupMember
from .security import log_security_audit_event

logger = logging.getLogger(__name__)


class ChangeAction(str, Enum):
    ADD = "add"
    REMOVE = "remove"


class MembershipWriter(Protocol):
    """The part of the Graph client the applier needs."""

    def add_member(self, group_id: str, member_id: str) -> bool: ...

    def remove_member(self, group_id: str, member_id: str) -> bool: ...


@dataclass
class ChangeFailure:
    member: GroupMember
    action: ChangeAction
    error: str
    status_code: int | None = None


@dataclass
class ApplyResult:
    """Outcome of applying one plan.

    ``added``/``removed`` include members Graph reported as already in the
    desired state; those are also counted in ``already_converged``.
    """

    added: list[GroupMember] = field(default_factory=list)
    removed: list[GroupMember] = field(default_factory=list)
    failed: list[ChangeFailure] = field(default_factory=list)
    already_converged: int = 0
    dry_run: bool = False

    @property
    def success(self) -> bool:
        return not self.failed


class ChangeApplier:
    """Execute adds and removes independently.

    A failed operation is logged and recorded; the remaining operations in
    the same plan still run. Drift left by a failure is corrected on the
    next run, because every run recomputes the full diff.
    """

    def __init__(
        self,
        writer: MembershipWriter,
        *,
        dry_run: bool = False,
        audit: bool = True,
        log: logging.Logger | None = None,
    ) -> None:
        self._writer = writer
        self._dry_run = dry_run
        self._audit = audit
        self._log = log or logger

    def apply(self, group: DirectoryGroup, plan: ReconcilePlan) -> ApplyResult:
        """Apply ``plan`` to ``group``.

        Raises:
            GraphAuthenticationError: If Graph rejects the credential. Every
                other failure is recorded in the result.
        """
        result = ApplyResult(dry_run=self._dry_run)

        for member in plan.to_add:
            self._apply_one(group, member, ChangeAction.ADD, result)

        for member in plan.to_remove:
            self._apply_one(group, member, ChangeAction.REMOVE, result)

        return result

    def _apply_one(
        self,
        group: DirectoryGroup,
        member: GroupMember,
        action: ChangeAction,
        result: ApplyResult,
    ) -> None:
        applied = result.added if action is ChangeAction.ADD else result.removed
        log_extra = {
            "group": group.display_name,
            "group_id": group.id,
            "member": member.label,
            "member_id": member.id,
            "external_id": member.external_id,
            "action": action.value,
        }

        if self._dry_run:
            self._log.info("Dry-run: membership change planned", extra=log_extra)
            applied.append(member)
            self._audit_event(group, member, action, "planned")
            return

        try:
            if action is ChangeAction.ADD:
                changed = self._writer.add_member(group.id, member.id)
            else:
                changed = self._writer.remove_member(group.id, member.id)
        except GraphAuthenticationError:
            raise
        except GraphError as e:
            self._log.error(
                "Membership change failed",
                extra={**log_extra, "error": str(e), "status_code": e.status_code},
            )
            result.failed.append(
                ChangeFailure(
                    member=member, action=action, error=str(e), status_code=e.status_code
                )
            )
            self._audit_event(group, member, action, "failure")
            return

        applied.append(member)
        if not changed:
            result.already_converged += 1
            self._log.info("Membership already in desired state", extra=log_extra)
        else:
            self._log.info("Membership change applied", extra=log_extra)
        self._audit_event(group, member, action, "success")

    def _audit_event(
        self, group: DirectoryGroup, member: GroupMember, action: ChangeAction, outcome: str
    ) -> None:
        if not self._audit:
            return
        log_security_audit_event(
            "membership_change",
            group.id or group.display_name,
            target_object=member.id,
            action=action.value,
            result=outcome,
            audit_logger=self._log,
        )
