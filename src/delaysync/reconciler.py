"""Run orchestration for delayed group reconciliation.

One run is a single full pass:
1. List source groups by prefix (groups already carrying the delayed
   suffix are excluded)
2. Build the device registry from the full Intune inventory
3. For each source group, sequentially:
   fetch members → resolve delayed group → fetch delayed members →
   compute plan → apply plan
4. Log a run summary

Every run recomputes the full diff from current directory state, so a run
with no intervening change is a no-op and any drift left by a partial
failure is corrected by the next run.

Cancellation is cooperative: shutdown() sets an event that is checked
between groups only, never while a group's changes are being applied.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any, Protocol

from .applier import ApplyResult, ChangeApplier
from .config import Config
from .engine import ReconcilePlan, reconcile
from .graph_client import FetchResult, GraphAuthenticationError, GraphClient
from .models import DeviceRecord, DirectoryGroup, GroupMember
from .registry import DeviceRegistryIndex
from .resolver import GroupPairResolver, GroupProvisioningError, is_delayed_group_name
from .security import get_managed_identity_credential

logger = logging.getLogger(__name__)


class RunAbortedError(Exception):
    """Raised when a foundational listing fails and the run cannot proceed."""

    pass


class GroupOutcome(str, Enum):
    """What happened to one source group during a run."""

    RECONCILED = "reconciled"
    NO_CHANGES = "no_changes"
    SKIPPED_EMPTY = "skipped_empty"
    MEMBER_FETCH_FAILED = "member_fetch_failed"
    PROVISIONING_FAILED = "provisioning_failed"
    BLOCKED = "blocked"  # change count above MAX_CHANGES_PER_GROUP
    PARTIAL = "partial"  # some membership writes failed
    FAILED = "failed"  # unexpected error while reconciling the group


FAILED_OUTCOMES = frozenset(
    {
        GroupOutcome.MEMBER_FETCH_FAILED,
        GroupOutcome.PROVISIONING_FAILED,
        GroupOutcome.BLOCKED,
        GroupOutcome.PARTIAL,
        GroupOutcome.FAILED,
    }
)


class DirectoryClient(Protocol):
    """Directory operations a run needs (implemented by GraphClient)."""

    def list_groups_by_prefix(self, prefix: str) -> FetchResult[DirectoryGroup]: ...

    def list_managed_devices(self) -> FetchResult[DeviceRecord]: ...

    def list_group_members(self, group_id: str) -> FetchResult[GroupMember]: ...

    def find_groups_by_name(self, display_name: str) -> list[DirectoryGroup]: ...

    def create_group(
        self, display_name: str, description: str, mail_nickname: str
    ) -> DirectoryGroup: ...

    def add_member(self, group_id: str, member_id: str) -> bool: ...

    def remove_member(self, group_id: str, member_id: str) -> bool: ...


@dataclass(frozen=True)
class RunContext:
    """Values fixed for the duration of one run.

    ``now`` is read once at the start of the run and used for every
    qualification decision in it.
    """

    now: datetime
    threshold: timedelta
    suffix: str
    dry_run: bool = False


@dataclass
class GroupResult:
    """Result of reconciling one source group."""

    source_group: DirectoryGroup
    outcome: GroupOutcome
    delayed_group: DirectoryGroup | None = None
    plan: ReconcilePlan | None = None
    apply_result: ApplyResult | None = None
    error: str | None = None

    @property
    def failed(self) -> bool:
        return self.outcome in FAILED_OUTCOMES


@dataclass
class RunResult:
    """Result of a single reconciliation run."""

    dry_run: bool = False
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None
    groups: list[GroupResult] = field(default_factory=list)
    devices_indexed: int = 0
    cancelled: bool = False
    error: Exception | None = None

    @property
    def duration_seconds(self) -> float:
        """Calculate duration in seconds."""
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    @property
    def success(self) -> bool:
        """True if the run itself completed (per-group failures aside)."""
        return self.error is None

    @property
    def has_group_failures(self) -> bool:
        return any(g.failed for g in self.groups)

    @property
    def members_added(self) -> int:
        return sum(len(g.apply_result.added) for g in self.groups if g.apply_result)

    @property
    def members_removed(self) -> int:
        return sum(len(g.apply_result.removed) for g in self.groups if g.apply_result)

    @property
    def changes_failed(self) -> int:
        return sum(len(g.apply_result.failed) for g in self.groups if g.apply_result)

    def outcome_counts(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for group in self.groups:
            counts[group.outcome.value] = counts.get(group.outcome.value, 0) + 1
        return counts


class Reconciler:
    """Reconciles every source group with its delayed group.

    Groups are processed one at a time and members one at a time. Graph
    throttles per tenant, so parallelism would add throttling without
    making the run meaningfully faster.
    """

    def __init__(
        self,
        config: Config,
        client: DirectoryClient | None = None,
        *,
        clock: Callable[[], datetime] | None = None,
        log: logging.Logger | None = None,
    ) -> None:
        """Initialize reconciler with configuration.

        Args:
            config: Validated configuration.
            client: Directory client; a GraphClient authenticated with the
                managed identity is created when omitted.
            clock: Source of the per-run reference time (defaults to UTC now).
            log: Logger passed down to every component.

        Raises:
            SecretlessViolationError: If credential secrets are in the environment.
        """
        self._config = config
        self._log = log or logger
        self._clock = clock or (lambda: datetime.now(UTC))

        if client is None:
            credential = get_managed_identity_credential(config.managed_identity_client_id)
            client = GraphClient(credential, config, log=self._log)
        self._client = client

        self._resolver = GroupPairResolver(
            client,
            config.delayed_group_suffix,
            config.threshold_hours,
            dry_run=config.dry_run,
            audit=config.enable_audit_logging,
            log=self._log,
        )
        self._applier = ChangeApplier(
            client,
            dry_run=config.dry_run,
            audit=config.enable_audit_logging,
            log=self._log,
        )

        self._shutdown_event = threading.Event()

    @property
    def config(self) -> Config:
        """Get the reconciler configuration."""
        return self._config

    def shutdown(self) -> None:
        """Request the run to stop before the next group."""
        self._log.info("Shutdown requested")
        self._shutdown_event.set()

    def run_once(self) -> RunResult:
        """Execute one full reconciliation pass.

        Returns:
            RunResult; ``error`` is set when the run was aborted.
        """
        context = RunContext(
            now=self._clock(),
            threshold=self._config.threshold,
            suffix=self._config.delayed_group_suffix,
            dry_run=self._config.dry_run,
        )
        result = RunResult(dry_run=context.dry_run)

        self._log.info(
            "Starting reconciliation run",
            extra={
                "source_group_prefix": self._config.source_group_prefix,
                "delayed_group_suffix": context.suffix,
                "threshold_hours": self._config.threshold_hours,
                "reference_time": context.now.isoformat(),
                "dry_run": context.dry_run,
            },
        )

        try:
            sources = self._list_source_groups(context)
            index = self._build_registry()
            result.devices_indexed = len(index)

            for source in sources:
                if self._shutdown_event.is_set():
                    result.cancelled = True
                    self._log.warning(
                        "Run cancelled before all groups were processed",
                        extra={
                            "groups_processed": len(result.groups),
                            "groups_total": len(sources),
                        },
                    )
                    break
                result.groups.append(self._reconcile_group_safely(source, index, context))

        except GraphAuthenticationError as e:
            self._log.error(
                "Graph authentication failed, run aborted",
                extra={"error": str(e), "status_code": e.status_code},
            )
            result.error = e
        except RunAbortedError as e:
            self._log.error("Run aborted", extra={"error": str(e)})
            result.error = e
        except Exception as e:
            self._log.exception("Unexpected error during reconciliation")
            result.error = e

        result.end_time = datetime.now(UTC)
        self._log_result(result)
        return result

    def _list_source_groups(self, context: RunContext) -> list[DirectoryGroup]:
        """List source groups, excluding groups that are themselves delayed groups.

        Raises:
            RunAbortedError: If the listing failed without returning any group.
        """
        fetched = self._client.list_groups_by_prefix(self._config.source_group_prefix)
        if fetched.error is not None:
            if not fetched.items:
                raise RunAbortedError(f"Listing source groups failed: {fetched.error}")
            self._log.warning(
                "Source group listing incomplete, continuing with partial list",
                extra={"groups_fetched": len(fetched.items), "error": str(fetched.error)},
            )

        sources = [
            g for g in fetched.items if not is_delayed_group_name(g.display_name, context.suffix)
        ]
        self._log.info(
            "Source groups listed",
            extra={
                "source_groups": len(sources),
                "delayed_groups_excluded": len(fetched.items) - len(sources),
            },
        )
        return sources

    def _build_registry(self) -> DeviceRegistryIndex:
        """Build the device registry from the Intune inventory.

        Raises:
            RunAbortedError: If the inventory listing failed without returning any device.
        """
        fetched = self._client.list_managed_devices()
        if fetched.error is not None:
            if not fetched.items:
                raise RunAbortedError(f"Listing device inventory failed: {fetched.error}")
            # A partial inventory only delays adds; removals never consult it
            self._log.warning(
                "Device inventory incomplete, continuing with partial inventory",
                extra={"devices_fetched": len(fetched.items), "error": str(fetched.error)},
            )
        return DeviceRegistryIndex.build(fetched.items, log=self._log)

    def _reconcile_group_safely(
        self,
        source: DirectoryGroup,
        index: DeviceRegistryIndex,
        context: RunContext,
    ) -> GroupResult:
        """Reconcile one group, turning any non-auth error into a failed result."""
        try:
            return self._reconcile_group(source, index, context)
        except GraphAuthenticationError:
            raise
        except Exception as e:
            self._log.exception(
                "Unexpected error reconciling group, continuing with next group",
                extra={"source_group": source.display_name, "source_group_id": source.id},
            )
            return GroupResult(source_group=source, outcome=GroupOutcome.FAILED, error=str(e))

    def _reconcile_group(
        self,
        source: DirectoryGroup,
        index: DeviceRegistryIndex,
        context: RunContext,
    ) -> GroupResult:
        """Reconcile one source group."""
        group_extra = {"source_group": source.display_name, "source_group_id": source.id}

        members = self._client.list_group_members(source.id)
        # A partial source listing would turn into wrongful removals
        if members.error is not None:
            self._log.warning(
                "Source member listing failed, skipping group",
                extra={**group_extra, "error": str(members.error)},
            )
            return GroupResult(
                source_group=source,
                outcome=GroupOutcome.MEMBER_FETCH_FAILED,
                error=str(members.error),
            )
        if members.skipped:
            self._log.warning(
                "Source member listing had unreadable rows, skipping group",
                extra={**group_extra, "records_skipped": members.skipped},
            )
            return GroupResult(
                source_group=source,
                outcome=GroupOutcome.MEMBER_FETCH_FAILED,
                error=f"{members.skipped} source member rows failed validation",
            )

        if not members.items:
            self._log.info("Source group is empty, nothing to reconcile", extra=group_extra)
            return GroupResult(source_group=source, outcome=GroupOutcome.SKIPPED_EMPTY)

        try:
            delayed = self._resolver.resolve(source)
        except GroupProvisioningError as e:
            self._log.error(
                "Delayed group provisioning failed, skipping group",
                extra={**group_extra, "error": str(e)},
            )
            return GroupResult(
                source_group=source,
                outcome=GroupOutcome.PROVISIONING_FAILED,
                error=str(e),
            )

        delayed_members = self._list_delayed_members(delayed, group_extra)

        plan = reconcile(members.items, delayed_members, index, context.now, context.threshold)
        self._log_plan(source, delayed, plan)

        group_result = GroupResult(
            source_group=source,
            outcome=GroupOutcome.NO_CHANGES,
            delayed_group=delayed,
            plan=plan,
        )

        if plan.is_empty:
            return group_result

        if plan.change_count > self._config.max_changes_per_group:
            self._log.error(
                "Change count exceeds limit, group blocked",
                extra={
                    **group_extra,
                    "delayed_group": delayed.display_name,
                    "to_add": len(plan.to_add),
                    "to_remove": len(plan.to_remove),
                    "limit": self._config.max_changes_per_group,
                },
            )
            group_result.outcome = GroupOutcome.BLOCKED
            group_result.error = (
                f"{plan.change_count} changes exceed limit of {self._config.max_changes_per_group}"
            )
            return group_result

        apply_result = self._applier.apply(delayed, plan)
        group_result.apply_result = apply_result
        group_result.outcome = (
            GroupOutcome.RECONCILED if apply_result.success else GroupOutcome.PARTIAL
        )
        return group_result

    def _list_delayed_members(
        self, delayed: DirectoryGroup, group_extra: dict[str, Any]
    ) -> list[GroupMember]:
        if not delayed.exists:
            return []

        fetched = self._client.list_group_members(delayed.id)
        if fetched.error is not None:
            self._log.warning(
                "Delayed member listing failed, treating delayed group as empty",
                extra={
                    **group_extra,
                    "delayed_group": delayed.display_name,
                    "error": str(fetched.error),
                },
            )
            return []
        return fetched.items

    def _log_plan(
        self, source: DirectoryGroup, delayed: DirectoryGroup, plan: ReconcilePlan
    ) -> None:
        for member in plan.unresolved:
            self._log.warning(
                "Member has no matching device record",
                extra={
                    "source_group": source.display_name,
                    "member": member.label,
                    "member_id": member.id,
                    "external_id": member.external_id,
                },
            )
        for member in plan.invalid:
            self._log.warning(
                "Device enrollment time missing or malformed",
                extra={
                    "source_group": source.display_name,
                    "member": member.label,
                    "member_id": member.id,
                    "external_id": member.external_id,
                },
            )

        self._log.info(
            "Reconcile plan computed",
            extra={
                "source_group": source.display_name,
                "delayed_group": delayed.display_name,
                "delayed_group_id": delayed.id or None,
                "to_add": len(plan.to_add),
                "to_remove": len(plan.to_remove),
                "not_qualified": len(plan.not_qualified),
                "unresolved": len(plan.unresolved),
                "invalid": len(plan.invalid),
                "ignored_non_devices": len(plan.ignored),
            },
        )

    def _log_result(self, result: RunResult) -> None:
        """Log run result with structured data."""
        extra: dict[str, Any] = {
            "dry_run": result.dry_run,
            "duration_seconds": result.duration_seconds,
            "groups_processed": len(result.groups),
            "devices_indexed": result.devices_indexed,
            "members_added": result.members_added,
            "members_removed": result.members_removed,
            "changes_failed": result.changes_failed,
            "outcomes": result.outcome_counts(),
            "cancelled": result.cancelled,
        }

        if result.error is not None:
            extra["error"] = str(result.error)
            self._log.error("Reconciliation run failed", extra=extra)
        elif result.has_group_failures:
            self._log.warning("Reconciliation run completed with failures", extra=extra)
        else:
            self._log.info("Reconciliation run completed", extra=extra)
