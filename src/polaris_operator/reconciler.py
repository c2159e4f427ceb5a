"""Membership reconciliation: orchestrator and control loop.

This module implements the Kubernetes-style reconciliation pattern for
policy grouping membership:
1. Read the grouping's observed membership from RSC
2. Diff observed against desired
3. Order the delta into an explicit add/remove plan
4. Execute the plan (each call is accepted, not applied)
5. Poll until the remote service reflects every intended change
6. Record the desired set as applied

ERROR HANDLING:
A failure at any step aborts the remaining steps and propagates unchanged.
There is no rollback and no internal retry. Recovery is the next reconcile
call, which is idempotent because the delta is recomputed against fresh
observed state.

CONCURRENCY:
Steps of one reconcile call are strictly sequential. The control loop
reconciles groupings one after another; callers reconciling the same
grouping concurrently are not serialized here.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

from azure.core.exceptions import AzureError

from .backends import BackendRegistry
from .config import DEFAULT_POLL_INTERVAL_SECONDS, Config
from .dependency import OrderingPolicy, Plan
from .differ import MembershipDiff, diff_members
from .executor import AssignmentExecutor, PartialReconciliationError
from .models import Grouping, MemberSet, MembershipError, PendingOperation, member_set
from .poller import ConvergencePoller
from .provenance import get_provenance_logger
from .spec_loader import DesiredGrouping, SpecLoadError, load_manifests

logger = logging.getLogger(__name__)

# Circuit breaker constants
MAX_CONSECUTIVE_FAILURES = 5
CIRCUIT_BREAKER_RESET_SECONDS = 300  # 5 minutes


class AppliedStateStore:
    """Last membership successfully applied per grouping.

    In memory only: after a restart the next reconcile starts from observed
    state, which is all the engine needs.
    """

    def __init__(self) -> None:
        self._state: dict[str, MemberSet] = {}

    def get(self, grouping: Grouping) -> MemberSet:
        return self._state.get(grouping.key, frozenset())

    def record(self, grouping: Grouping, members: MemberSet) -> None:
        self._state[grouping.key] = frozenset(members)

    def __contains__(self, grouping: Grouping) -> bool:
        return grouping.key in self._state

    def __len__(self) -> int:
        return len(self._state)


@dataclass
class ReconcileResult:
    """Result of reconciling one grouping."""

    grouping_key: str
    dry_run: bool = False
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None
    diff: MembershipDiff | None = None
    plan: Plan | None = None
    remote_calls: int = 0
    polls: int = 0
    error: Exception | None = None

    @property
    def duration_seconds(self) -> float:
        """Calculate duration in seconds."""
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    @property
    def changed(self) -> bool:
        """True when a non-empty delta was found."""
        return self.diff is not None and not self.diff.is_empty

    @property
    def success(self) -> bool:
        """Check if reconciliation succeeded."""
        return self.error is None


@dataclass
class CycleResult:
    """Result of one pass over all declared groupings."""

    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None
    results: list[ReconcileResult] = field(default_factory=list)
    error: Exception | None = None

    @property
    def failed(self) -> list[ReconcileResult]:
        return [r for r in self.results if not r.success]

    @property
    def success(self) -> bool:
        return self.error is None and not self.failed


class Reconciler:
    """Reconciles grouping membership against RSC.

    `reconcile` is the single-grouping entry point and raises on failure.
    `run` is the control loop: it loads manifests from the specs directory
    at every interval, reconciles each grouping, logs per-grouping failures
    and keeps going. A circuit breaker pauses the loop after repeated failed
    cycles.
    """

    def __init__(
        self,
        backends: BackendRegistry,
        config: Config | None = None,
        policy: OrderingPolicy | None = None,
        state: AppliedStateStore | None = None,
        poll_interval_seconds: float | None = None,
    ) -> None:
        """Initialize reconciler.

        Args:
            backends: Backend per grouping kind.
            config: Operator configuration; required for run().
            policy: Ordering policy (defaults to the built-in feature table).
            state: Applied state record.
            poll_interval_seconds: Convergence poll interval, overriding config.
        """
        self._backends = backends
        self._config = config
        self._policy = policy or OrderingPolicy()
        self._state = state or AppliedStateStore()

        if poll_interval_seconds is None:
            poll_interval_seconds = (
                config.poll_interval_seconds if config else DEFAULT_POLL_INTERVAL_SECONDS
            )
        self._poll_interval = poll_interval_seconds

        self._shutdown_event = asyncio.Event()

        # Circuit breaker state
        self._consecutive_failures = 0
        self._circuit_open_until: datetime | None = None

    @property
    def state(self) -> AppliedStateStore:
        return self._state

    async def plan(self, grouping: Grouping, desired: MemberSet) -> ReconcileResult:
        """Compute the diff and ordered plan for a grouping without mutating it.

        Raises:
            BackendNotFoundError: If no backend handles the grouping kind.
            OrderingError: If the plan cannot be built.
        """
        result = ReconcileResult(grouping_key=grouping.key, dry_run=True)
        await self._plan(result, grouping, member_set(desired))
        return result

    async def _plan(
        self, result: ReconcileResult, grouping: Grouping, desired: MemberSet, source: str = ""
    ) -> None:
        provenance_logger = get_provenance_logger()
        provenance = provenance_logger.create_provenance(
            grouping_key=grouping.key,
            grouping_kind=grouping.kind.value,
            manifest_path=source,
            dry_run=True,
        )

        try:
            self._policy.check(grouping.kind)
            observed = await self.observe(grouping, desired)
            result.diff = diff_members(observed, desired)
            result.plan = self._policy.order(
                grouping.kind, result.diff.to_add, result.diff.to_remove, observed
            )
            # Planned, not applied
            provenance.added = sorted(result.diff.to_add)
            provenance.removed = sorted(result.diff.to_remove)
        except Exception as e:
            result.error = e
            provenance.error = str(e)
            provenance.error_type = type(e).__name__
            raise
        finally:
            result.end_time = datetime.now(UTC)
            provenance.duration_seconds = result.duration_seconds
            provenance_logger.log_provenance(provenance)

    async def reconcile(
        self,
        grouping: Grouping,
        desired: MemberSet,
        cancel_event: asyncio.Event | None = None,
        timeout_seconds: float | None = None,
        source: str = "",
    ) -> ReconcileResult:
        """Bring a grouping's membership to the desired set.

        Args:
            grouping: Grouping to reconcile.
            desired: Members the grouping should hold.
            cancel_event: Abandons the convergence wait when set.
            timeout_seconds: Deadline for the convergence wait.
            source: Manifest path, recorded in provenance.

        Returns:
            ReconcileResult describing the pass.

        Raises:
            BackendNotFoundError: If no backend handles the grouping kind.
            OrderingError: If the plan cannot be built (no remote call issued).
            ExecutionError: If the first add/remove call is rejected.
            PartialReconciliationError: If a later call is rejected.
            ConvergenceTimeoutError: If the wait is cancelled or times out.
            AzureError: If reading observed state fails.
        """
        result = ReconcileResult(grouping_key=grouping.key)
        await self._reconcile(
            result, grouping, member_set(desired), cancel_event, timeout_seconds, source
        )
        return result

    async def _reconcile(
        self,
        result: ReconcileResult,
        grouping: Grouping,
        desired: MemberSet,
        cancel_event: asyncio.Event | None,
        timeout_seconds: float | None,
        source: str,
    ) -> None:
        # PROVENANCE: Initialize provenance record for audit trail
        provenance_logger = get_provenance_logger()
        provenance = provenance_logger.create_provenance(
            grouping_key=grouping.key,
            grouping_kind=grouping.kind.value,
            manifest_path=source,
        )

        try:
            backend = self._backends.get(grouping.kind)
            # No remote call, not even a read, for a grouping that cannot be planned
            self._policy.check(grouping.kind)

            observed = await self.observe(grouping, desired)
            result.diff = diff_members(observed, desired)
            result.plan = self._policy.order(
                grouping.kind, result.diff.to_add, result.diff.to_remove, observed
            )

            if result.diff.is_empty:
                logger.info(
                    "Membership already converged",
                    extra={"grouping": grouping.key, "members": len(desired)},
                )
                self._state.record(grouping, desired)
                return

            pending = PendingOperation(
                grouping=grouping,
                to_add=result.diff.to_add,
                to_remove=result.diff.to_remove,
            )
            logger.info(
                "Membership drift detected",
                extra={
                    "grouping": grouping.key,
                    "to_add": sorted(pending.to_add),
                    "to_remove": sorted(pending.to_remove),
                    "plan": result.plan.to_list(),
                },
            )

            try:
                report = await AssignmentExecutor(backend).execute(grouping, result.plan)
            except PartialReconciliationError as e:
                provenance.added = sorted(e.added)
                provenance.removed = sorted(e.removed)
                raise
            result.remote_calls = report.calls
            provenance.added = sorted(report.added)
            provenance.removed = sorted(report.removed)
            provenance.remote_calls = report.calls

            poller = ConvergencePoller(backend, interval_seconds=self._poll_interval)
            convergence = await poller.wait_for_convergence(
                grouping,
                pending.to_add,
                pending.to_remove,
                cancel_event=cancel_event,
                timeout_seconds=timeout_seconds,
            )
            result.polls = convergence.polls
            provenance.polls = convergence.polls

            self._state.record(grouping, desired)

        except Exception as e:
            result.error = e
            provenance.error = str(e)
            provenance.error_type = type(e).__name__
            raise

        finally:
            result.end_time = datetime.now(UTC)
            provenance.duration_seconds = result.duration_seconds
            provenance_logger.log_provenance(provenance)

    async def observe(self, grouping: Grouping, desired: MemberSet = frozenset()) -> MemberSet:
        """Read the observed membership.

        The backend watches exactly the desired and last applied members, so
        objects dropped from both stop being read.
        """
        backend = self._backends.get(grouping.kind)
        backend.watch(grouping, desired | self._state.get(grouping))
        return await backend.get_membership(grouping)

    async def reconcile_all(
        self,
        desired: list[DesiredGrouping],
        dry_run: bool = False,
        cancel_event: asyncio.Event | None = None,
        timeout_seconds: float | None = None,
    ) -> list[ReconcileResult]:
        """Reconcile every declared grouping independently.

        A failure on one grouping is logged and recorded in its result, along
        with the diff and plan computed before the failure; the remaining
        groupings are still reconciled.
        """
        results: list[ReconcileResult] = []
        for item in desired:
            if cancel_event is not None and cancel_event.is_set():
                break
            result = ReconcileResult(grouping_key=item.grouping.key, dry_run=dry_run)
            try:
                if dry_run:
                    await self._plan(result, item.grouping, item.desired, str(item.source))
                else:
                    await self._reconcile(
                        result,
                        item.grouping,
                        item.desired,
                        cancel_event,
                        timeout_seconds,
                        str(item.source),
                    )
            except (MembershipError, AzureError, TimeoutError):
                # Expected failure, recorded on the result and logged below
                pass
            except Exception:
                logger.exception(
                    "Unexpected error during reconciliation",
                    extra={"grouping": item.grouping.key},
                )
            self._log_result(result)
            results.append(result)
        return results

    async def run(self) -> None:
        """Run the reconciliation loop until shutdown.

        Implements circuit breaker pattern: after MAX_CONSECUTIVE_FAILURES,
        the circuit opens and reconciliation pauses for CIRCUIT_BREAKER_RESET_SECONDS.
        """
        if self._config is None:
            raise RuntimeError("Reconciler.run() requires a Config")
        config = self._config

        logger.info(
            "Starting reconciler",
            extra={
                "specs_dir": str(config.specs_dir),
                "interval_seconds": config.reconcile_interval_seconds,
                "poll_interval_seconds": self._poll_interval,
                "convergence_timeout_seconds": config.convergence_timeout_seconds,
                "dry_run": config.dry_run,
            },
        )

        while not self._shutdown_event.is_set():
            # Circuit breaker check
            if self._circuit_open_until is not None:
                now = datetime.now(UTC)
                if now < self._circuit_open_until:
                    remaining = (self._circuit_open_until - now).total_seconds()
                    logger.warning(
                        "Circuit breaker open, skipping reconciliation",
                        extra={
                            "remaining_seconds": remaining,
                            "consecutive_failures": self._consecutive_failures,
                        },
                    )
                    # Wait for circuit breaker reset or shutdown
                    try:
                        await asyncio.wait_for(
                            self._shutdown_event.wait(),
                            timeout=min(remaining, config.reconcile_interval_seconds),
                        )
                    except TimeoutError:
                        pass
                    continue
                else:
                    logger.info("Circuit breaker reset, resuming reconciliation")
                    self._circuit_open_until = None
                    self._consecutive_failures = 0

            cycle = await self.reconcile_once()

            # Update circuit breaker state
            if not cycle.success:
                self._consecutive_failures += 1
                if self._consecutive_failures >= MAX_CONSECUTIVE_FAILURES:
                    self._circuit_open_until = datetime.now(UTC) + timedelta(
                        seconds=CIRCUIT_BREAKER_RESET_SECONDS
                    )
                    logger.error(
                        "Circuit breaker opened after consecutive failures",
                        extra={
                            "consecutive_failures": self._consecutive_failures,
                            "reset_seconds": CIRCUIT_BREAKER_RESET_SECONDS,
                        },
                    )
            else:
                # Reset on success
                self._consecutive_failures = 0

            # Wait for next cycle or shutdown
            try:
                await asyncio.wait_for(
                    self._shutdown_event.wait(),
                    timeout=config.reconcile_interval_seconds,
                )
            except TimeoutError:
                # Normal timeout, continue to next cycle
                pass

        logger.info("Reconciler shutdown complete")

    async def reconcile_once(self) -> CycleResult:
        """Load manifests and reconcile every grouping once."""
        if self._config is None:
            raise RuntimeError("Reconciler.reconcile_once() requires a Config")
        config = self._config
        cycle = CycleResult()

        try:
            desired = load_manifests(config.specs_dir, config.max_members_per_grouping)
        except SpecLoadError as e:
            logger.error("Failed to load manifests", extra={"error": str(e)})
            cycle.error = e
            cycle.end_time = datetime.now(UTC)
            return cycle

        cycle.results = await self.reconcile_all(
            desired,
            dry_run=config.dry_run,
            cancel_event=self._shutdown_event,
            timeout_seconds=config.convergence_timeout,
        )
        cycle.end_time = datetime.now(UTC)

        logger.info(
            "Reconciliation cycle complete",
            extra={
                "groupings": len(cycle.results),
                "changed": sum(1 for r in cycle.results if r.changed),
                "failed": len(cycle.failed),
                "duration_seconds": (cycle.end_time - cycle.start_time).total_seconds(),
            },
        )
        return cycle

    def shutdown(self) -> None:
        """Signal the reconciler to stop."""
        logger.info("Shutdown requested")
        self._shutdown_event.set()

    def _log_result(self, result: ReconcileResult) -> None:
        """Log reconciliation result with structured data."""
        extra: dict[str, Any] = {
            "grouping": result.grouping_key,
            "dry_run": result.dry_run,
            "duration_seconds": result.duration_seconds,
            "changed": result.changed,
            "remote_calls": result.remote_calls,
            "polls": result.polls,
        }
        if result.diff is not None:
            extra["to_add"] = len(result.diff.to_add)
            extra["to_remove"] = len(result.diff.to_remove)
        if result.plan is not None:
            extra["plan"] = result.plan.to_list()

        if result.error is not None:
            extra["error"] = str(result.error)
            extra["error_type"] = type(result.error).__name__
            logger.error("Reconciliation failed", extra=extra)
        elif result.dry_run and result.changed:
            logger.warning("Reconciliation: drift detected (dry run)", extra=extra)
        else:
            logger.info("Reconciliation result", extra=extra)
