"""Assignment executor: issues the remote add/remove calls of a plan.

A successful call means the mutation was accepted, not that it has taken
effect. Execution is strictly sequential and stops at the first rejected
call. Already accepted steps are left in place: recovery is a fresh
reconcile, which recomputes the delta against observed state.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from .dependency import Phase, Plan, PlanStep
from .models import Grouping, MemberSet, MembershipError

if TYPE_CHECKING:
    from .backends import MembershipBackend

logger = logging.getLogger(__name__)


class ExecutionError(MembershipError):
    """Raised when the remote service rejects an add or remove call.

    The original remote error is chained as __cause__.
    """

    def __init__(self, message: str, grouping_key: str, step: PlanStep) -> None:
        super().__init__(message)
        self.grouping_key = grouping_key
        self.step = step

    @property
    def phase(self) -> Phase:
        return self.step.phase

    @property
    def members(self) -> MemberSet:
        return self.step.members


class PartialReconciliationError(ExecutionError):
    """Raised when a step fails after earlier steps were accepted.

    `added` and `removed` hold the members whose calls were accepted before
    the failure. Re-running the reconcile with the same desired set is safe.
    """

    def __init__(
        self,
        message: str,
        grouping_key: str,
        step: PlanStep,
        added: MemberSet,
        removed: MemberSet,
    ) -> None:
        super().__init__(message, grouping_key, step)
        self.added = added
        self.removed = removed


@dataclass
class ExecutionReport:
    """Steps accepted by the remote service for one plan."""

    grouping_key: str
    calls: int = 0
    added: set[str] = field(default_factory=set)
    removed: set[str] = field(default_factory=set)

    def record(self, step: PlanStep) -> None:
        self.calls += 1
        if step.phase == Phase.ADD:
            self.added |= step.members
        else:
            self.removed |= step.members


class AssignmentExecutor:
    """Runs a plan against a membership backend, one call per step."""

    def __init__(self, backend: MembershipBackend) -> None:
        self._backend = backend

    async def execute(self, grouping: Grouping, plan: Plan) -> ExecutionReport:
        """Issue the remote calls of a plan in order.

        Args:
            grouping: Grouping being reconciled.
            plan: Ordered plan from the ordering policy.

        Returns:
            ExecutionReport listing the accepted steps.

        Raises:
            ExecutionError: If the first issued call is rejected.
            PartialReconciliationError: If a later call is rejected.
        """
        report = ExecutionReport(grouping_key=grouping.key)

        for index, step in enumerate(plan.steps):
            if not step.members:
                continue

            logger.info(
                "Issuing membership change",
                extra={
                    "grouping": grouping.key,
                    "step": index + 1,
                    "total_steps": len(plan.steps),
                    "phase": step.phase.value,
                    "members": sorted(step.members),
                },
            )

            try:
                if step.phase == Phase.ADD:
                    await self._backend.add_members(grouping, step.members, step.expected)
                else:
                    await self._backend.remove_members(grouping, step.members, step.expected)
            except Exception as e:
                message = (
                    f"{step.phase.value} of {sorted(step.members)} on {grouping.key} "
                    f"was rejected: {e}"
                )
                logger.error(
                    "Membership change rejected",
                    extra={
                        "grouping": grouping.key,
                        "phase": step.phase.value,
                        "members": sorted(step.members),
                        "accepted_calls": report.calls,
                        "error": str(e),
                        "error_type": type(e).__name__,
                    },
                )
                if report.calls == 0:
                    raise ExecutionError(message, grouping.key, step) from e
                raise PartialReconciliationError(
                    message,
                    grouping.key,
                    step,
                    added=frozenset(report.added),
                    removed=frozenset(report.removed),
                ) from e

            report.record(step)

        return report
