"""Convergence poller for eventually consistent membership.

The remote service accepts a mutation immediately but applies it later and
offers no change notification, so convergence is observed by re-reading the
grouping's membership at a fixed interval. The wait is bounded only by the
caller's cancellation event or deadline; there is no attempt cap.

Convergence is checked per member: every intended addition must be observed
and every intended removal must be absent. A different member leaving or
joining the grouping does not count towards the delta.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING

from .models import Grouping, MemberSet, MembershipError

if TYPE_CHECKING:
    from .backends import MembershipBackend

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL_SECONDS = 5.0


class ConvergenceTimeoutError(MembershipError):
    """Raised when the wait is cancelled before observed state matches intent.

    The mutation was accepted; it was not observed to apply within the
    caller's budget.
    """

    def __init__(
        self,
        message: str,
        grouping_key: str,
        still_missing: MemberSet,
        still_present: MemberSet,
        polls: int,
        cancelled: bool,
    ) -> None:
        super().__init__(message)
        self.grouping_key = grouping_key
        self.still_missing = still_missing
        self.still_present = still_present
        self.polls = polls
        self.cancelled = cancelled

    @property
    def remaining(self) -> int:
        return len(self.still_missing) + len(self.still_present)


@dataclass(frozen=True)
class ConvergenceReport:
    """Outcome of a successful wait."""

    grouping_key: str
    polls: int
    elapsed_seconds: float
    observed: MemberSet


class ConvergencePoller:
    """Polls a backend until an intended delta is observed."""

    def __init__(
        self,
        backend: MembershipBackend,
        interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self._backend = backend
        self._interval = interval_seconds

    @property
    def interval_seconds(self) -> float:
        return self._interval

    async def wait_for_convergence(
        self,
        grouping: Grouping,
        intended_add: MemberSet,
        intended_remove: MemberSet,
        cancel_event: asyncio.Event | None = None,
        timeout_seconds: float | None = None,
    ) -> ConvergenceReport:
        """Wait until every intended change is visible.

        Args:
            grouping: Grouping that was mutated.
            intended_add: Members that must be observed.
            intended_remove: Members that must be absent.
            cancel_event: Set by the caller to abandon the wait.
            timeout_seconds: Deadline for the wait; None waits indefinitely.

        Returns:
            ConvergenceReport with the number of membership reads issued.

        Raises:
            ConvergenceTimeoutError: If cancelled or the deadline passes first.
        """
        started = time.monotonic()
        deadline = None if timeout_seconds is None else started + timeout_seconds
        # Until the first read nothing is known to have applied
        still_missing = frozenset(intended_add)
        still_present = frozenset(intended_remove)
        polls = 0

        while True:
            self._check_cancelled(
                grouping, cancel_event, deadline, still_missing, still_present, polls
            )

            observed = await self._backend.get_membership(grouping)
            polls += 1
            still_missing = frozenset(intended_add - observed)
            still_present = frozenset(intended_remove & observed)
            remaining = len(still_missing) + len(still_present)

            if remaining == 0:
                elapsed = time.monotonic() - started
                logger.info(
                    "Membership converged",
                    extra={
                        "grouping": grouping.key,
                        "polls": polls,
                        "elapsed_seconds": round(elapsed, 3),
                    },
                )
                return ConvergenceReport(
                    grouping_key=grouping.key,
                    polls=polls,
                    elapsed_seconds=elapsed,
                    observed=observed,
                )

            logger.info(
                "Waiting for membership to converge",
                extra={
                    "grouping": grouping.key,
                    "poll": polls,
                    "remaining": remaining,
                    "still_missing": sorted(still_missing),
                    "still_present": sorted(still_present),
                },
            )

            await self._sleep(cancel_event, deadline)

    def _check_cancelled(
        self,
        grouping: Grouping,
        cancel_event: asyncio.Event | None,
        deadline: float | None,
        still_missing: MemberSet,
        still_present: MemberSet,
        polls: int,
    ) -> None:
        cancelled = cancel_event is not None and cancel_event.is_set()
        expired = deadline is not None and time.monotonic() >= deadline
        if not (cancelled or expired):
            return

        reason = "cancelled" if cancelled else "deadline exceeded"
        logger.warning(
            "Convergence wait abandoned",
            extra={
                "grouping": grouping.key,
                "reason": reason,
                "polls": polls,
                "still_missing": sorted(still_missing),
                "still_present": sorted(still_present),
            },
        )
        raise ConvergenceTimeoutError(
            f"Membership of {grouping.key} did not converge ({reason}) after {polls} polls: "
            f"{len(still_missing)} still missing, {len(still_present)} still present",
            grouping_key=grouping.key,
            still_missing=still_missing,
            still_present=still_present,
            polls=polls,
            cancelled=cancelled,
        )

    async def _sleep(self, cancel_event: asyncio.Event | None, deadline: float | None) -> None:
        """Sleep one interval, waking early on cancellation or deadline."""
        timeout = self._interval
        if deadline is not None:
            timeout = max(0.0, min(timeout, deadline - time.monotonic()))

        if cancel_event is None:
            await asyncio.sleep(timeout)
            return

        try:
            await asyncio.wait_for(cancel_event.wait(), timeout=timeout)
        except TimeoutError:
            # Normal timeout, poll again
            pass
