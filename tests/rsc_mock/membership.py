"""Eventually consistent in-memory membership service.

Implements the MembershipBackend protocol. Every accepted mutation is queued
and only becomes visible after `lag_polls` reads of the grouping have
reported the old state, mimicking RSC's accepted-but-not-yet-applied window.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass, field

from polaris_operator.backends import BackendRegistry
from polaris_operator.dependency import Phase
from polaris_operator.models import Grouping, GroupingKind, MemberSet


class MockRemoteError(Exception):
    """Mock rejection of a mutation by the remote service."""

    pass


@dataclass
class MutationRecord:
    """A mutation accepted by the mock service."""

    grouping_key: str
    phase: Phase
    members: MemberSet
    expected: MemberSet


@dataclass
class _PendingChange:
    record: MutationRecord
    reads_left: int


@dataclass
class _GroupingState:
    applied: set[str] = field(default_factory=set)
    pending: list[_PendingChange] = field(default_factory=list)
    watched: set[str] = field(default_factory=set)
    reads: int = 0
    reads_after_mutation: int = 0
    mutated: bool = False


class MockMembershipService:
    """In-memory membership backend with lag and failure injection.

    Thread-safety is not a concern: tests drive it from a single event loop.
    """

    def __init__(self, lag_polls: int = 0, replace_style: bool = False) -> None:
        """Initialize the mock service.

        Args:
            lag_polls: Reads that still report the old state after a mutation.
            replace_style: Apply the expected set instead of the member delta.
        """
        self.lag_polls = lag_polls
        self.replace_style = replace_style
        self.mutations: list[MutationRecord] = []
        self._groupings: dict[str, _GroupingState] = {}
        self._failures: dict[Phase, list[Exception]] = {Phase.ADD: [], Phase.REMOVE: []}
        self._read_failures: list[Exception] = []
        self._on_read: Callable[[Grouping, int], None] | None = None

    # =========================================================================
    # Test setup
    # =========================================================================

    def seed(self, grouping: Grouping, members: Iterable[str]) -> None:
        """Set the applied membership of a grouping without any lag."""
        self._state(grouping).applied = set(members)

    def fail_next(self, phase: Phase, error: Exception | None = None) -> None:
        """Reject the next mutation of the given phase."""
        self._failures[phase].append(error or MockRemoteError(f"{phase.value} rejected"))

    def fail_next_read(self, error: Exception | None = None) -> None:
        """Fail the next membership read."""
        self._read_failures.append(error or MockRemoteError("read failed"))

    def on_read(self, callback: Callable[[Grouping, int], None]) -> None:
        """Invoke callback(grouping, read_number) after every read."""
        self._on_read = callback

    def registry(self, *kinds: GroupingKind) -> BackendRegistry:
        """Registry routing the given kinds (default: all kinds) to this mock."""
        return BackendRegistry({kind: self for kind in kinds or tuple(GroupingKind)})

    # =========================================================================
    # Assertions
    # =========================================================================

    def applied(self, grouping: Grouping) -> MemberSet:
        """Membership including changes that are not yet visible."""
        state = self._state(grouping)
        members = set(state.applied)
        for change in state.pending:
            self._apply(members, change.record)
        return frozenset(members)

    def reads(self, grouping: Grouping) -> int:
        return self._state(grouping).reads

    def reads_after_mutation(self, grouping: Grouping) -> int:
        """Reads issued after the first accepted mutation of the grouping."""
        return self._state(grouping).reads_after_mutation

    def watched(self, grouping: Grouping) -> set[str]:
        return set(self._state(grouping).watched)

    def calls(self, phase: Phase) -> list[MutationRecord]:
        return [m for m in self.mutations if m.phase == phase]

    # =========================================================================
    # MembershipBackend protocol
    # =========================================================================

    def watch(self, grouping: Grouping, members: Iterable[str]) -> None:
        self._state(grouping).watched = set(members)

    async def get_membership(self, grouping: Grouping) -> MemberSet:
        state = self._state(grouping)
        state.reads += 1
        if state.mutated:
            state.reads_after_mutation += 1

        if self._read_failures:
            raise self._read_failures.pop(0)

        still_pending: list[_PendingChange] = []
        for change in state.pending:
            if change.reads_left == 0:
                self._apply(state.applied, change.record)
            else:
                change.reads_left -= 1
                still_pending.append(change)
        state.pending = still_pending

        observed = frozenset(state.applied)
        if self._on_read is not None:
            self._on_read(grouping, state.reads)
        return observed

    async def add_members(
        self, grouping: Grouping, members: MemberSet, expected: MemberSet
    ) -> None:
        self._mutate(grouping, Phase.ADD, members, expected)

    async def remove_members(
        self, grouping: Grouping, members: MemberSet, expected: MemberSet
    ) -> None:
        self._mutate(grouping, Phase.REMOVE, members, expected)

    # =========================================================================
    # Internals
    # =========================================================================

    def _state(self, grouping: Grouping) -> _GroupingState:
        return self._groupings.setdefault(grouping.key, _GroupingState())

    def _mutate(
        self, grouping: Grouping, phase: Phase, members: MemberSet, expected: MemberSet
    ) -> None:
        if self._failures[phase]:
            raise self._failures[phase].pop(0)

        record = MutationRecord(
            grouping_key=grouping.key,
            phase=phase,
            members=frozenset(members),
            expected=frozenset(expected),
        )
        self.mutations.append(record)

        state = self._state(grouping)
        state.mutated = True
        state.pending.append(_PendingChange(record=record, reads_left=self.lag_polls))

    def _apply(self, members: set[str], record: MutationRecord) -> None:
        if self.replace_style:
            members.clear()
            members.update(record.expected)
        elif record.phase == Phase.ADD:
            members.update(record.members)
        else:
            members.difference_update(record.members)
