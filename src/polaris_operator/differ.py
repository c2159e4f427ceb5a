"""Membership set differ.

Computes the add/remove delta between an observed and a desired membership.
Pure and total: no I/O, no errors, identical inputs give identical outputs.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass

from .models import MemberID, MemberSet


@dataclass(frozen=True)
class MembershipDiff:
    """Result of comparing two membership sets.

    `total` is the full desired membership, needed by APIs that replace the
    member list instead of appending to it.
    """

    to_add: MemberSet
    to_remove: MemberSet
    total: MemberSet

    @property
    def is_empty(self) -> bool:
        """True when the old set already equals the new set."""
        return not self.to_add and not self.to_remove

    @property
    def change_count(self) -> int:
        return len(self.to_add) + len(self.to_remove)

    def to_dict(self) -> dict[str, list[str]]:
        """Convert to a JSON-friendly dict with sorted member lists."""
        return {
            "to_add": sorted(self.to_add),
            "to_remove": sorted(self.to_remove),
            "total": sorted(self.total),
        }


def diff_members(old: Iterable[MemberID], new: Iterable[MemberID]) -> MembershipDiff:
    """Diff an old membership against a new one.

    Args:
        old: Members currently in the grouping.
        new: Members the grouping should hold.

    Returns:
        MembershipDiff where to_add and to_remove are disjoint and
        (old - to_remove) | to_add == new.
    """
    old_set = frozenset(old)
    new_set = frozenset(new)
    return MembershipDiff(
        to_add=new_set - old_set,
        to_remove=old_set - new_set,
        total=new_set,
    )
