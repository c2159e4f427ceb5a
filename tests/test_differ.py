"""Tests for the membership set differ."""

from __future__ import annotations

from hypothesis import given
from hypothesis import strategies as st

from polaris_operator.differ import MembershipDiff, diff_members

member_ids = st.frozensets(st.sampled_from([f"m{i}" for i in range(12)]))


class TestDiffMembers:
    """Tests for diff_members."""

    def test_mixed_delta(self) -> None:
        """Desired {A, B} against observed {B, C}."""
        diff = diff_members({"B", "C"}, {"A", "B"})
        assert diff.to_add == frozenset({"A"})
        assert diff.to_remove == frozenset({"C"})
        assert diff.total == frozenset({"A", "B"})

    def test_equal_sets(self) -> None:
        """Identical sets produce an empty delta."""
        diff = diff_members({"A", "B"}, {"B", "A"})
        assert diff.is_empty
        assert diff.change_count == 0
        assert diff.total == frozenset({"A", "B"})

    def test_empty_old(self) -> None:
        """Everything is added when nothing is present."""
        diff = diff_members(set(), {"A", "B"})
        assert diff.to_add == frozenset({"A", "B"})
        assert diff.to_remove == frozenset()

    def test_empty_new(self) -> None:
        """Everything is removed for an empty desired set."""
        diff = diff_members({"X", "Y"}, set())
        assert diff.to_add == frozenset()
        assert diff.to_remove == frozenset({"X", "Y"})
        assert diff.total == frozenset()

    def test_accepts_any_iterable(self) -> None:
        """Lists with duplicates are treated as sets."""
        diff = diff_members(["A", "A", "B"], ("B", "C"))
        assert diff.to_add == frozenset({"C"})
        assert diff.to_remove == frozenset({"A"})

    def test_to_dict_is_sorted(self) -> None:
        """Serialized member lists are sorted."""
        diff = diff_members({"c", "a"}, {"b", "d"})
        assert diff.to_dict() == {
            "to_add": ["b", "d"],
            "to_remove": ["a", "c"],
            "total": ["b", "d"],
        }

    def test_result_is_immutable(self) -> None:
        """The diff holds frozensets."""
        diff = diff_members({"A"}, {"B"})
        assert isinstance(diff, MembershipDiff)
        assert isinstance(diff.to_add, frozenset)
        assert isinstance(diff.to_remove, frozenset)
        assert isinstance(diff.total, frozenset)


class TestDiffProperties:
    """Property tests for diff_members."""

    @given(old=member_ids, new=member_ids)
    def test_partition(self, old: frozenset[str], new: frozenset[str]) -> None:
        """Added and removed members never overlap."""
        diff = diff_members(old, new)
        assert not diff.to_add & diff.to_remove

    @given(old=member_ids, new=member_ids)
    def test_reachability(self, old: frozenset[str], new: frozenset[str]) -> None:
        """Applying the delta to old yields new."""
        diff = diff_members(old, new)
        assert (old - diff.to_remove) | diff.to_add == new
        assert diff.total == new

    @given(members=member_ids)
    def test_same_set_is_empty(self, members: frozenset[str]) -> None:
        """Diff(S, S) == (empty, empty, S)."""
        diff = diff_members(members, members)
        assert diff == MembershipDiff(frozenset(), frozenset(), members)

    @given(old=member_ids, new=member_ids)
    def test_deterministic(self, old: frozenset[str], new: frozenset[str]) -> None:
        """Repeated calls give identical results."""
        assert diff_members(old, new) == diff_members(old, new)

    @given(old=member_ids, new=member_ids)
    def test_delta_is_minimal(self, old: frozenset[str], new: frozenset[str]) -> None:
        """Only members that differ are touched."""
        diff = diff_members(old, new)
        assert diff.to_add <= new - old
        assert diff.to_remove <= old - new
