"""Tests for membership change ordering."""

from __future__ import annotations

import pytest

from polaris_operator.dependency import (
    FEATURE_DEPENDENCIES,
    CyclicDependencyError,
    DependencyGraph,
    DependencyNode,
    OrderingError,
    OrderingPolicy,
    Phase,
    Plan,
    PlanStep,
)
from polaris_operator.models import GroupingKind


class TestDependencyNode:
    """Tests for DependencyNode dataclass."""

    def test_default_values(self) -> None:
        """Test default node values."""
        node = DependencyNode(name="CLOUD_DISCOVERY")
        assert node.name == "CLOUD_DISCOVERY"
        assert node.depends_on == []


class TestDependencyGraph:
    """Tests for DependencyGraph."""

    def test_add_node(self) -> None:
        """Test adding nodes."""
        graph = DependencyGraph()
        graph.add_node("RDS_PROTECTION", ["CLOUD_DISCOVERY"])

        assert "RDS_PROTECTION" in graph.nodes
        assert "CLOUD_DISCOVERY" in graph.nodes  # Auto-created
        assert graph.nodes["RDS_PROTECTION"].depends_on == ["CLOUD_DISCOVERY"]

    def test_add_node_merges_dependencies(self) -> None:
        """Adding a node twice merges its dependencies."""
        graph = DependencyGraph()
        graph.add_node("c", ["a"])
        graph.add_node("c", ["b", "a"])
        assert graph.nodes["c"].depends_on == ["a", "b"]

    def test_from_hosts(self) -> None:
        """Host table becomes dependent -> host edges."""
        graph = DependencyGraph.from_hosts({"host": ["dep1", "dep2"]})
        assert graph.nodes["host"].depends_on == []
        assert graph.nodes["dep1"].depends_on == ["host"]
        assert graph.nodes["dep2"].depends_on == ["host"]

    def test_validate_no_cycle(self) -> None:
        """Test validation passes for acyclic graph."""
        graph = DependencyGraph.from_hosts(FEATURE_DEPENDENCIES)
        # Should not raise
        graph.validate()

    def test_validate_detects_cycle(self) -> None:
        """Test validation detects cycles."""
        graph = DependencyGraph()
        graph.add_node("a", ["b"])
        graph.add_node("b", ["c"])
        graph.add_node("c", ["a"])  # Cycle: a -> b -> c -> a

        with pytest.raises(CyclicDependencyError, match="Circular dependency"):
            graph.validate()

    def test_topological_sort_hosts_first(self) -> None:
        """Hosts come before their dependents."""
        graph = DependencyGraph()
        graph.add_node("a")
        graph.add_node("b", ["a"])
        graph.add_node("c", ["b"])

        order = graph.topological_sort()

        assert order.index("a") < order.index("b") < order.index("c")

    def test_depths(self) -> None:
        """Depth is the longest chain of hosts below a member."""
        graph = DependencyGraph()
        graph.add_node("c", ["a", "b"])
        graph.add_node("b", ["a"])

        assert graph.depths() == {"a": 0, "b": 1, "c": 2}

    def test_levels_drop_empty_levels(self) -> None:
        """Members skip levels nobody occupies."""
        graph = DependencyGraph()
        graph.add_node("b", ["a"])
        graph.add_node("c", ["b"])

        assert graph.levels({"a", "c"}) == [frozenset({"a"}), frozenset({"c"})]

    def test_levels_unknown_members_are_independent(self) -> None:
        """Members without relations land in the first level."""
        graph = DependencyGraph.from_hosts({"host": ["dep"]})
        assert graph.levels({"dep", "other"}) == [frozenset({"other"}), frozenset({"dep"})]

    def test_levels_empty(self) -> None:
        """No members, no levels."""
        graph = DependencyGraph.from_hosts(FEATURE_DEPENDENCIES)
        assert graph.levels(set()) == []


class TestPlan:
    """Tests for Plan helpers."""

    def test_empty_plan(self) -> None:
        """A plan without steps is empty."""
        assert Plan().is_empty
        assert Plan().to_list() == []

    def test_phase_helpers(self) -> None:
        """add_steps and remove_steps filter by phase."""
        add = PlanStep(Phase.ADD, frozenset({"A"}), frozenset({"A", "C"}))
        remove = PlanStep(Phase.REMOVE, frozenset({"C"}), frozenset({"A"}))
        plan = Plan(steps=(add, remove))

        assert plan.add_steps == [add]
        assert plan.remove_steps == [remove]
        assert plan.to_list() == [
            {"phase": "ADD", "members": ["A"]},
            {"phase": "REMOVE", "members": ["C"]},
        ]
        assert remove.describe() == "REMOVE ['C']"


class TestDefaultPolicy:
    """Tests for kinds without declared dependencies."""

    @pytest.fixture
    def policy(self) -> OrderingPolicy:
        return OrderingPolicy()

    def test_add_then_remove(self, policy: OrderingPolicy) -> None:
        """A single ADD step precedes a single REMOVE step."""
        plan = policy.order(
            GroupingKind.SLA_DOMAIN,
            frozenset({"A"}),
            frozenset({"C"}),
            observed=frozenset({"B", "C"}),
        )

        assert [(s.phase, s.members) for s in plan.steps] == [
            (Phase.ADD, frozenset({"A"})),
            (Phase.REMOVE, frozenset({"C"})),
        ]

    def test_expected_membership_per_step(self, policy: OrderingPolicy) -> None:
        """Each step carries the membership after it is applied."""
        plan = policy.order(
            GroupingKind.TAG_RULE_SCOPE,
            frozenset({"A"}),
            frozenset({"C"}),
            observed=frozenset({"B", "C"}),
        )

        assert plan.steps[0].expected == frozenset({"A", "B", "C"})
        assert plan.steps[1].expected == frozenset({"A", "B"})

    def test_remove_only(self, policy: OrderingPolicy) -> None:
        """Empty phases are omitted."""
        plan = policy.order(
            GroupingKind.SLA_DOMAIN,
            frozenset(),
            frozenset({"X", "Y"}),
            observed=frozenset({"X", "Y"}),
        )

        assert len(plan.steps) == 1
        assert plan.steps[0].phase == Phase.REMOVE
        assert plan.steps[0].expected == frozenset()

    def test_empty_delta(self, policy: OrderingPolicy) -> None:
        """No delta, no steps."""
        assert policy.order(GroupingKind.SLA_DOMAIN, frozenset(), frozenset()).is_empty

    def test_kind_given_as_string(self, policy: OrderingPolicy) -> None:
        """Kinds may be passed by value."""
        plan = policy.order("SLA_DOMAIN", frozenset({"A"}), frozenset())
        assert plan.steps[0].phase == Phase.ADD


class TestDependencyAwarePolicy:
    """Tests for cloud account feature ordering."""

    @pytest.fixture
    def policy(self) -> OrderingPolicy:
        return OrderingPolicy()

    def test_host_added_before_dependent(self, policy: OrderingPolicy) -> None:
        """CLOUD_DISCOVERY is enabled before RDS_PROTECTION."""
        plan = policy.order(
            GroupingKind.ACCOUNT_FEATURE_SET,
            frozenset({"CLOUD_DISCOVERY", "RDS_PROTECTION"}),
            frozenset(),
        )

        assert [s.members for s in plan.steps] == [
            frozenset({"CLOUD_DISCOVERY"}),
            frozenset({"RDS_PROTECTION"}),
        ]
        assert all(s.phase == Phase.ADD for s in plan.steps)

    def test_dependent_removed_before_host(self, policy: OrderingPolicy) -> None:
        """RDS_PROTECTION is removed before CLOUD_DISCOVERY."""
        observed = frozenset({"CLOUD_DISCOVERY", "RDS_PROTECTION"})
        plan = policy.order(GroupingKind.ACCOUNT_FEATURE_SET, frozenset(), observed, observed)

        assert [s.members for s in plan.steps] == [
            frozenset({"RDS_PROTECTION"}),
            frozenset({"CLOUD_DISCOVERY"}),
        ]
        assert plan.steps[0].expected == frozenset({"CLOUD_DISCOVERY"})
        assert plan.steps[1].expected == frozenset()

    def test_archival_encryption_order(self, policy: OrderingPolicy) -> None:
        """Archival encryption is removed before archival."""
        observed = frozenset({"CLOUD_NATIVE_ARCHIVAL", "CLOUD_NATIVE_ARCHIVAL_ENCRYPTION"})
        plan = policy.order(GroupingKind.ACCOUNT_FEATURE_SET, frozenset(), observed, observed)

        assert plan.steps[0].members == frozenset({"CLOUD_NATIVE_ARCHIVAL_ENCRYPTION"})
        assert plan.steps[-1].members == frozenset({"CLOUD_NATIVE_ARCHIVAL"})

    def test_adds_precede_removes(self, policy: OrderingPolicy) -> None:
        """All ADD steps come before any REMOVE step."""
        plan = policy.order(
            GroupingKind.ACCOUNT_FEATURE_SET,
            frozenset({"OUTPOST", "DSPM_DATA"}),
            frozenset({"KUBERNETES_PROTECTION"}),
            observed=frozenset({"CLOUD_DISCOVERY", "KUBERNETES_PROTECTION"}),
        )

        phases = [s.phase for s in plan.steps]
        assert phases == [Phase.ADD, Phase.ADD, Phase.REMOVE]
        assert plan.steps[-1].expected == frozenset({"CLOUD_DISCOVERY", "OUTPOST", "DSPM_DATA"})

    def test_independent_features_share_a_step(self, policy: OrderingPolicy) -> None:
        """Unrelated features are enabled in one call."""
        plan = policy.order(
            GroupingKind.ACCOUNT_FEATURE_SET,
            frozenset({"CLOUD_DISCOVERY", "EXOCOMPUTE"}),
            frozenset(),
        )
        assert len(plan.steps) == 1
        assert plan.steps[0].members == frozenset({"CLOUD_DISCOVERY", "EXOCOMPUTE"})


class TestPolicyErrors:
    """Tests for planning failures."""

    def test_unknown_kind_string(self) -> None:
        """An unrecognized kind is rejected."""
        with pytest.raises(OrderingError, match="Unrecognized grouping kind"):
            OrderingPolicy().order("NOT_A_KIND", frozenset({"A"}), frozenset())

    def test_kind_without_policy(self) -> None:
        """A kind missing from the policy map is rejected."""
        policy = OrderingPolicy({GroupingKind.SLA_DOMAIN: None})
        with pytest.raises(OrderingError, match="No ordering policy"):
            policy.order(GroupingKind.TAG_RULE_SCOPE, frozenset({"A"}), frozenset())

    def test_cycle(self) -> None:
        """A cyclic dependency table fails planning and check()."""
        graph = DependencyGraph()
        graph.add_node("a", ["b"])
        graph.add_node("b", ["a"])
        policy = OrderingPolicy({GroupingKind.ACCOUNT_FEATURE_SET: graph})

        with pytest.raises(CyclicDependencyError):
            policy.check(GroupingKind.ACCOUNT_FEATURE_SET)
        with pytest.raises(OrderingError):
            policy.order(GroupingKind.ACCOUNT_FEATURE_SET, frozenset({"a"}), frozenset())

    def test_check_passes_for_defaults(self) -> None:
        """The built-in policy plans every kind."""
        policy = OrderingPolicy()
        for kind in GroupingKind:
            policy.check(kind)
