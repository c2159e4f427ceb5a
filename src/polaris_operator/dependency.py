"""Ordering policy for membership changes.

This module turns a membership delta into an explicit, ordered plan:
1. Dependency graph construction from host/dependent relations
2. Cycle detection so a bad table fails before any remote call
3. Level assignment (hosts first) via longest-path depth
4. Plan construction: add phases before remove phases

DESIGN PHILOSOPHY:
- The remote service cannot apply adds and removes atomically
- A dependent feature must never exist without its host feature
- Adds therefore run hosts first, removes run dependents first
- Groupings with no declared relations get a single add then a single remove

EXAMPLE:
    to_add = {CLOUD_DISCOVERY, RDS_PROTECTION}
    plan   = [ADD {CLOUD_DISCOVERY}, ADD {RDS_PROTECTION}]

    to_remove = {CLOUD_DISCOVERY, RDS_PROTECTION}
    plan      = [REMOVE {RDS_PROTECTION}, REMOVE {CLOUD_DISCOVERY}]
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from enum import Enum

from .models import GroupingKind, MemberSet, MembershipError

logger = logging.getLogger(__name__)


class Phase(str, Enum):
    """Kind of remote call a plan step issues."""

    ADD = "ADD"
    REMOVE = "REMOVE"


class OrderingError(MembershipError):
    """Raised when a plan cannot be built for a grouping."""

    pass


class CyclicDependencyError(OrderingError):
    """Raised when a dependency cycle is detected."""

    pass


# Host feature -> features that require it. A dependent can only be enabled
# once its host is enabled and must be disabled before the host is.
FEATURE_DEPENDENCIES: dict[str, list[str]] = {
    "CLOUD_DISCOVERY": [
        "CLOUD_NATIVE_PROTECTION",
        "CLOUD_NATIVE_DYNAMODB_PROTECTION",
        "CLOUD_NATIVE_S3_PROTECTION",
        "KUBERNETES_PROTECTION",
        "RDS_PROTECTION",
    ],
    "CLOUD_NATIVE_ARCHIVAL": ["CLOUD_NATIVE_ARCHIVAL_ENCRYPTION"],
    "OUTPOST": [
        "CYBER_RECOVERY_DATA_CLASSIFICATION_DATA",
        "CYBER_RECOVERY_DATA_CLASSIFICATION_METADATA",
        "LAMINAR_INTERNAL",
        "LAMINAR_CROSS_ACCOUNT",
        "DSPM_DATA",
        "DSPM_METADATA",
    ],
}


@dataclass
class DependencyNode:
    """A node in the dependency graph."""

    name: str
    depends_on: list[str] = field(default_factory=list)


@dataclass
class DependencyGraph:
    """Directed acyclic graph of member dependencies."""

    nodes: dict[str, DependencyNode] = field(default_factory=dict)

    @classmethod
    def from_hosts(cls, hosts: Mapping[str, Iterable[str]]) -> DependencyGraph:
        """Build a graph from a host -> dependents table."""
        graph = cls()
        for host, dependents in hosts.items():
            graph.add_node(host)
            for dependent in dependents:
                graph.add_node(dependent, [host])
        return graph

    def add_node(self, name: str, depends_on: list[str] | None = None) -> None:
        """Add a node to the dependency graph.

        Args:
            name: Member name.
            depends_on: Members that must exist before this one.
        """
        if name in self.nodes:
            for dep in depends_on or []:
                if dep not in self.nodes[name].depends_on:
                    self.nodes[name].depends_on.append(dep)
        else:
            self.nodes[name] = DependencyNode(name=name, depends_on=list(depends_on or []))

        # Ensure all dependencies have nodes (even if not yet defined)
        for dep in depends_on or []:
            if dep not in self.nodes:
                self.nodes[dep] = DependencyNode(name=dep)

    def validate(self) -> None:
        """Validate the dependency graph for cycles.

        Raises:
            CyclicDependencyError: If a cycle is detected.
        """
        # Kahn's algorithm for topological sort / cycle detection
        in_degree: dict[str, int] = {node: 0 for node in self.nodes}
        for node in self.nodes.values():
            for dep in node.depends_on:
                if dep in in_degree:
                    in_degree[dep] += 1

        # Queue nodes with no incoming edges
        queue = [node for node, degree in in_degree.items() if degree == 0]
        processed = 0

        while queue:
            current = queue.pop(0)
            processed += 1

            for dep in self.nodes[current].depends_on:
                if dep in in_degree:
                    in_degree[dep] -= 1
                    if in_degree[dep] == 0:
                        queue.append(dep)

        if processed != len(self.nodes):
            cycle_nodes = sorted(node for node, degree in in_degree.items() if degree > 0)
            raise CyclicDependencyError(f"Circular dependency detected involving: {cycle_nodes}")

    def topological_sort(self) -> list[str]:
        """Return members in dependency order (hosts first).

        Raises:
            CyclicDependencyError: If a cycle is detected.
        """
        self.validate()

        dependents: dict[str, list[str]] = {node: [] for node in self.nodes}
        in_degree: dict[str, int] = {node: 0 for node in self.nodes}

        for node in self.nodes.values():
            for dep in node.depends_on:
                if dep in dependents:
                    dependents[dep].append(node.name)
                    in_degree[node.name] += 1

        result: list[str] = []
        queue = [node for node, degree in in_degree.items() if degree == 0]

        while queue:
            # Sort for deterministic ordering among nodes with same in_degree
            queue.sort()
            current = queue.pop(0)
            result.append(current)

            for dependent in dependents[current]:
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    queue.append(dependent)

        return result

    def depths(self) -> dict[str, int]:
        """Longest chain of hosts below each member (0 for roots).

        Raises:
            CyclicDependencyError: If a cycle is detected.
        """
        depth: dict[str, int] = {}
        for name in self.topological_sort():
            deps = [d for d in self.nodes[name].depends_on if d in depth]
            depth[name] = 1 + max(depth[d] for d in deps) if deps else 0
        return depth

    def levels(self, members: Iterable[str]) -> list[frozenset[str]]:
        """Split members into levels, hosts before their dependents.

        Members with no recorded relation are independent and land in the
        first level. Empty levels are dropped.
        """
        depth = self.depths()
        buckets: dict[int, set[str]] = {}
        for member in members:
            buckets.setdefault(depth.get(member, 0), set()).add(member)
        return [frozenset(buckets[level]) for level in sorted(buckets)]


@dataclass(frozen=True)
class PlanStep:
    """One remote call in a plan.

    `expected` is the membership the grouping should hold once this step
    has been applied; replace-style APIs send it as the full member list.
    """

    phase: Phase
    members: MemberSet
    expected: MemberSet

    def describe(self) -> str:
        return f"{self.phase.value} {sorted(self.members)}"


@dataclass(frozen=True)
class Plan:
    """Ordered add/remove steps for one grouping."""

    steps: tuple[PlanStep, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not self.steps

    @property
    def add_steps(self) -> list[PlanStep]:
        return [s for s in self.steps if s.phase == Phase.ADD]

    @property
    def remove_steps(self) -> list[PlanStep]:
        return [s for s in self.steps if s.phase == Phase.REMOVE]

    def to_list(self) -> list[dict[str, object]]:
        """Convert to a JSON-friendly list for logs and CLI output."""
        return [{"phase": s.phase.value, "members": sorted(s.members)} for s in self.steps]


class OrderingPolicy:
    """Plans the sequence of add/remove calls per grouping kind.

    Kinds mapped to None use the default policy (all adds, then all
    removes). Kinds mapped to a DependencyGraph are ordered by level.
    Kinds missing from the mapping are rejected.
    """

    def __init__(self, graphs: Mapping[GroupingKind, DependencyGraph | None] | None = None) -> None:
        if graphs is None:
            graphs = {
                GroupingKind.SLA_DOMAIN: None,
                GroupingKind.TAG_RULE_SCOPE: None,
                GroupingKind.ACCOUNT_FEATURE_SET: DependencyGraph.from_hosts(
                    FEATURE_DEPENDENCIES
                ),
            }
        self._graphs = dict(graphs)

    def graph_for(self, kind: GroupingKind | str) -> DependencyGraph | None:
        """Return the dependency graph for a kind (None for the default policy).

        Raises:
            OrderingError: If the kind is not recognized.
        """
        try:
            resolved = GroupingKind(kind)
        except ValueError as e:
            raise OrderingError(f"Unrecognized grouping kind: {kind}") from e
        if resolved not in self._graphs:
            raise OrderingError(f"No ordering policy for grouping kind: {resolved.value}")
        return self._graphs[resolved]

    def check(self, kind: GroupingKind | str) -> None:
        """Fail fast if no plan can be built for a kind.

        Raises:
            OrderingError: If the kind is unknown.
            CyclicDependencyError: If the kind's dependency table has a cycle.
        """
        graph = self.graph_for(kind)
        if graph is not None:
            graph.validate()

    def order(
        self,
        kind: GroupingKind | str,
        to_add: MemberSet,
        to_remove: MemberSet,
        observed: MemberSet = frozenset(),
    ) -> Plan:
        """Build the ordered plan for a delta.

        Args:
            kind: Grouping kind.
            to_add: Members to add.
            to_remove: Members to remove.
            observed: Membership before the plan runs, used to compute each
                step's expected membership.

        Raises:
            OrderingError: If the kind is unknown.
            CyclicDependencyError: If the kind's dependency table has a cycle.
        """
        graph = self.graph_for(kind)

        if graph is None:
            add_levels = [frozenset(to_add)] if to_add else []
            remove_levels = [frozenset(to_remove)] if to_remove else []
        else:
            add_levels = graph.levels(to_add)
            # Dependents are removed before the members they depend on
            remove_levels = list(reversed(graph.levels(to_remove)))

        steps: list[PlanStep] = []
        current = frozenset(observed)
        for members in add_levels:
            current = current | members
            steps.append(PlanStep(phase=Phase.ADD, members=members, expected=current))
        for members in remove_levels:
            current = current - members
            steps.append(PlanStep(phase=Phase.REMOVE, members=members, expected=current))

        plan = Plan(steps=tuple(steps))
        logger.debug(
            "Plan built",
            extra={"kind": GroupingKind(kind).value, "steps": plan.to_list()},
        )
        return plan
