"""RSC API mock for integration testing.

This package provides in-memory stand-ins for the RSC API that enable
testing the reconciliation engine without RSC connectivity.

Key Features:
- Eventually consistent membership: mutations become visible only after a
  configurable number of reads
- Failure injection per phase (ADD / REMOVE)
- Call counters for reads and mutations, including reads after the first
  mutation
- Scripted GraphQL client for backend tests

Usage:
    from rsc_mock import MockMembershipService

    service = MockMembershipService(lag_polls=2)
    service.seed(grouping, {"B", "C"})
    reconciler = Reconciler(service.registry(), poll_interval_seconds=0.01)
    await reconciler.reconcile(grouping, frozenset({"A", "B"}))
    assert service.reads_after_mutation(grouping) == 3
"""

from .graphql import MockGraphQLClient, not_found
from .membership import MockMembershipService, MutationRecord

__all__ = [
    "MockGraphQLClient",
    "MockMembershipService",
    "MutationRecord",
    "not_found",
]
