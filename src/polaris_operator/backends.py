"""Membership backends: the remote API boundary of the reconciliation engine.

Each backend maps the three boundary operations onto RSC GraphQL calls for
one grouping kind:

    get_membership(grouping)                       -> observed member set
    add_members(grouping, members, expected)       -> accepted or raises
    remove_members(grouping, members, expected)    -> accepted or raises

`expected` is the full membership the grouping should hold after the call.
Incremental backends ignore it; replace-style backends (replace_style=True)
send it as the complete member list, because their API overwrites the list.

Adding a present member or removing an absent one is assumed to be a no-op
on the remote side, which is what makes a repeated reconcile safe.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from typing import Any, Protocol, runtime_checkable

from .client import GraphQLError, PolarisClient
from .models import DO_NOT_PROTECT_ID, Grouping, GroupingKind, MemberSet, MembershipError

logger = logging.getLogger(__name__)

# SLA assignment values reported on a hierarchy object
SLA_ASSIGNMENT_DIRECT = "Direct"
APPLICABLE_WORKLOAD_TYPE = "AllSubHierarchyType"

# Feature status reported for an enabled feature
FEATURE_STATUS_CONNECTED = "CONNECTED"

# Hierarchy object reads in flight at once per SLA backend
MAX_CONCURRENT_READS = 10


class BackendNotFoundError(MembershipError):
    """Raised when no backend is registered for a grouping kind."""

    pass


@runtime_checkable
class MembershipBackend(Protocol):
    """Remote operations the engine consumes for one grouping kind."""

    replace_style: bool

    def watch(self, grouping: Grouping, members: Iterable[str]) -> None:
        """Set the members whose state should be read for the grouping.

        Replaces what was registered before; members this backend mutates
        are added on top until the next call.
        """
        ...

    async def get_membership(self, grouping: Grouping) -> MemberSet: ...

    async def add_members(
        self, grouping: Grouping, members: MemberSet, expected: MemberSet
    ) -> None: ...

    async def remove_members(
        self, grouping: Grouping, members: MemberSet, expected: MemberSet
    ) -> None: ...


class BackendRegistry:
    """Routes grouping kinds to their backends."""

    def __init__(self, backends: dict[GroupingKind, MembershipBackend] | None = None) -> None:
        self._backends: dict[GroupingKind, MembershipBackend] = dict(backends or {})

    def register(self, kind: GroupingKind, backend: MembershipBackend) -> None:
        self._backends[kind] = backend

    def get(self, kind: GroupingKind) -> MembershipBackend:
        """Get the backend for a kind.

        Raises:
            BackendNotFoundError: If no backend is registered for the kind.
        """
        backend = self._backends.get(kind)
        if backend is None:
            valid = sorted(k.value for k in self._backends)
            raise BackendNotFoundError(f"No backend for grouping kind '{kind}'. Registered: {valid}")
        return backend

    @property
    def kinds(self) -> list[GroupingKind]:
        return list(self._backends)

    @classmethod
    def for_client(cls, client: PolarisClient) -> BackendRegistry:
        """Build the registry of all RSC backends sharing one client."""
        return cls(
            {
                GroupingKind.SLA_DOMAIN: SlaDomainBackend(client),
                GroupingKind.TAG_RULE_SCOPE: TagRuleBackend(client),
                GroupingKind.ACCOUNT_FEATURE_SET: AccountFeatureBackend(client),
            }
        )


# =============================================================================
# SLA domain assignments
# =============================================================================

HIERARCHY_OBJECT_QUERY = """
query SlaHierarchyObject($fid: UUID!) {
  hierarchyObject(fid: $fid) {
    id
    slaAssignment
    configuredSlaDomain { id }
    effectiveSlaDomain { id }
  }
}
"""

ASSIGN_SLA_MUTATION = """
mutation AssignSla($input: AssignSlaInput!) {
  assignSla(input: $input) { success }
}
"""


class SlaDomainBackend:
    """Objects directly assigned to an SLA domain (or to doNotProtect).

    SLA domains cannot list their direct assignments, so membership is read
    object by object over the set of watched objects: everything declared or
    previously applied for the grouping and everything this backend mutated
    since. An object reassigned to a different domain is no longer a member.
    """

    replace_style = False

    def __init__(
        self, client: PolarisClient, max_concurrent_reads: int = MAX_CONCURRENT_READS
    ) -> None:
        if max_concurrent_reads < 1:
            raise ValueError("max_concurrent_reads must be at least 1")
        self._client = client
        self._watched: dict[str, set[str]] = {}
        self._read_slots = asyncio.Semaphore(max_concurrent_reads)

    def watch(self, grouping: Grouping, members: Iterable[str]) -> None:
        self._watched[grouping.key] = set(members)

    async def get_membership(self, grouping: Grouping) -> MemberSet:
        watched = sorted(self._watched.get(grouping.key, set()))
        objects = await asyncio.gather(*(self._hierarchy_object(i) for i in watched))
        return frozenset(
            object_id
            for object_id, obj in zip(watched, objects, strict=True)
            if obj is not None and self._is_member(grouping, obj)
        )

    async def add_members(
        self, grouping: Grouping, members: MemberSet, expected: MemberSet
    ) -> None:
        self._track(grouping, members)
        if grouping.grouping_id == DO_NOT_PROTECT_ID:
            assignment: dict[str, Any] = {"slaDomainAssignType": "doNotProtect"}
            retention = grouping.option("existing_snapshot_retention")
            if retention:
                assignment["existingSnapshotRetention"] = retention
        else:
            assignment = {
                "slaDomainAssignType": "protectWithSlaId",
                "slaOptionalId": grouping.grouping_id,
                "shouldApplyToExistingSnapshots": grouping.option(
                    "apply_to_existing_snapshots", True
                ),
                "shouldApplyToNonPolicySnapshots": grouping.option(
                    "apply_to_non_policy_snapshots", False
                ),
            }
        await self._assign(members, assignment)

    async def remove_members(
        self, grouping: Grouping, members: MemberSet, expected: MemberSet
    ) -> None:
        self._track(grouping, members)
        await self._assign(members, {"slaDomainAssignType": "noAssignment"})

    def _track(self, grouping: Grouping, members: Iterable[str]) -> None:
        self._watched.setdefault(grouping.key, set()).update(members)

    async def _assign(self, members: MemberSet, assignment: dict[str, Any]) -> None:
        variables = {
            "input": {
                **assignment,
                "objectIds": sorted(members),
                "applicableWorkloadType": APPLICABLE_WORKLOAD_TYPE,
            }
        }
        data = await self._client.execute("AssignSla", ASSIGN_SLA_MUTATION, variables)
        if not (data.get("assignSla") or {}).get("success", False):
            raise MembershipError(f"assignSla was not accepted for {sorted(members)}")

    async def _hierarchy_object(self, object_id: str) -> dict[str, Any] | None:
        try:
            async with self._read_slots:
                data = await self._client.execute(
                    "SlaHierarchyObject", HIERARCHY_OBJECT_QUERY, {"fid": object_id}
                )
        except GraphQLError as e:
            if e.is_not_found:
                logger.warning("Watched object not found", extra={"object_id": object_id})
                return None
            raise
        return data.get("hierarchyObject")

    @staticmethod
    def _is_member(grouping: Grouping, obj: dict[str, Any]) -> bool:
        if obj.get("slaAssignment") != SLA_ASSIGNMENT_DIRECT:
            return False
        if grouping.grouping_id == DO_NOT_PROTECT_ID:
            # With RETAIN_SNAPSHOTS the configured domain keeps the previous SLA
            return (obj.get("effectiveSlaDomain") or {}).get("id") == DO_NOT_PROTECT_ID
        return (obj.get("configuredSlaDomain") or {}).get("id") == grouping.grouping_id


# =============================================================================
# Tag rule cloud account scope
# =============================================================================

TAG_RULE_QUERY = """
query TagRule($tagRuleId: UUID!) {
  tagRule(tagRuleId: $tagRuleId) {
    id
    allCloudAccounts
    cloudNativeAccounts { id }
  }
}
"""

UPDATE_TAG_RULE_MUTATION = """
mutation UpdateTagRule($input: UpdateTagRuleInput!) {
  updateCloudNativeTagRule(input: $input)
}
"""

AWS_ACCOUNT_QUERY = """
query AwsCloudAccount($cloudAccountId: UUID!) {
  awsCloudAccountWithFeatures(cloudAccountId: $cloudAccountId) { awsCloudAccount { id } }
}
"""

AZURE_SUBSCRIPTION_QUERY = """
query AzureNativeSubscription($cloudAccountId: UUID!) {
  azureNativeSubscriptionByCloudAccountId(cloudAccountId: $cloudAccountId) { id }
}
"""

GCP_PROJECT_QUERY = """
query GcpNativeProject($cloudAccountId: UUID!) {
  gcpNativeProjectByCloudAccountId(cloudAccountId: $cloudAccountId) { id }
}
"""

AZURE_CLOUD_ACCOUNT_QUERY = """
query AzureCloudAccountByNativeId($nativeId: UUID!) {
  azureSubscriptionByNativeId(nativeId: $nativeId) { cloudAccountId }
}
"""

GCP_CLOUD_ACCOUNT_QUERY = """
query GcpCloudAccountByNativeId($nativeId: UUID!) {
  gcpProjectByNativeId(nativeId: $nativeId) { cloudAccountId }
}
"""

VENDOR_INPUT_KEYS = {
    "AWS": "awsAccountIds",
    "AZURE": "azureSubscriptionIds",
    "GCP": "gcpProjectIds",
}


class TagRuleBackend:
    """Cloud accounts a tag rule is scoped to (replace-style).

    The update mutation overwrites the account list, so add and remove both
    send the full expected set. Tag rules store native account IDs grouped by
    vendor; AWS uses the same ID for cloud and native accounts, Azure and GCP
    need a lookup in each direction. Lookups are cached per backend.

    A rule scoped to all cloud accounts reports an empty membership.
    """

    replace_style = True

    def __init__(self, client: PolarisClient) -> None:
        self._client = client
        # cloud account ID -> (vendor, native ID)
        self._native: dict[str, tuple[str, str]] = {}
        # native ID -> cloud account ID
        self._cloud: dict[str, str] = {}

    def watch(self, grouping: Grouping, members: Iterable[str]) -> None:
        # The rule reports its full scope, nothing to register
        return None

    async def get_membership(self, grouping: Grouping) -> MemberSet:
        data = await self._client.execute(
            "TagRule", TAG_RULE_QUERY, {"tagRuleId": grouping.grouping_id}
        )
        rule = data.get("tagRule")
        if rule is None:
            raise MembershipError(f"Tag rule not found: {grouping.grouping_id}")
        if rule.get("allCloudAccounts"):
            logger.warning(
                "Tag rule is scoped to all cloud accounts",
                extra={"grouping": grouping.key},
            )
            return frozenset()

        native_ids = [a["id"] for a in rule.get("cloudNativeAccounts") or []]
        cloud_ids = await asyncio.gather(*(self._cloud_account_id(n) for n in native_ids))
        return frozenset(cloud_ids)

    async def add_members(
        self, grouping: Grouping, members: MemberSet, expected: MemberSet
    ) -> None:
        await self._replace(grouping, expected)

    async def remove_members(
        self, grouping: Grouping, members: MemberSet, expected: MemberSet
    ) -> None:
        await self._replace(grouping, expected)

    async def _replace(self, grouping: Grouping, expected: MemberSet) -> None:
        accounts: dict[str, list[str]] = {key: [] for key in VENDOR_INPUT_KEYS.values()}
        for cloud_account_id in sorted(expected):
            vendor, native_id = await self._native_account(cloud_account_id)
            accounts[VENDOR_INPUT_KEYS[vendor]].append(native_id)

        variables = {
            "input": {
                "tagRuleId": grouping.grouping_id,
                "cloudNativeAccounts": accounts,
                "allCloudAccounts": False,
            }
        }
        await self._client.execute("UpdateTagRule", UPDATE_TAG_RULE_MUTATION, variables)

    async def _native_account(self, cloud_account_id: str) -> tuple[str, str]:
        cached = self._native.get(cloud_account_id)
        if cached is not None:
            return cached

        lookups = (
            ("AWS", "AwsCloudAccount", AWS_ACCOUNT_QUERY),
            ("AZURE", "AzureNativeSubscription", AZURE_SUBSCRIPTION_QUERY),
            ("GCP", "GcpNativeProject", GCP_PROJECT_QUERY),
        )
        for vendor, operation, query in lookups:
            try:
                data = await self._client.execute(
                    operation, query, {"cloudAccountId": cloud_account_id}
                )
            except GraphQLError as e:
                if e.is_not_found:
                    continue
                raise
            if vendor == "AWS":
                # AWS uses the same ID for cloud and native accounts
                native_id = cloud_account_id
            else:
                node = next(iter(data.values()), None) or {}
                native_id = node.get("id")
                if not native_id:
                    continue
            self._native[cloud_account_id] = (vendor, native_id)
            self._cloud[native_id] = cloud_account_id
            return vendor, native_id

        raise MembershipError(f"Cloud account not found: {cloud_account_id}")

    async def _cloud_account_id(self, native_id: str) -> str:
        cached = self._cloud.get(native_id)
        if cached is not None:
            return cached

        lookups = (
            ("AzureCloudAccountByNativeId", AZURE_CLOUD_ACCOUNT_QUERY),
            ("GcpCloudAccountByNativeId", GCP_CLOUD_ACCOUNT_QUERY),
        )
        for operation, query in lookups:
            try:
                data = await self._client.execute(operation, query, {"nativeId": native_id})
            except GraphQLError as e:
                if e.is_not_found:
                    continue
                raise
            node = next(iter(data.values()), None) or {}
            cloud_account_id = node.get("cloudAccountId")
            if cloud_account_id:
                self._cloud[native_id] = cloud_account_id
                return cloud_account_id

        # Neither Azure nor GCP: an AWS account, whose native ID is the cloud ID
        self._cloud[native_id] = native_id
        return native_id


# =============================================================================
# Cloud account features
# =============================================================================

ACCOUNT_FEATURES_QUERY = """
query CloudAccountFeatures($cloudAccountId: UUID!, $cloud: CloudVendor!) {
  cloudAccountFeatures(cloudAccountId: $cloudAccountId, cloudVendor: $cloud) {
    feature
    status
  }
}
"""

ADD_FEATURES_MUTATION = """
mutation AddCloudAccountFeatures($input: AddCloudAccountFeaturesInput!) {
  addCloudAccountFeatures(input: $input) { success }
}
"""

REMOVE_FEATURES_MUTATION = """
mutation RemoveCloudAccountFeatures($input: RemoveCloudAccountFeaturesInput!) {
  removeCloudAccountFeatures(input: $input) { success }
}
"""


class AccountFeatureBackend:
    """Protection features enabled on a cloud account."""

    replace_style = False

    def __init__(self, client: PolarisClient) -> None:
        self._client = client

    def watch(self, grouping: Grouping, members: Iterable[str]) -> None:
        # The account reports all of its features, nothing to register
        return None

    async def get_membership(self, grouping: Grouping) -> MemberSet:
        data = await self._client.execute(
            "CloudAccountFeatures",
            ACCOUNT_FEATURES_QUERY,
            {"cloudAccountId": grouping.grouping_id, "cloud": grouping.option("cloud", "AWS")},
        )
        return frozenset(
            f["feature"]
            for f in data.get("cloudAccountFeatures") or []
            if f.get("status") == FEATURE_STATUS_CONNECTED
        )

    async def add_members(
        self, grouping: Grouping, members: MemberSet, expected: MemberSet
    ) -> None:
        variables = {
            "input": {
                "cloudAccountId": grouping.grouping_id,
                "cloudVendor": grouping.option("cloud", "AWS"),
                "features": sorted(members),
            }
        }
        data = await self._client.execute(
            "AddCloudAccountFeatures", ADD_FEATURES_MUTATION, variables
        )
        if not (data.get("addCloudAccountFeatures") or {}).get("success", False):
            raise MembershipError(f"Enabling features {sorted(members)} was not accepted")

    async def remove_members(
        self, grouping: Grouping, members: MemberSet, expected: MemberSet
    ) -> None:
        variables = {
            "input": {
                "cloudAccountId": grouping.grouping_id,
                "cloudVendor": grouping.option("cloud", "AWS"),
                "features": sorted(members),
                "deleteSnapshots": grouping.option("delete_snapshots", False),
            }
        }
        data = await self._client.execute(
            "RemoveCloudAccountFeatures", REMOVE_FEATURES_MUTATION, variables
        )
        if not (data.get("removeCloudAccountFeatures") or {}).get("success", False):
            raise MembershipError(f"Removing features {sorted(members)} was not accepted")
