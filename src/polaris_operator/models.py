"""Grouping data model and pydantic models for desired-state manifests.

These models provide:
1. The in-memory shapes the reconciliation engine works on (Grouping,
   PendingOperation, member sets)
2. Type-safe YAML parsing of desired-state manifests
3. Validation at the boundary (fail fast, fail loudly)
4. Clean transformation to (grouping, desired members) pairs
"""

from __future__ import annotations

import re
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field, field_validator, model_validator

# Member IDs are opaque strings: object UUIDs, cloud account UUIDs or feature names
MemberID = str
MemberSet = frozenset[MemberID]

# Sentinel grouping ID used for doNotProtect SLA assignments
DO_NOT_PROTECT_ID = "doNotProtect"

# Features are upper-case identifiers such as CLOUD_NATIVE_PROTECTION
VALID_FEATURE_PATTERN = r"^[A-Z][A-Z0-9_]*$"


class MembershipError(Exception):
    """Base class for membership reconciliation errors."""

    pass


class GroupingKind(str, Enum):
    """Kinds of groupings whose membership is reconciled."""

    SLA_DOMAIN = "SLA_DOMAIN"
    TAG_RULE_SCOPE = "TAG_RULE_SCOPE"
    ACCOUNT_FEATURE_SET = "ACCOUNT_FEATURE_SET"


@dataclass(frozen=True)
class Grouping:
    """A policy grouping owning a set of member IDs.

    The options mapping carries kind-specific settings, for example the
    snapshot handling flags of an SLA domain assignment.
    """

    kind: GroupingKind
    grouping_id: str
    name: str = ""
    options: tuple[tuple[str, Any], ...] = ()

    @property
    def key(self) -> str:
        """Stable identifier used for logging and the applied state record."""
        return f"{self.kind.value}:{self.grouping_id}"

    def option(self, name: str, default: Any = None) -> Any:
        """Look up a kind-specific option."""
        for key, value in self.options:
            if key == name:
                return value
        return default

    @classmethod
    def create(
        cls,
        kind: GroupingKind,
        grouping_id: str,
        name: str = "",
        **options: Any,
    ) -> Grouping:
        """Build a grouping with options given as keyword arguments."""
        return cls(
            kind=kind,
            grouping_id=grouping_id,
            name=name,
            options=tuple(sorted(options.items())),
        )


@dataclass
class PendingOperation:
    """An add/remove delta in flight for a single reconcile call.

    Never persisted: if the process dies before convergence the next call
    recomputes the delta against fresh observed state.
    """

    grouping: Grouping
    to_add: MemberSet
    to_remove: MemberSet
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def size(self) -> int:
        return len(self.to_add) + len(self.to_remove)


def member_set(members: Any) -> MemberSet:
    """Normalize an iterable of member IDs into a frozenset."""
    if members is None:
        return frozenset()
    if isinstance(members, str):
        return frozenset({members})
    return frozenset(str(m) for m in members)


# =============================================================================
# Manifest Models
# =============================================================================


def _check_uuid(value: str, field_name: str) -> str:
    try:
        return str(uuid.UUID(value))
    except (ValueError, AttributeError, TypeError) as e:
        raise ValueError(f"{field_name} must be a UUID: {value!r}") from e


def _check_unique(values: list[str], field_name: str) -> list[str]:
    seen: set[str] = set()
    duplicates: set[str] = set()
    for value in values:
        if value in seen:
            duplicates.add(value)
        seen.add(value)
    if duplicates:
        raise ValueError(f"{field_name} contains duplicates: {sorted(duplicates)}")
    return values


class BaseManifest(BaseModel):
    """Base manifest with common fields."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    name: str = ""

    def to_grouping(self) -> Grouping:
        """Build the grouping this manifest reconciles."""
        raise NotImplementedError("Subclasses must implement to_grouping")

    def desired_members(self) -> MemberSet:
        """Return the desired membership declared by the manifest."""
        raise NotImplementedError("Subclasses must implement desired_members")


class SlaDomainAssignmentManifest(BaseManifest):
    """SLA domain assignment: which objects are directly assigned to a domain."""

    assignment_type: Literal["protectWithSlaId", "doNotProtect"] = Field(
        "protectWithSlaId", alias="assignmentType"
    )
    sla_domain_id: str | None = Field(None, alias="slaDomainId")
    object_ids: list[str] = Field(default_factory=list, alias="objectIds")
    apply_to_existing_snapshots: bool = Field(True, alias="applyChangesToExistingSnapshots")
    apply_to_non_policy_snapshots: bool = Field(False, alias="applyChangesToNonPolicySnapshots")
    existing_snapshot_retention: (
        Literal["RETAIN_SNAPSHOTS", "KEEP_FOREVER", "EXPIRE_IMMEDIATELY"] | None
    ) = Field(None, alias="existingSnapshotRetention")

    @field_validator("sla_domain_id")
    @classmethod
    def validate_domain_id(cls, v: str | None) -> str | None:
        if v is None:
            return v
        return _check_uuid(v, "slaDomainId")

    @field_validator("object_ids")
    @classmethod
    def validate_object_ids(cls, v: list[str]) -> list[str]:
        return _check_unique([_check_uuid(i, "objectIds") for i in v], "objectIds")

    @model_validator(mode="after")
    def validate_assignment_type(self) -> SlaDomainAssignmentManifest:
        if self.assignment_type == "protectWithSlaId":
            if not self.sla_domain_id:
                raise ValueError("slaDomainId is required when assignmentType is protectWithSlaId")
            if self.existing_snapshot_retention is not None:
                raise ValueError(
                    "existingSnapshotRetention is only valid when assignmentType is doNotProtect"
                )
            if self.apply_to_non_policy_snapshots and not self.apply_to_existing_snapshots:
                raise ValueError(
                    "applyChangesToNonPolicySnapshots requires "
                    "applyChangesToExistingSnapshots to be true"
                )
        elif self.sla_domain_id:
            raise ValueError("slaDomainId must be empty when assignmentType is doNotProtect")
        return self

    def to_grouping(self) -> Grouping:
        if self.assignment_type == "doNotProtect":
            return Grouping.create(
                GroupingKind.SLA_DOMAIN,
                DO_NOT_PROTECT_ID,
                name=self.name,
                existing_snapshot_retention=self.existing_snapshot_retention,
            )
        # SAFETY: sla_domain_id is validated non-None for protectWithSlaId
        return Grouping.create(
            GroupingKind.SLA_DOMAIN,
            self.sla_domain_id or "",
            name=self.name,
            apply_to_existing_snapshots=self.apply_to_existing_snapshots,
            apply_to_non_policy_snapshots=self.apply_to_non_policy_snapshots,
        )

    def desired_members(self) -> MemberSet:
        return member_set(self.object_ids)


class TagRuleScopeManifest(BaseManifest):
    """Cloud accounts a tag rule applies to."""

    tag_rule_id: Annotated[str, Field(alias="tagRuleId")]
    cloud_account_ids: list[str] = Field(default_factory=list, alias="cloudAccountIds")

    @field_validator("tag_rule_id")
    @classmethod
    def validate_tag_rule_id(cls, v: str) -> str:
        return _check_uuid(v, "tagRuleId")

    @field_validator("cloud_account_ids")
    @classmethod
    def validate_cloud_account_ids(cls, v: list[str]) -> list[str]:
        return _check_unique(
            [_check_uuid(i, "cloudAccountIds") for i in v], "cloudAccountIds"
        )

    def to_grouping(self) -> Grouping:
        return Grouping.create(GroupingKind.TAG_RULE_SCOPE, self.tag_rule_id, name=self.name)

    def desired_members(self) -> MemberSet:
        return member_set(self.cloud_account_ids)


class AccountFeatureSetManifest(BaseManifest):
    """Protection features enabled on a cloud account."""

    cloud_account_id: Annotated[str, Field(alias="cloudAccountId")]
    cloud: Literal["AWS", "AZURE", "GCP"] = "AWS"
    features: list[str] = Field(default_factory=list)
    delete_snapshots_on_removal: bool = Field(False, alias="deleteSnapshotsOnRemoval")

    @field_validator("cloud_account_id")
    @classmethod
    def validate_account_id(cls, v: str) -> str:
        return _check_uuid(v, "cloudAccountId")

    @field_validator("features")
    @classmethod
    def validate_features(cls, v: list[str]) -> list[str]:
        for feature in v:
            if not re.match(VALID_FEATURE_PATTERN, feature):
                raise ValueError(f"feature must match {VALID_FEATURE_PATTERN}: {feature!r}")
        return _check_unique(v, "features")

    def to_grouping(self) -> Grouping:
        return Grouping.create(
            GroupingKind.ACCOUNT_FEATURE_SET,
            self.cloud_account_id,
            name=self.name,
            cloud=self.cloud,
            delete_snapshots=self.delete_snapshots_on_removal,
        )

    def desired_members(self) -> MemberSet:
        return member_set(self.features)


# Manifest kind registry: maps the "kind" field of a manifest to its model
MANIFEST_REGISTRY: dict[str, type[BaseManifest]] = {
    "SlaDomainAssignment": SlaDomainAssignmentManifest,
    "TagRuleScope": TagRuleScopeManifest,
    "AccountFeatureSet": AccountFeatureSetManifest,
}


def get_manifest_class(kind: str) -> type[BaseManifest]:
    """Get the manifest class for a kind.

    Raises:
        ValueError: If kind is not recognized.
    """
    manifest_class = MANIFEST_REGISTRY.get(kind)
    if manifest_class is None:
        valid_kinds = list(MANIFEST_REGISTRY.keys())
        raise ValueError(f"Unknown kind '{kind}'. Valid kinds: {valid_kinds}")
    return manifest_class
