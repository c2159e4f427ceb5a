"""Reconciliation provenance for audit.

Every reconcile call, successful or not, is stamped with a provenance record
that answers:
- "Which members did the operator add or remove, and when?"
- "How long did the remote service take to converge?"
- "What version of the operator/manifests was running?"
"""

from __future__ import annotations

import logging
import os
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import Any

logger = logging.getLogger(__name__)

# Version is set at build time or falls back to dev
OPERATOR_VERSION = os.environ.get("OPERATOR_VERSION", "dev")


@dataclass
class ReconcileProvenance:
    """Provenance record for one grouping's reconcile call."""

    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    # Identity
    grouping_key: str = ""
    grouping_kind: str = ""
    operator_version: str = OPERATOR_VERSION
    operator_instance_id: str = ""

    # Manifest source of truth
    git_commit_sha: str = ""
    manifest_path: str = ""

    # Outcome
    dry_run: bool = False
    added: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    remote_calls: int = 0
    polls: int = 0

    # Timing
    duration_seconds: float = 0.0

    # Error tracking
    error: str | None = None
    error_type: str | None = None

    @property
    def changed(self) -> bool:
        return bool(self.added or self.removed)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        result = asdict(self)
        result["timestamp"] = self.timestamp.isoformat()
        return result


class ProvenanceLogger:
    """Logs provenance records to the structured logger."""

    def __init__(self) -> None:
        self._git_commit_sha = os.environ.get("GIT_COMMIT_SHA", "")
        self._instance_id = os.environ.get("CONTAINER_INSTANCE_ID", "")

    def create_provenance(
        self,
        grouping_key: str,
        grouping_kind: str,
        manifest_path: str = "",
        dry_run: bool = False,
    ) -> ReconcileProvenance:
        """Create a new provenance record for a reconcile call."""
        return ReconcileProvenance(
            grouping_key=grouping_key,
            grouping_kind=grouping_kind,
            operator_version=OPERATOR_VERSION,
            operator_instance_id=self._instance_id,
            git_commit_sha=self._git_commit_sha,
            manifest_path=manifest_path,
            dry_run=dry_run,
        )

    def log_provenance(self, provenance: ReconcileProvenance) -> None:
        """Log a completed provenance record.

        Failed calls are logged at ERROR, everything else at INFO.
        """
        log_level = logging.ERROR if provenance.error else logging.INFO
        logger.log(
            log_level,
            "Reconciliation provenance",
            extra={
                "provenance": provenance.to_dict(),
                # Flatten key fields for easier querying
                "grouping": provenance.grouping_key,
                "changed": provenance.changed,
                "added_count": len(provenance.added),
                "removed_count": len(provenance.removed),
                "polls": provenance.polls,
                "operator_version": provenance.operator_version,
                "duration_seconds": provenance.duration_seconds,
            },
        )


# Global singleton for provenance logging
_provenance_logger: ProvenanceLogger | None = None


def get_provenance_logger() -> ProvenanceLogger:
    """Get the global provenance logger instance."""
    global _provenance_logger
    if _provenance_logger is None:
        _provenance_logger = ProvenanceLogger()
    return _provenance_logger
