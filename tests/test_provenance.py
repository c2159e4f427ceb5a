"""Tests for reconcile provenance tracking."""

from __future__ import annotations

import logging
from datetime import UTC
from unittest.mock import patch

import pytest

from polaris_operator import provenance as provenance_module
from polaris_operator.provenance import (
    OPERATOR_VERSION,
    ProvenanceLogger,
    ReconcileProvenance,
    get_provenance_logger,
)


class TestReconcileProvenance:
    """Tests for ReconcileProvenance dataclass."""

    def test_defaults(self) -> None:
        """A fresh record has no changes and no error."""
        record = ReconcileProvenance()
        assert record.timestamp.tzinfo == UTC
        assert record.operator_version == OPERATOR_VERSION
        assert record.changed is False
        assert record.error is None

    def test_changed(self) -> None:
        """Added or removed members mark the record changed."""
        assert ReconcileProvenance(added=["A"]).changed
        assert ReconcileProvenance(removed=["C"]).changed

    def test_to_dict(self) -> None:
        """Timestamp is serialized as ISO 8601."""
        record = ReconcileProvenance(grouping_key="SLA_DOMAIN:x", added=["A"], polls=3)
        data = record.to_dict()

        assert data["grouping_key"] == "SLA_DOMAIN:x"
        assert data["added"] == ["A"]
        assert data["polls"] == 3
        assert isinstance(data["timestamp"], str)
        assert "T" in data["timestamp"]


class TestProvenanceLogger:
    """Tests for ProvenanceLogger."""

    def test_create_reads_environment(self) -> None:
        """Git SHA and instance ID come from the environment."""
        env = {"GIT_COMMIT_SHA": "abc1234", "CONTAINER_INSTANCE_ID": "operator-0"}
        with patch.dict("os.environ", env):
            provenance_logger = ProvenanceLogger()

        record = provenance_logger.create_provenance(
            grouping_key="TAG_RULE_SCOPE:x",
            grouping_kind="TAG_RULE_SCOPE",
            manifest_path="/specs/tags.yaml",
            dry_run=True,
        )

        assert record.git_commit_sha == "abc1234"
        assert record.operator_instance_id == "operator-0"
        assert record.manifest_path == "/specs/tags.yaml"
        assert record.dry_run is True

    def test_log_success_at_info(self, caplog: pytest.LogCaptureFixture) -> None:
        """Successful calls are logged at INFO with flattened fields."""
        provenance_logger = ProvenanceLogger()
        record = ReconcileProvenance(grouping_key="SLA_DOMAIN:x", added=["A", "B"])

        with caplog.at_level(logging.INFO, logger="polaris_operator.provenance"):
            provenance_logger.log_provenance(record)

        assert len(caplog.records) == 1
        logged = caplog.records[0]
        assert logged.levelno == logging.INFO
        assert logged.grouping == "SLA_DOMAIN:x"
        assert logged.added_count == 2
        assert logged.changed is True

    def test_log_failure_at_error(self, caplog: pytest.LogCaptureFixture) -> None:
        """Failed calls are logged at ERROR."""
        provenance_logger = ProvenanceLogger()
        record = ReconcileProvenance(error="rejected", error_type="ExecutionError")

        with caplog.at_level(logging.INFO, logger="polaris_operator.provenance"):
            provenance_logger.log_provenance(record)

        assert caplog.records[0].levelno == logging.ERROR


class TestGetProvenanceLogger:
    """Tests for the global singleton."""

    def test_singleton(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Repeated calls return the same instance."""
        monkeypatch.setattr(provenance_module, "_provenance_logger", None)
        assert get_provenance_logger() is get_provenance_logger()
