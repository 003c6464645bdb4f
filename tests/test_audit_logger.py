"""Tests for AuditLogger functionality."""

import json
import os
import tempfile
import time
from pathlib import Path

import pytest

from labelsync.audit.logger import AuditEvent, AuditLogger, AuditSummary
from labelsync.clients.exceptions import SyncError
from labelsync.core.models import utc_now
from labelsync.core.provisioner import ItemOutcome, ItemStatus
from labelsync.core.synchronizer import SyncReport


@pytest.fixture
def temp_audit_dir():
    """Create temporary directory for audit logs."""
    with tempfile.TemporaryDirectory() as temp_dir:
        yield Path(temp_dir)


@pytest.fixture
def audit_logger(temp_audit_dir):
    """Create AuditLogger instance with temporary directory."""
    return AuditLogger(audit_dir=temp_audit_dir, retention_days=7)


def _read_events(path: Path):
    with open(path, "r", encoding="utf-8") as f:
        return [json.loads(line) for line in f if line.strip()]


class TestAuditLogger:
    """Test cases for AuditLogger."""

    def test_start_run_writes_start_event(self, audit_logger):
        """Test opening a run creates its event file."""
        run = audit_logger.start_run("run-1", "T1", "gmail")

        events = _read_events(run.file_path)
        assert run.file_path.name.startswith("audit_")
        assert run.file_path.name.endswith("_run-1.jsonl")
        assert events[0]["event_type"] == "run_start"
        assert events[0]["tenant_id"] == "T1"
        run.complete("converged")

    def test_outcomes_and_summary(self, audit_logger, temp_audit_dir):
        """Test label outcomes are streamed and summarized."""
        run = audit_logger.start_run("run-2", "T1", "gmail")
        run.log_sync(SyncReport(tenant_id="T1", provider="gmail", snapshot_size=3, upserted=3))
        run.log_outcome(ItemOutcome(path="BANKING", name="BANKING", status=ItemStatus.CREATED, provider_id="L1", attempts=1))
        run.log_outcome(ItemOutcome(
            path="SALES", name="SALES", status=ItemStatus.FAILED,
            error="bad request", error_type="ClientError", attempts=1,
        ))
        run.log_outcome(ItemOutcome(path="SALES/Quotes", name="Quotes", parent_path="SALES", status=ItemStatus.BLOCKED))

        summary = run.complete("partial", error_message="1 failed")

        assert summary.status == "partial"
        assert summary.outcomes == {"CREATED": 1, "FAILED": 1, "BLOCKED": 1}
        assert summary.error_types == {"ClientError": 1, "other_error": 2}
        assert summary.completed_at is not None

        events = _read_events(run.file_path)
        assert [e["event_type"] for e in events] == [
            "run_start", "sync_complete", "label_outcome", "label_outcome", "label_outcome", "run_complete",
        ]
        assert events[2]["label_path"] == "BANKING"
        assert events[2]["provider_id"] == "L1"
        assert events[2]["metadata"] == {"attempts": 1}

        with open(temp_audit_dir / "summary_run-2.json", "r", encoding="utf-8") as f:
            assert json.load(f)["outcomes"]["FAILED"] == 1

    def test_planned_outcomes_are_not_errors(self, audit_logger):
        """Test dry-run plans count as successful events."""
        run = audit_logger.start_run("run-3", "T1", "gmail")
        run.log_outcome(ItemOutcome(path="BANKING", name="BANKING", status=ItemStatus.PLANNED))

        summary = run.complete("dry_run")

        assert summary.error_events == 0
        assert summary.get_success_rate() == 100.0

    def test_sync_failure_event(self, audit_logger):
        """Test a failed sync is recorded with its error type."""
        run = audit_logger.start_run("run-4", "T1", "outlook")
        run.log_sync_failure(SyncError("listing failed", "T1", "outlook"))
        run.complete("sync_failed", error_message="listing failed")

        events = _read_events(run.file_path)
        assert events[1]["success"] is False
        assert events[1]["error_type"] == "SyncError"

    def test_events_after_completion_only_summarized(self, audit_logger):
        """Test a closed run does not write to its file."""
        run = audit_logger.start_run("run-5", "T1", "gmail")
        run.complete("converged")
        lines = len(_read_events(run.file_path))

        run.log_outcome(ItemOutcome(path="BANKING", name="BANKING", status=ItemStatus.MATCHED))

        assert len(_read_events(run.file_path)) == lines

    def test_get_run_summaries(self, audit_logger):
        """Test recent summaries are returned newest first."""
        audit_logger.start_run("old", "T1", "gmail").complete("converged")
        audit_logger.start_run("new", "T2", "gmail").complete("partial")
        old = time.time() - 60
        os.utime(audit_logger.audit_dir / "summary_old.json", (old, old))

        summaries = audit_logger.get_run_summaries()

        assert [s.run_id for s in summaries] == ["new", "old"]
        assert isinstance(summaries[0], AuditSummary)

    def test_cleanup_old_files(self, audit_logger, temp_audit_dir):
        """Test files past retention are removed."""
        run = audit_logger.start_run("stale", "T1", "gmail")
        run.complete("converged")
        fresh = audit_logger.start_run("fresh", "T1", "gmail")
        fresh.complete("converged")

        old = time.time() - 30 * 24 * 60 * 60
        os.utime(run.file_path, (old, old))
        os.utime(temp_audit_dir / "summary_stale.json", (old, old))

        assert audit_logger.cleanup_old_files() == 1
        assert not run.file_path.exists()
        assert fresh.file_path.exists()
        assert not (temp_audit_dir / "summary_stale.json").exists()


class TestAuditSummary:
    """Test cases for AuditSummary."""

    def test_success_rate_empty(self):
        """Test success rate with no events."""
        summary = AuditSummary(run_id="r", tenant_id="T1", provider="gmail", started_at=utc_now())

        assert summary.get_success_rate() == 0.0

    def test_add_event(self):
        """Test counting events."""
        summary = AuditSummary(run_id="r", tenant_id="T1", provider="gmail", started_at=utc_now())
        summary.add_event(AuditEvent(
            event_id="e1", event_type="label_outcome", run_id="r", tenant_id="T1",
            provider="gmail", operation="ADOPTED", success=True,
        ))

        assert summary.total_events == 1
        assert summary.outcomes == {"ADOPTED": 1}
        assert summary.get_success_rate() == 100.0