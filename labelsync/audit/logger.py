"""Audit trail for reconcile runs."""

import json
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, TextIO

import structlog
from pydantic import BaseModel, Field

from labelsync.core.provisioner import ItemOutcome, ItemStatus
from labelsync.core.synchronizer import SyncReport

logger = structlog.get_logger(__name__)


class AuditEvent(BaseModel):
    """Individual audit event."""

    event_id: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    event_type: str  # run_start, sync_complete, label_outcome, run_complete
    run_id: str
    tenant_id: str
    provider: str

    label_path: Optional[str] = None
    provider_id: Optional[str] = None
    operation: str  # START, SYNC, CREATED, ADOPTED, ..., COMPLETE
    success: bool
    error_message: Optional[str] = None
    error_type: Optional[str] = None

    metadata: Dict[str, Any] = Field(default_factory=dict)

    def to_log_record(self) -> Dict[str, Any]:
        """Convert to structured log record format."""
        return self.model_dump(mode="json")


class AuditSummary(BaseModel):
    """Summary of audit events for one reconcile run."""

    run_id: str
    tenant_id: str
    provider: str
    started_at: datetime
    completed_at: Optional[datetime] = None
    status: Optional[str] = None

    total_events: int = 0
    success_events: int = 0
    error_events: int = 0

    # Breakdown by label outcome
    outcomes: Dict[str, int] = Field(default_factory=dict)

    # Breakdown by exception class name
    error_types: Dict[str, int] = Field(default_factory=dict)

    def add_event(self, event: AuditEvent) -> None:
        """Add an event to the summary statistics."""
        self.total_events += 1

        if event.success:
            self.success_events += 1
        else:
            self.error_events += 1
            error_type = event.error_type or "other_error"
            self.error_types[error_type] = self.error_types.get(error_type, 0) + 1

        if event.event_type == "label_outcome":
            self.outcomes[event.operation] = self.outcomes.get(event.operation, 0) + 1

    def get_success_rate(self) -> float:
        """Get success rate as percentage."""
        if self.total_events == 0:
            return 0.0
        return (self.success_events / self.total_events) * 100.0


# Outcomes that are not errors even though no label was resolved
_NEUTRAL_OUTCOMES = frozenset({ItemStatus.PLANNED})


class AuditRun:
    """JSONL audit stream for a single reconcile run."""

    def __init__(self, audit_dir: Path, run_id: str, tenant_id: str, provider: str) -> None:
        self.run_id = run_id
        self.tenant_id = tenant_id
        self.provider = provider
        self.summary = AuditSummary(
            run_id=run_id,
            tenant_id=tenant_id,
            provider=provider,
            started_at=datetime.now(timezone.utc),
        )

        timestamp = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S")
        self.audit_dir = audit_dir
        self.file_path = audit_dir / f"audit_{timestamp}_{run_id}.jsonl"
        self._file: Optional[TextIO] = open(self.file_path, "w", encoding="utf-8")
        self._sequence = 0
        self._logger = logger.bind(run_id=run_id, tenant_id=tenant_id, provider=provider)

        self._emit("run_start", "START", success=True)

    def _emit(self, event_type: str, operation: str, success: bool, **fields: Any) -> None:
        self._sequence += 1
        event = AuditEvent(
            event_id=f"{self.run_id}_{self._sequence}",
            event_type=event_type,
            run_id=self.run_id,
            tenant_id=self.tenant_id,
            provider=self.provider,
            operation=operation,
            success=success,
            **fields,
        )
        self.log_event(event)

    def log_event(self, event: AuditEvent) -> None:
        """Record an event in the summary and the audit file."""
        self.summary.add_event(event)
        if not self._file:
            return
        try:
            self._file.write(json.dumps(event.to_log_record()) + "\n")
            self._file.flush()
        except OSError as e:
            self._logger.error("Failed to write audit event to file", error=str(e))

    def log_sync(self, report: SyncReport) -> None:
        self._emit("sync_complete", "SYNC", success=True, metadata=report.model_dump(mode="json"))

    def log_sync_failure(self, error: Exception) -> None:
        self._emit(
            "sync_complete", "SYNC", success=False,
            error_message=str(error), error_type=error.__class__.__name__,
        )

    def log_outcome(self, outcome: ItemOutcome) -> None:
        self._emit(
            "label_outcome",
            outcome.status.value.upper(),
            success=outcome.resolved or outcome.status in _NEUTRAL_OUTCOMES,
            label_path=outcome.path,
            provider_id=outcome.provider_id,
            error_message=outcome.error,
            error_type=outcome.error_type,
            metadata={"attempts": outcome.attempts},
        )

    def complete(self, status: str, error_message: Optional[str] = None) -> AuditSummary:
        """Close the run and write its summary file."""
        self.summary.completed_at = datetime.now(timezone.utc)
        self.summary.status = status
        self._emit(
            "run_complete",
            "COMPLETE",
            success=error_message is None,
            error_message=error_message,
            metadata={
                "status": status,
                "success_rate": self.summary.get_success_rate(),
                "duration_seconds": (self.summary.completed_at - self.summary.started_at).total_seconds(),
            },
        )

        summary_file = self.audit_dir / f"summary_{self.run_id}.json"
        try:
            with open(summary_file, "w", encoding="utf-8") as f:
                json.dump(self.summary.model_dump(mode="json"), f, indent=2, default=str)
        except OSError as e:
            self._logger.error("Failed to write run summary", error=str(e))

        if self._file:
            self._file.close()
            self._file = None

        self._logger.info(
            "Completed audit logging for run",
            total_events=self.summary.total_events,
            success_rate=self.summary.get_success_rate(),
        )
        return self.summary


class AuditLogger:
    """Creates per-run audit streams and manages retention."""

    def __init__(
        self,
        audit_dir: Path = Path("./logs/audit"),
        retention_days: int = 90,
    ) -> None:
        """Initialize audit logger.

        Args:
            audit_dir: Directory to store audit logs
            retention_days: Number of days to retain audit logs
        """
        self.audit_dir = Path(audit_dir)
        self.audit_dir.mkdir(parents=True, exist_ok=True)
        self.retention_days = retention_days
        self._logger = logger.bind(audit_dir=str(self.audit_dir))

    def start_run(self, run_id: str, tenant_id: str, provider: str) -> AuditRun:
        """Open the audit stream for a reconcile run."""
        run = AuditRun(self.audit_dir, run_id, tenant_id, provider)
        self._logger.debug("Started audit logging for run", run_id=run_id, audit_file=str(run.file_path))
        return run

    def cleanup_old_files(self) -> int:
        """Delete audit files older than the retention period.

        Returns:
            Number of files cleaned up
        """
        cutoff_time = time.time() - (self.retention_days * 24 * 60 * 60)
        cleaned_count = 0

        for audit_file in self.audit_dir.glob("audit_*.jsonl"):
            if audit_file.stat().st_mtime < cutoff_time:
                audit_file.unlink()
                cleaned_count += 1

        for summary_file in self.audit_dir.glob("summary_*.json"):
            if summary_file.stat().st_mtime < cutoff_time:
                summary_file.unlink()

        if cleaned_count > 0:
            self._logger.info("Cleaned up old audit files", count=cleaned_count)
        return cleaned_count

    def get_run_summaries(self, limit: int = 10) -> List[AuditSummary]:
        """Most recent run summaries, newest first."""
        summaries = []
        summary_files = sorted(
            self.audit_dir.glob("summary_*.json"),
            key=lambda f: f.stat().st_mtime,
            reverse=True,
        )

        for summary_file in summary_files[:limit]:
            try:
                with open(summary_file, "r", encoding="utf-8") as f:
                    summaries.append(AuditSummary.model_validate(json.load(f)))
            except (OSError, ValueError) as e:
                self._logger.warning("Failed to load summary file", file=str(summary_file), error=str(e))

        return summaries
