"""Provisioner: creates missing labels parent-before-child under the error policy."""

import asyncio
import time
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

import structlog
from pydantic import BaseModel, Field

from labelsync.clients.base import CreateResult, ProviderAdapter
from labelsync.clients.exceptions import (
    APIError,
    AuthenticationError,
    BlockedError,
    DeadlineExceededError,
    StateError,
)
from labelsync.core.models import (
    DesiredStateTree,
    LabelRecord,
    LabelSpec,
    ProviderLabel,
    normalize_name,
    utc_now,
)
from labelsync.core.policy import AttemptCounter, CallPolicy
from labelsync.core.store import LabelStore

logger = structlog.get_logger(__name__)


class ItemStatus(str, Enum):
    """Outcome of provisioning one desired label."""
    CREATED = "created"
    ADOPTED = "adopted"
    MATCHED = "matched"
    FAILED = "failed"
    BLOCKED = "blocked"
    ABORTED = "aborted"
    TIMED_OUT = "timed_out"
    PLANNED = "planned"


RESOLVED_STATUSES = frozenset({ItemStatus.CREATED, ItemStatus.ADOPTED, ItemStatus.MATCHED})


class ItemOutcome(BaseModel):
    """Per-label provisioning result."""

    path: str
    name: str
    parent_path: Optional[str] = None
    status: ItemStatus
    provider_id: Optional[str] = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    attempts: int = 0

    @property
    def resolved(self) -> bool:
        return self.status in RESOLVED_STATUSES


class ProvisionReport(BaseModel):
    """Outcome of one provisioning pass, in provisioning order."""

    tenant_id: str
    provider: str
    dry_run: bool = False
    outcomes: List[ItemOutcome] = Field(default_factory=list)
    aborted: bool = False
    timed_out: bool = False
    duration_seconds: float = 0.0

    def by_status(self, status: ItemStatus) -> List[ItemOutcome]:
        return [outcome for outcome in self.outcomes if outcome.status == status]

    def get(self, path: str) -> Optional[ItemOutcome]:
        for outcome in self.outcomes:
            if outcome.path == path:
                return outcome
        return None

    @property
    def succeeded(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.resolved)

    @property
    def failed(self) -> int:
        return len(self.by_status(ItemStatus.FAILED))

    @property
    def blocked(self) -> int:
        return sum(
            1 for outcome in self.outcomes
            if outcome.status in (ItemStatus.BLOCKED, ItemStatus.ABORTED, ItemStatus.TIMED_OUT)
        )

    @property
    def created(self) -> int:
        return len(self.by_status(ItemStatus.CREATED))

    @property
    def converged(self) -> bool:
        """Every desired label is backed by a live provider identifier."""
        return all(outcome.resolved for outcome in self.outcomes)

    def status_counts(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for outcome in self.outcomes:
            counts[outcome.status.value] = counts.get(outcome.status.value, 0) + 1
        return counts


class _ProvisionRun:
    """Mutable state of one provisioning pass."""

    def __init__(
        self,
        tenant_id: str,
        adapter: ProviderAdapter,
        dry_run: bool,
        deadline: Optional[float],
        max_concurrency: int,
    ) -> None:
        self.tenant_id = tenant_id
        self.adapter = adapter
        self.dry_run = dry_run
        self.deadline = deadline
        self.semaphore = asyncio.Semaphore(max_concurrency)
        self.outcomes: Dict[str, ItemOutcome] = {}
        self.abort = False

    def expired(self) -> bool:
        return self.deadline is not None and time.monotonic() >= self.deadline


class Provisioner:
    """Brings a provider account up to a desired state tree.

    Items are dispatched in waves: every item whose parent is already
    resolved goes out together, bounded by ``max_concurrency`` in-flight
    calls, so a child is never created before its parent has an id.
    """

    def __init__(
        self,
        store: LabelStore,
        policy: CallPolicy,
        max_concurrency: int = 4,
        outcome_callback: Optional[Callable[[ItemOutcome], None]] = None,
    ) -> None:
        """Initialize provisioner.

        Args:
            store: Record store that receives every confirmed identifier
            policy: Call policy for retries and credential refresh
            max_concurrency: Maximum concurrent create calls
            outcome_callback: Called with each item outcome as it is decided
        """
        self.store = store
        self.policy = policy
        self.max_concurrency = max(1, max_concurrency)
        self.outcome_callback = outcome_callback

    async def provision(
        self,
        tenant_id: str,
        adapter: ProviderAdapter,
        tree: DesiredStateTree,
        existing: List[LabelRecord],
        dry_run: bool = False,
        timeout_seconds: Optional[float] = None,
    ) -> ProvisionReport:
        """Create every desired label that has no live record.

        Args:
            tenant_id: Tenant being provisioned
            adapter: Provider adapter for the tenant's account
            tree: Desired state tree in provisioning order
            existing: Live records for this tenant/provider
            dry_run: Report planned creations without calling the provider
            timeout_seconds: Wall-clock budget; unstarted items time out

        Returns:
            Report with one outcome per desired label, in provisioning order
        """
        started = time.monotonic()
        deadline = started + timeout_seconds if timeout_seconds is not None else None
        run = _ProvisionRun(tenant_id, adapter, dry_run, deadline, self.max_concurrency)
        log = logger.bind(tenant_id=tenant_id, provider=adapter.provider.value, dry_run=dry_run)

        index = self._build_index(existing, log)
        pending: List[LabelSpec] = sorted(tree.specs, key=lambda spec: spec.ordinal)

        log.info("Starting provisioning", desired=len(pending), existing=len(existing))

        while pending:
            wave: List[Tuple[LabelSpec, Optional[str]]] = []
            waiting: List[LabelSpec] = []

            # Input is pre-order, so a parent decided earlier in this pass unlocks its children
            for spec in pending:
                parent = run.outcomes.get(spec.parent_path) if spec.parent_path else None
                if spec.parent_path and parent is None:
                    waiting.append(spec)
                    continue

                parent_id = parent.provider_id if parent else None
                decided = self._decide_without_call(run, spec, parent, parent_id, index)
                if decided is not None:
                    self._record(run, decided)
                else:
                    wave.append((spec, parent_id))

            if not wave and len(waiting) == len(pending):
                # Parents missing from the tree itself; nothing can unlock them
                for spec in waiting:
                    self._record(run, self._outcome(
                        spec, ItemStatus.BLOCKED,
                        error=str(BlockedError(spec.path, spec.parent_path or "")),
                        error_type=BlockedError.__name__,
                    ))
                break

            if wave:
                log.debug("Dispatching wave", items=len(wave))
                outcomes = await asyncio.gather(
                    *[self._provision_one(run, spec, parent_id, log) for spec, parent_id in wave]
                )
                for outcome in outcomes:
                    self._record(run, outcome)

            pending = waiting

        report = ProvisionReport(
            tenant_id=tenant_id,
            provider=adapter.provider.value,
            dry_run=dry_run,
            outcomes=[run.outcomes[spec.path] for spec in sorted(tree.specs, key=lambda s: s.ordinal)],
            aborted=run.abort,
            timed_out=any(o.status == ItemStatus.TIMED_OUT for o in run.outcomes.values()),
            duration_seconds=time.monotonic() - started,
        )
        log.info(
            "Provisioning complete",
            duration_seconds=round(report.duration_seconds, 3),
            **report.status_counts(),
        )
        return report

    def _build_index(self, existing: List[LabelRecord], log) -> Dict[Tuple[Optional[str], str], str]:
        """Map (parent id, normalized name) to the id of a live record."""
        candidates: Dict[Tuple[Optional[str], str], List[str]] = {}
        for record in existing:
            if record.deleted:
                continue
            key = (record.parent_provider_id, normalize_name(record.name))
            candidates.setdefault(key, []).append(record.provider_id)

        index: Dict[Tuple[Optional[str], str], str] = {}
        for key, ids in candidates.items():
            ids.sort()
            if len(ids) > 1:
                log.warning(
                    "Multiple live labels share a name under one parent",
                    label=key[1],
                    parent_id=key[0],
                    provider_ids=ids,
                    chosen=ids[0],
                )
            index[key] = ids[0]
        return index

    def _decide_without_call(
        self,
        run: _ProvisionRun,
        spec: LabelSpec,
        parent: Optional[ItemOutcome],
        parent_id: Optional[str],
        index: Dict[Tuple[Optional[str], str], str],
    ) -> Optional[ItemOutcome]:
        """Outcome for items that need no provider call, or None to dispatch."""
        if parent is not None and parent.status == ItemStatus.PLANNED:
            return self._outcome(spec, ItemStatus.PLANNED)

        if parent is not None and not parent.resolved:
            if run.abort:
                return self._outcome(spec, ItemStatus.ABORTED)
            if parent.status == ItemStatus.TIMED_OUT or run.expired():
                return self._outcome(spec, ItemStatus.TIMED_OUT)
            return self._outcome(
                spec,
                ItemStatus.BLOCKED,
                error=str(BlockedError(spec.path, spec.parent_path or "")),
                error_type=BlockedError.__name__,
            )

        provider_id = index.get((parent_id, normalize_name(spec.name)))
        if provider_id is not None:
            return self._outcome(spec, ItemStatus.MATCHED, provider_id=provider_id)

        if run.dry_run:
            return self._outcome(spec, ItemStatus.PLANNED)
        if run.abort:
            return self._outcome(spec, ItemStatus.ABORTED)
        if run.expired():
            return self._outcome(spec, ItemStatus.TIMED_OUT)
        return None

    async def _provision_one(
        self,
        run: _ProvisionRun,
        spec: LabelSpec,
        parent_id: Optional[str],
        log,
    ) -> ItemOutcome:
        async with run.semaphore:
            # Checked after acquiring the slot so queued items honour an abort or deadline
            if run.abort:
                return self._outcome(spec, ItemStatus.ABORTED)
            if run.expired():
                return self._outcome(spec, ItemStatus.TIMED_OUT)

            counter = AttemptCounter()
            provider = run.adapter.provider
            try:
                result: CreateResult = await self.policy.call(
                    run.tenant_id,
                    provider,
                    lambda credential: run.adapter.create(credential, spec.name, parent_id, spec.color_tag),
                    operation_name="create",
                    counter=counter,
                    deadline=run.deadline,
                )

                if not result.conflict:
                    self._persist(run, spec.name, result.provider_id, parent_id, created_by_sync=True)
                    log.info("Created label", path=spec.path, provider_id=result.provider_id)
                    return self._outcome(
                        spec, ItemStatus.CREATED,
                        provider_id=result.provider_id, attempts=counter.count,
                    )

                existing = await self._lookup(run, spec.name, parent_id, counter)
                if existing is None:
                    log.warning("Conflict reported but label not found", path=spec.path)
                    return self._outcome(
                        spec, ItemStatus.FAILED,
                        error="Provider reported a conflict but no matching label was found",
                        error_type="ConflictError",
                        attempts=counter.count,
                    )

                self._persist(run, existing.name, existing.provider_id, parent_id, created_by_sync=False)
                log.info("Adopted existing label", path=spec.path, provider_id=existing.provider_id)
                return self._outcome(
                    spec, ItemStatus.ADOPTED,
                    provider_id=existing.provider_id, attempts=counter.count,
                )

            except DeadlineExceededError as e:
                log.warning("Run deadline reached while retrying", path=spec.path, attempts=counter.count)
                return self._outcome(
                    spec, ItemStatus.TIMED_OUT,
                    error=str(e), error_type=e.__class__.__name__, attempts=counter.count,
                )
            except AuthenticationError as e:
                run.abort = True
                log.error("Authentication failed after refresh, aborting batch", path=spec.path, error=str(e))
                return self._failure(spec, e, counter)
            except (APIError, StateError) as e:
                log.warning("Failed to provision label", path=spec.path, error=str(e), attempts=counter.count)
                return self._failure(spec, e, counter)

    async def _lookup(
        self,
        run: _ProvisionRun,
        name: str,
        parent_id: Optional[str],
        counter: AttemptCounter,
    ) -> Optional[ProviderLabel]:
        """Find a same-named label under the parent in a fresh listing."""
        labels: List[ProviderLabel] = await self.policy.call(
            run.tenant_id,
            run.adapter.provider,
            run.adapter.list_all,
            operation_name="conflict_lookup",
            counter=counter,
            deadline=run.deadline,
        )
        key = normalize_name(name)
        matches = sorted(
            (
                label for label in labels
                if label.parent_provider_id == parent_id and normalize_name(label.name) == key
            ),
            key=lambda label: label.provider_id,
        )
        return matches[0] if matches else None

    def _persist(
        self,
        run: _ProvisionRun,
        name: str,
        provider_id: Optional[str],
        parent_id: Optional[str],
        created_by_sync: bool,
    ) -> None:
        if not provider_id:
            raise StateError(f"Provider returned no identifier for label {name!r}")
        self.store.upsert(LabelRecord(
            provider_id=provider_id,
            tenant_id=run.tenant_id,
            provider=run.adapter.provider,
            name=name,
            parent_provider_id=parent_id,
            synced_at=utc_now(),
            created_by_sync=created_by_sync,
        ))

    def _record(self, run: _ProvisionRun, outcome: ItemOutcome) -> None:
        run.outcomes[outcome.path] = outcome
        if self.outcome_callback:
            try:
                self.outcome_callback(outcome)
            except Exception as e:
                logger.warning("Outcome callback failed", path=outcome.path, error=str(e))

    @staticmethod
    def _outcome(
        spec: LabelSpec,
        status: ItemStatus,
        provider_id: Optional[str] = None,
        error: Optional[str] = None,
        error_type: Optional[str] = None,
        attempts: int = 0,
    ) -> ItemOutcome:
        return ItemOutcome(
            path=spec.path,
            name=spec.name,
            parent_path=spec.parent_path,
            status=status,
            provider_id=provider_id,
            error=error,
            error_type=error_type,
            attempts=attempts,
        )

    def _failure(self, spec: LabelSpec, error: Exception, counter: AttemptCounter) -> ItemOutcome:
        return self._outcome(
            spec,
            ItemStatus.FAILED,
            error=str(error),
            error_type=error.__class__.__name__,
            attempts=counter.count,
        )
