"""Reconciler: resolve, sync, provision and map for one tenant/provider at a time."""

import asyncio
import time
import uuid
from datetime import datetime
from enum import Enum
from typing import Dict, List, Mapping, Optional, Tuple

import structlog
from pydantic import BaseModel, Field

from labelsync.audit.logger import AuditLogger, AuditRun
from labelsync.clients.base import ProviderAdapter
from labelsync.clients.credentials import CredentialSource
from labelsync.clients.exceptions import BusyError, ConfigurationError, IncompleteMapError, SyncError
from labelsync.core.identifier_map import IdentifierMap, IdentifierMapBuilder
from labelsync.core.models import DesiredStateTree, Provider, TenantProfile, utc_now
from labelsync.core.policy import CallPolicy
from labelsync.core.provisioner import ProvisionReport, Provisioner
from labelsync.core.store import LabelStore
from labelsync.core.synchronizer import StateSynchronizer, SyncReport
from labelsync.templates.resolver import TemplateResolver

logger = structlog.get_logger(__name__)


class ReconcileStatus(str, Enum):
    """Overall outcome of a reconcile run."""
    CONVERGED = "converged"
    PARTIAL = "partial"
    SYNC_FAILED = "sync_failed"
    DRY_RUN = "dry_run"


class ReconcileOptions(BaseModel):
    """Tuning for reconcile runs."""

    max_concurrency: int = Field(default=4, ge=1)
    max_attempts: int = Field(default=3, ge=1)
    backoff_seconds: float = Field(default=1.0, ge=0)
    max_backoff_seconds: float = Field(default=30.0, ge=0)
    run_timeout_seconds: Optional[float] = Field(default=None, gt=0)


class ReconcileReport(BaseModel):
    """Result of reconciling one tenant on one provider."""

    run_id: str
    tenant_id: str
    provider: str
    vertical: str
    status: ReconcileStatus
    desired: int = 0
    sync: Optional[SyncReport] = None
    provision: Optional[ProvisionReport] = None
    identifier_map: Optional[IdentifierMap] = None
    error: Optional[str] = None
    started_at: datetime = Field(default_factory=utc_now)
    duration_seconds: float = 0.0

    @property
    def succeeded(self) -> int:
        return self.provision.succeeded if self.provision else 0

    @property
    def failed(self) -> int:
        return self.provision.failed if self.provision else 0

    @property
    def blocked(self) -> int:
        return self.provision.blocked if self.provision else 0


class Reconciler:
    """Drives reconcile runs across tenants and providers.

    Runs for the same tenant and provider are serialized by a lock; runs for
    different pairs proceed concurrently and share no mutable state beyond
    the record store, whose keys are scoped by tenant.
    """

    def __init__(
        self,
        store: LabelStore,
        credentials: CredentialSource,
        adapters: Mapping[Provider, ProviderAdapter],
        resolver: Optional[TemplateResolver] = None,
        audit_logger: Optional[AuditLogger] = None,
        options: Optional[ReconcileOptions] = None,
    ) -> None:
        """Initialize reconciler.

        Args:
            store: Label record store
            credentials: Source of per-tenant bearer credentials
            adapters: Provider adapters keyed by provider
            resolver: Template resolver (defaults to the packaged templates)
            audit_logger: Optional audit trail writer
            options: Concurrency, retry and timeout settings
        """
        self.store = store
        self.credentials = credentials
        self.adapters: Dict[Provider, ProviderAdapter] = {Provider(k): v for k, v in adapters.items()}
        self.resolver = resolver or TemplateResolver()
        self.audit_logger = audit_logger
        self.options = options or ReconcileOptions()

        self.policy = CallPolicy(
            credentials,
            max_attempts=self.options.max_attempts,
            backoff_seconds=self.options.backoff_seconds,
            max_backoff_seconds=self.options.max_backoff_seconds,
        )
        self.synchronizer = StateSynchronizer(store, self.policy)
        self.map_builder = IdentifierMapBuilder()
        self._locks: Dict[Tuple[str, Provider], asyncio.Lock] = {}

    def _adapter_for(self, provider: Provider) -> ProviderAdapter:
        try:
            return self.adapters[Provider(provider)]
        except KeyError:
            raise ConfigurationError(f"No adapter configured for provider: {Provider(provider).value}") from None

    def _lock_for(self, tenant_id: str, provider: Provider) -> asyncio.Lock:
        key = (tenant_id, Provider(provider))
        if key not in self._locks:
            self._locks[key] = asyncio.Lock()
        return self._locks[key]

    def is_running(self, tenant_id: str, provider: Provider) -> bool:
        """Whether a reconcile run holds the tenant/provider lock."""
        lock = self._locks.get((tenant_id, Provider(provider)))
        return lock is not None and lock.locked()

    def desired_tree(self, profile: TenantProfile) -> DesiredStateTree:
        """Resolve the tenant's desired tree without touching any provider."""
        return self.resolver.resolve_profile(profile)

    async def reconcile(
        self,
        profile: TenantProfile,
        provider: Provider,
        dry_run: bool = False,
        wait: bool = True,
    ) -> ReconcileReport:
        """Reconcile one tenant on one provider.

        Args:
            profile: Tenant business profile
            provider: Provider to reconcile
            dry_run: Sync and plan, but create nothing
            wait: Queue behind an in-flight run instead of raising BusyError

        Returns:
            Reconcile report; the identifier map is set only when converged

        Raises:
            UnknownVerticalError: If the profile's vertical has no template
            BusyError: If ``wait`` is False and a run is already in flight
        """
        provider = Provider(provider)
        adapter = self._adapter_for(provider)
        tree = self.desired_tree(profile)

        lock = self._lock_for(profile.tenant_id, provider)
        if not wait and lock.locked():
            raise BusyError(profile.tenant_id, provider.value)

        async with lock:
            return await self._run(profile, provider, adapter, tree, dry_run)

    async def _run(
        self,
        profile: TenantProfile,
        provider: Provider,
        adapter: ProviderAdapter,
        tree: DesiredStateTree,
        dry_run: bool,
    ) -> ReconcileReport:
        started = time.monotonic()
        run_id = f"reconcile_{int(time.time())}_{uuid.uuid4().hex[:8]}"
        log = logger.bind(run_id=run_id, tenant_id=profile.tenant_id, provider=provider.value)
        audit: Optional[AuditRun] = None
        if self.audit_logger:
            audit = self.audit_logger.start_run(run_id, profile.tenant_id, provider.value)

        report = ReconcileReport(
            run_id=run_id,
            tenant_id=profile.tenant_id,
            provider=provider.value,
            vertical=tree.vertical,
            status=ReconcileStatus.PARTIAL,
            desired=len(tree),
        )
        log.info("Starting reconcile", vertical=tree.vertical, desired=len(tree), dry_run=dry_run)

        try:
            report.sync = await self.synchronizer.sync(profile.tenant_id, adapter)
        except SyncError as e:
            report.status = ReconcileStatus.SYNC_FAILED
            report.error = str(e)
            report.duration_seconds = time.monotonic() - started
            log.error("Reconcile aborted: sync failed", error=str(e))
            if audit:
                audit.log_sync_failure(e)
                audit.complete(report.status.value, error_message=report.error)
            return report

        if audit:
            audit.log_sync(report.sync)

        timeout = None
        if self.options.run_timeout_seconds is not None:
            timeout = max(0.0, self.options.run_timeout_seconds - (time.monotonic() - started))

        provisioner = Provisioner(
            self.store,
            self.policy,
            max_concurrency=self.options.max_concurrency,
            outcome_callback=audit.log_outcome if audit else None,
        )
        existing = self.store.list_records(profile.tenant_id, provider)
        report.provision = await provisioner.provision(
            profile.tenant_id,
            adapter,
            tree,
            existing,
            dry_run=dry_run,
            timeout_seconds=timeout,
        )

        if dry_run:
            report.status = ReconcileStatus.DRY_RUN
        elif report.provision.converged:
            try:
                report.identifier_map = self.map_builder.build(
                    profile.tenant_id,
                    provider.value,
                    tree,
                    self.store.list_records(profile.tenant_id, provider),
                )
                report.status = ReconcileStatus.CONVERGED
            except IncompleteMapError as e:
                report.error = str(e)
        else:
            report.error = (
                f"{report.failed} failed, {report.blocked} blocked or not started "
                f"of {report.desired} desired labels"
            )

        report.duration_seconds = time.monotonic() - started
        log.info(
            "Reconcile complete",
            status=report.status.value,
            succeeded=report.succeeded,
            failed=report.failed,
            blocked=report.blocked,
            duration_seconds=round(report.duration_seconds, 3),
        )
        if audit:
            audit.complete(report.status.value, error_message=report.error)
        return report

    async def reconcile_tenant(
        self,
        profile: TenantProfile,
        dry_run: bool = False,
        wait: bool = True,
    ) -> Dict[str, ReconcileReport]:
        """Reconcile every provider of a tenant concurrently.

        Raises:
            Exception: The first provider failure, after all providers finished
        """
        providers = list(dict.fromkeys(Provider(p) for p in profile.providers))
        results = await asyncio.gather(
            *[self.reconcile(profile, provider, dry_run=dry_run, wait=wait) for provider in providers],
            return_exceptions=True,
        )

        reports: Dict[str, ReconcileReport] = {}
        first_error: Optional[BaseException] = None
        for provider, result in zip(providers, results):
            if isinstance(result, BaseException):
                logger.error(
                    "Provider reconcile failed",
                    tenant_id=profile.tenant_id,
                    provider=provider.value,
                    error=str(result),
                )
                first_error = first_error or result
            else:
                reports[provider.value] = result

        if first_error is not None:
            raise first_error
        return reports

    async def reconcile_all(
        self,
        profiles: List[TenantProfile],
        dry_run: bool = False,
    ) -> List[ReconcileReport]:
        """Reconcile many tenants concurrently; failures are logged and skipped."""
        results = await asyncio.gather(
            *[self.reconcile_tenant(profile, dry_run=dry_run) for profile in profiles],
            return_exceptions=True,
        )
        reports: List[ReconcileReport] = []
        for profile, result in zip(profiles, results):
            if isinstance(result, BaseException):
                logger.error("Tenant reconcile failed", tenant_id=profile.tenant_id, error=str(result))
                continue
            reports.extend(result.values())
        return reports

    async def sync(self, profile: TenantProfile, provider: Provider) -> SyncReport:
        """Run only the synchronization step, under the tenant/provider lock."""
        provider = Provider(provider)
        adapter = self._adapter_for(provider)
        async with self._lock_for(profile.tenant_id, provider):
            return await self.synchronizer.sync(profile.tenant_id, adapter)

    def identifier_map(self, profile: TenantProfile, provider: Provider) -> IdentifierMap:
        """Build the identifier map from the store as it stands.

        Raises:
            IncompleteMapError: If any desired label has no live record
        """
        provider = Provider(provider)
        tree = self.desired_tree(profile)
        records = self.store.list_records(profile.tenant_id, provider)
        return self.map_builder.build(profile.tenant_id, provider.value, tree, records)

    async def close(self) -> None:
        """Close every provider adapter."""
        for adapter in self.adapters.values():
            await adapter.close()
