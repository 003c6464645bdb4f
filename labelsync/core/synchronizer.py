"""State synchronizer: refreshes the record store from a live provider snapshot."""

from typing import List

import structlog
from pydantic import BaseModel

from labelsync.clients.base import ProviderAdapter
from labelsync.clients.exceptions import APIError, StateError, SyncError
from labelsync.core.models import LabelRecord, ProviderLabel, utc_now
from labelsync.core.policy import CallPolicy
from labelsync.core.store import LabelStore

logger = structlog.get_logger(__name__)


class SyncReport(BaseModel):
    """Counts from one synchronization pass."""

    tenant_id: str
    provider: str
    snapshot_size: int = 0
    upserted: int = 0
    restored: int = 0
    marked_deleted: int = 0


class StateSynchronizer:
    """Makes the store agree with the provider for one tenant/provider.

    The full snapshot is fetched before anything is written, so a failed
    listing never marks records deleted on the basis of partial data.
    """

    def __init__(self, store: LabelStore, policy: CallPolicy) -> None:
        self.store = store
        self.policy = policy

    async def sync(self, tenant_id: str, adapter: ProviderAdapter) -> SyncReport:
        """Synchronize one tenant's provider account into the store.

        Raises:
            SyncError: If the snapshot could not be fetched or persisted
        """
        provider = adapter.provider
        log = logger.bind(tenant_id=tenant_id, provider=provider.value)

        try:
            snapshot: List[ProviderLabel] = await self.policy.call(
                tenant_id, provider, adapter.list_all, operation_name="list_all"
            )
        except (APIError, KeyError, ValueError) as e:
            log.error("Provider listing failed", error=str(e))
            raise SyncError(f"Failed to list labels: {e}", tenant_id, provider.value) from e

        report = SyncReport(tenant_id=tenant_id, provider=provider.value, snapshot_size=len(snapshot))
        seen_at = utc_now()

        try:
            known = {
                record.provider_id: record
                for record in self.store.list_records(tenant_id, provider, include_deleted=True)
            }

            records: List[LabelRecord] = []
            for label in snapshot:
                record = known.get(label.provider_id)
                if record is None:
                    record = LabelRecord(
                        provider_id=label.provider_id,
                        tenant_id=tenant_id,
                        provider=provider,
                        name=label.name,
                        parent_provider_id=label.parent_provider_id,
                        synced_at=seen_at,
                    )
                else:
                    if record.deleted:
                        report.restored += 1
                    record.mark_seen(label.name, label.parent_provider_id, seen_at)
                records.append(record)

            self.store.upsert_many(records)
            report.upserted = len(records)

            present = {label.provider_id for label in snapshot}
            stale = [
                record.provider_id
                for record in known.values()
                if not record.deleted and record.provider_id not in present
            ]
            report.marked_deleted = self.store.mark_deleted(tenant_id, provider, stale)
        except StateError as e:
            log.error("Failed to persist provider snapshot", error=str(e))
            raise SyncError(f"Failed to persist snapshot: {e}", tenant_id, provider.value) from e

        log.info(
            "Synchronized provider state",
            snapshot_size=report.snapshot_size,
            upserted=report.upserted,
            restored=report.restored,
            marked_deleted=report.marked_deleted,
        )
        return report
