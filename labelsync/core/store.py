"""Label record store: the system of record for provider-confirmed labels."""

import json
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

import structlog
from pydantic import ValidationError

from labelsync.clients.exceptions import StateError
from labelsync.core.models import LabelRecord, Provider

logger = structlog.get_logger(__name__)

RecordKey = Tuple[str, str, str]


class LabelStore(ABC):
    """Keyed collection of label records.

    Records are unique by ``(tenant_id, provider, provider_id)`` and are never
    physically removed; absence from the provider flips ``deleted``.
    """

    def __init__(self) -> None:
        self._logger = logger.bind(store=self.__class__.__name__)

    @abstractmethod
    def _load(self) -> Dict[RecordKey, LabelRecord]:
        """Return the current record table."""

    @abstractmethod
    def _save(self, records: Dict[RecordKey, LabelRecord]) -> None:
        """Persist the record table."""

    def get(self, tenant_id: str, provider: Provider, provider_id: str) -> Optional[LabelRecord]:
        """Look up one record by its unique key."""
        record = self._load().get((tenant_id, Provider(provider).value, provider_id))
        return record.model_copy() if record else None

    def upsert(self, record: LabelRecord) -> LabelRecord:
        """Insert or replace a single record."""
        return self.upsert_many([record])[0]

    def upsert_many(self, records: Iterable[LabelRecord]) -> List[LabelRecord]:
        """Insert or replace records in one write."""
        table = self._load()
        written: List[LabelRecord] = []
        for record in records:
            existing = table.get(record.key)
            if existing is not None:
                record = record.model_copy(update={
                    "created_at": existing.created_at,
                    "created_by_sync": existing.created_by_sync or record.created_by_sync,
                })
            table[record.key] = record
            written.append(record.model_copy())

        self._save(table)
        return written

    def list_records(
        self,
        tenant_id: str,
        provider: Provider,
        include_deleted: bool = False,
    ) -> List[LabelRecord]:
        """Records of one tenant/provider pair, live only unless asked otherwise."""
        provider = Provider(provider)
        return [
            record.model_copy()
            for record in self._load().values()
            if record.tenant_id == tenant_id
            and record.provider == provider
            and (include_deleted or not record.deleted)
        ]

    def mark_deleted(self, tenant_id: str, provider: Provider, provider_ids: Iterable[str]) -> int:
        """Soft-delete records; returns how many flipped from live to deleted."""
        table = self._load()
        provider_value = Provider(provider).value
        flipped = 0
        for provider_id in provider_ids:
            record = table.get((tenant_id, provider_value, provider_id))
            if record is not None and not record.deleted:
                table[record.key] = record.model_copy(update={"deleted": True})
                flipped += 1

        if flipped:
            self._save(table)
        return flipped


class InMemoryLabelStore(LabelStore):
    """Process-local store for tests and dry runs."""

    def __init__(self) -> None:
        super().__init__()
        self._records: Dict[RecordKey, LabelRecord] = {}

    def _load(self) -> Dict[RecordKey, LabelRecord]:
        return dict(self._records)

    def _save(self, records: Dict[RecordKey, LabelRecord]) -> None:
        self._records = dict(records)


class JsonLabelStore(LabelStore):
    """File-backed store.

    The file is re-read on every query so each run observes what previous
    runs (or other processes) persisted. The previous file is kept as
    ``.json.backup`` before each write.
    """

    def __init__(self, state_dir: Path = Path("./state"), filename: str = "labels.json") -> None:
        """Initialize JSON label store.

        Args:
            state_dir: Directory to store the records file
            filename: Records file name
        """
        super().__init__()
        self.state_dir = Path(state_dir)
        self.state_dir.mkdir(parents=True, exist_ok=True)
        self.state_file = self.state_dir / filename
        self._logger = self._logger.bind(file=str(self.state_file))

    def _load(self) -> Dict[RecordKey, LabelRecord]:
        if not self.state_file.exists():
            return {}

        try:
            with open(self.state_file, "r", encoding="utf-8") as f:
                data = json.load(f)
            records = [LabelRecord.model_validate(item) for item in data.get("records", [])]
        except (OSError, ValueError, ValidationError) as e:
            self._logger.error("Failed to load label records", error=str(e))
            raise StateError(f"Failed to load label records from {self.state_file}: {e}") from e

        return {record.key: record for record in records}

    def _save(self, records: Dict[RecordKey, LabelRecord]) -> None:
        try:
            if self.state_file.exists():
                backup_file = self.state_file.with_suffix(".json.backup")
                self.state_file.replace(backup_file)

            with open(self.state_file, "w", encoding="utf-8") as f:
                json.dump(
                    {"records": [record.model_dump(mode="json") for record in records.values()]},
                    f,
                    indent=2,
                    default=str,
                )
        except OSError as e:
            self._logger.error("Failed to save label records", error=str(e))
            raise StateError(f"Failed to save label records to {self.state_file}: {e}") from e

        self._logger.debug("Saved label records", records=len(records))
