"""Tests for label record stores."""

import json
from datetime import datetime, timezone

import pytest

from labelsync.clients.exceptions import StateError
from labelsync.core.models import LabelRecord, Provider
from labelsync.core.store import InMemoryLabelStore, JsonLabelStore


def _record(provider_id="lbl_1", tenant_id="T1", name="BANKING", parent=None, **kwargs):
    return LabelRecord(
        provider_id=provider_id,
        tenant_id=tenant_id,
        provider=Provider.GMAIL,
        name=name,
        parent_provider_id=parent,
        **kwargs,
    )


@pytest.fixture(params=["memory", "json"])
def any_store(request, tmp_path):
    """Create each store backend in turn."""
    if request.param == "memory":
        return InMemoryLabelStore()
    return JsonLabelStore(state_dir=tmp_path / "state")


class TestLabelStore:
    """Behaviour shared by every store backend."""

    def test_upsert_and_get(self, any_store):
        """Test a record can be read back by its key."""
        any_store.upsert(_record())

        record = any_store.get("T1", Provider.GMAIL, "lbl_1")
        assert record is not None
        assert record.name == "BANKING"
        assert record.tenant_id == "T1"

    def test_get_missing(self, any_store):
        """Test looking up an unknown key."""
        assert any_store.get("T1", Provider.GMAIL, "nope") is None

    def test_upsert_replaces_but_keeps_created_at(self, any_store):
        """Test replacing a record keeps its creation metadata."""
        created = datetime(2024, 1, 1, tzinfo=timezone.utc)
        any_store.upsert(_record(created_at=created, created_by_sync=True))
        any_store.upsert(_record(name="BANKING 2"))

        record = any_store.get("T1", Provider.GMAIL, "lbl_1")
        assert record.name == "BANKING 2"
        assert record.created_at == created
        assert record.created_by_sync is True

    def test_list_records_scoped_by_tenant_and_provider(self, any_store):
        """Test listing never crosses tenants or providers."""
        any_store.upsert_many([
            _record("a", tenant_id="T1"),
            _record("b", tenant_id="T2"),
            LabelRecord(provider_id="c", tenant_id="T1", provider=Provider.OUTLOOK, name="X"),
        ])

        assert [r.provider_id for r in any_store.list_records("T1", Provider.GMAIL)] == ["a"]
        assert [r.provider_id for r in any_store.list_records("T2", Provider.GMAIL)] == ["b"]
        assert [r.provider_id for r in any_store.list_records("T1", Provider.OUTLOOK)] == ["c"]

    def test_mark_deleted_is_soft(self, any_store):
        """Test deleted records stay in the store but leave live listings."""
        any_store.upsert_many([_record("a"), _record("b", name="SALES")])

        assert any_store.mark_deleted("T1", Provider.GMAIL, ["a", "missing"]) == 1
        assert any_store.mark_deleted("T1", Provider.GMAIL, ["a"]) == 0

        assert [r.provider_id for r in any_store.list_records("T1", Provider.GMAIL)] == ["b"]
        all_records = any_store.list_records("T1", Provider.GMAIL, include_deleted=True)
        assert {r.provider_id for r in all_records} == {"a", "b"}
        assert any_store.get("T1", Provider.GMAIL, "a").deleted is True

    def test_same_provider_id_in_two_tenants(self, any_store):
        """Test mailbox-scoped ids may repeat across tenants."""
        any_store.upsert(_record("Label_1", tenant_id="T1", name="BANKING"))
        any_store.upsert(_record("Label_1", tenant_id="T2", name="SALES"))

        assert any_store.get("T1", Provider.GMAIL, "Label_1").name == "BANKING"
        assert any_store.get("T2", Provider.GMAIL, "Label_1").name == "SALES"

        assert any_store.mark_deleted("T2", Provider.GMAIL, ["Label_1"]) == 1
        assert any_store.get("T1", Provider.GMAIL, "Label_1").deleted is False

    def test_returned_records_are_copies(self, any_store):
        """Test mutating a returned record does not change the store."""
        any_store.upsert(_record())

        record = any_store.get("T1", Provider.GMAIL, "lbl_1")
        record.name = "changed"

        assert any_store.get("T1", Provider.GMAIL, "lbl_1").name == "BANKING"


class TestJsonLabelStore:
    """Test cases specific to the file-backed store."""

    def test_persists_across_instances(self, tmp_path):
        """Test a new store instance sees earlier writes."""
        JsonLabelStore(state_dir=tmp_path).upsert(_record())

        record = JsonLabelStore(state_dir=tmp_path).get("T1", Provider.GMAIL, "lbl_1")
        assert record is not None
        assert record.provider == Provider.GMAIL

    def test_file_format(self, tmp_path):
        """Test records are written under a top-level records key."""
        store = JsonLabelStore(state_dir=tmp_path)
        store.upsert(_record())

        with open(store.state_file, "r", encoding="utf-8") as f:
            data = json.load(f)

        assert data["records"][0]["provider_id"] == "lbl_1"
        assert data["records"][0]["provider"] == "gmail"

    def test_backup_written(self, tmp_path):
        """Test the previous file is kept as a backup."""
        store = JsonLabelStore(state_dir=tmp_path)
        store.upsert(_record())
        store.upsert(_record("lbl_2", name="SALES"))

        backup = tmp_path / "labels.json.backup"
        assert backup.exists()
        with open(backup, "r", encoding="utf-8") as f:
            assert len(json.load(f)["records"]) == 1

    def test_corrupt_file(self, tmp_path):
        """Test an unreadable records file raises StateError."""
        store = JsonLabelStore(state_dir=tmp_path)
        store.state_file.write_text("{not json")

        with pytest.raises(StateError):
            store.list_records("T1", Provider.GMAIL)
