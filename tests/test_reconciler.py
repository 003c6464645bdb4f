"""Tests for reconcile runs end to end against fake providers."""

import asyncio
import json

import pytest

from labelsync.audit.logger import AuditLogger
from labelsync.clients.exceptions import (
    BusyError,
    ClientError,
    IncompleteMapError,
    UnknownVerticalError,
)
from labelsync.core.models import Provider, TenantProfile
from labelsync.core.provisioner import ItemStatus
from labelsync.core.reconciler import ReconcileOptions, Reconciler, ReconcileStatus
from labelsync.templates.catalog import TemplateCatalog
from labelsync.templates.resolver import TemplateResolver


@pytest.fixture
def reconciler_factory(store, credentials, gmail_mailboxes, outlook_mailboxes, template_dir):
    """Build reconcilers over the fake providers and the minimal templates."""
    def _make(audit_logger=None, **options):
        return Reconciler(
            store=store,
            credentials=credentials,
            adapters={Provider.GMAIL: gmail_mailboxes, Provider.OUTLOOK: outlook_mailboxes},
            resolver=TemplateResolver(TemplateCatalog(template_dir)),
            audit_logger=audit_logger,
            options=ReconcileOptions(backoff_seconds=0, max_backoff_seconds=0, **options),
        )
    return _make


@pytest.fixture
def reconciler(reconciler_factory):
    """Create a reconciler without audit logging."""
    return reconciler_factory()


@pytest.fixture
def profile():
    """Create tenant T1 with two team members."""
    return TenantProfile(tenant_id="T1", vertical="Test Vertical", team_members=["Hailey", "Jillian"])


@pytest.fixture
def mailbox(gmail_mailboxes):
    """Tenant T1's Gmail mailbox."""
    return gmail_mailboxes.mailbox("token-1")


class TestReconciler:
    """Test cases for Reconciler."""

    @pytest.mark.asyncio
    async def test_fresh_tenant_converges(self, reconciler, profile, mailbox):
        """Test a new mailbox gets every desired label and a complete map."""
        report = await reconciler.reconcile(profile, Provider.GMAIL)

        assert report.status == ReconcileStatus.CONVERGED
        assert report.vertical == "Test Vertical"
        assert report.desired == 4
        assert len(mailbox.create_calls) == 4
        assert list(report.identifier_map.entries) == ["BANKING", "MANAGER", "MANAGER/Hailey", "MANAGER/Jillian"]
        assert report.identifier_map["MANAGER/Hailey"] == mailbox.id_of("MANAGER/Hailey")
        assert report.error is None

    @pytest.mark.asyncio
    async def test_rerun_is_idempotent(self, reconciler, profile, mailbox):
        """Test a second run creates nothing and yields the same map."""
        first = await reconciler.reconcile(profile, Provider.GMAIL)
        second = await reconciler.reconcile(profile, Provider.GMAIL)

        assert second.status == ReconcileStatus.CONVERGED
        assert len(mailbox.create_calls) == 4
        assert second.provision.status_counts() == {"matched": 4}
        assert second.identifier_map.entries == first.identifier_map.entries
        assert second.run_id != first.run_id

    @pytest.mark.asyncio
    async def test_deleted_label_is_recreated(self, reconciler, profile, mailbox):
        """Test a label removed in the mailbox is created again with a new id."""
        first = await reconciler.reconcile(profile, Provider.GMAIL)
        old_id = first.identifier_map["MANAGER/Hailey"]
        mailbox.remove(old_id)

        second = await reconciler.reconcile(profile, Provider.GMAIL)

        assert second.status == ReconcileStatus.CONVERGED
        assert second.sync.marked_deleted == 1
        assert second.provision.get("MANAGER/Hailey").status == ItemStatus.CREATED
        assert second.identifier_map["MANAGER/Hailey"] != old_id

    @pytest.mark.asyncio
    async def test_existing_labels_adopted_by_sync(self, reconciler, profile, mailbox):
        """Test labels already in the mailbox are matched instead of recreated."""
        manager = mailbox.add("Manager")
        mailbox.add("hailey", manager)

        report = await reconciler.reconcile(profile, Provider.GMAIL)

        assert report.status == ReconcileStatus.CONVERGED
        assert report.provision.get("MANAGER").status == ItemStatus.MATCHED
        assert report.provision.get("MANAGER/Hailey").status == ItemStatus.MATCHED
        assert [name for name, _ in mailbox.create_calls] == ["BANKING", "Jillian"]

    @pytest.mark.asyncio
    async def test_sync_failure_stops_run(self, reconciler, profile, mailbox):
        """Test a failed listing ends the run before provisioning."""
        mailbox.list_failures = [ClientError("bad request", status_code=400)]

        report = await reconciler.reconcile(profile, Provider.GMAIL)

        assert report.status == ReconcileStatus.SYNC_FAILED
        assert report.provision is None
        assert report.identifier_map is None
        assert "Failed to list labels" in report.error
        assert mailbox.create_calls == []

    @pytest.mark.asyncio
    async def test_partial_run(self, reconciler, profile, mailbox):
        """Test a failed parent leaves the run partial without a map."""
        mailbox.create_failures["MANAGER"] = [ClientError("bad name", status_code=400)]

        report = await reconciler.reconcile(profile, Provider.GMAIL)

        assert report.status == ReconcileStatus.PARTIAL
        assert report.identifier_map is None
        assert report.succeeded == 1
        assert report.failed == 1
        assert report.blocked == 2
        assert "1 failed" in report.error

    @pytest.mark.asyncio
    async def test_partial_run_recovers(self, reconciler, profile, mailbox):
        """Test the next run picks up where a partial run stopped."""
        mailbox.create_failures["MANAGER"] = [ClientError("bad name", status_code=400)]
        await reconciler.reconcile(profile, Provider.GMAIL)

        report = await reconciler.reconcile(profile, Provider.GMAIL)

        assert report.status == ReconcileStatus.CONVERGED
        assert report.provision.get("BANKING").status == ItemStatus.MATCHED
        assert report.provision.get("MANAGER").status == ItemStatus.CREATED

    @pytest.mark.asyncio
    async def test_dry_run(self, reconciler, profile, mailbox, store):
        """Test a dry run plans every label and creates nothing."""
        report = await reconciler.reconcile(profile, Provider.GMAIL, dry_run=True)

        assert report.status == ReconcileStatus.DRY_RUN
        assert report.provision.status_counts() == {"planned": 4}
        assert report.identifier_map is None
        assert mailbox.create_calls == []
        assert store.list_records("T1", Provider.GMAIL) == []

    @pytest.mark.asyncio
    async def test_run_timeout(self, reconciler_factory, profile, mailbox):
        """Test an exhausted run budget leaves items timed out."""
        reconciler = reconciler_factory(run_timeout_seconds=0.000001)

        report = await reconciler.reconcile(profile, Provider.GMAIL)

        assert report.status == ReconcileStatus.PARTIAL
        assert report.provision.timed_out
        assert report.provision.status_counts() == {"timed_out": 4}

    @pytest.mark.asyncio
    async def test_unknown_vertical(self, reconciler, mailbox):
        """Test an unknown vertical fails before any provider call."""
        profile = TenantProfile(tenant_id="T1", vertical="Bakery")

        with pytest.raises(UnknownVerticalError):
            await reconciler.reconcile(profile, Provider.GMAIL)

        assert mailbox.list_calls == 0

    @pytest.mark.asyncio
    async def test_busy_without_wait(self, reconciler, profile, mailbox):
        """Test a second run for the same pair is refused when not waiting."""
        mailbox.create_delay = 0.05
        task = asyncio.create_task(reconciler.reconcile(profile, Provider.GMAIL))
        await asyncio.sleep(0)

        assert reconciler.is_running("T1", Provider.GMAIL)
        with pytest.raises(BusyError):
            await reconciler.reconcile(profile, Provider.GMAIL, wait=False)

        report = await task
        assert report.status == ReconcileStatus.CONVERGED
        assert not reconciler.is_running("T1", Provider.GMAIL)

    @pytest.mark.asyncio
    async def test_concurrent_runs_are_serialized(self, reconciler, profile, mailbox):
        """Test queued runs for the same pair never duplicate labels."""
        mailbox.create_delay = 0.01

        first, second = await asyncio.gather(
            reconciler.reconcile(profile, Provider.GMAIL),
            reconciler.reconcile(profile, Provider.GMAIL),
        )

        assert first.status == ReconcileStatus.CONVERGED
        assert second.status == ReconcileStatus.CONVERGED
        assert len(mailbox.create_calls) == 4
        assert len(mailbox.labels) == 4

    @pytest.mark.asyncio
    async def test_reconcile_tenant_all_providers(self, reconciler, gmail_mailboxes, outlook_mailboxes):
        """Test every provider of a tenant is reconciled independently."""
        profile = TenantProfile(
            tenant_id="T1",
            vertical="Test Vertical",
            team_members=["Hailey"],
            providers=[Provider.GMAIL, Provider.OUTLOOK],
        )

        reports = await reconciler.reconcile_tenant(profile)

        assert set(reports) == {"gmail", "outlook"}
        assert all(r.status == ReconcileStatus.CONVERGED for r in reports.values())
        assert len(gmail_mailboxes.mailbox("token-1").labels) == 3
        assert len(outlook_mailboxes.mailbox("token-1o").labels) == 3

    @pytest.mark.asyncio
    async def test_reconcile_all_isolates_tenants(self, reconciler, store, gmail_mailboxes):
        """Test tenants are reconciled side by side without interference."""
        profiles = [
            TenantProfile(tenant_id="T1", vertical="Test Vertical", team_members=["Hailey"]),
            TenantProfile(tenant_id="T2", vertical="Testing", team_members=["Ravi", "Mo"]),
            TenantProfile(tenant_id="T3", vertical="Bakery"),
        ]

        reports = await reconciler.reconcile_all(profiles)

        assert sorted(r.tenant_id for r in reports) == ["T1", "T2"]
        assert all(r.status == ReconcileStatus.CONVERGED for r in reports)
        assert len(store.list_records("T1", Provider.GMAIL)) == 3
        assert len(store.list_records("T2", Provider.GMAIL)) == 4
        assert gmail_mailboxes.mailbox("token-1").id_of("MANAGER/Ravi") is None
        assert gmail_mailboxes.mailbox("token-2").id_of("MANAGER/Ravi") is not None

    @pytest.mark.asyncio
    async def test_gmail_tenants_with_same_label_ids(self, store, credentials, numbered_gmail_mailboxes, template_dir):
        """Test tenants whose mailboxes number labels identically both converge."""
        reconciler = Reconciler(
            store=store,
            credentials=credentials,
            adapters={Provider.GMAIL: numbered_gmail_mailboxes},
            resolver=TemplateResolver(TemplateCatalog(template_dir)),
            options=ReconcileOptions(backoff_seconds=0, max_backoff_seconds=0),
        )
        first = TenantProfile(tenant_id="T1", vertical="Test Vertical", team_members=["Hailey"])
        second = TenantProfile(tenant_id="T2", vertical="Test Vertical", team_members=["Ravi"])

        reports = [await reconciler.reconcile(p, Provider.GMAIL) for p in (first, second)]

        assert [r.status for r in reports] == [ReconcileStatus.CONVERGED, ReconcileStatus.CONVERGED]
        first_ids = reports[0].identifier_map.entries
        second_ids = reports[1].identifier_map.entries
        assert set(first_ids.values()) == set(second_ids.values()) == {"Label_1", "Label_2", "Label_3"}
        assert store.get("T1", Provider.GMAIL, first_ids["MANAGER/Hailey"]).name == "Hailey"
        assert store.get("T2", Provider.GMAIL, second_ids["MANAGER/Ravi"]).name == "Ravi"

        rerun = await reconciler.reconcile(second, Provider.GMAIL)

        assert rerun.status == ReconcileStatus.CONVERGED
        assert rerun.sync.marked_deleted == 0
        assert len(store.list_records("T1", Provider.GMAIL)) == 3

    @pytest.mark.asyncio
    async def test_identifier_map_from_store(self, reconciler, profile):
        """Test the map can be rebuilt from the store after a run."""
        with pytest.raises(IncompleteMapError):
            reconciler.identifier_map(profile, Provider.GMAIL)

        report = await reconciler.reconcile(profile, Provider.GMAIL)

        assert reconciler.identifier_map(profile, Provider.GMAIL).entries == report.identifier_map.entries

    @pytest.mark.asyncio
    async def test_sync_only(self, reconciler, profile, mailbox):
        """Test a sync refreshes the store without creating labels."""
        mailbox.add("BANKING")

        report = await reconciler.sync(profile, Provider.GMAIL)

        assert report.snapshot_size == 1
        assert mailbox.create_calls == []

    @pytest.mark.asyncio
    async def test_audit_trail_written(self, reconciler_factory, profile, tmp_path):
        """Test each run writes an event stream and a summary."""
        audit_dir = tmp_path / "audit"
        reconciler = reconciler_factory(audit_logger=AuditLogger(audit_dir=audit_dir))

        report = await reconciler.reconcile(profile, Provider.GMAIL)

        events_file = next(audit_dir.glob("audit_*.jsonl"))
        events = [json.loads(line) for line in events_file.read_text().splitlines()]
        assert events[0]["event_type"] == "run_start"
        assert events[-1]["event_type"] == "run_complete"
        assert sum(1 for e in events if e["event_type"] == "label_outcome") == 4

        with open(audit_dir / f"summary_{report.run_id}.json", "r", encoding="utf-8") as f:
            summary = json.load(f)
        assert summary["status"] == "converged"
        assert summary["outcomes"] == {"CREATED": 4}

    @pytest.mark.asyncio
    async def test_close_closes_adapters(self, reconciler, gmail_mailboxes, outlook_mailboxes):
        """Test closing the reconciler closes every adapter."""
        await reconciler.close()

        assert gmail_mailboxes.closed
        assert outlook_mailboxes.closed
