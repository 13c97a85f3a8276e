"""
Tests for ReconciliationService -- repair of corrupted device ledgers.

Covers:
- Corrupted ledgers (null-user rows, several open records, holder drift,
  stale status) are repaired in place
- Repair is idempotent: the second pass reports nothing
- check_all() only lists devices with violations
- Repairs invalidate the kind's listings after commit
- reconcile_all() isolates a failing device: its partial writes are rolled
  back, the other repairs stand, and the failure is reported
- The dry-run check of the reconciliation runner honours a single device
"""

from datetime import timedelta
from uuid import uuid4

import pytest

from inventory_kernel.domain.dtos import ReconciliationRun
from inventory_kernel.domain.kinds import DeviceKind
from inventory_kernel.domain.status import DeviceStatus
from inventory_kernel.exceptions import DeviceNotFoundError, MissingActorError, PersistenceError
from inventory_kernel.invariants import LedgerInvariant
from inventory_kernel.models.assignment import AssignmentRecord
from inventory_kernel.models.device import Device

from scripts.reconcile_history import check_ledgers


def _record(sequence, user, start, end=None, named=True):
    return AssignmentRecord(
        sequence=sequence,
        user_id=user.id if user is not None else None,
        fullname_snapshot=user.fullname if user is not None and named else None,
        start_date=start,
        end_date=end,
        revoked_reason=[],
    )


@pytest.fixture
def corrupt(session):
    """Overwrite a device's ledger, holder and status directly, bypassing the engine."""

    def _corrupt(device_id, records, holder=None, status=None):
        device = session.get(Device, device_id)
        device.history[:] = records
        device.holder_id = holder.id if holder is not None else None
        device.holder_fullname = holder.fullname if holder is not None else None
        if status is not None:
            device.status = status
        session.flush()
        return device

    return _corrupt


class TestReconcileDevice:
    def test_null_user_and_stale_open_records_repaired(
        self, reconciliation, corrupt, make_device, users, test_actor_id, deterministic_clock
    ):
        t0 = deterministic_clock.now()
        device = make_device("laptop")
        corrupt(
            device.id,
            [
                _record(0, users["an"], t0),
                _record(1, None, t0 + timedelta(hours=1), t0 + timedelta(hours=1)),
                _record(2, users["binh"], t0 + timedelta(hours=2)),
            ],
            holder=users["binh"],
            status="Standby",
        )

        report = reconciliation.reconcile_device("laptop", device.id, test_actor_id)

        assert report.changed
        assert "dropped_null_user:1" in report.actions
        assert "closed_stale_open:0" in report.actions
        assert report.status_before == "Standby"
        assert report.status_after is DeviceStatus.PENDING_DOCUMENTATION

        stored = reconciliation.session.get(Device, device.id)
        assert [r.sequence for r in stored.history] == [0, 1]
        first, second = stored.history
        assert first.user_id == users["an"].id
        assert first.end_date == second.start_date
        assert second.user_id == users["binh"].id
        assert second.end_date is None
        assert stored.status == "PendingDocumentation"

    def test_second_pass_is_a_no_op(
        self, reconciliation, corrupt, make_device, users, test_actor_id, deterministic_clock
    ):
        t0 = deterministic_clock.now()
        device = make_device("monitor")
        corrupt(
            device.id,
            [_record(0, users["an"], t0), _record(1, users["chi"], t0 + timedelta(minutes=5))],
            holder=None,
            status="Active",
        )
        deterministic_clock.advance(3600)

        first = reconciliation.reconcile_device("monitor", device.id, test_actor_id)
        version_after_first = reconciliation.session.get(Device, device.id).version_id
        second = reconciliation.reconcile_device("monitor", device.id, test_actor_id)

        assert first.changed
        assert first.status_after is DeviceStatus.STANDBY
        assert second.actions == ()
        assert not second.changed
        assert reconciliation.session.get(Device, device.id).version_id == version_after_first

    def test_holder_without_record_gets_open_record(
        self, reconciliation, corrupt, make_device, users, test_actor_id, deterministic_clock
    ):
        device = make_device("phone")
        corrupt(device.id, [], holder=users["chi"], status="Standby")

        report = reconciliation.reconcile_device("phone", device.id, test_actor_id)

        assert report.actions == ("appended_holder_record",)
        stored = reconciliation.session.get(Device, device.id)
        assert len(stored.history) == 1
        assert stored.history[0].user_id == users["chi"].id
        assert stored.history[0].start_date == deterministic_clock.now()
        assert stored.history[0].fullname_snapshot == "Lê Minh Chi"

    def test_missing_name_snapshot_filled_from_directory(
        self, reconciliation, corrupt, make_device, users, test_actor_id, deterministic_clock
    ):
        t0 = deterministic_clock.now()
        device = make_device("tool")
        corrupt(
            device.id,
            [_record(0, users["an"], t0, t0 + timedelta(hours=1), named=False)],
            status="Standby",
        )

        report = reconciliation.reconcile_device("tool", device.id, test_actor_id)

        assert report.actions == ("filled_fullname_snapshot:0",)
        stored = reconciliation.session.get(Device, device.id)
        assert stored.history[0].fullname_snapshot == "Nguyễn Văn An"

    def test_broken_flag_survives_repair(
        self, reconciliation, assignment_engine, corrupt, make_device, users, test_actor_id
    ):
        device = make_device("printer")
        assignment_engine.set_broken("printer", device.id, "toner leak", None, test_actor_id)
        corrupt(device.id, [], holder=None, status="Standby")

        report = reconciliation.reconcile_device("printer", device.id, test_actor_id)

        assert report.status_after is DeviceStatus.BROKEN

    def test_unknown_device(self, reconciliation, make_device, test_actor_id):
        device = make_device("laptop")
        with pytest.raises(DeviceNotFoundError):
            reconciliation.reconcile_device("monitor", device.id, test_actor_id)

    def test_actor_required(self, reconciliation, make_device):
        device = make_device("laptop")
        with pytest.raises(MissingActorError):
            reconciliation.reconcile_device("laptop", device.id, None)


class TestCheckAndReconcileAll:
    def test_check_all_lists_only_broken_ledgers(
        self, reconciliation, assignment_engine, corrupt, make_device, users, test_actor_id,
        deterministic_clock,
    ):
        healthy = make_device("laptop")
        assignment_engine.assign("laptop", healthy.id, users["an"].id, None, test_actor_id)
        damaged = make_device("laptop")
        corrupt(damaged.id, [], holder=users["binh"], status="Standby")

        report = reconciliation.check_all("laptops")

        assert list(report) == [damaged.id]
        invariants = {v.invariant for v in report[damaged.id]}
        assert LedgerInvariant.HOLDER_MATCHES_OPEN_RECORD in invariants
        assert reconciliation.check_device("laptop", healthy.id) == []

    def test_reconcile_all_reports_changed_devices_once(
        self, reconciliation, corrupt, make_device, users, test_actor_id
    ):
        make_device("laptop")
        damaged = make_device("monitor")
        corrupt(damaged.id, [], holder=users["an"], status="Standby")

        run = reconciliation.reconcile_all(test_actor_id)

        assert [r.device_id for r in run.reports] == [damaged.id]
        assert run.failures == ()
        assert reconciliation.reconcile_all(test_actor_id) == ReconciliationRun()
        assert reconciliation.check_all() == {}

    def test_repairs_invalidate_after_commit(
        self, reconciliation, session, listing_cache, corrupt, make_device, users, test_actor_id
    ):
        damaged = make_device("projector")
        corrupt(damaged.id, [], holder=users["an"], status="Standby")
        listing_cache.commit(session)
        listing_cache.put(DeviceKind.PROJECTOR, 1, 20, [], 0)

        reconciliation.reconcile_all(test_actor_id, kind="projector")
        listing_cache.commit(session)

        assert listing_cache.get(DeviceKind.PROJECTOR, 1, 20) is None


class TestReconcileAllIsolation:
    def test_failing_device_keeps_other_repairs(
        self, reconciliation, session, listing_cache, corrupt, make_device, users,
        test_actor_id, monkeypatch,
    ):
        first = make_device("laptop")
        second = make_device("laptop")
        corrupt(first.id, [], holder=users["an"], status="Standby")
        corrupt(second.id, [], holder=users["binh"], status="Standby")
        repair = reconciliation._reconcile

        def fail_half_way(device, actor_id):
            if device.id != second.id:
                return repair(device, actor_id)
            device.holder_id = None
            device.holder_fullname = None
            session.flush()
            raise PersistenceError("reconcile", "connection reset")

        monkeypatch.setattr(reconciliation, "_reconcile", fail_half_way)
        run = reconciliation.reconcile_all(test_actor_id, kind="laptop")
        listing_cache.commit(session)
        session.expire_all()

        assert [r.device_id for r in run.reports] == [first.id]
        assert [(f.device_id, f.code) for f in run.failures] == [(second.id, "PERSISTENCE_ERROR")]
        assert reconciliation.check_device("laptop", first.id) == []
        assert session.get(Device, second.id).holder_id == users["binh"].id

    def test_failure_is_logged(
        self, reconciliation, corrupt, make_device, users, test_actor_id, monkeypatch,
        captured_logs,
    ):
        device = make_device("tool")
        corrupt(device.id, [], holder=users["an"], status="Standby")

        def always_fail(device, actor_id):
            raise PersistenceError("reconcile", "disk full")

        monkeypatch.setattr(reconciliation, "_reconcile", always_fail)
        run = reconciliation.reconcile_all(test_actor_id)

        assert run.reports == ()
        assert len(run.failures) == 1
        failed = [r for r in captured_logs() if r["message"] == "ledger_reconcile_failed"]
        assert failed[0]["code"] == "PERSISTENCE_ERROR"
        assert failed[0]["device_id"] == str(device.id)


class TestDryRunCheck:
    def test_single_device_only(self, session, corrupt, make_device, users):
        damaged = make_device("laptop")
        other = make_device("laptop")
        corrupt(damaged.id, [], holder=users["an"], status="Standby")
        corrupt(other.id, [], holder=users["binh"], status="Standby")

        report = check_ledgers(session, "laptop", str(damaged.id))

        assert list(report) == [str(damaged.id)]
        assert set(check_ledgers(session, None, None)) == {damaged.id, other.id}

    def test_unknown_device(self, session):
        with pytest.raises(DeviceNotFoundError):
            check_ledgers(session, "laptop", str(uuid4()))
