"""
ReconciliationService -- repair pass over assignment ledgers.

Responsibility:
    Maps a device's ledger rows to immutable ``LedgerEntry`` values, runs
    the pure ``check_ledger`` / ``reconcile_ledger`` functions and writes
    the repaired ledger and derived status back.  Operates on one device,
    one kind or every device.

Architecture position:
    Kernel > Services -- flush-only.  Driven by the
    ``scripts/reconcile_history.py`` runner and by tests; not on the
    request path.

Invariants enforced:
    Restores all four ledger invariants (see ``inventory_kernel.invariants``)
    and is idempotent: a second pass over a repaired device reports no
    actions and writes nothing.

Failure modes:
    - DeviceNotFoundError for an unknown device.
    - DeviceVersionConflictError if a writer changed the device during the
      repair.  ``reconcile_all`` rolls that device back to its savepoint,
      lists it under ``failures`` and moves on.
    - PersistenceError from the driver, handled the same way.

Audit relevance:
    Each repaired device logs ``ledger_reconciled`` with the list of repair
    actions and the status before and after.
"""

from __future__ import annotations

from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import DBAPIError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from inventory_kernel.domain.clock import Clock, SystemClock
from inventory_kernel.domain.dtos import (
    ReconciliationFailure,
    ReconciliationReport,
    ReconciliationRun,
)
from inventory_kernel.domain.kinds import DeviceKind
from inventory_kernel.domain.ledger import (
    HolderRef,
    LedgerEntry,
    LedgerViolation,
    check_ledger,
    reconcile_ledger,
)
from inventory_kernel.exceptions import (
    DeviceNotFoundError,
    DeviceVersionConflictError,
    InventoryError,
)
from inventory_kernel.invariants import LedgerInvariant
from inventory_kernel.logging_config import LogContext, get_logger
from inventory_kernel.models.assignment import AssignmentRecord
from inventory_kernel.models.device import Device
from inventory_kernel.models.directory import DirectoryUser
from inventory_kernel.services.assignment_engine import as_device_id, lock_device
from inventory_kernel.services.base import (
    BaseService,
    CacheInvalidator,
    NullInvalidator,
    require_actor,
    translate_persistence_error,
)

logger = get_logger("services.reconciliation")


def entry_of(record: AssignmentRecord) -> LedgerEntry:
    return LedgerEntry(
        sequence=record.sequence,
        user_id=record.user_id,
        start_date=record.start_date,
        end_date=record.end_date,
        fullname_snapshot=record.fullname_snapshot,
        notes=record.notes,
        assigned_by_id=record.assigned_by_id,
        revoked_by_id=record.revoked_by_id,
        revoked_reason=tuple(record.revoked_reason or ()),
        document=record.document,
        record_id=record.id,
    )


class ReconciliationService(BaseService[Device]):
    """Checks and repairs device ledgers."""

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        invalidator: CacheInvalidator | None = None,
    ):
        super().__init__(session)
        self._clock = clock or SystemClock()
        self._invalidator = invalidator or NullInvalidator()

    # Checking

    def check_device(self, kind: DeviceKind | str, device_id: UUID | str) -> list[LedgerViolation]:
        kind = DeviceKind.parse(kind)
        device = self.session.get(Device, as_device_id(device_id, kind))
        if device is None or device.kind != kind.value:
            raise DeviceNotFoundError(str(device_id), kind.value)
        return self._check(device)

    def check_all(self, kind: DeviceKind | str | None = None) -> dict[UUID, list[LedgerViolation]]:
        """Violations per device; devices without violations are omitted."""
        report: dict[UUID, list[LedgerViolation]] = {}
        for device in self._devices(kind):
            violations = self._check(device)
            if violations:
                report[device.id] = violations
        logger.info(
            "ledger_check_completed",
            extra={"kind": _kind_label(kind), "devices_with_violations": len(report)},
        )
        return report

    # Repair

    def reconcile_device(
        self,
        kind: DeviceKind | str,
        device_id: UUID | str,
        actor_id: UUID,
    ) -> ReconciliationReport:
        """Repair one device's ledger and status in place."""
        require_actor(actor_id, "reconcile")
        kind = DeviceKind.parse(kind)
        device_uuid = as_device_id(device_id, kind)
        with LogContext.bind(device_id=device_uuid, device_kind=kind.value, actor_id=actor_id):
            device = lock_device(self.session, kind, device_uuid)
            return self._reconcile(device, actor_id)

    def reconcile_all(
        self,
        actor_id: UUID,
        kind: DeviceKind | str | None = None,
    ) -> ReconciliationRun:
        """
        Repair every device (of one kind, when given).

        Each device is locked and repaired inside its own savepoint.  A
        device that fails is rolled back to its previous state and listed
        in ``failures``; the repairs of the other devices stand.  Only
        changed devices appear in ``reports``.
        """
        require_actor(actor_id, "reconcile")
        reports: list[ReconciliationReport] = []
        failures: list[ReconciliationFailure] = []
        for device_id, device_kind in self._device_keys(kind):
            with LogContext.bind(device_id=device_id, device_kind=device_kind.value, actor_id=actor_id):
                savepoint = self.session.begin_nested()
                try:
                    device = lock_device(self.session, device_kind, device_id)
                    report = self._reconcile(device, actor_id)
                    savepoint.commit()
                except InventoryError as exc:
                    savepoint.rollback()
                    failures.append(ReconciliationFailure(device_id, device_kind, exc.code, str(exc)))
                    logger.warning("ledger_reconcile_failed", extra={"code": exc.code, "detail": str(exc)})
                    continue
            if report.changed:
                reports.append(report)
        logger.info(
            "ledger_reconciliation_completed",
            extra={
                "kind": _kind_label(kind),
                "devices_repaired": len(reports),
                "devices_failed": len(failures),
            },
        )
        return ReconciliationRun(reports=tuple(reports), failures=tuple(failures))

    # Internals

    def _device_keys(self, kind: DeviceKind | str | None) -> list[tuple[UUID, DeviceKind]]:
        stmt = select(Device.id, Device.kind).order_by(Device.kind, Device.created_at, Device.serial)
        if kind is not None:
            stmt = stmt.where(Device.kind == DeviceKind.parse(kind).value)
        return [(device_id, DeviceKind(value)) for device_id, value in self.session.execute(stmt)]

    def _devices(self, kind: DeviceKind | str | None) -> list[Device]:
        stmt = select(Device).order_by(Device.kind, Device.created_at, Device.serial)
        if kind is not None:
            stmt = stmt.where(Device.kind == DeviceKind.parse(kind).value)
        return list(self.session.execute(stmt).scalars())

    def _check(self, device: Device) -> list[LedgerViolation]:
        entries = [entry_of(r) for r in device.history]
        violations = check_ledger(entries, device.holder_id, device.status, device.broken_reason)
        if device.broken_description and not device.is_broken:
            violations.append(LedgerViolation(
                LedgerInvariant.STATUS_DERIVED,
                "broken description without broken reason",
            ))
        return violations

    def _reconcile(self, device: Device, actor_id: UUID) -> ReconciliationReport:
        kind = DeviceKind(device.kind)
        entries = [entry_of(r) for r in device.history]
        holder = (
            HolderRef(device.holder_id, device.holder_fullname)
            if device.holder_id is not None
            else None
        )
        repair = reconcile_ledger(
            entries,
            holder,
            device.is_broken,
            self._clock.now(),
            user_names=self._names_for(entries, holder),
        )
        actions = list(repair.actions)
        if device.broken_description and not device.is_broken:
            actions.append("cleared_orphan_broken_description")
        status_before = device.status

        if not actions and status_before == repair.status.value:
            return ReconciliationReport(
                device_id=device.id,
                kind=kind,
                actions=(),
                status_before=status_before,
                status_after=repair.status,
            )

        self._write_back(device, repair.entries)
        if not device.is_broken:
            device.broken_reason = None
            device.broken_description = None
        device.status = repair.status.value
        device.updated_at = self._clock.now()
        device.updated_by_id = actor_id
        try:
            self.session.flush()
        except StaleDataError:
            raise DeviceVersionConflictError(str(device.id), 1) from None
        except DBAPIError as exc:
            raise translate_persistence_error("reconcile", exc) from exc

        self._invalidator.invalidate_after_commit(self.session, kind)
        report = ReconciliationReport(
            device_id=device.id,
            kind=kind,
            actions=tuple(actions),
            status_before=status_before,
            status_after=repair.status,
        )
        logger.info(
            "ledger_reconciled",
            extra={
                "actions": report.actions,
                "status_before": status_before,
                "status_after": repair.status.value,
            },
        )
        return report

    def _names_for(self, entries: list[LedgerEntry], holder: HolderRef | None) -> dict[UUID, str]:
        wanted = {
            e.user_id for e in entries
            if e.user_id is not None and not (e.fullname_snapshot or "").strip()
        }
        if holder is not None:
            wanted.add(holder.user_id)
        if not wanted:
            return {}
        rows = self.session.execute(
            select(DirectoryUser.id, DirectoryUser.fullname).where(DirectoryUser.id.in_(wanted))
        ).all()
        return {user_id: name for user_id, name in rows if name}

    def _write_back(self, device: Device, entries: tuple[LedgerEntry, ...]) -> None:
        by_id = {record.id: record for record in device.history}
        kept_ids = {e.record_id for e in entries if e.record_id is not None}
        for record in list(device.history):
            if record.id not in kept_ids:
                device.history.remove(record)

        ordered = []
        for entry in entries:
            record = by_id.get(entry.record_id) if entry.record_id is not None else None
            if record is None:
                record = AssignmentRecord(user_id=entry.user_id, start_date=entry.start_date)
            record.sequence = entry.sequence
            record.user_id = entry.user_id
            record.fullname_snapshot = entry.fullname_snapshot
            record.start_date = entry.start_date
            record.end_date = entry.end_date
            record.notes = entry.notes
            record.assigned_by_id = entry.assigned_by_id
            record.revoked_by_id = entry.revoked_by_id
            record.revoked_reason = list(entry.revoked_reason)
            record.document = entry.document
            ordered.append(record)
        device.history[:] = ordered


def _kind_label(kind: DeviceKind | str | None) -> str:
    return DeviceKind.parse(kind).value if kind is not None else "all"
