"""
AssignmentEngine -- the only writer of holder, ledger and status.

Responsibility:
    Executes every lifecycle transition of a device as one atomic unit:
    assign, revoke, mark broken, clear broken, explicit status update and
    handover document attachment.  Each transition mutates the holder
    snapshot, the assignment ledger and the derived status together, then
    asks the cache invalidator to drop the kind's listings after commit.

Architecture position:
    Kernel > Services -- flush-only.  Called by the transactional
    orchestrator (``inventory_services.orchestrator``) and by tests.

Invariants enforced:
    SINGLE_OPEN_RECORD        -- assign closes every open record before it
                                 appends the new one.
    HOLDER_MATCHES_OPEN_RECORD -- the holder snapshot is written in the same
                                 unit as the open record.
    MONOTONIC_DATES           -- ``now`` is clamped to the latest start date
                                 in the ledger, so closing never precedes
                                 opening even with a skewed clock.
    STATUS_DERIVED            -- status is recomputed with ``derive_status``
                                 after every mutation; callers never set it.

Concurrency:
    Each transition runs inside a SAVEPOINT.  The device row is read with
    ``SELECT ... FOR UPDATE`` (a no-op on SQLite) and written with the
    version counter check.  A version mismatch rolls back the savepoint and
    the transition is recomputed from fresh state, up to ``max_attempts``
    times.  Driver errors (including statement timeouts) are reported as
    PersistenceError and never retried.

Failure modes:
    - DeviceNotFoundError / UserNotFoundError: missing device or target.
    - ValidationError subclasses: bad input, detected before any write.
    - NotCurrentHolderError: document attached for someone other than the
      open record's user.
    - DeviceVersionConflictError: retries exhausted.
    - PersistenceError / PersistenceTimeoutError: database failure.
    In every failure case the savepoint is rolled back, so the device is
    left exactly as it was.

Audit relevance:
    Every committed transition logs one INFO line (``device_assigned``,
    ``device_revoked``, ...) with the device, kind, actor and resulting
    status.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import DBAPIError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from inventory_kernel.domain.clock import Clock, SystemClock
from inventory_kernel.domain.documents import sanitize_document_name
from inventory_kernel.domain.dtos import DeviceInfo, HolderSnapshot
from inventory_kernel.domain.kinds import DeviceKind
from inventory_kernel.domain.status import DeviceStatus, derive_status, is_blank, parse_status
from inventory_kernel.exceptions import (
    AlreadyCurrentHolderError,
    BrokenReasonRequiredError,
    DeviceNotFoundError,
    DeviceVersionConflictError,
    InvalidStatusError,
    MissingFieldError,
    NotCurrentHolderError,
    ValidationError,
)
from inventory_kernel.logging_config import LogContext, get_logger
from inventory_kernel.models.assignment import AssignmentRecord
from inventory_kernel.models.device import Device
from inventory_kernel.models.directory import DirectoryUser
from inventory_kernel.selectors.device_selector import DeviceSelector
from inventory_kernel.services.base import (
    BaseService,
    CacheInvalidator,
    NullInvalidator,
    require_actor,
    translate_persistence_error,
)
from inventory_kernel.services.directory_service import DirectoryService

logger = get_logger("services.assignment_engine")

Mutation = Callable[[Device, datetime], dict[str, Any]]


class ReassignPolicy(str, Enum):
    """What ``assign`` does when the target already holds the device."""

    ROTATE = "rotate"  # close and reopen the record
    REJECT = "reject"  # AlreadyCurrentHolderError


def as_device_id(device_id: UUID | str, kind: DeviceKind | None = None) -> UUID:
    """Parse a device id; malformed ids are reported as not found."""
    if isinstance(device_id, UUID):
        return device_id
    try:
        return UUID(str(device_id))
    except ValueError:
        raise DeviceNotFoundError(str(device_id), kind.value if kind else None) from None


def lock_device(session: Session, kind: DeviceKind, device_id: UUID) -> Device:
    """Load and row-lock a device of the given kind, refreshing cached state."""
    device = session.execute(
        select(Device)
        .where(Device.id == device_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if device is None or device.kind != kind.value:
        raise DeviceNotFoundError(str(device_id), kind.value)
    return device


def holder_snapshot_of(user: DirectoryUser) -> HolderSnapshot:
    return HolderSnapshot(
        id=user.id,
        fullname=user.fullname,
        job_title=user.job_title,
        department=user.department,
        avatar_url=user.avatar_url,
    )


class AssignmentEngine(BaseService[Device]):
    """
    Atomic lifecycle transitions of a device.

    Contract:
        Every public method takes the device kind and id plus the acting
        user's id, runs one transition and returns the device as a
        ``DeviceInfo`` with history references resolved.  Nothing is
        committed; the caller commits.

    Guarantees:
        - All-or-nothing per device: a failed transition leaves no partial
          ledger, holder or status change behind.
        - The listing cache of the kind is invalidated only if the caller's
          transaction commits.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        directory: DirectoryService | None = None,
        invalidator: CacheInvalidator | None = None,
        max_attempts: int = 3,
        reassign_policy: ReassignPolicy | str = ReassignPolicy.ROTATE,
    ):
        super().__init__(session)
        self._clock = clock or SystemClock()
        self._directory = directory or DirectoryService(session, self._clock)
        self._invalidator = invalidator or NullInvalidator()
        self._max_attempts = max(1, max_attempts)
        self._reassign_policy = ReassignPolicy(reassign_policy)
        self._selector = DeviceSelector(session)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def assign(
        self,
        kind: DeviceKind | str,
        device_id: UUID | str,
        target_user_ref: UUID | str,
        reason: str | None,
        actor_id: UUID,
    ) -> DeviceInfo:
        """
        Hand the device to a new holder.

        The open record (if any) is closed with ``revoked_by = actor``, a
        new open record is appended for the target, the holder snapshot is
        replaced and the status becomes PendingDocumentation (or stays
        Broken).
        """
        require_actor(actor_id, "assign")
        target = self._directory.resolve_user(target_user_ref, active_only=True)
        snapshot = holder_snapshot_of(target)

        def mutate(device: Device, now: datetime) -> dict[str, Any]:
            open_record = device.open_record
            previous = open_record.user_id if open_record is not None else None
            if previous == target.id and self._reassign_policy is ReassignPolicy.REJECT:
                raise AlreadyCurrentHolderError(str(device.id), str(target.id))
            self._close_open_records(device, now, actor_id, reasons=())
            device.history.append(AssignmentRecord(
                sequence=device.next_sequence(),
                user_id=target.id,
                fullname_snapshot=target.fullname,
                start_date=now,
                notes=reason,
                assigned_by_id=actor_id,
                revoked_reason=[],
            ))
            device.set_holder(snapshot)
            return {
                "holder_id": str(target.id),
                "previous_holder_id": str(previous) if previous else None,
            }

        return self._run("assign", "device_assigned", kind, device_id, actor_id, mutate)

    def revoke(
        self,
        kind: DeviceKind | str,
        device_id: UUID | str,
        reasons: Sequence[str] | None,
        new_status: str | None,
        actor_id: UUID,
    ) -> DeviceInfo:
        """
        Take the device back from its holder.

        ``new_status`` ``Broken`` makes the joined reasons the broken
        reason.  Any other value, or none, clears the broken flag, so the
        device ends in Standby.
        """
        require_actor(actor_id, "revoke")
        if reasons is None:
            reasons = []
        if isinstance(reasons, str) or not isinstance(reasons, Sequence):
            raise ValidationError("reasons must be a list")
        cleaned = [r.strip() for r in reasons if isinstance(r, str) and r.strip()]
        requested = parse_status(new_status)
        if requested is DeviceStatus.BROKEN and not cleaned:
            raise BrokenReasonRequiredError(str(device_id))

        def mutate(device: Device, now: datetime) -> dict[str, Any]:
            open_record = device.open_record
            previous = open_record.user_id if open_record is not None else None
            closed = self._close_open_records(device, now, actor_id, reasons=cleaned)
            if not closed:
                # Revoke without a holder leaves a closed marker in the ledger.
                device.history.append(AssignmentRecord(
                    sequence=device.next_sequence(),
                    user_id=None,
                    start_date=now,
                    end_date=now,
                    revoked_by_id=actor_id,
                    revoked_reason=list(cleaned),
                ))
            device.set_holder(None)
            if requested is DeviceStatus.BROKEN:
                device.broken_reason = "; ".join(cleaned)
                device.broken_description = None
            else:
                device.broken_reason = None
                device.broken_description = None
            return {
                "previous_holder_id": str(previous) if previous else None,
                "reasons": cleaned,
                "marker_record": not closed,
            }

        return self._run("revoke", "device_revoked", kind, device_id, actor_id, mutate)

    def set_broken(
        self,
        kind: DeviceKind | str,
        device_id: UUID | str,
        reason: str | None,
        description: str | None,
        actor_id: UUID,
    ) -> DeviceInfo:
        """Mark the device broken; the holder and ledger are untouched."""
        require_actor(actor_id, "set_broken")
        if is_blank(reason):
            raise BrokenReasonRequiredError(str(device_id))

        def mutate(device: Device, now: datetime) -> dict[str, Any]:
            device.broken_reason = reason.strip()
            device.broken_description = description
            return {"broken_reason": device.broken_reason}

        return self._run("set_broken", "device_marked_broken", kind, device_id, actor_id, mutate)

    def clear_broken(
        self,
        kind: DeviceKind | str,
        device_id: UUID | str,
        actor_id: UUID,
    ) -> DeviceInfo:
        """Clear the broken flag; status falls back to the holder-based state."""
        require_actor(actor_id, "clear_broken")

        def mutate(device: Device, now: datetime) -> dict[str, Any]:
            was_broken = device.is_broken
            device.broken_reason = None
            device.broken_description = None
            return {"was_broken": was_broken}

        return self._run("clear_broken", "device_broken_cleared", kind, device_id, actor_id, mutate)

    def update_status(
        self,
        kind: DeviceKind | str,
        device_id: UUID | str,
        status: str | None,
        broken_reason: str | None,
        broken_description: str | None,
        actor_id: UUID,
    ) -> DeviceInfo:
        """
        Explicit status request.

        ``Broken`` marks the device broken (reason required).  Any other
        status clears the broken flag and must equal the status the ledger
        derives, otherwise InvalidStatusError is raised and nothing changes.
        """
        requested = parse_status(status)
        if requested is None:
            raise InvalidStatusError(str(status), "unknown status")
        if requested is DeviceStatus.BROKEN:
            return self.set_broken(kind, device_id, broken_reason, broken_description, actor_id)
        require_actor(actor_id, "update_status")

        def mutate(device: Device, now: datetime) -> dict[str, Any]:
            derived = derive_status(device.open_record, is_broken=False)
            if derived is not requested:
                raise InvalidStatusError(
                    requested.value,
                    f"device ledger derives {derived.value}",
                )
            device.broken_reason = None
            device.broken_description = None
            return {"requested_status": requested.value}

        return self._run("update_status", "device_status_updated", kind, device_id, actor_id, mutate)

    def attach_handover_document(
        self,
        kind: DeviceKind | str,
        device_id: UUID | str,
        user_ref: UUID | str,
        document: str | None,
        actor_id: UUID,
    ) -> DeviceInfo:
        """
        Attach the handover document to the open record of ``user_ref``.

        Only the current holder's open record accepts a document; earlier
        holders are rejected with NotCurrentHolderError.  The status moves
        from PendingDocumentation to Active.
        """
        require_actor(actor_id, "attach_handover_document")
        if is_blank(document):
            raise MissingFieldError("document")
        stored_name = sanitize_document_name(document)
        user = self._directory.resolve_user(user_ref)

        def mutate(device: Device, now: datetime) -> dict[str, Any]:
            open_record = device.open_record
            if open_record is None or open_record.user_id != user.id:
                raise NotCurrentHolderError(str(device.id), str(user.id))
            open_record.document = stored_name
            return {"holder_id": str(user.id), "document": stored_name}

        return self._run(
            "attach_handover_document",
            "handover_document_attached",
            kind,
            device_id,
            actor_id,
            mutate,
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _run(
        self,
        operation: str,
        event: str,
        kind: DeviceKind | str,
        device_id: UUID | str,
        actor_id: UUID,
        mutate: Mutation,
    ) -> DeviceInfo:
        kind = DeviceKind.parse(kind)
        device_uuid = as_device_id(device_id, kind)

        with LogContext.bind(device_id=device_uuid, device_kind=kind.value, actor_id=actor_id):
            attempt = 0
            while True:
                attempt += 1
                savepoint = self.session.begin_nested()
                try:
                    device = self.load_for_update(kind, device_uuid)
                    status_before = device.status
                    now = self._now(device)
                    details = mutate(device, now)
                    device.status = derive_status(device.open_record, device.is_broken).value
                    device.updated_at = now
                    device.updated_by_id = actor_id
                    self.session.flush()
                    savepoint.commit()
                except StaleDataError:
                    savepoint.rollback()
                    if attempt >= self._max_attempts:
                        logger.warning(
                            "device_version_conflict",
                            extra={"operation": operation, "attempts": attempt},
                        )
                        raise DeviceVersionConflictError(str(device_uuid), attempt) from None
                    logger.info(
                        "device_version_conflict_retry",
                        extra={"operation": operation, "attempt": attempt},
                    )
                    continue
                except DBAPIError as exc:
                    savepoint.rollback()
                    error = translate_persistence_error(operation, exc)
                    logger.error(
                        "device_persistence_failed",
                        extra={"operation": operation, "error_code": error.code},
                    )
                    raise error from exc
                except Exception:
                    savepoint.rollback()
                    raise
                break

            self._invalidator.invalidate_after_commit(self.session, kind)
            logger.info(
                event,
                extra={
                    "operation": operation,
                    "status_before": status_before,
                    "status_after": device.status,
                    "attempts": attempt,
                    **details,
                },
            )
            return self._selector.to_info(device)

    def load_for_update(self, kind: DeviceKind, device_id: UUID) -> Device:
        return lock_device(self.session, kind, device_id)

    def _now(self, device: Device) -> datetime:
        now = self._clock.now()
        last_start = device.last_start_date
        if last_start is not None and now < last_start:
            return last_start
        return now

    @staticmethod
    def _close_open_records(
        device: Device,
        now: datetime,
        actor_id: UUID,
        reasons: Sequence[str],
    ) -> list[AssignmentRecord]:
        closed = []
        for record in device.history:
            if record.end_date is None:
                record.end_date = max(now, record.start_date)
                record.revoked_by_id = actor_id
                record.revoked_reason = list(reasons)
                closed.append(record)
        return closed
