"""
Assignment Ledger -- pure checking and repair of a device's history.

Responsibility:
    Works on immutable ``LedgerEntry`` snapshots of a device's assignment
    records.  ``check_ledger`` reports every invariant violation;
    ``reconcile_ledger`` returns a repaired ledger plus the derived status.
    The reconciliation service maps ORM rows to entries, calls these
    functions and writes the result back.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.  Time comes in as an
    argument.

Invariants enforced:
    SINGLE_OPEN_RECORD, HOLDER_MATCHES_OPEN_RECORD, MONOTONIC_DATES and
    STATUS_DERIVED (see ``inventory_kernel.invariants``).

Repair algorithm (``reconcile_ledger``):
    0. Order records by start date (stable on sequence) and renumber.
    1. Drop records without a user.
    2. Close every non-last open record at the next record's start date and
       clamp end dates into [start_date, next.start_date].
    3. Align the last record with the holder snapshot:
         holder set, last record is the holder's but closed -> reopen it
         holder set, last record belongs to someone else    -> close it and
                                                               append an open
                                                               record for the
                                                               holder
         holder set, no records                             -> append one
         holder unset, last record open                     -> close it
    4. Fill missing name snapshots from the supplied directory names.
    5. Derive status from the repaired open record and the broken flag.

    A repaired ledger is a fixed point: reconciling it again changes nothing.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, replace
from datetime import datetime
from uuid import UUID

from inventory_kernel.domain.status import DeviceStatus, derive_status, is_blank
from inventory_kernel.invariants import LedgerInvariant


@dataclass(frozen=True)
class LedgerEntry:
    """Immutable snapshot of one assignment record."""

    sequence: int
    user_id: UUID | None
    start_date: datetime
    end_date: datetime | None = None
    fullname_snapshot: str | None = None
    notes: str | None = None
    assigned_by_id: UUID | None = None
    revoked_by_id: UUID | None = None
    revoked_reason: tuple[str, ...] = ()
    document: str | None = None
    record_id: UUID | None = None

    @property
    def is_open(self) -> bool:
        return self.end_date is None


@dataclass(frozen=True)
class HolderRef:
    """The part of the holder snapshot the ledger is reconciled against."""

    user_id: UUID
    fullname: str | None = None


@dataclass(frozen=True)
class LedgerViolation:
    invariant: LedgerInvariant
    detail: str
    sequence: int | None = None


@dataclass(frozen=True)
class LedgerRepair:
    """Result of reconciling one ledger."""

    entries: tuple[LedgerEntry, ...]
    status: DeviceStatus
    actions: tuple[str, ...]

    @property
    def changed(self) -> bool:
        return bool(self.actions)


def find_open_entry(entries: Sequence[LedgerEntry]) -> LedgerEntry | None:
    """Return the most recent open entry, if any."""
    for entry in reversed(entries):
        if entry.is_open:
            return entry
    return None


def check_ledger(
    entries: Sequence[LedgerEntry],
    holder_id: UUID | None,
    status: DeviceStatus | str | None,
    broken_reason: str | None,
) -> list[LedgerViolation]:
    """
    Report every invariant violation of a device's ledger and status.

    Closed records without a user (markers left by revoking a device that
    had no holder) are tolerated here; reconciliation removes them.
    """
    violations: list[LedgerViolation] = []

    open_entries = [e for e in entries if e.is_open]
    if len(open_entries) > 1:
        violations.append(LedgerViolation(
            LedgerInvariant.SINGLE_OPEN_RECORD,
            f"{len(open_entries)} open records",
        ))

    open_entry = find_open_entry(entries)
    if open_entry is not None and open_entry.user_id is None:
        violations.append(LedgerViolation(
            LedgerInvariant.HOLDER_MATCHES_OPEN_RECORD,
            "open record has no user",
            open_entry.sequence,
        ))
    open_user = open_entry.user_id if open_entry is not None else None
    if open_user != holder_id:
        violations.append(LedgerViolation(
            LedgerInvariant.HOLDER_MATCHES_OPEN_RECORD,
            f"holder {holder_id} but open record user {open_user}",
            open_entry.sequence if open_entry is not None else None,
        ))

    for index, entry in enumerate(entries):
        nxt = entries[index + 1] if index + 1 < len(entries) else None
        if nxt is not None and nxt.start_date < entry.start_date:
            violations.append(LedgerViolation(
                LedgerInvariant.MONOTONIC_DATES,
                "records not ordered by start date",
                nxt.sequence,
            ))
        if entry.end_date is not None:
            if entry.end_date < entry.start_date:
                violations.append(LedgerViolation(
                    LedgerInvariant.MONOTONIC_DATES,
                    "end date before start date",
                    entry.sequence,
                ))
            if nxt is not None and entry.end_date > nxt.start_date:
                violations.append(LedgerViolation(
                    LedgerInvariant.MONOTONIC_DATES,
                    "end date after next record's start date",
                    entry.sequence,
                ))

    is_broken = not is_blank(broken_reason)
    expected = derive_status(open_entry, is_broken)
    if status is None or DeviceStatus(status) != expected:
        violations.append(LedgerViolation(
            LedgerInvariant.STATUS_DERIVED,
            f"status {status} but derived {expected.value}",
        ))
    return violations


def reconcile_ledger(
    entries: Sequence[LedgerEntry],
    holder: HolderRef | None,
    is_broken: bool,
    now: datetime,
    user_names: Mapping[UUID, str] | None = None,
) -> LedgerRepair:
    """Repair a ledger so that every invariant holds. Idempotent."""
    actions: list[str] = []

    ordered = sorted(entries, key=lambda e: (e.start_date, e.sequence))
    if [e.sequence for e in ordered] != [e.sequence for e in entries]:
        actions.append("reordered_by_start_date")

    kept: list[LedgerEntry] = []
    for entry in ordered:
        if entry.user_id is None:
            actions.append(f"dropped_null_user:{entry.sequence}")
            continue
        kept.append(entry)

    for index in range(len(kept) - 1):
        entry, nxt = kept[index], kept[index + 1]
        end = entry.end_date
        if end is None:
            end = nxt.start_date
            actions.append(f"closed_stale_open:{entry.sequence}")
        elif end > nxt.start_date:
            end = nxt.start_date
            actions.append(f"clamped_end_to_next_start:{entry.sequence}")
        if end < entry.start_date:
            end = entry.start_date
            actions.append(f"clamped_end_to_start:{entry.sequence}")
        if end != entry.end_date:
            kept[index] = replace(entry, end_date=end)

    if kept and kept[-1].end_date is not None and kept[-1].end_date < kept[-1].start_date:
        kept[-1] = replace(kept[-1], end_date=kept[-1].start_date)
        actions.append(f"clamped_end_to_start:{kept[-1].sequence}")

    last = kept[-1] if kept else None
    if holder is not None:
        if last is None:
            kept.append(_open_for(holder, now))
            actions.append("appended_holder_record")
        elif last.user_id == holder.user_id:
            if not last.is_open:
                kept[-1] = replace(
                    last, end_date=None, revoked_by_id=None, revoked_reason=()
                )
                actions.append(f"reopened_for_holder:{last.sequence}")
        else:
            close_at = max(now, last.start_date)
            if last.is_open:
                kept[-1] = replace(last, end_date=close_at)
                actions.append(f"closed_foreign_open:{last.sequence}")
            start = max(close_at, kept[-1].end_date or close_at)
            kept.append(_open_for(holder, start))
            actions.append("appended_holder_record")
    elif last is not None and last.is_open:
        kept[-1] = replace(last, end_date=max(now, last.start_date))
        actions.append(f"closed_without_holder:{last.sequence}")

    if user_names:
        for index, entry in enumerate(kept):
            if is_blank(entry.fullname_snapshot) and entry.user_id in user_names:
                kept[index] = replace(
                    entry, fullname_snapshot=user_names[entry.user_id]
                )
                actions.append(f"filled_fullname_snapshot:{entry.sequence}")

    renumbered = tuple(
        entry if entry.sequence == position else replace(entry, sequence=position)
        for position, entry in enumerate(kept)
    )
    if not actions and renumbered != tuple(kept):
        actions.append("renumbered")
    status = derive_status(find_open_entry(renumbered), is_broken)
    return LedgerRepair(entries=renumbered, status=status, actions=tuple(actions))


def _open_for(holder: HolderRef, start: datetime) -> LedgerEntry:
    # Sequence is provisional; renumbering assigns the final position.
    return LedgerEntry(
        sequence=2**31,
        user_id=holder.user_id,
        start_date=start,
        fullname_snapshot=holder.fullname,
    )
