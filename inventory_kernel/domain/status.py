"""
Status Derivation -- pure mapping from ledger facts to lifecycle status.

Responsibility:
    The one place that decides a device's status.  Every engine operation
    and the reconciliation pass call ``derive_status`` before persisting;
    the stored status column is only a re-derivable copy for queries.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.

Rules (STATUS_DERIVED):
    broken                          -> Broken (takes precedence)
    open record with a document     -> Active
    open record without a document  -> PendingDocumentation
    no open record                  -> Standby
"""

from enum import Enum
from typing import Protocol


class DeviceStatus(str, Enum):
    """Lifecycle status of a device."""

    ACTIVE = "Active"
    STANDBY = "Standby"
    BROKEN = "Broken"
    PENDING_DOCUMENTATION = "PendingDocumentation"


class _OpenRecord(Protocol):
    document: str | None


def derive_status(open_record: _OpenRecord | None, is_broken: bool) -> DeviceStatus:
    """Derive the status from the open record (or None) and the broken flag."""
    if is_broken:
        return DeviceStatus.BROKEN
    if open_record is None:
        return DeviceStatus.STANDBY
    if open_record.document:
        return DeviceStatus.ACTIVE
    return DeviceStatus.PENDING_DOCUMENTATION


def parse_status(value: str | DeviceStatus | None) -> DeviceStatus | None:
    """Return the matching status, or None for empty or unknown values."""
    if value is None or value == "":
        return None
    if isinstance(value, DeviceStatus):
        return value
    try:
        return DeviceStatus(value)
    except ValueError:
        return None


def is_blank(value: str | None) -> bool:
    return value is None or not value.strip()
