"""
Pure domain layer of the inventory kernel.

No I/O, no ORM, no configuration access.  Everything here is deterministic
given its inputs (time arrives through a Clock or as an argument).
"""

from inventory_kernel.domain.clock import Clock, DeterministicClock, SystemClock
from inventory_kernel.domain.documents import sanitize_document_name
from inventory_kernel.domain.dtos import (
    AssignmentRecordInfo,
    BulkCreateResult,
    BulkItemError,
    DeviceInfo,
    HolderSnapshot,
    ListingPage,
    ListingQuery,
    ReconciliationFailure,
    ReconciliationReport,
    ReconciliationRun,
    RoomSummary,
    UserSummary,
)
from inventory_kernel.domain.kinds import DeviceKind, KindProfile, KindRegistry
from inventory_kernel.domain.ledger import (
    HolderRef,
    LedgerEntry,
    LedgerRepair,
    LedgerViolation,
    check_ledger,
    find_open_entry,
    reconcile_ledger,
)
from inventory_kernel.domain.status import (
    DeviceStatus,
    derive_status,
    is_blank,
    parse_status,
)

__all__ = [
    "AssignmentRecordInfo",
    "BulkCreateResult",
    "BulkItemError",
    "Clock",
    "DeterministicClock",
    "DeviceInfo",
    "DeviceKind",
    "DeviceStatus",
    "HolderRef",
    "HolderSnapshot",
    "KindProfile",
    "KindRegistry",
    "LedgerEntry",
    "LedgerRepair",
    "LedgerViolation",
    "ListingPage",
    "ListingQuery",
    "ReconciliationFailure",
    "ReconciliationReport",
    "ReconciliationRun",
    "RoomSummary",
    "SystemClock",
    "UserSummary",
    "check_ledger",
    "derive_status",
    "find_open_entry",
    "is_blank",
    "parse_status",
    "reconcile_ledger",
    "sanitize_document_name",
]
