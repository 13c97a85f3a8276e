"""
Ledger Invariants Contract.

These invariants are structural law for every device. The assignment
engine preserves them on each write and the reconciliation pass restores
them after partial failures. No configuration may switch them off.

This module only declares them. Enforcement lives in
``inventory_kernel.domain.ledger`` (checking and repair),
``inventory_kernel.domain.status`` (derivation) and
``inventory_kernel.services.assignment_engine`` (transitions).
"""

from enum import Enum, unique


@unique
class LedgerInvariant(str, Enum):
    """Non-configurable invariants of a device and its assignment ledger."""

    SINGLE_OPEN_RECORD = "single_open_record"
    """At most one history record has no end date."""

    HOLDER_MATCHES_OPEN_RECORD = "holder_matches_open_record"
    """The holder snapshot names the open record's user, and is empty when
    no record is open."""

    MONOTONIC_DATES = "monotonic_dates"
    """Records are ordered by start date; an end date is not before its own
    start date and not after the next record's start date."""

    STATUS_DERIVED = "status_derived"
    """The persisted status equals the derivation from open record and
    broken flag; broken reason is present exactly when broken."""


ALL_LEDGER_INVARIANTS: frozenset[LedgerInvariant] = frozenset(LedgerInvariant)

# The kernel package may not import from these packages.
FORBIDDEN_KERNEL_IMPORTS: tuple[str, ...] = (
    "inventory_services",
    "inventory_config",
)
