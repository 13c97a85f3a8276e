"""
Module: inventory_kernel.models.assignment
Responsibility: ORM persistence for the assignment ledger: one row per
    holder period of a device, ordered by ``sequence``.
Architecture position: Kernel > Models.  May import from db/base.py and
    sibling models.  MUST NOT import from services/, selectors/, or outer
    layers.

Invariants enforced:
    - Rows are append-only in normal operation: the engine only closes the
      open row (end_date, revoked_by_id, revoked_reason) or attaches a
      document to it.  Only the reconciliation pass deletes or rewrites rows.
    - fullname_snapshot is captured at assignment time and never refreshed
      by directory updates.

Failure modes:
    - Rows are removed with their device (delete-orphan cascade).
"""

from datetime import datetime
from typing import TYPE_CHECKING
from uuid import UUID

from sqlalchemy import JSON, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from inventory_kernel.db.base import Base

if TYPE_CHECKING:
    from inventory_kernel.models.device import Device


class AssignmentRecord(Base):
    """
    One holder period in a device's ledger.

    Contract:
        ``end_date`` is None for the open record.  ``user_id`` is None only
        for a closed revoke marker or transiently during repair.
    """

    __tablename__ = "assignment_records"

    __table_args__ = (
        Index("idx_assignment_device_seq", "device_id", "sequence"),
        Index("idx_assignment_user", "user_id"),
    )

    device_id: Mapped[UUID] = mapped_column(
        ForeignKey("devices.id", ondelete="CASCADE"),
        nullable=False,
    )

    # Position in the device's ledger, 0-based
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)

    user_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("directory_users.id"),
        nullable=True,
    )

    fullname_snapshot: Mapped[str | None] = mapped_column(String(255), nullable=True)

    start_date: Mapped[datetime] = mapped_column(nullable=False)

    end_date: Mapped[datetime | None] = mapped_column(nullable=True)

    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    assigned_by_id: Mapped[UUID | None] = mapped_column(nullable=True)

    revoked_by_id: Mapped[UUID | None] = mapped_column(nullable=True)

    revoked_reason: Mapped[list[str]] = mapped_column(
        JSON,
        nullable=False,
        default=list,
    )

    # Stored handover document name
    document: Mapped[str | None] = mapped_column(String(500), nullable=True)

    device: Mapped["Device"] = relationship(back_populates="history")

    def __repr__(self) -> str:
        state = "open" if self.end_date is None else "closed"
        return f"<AssignmentRecord {self.device_id}#{self.sequence} {state}>"
