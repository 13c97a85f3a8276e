"""
Module: inventory_kernel.models.device
Responsibility: ORM persistence for tracked devices of all six kinds, with
    the denormalized holder snapshot, the broken flag, the room reference and
    the optimistic version counter.
Architecture position: Kernel > Models.  May import from db/base.py, domain/ and
    sibling models.  MUST NOT import from services/, selectors/, or outer
    layers.

Invariants enforced:
    - (kind, serial) is unique (uq_device_kind_serial).
    - version_id is the SQLAlchemy version counter: every UPDATE is issued as
      ``... WHERE id = :id AND version_id = :expected``; a concurrent writer
      makes the flush raise StaleDataError, which the assignment engine
      retries.
    - ``status`` is a re-derivable copy of the derivation from the open
      record and the broken flag.  Only the assignment engine and the
      reconciliation pass write it.

Failure modes:
    - IntegrityError on duplicate (kind, serial).  The registry checks
      beforehand and raises DuplicateSerialError.
    - StaleDataError on a version mismatch at flush time.
"""

from datetime import datetime
from typing import TYPE_CHECKING, Any
from uuid import UUID

from sqlalchemy import JSON, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from inventory_kernel.db.base import TrackedBase
from inventory_kernel.domain.dtos import HolderSnapshot
from inventory_kernel.domain.status import DeviceStatus

if TYPE_CHECKING:
    from inventory_kernel.models.assignment import AssignmentRecord
    from inventory_kernel.models.directory import Room


class Device(TrackedBase):
    """
    One physical device of any kind.

    Contract:
        Attributes are edited by the device registry; holder, history,
        status and broken fields are edited only by the assignment engine
        and the reconciliation pass.

    Non-goals:
        - Does NOT derive status itself; see inventory_kernel.domain.status.
        - Does NOT validate specs against the kind profile; the registry does.
    """

    __tablename__ = "devices"

    __table_args__ = (
        UniqueConstraint("kind", "serial", name="uq_device_kind_serial"),
        Index("idx_device_kind_created", "kind", "created_at"),
        Index("idx_device_kind_status", "kind", "status"),
        Index("idx_device_holder", "holder_id"),
        Index("idx_device_room", "room_id"),
    )

    kind: Mapped[str] = mapped_column(String(20), nullable=False)

    serial: Mapped[str] = mapped_column(String(100), nullable=False)

    name: Mapped[str] = mapped_column(String(255), nullable=False)

    manufacturer: Mapped[str | None] = mapped_column(String(100), nullable=True)

    # "type" in the external payloads
    device_type: Mapped[str | None] = mapped_column(
        "type",
        String(100),
        nullable=True,
    )

    release_year: Mapped[int | None] = mapped_column(Integer, nullable=True)

    # Kind-specific attributes (processor, ram, imei1, ...)
    specs: Mapped[dict[str, Any]] = mapped_column(
        JSON,
        nullable=False,
        default=dict,
    )

    status: Mapped[str] = mapped_column(
        String(30),
        nullable=False,
        default=DeviceStatus.STANDBY.value,
    )

    broken_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    broken_description: Mapped[str | None] = mapped_column(Text, nullable=True)

    room_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("rooms.id"),
        nullable=True,
    )

    # Holder snapshot
    holder_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("directory_users.id"),
        nullable=True,
    )
    holder_fullname: Mapped[str | None] = mapped_column(String(255), nullable=True)
    holder_job_title: Mapped[str | None] = mapped_column(String(255), nullable=True)
    holder_department: Mapped[str | None] = mapped_column(String(255), nullable=True)
    holder_avatar_url: Mapped[str | None] = mapped_column(String(500), nullable=True)

    version_id: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version_id}

    history: Mapped[list["AssignmentRecord"]] = relationship(
        back_populates="device",
        cascade="all, delete-orphan",
        order_by="AssignmentRecord.sequence",
        lazy="selectin",
    )

    room: Mapped["Room | None"] = relationship(lazy="selectin")

    def __repr__(self) -> str:
        return f"<Device {self.kind}:{self.serial} status={self.status}>"

    @property
    def is_broken(self) -> bool:
        return bool(self.broken_reason and self.broken_reason.strip())

    @property
    def open_record(self) -> "AssignmentRecord | None":
        for record in reversed(self.history):
            if record.end_date is None:
                return record
        return None

    @property
    def holder(self) -> HolderSnapshot | None:
        if self.holder_id is None:
            return None
        return HolderSnapshot(
            id=self.holder_id,
            fullname=self.holder_fullname,
            job_title=self.holder_job_title,
            department=self.holder_department,
            avatar_url=self.holder_avatar_url,
        )

    def set_holder(self, snapshot: HolderSnapshot | None) -> None:
        """Replace the holder snapshot columns (None clears them)."""
        self.holder_id = snapshot.id if snapshot else None
        self.holder_fullname = snapshot.fullname if snapshot else None
        self.holder_job_title = snapshot.job_title if snapshot else None
        self.holder_department = snapshot.department if snapshot else None
        self.holder_avatar_url = snapshot.avatar_url if snapshot else None

    def next_sequence(self) -> int:
        return max((r.sequence for r in self.history), default=-1) + 1

    @property
    def last_start_date(self) -> datetime | None:
        if not self.history:
            return None
        return max(r.start_date for r in self.history)
