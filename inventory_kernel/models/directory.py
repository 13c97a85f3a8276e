"""
Module: inventory_kernel.models.directory
Responsibility: Local copies of externally owned directory entities: users
    (holders and actors) and rooms (device locations).
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - external_id is unique per table; it is the key the change relay and the
      sync jobs upsert by.
    - Rows are never hard-deleted by the relay: deletion events deactivate a
      user or disable a room so that ledger references stay resolvable.
"""

from datetime import datetime

from sqlalchemy import Boolean, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from inventory_kernel.db.base import Base

UNKNOWN_LOCATION = "Unknown"


class DirectoryUser(Base):
    """User as last synced from the external directory."""

    __tablename__ = "directory_users"

    __table_args__ = (
        Index("idx_directory_user_external", "external_id", unique=True),
        Index("idx_directory_user_email", "email"),
    )

    external_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    email: Mapped[str | None] = mapped_column(String(255), nullable=True)

    fullname: Mapped[str | None] = mapped_column(String(255), nullable=True)

    job_title: Mapped[str | None] = mapped_column(String(255), nullable=True)

    department: Mapped[str | None] = mapped_column(String(255), nullable=True)

    avatar_url: Mapped[str | None] = mapped_column(String(500), nullable=True)

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    synced_at: Mapped[datetime | None] = mapped_column(nullable=True)

    def __repr__(self) -> str:
        return f"<DirectoryUser {self.email or self.external_id}>"


class Room(Base):
    """Room as last synced from the external directory."""

    __tablename__ = "rooms"

    __table_args__ = (
        Index("idx_room_external", "external_id", unique=True),
        Index("idx_room_building_floor", "building", "floor"),
    )

    external_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    name: Mapped[str] = mapped_column(String(255), nullable=False)

    room_number: Mapped[str | None] = mapped_column(String(50), nullable=True)

    building: Mapped[str | None] = mapped_column(String(100), nullable=True)

    floor: Mapped[str | None] = mapped_column(String(50), nullable=True)

    block: Mapped[str | None] = mapped_column(String(50), nullable=True)

    capacity: Mapped[int | None] = mapped_column(Integer, nullable=True)

    room_type: Mapped[str | None] = mapped_column(String(100), nullable=True)

    status: Mapped[str] = mapped_column(String(30), nullable=False, default="Active")

    disabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    synced_at: Mapped[datetime | None] = mapped_column(nullable=True)

    def __repr__(self) -> str:
        return f"<Room {self.name}>"

    @property
    def display_location(self) -> str:
        """``building, floor N, room R`` from whichever parts are known."""
        parts = []
        if self.building:
            parts.append(self.building)
        if self.floor:
            parts.append(f"floor {self.floor}")
        if self.room_number:
            parts.append(f"room {self.room_number}")
        return ", ".join(parts) if parts else UNKNOWN_LOCATION
