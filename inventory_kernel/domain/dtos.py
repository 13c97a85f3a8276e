"""
Data Transfer Objects for the inventory kernel.

Services and selectors return these frozen dataclasses, never ORM rows.
``to_dict``/``from_dict`` give the JSON shape used by the HTTP facade and
by the listing cache.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from uuid import UUID

from inventory_kernel.domain.kinds import DeviceKind
from inventory_kernel.domain.status import DeviceStatus


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _uuid(value: str | None) -> UUID | None:
    return UUID(value) if value else None


@dataclass(frozen=True)
class HolderSnapshot:
    """Denormalized display data of the current holder."""

    id: UUID
    fullname: str | None = None
    job_title: str | None = None
    department: str | None = None
    avatar_url: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "fullname": self.fullname,
            "jobTitle": self.job_title,
            "department": self.department,
            "avatarUrl": self.avatar_url,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> HolderSnapshot | None:
        if not data:
            return None
        return cls(
            id=UUID(data["id"]),
            fullname=data.get("fullname"),
            job_title=data.get("jobTitle"),
            department=data.get("department"),
            avatar_url=data.get("avatarUrl"),
        )


@dataclass(frozen=True)
class UserSummary:
    """Directory user as shown next to history records."""

    id: UUID
    fullname: str | None = None
    email: str | None = None
    job_title: str | None = None
    department: str | None = None
    avatar_url: str | None = None
    external_id: str | None = None
    is_active: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "fullname": self.fullname,
            "email": self.email,
            "jobTitle": self.job_title,
            "department": self.department,
            "avatarUrl": self.avatar_url,
            "externalId": self.external_id,
            "isActive": self.is_active,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> UserSummary | None:
        if not data:
            return None
        return cls(
            id=UUID(data["id"]),
            fullname=data.get("fullname"),
            email=data.get("email"),
            job_title=data.get("jobTitle"),
            department=data.get("department"),
            avatar_url=data.get("avatarUrl"),
            external_id=data.get("externalId"),
            is_active=data.get("isActive", True),
        )


@dataclass(frozen=True)
class RoomSummary:
    id: UUID
    name: str
    location: str
    status: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "name": self.name,
            "location": self.location,
            "status": self.status,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> RoomSummary | None:
        if not data:
            return None
        return cls(
            id=UUID(data["id"]),
            name=data["name"],
            location=data["location"],
            status=data.get("status"),
        )


@dataclass(frozen=True)
class AssignmentRecordInfo:
    """One ledger record with its user references resolved."""

    sequence: int
    user: UserSummary | None
    fullname_snapshot: str | None
    start_date: datetime
    end_date: datetime | None
    notes: str | None = None
    assigned_by: UserSummary | None = None
    revoked_by: UserSummary | None = None
    revoked_reason: tuple[str, ...] = ()
    document: str | None = None

    @property
    def is_open(self) -> bool:
        return self.end_date is None

    def to_dict(self) -> dict[str, Any]:
        return {
            "sequence": self.sequence,
            "user": self.user.to_dict() if self.user else None,
            "fullnameSnapshot": self.fullname_snapshot,
            "startDate": _iso(self.start_date),
            "endDate": _iso(self.end_date),
            "notes": self.notes,
            "assignedBy": self.assigned_by.to_dict() if self.assigned_by else None,
            "revokedBy": self.revoked_by.to_dict() if self.revoked_by else None,
            "revokedReason": list(self.revoked_reason),
            "document": self.document,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AssignmentRecordInfo:
        return cls(
            sequence=data["sequence"],
            user=UserSummary.from_dict(data.get("user")),
            fullname_snapshot=data.get("fullnameSnapshot"),
            start_date=_dt(data["startDate"]),
            end_date=_dt(data.get("endDate")),
            notes=data.get("notes"),
            assigned_by=UserSummary.from_dict(data.get("assignedBy")),
            revoked_by=UserSummary.from_dict(data.get("revokedBy")),
            revoked_reason=tuple(data.get("revokedReason") or ()),
            document=data.get("document"),
        )


@dataclass(frozen=True)
class DeviceInfo:
    """Device with holder snapshot, room and resolved history."""

    id: UUID
    kind: DeviceKind
    serial: str
    name: str
    status: DeviceStatus
    manufacturer: str | None = None
    device_type: str | None = None
    release_year: int | None = None
    specs: dict[str, Any] = field(default_factory=dict)
    holder: HolderSnapshot | None = None
    broken_reason: str | None = None
    broken_description: str | None = None
    room: RoomSummary | None = None
    history: tuple[AssignmentRecordInfo, ...] = ()
    version: int = 1
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def open_record(self) -> AssignmentRecordInfo | None:
        for record in reversed(self.history):
            if record.is_open:
                return record
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "kind": self.kind.value,
            "serial": self.serial,
            "name": self.name,
            "status": self.status.value,
            "manufacturer": self.manufacturer,
            "type": self.device_type,
            "releaseYear": self.release_year,
            "specs": dict(self.specs),
            "currentHolder": self.holder.to_dict() if self.holder else None,
            "brokenReason": self.broken_reason,
            "brokenDescription": self.broken_description,
            "room": self.room.to_dict() if self.room else None,
            "assignmentHistory": [r.to_dict() for r in self.history],
            "version": self.version,
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DeviceInfo:
        return cls(
            id=UUID(data["id"]),
            kind=DeviceKind(data["kind"]),
            serial=data["serial"],
            name=data["name"],
            status=DeviceStatus(data["status"]),
            manufacturer=data.get("manufacturer"),
            device_type=data.get("type"),
            release_year=data.get("releaseYear"),
            specs=dict(data.get("specs") or {}),
            holder=HolderSnapshot.from_dict(data.get("currentHolder")),
            broken_reason=data.get("brokenReason"),
            broken_description=data.get("brokenDescription"),
            room=RoomSummary.from_dict(data.get("room")),
            history=tuple(
                AssignmentRecordInfo.from_dict(r)
                for r in data.get("assignmentHistory") or ()
            ),
            version=data.get("version", 1),
            created_at=_dt(data.get("createdAt")),
            updated_at=_dt(data.get("updatedAt")),
        )


@dataclass(frozen=True)
class ListingQuery:
    """Page request with optional filters. Unfiltered queries are cacheable."""

    kind: DeviceKind
    page: int = 1
    limit: int = 20
    search: str | None = None
    status: str | None = None
    manufacturer: str | None = None
    device_type: str | None = None
    release_year: int | None = None

    @property
    def has_filters(self) -> bool:
        return any(
            value not in (None, "")
            for value in (
                self.search,
                self.status,
                self.manufacturer,
                self.device_type,
                self.release_year,
            )
        )

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.limit


@dataclass(frozen=True)
class ListingPage:
    items: tuple[DeviceInfo, ...]
    total: int
    page: int
    limit: int
    from_cache: bool = False

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.limit else 0

    def pagination(self) -> dict[str, Any]:
        return {
            "currentPage": self.page,
            "totalPages": self.total_pages,
            "totalItems": self.total,
            "itemsPerPage": self.limit,
            "hasNext": self.page < self.total_pages,
            "hasPrev": self.page > 1,
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "devices": [item.to_dict() for item in self.items],
            "pagination": self.pagination(),
        }


@dataclass(frozen=True)
class ReconciliationReport:
    """Outcome of reconciling one device."""

    device_id: UUID
    kind: DeviceKind
    actions: tuple[str, ...]
    status_before: str | None
    status_after: DeviceStatus

    @property
    def changed(self) -> bool:
        return bool(self.actions) or self.status_before != self.status_after.value


@dataclass(frozen=True)
class ReconciliationFailure:
    """A device the repair pass could not fix; its ledger was left as it was."""

    device_id: UUID
    kind: DeviceKind
    code: str
    message: str


@dataclass(frozen=True)
class ReconciliationRun:
    """Result of repairing many devices: changed devices and failed ones."""

    reports: tuple[ReconciliationReport, ...] = ()
    failures: tuple[ReconciliationFailure, ...] = ()


@dataclass(frozen=True)
class BulkItemError:
    serial: str | None
    message: str
    code: str | None = None


@dataclass(frozen=True)
class BulkCreateResult:
    """Outcome of a bulk create: how many devices were added, and why the rest were not."""

    added: tuple[DeviceInfo, ...] = ()
    errors: tuple[BulkItemError, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "added": len(self.added),
            "errors": [
                {"serial": error.serial, "message": error.message}
                for error in self.errors
            ],
        }
