"""
Module: inventory_kernel.selectors.device_selector
Responsibility: Read paths over devices: single device with resolved
    history, paginated and filtered listings, lookups and counts by room.
    Also the ORM -> DTO mapping the write services reuse for their return
    values.
Architecture position: Kernel > Selectors.

Invariants enforced:
    - Listings are ordered newest first (created_at desc, serial asc as the
      tie-breaker) so that page boundaries are stable.
    - History user references (user, assigned_by, revoked_by) are resolved
      with one directory query per call, never per record.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from uuid import UUID

from sqlalchemy import func, or_, select

from inventory_kernel.domain.dtos import (
    AssignmentRecordInfo,
    DeviceInfo,
    ListingPage,
    ListingQuery,
    RoomSummary,
    UserSummary,
)
from inventory_kernel.domain.kinds import DeviceKind
from inventory_kernel.domain.status import DeviceStatus
from inventory_kernel.exceptions import DeviceNotFoundError, RoomNotFoundError
from inventory_kernel.models.device import Device
from inventory_kernel.models.directory import DirectoryUser, Room
from inventory_kernel.selectors.base import BaseSelector


def to_user_summary(user: DirectoryUser) -> UserSummary:
    return UserSummary(
        id=user.id,
        fullname=user.fullname,
        email=user.email,
        job_title=user.job_title,
        department=user.department,
        avatar_url=user.avatar_url,
        external_id=user.external_id,
        is_active=user.is_active,
    )


def to_room_summary(room: Room) -> RoomSummary:
    return RoomSummary(
        id=room.id,
        name=room.name,
        location=room.display_location,
        status=room.status,
    )


class DeviceSelector(BaseSelector[Device]):
    """Read-only queries over devices of every kind."""

    def get(self, kind: DeviceKind | str, device_id: UUID) -> DeviceInfo:
        """Return one device with resolved history; DeviceNotFoundError otherwise."""
        kind = DeviceKind.parse(kind)
        device = self.session.get(Device, device_id)
        if device is None or device.kind != kind.value:
            raise DeviceNotFoundError(str(device_id), kind.value)
        return self.to_info(device)

    def to_info(self, device: Device) -> DeviceInfo:
        return self.to_infos([device])[0]

    def to_infos(self, devices: Sequence[Device]) -> list[DeviceInfo]:
        users = self._load_users(
            ref
            for device in devices
            for record in device.history
            for ref in (record.user_id, record.assigned_by_id, record.revoked_by_id)
        )
        return [self._map(device, users) for device in devices]

    def list_page(self, query: ListingQuery) -> ListingPage:
        """
        One page of devices of a kind, filtered when the query carries filters.

        ``search`` matches name, serial, manufacturer and holder name;
        ``manufacturer`` and ``device_type`` are case-insensitive substring
        matches; ``status`` and ``release_year`` are exact.
        """
        conditions = [Device.kind == query.kind.value]
        if query.search:
            pattern = f"%{query.search}%"
            conditions.append(or_(
                Device.name.ilike(pattern),
                Device.serial.ilike(pattern),
                Device.manufacturer.ilike(pattern),
                Device.holder_fullname.ilike(pattern),
            ))
        if query.status:
            conditions.append(Device.status == query.status)
        if query.manufacturer:
            conditions.append(Device.manufacturer.ilike(f"%{query.manufacturer}%"))
        if query.device_type:
            conditions.append(Device.device_type.ilike(f"%{query.device_type}%"))
        if query.release_year is not None:
            conditions.append(Device.release_year == query.release_year)

        total = self.session.execute(
            select(func.count()).select_from(Device).where(*conditions)
        ).scalar_one()

        devices = self.session.execute(
            select(Device)
            .where(*conditions)
            .order_by(Device.created_at.desc(), Device.serial.asc())
            .offset(query.offset)
            .limit(query.limit)
        ).scalars().all()

        return ListingPage(
            items=tuple(self.to_infos(devices)),
            total=total,
            page=query.page,
            limit=query.limit,
        )

    def list_by_room(self, room_id: UUID) -> dict[DeviceKind, list[DeviceInfo]]:
        """Devices of every kind located in a room, grouped by kind."""
        self._require_room(room_id)
        devices = self.session.execute(
            select(Device)
            .where(Device.room_id == room_id)
            .order_by(Device.kind, Device.created_at.desc(), Device.serial)
        ).scalars().all()
        grouped: dict[DeviceKind, list[DeviceInfo]] = {kind: [] for kind in DeviceKind}
        for info in self.to_infos(devices):
            grouped[info.kind].append(info)
        return grouped

    def count_by_room(self, room_id: UUID) -> dict[str, int]:
        """Device counts per kind in a room, plus ``total``."""
        self._require_room(room_id)
        rows = self.session.execute(
            select(Device.kind, func.count())
            .where(Device.room_id == room_id)
            .group_by(Device.kind)
        ).all()
        counts = {kind.value: 0 for kind in DeviceKind}
        for kind, count in rows:
            counts[kind] = count
        counts["total"] = sum(counts.values())
        return counts

    def status_counts(self, kind: DeviceKind | str) -> dict[str, int]:
        """Devices of a kind per status (every status present, zero when none), plus ``total``."""
        kind = DeviceKind.parse(kind)
        rows = self.session.execute(
            select(Device.status, func.count())
            .where(Device.kind == kind.value)
            .group_by(Device.status)
        ).all()
        counts = {status.value: 0 for status in DeviceStatus}
        for status, count in rows:
            counts[status] = count
        counts["total"] = sum(counts.values())
        return counts

    def _require_room(self, room_id: UUID) -> None:
        if self.session.get(Room, room_id) is None:
            raise RoomNotFoundError(str(room_id))

    def _load_users(self, refs: Iterable[UUID | None]) -> dict[UUID, UserSummary]:
        ids = {ref for ref in refs if ref is not None}
        if not ids:
            return {}
        rows = self.session.execute(
            select(DirectoryUser).where(DirectoryUser.id.in_(ids))
        ).scalars()
        return {user.id: to_user_summary(user) for user in rows}

    def _map(self, device: Device, users: dict[UUID, UserSummary]) -> DeviceInfo:
        history = tuple(
            AssignmentRecordInfo(
                sequence=record.sequence,
                user=users.get(record.user_id) if record.user_id else None,
                fullname_snapshot=record.fullname_snapshot,
                start_date=record.start_date,
                end_date=record.end_date,
                notes=record.notes,
                assigned_by=(
                    users.get(record.assigned_by_id) if record.assigned_by_id else None
                ),
                revoked_by=(
                    users.get(record.revoked_by_id) if record.revoked_by_id else None
                ),
                revoked_reason=tuple(record.revoked_reason or ()),
                document=record.document,
            )
            for record in device.history
        )
        return DeviceInfo(
            id=device.id,
            kind=DeviceKind(device.kind),
            serial=device.serial,
            name=device.name,
            status=DeviceStatus(device.status),
            manufacturer=device.manufacturer,
            device_type=device.device_type,
            release_year=device.release_year,
            specs=dict(device.specs or {}),
            holder=device.holder,
            broken_reason=device.broken_reason,
            broken_description=device.broken_description,
            room=to_room_summary(device.room) if device.room else None,
            history=history,
            version=device.version_id,
            created_at=device.created_at,
            updated_at=device.updated_at,
        )
