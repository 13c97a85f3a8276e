"""
DirectoryService -- local directory of users and rooms.

Responsibility:
    Resolves user references for the assignment engine (internal id,
    external directory id or email), upserts users and rooms from loosely
    shaped directory payloads, deactivates users and disables rooms, and
    re-stamps device holder snapshots when a user's display fields change.

Architecture position:
    Kernel > Services -- flush-only.  Called by the assignment engine
    (resolution) and by the external change relay (upserts, re-stamping).

Invariants enforced:
    - Upserts are idempotent: applying the same payload twice reports no
      change the second time and writes nothing.
    - Re-stamping touches only holder snapshot columns.  Ledger
      ``fullname_snapshot`` values are never modified.
    - Re-stamping bumps the device version, so a concurrent engine write on
      the same device fails its version check and retries.

Failure modes:
    - UserNotFoundError / RoomNotFoundError for unresolvable references.
    - ValidationError for payloads without any usable identifier.
    - DirectoryConflictError when a user payload's email and external id
      point at two different local users.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any
from uuid import UUID

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import DBAPIError, IntegrityError

from inventory_kernel.domain.clock import Clock, SystemClock
from inventory_kernel.domain.dtos import HolderSnapshot
from inventory_kernel.domain.kinds import DeviceKind
from inventory_kernel.exceptions import (
    DirectoryConflictError,
    RoomNotFoundError,
    UserNotFoundError,
    ValidationError,
)
from inventory_kernel.logging_config import get_logger
from inventory_kernel.models.device import Device
from inventory_kernel.models.directory import DirectoryUser, Room
from inventory_kernel.services.base import BaseService, translate_persistence_error

logger = get_logger("services.directory")

_USER_FIELDS = ("external_id", "email", "fullname", "job_title", "department", "avatar_url")
_ROOM_FIELDS = (
    "external_id",
    "name",
    "room_number",
    "building",
    "floor",
    "block",
    "capacity",
    "room_type",
    "status",
    "disabled",
)


@dataclass(frozen=True)
class UpsertResult:
    """Outcome of a directory upsert."""

    entity_id: UUID
    created: bool
    changed: bool


def _first(payload: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        value = payload.get(key)
        if value not in (None, ""):
            return value
    return None


def _text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def user_fields_from_payload(payload: Mapping[str, Any]) -> dict[str, Any]:
    """
    Normalize a directory user payload.

    The full name comes from ``full_name``, ``fullname``, ``fullName``, the
    joined first/middle/last names, or ``name`` in that order.  The job
    title falls back to ``designation``.
    """
    joined = " ".join(
        part.strip()
        for part in (
            payload.get("first_name"),
            payload.get("middle_name"),
            payload.get("last_name"),
        )
        if isinstance(part, str) and part.strip()
    )
    fullname = _first(payload, "full_name", "fullname", "fullName") or joined or payload.get("name")
    email = _first(payload, "email", "user_id", "username")
    return {
        "external_id": _text(_first(payload, "name", "user", "email")),
        "email": _text(email).lower() if _text(email) else None,
        "fullname": _text(fullname),
        "job_title": _text(_first(payload, "job_title", "jobTitle", "designation")),
        "department": _text(payload.get("department")),
        "avatar_url": _text(_first(payload, "user_image", "avatar", "avatar_url", "avatarUrl")),
    }


# Display fields a directory payload can clear, and the keys they arrive under.
_CLEARABLE_USER_KEYS = {
    "job_title": ("job_title", "jobTitle", "designation"),
    "department": ("department",),
    "avatar_url": ("user_image", "avatar", "avatar_url", "avatarUrl"),
}


def cleared_user_fields(payload: Mapping[str, Any]) -> set[str]:
    """Display fields present in the payload but empty."""
    return {
        name
        for name, keys in _CLEARABLE_USER_KEYS.items()
        if any(key in payload for key in keys) and _text(_first(payload, *keys)) is None
    }


def room_fields_from_payload(payload: Mapping[str, Any]) -> dict[str, Any]:
    """Normalize a directory room payload."""
    capacity = payload.get("capacity")
    return {
        "external_id": _text(_first(payload, "name", "room_id")),
        "name": _text(_first(payload, "room_name", "title_vn", "name")),
        "room_number": _text(_first(payload, "room_number", "short_title")),
        "building": _text(_first(payload, "building", "building_id")),
        "floor": _text(payload.get("floor")),
        "block": _text(payload.get("block")),
        "capacity": int(capacity) if capacity not in (None, "") else None,
        "room_type": _text(payload.get("room_type")),
        "status": _text(payload.get("status")) or "Active",
        "disabled": bool(payload.get("disabled") or False),
    }


class DirectoryService(BaseService[DirectoryUser]):
    """Users and rooms as mirrored from the external directory."""

    def __init__(self, session, clock: Clock | None = None):
        super().__init__(session)
        self._clock = clock or SystemClock()

    # Users

    def resolve_user(self, ref: UUID | str, active_only: bool = False) -> DirectoryUser:
        """
        Resolve a user by internal id, external id or email.

        Raises:
            UserNotFoundError: Nothing matches, or the match is inactive
                and ``active_only`` is set.
        """
        if ref is None or (isinstance(ref, str) and not ref.strip()):
            raise UserNotFoundError(str(ref))
        user = None
        internal_id = ref if isinstance(ref, UUID) else _as_uuid(ref)
        if internal_id is not None:
            user = self.session.get(DirectoryUser, internal_id)
        if user is None and isinstance(ref, str):
            text = ref.strip()
            user = self.session.execute(
                select(DirectoryUser)
                .where(or_(
                    DirectoryUser.external_id == text,
                    func.lower(DirectoryUser.email) == text.lower(),
                ))
                .order_by(DirectoryUser.is_active.desc())
                .limit(1)
            ).scalar_one_or_none()
        if user is None or (active_only and not user.is_active):
            raise UserNotFoundError(str(ref))
        return user

    def upsert_user(self, payload: Mapping[str, Any]) -> UpsertResult:
        """
        Create or update a user from a directory payload; match by email, then external id.

        Display fields the payload sends explicitly empty are cleared.  Fields
        the payload leaves out keep their value.

        Raises:
            ValidationError: No email and no id in the payload.
            DirectoryConflictError: The email and the external id belong to
                two different local users.
        """
        fields = user_fields_from_payload(payload)
        if not fields["email"] and not fields["external_id"]:
            raise ValidationError("directory user payload has no email or id")

        by_email = None
        if fields["email"]:
            by_email = self.session.execute(
                select(DirectoryUser)
                .where(func.lower(DirectoryUser.email) == fields["email"])
                .order_by(DirectoryUser.is_active.desc())
            ).scalars().first()
        by_external_id = None
        if fields["external_id"]:
            by_external_id = self.session.execute(
                select(DirectoryUser).where(DirectoryUser.external_id == fields["external_id"])
            ).scalar_one_or_none()
        if by_email is not None and by_external_id is not None and by_email.id != by_external_id.id:
            logger.warning(
                "directory_user_conflict",
                extra={
                    "email_user_id": str(by_email.id),
                    "external_user_id": str(by_external_id.id),
                },
            )
            raise DirectoryConflictError(fields["email"], fields["external_id"])
        user = by_email or by_external_id

        created = user is None
        if created:
            user = DirectoryUser(is_active=True)
            self.session.add(user)

        cleared = cleared_user_fields(payload)
        changed = created or not user.is_active
        for name in _USER_FIELDS:
            value = fields[name]
            if value is None and name not in cleared:
                continue
            if getattr(user, name) != value:
                setattr(user, name, value)
                changed = True
        user.is_active = True
        if changed:
            user.synced_at = self._clock.now()
            try:
                self.session.flush()
            except IntegrityError:
                raise DirectoryConflictError(fields["email"], fields["external_id"]) from None
            except DBAPIError as exc:
                raise translate_persistence_error("upsert_user", exc) from exc
        logger.info(
            "directory_user_upserted",
            extra={"user_id": str(user.id), "is_new": created, "changed": changed},
        )
        return UpsertResult(entity_id=user.id, created=created, changed=changed)

    def deactivate_user(self, payload: Mapping[str, Any]) -> UpsertResult | None:
        """Deactivate the user a payload refers to; None if unknown."""
        fields = user_fields_from_payload(payload)
        user = None
        for ref in (fields["email"], fields["external_id"]):
            if ref:
                try:
                    user = self.resolve_user(ref)
                    break
                except UserNotFoundError:
                    continue
        if user is None:
            logger.info("directory_user_unknown", extra={"ref": fields["external_id"] or fields["email"]})
            return None
        changed = user.is_active
        if changed:
            user.is_active = False
            user.synced_at = self._clock.now()
            self.session.flush()
        logger.info(
            "directory_user_deactivated",
            extra={"user_id": str(user.id), "changed": changed},
        )
        return UpsertResult(entity_id=user.id, created=False, changed=changed)

    def restamp_holder_snapshots(self, user_id: UUID) -> set[DeviceKind]:
        """
        Copy the user's current display fields onto every device they hold.

        Only devices whose snapshot differs are written.  Returns the kinds
        of the devices that changed.
        """
        user = self.session.get(DirectoryUser, user_id)
        if user is None:
            raise UserNotFoundError(str(user_id))
        snapshot = HolderSnapshot(
            id=user.id,
            fullname=user.fullname,
            job_title=user.job_title,
            department=user.department,
            avatar_url=user.avatar_url,
        )
        differs = or_(
            Device.holder_fullname.is_distinct_from(snapshot.fullname),
            Device.holder_job_title.is_distinct_from(snapshot.job_title),
            Device.holder_department.is_distinct_from(snapshot.department),
            Device.holder_avatar_url.is_distinct_from(snapshot.avatar_url),
        )
        kinds = self.session.execute(
            select(Device.kind).where(Device.holder_id == user.id, differs).distinct()
        ).scalars().all()
        if not kinds:
            return set()
        result = self.session.execute(
            update(Device)
            .where(Device.holder_id == user.id, differs)
            .values(
                holder_fullname=snapshot.fullname,
                holder_job_title=snapshot.job_title,
                holder_department=snapshot.department,
                holder_avatar_url=snapshot.avatar_url,
                version_id=Device.version_id + 1,
                updated_at=self._clock.now(),
            )
            .execution_options(synchronize_session="fetch")
        )
        logger.info(
            "holder_snapshots_restamped",
            extra={
                "user_id": str(user.id),
                "devices": result.rowcount,
                "kinds": sorted(kinds),
            },
        )
        return {DeviceKind(kind) for kind in kinds}

    # Rooms

    def get_room(self, room_id: UUID) -> Room:
        room = self.session.get(Room, room_id)
        if room is None:
            raise RoomNotFoundError(str(room_id))
        return room

    def upsert_room(self, payload: Mapping[str, Any]) -> UpsertResult:
        """Create or update a room from a directory payload, keyed by external id."""
        fields = room_fields_from_payload(payload)
        if not fields["external_id"]:
            raise ValidationError("directory room payload has no id")
        if not fields["name"]:
            fields["name"] = fields["external_id"]

        room = self.session.execute(
            select(Room).where(Room.external_id == fields["external_id"])
        ).scalar_one_or_none()
        created = room is None
        if created:
            room = Room(name=fields["name"])
            self.session.add(room)

        changed = created
        for name in _ROOM_FIELDS:
            if getattr(room, name) != fields[name]:
                setattr(room, name, fields[name])
                changed = True
        if changed:
            room.synced_at = self._clock.now()
            self.session.flush()
        logger.info(
            "directory_room_upserted",
            extra={"room_id": str(room.id), "is_new": created, "changed": changed},
        )
        return UpsertResult(entity_id=room.id, created=created, changed=changed)

    def disable_room(self, payload: Mapping[str, Any]) -> UpsertResult | None:
        """Mark the room a payload refers to as disabled; None if unknown."""
        fields = room_fields_from_payload(payload)
        room = None
        if fields["external_id"]:
            room = self.session.execute(
                select(Room).where(Room.external_id == fields["external_id"])
            ).scalar_one_or_none()
        if room is None:
            logger.info("directory_room_unknown", extra={"ref": fields["external_id"]})
            return None
        changed = not room.disabled
        if changed:
            room.disabled = True
            room.synced_at = self._clock.now()
            self.session.flush()
        logger.info(
            "directory_room_disabled",
            extra={"room_id": str(room.id), "changed": changed},
        )
        return UpsertResult(entity_id=room.id, created=False, changed=changed)


def _as_uuid(value: str) -> UUID | None:
    try:
        return UUID(str(value))
    except ValueError:
        return None
