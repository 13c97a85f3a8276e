"""
DeviceRegistry -- descriptive attributes of devices of every kind.

Responsibility:
    Creates, updates and deletes devices.  Owns the attribute side of a
    device (name, serial, manufacturer, type, release year, specs, room);
    never touches the holder, the ledger or the broken flag, which belong
    to the assignment engine.

Architecture position:
    Kernel > Services -- flush-only.  One registry serves all six kinds;
    kind differences come from the injected ``KindRegistry`` profiles.

Invariants enforced:
    - Serial is unique within a kind (checked before insert, backed by the
      uq_device_kind_serial constraint).
    - Specs only carry fields of the kind profile; required spec fields stay
      non-blank through updates.
    - A new device starts in Standby with an empty ledger.

Failure modes:
    - MissingFieldError: name or serial missing/blank.
    - DuplicateSerialError: serial already used within the kind.
    - InvalidSpecsError: unknown spec field, missing required spec, type
      outside the kind vocabulary.
    - DeviceNotFoundError / RoomNotFoundError.
    - DeviceVersionConflictError: the device changed underneath the update.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from inventory_kernel.domain.clock import Clock, SystemClock
from inventory_kernel.domain.dtos import DeviceInfo
from inventory_kernel.domain.kinds import DeviceKind, KindRegistry
from inventory_kernel.domain.status import DeviceStatus, is_blank
from inventory_kernel.exceptions import (
    DeviceVersionConflictError,
    DuplicateSerialError,
    MissingFieldError,
    RoomNotFoundError,
    ValidationError,
)
from inventory_kernel.logging_config import LogContext, get_logger
from inventory_kernel.models.device import Device
from inventory_kernel.models.directory import Room
from inventory_kernel.selectors.device_selector import DeviceSelector
from inventory_kernel.services.assignment_engine import as_device_id, lock_device
from inventory_kernel.services.base import (
    BaseService,
    CacheInvalidator,
    NullInvalidator,
    require_actor,
    translate_persistence_error,
)

logger = get_logger("services.device_registry")

# Attributes an update may change.
UPDATABLE_FIELDS = (
    "name",
    "serial",
    "manufacturer",
    "device_type",
    "release_year",
    "specs",
    "room_id",
)


class DeviceRegistry(BaseService[Device]):
    """
    Attribute CRUD for devices of all kinds.

    Contract:
        Returns ``DeviceInfo`` DTOs.  Every successful write asks the
        invalidator to drop the kind's cached listings after commit.
    """

    def __init__(
        self,
        session: Session,
        kinds: KindRegistry,
        clock: Clock | None = None,
        invalidator: CacheInvalidator | None = None,
    ):
        super().__init__(session)
        self._kinds = kinds
        self._clock = clock or SystemClock()
        self._invalidator = invalidator or NullInvalidator()
        self._selector = DeviceSelector(session)

    def create(
        self,
        kind: DeviceKind | str,
        name: str | None,
        serial: str | None,
        actor_id: UUID,
        manufacturer: str | None = None,
        device_type: str | None = None,
        release_year: int | None = None,
        specs: Mapping[str, Any] | None = None,
        room_id: UUID | None = None,
    ) -> DeviceInfo:
        """Register a new device in Standby with an empty ledger."""
        require_actor(actor_id, "create_device")
        kind = DeviceKind.parse(kind)
        profile = self._kinds.profile(kind)
        if is_blank(name):
            raise MissingFieldError("name")
        if is_blank(serial):
            raise MissingFieldError("serial")
        serial = serial.strip()
        self._require_unique_serial(kind, serial)
        if room_id is not None:
            room_id = self._require_room(room_id)

        now = self._clock.now()
        device = Device(
            kind=kind.value,
            serial=serial,
            name=name.strip(),
            manufacturer=manufacturer,
            device_type=profile.validate_type(device_type),
            release_year=_year(release_year),
            specs=profile.clean_specs(specs),
            status=DeviceStatus.STANDBY.value,
            room_id=room_id,
            created_at=now,
            updated_at=now,
            created_by_id=actor_id,
        )
        self.session.add(device)
        try:
            self.session.flush()
        except IntegrityError:
            raise DuplicateSerialError(kind.value, serial) from None
        except DBAPIError as exc:
            raise translate_persistence_error("create_device", exc) from exc

        self._invalidator.invalidate_after_commit(self.session, kind)
        logger.info(
            "device_created",
            extra={
                "device_id": str(device.id),
                "device_kind": kind.value,
                "serial": serial,
                "actor_id": str(actor_id),
            },
        )
        return self._selector.to_info(device)

    def update_attributes(
        self,
        kind: DeviceKind | str,
        device_id: UUID | str,
        changes: Mapping[str, Any],
        actor_id: UUID,
    ) -> DeviceInfo:
        """
        Apply attribute changes; keys absent from ``changes`` keep their value.

        ``specs`` is merged field by field into the current specs.
        ``room_id`` present with None detaches the device from its room.
        """
        require_actor(actor_id, "update_device")
        kind = DeviceKind.parse(kind)
        profile = self._kinds.profile(kind)
        unknown = sorted(set(changes) - set(UPDATABLE_FIELDS))
        if unknown:
            raise ValidationError(f"cannot update fields {unknown}")

        device_uuid = as_device_id(device_id, kind)
        with LogContext.bind(device_id=device_uuid, device_kind=kind.value, actor_id=actor_id):
            device = lock_device(self.session, kind, device_uuid)
            changed: list[str] = []

            if "name" in changes:
                if is_blank(changes["name"]):
                    raise MissingFieldError("name")
                changed += _assign(device, "name", changes["name"].strip())
            if "serial" in changes:
                if is_blank(changes["serial"]):
                    raise MissingFieldError("serial")
                serial = changes["serial"].strip()
                if serial != device.serial:
                    self._require_unique_serial(kind, serial)
                changed += _assign(device, "serial", serial)
            if "manufacturer" in changes:
                changed += _assign(device, "manufacturer", changes["manufacturer"])
            if "device_type" in changes:
                changed += _assign(
                    device, "device_type", profile.validate_type(changes["device_type"])
                )
            if "release_year" in changes:
                changed += _assign(device, "release_year", _year(changes["release_year"]))
            if "specs" in changes:
                changed += _assign(
                    device, "specs", profile.merge_specs(device.specs, changes["specs"])
                )
            if "room_id" in changes:
                room_id = changes["room_id"]
                if room_id is not None:
                    room_id = self._require_room(room_id)
                changed += _assign(device, "room_id", room_id)

            if changed:
                device.updated_at = self._clock.now()
                device.updated_by_id = actor_id
                try:
                    self.session.flush()
                except StaleDataError:
                    raise DeviceVersionConflictError(str(device_uuid), 1) from None
                except IntegrityError:
                    raise DuplicateSerialError(kind.value, device.serial) from None
                except DBAPIError as exc:
                    raise translate_persistence_error("update_device", exc) from exc
                if "room_id" in changed:
                    self.session.expire(device, ["room"])
                self._invalidator.invalidate_after_commit(self.session, kind)

            logger.info("device_updated", extra={"fields": changed})
            return self._selector.to_info(device)

    def delete(
        self,
        kind: DeviceKind | str,
        device_id: UUID | str,
        actor_id: UUID,
    ) -> None:
        """Delete a device together with its ledger."""
        require_actor(actor_id, "delete_device")
        kind = DeviceKind.parse(kind)
        device_uuid = as_device_id(device_id, kind)
        device = lock_device(self.session, kind, device_uuid)
        records = len(device.history)
        self.session.delete(device)
        try:
            self.session.flush()
        except StaleDataError:
            raise DeviceVersionConflictError(str(device_uuid), 1) from None
        except DBAPIError as exc:
            raise translate_persistence_error("delete_device", exc) from exc
        self._invalidator.invalidate_after_commit(self.session, kind)
        logger.info(
            "device_deleted",
            extra={
                "device_id": str(device_uuid),
                "device_kind": kind.value,
                "history_records": records,
                "actor_id": str(actor_id),
            },
        )

    def _require_unique_serial(self, kind: DeviceKind, serial: str) -> None:
        existing = self.session.execute(
            select(Device.id).where(Device.kind == kind.value, Device.serial == serial)
        ).scalar_one_or_none()
        if existing is not None:
            raise DuplicateSerialError(kind.value, serial)

    def _require_room(self, room_id: UUID | str) -> UUID:
        try:
            room_uuid = room_id if isinstance(room_id, UUID) else UUID(str(room_id))
        except ValueError:
            raise RoomNotFoundError(str(room_id)) from None
        if self.session.get(Room, room_uuid) is None:
            raise RoomNotFoundError(str(room_id))
        return room_uuid


def _assign(device: Device, attribute: str, value: Any) -> list[str]:
    if getattr(device, attribute) == value:
        return []
    setattr(device, attribute, value)
    return [attribute]


def _year(value: Any) -> int | None:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"release year must be a number, got {value!r}") from None
