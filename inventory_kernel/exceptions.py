"""
Typed Exception Hierarchy for the Inventory Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Every failure the kernel can report has its own class, a machine-readable
``code`` and the HTTP status a facade should answer with.  Callers catch by
type and read structured attributes; they never parse messages.

    try:
        engine.attach_handover_document(device_id, user_id, "handover.pdf")
    except NotCurrentHolderError as e:
        return error_response(e)        # {"code": "NOT_CURRENT_HOLDER", ...}

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    InventoryError (base)
    |
    +-- ValidationError                       400
    |   +-- MissingFieldError
    |   +-- InvalidStatusError
    |   +-- BrokenReasonRequiredError
    |   +-- InvalidDeviceKindError
    |   +-- InvalidSpecsError
    |   +-- MissingActorError
    |   +-- AlreadyCurrentHolderError
    |
    +-- NotFoundError                         404
    |   +-- DeviceNotFoundError
    |   +-- UserNotFoundError
    |   +-- RoomNotFoundError
    |
    +-- ConflictError                         409
    |   +-- DuplicateSerialError
    |   +-- DeviceVersionConflictError
    |   +-- DirectoryConflictError
    |
    +-- NotCurrentHolderError                 400
    |
    +-- InternalError                         500
        +-- PersistenceError
        +-- PersistenceTimeoutError
        +-- CacheBackendError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category     | Code                       | When Raised
-------------|----------------------------|------------------------------------
Validation   | MISSING_FIELD              | Required attribute absent/blank
             | INVALID_STATUS             | Status value not reachable/known
             | BROKEN_REASON_REQUIRED     | Broken transition without reason
             | INVALID_DEVICE_KIND        | Kind outside the six known kinds
             | INVALID_SPECS              | Unknown spec field / bad type value
             | MISSING_ACTOR              | Write without authenticated actor
             | ALREADY_CURRENT_HOLDER     | Reassign to holder under "reject"
-------------|----------------------------|------------------------------------
Not found    | DEVICE_NOT_FOUND           | No device with that id (and kind)
             | USER_NOT_FOUND             | Directory cannot resolve the ref
             | ROOM_NOT_FOUND             | Room id does not exist
-------------|----------------------------|------------------------------------
Conflict     | DUPLICATE_SERIAL           | Serial already used within kind
             | DEVICE_VERSION_CONFLICT    | Optimistic retries exhausted
             | DIRECTORY_CONFLICT         | Payload email and id match two users
-------------|----------------------------|------------------------------------
Holder       | NOT_CURRENT_HOLDER         | Document attach by a non-holder
-------------|----------------------------|------------------------------------
Internal     | PERSISTENCE_ERROR          | Database failure
             | PERSISTENCE_TIMEOUT        | Statement exceeded its timeout
             | CACHE_BACKEND_ERROR        | Cache backend failure (never
             |                            | surfaced by the listing path)

===============================================================================
"""

from typing import Any


class InventoryError(Exception):
    """
    Base exception for all inventory kernel errors.

    Every subclass carries a ``code`` and an ``http_status`` class attribute.
    """

    code: str = "INVENTORY_ERROR"
    http_status: int = 500


# Validation


class ValidationError(InventoryError):
    """Base class for rejected input."""

    code: str = "VALIDATION_ERROR"
    http_status: int = 400

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class MissingFieldError(ValidationError):
    """A required attribute is missing or blank."""

    code: str = "MISSING_FIELD"

    def __init__(self, field_name: str):
        self.field_name = field_name
        super().__init__(f"{field_name} is required")


class InvalidStatusError(ValidationError):
    """Requested status is unknown or not reachable from current state."""

    code: str = "INVALID_STATUS"

    def __init__(self, requested: str, reason: str):
        self.requested = requested
        self.reason = reason
        super().__init__(f"Invalid status {requested!r}: {reason}")


class BrokenReasonRequiredError(ValidationError):
    """Marking a device broken needs a non-empty reason."""

    code: str = "BROKEN_REASON_REQUIRED"

    def __init__(self, device_id: str):
        self.device_id = device_id
        super().__init__("broken reason required")


class InvalidDeviceKindError(ValidationError):
    """Device kind outside the supported set."""

    code: str = "INVALID_DEVICE_KIND"

    def __init__(self, kind: str):
        self.kind = kind
        super().__init__(f"Unknown device kind: {kind!r}")


class InvalidSpecsError(ValidationError):
    """Spec payload does not fit the kind profile."""

    code: str = "INVALID_SPECS"

    def __init__(self, kind: str, detail: str):
        self.kind = kind
        self.detail = detail
        super().__init__(f"Invalid specs for {kind}: {detail}")


class MissingActorError(ValidationError):
    """Write operation attempted without an authenticated actor."""

    code: str = "MISSING_ACTOR"

    def __init__(self, operation: str):
        self.operation = operation
        super().__init__(f"{operation} requires an authenticated actor")


class AlreadyCurrentHolderError(ValidationError):
    """Assign target already holds the device (reject policy only)."""

    code: str = "ALREADY_CURRENT_HOLDER"

    def __init__(self, device_id: str, user_id: str):
        self.device_id = device_id
        self.user_id = user_id
        super().__init__(f"User {user_id} already holds device {device_id}")


# Not found


class NotFoundError(InventoryError):
    """Base class for missing entities."""

    code: str = "NOT_FOUND"
    http_status: int = 404


class DeviceNotFoundError(NotFoundError):
    """Device with the given id does not exist."""

    code: str = "DEVICE_NOT_FOUND"

    def __init__(self, device_id: str, kind: str | None = None):
        self.device_id = device_id
        self.kind = kind
        label = kind or "device"
        super().__init__(f"{label} not found: {device_id}")


class UserNotFoundError(NotFoundError):
    """Directory could not resolve a user reference."""

    code: str = "USER_NOT_FOUND"

    def __init__(self, user_ref: str):
        self.user_ref = user_ref
        super().__init__(f"User not found: {user_ref}")


class RoomNotFoundError(NotFoundError):
    """Room with the given id does not exist."""

    code: str = "ROOM_NOT_FOUND"

    def __init__(self, room_ref: str):
        self.room_ref = room_ref
        super().__init__(f"Room not found: {room_ref}")


# Conflict


class ConflictError(InventoryError):
    """Base class for state conflicts."""

    code: str = "CONFLICT"
    http_status: int = 409


class DuplicateSerialError(ConflictError):
    """Serial already registered for this kind."""

    code: str = "DUPLICATE_SERIAL"

    def __init__(self, kind: str, serial: str):
        self.kind = kind
        self.serial = serial
        super().__init__(f'Serial "{serial}" already exists for {kind}')


class DeviceVersionConflictError(ConflictError):
    """Concurrent writers kept invalidating the device version."""

    code: str = "DEVICE_VERSION_CONFLICT"

    def __init__(self, device_id: str, attempts: int):
        self.device_id = device_id
        self.attempts = attempts
        super().__init__(
            f"Device {device_id} was modified concurrently; "
            f"gave up after {attempts} attempt(s)"
        )


class DirectoryConflictError(ConflictError):
    """A directory payload matches two different local users."""

    code: str = "DIRECTORY_CONFLICT"

    def __init__(self, email: str | None, external_id: str | None, detail: str | None = None):
        self.email = email
        self.external_id = external_id
        super().__init__(
            detail
            or f"Directory user {external_id!r} and email {email!r} belong to different users"
        )


# Holder


class NotCurrentHolderError(InventoryError):
    """Handover documents can only be attached for the active holder."""

    code: str = "NOT_CURRENT_HOLDER"
    http_status: int = 400

    def __init__(self, device_id: str, user_id: str):
        self.device_id = device_id
        self.user_id = user_id
        super().__init__(
            f"User {user_id} is not the current holder of device {device_id}"
        )


# Internal


class InternalError(InventoryError):
    """Base class for backend failures."""

    code: str = "INTERNAL_ERROR"
    http_status: int = 500


class PersistenceError(InternalError):
    """Database operation failed."""

    code: str = "PERSISTENCE_ERROR"

    def __init__(self, operation: str, detail: str):
        self.operation = operation
        self.detail = detail
        super().__init__(f"Persistence failure during {operation}: {detail}")


class PersistenceTimeoutError(PersistenceError):
    """Database statement exceeded the configured timeout."""

    code: str = "PERSISTENCE_TIMEOUT"


class CacheBackendError(InternalError):
    """Cache backend failed; swallowed by the listing path."""

    code: str = "CACHE_BACKEND_ERROR"

    def __init__(self, operation: str, detail: str):
        self.operation = operation
        self.detail = detail
        super().__init__(f"Cache backend failure during {operation}: {detail}")


def error_response(exc: InventoryError) -> dict[str, Any]:
    """Render an inventory error as a response body for the HTTP facade."""
    return {
        "code": exc.code,
        "message": str(exc),
        "http_status": exc.http_status,
    }
