"""
inventory_services.orchestrator -- DI container and transactional facade.

Responsibility:
    ``InventoryServices`` creates every kernel service for one session
    exactly once and wires them together.  No service creates other
    services internally.  ``InventoryOrchestrator`` is the facade an HTTP
    layer calls: one method per endpoint, each running in its own unit of
    work (one session, one transaction, commit then cache invalidation).

Architecture position:
    Services -- the top of the service layer.  The only place where kernel
    services are constructed and composed.  Request payloads arrive in
    the wire shape (camelCase keys) and are translated here.

Invariants enforced:
    - DI transparency: all service wiring is visible in
      ``InventoryServices.__init__``.
    - One transaction per request: a failing request rolls back every
      write it made (a create that fails while assigning leaves no device).
    - Commit before invalidate: cached listings are dropped only after the
      transaction has committed (``ListingCache.commit``).

Failure modes:
    - Every ``InventoryError`` from the kernel propagates unchanged;
      ``inventory_kernel.exceptions.error_response`` renders it.
    - A driver failure during commit is reported as PersistenceError.

Usage:
    config = get_active_config()
    init_engine_from_url(config.database.url, **engine_kwargs(config))
    cache = ListingCache(InMemoryCacheBackend(), config.listing.cache_ttl_seconds)
    orchestrator = InventoryOrchestrator(get_session_factory(), config, cache)

    page = orchestrator.list_devices("laptops", {"page": "2"})
    device = orchestrator.assign("laptop", device_id, {"assignedTo": user_id}, actor_id)
"""

from __future__ import annotations

from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy.exc import DBAPIError
from sqlalchemy.orm import Session, sessionmaker

from inventory_config.bridges import build_kind_registry
from inventory_config.schema import InventoryConfig
from inventory_kernel.domain.clock import Clock, SystemClock
from inventory_kernel.domain.dtos import (
    BulkCreateResult,
    BulkItemError,
    DeviceInfo,
    ListingPage,
    ReconciliationRun,
)
from inventory_kernel.domain.kinds import DeviceKind, KindProfile, KindRegistry
from inventory_kernel.domain.status import DeviceStatus, parse_status
from inventory_kernel.exceptions import (
    InvalidStatusError,
    InventoryError,
    RoomNotFoundError,
    ValidationError,
)
from inventory_kernel.logging_config import LogContext, get_logger
from inventory_kernel.selectors.device_selector import DeviceSelector
from inventory_kernel.services.assignment_engine import (
    AssignmentEngine,
    ReassignPolicy,
    as_device_id,
)
from inventory_kernel.services.base import translate_persistence_error
from inventory_kernel.services.device_service import DeviceRegistry
from inventory_kernel.services.directory_service import DirectoryService
from inventory_kernel.services.reconciliation_service import ReconciliationService
from inventory_services.listing_cache import ListingCache
from inventory_services.listing_service import ListingService

logger = get_logger("services.orchestrator")

# Wire keys of attribute updates and the registry field each one sets.
_ATTRIBUTE_KEYS = {
    "name": "name",
    "serial": "serial",
    "manufacturer": "manufacturer",
    "type": "device_type",
    "releaseYear": "release_year",
    "specs": "specs",
    "room": "room_id",
}


class InventoryServices:
    """
    Kernel services bound to one session.

    All services available as attributes:
        directory, registry, engine, reconciliation, selector, listing
    """

    def __init__(
        self,
        session: Session,
        config: InventoryConfig,
        kinds: KindRegistry,
        cache: ListingCache,
        clock: Clock,
    ):
        self.session = session
        self.directory = DirectoryService(session, clock)
        self.registry = DeviceRegistry(session, kinds, clock=clock, invalidator=cache)
        self.engine = AssignmentEngine(
            session,
            clock=clock,
            directory=self.directory,
            invalidator=cache,
            max_attempts=config.assignment.max_attempts,
            reassign_policy=ReassignPolicy(config.assignment.reassign_policy),
        )
        self.reconciliation = ReconciliationService(session, clock=clock, invalidator=cache)
        self.selector = DeviceSelector(session)
        self.listing = ListingService(
            session,
            cache,
            default_page_size=config.listing.default_page_size,
            max_page_size=config.listing.max_page_size,
        )


class InventoryOrchestrator:
    """Per-request transactional facade over the inventory services."""

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        config: InventoryConfig,
        cache: ListingCache,
        clock: Clock | None = None,
    ):
        self._session_factory = session_factory
        self._config = config
        self._cache = cache
        self._clock = clock or SystemClock()
        self._kinds = build_kind_registry(config)

    @property
    def kinds(self) -> KindRegistry:
        return self._kinds

    @property
    def cache(self) -> ListingCache:
        return self._cache

    # ------------------------------------------------------------------
    # Unit of work
    # ------------------------------------------------------------------

    @contextmanager
    def unit_of_work(self, operation: str) -> Iterator[InventoryServices]:
        """Open a session, yield its services, commit or roll back."""
        session = self._session_factory()
        with LogContext.bind(correlation_id=uuid4()):
            try:
                yield InventoryServices(
                    session, self._config, self._kinds, self._cache, self._clock
                )
                try:
                    self._cache.commit(session)
                except DBAPIError as exc:
                    raise translate_persistence_error(operation, exc) from exc
            except Exception:
                self._cache.rollback(session)
                logger.debug("request_rolled_back", extra={"operation": operation})
                raise
            finally:
                session.close()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def list_devices(self, kind: DeviceKind | str, params: Mapping[str, Any] | None = None) -> ListingPage:
        params = params or {}
        with self.unit_of_work("list_devices") as services:
            return services.listing.list_devices(
                kind,
                page=params.get("page"),
                limit=params.get("limit"),
                search=params.get("search"),
                status=params.get("status"),
                manufacturer=params.get("manufacturer"),
                device_type=params.get("type"),
                release_year=params.get("releaseYear"),
            )

    def get_device(self, kind: DeviceKind | str, device_id: UUID | str) -> DeviceInfo:
        kind = DeviceKind.parse(kind)
        with self.unit_of_work("get_device") as services:
            return services.selector.get(kind, as_device_id(device_id, kind))

    def devices_by_room(self, room_id: UUID | str) -> dict[str, list[DeviceInfo]]:
        with self.unit_of_work("devices_by_room") as services:
            grouped = services.selector.list_by_room(_room_uuid(room_id))
            return {kind.value: devices for kind, devices in grouped.items()}

    def count_by_room(self, room_id: UUID | str) -> dict[str, int]:
        with self.unit_of_work("count_by_room") as services:
            return services.selector.count_by_room(_room_uuid(room_id))

    def statistics(self, kind: DeviceKind | str) -> dict[str, int]:
        """Device counts of a kind: ``total`` plus one count per status."""
        with self.unit_of_work("statistics") as services:
            return services.selector.status_counts(kind)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create_device(
        self,
        kind: DeviceKind | str,
        payload: Mapping[str, Any],
        actor_id: UUID,
    ) -> DeviceInfo:
        """
        Create a device, optionally already assigned and/or broken.

        ``assigned`` holds at most one user reference.  ``status`` may be
        ``Broken`` (``brokenReason`` required); any other known status is
        accepted and the stored status is derived.
        """
        kind = DeviceKind.parse(kind)
        with self.unit_of_work("create_device") as services:
            return self._create_one(services, kind, payload, actor_id)

    def bulk_create(
        self,
        kind: DeviceKind | str,
        items: Any,
        actor_id: UUID,
    ) -> BulkCreateResult:
        """
        Create many devices in one request.

        Every item runs in its own savepoint: an invalid item (missing name
        or serial, duplicate serial, unknown user or room) is rolled back and
        reported with its serial, the valid ones are committed together.
        """
        kind = DeviceKind.parse(kind)
        if not isinstance(items, list) or not items:
            raise ValidationError("no devices to create")

        added: list[DeviceInfo] = []
        errors: list[BulkItemError] = []
        with self.unit_of_work("bulk_create") as services:
            for item in items:
                serial = item.get("serial") if isinstance(item, Mapping) else None
                savepoint = services.session.begin_nested()
                try:
                    if not isinstance(item, Mapping):
                        raise ValidationError("device item must be an object")
                    added.append(self._create_one(services, kind, item, actor_id))
                    savepoint.commit()
                except InventoryError as exc:
                    savepoint.rollback()
                    errors.append(BulkItemError(serial=serial, message=str(exc), code=exc.code))
            logger.info(
                "devices_bulk_created",
                extra={"device_kind": kind.value, "added": len(added), "rejected": len(errors)},
            )
        return BulkCreateResult(added=tuple(added), errors=tuple(errors))

    def _create_one(
        self,
        services: InventoryServices,
        kind: DeviceKind,
        payload: Mapping[str, Any],
        actor_id: UUID,
    ) -> DeviceInfo:
        profile = self._kinds.profile(kind)
        assignee = _single_assignee(payload.get("assigned"))
        requested = _requested_status(payload.get("status"))

        device = services.registry.create(
            kind,
            name=payload.get("name"),
            serial=payload.get("serial"),
            actor_id=actor_id,
            manufacturer=payload.get("manufacturer"),
            device_type=payload.get("type"),
            release_year=payload.get("releaseYear"),
            specs=_specs_of(profile, payload),
            room_id=payload.get("room") or None,
        )
        if assignee is not None:
            device = services.engine.assign(
                kind, device.id, assignee, payload.get("reason"), actor_id
            )
        if requested is DeviceStatus.BROKEN:
            device = services.engine.set_broken(
                kind,
                device.id,
                payload.get("brokenReason"),
                payload.get("brokenDescription"),
                actor_id,
            )
        return device

    def update_device(
        self,
        kind: DeviceKind | str,
        device_id: UUID | str,
        payload: Mapping[str, Any],
        actor_id: UUID,
    ) -> DeviceInfo:
        """
        Update attributes; assignment and status keys go through the engine.

        ``assigned: []`` revokes the current holder, ``assigned: [user]``
        assigns a different user (the current holder is left alone).
        ``status`` is handled like the status endpoint.
        """
        kind = DeviceKind.parse(kind)
        profile = self._kinds.profile(kind)
        changes = {
            field: payload[key] for key, field in _ATTRIBUTE_KEYS.items() if key in payload
        }
        if "room_id" in changes and changes["room_id"] == "":
            changes["room_id"] = None
        specs = _specs_of(profile, payload)
        if specs is not None:
            changes["specs"] = specs
        has_assignment = "assigned" in payload
        assignee = _single_assignee(payload.get("assigned")) if has_assignment else None

        with self.unit_of_work("update_device") as services:
            device = services.registry.update_attributes(kind, device_id, changes, actor_id)
            if has_assignment:
                if assignee is None:
                    if device.holder is not None:
                        device = services.engine.revoke(
                            kind, device.id, payload.get("reasons") or [], None, actor_id
                        )
                else:
                    target = services.directory.resolve_user(assignee)
                    if device.holder is None or device.holder.id != target.id:
                        device = services.engine.assign(
                            kind, device.id, target.id, payload.get("reason"), actor_id
                        )
            if "status" in payload:
                device = services.engine.update_status(
                    kind,
                    device.id,
                    payload.get("status"),
                    payload.get("brokenReason"),
                    payload.get("brokenDescription"),
                    actor_id,
                )
            return device

    def assign(
        self,
        kind: DeviceKind | str,
        device_id: UUID | str,
        payload: Mapping[str, Any],
        actor_id: UUID,
    ) -> DeviceInfo:
        target = payload.get("assignedTo")
        if target is None or str(target).strip() == "":
            raise ValidationError("assignedTo is required")
        with self.unit_of_work("assign") as services:
            return services.engine.assign(kind, device_id, target, payload.get("reason"), actor_id)

    def revoke(
        self,
        kind: DeviceKind | str,
        device_id: UUID | str,
        payload: Mapping[str, Any],
        actor_id: UUID,
    ) -> DeviceInfo:
        with self.unit_of_work("revoke") as services:
            return services.engine.revoke(
                kind, device_id, payload.get("reasons"), payload.get("status"), actor_id
            )

    def update_status(
        self,
        kind: DeviceKind | str,
        device_id: UUID | str,
        payload: Mapping[str, Any],
        actor_id: UUID,
    ) -> DeviceInfo:
        with self.unit_of_work("update_status") as services:
            return services.engine.update_status(
                kind,
                device_id,
                payload.get("status"),
                payload.get("brokenReason"),
                payload.get("brokenDescription"),
                actor_id,
            )

    def attach_handover(
        self,
        kind: DeviceKind | str,
        device_id: UUID | str,
        payload: Mapping[str, Any],
        actor_id: UUID,
    ) -> DeviceInfo:
        """Record the uploaded handover document for ``userId``'s open record."""
        user_ref = payload.get("userId")
        if user_ref is None or str(user_ref).strip() == "":
            raise ValidationError("userId is required")
        with self.unit_of_work("attach_handover_document") as services:
            return services.engine.attach_handover_document(
                kind, device_id, user_ref, payload.get("document"), actor_id
            )

    def delete_device(self, kind: DeviceKind | str, device_id: UUID | str, actor_id: UUID) -> None:
        with self.unit_of_work("delete_device") as services:
            services.registry.delete(kind, device_id, actor_id)

    def reconcile(
        self,
        actor_id: UUID,
        kind: DeviceKind | str | None = None,
        device_id: UUID | str | None = None,
    ) -> ReconciliationRun:
        """
        Repair one device (kind and id given) or every device of a kind / all kinds.

        A single device is all-or-nothing: its failure propagates.  A sweep
        over many devices isolates failures per device and commits the
        repairs that succeeded.
        """
        with self.unit_of_work("reconcile") as services:
            if device_id is not None:
                if kind is None:
                    raise ValidationError("kind is required to reconcile a single device")
                report = services.reconciliation.reconcile_device(kind, device_id, actor_id)
                return ReconciliationRun(reports=(report,) if report.changed else ())
            return services.reconciliation.reconcile_all(actor_id, kind)


def _single_assignee(assigned: Any) -> UUID | str | None:
    if assigned is None:
        return None
    if not isinstance(assigned, list):
        raise ValidationError("assigned must be a list")
    if len(assigned) > 1:
        raise ValidationError("a device can be assigned to one user only")
    return assigned[0] if assigned else None


def _requested_status(value: Any) -> DeviceStatus | None:
    if value is None or value == "":
        return None
    status = parse_status(value)
    if status is None:
        raise InvalidStatusError(str(value), "unknown status")
    return status


def _specs_of(profile: KindProfile, payload: Mapping[str, Any]) -> dict[str, Any] | None:
    """Collect ``specs`` plus spec fields sent at the top level (e.g. a phone's ``imei1``)."""
    specs = payload.get("specs")
    if specs is not None and not isinstance(specs, Mapping):
        return specs
    specs = dict(specs or {})
    for name in profile.spec_fields:
        if name in payload and payload[name] is not None:
            specs[name] = payload[name]
    return specs or None


def _room_uuid(room_id: UUID | str) -> UUID:
    if isinstance(room_id, UUID):
        return room_id
    try:
        return UUID(str(room_id))
    except ValueError:
        raise RoomNotFoundError(str(room_id)) from None
