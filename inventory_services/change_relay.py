"""
inventory_services.change_relay -- applies external directory change events.

Responsibility:
    Consumes envelopes published by the identity directory and keeps the
    local user and room directory plus the holder snapshots on devices in
    step with it.  Each envelope is applied in its own unit of work.

Architecture position:
    Services -- driven by a subscriber loop or ``scripts/relay_events.py``.
    Uses the orchestrator's unit of work, so every applied event commits
    before the listing cache is flushed.

Event envelope:
    ``{"type": ..., "user" | "room" | "doc" | "data": {...}, "source": ...}``
    Recognized types (aliases on the right):

        user_changed   user_created, user_updated
        user_deleted
        room_changed   room_created, room_updated
        room_deleted

    Unknown types are ignored.

Invariants enforced:
    - Idempotent: replaying an envelope leaves the same state.  Holder
      snapshots are re-stamped only where they differ.
    - ``fullname_snapshot`` on ledger records is never touched.
    - Every applied change event flushes every cached listing.
    - Isolation: a failing envelope is logged and reported as FAILED; it
      never stops the envelopes after it.
"""

from __future__ import annotations

import json
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any

from inventory_config.schema import RelayConfig
from inventory_kernel.exceptions import InventoryError
from inventory_kernel.logging_config import LogContext, get_logger
from inventory_services.orchestrator import InventoryOrchestrator, InventoryServices

logger = get_logger("services.change_relay")

USER_CHANGED = "user_changed"
USER_DELETED = "user_deleted"
ROOM_CHANGED = "room_changed"
ROOM_DELETED = "room_deleted"

EVENT_ALIASES = {
    "user_created": USER_CHANGED,
    "user_updated": USER_CHANGED,
    USER_CHANGED: USER_CHANGED,
    USER_DELETED: USER_DELETED,
    "room_created": ROOM_CHANGED,
    "room_updated": ROOM_CHANGED,
    ROOM_CHANGED: ROOM_CHANGED,
    ROOM_DELETED: ROOM_DELETED,
}

_PAYLOAD_KEYS = ("user", "room", "doc", "data")


class RelayOutcome(str, Enum):
    APPLIED = "applied"
    IGNORED = "ignored"
    FAILED = "failed"


@dataclass(frozen=True)
class RelayResult:
    event_type: str | None
    outcome: RelayOutcome
    detail: str | None = None
    code: str | None = None


def canonical_event_type(event_type: Any) -> str | None:
    if not isinstance(event_type, str):
        return None
    return EVENT_ALIASES.get(event_type.strip().lower())


def extract_payload(envelope: Mapping[str, Any]) -> dict[str, Any] | None:
    """Find the entity payload of an envelope (also inside ``message``)."""
    for container in (envelope, envelope.get("message")):
        if not isinstance(container, Mapping):
            continue
        for key in _PAYLOAD_KEYS:
            value = container.get(key)
            if isinstance(value, Mapping):
                return dict(value)
    return None


class ChangeRelay:
    """Applies directory change envelopes one unit of work at a time."""

    def __init__(self, orchestrator: InventoryOrchestrator, config: RelayConfig | None = None):
        self._orchestrator = orchestrator
        self._config = config or RelayConfig()
        self._handlers = {
            USER_CHANGED: self._user_changed,
            USER_DELETED: self._user_deleted,
            ROOM_CHANGED: self._room_changed,
            ROOM_DELETED: self._room_deleted,
        }

    def handle(self, envelope: Mapping[str, Any] | str | bytes) -> RelayResult:
        """Apply one envelope; never raises for a bad or failing event."""
        if isinstance(envelope, (str, bytes)):
            try:
                envelope = json.loads(envelope)
            except ValueError as exc:
                logger.warning("relay_event_malformed", extra={"error": str(exc)})
                return RelayResult(None, RelayOutcome.FAILED, "malformed JSON")
        if not isinstance(envelope, Mapping):
            logger.warning("relay_event_malformed", extra={"error": "envelope is not an object"})
            return RelayResult(None, RelayOutcome.FAILED, "envelope is not an object")

        raw_type = envelope.get("type")
        event_type = canonical_event_type(raw_type)
        if event_type is None:
            logger.debug("relay_event_ignored", extra={"type": raw_type})
            return RelayResult(
                raw_type if isinstance(raw_type, str) else None,
                RelayOutcome.IGNORED,
                "unknown event type",
            )

        payload = extract_payload(envelope)
        with LogContext.bind(event_type=event_type):
            try:
                with self._orchestrator.unit_of_work(event_type) as services:
                    detail = self._handlers[event_type](services, envelope, payload)
                    if detail is None:
                        return RelayResult(event_type, RelayOutcome.IGNORED, "nothing to apply")
                    self._orchestrator.cache.invalidate_all_after_commit(services.session)
            except InventoryError as exc:
                logger.warning(
                    "relay_event_failed",
                    extra={"error_code": exc.code, "error": str(exc), "source": envelope.get("source")},
                )
                return RelayResult(event_type, RelayOutcome.FAILED, str(exc), exc.code)
            except Exception as exc:
                logger.error(
                    "relay_event_failed",
                    exc_info=True,
                    extra={"error": str(exc), "source": envelope.get("source")},
                )
                return RelayResult(event_type, RelayOutcome.FAILED, str(exc))

        logger.info("relay_event_applied", extra={"detail": detail, "source": envelope.get("source")})
        return RelayResult(event_type, RelayOutcome.APPLIED, detail)

    def process_batch(self, envelopes: Iterable[Mapping[str, Any] | str | bytes]) -> list[RelayResult]:
        results = [self.handle(envelope) for envelope in envelopes]
        logger.info(
            "relay_batch_processed",
            extra={
                "events": len(results),
                "applied": sum(r.outcome is RelayOutcome.APPLIED for r in results),
                "ignored": sum(r.outcome is RelayOutcome.IGNORED for r in results),
                "failed": sum(r.outcome is RelayOutcome.FAILED for r in results),
            },
        )
        return results

    # Handlers return a short detail string, or None when there is nothing to apply.

    def _user_changed(self, services: InventoryServices, envelope, payload) -> str | None:
        if payload is None:
            return None
        result = services.directory.upsert_user(payload)
        kinds = services.directory.restamp_holder_snapshots(result.entity_id)
        return (
            f"user {result.entity_id} "
            f"{'created' if result.created else 'updated'}, "
            f"restamped {len(kinds)} kind(s)"
        )

    def _user_deleted(self, services: InventoryServices, envelope, payload) -> str | None:
        if not self._config.deactivate_on_user_deleted:
            return None
        if payload is None:
            payload = {
                key: envelope[key]
                for key in ("email", "user_id", "name")
                if isinstance(envelope.get(key), str)
            }
        if not payload:
            return None
        result = services.directory.deactivate_user(payload)
        if result is None:
            return None
        return f"user {result.entity_id} deactivated"

    def _room_changed(self, services: InventoryServices, envelope, payload) -> str | None:
        if payload is None:
            return None
        result = services.directory.upsert_room(payload)
        return f"room {result.entity_id} {'created' if result.created else 'updated'}"

    def _room_deleted(self, services: InventoryServices, envelope, payload) -> str | None:
        if payload is None:
            return None
        result = services.directory.disable_room(payload)
        if result is None:
            return None
        return f"room {result.entity_id} disabled"
