"""
Tests for InventoryOrchestrator -- request-level units of work.

Covers:
- create_device with assignment, broken status and top-level spec fields
- All-or-nothing: a request that fails part way leaves nothing behind
- update_device routing of attributes, assignment and status keys
- Wire shape of listings (devices + pagination)
- Room lookups and reconcile entry point
- Per-kind statistics by status
- bulk_create: per-item isolation of invalid items, valid ones committed
- error_response rendering of kernel errors
"""

from uuid import uuid4

import pytest

from inventory_kernel.domain.dtos import ReconciliationRun
from inventory_kernel.domain.status import DeviceStatus
from inventory_kernel.exceptions import (
    BrokenReasonRequiredError,
    DeviceNotFoundError,
    InvalidStatusError,
    RoomNotFoundError,
    UserNotFoundError,
    ValidationError,
    error_response,
)

from tests.conftest import ROOM_PAYLOAD, USER_PAYLOADS


@pytest.fixture
def seeded(orchestrator):
    """Commit the directory users and the room; return their ids."""
    with orchestrator.unit_of_work("seed") as services:
        ids = {
            key: services.directory.upsert_user(payload).entity_id
            for key, payload in USER_PAYLOADS.items()
        }
        ids["room"] = services.directory.upsert_room(ROOM_PAYLOAD).entity_id
    return ids


def _laptop(**extra):
    payload = {"name": "Latitude 7440", "serial": f"LAT-{uuid4().hex[:8]}", "manufacturer": "Dell"}
    payload.update(extra)
    return payload


class TestCreateDevice:
    def test_create_unassigned(self, orchestrator, test_actor_id):
        device = orchestrator.create_device("laptops", _laptop(releaseYear="2023"), test_actor_id)

        assert device.status is DeviceStatus.STANDBY
        assert device.release_year == 2023
        assert orchestrator.get_device("laptop", device.id).id == device.id

    def test_create_assigned(self, orchestrator, seeded, test_actor_id):
        device = orchestrator.create_device(
            "laptop", _laptop(assigned=[str(seeded["an"])], reason="onboarding"), test_actor_id
        )

        assert device.status is DeviceStatus.PENDING_DOCUMENTATION
        assert device.holder.id == seeded["an"]
        assert device.history[0].notes == "onboarding"

    def test_create_broken(self, orchestrator, test_actor_id):
        device = orchestrator.create_device(
            "projector",
            {"name": "Epson", "serial": "PJ-9", "status": "Broken", "brokenReason": "lamp"},
            test_actor_id,
        )
        assert device.status is DeviceStatus.BROKEN
        assert device.device_type == "Máy chiếu"

    def test_phone_imei_at_top_level(self, orchestrator, test_actor_id):
        device = orchestrator.create_device(
            "phones", {"name": "iPhone", "serial": "PH-7", "imei1": "356789012345678"}, test_actor_id
        )
        assert device.specs == {"imei1": "356789012345678"}

    def test_more_than_one_assignee_rejected(self, orchestrator, seeded, test_actor_id):
        with pytest.raises(ValidationError):
            orchestrator.create_device(
                "laptop", _laptop(assigned=[str(seeded["an"]), str(seeded["binh"])]), test_actor_id
            )
        assert orchestrator.list_devices("laptop").total == 0

    def test_failed_assignment_leaves_no_device(self, orchestrator, test_actor_id):
        with pytest.raises(UserNotFoundError):
            orchestrator.create_device(
                "laptop", _laptop(assigned=["nobody@example.edu.vn"]), test_actor_id
            )
        assert orchestrator.list_devices("laptop").total == 0

    def test_broken_without_reason_leaves_no_device(self, orchestrator, test_actor_id):
        with pytest.raises(BrokenReasonRequiredError):
            orchestrator.create_device("laptop", _laptop(status="Broken"), test_actor_id)
        assert orchestrator.list_devices("laptop").total == 0

    def test_unknown_status(self, orchestrator, test_actor_id):
        with pytest.raises(InvalidStatusError):
            orchestrator.create_device("laptop", _laptop(status="Lost"), test_actor_id)


class TestUpdateDevice:
    def test_attribute_keys_translated(self, orchestrator, seeded, test_actor_id):
        device = orchestrator.create_device("laptop", _laptop(), test_actor_id)

        updated = orchestrator.update_device(
            "laptop",
            device.id,
            {"type": "Ultrabook", "releaseYear": 2024, "room": str(seeded["room"]), "ram": "32GB"},
            test_actor_id,
        )

        assert updated.device_type == "Ultrabook"
        assert updated.release_year == 2024
        assert updated.room.id == seeded["room"]
        assert updated.specs["ram"] == "32GB"

        detached = orchestrator.update_device("laptop", device.id, {"room": ""}, test_actor_id)
        assert detached.room is None

    def test_assigned_list_assigns_and_revokes(self, orchestrator, seeded, test_actor_id):
        device = orchestrator.create_device("monitor", {"name": "U2720", "serial": "MON-1"}, test_actor_id)

        assigned = orchestrator.update_device(
            "monitor", device.id, {"assigned": [str(seeded["binh"])]}, test_actor_id
        )
        same = orchestrator.update_device(
            "monitor", device.id, {"assigned": ["binh.tran@example.edu.vn"]}, test_actor_id
        )
        revoked = orchestrator.update_device(
            "monitor", device.id, {"assigned": [], "reasons": ["desk move"]}, test_actor_id
        )

        assert assigned.holder.id == seeded["binh"]
        assert len(same.history) == 1
        assert revoked.holder is None
        assert revoked.history[0].revoked_reason == ("desk move",)
        assert revoked.status is DeviceStatus.STANDBY

    def test_status_key_goes_through_engine(self, orchestrator, test_actor_id):
        device = orchestrator.create_device("printer", {"name": "HP", "serial": "PR-5"}, test_actor_id)

        broken = orchestrator.update_device(
            "printer", device.id, {"status": "Broken", "brokenReason": "jam"}, test_actor_id
        )
        assert broken.status is DeviceStatus.BROKEN

        with pytest.raises(InvalidStatusError):
            orchestrator.update_device("printer", device.id, {"name": "HP 2", "status": "Active"}, test_actor_id)
        assert orchestrator.get_device("printer", device.id).name == "HP"

    def test_assigned_must_be_a_list(self, orchestrator, test_actor_id):
        device = orchestrator.create_device("laptop", _laptop(), test_actor_id)
        with pytest.raises(ValidationError):
            orchestrator.update_device("laptop", device.id, {"assigned": "someone"}, test_actor_id)


class TestEndpoints:
    def test_assign_upload_revoke(self, orchestrator, seeded, test_actor_id):
        device = orchestrator.create_device("laptop", _laptop(), test_actor_id)

        orchestrator.assign("laptop", device.id, {"assignedTo": str(seeded["an"])}, test_actor_id)
        active = orchestrator.attach_handover(
            "laptop", device.id, {"userId": str(seeded["an"]), "document": "bàn giao.pdf"}, test_actor_id
        )
        assert active.status is DeviceStatus.ACTIVE
        assert active.open_record.document == "ban_giao.pdf"

        revoked = orchestrator.revoke(
            "laptop", device.id, {"reasons": ["broken screen"], "status": "Broken"}, test_actor_id
        )
        assert revoked.status is DeviceStatus.BROKEN

        restored = orchestrator.update_status("laptop", device.id, {"status": "Standby"}, test_actor_id)
        assert restored.status is DeviceStatus.STANDBY

    @pytest.mark.parametrize(
        "method, payload",
        [("assign", {}), ("assign", {"assignedTo": "  "}), ("attach_handover", {"document": "x.pdf"})],
    )
    def test_required_keys(self, orchestrator, test_actor_id, method, payload):
        device = orchestrator.create_device("laptop", _laptop(), test_actor_id)
        with pytest.raises(ValidationError):
            getattr(orchestrator, method)("laptop", device.id, payload, test_actor_id)

    def test_delete(self, orchestrator, test_actor_id):
        device = orchestrator.create_device("tool", {"name": "Drill", "serial": "T-3"}, test_actor_id)
        orchestrator.delete_device("tool", device.id, test_actor_id)
        with pytest.raises(DeviceNotFoundError):
            orchestrator.get_device("tool", device.id)


class TestReads:
    def test_listing_wire_shape(self, orchestrator, test_actor_id, deterministic_clock):
        for _ in range(3):
            orchestrator.create_device("laptop", _laptop(), test_actor_id)
            deterministic_clock.advance(1)

        body = orchestrator.list_devices("laptops", {"page": "1", "limit": "2"}).to_dict()

        assert len(body["devices"]) == 2
        assert body["pagination"] == {
            "currentPage": 1,
            "totalPages": 2,
            "totalItems": 3,
            "itemsPerPage": 2,
            "hasNext": True,
            "hasPrev": False,
        }
        assert set(body["devices"][0]) >= {"id", "serial", "status", "currentHolder", "assignmentHistory"}

    def test_listing_cached_until_write(self, orchestrator, test_actor_id):
        orchestrator.create_device("laptop", _laptop(), test_actor_id)
        assert not orchestrator.list_devices("laptop").from_cache
        assert orchestrator.list_devices("laptop").from_cache

        orchestrator.create_device("laptop", _laptop(), test_actor_id)
        page = orchestrator.list_devices("laptop")
        assert not page.from_cache
        assert page.total == 2

    def test_devices_by_room(self, orchestrator, seeded, test_actor_id):
        room = str(seeded["room"])
        orchestrator.create_device("projector", {"name": "Epson", "serial": "PJ-1", "room": room}, test_actor_id)
        orchestrator.create_device("laptop", _laptop(room=room), test_actor_id)
        orchestrator.create_device("laptop", _laptop(), test_actor_id)

        grouped = orchestrator.devices_by_room(room)
        counts = orchestrator.count_by_room(room)

        assert len(grouped["projector"]) == 1
        assert len(grouped["laptop"]) == 1
        assert grouped["phone"] == []
        assert counts["total"] == 2
        assert counts["laptop"] == 1

    @pytest.mark.parametrize("room_id", ["not-a-uuid", str(uuid4())])
    def test_unknown_room(self, orchestrator, room_id):
        with pytest.raises(RoomNotFoundError):
            orchestrator.count_by_room(room_id)


def test_reconcile_single_device_requires_kind(orchestrator, test_actor_id):
    with pytest.raises(ValidationError):
        orchestrator.reconcile(test_actor_id, device_id=uuid4())


def test_reconcile_clean_inventory_reports_nothing(orchestrator, seeded, test_actor_id):
    device = orchestrator.create_device("laptop", _laptop(assigned=[str(seeded["chi"])]), test_actor_id)
    assert orchestrator.reconcile(test_actor_id) == ReconciliationRun()
    assert orchestrator.reconcile(test_actor_id, kind="laptop", device_id=device.id) == ReconciliationRun()


def test_error_response_shape():
    body = error_response(DeviceNotFoundError("abc", "laptop"))
    assert body == {"code": "DEVICE_NOT_FOUND", "message": "laptop not found: abc", "http_status": 404}


class TestBulkCreate:
    def test_mixed_items(self, orchestrator, seeded, test_actor_id):
        orchestrator.create_device("printer", {"name": "HP 402", "serial": "PR-1"}, test_actor_id)
        items = [
            {"name": "Canon LBP", "serial": "PR-2"},
            {"name": "HP 402 again", "serial": "PR-1"},
            {"name": "No serial"},
            {"name": "Brother", "serial": "PR-3", "assigned": [str(seeded["chi"])]},
            {"name": "Ghost", "serial": "PR-4", "assigned": ["nobody@example.edu.vn"]},
            {"name": "Epson", "serial": "PR-2"},
        ]

        result = orchestrator.bulk_create("printers", items, test_actor_id)

        assert [d.serial for d in result.added] == ["PR-2", "PR-3"]
        assert [(e.serial, e.code) for e in result.errors] == [
            ("PR-1", "DUPLICATE_SERIAL"),
            (None, "MISSING_FIELD"),
            ("PR-4", "USER_NOT_FOUND"),
            ("PR-2", "DUPLICATE_SERIAL"),
        ]
        serials = {d.serial for d in orchestrator.list_devices("printer", {"limit": "50"}).items}
        assert serials == {"PR-1", "PR-2", "PR-3"}

    def test_rejected_assignment_leaves_no_device(self, orchestrator, test_actor_id):
        result = orchestrator.bulk_create(
            "laptop", [_laptop(serial="LAT-X", assigned=["nobody@example.edu.vn"])], test_actor_id
        )

        assert result.added == ()
        assert orchestrator.list_devices("laptop", {"search": "LAT-X"}).total == 0

    def test_wire_shape(self, orchestrator, test_actor_id):
        result = orchestrator.bulk_create(
            "tool", [{"name": "Drill", "serial": "T-1"}, {"name": "Saw", "serial": "T-1"}], test_actor_id
        )

        assert result.to_dict() == {
            "added": 1,
            "errors": [{"serial": "T-1", "message": 'Serial "T-1" already exists for tool'}],
        }

    @pytest.mark.parametrize("items", [[], None, {"serial": "T-1"}])
    def test_empty_or_malformed_request(self, orchestrator, test_actor_id, items):
        with pytest.raises(ValidationError):
            orchestrator.bulk_create("tool", items, test_actor_id)


class TestStatistics:
    def test_counts_every_status(self, orchestrator, seeded, test_actor_id):
        held = orchestrator.create_device("monitor", {"name": "Dell U27", "serial": "M-1"}, test_actor_id)
        orchestrator.assign("monitor", held.id, {"assignedTo": str(seeded["an"])}, test_actor_id)
        orchestrator.create_device(
            "monitor", {"name": "LG", "serial": "M-2", "status": "Broken", "brokenReason": "dead pixels"},
            test_actor_id,
        )
        orchestrator.create_device("monitor", {"name": "AOC", "serial": "M-3"}, test_actor_id)
        orchestrator.create_device("laptop", _laptop(), test_actor_id)

        assert orchestrator.statistics("monitors") == {
            "Active": 0,
            "Standby": 1,
            "Broken": 1,
            "PendingDocumentation": 1,
            "total": 3,
        }

    def test_empty_kind(self, orchestrator):
        assert orchestrator.statistics("phone")["total"] == 0
