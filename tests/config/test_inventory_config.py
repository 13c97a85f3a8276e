"""
Tests for inventory_config -- loading, validation and kernel bridges.

Covers:
- The shipped default set loads and validates
- Overrides and the DATABASE_URL environment variable
- Validation errors are collected and reported together
- Checksum is deterministic and sensitive to content
- Bridges build the kernel's KindRegistry and engine arguments
"""

from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from inventory_config import get_active_config, validate_config
from inventory_config.bridges import build_kind_registry, engine_kwargs
from inventory_config.loader import compute_checksum, load_yaml_file, merge_overrides, parse_config
from inventory_kernel.domain.kinds import DeviceKind
from inventory_kernel.services.assignment_engine import ReassignPolicy

DEFAULT_SET = Path(__file__).resolve().parents[2] / "inventory_config" / "sets" / "default.yaml"


@pytest.fixture
def default_document():
    return load_yaml_file(DEFAULT_SET)


@pytest.fixture
def write_set(tmp_path):
    """Write a configuration document as ``<tmp>/<name>.yaml`` and return the directory."""

    def _write(document, name="default"):
        (tmp_path / f"{name}.yaml").write_text(yaml.safe_dump(document, allow_unicode=True), encoding="utf-8")
        return tmp_path

    return _write


class TestDefaultSet:
    def test_loads_and_validates(self, monkeypatch):
        monkeypatch.delenv("DATABASE_URL", raising=False)
        config = get_active_config()

        assert config.name == "default"
        assert config.database.url == "sqlite:///inventory.db"
        assert config.listing.default_page_size == 20
        assert config.listing.cache_ttl_seconds == 300
        assert config.assignment.reassign_policy == "rotate"
        assert [k.kind for k in config.kinds] == sorted(k.value for k in DeviceKind)
        assert validate_config(config) == []

    def test_kind_profiles(self):
        profiles = {k.kind: k for k in get_active_config().kinds}

        assert profiles["phone"].required_specs == ("imei1",)
        assert profiles["printer"].default_type == "Máy in Màu"
        assert "Màn hình tương tác" in profiles["projector"].types
        assert profiles["laptop"].types == ()

    def test_logs_config_loaded(self, captured_logs):
        config = get_active_config()

        records = [r for r in captured_logs() if r["message"] == "config_loaded"]
        assert records[-1]["checksum"] == config.checksum
        assert records[-1]["kind_count"] == 6


class TestOverrides:
    def test_section_override_keeps_siblings(self):
        config = get_active_config(overrides={"listing": {"cache_ttl_seconds": 5}})
        assert config.listing.cache_ttl_seconds == 5
        assert config.listing.max_page_size == 100

    def test_database_url_from_environment(self, monkeypatch):
        monkeypatch.setenv("DATABASE_URL", "postgresql://inventory@db/inventory")
        assert get_active_config().database.url == "postgresql://inventory@db/inventory"

    def test_merge_overrides_replaces_scalars(self):
        merged = merge_overrides({"name": "a", "listing": {"x": 1}}, {"name": "b", "listing": {"y": 2}})
        assert merged == {"name": "b", "listing": {"x": 1, "y": 2}}

    def test_policy_is_case_insensitive(self):
        config = get_active_config(overrides={"assignment": {"reassign_policy": "REJECT"}})
        assert config.assignment.reassign_policy == "reject"


class TestValidation:
    def test_missing_set(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            get_active_config(config_dir=tmp_path)

    def test_errors_are_collected(self, default_document, write_set):
        document = dict(default_document)
        document["kinds"] = {k: v for k, v in default_document["kinds"].items() if k != "tool"}
        document["kinds"]["tablet"] = {"spec_fields": ["ram"]}
        document["listing"] = {"default_page_size": 50, "max_page_size": 10, "cache_ttl_seconds": 0}
        document["assignment"] = {"max_attempts": 0, "reassign_policy": "steal"}

        with pytest.raises(ValueError) as exc_info:
            get_active_config(config_dir=write_set(document))

        message = str(exc_info.value)
        for fragment in (
            "missing profile for 'tool'",
            "unknown kind 'tablet'",
            "max_page_size",
            "cache_ttl_seconds",
            "max_attempts",
            "reassign_policy",
        ):
            assert fragment in message

    def test_required_spec_must_be_a_field(self, default_document):
        document = dict(default_document)
        document["kinds"] = dict(default_document["kinds"])
        document["kinds"]["phone"] = {"spec_fields": ["ram"], "required_specs": ["imei1"]}

        errors = validate_config(parse_config(document))

        assert errors == ["kinds.phone: required spec 'imei1' is not a spec field"]

    def test_kind_without_spec_fields(self, default_document):
        document = dict(default_document)
        document["kinds"] = dict(default_document["kinds"], monitor={"types": []})
        with pytest.raises(KeyError):
            parse_config(document)

    def test_named_set(self, default_document, write_set):
        directory = write_set(dict(default_document, name="staging", version=4), name="staging")
        config = get_active_config(config_dir=directory, set_name="staging")
        assert (config.name, config.version) == ("staging", 4)


class TestChecksum:
    def test_deterministic(self, default_document):
        reordered = dict(reversed(list(default_document.items())))
        assert compute_checksum(default_document) == compute_checksum(reordered)

    def test_content_sensitive(self, default_document):
        changed = dict(default_document, version=2)
        assert compute_checksum(default_document) != compute_checksum(changed)


class TestBridges:
    def test_kind_registry(self, inventory_config):
        registry = build_kind_registry(inventory_config)

        assert registry.profile("printers").default_type == "Máy in Màu"
        assert registry.profile(DeviceKind.PHONE).spec_fields[0] == "imei1"

    def test_engine_kwargs(self, inventory_config):
        kwargs = engine_kwargs(inventory_config)
        assert kwargs == {
            "echo": False,
            "pool_size": 10,
            "max_overflow": 5,
            "statement_timeout_seconds": 10.0,
        }

    def test_policy_maps_to_engine_enum(self, inventory_config):
        assert ReassignPolicy(inventory_config.assignment.reassign_policy) is ReassignPolicy.ROTATE
