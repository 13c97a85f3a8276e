"""
Configuration Loader (``inventory_config.loader``).

Responsibility
--------------
Loads a YAML configuration document and parses it into the typed
``inventory_config.schema`` dataclasses.  Runtime callers go through
``inventory_config.get_active_config()``; this module is its tooling.

Architecture position
---------------------
**Config layer**.  No dependency on the kernel or the services.

Invariants enforced
-------------------
* Every parsed object is a frozen dataclass from ``schema.py``.
* Missing required keys raise ``KeyError``; there are no silent defaults
  for fields without a documented default.
* ``compute_checksum`` is deterministic for identical documents.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Missing required keys  -> ``KeyError`` propagates.
"""

from __future__ import annotations

import hashlib
import json
from pathlib import Path
from typing import Any

import yaml

from inventory_config.schema import (
    AssignmentConfig,
    DatabaseConfig,
    InventoryConfig,
    KindProfileDef,
    ListingConfig,
    RelayConfig,
)


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
    """
    with open(path, encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def parse_database(data: dict[str, Any]) -> DatabaseConfig:
    defaults = DatabaseConfig()
    return DatabaseConfig(
        url=data.get("url", defaults.url),
        pool_size=int(data.get("pool_size", defaults.pool_size)),
        max_overflow=int(data.get("max_overflow", defaults.max_overflow)),
        statement_timeout_seconds=float(
            data.get("statement_timeout_seconds", defaults.statement_timeout_seconds)
        ),
        echo=bool(data.get("echo", defaults.echo)),
    )


def parse_listing(data: dict[str, Any]) -> ListingConfig:
    defaults = ListingConfig()
    return ListingConfig(
        default_page_size=int(data.get("default_page_size", defaults.default_page_size)),
        max_page_size=int(data.get("max_page_size", defaults.max_page_size)),
        cache_ttl_seconds=int(data.get("cache_ttl_seconds", defaults.cache_ttl_seconds)),
    )


def parse_assignment(data: dict[str, Any]) -> AssignmentConfig:
    defaults = AssignmentConfig()
    return AssignmentConfig(
        max_attempts=int(data.get("max_attempts", defaults.max_attempts)),
        reassign_policy=str(data.get("reassign_policy", defaults.reassign_policy)).lower(),
    )


def parse_relay(data: dict[str, Any]) -> RelayConfig:
    return RelayConfig(
        deactivate_on_user_deleted=bool(data.get("deactivate_on_user_deleted", True)),
    )


def parse_kind_profile(kind: str, data: dict[str, Any]) -> KindProfileDef:
    """
    Parse one entry of the ``kinds`` mapping.

    Preconditions:
        - ``data`` must contain ``spec_fields``.
    Raises:
        KeyError: if ``spec_fields`` is missing.
    """
    return KindProfileDef(
        kind=kind,
        spec_fields=tuple(data["spec_fields"] or ()),
        required_specs=tuple(data.get("required_specs") or ()),
        types=tuple(data.get("types") or ()),
        default_type=data.get("default_type"),
    )


def parse_config(data: dict[str, Any]) -> InventoryConfig:
    """
    Parse a whole configuration document.

    Postconditions:
        - Returns an ``InventoryConfig`` whose ``checksum`` is the SHA-256
          of the source document.
    Raises:
        KeyError: if ``name`` or ``kinds`` is missing.
    """
    kinds = data["kinds"] or {}
    return InventoryConfig(
        name=data["name"],
        version=int(data.get("version", 1)),
        database=parse_database(data.get("database") or {}),
        listing=parse_listing(data.get("listing") or {}),
        assignment=parse_assignment(data.get("assignment") or {}),
        relay=parse_relay(data.get("relay") or {}),
        kinds=tuple(parse_kind_profile(kind, kinds[kind]) for kind in sorted(kinds)),
        checksum=compute_checksum(data),
    )


def merge_overrides(data: dict[str, Any], overrides: dict[str, Any] | None) -> dict[str, Any]:
    """Overlay ``overrides`` onto ``data`` section by section (one level deep)."""
    if not overrides:
        return data
    merged = dict(data)
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = {**merged[key], **value}
        else:
            merged[key] = value
    return merged


def compute_checksum(data: dict[str, Any]) -> str:
    """
    Compute SHA-256 checksum of canonical JSON serialization.

    Postconditions:
        - Returns a hex-encoded SHA-256 hash string.
        - Identical ``data`` always produces identical checksums.
    """
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()
