"""
InventoryConfig schema.

Typed, frozen view of a configuration set.  YAML documents are parsed into
these types by the loader; ``get_active_config()`` returns the assembled
``InventoryConfig``.  The kernel never sees these types directly; bridges
translate them into kernel inputs.
"""

from __future__ import annotations

from dataclasses import dataclass, field

# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DatabaseConfig:
    """Connection settings passed to ``init_engine_from_url``."""

    url: str = "sqlite:///inventory.db"
    pool_size: int = 10
    max_overflow: int = 5
    statement_timeout_seconds: float = 10.0
    echo: bool = False


# ---------------------------------------------------------------------------
# Listing
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ListingConfig:
    default_page_size: int = 20
    max_page_size: int = 100
    cache_ttl_seconds: int = 300


# ---------------------------------------------------------------------------
# Assignment engine
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AssignmentConfig:
    """
    Engine behaviour.

    ``reassign_policy`` decides what assigning a device to its current
    holder does: ``rotate`` closes and reopens the record, ``reject``
    refuses the request.
    """

    max_attempts: int = 3
    reassign_policy: str = "rotate"


# ---------------------------------------------------------------------------
# Change relay
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RelayConfig:
    deactivate_on_user_deleted: bool = True


# ---------------------------------------------------------------------------
# Device kinds
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class KindProfileDef:
    """Attribute profile of one device kind as written in YAML."""

    kind: str
    spec_fields: tuple[str, ...]
    required_specs: tuple[str, ...] = ()
    types: tuple[str, ...] = ()
    default_type: str | None = None


# ---------------------------------------------------------------------------
# Complete set
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class InventoryConfig:
    """One loaded configuration set; ``checksum`` identifies its source."""

    name: str
    version: int
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    listing: ListingConfig = field(default_factory=ListingConfig)
    assignment: AssignmentConfig = field(default_factory=AssignmentConfig)
    relay: RelayConfig = field(default_factory=RelayConfig)
    kinds: tuple[KindProfileDef, ...] = ()
    checksum: str = ""
