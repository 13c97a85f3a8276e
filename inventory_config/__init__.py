"""
inventory_config -- single public entrypoint for inventory configuration.

Responsibility:
    Provides the ONLY way to obtain configuration at runtime through
    ``get_active_config()``.  No other component reads configuration files
    or environment variables directly.  Returns a frozen
    ``InventoryConfig``.

Architecture position:
    Configuration -- YAML-driven settings, validated on load.  This package
    sits above ``inventory_kernel`` and beside ``inventory_services``.  The
    kernel MUST NEVER import from ``inventory_config``; bridges in this
    package translate the config into kernel-compatible inputs.

Invariants enforced:
    - Single entrypoint: all runtime config flows through ``get_active_config()``.
    - Validation on load: every device kind has a profile, page sizes and
      TTL are positive, policy values are known.
    - Deterministic identity: the same YAML document always produces the
      same checksum.

Failure modes:
    - ``FileNotFoundError`` -- the configuration set does not exist.
    - ``ValueError`` -- validation failures.

Audit relevance:
    Every successful ``get_active_config()`` call emits a ``config_loaded``
    log entry with the set name, version and checksum, tying a running
    process to the exact configuration it was started with.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

from inventory_config.loader import load_yaml_file, merge_overrides, parse_config
from inventory_config.schema import InventoryConfig

_logger = logging.getLogger("inventory_kernel.config")

# Default configuration sets directory
_DEFAULT_CONFIG_DIR = Path(__file__).parent / "sets"
_DEFAULT_SET = "default"

_KNOWN_KINDS = ("laptop", "monitor", "printer", "projector", "phone", "tool")
_REASSIGN_POLICIES = ("rotate", "reject")


def get_active_config(
    config_dir: Path | None = None,
    overrides: dict[str, Any] | None = None,
    set_name: str = _DEFAULT_SET,
) -> InventoryConfig:
    """The ONLY public configuration entrypoint.

    Contract:
        No other component may read configuration files or environment
        variables.  All configuration flows through this function.

    Guarantees:
        - The returned ``InventoryConfig`` has passed validation.
        - ``DATABASE_URL`` in the environment wins over ``database.url``.
        - A ``config_loaded`` log entry is emitted on every successful call.

    Args:
        config_dir: Override path to the configuration sets directory.
            Defaults to inventory_config/sets/.
        overrides: Section-level overrides applied on top of the YAML
            document (tests use this to shorten TTLs or switch policies).
        set_name: Name of the YAML file inside ``config_dir`` without
            extension.

    Returns:
        InventoryConfig

    Raises:
        FileNotFoundError: If the configuration set does not exist.
        ValueError: If configuration validation fails.
    """
    sets_dir = config_dir or _DEFAULT_CONFIG_DIR
    path = sets_dir / f"{set_name}.yaml"
    if not path.is_file():
        raise FileNotFoundError(f"Configuration set not found: {path}")

    data = merge_overrides(load_yaml_file(path), overrides)
    database_url = os.environ.get("DATABASE_URL")
    if database_url:
        data = merge_overrides(data, {"database": {"url": database_url}})

    config = parse_config(data)

    errors = validate_config(config)
    if errors:
        raise ValueError(
            "Configuration validation failed:\n"
            + "\n".join(f"  - {e}" for e in errors)
        )

    _logger.info(
        "config_loaded",
        extra={
            "config_name": config.name,
            "config_version": config.version,
            "checksum": config.checksum,
            "kind_count": len(config.kinds),
            "reassign_policy": config.assignment.reassign_policy,
        },
    )
    return config


def validate_config(config: InventoryConfig) -> list[str]:
    """Return every validation error of a parsed configuration set."""
    errors: list[str] = []

    declared = [k.kind for k in config.kinds]
    for kind in _KNOWN_KINDS:
        if kind not in declared:
            errors.append(f"kinds: missing profile for {kind!r}")
    for kind in declared:
        if kind not in _KNOWN_KINDS:
            errors.append(f"kinds: unknown kind {kind!r}")
    for profile in config.kinds:
        for name in profile.required_specs:
            if name not in profile.spec_fields:
                errors.append(
                    f"kinds.{profile.kind}: required spec {name!r} is not a spec field"
                )
        if profile.types and profile.default_type and profile.default_type not in profile.types:
            errors.append(
                f"kinds.{profile.kind}: default type {profile.default_type!r} not in types"
            )

    listing = config.listing
    if listing.default_page_size <= 0:
        errors.append("listing.default_page_size must be positive")
    if listing.max_page_size < listing.default_page_size:
        errors.append("listing.max_page_size must be >= default_page_size")
    if listing.cache_ttl_seconds <= 0:
        errors.append("listing.cache_ttl_seconds must be positive")

    if config.assignment.max_attempts <= 0:
        errors.append("assignment.max_attempts must be positive")
    if config.assignment.reassign_policy not in _REASSIGN_POLICIES:
        errors.append(
            f"assignment.reassign_policy must be one of {list(_REASSIGN_POLICIES)}"
        )

    if config.database.statement_timeout_seconds <= 0:
        errors.append("database.statement_timeout_seconds must be positive")

    return errors


__all__ = ["InventoryConfig", "get_active_config", "validate_config"]
