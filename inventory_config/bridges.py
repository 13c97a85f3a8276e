"""
Config -> Kernel Bridges.

Functions that convert an ``InventoryConfig`` into kernel-compatible
inputs.  These live in inventory_config (the producer) because the kernel
must NEVER import inventory_config.

Usage:
    from inventory_config.bridges import build_kind_registry, engine_kwargs

    config = get_active_config()
    init_engine_from_url(config.database.url, **engine_kwargs(config))
    registry = build_kind_registry(config)
"""

from __future__ import annotations

from typing import Any

from inventory_config.schema import InventoryConfig, KindProfileDef
from inventory_kernel.domain.kinds import DeviceKind, KindProfile, KindRegistry


def build_kind_profile(profile_def: KindProfileDef) -> KindProfile:
    return KindProfile(
        kind=DeviceKind.parse(profile_def.kind),
        spec_fields=profile_def.spec_fields,
        required_specs=profile_def.required_specs,
        types=profile_def.types,
        default_type=profile_def.default_type,
    )


def build_kind_registry(config: InventoryConfig) -> KindRegistry:
    """Build the KindRegistry from the ``kinds`` section.

    Raises:
        InvalidDeviceKindError: a profile names an unknown kind.
        ValueError: a kind has no profile.
    """
    profiles = {}
    for profile_def in config.kinds:
        profile = build_kind_profile(profile_def)
        profiles[profile.kind] = profile
    return KindRegistry(profiles=profiles)


def engine_kwargs(config: InventoryConfig) -> dict[str, Any]:
    """Keyword arguments for ``init_engine_from_url`` besides the URL."""
    db = config.database
    return {
        "echo": db.echo,
        "pool_size": db.pool_size,
        "max_overflow": db.max_overflow,
        "statement_timeout_seconds": db.statement_timeout_seconds,
    }
