"""
Device kinds and their attribute profiles.

One device entity serves all six kinds.  What differs between kinds is a
small profile: which spec fields a kind carries, which of them are
required, and which ``type`` values are allowed.  Profiles are built from
configuration (``inventory_config.bridges``) and injected into services.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from inventory_kernel.exceptions import InvalidDeviceKindError, InvalidSpecsError


class DeviceKind(str, Enum):
    """The six kinds of tracked devices."""

    LAPTOP = "laptop"
    MONITOR = "monitor"
    PRINTER = "printer"
    PROJECTOR = "projector"
    PHONE = "phone"
    TOOL = "tool"

    @classmethod
    def parse(cls, value: str | DeviceKind) -> DeviceKind:
        """Accept ``laptop`` as well as the plural route form ``laptops``."""
        if isinstance(value, DeviceKind):
            return value
        normalized = (value or "").strip().lower()
        if normalized.endswith("s") and normalized[:-1] in cls._value2member_map_:
            normalized = normalized[:-1]
        try:
            return cls(normalized)
        except ValueError:
            raise InvalidDeviceKindError(str(value)) from None


@dataclass(frozen=True)
class KindProfile:
    """
    Attribute schema of one device kind.

    Contract:
        ``spec_fields`` lists every accepted key of the ``specs`` mapping;
        ``required_specs`` must be present and non-blank on create.  An
        empty ``types`` tuple means the ``type`` attribute is free text.
    """

    kind: DeviceKind
    spec_fields: tuple[str, ...]
    required_specs: tuple[str, ...] = ()
    types: tuple[str, ...] = ()
    default_type: str | None = None

    def validate_type(self, device_type: str | None) -> str | None:
        """Return the type to store, falling back to the kind default."""
        if device_type is None or device_type == "":
            return self.default_type
        if self.types and device_type not in self.types:
            raise InvalidSpecsError(
                self.kind.value,
                f"type {device_type!r} not in {list(self.types)}",
            )
        return device_type

    def clean_specs(self, specs: Mapping[str, Any] | None) -> dict[str, Any]:
        """Validate a full spec payload for a new device."""
        if specs is None:
            specs = {}
        if not isinstance(specs, Mapping):
            raise InvalidSpecsError(self.kind.value, "specs must be an object")
        unknown = sorted(set(specs) - set(self.spec_fields))
        if unknown:
            raise InvalidSpecsError(self.kind.value, f"unknown fields {unknown}")
        for name in self.required_specs:
            value = specs.get(name)
            if value is None or (isinstance(value, str) and not value.strip()):
                raise InvalidSpecsError(self.kind.value, f"{name} is required")
        return {name: specs[name] for name in self.spec_fields if name in specs}

    def merge_specs(
        self,
        current: Mapping[str, Any] | None,
        updates: Mapping[str, Any] | None,
    ) -> dict[str, Any]:
        """Overlay non-null updates onto current specs; omitted fields keep their value."""
        merged = dict(current or {})
        if not updates:
            return merged
        if not isinstance(updates, Mapping):
            raise InvalidSpecsError(self.kind.value, "specs must be an object")
        unknown = sorted(set(updates) - set(self.spec_fields))
        if unknown:
            raise InvalidSpecsError(self.kind.value, f"unknown fields {unknown}")
        for name, value in updates.items():
            if value is not None:
                merged[name] = value
        for name in self.required_specs:
            value = merged.get(name)
            if value is None or (isinstance(value, str) and not value.strip()):
                raise InvalidSpecsError(self.kind.value, f"{name} is required")
        return merged


@dataclass(frozen=True)
class KindRegistry:
    """Lookup of kind profiles; every DeviceKind must be present."""

    profiles: Mapping[DeviceKind, KindProfile] = field(default_factory=dict)

    def __post_init__(self) -> None:
        missing = [k.value for k in DeviceKind if k not in self.profiles]
        if missing:
            raise ValueError(f"Kind profiles missing for: {missing}")

    def profile(self, kind: DeviceKind | str) -> KindProfile:
        return self.profiles[DeviceKind.parse(kind)]
