"""Read-only selectors for the inventory kernel."""

from inventory_kernel.selectors.base import BaseSelector
from inventory_kernel.selectors.device_selector import (
    DeviceSelector,
    to_room_summary,
    to_user_summary,
)

__all__ = [
    "BaseSelector",
    "DeviceSelector",
    "to_room_summary",
    "to_user_summary",
]
