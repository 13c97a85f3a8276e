"""Domain models for the inventory kernel."""

from inventory_kernel.models.assignment import AssignmentRecord
from inventory_kernel.models.device import Device
from inventory_kernel.models.directory import UNKNOWN_LOCATION, DirectoryUser, Room

__all__ = [
    "AssignmentRecord",
    "Device",
    "DirectoryUser",
    "Room",
    "UNKNOWN_LOCATION",
]
