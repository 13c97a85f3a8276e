"""Flush-only write services of the inventory kernel."""

from inventory_kernel.services.assignment_engine import AssignmentEngine, ReassignPolicy
from inventory_kernel.services.base import (
    BaseService,
    CacheInvalidator,
    NullInvalidator,
)
from inventory_kernel.services.device_service import DeviceRegistry
from inventory_kernel.services.directory_service import DirectoryService, UpsertResult
from inventory_kernel.services.reconciliation_service import ReconciliationService

__all__ = [
    "AssignmentEngine",
    "BaseService",
    "CacheInvalidator",
    "DeviceRegistry",
    "DirectoryService",
    "NullInvalidator",
    "ReassignPolicy",
    "ReconciliationService",
    "UpsertResult",
]
