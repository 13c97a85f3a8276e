"""
inventory_services -- orchestration above the inventory kernel.

Responsibility:
    Composes the flush-only kernel services into request-sized units of
    work and owns the concerns that sit outside a single transaction: the
    listing cache and the external change relay.

Architecture position:
    Services -- may import ``inventory_kernel`` and ``inventory_config``.
    Nothing in the kernel imports this package.

Public surface:
    InventoryOrchestrator   per-request transactional facade
    ListingCache            TTL cache of unfiltered listing pages
    ChangeRelay             directory change events
"""

from inventory_services.change_relay import ChangeRelay, RelayOutcome, RelayResult
from inventory_services.listing_cache import (
    CacheBackend,
    CachedPage,
    InMemoryCacheBackend,
    ListingCache,
)
from inventory_services.listing_service import ListingService
from inventory_services.orchestrator import InventoryOrchestrator, InventoryServices

__all__ = [
    "CacheBackend",
    "CachedPage",
    "ChangeRelay",
    "InMemoryCacheBackend",
    "InventoryOrchestrator",
    "InventoryServices",
    "ListingCache",
    "ListingService",
    "RelayOutcome",
    "RelayResult",
]
