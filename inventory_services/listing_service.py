"""
ListingService -- paginated device listings with a cache in front.

Unfiltered page requests are served from the ``ListingCache`` when
possible and written back on a miss.  Filtered requests always go to the
database.  Cache failures degrade to a database read and are never
reported to the caller.
"""

from __future__ import annotations

from typing import Any

from sqlalchemy.orm import Session

from inventory_kernel.domain.dtos import ListingPage, ListingQuery
from inventory_kernel.domain.kinds import DeviceKind
from inventory_kernel.exceptions import ValidationError
from inventory_kernel.logging_config import get_logger
from inventory_kernel.selectors.device_selector import DeviceSelector
from inventory_services.listing_cache import ListingCache

logger = get_logger("services.listing")


class ListingService:
    """Read path for per-kind device listings."""

    def __init__(
        self,
        session: Session,
        cache: ListingCache,
        default_page_size: int = 20,
        max_page_size: int = 100,
    ):
        self._selector = DeviceSelector(session)
        self._cache = cache
        self._default_page_size = default_page_size
        self._max_page_size = max_page_size

    def list_devices(
        self,
        kind: DeviceKind | str,
        page: Any = None,
        limit: Any = None,
        search: str | None = None,
        status: str | None = None,
        manufacturer: str | None = None,
        device_type: str | None = None,
        release_year: Any = None,
    ) -> ListingPage:
        """
        Return one page of devices, newest first.

        ``page`` below 1 becomes 1; ``limit`` falls back to the default page
        size and is capped at the maximum page size.
        """
        query = ListingQuery(
            kind=DeviceKind.parse(kind),
            page=_positive_int(page, 1),
            limit=min(_positive_int(limit, self._default_page_size), self._max_page_size),
            search=_clean(search),
            status=_clean(status),
            manufacturer=_clean(manufacturer),
            device_type=_clean(device_type),
            release_year=_year_filter(release_year),
        )

        if query.has_filters:
            return self._selector.list_page(query)

        cached = self._cache.get(query.kind, query.page, query.limit)
        if cached is not None:
            return ListingPage(
                items=cached.items,
                total=cached.total,
                page=query.page,
                limit=query.limit,
                from_cache=True,
            )

        page_result = self._selector.list_page(query)
        self._cache.put(query.kind, query.page, query.limit, page_result.items, page_result.total)
        logger.debug(
            "listing_page_computed",
            extra={
                "device_kind": query.kind.value,
                "page": query.page,
                "limit": query.limit,
                "total": page_result.total,
            },
        )
        return page_result


def _positive_int(value: Any, default: int) -> int:
    if value is None or value == "":
        return default
    try:
        number = int(value)
    except (TypeError, ValueError):
        return default
    return number if number >= 1 else default


def _clean(value: str | None) -> str | None:
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def _year_filter(value: Any) -> int | None:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"releaseYear must be a number, got {value!r}") from None
