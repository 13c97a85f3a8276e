"""
inventory_services.listing_cache -- time-boxed cache of device listing pages.

Responsibility:
    Stores computed, unfiltered listing pages keyed by
    ``devices:{kind}:page:{page}:limit:{page_size}`` for a bounded TTL and
    drops them when the data they summarize changes.  Implements the
    kernel's ``CacheInvalidator`` port: kernel writes record the kinds they
    touched on the session, and the invalidation is issued only once the
    transaction has committed.

Architecture position:
    Services -- above the kernel.  The backend is injected; the in-memory
    backend ships here, a networked backend only has to implement
    ``CacheBackend``.

Invariants enforced:
    - Commit before invalidate: ``invalidate_after_commit`` only records the
      kind in ``session.info``.  ``commit(session)`` commits and then
      invalidates; ``rollback(session)`` discards the recorded kinds.
    - Best effort: every backend failure is logged and swallowed.  ``get``
      reports a miss, ``put`` and the invalidations report nothing.  A cache
      failure never fails or rolls back the caller's operation.

Failure modes:
    - A corrupt cache entry is treated as a miss and dropped.
"""

from __future__ import annotations

import json
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Protocol

from sqlalchemy.orm import Session

from inventory_kernel.domain.clock import Clock, SystemClock
from inventory_kernel.domain.dtos import DeviceInfo
from inventory_kernel.domain.kinds import DeviceKind
from inventory_kernel.exceptions import CacheBackendError
from inventory_kernel.logging_config import get_logger

logger = get_logger("services.listing_cache")

KEY_PREFIX = "devices"
DEFAULT_TTL_SECONDS = 300

_PENDING_KEY = "inventory_pending_invalidations"
_ALL_KINDS = "*"


def page_key(kind: DeviceKind, page: int, page_size: int) -> str:
    return f"{KEY_PREFIX}:{kind.value}:page:{page}:limit:{page_size}"


def kind_prefix(kind: DeviceKind) -> str:
    return f"{KEY_PREFIX}:{kind.value}:"


class CacheBackend(Protocol):
    """Minimal key/value contract a listing cache backend must offer."""

    def get(self, key: str) -> str | None:
        ...

    def set(self, key: str, value: str, ttl_seconds: int) -> None:
        ...

    def delete(self, key: str) -> None:
        ...

    def delete_prefix(self, prefix: str) -> int:
        ...


class InMemoryCacheBackend:
    """
    Process-local backend with per-entry expiry.

    Time comes from the injected clock so expiry is testable.
    """

    def __init__(self, clock: Clock | None = None):
        self._clock = clock or SystemClock()
        self._entries: dict[str, tuple[str, datetime]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> str | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if self._clock.now() >= expires_at:
                del self._entries[key]
                return None
            return value

    def set(self, key: str, value: str, ttl_seconds: int) -> None:
        expires_at = self._clock.now() + timedelta(seconds=ttl_seconds)
        with self._lock:
            self._entries[key] = (value, expires_at)

    def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def delete_prefix(self, prefix: str) -> int:
        with self._lock:
            doomed = [key for key in self._entries if key.startswith(prefix)]
            for key in doomed:
                del self._entries[key]
            return len(doomed)

    def keys(self) -> list[str]:
        with self._lock:
            return sorted(self._entries)


@dataclass(frozen=True)
class CachedPage:
    items: tuple[DeviceInfo, ...]
    total: int


class ListingCache:
    """
    Listing page cache over a pluggable backend.

    Contract:
        ``get`` returns a CachedPage or None (miss or failure).  ``put``,
        ``invalidate`` and ``invalidate_all`` never raise.
    """

    def __init__(self, backend: CacheBackend, ttl_seconds: int = DEFAULT_TTL_SECONDS):
        self._backend = backend
        self._ttl_seconds = ttl_seconds

    @property
    def ttl_seconds(self) -> int:
        return self._ttl_seconds

    def get(self, kind: DeviceKind, page: int, page_size: int) -> CachedPage | None:
        key = page_key(kind, page, page_size)
        try:
            raw = self._call("get", self._backend.get, key)
        except CacheBackendError:
            logger.warning("listing_cache_read_failed", exc_info=True, extra={"key": key})
            return None
        if raw is None:
            logger.debug("listing_cache_miss", extra={"key": key})
            return None
        try:
            data = json.loads(raw)
            cached = CachedPage(
                items=tuple(DeviceInfo.from_dict(item) for item in data["devices"]),
                total=int(data["total"]),
            )
        except (ValueError, KeyError, TypeError):
            logger.warning("listing_cache_entry_corrupt", exc_info=True, extra={"key": key})
            self._drop(key)
            return None
        logger.debug("listing_cache_hit", extra={"key": key, "total": cached.total})
        return cached

    def put(
        self,
        kind: DeviceKind,
        page: int,
        page_size: int,
        items: tuple[DeviceInfo, ...] | list[DeviceInfo],
        total: int,
        ttl_seconds: int | None = None,
    ) -> bool:
        """Store a page; returns False if the backend failed."""
        key = page_key(kind, page, page_size)
        payload = json.dumps({
            "devices": [item.to_dict() for item in items],
            "total": total,
        })
        try:
            self._call("set", self._backend.set, key, payload, ttl_seconds or self._ttl_seconds)
        except CacheBackendError:
            logger.warning("listing_cache_write_failed", exc_info=True, extra={"key": key})
            return False
        return True

    def invalidate(self, kind: DeviceKind) -> None:
        """Drop every cached page of one kind."""
        prefix = kind_prefix(kind)
        try:
            dropped = self._call("delete_prefix", self._backend.delete_prefix, prefix)
        except CacheBackendError:
            logger.warning(
                "listing_cache_invalidation_failed",
                exc_info=True,
                extra={"prefix": prefix},
            )
            return
        logger.info("listing_cache_invalidated", extra={"kind": kind.value, "dropped": dropped})

    def invalidate_all(self) -> None:
        """Drop every cached page of every kind."""
        prefix = f"{KEY_PREFIX}:"
        try:
            dropped = self._call("delete_prefix", self._backend.delete_prefix, prefix)
        except CacheBackendError:
            logger.warning(
                "listing_cache_invalidation_failed",
                exc_info=True,
                extra={"prefix": prefix},
            )
            return
        logger.info("listing_cache_invalidated_all", extra={"dropped": dropped})

    # CacheInvalidator port

    def invalidate_after_commit(self, session: Session, kind: DeviceKind) -> None:
        session.info.setdefault(_PENDING_KEY, set()).add(kind.value)

    def invalidate_all_after_commit(self, session: Session) -> None:
        session.info.setdefault(_PENDING_KEY, set()).add(_ALL_KINDS)

    def commit(self, session: Session) -> None:
        """Commit the session, then issue the invalidations it recorded."""
        session.commit()
        pending = session.info.pop(_PENDING_KEY, set())
        if _ALL_KINDS in pending:
            self.invalidate_all()
            return
        for kind in sorted(pending):
            self.invalidate(DeviceKind(kind))

    def rollback(self, session: Session) -> None:
        """Roll back the session and forget its recorded invalidations."""
        session.info.pop(_PENDING_KEY, None)
        session.rollback()

    # Internals

    def _call(self, operation: str, fn, *args):
        try:
            return fn(*args)
        except Exception as exc:
            raise CacheBackendError(operation, str(exc)) from exc

    def _drop(self, key: str) -> None:
        try:
            self._call("delete", self._backend.delete, key)
        except CacheBackendError:
            logger.warning("listing_cache_drop_failed", exc_info=True, extra={"key": key})
