"""
BaseService -- abstract base for all kernel services.

Responsibility:
    Provides the common constructor and session-handling contract for
    every write service in the kernel.  Services receive a SQLAlchemy
    ``Session`` and persist with ``session.flush()`` -- never
    ``session.commit()``.  The orchestrator (or test harness) owns
    commit/rollback.

    Also defines the ``CacheInvalidator`` port.  Write services announce
    which device kinds they touched; the implementation decides how and
    when to drop cached listings.  The kernel only sees the protocol.

Architecture position:
    Kernel > Services -- imperative shell infrastructure.

Invariants enforced:
    - Transaction boundaries: services flush within the caller's
      transaction and never commit or roll back the outer transaction.
    - Invalidation is requested, never executed, from inside the kernel.
      ``invalidate_after_commit`` is a promise to act after the caller's
      commit; a rolled back transaction invalidates nothing.

Failure modes:
    - ``translate_persistence_error`` maps driver failures to
      PersistenceError / PersistenceTimeoutError so facades can answer 500.
"""

from abc import ABC
from typing import Generic, Protocol, TypeVar

from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.orm import Session

from inventory_kernel.db.base import Base
from inventory_kernel.domain.kinds import DeviceKind
from inventory_kernel.exceptions import (
    MissingActorError,
    PersistenceError,
    PersistenceTimeoutError,
)

ModelType = TypeVar("ModelType", bound=Base)

_TIMEOUT_MARKERS = (
    "statement timeout",
    "canceling statement",
    "database is locked",
    "lock timeout",
)


class CacheInvalidator(Protocol):
    """Port through which kernel writes request listing-cache invalidation."""

    def invalidate_after_commit(self, session: Session, kind: DeviceKind) -> None:
        ...

    def invalidate_all_after_commit(self, session: Session) -> None:
        ...


class NullInvalidator:
    """Invalidator used when no listing cache is configured."""

    def invalidate_after_commit(self, session: Session, kind: DeviceKind) -> None:
        return None

    def invalidate_all_after_commit(self, session: Session) -> None:
        return None


class BaseService(ABC, Generic[ModelType]):
    """
    Abstract base class for all kernel services.

    Contract:
        Accepts a SQLAlchemy ``Session`` from the caller and uses
        ``session.flush()`` to persist changes within the active
        transaction.

    Non-goals:
        - Does NOT manage transaction lifecycle (commit/rollback).
        - Does NOT provide read methods -- those belong in
          ``inventory_kernel/selectors/``.
    """

    def __init__(self, session: Session):
        self.session = session


def require_actor(actor_id, operation: str) -> None:
    """Write operations need an authenticated actor."""
    if actor_id is None or (isinstance(actor_id, str) and not actor_id.strip()):
        raise MissingActorError(operation)


def translate_persistence_error(operation: str, exc: DBAPIError) -> PersistenceError:
    """Map a driver error to the kernel's persistence errors."""
    detail = str(exc.orig) if exc.orig is not None else str(exc)
    lowered = detail.lower()
    if isinstance(exc, OperationalError) and any(m in lowered for m in _TIMEOUT_MARKERS):
        return PersistenceTimeoutError(operation, detail)
    return PersistenceError(operation, detail)
