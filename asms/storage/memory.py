"""
In-memory persistence for appointments, change requests, notifications and
service capacity.

In production each repository would sit on a relational table; the core
only relies on the ``Repository`` protocol below, so swapping the backend
does not touch the ledger, state machine or dispatcher.
"""

from __future__ import annotations

import itertools
import logging
import threading
from contextlib import contextmanager
from typing import Any, Callable, Generic, Iterator, Optional, Protocol, TypeVar

from pydantic import BaseModel

from asms.errors import NotFoundError, StorageError

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)


class Repository(Protocol[T]):
    """Persistence interface required by the core, one per entity type."""

    def add(self, entity: T) -> T: ...

    def get(self, entity_id: Any) -> T: ...

    def find(self, entity_id: Any) -> Optional[T]: ...

    def save(self, entity: T) -> T: ...

    def delete(self, entity_id: Any) -> None: ...

    def list(self, predicate: Optional[Callable[[T], bool]] = None) -> list[T]: ...

    def count(self, predicate: Optional[Callable[[T], bool]] = None) -> int: ...

    def locked(self, entity_id: Any) -> Any: ...


class InMemoryRepository(Generic[T]):
    """
    Dict-backed repository with copy-on-read semantics.

    Callers never hold a reference to the stored object: ``get`` and
    ``list`` return deep copies and ``save`` replaces the stored row, so a
    read-modify-write is only safe inside ``locked(entity_id)``.
    """

    def __init__(self, entity_name: str) -> None:
        self.entity_name = entity_name
        self._rows: dict[Any, T] = {}
        self._ids = itertools.count(1)
        self._table_lock = threading.Lock()
        self._row_locks: dict[Any, threading.RLock] = {}

    def add(self, entity: T) -> T:
        """Insert a new row, assigning a sequential id when the entity has none."""
        with self._table_lock:
            entity_id = getattr(entity, "id", None)
            if entity_id is None:
                entity_id = next(self._ids)
                entity = entity.model_copy(update={"id": entity_id})
            if entity_id in self._rows:
                raise StorageError(f"{self.entity_name} {entity_id} already exists")
            self._rows[entity_id] = entity.model_copy(deep=True)
        logger.debug("%s %s inserted", self.entity_name, entity_id)
        return entity.model_copy(deep=True)

    def get(self, entity_id: Any) -> T:
        row = self.find(entity_id)
        if row is None:
            raise NotFoundError(self.entity_name, entity_id)
        return row

    def find(self, entity_id: Any) -> Optional[T]:
        with self._table_lock:
            row = self._rows.get(entity_id)
            return row.model_copy(deep=True) if row is not None else None

    def save(self, entity: T) -> T:
        entity_id = getattr(entity, "id", None)
        with self._table_lock:
            if entity_id not in self._rows:
                raise NotFoundError(self.entity_name, entity_id)
            self._rows[entity_id] = entity.model_copy(deep=True)
        return entity.model_copy(deep=True)

    def delete(self, entity_id: Any) -> None:
        with self._table_lock:
            if self._rows.pop(entity_id, None) is None:
                raise NotFoundError(self.entity_name, entity_id)
            self._row_locks.pop(entity_id, None)
        logger.debug("%s %s deleted", self.entity_name, entity_id)

    def list(self, predicate: Optional[Callable[[T], bool]] = None) -> list[T]:
        with self._table_lock:
            rows = list(self._rows.values())
        return [row.model_copy(deep=True) for row in rows if predicate is None or predicate(row)]

    def count(self, predicate: Optional[Callable[[T], bool]] = None) -> int:
        with self._table_lock:
            rows = list(self._rows.values())
        return sum(1 for row in rows if predicate is None or predicate(row))

    def ids(self) -> list[Any]:
        with self._table_lock:
            return list(self._rows.keys())

    @contextmanager
    def locked(self, entity_id: Any) -> Iterator[None]:
        """Hold the per-row lock for a read-modify-write of one entity."""
        with self._table_lock:
            lock = self._row_locks.setdefault(entity_id, threading.RLock())
        with lock:
            yield
