"""
Store factory for TableDB.

Routes a shard identity to a StoreBackend, creating the backend on first
use and caching it for the lifetime of the process.

Invariants:
    - A cached shard id always resolves to the same backend instance
    - The cache never evicts
    - Shard ids are unique and strictly increasing, even under concurrent creation
    - A failed creation leaves the cache unchanged

How to change safely:
    - Keep lookups on the shared lock; only creation may take the exclusive lock
    - Never hold the exclusive lock for anything slower than opening a backend
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass

from ..errors import FactoryError
from .backend import SQLiteBackend, StoreBackend

logger = logging.getLogger(__name__)

BackendOpener = Callable[[str, int], StoreBackend]


class ReadWriteLock:
    """Lock with shared readers and an exclusive, writer-preferring writer."""

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @contextmanager
    def read(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if not self._readers:
                    self._cond.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        with self._cond:
            self._writers_waiting += 1
            while self._writer or self._readers:
                self._cond.wait()
            self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


@dataclass(frozen=True)
class ShardSpec:
    """Identity of a shard to resolve.

    Attributes:
        shard_id: Id of an existing shard (lookup)
        data_source: Connection target used when the shard must be opened
    """

    shard_id: int | None = None
    data_source: str | None = None


class StoreFactory:
    """Creates and caches StoreBackend instances keyed by shard id.

    Thread safety:
        Lookups share a read lock. A miss escalates to the exclusive lock,
        re-checks the cache, and creates the backend there.

    Example:
        >>> factory = StoreFactory()
        >>> backend = factory.resolve(ShardSpec(data_source=":memory:"))
        >>> factory.resolve(ShardSpec(shard_id=backend.id)) is backend
        True
    """

    def __init__(
        self,
        opener: BackendOpener | None = None,
        busy_timeout_ms: int = 5000,
    ) -> None:
        """Initialize an empty factory.

        Args:
            opener: Callable building a backend from (data_source, shard_id)
            busy_timeout_ms: SQLite busy timeout for the default opener
        """
        self._opener = opener or (
            lambda data_source, shard_id: SQLiteBackend(
                data_source, shard_id, busy_timeout_ms=busy_timeout_ms
            )
        )
        self._stores: dict[int, StoreBackend] = {}
        self._lock = ReadWriteLock()
        self._last_id = 0

    def _next_id(self) -> int:
        # Called under the exclusive lock
        self._last_id = max(time.time_ns(), self._last_id + 1)
        return self._last_id

    def resolve(self, spec: ShardSpec) -> StoreBackend:
        """Resolve a shard spec to a backend.

        Args:
            spec: Shard id to look up, and/or data source to open

        Returns:
            The cached or newly created backend

        Raises:
            FactoryError: If the shard is unknown and cannot be opened
        """
        if spec.shard_id is not None:
            with self._lock.read():
                store = self._stores.get(spec.shard_id)
            if store is not None:
                return store

        with self._lock.write():
            if spec.shard_id is not None and spec.shard_id in self._stores:
                return self._stores[spec.shard_id]

            if not spec.data_source:
                raise FactoryError(
                    f"shard {spec.shard_id} is not open and no data source was given",
                    shard_id=spec.shard_id,
                )

            # A known id that is not cached is re-attached under the same id
            shard_id = spec.shard_id if spec.shard_id is not None else self._next_id()
            self._last_id = max(self._last_id, shard_id)

            try:
                store = self._opener(spec.data_source, shard_id)
            except FactoryError:
                raise
            except Exception as e:
                raise FactoryError(
                    f"unable to create store for shard {shard_id}: {e}", shard_id=shard_id
                ) from e

            self._stores[shard_id] = store
            logger.info(f"Opened shard {shard_id}")
            return store

    def shard_ids(self) -> list[int]:
        with self._lock.read():
            return list(self._stores)

    def close(self) -> None:
        """Close every cached backend. Only for process shutdown."""
        with self._lock.write():
            for store in self._stores.values():
                store.close()
            self._stores.clear()
