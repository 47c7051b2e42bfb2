from __future__ import annotations

import threading
from typing import Generic, Protocol, TypeVar

from lighthouse_agent.src.model import ServiceImportSnapshot

V = TypeVar("V")


class EndpointWatcher(Protocol):
    """Lifecycle of a child endpoint controller as seen by the ServiceImport controller."""

    def start(self, label_selector: str) -> None: ...

    def stop(self) -> None: ...


class ConcurrentMap(Generic[V]):
    """Key to value map safe for concurrent get/put/delete from several threads."""

    def __init__(self) -> None:
        self._items: dict[str, V] = {}
        self._lock = threading.Lock()

    def load(self, key: str) -> V | None:
        with self._lock:
            return self._items.get(key)

    def store(self, key: str, value: V) -> None:
        with self._lock:
            self._items[key] = value

    def delete(self, key: str) -> None:
        with self._lock:
            self._items.pop(key, None)

    def pop_all(self) -> dict[str, V]:
        with self._lock:
            items, self._items = self._items, {}
        return items

    def keys(self) -> list[str]:
        with self._lock:
            return list(self._items)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._items

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)


class DeletionSnapshotCache(ConcurrentMap[ServiceImportSnapshot]):
    """Last-known ServiceImport values recorded by the delete handler.

    The informer cache has already dropped an object by the time its key is
    processed, so cleanup reads origin data from here.  Entries live until
    cleanup for the key succeeds.
    """


class EndpointControllerRegistry(ConcurrentMap[EndpointWatcher]):
    """Running endpoint controllers keyed by ServiceImport ``namespace/name``."""
