from __future__ import annotations

import threading

from lighthouse_agent.src.model import ServiceImportSnapshot
from lighthouse_agent.src.stores import ConcurrentMap, DeletionSnapshotCache


def test_store_load_delete() -> None:
    items: ConcurrentMap[int] = ConcurrentMap()

    items.store("ns/a", 1)

    assert items.load("ns/a") == 1
    assert "ns/a" in items
    assert len(items) == 1

    items.delete("ns/a")
    items.delete("ns/a")

    assert items.load("ns/a") is None
    assert len(items) == 0


def test_pop_all_empties_the_map() -> None:
    items: ConcurrentMap[str] = ConcurrentMap()
    items.store("ns/a", "x")
    items.store("ns/b", "y")

    popped = items.pop_all()

    assert popped == {"ns/a": "x", "ns/b": "y"}
    assert items.keys() == []


def test_concurrent_writers_do_not_lose_entries() -> None:
    items: ConcurrentMap[int] = ConcurrentMap()

    def writer(offset: int) -> None:
        for index in range(200):
            items.store(f"ns/{offset}-{index}", index)

    threads = [threading.Thread(target=writer, args=(offset,)) for offset in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=5)

    assert len(items) == 8 * 200


def test_deletion_snapshot_cache_holds_snapshots() -> None:
    cache = DeletionSnapshotCache()
    snapshot = ServiceImportSnapshot.from_object(
        {
            "metadata": {
                "name": "nginx-default-cluster2",
                "namespace": "submariner-operator",
                "uid": "uid-1",
                "labels": {"app": "nginx"},
                "annotations": {"origin-namespace": "default", "origin-name": "nginx"},
            },
            "spec": {"type": "Headless"},
        }
    )

    cache.store("submariner-operator/nginx-default-cluster2", snapshot)

    assert cache.load("submariner-operator/nginx-default-cluster2") is snapshot
