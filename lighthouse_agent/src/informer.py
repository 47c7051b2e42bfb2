from __future__ import annotations

import logging
import random
import threading
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

from kubernetes import watch
from kubernetes.client import ApiException

from lighthouse_agent.src.metrics import METRICS
from lighthouse_agent.src.model import (
    DeletedFinalStateUnknown,
    ObjectKeyError,
    meta_namespace_key,
    object_resource_version,
)


@dataclass(frozen=True)
class ResourceEventHandler:
    """Callbacks invoked for cache changes; any of them may be omitted."""

    on_add: Callable[[Any], None] | None = None
    on_update: Callable[[Any, Any], None] | None = None
    on_delete: Callable[[Any], None] | None = None


def _list_items(response: Any) -> list[Any]:
    if isinstance(response, Mapping):
        return list(response.get("items") or [])
    return list(getattr(response, "items", None) or [])


def _list_resource_version(response: Any) -> str | None:
    if isinstance(response, Mapping):
        return (response.get("metadata") or {}).get("resourceVersion")
    return getattr(getattr(response, "metadata", None), "resource_version", None)


class Informer:
    """Keeps a local cache of one resource type in sync and reports changes.

    ``list_func`` is any Kubernetes list call that also supports watching
    (``CoreV1Api.list_namespaced_pod``,
    ``CustomObjectsApi.list_namespaced_custom_object``, ...) and
    ``list_kwargs`` are passed to both the list and the watch.

    :meth:`run` lists once to seed the cache, then streams watch events from
    the list's ``resourceVersion``.  A ``410 Gone`` (or a watch ``ERROR``
    event) triggers a fresh list; objects that vanished across that gap are
    reported through ``on_delete`` as :class:`DeletedFinalStateUnknown`
    tombstones.  ``401``/``403`` end the loop since retrying cannot fix RBAC.

    Handlers run on the informer thread, in event order.  A handler raising
    is logged and does not stop delivery.
    """

    def __init__(
        self,
        list_func: Callable[..., Any],
        *,
        name: str,
        list_kwargs: Mapping[str, Any] | None = None,
        watch_timeout_seconds: int = 30,
        logger: logging.Logger | None = None,
    ) -> None:
        self.list_func = list_func
        self.name = name
        self.list_kwargs = dict(list_kwargs or {})
        self.watch_timeout_seconds = watch_timeout_seconds
        self.logger = logger or logging.getLogger(__name__)

        self._store: dict[str, Any] = {}
        self._store_lock = threading.RLock()
        self._handlers: list[ResourceEventHandler] = []
        self.ready = threading.Event()
        self._external_stop = threading.Event()
        self._active_watcher: watch.Watch | None = None
        self._watcher_lock = threading.Lock()

    def add_event_handler(
        self,
        on_add: Callable[[Any], None] | None = None,
        on_update: Callable[[Any, Any], None] | None = None,
        on_delete: Callable[[Any], None] | None = None,
    ) -> None:
        self._handlers.append(
            ResourceEventHandler(on_add=on_add, on_update=on_update, on_delete=on_delete)
        )

    def get_by_key(self, key: str) -> tuple[Any | None, bool]:
        with self._store_lock:
            if key in self._store:
                return self._store[key], True
        return None, False

    def list_keys(self) -> list[str]:
        with self._store_lock:
            return list(self._store)

    def list(self) -> list[Any]:
        with self._store_lock:
            return list(self._store.values())

    def request_stop(self) -> None:
        """Request a cooperative stop and immediately interrupt any open watch stream."""
        self._external_stop.set()
        with self._watcher_lock:
            active_watcher = self._active_watcher
        if active_watcher is not None:
            active_watcher.stop()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    def _dispatch(self, kind: str, *args: Any) -> None:
        for handler in self._handlers:
            callback = getattr(handler, kind)
            if callback is None:
                continue
            try:
                callback(*args)
            except Exception:
                self.logger.exception("Informer %s: %s handler failed", self.name, kind)

    def _key_or_none(self, obj: Any) -> str | None:
        try:
            return meta_namespace_key(obj)
        except ObjectKeyError:
            self.logger.warning("Informer %s: skipping object without a name", self.name)
            return None

    def _replace(self, items: list[Any]) -> None:
        """Swap in a full listing and report the differences against the old cache."""
        fresh: dict[str, Any] = {}
        for item in items:
            key = self._key_or_none(item)
            if key is not None:
                fresh[key] = item

        with self._store_lock:
            previous = self._store
            self._store = dict(fresh)

        for key, old in previous.items():
            if key not in fresh:
                self._dispatch("on_delete", DeletedFinalStateUnknown(key=key, obj=old))
        for key, obj in fresh.items():
            if key in previous:
                self._dispatch("on_update", previous[key], obj)
            else:
                self._dispatch("on_add", obj)

    def _relist(self) -> str | None:
        response = self.list_func(**self.list_kwargs)
        self._replace(_list_items(response))
        return _list_resource_version(response)

    def handle_event(self, event_type: str, obj: Any) -> None:
        """Apply one watch event to the cache and notify handlers."""
        key = self._key_or_none(obj)
        if key is None:
            return

        if event_type in {"ADDED", "MODIFIED"}:
            with self._store_lock:
                old = self._store.get(key)
                self._store[key] = obj
            if old is None:
                self._dispatch("on_add", obj)
            else:
                self._dispatch("on_update", old, obj)
        elif event_type == "DELETED":
            with self._store_lock:
                self._store.pop(key, None)
            self._dispatch("on_delete", obj)

    def _access_denied(self, exc: ApiException, phase: str) -> bool:
        if exc.status not in {401, 403}:
            return False
        self.logger.error(
            "Informer %s: Kubernetes API access denied during %s (status=%s). "
            "Check agent RBAC and service account permissions.",
            self.name,
            phase,
            exc.status,
        )
        METRICS.watch_errors_total.labels(informer=self.name).inc()
        return True

    def run(self, stop_event: threading.Event | None = None) -> None:
        """List, then watch until stopped.

        The initial list is retried with jittered exponential backoff (1 s to
        30 s) so a slow API server at startup does not kill the informer.
        Watch errors other than ``410`` back off the same way.
        """
        stop = stop_event or threading.Event()
        self._external_stop.clear()

        resource_version: str | None = None
        startup_backoff_seconds = 1
        while not self._should_stop(stop):
            try:
                resource_version = self._relist()
                self.ready.set()
                self.logger.info(
                    "Informer %s synced; watching from resourceVersion %s",
                    self.name,
                    resource_version,
                )
                break
            except ApiException as exc:
                if self._access_denied(exc, "initial list"):
                    self.ready.clear()
                    return
                self.logger.exception("Informer %s: initial list failed", self.name)
                METRICS.watch_errors_total.labels(informer=self.name).inc()
            except Exception:
                self.logger.exception("Informer %s: unexpected error during initial list", self.name)
                METRICS.watch_errors_total.labels(informer=self.name).inc()

            jittered = startup_backoff_seconds * (0.5 + random.random())  # noqa: S311
            stop.wait(timeout=jittered)
            startup_backoff_seconds = min(startup_backoff_seconds * 2, 30)

        backoff_seconds = 1
        watch_stream_count = 0
        needs_relist = False

        while not self._should_stop(stop):
            if needs_relist:
                try:
                    resource_version = self._relist()
                    needs_relist = False
                except ApiException as exc:
                    if self._access_denied(exc, "re-list"):
                        break
                    self.logger.exception("Informer %s: re-list failed", self.name)
                except Exception:
                    self.logger.exception("Informer %s: unexpected error during re-list", self.name)
                if needs_relist:
                    METRICS.watch_errors_total.labels(informer=self.name).inc()
                    jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                    stop.wait(timeout=jittered)
                    backoff_seconds = min(backoff_seconds * 2, 30)
                    continue

            watcher = watch.Watch()
            with self._watcher_lock:
                self._active_watcher = watcher
            try:
                if watch_stream_count > 0:
                    METRICS.watch_reconnects_total.labels(informer=self.name).inc()
                watch_stream_count += 1
                stream = watcher.stream(
                    self.list_func,
                    resource_version=resource_version,
                    timeout_seconds=self.watch_timeout_seconds,
                    **self.list_kwargs,
                )

                for event in stream:
                    if self._should_stop(stop):
                        break

                    event_type = str(event.get("type", ""))
                    obj = event.get("object")
                    if event_type == "ERROR":
                        self.logger.warning(
                            "Informer %s: watch returned an error event, re-listing: %s",
                            self.name,
                            obj,
                        )
                        METRICS.watch_errors_total.labels(informer=self.name).inc()
                        needs_relist = True
                        break
                    if obj is None:
                        continue

                    version = object_resource_version(obj)
                    if version:
                        resource_version = version
                    if event_type == "BOOKMARK":
                        continue
                    self.handle_event(event_type, obj)

                backoff_seconds = 1
            except ApiException as exc:
                # 410 Gone means etcd compacted past our resourceVersion.
                if exc.status == 410:
                    self.logger.warning(
                        "Informer %s: watch resource version expired, re-listing", self.name
                    )
                    needs_relist = True
                    continue

                if self._access_denied(exc, "watch"):
                    break

                self.logger.exception("Informer %s: Kubernetes API watch error", self.name)
                METRICS.watch_errors_total.labels(informer=self.name).inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            except Exception:
                self.logger.exception("Informer %s: unexpected watch error", self.name)
                METRICS.watch_errors_total.labels(informer=self.name).inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            finally:
                watcher.stop()
                with self._watcher_lock:
                    if self._active_watcher is watcher:
                        self._active_watcher = None

        self.ready.clear()
