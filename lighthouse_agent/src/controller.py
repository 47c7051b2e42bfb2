from __future__ import annotations

import logging
import os
import threading
from collections.abc import Callable
from typing import Any, Protocol

from kubernetes.client import ApiException, CoreV1Api, CustomObjectsApi, DiscoveryV1Api

from lighthouse_agent.src.endpoints import EndpointController
from lighthouse_agent.src.informer import Informer
from lighthouse_agent.src.kube import delete_endpoint_slices, get_service, is_not_found
from lighthouse_agent.src.metrics import METRICS
from lighthouse_agent.src.model import (
    LIGHTHOUSE_GROUP,
    LIGHTHOUSE_VERSION,
    SERVICE_IMPORT_PLURAL,
    ObjectKeyError,
    ServiceImportSnapshot,
    deletion_handling_key,
    format_label_selector,
    meta_namespace_key,
    resolve_deleted_object,
)
from lighthouse_agent.src.stores import (
    DeletionSnapshotCache,
    EndpointControllerRegistry,
    EndpointWatcher,
)
from lighthouse_agent.src.workqueue import RateLimitingQueue


class NotificationSource(Protocol):
    """The part of :class:`Informer` the controller depends on."""

    ready: threading.Event

    def add_event_handler(
        self,
        on_add: Callable[[Any], None] | None = None,
        on_update: Callable[[Any, Any], None] | None = None,
        on_delete: Callable[[Any], None] | None = None,
    ) -> None: ...

    def run(self, stop_event: threading.Event | None = None) -> None: ...

    def request_stop(self) -> None: ...

    def get_by_key(self, key: str) -> tuple[Any | None, bool]: ...

    def list_keys(self) -> list[str]: ...


EndpointControllerFactory = Callable[..., EndpointWatcher]


class ServiceImportController:
    """Runs one endpoint controller per headless ServiceImport.

    Informer notifications are reduced to ``namespace/name`` keys on a
    rate-limited work queue; worker threads take keys off the queue and
    reconcile them against the informer cache:

    * Key present in the cache: start an endpoint controller for it unless
      one is already registered or the import is not ``Headless``.
    * Key gone from the cache: stop its endpoint controller and delete the
      EndpointSlices published for it.  The import itself can no longer be
      read at that point, so the delete handler records its last-known value
      in ``deleted_snapshots`` before queuing the key.

    The queue never hands the same key to two workers at once, which is what
    makes the unlocked check-then-act sequences on ``endpoint_controllers``
    and ``deleted_snapshots`` safe per key.

    Failure policy:

    * Cache read errors and API errors other than 404 are re-queued with
      backoff.
    * A missing origin service is not retried; a later update to the import
      triggers a new pass.
    * A service without a pod selector, or an endpoint controller that
      fails to start, is logged and dropped.
    * A failed EndpointSlice cleanup keeps the snapshot and is re-queued.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        discovery_api: DiscoveryV1Api,
        informer: NotificationSource,
        cluster_id: str,
        namespace: str,
        *,
        workers: int = 1,
        queue: RateLimitingQueue | None = None,
        deleted_snapshots: DeletionSnapshotCache | None = None,
        endpoint_controllers: EndpointControllerRegistry | None = None,
        endpoint_controller_factory: EndpointControllerFactory = EndpointController,
        logger: logging.Logger | None = None,
    ) -> None:
        if workers < 1:
            raise ValueError("workers must be >= 1")

        self.core_api = core_api
        self.discovery_api = discovery_api
        self.informer = informer
        self.cluster_id = cluster_id
        self.namespace = namespace
        self.workers = workers
        self.queue = queue if queue is not None else RateLimitingQueue(name="serviceimports")
        self.deleted_snapshots = (
            deleted_snapshots if deleted_snapshots is not None else DeletionSnapshotCache()
        )
        self.endpoint_controllers = (
            endpoint_controllers if endpoint_controllers is not None else EndpointControllerRegistry()
        )
        self.endpoint_controller_factory = endpoint_controller_factory
        self.logger = logger or logging.getLogger(__name__)

        self._started = False
        self._start_lock = threading.Lock()
        self._worker_threads: list[threading.Thread] = []
        self._stopped = threading.Event()

    @property
    def ready(self) -> threading.Event:
        return self.informer.ready

    # ------------------------------------------------------------------
    # Event handlers
    # ------------------------------------------------------------------

    def on_add(self, obj: Any) -> None:
        try:
            key = meta_namespace_key(obj)
        except ObjectKeyError:
            self.logger.error("Ignoring added ServiceImport without a name: %r", obj)
            return
        self.logger.debug("ServiceImport %s added", key)
        self.queue.add(key)

    def on_update(self, old: Any, new: Any) -> None:
        try:
            key = meta_namespace_key(new)
        except ObjectKeyError:
            self.logger.error("Ignoring updated ServiceImport without a name: %r", new)
            return
        self.logger.debug("ServiceImport %s updated", key)
        self.queue.add(key)

    def on_delete(self, obj: Any) -> None:
        try:
            key = deletion_handling_key(obj)
        except ObjectKeyError:
            self.logger.error("Ignoring deleted ServiceImport without a name: %r", obj)
            return
        self.logger.info("ServiceImport %s deleted", key)

        snapshot = resolve_deleted_object(obj)
        if snapshot is None:
            self.logger.error("Failed to get deleted ServiceImport object for key %s: %r", key, obj)
            return
        if not snapshot.is_headless:
            return

        self.deleted_snapshots.store(key, snapshot)
        self.queue.add_rate_limited(key)

    # ------------------------------------------------------------------
    # Worker
    # ------------------------------------------------------------------

    def process_next_work_item(self) -> bool:
        """Reconcile one key; returns ``False`` once the queue has shut down."""
        key, shutting_down = self.queue.get()
        if shutting_down:
            return False

        try:
            self._reconcile(str(key))
        except Exception:
            self.logger.exception("Unexpected error reconciling ServiceImport %s", key)
            METRICS.reconciles_total.labels(result="error").inc()
            self.queue.add_rate_limited(key)
        finally:
            self.queue.done(key)
        return True

    def _run_worker(self) -> None:
        while self.process_next_work_item():
            pass
        self.logger.info("ServiceImport worker stopped")

    def _reconcile(self, key: str) -> None:
        try:
            obj, exists = self.informer.get_by_key(key)
        except Exception:
            self.logger.exception(
                "Error retrieving ServiceImport %s from the cache (cached keys: %s)",
                key,
                self.informer.list_keys(),
            )
            METRICS.reconciles_total.labels(result="requeued").inc()
            self.queue.add_rate_limited(key)
            return

        self.queue.forget(key)

        if exists:
            self.service_import_created_or_updated(obj, key)
        else:
            self.service_import_deleted(key)

    def service_import_created_or_updated(self, obj: Any, key: str) -> None:
        if key in self.endpoint_controllers:
            self.logger.debug("The endpoint controller is already running for %s", key)
            return

        snapshot = ServiceImportSnapshot.from_object(obj)
        if not snapshot.is_headless:
            return

        service_namespace = snapshot.origin_namespace
        service_name = snapshot.origin_name
        try:
            service = get_service(self.core_api, service_namespace, service_name)
        except ApiException as exc:
            if is_not_found(exc):
                self.logger.info(
                    "Origin service %s/%s for ServiceImport %s does not exist yet",
                    service_namespace,
                    service_name,
                    key,
                )
                METRICS.reconciles_total.labels(result="origin_missing").inc()
                return

            self.queue.add_rate_limited(key)
            self.logger.error(
                "Error retrieving the service %s from the namespace %s: %s",
                service_name,
                service_namespace,
                exc,
            )
            METRICS.reconciles_total.labels(result="requeued").inc()
            return

        selector = getattr(getattr(service, "spec", None), "selector", None)
        if not selector:
            self.logger.error(
                "The service %s/%s without a Selector is not supported",
                service_namespace,
                service_name,
            )
            METRICS.reconciles_total.labels(result="unsupported").inc()
            return

        label_selector = format_label_selector(selector)
        try:
            endpoint_controller = self.endpoint_controller_factory(
                self.core_api,
                self.discovery_api,
                snapshot.uid,
                snapshot.name,
                self.cluster_id,
                namespace=snapshot.namespace,
                source_namespace=service_namespace,
            )
        except Exception:
            self.logger.exception(
                "Error creating Endpoint controller for service %s/%s",
                service_namespace,
                service_name,
            )
            METRICS.reconciles_total.labels(result="failed").inc()
            return

        try:
            endpoint_controller.start(label_selector)
        except Exception:
            self.logger.exception(
                "Error starting Endpoint controller for service %s/%s",
                service_namespace,
                service_name,
            )
            METRICS.reconciles_total.labels(result="failed").inc()
            return

        self.endpoint_controllers.store(key, endpoint_controller)
        METRICS.endpoint_controllers.set(len(self.endpoint_controllers))
        METRICS.reconciles_total.labels(result="started").inc()
        self.logger.info("Endpoint controller started for ServiceImport %s", key)

    def _stop_endpoint_controller(self, key: str) -> None:
        endpoint_controller = self.endpoint_controllers.load(key)
        if endpoint_controller is None:
            return
        try:
            endpoint_controller.stop()
        except Exception:
            self.logger.exception("Error stopping Endpoint controller for %s", key)
        self.endpoint_controllers.delete(key)
        METRICS.endpoint_controllers.set(len(self.endpoint_controllers))

    def service_import_deleted(self, key: str) -> None:
        snapshot = self.deleted_snapshots.load(key)
        if snapshot is None:
            self.logger.warning("No endpoint controller found for %s", key)
            return

        self.deleted_snapshots.delete(key)
        self._stop_endpoint_controller(key)

        # Matches on the import's own app label, not the selector the endpoint
        # controller was started with.
        label_selector = format_label_selector({"app": snapshot.labels.get("app", "")})
        try:
            delete_endpoint_slices(self.discovery_api, snapshot.namespace, label_selector)
        except Exception as exc:
            if not is_not_found(exc):
                self.logger.error(
                    "Error deleting EndpointSlices for %s (selector=%s): %s",
                    key,
                    label_selector,
                    exc,
                )
                METRICS.cleanup_failures_total.inc()
                METRICS.reconciles_total.labels(result="requeued").inc()
                self.deleted_snapshots.store(key, snapshot)
                self.queue.add_rate_limited(key)
                return

        METRICS.reconciles_total.labels(result="cleaned").inc()
        self.logger.info("Cleaned up endpoints for deleted ServiceImport %s", key)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self, stop_event: threading.Event) -> None:
        """Wire the informer, launch the workers and return immediately.

        Raises ``RuntimeError`` when called twice.  Setting *stop_event* stops
        the informer and shuts the queue down; workers exit once the queue is
        drained, after which the remaining endpoint controllers are stopped.
        """
        with self._start_lock:
            if self._started:
                raise RuntimeError("ServiceImport controller already started")
            self._started = True

        self.informer.add_event_handler(
            on_add=self.on_add,
            on_update=self.on_update,
            on_delete=self.on_delete,
        )

        threading.Thread(
            target=self.informer.run,
            args=(stop_event,),
            name="serviceimport-informer",
            daemon=True,
        ).start()

        for index in range(self.workers):
            worker = threading.Thread(
                target=self._run_worker,
                name=f"serviceimport-worker-{index}",
                daemon=True,
            )
            worker.start()
            self._worker_threads.append(worker)

        threading.Thread(
            target=self._stop_on_signal,
            args=(stop_event,),
            name="serviceimport-shutdown",
            daemon=True,
        ).start()

        self.logger.info(
            "ServiceImport controller started (namespace=%s, cluster=%s, workers=%d)",
            self.namespace,
            self.cluster_id,
            self.workers,
        )

    def _stop_on_signal(self, stop_event: threading.Event) -> None:
        stop_event.wait()
        self.informer.request_stop()
        self.queue.shut_down()

        for worker in self._worker_threads:
            worker.join()

        for key, endpoint_controller in self.endpoint_controllers.pop_all().items():
            try:
                endpoint_controller.stop()
            except Exception:
                self.logger.exception("Error stopping Endpoint controller for %s", key)
        METRICS.endpoint_controllers.set(0)

        self._stopped.set()
        self.logger.info("ServiceImport controller stopped")

    def join(self, timeout: float | None = None) -> bool:
        """Wait for shutdown to complete; returns ``False`` on timeout."""
        return self._stopped.wait(timeout=timeout)


def env_int(
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int:
    raw = os.getenv(name)
    if raw is None:
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ValueError(f"{name} must be an integer") from exc

    if minimum is not None and value < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {value}")
    return value


def build_controller_from_env(
    core_api: CoreV1Api,
    discovery_api: DiscoveryV1Api,
    custom_api: CustomObjectsApi,
) -> ServiceImportController:
    """Construct a :class:`ServiceImportController` from environment variables.

    Environment variables (with defaults):
        ``CLUSTER_ID``: identity of this cluster (required).
        ``WATCH_NAMESPACE``: namespace holding ServiceImports (``submariner-operator``).
        ``WORKERS``: number of reconciliation worker threads (``1``).
        ``WATCH_TIMEOUT_SECONDS``: server-side timeout of each watch stream (``30``).
    """
    cluster_id = os.getenv("CLUSTER_ID", "")
    if not cluster_id.strip():
        raise ValueError("CLUSTER_ID must be a non-empty string")

    namespace = os.getenv("WATCH_NAMESPACE", "submariner-operator")
    if not namespace.strip():
        raise ValueError("WATCH_NAMESPACE must be a non-empty string")

    workers = env_int("WORKERS", 1, minimum=1)
    watch_timeout_seconds = env_int("WATCH_TIMEOUT_SECONDS", 30, minimum=1)

    informer = Informer(
        custom_api.list_namespaced_custom_object,
        name="serviceimports",
        list_kwargs={
            "group": LIGHTHOUSE_GROUP,
            "version": LIGHTHOUSE_VERSION,
            "namespace": namespace,
            "plural": SERVICE_IMPORT_PLURAL,
        },
        watch_timeout_seconds=watch_timeout_seconds,
    )

    return ServiceImportController(
        core_api=core_api,
        discovery_api=discovery_api,
        informer=informer,
        cluster_id=cluster_id.strip(),
        namespace=namespace,
        workers=workers,
    )
