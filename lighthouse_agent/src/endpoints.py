from __future__ import annotations

import logging
import threading
from typing import Any

from kubernetes.client import ApiException, CoreV1Api, DiscoveryV1Api

from lighthouse_agent.src.informer import Informer
from lighthouse_agent.src.kube import apply_endpoint_slice
from lighthouse_agent.src.metrics import METRICS
from lighthouse_agent.src.model import (
    LIGHTHOUSE_GROUP,
    LIGHTHOUSE_VERSION,
    SERVICE_IMPORT_KIND,
    object_name,
)

MANAGED_BY_LABEL = "endpointslice.kubernetes.io/managed-by"
MANAGED_BY_VALUE = "lighthouse-agent.submariner.io"
SOURCE_CLUSTER_LABEL = "multicluster.kubernetes.io/source-cluster"


def _pod_ready(pod: Any) -> bool:
    conditions = getattr(getattr(pod, "status", None), "conditions", None) or []
    return any(
        getattr(condition, "type", None) == "Ready" and getattr(condition, "status", None) == "True"
        for condition in conditions
    )


class EndpointController:
    """Publishes the pods behind one headless ServiceImport as an EndpointSlice.

    Watches pods matching the origin service's selector in
    ``source_namespace`` and keeps a single EndpointSlice named
    ``<service import>-<cluster id>`` in ``namespace`` up to date.  The slice
    is labelled ``app=<service import>`` and owned by the ServiceImport, so
    removing the import garbage-collects it even if explicit cleanup fails.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        discovery_api: DiscoveryV1Api,
        service_import_uid: str,
        service_import_name: str,
        cluster_id: str,
        *,
        namespace: str,
        source_namespace: str,
        watch_timeout_seconds: int = 30,
        logger: logging.Logger | None = None,
    ) -> None:
        if not service_import_uid:
            raise ValueError("service_import_uid must be a non-empty string")
        if not service_import_name:
            raise ValueError("service_import_name must be a non-empty string")
        if not cluster_id:
            raise ValueError("cluster_id must be a non-empty string")

        self.core_api = core_api
        self.discovery_api = discovery_api
        self.service_import_uid = service_import_uid
        self.service_import_name = service_import_name
        self.cluster_id = cluster_id
        self.namespace = namespace
        self.source_namespace = source_namespace
        self.watch_timeout_seconds = watch_timeout_seconds
        self.logger = logger or logging.getLogger(__name__)

        self.slice_name = f"{service_import_name}-{cluster_id}"
        self._stop_event = threading.Event()
        self._informer: Informer | None = None
        self._thread: threading.Thread | None = None
        self._publish_lock = threading.Lock()

    def start(self, label_selector: str) -> None:
        if self._informer is not None:
            raise RuntimeError(f"endpoint controller for {self.service_import_name} already started")

        informer = Informer(
            self.core_api.list_namespaced_pod,
            name=f"pods-{self.service_import_name}",
            list_kwargs={"namespace": self.source_namespace, "label_selector": label_selector},
            watch_timeout_seconds=self.watch_timeout_seconds,
            logger=self.logger,
        )
        informer.add_event_handler(
            on_add=lambda pod: self.publish(),
            on_update=lambda old, new: self.publish(),
            on_delete=lambda pod: self.publish(),
        )
        self._informer = informer
        self._thread = threading.Thread(
            target=informer.run,
            args=(self._stop_event,),
            name=f"endpoint-controller-{self.service_import_name}",
            daemon=True,
        )
        self._thread.start()
        self.logger.info(
            "Started endpoint controller for %s (selector=%s, source namespace=%s)",
            self.service_import_name,
            label_selector,
            self.source_namespace,
        )

    def stop(self) -> None:
        if self._stop_event.is_set():
            return
        self._stop_event.set()
        if self._informer is not None:
            self._informer.request_stop()
        # Waits out an in-flight publish so no slice is written after stop returns.
        with self._publish_lock:
            pass
        self.logger.info("Stopped endpoint controller for %s", self.service_import_name)

    def build_endpoint_slice(self, pods: list[Any]) -> dict[str, Any]:
        endpoints = []
        for pod in sorted(pods, key=lambda p: object_name(p) or ""):
            pod_ip = getattr(getattr(pod, "status", None), "pod_ip", None)
            if not pod_ip:
                continue
            endpoint: dict[str, Any] = {
                "addresses": [pod_ip],
                "conditions": {"ready": _pod_ready(pod)},
            }
            hostname = getattr(getattr(pod, "spec", None), "hostname", None) or object_name(pod)
            if hostname:
                endpoint["hostname"] = hostname
            node_name = getattr(getattr(pod, "spec", None), "node_name", None)
            if node_name:
                endpoint["nodeName"] = node_name
            endpoints.append(endpoint)

        return {
            "apiVersion": "discovery.k8s.io/v1",
            "kind": "EndpointSlice",
            "metadata": {
                "name": self.slice_name,
                "namespace": self.namespace,
                "labels": {
                    "app": self.service_import_name,
                    SOURCE_CLUSTER_LABEL: self.cluster_id,
                    MANAGED_BY_LABEL: MANAGED_BY_VALUE,
                },
                "ownerReferences": [
                    {
                        "apiVersion": f"{LIGHTHOUSE_GROUP}/{LIGHTHOUSE_VERSION}",
                        "kind": SERVICE_IMPORT_KIND,
                        "name": self.service_import_name,
                        "uid": self.service_import_uid,
                    }
                ],
            },
            "addressType": "IPv4",
            "endpoints": endpoints,
        }

    def publish(self) -> None:
        if self._stop_event.is_set() or self._informer is None:
            return
        with self._publish_lock:
            if self._stop_event.is_set():
                return
            body = self.build_endpoint_slice(self._informer.list())
            try:
                apply_endpoint_slice(self.discovery_api, self.namespace, body)
            except ApiException:
                METRICS.endpoint_slice_publish_errors_total.inc()
                self.logger.exception(
                    "Failed to publish EndpointSlice %s/%s", self.namespace, self.slice_name
                )
                return
        self.logger.debug(
            "Published EndpointSlice %s/%s with %d endpoint(s)",
            self.namespace,
            self.slice_name,
            len(body["endpoints"]),
        )
