from __future__ import annotations

import logging
from typing import Any

from kubernetes import client, config
from kubernetes.client import ApiException, CoreV1Api, CustomObjectsApi, DiscoveryV1Api, V1Service
from kubernetes.config.config_exception import ConfigException

LOGGER = logging.getLogger(__name__)


def load_kube_configuration() -> None:
    """Load Kubernetes client configuration.

    Attempts in-cluster config first (running inside a pod), falling back
    to the local kubeconfig for development.
    """
    try:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        config.load_kube_config()
        LOGGER.info("Loaded local kubeconfig")


def build_clients() -> tuple[CoreV1Api, DiscoveryV1Api, CustomObjectsApi]:
    """Return CoreV1, DiscoveryV1 and CustomObjects API clients using the active kube configuration."""
    return client.CoreV1Api(), client.DiscoveryV1Api(), client.CustomObjectsApi()


def is_not_found(exc: BaseException) -> bool:
    return isinstance(exc, ApiException) and exc.status == 404


def get_service(core_api: CoreV1Api, namespace: str, name: str) -> V1Service:
    """Read a Service; ``ApiException`` (404 included) propagates to the caller."""
    return core_api.read_namespaced_service(name=name, namespace=namespace)


def delete_endpoint_slices(discovery_api: DiscoveryV1Api, namespace: str, label_selector: str) -> None:
    """Delete every EndpointSlice in *namespace* matching *label_selector*.

    Deleting an empty collection succeeds, so repeated cleanups are safe.
    """
    discovery_api.delete_collection_namespaced_endpoint_slice(
        namespace=namespace,
        label_selector=label_selector,
    )


def apply_endpoint_slice(discovery_api: DiscoveryV1Api, namespace: str, body: dict[str, Any]) -> None:
    """Create an EndpointSlice, replacing the existing one on ``409 Conflict``.

    The replace carries the live ``resourceVersion`` so a concurrent writer
    causes a conflict instead of a silent overwrite.
    """
    try:
        discovery_api.create_namespaced_endpoint_slice(namespace=namespace, body=body)
        return
    except ApiException as exc:
        if exc.status != 409:
            raise

    name = body["metadata"]["name"]
    existing = discovery_api.read_namespaced_endpoint_slice(name=name, namespace=namespace)
    resource_version = getattr(getattr(existing, "metadata", None), "resource_version", None)
    replacement = {**body, "metadata": {**body["metadata"], "resourceVersion": resource_version}}
    discovery_api.replace_namespaced_endpoint_slice(name=name, namespace=namespace, body=replacement)
