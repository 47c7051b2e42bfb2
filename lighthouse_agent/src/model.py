from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any

LIGHTHOUSE_GROUP = "lighthouse.submariner.io"
LIGHTHOUSE_VERSION = "v2alpha1"
SERVICE_IMPORT_PLURAL = "serviceimports"
SERVICE_IMPORT_KIND = "ServiceImport"

ORIGIN_NAMESPACE_ANNOTATION = "origin-namespace"
ORIGIN_NAME_ANNOTATION = "origin-name"


class ObjectKeyError(ValueError):
    """Raised when an object carries no usable ``metadata.name``."""


class ServiceImportType(str, Enum):
    HEADLESS = "Headless"
    CLUSTERSET_IP = "ClusterSetIP"

    @classmethod
    def parse(cls, raw: Any) -> ServiceImportType | None:
        try:
            return cls(raw)
        except ValueError:
            return None


@dataclass(frozen=True)
class DeletedFinalStateUnknown:
    """Tombstone delivered on delete when the final state of an object was missed.

    Produced by the informer when a re-list no longer contains an object it had
    cached; ``obj`` is the last value observed before the gap.
    """

    key: str
    obj: Any


def _field(obj: Any, dict_key: str, attr: str) -> Any:
    if obj is None:
        return None
    if isinstance(obj, Mapping):
        return obj.get(dict_key)
    return getattr(obj, attr, None)


def object_metadata(obj: Any) -> Any:
    return _field(obj, "metadata", "metadata")


def object_namespace(obj: Any) -> str | None:
    return _field(object_metadata(obj), "namespace", "namespace")


def object_name(obj: Any) -> str | None:
    return _field(object_metadata(obj), "name", "name")


def object_resource_version(obj: Any) -> str | None:
    return _field(object_metadata(obj), "resourceVersion", "resource_version")


def meta_namespace_key(obj: Any) -> str:
    """Return the ``namespace/name`` cache key of a dict or typed Kubernetes object."""
    name = object_name(obj)
    if not name:
        raise ObjectKeyError(f"object has no metadata.name: {obj!r}")
    namespace = object_namespace(obj)
    if namespace:
        return f"{namespace}/{name}"
    return name


def deletion_handling_key(obj: Any) -> str:
    """Like :func:`meta_namespace_key` but returns the stored key of a tombstone."""
    if isinstance(obj, DeletedFinalStateUnknown):
        return obj.key
    return meta_namespace_key(obj)


def format_label_selector(labels: Mapping[str, str]) -> str:
    """Render a label set as an equality selector (``a=1,b=2``), sorted by key."""
    return ",".join(f"{key}={labels[key]}" for key in sorted(labels))


@dataclass(frozen=True)
class ServiceImportSnapshot:
    """Immutable copy of a ServiceImport taken from the cache or from a delete event."""

    namespace: str
    name: str
    uid: str
    type: ServiceImportType | None
    origin_namespace: str
    origin_name: str
    labels: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))

    @property
    def is_headless(self) -> bool:
        return self.type is ServiceImportType.HEADLESS

    @classmethod
    def from_object(cls, obj: Any) -> ServiceImportSnapshot:
        """Build a snapshot from a ServiceImport custom object (dict) or typed model.

        Raises :class:`ObjectKeyError` when the object has no name.
        """
        metadata = object_metadata(obj)
        name = object_name(obj)
        if not name:
            raise ObjectKeyError(f"service import has no metadata.name: {obj!r}")

        spec = _field(obj, "spec", "spec")
        annotations = _field(metadata, "annotations", "annotations") or {}
        labels = _field(metadata, "labels", "labels") or {}

        return cls(
            namespace=object_namespace(obj) or "",
            name=name,
            uid=str(_field(metadata, "uid", "uid") or ""),
            type=ServiceImportType.parse(_field(spec, "type", "type")),
            origin_namespace=str(annotations.get(ORIGIN_NAMESPACE_ANNOTATION, "")),
            origin_name=str(annotations.get(ORIGIN_NAME_ANNOTATION, "")),
            labels=MappingProxyType({str(k): str(v) for k, v in labels.items()}),
        )


def resolve_deleted_object(obj: Any) -> ServiceImportSnapshot | None:
    """Resolve a delete notification payload into a snapshot.

    The payload is either the deleted object itself or a
    :class:`DeletedFinalStateUnknown` wrapping its last-known value.  Returns
    ``None`` when neither yields a service import.
    """
    if isinstance(obj, DeletedFinalStateUnknown):
        obj = obj.obj
    if obj is None or isinstance(obj, DeletedFinalStateUnknown):
        return None
    if object_metadata(obj) is None:
        return None
    try:
        return ServiceImportSnapshot.from_object(obj)
    except ObjectKeyError:
        return None
