from __future__ import annotations

import threading
from types import SimpleNamespace
from typing import Any
from unittest.mock import MagicMock, patch

import pytest
from kubernetes.client import ApiException

from lighthouse_agent.src.endpoints import EndpointController


def make_pod(
    name: str,
    ip: str | None,
    ready: bool = True,
    node_name: str | None = "node-1",
) -> SimpleNamespace:
    return SimpleNamespace(
        metadata=SimpleNamespace(name=name, namespace="default", resource_version="1"),
        spec=SimpleNamespace(hostname=None, node_name=node_name),
        status=SimpleNamespace(
            pod_ip=ip,
            conditions=[SimpleNamespace(type="Ready", status="True" if ready else "False")],
        ),
    )


def _make_controller(
    core_api: Any = None,
    discovery_api: Any = None,
) -> EndpointController:
    return EndpointController(
        core_api or MagicMock(),
        discovery_api or MagicMock(),
        "uid-1",
        "nginx-default-cluster2",
        "cluster1",
        namespace="submariner-operator",
        source_namespace="default",
    )


@pytest.mark.parametrize(
    ("uid", "name", "cluster_id", "message"),
    [
        ("", "nginx", "cluster1", "service_import_uid"),
        ("uid", "", "cluster1", "service_import_name"),
        ("uid", "nginx", "", "cluster_id"),
    ],
)
def test_constructor_rejects_missing_identity(
    uid: str, name: str, cluster_id: str, message: str
) -> None:
    with pytest.raises(ValueError, match=message):
        EndpointController(
            MagicMock(),
            MagicMock(),
            uid,
            name,
            cluster_id,
            namespace="ns",
            source_namespace="default",
        )


def test_build_endpoint_slice_labels_and_owner() -> None:
    controller = _make_controller()

    body = controller.build_endpoint_slice([])

    metadata = body["metadata"]
    assert metadata["name"] == "nginx-default-cluster2-cluster1"
    assert metadata["namespace"] == "submariner-operator"
    assert metadata["labels"]["app"] == "nginx-default-cluster2"
    assert metadata["labels"]["multicluster.kubernetes.io/source-cluster"] == "cluster1"
    assert metadata["ownerReferences"] == [
        {
            "apiVersion": "lighthouse.submariner.io/v2alpha1",
            "kind": "ServiceImport",
            "name": "nginx-default-cluster2",
            "uid": "uid-1",
        }
    ]
    assert body["endpoints"] == []


def test_build_endpoint_slice_lists_pods_with_ip() -> None:
    controller = _make_controller()

    body = controller.build_endpoint_slice(
        [
            make_pod("web-1", "10.0.0.2", ready=False, node_name=None),
            make_pod("web-0", "10.0.0.1"),
            make_pod("pending", None),
        ]
    )

    assert body["endpoints"] == [
        {
            "addresses": ["10.0.0.1"],
            "conditions": {"ready": True},
            "hostname": "web-0",
            "nodeName": "node-1",
        },
        {
            "addresses": ["10.0.0.2"],
            "conditions": {"ready": False},
            "hostname": "web-1",
        },
    ]


def test_start_watches_pods_with_selector_and_stop_ends_informer() -> None:
    core_api = MagicMock()
    core_api.list_namespaced_pod.return_value = SimpleNamespace(
        metadata=SimpleNamespace(resource_version="1"), items=[]
    )
    controller = _make_controller(core_api=core_api)
    streaming = threading.Event()
    interrupted = threading.Event()
    mock_watcher = MagicMock()

    def stream(*args: Any, **kwargs: Any) -> Any:
        streaming.set()
        interrupted.wait(timeout=2)
        return iter([])

    mock_watcher.stream.side_effect = stream
    mock_watcher.stop.side_effect = interrupted.set

    with patch("lighthouse_agent.src.informer.watch.Watch", return_value=mock_watcher):
        controller.start("app=nginx")
        assert streaming.wait(timeout=2)
        controller.stop()
        controller._thread.join(timeout=2)

    core_api.list_namespaced_pod.assert_called_once_with(
        namespace="default", label_selector="app=nginx"
    )
    stream_kwargs = mock_watcher.stream.call_args.kwargs
    assert stream_kwargs["label_selector"] == "app=nginx"
    assert not controller._thread.is_alive()


def test_start_twice_raises() -> None:
    controller = _make_controller()

    with patch("lighthouse_agent.src.endpoints.threading.Thread"):
        controller.start("app=nginx")
        with pytest.raises(RuntimeError, match="already started"):
            controller.start("app=nginx")


def test_stop_is_idempotent_and_safe_before_start() -> None:
    controller = _make_controller()

    controller.stop()
    controller.stop()


def test_publish_applies_slice_for_cached_pods() -> None:
    discovery_api = MagicMock()
    controller = _make_controller(discovery_api=discovery_api)

    with patch("lighthouse_agent.src.endpoints.threading.Thread"):
        controller.start("app=nginx")
    controller._informer.handle_event("ADDED", make_pod("web-0", "10.0.0.1"))

    body = discovery_api.create_namespaced_endpoint_slice.call_args.kwargs["body"]
    assert body["endpoints"][0]["addresses"] == ["10.0.0.1"]
    assert discovery_api.create_namespaced_endpoint_slice.call_args.kwargs["namespace"] == (
        "submariner-operator"
    )


def test_publish_failure_is_logged_not_raised() -> None:
    discovery_api = MagicMock()
    discovery_api.create_namespaced_endpoint_slice.side_effect = ApiException(
        status=500, reason="boom"
    )
    controller = _make_controller(discovery_api=discovery_api)

    with patch("lighthouse_agent.src.endpoints.threading.Thread"):
        controller.start("app=nginx")
    controller.publish()

    discovery_api.create_namespaced_endpoint_slice.assert_called_once()


def test_stop_waits_for_in_flight_publish() -> None:
    discovery_api = MagicMock()
    applying = threading.Event()
    release = threading.Event()

    def slow_create(**kwargs: Any) -> None:
        applying.set()
        release.wait(timeout=2)

    discovery_api.create_namespaced_endpoint_slice.side_effect = slow_create
    controller = _make_controller(discovery_api=discovery_api)
    with patch("lighthouse_agent.src.endpoints.threading.Thread"):
        controller.start("app=nginx")

    publisher = threading.Thread(target=controller.publish)
    publisher.start()
    assert applying.wait(timeout=2)

    stopper = threading.Thread(target=controller.stop)
    stopper.start()
    stopper.join(timeout=0.1)
    assert stopper.is_alive()

    release.set()
    stopper.join(timeout=2)
    publisher.join(timeout=2)
    assert not stopper.is_alive()

    controller.publish()
    discovery_api.create_namespaced_endpoint_slice.assert_called_once()


def test_publish_after_stop_is_a_no_op() -> None:
    discovery_api = MagicMock()
    controller = _make_controller(discovery_api=discovery_api)

    with patch("lighthouse_agent.src.endpoints.threading.Thread"):
        controller.start("app=nginx")
    controller.stop()
    controller.publish()

    discovery_api.create_namespaced_endpoint_slice.assert_not_called()
