from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Info


@dataclass(frozen=True)
class ControllerMetrics:
    """Prometheus metrics exported by the agent on ``/metrics``.

    Queue metrics carry a ``name`` label and informer metrics an ``informer``
    label so the ServiceImport controller and the per-import endpoint
    controllers can be told apart.
    """

    reconciles_total: Counter = field(
        default_factory=lambda: Counter(
            "lighthouse_agent_serviceimport_reconciles_total",
            "Total ServiceImport reconciliations by outcome",
            ["result"],
        )
    )
    endpoint_controllers: Gauge = field(
        default_factory=lambda: Gauge(
            "lighthouse_agent_endpoint_controllers",
            "Number of endpoint controllers currently running",
        )
    )
    cleanup_failures_total: Counter = field(
        default_factory=lambda: Counter(
            "lighthouse_agent_cleanup_failures_total",
            "Total failed EndpointSlice cleanups for deleted ServiceImports",
        )
    )
    endpoint_slice_publish_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "lighthouse_agent_endpoint_slice_publish_errors_total",
            "Total failed EndpointSlice publish attempts",
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "lighthouse_agent_watch_errors_total",
            "Total Kubernetes watch errors",
            ["informer"],
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "lighthouse_agent_watch_reconnects_total",
            "Total watch stream reconnects after the initial connection",
            ["informer"],
        )
    )
    queue_depth: Gauge = field(
        default_factory=lambda: Gauge(
            "lighthouse_agent_workqueue_depth",
            "Current number of keys waiting in the work queue",
            ["name"],
        )
    )
    queue_adds_total: Counter = field(
        default_factory=lambda: Counter(
            "lighthouse_agent_workqueue_adds_total",
            "Total keys added to the work queue",
            ["name"],
        )
    )
    queue_retries_total: Counter = field(
        default_factory=lambda: Counter(
            "lighthouse_agent_workqueue_retries_total",
            "Total rate-limited re-queues",
            ["name"],
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "lighthouse_agent",
            "Build information for the agent",
        )
    )


METRICS = ControllerMetrics()
