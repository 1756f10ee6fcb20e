from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Histogram, Info


@dataclass(frozen=True)
class OperatorMetrics:
    """Prometheus metrics exported by the operator on ``/metrics``.

    Reconcile counters carry a ``reason`` label matching the request reason
    that triggered the run, so probe-driven churn can be told apart from
    user-driven spec changes.
    """

    reconcile_total: Counter = field(
        default_factory=lambda: Counter(
            "codeserver_reconcile_total",
            "Total reconciliations by triggering reason and outcome",
            ["reason", "result"],
        )
    )
    reconcile_duration_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "codeserver_reconcile_duration_seconds",
            "Seconds spent in a single reconciliation",
            buckets=(0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30, float("inf")),
        )
    )
    workqueue_depth: Gauge = field(
        default_factory=lambda: Gauge(
            "codeserver_workqueue_depth",
            "Keys waiting in the reconcile work queue",
        )
    )
    workqueue_retries_total: Counter = field(
        default_factory=lambda: Counter(
            "codeserver_workqueue_retries_total",
            "Total rate-limited re-adds after failed reconciliations",
        )
    )
    probes_total: Counter = field(
        default_factory=lambda: Counter(
            "codeserver_probes_total",
            "Total liveness probes issued by the watcher",
            ["result"],
        )
    )
    watcher_pass_duration_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "codeserver_watcher_pass_duration_seconds",
            "Seconds spent probing all tracked instances in one tick",
            buckets=(0.1, 0.5, 1, 2, 5, 10, 20, 30, 60, float("inf")),
        )
    )
    requests_emitted_total: Counter = field(
        default_factory=lambda: Counter(
            "codeserver_watcher_requests_emitted_total",
            "Reconcile requests accepted by the request channel",
            ["reason"],
        )
    )
    requests_dropped_total: Counter = field(
        default_factory=lambda: Counter(
            "codeserver_watcher_requests_dropped_total",
            "Reconcile requests dropped because the request channel was full",
            ["reason"],
        )
    )
    informer_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "codeserver_informer_errors_total",
            "Total CodeServer list/watch errors",
        )
    )
    instances_by_phase: Gauge = field(
        default_factory=lambda: Gauge(
            "codeserver_instances",
            "Instances seen by the last watcher pass, by phase",
            ["phase"],
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "codeserver_operator",
            "Build information for the operator",
        )
    )


METRICS = OperatorMetrics()
