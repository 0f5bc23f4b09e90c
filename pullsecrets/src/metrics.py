from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Histogram, Info


@dataclass(frozen=True)
class ControllerMetrics:
    """Prometheus metrics exported by the controller on ``/metrics``.

    Queue metrics carry a ``queue`` label and reconcile metrics a
    ``controller`` label so the service account and namespace loops can be
    alerted on independently.
    """

    workqueue_depth: Gauge = field(
        default_factory=lambda: Gauge(
            "pullsecrets_workqueue_depth",
            "Current number of keys waiting in the work queue",
            ["queue"],
        )
    )
    workqueue_adds_total: Counter = field(
        default_factory=lambda: Counter(
            "pullsecrets_workqueue_adds_total",
            "Total keys accepted by the work queue",
            ["queue"],
        )
    )
    workqueue_retries_total: Counter = field(
        default_factory=lambda: Counter(
            "pullsecrets_workqueue_retries_total",
            "Total rate-limited requeues scheduled after failed syncs",
            ["queue"],
        )
    )
    reconcile_total: Counter = field(
        default_factory=lambda: Counter(
            "pullsecrets_reconcile_total",
            "Total sync handler invocations by outcome",
            ["controller", "result"],
        )
    )
    reconcile_duration_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "pullsecrets_reconcile_duration_seconds",
            "Seconds spent in a single sync handler invocation",
            ["controller"],
            buckets=(0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, float("inf")),
        )
    )
    reconcile_dropped_total: Counter = field(
        default_factory=lambda: Counter(
            "pullsecrets_reconcile_dropped_total",
            "Total keys dropped after exhausting their retry budget",
            ["controller"],
        )
    )
    informer_watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "pullsecrets_informer_watch_errors_total",
            "Total Kubernetes list/watch errors",
            ["resource"],
        )
    )
    informer_relists_total: Counter = field(
        default_factory=lambda: Counter(
            "pullsecrets_informer_relists_total",
            "Total full re-lists after the initial listing",
            ["resource"],
        )
    )
    informer_synced: Gauge = field(
        default_factory=lambda: Gauge(
            "pullsecrets_informer_synced",
            "Whether the informer cache has completed its initial list (1=yes, 0=no)",
            ["resource"],
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "pullsecrets",
            "Build information for the controller",
        )
    )


METRICS = ControllerMetrics()
