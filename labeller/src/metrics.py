from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Info


@dataclass(frozen=True)
class LabellerMetrics:
    """Prometheus metrics exported by the labeller on ``/metrics``.

    Per-kind counters use a ``kind`` label holding the plural resource name
    (``deployments``, ``customresourcedefinitions`` ...).
    """

    labels_applied_total: Counter = field(
        default_factory=lambda: Counter(
            "ownership_labeller_labels_applied_total",
            "Total ownership labels applied or patched onto objects",
            ["kind"],
        )
    )
    label_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "ownership_labeller_label_errors_total",
            "Total failed attempts to apply or patch the ownership label",
            ["kind"],
        )
    )
    list_failures_total: Counter = field(
        default_factory=lambda: Counter(
            "ownership_labeller_list_failures_total",
            "Total listing failures while checking for labelling completion",
            ["kind"],
        )
    )
    completion_checks_total: Counter = field(
        default_factory=lambda: Counter(
            "ownership_labeller_completion_checks_total",
            "Total labelling completion checks by outcome",
            ["kind", "complete"],
        )
    )
    retry_total: Counter = field(
        default_factory=lambda: Counter(
            "ownership_labeller_retry_total",
            "Total reconcile retries scheduled after failed label submissions",
            ["kind"],
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "ownership_labeller_watch_errors_total",
            "Total Kubernetes list/watch errors",
            ["kind"],
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "ownership_labeller_watch_reconnects_total",
            "Total watch stream reconnects after the initial connection",
            ["kind"],
        )
    )
    kinds_complete: Gauge = field(
        default_factory=lambda: Gauge(
            "ownership_labeller_kinds_complete",
            "Number of tracked kinds whose eligible objects are all labelled",
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "ownership_labeller",
            "Build information for the labeller",
        )
    )


METRICS = LabellerMetrics()
