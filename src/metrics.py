"""Prometheus metrics for the GitTrackObject controller.

Metrics live on an explicitly passed registry so that tests can build an
isolated set and reset it between cases.
"""

from prometheus_client import REGISTRY, CollectorRegistry, Counter, Gauge, Histogram, Info

from models import ObjectKey, TrackingKind


class ControllerMetrics:
    """All metrics the controller exports, bound to one registry."""

    def __init__(self, registry: CollectorRegistry = REGISTRY) -> None:
        self.registry = registry

        # Per tracking resource: 1 when the child matches desired state
        self.in_sync = Gauge(
            "gittrackobject_in_sync",
            "Whether the child of a tracking resource is in sync (1) or not (0)",
            ["kind", "namespace", "name"],
            registry=registry,
        )

        # Reconciliation metrics
        self.reconcile_total = Counter(
            "gittrackobject_reconcile_total",
            "Total number of reconciliations",
            ["kind", "operation", "status"],
            registry=registry,
        )
        self.reconcile_duration = Histogram(
            "gittrackobject_reconcile_duration_seconds",
            "Time spent in reconciliation",
            ["kind", "operation"],
            buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0),
            registry=registry,
        )
        self.reconcile_in_progress = Gauge(
            "gittrackobject_reconcile_in_progress",
            "Number of reconciliations currently in progress",
            ["kind"],
            registry=registry,
        )

        # Cluster API metrics
        self.kube_api_calls = Counter(
            "gittrackobject_kube_api_calls_total",
            "Total number of cluster API calls",
            ["operation", "status"],
            registry=registry,
        )
        self.rate_limit_wait = Histogram(
            "gittrackobject_rate_limit_wait_seconds",
            "Time spent waiting for rate limit slot",
            buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5),
            registry=registry,
        )

        self.info = Info(
            "gittrackobject_controller",
            "Information about the GitTrackObject controller",
            registry=registry,
        )

    def set_in_sync(self, key: ObjectKey, in_sync: bool) -> None:
        self.in_sync.labels(
            kind=key.kind.value, namespace=key.namespace or "", name=key.name
        ).set(1 if in_sync else 0)

    def forget(self, key: ObjectKey) -> None:
        """Drop the in-sync series of a tracking resource that no longer exists."""
        try:
            self.in_sync.remove(key.kind.value, key.namespace or "", key.name)
        except KeyError:
            pass

    def reset(self) -> None:
        """Clear all in-sync series. Only meant for test harnesses."""
        self.in_sync.clear()

    def set_info(self, version: str, namespace: str | None) -> None:
        """Set controller info labels."""
        self.info.info({"version": version, "namespace": namespace or "*"})

    def init(self) -> None:
        """Initialize labelled metrics with zero values.

        Prometheus metrics with labels don't appear until used.
        This ensures they are visible immediately at startup.
        """
        operations = ["reconcile", "resync", "watch", "delete"]
        statuses = ["success", "error", "skipped"]

        for kind in TrackingKind:
            self.reconcile_in_progress.labels(kind=kind.value).set(0)
            for operation in operations:
                self.reconcile_duration.labels(kind=kind.value, operation=operation)
                for status in statuses:
                    self.reconcile_total.labels(
                        kind=kind.value, operation=operation, status=status
                    )
