"""Shared operator state - thread-safe singleton for the cluster client and reconciler."""

import threading
from dataclasses import dataclass, field

from kubernetes import config as k8s_config

from kube_client import KubeClient
from metrics import ControllerMetrics
from models import ControllerConfig
from ratelimit import RateLimiter
from reconciler import Reconciler


@dataclass
class OperatorState:
    """Thread-safe operator state container.

    This class provides thread-safe access to shared operator resources:
    - Controller configuration
    - Prometheus metrics
    - Kubernetes API client
    - Reconciler

    All handlers should use the global `state` instance rather than
    creating their own clients.
    """

    _lock: threading.RLock = field(default_factory=threading.RLock, repr=False)
    _config: ControllerConfig | None = field(default=None, repr=False)
    _metrics: ControllerMetrics | None = field(default=None, repr=False)
    _kube_client: KubeClient | None = field(default=None, repr=False)
    _reconciler: Reconciler | None = field(default=None, repr=False)
    _k8s_configured: bool = field(default=False, repr=False)

    def _ensure_k8s_config(self) -> None:
        """Ensure Kubernetes configuration is loaded (must hold lock)."""
        if not self._k8s_configured:
            try:
                k8s_config.load_incluster_config()
            except k8s_config.ConfigException:
                k8s_config.load_kube_config()
            self._k8s_configured = True

    def get_config(self) -> ControllerConfig:
        """Get the controller configuration, loading it from the environment once."""
        with self._lock:
            if self._config is None:
                self._config = ControllerConfig.from_env()
            return self._config

    def get_metrics(self) -> ControllerMetrics:
        """Get or create the metrics on the default registry (thread-safe)."""
        with self._lock:
            if self._metrics is None:
                self._metrics = ControllerMetrics()
            return self._metrics

    def get_kube_client(self) -> KubeClient:
        """Get or create the cluster client (thread-safe)."""
        with self._lock:
            if self._kube_client is None:
                self._ensure_k8s_config()
                config = self.get_config()
                metrics = self.get_metrics()
                self._kube_client = KubeClient(
                    request_timeout=config.request_timeout,
                    rate_limiter=RateLimiter(
                        max_concurrent=config.max_concurrent_calls,
                        requests_per_second=config.requests_per_second,
                        wait_histogram=metrics.rate_limit_wait,
                    ),
                    metrics=metrics,
                )
            return self._kube_client

    def get_reconciler(self) -> Reconciler:
        """Get or create the reconciler (thread-safe)."""
        with self._lock:
            if self._reconciler is None:
                self._reconciler = Reconciler(
                    self.get_kube_client(), self.get_config(), self.get_metrics()
                )
            return self._reconciler

    def close(self) -> None:
        """Close all connections."""
        with self._lock:
            self._reconciler = None
            if self._kube_client is not None:
                self._kube_client.close()
                self._kube_client = None


# Global operator state singleton
state = OperatorState()
