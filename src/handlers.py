"""Kopf handlers for GitTrackObject and ClusterGitTrackObject CRDs."""

import logging
import sys
import time
from pathlib import Path
from typing import Any

# Add src directory to path for imports when run as script by Kopf
_src_dir = Path(__file__).parent
if str(_src_dir) not in sys.path:
    sys.path.insert(0, str(_src_dir))

import kopf
from prometheus_client import start_http_server

from constants import GROUP, OPERATOR_FINALIZER, VERSION
from models import (
    ConfigurationError,
    ControllerConfig,
    ObjectKey,
    OperatorError,
    Outcome,
    TrackingKind,
)
from reconciler import key_for, owner_key
from state import state
from utils import backoff_delay

logger = logging.getLogger(__name__)

# Operator version
OPERATOR_VERSION = "0.1.0"


def registration_config() -> ControllerConfig:
    """Load the configuration the handlers are registered with.

    This runs when kopf imports the module, before any startup handler.
    """
    try:
        return state.get_config()
    except ConfigurationError as e:
        logger.critical("Invalid controller configuration, not starting: %s", e)
        raise


# Timer intervals and watched child resources are fixed at registration
_config = registration_config()
RESYNC_INTERVAL = _config.resync_interval
CHILD_RESOURCES = _config.child_resources

GITTRACKOBJECTS = TrackingKind.GITTRACKOBJECT.plural
CLUSTERGITTRACKOBJECTS = TrackingKind.CLUSTERGITTRACKOBJECT.plural


@kopf.on.startup()
def configure(settings: kopf.OperatorSettings, **_: Any) -> None:
    """Configure operator settings on startup."""
    config = state.get_config()
    metrics = state.get_metrics()

    # Reduce logging noise
    settings.posting.level = logging.WARNING
    # Configure persistence
    settings.persistence.finalizer = OPERATOR_FINALIZER

    # Start Prometheus metrics server
    try:
        start_http_server(config.metrics_port, registry=metrics.registry)
        logger.info("Prometheus metrics server started on port %d", config.metrics_port)
    except OSError as e:
        logger.warning(
            "Failed to start metrics server on port %d: %s", config.metrics_port, e
        )

    # Initialize metrics and set operator info
    metrics.init()
    metrics.set_info(OPERATOR_VERSION, config.namespace)

    logger.info(
        "GitTrackObject controller started (version %s, namespace %s)",
        OPERATOR_VERSION,
        config.namespace or "<all>",
    )


@kopf.on.cleanup()
def cleanup(**_: Any) -> None:
    """Clean up resources on operator shutdown."""
    logger.info("GitTrackObject controller shutting down")
    state.close()


def _reconcile(key: ObjectKey, retry: int, operation: str) -> None:
    """Run one reconcile and record its metrics.

    Retryable failures are handed back to kopf, which requeues the object
    with an exponential, capped delay.
    """
    config = state.get_config()
    metrics = state.get_metrics()
    kind = key.kind.value

    start_time = time.monotonic()
    metrics.reconcile_in_progress.labels(kind=kind).inc()
    status = "error"
    try:
        result = state.get_reconciler().reconcile(key)
        if result.outcome is Outcome.SKIPPED:
            status = "skipped"
        elif result.outcome is not Outcome.FAILED:
            status = "success"
        logger.info("Reconciled %s: %s %s", key, result.outcome.value, result.message)
    except OperatorError as e:
        delay = backoff_delay(retry, config.retry_base_delay, config.retry_max_delay)
        logger.error("Failed to reconcile %s (retry %d in %.0fs): %s", key, retry, delay, e)
        raise kopf.TemporaryError(str(e), delay=delay) from e
    finally:
        metrics.reconcile_in_progress.labels(kind=kind).dec()
        metrics.reconcile_duration.labels(kind=kind, operation=operation).observe(
            time.monotonic() - start_time
        )
        metrics.reconcile_total.labels(kind=kind, operation=operation, status=status).inc()


@kopf.on.resume(GROUP, VERSION, GITTRACKOBJECTS)
@kopf.on.create(GROUP, VERSION, GITTRACKOBJECTS)
@kopf.on.update(GROUP, VERSION, GITTRACKOBJECTS)
def reconcile_gittrackobject(
    name: str, namespace: str, retry: int, **_: Any
) -> None:
    """Handle GitTrackObject creation, changes and operator restarts."""
    _reconcile(
        ObjectKey(TrackingKind.GITTRACKOBJECT, name, namespace), retry, "reconcile"
    )


@kopf.on.resume(GROUP, VERSION, CLUSTERGITTRACKOBJECTS)
@kopf.on.create(GROUP, VERSION, CLUSTERGITTRACKOBJECTS)
@kopf.on.update(GROUP, VERSION, CLUSTERGITTRACKOBJECTS)
def reconcile_clustergittrackobject(name: str, retry: int, **_: Any) -> None:
    """Handle ClusterGitTrackObject creation, changes and operator restarts."""
    _reconcile(ObjectKey(TrackingKind.CLUSTERGITTRACKOBJECT, name), retry, "reconcile")


@kopf.timer(GROUP, VERSION, GITTRACKOBJECTS, interval=RESYNC_INTERVAL)
def resync_gittrackobject(name: str, namespace: str, retry: int, **_: Any) -> None:
    """Periodic reconciliation to detect and repair drift."""
    _reconcile(ObjectKey(TrackingKind.GITTRACKOBJECT, name, namespace), retry, "resync")


@kopf.timer(GROUP, VERSION, CLUSTERGITTRACKOBJECTS, interval=RESYNC_INTERVAL)
def resync_clustergittrackobject(name: str, retry: int, **_: Any) -> None:
    """Periodic reconciliation to detect and repair drift."""
    _reconcile(ObjectKey(TrackingKind.CLUSTERGITTRACKOBJECT, name), retry, "resync")


def _delete(body: kopf.Body, retry: int) -> None:
    config = state.get_config()
    metrics = state.get_metrics()
    key = key_for(dict(body))
    kind = key.kind.value

    status = "error"
    try:
        if state.get_reconciler().delete_child(dict(body)):
            status = "success"
        else:
            status = "skipped"
    except OperatorError as e:
        delay = backoff_delay(retry, config.retry_base_delay, config.retry_max_delay)
        logger.error("Failed to delete child of %s: %s", key, e)
        raise kopf.TemporaryError(str(e), delay=delay) from e
    finally:
        metrics.reconcile_total.labels(kind=kind, operation="delete", status=status).inc()


@kopf.on.delete(GROUP, VERSION, GITTRACKOBJECTS)
def delete_gittrackobject(body: kopf.Body, retry: int, **_: Any) -> None:
    """Delete the child of a GitTrackObject that is being deleted."""
    _delete(body, retry)


@kopf.on.delete(GROUP, VERSION, CLUSTERGITTRACKOBJECTS)
def delete_clustergittrackobject(body: kopf.Body, retry: int, **_: Any) -> None:
    """Delete the child of a ClusterGitTrackObject that is being deleted."""
    _delete(body, retry)


def _controlled_by_tracker(body: kopf.Body, **_: Any) -> bool:
    return owner_key(body) is not None


def child_changed(body: kopf.Body, type: str | None, **_: Any) -> None:
    """Reconcile the tracking resource of a child that was changed or deleted."""
    # The initial listing is covered by the resume handlers
    if type is None:
        return
    key = owner_key(body)
    if key is None:
        return
    logger.debug("%s of %s was %s", body.get("kind"), key, type.lower())
    _reconcile(key, 0, "watch")


for _resource in CHILD_RESOURCES:
    kopf.on.event(
        *_resource.rsplit("/", 1), id=f"child-{_resource}", when=_controlled_by_tracker
    )(child_changed)


def main() -> None:
    """Entry point for running the operator."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    namespace = state.get_config().namespace
    logger.info("Starting GitTrackObject controller...")
    if namespace:
        kopf.run(namespaces=[namespace])
    else:
        kopf.run(clusterwide=True)


if __name__ == "__main__":
    main()
