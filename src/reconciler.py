"""Reconciliation of tracking resources against their children.

One call to ``Reconciler.reconcile`` handles one tracking resource: it
checks that the resource is managed by this controller, decodes the desired
child, and creates, patches or recreates the live child until it matches.
The outcome is reported through the ``InSync`` condition, events and the
in-sync gauge. Retryable failures are raised as ``TransientError`` so the
caller can requeue the key with backoff; permanent data failures are only
reported.
"""

import copy
import logging
import threading
from collections.abc import Mapping
from typing import Any, NoReturn

from constants import (
    API_VERSION,
    EVENT_CREATE_FAILED,
    EVENT_CREATE_STARTED,
    EVENT_CREATE_SUCCESSFUL,
    EVENT_DELETE_FAILED,
    EVENT_DELETE_SUCCESSFUL,
    EVENT_UNMARSHAL_FAILED,
    EVENT_UPDATE_FAILED,
    EVENT_UPDATE_STARTED,
    EVENT_UPDATE_SUCCESSFUL,
    GROUP,
    IN_SYNC_CONDITION,
    REASON_ERROR_APPLYING_CHILD,
    REASON_ERROR_CREATING_CHILD,
    REASON_ERROR_UNMARSHALLING_DATA,
    REASON_ERROR_UNSUPPORTED_KIND,
    REASON_SUCCESS,
)
from events import EventRecorder
from metrics import ControllerMetrics
from models import (
    ChildObject,
    ConditionStatus,
    ControllerConfig,
    DeletionPendingError,
    KindInfo,
    ObjectKey,
    OperatorError,
    Outcome,
    ReconcileResult,
    TrackingKind,
    TransientError,
    UnmarshalError,
    UnsupportedKindError,
    UpdateStrategy,
)
from resources.applier import Applier, ApplyPlan, load_last_applied
from resources.desired import attach_owner, place_desired, unmarshal_desired
from resources.recreate import Recreator
from resources.strategy import ConflictDetector, resolve_update_strategy
from status import StatusConditionManager

logger = logging.getLogger(__name__)

GITTRACK_KIND = "GitTrack"
CLUSTER_GITTRACK_KIND = "ClusterGitTrack"


def key_for(tracker: dict[str, Any]) -> ObjectKey:
    """Build the work queue key of a tracking resource."""
    obj = ChildObject(tracker)
    return ObjectKey(TrackingKind(obj.kind), obj.name, obj.namespace)


def owner_key(child: Mapping[str, Any]) -> ObjectKey | None:
    """Return the key of the tracking resource controlling a child, if any.

    Children of a GitTrackObject share its namespace. A cluster-scoped child
    cannot name a namespaced owner, so it maps to nothing.
    """
    obj = ChildObject(dict(child))
    for ref in obj.owner_references:
        if not ref.get("controller") or ref.get("apiVersion") != API_VERSION:
            continue
        try:
            kind = TrackingKind(ref.get("kind"))
        except ValueError:
            return None
        if not ref.get("name"):
            return None
        if kind.namespaced:
            if obj.namespace is None:
                return None
            return ObjectKey(kind, ref["name"], obj.namespace)
        return ObjectKey(kind, ref["name"])
    return None


def _raise_retryable(error: OperatorError) -> NoReturn:
    if isinstance(error, TransientError):
        raise error
    raise TransientError(str(error)) from error


class Reconciler:
    """Drives children of tracking resources towards their desired state."""

    def __init__(
        self,
        client: Any,
        config: ControllerConfig,
        metrics: ControllerMetrics,
        recorder: EventRecorder | None = None,
        status: StatusConditionManager | None = None,
        applier: Applier | None = None,
        recreator: Recreator | None = None,
        detector: ConflictDetector | None = None,
    ) -> None:
        self.client = client
        self.config = config
        self.metrics = metrics
        self.recorder = recorder or EventRecorder(
            client, config.namespace, config.event_component
        )
        self.status = status or StatusConditionManager(client)
        self.applier = applier or Applier(client)
        self.recreator = recreator or Recreator(
            client, self.applier, timeout=config.recreate_wait
        )
        self.detector = detector or ConflictDetector()
        # One lock per key: kopf runs change handlers and timers concurrently
        self._locks: dict[ObjectKey, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def lock_for(self, key: ObjectKey) -> threading.Lock:
        """Return the lock serializing work on one tracking resource."""
        with self._locks_guard:
            return self._locks.setdefault(key, threading.Lock())

    # -------------------------------------------------------------------------
    # Reconcile
    # -------------------------------------------------------------------------

    def reconcile(self, key: ObjectKey) -> ReconcileResult:
        """Reconcile one tracking resource.

        Raises:
            TransientError: The attempt failed in a way that may succeed later;
                the key should be requeued with backoff.
        """
        with self.lock_for(key):
            return self._reconcile(key)

    def _reconcile(self, key: ObjectKey) -> ReconcileResult:
        tracker = self.client.get(API_VERSION, key.kind.value, key.name, key.namespace)
        if tracker is None:
            logger.debug("%s no longer exists", key)
            self.metrics.forget(key)
            return ReconcileResult(key, Outcome.NOT_FOUND)
        if ChildObject(tracker).being_deleted:
            return ReconcileResult(key, Outcome.SKIPPED, "being deleted")

        reason = self.ineligible_reason(key, tracker)
        if reason:
            logger.debug("Skipping %s: %s", key, reason)
            return ReconcileResult(key, Outcome.SKIPPED, reason)

        try:
            desired = unmarshal_desired(tracker)
            kind = self.client.resolve(desired["apiVersion"], desired["kind"])
            place_desired(desired, tracker, kind)
        except UnmarshalError as e:
            return self._data_failure(key, tracker, REASON_ERROR_UNMARSHALLING_DATA, e)
        except UnsupportedKindError as e:
            return self._data_failure(key, tracker, REASON_ERROR_UNSUPPORTED_KIND, e)

        child = ChildObject(desired)
        live = self.client.get(child.api_version, child.kind, child.name, child.namespace)
        attach_owner(desired, tracker, live)

        if live is None:
            return self._create(key, tracker, desired)

        if ChildObject(live).being_deleted:
            error = DeletionPendingError(f"{ChildObject(live).describe()} is being deleted")
            self._report_failure(
                key, tracker, REASON_ERROR_APPLYING_CHILD, EVENT_UPDATE_FAILED, str(error)
            )
            raise error

        return self._update(key, tracker, kind, desired, live)

    def ineligible_reason(self, key: ObjectKey, tracker: dict[str, Any]) -> str:
        """Return why a tracking resource is not managed here, or "" if it is.

        A tracking resource is managed only when it is owned by a GitTrack (or,
        when enabled, a ClusterGitTrack) that exists and, if the reference
        carries a UID, is the same object.
        """
        namespace = self.config.namespace
        if namespace and key.kind.namespaced and key.namespace != namespace:
            return f"outside of namespace {namespace}"

        for ref in ChildObject(tracker).owner_references:
            if ref.get("apiVersion", "").split("/")[0] != GROUP:
                continue

            if ref.get("kind") == GITTRACK_KIND:
                lookup_namespace = key.namespace if key.kind.namespaced else namespace
                if not lookup_namespace:
                    return "GitTrack owner of a cluster-scoped resource needs a namespace"
            elif ref.get("kind") == CLUSTER_GITTRACK_KIND:
                if not self.config.allow_cluster_gittrack:
                    continue
                lookup_namespace = None
            else:
                continue

            try:
                owner = self.client.get(
                    ref["apiVersion"], ref["kind"], ref.get("name", ""), lookup_namespace
                )
            except UnsupportedKindError:
                return f"{ref['kind']} is not served by the cluster"
            if owner is None:
                return f"owner {ref['kind']} {ref.get('name')} not found"
            if ref.get("uid") and ChildObject(owner).uid != ref["uid"]:
                return f"owner {ref['kind']} {ref.get('name')} has a different UID"
            return ""

        return "not owned by a GitTrack"

    # -------------------------------------------------------------------------
    # Outcomes
    # -------------------------------------------------------------------------

    def _report_success(self, key: ObjectKey, tracker: dict[str, Any]) -> None:
        self.status.set_condition(
            tracker, IN_SYNC_CONDITION, ConditionStatus.TRUE, REASON_SUCCESS
        )
        self.metrics.set_in_sync(key, True)

    def _report_failure(
        self,
        key: ObjectKey,
        tracker: dict[str, Any],
        reason: str,
        event_reason: str,
        message: str,
    ) -> None:
        self.recorder.warning(tracker, event_reason, message)
        self.metrics.set_in_sync(key, False)
        try:
            self.status.set_condition(
                tracker, IN_SYNC_CONDITION, ConditionStatus.FALSE, reason, message
            )
        except OperatorError as e:
            # The failure being reported is what gets requeued
            logger.warning("Failed to update status of %s: %s", key, e)

    def _data_failure(
        self, key: ObjectKey, tracker: dict[str, Any], reason: str, error: Exception
    ) -> ReconcileResult:
        logger.error("Invalid data in %s: %s", key, error)
        self._report_failure(key, tracker, reason, EVENT_UNMARSHAL_FAILED, str(error))
        return ReconcileResult(key, Outcome.FAILED, str(error))

    # -------------------------------------------------------------------------
    # Create, update, recreate
    # -------------------------------------------------------------------------

    def _create(
        self, key: ObjectKey, tracker: dict[str, Any], desired: dict[str, Any]
    ) -> ReconcileResult:
        description = ChildObject(desired).describe()
        self.recorder.normal(tracker, EVENT_CREATE_STARTED, f"Creating {description}")
        try:
            self.applier.create(desired)
        except OperatorError as e:
            logger.error("Failed to create %s for %s: %s", description, key, e)
            self._report_failure(
                key,
                tracker,
                REASON_ERROR_CREATING_CHILD,
                EVENT_CREATE_FAILED,
                f"Failed to create {description}: {e}",
            )
            _raise_retryable(e)

        self.recorder.normal(tracker, EVENT_CREATE_SUCCESSFUL, f"Created {description}")
        self._report_success(key, tracker)
        return ReconcileResult(key, Outcome.CREATED, description)

    def _update(
        self,
        key: ObjectKey,
        tracker: dict[str, Any],
        kind: KindInfo,
        desired: dict[str, Any],
        live: dict[str, Any],
    ) -> ReconcileResult:
        strategy = resolve_update_strategy(desired, self.config.default_update_strategy)
        description = ChildObject(live).describe()

        if strategy is UpdateStrategy.NEVER:
            logger.debug("Not updating %s: update strategy is never", description)
            self._report_success(key, tracker)
            return ReconcileResult(key, Outcome.UNCHANGED, "update strategy is never")

        plan = self.applier.plan(desired, load_last_applied(live), live)
        if not plan.changed:
            self._report_success(key, tracker)
            return ReconcileResult(key, Outcome.UNCHANGED)

        self.recorder.normal(tracker, EVENT_UPDATE_STARTED, f"Updating {description}")

        if strategy is UpdateStrategy.RECREATE and self.detector.is_destructive(kind, plan):
            return self._recreate(key, tracker, desired, live)

        try:
            self.applier.execute(plan, live)
        except OperatorError as e:
            if strategy is UpdateStrategy.RECREATE and self.detector.is_immutable_rejection(e):
                logger.info("%s rejected the change (%s), recreating", description, e)
                return self._recreate(key, tracker, desired, live)
            self._update_failed(key, tracker, description, e)

        self.recorder.normal(tracker, EVENT_UPDATE_SUCCESSFUL, f"Updated {description}")
        self._report_success(key, tracker)
        return ReconcileResult(key, Outcome.UPDATED, _summary(plan))

    def _recreate(
        self,
        key: ObjectKey,
        tracker: dict[str, Any],
        desired: dict[str, Any],
        live: dict[str, Any],
    ) -> ReconcileResult:
        description = ChildObject(live).describe()
        try:
            self.recreator.recreate(desired, live)
        except DeletionPendingError as e:
            logger.info("Recreation of %s pending: %s", description, e)
            self._report_failure(
                key,
                tracker,
                REASON_ERROR_APPLYING_CHILD,
                EVENT_UPDATE_FAILED,
                f"Recreation of {description} pending: {e}",
            )
            raise
        except OperatorError as e:
            self._update_failed(key, tracker, description, e)

        self.recorder.normal(
            tracker, EVENT_UPDATE_SUCCESSFUL, f"Recreated {description}"
        )
        self._report_success(key, tracker)
        return ReconcileResult(key, Outcome.RECREATED, description)

    def _update_failed(
        self, key: ObjectKey, tracker: dict[str, Any], description: str, error: OperatorError
    ) -> NoReturn:
        logger.error("Failed to update %s for %s: %s", description, key, error)
        self._report_failure(
            key,
            tracker,
            REASON_ERROR_APPLYING_CHILD,
            EVENT_UPDATE_FAILED,
            f"Failed to update {description}: {error}",
        )
        _raise_retryable(error)

    # -------------------------------------------------------------------------
    # Deletion
    # -------------------------------------------------------------------------

    def delete_child(self, tracker: dict[str, Any]) -> bool:
        """Delete the child of a tracking resource that is going away.

        Only a child controlled by this very tracking resource is deleted.
        Returns True if a child was deleted.
        """
        tracker = copy.deepcopy(tracker)
        key = key_for(tracker)
        try:
            with self.lock_for(key):
                return self._delete_child(key, tracker)
        finally:
            with self._locks_guard:
                self._locks.pop(key, None)

    def _delete_child(self, key: ObjectKey, tracker: dict[str, Any]) -> bool:
        self.metrics.forget(key)

        try:
            desired = unmarshal_desired(tracker)
            kind = self.client.resolve(desired["apiVersion"], desired["kind"])
            place_desired(desired, tracker, kind)
        except (UnmarshalError, UnsupportedKindError) as e:
            logger.info("No child to delete for %s: %s", key, e)
            return False

        child = ChildObject(desired)
        live = self.client.get(child.api_version, child.kind, child.name, child.namespace)
        if live is None:
            return False
        if not ChildObject(live).is_controlled_by(ChildObject(tracker).uid):
            logger.info(
                "Not deleting %s: it is not controlled by %s",
                ChildObject(live).describe(),
                key,
            )
            return False

        description = ChildObject(live).describe()
        try:
            deleted = self.client.delete(
                child.api_version,
                child.kind,
                child.name,
                child.namespace,
                propagation_policy="Background",
            )
        except OperatorError as e:
            self.recorder.warning(
                tracker, EVENT_DELETE_FAILED, f"Failed to delete {description}: {e}"
            )
            raise

        if deleted:
            logger.info("Deleted %s of %s", description, key)
            self.recorder.normal(tracker, EVENT_DELETE_SUCCESSFUL, f"Deleted {description}")
        return deleted


def _summary(plan: ApplyPlan) -> str:
    return ", ".join(".".join(path) for path in plan.changed_paths())
