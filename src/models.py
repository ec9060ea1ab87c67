"""Domain models for the GitTrackObject controller.

This module defines typed data structures for all controller concepts:
tracking-resource keys, conditions, child objects, resolved kinds,
configuration and the exception taxonomy.
"""

import os
from dataclasses import dataclass
from enum import Enum
from typing import Any

from constants import API_VERSION, DEFAULT_CHILD_RESOURCES, LAST_APPLIED_ANNOTATION


# =============================================================================
# Enums for constrained values
# =============================================================================


class TrackingKind(Enum):
    """Kinds of tracking resources the controller reconciles."""

    GITTRACKOBJECT = "GitTrackObject"
    CLUSTERGITTRACKOBJECT = "ClusterGitTrackObject"

    @property
    def plural(self) -> str:
        return self.value.lower() + "s"

    @property
    def namespaced(self) -> bool:
        return self is TrackingKind.GITTRACKOBJECT


class UpdateStrategy(Enum):
    """How drift on an existing child is reconciled."""

    DEFAULT = "default"
    NEVER = "never"
    RECREATE = "recreate"


class ConditionStatus(Enum):
    """Kubernetes condition status."""

    TRUE = "True"
    FALSE = "False"
    UNKNOWN = "Unknown"


class EventType(Enum):
    """Kubernetes event type."""

    NORMAL = "Normal"
    WARNING = "Warning"


class Outcome(Enum):
    """Result of a single reconcile attempt."""

    NOT_FOUND = "NotFound"
    SKIPPED = "Skipped"
    CREATED = "Created"
    UPDATED = "Updated"
    UNCHANGED = "Unchanged"
    RECREATED = "Recreated"
    FAILED = "Failed"


# =============================================================================
# Dataclasses
# =============================================================================


@dataclass(frozen=True)
class ObjectKey:
    """Identity of a tracking resource in the work queue."""

    kind: TrackingKind
    name: str
    namespace: str | None = None

    def __str__(self) -> str:
        if self.namespace:
            return f"{self.kind.value} {self.namespace}/{self.name}"
        return f"{self.kind.value} {self.name}"


@dataclass(frozen=True)
class ReconcileResult:
    """What a reconcile attempt did."""

    key: ObjectKey
    outcome: Outcome
    message: str = ""


@dataclass(frozen=True)
class Condition:
    """Kubernetes-style condition."""

    type: str
    status: ConditionStatus
    reason: str = ""
    message: str = ""
    last_transition_time: str = ""

    def to_dict(self) -> dict[str, str]:
        """Convert to dict for Kubernetes status."""
        return {
            "type": self.type,
            "status": self.status.value,
            "reason": self.reason,
            "message": self.message,
            "lastTransitionTime": self.last_transition_time,
        }

    @classmethod
    def from_dict(cls, data: dict[str, str]) -> "Condition":
        """Create from Kubernetes status dict."""
        try:
            status = ConditionStatus(data.get("status", "Unknown"))
        except ValueError:
            status = ConditionStatus.UNKNOWN
        return cls(
            type=data.get("type", ""),
            status=status,
            reason=data.get("reason", ""),
            message=data.get("message", ""),
            last_transition_time=data.get("lastTransitionTime", ""),
        )


@dataclass(frozen=True)
class KindInfo:
    """A kind the API server serves, as resolved by the kind registry."""

    api_version: str
    kind: str
    namespaced: bool
    immutable_fields: tuple[tuple[str, ...], ...] = ()


class ChildObject:
    """Uniform metadata access for a cluster object of any kind.

    Wraps the plain dict representation returned by the dynamic client so
    that annotations, owner references and finalizers can be handled the
    same way for Deployments, RoleBindings or custom resources.
    """

    def __init__(self, body: dict[str, Any]) -> None:
        self.body = body

    @property
    def metadata(self) -> dict[str, Any]:
        return self.body.setdefault("metadata", {})

    @property
    def api_version(self) -> str:
        return self.body.get("apiVersion", "")

    @property
    def kind(self) -> str:
        return self.body.get("kind", "")

    @property
    def name(self) -> str:
        return self.metadata.get("name", "")

    @property
    def namespace(self) -> str | None:
        return self.metadata.get("namespace") or None

    @property
    def uid(self) -> str | None:
        return self.metadata.get("uid")

    @property
    def annotations(self) -> dict[str, str]:
        return self.metadata.get("annotations") or {}

    @property
    def owner_references(self) -> list[dict[str, Any]]:
        return self.metadata.get("ownerReferences") or []

    @property
    def finalizers(self) -> list[str]:
        return self.metadata.get("finalizers") or []

    @property
    def being_deleted(self) -> bool:
        return bool(self.metadata.get("deletionTimestamp"))

    @property
    def last_applied(self) -> str | None:
        return self.annotations.get(LAST_APPLIED_ANNOTATION)

    def set_annotation(self, key: str, value: str) -> None:
        annotations = self.metadata.get("annotations") or {}
        annotations[key] = value
        self.metadata["annotations"] = annotations

    def set_owner_reference(self, owner_ref: dict[str, Any]) -> None:
        """Add or replace (in place) the owner reference with the same UID."""
        refs = list(self.owner_references)
        for i, ref in enumerate(refs):
            if ref.get("uid") == owner_ref["uid"]:
                refs[i] = owner_ref
                break
        else:
            refs.append(owner_ref)
        self.metadata["ownerReferences"] = refs

    def is_controlled_by(self, uid: str | None) -> bool:
        return any(
            ref.get("uid") == uid and ref.get("controller")
            for ref in self.owner_references
        )

    def describe(self) -> str:
        if self.namespace:
            return f"{self.kind} {self.namespace}/{self.name}"
        return f"{self.kind} {self.name}"


def owner_reference_for(tracker: dict[str, Any]) -> dict[str, Any]:
    """Build the controller owner reference pointing at a tracking resource."""
    meta = tracker.get("metadata", {})
    return {
        "apiVersion": tracker.get("apiVersion", API_VERSION),
        "kind": tracker.get("kind", ""),
        "name": meta.get("name", ""),
        "uid": meta.get("uid", ""),
        "controller": True,
        "blockOwnerDeletion": True,
    }


# =============================================================================
# Configuration
# =============================================================================


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name, "")
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}") from None


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name, "").strip().lower()
    if not raw:
        return default
    if raw in ("1", "true", "yes", "on"):
        return True
    if raw in ("0", "false", "no", "off"):
        return False
    raise ConfigurationError(f"{name} must be a boolean, got {raw!r}")


def _env_resources(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    resources = tuple(item.strip() for item in raw.split(",") if item.strip())
    for resource in resources:
        if resource.count("/") not in (1, 2):
            raise ConfigurationError(
                f"{name} entries must look like group/version/plural, got {resource!r}"
            )
    return resources


@dataclass(frozen=True)
class ControllerConfig:
    """Controller configuration loaded from the environment."""

    namespace: str | None = None
    default_update_strategy: UpdateStrategy = UpdateStrategy.DEFAULT
    allow_cluster_gittrack: bool = False
    resync_interval: float = 300.0
    retry_base_delay: float = 5.0
    retry_max_delay: float = 300.0
    recreate_wait: float = 10.0
    request_timeout: float = 30.0
    max_concurrent_calls: int = 10
    requests_per_second: float = 20.0
    metrics_port: int = 9090
    event_component: str = "gittrackobject-controller"
    child_resources: tuple[str, ...] = DEFAULT_CHILD_RESOURCES

    @classmethod
    def from_env(cls) -> "ControllerConfig":
        """Create from environment variables."""
        strategy_raw = os.environ.get("DEFAULT_UPDATE_STRATEGY", "") or "default"
        try:
            strategy = UpdateStrategy(strategy_raw)
        except ValueError:
            raise ConfigurationError(
                f"DEFAULT_UPDATE_STRATEGY must be one of "
                f"{[s.value for s in UpdateStrategy]}, got {strategy_raw!r}"
            ) from None

        base_delay = _env_float("RETRY_BASE_DELAY_SECONDS", 5.0)
        max_delay = _env_float("RETRY_MAX_DELAY_SECONDS", 300.0)
        if base_delay <= 0 or max_delay < base_delay:
            raise ConfigurationError(
                "RETRY_BASE_DELAY_SECONDS must be positive and not exceed "
                "RETRY_MAX_DELAY_SECONDS"
            )

        return cls(
            namespace=os.environ.get("WATCH_NAMESPACE", "") or None,
            default_update_strategy=strategy,
            allow_cluster_gittrack=_env_bool("ALLOW_CLUSTER_GITTRACK", False),
            resync_interval=_env_float("RESYNC_INTERVAL_SECONDS", 300.0),
            retry_base_delay=base_delay,
            retry_max_delay=max_delay,
            recreate_wait=_env_float("RECREATE_WAIT_SECONDS", 10.0),
            request_timeout=_env_float("KUBE_REQUEST_TIMEOUT_SECONDS", 30.0),
            max_concurrent_calls=int(_env_float("KUBE_MAX_CONCURRENT_CALLS", 10)),
            requests_per_second=_env_float("KUBE_REQUESTS_PER_SECOND", 20.0),
            metrics_port=int(_env_float("METRICS_PORT", 9090)),
            event_component=os.environ.get("EVENT_COMPONENT", "")
            or "gittrackobject-controller",
            child_resources=_env_resources("CHILD_RESOURCES", DEFAULT_CHILD_RESOURCES),
        )


# =============================================================================
# Exceptions
# =============================================================================


class OperatorError(Exception):
    """Base exception for controller errors."""

    pass


class ConfigurationError(OperatorError):
    """Invalid or missing configuration."""

    pass


class TransientError(OperatorError):
    """An error that should be retried with backoff."""

    pass


class KubeAPIError(TransientError):
    """Error communicating with the cluster API."""

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class ConflictError(KubeAPIError):
    """The API rejected a write because of a conflicting state (HTTP 409)."""

    pass


class DeletionPendingError(TransientError):
    """A child is still being deleted; reconcile again later."""

    pass


class NotFoundError(OperatorError):
    """The requested object does not exist (HTTP 404)."""

    pass


class InvalidObjectError(OperatorError):
    """The API rejected an object or patch as invalid (HTTP 422)."""

    def __init__(self, message: str, causes: list[dict[str, Any]] | None = None) -> None:
        super().__init__(message)
        self.causes = causes or []

    @property
    def immutable(self) -> bool:
        """Whether the rejection is caused by an attempt to change an immutable field."""
        texts = [str(self)] + [
            str(cause.get("message", "")) for cause in self.causes
        ]
        return any(
            marker in text.lower()
            for text in texts
            for marker in ("immutable", "cannot change", "may not change")
        )


class UnmarshalError(OperatorError):
    """The desired document in a tracking resource cannot be decoded."""

    pass


class UnsupportedKindError(OperatorError):
    """The desired document names a kind the API server does not serve."""

    def __init__(self, api_version: str, kind: str) -> None:
        super().__init__(f"Unsupported kind {kind} in {api_version or '<no apiVersion>'}")
        self.api_version = api_version
        self.kind = kind
