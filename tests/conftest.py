"""Shared fixtures: an in-memory cluster and example tracking resources."""

import copy
import itertools
import uuid
from typing import Any

import pytest
from prometheus_client import CollectorRegistry

from constants import API_VERSION, FOREGROUND_DELETION_FINALIZER
from metrics import ControllerMetrics
from models import (
    ChildObject,
    ConflictError,
    ControllerConfig,
    InvalidObjectError,
    NotFoundError,
    OperatorError,
    UnsupportedKindError,
    owner_reference_for,
)
from reconciler import Reconciler
from resources.applier import Applier
from resources.kinds import KindRegistry
from resources.recreate import Recreator

# (apiVersion, kind) -> namespaced
SERVED_KINDS = {
    (API_VERSION, "GitTrackObject"): True,
    (API_VERSION, "ClusterGitTrackObject"): False,
    (API_VERSION, "GitTrack"): True,
    (API_VERSION, "ClusterGitTrack"): False,
    ("v1", "ConfigMap"): True,
    ("v1", "Service"): True,
    ("apps/v1", "Deployment"): True,
    ("rbac.authorization.k8s.io/v1", "RoleBinding"): True,
    ("rbac.authorization.k8s.io/v1", "ClusterRoleBinding"): False,
}


def json_merge(target: Any, patch: Any) -> Any:
    """Apply an RFC 7386 merge patch."""
    if not isinstance(patch, dict):
        return copy.deepcopy(patch)
    result = copy.deepcopy(target) if isinstance(target, dict) else {}
    for key, value in patch.items():
        if value is None:
            result.pop(key, None)
        else:
            result[key] = json_merge(result.get(key), value)
    return result


def apply_defaults(obj: dict[str, Any]) -> None:
    """Fill in fields the API server defaults, including inside list elements."""
    if obj.get("kind") != "Deployment":
        return
    spec = obj.setdefault("spec", {})
    spec.setdefault("replicas", 1)
    spec.setdefault("revisionHistoryLimit", 10)
    pod_spec = spec.get("template", {}).get("spec", {})
    pod_spec.setdefault("restartPolicy", "Always")
    for container in pod_spec.get("containers", []):
        container.setdefault("imagePullPolicy", "IfNotPresent")
        container.setdefault("terminationMessagePolicy", "File")


class FakeClock:
    """Monotonic clock that only moves when something sleeps on it."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class FakeCluster:
    """In-memory stand-in for KubeClient.

    Behaves like an API server where it matters to the controller: UIDs and
    resource versions, server-side defaults, immutable fields, foreground
    deletion that waits on a finalizer, and a status subresource.
    """

    def __init__(self) -> None:
        self.objects: dict[tuple[str, str, str | None, str], dict[str, Any]] = {}
        self.kinds = KindRegistry(self._discover)
        self.calls: list[tuple[str, str, str]] = []
        self.patches: list[dict[str, Any]] = []
        self.events: list[dict[str, Any]] = []
        # When False, foreground deletions wait until finalize() is called
        self.auto_finalize = True
        self._failures: dict[str, OperatorError] = {}
        self._versions = itertools.count(1)

    # Client interface

    def _discover(self, api_version: str, kind: str) -> bool:
        try:
            return SERVED_KINDS[(api_version, kind)]
        except KeyError:
            raise UnsupportedKindError(api_version, kind) from None

    def resolve(self, api_version, kind):
        return self.kinds.resolve(api_version, kind)

    def get(self, api_version, kind, name, namespace=None):
        self._maybe_fail("get")
        obj = self.objects.get(self._key(api_version, kind, name, namespace))
        return copy.deepcopy(obj) if obj is not None else None

    def create(self, body):
        self._maybe_fail("create")
        child = ChildObject(body)
        key = self._key(child.api_version, child.kind, child.name, child.namespace)
        if key in self.objects:
            raise ConflictError(f"{child.describe()} already exists", 409)
        self.calls.append(("create", child.kind, child.name))
        return copy.deepcopy(self._store(key, copy.deepcopy(body)))

    def patch(self, api_version, kind, name, namespace, patch):
        self._maybe_fail("patch")
        key = self._key(api_version, kind, name, namespace)
        live = self.objects.get(key)
        if live is None:
            raise NotFoundError(f"{kind} {name} not found")
        self._check_immutable(live, patch)
        self.calls.append(("patch", kind, name))
        self.patches.append(copy.deepcopy(patch))

        patched = json_merge(live, patch)
        patched["metadata"]["resourceVersion"] = str(next(self._versions))
        apply_defaults(patched)
        self.objects[key] = patched
        return copy.deepcopy(patched)

    def patch_status(self, api_version, kind, name, namespace, status):
        self._maybe_fail("patch_status")
        key = self._key(api_version, kind, name, namespace)
        live = self.objects.get(key)
        if live is None:
            raise NotFoundError(f"{kind} {name} not found")
        self.calls.append(("patch_status", kind, name))
        live["status"] = json_merge(live.get("status") or {}, status)
        return copy.deepcopy(live)

    def delete(self, api_version, kind, name, namespace=None, propagation_policy="Foreground"):
        self._maybe_fail("delete")
        key = self._key(api_version, kind, name, namespace)
        live = self.objects.get(key)
        if live is None:
            return False
        self.calls.append(("delete", kind, name))
        if propagation_policy == "Foreground" and not self.auto_finalize:
            meta = live["metadata"]
            meta.setdefault("deletionTimestamp", "2024-01-01T00:00:00Z")
            if FOREGROUND_DELETION_FINALIZER not in meta.setdefault("finalizers", []):
                meta["finalizers"].append(FOREGROUND_DELETION_FINALIZER)
            return True
        del self.objects[key]
        return True

    def create_event(self, namespace, body):
        self._maybe_fail("create_event")
        event = copy.deepcopy(body)
        event["metadata"]["namespace"] = namespace
        self.events.append(event)

    # Test helpers

    def add(self, body: dict[str, Any]) -> dict[str, Any]:
        """Store an object as if someone else had created it."""
        child = ChildObject(body)
        key = self._key(child.api_version, child.kind, child.name, child.namespace)
        return copy.deepcopy(self._store(key, copy.deepcopy(body)))

    def find(self, api_version, kind, name, namespace=None):
        return self.objects.get(self._key(api_version, kind, name, namespace))

    def finalize(self, api_version, kind, name, namespace=None) -> None:
        """Let a pending foreground deletion complete."""
        del self.objects[self._key(api_version, kind, name, namespace)]

    def fail_next(self, operation: str, error: OperatorError) -> None:
        self._failures[operation] = error

    def writes(self, operation: str | None = None) -> list[tuple[str, str, str]]:
        return [c for c in self.calls if operation is None or c[0] == operation]

    def event_reasons(self) -> list[str]:
        return [e["reason"] for e in self.events]

    def _key(self, api_version, kind, name, namespace):
        info = self.resolve(api_version, kind)
        return (api_version, kind, namespace if info.namespaced else None, name)

    def _store(self, key, body):
        meta = body.setdefault("metadata", {})
        meta["uid"] = str(uuid.uuid4())
        meta["resourceVersion"] = str(next(self._versions))
        meta["creationTimestamp"] = "2024-01-01T00:00:00Z"
        meta["generation"] = 1
        apply_defaults(body)
        self.objects[key] = body
        return body

    def _maybe_fail(self, operation):
        error = self._failures.pop(operation, None)
        if error is not None:
            raise error

    @staticmethod
    def _check_immutable(live, patch):
        kind = live.get("kind")
        if kind in ("RoleBinding", "ClusterRoleBinding"):
            if "roleRef" in patch and patch["roleRef"] != live.get("roleRef"):
                raise InvalidObjectError(
                    f'{kind}.rbac.authorization.k8s.io "{live["metadata"]["name"]}" '
                    "is invalid: roleRef: Invalid value: cannot change roleRef",
                    [{"field": "roleRef", "message": "cannot change roleRef"}],
                )
        if kind == "ConfigMap" and live.get("immutable"):
            if "data" in patch or "binaryData" in patch:
                raise InvalidObjectError(
                    f'ConfigMap "{live["metadata"]["name"]}" is invalid: data: '
                    "Forbidden: field is immutable when `immutable` is set",
                    [
                        {
                            "reason": "FieldValueForbidden",
                            "message": "Forbidden: field is immutable when `immutable` is set",
                            "field": "data",
                        }
                    ],
                )


# =============================================================================
# Example documents
# =============================================================================


def deployment(image: str = "nginx:1.25", **labels: str) -> dict[str, Any]:
    return {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": {"name": "nginx", "labels": {"app": "nginx", **labels}},
        "spec": {
            "selector": {"matchLabels": {"app": "nginx"}},
            "template": {
                "metadata": {"labels": {"app": "nginx"}},
                "spec": {"containers": [{"name": "nginx", "image": image}]},
            },
        },
    }


def cluster_role_binding(role: str = "view") -> dict[str, Any]:
    return {
        "apiVersion": "rbac.authorization.k8s.io/v1",
        "kind": "ClusterRoleBinding",
        "metadata": {"name": "example"},
        "roleRef": {
            "apiGroup": "rbac.authorization.k8s.io",
            "kind": "ClusterRole",
            "name": role,
        },
        "subjects": [
            {"apiGroup": "rbac.authorization.k8s.io", "kind": "User", "name": "alice"}
        ],
    }


def config_map(data: dict[str, str], immutable: bool = False) -> dict[str, Any]:
    body: dict[str, Any] = {
        "apiVersion": "v1",
        "kind": "ConfigMap",
        "metadata": {"name": "settings"},
        "data": data,
    }
    if immutable:
        body["immutable"] = True
    return body


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def cluster():
    return FakeCluster()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def metrics():
    return ControllerMetrics(CollectorRegistry())


@pytest.fixture
def config():
    return ControllerConfig()


@pytest.fixture
def make_reconciler(cluster, metrics, clock):
    def factory(config: ControllerConfig | None = None) -> Reconciler:
        config = config or ControllerConfig()
        applier = Applier(cluster)
        recreator = Recreator(
            cluster,
            applier,
            timeout=config.recreate_wait,
            sleep=clock.sleep,
            clock=clock,
        )
        return Reconciler(cluster, config, metrics, applier=applier, recreator=recreator)

    return factory


@pytest.fixture
def reconciler(make_reconciler, config):
    return make_reconciler(config)


@pytest.fixture
def gittrack(cluster):
    return cluster.add(
        {
            "apiVersion": API_VERSION,
            "kind": "GitTrack",
            "metadata": {"name": "foo", "namespace": "default"},
            "spec": {"repository": "https://example.com/repo.git", "reference": "main"},
        }
    )


@pytest.fixture
def make_tracker(cluster, gittrack):
    """Store a GitTrackObject (or ClusterGitTrackObject) holding data."""

    def factory(
        data: Any,
        name: str = "example",
        namespace: str | None = "default",
        kind: str = "GitTrackObject",
        owner: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        metadata: dict[str, Any] = {
            "name": name,
            "ownerReferences": [owner_reference_for(owner or gittrack)],
        }
        if namespace:
            metadata["namespace"] = namespace
        return cluster.add(
            {
                "apiVersion": API_VERSION,
                "kind": kind,
                "metadata": metadata,
                "spec": {"data": data},
            }
        )

    return factory


@pytest.fixture
def deployment_doc():
    return deployment


@pytest.fixture
def cluster_role_binding_doc():
    return cluster_role_binding


@pytest.fixture
def config_map_doc():
    return config_map
