"""Kind resolution for child objects.

Children can be of any kind the API server serves. The registry turns an
``(apiVersion, kind)`` pair into a ``KindInfo`` once and caches it, so the
rest of the controller can treat every kind uniformly. Kinds the server does
not serve fail fast with ``UnsupportedKindError``.
"""

import logging
import threading
from collections.abc import Callable

from models import KindInfo, UnsupportedKindError

logger = logging.getLogger(__name__)

# Fields the API server refuses to change in place, keyed by (group, kind).
# Patches touching these can only be applied by deleting and recreating.
IMMUTABLE_FIELDS: dict[tuple[str, str], tuple[tuple[str, ...], ...]] = {
    ("rbac.authorization.k8s.io", "RoleBinding"): (("roleRef",),),
    ("rbac.authorization.k8s.io", "ClusterRoleBinding"): (("roleRef",),),
    ("apps", "Deployment"): (("spec", "selector"),),
    ("apps", "ReplicaSet"): (("spec", "selector"),),
    ("apps", "DaemonSet"): (("spec", "selector"),),
    ("apps", "StatefulSet"): (
        ("spec", "selector"),
        ("spec", "serviceName"),
        ("spec", "volumeClaimTemplates"),
        ("spec", "podManagementPolicy"),
    ),
    ("batch", "Job"): (
        ("spec", "selector"),
        ("spec", "template"),
        ("spec", "completionMode"),
    ),
    ("", "Service"): (("spec", "clusterIP"), ("spec", "clusterIPs")),
    ("", "PersistentVolumeClaim"): (
        ("spec", "storageClassName"),
        ("spec", "volumeName"),
        ("spec", "accessModes"),
        ("spec", "selector"),
    ),
    ("", "Secret"): (("type",),),
}


def api_group(api_version: str) -> str:
    """Return the API group of an apiVersion ("" for the core group).

    Example: 'apps/v1' -> 'apps', 'v1' -> ''
    """
    group, _, _ = api_version.rpartition("/")
    return group


class KindRegistry:
    """Resolves and caches the kinds children are made of."""

    def __init__(self, lookup: Callable[[str, str], bool]) -> None:
        """Initialize the registry.

        Args:
            lookup: Called with (apiVersion, kind); returns whether the kind is
                namespaced or raises UnsupportedKindError.
        """
        self._lookup = lookup
        self._cache: dict[tuple[str, str], KindInfo] = {}
        self._lock = threading.Lock()

    def resolve(self, api_version: str, kind: str) -> KindInfo:
        if not api_version or not kind:
            raise UnsupportedKindError(api_version, kind)

        key = (api_version, kind)
        with self._lock:
            cached = self._cache.get(key)
        if cached is not None:
            return cached

        # Unsupported kinds are not cached: their CRD may be registered later
        namespaced = self._lookup(api_version, kind)
        info = KindInfo(
            api_version=api_version,
            kind=kind,
            namespaced=namespaced,
            immutable_fields=IMMUTABLE_FIELDS.get((api_group(api_version), kind), ()),
        )
        with self._lock:
            self._cache[key] = info
        logger.debug("Resolved %s %s (namespaced=%s)", api_version, kind, namespaced)
        return info

    def invalidate(self) -> None:
        with self._lock:
            self._cache.clear()
