"""Kubernetes API wrapper with retry logic, error translation and rate limiting."""

import contextlib
import json
import logging
import threading
import time
from collections.abc import Callable
from functools import wraps
from typing import Any, ParamSpec, TypeVar

import urllib3
from kubernetes import client as k8s_client
from kubernetes.client.exceptions import ApiException
from kubernetes.dynamic import DynamicClient
from kubernetes.dynamic.exceptions import ResourceNotFoundError, ResourceNotUniqueError

from metrics import ControllerMetrics
from models import (
    ConflictError,
    InvalidObjectError,
    KindInfo,
    KubeAPIError,
    NotFoundError,
    OperatorError,
    UnsupportedKindError,
)
from ratelimit import RateLimiter
from resources.kinds import KindRegistry

logger = logging.getLogger(__name__)

P = ParamSpec("P")
T = TypeVar("T")

MERGE_PATCH = "application/merge-patch+json"


def is_retryable(error: Exception) -> bool:
    """Whether a failed call may succeed when simply repeated."""
    if not isinstance(error, KubeAPIError) or isinstance(error, ConflictError):
        return False
    return error.status is None or error.status == 429 or error.status >= 500


def retry_on_error(
    max_retries: int = 3,
    delay: float = 1.0,
    backoff: float = 2.0,
) -> Callable[[Callable[P, T]], Callable[P, T]]:
    """Decorator to retry reads on transient errors.

    Only applied to idempotent calls; writes surface their first failure and
    are retried by requeueing the whole reconcile.
    """

    def decorator(func: Callable[P, T]) -> Callable[P, T]:
        @wraps(func)
        def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            last_exception: Exception | None = None
            current_delay = delay

            for attempt in range(max_retries + 1):
                try:
                    return func(*args, **kwargs)
                except KubeAPIError as e:
                    if not is_retryable(e):
                        raise
                    last_exception = e
                    if attempt < max_retries:
                        logger.warning(
                            "Attempt %d/%d failed for %s: %s. Retrying in %.1fs...",
                            attempt + 1,
                            max_retries + 1,
                            func.__name__,
                            e,
                            current_delay,
                        )
                        time.sleep(current_delay)
                        current_delay *= backoff
                    else:
                        logger.error(
                            "All %d attempts failed for %s",
                            max_retries + 1,
                            func.__name__,
                        )

            if last_exception is not None:
                raise KubeAPIError(
                    f"Operation {func.__name__} failed after {max_retries + 1} attempts",
                    getattr(last_exception, "status", None),
                ) from last_exception
            raise KubeAPIError(f"Operation {func.__name__} failed unexpectedly")

        return wrapper

    return decorator


def _decode_body(body: Any) -> dict[str, Any]:
    if isinstance(body, bytes):
        body = body.decode("utf-8", errors="replace")
    if isinstance(body, str):
        try:
            body = json.loads(body)
        except ValueError:
            return {}
    return body if isinstance(body, dict) else {}


def translate_api_error(error: ApiException) -> OperatorError:
    """Map an API exception onto the controller's error taxonomy.

    The API server returns a Status object in the body; its message and
    ``details.causes`` are carried over.
    """
    status = getattr(error, "status", None)
    payload = _decode_body(getattr(error, "body", None))
    message = payload.get("message") or getattr(error, "reason", None) or str(error)

    if status == 404:
        return NotFoundError(message)
    if status == 409:
        return ConflictError(message, status)
    if status == 422:
        causes = (payload.get("details") or {}).get("causes") or []
        return InvalidObjectError(message, causes)
    return KubeAPIError(message, status)


class KubeClient:
    """Cluster access for children of any kind and for the tracking resources.

    Objects are exchanged as plain dicts. Every call goes through the rate
    limiter and carries a request deadline, and API exceptions are translated
    into ``OperatorError`` subclasses.
    """

    def __init__(
        self,
        api_client: k8s_client.ApiClient | None = None,
        request_timeout: float = 30.0,
        rate_limiter: RateLimiter | None = None,
        metrics: ControllerMetrics | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            api_client: Configured API client (default: from the loaded kube config)
            request_timeout: Deadline for a single API request in seconds
            rate_limiter: Limiter shared by all calls (default: unlimited)
            metrics: Metrics to count API calls on
        """
        self._api_client = api_client
        self.request_timeout = request_timeout
        self.rate_limiter = rate_limiter
        self.metrics = metrics
        self._dynamic: DynamicClient | None = None
        self._core: k8s_client.CoreV1Api | None = None
        self._lock = threading.Lock()
        self.kinds = KindRegistry(self._discover)

    @property
    def api_client(self) -> k8s_client.ApiClient:
        if self._api_client is None:
            self._api_client = k8s_client.ApiClient()
        return self._api_client

    @property
    def dynamic(self) -> DynamicClient:
        """Get or create the dynamic client (runs API discovery once)."""
        with self._lock:
            if self._dynamic is None:
                logger.info("Discovering cluster API resources")
                self._dynamic = self._call(
                    "discovery", lambda **_: DynamicClient(self.api_client), timeout=False
                )
            return self._dynamic

    @property
    def core(self) -> k8s_client.CoreV1Api:
        if self._core is None:
            self._core = k8s_client.CoreV1Api(self.api_client)
        return self._core

    def close(self) -> None:
        """Close the underlying connection pool."""
        with self._lock:
            if self._api_client is not None:
                self._api_client.close()
                self._api_client = None
                self._dynamic = None
                self._core = None

    def _call(
        self, operation: str, fn: Callable[..., T], timeout: bool = True, **kwargs: Any
    ) -> T:
        """Run one API request under the rate limiter."""
        if timeout:
            kwargs["_request_timeout"] = self.request_timeout
        limiter = (
            self.rate_limiter.acquire()
            if self.rate_limiter is not None
            else contextlib.nullcontext()
        )
        status = "error"
        try:
            with limiter:
                result = fn(**kwargs)
            status = "success"
            return result
        except ApiException as e:
            if e.status == 404:
                status = "not_found"
            raise translate_api_error(e) from e
        except (urllib3.exceptions.HTTPError, OSError) as e:
            raise KubeAPIError(f"{operation} failed: {e}") from e
        finally:
            if self.metrics is not None:
                self.metrics.kube_api_calls.labels(
                    operation=operation, status=status
                ).inc()

    # -------------------------------------------------------------------------
    # Kind discovery
    # -------------------------------------------------------------------------

    def _discover(self, api_version: str, kind: str) -> bool:
        try:
            resource = self.dynamic.resources.get(api_version=api_version, kind=kind)
        except (ResourceNotFoundError, ResourceNotUniqueError) as e:
            raise UnsupportedKindError(api_version, kind) from e
        return bool(resource.namespaced)

    def _resource(self, api_version: str, kind: str) -> Any:
        try:
            return self.dynamic.resources.get(api_version=api_version, kind=kind)
        except (ResourceNotFoundError, ResourceNotUniqueError) as e:
            raise UnsupportedKindError(api_version, kind) from e

    def resolve(self, api_version: str, kind: str) -> KindInfo:
        """Resolve a kind, raising UnsupportedKindError if it is not served."""
        return self.kinds.resolve(api_version, kind)

    # -------------------------------------------------------------------------
    # Object operations
    # -------------------------------------------------------------------------

    @retry_on_error()
    def get(
        self, api_version: str, kind: str, name: str, namespace: str | None = None
    ) -> dict[str, Any] | None:
        """Get an object by name, None if it does not exist."""
        resource = self._resource(api_version, kind)
        try:
            obj = self._call("get", resource.get, name=name, namespace=namespace)
        except NotFoundError:
            return None
        return obj.to_dict()

    def create(self, body: dict[str, Any]) -> dict[str, Any]:
        """Create an object from a full document."""
        resource = self._resource(body["apiVersion"], body["kind"])
        namespace = (body.get("metadata") or {}).get("namespace")
        obj = self._call("create", resource.create, body=body, namespace=namespace)
        return obj.to_dict()

    def patch(
        self,
        api_version: str,
        kind: str,
        name: str,
        namespace: str | None,
        patch: dict[str, Any],
    ) -> dict[str, Any]:
        """Apply a JSON merge patch to an object."""
        resource = self._resource(api_version, kind)
        obj = self._call(
            "patch",
            resource.patch,
            body=patch,
            name=name,
            namespace=namespace,
            content_type=MERGE_PATCH,
        )
        return obj.to_dict()

    def patch_status(
        self,
        api_version: str,
        kind: str,
        name: str,
        namespace: str | None,
        status: dict[str, Any],
    ) -> dict[str, Any]:
        """Merge-patch the status subresource of an object."""
        resource = self._resource(api_version, kind)
        obj = self._call(
            "patch_status",
            resource.status.patch,
            body={"status": status},
            name=name,
            namespace=namespace,
            content_type=MERGE_PATCH,
        )
        return obj.to_dict()

    def delete(
        self,
        api_version: str,
        kind: str,
        name: str,
        namespace: str | None = None,
        propagation_policy: str = "Foreground",
    ) -> bool:
        """Delete an object. Returns False if it was already gone."""
        resource = self._resource(api_version, kind)
        try:
            self._call(
                "delete",
                resource.delete,
                name=name,
                namespace=namespace,
                body={"propagationPolicy": propagation_policy},
            )
        except NotFoundError:
            return False
        return True

    def create_event(self, namespace: str, body: dict[str, Any]) -> None:
        """Create a core/v1 Event."""
        self._call(
            "create_event",
            self.core.create_namespaced_event,
            namespace=namespace,
            body=body,
        )
