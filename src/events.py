"""Kubernetes events about tracking resources."""

import logging
from typing import Any

from models import ChildObject, EventType, OperatorError
from utils import now_rfc3339

logger = logging.getLogger(__name__)

# Event messages are truncated by the API server beyond this
MAX_MESSAGE_LENGTH = 1024


class EventRecorder:
    """Records events on tracking resources.

    When the controller is restricted to one namespace, events are only ever
    written into that namespace; events about objects elsewhere are dropped.
    Recording is fire-and-forget: failures are logged and never fail a
    reconcile.
    """

    def __init__(
        self,
        client: Any,
        namespace: str | None = None,
        component: str = "gittrackobject-controller",
    ) -> None:
        self.client = client
        self.namespace = namespace
        self.component = component

    def event(
        self,
        resource: dict[str, Any],
        event_type: EventType,
        reason: str,
        message: str,
    ) -> None:
        obj = ChildObject(resource)
        if self.namespace and obj.namespace and obj.namespace != self.namespace:
            logger.debug(
                "Not recording %s event for %s outside namespace %s",
                reason,
                obj.describe(),
                self.namespace,
            )
            return

        target_namespace = self.namespace or obj.namespace or "default"
        timestamp = now_rfc3339()
        body = {
            "apiVersion": "v1",
            "kind": "Event",
            "metadata": {
                "generateName": f"{obj.name}.",
                "namespace": target_namespace,
            },
            "involvedObject": {
                "apiVersion": obj.api_version,
                "kind": obj.kind,
                "name": obj.name,
                "namespace": obj.namespace,
                "uid": obj.uid,
                "resourceVersion": obj.metadata.get("resourceVersion"),
            },
            "reason": reason,
            "message": message[:MAX_MESSAGE_LENGTH],
            "type": event_type.value,
            "source": {"component": self.component},
            "reportingComponent": self.component,
            "firstTimestamp": timestamp,
            "lastTimestamp": timestamp,
            "count": 1,
        }

        try:
            self.client.create_event(target_namespace, body)
        except OperatorError as e:
            logger.warning("Failed to record %s event for %s: %s", reason, obj.describe(), e)

    def normal(self, resource: dict[str, Any], reason: str, message: str) -> None:
        self.event(resource, EventType.NORMAL, reason, message)

    def warning(self, resource: dict[str, Any], reason: str, message: str) -> None:
        self.event(resource, EventType.WARNING, reason, message)
