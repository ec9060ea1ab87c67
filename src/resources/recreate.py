"""Delete-and-recreate of children whose changes cannot be patched in place."""

import logging
import time
from collections.abc import Callable
from enum import Enum
from typing import Any

from constants import FOREGROUND_DELETION_FINALIZER
from models import ChildObject, DeletionPendingError
from resources.applier import Applier

logger = logging.getLogger(__name__)


class DeletionStatus(Enum):
    """Where a child is in its deletion."""

    GONE = "Gone"
    PENDING = "Pending"


class Recreator:
    """Replaces a child by deleting it in the foreground and creating it again.

    Waiting for the deletion is bounded: when the old child is still there
    after the timeout, ``DeletionPendingError`` is raised so the caller can
    requeue instead of blocking. The next reconcile then finds the child
    either still being deleted or gone, and creates it in the latter case.
    """

    def __init__(
        self,
        client: Any,
        applier: Applier,
        timeout: float = 10.0,
        initial_interval: float = 0.25,
        max_interval: float = 2.0,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.client = client
        self.applier = applier
        self.timeout = timeout
        self.initial_interval = initial_interval
        self.max_interval = max_interval
        self._sleep = sleep
        self._clock = clock

    def delete(self, live: dict[str, Any]) -> None:
        """Delete a child with foreground propagation.

        The API server marks the child with the foregroundDeletion finalizer
        and only removes it once its own dependents are gone.
        """
        child = ChildObject(live)
        logger.info("Deleting %s (foreground) for recreation", child.describe())
        self.client.delete(
            child.api_version,
            child.kind,
            child.name,
            child.namespace,
            propagation_policy="Foreground",
        )

    def wait_for_deletion(self, live: dict[str, Any]) -> DeletionStatus:
        """Poll with exponential backoff until the child is gone or time is up."""
        child = ChildObject(live)
        deadline = self._clock() + self.timeout
        interval = self.initial_interval

        while True:
            current = self.client.get(
                child.api_version, child.kind, child.name, child.namespace
            )
            if current is None or ChildObject(current).uid != child.uid:
                return DeletionStatus.GONE

            remaining = deadline - self._clock()
            if remaining <= 0:
                finalizers = ChildObject(current).finalizers
                if FOREGROUND_DELETION_FINALIZER in finalizers:
                    logger.info(
                        "%s is waiting for its dependents to be deleted",
                        child.describe(),
                    )
                else:
                    logger.info(
                        "%s is still present (finalizers: %s)",
                        child.describe(),
                        finalizers,
                    )
                return DeletionStatus.PENDING

            self._sleep(min(interval, remaining))
            interval = min(interval * 2, self.max_interval)

    def recreate(self, desired: dict[str, Any], live: dict[str, Any]) -> dict[str, Any]:
        """Delete live and create desired in its place; returns the new child."""
        self.delete(live)
        if self.wait_for_deletion(live) is DeletionStatus.PENDING:
            child = ChildObject(live)
            raise DeletionPendingError(
                f"{child.describe()} is still being deleted, "
                f"finalizers: {ChildObject(self._current(live) or live).finalizers}"
            )
        return self.applier.create(desired)

    def _current(self, live: dict[str, Any]) -> dict[str, Any] | None:
        child = ChildObject(live)
        return self.client.get(child.api_version, child.kind, child.name, child.namespace)
