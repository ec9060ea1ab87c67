"""Update strategies and destructive-change detection."""

import logging
from typing import Any

from constants import UPDATE_STRATEGY_ANNOTATION
from models import ChildObject, InvalidObjectError, KindInfo, UpdateStrategy
from resources.applier import ApplyPlan

logger = logging.getLogger(__name__)


def resolve_update_strategy(
    desired: dict[str, Any], default: UpdateStrategy = UpdateStrategy.DEFAULT
) -> UpdateStrategy:
    """Read the update strategy annotation of a desired document.

    Absent, empty or unrecognised values fall back to the cluster-wide
    default.
    """
    raw = ChildObject(desired).annotations.get(UPDATE_STRATEGY_ANNOTATION, "")
    if not raw:
        return default
    try:
        return UpdateStrategy(raw)
    except ValueError:
        logger.warning(
            "Unknown update strategy %r on %s, using %s",
            raw,
            ChildObject(desired).describe(),
            default.value,
        )
        return default


class ConflictDetector:
    """Decides whether a change can only be applied by recreating the child.

    A change is destructive when the patch touches a field the kind declares
    immutable, or when the API server rejected the patch because of one.
    """

    def is_destructive(self, kind: KindInfo, plan: ApplyPlan) -> bool:
        for path in kind.immutable_fields:
            if plan.touches(path):
                logger.debug(
                    "Change to %s.%s is destructive", kind.kind, ".".join(path)
                )
                return True
        return False

    def is_immutable_rejection(self, error: Exception) -> bool:
        return isinstance(error, InvalidObjectError) and error.immutable
