"""Status condition writes for tracking resources."""

import copy
import logging
from typing import Any

from models import ChildObject, Condition, ConditionStatus
from utils import set_condition

logger = logging.getLogger(__name__)


class StatusConditionManager:
    """Keeps ``status.conditions`` of tracking resources up to date.

    Conditions are replaced by type. A write only reaches the API server when
    status, reason or message actually changed, so repeated reconciles of an
    in-sync resource do not touch it.
    """

    def __init__(self, client: Any) -> None:
        self.client = client

    def set_condition(
        self,
        resource: dict[str, Any],
        condition_type: str,
        status: ConditionStatus,
        reason: str,
        message: str = "",
    ) -> bool:
        """Set a condition on a tracking resource. Returns True if it was written."""
        new_status = copy.deepcopy(resource.get("status") or {})
        if not set_condition(new_status, condition_type, status.value, reason, message):
            return False

        obj = ChildObject(resource)
        logger.debug(
            "Setting %s=%s (%s) on %s", condition_type, status.value, reason, obj.describe()
        )
        self.client.patch_status(
            obj.api_version,
            obj.kind,
            obj.name,
            obj.namespace,
            {"conditions": new_status["conditions"]},
        )
        resource["status"] = new_status
        return True

    def get_condition(
        self, resource: dict[str, Any], condition_type: str
    ) -> Condition | None:
        for condition in (resource.get("status") or {}).get("conditions") or []:
            if condition.get("type") == condition_type:
                return Condition.from_dict(condition)
        return None
