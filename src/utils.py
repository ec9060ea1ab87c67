"""Utility functions for the GitTrackObject controller."""

import datetime
import json
from typing import Any


def now_iso() -> str:
    """Return current UTC time in ISO format."""
    return datetime.datetime.now(datetime.UTC).isoformat()


def now_rfc3339() -> str:
    """Return current UTC time as an RFC 3339 timestamp with second precision."""
    now = datetime.datetime.now(datetime.UTC).replace(microsecond=0)
    return now.isoformat().replace("+00:00", "Z")


def canonical_json(document: Any) -> str:
    """Serialize a document deterministically.

    Used for the last-applied annotation so that applying the same desired
    document twice yields byte-identical annotation values.
    """
    return json.dumps(document, sort_keys=True, separators=(",", ":"))


def strip_nulls(value: Any) -> Any:
    """Recursively drop ``None`` values from mappings.

    Serialized objects often carry ``null`` for unset fields (for example
    ``creationTimestamp: null``); in a merge patch those would mean "delete".
    """
    if isinstance(value, dict):
        return {k: strip_nulls(v) for k, v in value.items() if v is not None}
    if isinstance(value, list):
        return [strip_nulls(v) for v in value]
    return value


def backoff_delay(retry: int, base: float, ceiling: float) -> float:
    """Exponential requeue delay for the given retry count, bounded by ceiling.

    Example: base=5, ceiling=300 -> 5, 10, 20, 40, ..., 300
    """
    if retry < 0:
        retry = 0
    # Cap the exponent so huge retry counts do not overflow
    return min(base * (2 ** min(retry, 32)), ceiling)


def set_condition(
    status: dict[str, Any],
    condition_type: str,
    condition_status: str,
    reason: str = "",
    message: str = "",
) -> bool:
    """Set or update a condition in the status conditions list.

    Returns True if anything changed. The transition time is only bumped
    when the condition status flips.
    """
    conditions: list[dict[str, str]] = status.setdefault("conditions", [])

    for condition in conditions:
        if condition.get("type") == condition_type:
            if (
                condition.get("status") == condition_status
                and condition.get("reason", "") == reason
                and condition.get("message", "") == message
            ):
                return False
            if condition.get("status") != condition_status:
                condition["status"] = condition_status
                condition["lastTransitionTime"] = now_iso()
            condition["reason"] = reason
            condition["message"] = message
            return True

    conditions.append(
        {
            "type": condition_type,
            "status": condition_status,
            "reason": reason,
            "message": message,
            "lastTransitionTime": now_iso(),
        }
    )
    return True
