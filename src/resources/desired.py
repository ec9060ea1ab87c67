"""Decoding and preparing the desired child document of a tracking resource."""

import copy
import json
import logging
from typing import Any

from constants import SERVER_METADATA_FIELDS
from models import ChildObject, KindInfo, UnmarshalError, owner_reference_for
from utils import strip_nulls

logger = logging.getLogger(__name__)


def unmarshal_desired(tracker: dict[str, Any]) -> dict[str, Any]:
    """Decode ``spec.data`` of a tracking resource into a child document.

    ``spec.data`` is either an embedded object or a string of serialized
    JSON. The result is normalised: ``status``, server-owned metadata and
    null values are dropped.

    Raises:
        UnmarshalError: The data is missing, malformed or not an object with
            apiVersion, kind and metadata.name.
    """
    data = (tracker.get("spec") or {}).get("data")
    if data is None or data == "":
        raise UnmarshalError("spec.data is empty")

    if isinstance(data, (str, bytes)):
        try:
            document = json.loads(data)
        except (ValueError, UnicodeDecodeError) as e:
            raise UnmarshalError(f"unable to decode spec.data: {e}") from e
    else:
        document = copy.deepcopy(data)

    if not isinstance(document, dict):
        raise UnmarshalError(
            f"spec.data must hold an object, got {type(document).__name__}"
        )
    if not document.get("apiVersion") or not document.get("kind"):
        raise UnmarshalError("spec.data is missing apiVersion or kind")
    metadata = document.get("metadata")
    if not isinstance(metadata, dict) or not metadata.get("name"):
        raise UnmarshalError("spec.data is missing metadata.name")

    document = strip_nulls(document)
    document.pop("status", None)
    for key in SERVER_METADATA_FIELDS:
        document["metadata"].pop(key, None)
    return document


def place_desired(
    desired: dict[str, Any], tracker: dict[str, Any], kind: KindInfo
) -> dict[str, Any]:
    """Settle the namespace of the desired child.

    Namespaced children of a namespaced tracking resource live in the
    tracking resource's namespace. Cluster-scoped kinds carry no namespace.
    """
    child = ChildObject(desired)
    tracker_namespace = ChildObject(tracker).namespace

    if not kind.namespaced:
        child.metadata.pop("namespace", None)
        return desired

    if child.namespace is None:
        if tracker_namespace is None:
            raise UnmarshalError(
                f"{kind.kind} {child.name} is namespaced but has no metadata.namespace"
            )
        child.metadata["namespace"] = tracker_namespace
    elif tracker_namespace is not None and child.namespace != tracker_namespace:
        raise UnmarshalError(
            f"{kind.kind} {child.name} is in namespace {child.namespace}, "
            f"outside of its tracking resource's namespace {tracker_namespace}"
        )
    return desired


def attach_owner(
    desired: dict[str, Any], tracker: dict[str, Any], live: dict[str, Any] | None
) -> dict[str, Any]:
    """Point the desired child at its tracking resource.

    Owner references added to the live child by someone else are carried
    over so that applying the desired document does not drop them.
    """
    child = ChildObject(desired)
    if live is not None:
        child.metadata["ownerReferences"] = copy.deepcopy(
            ChildObject(live).owner_references
        )
    child.set_owner_reference(owner_reference_for(tracker))
    return desired
