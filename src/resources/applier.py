"""Three-way merge of desired documents into live children.

The merge base is the last-applied annotation on the live child: the
document this controller applied previously. Comparing desired, base and
live gives every field an owner:

- controller: the field is in the desired document or in the base. Live is
  forced to the desired value, or the field is removed when desired dropped
  it.
- external: the field is only in live (set by the API server or by another
  actor). It is left alone.

Mappings are merged key by key. Lists and scalars are atomic. A list that
changed since the last apply is sent whole, so fields dropped from its
elements are dropped from live. An unchanged list counts as in sync when
every desired element is covered by the live element at the same position,
so fields the API server defaults inside list elements do not cause a patch
on every reconcile.
"""

import copy
import json
import logging
from collections.abc import Iterator
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from constants import LAST_APPLIED_ANNOTATION
from models import ChildObject
from utils import canonical_json

logger = logging.getLogger(__name__)


class _Missing:
    """Marker for a field absent from a document."""

    def __repr__(self) -> str:
        return "<missing>"


MISSING: Any = _Missing()


class Owner(Enum):
    """Who owns a field of a child."""

    CONTROLLER = "controller"
    EXTERNAL = "external"


class Action(Enum):
    """What the merge does with a field."""

    SET = "set"
    REMOVE = "remove"
    KEEP = "keep"


@dataclass(frozen=True)
class FieldChange:
    """A leaf of the three-way diff."""

    path: tuple[str, ...]
    owner: Owner
    action: Action
    value: Any = None
    # Live differs from the merge base (someone else touched the field)
    drifted: bool = False


def covers(desired: Any, live: Any) -> bool:
    """Check that live carries everything desired asks for.

    Mappings in live may hold extra keys; lists must have the same length
    and cover element-wise; scalars must be equal.
    """
    if isinstance(desired, dict):
        return isinstance(live, dict) and all(
            key in live and covers(value, live[key]) for key, value in desired.items()
        )
    if isinstance(desired, list):
        return (
            isinstance(live, list)
            and len(desired) == len(live)
            and all(covers(d, v) for d, v in zip(desired, live))
        )
    return desired == live


def _keys(*documents: dict[str, Any]) -> list[str]:
    seen: dict[str, None] = {}
    for document in documents:
        for key in document:
            seen.setdefault(key, None)
    return list(seen)


def diff_fields(
    desired: dict[str, Any],
    last_applied: dict[str, Any],
    live: dict[str, Any],
    path: tuple[str, ...] = (),
) -> Iterator[FieldChange]:
    """Walk desired, merge base and live and yield one change per leaf."""
    for key in _keys(desired, last_applied, live):
        want = desired.get(key, MISSING)
        base = last_applied.get(key, MISSING)
        have = live.get(key, MISSING)
        sub = path + (key,)

        if want is MISSING:
            if base is MISSING:
                yield FieldChange(sub, Owner.EXTERNAL, Action.KEEP, have, drifted=True)
            elif have is not MISSING:
                yield FieldChange(
                    sub, Owner.CONTROLLER, Action.REMOVE, drifted=have != base
                )
            continue

        if isinstance(want, dict) and isinstance(have, dict):
            yield from diff_fields(
                want, base if isinstance(base, dict) else {}, have, sub
            )
            continue

        drifted = base is not MISSING and have != base
        # Lists are replaced whole, so a list that changed since the last
        # apply is sent even when live already covers it
        resent = isinstance(want, list) and base is not MISSING and want != base
        if have is MISSING or resent or not covers(want, have):
            yield FieldChange(
                sub, Owner.CONTROLLER, Action.SET, copy.deepcopy(want), drifted
            )
        else:
            yield FieldChange(sub, Owner.CONTROLLER, Action.KEEP, want, drifted)


def merge_patch(changes: list[FieldChange]) -> dict[str, Any]:
    """Build an RFC 7386 JSON merge patch from a field diff."""
    patch: dict[str, Any] = {}
    for change in changes:
        if change.action is Action.KEEP:
            continue
        node = patch
        for part in change.path[:-1]:
            node = node.setdefault(part, {})
        node[change.path[-1]] = None if change.action is Action.REMOVE else change.value
    return patch


def load_last_applied(live: dict[str, Any]) -> dict[str, Any]:
    """Read the merge base from a live child.

    The annotation is trusted as this controller's history even when it was
    edited by hand. A missing or undecodable value means no history.
    """
    raw = ChildObject(live).last_applied
    if not raw:
        return {}
    try:
        document = json.loads(raw)
    except ValueError:
        logger.warning(
            "Ignoring undecodable %s annotation on %s",
            LAST_APPLIED_ANNOTATION,
            ChildObject(live).describe(),
        )
        return {}
    return document if isinstance(document, dict) else {}


def with_last_applied(desired: dict[str, Any]) -> dict[str, Any]:
    """Return a copy of desired carrying its own last-applied annotation.

    Owner references are left out of the record: they are managed by the
    controller and merged with whatever others put on the live child.
    """
    record = copy.deepcopy(desired)
    record.get("metadata", {}).pop("ownerReferences", None)
    annotations = record.get("metadata", {}).get("annotations")
    if annotations is not None:
        annotations.pop(LAST_APPLIED_ANNOTATION, None)
        if not annotations:
            record["metadata"].pop("annotations")

    stamped = copy.deepcopy(desired)
    ChildObject(stamped).set_annotation(LAST_APPLIED_ANNOTATION, canonical_json(record))
    return stamped


@dataclass(frozen=True)
class ApplyPlan:
    """The outcome of a three-way diff, before anything is sent."""

    desired: dict[str, Any]
    changes: list[FieldChange] = field(default_factory=list)
    patch: dict[str, Any] = field(default_factory=dict)

    @property
    def changed(self) -> bool:
        return bool(self.patch)

    def changed_paths(self) -> list[tuple[str, ...]]:
        return [c.path for c in self.changes if c.action is not Action.KEEP]

    def touches(self, path: tuple[str, ...]) -> bool:
        """Whether the patch modifies path, something below it or above it."""
        n = len(path)
        return any(
            changed[:n] == path or path[: len(changed)] == changed
            for changed in self.changed_paths()
        )


@dataclass(frozen=True)
class ApplyResult:
    object: dict[str, Any]
    changed: bool


class Applier:
    """Applies desired documents to live children with a three-way merge."""

    def __init__(self, client: Any) -> None:
        self.client = client

    def plan(
        self,
        desired: dict[str, Any],
        last_applied: dict[str, Any],
        live: dict[str, Any],
    ) -> ApplyPlan:
        target = with_last_applied(desired)
        changes = list(diff_fields(target, last_applied, live))
        return ApplyPlan(desired=target, changes=changes, patch=merge_patch(changes))

    def execute(self, plan: ApplyPlan, live: dict[str, Any]) -> ApplyResult:
        """Send a plan's patch; nothing is sent when the plan is empty."""
        if not plan.changed:
            return ApplyResult(live, False)

        target = ChildObject(plan.desired)
        child = ChildObject(live)
        logger.info(
            "Patching %s: %s",
            child.describe(),
            ", ".join(".".join(p) for p in plan.changed_paths()),
        )
        patched = self.client.patch(
            target.api_version, target.kind, child.name, child.namespace, plan.patch
        )
        return ApplyResult(patched, True)

    def apply(
        self,
        desired: dict[str, Any],
        last_applied: dict[str, Any],
        live: dict[str, Any],
    ) -> ApplyResult:
        """Three-way merge desired into live.

        API errors (conflicts, validation rejections) propagate untouched.
        """
        return self.execute(self.plan(desired, last_applied, live), live)

    def create(self, desired: dict[str, Any]) -> dict[str, Any]:
        """Create a child from desired, recording it as the merge base."""
        body = with_last_applied(desired)
        logger.info("Creating %s", ChildObject(body).describe())
        return self.client.create(body)
