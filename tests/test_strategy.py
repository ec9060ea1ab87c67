"""Tests for update strategies and destructive-change detection."""

from constants import UPDATE_STRATEGY_ANNOTATION
from models import InvalidObjectError, KindInfo, KubeAPIError, UpdateStrategy
from resources.applier import Applier
from resources.strategy import ConflictDetector, resolve_update_strategy

BINDING = KindInfo(
    "rbac.authorization.k8s.io/v1",
    "ClusterRoleBinding",
    namespaced=False,
    immutable_fields=(("roleRef",),),
)


def annotated(value):
    return {"metadata": {"name": "x", "annotations": {UPDATE_STRATEGY_ANNOTATION: value}}}


class TestResolveUpdateStrategy:
    """Tests for resolve_update_strategy function."""

    def test_absent(self):
        assert resolve_update_strategy({"metadata": {"name": "x"}}) == UpdateStrategy.DEFAULT

    def test_empty(self):
        assert resolve_update_strategy(annotated("")) == UpdateStrategy.DEFAULT

    def test_known_values(self):
        assert resolve_update_strategy(annotated("never")) == UpdateStrategy.NEVER
        assert resolve_update_strategy(annotated("recreate")) == UpdateStrategy.RECREATE
        assert resolve_update_strategy(annotated("default")) == UpdateStrategy.DEFAULT

    def test_unknown_uses_configured_default(self):
        assert (
            resolve_update_strategy(annotated("sometimes"), UpdateStrategy.NEVER)
            == UpdateStrategy.NEVER
        )

    def test_absent_uses_configured_default(self):
        assert (
            resolve_update_strategy({"metadata": {"name": "x"}}, UpdateStrategy.RECREATE)
            == UpdateStrategy.RECREATE
        )


class TestConflictDetector:
    """Tests for ConflictDetector class."""

    def plan(self, desired_role, live_role, subjects=()):
        binding = {"kind": "ClusterRoleBinding", "metadata": {"name": "x"}}
        desired = {**binding, "roleRef": {"name": desired_role}, "subjects": list(subjects)}
        live = {**binding, "roleRef": {"name": live_role}, "subjects": []}
        return Applier(None).plan(desired, {}, live)

    def test_immutable_field_change(self):
        assert ConflictDetector().is_destructive(BINDING, self.plan("edit", "view"))

    def test_mutable_field_change(self):
        plan = self.plan("view", "view", subjects=[{"name": "alice"}])

        assert plan.changed
        assert not ConflictDetector().is_destructive(BINDING, plan)

    def test_kind_without_immutable_fields(self):
        kind = KindInfo("v1", "ConfigMap", namespaced=True)

        assert not ConflictDetector().is_destructive(kind, self.plan("edit", "view"))

    def test_immutable_rejection(self):
        detector = ConflictDetector()

        assert detector.is_immutable_rejection(InvalidObjectError("field is immutable"))
        assert not detector.is_immutable_rejection(InvalidObjectError("replicas must be positive"))
        assert not detector.is_immutable_rejection(KubeAPIError("field is immutable", 500))
