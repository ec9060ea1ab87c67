"""Tests for kind resolution."""

import pytest

from models import UnsupportedKindError
from resources.kinds import KindRegistry, api_group


class TestApiGroup:
    """Tests for api_group function."""

    def test_named_group(self):
        assert api_group("apps/v1") == "apps"

    def test_core_group(self):
        assert api_group("v1") == ""


class TestKindRegistry:
    """Tests for KindRegistry class."""

    def test_resolves_and_caches(self):
        lookups = []

        def lookup(api_version, kind):
            lookups.append((api_version, kind))
            return True

        registry = KindRegistry(lookup)
        first = registry.resolve("apps/v1", "Deployment")
        second = registry.resolve("apps/v1", "Deployment")

        assert first is second
        assert first.namespaced is True
        assert ("spec", "selector") in first.immutable_fields
        assert lookups == [("apps/v1", "Deployment")]

    def test_immutable_fields_for_any_version(self):
        registry = KindRegistry(lambda api_version, kind: False)

        info = registry.resolve("rbac.authorization.k8s.io/v1beta1", "ClusterRoleBinding")

        assert info.immutable_fields == (("roleRef",),)

    def test_unknown_kind_has_no_immutable_fields(self):
        registry = KindRegistry(lambda api_version, kind: True)

        assert registry.resolve("example.com/v1", "Widget").immutable_fields == ()

    def test_unsupported_kind_is_not_cached(self):
        served = set()

        def lookup(api_version, kind):
            if (api_version, kind) not in served:
                raise UnsupportedKindError(api_version, kind)
            return True

        registry = KindRegistry(lookup)
        with pytest.raises(UnsupportedKindError):
            registry.resolve("example.com/v1", "Widget")

        # CRD registered later
        served.add(("example.com/v1", "Widget"))
        assert registry.resolve("example.com/v1", "Widget").kind == "Widget"

    def test_missing_kind(self):
        registry = KindRegistry(lambda api_version, kind: True)

        with pytest.raises(UnsupportedKindError):
            registry.resolve("v1", "")

    def test_invalidate(self):
        calls = []
        registry = KindRegistry(lambda api_version, kind: calls.append(kind) or True)
        registry.resolve("v1", "ConfigMap")
        registry.invalidate()
        registry.resolve("v1", "ConfigMap")

        assert calls == ["ConfigMap", "ConfigMap"]
