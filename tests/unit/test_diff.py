# ABOUTME: Unit tests for the diff engine
# ABOUTME: Tests merge and full-replace comparison, server-field normalization and prune decisions

from typing import Any

import pytest

from gitsync_mcp.reconciler.diff import compute_diff, field_diff, normalize, sync_wave
from gitsync_mcp.reconciler.models import (
    DesiredResource,
    ObservedResource,
    PatchKind,
    ResourceIdentity,
)


def configmap(name: str, data: dict[str, Any], **metadata: Any) -> dict[str, Any]:
    return {
        "apiVersion": "v1",
        "kind": "ConfigMap",
        "metadata": {"name": name, "namespace": "apps", **metadata},
        "data": data,
    }


def desired(body: dict[str, Any]) -> dict[ResourceIdentity, DesiredResource]:
    identity = ResourceIdentity.from_body(body)
    return {identity: DesiredResource(identity=identity, body=body, revision="abc123")}


def observed(*bodies: dict[str, Any]) -> dict[ResourceIdentity, ObservedResource]:
    result = {}
    for body in bodies:
        identity = ResourceIdentity.from_body(body)
        result[identity] = ObservedResource(identity=identity, body=body)
    return result


@pytest.mark.unit
class TestNormalize:
    """Tests for server-managed field removal."""

    def test_strips_status_and_server_metadata(self):
        body = configmap("a", {}, uid="123", resourceVersion="9", managedFields=[{}], generation=2)
        body["status"] = {"phase": "Active"}

        result = normalize(body)

        assert "status" not in result
        assert result["metadata"] == {"name": "a", "namespace": "apps"}

    def test_strips_last_applied_annotation(self):
        body = configmap(
            "a",
            {},
            annotations={"kubectl.kubernetes.io/last-applied-configuration": "{}", "team": "web"},
        )

        assert normalize(body)["metadata"]["annotations"] == {"team": "web"}

    def test_does_not_mutate_input(self):
        body = configmap("a", {}, uid="123")

        normalize(body)

        assert body["metadata"]["uid"] == "123"


@pytest.mark.unit
class TestFieldDiff:
    """Tests for field-level comparison."""

    def test_merge_ignores_fields_only_in_observed(self):
        want = {"apiVersion": "v1", "kind": "Service", "metadata": {"name": "s"}, "spec": {"ports": [{"port": 80}]}}
        live = {
            "apiVersion": "v1",
            "kind": "Service",
            "metadata": {"name": "s", "uid": "1", "labels": {"injected": "yes"}},
            "spec": {"ports": [{"port": 80, "protocol": "TCP"}], "clusterIP": "10.0.0.1"},
            "status": {"loadBalancer": {}},
        }

        assert field_diff(want, live) == []

    def test_merge_reports_changed_paths(self):
        want = configmap("a", {"color": "blue", "size": "l"})
        live = configmap("a", {"color": "red", "size": "l"})

        assert field_diff(want, live) == ["data.color"]

    def test_list_length_change_reported(self):
        want = {"spec": {"ports": [{"port": 80}, {"port": 443}]}}
        live = {"spec": {"ports": [{"port": 80}]}}

        assert field_diff(want, live) == ["spec.ports"]

    def test_numbers_compare_by_value(self):
        assert field_diff({"spec": {"replicas": 2.0}}, {"spec": {"replicas": 2}}) == []

    def test_bool_is_not_a_number(self):
        assert field_diff({"spec": {"flag": True}}, {"spec": {"flag": 1}}) == ["spec.flag"]

    def test_explicit_null_matches_absent(self):
        assert field_diff({"spec": {"nodeSelector": None}}, {"spec": {}}) == []

    def test_exclusive_detects_extra_keys(self):
        want = configmap("a", {"color": "blue"})
        live = configmap("a", {"color": "blue", "added": "by-hand"})

        assert field_diff(want, live) == []
        assert field_diff(want, live, exclusive=True) == ["data.added"]

    def test_exclusive_keeps_metadata_as_subset(self):
        want = configmap("a", {"color": "blue"})
        live = configmap("a", {"color": "blue"}, labels={"added-by": "controller"})

        assert field_diff(want, live, exclusive=True) == []


@pytest.mark.unit
class TestSyncWave:
    """Tests for sync-wave annotation parsing."""

    def test_reads_annotation(self):
        body = configmap("a", {}, annotations={"argocd.argoproj.io/sync-wave": "-2"})

        assert sync_wave(body) == -2

    @pytest.mark.parametrize("value", [None, "soon", ""])
    def test_invalid_or_missing_is_zero(self, value):
        annotations = {} if value is None else {"argocd.argoproj.io/sync-wave": value}

        assert sync_wave(configmap("a", {}, annotations=annotations)) == 0


@pytest.mark.unit
class TestComputeDiff:
    """Tests for patch set computation."""

    def test_missing_resource_is_created(self):
        want = configmap("a", {"k": "v"})

        result = compute_diff(desired(want), {})

        assert [o.kind for o in result.operations] == [PatchKind.CREATE]
        assert result.operations[0].payload == want
        assert result.operations[0].payload is not want

    def test_changed_resource_is_updated(self):
        result = compute_diff(desired(configmap("a", {"k": "v"})), observed(configmap("a", {"k": "x"})))

        assert [o.kind for o in result.operations] == [PatchKind.UPDATE]
        assert result.operations[0].changed_fields == ["data.k"]

    def test_equal_resource_produces_nothing(self):
        result = compute_diff(desired(configmap("a", {"k": "v"})), observed(configmap("a", {"k": "v"}, uid="1")))

        assert result.in_sync

    def test_extra_resource_is_drift_without_prune(self):
        result = compute_diff({}, observed(configmap("orphan", {})), prune=False)

        assert result.operations == []
        assert [str(i) for i in result.drift] == ["ConfigMap/apps/orphan"]
        assert not result.in_sync

    def test_extra_resource_is_pruned_with_prune(self):
        result = compute_diff({}, observed(configmap("orphan", {})), prune=True)

        assert [o.kind for o in result.operations] == [PatchKind.PRUNE]
        assert result.operations[0].payload is None
        assert result.operations[0].api_version == "v1"

    def test_operations_are_sorted(self):
        wanted = {**desired(configmap("b", {})), **desired(configmap("a", {}))}

        result = compute_diff(wanted, {})

        assert [o.identity.name for o in result.operations] == ["a", "b"]

    def test_wave_copied_to_operation(self):
        want = configmap("a", {}, annotations={"argocd.argoproj.io/sync-wave": "3"})

        result = compute_diff(desired(want), {})

        assert result.operations[0].wave == 3

    def test_exclusive_kinds_use_full_compare(self):
        want = desired(configmap("a", {"k": "v"}))
        live = observed(configmap("a", {"k": "v", "extra": "1"}))

        assert compute_diff(want, live).in_sync
        assert not compute_diff(want, live, exclusive_kinds=["ConfigMap"]).in_sync
