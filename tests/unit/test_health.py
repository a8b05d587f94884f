# ABOUTME: Unit tests for health assessment
# ABOUTME: Tests per-kind health rules and worst-of aggregation

import pytest

from gitsync_mcp.reconciler.health import aggregate, assess
from gitsync_mcp.reconciler.models import HealthStatus


def deployment(replicas=3, ready=3, updated=3, generation=1, observed=1, conditions=None):
    return {
        "kind": "Deployment",
        "metadata": {"name": "web", "generation": generation},
        "spec": {"replicas": replicas},
        "status": {
            "readyReplicas": ready,
            "updatedReplicas": updated,
            "observedGeneration": observed,
            "conditions": conditions or [],
        },
    }


@pytest.mark.unit
class TestAssess:
    """Tests for per-kind health rules."""

    def test_absent_resource_is_missing(self):
        assert assess("Deployment", None) is HealthStatus.MISSING

    def test_unknown_kind_present_is_healthy(self):
        assert assess("ConfigMap", {"data": {}}) is HealthStatus.HEALTHY

    def test_deployment_ready(self):
        assert assess("Deployment", deployment()) is HealthStatus.HEALTHY

    def test_deployment_rolling_out(self):
        assert assess("Deployment", deployment(ready=1)) is HealthStatus.PROGRESSING

    def test_deployment_generation_not_observed(self):
        assert assess("Deployment", deployment(generation=2, observed=1)) is HealthStatus.PROGRESSING

    def test_deployment_deadline_exceeded(self):
        conditions = [{"type": "Progressing", "status": "False", "reason": "ProgressDeadlineExceeded"}]

        assert assess("Deployment", deployment(ready=1, conditions=conditions)) is HealthStatus.DEGRADED

    def test_deployment_without_status_is_progressing(self):
        assert assess("StatefulSet", {"spec": {}}) is HealthStatus.PROGRESSING

    def test_daemon_set(self):
        ready = {"status": {"desiredNumberScheduled": 3, "numberReady": 3}}
        partial = {"status": {"desiredNumberScheduled": 3, "numberReady": 1}}

        assert assess("DaemonSet", ready) is HealthStatus.HEALTHY
        assert assess("DaemonSet", partial) is HealthStatus.PROGRESSING

    @pytest.mark.parametrize(
        ("status", "expected"),
        [
            ({"phase": "Running", "conditions": [{"type": "Ready", "status": "True"}]}, HealthStatus.HEALTHY),
            ({"phase": "Running", "conditions": [{"type": "Ready", "status": "False"}]}, HealthStatus.PROGRESSING),
            ({"phase": "Succeeded"}, HealthStatus.HEALTHY),
            ({"phase": "Failed"}, HealthStatus.DEGRADED),
            ({"phase": "Pending"}, HealthStatus.PROGRESSING),
            (
                {
                    "phase": "Running",
                    "containerStatuses": [{"state": {"waiting": {"reason": "CrashLoopBackOff"}}}],
                },
                HealthStatus.DEGRADED,
            ),
        ],
    )
    def test_pod(self, status, expected):
        assert assess("Pod", {"status": status}) is expected

    def test_load_balancer_service_waits_for_ingress(self):
        pending = {"spec": {"type": "LoadBalancer"}, "status": {"loadBalancer": {}}}
        ready = {"spec": {"type": "LoadBalancer"}, "status": {"loadBalancer": {"ingress": [{"ip": "1.2.3.4"}]}}}

        assert assess("Service", pending) is HealthStatus.PROGRESSING
        assert assess("Service", ready) is HealthStatus.HEALTHY
        assert assess("Service", {"spec": {"type": "ClusterIP"}}) is HealthStatus.HEALTHY

    @pytest.mark.parametrize(
        ("phase", "expected"),
        [("Bound", HealthStatus.HEALTHY), ("Lost", HealthStatus.DEGRADED), ("Pending", HealthStatus.PROGRESSING)],
    )
    def test_pvc(self, phase, expected):
        assert assess("PersistentVolumeClaim", {"status": {"phase": phase}}) is expected

    def test_job(self):
        complete = {"status": {"conditions": [{"type": "Complete", "status": "True"}]}}
        failed = {"status": {"conditions": [{"type": "Failed", "status": "True"}]}}

        assert assess("Job", complete) is HealthStatus.HEALTHY
        assert assess("Job", failed) is HealthStatus.DEGRADED
        assert assess("Job", {"status": {}}) is HealthStatus.PROGRESSING

    def test_hpa_scaling_inactive(self):
        body = {"status": {"conditions": [{"type": "ScalingActive", "status": "False"}]}}

        assert assess("HorizontalPodAutoscaler", body) is HealthStatus.DEGRADED


@pytest.mark.unit
class TestAggregate:
    """Tests for application-level aggregation."""

    def test_empty_is_healthy(self):
        assert aggregate([]) is HealthStatus.HEALTHY

    def test_worst_wins(self):
        statuses = [HealthStatus.HEALTHY, HealthStatus.DEGRADED, HealthStatus.PROGRESSING]

        assert aggregate(statuses) is HealthStatus.DEGRADED

    def test_missing_outranks_degraded(self):
        assert aggregate([HealthStatus.DEGRADED, HealthStatus.MISSING]) is HealthStatus.MISSING
