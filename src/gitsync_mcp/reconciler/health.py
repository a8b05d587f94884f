# ABOUTME: Health assessment for live resources
# ABOUTME: Maps kind-specific status fields to health and rolls them up per application

"""Per-kind health rules and worst-of aggregation."""

from __future__ import annotations

from collections.abc import Callable, Iterable
from typing import Any

from gitsync_mcp.reconciler.models import HealthStatus

HealthRule = Callable[[dict[str, Any]], HealthStatus]


def _conditions(status: dict[str, Any]) -> dict[str, dict[str, Any]]:
    return {c.get("type", ""): c for c in status.get("conditions") or [] if isinstance(c, dict)}


def _generation_pending(body: dict[str, Any]) -> bool:
    generation = (body.get("metadata") or {}).get("generation")
    observed = (body.get("status") or {}).get("observedGeneration")
    return generation is not None and observed is not None and observed < generation


def _replicated(body: dict[str, Any]) -> HealthStatus:
    """Deployment, StatefulSet and ReplicaSet."""
    spec = body.get("spec") or {}
    status = body.get("status") or {}

    progressing = _conditions(status).get("Progressing")
    if progressing and progressing.get("reason") == "ProgressDeadlineExceeded":
        return HealthStatus.DEGRADED
    if _generation_pending(body):
        return HealthStatus.PROGRESSING

    desired = spec.get("replicas", 1)
    ready = status.get("readyReplicas", 0) or 0
    updated = status.get("updatedReplicas", ready)
    if ready >= desired and (updated is None or updated >= desired):
        return HealthStatus.HEALTHY
    return HealthStatus.PROGRESSING


def _daemon_set(body: dict[str, Any]) -> HealthStatus:
    if _generation_pending(body):
        return HealthStatus.PROGRESSING
    status = body.get("status") or {}
    desired = status.get("desiredNumberScheduled", 0) or 0
    ready = status.get("numberReady", 0) or 0
    return HealthStatus.HEALTHY if ready >= desired else HealthStatus.PROGRESSING


def _pod(body: dict[str, Any]) -> HealthStatus:
    status = body.get("status") or {}
    for container in status.get("containerStatuses") or []:
        waiting = (container.get("state") or {}).get("waiting") or {}
        if waiting.get("reason") in ("CrashLoopBackOff", "ImagePullBackOff", "ErrImagePull"):
            return HealthStatus.DEGRADED

    phase = status.get("phase")
    if phase == "Succeeded":
        return HealthStatus.HEALTHY
    if phase == "Failed":
        return HealthStatus.DEGRADED
    if phase == "Running" and _conditions(status).get("Ready", {}).get("status") == "True":
        return HealthStatus.HEALTHY
    return HealthStatus.PROGRESSING


def _has_lb_ingress(body: dict[str, Any]) -> bool:
    lb = ((body.get("status") or {}).get("loadBalancer")) or {}
    return bool(lb.get("ingress"))


def _service(body: dict[str, Any]) -> HealthStatus:
    if (body.get("spec") or {}).get("type") == "LoadBalancer" and not _has_lb_ingress(body):
        return HealthStatus.PROGRESSING
    return HealthStatus.HEALTHY


def _ingress(body: dict[str, Any]) -> HealthStatus:
    return HealthStatus.HEALTHY if _has_lb_ingress(body) else HealthStatus.PROGRESSING


def _pvc(body: dict[str, Any]) -> HealthStatus:
    phase = (body.get("status") or {}).get("phase")
    if phase == "Bound":
        return HealthStatus.HEALTHY
    if phase == "Lost":
        return HealthStatus.DEGRADED
    return HealthStatus.PROGRESSING


def _job(body: dict[str, Any]) -> HealthStatus:
    conditions = _conditions(body.get("status") or {})
    if conditions.get("Failed", {}).get("status") == "True":
        return HealthStatus.DEGRADED
    if conditions.get("Complete", {}).get("status") == "True":
        return HealthStatus.HEALTHY
    return HealthStatus.PROGRESSING


def _hpa(body: dict[str, Any]) -> HealthStatus:
    conditions = _conditions(body.get("status") or {})
    if conditions.get("ScalingActive", {}).get("status") == "False":
        return HealthStatus.DEGRADED
    if conditions.get("AbleToScale", {}).get("status") == "False":
        return HealthStatus.DEGRADED
    return HealthStatus.HEALTHY


RULES: dict[str, HealthRule] = {
    "Deployment": _replicated,
    "StatefulSet": _replicated,
    "ReplicaSet": _replicated,
    "DaemonSet": _daemon_set,
    "Pod": _pod,
    "Service": _service,
    "Ingress": _ingress,
    "PersistentVolumeClaim": _pvc,
    "Job": _job,
    "HorizontalPodAutoscaler": _hpa,
}


def assess(kind: str, body: dict[str, Any] | None) -> HealthStatus:
    """Health of one resource. ``None`` means the resource is not in the cluster."""
    if body is None:
        return HealthStatus.MISSING
    rule = RULES.get(kind)
    return rule(body) if rule else HealthStatus.HEALTHY


def aggregate(statuses: Iterable[HealthStatus]) -> HealthStatus:
    """
    Worst status wins: Missing > Degraded > Progressing > Healthy.

    An application with no resources is Healthy.
    """
    return max(statuses, key=lambda s: s.severity, default=HealthStatus.HEALTHY)
