# ABOUTME: Data model for reconciliation passes
# ABOUTME: Resource identities, desired/observed resources, patch operations and sync results

"""
Core reconciler data types.

A pass moves through these types in order:

    SourceSnapshot -> DesiredResource (per identity)
                   -> ObservedResource (per identity)
                   -> PatchOperation (per differing identity)
                   -> ResourceOutcome (per applied operation)
                   -> SyncResult (per application)

Desired resources are immutable for the revision they were rendered from.
Observed resources are fresh reads; nothing in the reconciler writes them.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

# Kinds that live outside namespaces. Anything else is namespaced.
CLUSTER_SCOPED_KINDS = frozenset(
    [
        "Namespace",
        "CustomResourceDefinition",
        "ClusterRole",
        "ClusterRoleBinding",
        "PersistentVolume",
        "StorageClass",
        "PriorityClass",
        "IngressClass",
        "RuntimeClass",
        "MutatingWebhookConfiguration",
        "ValidatingWebhookConfiguration",
        "APIService",
        "Node",
    ]
)

TRACKING_LABEL = "app.kubernetes.io/instance"


def api_group(api_version: str) -> str:
    """Group part of an apiVersion ("apps/v1" -> "apps", "v1" -> "")."""
    return api_version.rsplit("/", 1)[0] if "/" in api_version else ""


def is_namespaced(kind: str) -> bool:
    return kind not in CLUSTER_SCOPED_KINDS


@dataclass(frozen=True, order=True)
class ResourceIdentity:
    """
    Identity of a Kubernetes resource.

    The API version is not part of the identity: "apps/v1 Deployment" and
    "apps/v1beta2 Deployment" with the same name are the same object.
    Cluster-scoped resources have an empty namespace.
    """

    group: str
    kind: str
    namespace: str
    name: str

    @classmethod
    def from_body(cls, body: dict[str, Any]) -> ResourceIdentity:
        metadata = body.get("metadata") or {}
        kind = str(body.get("kind", ""))
        return cls(
            group=api_group(str(body.get("apiVersion", ""))),
            kind=kind,
            namespace=str(metadata.get("namespace") or "") if is_namespaced(kind) else "",
            name=str(metadata.get("name", "")),
        )

    @property
    def namespaced(self) -> bool:
        return is_namespaced(self.kind)

    def __str__(self) -> str:
        if self.namespace:
            return f"{self.kind}/{self.namespace}/{self.name}"
        return f"{self.kind}/{self.name}"


@dataclass(frozen=True)
class DesiredResource:
    """A rendered manifest at a given source revision."""

    identity: ResourceIdentity
    body: dict[str, Any]
    revision: str

    @property
    def api_version(self) -> str:
        return str(self.body.get("apiVersion", ""))

    def payload(self) -> dict[str, Any]:
        """Deep copy of the body, safe to hand to a writer."""
        return copy.deepcopy(self.body)


@dataclass
class ObservedResource:
    """Live state of a resource as last read from the cluster."""

    identity: ResourceIdentity
    body: dict[str, Any]
    observed_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def api_version(self) -> str:
        return str(self.body.get("apiVersion", ""))

    @property
    def resource_version(self) -> str | None:
        return (self.body.get("metadata") or {}).get("resourceVersion")


class PatchKind(str, Enum):
    """What to do with one resource."""

    CREATE = "Create"
    UPDATE = "Update"
    DELETE = "Delete"
    PRUNE = "Prune"

    @property
    def removes(self) -> bool:
        return self in (PatchKind.DELETE, PatchKind.PRUNE)


@dataclass
class PatchOperation:
    """
    One change in a patch set.

    ``payload`` is the desired body for Create/Update and None for removals.
    ``api_version`` is carried separately so removals know which endpoint
    to call.
    """

    kind: PatchKind
    identity: ResourceIdentity
    api_version: str
    payload: dict[str, Any] | None = None
    wave: int = 0
    changed_fields: list[str] = field(default_factory=list)

    def describe(self) -> str:
        line = f"{self.kind.value} {self.identity}"
        if self.changed_fields:
            shown = ", ".join(self.changed_fields[:5])
            more = len(self.changed_fields) - 5
            line += f" ({shown}{f', +{more} more' if more > 0 else ''})"
        return line


class SyncStatus(str, Enum):
    SYNCED = "Synced"
    OUT_OF_SYNC = "OutOfSync"
    UNKNOWN = "Unknown"
    ERROR = "Error"


class HealthStatus(str, Enum):
    """Resource or application health, ordered by severity."""

    HEALTHY = "Healthy"
    PROGRESSING = "Progressing"
    DEGRADED = "Degraded"
    MISSING = "Missing"

    @property
    def severity(self) -> int:
        return _HEALTH_SEVERITY[self]


_HEALTH_SEVERITY = {
    HealthStatus.HEALTHY: 0,
    HealthStatus.PROGRESSING: 1,
    HealthStatus.DEGRADED: 2,
    HealthStatus.MISSING: 3,
}


@dataclass
class ResourceOutcome:
    """What happened to one resource during a pass."""

    identity: ResourceIdentity
    operation: PatchKind | None
    succeeded: bool
    message: str = ""
    error_type: str | None = None
    attempts: int = 0
    health: HealthStatus | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "resource": str(self.identity),
            "operation": self.operation.value if self.operation else None,
            "succeeded": self.succeeded,
            "message": self.message,
            "error_type": self.error_type,
            "attempts": self.attempts,
            "health": self.health.value if self.health else None,
        }


@dataclass
class SyncResult:
    """
    Outcome of one reconciliation pass for one application.

    Only the most recent result is kept per application.
    """

    application: str
    revision: str | None
    status: SyncStatus
    health: HealthStatus
    started_at: datetime
    finished_at: datetime
    resources: list[ResourceOutcome] = field(default_factory=list)
    drift: list[ResourceIdentity] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    pending: list[PatchOperation] = field(default_factory=list)
    dry_run: bool = False

    @property
    def duration_seconds(self) -> float:
        return (self.finished_at - self.started_at).total_seconds()

    def to_dict(self) -> dict[str, Any]:
        return {
            "application": self.application,
            "revision": self.revision,
            "status": self.status.value,
            "health": self.health.value,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat(),
            "dry_run": self.dry_run,
            "resources": [r.to_dict() for r in self.resources],
            "drift": [str(i) for i in self.drift],
            "pending": [op.describe() for op in self.pending],
            "errors": list(self.errors),
        }
