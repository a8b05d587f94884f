# ABOUTME: Cluster state observer for the reconciler
# ABOUTME: Takes read-only snapshots of live resources tracked by an application

"""
Live state snapshots.

A snapshot holds two kinds of live objects:

1. Every desired identity, fetched individually.
2. Every object carrying the application's tracking label, listed per kind
   the application has rendered plus a fixed set of built-in kinds. These
   are the prune candidates. The built-in set lets a restarted server find
   leftovers of a kind that no longer appears in git.

Anything that could not be read ends up in ``unobserved`` (identities) or
``unobserved_kinds``; the reconciler leaves those alone for the pass rather
than guessing.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING

import structlog

from gitsync_mcp.reconciler.errors import ReconcileError
from gitsync_mcp.reconciler.models import TRACKING_LABEL, ObservedResource, ResourceIdentity

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping

    from gitsync_mcp.reconciler.models import DesiredResource
    from gitsync_mcp.utils.client import ClusterAPI

logger = structlog.get_logger(__name__)

DEFAULT_PRUNE_KINDS: tuple[tuple[str, str], ...] = (
    ("v1", "ConfigMap"),
    ("v1", "Secret"),
    ("v1", "Service"),
    ("v1", "ServiceAccount"),
    ("v1", "PersistentVolumeClaim"),
    ("apps/v1", "Deployment"),
    ("apps/v1", "StatefulSet"),
    ("apps/v1", "DaemonSet"),
    ("batch/v1", "Job"),
    ("batch/v1", "CronJob"),
    ("networking.k8s.io/v1", "Ingress"),
    ("rbac.authorization.k8s.io/v1", "Role"),
    ("rbac.authorization.k8s.io/v1", "RoleBinding"),
    ("autoscaling/v2", "HorizontalPodAutoscaler"),
)


@dataclass
class ObservedSnapshot:
    resources: dict[ResourceIdentity, ObservedResource] = field(default_factory=dict)
    unobserved: dict[ResourceIdentity, ReconcileError] = field(default_factory=dict)
    unobserved_kinds: set[tuple[str, str]] = field(default_factory=set)
    taken_at: datetime = field(default_factory=lambda: datetime.now(UTC))


class ClusterStateObserver:
    """Read-only view of one application's resources."""

    def __init__(self, cluster: ClusterAPI, application: str, concurrency: int = 8) -> None:
        self._cluster = cluster
        self._application = application
        self._concurrency = concurrency

    @property
    def selector(self) -> str:
        return f"{TRACKING_LABEL}={self._application}"

    async def get(self, api_version: str, identity: ResourceIdentity) -> ObservedResource | None:
        body = await self._cluster.get(api_version, identity)
        if body is None:
            return None
        return ObservedResource(identity=identity, body=body)

    async def snapshot(
        self,
        desired: Mapping[ResourceIdentity, DesiredResource],
        tracked_kinds: Iterable[tuple[str, str]] = (),
        optional_kinds: Iterable[tuple[str, str]] = (),
    ) -> ObservedSnapshot:
        """
        Read the live state for a pass.

        Args:
            desired: Rendered resources of the current revision.
            tracked_kinds: (apiVersion, kind) pairs to list by tracking label,
                typically every kind the application has rendered so far.
            optional_kinds: Extra pairs to list. A failure to list one of these
                is logged and ignored (the kind may not be served, or RBAC
                may not allow it).
        """
        snap = ObservedSnapshot()
        semaphore = asyncio.Semaphore(self._concurrency)

        async def fetch(identity: ResourceIdentity, api_version: str) -> None:
            async with semaphore:
                try:
                    observed = await self.get(api_version, identity)
                except ReconcileError as e:
                    logger.warning("Failed to read resource", resource=str(identity), error=str(e))
                    snap.unobserved[identity] = e
                    return
            if observed is not None:
                snap.resources[identity] = observed

        async def list_kind(api_version: str, kind: str, required: bool = True) -> None:
            async with semaphore:
                try:
                    items = await self._cluster.list(api_version, kind, label_selector=self.selector)
                except ReconcileError as e:
                    if not required:
                        logger.debug("Skipping unlistable kind", kind=kind, error=str(e))
                        return
                    logger.warning("Failed to list kind", kind=kind, error=str(e))
                    snap.unobserved_kinds.add((api_version, kind))
                    return
            for item in items:
                # objects created by controllers may inherit our label
                if (item.get("metadata") or {}).get("ownerReferences"):
                    continue
                identity = ResourceIdentity.from_body(item)
                if identity not in snap.resources and identity not in desired:
                    snap.resources[identity] = ObservedResource(identity=identity, body=item)

        kinds = set(tracked_kinds) | {(d.api_version, i.kind) for i, d in desired.items()}
        async with asyncio.TaskGroup() as tg:
            for identity, resource in desired.items():
                tg.create_task(fetch(identity, resource.api_version))
            for api_version, kind in sorted(kinds):
                tg.create_task(list_kind(api_version, kind))
            for api_version, kind in sorted(set(optional_kinds) - kinds):
                tg.create_task(list_kind(api_version, kind, required=False))

        logger.debug(
            "Observed cluster state",
            application=self._application,
            observed=len(snap.resources),
            unobserved=len(snap.unobserved),
        )
        return snap
