# ABOUTME: Sync executor applying patch sets to the cluster
# ABOUTME: Orders operations into waves and retries each apply with bounded exponential backoff

"""
Patch set execution.

ORDERING
--------
Operations are grouped by ``(sync wave, kind priority)`` and the groups run
one after another. Namespaces and CRDs come first so that everything living
in them can be created; workloads come after the config they mount.
Operations inside a group are independent and run concurrently, bounded by
``SyncPolicy.max_parallel``. Prunes run last, in reverse order.

RETRIES
-------
Each operation retries on ConflictError and TransientError with
exponential backoff, up to ``SyncPolicy.retry_limit`` attempts, each
attempt bounded by ``apply_timeout_seconds``. A conflict makes the next
attempt re-read the live resourceVersion. Validation and permanent errors
are recorded without retry.

FAILURE ISOLATION
-----------------
A failed operation never stops the others. Cancelling the executor (server
shutdown) stops between operations; what was applied stays applied.
"""

from __future__ import annotations

import asyncio
import itertools
from typing import TYPE_CHECKING, Any

import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from gitsync_mcp.reconciler.errors import ConflictError, ReconcileError, TransientError
from gitsync_mcp.reconciler.models import PatchKind, PatchOperation, ResourceOutcome

if TYPE_CHECKING:
    from collections.abc import Collection, Mapping

    from gitsync_mcp.config import SyncPolicy
    from gitsync_mcp.reconciler.models import ObservedResource, ResourceIdentity
    from gitsync_mcp.utils.client import ClusterAPI
    from gitsync_mcp.utils.logging import AuditLogger

logger = structlog.get_logger(__name__)

# Apply order within a wave. Unlisted kinds (custom resources) go last.
KIND_ORDER = [
    "Namespace",
    "CustomResourceDefinition",
    "NetworkPolicy",
    "ResourceQuota",
    "LimitRange",
    "PodDisruptionBudget",
    "ServiceAccount",
    "Secret",
    "ConfigMap",
    "StorageClass",
    "PersistentVolume",
    "PersistentVolumeClaim",
    "ClusterRole",
    "ClusterRoleBinding",
    "Role",
    "RoleBinding",
    "Service",
    "DaemonSet",
    "Pod",
    "ReplicaSet",
    "Deployment",
    "StatefulSet",
    "Job",
    "CronJob",
    "HorizontalPodAutoscaler",
    "IngressClass",
    "Ingress",
    "APIService",
]
_KIND_PRIORITY = {kind: index for index, kind in enumerate(KIND_ORDER)}


def kind_priority(kind: str) -> int:
    return _KIND_PRIORITY.get(kind, len(KIND_ORDER))


def plan_groups(operations: list[PatchOperation]) -> list[list[PatchOperation]]:
    """
    Split operations into sequential groups.

    Creates and updates are ordered by (wave, kind priority); removals follow
    in the reverse of that order.
    """
    applies = [op for op in operations if not op.kind.removes]
    removals = [op for op in operations if op.kind.removes]

    def key(op: PatchOperation) -> tuple[int, int]:
        return (op.wave, kind_priority(op.identity.kind))

    groups = [
        list(group)
        for _, group in itertools.groupby(sorted(applies, key=lambda o: (key(o), o.identity)), key=key)
    ]
    groups.extend(
        list(group)
        for _, group in itertools.groupby(
            sorted(removals, key=lambda o: (key(o), o.identity), reverse=True), key=key
        )
    )
    return groups


class SyncExecutor:
    """Applies patch sets for one application."""

    def __init__(
        self,
        cluster: ClusterAPI,
        policy: SyncPolicy,
        application: str,
        exclusive_kinds: Collection[str] = (),
        audit: AuditLogger | None = None,
    ) -> None:
        self._cluster = cluster
        self._policy = policy
        self._application = application
        self._exclusive_kinds = frozenset(exclusive_kinds)
        self._audit = audit

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            retry=retry_if_exception_type((ConflictError, TransientError)),
            stop=stop_after_attempt(self._policy.retry_limit),
            wait=wait_exponential(
                multiplier=self._policy.retry_backoff_seconds,
                max=self._policy.retry_backoff_max_seconds,
            ),
            reraise=True,
        )

    async def _write(self, op: PatchOperation, resource_version: str | None) -> None:
        if op.kind.removes:
            await self._cluster.delete(op.api_version, op.identity)
            return

        body: dict[str, Any] = dict(op.payload or {})
        if op.kind is PatchKind.CREATE:
            await self._cluster.create(body)
            return

        metadata = dict(body.get("metadata") or {})
        if resource_version:
            metadata["resourceVersion"] = resource_version
        body["metadata"] = metadata
        if op.identity.kind in self._exclusive_kinds:
            await self._cluster.replace(body)
        else:
            await self._cluster.patch(body)

    async def apply(
        self,
        op: PatchOperation,
        live: ObservedResource | None = None,
    ) -> ResourceOutcome:
        """
        Apply one operation with retries and a per-attempt timeout.

        Never raises ReconcileError; failures come back as an outcome.
        """
        log = logger.bind(application=self._application, resource=str(op.identity), operation=op.kind.value)
        attempts = 0
        resource_version = live.resource_version if live else None
        refresh = False
        current = op

        try:
            async for attempt in self._retrying():
                with attempt:
                    attempts += 1
                    if refresh:
                        # the object changed (or already exists); re-read before writing again
                        fresh = await self._cluster.get(op.api_version, op.identity)
                        if fresh is not None:
                            resource_version = (fresh.get("metadata") or {}).get("resourceVersion")
                            if current.kind is PatchKind.CREATE:
                                current = PatchOperation(
                                    kind=PatchKind.UPDATE,
                                    identity=op.identity,
                                    api_version=op.api_version,
                                    payload=op.payload,
                                    wave=op.wave,
                                )
                        elif current.kind.removes:
                            break
                        refresh = False
                    try:
                        async with asyncio.timeout(self._policy.apply_timeout_seconds):
                            await self._write(current, resource_version)
                    except TimeoutError as e:
                        raise TransientError(
                            f"apply timed out after {self._policy.apply_timeout_seconds}s",
                            op.identity,
                        ) from e
                    except ConflictError:
                        refresh = True
                        log.info("Conflict, will re-read before retry", attempt=attempts)
                        raise
                    except TransientError as e:
                        log.info("Transient failure, will retry", attempt=attempts, error=e.message)
                        raise
        except ReconcileError as e:
            log.warning("Apply failed", error=str(e), error_type=e.error_type, attempts=attempts)
            if self._audit:
                self._audit.log_error(f"sync:{op.kind.value.lower()}", f"{self._application}/{op.identity}", str(e))
            return ResourceOutcome(
                identity=op.identity,
                operation=op.kind,
                succeeded=False,
                message=e.message,
                error_type=e.error_type,
                attempts=attempts,
            )

        log.info("Applied", attempts=attempts)
        if self._audit:
            self._audit.log_write(
                f"sync:{op.kind.value.lower()}",
                f"{self._application}/{op.identity}",
                "success",
                {"attempts": attempts, "changed_fields": op.changed_fields[:10]},
            )
        return ResourceOutcome(
            identity=op.identity,
            operation=op.kind,
            succeeded=True,
            message=op.describe(),
            attempts=attempts,
        )

    async def execute(
        self,
        operations: list[PatchOperation],
        observed: Mapping[ResourceIdentity, ObservedResource] | None = None,
        dry_run: bool = False,
    ) -> list[ResourceOutcome]:
        """
        Apply a patch set group by group.

        Returns one outcome per operation, in execution order.
        """
        observed = observed or {}
        outcomes: list[ResourceOutcome] = []

        if dry_run:
            for group in plan_groups(operations):
                outcomes.extend(
                    ResourceOutcome(
                        identity=op.identity,
                        operation=op.kind,
                        succeeded=True,
                        message=f"dry-run: {op.describe()}",
                    )
                    for op in group
                )
            return outcomes

        semaphore = asyncio.Semaphore(self._policy.max_parallel)

        async def run(op: PatchOperation) -> ResourceOutcome:
            async with semaphore:
                return await self.apply(op, observed.get(op.identity))

        for group in plan_groups(operations):
            async with asyncio.TaskGroup() as tg:
                tasks = [tg.create_task(run(op)) for op in group]
            outcomes.extend(task.result() for task in tasks)

        return outcomes
