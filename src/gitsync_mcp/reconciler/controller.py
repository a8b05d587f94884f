# ABOUTME: Reconciliation passes and the scheduling loop
# ABOUTME: Runs fetch-render-observe-diff-apply-assess per application on a timer and on wakeups

"""
Reconciliation control loop.

ApplicationReconciler
    Runs a single pass for one application:

        fetch -> render -> observe -> diff -> policy gate -> apply
              -> re-observe -> health -> SyncResult

    Passes for one application never overlap (a per-application lock).

Controller
    One asyncio task per application. Each task sleeps until the interval
    elapses or a wakeup arrives, then runs a pass. Wakeups that arrive while
    a pass is running collapse into a single follow-up pass.

POLICY GATE
-----------
- ``automated=False``: scheduled passes only compare. Manual syncs apply.
- Self-heal: if the source revision is the one we last synced completely,
  any remaining difference is drift (someone edited the cluster). With
  ``self_heal=False`` drift is reported and left; with ``self_heal=True``
  it is corrected. A manual sync always applies.
"""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime
from typing import TYPE_CHECKING

import structlog

from gitsync_mcp.reconciler import health
from gitsync_mcp.reconciler.diff import compute_diff
from gitsync_mcp.reconciler.errors import SourceError
from gitsync_mcp.reconciler.executor import SyncExecutor
from gitsync_mcp.reconciler.models import (
    HealthStatus,
    ResourceOutcome,
    SyncResult,
    SyncStatus,
)
from gitsync_mcp.reconciler.observer import DEFAULT_PRUNE_KINDS, ClusterStateObserver
from gitsync_mcp.reconciler.renderer import Renderer
from gitsync_mcp.utils.logging import new_correlation_id

if TYPE_CHECKING:
    from gitsync_mcp.config import ApplicationSpec
    from gitsync_mcp.reconciler.models import ResourceIdentity
    from gitsync_mcp.reconciler.renderer import RenderResult
    from gitsync_mcp.reconciler.source import ManifestSource
    from gitsync_mcp.utils.client import ClusterAPI
    from gitsync_mcp.utils.logging import AuditLogger

logger = structlog.get_logger(__name__)


class ApplicationReconciler:
    """Reconciles one application against one cluster."""

    def __init__(
        self,
        spec: ApplicationSpec,
        cluster: ClusterAPI,
        source: ManifestSource,
        audit: AuditLogger | None = None,
    ) -> None:
        self.spec = spec
        self._source = source
        self._renderer = Renderer(spec)
        self._observer = ClusterStateObserver(cluster, spec.name)
        self._executor = SyncExecutor(
            cluster,
            spec.sync_policy,
            spec.name,
            exclusive_kinds=spec.exclusive_kinds,
            audit=audit,
        )
        self._tracked_kinds: set[tuple[str, str]] = set()
        self._rendered_files: dict[str, set[ResourceIdentity]] = {}
        self._lock = asyncio.Lock()
        self.last_result: SyncResult | None = None
        self.last_synced_revision: str | None = None
        self.passes = 0

    @property
    def name(self) -> str:
        return self.spec.name

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    async def reconcile(
        self,
        sync: bool = False,
        dry_run: bool = False,
        prune: bool | None = None,
    ) -> SyncResult:
        """
        Run one pass.

        Args:
            sync: Manual sync. Applies even when automation or self-heal is off.
            dry_run: Compare only; report the operations that would run.
            prune: Override the policy's prune setting for this pass.

        Returns:
            The pass result, also stored as ``last_result``.
        """
        async with self._lock:
            result = await self._reconcile(sync=sync, dry_run=dry_run, prune=prune)
            if not dry_run:
                self.last_result = result
            self.passes += 1
            return result

    def _held_back(self, rendered: RenderResult) -> tuple[set[ResourceIdentity], bool]:
        """
        Live objects this pass must neither prune nor report as drift.

        These are identities whose documents failed validation, plus whatever
        an unparsable file rendered the last time it parsed.

        Returns:
            The identities, and False when an unparsable file was never seen
            parse, so its contents cannot be known.
        """
        held = set(rendered.rejected)
        known = True
        for path in rendered.unparsed:
            if path in self._rendered_files:
                held |= self._rendered_files[path]
            else:
                known = False
        held.difference_update(rendered.resources)

        # broken files keep what they rendered last time until they parse again
        kept = {p: self._rendered_files[p] for p in rendered.unparsed if p in self._rendered_files}
        self._rendered_files = kept | rendered.files
        return held, known

    async def _reconcile(self, sync: bool, dry_run: bool, prune: bool | None) -> SyncResult:
        policy = self.spec.sync_policy
        started = datetime.now(UTC)
        log = logger.bind(application=self.name)
        log.info("Pass started", sync=sync, dry_run=dry_run)

        try:
            snapshot = await self._source.fetch(self.spec.source)
        except SourceError as e:
            log.error("Source fetch failed", error=str(e))
            previous = self.last_result
            return SyncResult(
                application=self.name,
                revision=previous.revision if previous else None,
                status=SyncStatus.UNKNOWN,
                health=previous.health if previous else HealthStatus.MISSING,
                started_at=started,
                finished_at=datetime.now(UTC),
                errors=[str(e)],
                dry_run=dry_run,
            )

        rendered = self._renderer.render(snapshot)
        desired = rendered.resources
        held, all_files_known = self._held_back(rendered)
        observed = await self._observer.snapshot(desired, self._tracked_kinds, optional_kinds=DEFAULT_PRUNE_KINDS)
        self._tracked_kinds.update((d.api_version, i.kind) for i, d in desired.items())

        comparable = {i: d for i, d in desired.items() if i not in observed.unobserved}
        candidates = {i: o for i, o in observed.resources.items() if i not in held}
        do_prune = policy.prune if prune is None else prune
        if do_prune and not all_files_known:
            log.warning("Prune skipped, unparsable files with unknown contents", files=rendered.unparsed)
            do_prune = False
        diff = compute_diff(
            comparable,
            candidates,
            prune=do_prune,
            exclusive_kinds=self.spec.exclusive_kinds,
        )

        revision_changed = snapshot.revision != self.last_synced_revision
        may_apply = not dry_run and (sync or (policy.automated and (revision_changed or policy.self_heal)))
        if diff.operations and not may_apply and not dry_run:
            reason = "automation disabled" if not policy.automated else "drift without self-heal"
            log.info("Holding operations", count=len(diff.operations), reason=reason)

        outcomes: dict[ResourceIdentity, ResourceOutcome] = {}
        pending = []
        if may_apply and diff.operations:
            for outcome in await self._executor.execute(diff.operations, observed.resources):
                outcomes[outcome.identity] = outcome
            live = (await self._observer.snapshot(comparable)).resources
        else:
            pending = list(diff.operations)
            live = observed.resources
            if dry_run:
                for outcome in await self._executor.execute(diff.operations, dry_run=True):
                    outcomes[outcome.identity] = outcome

        errors = [str(e) for e in rendered.errors]
        for error in rendered.errors:
            if error.identity is not None:
                outcomes[error.identity] = ResourceOutcome(
                    identity=error.identity,
                    operation=None,
                    succeeded=False,
                    message=error.message,
                    error_type=error.error_type,
                )
        for identity, error in observed.unobserved.items():
            errors.append(str(error))
            outcomes[identity] = ResourceOutcome(
                identity=identity,
                operation=None,
                succeeded=False,
                message=f"could not read live state: {error.message}",
                error_type=error.error_type,
            )

        for api_version, kind in sorted(observed.unobserved_kinds):
            errors.append(f"could not list {kind} ({api_version}) for prune candidates")

        pending_ids = {op.identity for op in pending}
        for identity in desired:
            if identity not in outcomes:
                outcomes[identity] = ResourceOutcome(
                    identity=identity,
                    operation=None,
                    succeeded=True,
                    message="out of sync" if identity in pending_ids else "in sync",
                )

        statuses = []
        for identity in comparable:
            item = live.get(identity)
            state = health.assess(identity.kind, item.body if item else None)
            outcomes[identity].health = state
            statuses.append(state)

        failed = [o for o in outcomes.values() if not o.succeeded]
        errors.extend(str(o.identity) + ": " + o.message for o in failed if o.operation is not None)

        if failed or rendered.errors or observed.unobserved_kinds:
            status = SyncStatus.ERROR
        elif pending or diff.drift:
            status = SyncStatus.OUT_OF_SYNC
        else:
            status = SyncStatus.SYNCED

        apply_failed = any(o.operation is not None for o in failed)
        applied_cleanly = may_apply and not apply_failed and not observed.unobserved
        if applied_cleanly:
            self.last_synced_revision = snapshot.revision

        result = SyncResult(
            application=self.name,
            revision=snapshot.revision,
            status=status,
            health=health.aggregate(statuses),
            started_at=started,
            finished_at=datetime.now(UTC),
            resources=sorted(outcomes.values(), key=lambda o: o.identity),
            drift=list(diff.drift),
            errors=errors,
            pending=pending,
            dry_run=dry_run,
        )
        log.info(
            "Pass finished",
            revision=snapshot.revision[:12],
            status=result.status.value,
            health=result.health.value,
            applied=sum(1 for o in outcomes.values() if o.operation and o.succeeded and not dry_run),
            failed=len(failed),
            pending=len(pending),
            drift=len(diff.drift),
        )
        return result


class Controller:
    """
    Schedules passes for every application.

    USAGE:
    ------
        controller = Controller(reconcilers, interval=180)
        await controller.start()
        controller.trigger("guestbook")       # early wakeup
        result = await controller.sync_now("guestbook")
        await controller.stop()
    """

    def __init__(self, reconcilers: list[ApplicationReconciler], interval: float = 180.0) -> None:
        self._reconcilers = {r.name: r for r in reconcilers}
        self._interval = interval
        self._wakeups = {name: asyncio.Event() for name in self._reconcilers}
        self._sync_requested: set[str] = set()
        self._tasks: dict[str, asyncio.Task[None]] = {}

    @property
    def applications(self) -> list[str]:
        return sorted(self._reconcilers)

    @property
    def running(self) -> bool:
        return any(not t.done() for t in self._tasks.values())

    def get(self, name: str) -> ApplicationReconciler:
        """
        Raises:
            KeyError: For an unknown application.
        """
        if name not in self._reconcilers:
            raise KeyError(f"Unknown application '{name}'. Available: {self.applications}")
        return self._reconcilers[name]

    def trigger(self, name: str, sync: bool = False) -> bool:
        """
        Wake an application's loop.

        Returns:
            True if a new pass was scheduled, False if one was already
            pending and this trigger was coalesced into it.
        """
        self.get(name)
        if sync:
            self._sync_requested.add(name)
        event = self._wakeups[name]
        if event.is_set():
            return False
        event.set()
        return True

    def notify_source_change(self, repo_url: str) -> list[str]:
        """Wake every application whose source is ``repo_url``. Returns their names."""
        woken = []
        wanted = repo_url.rstrip("/").removesuffix(".git")
        for name, reconciler in self._reconcilers.items():
            source = reconciler.spec.source.repo_url.rstrip("/").removesuffix(".git")
            if source == wanted:
                self.trigger(name)
                woken.append(name)
        return woken

    async def sync_now(self, name: str, prune: bool | None = None, dry_run: bool = False) -> SyncResult:
        """Run a manual pass immediately (after any pass already in flight)."""
        return await self.get(name).reconcile(sync=not dry_run, dry_run=dry_run, prune=prune)

    async def _loop(self, name: str) -> None:
        reconciler = self._reconcilers[name]
        event = self._wakeups[name]
        while True:
            try:
                await asyncio.wait_for(event.wait(), timeout=self._interval)
            except TimeoutError:
                pass
            event.clear()
            sync = name in self._sync_requested
            self._sync_requested.discard(name)

            new_correlation_id()
            try:
                await reconciler.reconcile(sync=sync)
            except asyncio.CancelledError:
                raise
            except Exception:
                # keep the loop alive; the next pass starts from a fresh snapshot
                logger.exception("Pass crashed", application=name)

    async def start(self) -> None:
        """Start one loop per application; each runs its first pass right away."""
        for name in self._reconcilers:
            if name in self._tasks and not self._tasks[name].done():
                continue
            self._wakeups[name].set()
            self._tasks[name] = asyncio.create_task(self._loop(name), name=f"reconcile:{name}")
        logger.info("Controller started", applications=self.applications, interval=self._interval)

    async def stop(self) -> None:
        """Cancel all loops. A pass in progress stops where it is; nothing is rolled back."""
        for task in self._tasks.values():
            task.cancel()
        await asyncio.gather(*self._tasks.values(), return_exceptions=True)
        self._tasks.clear()
        logger.info("Controller stopped")
