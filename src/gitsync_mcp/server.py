# ABOUTME: FastMCP server initialization and main entry point
# ABOUTME: Runs the reconciliation controller and exposes it through MCP tools and resources

"""gitsync MCP Server - GitOps reconciliation with a safety-first control surface."""

from __future__ import annotations

import json
import sys
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any

import structlog
from mcp.server.fastmcp import Context, FastMCP
from pydantic import BaseModel, Field

from gitsync_mcp.config import ServerSettings, load_settings
from gitsync_mcp.reconciler.controller import ApplicationReconciler, Controller
from gitsync_mcp.reconciler.errors import ReconcileError
from gitsync_mcp.reconciler.models import SyncResult, SyncStatus
from gitsync_mcp.reconciler.source import RoutingSource
from gitsync_mcp.utils.client import KubernetesClient, mask_secrets
from gitsync_mcp.utils.logging import AuditLogger, configure_logging, set_correlation_id
from gitsync_mcp.utils.safety import ConfirmationRequired, SafetyGuard

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

MCPContext = Context[Any, Any]
logger = structlog.get_logger(__name__)

# Global state (initialized in lifespan)
_settings: ServerSettings | None = None
_clients: dict[str, KubernetesClient] = {}
_controller: Controller | None = None
_safety_guard: SafetyGuard | None = None
_audit_logger: AuditLogger | None = None


@asynccontextmanager
async def lifespan(_server: FastMCP) -> AsyncIterator[dict[str, Any]]:
    """Load config, connect clusters, start the controller; undo all of it on shutdown."""
    global _settings, _controller, _safety_guard, _audit_logger

    _settings = load_settings()
    configure_logging(level=_settings.log_level, json_output=_settings.json_logs)
    logger.info("Starting gitsync MCP Server")
    _safety_guard = SafetyGuard(_settings.security)
    _audit_logger = AuditLogger(_settings.security.audit_log)

    for instance in _settings.all_clusters:
        client = KubernetesClient(instance=instance, mask_secrets=_settings.security.mask_secrets)
        await client.__aenter__()
        _clients[instance.name] = client
        logger.info("Connected to cluster", cluster=instance.name, url=instance.url)

    source = RoutingSource(
        workdir=_settings.reconciler.workdir,
        git_timeout=_settings.reconciler.git_timeout_seconds,
    )
    reconcilers = []
    for app in _settings.all_applications:
        if app.cluster not in _clients:
            logger.error("Application targets unknown cluster, skipping", application=app.name, cluster=app.cluster)
            continue
        reconcilers.append(ApplicationReconciler(app, _clients[app.cluster], source, _audit_logger))

    _controller = Controller(reconcilers, interval=_settings.reconciler.interval_seconds)
    await _controller.start()

    try:
        yield {"settings": _settings, "controller": _controller}
    finally:
        await _controller.stop()
        for name, client in _clients.items():
            await client.__aexit__(None, None, None)
            logger.info("Disconnected from cluster", cluster=name)
        _clients.clear()
        logger.info("gitsync MCP Server stopped")


mcp = FastMCP("gitsync-mcp", lifespan=lifespan)


def get_controller() -> Controller:
    if not _controller:
        raise RuntimeError("Server not initialized")
    return _controller


def get_settings() -> ServerSettings:
    if not _settings:
        raise RuntimeError("Server not initialized")
    return _settings


def get_safety_guard() -> SafetyGuard:
    if not _safety_guard:
        raise RuntimeError("Server not initialized")
    return _safety_guard


def get_audit_logger() -> AuditLogger:
    if not _audit_logger:
        raise RuntimeError("Server not initialized")
    return _audit_logger


def _marker(ok: bool) -> str:
    return "[OK]" if ok else "[!]"


def format_result(result: SyncResult, verbose: bool = False) -> list[str]:
    """Render a pass result as text lines for tool output."""
    lines = [
        f"Application: {result.application}",
        f"Revision: {result.revision or 'unknown'}",
        f"Sync: {result.status.value} {_marker(result.status is SyncStatus.SYNCED)}",
        f"Health: {result.health.value} {_marker(result.health.severity == 0)}",
        f"Finished: {result.finished_at.isoformat()} ({result.duration_seconds:.1f}s)",
    ]

    if result.pending:
        lines.extend(["", f"Pending operations ({len(result.pending)}):"])
        lines.extend(f"  - {op.describe()}" for op in result.pending)

    if result.drift:
        lines.extend(["", f"Drift, not pruned ({len(result.drift)}):"])
        lines.extend(f"  - {identity}" for identity in result.drift)

    if result.errors:
        lines.extend(["", f"Errors ({len(result.errors)}):"])
        lines.extend(f"  - {error}" for error in result.errors)

    if verbose and result.resources:
        lines.extend(["", "Resources:"])
        for outcome in result.resources:
            health = outcome.health.value if outcome.health else "-"
            op = outcome.operation.value if outcome.operation else "-"
            line = f"  {_marker(outcome.succeeded)} {outcome.identity} op={op} health={health}"
            if outcome.attempts > 1:
                line += f" attempts={outcome.attempts}"
            if outcome.message:
                line += f" - {outcome.message}"
            lines.append(line)

    return lines


# =============================================================================
# READ OPERATIONS
# =============================================================================


class ListApplicationsParams(BaseModel):
    """Parameters for list_applications tool."""

    health_status: str | None = Field(
        default=None,
        description="Filter by health status (Healthy, Progressing, Degraded, Missing)",
    )
    sync_status: str | None = Field(
        default=None, description="Filter by sync status (Synced, OutOfSync, Unknown, Error)"
    )


@mcp.tool()
async def list_applications(params: ListApplicationsParams, ctx: MCPContext) -> str:
    """
    List tracked applications with their latest sync and health status.

    Use this to find applications that are out of sync, unhealthy, or failing.
    Applications that have not finished a first pass show as "pending".
    """
    set_correlation_id(str(ctx.request_id) if hasattr(ctx, "request_id") else "")

    blocked = get_safety_guard().check_read_operation("list_applications")
    if blocked:
        get_audit_logger().log_blocked("list_applications", "all", blocked.reason)
        return blocked.format_message()

    controller = get_controller()
    rows = []
    for name in controller.applications:
        reconciler = controller.get(name)
        result = reconciler.last_result
        if params.health_status and (not result or result.health.value != params.health_status):
            continue
        if params.sync_status and (not result or result.status.value != params.sync_status):
            continue
        rows.append((reconciler, result))

    get_audit_logger().log_read("list_applications", "all")

    if not rows:
        return "No applications found matching the specified filters."

    lines = [f"Found {len(rows)} application(s):", ""]
    for reconciler, result in rows:
        source = reconciler.spec.source
        if result is None:
            lines.append(f"- {reconciler.name} pending first pass src={source.repo_url}")
            continue
        lines.append(
            f"- {reconciler.name} "
            f"sync={result.status.value} {_marker(result.status is SyncStatus.SYNCED)} "
            f"health={result.health.value} {_marker(result.health.severity == 0)} "
            f"rev={(result.revision or 'unknown')[:12]} "
            f"dest={reconciler.spec.destination_namespace}@{reconciler.spec.cluster}"
        )

    return "\n".join(lines)


class ApplicationParams(BaseModel):
    """Parameters for tools addressing one application."""

    name: str = Field(description="Application name")


@mcp.tool()
async def get_application_status(params: ApplicationParams, ctx: MCPContext) -> str:
    """
    Get condensed sync and health status of an application.

    Reports the latest pass only; use get_sync_result for per-resource detail.
    """
    set_correlation_id(str(ctx.request_id) if hasattr(ctx, "request_id") else "")

    blocked = get_safety_guard().check_read_operation("get_application_status")
    if blocked:
        get_audit_logger().log_blocked("get_application_status", params.name, blocked.reason)
        return blocked.format_message()

    try:
        reconciler = get_controller().get(params.name)
    except KeyError as e:
        return str(e.args[0])

    get_audit_logger().log_read("get_application_status", params.name)

    spec = reconciler.spec
    lines = [
        f"Application: {spec.name}",
        f"Source: {spec.source.repo_url} path={spec.source.path} rev={spec.source.target_revision}",
        f"Destination: {spec.destination_namespace}@{spec.cluster}",
        f"Policy: automated={spec.sync_policy.automated} prune={spec.sync_policy.prune} "
        f"self_heal={spec.sync_policy.self_heal}",
        f"Passes: {reconciler.passes}{' (running)' if reconciler.busy else ''}",
        "",
    ]
    if reconciler.last_result is None:
        lines.append("No pass has completed yet.")
    else:
        lines.extend(format_result(reconciler.last_result))
    return "\n".join(lines)


@mcp.tool()
async def get_sync_result(params: ApplicationParams, ctx: MCPContext) -> str:
    """
    Get the full result of the latest pass, including every resource outcome.

    Shows per-resource operation, health, retry attempts and error messages.
    """
    set_correlation_id(str(ctx.request_id) if hasattr(ctx, "request_id") else "")

    blocked = get_safety_guard().check_read_operation("get_sync_result")
    if blocked:
        get_audit_logger().log_blocked("get_sync_result", params.name, blocked.reason)
        return blocked.format_message()

    try:
        reconciler = get_controller().get(params.name)
    except KeyError as e:
        return str(e.args[0])

    get_audit_logger().log_read("get_sync_result", params.name)

    if reconciler.last_result is None:
        return f"No pass has completed yet for '{params.name}'"
    return "\n".join(format_result(reconciler.last_result, verbose=True))


class GetApplicationDiffParams(BaseModel):
    """Parameters for get_application_diff tool."""

    name: str = Field(description="Application name")
    prune: bool | None = Field(
        default=None,
        description="Include prune operations in the preview (default: the application's prune policy)",
    )


@mcp.tool()
async def get_application_diff(params: GetApplicationDiffParams, ctx: MCPContext) -> str:
    """
    Compare git against the cluster now, without changing anything.

    Runs a dry-run pass and lists the operations a sync would perform,
    with the fields that differ for each update.
    """
    set_correlation_id(str(ctx.request_id) if hasattr(ctx, "request_id") else "")

    blocked = get_safety_guard().check_read_operation("get_application_diff")
    if blocked:
        get_audit_logger().log_blocked("get_application_diff", params.name, blocked.reason)
        return blocked.format_message()

    try:
        controller = get_controller()
        controller.get(params.name)
        await ctx.report_progress(0, 1, f"Comparing {params.name}")
        result = await controller.sync_now(params.name, prune=params.prune, dry_run=True)
        await ctx.report_progress(1, 1, "Complete")
    except KeyError as e:
        return str(e.args[0])
    except ReconcileError as e:
        get_audit_logger().log_error("get_application_diff", params.name, str(e))
        return str(e)

    get_audit_logger().log_read("get_application_diff", params.name)

    if not result.pending and not result.drift and not result.errors:
        return f"Application '{params.name}' is in sync with revision {result.revision}"

    lines = [f"Diff for '{params.name}' at revision {result.revision}:"]
    if result.pending:
        lines.extend(["", f"Operations ({len(result.pending)}):"])
        lines.extend(f"  - {op.describe()}" for op in result.pending)
    if result.drift:
        lines.extend(["", "Live but not in git (prune=false):"])
        lines.extend(f"  - {identity}" for identity in result.drift)
    if result.errors:
        lines.extend(["", "Errors:"])
        lines.extend(f"  - {error}" for error in result.errors)
    return "\n".join(lines)


class RefreshApplicationParams(BaseModel):
    """Parameters for refresh_application tool."""

    name: str = Field(description="Application name")


@mcp.tool()
async def refresh_application(params: RefreshApplicationParams, ctx: MCPContext) -> str:
    """
    Ask the controller to run the next scheduled pass now.

    The pass follows the application's sync policy, exactly like a timed one.
    Repeated refreshes before the pass starts collapse into one.
    """
    set_correlation_id(str(ctx.request_id) if hasattr(ctx, "request_id") else "")

    blocked = get_safety_guard().check_read_operation("refresh_application")
    if blocked:
        get_audit_logger().log_blocked("refresh_application", params.name, blocked.reason)
        return blocked.format_message()

    try:
        scheduled = get_controller().trigger(params.name)
    except KeyError as e:
        return str(e.args[0])

    get_audit_logger().log_read("refresh_application", params.name)
    if scheduled:
        return f"Refresh scheduled for '{params.name}'"
    return f"Refresh for '{params.name}' already pending; coalesced"


class NotifySourceChangeParams(BaseModel):
    """Parameters for notify_source_change tool."""

    repo_url: str = Field(description="Repository URL that received new commits")


@mcp.tool()
async def notify_source_change(params: NotifySourceChangeParams, ctx: MCPContext) -> str:
    """
    Report new commits in a repository, like a git push webhook.

    Wakes every application sourced from that repository.
    """
    set_correlation_id(str(ctx.request_id) if hasattr(ctx, "request_id") else "")

    blocked = get_safety_guard().check_read_operation("notify_source_change")
    if blocked:
        get_audit_logger().log_blocked("notify_source_change", params.repo_url, blocked.reason)
        return blocked.format_message()

    woken = get_controller().notify_source_change(params.repo_url)
    get_audit_logger().log_read("notify_source_change", params.repo_url)

    if not woken:
        return f"No applications track {params.repo_url}"
    return f"Woke {len(woken)} application(s): {', '.join(woken)}"


# =============================================================================
# WRITE OPERATIONS (Require MCP_READ_ONLY=false)
# =============================================================================


class SyncApplicationParams(BaseModel):
    """Parameters for sync_application tool."""

    name: str = Field(description="Application name")
    dry_run: bool = Field(
        default=True, description="Preview changes without applying (default: true)"
    )
    prune: bool = Field(
        default=False,
        description="Delete resources not in Git (destructive). Without it a manual sync never prunes",
    )
    confirm: bool = Field(default=False, description="Confirm a prune sync")
    confirm_name: str | None = Field(
        default=None, description="Application name, repeated to confirm a prune sync"
    )


@mcp.tool()
async def sync_application(params: SyncApplicationParams, ctx: MCPContext) -> str:
    """
    Run a pass now and apply the result, regardless of automation settings.

    By default runs in dry-run mode showing what would change.
    Set dry_run=false to apply changes. Use prune=true to remove
    resources deleted from Git (destructive, requires confirmation).
    """
    set_correlation_id(str(ctx.request_id) if hasattr(ctx, "request_id") else "")

    if params.dry_run:
        blocked = get_safety_guard().check_read_operation("sync_application")
    elif params.prune:
        blocked = get_safety_guard().check_destructive_operation(
            "sync_with_prune",
            params.name,
            confirmed=params.confirm,
            confirm_name=params.confirm_name,
        )
    else:
        blocked = get_safety_guard().check_write_operation("sync_application")

    if blocked:
        if isinstance(blocked, ConfirmationRequired):
            blocked.details = {
                "preview": f"sync_application(name='{params.name}', dry_run=true, prune=true)",
            }
            get_audit_logger().log_blocked("sync_application", params.name, "prune requires confirmation")
        else:
            get_audit_logger().log_blocked("sync_application", params.name, blocked.reason)
        return blocked.format_message()

    try:
        controller = get_controller()
        controller.get(params.name)
        mode = "[DRY-RUN] " if params.dry_run else ""
        await ctx.report_progress(0, 1, f"{mode}Syncing {params.name}")
        result = await controller.sync_now(
            params.name,
            prune=params.prune,
            dry_run=params.dry_run,
        )
        await ctx.report_progress(1, 1, "Complete")
    except KeyError as e:
        return str(e.args[0])
    except ReconcileError as e:
        get_audit_logger().log_error("sync_application", params.name, str(e))
        return str(e)

    if params.dry_run:
        get_audit_logger().log_write("sync_application", params.name, "dry_run")
        lines = [f"Dry-run sync for '{params.name}':", ""]
        lines.extend(format_result(result, verbose=True))
        lines.extend(["", "To apply:", f"  sync_application(name='{params.name}', dry_run=false)"])
        return "\n".join(lines)

    get_audit_logger().log_write(
        "sync_application",
        params.name,
        result.status.value,
        {"revision": result.revision, "prune": params.prune},
    )
    return "\n".join(format_result(result, verbose=True))


# =============================================================================
# MCP RESOURCES
# =============================================================================


@mcp.resource("gitsync://applications")
async def get_applications_resource() -> str:
    """Configured applications and their sources."""
    controller = get_controller()
    if not controller.applications:
        return "No applications configured"

    lines = ["Configured Applications:", ""]
    for name in controller.applications:
        spec = controller.get(name).spec
        lines.append(
            f"- {name}: {spec.source.repo_url} ({spec.source.path}@{spec.source.target_revision})"
            f" -> {spec.destination_namespace}@{spec.cluster}"
        )
    return "\n".join(lines)


@mcp.resource("gitsync://applications/{name}/result")
async def get_sync_result_resource(name: str) -> str:
    """Latest pass result for one application, as JSON."""
    reconciler = get_controller().get(name)
    if reconciler.last_result is None:
        return json.dumps({"application": name, "status": None})
    result = reconciler.last_result.to_dict()
    if get_settings().security.mask_secrets:
        result = mask_secrets(result)
    return json.dumps(result, indent=2)


@mcp.resource("gitsync://security")
async def get_security_resource() -> str:
    """Current security settings."""
    settings = get_settings()
    sec = settings.security

    return (
        "Security Settings:\n"
        f"  Read-only mode: {sec.read_only}\n"
        f"  Destructive operations disabled: {sec.disable_destructive}\n"
        f"  Secret masking: {sec.mask_secrets}\n"
        f"  Rate limit: {sec.rate_limit_calls} calls per {sec.rate_limit_window}s"
    )


# =============================================================================
# MAIN ENTRY POINT
# =============================================================================


def main() -> None:
    """Run the gitsync MCP server."""
    configure_logging(level="INFO")
    logger.info("gitsync MCP Server starting")

    try:
        mcp.run()
    except KeyboardInterrupt:
        logger.info("Server interrupted")
        sys.exit(0)
    except Exception as e:
        logger.error("Server error", error=str(e))
        sys.exit(1)


if __name__ == "__main__":
    main()
