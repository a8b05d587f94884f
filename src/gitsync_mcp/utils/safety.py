# ABOUTME: Safety guards for the gitsync MCP server
# ABOUTME: Implements read-only mode, prune confirmation and per-operation rate limiting

"""Safety checks applied to MCP tool calls before they reach the controller."""

from __future__ import annotations

import time
from collections import defaultdict, deque
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import structlog

if TYPE_CHECKING:
    from gitsync_mcp.config import SecuritySettings

logger = structlog.get_logger(__name__)

PRUNE_IMPACT = "Resources labeled for this application but no longer in Git will be DELETED"
SYNC_IMPACT = "Cluster resources will be changed to match Git"
DEFAULT_IMPACT = "This operation may have significant impact"


@dataclass
class ConfirmationRequired:
    """Response asking the agent to confirm an operation that deletes resources."""

    operation: str
    target: str
    impact: str
    confirmation_instructions: str
    details: dict[str, Any] = field(default_factory=dict)

    def format_message(self) -> str:
        sections = [
            f"CONFIRMATION REQUIRED: {self.operation}",
            f"Target: {self.target}\nImpact: {self.impact}",
        ]
        if self.details:
            sections.append("Details:\n" + "\n".join(f"  {k}: {v}" for k, v in self.details.items()))
        sections.append(self.confirmation_instructions)
        return "\n\n".join(sections)


@dataclass
class OperationBlocked:
    """Response for an operation refused by server configuration."""

    operation: str
    reason: str
    setting: str

    def format_message(self) -> str:
        return "\n".join(
            [
                f"OPERATION BLOCKED: {self.operation}",
                f"Reason: {self.reason}",
                f"Setting: {self.setting}",
                f"To enable: Set {self.setting}=false in server configuration",
            ]
        )


class RateLimiter:
    """Sliding-window call counter keyed by operation."""

    def __init__(self, max_calls: int = 100, window_seconds: int = 60) -> None:
        self._max_calls = max_calls
        self._window = window_seconds
        self._calls: dict[str, deque[float]] = defaultdict(deque)

    def check(self, key: str) -> bool:
        """Record a call under ``key``. Returns False once the window is full."""
        now = time.monotonic()
        calls = self._calls[key]
        while calls and now - calls[0] >= self._window:
            calls.popleft()

        if len(calls) >= self._max_calls:
            logger.warning("Rate limit exceeded", key=key, calls=len(calls))
            return False

        calls.append(now)
        return True

    def reset(self, key: str | None = None) -> None:
        if key is None:
            self._calls.clear()
        else:
            self._calls.pop(key, None)


class SafetyGuard:
    """
    Gatekeeper for tool calls.

    Reads are only rate limited. Writes (sync, refresh with sync) are refused
    in read-only mode. Syncs that prune delete live resources, so they also
    need ``disable_destructive`` off and an explicit confirmation naming the
    application.
    """

    def __init__(self, settings: SecuritySettings) -> None:
        self._settings = settings
        self._rate_limiter = RateLimiter(
            max_calls=settings.rate_limit_calls,
            window_seconds=settings.rate_limit_window,
        )

    def _throttle(self, bucket: str, operation: str) -> OperationBlocked | None:
        if self._rate_limiter.check(f"{bucket}:{operation}"):
            return None
        return OperationBlocked(operation, "Rate limit exceeded", "MCP_RATE_LIMIT_CALLS")

    def check_read_operation(self, operation: str) -> OperationBlocked | None:
        return self._throttle("read", operation)

    def check_write_operation(self, operation: str) -> OperationBlocked | None:
        if self._settings.read_only:
            return OperationBlocked(operation, "Server is running in read-only mode", "MCP_READ_ONLY")
        return self._throttle("write", operation)

    def check_destructive_operation(
        self,
        operation: str,
        target: str,
        confirmed: bool = False,
        confirm_name: str | None = None,
    ) -> OperationBlocked | ConfirmationRequired | None:
        """
        Check an operation that deletes cluster resources.

        Returns:
            OperationBlocked if refused by configuration, ConfirmationRequired
            if the caller has not confirmed with the exact target name, None
            if allowed.
        """
        blocked = self.check_write_operation(operation)
        if blocked is None and self._settings.disable_destructive:
            blocked = OperationBlocked(operation, "Destructive operations are disabled", "MCP_DISABLE_DESTRUCTIVE")
        if blocked is not None:
            return blocked

        if confirmed and confirm_name == target:
            return None

        impact = {"sync_with_prune": PRUNE_IMPACT, "sync_application": SYNC_IMPACT}.get(operation, DEFAULT_IMPACT)
        return ConfirmationRequired(
            operation=operation,
            target=target,
            impact=impact,
            confirmation_instructions=f"To proceed, set confirm=true AND confirm_name='{target}'",
        )
