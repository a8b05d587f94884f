# ABOUTME: Structured logging with correlation IDs for the gitsync MCP server
# ABOUTME: Implements audit logging of every cluster write and tool call

"""
Structured logging with correlation IDs and audit trails.

=============================================================================
WHAT IS THIS FILE?
=============================================================================

1. STRUCTURED LOGGING: structlog, rendered as JSON lines or console text.

2. CORRELATION IDs: every reconciliation pass and every tool call gets a
   short id, stored in a ContextVar and stamped on each log line. All lines
   for one pass of one application share the id:

    {"correlation_id": "a1b2c3d4", "event": "Rendered desired state", ...}
    {"correlation_id": "a1b2c3d4", "event": "Applied", "resource": ...}
    {"correlation_id": "a1b2c3d4", "event": "Pass finished", "status": ...}

   Passes for different applications run in different asyncio tasks, and
   each task carries its own copy of the context, so ids never bleed
   across applications.

3. AUDIT LOGGING: one record per cluster write, blocked request or error.

=============================================================================
WHY STDERR?
=============================================================================

The MCP stdio transport owns stdout. Logs go to stderr so they can never
corrupt protocol frames.
"""

from __future__ import annotations

import json
import logging
import sys
import uuid
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import structlog

if TYPE_CHECKING:
    from collections.abc import MutableMapping
    from pathlib import Path


# =============================================================================
# CORRELATION ID MANAGEMENT
# =============================================================================

correlation_id: ContextVar[str] = ContextVar("correlation_id", default="")


def new_correlation_id() -> str:
    """Generate a fresh 8-character id and make it current."""
    cid = str(uuid.uuid4())[:8]
    correlation_id.set(cid)
    return cid


def get_correlation_id() -> str:
    """
    Get current correlation ID or generate a new one.

    Code running outside a pass or tool call (startup, shutdown) still gets
    an id so its log lines can be grouped.
    """
    cid = correlation_id.get()
    if not cid:
        cid = new_correlation_id()
    return cid


def set_correlation_id(cid: str) -> None:
    """Set correlation ID for the current context. An empty string resets it."""
    correlation_id.set(cid)


def add_correlation_id(
    logger: structlog.types.WrappedLogger,  # noqa: ARG001 - Required by structlog Processor API
    method_name: str,  # noqa: ARG001 - Required by structlog Processor API
    event_dict: MutableMapping[str, Any],
) -> MutableMapping[str, Any]:
    """structlog processor adding ``correlation_id`` to every event."""
    event_dict["correlation_id"] = get_correlation_id()
    return event_dict


# =============================================================================
# LOGGING CONFIGURATION
# =============================================================================


def configure_logging(
    level: str = "INFO",
    json_output: bool = False,
) -> None:
    """
    Configure structured logging. Call once at startup.

    Processor pipeline:
    1. merge_contextvars: values bound with structlog.contextvars
    2. add_log_level
    3. TimeStamper (ISO 8601)
    4. add_correlation_id
    5. JSONRenderer or ConsoleRenderer

    Args:
        level: "DEBUG", "INFO", "WARNING", "ERROR" or "CRITICAL".
        json_output: JSON lines (production) instead of console text.
    """
    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        add_correlation_id,
    ]

    if json_output:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )


# =============================================================================
# AUDIT LOGGING
# =============================================================================


class AuditLogger:
    """
    Audit logger recording every write the server makes.

    Each entry:
        timestamp       UTC ISO 8601
        correlation_id  pass or tool call id
        action          "sync:create", "sync:prune", "sync_application", ...
        target          "<application>/<Kind>/<namespace>/<name>" or app name
        result          "success", "dry_run", "blocked", "error", ...
        details         optional dict

    With a path, entries are appended to that file as JSON lines. Without
    one, they go through structlog under the "audit" logger.
    """

    def __init__(self, log_path: Path | None = None) -> None:
        self._log_path = log_path
        self._logger = structlog.get_logger("audit")

    def log(
        self,
        action: str,
        target: str,
        result: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Record one auditable action."""
        entry: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat(),
            "correlation_id": get_correlation_id(),
            "action": action,
            "target": target,
            "result": result,
        }

        if details:
            entry["details"] = details

        if self._log_path:
            with self._log_path.open("a") as f:
                f.write(json.dumps(entry, default=str) + "\n")
        else:
            self._logger.info(
                "audit",
                action=action,
                target=target,
                result=result,
                details=details,
            )

    def log_read(self, action: str, target: str) -> None:
        self.log(action, target, "success")

    def log_write(
        self,
        action: str,
        target: str,
        result: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.log(action, target, result, details)

    def log_blocked(self, action: str, target: str, reason: str) -> None:
        """Record an operation refused by a safety check."""
        self.log(action, target, "blocked", {"reason": reason})

    def log_error(self, action: str, target: str, error: str) -> None:
        self.log(action, target, "error", {"error": error})
