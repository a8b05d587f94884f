# ABOUTME: Error taxonomy for the reconciler
# ABOUTME: Separates retryable from non-retryable failures per resource

"""
Reconciler errors.

Every failure that can happen to a single resource during a pass maps onto
one of four classes. The class decides whether the executor retries:

    ValidationError  - malformed document            - never retried
    ConflictError    - concurrent modification (409) - retried
    TransientError   - network / timeout / 5xx       - retried with backoff
    PermanentError   - schema or permission refusal  - never retried

Errors are attached to a resource and recorded in the SyncResult; none of
them aborts a pass. SourceError is the exception: without manifests there
is nothing to reconcile, so the pass ends early with status Unknown.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from gitsync_mcp.reconciler.models import ResourceIdentity


class ReconcileError(Exception):
    """Base class for reconciler errors."""

    retryable = False

    def __init__(self, message: str, identity: ResourceIdentity | None = None) -> None:
        self.message = message
        self.identity = identity
        super().__init__(str(self))

    def __str__(self) -> str:
        if self.identity is not None:
            return f"{self.identity}: {self.message}"
        return self.message

    @property
    def error_type(self) -> str:
        """Short name used in outcomes and audit entries."""
        return type(self).__name__


class ValidationError(ReconcileError):
    """Malformed desired document. The resource is excluded from the pass."""


class ConflictError(ReconcileError):
    """The live object changed between read and write."""

    retryable = True


class TransientError(ReconcileError):
    """Network failure, timeout or server-side error."""

    retryable = True


class PermanentError(ReconcileError):
    """Rejected by the API server. Needs an operator."""


class SourceError(ReconcileError):
    """Manifests could not be fetched from the source of truth."""
