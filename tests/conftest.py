# ABOUTME: Pytest fixtures and configuration for gitsync MCP Server tests
# ABOUTME: Provides an in-memory cluster, application specs and shared safety fixtures

import asyncio
import copy
import itertools
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
from pydantic import SecretStr

from gitsync_mcp.config import (
    ApplicationSpec,
    ClusterInstance,
    SecuritySettings,
    ServerSettings,
    SourceSpec,
    SyncPolicy,
)
from gitsync_mcp.reconciler.errors import ConflictError, PermanentError
from gitsync_mcp.reconciler.models import ResourceIdentity, api_group
from gitsync_mcp.reconciler.renderer import deep_merge
from gitsync_mcp.utils.safety import SafetyGuard


class FakeCluster:
    """
    In-memory stand-in for a Kubernetes API server.

    Implements the ClusterAPI protocol with resourceVersion bookkeeping,
    409 on stale writes and on create-when-exists, merge-patch semantics,
    and queued failure injection via ``fail_next``.
    """

    def __init__(self) -> None:
        self.objects: dict[ResourceIdentity, dict[str, Any]] = {}
        self.calls: list[tuple[str, str]] = []
        self.delay = 0.0
        self._versions = itertools.count(1)
        self._failures: list[tuple[str, str | None, Exception]] = []

    # -- test helpers ---------------------------------------------------------

    def fail_next(self, method: str, error: Exception, name: str | None = None, times: int = 1) -> None:
        for _ in range(times):
            self._failures.append((method, name, error))

    def seed(self, body: dict[str, Any]) -> ResourceIdentity:
        """Store an object directly, as if created by someone else."""
        identity = ResourceIdentity.from_body(body)
        self.objects[identity] = self._stamp(copy.deepcopy(body))
        return identity

    def find(self, kind: str, name: str, namespace: str = "") -> dict[str, Any] | None:
        for identity, body in self.objects.items():
            if identity.kind == kind and identity.name == name and identity.namespace == namespace:
                return body
        return None

    @property
    def writes(self) -> list[tuple[str, str]]:
        return [c for c in self.calls if c[0] in ("create", "replace", "patch", "delete")]

    # -- internals -----------------------------------------------------------

    def _stamp(self, body: dict[str, Any]) -> dict[str, Any]:
        metadata = body.setdefault("metadata", {})
        metadata["resourceVersion"] = str(next(self._versions))
        metadata.setdefault("uid", f"uid-{metadata.get('name')}")
        metadata.setdefault("creationTimestamp", "2026-01-01T00:00:00Z")
        return body

    async def _enter(self, method: str, identity: ResourceIdentity) -> None:
        self.calls.append((method, str(identity)))
        if self.delay:
            await asyncio.sleep(self.delay)
        for index, (m, name, error) in enumerate(self._failures):
            if m == method and (name is None or name == identity.name):
                del self._failures[index]
                raise error

    def _check_version(self, body: dict[str, Any], identity: ResourceIdentity) -> dict[str, Any]:
        live = self.objects.get(identity)
        if live is None:
            raise PermanentError("not found", identity)
        wanted = (body.get("metadata") or {}).get("resourceVersion")
        if wanted and wanted != live["metadata"]["resourceVersion"]:
            raise ConflictError("the object has been modified", identity)
        return live

    # -- ClusterAPI ------------------------------------------------------------

    async def get(self, api_version: str, identity: ResourceIdentity) -> dict[str, Any] | None:
        await self._enter("get", identity)
        body = self.objects.get(identity)
        return copy.deepcopy(body) if body is not None else None

    async def list(
        self,
        api_version: str,
        kind: str,
        namespace: str | None = None,
        label_selector: str | None = None,
    ) -> list[dict[str, Any]]:
        self.calls.append(("list", kind))
        wanted = dict(s.split("=", 1) for s in label_selector.split(",")) if label_selector else {}
        items = []
        for identity, body in self.objects.items():
            if identity.kind != kind or identity.group != api_group(api_version):
                continue
            if namespace and identity.namespace != namespace:
                continue
            labels = body["metadata"].get("labels") or {}
            if all(labels.get(k) == v for k, v in wanted.items()):
                items.append(copy.deepcopy(body))
        return items

    async def create(self, body: dict[str, Any]) -> dict[str, Any]:
        identity = ResourceIdentity.from_body(body)
        await self._enter("create", identity)
        if identity in self.objects:
            raise ConflictError("already exists", identity)
        self.objects[identity] = self._stamp(copy.deepcopy(body))
        return copy.deepcopy(self.objects[identity])

    async def replace(self, body: dict[str, Any]) -> dict[str, Any]:
        identity = ResourceIdentity.from_body(body)
        await self._enter("replace", identity)
        live = self._check_version(body, identity)
        stored = copy.deepcopy(body)
        stored["metadata"]["uid"] = live["metadata"]["uid"]
        stored["metadata"]["creationTimestamp"] = live["metadata"]["creationTimestamp"]
        self.objects[identity] = self._stamp(stored)
        return copy.deepcopy(self.objects[identity])

    async def patch(self, body: dict[str, Any]) -> dict[str, Any]:
        identity = ResourceIdentity.from_body(body)
        await self._enter("patch", identity)
        live = self._check_version(body, identity)
        self.objects[identity] = self._stamp(deep_merge(live, body))
        return copy.deepcopy(self.objects[identity])

    async def delete(self, api_version: str, identity: ResourceIdentity) -> None:
        await self._enter("delete", identity)
        self.objects.pop(identity, None)


@pytest.fixture
def fake_cluster() -> FakeCluster:
    return FakeCluster()


@pytest.fixture
def manifests_dir(tmp_path: Path) -> Path:
    """Empty directory used as a local application source."""
    root = tmp_path / "repo"
    root.mkdir()
    return root


@pytest.fixture
def fast_policy() -> SyncPolicy:
    """Sync policy with near-zero backoff so retry tests stay fast."""
    return SyncPolicy(
        automated=True,
        prune=False,
        self_heal=False,
        retry_limit=3,
        retry_backoff_seconds=0.001,
        retry_backoff_max_seconds=0.002,
        apply_timeout_seconds=5.0,
    )


@pytest.fixture
def app_spec(manifests_dir: Path, fast_policy: SyncPolicy) -> ApplicationSpec:
    return ApplicationSpec(
        name="guestbook",
        source=SourceSpec(repo_url=str(manifests_dir)),
        destination_namespace="apps",
        sync_policy=fast_policy,
    )


@pytest.fixture
def mock_cluster_instance() -> ClusterInstance:
    return ClusterInstance(
        url="https://k8s.example.com:6443",
        token=SecretStr("test-token"),
        name="primary",
        insecure=True,
    )


@pytest.fixture
def mock_security_settings() -> SecuritySettings:
    """Create security settings with writes enabled."""
    return SecuritySettings(
        read_only=False,
        disable_destructive=False,
        audit_log=None,
        mask_secrets=True,
        rate_limit_calls=100,
        rate_limit_window=60,
    )


@pytest.fixture
def read_only_security_settings() -> SecuritySettings:
    """Create read-only security settings for testing."""
    return SecuritySettings(
        read_only=True,
        disable_destructive=True,
        audit_log=None,
        mask_secrets=True,
        rate_limit_calls=100,
        rate_limit_window=60,
    )


@pytest.fixture
def mock_server_settings(
    mock_cluster_instance: ClusterInstance,
    mock_security_settings: SecuritySettings,
) -> ServerSettings:
    return ServerSettings(
        kube_api_url=mock_cluster_instance.url,
        kube_token=mock_cluster_instance.token,
        kube_insecure=mock_cluster_instance.insecure,
        security=mock_security_settings,
    )


@pytest.fixture
def safety_guard(mock_security_settings: SecuritySettings) -> SafetyGuard:
    return SafetyGuard(mock_security_settings)


@pytest.fixture
def read_only_safety_guard(read_only_security_settings: SecuritySettings) -> SafetyGuard:
    return SafetyGuard(read_only_security_settings)


@pytest.fixture
def mock_context() -> MagicMock:
    """Create a mock MCP context."""
    ctx = MagicMock()
    ctx.request_id = "test-request-123"
    ctx.report_progress = AsyncMock()
    return ctx
