# ABOUTME: Kubernetes API client wrapper with retry logic and error classification
# ABOUTME: Provides async read/write access to cluster resources for the reconciler

"""
Kubernetes REST client with retry logic and structured error handling.

=============================================================================
WHAT IS THIS FILE?
=============================================================================

This module is the reconciler's only path to the live cluster. It handles:

1. HTTP COMMUNICATION: get/list/create/replace/patch/delete on any kind
2. AUTHENTICATION: Bearer token on every request
3. URL RESOLUTION: apiVersion + kind -> REST path
4. ERROR CLASSIFICATION: HTTP failures -> reconciler error taxonomy
5. RETRY LOGIC: Reads are retried on transient failures

Writes are NOT retried here. The sync executor owns write retries because
a retried update may need a fresh resourceVersion first.

=============================================================================
KUBERNETES REST PATHS
=============================================================================

Core group ("v1"):
    /api/v1/namespaces/{ns}/{plural}/{name}      namespaced
    /api/v1/{plural}/{name}                      cluster-scoped

Named groups ("apps/v1", "networking.k8s.io/v1", ...):
    /apis/{group}/{version}/namespaces/{ns}/{plural}/{name}
    /apis/{group}/{version}/{plural}/{name}

=============================================================================
ERROR CLASSIFICATION
=============================================================================

    409                       -> ConflictError   (retry after re-read)
    408, 429, 5xx, timeouts   -> TransientError  (retry with backoff)
    other 4xx                 -> PermanentError  (operator must act)

A 404 on ``get`` is not an error: the resource is simply absent.
"""

from __future__ import annotations

import re
from typing import TYPE_CHECKING, Any, Protocol

import httpx
import structlog
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from gitsync_mcp.reconciler.errors import ConflictError, PermanentError, TransientError
from gitsync_mcp.reconciler.models import ResourceIdentity, is_namespaced

if TYPE_CHECKING:
    from gitsync_mcp.config import ClusterInstance

logger = structlog.get_logger(__name__)


# =============================================================================
# SECRET MASKING
# =============================================================================

# Resource bodies are never masked on the way in (the diff needs real
# values); masking applies only to what leaves the process.

SECRET_PATTERNS = [
    (re.compile(r"(token[\"']?\s*[:=]\s*[\"']?)[^\"'\s,}]+", re.I), r"\1***MASKED***"),
    (re.compile(r"(password[\"']?\s*[:=]\s*[\"']?)[^\"'\s,}]+", re.I), r"\1***MASKED***"),
    (re.compile(r"(secret[\"']?\s*[:=]\s*[\"']?)[^\"'\s,}]+", re.I), r"\1***MASKED***"),
    (re.compile(r"(api[_-]?key[\"']?\s*[:=]\s*[\"']?)[^\"'\s,}]+", re.I), r"\1***MASKED***"),
    (re.compile(r"(bearer\s+)[^\s\"']+", re.I), r"\1***MASKED***"),
]

SENSITIVE_KEYS = frozenset(
    [
        "token",
        "password",
        "secret",
        "api_key",
        "apikey",
        "api-key",
        "authorization",
        "credential",
        "credentials",
    ]
)


def mask_secrets(data: Any) -> Any:
    """
    Mask sensitive values in any structure.

    Besides key-name and pattern matching, the ``data`` and ``stringData``
    maps of Secret objects are masked value by value so the keys stay
    visible in diffs.
    """
    if isinstance(data, str):
        for pattern, replacement in SECRET_PATTERNS:
            data = pattern.sub(replacement, data)
        return data

    if isinstance(data, dict):
        is_secret = data.get("kind") == "Secret"
        masked: dict[str, Any] = {}
        for k, v in data.items():
            if isinstance(k, str) and k.lower() in SENSITIVE_KEYS:
                masked[k] = "***MASKED***"
            elif is_secret and k in ("data", "stringData") and isinstance(v, dict):
                masked[k] = dict.fromkeys(v, "***MASKED***")
            else:
                masked[k] = mask_secrets(v)
        return masked

    if isinstance(data, list):
        return [mask_secrets(item) for item in data]

    return data


# =============================================================================
# PATH RESOLUTION
# =============================================================================

IRREGULAR_PLURALS = {
    "Endpoints": "endpoints",
    "PodSecurityPolicy": "podsecuritypolicies",
}


def plural(kind: str) -> str:
    """Resource plural for a kind ("Ingress" -> "ingresses", "NetworkPolicy" -> "networkpolicies")."""
    if kind in IRREGULAR_PLURALS:
        return IRREGULAR_PLURALS[kind]
    lower = kind.lower()
    if lower.endswith(("s", "x", "ch", "sh")):
        return lower + "es"
    if lower.endswith("y") and len(lower) > 1 and lower[-2] not in "aeiou":
        return lower[:-1] + "ies"
    return lower + "s"


def collection_path(api_version: str, kind: str, namespace: str | None = None) -> str:
    """REST path of a kind's collection, optionally within one namespace."""
    base = f"/apis/{api_version}" if "/" in api_version else f"/api/{api_version}"
    if namespace and is_namespaced(kind):
        return f"{base}/namespaces/{namespace}/{plural(kind)}"
    return f"{base}/{plural(kind)}"


def object_path(api_version: str, identity: ResourceIdentity) -> str:
    """REST path of a single object."""
    return f"{collection_path(api_version, identity.kind, identity.namespace)}/{identity.name}"


# =============================================================================
# CLUSTER API PROTOCOL
# =============================================================================


class ClusterAPI(Protocol):
    """
    What the observer and executor need from a cluster.

    KubernetesClient implements this against a real API server; tests use an
    in-memory implementation.
    """

    async def get(self, api_version: str, identity: ResourceIdentity) -> dict[str, Any] | None: ...

    async def list(
        self,
        api_version: str,
        kind: str,
        namespace: str | None = None,
        label_selector: str | None = None,
    ) -> list[dict[str, Any]]: ...

    async def create(self, body: dict[str, Any]) -> dict[str, Any]: ...

    async def replace(self, body: dict[str, Any]) -> dict[str, Any]: ...

    async def patch(self, body: dict[str, Any]) -> dict[str, Any]: ...

    async def delete(self, api_version: str, identity: ResourceIdentity) -> None: ...


# =============================================================================
# KUBERNETES CLIENT
# =============================================================================


class KubernetesClient:
    """
    Async Kubernetes API client.

    LIFECYCLE:
    ----------
        async with KubernetesClient(instance) as client:
            body = await client.get("apps/v1", identity)

    The HTTP connection pool exists only inside the ``async with`` block.
    """

    def __init__(
        self,
        instance: ClusterInstance,
        timeout: float = 30.0,
        field_manager: str = "gitsync",
        mask_secrets: bool = True,
    ) -> None:
        """
        Initialize client.

        Args:
            instance: Cluster configuration (URL, token, TLS).
            timeout: HTTP request timeout in seconds.
            field_manager: Name recorded in managedFields for our writes.
            mask_secrets: Mask secret-looking values in error messages.
        """
        self._instance = instance
        self._timeout = timeout
        self._field_manager = field_manager
        self._mask_secrets = mask_secrets
        self._client: httpx.AsyncClient | None = None

    @property
    def name(self) -> str:
        return self._instance.name

    async def __aenter__(self) -> KubernetesClient:
        headers = {"Accept": "application/json"}
        token = self._instance.token.get_secret_value()
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._client = httpx.AsyncClient(
            base_url=self._instance.url,
            headers=headers,
            timeout=self._timeout,
            verify=not self._instance.insecure,
        )
        return self

    async def __aexit__(self, *args: object) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    def _classify(self, response: httpx.Response, identity: ResourceIdentity | None) -> Exception:
        """Turn an error response into the matching reconciler error."""
        message = f"HTTP {response.status_code}"
        try:
            body = response.json()
            message = body.get("message", message)
        except ValueError:
            if response.text:
                message = f"{message}: {response.text[:200]}"
        if self._mask_secrets:
            message = mask_secrets(message)

        status = response.status_code
        if status == 409:
            return ConflictError(message, identity)
        if status in (408, 429) or status >= 500:
            return TransientError(message, identity)
        return PermanentError(message, identity)

    async def _send(
        self,
        method: str,
        path: str,
        *,
        identity: ResourceIdentity | None = None,
        params: dict[str, Any] | None = None,
        json_data: dict[str, Any] | None = None,
        content_type: str | None = None,
        allow_missing: bool = False,
    ) -> dict[str, Any] | None:
        """
        Make one HTTP request.

        Returns:
            Parsed JSON body, or None for a 404 when ``allow_missing`` is set.

        Raises:
            ConflictError, TransientError, PermanentError: See module docstring.
            RuntimeError: If used outside ``async with``.
        """
        if not self._client:
            raise RuntimeError("Client not initialized. Use 'async with' context manager.")

        log = logger.bind(method=method, path=path, cluster=self._instance.name)
        log.debug("Making Kubernetes API request")

        headers = {"Content-Type": content_type} if content_type else None
        try:
            response = await self._client.request(
                method,
                path,
                params=params,
                json=json_data,
                headers=headers,
            )
        except httpx.TimeoutException as e:
            raise TransientError(f"request timed out: {e}", identity) from e
        except httpx.TransportError as e:
            raise TransientError(f"transport error: {e}", identity) from e

        if response.status_code == 404 and allow_missing:
            return None

        if response.status_code >= 400:
            log.warning("Kubernetes API error", status=response.status_code)
            raise self._classify(response, identity)

        return response.json() if response.content else {}

    # =========================================================================
    # READS (retried)
    # =========================================================================

    @retry(
        retry=retry_if_exception_type(TransientError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=5),
        reraise=True,
    )
    async def get(self, api_version: str, identity: ResourceIdentity) -> dict[str, Any] | None:
        """Get one object, or None when it does not exist."""
        return await self._send(
            "GET",
            object_path(api_version, identity),
            identity=identity,
            allow_missing=True,
        )

    @retry(
        retry=retry_if_exception_type(TransientError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=5),
        reraise=True,
    )
    async def list(
        self,
        api_version: str,
        kind: str,
        namespace: str | None = None,
        label_selector: str | None = None,
    ) -> list[dict[str, Any]]:
        """
        List objects of one kind.

        List responses omit apiVersion/kind on items; they are filled back in
        so every returned body can be identified on its own.
        """
        params = {"labelSelector": label_selector} if label_selector else None
        data = await self._send(
            "GET",
            collection_path(api_version, kind, namespace),
            params=params,
            allow_missing=True,
        )
        items = (data or {}).get("items") or []
        for item in items:
            item.setdefault("apiVersion", api_version)
            item.setdefault("kind", kind)
        return list(items)

    # =========================================================================
    # WRITES (not retried here)
    # =========================================================================

    async def create(self, body: dict[str, Any]) -> dict[str, Any]:
        identity = ResourceIdentity.from_body(body)
        result = await self._send(
            "POST",
            collection_path(body["apiVersion"], identity.kind, identity.namespace),
            identity=identity,
            params={"fieldManager": self._field_manager},
            json_data=body,
        )
        return result or {}

    async def replace(self, body: dict[str, Any]) -> dict[str, Any]:
        """PUT the full object. ``metadata.resourceVersion`` must be the live one."""
        identity = ResourceIdentity.from_body(body)
        result = await self._send(
            "PUT",
            object_path(body["apiVersion"], identity),
            identity=identity,
            params={"fieldManager": self._field_manager},
            json_data=body,
        )
        return result or {}

    async def patch(self, body: dict[str, Any]) -> dict[str, Any]:
        """
        JSON merge patch with ``body``.

        Fields absent from ``body`` are left as they are on the server. A
        ``metadata.resourceVersion`` in the body turns the patch into an
        optimistic-concurrency write that fails with 409 on a stale version.
        """
        identity = ResourceIdentity.from_body(body)
        result = await self._send(
            "PATCH",
            object_path(body["apiVersion"], identity),
            identity=identity,
            params={"fieldManager": self._field_manager},
            json_data=body,
            content_type="application/merge-patch+json",
        )
        return result or {}

    async def delete(self, api_version: str, identity: ResourceIdentity) -> None:
        """Delete with background propagation. Already-gone objects are fine."""
        await self._send(
            "DELETE",
            object_path(api_version, identity),
            identity=identity,
            params={"propagationPolicy": "Background"},
            allow_missing=True,
        )
