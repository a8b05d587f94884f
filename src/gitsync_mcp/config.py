# ABOUTME: Configuration management for the gitsync MCP server
# ABOUTME: Handles environment variables, cluster instances, sync policies and application specs

"""
Configuration management using pydantic-settings.

=============================================================================
WHAT IS THIS FILE?
=============================================================================

This module holds every setting the reconciler and the MCP server need. It:

1. READS environment variables (KUBE_API_URL, MCP_READ_ONLY, GITSYNC_*, ...)
2. VALIDATES them (URLs, log levels, unique application names)
3. LOADS application definitions, either inline as JSON or from a YAML file
   of ArgoCD-style ``Application`` manifests

=============================================================================
ARCHITECTURE: CONFIGURATION CLASSES
=============================================================================

1. ClusterInstance: one Kubernetes API server (URL, token, TLS settings)

2. SyncPolicy / SourceSpec / ApplicationSpec: what to reconcile and how
   - where the manifests live (repo, path, revision, overlays, parameters)
   - where they go (cluster, destination namespace)
   - how aggressive the reconciler is (automated, prune, self-heal, retry)

3. SecuritySettings: guards on what MCP tools may do (MCP_ prefix)

4. ReconcilerSettings: loop interval and git cache (GITSYNC_ prefix)

5. ServerSettings: the top-level container

=============================================================================
ENVIRONMENT VARIABLE MAPPING
=============================================================================

Primary cluster:
    KUBE_API_URL        -> Kubernetes API server URL
    KUBE_TOKEN          -> Bearer token (service account token)
    KUBE_INSECURE       -> Skip TLS certificate verification

Applications:
    GITSYNC_MCP_APPLICATIONS       -> JSON list of ApplicationSpec objects
    GITSYNC_MCP_APPLICATIONS_FILE  -> YAML file of Application manifests

Reconciler loop (GITSYNC_ prefix):
    GITSYNC_INTERVAL_SECONDS       -> Seconds between scheduled passes
    GITSYNC_WORKDIR                -> Directory for git mirrors
    GITSYNC_GIT_TIMEOUT_SECONDS    -> Timeout for each git command

Security settings (MCP_ prefix):
    MCP_READ_ONLY           -> Block manual syncs (default: true)
    MCP_DISABLE_DESTRUCTIVE -> Block manual prune syncs (default: true)
    MCP_AUDIT_LOG           -> Path to audit log file
    MCP_MASK_SECRETS        -> Mask sensitive data in output (default: true)
    MCP_RATE_LIMIT_CALLS    -> Max tool calls per window (default: 100)
    MCP_RATE_LIMIT_WINDOW   -> Rate limit window in seconds (default: 60)
"""

from __future__ import annotations

import os
import re
from pathlib import Path  # noqa: TC003 - Required at runtime for Pydantic
from typing import Annotated, Any

import yaml
from pydantic import BaseModel, Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Kubernetes object names: lowercase alphanumerics, '-' and '.'
NAME_PATTERN = re.compile(r"^[a-z0-9]([-a-z0-9.]*[a-z0-9])?$")

DEFAULT_EXCLUSIVE_KINDS = ["ConfigMap", "Secret"]


# =============================================================================
# CLUSTER INSTANCE CONFIGURATION
# =============================================================================


class ClusterInstance(BaseModel):
    """
    Configuration for a single Kubernetes API server.

    Applications pick a cluster by name (``ApplicationSpec.cluster``). The
    primary cluster comes from KUBE_* environment variables and is always
    named "primary"; more can be listed in ``additional_clusters``.

    USAGE EXAMPLE:
    --------------
        instance = ClusterInstance(
            url="https://10.0.0.1:6443",
            token=SecretStr("service-account-token"),
            name="staging",
        )
    """

    model_config = {"extra": "ignore"}

    url: str = Field(description="Kubernetes API server URL")
    token: SecretStr = Field(description="Bearer token for the API server")
    name: str = Field(default="default", description="Cluster identifier")
    insecure: bool = Field(default=False, description="Skip TLS verification")

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """
        Ensure URL has a scheme and no trailing slash.

        API paths start with "/" so a trailing slash on the base URL would
        produce "//api/v1". A missing scheme defaults to https.
        """
        if not v.startswith(("http://", "https://")):
            v = f"https://{v}"
        return v.rstrip("/")


# =============================================================================
# APPLICATION DEFINITIONS
# =============================================================================


class SyncPolicy(BaseModel):
    """
    How the reconciler treats one application.

    automated:
        True  -> every scheduled pass applies the diff
        False -> scheduled passes only compare; a manual sync applies

    prune:
        True  -> live resources no longer in git are deleted
        False -> they are reported as drift and left alone

    self_heal:
        True  -> drift without a new commit is corrected automatically
        False -> drift is reported, corrected only when git changes or on a
                 manual sync
    """

    model_config = {"extra": "ignore"}

    automated: bool = Field(default=True, description="Apply diffs on scheduled passes")
    prune: bool = Field(default=False, description="Delete live resources removed from git")
    self_heal: bool = Field(default=False, description="Correct drift without a new commit")
    retry_limit: int = Field(default=5, ge=1, description="Attempts per resource apply")
    retry_backoff_seconds: float = Field(default=1.0, gt=0, description="Initial backoff")
    retry_backoff_max_seconds: float = Field(default=30.0, gt=0, description="Backoff ceiling")
    apply_timeout_seconds: float = Field(default=30.0, gt=0, description="Timeout per apply")
    max_parallel: int = Field(default=4, ge=1, description="Concurrent applies per wave")


class SourceSpec(BaseModel):
    """Where an application's manifests come from."""

    model_config = {"extra": "ignore"}

    repo_url: str = Field(description="Git URL, file:// URL or local directory")
    path: str = Field(default=".", description="Directory within the repository")
    target_revision: str = Field(default="HEAD", description="Branch, tag or commit")
    parameters: dict[str, str] = Field(
        default_factory=dict,
        description="Values substituted for ${name} placeholders",
    )
    overlays: list[str] = Field(
        default_factory=list,
        description="Repository paths whose documents are merged onto the base",
    )

    @property
    def is_local(self) -> bool:
        """True when the source is a directory on this machine, not a remote repo."""
        if self.repo_url.startswith("file://"):
            return True
        return "://" not in self.repo_url and not self.repo_url.startswith("git@")


class ApplicationSpec(BaseModel):
    """
    One tracked application: a source, a destination and a sync policy.

    Applications are usually written as ArgoCD ``Application`` manifests and
    converted with ``from_manifest`` so the same file works for both tools.
    """

    model_config = {"extra": "ignore"}

    name: str = Field(description="Application name, also used as tracking label value")
    source: SourceSpec
    destination_namespace: str = Field(default="default")
    cluster: str = Field(default="primary", description="ClusterInstance name")
    sync_policy: SyncPolicy = Field(default_factory=SyncPolicy)
    exclusive_kinds: list[str] = Field(
        default_factory=lambda: list(DEFAULT_EXCLUSIVE_KINDS),
        description="Kinds compared with full-replace semantics",
    )

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        """Application names become label values, so they must be valid object names."""
        if not NAME_PATTERN.match(v) or len(v) > 63:
            raise ValueError(f"invalid application name '{v}'")
        return v

    @classmethod
    def from_manifest(cls, doc: dict[str, Any]) -> ApplicationSpec:
        """
        Build a spec from an ArgoCD ``Application`` document.

        Only the fields this reconciler understands are read:

            spec.source.{repoURL, path, targetRevision}
            spec.source.kustomize.commonLabels   (ignored)
            spec.destination.{namespace, name}
            spec.syncPolicy.automated.{prune, selfHeal}
            spec.syncPolicy.retry.{limit, backoff.duration, backoff.maxDuration}

        Raises:
            ValueError: If the document is not an Application.
        """
        if doc.get("kind") != "Application":
            raise ValueError(f"expected kind Application, got {doc.get('kind')!r}")

        metadata = doc.get("metadata") or {}
        spec = doc.get("spec") or {}
        source = spec.get("source") or {}
        destination = spec.get("destination") or {}
        sync_policy = spec.get("syncPolicy") or {}
        automated = sync_policy.get("automated")
        retry = sync_policy.get("retry") or {}
        backoff = retry.get("backoff") or {}

        parameters = {
            str(p["name"]): str(p.get("value", ""))
            for p in (source.get("parameters") or [])
            if isinstance(p, dict) and "name" in p
        }

        policy: dict[str, Any] = {
            # "automated: {}" enables automation; a missing key disables it
            "automated": automated is not None,
            "prune": bool((automated or {}).get("prune", False)),
            "self_heal": bool((automated or {}).get("selfHeal", False)),
        }
        if "limit" in retry:
            policy["retry_limit"] = max(1, int(retry["limit"]))
        if "duration" in backoff:
            policy["retry_backoff_seconds"] = parse_duration(backoff["duration"])
        if "maxDuration" in backoff:
            policy["retry_backoff_max_seconds"] = parse_duration(backoff["maxDuration"])

        return cls(
            name=metadata.get("name", ""),
            source=SourceSpec(
                repo_url=source.get("repoURL", ""),
                path=source.get("path", "."),
                target_revision=source.get("targetRevision", "HEAD"),
                parameters=parameters,
            ),
            destination_namespace=destination.get("namespace", "default"),
            cluster=destination.get("name") or "primary",
            sync_policy=SyncPolicy(**policy),
        )


def parse_duration(value: Any) -> float:
    """
    Parse an ArgoCD duration ("5s", "3m", "1h") into seconds.

    Plain numbers are taken as seconds.
    """
    if isinstance(value, int | float):
        return float(value)
    match = re.fullmatch(r"\s*(\d+(?:\.\d+)?)\s*([smh]?)\s*", str(value))
    if not match:
        raise ValueError(f"invalid duration {value!r}")
    number, unit = float(match.group(1)), match.group(2)
    return number * {"": 1, "s": 1, "m": 60, "h": 3600}[unit]


def load_application_file(path: Path) -> list[ApplicationSpec]:
    """
    Load every ``Application`` document from a YAML file.

    Documents of other kinds are skipped so the file can be an ArgoCD
    app-of-apps manifest that also carries AppProjects.
    """
    with path.open() as f:
        docs = [d for d in yaml.safe_load_all(f) if isinstance(d, dict)]
    return [ApplicationSpec.from_manifest(d) for d in docs if d.get("kind") == "Application"]


# =============================================================================
# SECURITY SETTINGS
# =============================================================================


class SecuritySettings(BaseSettings):
    """
    Guards on the MCP tools.

    The reconciler loop itself always follows each application's SyncPolicy;
    these settings only restrict what an MCP client can ask for:

    Layer 1: MCP_READ_ONLY=true (default)
        - manual sync_application is refused
        - status, diff and refresh still work

    Layer 2: MCP_DISABLE_DESTRUCTIVE=true (default)
        - manual syncs with prune=true are refused

    Layer 3: Rate limiting (MCP_RATE_LIMIT_*)

    Layer 4: Confirmation for prune syncs (see SafetyGuard)
    """

    model_config = SettingsConfigDict(env_prefix="MCP_")

    read_only: bool = Field(
        default=True,
        description="Block manual sync operations when true",
    )

    disable_destructive: bool = Field(
        default=True,
        description="Block manual prune syncs when true",
    )

    audit_log: Path | None = Field(
        default=None,
        description="Path to audit log file",
    )
    # One JSON object per line: timestamp, correlation_id, action, target,
    # result, details. When None, audit entries go through structlog.

    mask_secrets: bool = Field(
        default=True,
        description="Mask sensitive values in output",
    )
    # Secret data and tokens in diffs and error bodies become "***MASKED***".

    rate_limit_calls: int = Field(
        default=100,
        description="Maximum tool calls per window",
    )

    rate_limit_window: int = Field(
        default=60,
        description="Rate limit window in seconds",
    )


# =============================================================================
# RECONCILER SETTINGS
# =============================================================================


class ReconcilerSettings(BaseSettings):
    """Scheduling and source cache settings for the reconciliation loop."""

    model_config = SettingsConfigDict(env_prefix="GITSYNC_")

    # ArgoCD's default 3 minute reconciliation timeout.
    interval_seconds: float = Field(
        default=180.0,
        gt=0,
        description="Seconds between scheduled passes per application",
    )

    workdir: Path = Field(
        default=Path("/tmp/gitsync"),
        description="Directory holding bare git mirrors",
    )

    git_timeout_seconds: float = Field(
        default=120.0,
        gt=0,
        description="Timeout for each git subprocess",
    )


# =============================================================================
# MAIN SERVER SETTINGS
# =============================================================================


class ServerSettings(BaseSettings):
    """
    Top-level configuration container.

    USAGE:
    ------
        settings = load_settings()
        for app in settings.all_applications:
            print(app.name, app.source.repo_url)
    """

    model_config = SettingsConfigDict(
        env_prefix="GITSYNC_MCP_",
        env_nested_delimiter="__",
        extra="ignore",
        populate_by_name=True,
    )

    # -------------------------------------------------------------------------
    # PRIMARY CLUSTER (from environment)
    # -------------------------------------------------------------------------

    kube_api_url: str = Field(
        default="",
        validation_alias="KUBE_API_URL",
        description="Primary Kubernetes API server URL",
    )

    kube_token: SecretStr = Field(
        default=SecretStr(""),
        validation_alias="KUBE_TOKEN",
        description="Primary cluster bearer token",
    )
    # For a service account:
    #    kubectl -n gitsync create token gitsync

    kube_insecure: bool = Field(
        default=False,
        validation_alias="KUBE_INSECURE",
        description="Skip TLS verification for primary cluster",
    )

    additional_clusters: list[ClusterInstance] = Field(
        default_factory=list,
        description="Additional clusters applications may target",
    )

    # -------------------------------------------------------------------------
    # APPLICATIONS
    # -------------------------------------------------------------------------

    applications: list[ApplicationSpec] = Field(
        default_factory=list,
        description="Inline application definitions",
    )

    applications_file: Path | None = Field(
        default=None,
        description="YAML file of ArgoCD-style Application manifests",
    )

    # -------------------------------------------------------------------------
    # LOGGING
    # -------------------------------------------------------------------------

    log_level: Annotated[str, Field(pattern=r"^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$")] = Field(
        default="INFO",
        description="Logging level",
    )

    json_logs: bool = Field(default=False, description="Render logs as JSON lines")

    security: SecuritySettings = Field(default_factory=SecuritySettings)
    reconciler: ReconcilerSettings = Field(default_factory=ReconcilerSettings)

    # -------------------------------------------------------------------------
    # COMPUTED PROPERTIES
    # -------------------------------------------------------------------------

    @property
    def primary_cluster(self) -> ClusterInstance | None:
        """Primary cluster from KUBE_* variables, or None when KUBE_API_URL is unset."""
        if not self.kube_api_url:
            return None
        return ClusterInstance(
            url=self.kube_api_url,
            token=self.kube_token,
            name="primary",
            insecure=self.kube_insecure,
        )

    @property
    def all_clusters(self) -> list[ClusterInstance]:
        """Primary cluster (if configured) followed by additional clusters."""
        clusters = []
        if self.primary_cluster:
            clusters.append(self.primary_cluster)
        clusters.extend(self.additional_clusters)
        return clusters

    def get_cluster(self, name: str = "primary") -> ClusterInstance | None:
        """Get cluster by name."""
        for cluster in self.all_clusters:
            if cluster.name == name:
                return cluster
        return None

    @property
    def all_applications(self) -> list[ApplicationSpec]:
        """
        Inline applications followed by those loaded from applications_file.

        Raises:
            ValueError: If two applications share a name.
        """
        apps = list(self.applications)
        if self.applications_file:
            apps.extend(load_application_file(self.applications_file))

        seen: set[str] = set()
        for app in apps:
            if app.name in seen:
                raise ValueError(f"duplicate application name '{app.name}'")
            seen.add(app.name)
        return apps


# =============================================================================
# SETTINGS LOADER
# =============================================================================


def load_settings() -> ServerSettings:
    """
    Load settings from environment with validation.

    If GITSYNC_MCP_ENV_FILE is set, variables are also read from that file.

    Raises:
        pydantic.ValidationError: If configuration is invalid.
    """
    return ServerSettings(
        _env_file=os.environ.get("GITSYNC_MCP_ENV_FILE"),
    )
