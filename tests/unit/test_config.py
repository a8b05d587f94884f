# ABOUTME: Unit tests for configuration management
# ABOUTME: Tests settings loading, cluster instances and Application manifest conversion

import json
import os
from pathlib import Path
from unittest.mock import patch

import pytest
import yaml
from pydantic import SecretStr
from pydantic import ValidationError as PydanticValidationError

from gitsync_mcp.config import (
    ApplicationSpec,
    ClusterInstance,
    ReconcilerSettings,
    SecuritySettings,
    ServerSettings,
    SourceSpec,
    load_application_file,
    parse_duration,
)

APPLICATION_YAML = """\
apiVersion: argoproj.io/v1alpha1
kind: AppProject
metadata:
  name: default
---
apiVersion: argoproj.io/v1alpha1
kind: Application
metadata:
  name: guestbook
spec:
  source:
    repoURL: https://github.com/example/apps.git
    path: guestbook
    targetRevision: main
    parameters:
      - name: tag
        value: "1.2.3"
  destination:
    namespace: web
  syncPolicy:
    automated:
      prune: true
      selfHeal: true
    retry:
      limit: 3
      backoff:
        duration: 5s
        maxDuration: 3m
---
apiVersion: argoproj.io/v1alpha1
kind: Application
metadata:
  name: billing
spec:
  source:
    repoURL: /srv/manifests/billing
  destination:
    name: staging
"""


@pytest.mark.unit
class TestClusterInstance:
    """Tests for ClusterInstance configuration."""

    def test_url_validation_adds_https(self):
        """Test that URL without scheme gets https added."""
        instance = ClusterInstance(url="10.0.0.1:6443", token=SecretStr("test"))
        assert instance.url == "https://10.0.0.1:6443"

    def test_url_validation_preserves_http(self):
        """Test that explicit http scheme is preserved."""
        instance = ClusterInstance(url="http://localhost:8001", token=SecretStr("test"))
        assert instance.url == "http://localhost:8001"

    def test_url_validation_removes_trailing_slash(self):
        """Test that trailing slash is removed from URL."""
        instance = ClusterInstance(url="https://k8s.example.com:6443/", token=SecretStr("test"))
        assert instance.url == "https://k8s.example.com:6443"

    def test_defaults(self):
        instance = ClusterInstance(url="https://k8s.example.com", token=SecretStr("test"))
        assert instance.name == "default"
        assert instance.insecure is False


@pytest.mark.unit
class TestApplicationSpec:
    """Tests for ApplicationSpec and its defaults."""

    def test_defaults(self):
        """Test default policy and exclusive kinds."""
        app = ApplicationSpec(name="web", source=SourceSpec(repo_url="/srv/web"))

        assert app.destination_namespace == "default"
        assert app.cluster == "primary"
        assert app.sync_policy.automated is True
        assert app.sync_policy.prune is False
        assert app.sync_policy.self_heal is False
        assert app.exclusive_kinds == ["ConfigMap", "Secret"]
        assert app.source.path == "."
        assert app.source.target_revision == "HEAD"

    @pytest.mark.parametrize("name", ["Web", "web_app", "-web", "", "a" * 64])
    def test_invalid_names_rejected(self, name):
        """Test that names unusable as label values are rejected."""
        with pytest.raises(PydanticValidationError):
            ApplicationSpec(name=name, source=SourceSpec(repo_url="/srv/web"))

    def test_retry_limit_must_be_positive(self):
        with pytest.raises(PydanticValidationError):
            ApplicationSpec(
                name="web",
                source=SourceSpec(repo_url="/srv/web"),
                sync_policy={"retry_limit": 0},
            )


@pytest.mark.unit
class TestFromManifest:
    """Tests for converting ArgoCD Application manifests."""

    def test_full_manifest(self):
        docs = list(yaml.safe_load_all(APPLICATION_YAML))
        app = ApplicationSpec.from_manifest(docs[1])

        assert app.name == "guestbook"
        assert app.source.repo_url == "https://github.com/example/apps.git"
        assert app.source.path == "guestbook"
        assert app.source.target_revision == "main"
        assert app.source.parameters == {"tag": "1.2.3"}
        assert app.destination_namespace == "web"
        assert app.cluster == "primary"
        assert app.sync_policy.automated is True
        assert app.sync_policy.prune is True
        assert app.sync_policy.self_heal is True
        assert app.sync_policy.retry_limit == 3
        assert app.sync_policy.retry_backoff_seconds == 5.0
        assert app.sync_policy.retry_backoff_max_seconds == 180.0

    def test_missing_automated_disables_automation(self):
        """Test that an Application without syncPolicy.automated is manual."""
        app = ApplicationSpec.from_manifest(
            {
                "kind": "Application",
                "metadata": {"name": "manual"},
                "spec": {"source": {"repoURL": "/srv/x"}, "syncPolicy": {}},
            }
        )

        assert app.sync_policy.automated is False
        assert app.sync_policy.prune is False

    def test_empty_automated_enables_automation(self):
        app = ApplicationSpec.from_manifest(
            {
                "kind": "Application",
                "metadata": {"name": "auto"},
                "spec": {"source": {"repoURL": "/srv/x"}, "syncPolicy": {"automated": {}}},
            }
        )

        assert app.sync_policy.automated is True
        assert app.sync_policy.prune is False

    def test_destination_name_selects_cluster(self):
        app = ApplicationSpec.from_manifest(
            {
                "kind": "Application",
                "metadata": {"name": "billing"},
                "spec": {"source": {"repoURL": "/srv/x"}, "destination": {"name": "staging"}},
            }
        )

        assert app.cluster == "staging"

    def test_wrong_kind_rejected(self):
        with pytest.raises(ValueError, match="expected kind Application"):
            ApplicationSpec.from_manifest({"kind": "AppProject", "metadata": {"name": "x"}})


@pytest.mark.unit
class TestParseDuration:
    """Tests for ArgoCD duration strings."""

    @pytest.mark.parametrize(
        ("value", "seconds"),
        [("5s", 5.0), ("3m", 180.0), ("1h", 3600.0), ("10", 10.0), (2, 2.0), ("0.5s", 0.5)],
    )
    def test_valid(self, value, seconds):
        assert parse_duration(value) == seconds

    @pytest.mark.parametrize("value", ["soon", "5d", "", "-1s"])
    def test_invalid(self, value):
        with pytest.raises(ValueError, match="invalid duration"):
            parse_duration(value)


@pytest.mark.unit
class TestLoadApplicationFile:
    """Tests for loading Application manifests from YAML files."""

    def test_loads_only_applications(self, tmp_path: Path):
        """Test that non-Application documents are skipped."""
        path = tmp_path / "apps.yaml"
        path.write_text(APPLICATION_YAML)

        apps = load_application_file(path)

        assert [a.name for a in apps] == ["guestbook", "billing"]
        assert apps[1].source.is_local is True
        assert apps[1].cluster == "staging"


@pytest.mark.unit
class TestSecuritySettings:
    """Tests for SecuritySettings configuration."""

    def test_defaults(self):
        """Test default security settings."""
        settings = SecuritySettings()

        assert settings.read_only is True
        assert settings.disable_destructive is True
        assert settings.audit_log is None
        assert settings.mask_secrets is True
        assert settings.rate_limit_calls == 100
        assert settings.rate_limit_window == 60

    def test_env_prefix(self):
        """Test environment variable prefix."""
        with patch.dict(os.environ, {"MCP_READ_ONLY": "false"}):
            settings = SecuritySettings()
            assert settings.read_only is False


@pytest.mark.unit
class TestReconcilerSettings:
    """Tests for ReconcilerSettings configuration."""

    def test_defaults(self):
        settings = ReconcilerSettings()

        assert settings.interval_seconds == 180.0
        assert settings.git_timeout_seconds == 120.0

    def test_env_prefix(self):
        with patch.dict(os.environ, {"GITSYNC_INTERVAL_SECONDS": "30", "GITSYNC_WORKDIR": "/var/cache/gitsync"}):
            settings = ReconcilerSettings()

        assert settings.interval_seconds == 30.0
        assert settings.workdir == Path("/var/cache/gitsync")


@pytest.mark.unit
class TestServerSettings:
    """Tests for ServerSettings configuration."""

    def test_primary_cluster_from_fields(self):
        """Test primary cluster created from KUBE_* values."""
        settings = ServerSettings(
            kube_api_url="https://k8s.example.com:6443",
            kube_token=SecretStr("test-token"),
        )

        primary = settings.primary_cluster
        assert primary is not None
        assert primary.url == "https://k8s.example.com:6443"
        assert primary.name == "primary"

    def test_primary_cluster_from_env(self):
        env = {"KUBE_API_URL": "https://k8s.example.com:6443", "KUBE_TOKEN": "t", "KUBE_INSECURE": "true"}
        with patch.dict(os.environ, env):
            settings = ServerSettings()

        assert settings.primary_cluster is not None
        assert settings.primary_cluster.insecure is True
        assert settings.primary_cluster.token.get_secret_value() == "t"

    def test_primary_cluster_none_when_no_url(self):
        """Test primary cluster is None when URL not set."""
        with patch.dict(os.environ, {}, clear=True):
            settings = ServerSettings()
        assert settings.primary_cluster is None

    def test_all_clusters_and_lookup(self):
        """Test all_clusters and get_cluster."""
        staging = ClusterInstance(url="https://staging.example.com", token=SecretStr("s"), name="staging")
        settings = ServerSettings(
            kube_api_url="https://k8s.example.com:6443",
            kube_token=SecretStr("test-token"),
            additional_clusters=[staging],
        )

        assert [c.name for c in settings.all_clusters] == ["primary", "staging"]
        assert settings.get_cluster("staging") is not None
        assert settings.get_cluster("nonexistent") is None

    def test_applications_from_env_json(self):
        """Test inline applications parsed from JSON."""
        apps = [{"name": "web", "source": {"repo_url": "/srv/web"}, "sync_policy": {"prune": True}}]
        with patch.dict(os.environ, {"GITSYNC_MCP_APPLICATIONS": json.dumps(apps)}):
            settings = ServerSettings()

        assert [a.name for a in settings.all_applications] == ["web"]
        assert settings.all_applications[0].sync_policy.prune is True

    def test_applications_file_appended(self, tmp_path: Path):
        path = tmp_path / "apps.yaml"
        path.write_text(APPLICATION_YAML)
        settings = ServerSettings(
            applications=[ApplicationSpec(name="web", source=SourceSpec(repo_url="/srv/web"))],
            applications_file=path,
        )

        assert [a.name for a in settings.all_applications] == ["web", "guestbook", "billing"]

    def test_duplicate_application_names_rejected(self, tmp_path: Path):
        """Test that an application defined twice is an error."""
        path = tmp_path / "apps.yaml"
        path.write_text(APPLICATION_YAML)
        settings = ServerSettings(
            applications=[ApplicationSpec(name="guestbook", source=SourceSpec(repo_url="/srv/web"))],
            applications_file=path,
        )

        with pytest.raises(ValueError, match="duplicate application name 'guestbook'"):
            _ = settings.all_applications

    def test_default_log_level(self):
        """Test default log level."""
        settings = ServerSettings()
        assert settings.log_level == "INFO"

    def test_invalid_log_level(self):
        with pytest.raises(PydanticValidationError):
            ServerSettings(log_level="VERBOSE")
