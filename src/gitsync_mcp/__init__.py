# ABOUTME: gitsync MCP package initialization
# ABOUTME: Exposes version information for the GitOps reconciler server

"""
gitsync MCP - a minimal GitOps reconciler driven through Model Context Protocol.

=============================================================================
WHAT IS THIS PACKAGE?
=============================================================================

gitsync continuously makes a Kubernetes cluster look like a set of YAML
manifests stored in git. For every tracked application it:

1. FETCHES manifests from a git repository (or a local directory)
2. RENDERS them into desired resources (parameters, overlays, namespaces)
3. OBSERVES the live resources through the Kubernetes API
4. DIFFS desired against observed state
5. APPLIES the difference in dependency order (with retry and backoff)
6. AGGREGATES per-resource health into one application status

The MCP server on top exposes status, diffs and manual syncs as tools so an
AI assistant can inspect and drive the reconciler.

=============================================================================
PACKAGE STRUCTURE OVERVIEW
=============================================================================

gitsync_mcp/
├── __init__.py          <- YOU ARE HERE: Package entry point
├── config.py            <- Settings, cluster instances, application specs
├── server.py            <- MCP server, tools and lifecycle
├── reconciler/
│   ├── models.py        <- Identities, resources, patches, sync results
│   ├── errors.py        <- Error taxonomy (validation/conflict/transient/...)
│   ├── source.py        <- Manifest source adapters (git, directory)
│   ├── renderer.py      <- YAML parsing, parameters, overlays
│   ├── observer.py      <- Live state snapshots
│   ├── diff.py          <- Desired vs observed comparison
│   ├── executor.py      <- Ordered, retried apply of patch sets
│   ├── health.py        <- Per-kind health rules and aggregation
│   └── controller.py    <- Reconciliation passes and scheduling loop
└── utils/
    ├── client.py        <- Async Kubernetes REST client
    ├── logging.py       <- Structured logging and audit trail
    └── safety.py        <- Read-only / destructive guards, rate limiting
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
