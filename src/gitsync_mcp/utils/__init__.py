# ABOUTME: Utilities package initialization for the gitsync MCP server
# ABOUTME: Contains shared utilities for the cluster client, safety, and logging

"""
Gitsync MCP Utilities Package

Shared utilities:
    - client.py: Kubernetes API client with error classification and retries
    - safety.py: Read-only mode, prune confirmation and rate limiting
    - logging.py: Structured logging with correlation IDs and audit trail
"""
