# ABOUTME: Reconciler package for the gitsync MCP server
# ABOUTME: Contains the source, render, observe, diff, apply and health stages

"""
Reconciler Package

Stages of one pass:
    - source.py: fetch manifests from git or a local directory
    - renderer.py: parse, parameterize and overlay into desired resources
    - observer.py: snapshot live resources for an application
    - diff.py: compare desired and observed into a patch set
    - executor.py: apply the patch set in waves with retries
    - health.py: per-kind health rules and aggregation
    - controller.py: per-application passes and the scheduling loop
"""
