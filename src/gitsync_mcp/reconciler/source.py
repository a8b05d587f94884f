# ABOUTME: Manifest source adapters for the reconciler
# ABOUTME: Fetches manifest trees at a revision from git repositories or local directories

"""
Manifest sources.

A source turns a SourceSpec into a SourceSnapshot: the list of manifest
files under the spec's path (and overlay paths) together with the revision
they were read at. Two adapters exist:

GitSource
    Keeps one bare mirror per repository under the reconciler workdir and
    talks to it through the ``git`` CLI. Files are read straight out of the
    object database (``git ls-tree`` + ``git show``), so no working tree is
    ever checked out and concurrent applications sharing a repository do
    not step on each other.

DirectorySource
    Reads files from a local directory. The revision is a content hash so
    an unchanged tree reports the same revision on every pass.
"""

from __future__ import annotations

import asyncio
import hashlib
import os
import re
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING, Protocol

import structlog

from gitsync_mcp.reconciler.errors import SourceError

if TYPE_CHECKING:
    from gitsync_mcp.config import SourceSpec

logger = structlog.get_logger(__name__)

MANIFEST_SUFFIXES = (".yaml", ".yml", ".json")


@dataclass(frozen=True)
class SourceDocument:
    """One manifest file. ``path`` is relative to the repository root."""

    path: str
    content: str


@dataclass
class SourceSnapshot:
    """
    Manifest files at one revision.

    ``documents`` holds the base path's files; ``overlays`` maps each overlay
    path to its files, in the order the spec lists them.
    """

    revision: str
    documents: list[SourceDocument] = field(default_factory=list)
    overlays: dict[str, list[SourceDocument]] = field(default_factory=dict)


class ManifestSource(Protocol):
    """Anything that can fetch a SourceSnapshot."""

    async def fetch(self, spec: SourceSpec) -> SourceSnapshot: ...


def _is_manifest(name: str) -> bool:
    return name.endswith(MANIFEST_SUFFIXES)


def _under(path: str, prefix: str) -> bool:
    prefix = prefix.strip("/")
    if prefix in ("", "."):
        return True
    return path == prefix or path.startswith(prefix + "/")


# =============================================================================
# DIRECTORY SOURCE
# =============================================================================


class DirectorySource:
    """Reads manifests from a directory on the local filesystem."""

    def __init__(self, root: Path | None = None) -> None:
        self._root = root

    def _resolve_root(self, spec: SourceSpec) -> Path:
        if self._root is not None:
            return self._root
        url = spec.repo_url
        if url.startswith("file://"):
            url = url[len("file://") :]
        return Path(url)

    def _read_tree(self, root: Path, sub: str) -> list[SourceDocument]:
        base = (root / sub).resolve() if sub not in ("", ".") else root.resolve()
        if not base.is_dir():
            raise SourceError(f"path '{sub}' not found in {root}")
        docs = []
        for file in sorted(base.rglob("*")):
            if file.is_file() and _is_manifest(file.name):
                rel = file.resolve().relative_to(root.resolve()).as_posix()
                docs.append(SourceDocument(path=rel, content=file.read_text()))
        return docs

    async def fetch(self, spec: SourceSpec) -> SourceSnapshot:
        root = self._resolve_root(spec)
        if not root.is_dir():
            raise SourceError(f"source directory {root} does not exist")

        try:
            documents = await asyncio.to_thread(self._read_tree, root, spec.path)
            overlays = {}
            for overlay in spec.overlays:
                overlays[overlay] = await asyncio.to_thread(self._read_tree, root, overlay)
        except OSError as e:
            raise SourceError(f"failed reading {root}: {e}") from e

        digest = hashlib.sha256()
        for doc in [*documents, *(d for docs in overlays.values() for d in docs)]:
            digest.update(doc.path.encode())
            digest.update(b"\0")
            digest.update(doc.content.encode())
            digest.update(b"\0")
        revision = digest.hexdigest()[:12]

        logger.debug("Read directory source", root=str(root), files=len(documents), revision=revision)
        return SourceSnapshot(revision=revision, documents=documents, overlays=overlays)


# =============================================================================
# GIT SOURCE
# =============================================================================


class GitSource:
    """
    Reads manifests from a git repository through a local bare mirror.

    Mirrors live under ``workdir`` in a directory derived from the repo URL.
    Fetches for the same repository are serialized with a per-repo lock.
    """

    def __init__(self, workdir: Path, timeout: float = 120.0) -> None:
        self._workdir = workdir
        self._timeout = timeout
        self._locks: dict[str, asyncio.Lock] = {}

    def mirror_path(self, repo_url: str) -> Path:
        slug = re.sub(r"[^A-Za-z0-9._-]+", "_", repo_url).strip("_")[-80:]
        digest = hashlib.sha256(repo_url.encode()).hexdigest()[:8]
        return self._workdir / f"{slug}-{digest}.git"

    async def _git(self, *args: str, cwd: Path | None = None) -> str:
        """
        Run a git command and return its stdout.

        Raises:
            SourceError: On non-zero exit, timeout or missing git binary.
        """
        cmd = ["git", *args]
        log = logger.bind(command=" ".join(cmd[:3]))
        log.debug("Running git")
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                cwd=str(cwd) if cwd else None,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env={**os.environ, "GIT_TERMINAL_PROMPT": "0"},
            )
        except FileNotFoundError as e:
            raise SourceError("git executable not found") from e

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=self._timeout)
        except TimeoutError as e:
            proc.kill()
            await proc.wait()
            raise SourceError(f"git {args[0]} timed out after {self._timeout}s") from e

        if proc.returncode != 0:
            message = stderr.decode(errors="replace").strip()[:300]
            log.warning("git failed", returncode=proc.returncode, stderr=message)
            raise SourceError(f"git {args[0]} failed: {message}")
        return stdout.decode(errors="replace")

    async def _ensure_mirror(self, repo_url: str) -> Path:
        mirror = self.mirror_path(repo_url)
        if not (mirror / "HEAD").exists():
            mirror.parent.mkdir(parents=True, exist_ok=True)
            logger.info("Cloning mirror", repo=repo_url, mirror=str(mirror))
            await self._git("clone", "--mirror", "--quiet", repo_url, str(mirror))
        else:
            await self._git("remote", "update", "--prune", cwd=mirror)
        return mirror

    async def resolve_revision(self, mirror: Path, revision: str) -> str:
        """Resolve a branch, tag or (short) sha to a full commit sha."""
        rev = revision or "HEAD"
        for candidate in (rev, f"refs/heads/{rev}", f"refs/tags/{rev}"):
            try:
                out = await self._git("rev-parse", "--verify", "--quiet", f"{candidate}^{{commit}}", cwd=mirror)
            except SourceError:
                continue
            if out.strip():
                return out.strip()
        raise SourceError(f"revision '{revision}' not found")

    async def _read_path(self, mirror: Path, sha: str, sub: str) -> list[SourceDocument]:
        listing = await self._git("ls-tree", "-r", "--name-only", sha, cwd=mirror)
        names = [n for n in listing.splitlines() if _is_manifest(n) and _under(n, sub)]
        if not names and sub not in ("", "."):
            raise SourceError(f"path '{sub}' has no manifests at {sha[:8]}")

        docs = []
        for name in sorted(names):
            content = await self._git("show", f"{sha}:{name}", cwd=mirror)
            docs.append(SourceDocument(path=str(PurePosixPath(name)), content=content))
        return docs

    async def fetch(self, spec: SourceSpec) -> SourceSnapshot:
        lock = self._locks.setdefault(spec.repo_url, asyncio.Lock())
        async with lock:
            mirror = await self._ensure_mirror(spec.repo_url)
            sha = await self.resolve_revision(mirror, spec.target_revision)

        documents = await self._read_path(mirror, sha, spec.path)
        overlays = {o: await self._read_path(mirror, sha, o) for o in spec.overlays}

        logger.info("Fetched git source", repo=spec.repo_url, revision=sha[:8], files=len(documents))
        return SourceSnapshot(revision=sha, documents=documents, overlays=overlays)


class RoutingSource:
    """Sends local specs to DirectorySource and remote ones to GitSource."""

    def __init__(self, workdir: Path, git_timeout: float = 120.0) -> None:
        self._directory = DirectorySource()
        self._git = GitSource(workdir, timeout=git_timeout)

    async def fetch(self, spec: SourceSpec) -> SourceSnapshot:
        if spec.is_local:
            return await self._directory.fetch(spec)
        return await self._git.fetch(spec)
