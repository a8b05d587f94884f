# ABOUTME: Desired-state renderer for the reconciler
# ABOUTME: Parses YAML manifests, substitutes parameters, applies overlays and validates resources

"""
Desired-state rendering.

Turns a SourceSnapshot into the set of DesiredResources for one application:

1. Parse every file as (multi-document) YAML; JSON files parse the same way.
2. Substitute ``${name}`` placeholders from the application parameters.
3. Merge overlay documents onto base documents with the same identity.
4. Default ``metadata.namespace`` for namespaced kinds and add the tracking
   label so the observer can find resources to prune later.
5. Validate each document.

A bad document is excluded and reported; it never stops the others from
rendering.
"""

from __future__ import annotations

import copy
import re
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Any

import structlog
import yaml

from gitsync_mcp.reconciler.errors import ValidationError
from gitsync_mcp.reconciler.models import (
    TRACKING_LABEL,
    DesiredResource,
    ResourceIdentity,
    is_namespaced,
)

if TYPE_CHECKING:
    from gitsync_mcp.config import ApplicationSpec
    from gitsync_mcp.reconciler.source import SourceDocument, SourceSnapshot

logger = structlog.get_logger(__name__)

PLACEHOLDER = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_.-]*)\}")
NAME_PATTERN = re.compile(r"^[a-z0-9]([-a-z0-9.:]*[a-z0-9])?$")

# Kustomize build files describe how to render, they are not resources.
SKIPPED_FILES = frozenset(["kustomization.yaml", "kustomization.yml", "Kustomization"])


@dataclass
class RenderResult:
    """
    Rendered resources plus the documents that failed validation.

    ``rejected`` holds identities whose only documents failed validation and
    ``unparsed`` the files that were not valid YAML. Live objects behind
    either must be left alone for the pass. ``files`` maps each source file
    to the identities it rendered.
    """

    revision: str
    resources: dict[ResourceIdentity, DesiredResource] = field(default_factory=dict)
    errors: list[ValidationError] = field(default_factory=list)
    rejected: set[ResourceIdentity] = field(default_factory=set)
    unparsed: list[str] = field(default_factory=list)
    files: dict[str, set[ResourceIdentity]] = field(default_factory=dict)


@dataclass
class _ParsedDoc:
    body: dict[str, Any]
    origin: str
    path: str


def _substitute(value: Any, parameters: dict[str, str], missing: set[str]) -> Any:
    if isinstance(value, str):

        def lookup(match: re.Match[str]) -> str:
            name = match.group(1)
            if name not in parameters:
                missing.add(name)
                return match.group(0)
            return parameters[name]

        return PLACEHOLDER.sub(lookup, value)
    if isinstance(value, dict):
        return {k: _substitute(v, parameters, missing) for k, v in value.items()}
    if isinstance(value, list):
        return [_substitute(v, parameters, missing) for v in value]
    return value


def deep_merge(base: dict[str, Any], overlay: dict[str, Any]) -> dict[str, Any]:
    """
    Merge ``overlay`` onto a copy of ``base``.

    Maps merge recursively, lists and scalars replace, and a ``None`` value
    in the overlay removes the key.
    """
    merged = copy.deepcopy(base)
    for key, value in overlay.items():
        if value is None:
            merged.pop(key, None)
        elif isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def _best_effort_identity(doc: Any) -> ResourceIdentity:
    if isinstance(doc, dict):
        try:
            return ResourceIdentity.from_body(doc)
        except (AttributeError, TypeError):
            pass
    return ResourceIdentity(group="", kind="Unknown", namespace="", name="unknown")


def validate_document(doc: Any, origin: str) -> None:
    """
    Check that a document is a well-formed Kubernetes object.

    Raises:
        ValidationError: Describing the first problem found.
    """
    identity = _best_effort_identity(doc)
    if not isinstance(doc, dict):
        raise ValidationError(f"{origin}: document is not a mapping", identity)
    if not isinstance(doc.get("apiVersion"), str) or not doc["apiVersion"]:
        raise ValidationError(f"{origin}: missing apiVersion", identity)
    if not isinstance(doc.get("kind"), str) or not doc["kind"]:
        raise ValidationError(f"{origin}: missing kind", identity)
    metadata = doc.get("metadata")
    if not isinstance(metadata, dict):
        raise ValidationError(f"{origin}: missing metadata", identity)
    name = metadata.get("name")
    if not isinstance(name, str) or not name:
        raise ValidationError(f"{origin}: missing metadata.name", identity)
    if len(name) > 253 or not NAME_PATTERN.match(name):
        raise ValidationError(f"{origin}: invalid name '{name}'", identity)
    namespace = metadata.get("namespace")
    if namespace is not None and (not isinstance(namespace, str) or not NAME_PATTERN.match(namespace)):
        raise ValidationError(f"{origin}: invalid namespace {namespace!r}", identity)
    for key in ("labels", "annotations"):
        value = metadata.get(key)
        if value is not None and not isinstance(value, dict):
            raise ValidationError(f"{origin}: metadata.{key} must be a mapping", identity)


class Renderer:
    """Renders SourceSnapshots for one application."""

    def __init__(self, app: ApplicationSpec) -> None:
        self._app = app

    def _parse(self, documents: list[SourceDocument], result: RenderResult) -> list[_ParsedDoc]:
        parsed: list[_ParsedDoc] = []
        for source_doc in documents:
            filename = source_doc.path.rsplit("/", 1)[-1]
            if filename in SKIPPED_FILES:
                continue
            try:
                docs = list(yaml.safe_load_all(source_doc.content))
            except yaml.YAMLError as e:
                result.errors.append(
                    ValidationError(
                        f"{source_doc.path}: invalid YAML: {e}",
                        ResourceIdentity(group="", kind="File", namespace="", name=source_doc.path),
                    )
                )
                result.unparsed.append(source_doc.path)
                continue

            for index, doc in enumerate(docs):
                if doc is None:
                    continue
                origin = f"{source_doc.path}#{index}"
                # "kind: List" wraps several objects
                if isinstance(doc, dict) and doc.get("kind") == "List" and isinstance(doc.get("items"), list):
                    parsed.extend(
                        _ParsedDoc(item, f"{origin}.{i}", source_doc.path) for i, item in enumerate(doc["items"])
                    )
                else:
                    parsed.append(_ParsedDoc(doc, origin, source_doc.path))
        return parsed

    def _prepare(self, doc: _ParsedDoc) -> dict[str, Any]:
        """Substitute parameters and fill defaults. Raises ValidationError."""
        missing: set[str] = set()
        body = _substitute(doc.body, self._app.source.parameters, missing)
        try:
            validate_document(body, doc.origin)
            if missing:
                raise ValidationError(
                    f"{doc.origin}: unresolved parameters {sorted(missing)}",
                    _best_effort_identity(body),
                )
        except ValidationError as e:
            if e.identity is not None and e.identity.namespaced and not e.identity.namespace:
                e.identity = replace(e.identity, namespace=self._app.destination_namespace)
            raise

        metadata = body["metadata"]
        if is_namespaced(body["kind"]):
            metadata.setdefault("namespace", self._app.destination_namespace)
        else:
            metadata.pop("namespace", None)

        labels = metadata.get("labels") or {}
        labels[TRACKING_LABEL] = self._app.name
        metadata["labels"] = labels
        return body

    def _overlay_target(
        self,
        doc: _ParsedDoc,
        identity: ResourceIdentity,
        bodies: dict[ResourceIdentity, dict[str, Any]],
    ) -> ResourceIdentity:
        """
        Base identity an overlay document patches.

        An overlay that names no namespace patches the base object with the
        same group, kind and name wherever that object lives.
        """
        if identity in bodies:
            return identity
        raw_metadata = doc.body.get("metadata") or {}
        if raw_metadata.get("namespace"):
            return identity
        matches = [
            i
            for i in bodies
            if (i.group, i.kind, i.name) == (identity.group, identity.kind, identity.name)
        ]
        return matches[0] if len(matches) == 1 else identity

    def render(self, snapshot: SourceSnapshot) -> RenderResult:
        result = RenderResult(revision=snapshot.revision)
        bodies: dict[ResourceIdentity, dict[str, Any]] = {}
        origins: dict[ResourceIdentity, str] = {}
        invalid: set[ResourceIdentity] = set()

        for doc in self._parse(snapshot.documents, result):
            try:
                body = self._prepare(doc)
            except ValidationError as e:
                result.errors.append(e)
                # a bad duplicate does not take down the valid document before it
                if e.identity is not None and e.identity not in bodies:
                    invalid.add(e.identity)
                continue
            identity = ResourceIdentity.from_body(body)
            if identity in bodies:
                result.errors.append(ValidationError(f"{doc.origin}: duplicate resource", identity))
                continue
            invalid.discard(identity)
            bodies[identity] = body
            origins[identity] = doc.path

        for overlay_path in self._app.source.overlays:
            for doc in self._parse(snapshot.overlays.get(overlay_path, []), result):
                try:
                    body = self._prepare(doc)
                except ValidationError as e:
                    result.errors.append(e)
                    continue
                target = self._overlay_target(doc, ResourceIdentity.from_body(body), bodies)
                if target in bodies:
                    if not (doc.body.get("metadata") or {}).get("namespace"):
                        body["metadata"].pop("namespace", None)
                    bodies[target] = deep_merge(bodies[target], body)
                else:
                    bodies[target] = body
                    origins[target] = doc.path

        # An overlay must not resurrect a base document that failed validation.
        for identity, body in sorted(bodies.items()):
            if identity in invalid:
                continue
            result.resources[identity] = DesiredResource(
                identity=identity,
                body=body,
                revision=snapshot.revision,
            )
            result.files.setdefault(origins[identity], set()).add(identity)
        result.rejected = invalid.difference(result.resources)

        logger.info(
            "Rendered desired state",
            application=self._app.name,
            revision=snapshot.revision[:12],
            resources=len(result.resources),
            invalid=len(result.errors),
        )
        return result
