# ABOUTME: Diff engine comparing desired and observed resources
# ABOUTME: Produces the Create/Update/Prune patch set and the list of unpruned drift

"""
Desired vs. observed comparison.

Two comparison modes exist, chosen per kind:

merge (default)
    Desired must be a subset of observed. Every field written in git must
    have the same value live; fields only the cluster sets (defaults,
    injected sidecars, controller annotations) are ignored.

full-replace (``exclusive_kinds``)
    The whole normalized body must match. Used for kinds like ConfigMap
    where a key added by hand is drift, not a default.

Server-managed fields are removed before either comparison.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from gitsync_mcp.reconciler.models import PatchKind, PatchOperation, ResourceIdentity

if TYPE_CHECKING:
    from collections.abc import Collection, Mapping

    from gitsync_mcp.reconciler.models import DesiredResource, ObservedResource

SYNC_WAVE_ANNOTATION = "argocd.argoproj.io/sync-wave"

SERVER_MANAGED_METADATA = (
    "uid",
    "resourceVersion",
    "generation",
    "creationTimestamp",
    "managedFields",
    "selfLink",
    "deletionTimestamp",
    "deletionGracePeriodSeconds",
    "ownerReferences",
)

SERVER_MANAGED_ANNOTATIONS = (
    "kubectl.kubernetes.io/last-applied-configuration",
    "deployment.kubernetes.io/revision",
)


def normalize(body: dict[str, Any]) -> dict[str, Any]:
    """Copy of ``body`` without status and server-managed metadata."""
    result = copy.deepcopy(body)
    result.pop("status", None)
    metadata = result.get("metadata")
    if isinstance(metadata, dict):
        for key in SERVER_MANAGED_METADATA:
            metadata.pop(key, None)
        annotations = metadata.get("annotations")
        if isinstance(annotations, dict):
            for key in SERVER_MANAGED_ANNOTATIONS:
                annotations.pop(key, None)
            if not annotations:
                metadata.pop("annotations", None)
    return result


def _subset_diff(desired: Any, observed: Any, path: str, out: list[str]) -> None:
    if isinstance(desired, dict):
        if not isinstance(observed, dict):
            out.append(path or ".")
            return
        for key, value in desired.items():
            child = f"{path}.{key}" if path else str(key)
            if key not in observed:
                # an explicit null in git matches an absent field
                if value is not None:
                    out.append(child)
                continue
            _subset_diff(value, observed[key], child, out)
        return

    if isinstance(desired, list):
        if not isinstance(observed, list) or len(desired) != len(observed):
            out.append(path or ".")
            return
        for index, (d, o) in enumerate(zip(desired, observed, strict=True)):
            _subset_diff(d, o, f"{path}[{index}]", out)
        return

    if desired != observed and not _numeric_equal(desired, observed):
        out.append(path or ".")


def _exact_diff(desired: Any, observed: Any, path: str, out: list[str]) -> None:
    if isinstance(desired, dict) and isinstance(observed, dict):
        for key in sorted(set(desired) | set(observed), key=str):
            child = f"{path}.{key}" if path else str(key)
            if key not in desired or key not in observed:
                out.append(child)
            else:
                _exact_diff(desired[key], observed[key], child, out)
        return
    if isinstance(desired, list) and isinstance(observed, list) and len(desired) == len(observed):
        for index, (d, o) in enumerate(zip(desired, observed, strict=True)):
            _exact_diff(d, o, f"{path}[{index}]", out)
        return
    if desired != observed and not _numeric_equal(desired, observed):
        out.append(path or ".")


def _numeric_equal(a: Any, b: Any) -> bool:
    # "cpu: 1.0" in YAML against 1 from the API server
    if isinstance(a, bool) or isinstance(b, bool):
        return False
    if isinstance(a, int | float) and isinstance(b, int | float):
        return float(a) == float(b)
    return False


def field_diff(desired: dict[str, Any], observed: dict[str, Any], exclusive: bool = False) -> list[str]:
    """
    Dotted paths of fields that differ between the normalized bodies.

    An empty list means the resource is in sync.
    """
    out: list[str] = []
    want, live = normalize(desired), normalize(observed)
    if not exclusive:
        _subset_diff(want, live, "", out)
        return out

    # metadata stays merge-compared: other controllers own labels and annotations
    _subset_diff(want.get("metadata") or {}, live.get("metadata") or {}, "metadata", out)
    want.pop("metadata", None)
    live.pop("metadata", None)
    _exact_diff(want, live, "", out)
    return out


def sync_wave(body: dict[str, Any]) -> int:
    """Sync wave from annotations; unparsable or missing waves are 0."""
    annotations = (body.get("metadata") or {}).get("annotations") or {}
    try:
        return int(annotations.get(SYNC_WAVE_ANNOTATION, 0))
    except (TypeError, ValueError):
        return 0


@dataclass
class DiffResult:
    """
    Output of one comparison.

    ``operations`` is the patch set; ``drift`` lists live resources that are
    no longer in git but were kept because pruning is off.
    """

    operations: list[PatchOperation] = field(default_factory=list)
    drift: list[ResourceIdentity] = field(default_factory=list)

    @property
    def in_sync(self) -> bool:
        return not self.operations and not self.drift


def compute_diff(
    desired: Mapping[ResourceIdentity, DesiredResource],
    observed: Mapping[ResourceIdentity, ObservedResource],
    prune: bool = False,
    exclusive_kinds: Collection[str] = (),
) -> DiffResult:
    """
    Compute the patch set that turns ``observed`` into ``desired``.

    - in desired only              -> Create
    - in both, bodies differ       -> Update
    - in observed only, prune on   -> Prune
    - in observed only, prune off  -> drift, untouched

    Every operation references an identity from at least one of the inputs.
    Operations come out sorted by identity.
    """
    result = DiffResult()

    for identity in sorted(desired):
        want = desired[identity]
        live = observed.get(identity)
        if live is None:
            result.operations.append(
                PatchOperation(
                    kind=PatchKind.CREATE,
                    identity=identity,
                    api_version=want.api_version,
                    payload=want.payload(),
                    wave=sync_wave(want.body),
                )
            )
            continue

        changed = field_diff(want.body, live.body, exclusive=identity.kind in exclusive_kinds)
        if changed:
            result.operations.append(
                PatchOperation(
                    kind=PatchKind.UPDATE,
                    identity=identity,
                    api_version=want.api_version,
                    payload=want.payload(),
                    wave=sync_wave(want.body),
                    changed_fields=changed,
                )
            )

    for identity in sorted(set(observed) - set(desired)):
        live = observed[identity]
        if prune:
            result.operations.append(
                PatchOperation(
                    kind=PatchKind.PRUNE,
                    identity=identity,
                    api_version=live.api_version,
                    wave=sync_wave(live.body),
                )
            )
        else:
            result.drift.append(identity)

    return result
