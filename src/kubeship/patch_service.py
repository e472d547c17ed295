"""Per-kind update strategies for resources that already exist on the cluster.

Each supported kind maps to exactly one patcher in a registry.  A patcher
builds the updated object from the desired and the live resource; the
``PatchService`` then replaces the live object unless nothing changed.
"""

from __future__ import annotations

import copy
import logging
from collections.abc import Callable

from .kubernetes_controller import KubernetesController, KubernetesControllerException
from .models import Resource
from .resources import is_config_equal, kind_of, name_of

Patcher = Callable[[Resource, Resource], Resource]

# Metadata the server owns; always taken from the live object.
_PRESERVED_METADATA: tuple[str, ...] = ("uid", "resourceVersion", "creationTimestamp", "generation", "selfLink")


class UnsupportedKindError(KubernetesControllerException):
    """Raised when no patcher is registered for a resource kind."""


# ---------------------------------------------------------------------------
# Patchers
# ---------------------------------------------------------------------------


def _overlay_metadata(desired: Resource, existing: Resource) -> dict:
    """Overlay the desired metadata on the live one, merging labels and annotations."""
    metadata = copy.deepcopy(existing.get("metadata") or {})
    for key, value in (desired.get("metadata") or {}).items():
        if key in _PRESERVED_METADATA:
            continue
        if key in ("labels", "annotations") and isinstance(value, dict):
            metadata[key] = {**(metadata.get(key) or {}), **value}
        else:
            metadata[key] = copy.deepcopy(value)
    return metadata


def _base(desired: Resource, existing: Resource) -> Resource:
    patched = {key: copy.deepcopy(value) for key, value in existing.items() if key != "status"}
    patched["metadata"] = _overlay_metadata(desired, existing)
    return patched


def patch_spec(desired: Resource, existing: Resource) -> Resource:
    """Overlay metadata and replace the spec with the desired one."""
    patched = _base(desired, existing)
    if "spec" in desired:
        patched["spec"] = copy.deepcopy(desired["spec"])
    return patched


def patch_controller(desired: Resource, existing: Resource) -> Resource:
    """Like ``patch_spec`` but keep the live selector when the desired spec has none."""
    patched = patch_spec(desired, existing)
    existing_spec = existing.get("spec") or {}
    spec = patched.get("spec") or {}
    if not spec.get("selector") and existing_spec.get("selector"):
        spec["selector"] = copy.deepcopy(existing_spec["selector"])
    patched["spec"] = spec
    return patched


def patch_job(desired: Resource, existing: Resource) -> Resource:
    """Overlay metadata and update only the Job selector and pod template."""
    patched = _base(desired, existing)
    spec = copy.deepcopy(existing.get("spec") or {})
    desired_spec = desired.get("spec") or {}
    for key in ("selector", "template"):
        if key in desired_spec and not is_config_equal(desired_spec[key], spec.get(key)):
            spec[key] = copy.deepcopy(desired_spec[key])
    patched["spec"] = spec
    return patched


def patch_image_stream(desired: Resource, existing: Resource) -> Resource:
    """Overlay metadata and merge desired tags into the live tag list by name."""
    patched = _base(desired, existing)
    spec = copy.deepcopy(existing.get("spec") or {})
    desired_spec = copy.deepcopy(desired.get("spec") or {})
    tags = {tag.get("name"): tag for tag in spec.get("tags") or []}
    for tag in desired_spec.pop("tags", None) or []:
        tags[tag.get("name")] = tag
    spec.update(desired_spec)
    if tags:
        spec["tags"] = list(tags.values())
    patched["spec"] = spec
    return patched


def patch_route(desired: Resource, existing: Resource) -> Resource:
    """Overlay metadata and spec while keeping server-populated spec fields such as ``host``."""
    patched = _base(desired, existing)
    patched["spec"] = {**copy.deepcopy(existing.get("spec") or {}), **copy.deepcopy(desired.get("spec") or {})}
    return patched


DEFAULT_PATCHERS: dict[str, Patcher] = {
    "ReplicationController": patch_controller,
    "DeploymentConfig": patch_controller,
    "BuildConfig": patch_spec,
    "ImageStream": patch_image_stream,
    "PersistentVolumeClaim": patch_spec,
    "Job": patch_job,
    "Route": patch_route,
}


class PatchService:
    """Compare desired and live resources and update the live one through its kind's patcher.

    Args:
        controller: Cluster access used to replace resources.
        patchers: Kind to patcher registry; defaults to ``DEFAULT_PATCHERS``.
    """

    def __init__(self, controller: KubernetesController, patchers: dict[str, Patcher] | None = None) -> None:
        self.logger = logging.getLogger(__name__)
        self.controller = controller
        self._patchers = dict(DEFAULT_PATCHERS if patchers is None else patchers)

    def register(self, kind: str, patcher: Patcher) -> None:
        self._patchers[kind] = patcher

    def supports(self, kind: str) -> bool:
        return kind in self._patchers

    def compute_patch(self, desired: Resource, existing: Resource) -> Resource:
        """Return the object that would be written, without touching the cluster.

        Raises:
            UnsupportedKindError: If no patcher is registered for the kind.
        """
        kind = kind_of(desired)
        patcher = self._patchers.get(kind)
        if patcher is None:
            raise UnsupportedKindError(f"No patcher for {kind} found")
        return patcher(desired, existing)

    def patch(self, namespace: str, desired: Resource, existing: Resource) -> Resource:
        """Update ``existing`` to match ``desired``.

        Args:
            namespace: Namespace of the resource.
            desired: The desired resource.
            existing: The live resource.

        Returns:
            The updated resource, or ``existing`` when it already matches.

        Raises:
            UnsupportedKindError: If no patcher is registered for the kind.
        """
        patched = self.compute_patch(desired, existing)
        if is_config_equal(patched, existing):
            self.logger.debug(f"{kind_of(desired)} {name_of(desired)} has not changed")
            return existing
        self.logger.debug(f"Patching {kind_of(desired)} {namespace}/{name_of(desired)}")
        return self.controller.replace_resource(patched, namespace=namespace)
