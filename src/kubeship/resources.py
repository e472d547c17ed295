"""Helpers for manifest dicts: accessors, flattening, ordering, comparison and YAML I/O."""

from __future__ import annotations

import copy
import logging
import pathlib
from collections.abc import Iterable
from typing import Any

import yaml

from .models import DEFAULT_API_VERSIONS, KIND_ORDER, Resource

logger = logging.getLogger(__name__)

# Metadata fields owned by the API server; never part of a user's desired state.
_SERVER_METADATA_FIELDS: frozenset[str] = frozenset({
    "uid",
    "resourceVersion",
    "creationTimestamp",
    "generation",
    "managedFields",
    "selfLink",
    "deletionTimestamp",
    "deletionGracePeriodSeconds",
})


# ---------------------------------------------------------------------------
# Accessors
# ---------------------------------------------------------------------------


def kind_of(resource: Resource) -> str:
    return resource.get("kind") or ""


def metadata_of(resource: Resource) -> dict[str, Any]:
    return resource.get("metadata") or {}


def name_of(resource: Resource) -> str:
    return metadata_of(resource).get("name") or ""


def namespace_of(resource: Resource) -> str | None:
    return metadata_of(resource).get("namespace") or None


def labels_of(resource: Resource) -> dict[str, str]:
    return metadata_of(resource).get("labels") or {}


def annotations_of(resource: Resource) -> dict[str, str]:
    return metadata_of(resource).get("annotations") or {}


def api_version_of(resource: Resource) -> str:
    """Return the resource's apiVersion, defaulting by kind when absent."""
    return resource.get("apiVersion") or DEFAULT_API_VERSIONS.get(kind_of(resource), "v1")


def is_list_wrapper(obj: Any) -> bool:
    """Return ``True`` for ``kind: List`` style wrappers carrying an ``items`` list."""
    if not isinstance(obj, dict) or not isinstance(obj.get("items"), list):
        return False
    kind = obj.get("kind") or ""
    return kind == "List" or kind.endswith("List")


def is_resource(obj: Any) -> bool:
    return isinstance(obj, dict) and bool(obj.get("kind")) and bool(name_of(obj)) and not is_list_wrapper(obj)


# ---------------------------------------------------------------------------
# Flattening and ordering
# ---------------------------------------------------------------------------


def flatten_resources(obj: Any) -> list[Resource]:
    """Flatten a resource, list, ``List`` wrapper or arbitrarily nested combination.

    Containers are tracked by identity so a collection that contains itself
    is visited once. Elements that are neither containers nor resources are
    ignored.

    Args:
        obj: A single resource dict or any nesting of lists/tuples/``List`` wrappers.

    Returns:
        The concrete resources in input order.
    """
    resources: list[Resource] = []
    visited: set[int] = set()
    stack: list[Any] = [obj]

    while stack:
        current = stack.pop()
        if isinstance(current, (list, tuple)) or is_list_wrapper(current):
            if id(current) in visited:
                logger.warning(f"Found recursive nested object of type {type(current).__name__}, skipping it")
                continue
            visited.add(id(current))
            items = current["items"] if isinstance(current, dict) else current
            stack.extend(reversed(items))
        elif is_resource(current):
            resources.append(current)
        elif current is not None:
            logger.debug(f"Ignoring non-resource element of type {type(current).__name__}")

    return resources


def sort_resources(resources: Iterable[Resource]) -> list[Resource]:
    """Order resources so namespaces come first, then the ``KIND_ORDER`` kinds, then the rest."""
    rank = {kind: index for index, kind in enumerate(KIND_ORDER)}
    return sorted(resources, key=lambda resource: rank.get(kind_of(resource), len(KIND_ORDER)))


# ---------------------------------------------------------------------------
# Comparison
# ---------------------------------------------------------------------------


def _desired_view(resource: Resource) -> Resource:
    view = {key: value for key, value in resource.items() if key != "status"}
    metadata = view.get("metadata")
    if isinstance(metadata, dict):
        view["metadata"] = {key: value for key, value in metadata.items() if key not in _SERVER_METADATA_FIELDS}
    return view


def _contains(desired: Any, actual: Any) -> bool:
    if isinstance(desired, dict):
        if actual is None:
            actual = {}
        if not isinstance(actual, dict):
            return False
        return all(_contains(value, actual.get(key)) for key, value in desired.items())
    if isinstance(desired, list):
        if actual is None:
            actual = []
        if not isinstance(actual, list) or len(desired) != len(actual):
            return False
        return all(_contains(d, a) for d, a in zip(desired, actual))
    if desired is None:
        return actual is None or actual == {} or actual == []
    return desired == actual


def is_config_equal(desired: Resource | None, existing: Resource | None) -> bool:
    """Return ``True`` when ``existing`` already carries every field ``desired`` sets.

    ``status`` and server-managed metadata are ignored, as are fields the
    server added that the desired resource does not mention.
    """
    if desired is None or existing is None:
        return desired is existing
    return _contains(_desired_view(desired), _desired_view(existing))


# ---------------------------------------------------------------------------
# Selectors
# ---------------------------------------------------------------------------


def labels_to_selector(labels: dict[str, str]) -> str:
    """Convert a label dict to a comma-separated Kubernetes label selector string."""
    return ",".join(f"{k}={v}" for k, v in labels.items())


def selector_of(resource: Resource) -> dict[str, str]:
    """Return the pod selector labels of a controller or Service."""
    spec = resource.get("spec") or {}
    selector = spec.get("selector") or {}
    if "matchLabels" in selector or "matchExpressions" in selector:
        return dict(selector.get("matchLabels") or {})
    if not selector:
        template_labels = ((spec.get("template") or {}).get("metadata") or {}).get("labels")
        return dict(template_labels or {})
    return dict(selector)


# ---------------------------------------------------------------------------
# YAML files
# ---------------------------------------------------------------------------


def load_resources(path: str | pathlib.Path) -> list[Resource]:
    """Load every resource from a YAML file; a missing file yields an empty list."""
    path = pathlib.Path(path)
    if not path.is_file():
        return []
    with path.open() as f:
        documents = list(yaml.safe_load_all(f))
    return flatten_resources(documents)


def write_resources(path: str | pathlib.Path, resources: Iterable[Resource], merge: bool = True) -> pathlib.Path:
    """Write resources as a ``kind: List`` YAML file.

    Args:
        path: Target file; parent directories are created.
        resources: Resources to write.
        merge: Keep resources already in the file, replacing those with the same name.

    Returns:
        The written path.
    """
    path = pathlib.Path(path)
    merged: dict[str, Resource] = {}
    if merge:
        for existing in load_resources(path):
            merged[name_of(existing)] = existing
    for resource in resources:
        merged[name_of(resource)] = copy.deepcopy(resource)

    path.parent.mkdir(parents=True, exist_ok=True)
    document = {"apiVersion": "v1", "kind": "List", "items": list(merged.values())}
    with path.open("w") as f:
        yaml.safe_dump(document, f, default_flow_style=False, sort_keys=False)
    return path
