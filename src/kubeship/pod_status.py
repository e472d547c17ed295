"""Pod status helpers shared by the build, debug, log and port-forward services."""

from __future__ import annotations

from collections.abc import Iterable

from .models import Resource
from .resources import metadata_of


def _status(pod: Resource) -> dict:
    return pod.get("status") or {}


def pod_phase(pod: Resource) -> str:
    return _status(pod).get("phase") or ""


def is_pod_running(pod: Resource | None) -> bool:
    return pod is not None and pod_phase(pod) == "Running"


def is_pod_waiting(pod: Resource | None) -> bool:
    return pod is not None and pod_phase(pod) == "Pending"


def is_pod_ready(pod: Resource | None) -> bool:
    """Return ``True`` when the pod's ``Ready`` condition is ``True``."""
    if pod is None:
        return False
    for condition in _status(pod).get("conditions") or []:
        if condition.get("type") == "Ready":
            return condition.get("status") == "True"
    return False


def creation_timestamp(pod: Resource) -> str:
    """Return the RFC 3339 creation timestamp; such strings sort chronologically."""
    return str(metadata_of(pod).get("creationTimestamp") or "")


def is_newer(pod: Resource, other: Resource | None) -> bool:
    return other is None or creation_timestamp(pod) > creation_timestamp(other)


def select_newest_pod(pods: Iterable[Resource], require_ready: bool = False) -> Resource | None:
    """Pick the most recently created running or pending pod.

    Args:
        pods: Candidate pods.
        require_ready: Only consider pods whose ``Ready`` condition is true.

    Returns:
        The newest matching pod, or ``None``.
    """
    newest: Resource | None = None
    for pod in pods:
        if metadata_of(pod).get("deletionTimestamp"):
            continue
        if not (is_pod_running(pod) or is_pod_waiting(pod)):
            continue
        if require_ready and not is_pod_ready(pod):
            continue
        if is_newer(pod, newest):
            newest = pod
    return newest


def describe_pod_status(pod: Resource) -> str:
    """Return a one-line status such as ``Running Ready`` or ``Pending: ErrImagePull``."""
    phase = pod_phase(pod) or "Unknown"
    status = _status(pod)
    for container_status in status.get("containerStatuses") or []:
        waiting = (container_status.get("state") or {}).get("waiting")
        if waiting and waiting.get("reason"):
            return f"{phase}: {waiting['reason']}"
    if phase == "Running":
        return f"{phase} {'Ready' if is_pod_ready(pod) else 'Not Ready'}"
    if status.get("reason"):
        return f"{phase}: {status['reason']}"
    return phase


def container_names(pod: Resource) -> list[str]:
    return [container.get("name") for container in (pod.get("spec") or {}).get("containers") or []]
