"""Shared pytest fixtures for the kubeship test suite."""

from __future__ import annotations

import copy
import itertools
from collections.abc import Callable
from typing import Any

import pytest

from kubeship.kubernetes_controller import KubernetesControllerException
from kubeship.models import CLUSTER_SCOPED_KINDS, Resource
from kubeship.resources import kind_of, labels_of, name_of, namespace_of


class FakeWatch:
    """Stand-in for ``WatchHandle`` returned by the fake cluster."""

    def __init__(self, kind: str, callback: Callable, namespace: str | None, name: str | None,
                 label_selector: str | None, on_close: Callable | None) -> None:
        self.kind = kind
        self.callback = callback
        self.namespace = namespace
        self.name = name
        self.label_selector = label_selector
        self.on_close = on_close
        self.closed = False

    def close(self) -> None:
        self.closed = True

    def join(self, timeout: float | None = None) -> None:
        pass

    def __enter__(self) -> FakeWatch:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()


def _merge_patch(target: Any, patch: Any) -> Any:
    if not isinstance(patch, dict):
        return copy.deepcopy(patch)
    result = copy.deepcopy(target) if isinstance(target, dict) else {}
    for key, value in patch.items():
        if value is None:
            result.pop(key, None)
        else:
            result[key] = _merge_patch(result.get(key), value)
    return result


def _matches_selector(resource: Resource, label_selector: str | None) -> bool:
    if not label_selector:
        return True
    labels = labels_of(resource)
    for term in label_selector.split(","):
        key, _, value = term.partition("=")
        if labels.get(key.strip()) != value.strip():
            return False
    return True


class FakeCluster:
    """In-memory implementation of the ``KubernetesController`` surface used by the services.

    Every call is recorded in ``requests`` as ``(method, kind, name)``.
    """

    def __init__(self, namespace: str = "test", openshift: bool = False) -> None:
        self.namespace = namespace
        self.openshift = openshift
        self.objects: dict[tuple[str, str | None, str], Resource] = {}
        self.requests: list[tuple[str, str, str | None]] = []
        self.watches: list[FakeWatch] = []
        self.pod_logs: dict[str, str] = {}
        self.failures: dict[tuple[str, str], Exception] = {}
        self.replay_watches = True
        self.close_watches_after_replay = False
        self.build_phase_on_instantiate = "Complete"
        self.build_status_message: str | None = None
        self.pushed_image = "sha256:" + "f" * 64
        self.archive: bytes | None = None
        self._uids = itertools.count(1)
        self._versions = itertools.count(1)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _key(self, kind: str, name: str, namespace: str | None) -> tuple[str, str | None, str]:
        if kind in CLUSTER_SCOPED_KINDS:
            return kind, None, name
        return kind, namespace or self.namespace, name

    def _record(self, method: str, kind: str, name: str | None) -> None:
        self.requests.append((method, kind, name))
        failure = self.failures.get((method, kind))
        if failure is not None:
            raise failure

    def _check_body_namespace(self, resource: Resource, namespace: str | None) -> None:
        """Reject bodies naming another namespace than the request, as the API server does."""
        body_namespace = namespace_of(resource)
        if namespace and body_namespace and body_namespace != namespace and kind_of(resource) not in CLUSTER_SCOPED_KINDS:
            raise KubernetesControllerException(
                "the namespace of the provided object does not match the namespace sent on the request", status=400,
            )

    def add(self, resource: Resource, namespace: str | None = None) -> Resource:
        """Store ``resource`` as if it had been created earlier, without recording a request."""
        stored = copy.deepcopy(resource)
        metadata = stored.setdefault("metadata", {})
        target_namespace = namespace or namespace_of(stored) or self.namespace
        if kind_of(stored) not in CLUSTER_SCOPED_KINDS:
            metadata["namespace"] = target_namespace
        metadata.setdefault("uid", f"uid-{next(self._uids)}")
        metadata["resourceVersion"] = str(next(self._versions))
        metadata.setdefault("creationTimestamp", "2024-01-01T00:00:00Z")
        self.objects[self._key(kind_of(stored), name_of(stored), target_namespace)] = stored
        return copy.deepcopy(stored)

    def stored(self, kind: str, name: str, namespace: str | None = None) -> Resource | None:
        return self.objects.get(self._key(kind, name, namespace))

    def kinds_present(self) -> set[str]:
        return {kind for kind, _, _ in self.objects}

    def emit(self, event_type: str, resource: Resource) -> None:
        """Deliver an event to every open watch on the resource's kind."""
        for watch in list(self.watches):
            if watch.closed or watch.kind != kind_of(resource):
                continue
            if watch.name is not None and watch.name != name_of(resource):
                continue
            if not _matches_selector(resource, watch.label_selector):
                continue
            watch.callback(event_type, copy.deepcopy(resource))

    def _not_found(self, action: str, kind: str, name: str) -> KubernetesControllerException:
        return KubernetesControllerException(f"Failed to {action} {kind} {name}: Not Found", status=404)

    # ------------------------------------------------------------------
    # Controller surface
    # ------------------------------------------------------------------

    def is_openshift(self) -> bool:
        return self.openshift

    def get_resource(self, kind: str, name: str, namespace: str | None = None, api_version: str | None = None) -> Resource | None:
        self._record("GET", kind, name)
        resource = self.stored(kind, name, namespace)
        return copy.deepcopy(resource) if resource is not None else None

    def list_resources(self, kind: str, namespace: str | None = None, label_selector: str | None = None,
                       api_version: str | None = None) -> list[Resource]:
        self._record("LIST", kind, None)
        target_namespace = None if kind in CLUSTER_SCOPED_KINDS else namespace or self.namespace
        return [
            copy.deepcopy(resource)
            for (stored_kind, stored_namespace, _), resource in self.objects.items()
            if stored_kind == kind and stored_namespace == target_namespace and _matches_selector(resource, label_selector)
        ]

    def create_resource(self, resource: Resource, namespace: str | None = None) -> Resource:
        kind = kind_of(resource)
        name = name_of(resource)
        self._record("POST", kind, name)
        self._check_body_namespace(resource, namespace)
        if self.stored(kind, name, namespace or namespace_of(resource)) is not None:
            raise KubernetesControllerException(f"Failed to create {kind} {name}: AlreadyExists", status=409)
        created = self.add(resource, namespace)
        if kind == "ProjectRequest":
            self.add({"apiVersion": "project.openshift.io/v1", "kind": "Project", "metadata": {"name": name}})
        self.emit("ADDED", created)
        return created

    def replace_resource(self, resource: Resource, namespace: str | None = None) -> Resource:
        kind = kind_of(resource)
        name = name_of(resource)
        self._record("PUT", kind, name)
        self._check_body_namespace(resource, namespace)
        existing = self.stored(kind, name, namespace or namespace_of(resource))
        if existing is None:
            raise self._not_found("replace", kind, name)
        replaced = copy.deepcopy(resource)
        metadata = replaced.setdefault("metadata", {})
        metadata["uid"] = existing["metadata"]["uid"]
        metadata["creationTimestamp"] = existing["metadata"]["creationTimestamp"]
        if "status" in existing and "status" not in replaced:
            replaced["status"] = copy.deepcopy(existing["status"])
        updated = self.add(replaced, namespace)
        self.emit("MODIFIED", updated)
        return updated

    def patch_resource(self, resource: Resource, namespace: str | None = None) -> Resource:
        kind = kind_of(resource)
        name = name_of(resource)
        self._record("PATCH", kind, name)
        self._check_body_namespace(resource, namespace)
        existing = self.stored(kind, name, namespace or namespace_of(resource))
        if existing is None:
            raise self._not_found("patch", kind, name)
        updated = self.add(_merge_patch(existing, resource), namespace)
        self.emit("MODIFIED", updated)
        return updated

    def delete_resource(self, kind: str, name: str, namespace: str | None = None, api_version: str | None = None) -> bool:
        self._record("DELETE", kind, name)
        removed = self.objects.pop(self._key(kind, name, namespace), None)
        if removed is None:
            return False
        self.emit("DELETED", removed)
        return True

    def scale_resource(self, kind: str, name: str, replicas: int, namespace: str | None = None) -> Resource:
        return self.patch_resource({"kind": kind, "metadata": {"name": name}, "spec": {"replicas": replicas}}, namespace)

    def watch_resources(self, kind: str, callback: Callable, namespace: str | None = None, name: str | None = None,
                        label_selector: str | None = None, on_close: Callable | None = None,
                        api_version: str | None = None) -> FakeWatch:
        self._record("WATCH", kind, name)
        watch = FakeWatch(kind, callback, namespace, name, label_selector, on_close)
        self.watches.append(watch)
        if self.replay_watches:
            for (stored_kind, _, stored_name), resource in list(self.objects.items()):
                if stored_kind == kind and (name is None or stored_name == name) and _matches_selector(resource, label_selector):
                    callback("ADDED", copy.deepcopy(resource))
        if self.close_watches_after_replay and on_close is not None:
            on_close(None)
        return watch

    def instantiate_binary(self, name: str, archive: bytes, namespace: str | None = None) -> Resource:
        self._record("POST", "BuildConfig/instantiatebinary", name)
        failure = self.failures.get(("INSTANTIATE", "BuildConfig"))
        if failure is not None:
            raise failure
        build_config = self.stored("BuildConfig", name, namespace)
        if build_config is None:
            raise self._not_found("instantiate binary build of", "BuildConfig", name)

        self.archive = archive
        build_name = f"{name}-1"
        status: dict[str, Any] = {"phase": self.build_phase_on_instantiate}
        if self.build_status_message:
            status["message"] = self.build_status_message
        output = build_config["spec"].get("output") or {}
        build = self.add({
            "apiVersion": "build.openshift.io/v1",
            "kind": "Build",
            "metadata": {"name": build_name, "labels": {"buildconfig": name}},
            "spec": {"output": copy.deepcopy(output)},
            "status": status,
        }, namespace)
        self.add({
            "kind": "Pod",
            "metadata": {"name": f"{build_name}-build"},
            "spec": {"containers": [{"name": "docker-build"}]},
            "status": {"phase": "Running", "conditions": [{"type": "Ready", "status": "True"}]},
        }, namespace)
        if self.build_phase_on_instantiate == "Complete":
            self._push_image(output.get("to") or {}, namespace)
        return build

    def _push_image(self, target: dict[str, str], namespace: str | None) -> None:
        if target.get("kind") != "ImageStreamTag":
            return
        image_stream_name, _, tag = target["name"].partition(":")
        image_stream = self.stored("ImageStream", image_stream_name, namespace)
        if image_stream is None:
            return
        image_stream["status"] = {
            "tags": [{"tag": tag, "items": [{"created": "2024-06-01T00:00:00Z", "image": self.pushed_image}]}],
        }
        self.add({
            "kind": "ImageStreamTag",
            "metadata": {"name": target["name"], "labels": {"app": image_stream_name}},
            "image": {"dockerImageReference": f"172.30.1.1:5000/{namespace or self.namespace}/{image_stream_name}@{self.pushed_image}"},
        }, namespace)

    def read_pod_log(self, name: str, namespace: str | None = None, container: str | None = None) -> str:
        self._record("LOG", "Pod", name)
        return self.pod_logs.get(name, "")

    def stream_pod_log(self, name: str, callback: Callable, namespace: str | None = None,
                       container: str | None = None, on_close: Callable | None = None) -> FakeWatch:
        self._record("FOLLOW", "Pod", name)
        for line in self.pod_logs.get(name, "").splitlines():
            callback(line)
        watch = FakeWatch("log", callback, namespace, name, None, on_close)
        self.watches.append(watch)
        return watch


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def cluster() -> FakeCluster:
    """Return an empty vanilla Kubernetes fake cluster.

    Returns:
        A ``FakeCluster`` using namespace ``test``.
    """
    return FakeCluster()


@pytest.fixture()
def openshift_cluster() -> FakeCluster:
    """Return an empty fake cluster that reports the OpenShift API groups.

    Returns:
        A ``FakeCluster`` with ``openshift=True``.
    """
    return FakeCluster(openshift=True)


@pytest.fixture()
def no_sleep() -> Callable[[float], None]:
    """Return a sleep replacement that returns immediately.

    Returns:
        A callable accepting a delay and doing nothing.
    """
    return lambda seconds: None


def make_deployment(name: str = "app", labels: dict[str, str] | None = None, env: list | None = None) -> Resource:
    labels = labels or {"app": name}
    container: dict[str, Any] = {"name": name, "image": f"acme/{name}:1.0"}
    if env is not None:
        container["env"] = env
    return {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": {"name": name, "labels": dict(labels)},
        "spec": {
            "replicas": 1,
            "selector": {"matchLabels": dict(labels)},
            "template": {"metadata": {"labels": dict(labels)}, "spec": {"containers": [container]}},
        },
    }


def make_pod(name: str, labels: dict[str, str], created: str = "2024-01-01T00:00:00Z", phase: str = "Running",
             ready: bool = True, env: list | None = None, containers: list[str] | None = None) -> Resource:
    container_specs = [{"name": container} for container in containers or ["app"]]
    if env is not None:
        container_specs[0]["env"] = env
    return {
        "kind": "Pod",
        "metadata": {"name": name, "labels": dict(labels), "creationTimestamp": created},
        "spec": {"containers": container_specs},
        "status": {"phase": phase, "conditions": [{"type": "Ready", "status": "True" if ready else "False"}]},
    }
