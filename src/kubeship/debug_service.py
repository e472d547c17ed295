"""Enable JVM remote debugging on a workload and port-forward to its debug port."""

from __future__ import annotations

import copy
import logging
import secrets
import threading
from typing import Any

from .apply_service import ApplyService
from .kubernetes_controller import KubernetesController
from .models import (
    DEBUG_PORT_NAME,
    DEFAULT_DEBUG_PORT,
    JAVA_DEBUG_PORT_ENV,
    JAVA_DEBUG_SESSION_ENV,
    JAVA_DEBUG_SUSPEND_ENV,
    JAVA_ENABLE_DEBUG_ENV,
    Resource,
)
from .pod_status import describe_pod_status, is_pod_ready, is_pod_running, select_newest_pod
from .port_forward_service import PortForward, PortForwardService
from .resources import flatten_resources, kind_of, labels_to_selector, name_of, selector_of

_DEBUGGABLE_KINDS: frozenset[str] = frozenset({"Deployment", "ReplicaSet", "ReplicationController", "DeploymentConfig"})


# ---------------------------------------------------------------------------
# Container helpers
# ---------------------------------------------------------------------------


def get_env_var(env: list[dict[str, Any]], name: str, default: str) -> str:
    for entry in env:
        if entry.get("name") == name and entry.get("value") is not None:
            return str(entry["value"])
    return default


def set_env_var(env: list[dict[str, Any]], name: str, value: str) -> bool:
    """Set ``name`` to ``value``; return ``True`` if the list changed."""
    for entry in env:
        if entry.get("name") == name:
            if entry.get("value") == value and "valueFrom" not in entry:
                return False
            entry.pop("valueFrom", None)
            entry["value"] = value
            return True
    env.append({"name": name, "value": value})
    return True


def remove_env_var(env: list[dict[str, Any]], name: str) -> bool:
    remaining = [entry for entry in env if entry.get("name") != name]
    if len(remaining) == len(env):
        return False
    env[:] = remaining
    return True


def add_port(ports: list[dict[str, Any]], port: int, name: str) -> bool:
    """Add a TCP container port unless one with the same number or name exists."""
    for existing in ports:
        if existing.get("containerPort") == port or existing.get("name") == name:
            return False
    ports.append({"containerPort": port, "name": name, "protocol": "TCP"})
    return True


def pod_has_env_vars(pod: Resource, env_vars: dict[str, str]) -> bool:
    """Return ``True`` when the first container of ``pod`` carries every variable of ``env_vars``."""
    containers = (pod.get("spec") or {}).get("containers") or []
    if not containers:
        return False
    env = {entry.get("name"): entry.get("value") for entry in containers[0].get("env") or []}
    return all(env.get(name) == value for name, value in env_vars.items())


class DebugService:
    """Switch workloads into debug mode and forward the JVM debug port.

    Args:
        controller: Cluster access.
        apply_service: Applies entities that cannot be debugged directly.
        port_forward_service: Opens the local debug port; created from ``controller`` when omitted.
    """

    def __init__(
        self,
        controller: KubernetesController,
        apply_service: ApplyService,
        port_forward_service: PortForwardService | None = None,
    ) -> None:
        self.logger = logging.getLogger(__name__)
        self.controller = controller
        self.apply_service = apply_service
        self.port_forward_service = port_forward_service or PortForwardService(controller)
        self.remote_debug_port = DEFAULT_DEBUG_PORT
        self.debug_session: str | None = None

    def debug(
        self,
        namespace: str,
        file_name: str,
        entities: Any,
        local_debug_port: int = DEFAULT_DEBUG_PORT,
        debug_suspend: bool = False,
        pod_wait_timeout: float | None = None,
    ) -> PortForward | None:
        """Enable debugging on every workload and forward the debug port of the first one's pod.

        Args:
            namespace: Namespace of the workloads.
            file_name: Manifest the entities were loaded from, used as apply source label.
            entities: The workloads and their companion resources.
            local_debug_port: Local port to forward.
            debug_suspend: Start the JVM suspended until a debugger attaches.
            pod_wait_timeout: Seconds to wait for the debug pod; ``None`` waits forever.

        Returns:
            The running port-forward, or ``None`` if no entity selects pods.

        Raises:
            RuntimeError: If no matching pod becomes ready in time.
        """
        first_selector: dict[str, str] | None = None
        for entity in flatten_resources(entities):
            selector = self._enable_debugging(entity, namespace, debug_suspend)
            if selector is None:
                self.apply_service.apply(entity, file_name)
            elif first_selector is None:
                first_selector = selector

        if not first_selector:
            return None

        env_vars = self.debug_env_vars(debug_suspend)
        pod_name = self._wait_for_running_pod_with_env_vars(namespace, first_selector, env_vars, pod_wait_timeout)
        forward = self.port_forward_service.forward_port(pod_name, self.remote_debug_port, local_debug_port, namespace=namespace)
        self.logger.info("")
        self.logger.info(f"Now you can start a Remote debug execution in your IDE by using localhost and the debug port {forward.local_port}")
        self.logger.info("")
        return forward

    def debug_env_vars(self, debug_suspend: bool) -> dict[str, str]:
        env_vars = {JAVA_ENABLE_DEBUG_ENV: "true", JAVA_DEBUG_SUSPEND_ENV: str(debug_suspend).lower()}
        if self.debug_session is not None:
            env_vars[JAVA_DEBUG_SESSION_ENV] = self.debug_session
        return env_vars

    # ------------------------------------------------------------------
    # Workload mutation
    # ------------------------------------------------------------------

    def _enable_debugging(self, entity: Resource, namespace: str, debug_suspend: bool) -> dict[str, str] | None:
        """Return the pod selector of a debuggable workload, or ``None`` for other entities."""
        kind = kind_of(entity)
        name = name_of(entity)
        if kind not in _DEBUGGABLE_KINDS or not entity.get("spec"):
            return None
        if kind == "DeploymentConfig" and not self.controller.is_openshift():
            self.logger.warning(f"Ignoring DeploymentConfig {name} as not connected to an OpenShift cluster")
            return None

        resource = copy.deepcopy(entity)
        if self._enable_debugging_on_template(resource, debug_suspend):
            existing = self.controller.get_resource(kind, name, namespace=namespace)
            if existing is None:
                self.apply_service.apply(resource, f"debug of {kind} {name}")
            else:
                metadata = resource.setdefault("metadata", {})
                metadata["namespace"] = namespace
                metadata["resourceVersion"] = (existing.get("metadata") or {}).get("resourceVersion")
                self.controller.replace_resource(resource, namespace=namespace)
        return selector_of(resource)

    def _enable_debugging_on_template(self, resource: Resource, debug_suspend: bool) -> bool:
        pod_spec = ((resource.get("spec") or {}).get("template") or {}).get("spec") or {}
        enabled = False
        for container in pod_spec.get("containers") or []:
            enabled |= self._set_debug_env_vars(container, debug_suspend)
            enabled |= add_port(container.setdefault("ports", []), self.remote_debug_port, DEBUG_PORT_NAME)
            enabled |= self._handle_debug_suspend(container, debug_suspend, resource)
        if enabled:
            self.logger.info(f"Enabling debug on {kind_of(resource)} {name_of(resource)}")
        return enabled

    def _set_debug_env_vars(self, container: dict[str, Any], debug_suspend: bool) -> bool:
        env = container.setdefault("env", [])
        port = get_env_var(env, JAVA_DEBUG_PORT_ENV, str(DEFAULT_DEBUG_PORT))
        try:
            self.remote_debug_port = int(port)
        except ValueError:
            raise ValueError(f"Invalid port value: {JAVA_DEBUG_PORT_ENV}={port}") from None
        enabled = set_env_var(env, JAVA_ENABLE_DEBUG_ENV, "true")
        enabled |= set_env_var(env, JAVA_DEBUG_SUSPEND_ENV, str(debug_suspend).lower())
        return enabled

    def _handle_debug_suspend(self, container: dict[str, Any], debug_suspend: bool, resource: Resource) -> bool:
        env = container.setdefault("env", [])
        if not debug_suspend:
            return remove_env_var(env, JAVA_DEBUG_SESSION_ENV)

        # A new session value forces a pod restart.
        if self.debug_session is None:
            self.debug_session = str(secrets.randbits(63))
        set_env_var(env, JAVA_DEBUG_SESSION_ENV, self.debug_session)
        if container.pop("readinessProbe", None) is not None:
            self.logger.info(
                f"Readiness probe will be disabled on {kind_of(resource)} {name_of(resource)} "
                "to allow attaching a remote debugger during suspension"
            )
        return True

    # ------------------------------------------------------------------
    # Pod lookup
    # ------------------------------------------------------------------

    def _wait_for_running_pod_with_env_vars(
        self,
        namespace: str,
        selector: dict[str, str],
        env_vars: dict[str, str],
        timeout: float | None,
    ) -> str:
        label_selector = labels_to_selector(selector)
        self.logger.info(f"Waiting for debug pod with selector {label_selector} and environment variables {env_vars}")
        newest = select_newest_pod(self.controller.list_resources("Pod", namespace=namespace, label_selector=label_selector))
        if newest is not None and pod_has_env_vars(newest, env_vars):
            return name_of(newest)

        found: list[Resource] = []
        ready = threading.Event()

        def _on_event(event_type: str, pod: Resource) -> None:
            self.logger.info(f"{name_of(pod)} status: {describe_pod_status(pod)} ({event_type})")
            if event_type in ("ADDED", "MODIFIED") and is_pod_running(pod) and is_pod_ready(pod) and pod_has_env_vars(pod, env_vars):
                found.append(pod)
                ready.set()

        with self.controller.watch_resources("Pod", _on_event, namespace=namespace, label_selector=label_selector):
            ready.wait(timeout)
        if not found:
            raise RuntimeError(f"Could not find a running pod with environment variables {env_vars}")
        return name_of(found[0])
