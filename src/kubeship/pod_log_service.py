"""Tail the logs of an application's pods, following pod replacements."""

from __future__ import annotations

import logging
import threading
from typing import Any

from .cluster_util import delete_entities, delete_openshift_entities, resize_app
from .kubernetes_controller import KubernetesController, WatchHandle
from .models import Resource
from .pod_status import container_names, describe_pod_status, is_pod_running, select_newest_pod
from .resources import flatten_resources, kind_of, labels_to_selector, name_of, selector_of

OPERATION_UNDEPLOY: str = "undeploy"
OPERATION_STOP: str = "stop"

_POD_CONTROLLER_KINDS: frozenset[str] = frozenset({
    "Deployment",
    "DeploymentConfig",
    "ReplicaSet",
    "ReplicationController",
    "StatefulSet",
    "DaemonSet",
    "Job",
})


def extract_pod_label_selector(entities: Any) -> dict[str, str] | None:
    """Return the pod selector of the first pod controller among ``entities``."""
    for entity in flatten_resources(entities):
        if kind_of(entity) in _POD_CONTROLLER_KINDS:
            selector = selector_of(entity)
            if selector:
                return selector
    return None


def ctrl_c_message(on_exit_operation: str | None) -> str:
    operation = (on_exit_operation or "").strip().lower()
    if operation == OPERATION_UNDEPLOY:
        return "undeploy the app"
    if operation == OPERATION_STOP:
        return "scale down the app and stop tailing the log"
    return "stop tailing the log"


def _container_message(container: str | None) -> str:
    return f" container: {container}" if container else ""


class PodLogEventHandler:
    """Track active pods from watch events and tail the log of the newest running one.

    Args:
        controller: Cluster access.
        namespace: Namespace of the pods.
        follow_log: Follow the log; otherwise print it once and signal ``logs_retrieved``.
        on_exit_operation: ``undeploy`` or ``stop``, only used for the Ctrl-C hint.
        log_container_name: Container to tail in multi-container pods.
    """

    def __init__(
        self,
        controller: KubernetesController,
        namespace: str | None,
        follow_log: bool = True,
        on_exit_operation: str | None = None,
        log_container_name: str | None = None,
    ) -> None:
        self.logger = logging.getLogger(__name__)
        self.controller = controller
        self.namespace = namespace
        self.follow_log = follow_log
        self.on_exit_operation = on_exit_operation
        self.log_container_name = log_container_name
        self.active_pods: dict[str, Resource] = {}
        self.logs_retrieved = threading.Event()
        self._logged_pod_name: str | None = None
        self._log_watch: WatchHandle | None = None
        self._lock = threading.RLock()

    @property
    def currently_logged_pod_name(self) -> str | None:
        return self._logged_pod_name

    def on_event(self, event_type: str, pod: Resource) -> None:
        if event_type == "ADDED":
            self.on_add(pod)
        elif event_type == "MODIFIED":
            self.on_update(pod)
        elif event_type == "DELETED":
            self.on_delete(pod)

    def on_add(self, pod: Resource) -> None:
        with self._lock:
            self.active_pods[name_of(pod)] = pod
            self._log_status(pod, newest=True)
            self._pod_log()

    def on_update(self, pod: Resource) -> None:
        with self._lock:
            name = name_of(pod)
            self.active_pods[name] = pod
            if self.currently_logged_pod_name != name:
                newest = self._most_recent_pod()
                self._log_status(pod, newest=newest is not None and name_of(newest) == name)
            self._pod_log()

    def on_delete(self, pod: Resource) -> None:
        with self._lock:
            name = name_of(pod)
            self.active_pods.pop(name, None)
            if self.currently_logged_pod_name == name:
                self.logger.info(f"Closing log watcher for {name} (Deleted)")
                self._close_current()
            self._log_status(pod, newest=False, postfix=": Pod Deleted")
            self._pod_log()

    def close(self) -> None:
        with self._lock:
            self._close_current()

    # ------------------------------------------------------------------

    def _most_recent_pod(self) -> Resource | None:
        return select_newest_pod(self.active_pods.values())

    def _log_status(self, pod: Resource, newest: bool, postfix: str = "") -> None:
        message = f"{name_of(pod)} status: {describe_pod_status(pod)}{postfix}"
        if newest:
            self.logger.info(message)
        else:
            self.logger.debug(message)

    def _close_current(self) -> None:
        if self._log_watch is not None:
            self._log_watch.close()
            self._log_watch = None
        self._logged_pod_name = None

    def _log_container(self, pod: Resource) -> tuple[str | None, str | None]:
        """Return the container to request (``None`` for single-container pods) and its display name."""
        names = container_names(pod)
        if len(names) < 2:
            return None, names[0] if names else None
        if self.log_container_name:
            if self.log_container_name in names:
                return self.log_container_name, self.log_container_name
            self.logger.error(f"Log container name {self.log_container_name} does not exist in pod {name_of(pod)}")
        return names[0], names[0]

    def _pod_log(self) -> None:
        pod = self._most_recent_pod()
        if pod is None or not is_pod_running(pod) or self.currently_logged_pod_name == name_of(pod):
            return
        pod_name = name_of(pod)
        if self._log_watch is not None:
            self.logger.info(f"Closing log watcher for {self.currently_logged_pod_name} as now watching {pod_name}")
        self._close_current()

        container, display_name = self._log_container(pod)
        if self.follow_log:
            self._watch_log(pod_name, container, display_name)
        else:
            self._print_log(pod_name, container, display_name)

    def _watch_log(self, pod_name: str, container: str | None, display_name: str | None) -> None:
        self.logger.info(f"Tailing log of pod: {pod_name}{_container_message(display_name)}")
        self.logger.info(f"Press Ctrl-C to {ctrl_c_message(self.on_exit_operation)}")
        self.logger.info("")

        def _on_close(error: Exception | None) -> None:
            if error is not None:
                self.logger.error(f"Failed to read log of Pod {pod_name}: {error}")

        handle = self.controller.stream_pod_log(
            pod_name, self.logger.info, namespace=self.namespace, container=container, on_close=_on_close,
        )
        self._logged_pod_name = pod_name
        self._log_watch = handle

    def _print_log(self, pod_name: str, container: str | None, display_name: str | None) -> None:
        self._logged_pod_name = pod_name
        log_text = self.controller.read_pod_log(pod_name, namespace=self.namespace, container=container)
        if log_text is not None:
            self.logger.info(f"Log of pod: {pod_name}{_container_message(display_name)}")
            self.logger.info("")
            for line in log_text.split("\n"):
                self.logger.info(line)
        self.logs_retrieved.set()


class PodLogService:
    """Tail application pod logs and run the on-exit operation when tailing stops.

    Args:
        controller: Cluster access.
        log_container_name: Container to tail in multi-container pods.
        pod_name: Tail this pod instead of the pods selected by the entities.
        s2i_build_name_suffix: Suffix of S2I BuildConfigs removed on undeploy.
    """

    def __init__(
        self,
        controller: KubernetesController,
        log_container_name: str | None = None,
        pod_name: str | None = None,
        s2i_build_name_suffix: str | None = None,
    ) -> None:
        self.logger = logging.getLogger(__name__)
        self.controller = controller
        self.log_container_name = log_container_name
        self.pod_name = pod_name
        self.s2i_build_name_suffix = s2i_build_name_suffix
        self._handler: PodLogEventHandler | None = None
        self._pod_watch: WatchHandle | None = None
        self._on_exit: tuple[str, str | None, list[Resource]] | None = None

    def tail_app_pods_logs(
        self,
        namespace: str | None,
        entities: Any,
        on_exit_operation: str | None = None,
        follow_log: bool = True,
        wait_in_current_thread: bool = True,
    ) -> PodLogEventHandler | None:
        """Tail the newest running pod of the application described by ``entities``.

        When waiting in the current thread, Ctrl-C or the end of the pod watch
        stops tailing and runs the on-exit operation; otherwise the caller
        must call ``close``.

        Returns:
            The event handler, or ``None`` when there is nothing to watch.
        """
        resources = flatten_resources(entities)
        selector = extract_pod_label_selector(resources)
        if not selector and not self.pod_name:
            self.logger.warning("No selector detected and no Pod name specified, cannot watch Pods!")
            return None

        if on_exit_operation:
            operation = on_exit_operation.strip().lower()
            if operation not in (OPERATION_UNDEPLOY, OPERATION_STOP):
                self.logger.warning(f"Unknown on-exit command: `{operation}`")
            resize_app(self.controller, namespace or self.controller.namespace, resources, 1)
            self._on_exit = (operation, namespace, resources)

        handler = PodLogEventHandler(
            self.controller,
            namespace,
            follow_log=follow_log,
            on_exit_operation=on_exit_operation,
            log_container_name=self.log_container_name,
        )
        self._handler = handler
        label_selector = labels_to_selector(selector) if selector else None
        if self.pod_name:
            self.logger.info(f"Watching pod with selector {label_selector}, and name {self.pod_name} waiting for a running pod...")
        else:
            self.logger.info(f"Watching pods with selector {label_selector} waiting for a running pod...")
        initial_pods = self._initial_pods(namespace, label_selector)
        handler.active_pods.update({name_of(pod): pod for pod in initial_pods})
        if select_newest_pod(initial_pods) is None:
            self.logger.warning("No pod is running yet. Are you sure you deployed your app using the kubeship apply command?")
            self.logger.warning("Or did you undeploy it? If so try running the apply command again.")
        self._pod_watch = self.controller.watch_resources(
            "Pod", handler.on_event, namespace=namespace, name=self.pod_name, label_selector=None if self.pod_name else label_selector,
        )

        if not wait_in_current_thread:
            return handler
        try:
            if follow_log:
                self._pod_watch.join()
            else:
                handler.logs_retrieved.wait()
        except KeyboardInterrupt:
            self.logger.info("Interrupted")
        finally:
            self.close()
        return handler

    def _initial_pods(self, namespace: str | None, label_selector: str | None) -> list[Resource]:
        if self.pod_name:
            pod = self.controller.get_resource("Pod", self.pod_name, namespace=namespace)
            return [pod] if pod is not None else []
        return self.controller.list_resources("Pod", namespace=namespace, label_selector=label_selector)

    def close(self) -> None:
        """Stop watching, then undeploy or scale down the app if requested."""
        if self._pod_watch is not None:
            self._pod_watch.close()
            self._pod_watch = None
        if self._handler is not None:
            self._handler.close()
        if self._on_exit is None:
            return

        operation, namespace, resources = self._on_exit
        self._on_exit = None
        target_namespace = namespace or self.controller.namespace
        if operation == OPERATION_UNDEPLOY:
            self.logger.info("Undeploying the app:")
            delete_entities(self.controller, target_namespace, resources)
            delete_openshift_entities(self.controller, target_namespace, resources, self.s2i_build_name_suffix)
        elif operation == OPERATION_STOP:
            self.logger.info("Stopping the app:")
            resize_app(self.controller, target_namespace, resources, 0)
