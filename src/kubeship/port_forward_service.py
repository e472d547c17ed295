"""Forward a local TCP port to a pod port through the Kubernetes API."""

from __future__ import annotations

import logging
import select
import socket
import threading
from typing import Any

from .kubernetes_controller import KubernetesController, WatchHandle
from .models import Resource
from .pod_status import is_newer, is_pod_ready, is_pod_running, is_pod_waiting, select_newest_pod
from .resources import labels_to_selector, name_of

_BUFFER_SIZE: int = 16384
_ACCEPT_TIMEOUT_SECONDS: float = 0.5  # Interval at which the accept loop checks for shutdown.


class PortForward:
    """A local listener relaying every accepted connection to a port of one pod.

    Args:
        controller: Cluster access.
        pod_name: Target pod.
        container_port: Port inside the pod.
        local_port: Local port to listen on; ``0`` picks a free port.
        namespace: Namespace of the pod.
        host: Local interface to bind.
    """

    def __init__(
        self,
        controller: KubernetesController,
        pod_name: str,
        container_port: int,
        local_port: int,
        namespace: str | None = None,
        host: str = "127.0.0.1",
    ) -> None:
        self.logger = logging.getLogger(__name__)
        self.controller = controller
        self.pod_name = pod_name
        self.container_port = container_port
        self.local_port = local_port
        self.namespace = namespace
        self.host = host
        self._server: socket.socket | None = None
        self._stopped = threading.Event()
        self._thread: threading.Thread | None = None

    def start(self) -> PortForward:
        server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        server.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        server.bind((self.host, self.local_port))
        server.listen()
        server.settimeout(_ACCEPT_TIMEOUT_SECONDS)
        self._server = server
        self.local_port = server.getsockname()[1]
        self._thread = threading.Thread(target=self._serve, name=f"port-forward-{self.pod_name}", daemon=True)
        self._thread.start()
        return self

    @property
    def closed(self) -> bool:
        return self._stopped.is_set()

    def close(self) -> None:
        self._stopped.set()
        if self._server is not None:
            self._server.close()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout=5)

    def wait(self) -> None:
        """Block until the forward is closed."""
        self._stopped.wait()

    def __enter__(self) -> PortForward:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def _serve(self) -> None:
        while not self._stopped.is_set():
            try:
                connection, _ = self._server.accept()
            except socket.timeout:
                continue
            except OSError:
                break
            threading.Thread(target=self._relay, args=(connection,), daemon=True).start()

    def _relay(self, connection: socket.socket) -> None:
        try:
            forward = self.controller.port_forward(self.pod_name, self.container_port, namespace=self.namespace)
            remote = forward.socket(self.container_port)
            remote.setblocking(True)
        except Exception as e:
            self.logger.error(f"Unable to port-forward to pod {self.pod_name}: {e}")
            connection.close()
            return

        with connection, remote:
            sockets = [connection, remote]
            try:
                while not self._stopped.is_set():
                    readable, _, errored = select.select(sockets, [], sockets, _ACCEPT_TIMEOUT_SECONDS)
                    if errored:
                        break
                    if any(not _pipe(source, connection if source is remote else remote) for source in readable):
                        break
            except OSError as e:
                self.logger.debug(f"Port-forward connection to pod {self.pod_name} closed: {e}")
        error = forward.error(self.container_port)
        if error:
            self.logger.warning(f"Port-forward to pod {self.pod_name} reported: {error}")


def _pipe(source: socket.socket, target: socket.socket) -> bool:
    data = source.recv(_BUFFER_SIZE)
    if not data:
        return False
    target.sendall(data)
    return True


class PodPortForwarder:
    """Keep a local port forwarded to the newest ready pod matching a selector."""

    def __init__(
        self,
        controller: KubernetesController,
        label_selector: str,
        container_port: int,
        local_port: int,
        namespace: str | None = None,
    ) -> None:
        self.logger = logging.getLogger(__name__)
        self.controller = controller
        self.label_selector = label_selector
        self.container_port = container_port
        self.local_port = local_port
        self.namespace = namespace
        self.current_pod: Resource | None = None
        self._forward: PortForward | None = None
        self._watch: WatchHandle | None = None
        self._lock = threading.Lock()

    def start(self) -> PodPortForwarder:
        pods = self.controller.list_resources("Pod", namespace=self.namespace, label_selector=self.label_selector)
        self._switch_to(select_newest_pod(pods))
        self._watch = self.controller.watch_resources(
            "Pod", self._on_pod_event, namespace=self.namespace, label_selector=self.label_selector,
        )
        return self

    def close(self) -> None:
        if self._watch is not None:
            self._watch.close()
        with self._lock:
            if self._forward is not None:
                self._forward.close()
                self._forward = None

    def __enter__(self) -> PodPortForwarder:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def _on_pod_event(self, event_type: str, pod: Resource) -> None:
        if event_type == "DELETED":
            if self.current_pod is not None and name_of(pod) == name_of(self.current_pod):
                self._switch_to(None)
            return
        if not (is_pod_running(pod) or is_pod_waiting(pod)) or not is_pod_ready(pod):
            return
        if self.current_pod is None or is_newer(pod, self.current_pod):
            self._switch_to(pod)

    def _switch_to(self, pod: Resource | None) -> None:
        with self._lock:
            if _same_pod(self.current_pod, pod):
                return
            if self._forward is not None:
                self.logger.info(f"Closing port-forward from pod {self._forward.pod_name}")
                self._forward.close()
                self._forward = None
            if pod is not None:
                self.logger.info(f"Starting port-forward to pod {name_of(pod)}")
                self._forward = PortForward(
                    self.controller, name_of(pod), self.container_port, self.local_port, namespace=self.namespace,
                ).start()
            else:
                self.logger.info("Waiting for a pod to become ready before starting port-forward")
            self.current_pod = pod


def _same_pod(pod: Resource | None, other: Resource | None) -> bool:
    if pod is None or other is None:
        return pod is other
    return name_of(pod) == name_of(other)


class PortForwardService:
    """Port forwarding to a named pod or to the newest pod behind a selector."""

    def __init__(self, controller: KubernetesController) -> None:
        self.logger = logging.getLogger(__name__)
        self.controller = controller

    def forward_port(self, pod_name: str, container_port: int, local_port: int, namespace: str | None = None) -> PortForward:
        """Start forwarding in the background; close the returned handle to stop."""
        _validate_port(container_port, "container_port")
        _validate_port(local_port, "local_port", allow_zero=True)
        return PortForward(self.controller, pod_name, container_port, local_port, namespace=namespace).start()

    def forward_port_async(
        self, selector: dict[str, str], container_port: int, local_port: int, namespace: str | None = None,
    ) -> PodPortForwarder:
        """Forward to the newest ready pod matching ``selector``, following pod replacements."""
        _validate_port(container_port, "container_port")
        _validate_port(local_port, "local_port", allow_zero=True)
        return PodPortForwarder(
            self.controller, labels_to_selector(selector), container_port, local_port, namespace=namespace,
        ).start()

    def start_port_forward(self, pod_name: str, container_port: int, local_port: int, namespace: str | None = None) -> None:
        """Forward until interrupted with Ctrl-C."""
        self.logger.info(f"Starting port forwarding to port {local_port} on pod {pod_name}")
        forward = self.forward_port(pod_name, container_port, local_port, namespace=namespace)
        self.logger.info("Port Forwarding started")
        self.logger.info(f"Now you can start a Remote debug session by using localhost and the debug port {forward.local_port}")
        self.logger.info(f"-agentlib:jdwp=transport=dt_socket,server=y,suspend=n,address={forward.local_port}")
        try:
            forward.wait()
        except KeyboardInterrupt:
            self.logger.info("Port forwarding interrupted")
        finally:
            forward.close()


def _validate_port(port: int, name: str, allow_zero: bool = False) -> None:
    if not isinstance(port, int) or not (0 if allow_zero else 1) <= port <= 65535:
        raise ValueError(f"Invalid port value: {name}={port}")
