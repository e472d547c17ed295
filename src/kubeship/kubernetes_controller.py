"""Kubernetes API controller for Kubeship.

Provides a unified, dict-based interface to the Kubernetes and OpenShift APIs:
generic CRUD through the dynamic client, API group discovery, background
watches, binary build instantiation, pod logs and port forwarding.  Supports
both in-cluster and local kubeconfig authentication.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from typing import Any

import kubernetes
import kubernetes.client
import kubernetes.config
import kubernetes.stream
import kubernetes.watch
import urllib3
from kubernetes.client.rest import ApiException
from kubernetes.dynamic import DynamicClient
from kubernetes.dynamic.exceptions import DynamicApiError, ResourceNotFoundError

from .models import DEFAULT_NAMESPACE, OPENSHIFT_BUILD_API_GROUP, Resource
from .resources import api_version_of, kind_of, name_of, namespace_of

_SERVICE_ACCOUNT_NAMESPACE_FILE = "/var/run/secrets/kubernetes.io/serviceaccount/namespace"

WatchCallback = Callable[[str, Resource], None]
CloseCallback = Callable[[Exception | None], None]


class KubernetesControllerException(Exception):
    """Base exception for KubernetesController errors.

    Args:
        message: Human readable description including kind, name and namespace.
        status: HTTP status reported by the API server, if any.
        stream_closed: ``True`` when the connection dropped while streaming a request body.
    """

    def __init__(self, message: str, status: int | None = None, stream_closed: bool = False) -> None:
        super().__init__(message)
        self.status = status
        self.stream_closed = stream_closed


def get_current_namespace() -> str:
    """Read active namespace from kubeconfig or in-cluster service account."""
    # 1. Try kubeconfig (local dev)
    try:
        _, active_context = kubernetes.config.list_kube_config_contexts()
        if ns := active_context.get("context", {}).get("namespace"):
            return ns
    except Exception:  # noqa: S110
        pass

    # 2. Try in-cluster service account (running in Pod)
    try:
        with open(_SERVICE_ACCOUNT_NAMESPACE_FILE) as f:
            return f.read().strip()
    except FileNotFoundError:
        pass

    # 3. Fallback
    return DEFAULT_NAMESPACE


class WatchHandle:
    """A running background watch or log stream; closing it stops the stream.

    Usable as a context manager so callers always release the stream.
    """

    def __init__(self, description: str) -> None:
        self.description = description
        self._watcher = kubernetes.watch.Watch()
        self._thread: threading.Thread | None = None
        self._closed = threading.Event()

    def start(self, target: Callable[[kubernetes.watch.Watch], None]) -> WatchHandle:
        self._thread = threading.Thread(target=target, args=(self._watcher,), name=self.description, daemon=True)
        self._thread.start()
        return self

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def close(self) -> None:
        self._closed.set()
        self._watcher.stop()

    def join(self, timeout: float | None = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)

    def __enter__(self) -> WatchHandle:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()


class KubernetesController:
    """Thin wrapper around the Kubernetes Python client.

    Handles configuration loading (in-cluster or kubeconfig), connection
    pooling, and provides dict-in/dict-out methods for every resource kind
    through the dynamic client.

    Args:
        context: Kubeconfig context name to use directly for cluster connection.
        namespace: Default namespace; resolved from the active context when omitted.
        insecure: When ``True``, disable SSL certificate verification.
    """

    def __init__(
        self,
        context: str | None = None,
        namespace: str | None = None,
        insecure: bool = False,
    ) -> None:
        self.logger = logging.getLogger(__name__)

        # Reduce noise from kubernetes client REST logging (only set once)
        k8s_rest_logger = logging.getLogger("kubernetes.client.rest")
        if not k8s_rest_logger.level or k8s_rest_logger.level == logging.NOTSET:
            k8s_rest_logger.setLevel(logging.INFO)

        self._context = context
        self._insecure = insecure

        # Client and API instances
        self._api_client: kubernetes.client.ApiClient | None = None
        self._core_v1: kubernetes.client.CoreV1Api | None = None
        self._dynamic: DynamicClient | None = None
        self._api_groups: set[str] | None = None

        # Lock for thread-safe initialization of the client
        self._client_lock = threading.Lock()

        # Initialize the client immediately
        self._initialize_client()
        self.namespace = namespace or get_current_namespace()

    # ------------------------------------------------------------------
    # Client initialisation
    # ------------------------------------------------------------------

    def _initialize_client(self) -> None:
        """Initialise the Kubernetes client with robust error handling.

        Resolution logic:
            - If ``context`` is provided → load kubeconfig with that context directly.
            - Otherwise → try in-cluster config first, then fall back to default
              kubeconfig context.
        """
        with self._client_lock:
            if self._api_client:
                return

            try:
                if self._context:
                    kubernetes.config.load_kube_config(context=self._context)
                    self.logger.info(f"Successfully loaded kubeconfig for context: {self._context}")
                else:
                    try:
                        kubernetes.config.load_incluster_config()
                        self.logger.info("Successfully loaded in-cluster configuration.")
                    except kubernetes.config.ConfigException:
                        self.logger.info("In-cluster config not found. Falling back to default kubeconfig context.")
                        kubernetes.config.load_kube_config()
                        self.logger.info("Successfully loaded default kubeconfig context.")

                configuration = kubernetes.client.Configuration.get_default_copy()
                if self._insecure:
                    configuration.verify_ssl = False
                    configuration.assert_hostname = False

                self._api_client = kubernetes.client.ApiClient(configuration)
                self._core_v1 = kubernetes.client.CoreV1Api(self._api_client)

            except Exception as e:
                identifier = self._context or "in-cluster/default"
                error_msg = f"Failed to initialize Kubernetes client for {identifier}: {e}"
                self.logger.error(error_msg)
                raise KubernetesControllerException(error_msg) from e

    def _dynamic_client(self) -> DynamicClient:
        """Return the dynamic client, creating it (and running discovery) on first use."""
        with self._client_lock:
            if self._dynamic is None:
                try:
                    self._dynamic = DynamicClient(self._api_client)
                except Exception as e:
                    raise KubernetesControllerException(f"Failed to discover cluster APIs: {e}") from e
            return self._dynamic

    # ------------------------------------------------------------------
    # Generic helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _error(action: str, kind: str, name: str | None, namespace: str | None, e: Exception) -> KubernetesControllerException:
        """Build a ``KubernetesControllerException`` that names the affected resource."""
        target = f"{kind} {name}" if name else kind
        where = f" in namespace {namespace}" if namespace else ""
        status = getattr(e, "status", None)
        if isinstance(e, DynamicApiError):
            detail = e.summary()
        else:
            detail = str(e)
        stream_closed = isinstance(e, (OSError, urllib3.exceptions.HTTPError))
        return KubernetesControllerException(
            f"Failed to {action} {target}{where}: {detail}", status=status, stream_closed=stream_closed,
        )

    def _api_for(self, kind: str, api_version: str | None = None) -> Any:
        """Resolve the dynamic resource API for a kind.

        Raises:
            KubernetesControllerException: If the cluster does not serve the kind.
        """
        version = api_version or api_version_of({"kind": kind})
        try:
            return self._dynamic_client().resources.get(api_version=version, kind=kind)
        except ResourceNotFoundError as e:
            raise KubernetesControllerException(f"The cluster does not support {kind} ({version})", status=404) from e

    def _namespace_kwargs(self, api: Any, namespace: str | None) -> dict[str, str]:
        if not getattr(api, "namespaced", True):
            return {}
        return {"namespace": namespace or self.namespace}

    # ------------------------------------------------------------------
    # Discovery
    # ------------------------------------------------------------------

    def api_groups(self) -> set[str]:
        """Return the names of all API groups served by the cluster (cached)."""
        if self._api_groups is None:
            try:
                groups = kubernetes.client.ApisApi(self._api_client).get_api_versions().groups or []
            except ApiException as e:
                raise self._error("discover", "API groups", None, None, e) from e
            self._api_groups = {group.name for group in groups}
        return self._api_groups

    def is_openshift(self) -> bool:
        """Return ``True`` when the cluster serves the OpenShift build API group."""
        return OPENSHIFT_BUILD_API_GROUP in self.api_groups()

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------

    def get_resource(
        self, kind: str, name: str, namespace: str | None = None, api_version: str | None = None,
    ) -> Resource | None:
        """Fetch one resource, returning ``None`` when it does not exist."""
        api = self._api_for(kind, api_version)
        try:
            return api.get(name=name, **self._namespace_kwargs(api, namespace)).to_dict()
        except DynamicApiError as e:
            if e.status == 404:
                return None
            raise self._error("get", kind, name, namespace, e) from e

    def list_resources(
        self,
        kind: str,
        namespace: str | None = None,
        label_selector: str | None = None,
        api_version: str | None = None,
    ) -> list[Resource]:
        """List resources of a kind, optionally filtered by a label selector."""
        api = self._api_for(kind, api_version)
        try:
            result = api.get(label_selector=label_selector, **self._namespace_kwargs(api, namespace))
        except DynamicApiError as e:
            raise self._error("list", kind, None, namespace, e) from e
        return result.to_dict().get("items") or []

    def create_resource(self, resource: Resource, namespace: str | None = None) -> Resource:
        kind = kind_of(resource)
        api = self._api_for(kind, api_version_of(resource))
        target_namespace = namespace or namespace_of(resource)
        try:
            return api.create(body=resource, **self._namespace_kwargs(api, target_namespace)).to_dict()
        except DynamicApiError as e:
            raise self._error("create", kind, name_of(resource), target_namespace, e) from e

    def replace_resource(self, resource: Resource, namespace: str | None = None) -> Resource:
        kind = kind_of(resource)
        api = self._api_for(kind, api_version_of(resource))
        target_namespace = namespace or namespace_of(resource)
        try:
            return api.replace(
                body=resource, name=name_of(resource), **self._namespace_kwargs(api, target_namespace),
            ).to_dict()
        except DynamicApiError as e:
            raise self._error("replace", kind, name_of(resource), target_namespace, e) from e

    def patch_resource(self, resource: Resource, namespace: str | None = None) -> Resource:
        """Apply ``resource`` as a JSON merge patch onto the live object."""
        kind = kind_of(resource)
        api = self._api_for(kind, api_version_of(resource))
        target_namespace = namespace or namespace_of(resource)
        try:
            return api.patch(
                body=resource,
                name=name_of(resource),
                content_type="application/merge-patch+json",
                **self._namespace_kwargs(api, target_namespace),
            ).to_dict()
        except DynamicApiError as e:
            raise self._error("patch", kind, name_of(resource), target_namespace, e) from e

    def delete_resource(
        self, kind: str, name: str, namespace: str | None = None, api_version: str | None = None,
    ) -> bool:
        """Delete a resource with background propagation.

        Returns:
            ``True`` if the resource was deleted, ``False`` if it did not exist.
        """
        api = self._api_for(kind, api_version)
        try:
            api.delete(
                name=name,
                body={"kind": "DeleteOptions", "apiVersion": "v1", "propagationPolicy": "Background"},
                **self._namespace_kwargs(api, namespace),
            )
        except DynamicApiError as e:
            if e.status == 404:
                return False
            raise self._error("delete", kind, name, namespace, e) from e
        return True

    def scale_resource(self, kind: str, name: str, replicas: int, namespace: str | None = None) -> Resource:
        """Set ``spec.replicas`` of a controller."""
        body = {
            "apiVersion": api_version_of({"kind": kind}),
            "kind": kind,
            "metadata": {"name": name},
            "spec": {"replicas": replicas},
        }
        return self.patch_resource(body, namespace=namespace)

    # ------------------------------------------------------------------
    # Watches
    # ------------------------------------------------------------------

    def watch_resources(
        self,
        kind: str,
        callback: WatchCallback,
        namespace: str | None = None,
        name: str | None = None,
        label_selector: str | None = None,
        on_close: CloseCallback | None = None,
        api_version: str | None = None,
    ) -> WatchHandle:
        """Watch resources in a background thread.

        Args:
            kind: Resource kind to watch.
            callback: Called with ``(event_type, resource)`` for every event.
            namespace: Namespace to watch; defaults to the controller namespace.
            name: Restrict the watch to one resource.
            label_selector: Restrict the watch to matching resources.
            on_close: Called once with the terminating error (or ``None``) when the watch ends.
            api_version: Override the default apiVersion of ``kind``.

        Returns:
            A started ``WatchHandle``.
        """
        api = self._api_for(kind, api_version)
        namespace_kwargs = self._namespace_kwargs(api, namespace)
        handle = WatchHandle(f"watch-{kind}-{name or label_selector or 'all'}")

        def _run(watcher: kubernetes.watch.Watch) -> None:
            error: Exception | None = None
            try:
                for event in self._dynamic_client().watch(
                    api, name=name, label_selector=label_selector, watcher=watcher, **namespace_kwargs,
                ):
                    callback(event["type"], event["raw_object"])
            except Exception as e:
                if not handle.closed:
                    error = e
                    self.logger.warning(f"Watch on {kind} {name or ''} closed with error: {e}")
            finally:
                if on_close is not None:
                    on_close(error)

        return handle.start(_run)

    # ------------------------------------------------------------------
    # OpenShift builds
    # ------------------------------------------------------------------

    def instantiate_binary(self, name: str, archive: bytes, namespace: str | None = None) -> Resource:
        """Start a binary build of BuildConfig ``name`` with ``archive`` as its build context.

        Raises:
            KubernetesControllerException: On API errors; ``stream_closed`` is set when the
                upload connection dropped.
        """
        target_namespace = namespace or self.namespace
        path = f"/apis/{OPENSHIFT_BUILD_API_GROUP}/v1/namespaces/{target_namespace}/buildconfigs/{name}/instantiatebinary"
        try:
            return self._dynamic_client().request(
                "POST", path, body=archive, content_type="application/octet-stream",
            ).to_dict()
        except (DynamicApiError, OSError, urllib3.exceptions.HTTPError) as e:
            raise self._error("instantiate binary build of", "BuildConfig", name, target_namespace, e) from e

    # ------------------------------------------------------------------
    # Pods
    # ------------------------------------------------------------------

    def read_pod_log(self, name: str, namespace: str | None = None, container: str | None = None) -> str:
        target_namespace = namespace or self.namespace
        try:
            return self._core_v1.read_namespaced_pod_log(name=name, namespace=target_namespace, container=container)
        except ApiException as e:
            raise self._error("read log of", "Pod", name, target_namespace, e) from e

    def stream_pod_log(
        self,
        name: str,
        callback: Callable[[str], None],
        namespace: str | None = None,
        container: str | None = None,
        on_close: CloseCallback | None = None,
    ) -> WatchHandle:
        """Follow a pod log in a background thread, calling ``callback`` per line."""
        target_namespace = namespace or self.namespace
        handle = WatchHandle(f"log-{name}")

        def _run(watcher: kubernetes.watch.Watch) -> None:
            error: Exception | None = None
            try:
                for line in watcher.stream(
                    self._core_v1.read_namespaced_pod_log,
                    name=name,
                    namespace=target_namespace,
                    container=container,
                    follow=True,
                ):
                    callback(line)
            except Exception as e:
                if not handle.closed:
                    error = e
                    self.logger.debug(f"Log stream of pod {name} closed: {e}")
            finally:
                if on_close is not None:
                    on_close(error)

        return handle.start(_run)

    def port_forward(self, name: str, port: int, namespace: str | None = None) -> Any:
        """Open a port-forward session to a pod; use ``.socket(port)`` on the result."""
        target_namespace = namespace or self.namespace
        try:
            return kubernetes.stream.portforward(
                self._core_v1.connect_get_namespaced_pod_portforward,
                name,
                target_namespace,
                ports=str(port),
            )
        except ApiException as e:
            raise self._error("port-forward to", "Pod", name, target_namespace, e) from e
