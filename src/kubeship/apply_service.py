"""Resource apply engine.

Applies desired resources to the cluster one at a time: missing resources are
created, existing ones are left alone, patched, or deleted and recreated.
Resources are processed sequentially and a failure aborts the batch without
rolling back resources already applied.
"""

from __future__ import annotations

import copy
import logging
from collections.abc import Callable
from typing import Any

from .cluster_util import applicable_namespace
from .kubernetes_controller import KubernetesController, KubernetesControllerException
from .models import (
    CLUSTER_SCOPED_KINDS,
    DEFAULT_APPLY_TIMEOUT_SECONDS,
    EXPOSE_LABEL,
    EXPOSE_URL_ANNOTATION,
    OPENSHIFT_ONLY_KINDS,
    ApplyOutcome,
    ApplyResult,
    Resource,
)
from .patch_service import PatchService
from .resources import (
    annotations_of,
    api_version_of,
    flatten_resources,
    is_config_equal,
    kind_of,
    labels_of,
    name_of,
    sort_resources,
)
from .retry import poll

Updater = Callable[[Resource, Resource, str], Resource]


class ApplyException(RuntimeError):
    """Raised when the cluster rejects a create, update or delete of a resource."""

    def __init__(self, message: str, kind: str, name: str, namespace: str | None) -> None:
        super().__init__(message)
        self.kind = kind
        self.name = name
        self.namespace = namespace


class ApplyService:
    """Create, update or recreate resources on the cluster.

    Args:
        controller: Cluster access.
        patch_service: Per-kind patchers; created from ``controller`` when omitted.
        namespace: Namespace forced onto every namespaced resource.
        fallback_namespace: Namespace for resources that declare none.
        allow_create: Create missing resources; when ``False`` they are skipped.
        recreate_mode: Delete and recreate existing resources instead of patching them.
        services_only_mode: Only apply Services; everything else is ignored.
        ignore_bound_pvcs: Leave changed PersistentVolumeClaims alone when they are bound.
        support_oauth_clients: Apply OAuthClients; they are ignored otherwise.
        ignore_running_oauth_clients: Never update an OAuthClient that already exists.
        sleep: Sleep function used while waiting for exposed Service URLs.
    """

    def __init__(
        self,
        controller: KubernetesController,
        patch_service: PatchService | None = None,
        namespace: str | None = None,
        fallback_namespace: str | None = None,
        allow_create: bool = True,
        recreate_mode: bool = False,
        services_only_mode: bool = False,
        ignore_bound_pvcs: bool = False,
        support_oauth_clients: bool = False,
        ignore_running_oauth_clients: bool = True,
        sleep: Callable[[float], None] | None = None,
    ) -> None:
        self.logger = logging.getLogger(__name__)
        self.controller = controller
        self.patch_service = patch_service or PatchService(controller)
        self.namespace = namespace
        self.fallback_namespace = fallback_namespace
        self.allow_create = allow_create
        self.recreate_mode = recreate_mode
        self.services_only_mode = services_only_mode
        self.ignore_bound_pvcs = ignore_bound_pvcs
        self.support_oauth_clients = support_oauth_clients
        self.ignore_running_oauth_clients = ignore_running_oauth_clients
        self._sleep = sleep
        self._projects_created: set[str] = set()

        self._handlers: dict[str, Callable[[Resource, str, str], ApplyResult]] = {
            "Namespace": self._apply_namespace,
            "Project": self._apply_project,
            "ProjectRequest": self._apply_project,
            "PersistentVolumeClaim": self._apply_persistent_volume_claim,
            "Job": self._apply_job,
            "ReplicationController": self._apply_patchable,
            "Template": self._apply_template,
            "OAuthClient": self._apply_oauth_client,
        }

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def apply(self, obj: Any, source_label: str) -> list[ApplyResult]:
        """Apply a resource, list, ``List`` wrapper or nested combination.

        Args:
            obj: The desired resource(s).
            source_label: Where the resources came from, used in log messages.

        Returns:
            One ``ApplyResult`` per flattened resource, in input order.

        Raises:
            ApplyException: When the cluster rejects a mutation; earlier results stay applied.
        """
        return [self.apply_resource(resource, source_label) for resource in flatten_resources(obj)]

    def apply_entities(
        self,
        namespace: str | None,
        entities: Any,
        source_label: str,
        timeout_seconds: int = DEFAULT_APPLY_TIMEOUT_SECONDS,
    ) -> list[ApplyResult]:
        """Apply entities namespace-first, then wait for the URLs of exposed Services.

        Args:
            namespace: Namespace forced onto every namespaced resource, or ``None``.
            entities: The desired resource(s).
            source_label: Where the resources came from, used in log messages.
            timeout_seconds: How long to wait for each exposed Service URL.

        Returns:
            One ``ApplyResult`` per resource, in applied order.
        """
        previous_namespace = self.namespace
        if namespace:
            self.namespace = namespace
        try:
            ordered = sort_resources(flatten_resources(entities))
            results = [self.apply_resource(resource, source_label) for resource in ordered]
        finally:
            self.namespace = previous_namespace

        for result in results:
            if result.kind == "Service" and result.outcome != ApplyOutcome.IGNORED:
                if labels_of(result.resource or {}).get(EXPOSE_LABEL) == "true":
                    self._log_exposed_url(result, timeout_seconds)
        return results

    def apply_resource(self, resource: Resource, source_label: str) -> ApplyResult:
        """Apply a single resource and report what happened to it."""
        kind = kind_of(resource)
        name = name_of(resource)
        namespace = self.applicable_namespace(resource)

        if self.services_only_mode and kind != "Service":
            self.logger.debug(f"Only processing Services right now so ignoring {kind}: {namespace}:{name}")
            return ApplyResult(kind, name, namespace, ApplyOutcome.IGNORED)

        if kind in OPENSHIFT_ONLY_KINDS and not self.controller.is_openshift():
            self.logger.warning(f"Not connected to OpenShift cluster so cannot apply entity {kind} {name}")
            return ApplyResult(kind, name, namespace, ApplyOutcome.UNSUPPORTED)

        handler = self._handlers.get(kind, self._apply_generic)
        try:
            return handler(self._in_namespace(resource, namespace), namespace, source_label)
        except KubernetesControllerException as e:
            message = f"Failed to apply {kind} {name} in namespace {namespace} from {source_label}: {e}"
            self.logger.error(message)
            raise ApplyException(message, kind, name, namespace) from e

    def applicable_namespace(self, resource: Resource) -> str:
        return applicable_namespace(resource, self.namespace, self.fallback_namespace)

    @staticmethod
    def _in_namespace(resource: Resource, namespace: str) -> Resource:
        """Return a copy of ``resource`` whose body names the namespace it is applied to."""
        if kind_of(resource) in CLUSTER_SCOPED_KINDS or (resource.get("metadata") or {}).get("namespace") == namespace:
            return resource
        placed = copy.deepcopy(resource)
        placed.setdefault("metadata", {})["namespace"] = namespace
        return placed

    def _is_unchanged(self, resource: Resource, existing: Resource) -> bool:
        """Compare what would be written with the live object, so merged fields do not count as changes."""
        if self.patch_service.supports(kind_of(resource)):
            return is_config_equal(self.patch_service.compute_patch(resource, existing), existing)
        return is_config_equal(resource, existing)

    # ------------------------------------------------------------------
    # Shared create / update / recreate flow
    # ------------------------------------------------------------------

    def _apply_with(self, resource: Resource, namespace: str, source_label: str, update: Updater) -> ApplyResult:
        kind = kind_of(resource)
        name = name_of(resource)
        existing = self.controller.get_resource(kind, name, namespace=namespace, api_version=api_version_of(resource))

        if existing is None:
            return self._create(resource, namespace, source_label)

        if self.recreate_mode:
            return self._recreate(resource, namespace, source_label)

        if self._is_unchanged(resource, existing):
            self.logger.info(f"{kind} has not changed so not doing anything")
            return ApplyResult(kind, name, namespace, ApplyOutcome.UNCHANGED, existing)

        self.logger.info(f"Updating {kind} from {source_label}")
        updated = update(resource, existing, namespace)
        self.logger.info(f"Updated {kind}: {name}")
        return ApplyResult(kind, name, namespace, ApplyOutcome.UPDATED, updated)

    def _create(self, resource: Resource, namespace: str, source_label: str) -> ApplyResult:
        kind = kind_of(resource)
        name = name_of(resource)
        cluster_scoped = kind in CLUSTER_SCOPED_KINDS

        if not self.allow_create:
            if cluster_scoped:
                self.logger.warning(f"Creation disabled so not creating a {kind} from {source_label} with name {name}")
            else:
                self.logger.warning(
                    f"Creation disabled so not creating a {kind} from {source_label} in namespace {namespace} "
                    f"with name {name}"
                )
            return ApplyResult(kind, name, namespace, ApplyOutcome.SKIPPED)

        if cluster_scoped:
            self.logger.info(f"Creating a {kind} with name {name} from {source_label}")
        else:
            self.logger.info(f"Creating a {kind} in {namespace} namespace with name {name} from {source_label}")
        created = self.controller.create_resource(resource, namespace=namespace)
        self.logger.info(f"Created {kind}: {namespace}/{name}")
        return ApplyResult(kind, name, namespace, ApplyOutcome.CREATED, created)

    def _recreate(self, resource: Resource, namespace: str, source_label: str) -> ApplyResult:
        kind = kind_of(resource)
        name = name_of(resource)
        self.logger.info(f"Deleting {kind}: {name}")
        self.controller.delete_resource(kind, name, namespace=namespace, api_version=api_version_of(resource))
        result = self._create(resource, namespace, source_label)
        if result.outcome == ApplyOutcome.CREATED:
            result.outcome = ApplyOutcome.RECREATED
        return result

    def _merge_patch(self, resource: Resource, existing: Resource, namespace: str) -> Resource:
        return self.controller.patch_resource(resource, namespace=namespace)

    def _patch_service_update(self, resource: Resource, existing: Resource, namespace: str) -> Resource:
        return self.patch_service.patch(namespace, resource, existing)

    # ------------------------------------------------------------------
    # Kind handlers
    # ------------------------------------------------------------------

    def _apply_generic(self, resource: Resource, namespace: str, source_label: str) -> ApplyResult:
        update = self._patch_service_update if self.patch_service.supports(kind_of(resource)) else self._merge_patch
        return self._apply_with(resource, namespace, source_label, update)

    def _apply_patchable(self, resource: Resource, namespace: str, source_label: str) -> ApplyResult:
        return self._apply_with(resource, namespace, source_label, self._patch_service_update)

    def _apply_template(self, resource: Resource, namespace: str, source_label: str) -> ApplyResult:
        """Install a Template without processing it; changed Templates are always recreated."""
        kind = kind_of(resource)
        name = name_of(resource)
        existing = self.controller.get_resource(kind, name, namespace=namespace, api_version=api_version_of(resource))
        if existing is None:
            return self._create(resource, namespace, source_label)
        if is_config_equal(resource, existing):
            self.logger.info("Template has not changed so not doing anything")
            return ApplyResult(kind, name, namespace, ApplyOutcome.UNCHANGED, existing)
        return self._recreate(resource, namespace, source_label)

    def _apply_oauth_client(self, resource: Resource, namespace: str, source_label: str) -> ApplyResult:
        kind = kind_of(resource)
        name = name_of(resource)
        if not self.support_oauth_clients:
            self.logger.debug(f"OAuthClient support is disabled so ignoring OAuthClient: {name}")
            return ApplyResult(kind, name, None, ApplyOutcome.IGNORED)

        existing = self.controller.get_resource(kind, name, api_version=api_version_of(resource))
        if existing is None:
            return self._create(resource, namespace, source_label)
        if self.ignore_running_oauth_clients:
            self.logger.info("Not updating the OAuthClient which are shared across namespaces as its already running")
            return ApplyResult(kind, name, None, ApplyOutcome.UNCHANGED, existing)
        if is_config_equal(resource, existing):
            self.logger.info("OAuthClient has not changed so not doing anything")
            return ApplyResult(kind, name, None, ApplyOutcome.UNCHANGED, existing)
        if self.recreate_mode:
            return self._recreate(resource, namespace, source_label)

        replacement = copy.deepcopy(resource)
        replacement.setdefault("metadata", {})["resourceVersion"] = (existing.get("metadata") or {}).get("resourceVersion")
        updated = self.controller.replace_resource(replacement)
        self.logger.info(f"Updated OAuthClient: {name}")
        return ApplyResult(kind, name, None, ApplyOutcome.UPDATED, updated)

    def _apply_persistent_volume_claim(self, resource: Resource, namespace: str, source_label: str) -> ApplyResult:
        kind = kind_of(resource)
        name = name_of(resource)
        existing = self.controller.get_resource(kind, name, namespace=namespace)
        if existing is None:
            return self._create(resource, namespace, source_label)

        if not self.recreate_mode and is_config_equal(resource, existing):
            self.logger.info("PersistentVolumeClaim has not changed so not doing anything")
            return ApplyResult(kind, name, namespace, ApplyOutcome.UNCHANGED, existing)

        if self.ignore_bound_pvcs and (existing.get("status") or {}).get("phase") == "Bound":
            self.logger.warning(
                f"PersistentVolumeClaim {name} in namespace {namespace} is already bound and will not be "
                f"replaced with the new one from {source_label}"
            )
            return ApplyResult(kind, name, namespace, ApplyOutcome.UNCHANGED, existing)

        return self._recreate(resource, namespace, source_label)

    def _apply_job(self, resource: Resource, namespace: str, source_label: str) -> ApplyResult:
        kind = kind_of(resource)
        name = name_of(resource)
        if not self.allow_create:
            return self._apply_patchable(resource, namespace, source_label)

        self.logger.info(f"Creating a Job from {source_label} namespace {namespace} name {name}")
        try:
            created = self.controller.create_resource(resource, namespace=namespace)
        except KubernetesControllerException as e:
            if e.status != 409:
                raise
            existing = self.controller.get_resource(kind, name, namespace=namespace)
            if existing is None:
                raise
            updated = self.patch_service.patch(namespace, resource, existing)
            self.logger.info(f"Updated Job: {name}")
            outcome = ApplyOutcome.UNCHANGED if updated is existing else ApplyOutcome.UPDATED
            return ApplyResult(kind, name, namespace, outcome, updated)
        return ApplyResult(kind, name, namespace, ApplyOutcome.CREATED, created)

    def _apply_namespace(self, resource: Resource, namespace: str, source_label: str) -> ApplyResult:
        name = name_of(resource)
        existing = self.controller.get_resource("Namespace", name)
        if existing is not None:
            self.logger.debug(f"Namespace {name} already exists")
            return ApplyResult("Namespace", name, None, ApplyOutcome.UNCHANGED, existing)
        self.logger.info(f"Creating currentNamespace: {name}")
        return self._create(resource, name, source_label)

    def _apply_project(self, resource: Resource, namespace: str, source_label: str) -> ApplyResult:
        kind = kind_of(resource)
        name = name_of(resource)
        if name in self._projects_created:
            return ApplyResult(kind, name, None, ApplyOutcome.UNCHANGED)

        self.logger.info(f"Creating project: {name}")
        if not self.controller.is_openshift():
            self.logger.warning(f"Cannot check for Project {name} as not running against OpenShift!")
            return ApplyResult(kind, name, None, ApplyOutcome.UNSUPPORTED)

        existing = self.controller.get_resource("Project", name)
        if existing is not None:
            return ApplyResult(kind, name, None, ApplyOutcome.UNCHANGED, existing)

        project_request = {
            "apiVersion": api_version_of({"kind": "ProjectRequest"}),
            "kind": "ProjectRequest",
            "metadata": dict(resource.get("metadata") or {}),
            "displayName": resource.get("displayName") or name,
        }
        if resource.get("description"):
            project_request["description"] = resource["description"]
        result = self._create(project_request, name, source_label)
        if result.outcome == ApplyOutcome.CREATED:
            self._projects_created.add(name)
        result.kind = kind
        result.namespace = None
        return result

    # ------------------------------------------------------------------
    # Exposed services
    # ------------------------------------------------------------------

    def _log_exposed_url(self, result: ApplyResult, timeout_seconds: int) -> None:
        """Wait until the Service carries its exposed URL annotation and log it."""

        def _fetch_url() -> str | None:
            service = self.controller.get_resource("Service", result.name, namespace=result.namespace)
            return annotations_of(service or {}).get(EXPOSE_URL_ANNOTATION)

        kwargs = {"sleep": self._sleep} if self._sleep is not None else {}
        url = poll(_fetch_url, max_attempts=max(int(timeout_seconds), 1), delay_seconds=1.0, **kwargs)
        if url:
            self.logger.info(f"{result.name}: {url}")
        else:
            self.logger.warning(f"No exposed URL found for Service {result.name} after {timeout_seconds} seconds")
