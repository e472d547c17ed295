"""Undeploy previously applied manifests, cascading to OpenShift build artifacts."""

from __future__ import annotations

import logging
import pathlib
from collections.abc import Iterable, Sequence

from .kubernetes_controller import KubernetesController, KubernetesControllerException
from .models import PROVIDER_LABEL, DeletionTarget, Resource, ResourceConfig
from .resources import api_version_of, kind_of, labels_of, load_resources, name_of, sort_resources

# API groups served by Kubernetes or OpenShift themselves; anything else is a custom resource.
_BUILTIN_API_GROUPS: frozenset[str] = frozenset({"", "apps", "batch", "policy", "autoscaling", "extensions"})
_BUILTIN_API_GROUP_SUFFIXES: tuple[str, ...] = (".k8s.io", ".openshift.io")


def is_custom_resource(resource: Resource) -> bool:
    api_version = api_version_of(resource)
    group = api_version.rsplit("/", 1)[0] if "/" in api_version else ""
    return group not in _BUILTIN_API_GROUPS and not group.endswith(_BUILTIN_API_GROUP_SUFFIXES)


class KubernetesUndeployService:
    """Delete every resource recorded in generated manifest files.

    Args:
        controller: Cluster access.
    """

    def __init__(self, controller: KubernetesController) -> None:
        self.logger = logging.getLogger(__name__)
        self.controller = controller

    def undeploy(
        self,
        resource_dirs: Sequence[str | pathlib.Path] | None,
        resource_config: ResourceConfig | None,
        *manifest_files: str | pathlib.Path | None,
    ) -> None:
        """Delete the resources listed in ``manifest_files``.

        Resources are deleted in reverse apply order (namespaces last), custom
        resources before everything else, all with background propagation.

        Args:
            resource_dirs: Directories the manifests were generated from (informational).
            resource_config: Supplies the namespace when the manifests declare none.
            *manifest_files: Manifest files; missing files are ignored.
        """
        entities: list[Resource] = []
        for manifest in manifest_files:
            if manifest is None:
                continue
            path = pathlib.Path(manifest)
            if path.is_file():
                entities.extend(load_resources(path))

        if not entities:
            self.logger.warning("No such generated manifests found for this project, ignoring.")
            return

        undeploy_entities = list(reversed(sort_resources(entities)))
        namespace = self.current_namespace(undeploy_entities, resource_config)

        for entity in undeploy_entities:
            if is_custom_resource(entity):
                self._delete_custom_resource(namespace, entity)
        for entity in undeploy_entities:
            if not is_custom_resource(entity):
                self.delete_resource(namespace, entity)

    def current_namespace(self, entities: Iterable[Resource], resource_config: ResourceConfig | None = None) -> str:
        """Return the first Namespace/Project in ``entities``, else the configured or cluster namespace."""
        for entity in entities:
            if kind_of(entity) in ("Namespace", "Project"):
                return name_of(entity)
        if resource_config is not None and resource_config.namespace:
            return resource_config.namespace
        return self.controller.namespace

    def delete_resource(self, namespace: str, resource: Resource) -> None:
        self._delete(namespace, resource)

    def _delete(self, namespace: str, resource: Resource) -> bool:
        """Delete one resource with background propagation."""
        kind = kind_of(resource)
        name = name_of(resource)
        self.logger.info(f"Deleting resource {kind} {namespace}/{name}")
        return self.controller.delete_resource(kind, name, namespace=namespace, api_version=api_version_of(resource))

    def _delete_custom_resource(self, namespace: str, resource: Resource) -> None:
        kind = kind_of(resource)
        name = name_of(resource)
        api_version = api_version_of(resource)
        try:
            if self.controller.get_resource(kind, name, namespace=namespace, api_version=api_version) is None:
                return
            self.logger.info(f"Deleting Custom Resource {api_version}#{kind} {name}")
            self.controller.delete_resource(kind, name, namespace=namespace, api_version=api_version)
        except KubernetesControllerException as e:
            self.logger.error(f"Unable to undeploy {api_version}#{kind} {namespace}/{name}: {e}")


class OpenshiftUndeployService(KubernetesUndeployService):
    """Undeploy that also removes the Builds and BuildConfigs producing an ImageStream's tags.

    Dependents are matched by their output ImageStreamTag and, when the
    origin carries a ``provider`` label, by an equal ``provider`` label.
    Deletion is best-effort: a failure is logged and the remaining
    resources are still attempted.
    """

    def delete_resource(self, namespace: str, resource: Resource) -> None:
        target = self.deletion_target(resource)
        for dependent in self.find_dependents(namespace, target):
            try:
                self._delete(namespace, dependent)
            except KubernetesControllerException as e:
                self.logger.error(f"Unable to delete {kind_of(dependent)} {namespace}/{name_of(dependent)}: {e}")
        try:
            self._delete(namespace, resource)
        except KubernetesControllerException as e:
            self.logger.error(f"Unable to delete {kind_of(resource)} {namespace}/{name_of(resource)}: {e}")

    @staticmethod
    def deletion_target(resource: Resource) -> DeletionTarget:
        """Compute the image stream tags whose producing Builds/BuildConfigs go with ``resource``."""
        kind = kind_of(resource)
        spec = resource.get("spec") or {}
        tags: list[str] = []
        if kind == "ImageStream":
            name = name_of(resource)
            tags = [f"{name}:{tag.get('name')}" for tag in spec.get("tags") or [] if tag.get("name")]
        elif kind == "DeploymentConfig":
            for trigger in spec.get("triggers") or []:
                if trigger.get("type") != "ImageChange":
                    continue
                source = (trigger.get("imageChangeParams") or {}).get("from") or {}
                if source.get("kind") == "ImageStreamTag" and source.get("name"):
                    tags.append(source["name"])
        return DeletionTarget(resource=resource, image_stream_tags=tags, provider=labels_of(resource).get(PROVIDER_LABEL))

    def find_dependents(self, namespace: str, target: DeletionTarget) -> list[Resource]:
        """List Builds and BuildConfigs writing to one of ``target``'s image stream tags."""
        if not target.image_stream_tags:
            return []
        dependents: list[Resource] = []
        for kind in ("Build", "BuildConfig"):
            try:
                candidates = self.controller.list_resources(kind, namespace=namespace)
            except KubernetesControllerException as e:
                self.logger.warning(f"Unable to list {kind}s in namespace {namespace}: {e}")
                continue
            for candidate in candidates:
                output = ((candidate.get("spec") or {}).get("output") or {}).get("to") or {}
                if output.get("name") not in target.image_stream_tags:
                    continue
                if target.provider is not None and labels_of(candidate).get(PROVIDER_LABEL) != target.provider:
                    continue
                candidate.setdefault("kind", kind)
                dependents.append(candidate)
        return dependents
