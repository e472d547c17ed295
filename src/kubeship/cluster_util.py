"""Cluster-level helpers: namespace resolution, scaling and bulk deletion."""

from __future__ import annotations

import logging
from collections.abc import Iterable

from .kubernetes_controller import KubernetesController
from .models import DEFAULT_NAMESPACE, DEFAULT_S2I_BUILD_SUFFIX, Resource, ResourceConfig
from .resources import api_version_of, kind_of, name_of, namespace_of

logger = logging.getLogger(__name__)

_SCALABLE_KINDS: frozenset[str] = frozenset({"Deployment", "ReplicaSet", "ReplicationController", "StatefulSet"})


def applicable_namespace(resource: Resource | None, namespace: str | None, fallback_namespace: str | None) -> str:
    """Resolve the namespace a resource is applied to.

    Order: explicit ``namespace``, the resource's own namespace,
    ``fallback_namespace``, then ``default``.
    """
    if namespace and namespace.strip():
        return namespace
    if resource is not None and namespace_of(resource):
        return namespace_of(resource)
    if fallback_namespace and fallback_namespace.strip():
        return fallback_namespace
    return DEFAULT_NAMESPACE


def resolve_fallback_namespace(resource_config: ResourceConfig | None, controller: KubernetesController | None) -> str | None:
    """Return the configured namespace, else the namespace of the cluster connection."""
    if resource_config is not None and resource_config.namespace:
        return resource_config.namespace
    if controller is not None:
        return controller.namespace
    return None


def resize_app(controller: KubernetesController, namespace: str, entities: Iterable[Resource], replicas: int) -> None:
    """Scale every controller among ``entities`` to ``replicas``."""
    for entity in entities:
        kind = kind_of(entity)
        name = name_of(entity)
        if kind == "DeploymentConfig":
            if not controller.is_openshift():
                logger.warning(f"Ignoring DeploymentConfig {name} as not connected to an OpenShift cluster")
                continue
        elif kind not in _SCALABLE_KINDS:
            continue
        logger.info(f"Scaling {kind} {namespace}/{name} to replicas: {replicas}")
        controller.scale_resource(kind, name, replicas, namespace=namespace)


def delete_entities(controller: KubernetesController, namespace: str, entities: Iterable[Resource]) -> None:
    """Delete entities in reverse order with background propagation."""
    for entity in reversed(list(entities)):
        kind = kind_of(entity)
        name = name_of(entity)
        logger.info(f"Deleting resource {kind} {namespace}/{name}")
        controller.delete_resource(kind, name, namespace=namespace, api_version=api_version_of(entity))


def s2i_build_name(image_stream_name: str, s2i_build_name_suffix: str | None) -> str:
    return image_stream_name + (s2i_build_name_suffix if s2i_build_name_suffix is not None else DEFAULT_S2I_BUILD_SUFFIX)


def delete_openshift_entities(
    controller: KubernetesController,
    namespace: str,
    entities: Iterable[Resource],
    s2i_build_name_suffix: str | None,
) -> None:
    """Delete the S2I BuildConfig and its Builds for every ImageStream among ``entities``."""
    if not controller.is_openshift():
        return
    for entity in entities:
        if kind_of(entity) != "ImageStream":
            continue
        build_name = s2i_build_name(name_of(entity), s2i_build_name_suffix)
        logger.info(f"Deleting resource BuildConfig {namespace}/{build_name} and Builds")
        for build in controller.list_resources("Build", namespace=namespace, label_selector=f"buildconfig={build_name}"):
            controller.delete_resource("Build", name_of(build), namespace=namespace)
        controller.delete_resource("BuildConfig", build_name, namespace=namespace)
