"""Data models and constants for Kubeship apply, build and undeploy operations."""

from __future__ import annotations

import base64
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, TypeAlias

# ---------------------------------------------------------------------------
# Shared type alias: manifests are handled as plain dicts end to end
# ---------------------------------------------------------------------------
Resource: TypeAlias = dict[str, Any]

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------
DEFAULT_NAMESPACE: str = "default"  # Last-resort namespace when neither config nor cluster context provide one.

DEFAULT_S2I_BUILD_SUFFIX: str = "-s2i"  # BuildConfig name suffix used by the s2i strategy.

DEFAULT_S2I_SOURCE_TYPE: str = "Binary"  # The only BuildConfig source type binary builds can be started against.

DEFAULT_IMAGE_STREAM_TAG_NAMESPACE: str = "openshift"  # Namespace of builder ImageStreamTags unless configured.

DEFAULT_PULL_SECRET: str = "pullsecret-kubeship"  # Secret name used to pull private builder images.

IMAGE_STREAM_TAG_RETRIES: int = 15  # Attempts to resolve a pushed ImageStream tag before giving up.

IMAGE_STREAM_TAG_RETRY_DELAY_SECONDS: float = 1.0  # Fixed delay between ImageStream tag resolution attempts.

IMAGE_STREAM_TAG_DATE_FORMAT: str = "%Y-%m-%dT%H:%M:%SZ"  # Format of ``status.tags[].items[].created``.

DEFAULT_POD_READY_TIMEOUT_SECONDS: int = 120  # Soft bound on waiting for the ``<build>-build`` pod.

DEFAULT_APPLY_TIMEOUT_SECONDS: int = 10  # Seconds to wait for exposed Service URLs after apply.

PROVIDER_LABEL: str = "provider"  # Label scoping cascade deletion to resources of the same origin.

EXPOSE_LABEL: str = "expose"  # Services labelled ``expose=true`` get an external URL annotation.

EXPOSE_URL_ANNOTATION: str = "kubeship.io/exposeUrl"  # Annotation carrying the external URL of a Service.

OPENSHIFT_BUILD_API_GROUP: str = "build.openshift.io"  # API group whose presence identifies an OpenShift cluster.

DEFAULT_DEBUG_PORT: int = 5005  # Default JVM remote debug port.

DEBUG_PORT_NAME: str = "debug"  # Container port name added for remote debugging.

JAVA_ENABLE_DEBUG_ENV: str = "JAVA_ENABLE_DEBUG"
JAVA_DEBUG_SUSPEND_ENV: str = "JAVA_DEBUG_SUSPEND"
JAVA_DEBUG_SESSION_ENV: str = "JAVA_DEBUG_SESSION"
JAVA_DEBUG_PORT_ENV: str = "JAVA_DEBUG_PORT"

# Default apiVersion per kind, used when a manifest omits it and for OpenShift kinds.
DEFAULT_API_VERSIONS: dict[str, str] = {
    "Namespace": "v1",
    "Pod": "v1",
    "Service": "v1",
    "ServiceAccount": "v1",
    "Secret": "v1",
    "ConfigMap": "v1",
    "PersistentVolumeClaim": "v1",
    "PersistentVolume": "v1",
    "ReplicationController": "v1",
    "Deployment": "apps/v1",
    "ReplicaSet": "apps/v1",
    "StatefulSet": "apps/v1",
    "DaemonSet": "apps/v1",
    "Job": "batch/v1",
    "CronJob": "batch/v1",
    "Ingress": "networking.k8s.io/v1",
    "NetworkPolicy": "networking.k8s.io/v1",
    "Role": "rbac.authorization.k8s.io/v1",
    "RoleBinding": "rbac.authorization.k8s.io/v1",
    "ClusterRole": "rbac.authorization.k8s.io/v1",
    "ClusterRoleBinding": "rbac.authorization.k8s.io/v1",
    "CustomResourceDefinition": "apiextensions.k8s.io/v1",
    "BuildConfig": "build.openshift.io/v1",
    "Build": "build.openshift.io/v1",
    "ImageStream": "image.openshift.io/v1",
    "ImageStreamTag": "image.openshift.io/v1",
    "DeploymentConfig": "apps.openshift.io/v1",
    "Route": "route.openshift.io/v1",
    "Template": "template.openshift.io/v1",
    "OAuthClient": "oauth.openshift.io/v1",
    "Project": "project.openshift.io/v1",
    "ProjectRequest": "project.openshift.io/v1",
}

CLUSTER_SCOPED_KINDS: frozenset[str] = frozenset({
    "Namespace",
    "Project",
    "ProjectRequest",
    "OAuthClient",
    "PersistentVolume",
    "ClusterRole",
    "ClusterRoleBinding",
    "CustomResourceDefinition",
    "StorageClass",
})

OPENSHIFT_ONLY_KINDS: frozenset[str] = frozenset({
    "BuildConfig",
    "Build",
    "ImageStream",
    "ImageStreamTag",
    "DeploymentConfig",
    "Route",
    "Template",
    "OAuthClient",
})

# Kinds applied first, in this order; all other kinds keep their input order afterwards.
KIND_ORDER: tuple[str, ...] = (
    "Namespace",
    "Project",
    "ProjectRequest",
    "Secret",
    "ServiceAccount",
    "PersistentVolumeClaim",
    "CustomResourceDefinition",
    "ConfigMap",
    "Service",
)


class ApplyOutcome(str, Enum):
    """Result of applying a single resource."""

    CREATED = "created"
    UPDATED = "updated"
    RECREATED = "recreated"
    UNCHANGED = "unchanged"
    SKIPPED = "skipped"  # creation disabled
    UNSUPPORTED = "unsupported"  # kind not available on this cluster
    IGNORED = "ignored"  # excluded by services-only mode or disabled OAuthClient support


class RecreateMode(str, Enum):
    """Which build resources are deleted and recreated before a build."""

    NONE = "none"
    BUILD_CONFIG = "buildconfig"
    IMAGE_STREAM = "imagestream"
    ALL = "all"

    @property
    def is_build_config(self) -> bool:
        return self in (RecreateMode.BUILD_CONFIG, RecreateMode.ALL)

    @property
    def is_image_stream(self) -> bool:
        return self in (RecreateMode.IMAGE_STREAM, RecreateMode.ALL)

    @classmethod
    def from_value(cls, value: str | bool | None) -> RecreateMode:
        """Parse a recreate mode, accepting the ``true``/``false``/``bc``/``is`` shorthands.

        Args:
            value: Raw value from configuration or the command line.

        Returns:
            The matching ``RecreateMode``.

        Raises:
            ValueError: If the value names no known mode.
        """
        if value is None or value is False:
            return cls.NONE
        if value is True:
            return cls.ALL
        normalized = str(value).strip().lower()
        aliases = {"": cls.NONE, "false": cls.NONE, "true": cls.ALL, "bc": cls.BUILD_CONFIG, "is": cls.IMAGE_STREAM}
        if normalized in aliases:
            return aliases[normalized]
        try:
            return cls(normalized)
        except ValueError:
            raise ValueError(f"Unknown recreate mode '{value}'") from None


class BuildStrategy(str, Enum):
    """OpenShift build strategies."""

    DOCKER = "docker"
    S2I = "s2i"
    JIB = "jib"


class BuildOutputKind(str, Enum):
    """Target of a BuildConfig output."""

    IMAGE_STREAM_TAG = "ImageStreamTag"
    DOCKER_IMAGE = "DockerImage"


@dataclass
class ApplyResult:
    """Outcome of applying one resource."""

    kind: str
    name: str
    namespace: str | None
    outcome: ApplyOutcome
    resource: Resource | None = None


@dataclass(frozen=True)
class ResourceConfig:
    """Resource-level settings shared by apply, build and undeploy."""

    namespace: str | None = None


@dataclass
class BuildConfiguration:
    """Build settings of a single image.

    ``from_ext`` overrides the base image for OpenShift builds with the keys
    ``name``, ``kind`` and ``namespace``.
    """

    from_image: str | None = None
    from_ext: dict[str, str] = field(default_factory=dict)
    args: dict[str, str] = field(default_factory=dict)
    env: dict[str, str] = field(default_factory=dict)
    tags: list[str] = field(default_factory=list)
    no_cache: bool = False
    context_dir: str | None = None
    dockerfile: str | None = None

    @property
    def is_dockerfile_mode(self) -> bool:
        return self.dockerfile is not None


@dataclass
class ImageConfiguration:
    """An image to build, with an optional registry it is pulled from or pushed to."""

    name: str
    build: BuildConfiguration | None = None
    registry: str | None = None


@dataclass(frozen=True)
class BuildServiceConfig:
    """Immutable configuration of one OpenShift build invocation."""

    build_directory: str
    artifact_id: str
    build_strategy: BuildStrategy = BuildStrategy.DOCKER
    recreate_mode: RecreateMode = RecreateMode.NONE
    output_kind: BuildOutputKind = BuildOutputKind.IMAGE_STREAM_TAG
    s2i_build_name_suffix: str | None = None
    s2i_image_stream_lookup_policy_local: bool = True
    openshift_pull_secret: str = DEFAULT_PULL_SECRET
    openshift_push_secret: str | None = None
    force_pull: bool = False
    build_resources: dict[str, dict[str, str]] | None = None  # ``{"requests": {...}, "limits": {...}}``
    resource_config: ResourceConfig = field(default_factory=ResourceConfig)
    pod_ready_timeout_seconds: int = DEFAULT_POD_READY_TIMEOUT_SECONDS


@dataclass
class BuildRun:
    """Live state of one OpenShift build."""

    build_name: str
    namespace: str
    build: Resource | None = None

    @property
    def phase(self) -> str | None:
        if not self.build:
            return None
        return (self.build.get("status") or {}).get("phase")

    @property
    def reason(self) -> str:
        status = (self.build or {}).get("status") or {}
        return status.get("message") or status.get("reason") or ""


@dataclass
class DeletionTarget:
    """A resource to delete together with the image stream tags its dependents build into."""

    resource: Resource
    image_stream_tags: list[str] = field(default_factory=list)
    provider: str | None = None


@dataclass
class RegistryAuth:
    """Credentials for a container registry."""

    username: str
    password: str
    email: str | None = None

    @property
    def auth(self) -> str:
        """Return the base64 ``user:password`` token used in docker config files."""
        return base64.b64encode(f"{self.username}:{self.password}".encode()).decode()
