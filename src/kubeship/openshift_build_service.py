"""OpenShift binary build orchestration.

Builds an image on the cluster: reconciles the pull secret, BuildConfig and
ImageStream, uploads the build context as a binary build, follows the build
pod log while watching the Build until it reaches a terminal phase, then
records the resulting ImageStream and additional tags.
"""

from __future__ import annotations

import base64
import json
import logging
import pathlib
import threading
import time
from collections.abc import Callable
from concurrent.futures import Future, InvalidStateError

from .archive import create_build_archive
from .image_name import ImageName, resolve_image_stream_name
from .image_stream_service import ImageStreamService
from .kubernetes_controller import KubernetesController, KubernetesControllerException
from .models import (
    DEFAULT_S2I_SOURCE_TYPE,
    BuildOutputKind,
    BuildRun,
    BuildServiceConfig,
    BuildStrategy,
    ImageConfiguration,
    RegistryAuth,
    Resource,
)
from .openshift_build_utils import (
    compute_s2i_build_name,
    create_additional_tags,
    create_build_config_spec,
    create_build_output,
    create_build_strategy,
    is_cancelled,
    is_failed,
    is_finished,
    resolve_base_image,
)
from .pod_status import is_pod_ready
from .registry_auth import RegistryAuthResolver
from .resources import is_config_equal, name_of

_DEFAULT_DATA_BASE_IMAGE: str = "busybox:latest"
_DOCKER_CONFIG_SECRET_TYPE: str = "kubernetes.io/dockerconfigjson"
_DOCKER_CONFIG_KEY: str = ".dockerconfigjson"


class BuildServiceException(Exception):
    """Raised when an image cannot be built with the OpenShift build service."""


class BuildFailedError(BuildServiceException):
    """Raised when the OpenShift Build ends in a failed, errored or cancelled phase."""

    def __init__(self, build_name: str, phase: str | None, reason: str) -> None:
        super().__init__(f"OpenShift Build {build_name} failed: {reason or phase}")
        self.build_name = build_name
        self.phase = phase
        self.reason = reason


class OpenshiftBuildService:
    """Build images with OpenShift binary builds.

    Args:
        controller: Cluster access.
        config: Settings of this build invocation.
        registry_auth_resolver: Credentials lookup for the base image registry.
        archive_creator: Produces the build context archive for an image.
        sleep: Sleep function used while resolving ImageStream tags.
    """

    def __init__(
        self,
        controller: KubernetesController,
        config: BuildServiceConfig,
        registry_auth_resolver: RegistryAuthResolver | None = None,
        archive_creator: Callable[[ImageConfiguration, str], pathlib.Path] = create_build_archive,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.logger = logging.getLogger(__name__)
        self.controller = controller
        self.config = config
        self.registry_auth_resolver = registry_auth_resolver or RegistryAuthResolver()
        self._archive_creator = archive_creator
        self._sleep = sleep

    @property
    def namespace(self) -> str:
        return self.config.resource_config.namespace or self.controller.namespace

    @property
    def image_stream_file(self) -> pathlib.Path:
        return pathlib.Path(self.config.build_directory) / f"{self.config.artifact_id}-is.yml"

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def build(self, image_config: ImageConfiguration) -> BuildRun:
        """Build one image and wait for the OpenShift Build to finish.

        Args:
            image_config: The image to build.

        Returns:
            The finished ``BuildRun``.

        Raises:
            BuildFailedError: If the Build failed or was cancelled.
            BuildServiceException: For configuration errors, archive failures and
                uploads interrupted by a closed stream.
            KubernetesControllerException: For any other cluster API error.
            ValueError: For build strategies OpenShift binary builds do not support.
        """
        if image_config.build is None:
            raise BuildServiceException(f"Image {image_config.name} has no build configuration")
        if self.config.build_strategy == BuildStrategy.JIB:
            raise ValueError(f"Unsupported BuildStrategy {self.config.build_strategy.value}")
        if not self.controller.is_openshift():
            raise BuildServiceException("OpenShift builds require a connection to an OpenShift cluster")

        image_name = ImageName.parse(image_config.name)
        namespace = self.namespace
        build_name: str | None = None
        try:
            archive = self._create_build_archive(image_config)

            new_objects: list[Resource] = []
            pull_secret = self.config.openshift_pull_secret
            use_pull_secret = self._check_or_create_pull_secret(image_config, namespace, new_objects)
            build_name = self._update_or_create_build_config(
                image_config, image_name, namespace, pull_secret if use_pull_secret else None, new_objects,
            )
            if self.config.output_kind == BuildOutputKind.IMAGE_STREAM_TAG:
                self._check_or_create_image_stream(resolve_image_stream_name(image_name), namespace, new_objects)

            self._create_resource_objects(new_objects, namespace)
            build_run = self._start_build(build_name, archive, namespace)
            build_run = self._wait_for_build_to_complete(build_run)

            if self.config.output_kind == BuildOutputKind.IMAGE_STREAM_TAG:
                ImageStreamService(self.controller, namespace, sleep=self._sleep).append_image_stream_resource(
                    image_name, self.image_stream_file,
                )
                self._create_additional_tags(image_config, image_name, namespace)
            return build_run
        except BuildServiceException:
            raise
        except KubernetesControllerException as e:
            if not e.stream_closed:
                raise
            self.logger.error(f"Build for {build_name} failed: {e}")
            self._log_build_failure(build_name, namespace)
            raise BuildServiceException("Unable to build the image using the OpenShift build service") from e
        except OSError as e:
            raise BuildServiceException(f"Unable to write the ImageStream descriptor for image {image_config.name}: {e}") from e

    # ------------------------------------------------------------------
    # Preparation
    # ------------------------------------------------------------------

    def _create_build_archive(self, image_config: ImageConfiguration) -> bytes:
        try:
            archive_path = self._archive_creator(image_config, self.config.build_directory)
            return pathlib.Path(archive_path).read_bytes()
        except OSError as e:
            raise BuildServiceException(f"Unable to create the build archive for image {image_config.name}") from e

    def _check_or_create_pull_secret(self, image_config: ImageConfiguration, namespace: str, new_objects: list[Resource]) -> bool:
        """Make sure the pull secret carries credentials for the base image registry.

        Returns:
            ``True`` when the BuildConfig should reference the pull secret.
        """
        from_image = resolve_base_image(image_config) or _DEFAULT_DATA_BASE_IMAGE
        registry = None
        if from_image:
            try:
                registry = ImageName.parse(from_image).registry
            except ValueError:
                self.logger.debug(f"Unable to parse base image {from_image}")
        registry = registry or image_config.registry
        secret_name = self.config.openshift_pull_secret
        if not registry or not secret_name:
            return False

        auth = self.registry_auth_resolver.resolve(registry)
        secret = self.controller.get_resource("Secret", secret_name, namespace=namespace)
        if secret is not None:
            self.logger.info(f"Adding to Secret {secret_name}")
            return self._update_secret(secret, registry, auth, namespace)

        if auth is None:
            return False

        self.logger.info("Creating Secret")
        new_objects.append({
            "apiVersion": "v1",
            "kind": "Secret",
            "metadata": {"name": secret_name},
            "type": _DOCKER_CONFIG_SECRET_TYPE,
            "data": {_DOCKER_CONFIG_KEY: _encode_docker_config({registry: {"auth": auth.auth}})},
        })
        return True

    def _update_secret(self, secret: Resource, registry: str, auth: RegistryAuth | None, namespace: str) -> bool:
        secret_name = name_of(secret)
        data = dict(secret.get("data") or {})
        current = _decode_docker_config(data.get(_DOCKER_CONFIG_KEY))
        auths = dict(current)
        if auth is not None:
            auths[registry] = {"auth": auth.auth}

        if auths == current:
            self.logger.info(f"Using Secret {secret_name}")
            return True
        data[_DOCKER_CONFIG_KEY] = _encode_docker_config(auths)
        self.controller.replace_resource({**secret, "type": _DOCKER_CONFIG_SECRET_TYPE, "data": data}, namespace=namespace)
        self.logger.info(f"Updating Secret {secret_name}")
        return True

    def _update_or_create_build_config(
        self,
        image_config: ImageConfiguration,
        image_name: ImageName,
        namespace: str,
        pull_secret: str | None,
        new_objects: list[Resource],
    ) -> str:
        build_name = compute_s2i_build_name(self.config, image_name)
        strategy = create_build_strategy(self.config, image_config, pull_secret)
        output = create_build_output(self.config, image_name)

        build_config = self.controller.get_resource("BuildConfig", build_name, namespace=namespace)
        if build_config is None:
            return self._create_build_config(build_name, strategy, output, new_objects)

        spec = build_config.get("spec") or {}
        source_type = (spec.get("source") or {}).get("type")
        if spec.get("source") is not None and source_type != DEFAULT_S2I_SOURCE_TYPE:
            self.logger.warning(f"BuildServiceConfig {build_name} is not of type: 'Binary' but is '{source_type}' !")

        if self.config.recreate_mode.is_build_config:
            self.controller.delete_resource("BuildConfig", build_name, namespace=namespace)
            return self._create_build_config(build_name, strategy, output, new_objects)

        if not (is_config_equal(strategy, spec.get("strategy")) and is_config_equal(output, spec.get("output"))):
            updated = {**build_config, "spec": {**spec, "strategy": strategy, "output": output}}
            updated.pop("status", None)
            self.controller.replace_resource(updated, namespace=namespace)
            self.logger.info(f"Updating BuildServiceConfig {build_name} for {strategy['type']} strategy")
        else:
            self.logger.info(f"Using BuildServiceConfig {build_name} for {strategy['type']} strategy")
        return build_name

    def _create_build_config(self, build_name: str, strategy: dict, output: dict, new_objects: list[Resource]) -> str:
        self.logger.info(f"Creating BuildServiceConfig {build_name} for {strategy['type']} build")
        new_objects.append({
            "apiVersion": "build.openshift.io/v1",
            "kind": "BuildConfig",
            "metadata": {"name": build_name},
            "spec": create_build_config_spec(self.config, strategy, output),
        })
        return build_name

    def _check_or_create_image_stream(self, image_stream_name: str, namespace: str, new_objects: list[Resource]) -> None:
        has_image_stream = self.controller.get_resource("ImageStream", image_stream_name, namespace=namespace) is not None
        if has_image_stream and self.config.recreate_mode.is_image_stream:
            self.controller.delete_resource("ImageStream", image_stream_name, namespace=namespace)
            has_image_stream = False

        if has_image_stream:
            self.logger.info(f"Adding to ImageStream {image_stream_name}")
            return

        self.logger.info(f"Creating ImageStream {image_stream_name}")
        new_objects.append({
            "apiVersion": "image.openshift.io/v1",
            "kind": "ImageStream",
            "metadata": {"name": image_stream_name},
            "spec": {"lookupPolicy": {"local": self.config.s2i_image_stream_lookup_policy_local}},
        })

    def _create_resource_objects(self, new_objects: list[Resource], namespace: str) -> None:
        for resource in new_objects:
            self.controller.create_resource(resource, namespace=namespace)

    # ------------------------------------------------------------------
    # Build execution
    # ------------------------------------------------------------------

    def _start_build(self, build_name: str, archive: bytes, namespace: str) -> BuildRun:
        self.logger.info(f"Starting Build {build_name}")
        try:
            build = self.controller.instantiate_binary(build_name, archive, namespace=namespace)
        except KubernetesControllerException as e:
            if e.status is not None:
                self.logger.error(f"OpenShift Error: [{e.status}] {e}")
            if e.stream_closed:
                self.logger.error(f"Build for {build_name} failed: {e}")
                self._log_build_failed_details(build_name, namespace)
            raise
        return BuildRun(build_name=name_of(build) or build_name, namespace=namespace, build=build)

    def _wait_until_pod_is_ready(self, pod_name: str, timeout_seconds: float, namespace: str) -> bool:
        """Wait for a pod to become ready; a timeout is logged, not raised."""
        ready = threading.Event()

        def _on_event(event_type: str, pod: Resource) -> None:
            if is_pod_ready(pod):
                ready.set()

        try:
            with self.controller.watch_resources("Pod", _on_event, namespace=namespace, name=pod_name):
                if not ready.wait(timeout_seconds):
                    self.logger.warning(f"Could not wait for pod {pod_name} to become ready within {timeout_seconds} seconds")
                    return False
        except KubernetesControllerException as e:
            self.logger.error(f"Could not watch pod {pod_name}: {e}")
            return False
        return True

    def _wait_for_build_to_complete(self, build_run: BuildRun) -> BuildRun:
        """Block until the Build reaches a terminal phase or its watch closes.

        The outcome is delivered through a single ``Future`` fulfilled by
        whichever comes first: a watch event with a terminal phase, the direct
        fetch made after the watch is attached, or the watch closing.
        """
        build_name = build_run.build_name
        namespace = build_run.namespace
        pod_name = f"{build_name}-build"

        self._wait_until_pod_is_ready(pod_name, self.config.pod_ready_timeout_seconds, namespace)
        self.logger.info(f"Waiting for build {build_name} to complete...")

        outcome: Future = Future()
        last_phase: list[str | None] = [None]

        def _complete(build: Resource | None) -> None:
            try:
                outcome.set_result(build)
            except InvalidStateError:
                pass

        def _on_event(event_type: str, build: Resource) -> None:
            phase = (build.get("status") or {}).get("phase")
            if phase != last_phase[0]:
                last_phase[0] = phase
                self.logger.debug(f"Build {build_name} status: {phase}")
            if is_finished(phase):
                _complete(build)

        def _on_close(error: Exception | None) -> None:
            if error is not None:
                self.logger.error(f"Error while watching for build to finish: {error}")
            _complete(None)

        with self.controller.stream_pod_log(pod_name, self._log_build_line, namespace=namespace), \
                self.controller.watch_resources("Build", _on_event, namespace=namespace, name=build_name, on_close=_on_close):
            last_build = self.controller.get_resource("Build", build_name, namespace=namespace)
            if last_build is not None and is_finished((last_build.get("status") or {}).get("phase")):
                self.logger.debug(f"Build {build_name} is already finished")
                _complete(last_build)
            build = outcome.result()

        if build is None:
            self.logger.debug(f"Build watcher on {build_name} was closed prematurely")
            build = self.controller.get_resource("Build", build_name, namespace=namespace)

        build_run = BuildRun(build_name=build_name, namespace=namespace, build=build)
        phase = build_run.phase
        if is_failed(phase) or is_cancelled(phase):
            raise BuildFailedError(build_name, phase, build_run.reason)

        if not is_finished(phase):
            self.logger.warning(
                f"Could not wait for the completion of build {build_name}. It may be still running (status={phase})"
            )
        else:
            self.logger.info(f"Build {build_name} in status {phase}")
        return build_run

    def _log_build_line(self, line: str) -> None:
        self.logger.info(f"[build] {line}")

    def _create_additional_tags(self, image_config: ImageConfiguration, image_name: ImageName, namespace: str) -> None:
        tags_wanted = [tag for tag in image_config.build.tags if tag != image_name.tag]
        if not tags_wanted:
            return
        primary = f"{resolve_image_stream_name(image_name)}:{image_name.tag_or_latest}"
        original = self.controller.get_resource("ImageStreamTag", primary, namespace=namespace)
        if original is None:
            self.logger.warning(f"ImageStreamTag {primary} not found, not creating additional tags {tags_wanted}")
            return
        for tag in create_additional_tags(image_config, namespace, original):
            self.logger.info(f"Creating ImageStreamTag {name_of(tag)}")
            try:
                self.controller.create_resource(tag, namespace=namespace)
            except KubernetesControllerException as e:
                if e.status != 409:
                    raise
                self.controller.replace_resource(tag, namespace=namespace)

    # ------------------------------------------------------------------
    # Diagnostics
    # ------------------------------------------------------------------

    def _log_build_failed_details(self, build_name: str, namespace: str) -> None:
        try:
            build_config = self.controller.get_resource("BuildConfig", build_name, namespace=namespace) or {}
            strategy = (build_config.get("spec") or {}).get("strategy") or {}
            details = strategy.get("sourceStrategy") or strategy.get("dockerStrategy") or {}
            source = details.get("from") or {}
            kind = source.get("kind")
            name = source.get("name")
            if kind == BuildOutputKind.DOCKER_IMAGE.value:
                self.logger.error(f"Please, ensure that the Docker image '{name}' exists and is accessible by OpenShift")
            elif kind == BuildOutputKind.IMAGE_STREAM_TAG.value:
                source_namespace = source.get("namespace")
                namespace_info = f"'{source_namespace}'" if source_namespace else "current"
                namespace_params = f" -n {source_namespace}" if source_namespace else ""
                self.logger.error(
                    f"Please, ensure that the ImageStream Tag '{name}' exists in the {namespace_info} namespace "
                    f"(with 'oc get is{namespace_params}')"
                )
        except Exception as e:
            self.logger.error(f"Unable to get detailed information from the BuildServiceConfig: {e}")

    def _log_build_failure(self, build_name: str | None, namespace: str) -> None:
        try:
            for build in self.controller.list_resources("Build", namespace=namespace):
                if build_name and build_name in name_of(build):
                    status = build.get("status") or {}
                    self.logger.error(f"{name_of(build)}\t\t{status.get('reason')}\t{status.get('message')}")
            self.logger.error("Also, check cluster events via `oc get events` to see what could have possibly gone wrong")
        except Exception as e:
            self.logger.error(f"Unable to list builds for {build_name}: {e}")


def _encode_docker_config(auths: dict[str, dict[str, str]]) -> str:
    return base64.b64encode(json.dumps({"auths": auths}).encode()).decode()


def _decode_docker_config(value: str | None) -> dict[str, dict[str, str]]:
    if not value:
        return {}
    try:
        return dict(json.loads(base64.b64decode(value)).get("auths") or {})
    except ValueError:
        return {}
