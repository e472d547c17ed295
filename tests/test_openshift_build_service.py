"""Unit tests for the OpenShift binary build orchestration."""

from __future__ import annotations

import base64
import json
import logging
import pathlib

import pytest
import yaml

from kubeship.kubernetes_controller import KubernetesControllerException
from kubeship.models import (
    BuildConfiguration,
    BuildOutputKind,
    BuildServiceConfig,
    BuildStrategy,
    ImageConfiguration,
    RecreateMode,
    RegistryAuth,
    ResourceConfig,
)
from kubeship.openshift_build_service import BuildFailedError, BuildServiceException, OpenshiftBuildService
from kubeship.registry_auth import RegistryAuthResolver


def _image(name: str = "acme/app:1.0", **build_kwargs: object) -> ImageConfiguration:
    build_kwargs.setdefault("from_image", "busybox:latest")
    return ImageConfiguration(name, BuildConfiguration(**build_kwargs))


def _service(cluster, tmp_path: pathlib.Path, credentials: dict | None = None, **config_kwargs: object) -> OpenshiftBuildService:
    config_kwargs.setdefault("resource_config", ResourceConfig(namespace="test"))
    config = BuildServiceConfig(str(tmp_path / "target"), "app", **config_kwargs)
    archive = tmp_path / "docker-build.tar"
    archive.write_bytes(b"build context")
    return OpenshiftBuildService(
        cluster,
        config,
        registry_auth_resolver=RegistryAuthResolver(credentials, docker_config=tmp_path / "no-docker-config.json"),
        archive_creator=lambda image_config, build_directory: archive,
        sleep=lambda seconds: None,
    )


def _docker_config(secret: dict) -> dict:
    return json.loads(base64.b64decode(secret["data"][".dockerconfigjson"]))


# ---------------------------------------------------------------------------
# Successful builds
# ---------------------------------------------------------------------------


class TestBuild:
    """Tests for ``OpenshiftBuildService.build``."""

    def test_successful_build(self, openshift_cluster, tmp_path) -> None:
        """Verify a build creates its resources, uploads the archive and records the ImageStream."""
        run = _service(openshift_cluster, tmp_path).build(_image())

        assert run.build_name == "app-1"
        assert run.phase == "Complete"
        assert openshift_cluster.archive == b"build context"
        assert ("POST", "BuildConfig", "app") in openshift_cluster.requests
        assert ("POST", "ImageStream", "app") in openshift_cluster.requests
        assert openshift_cluster.stored("BuildConfig", "app")["spec"]["output"]["to"] == {"kind": "ImageStreamTag", "name": "app:1.0"}
        assert openshift_cluster.stored("ImageStream", "app")["spec"]["lookupPolicy"] == {"local": True}

        items = yaml.safe_load((tmp_path / "target" / "app-is.yml").read_text())["items"]
        assert items[0]["metadata"]["name"] == "app"
        assert items[0]["spec"]["tags"][0]["from"]["name"] == f"app@{openshift_cluster.pushed_image}"

    def test_build_log_is_followed(self, openshift_cluster, tmp_path, caplog) -> None:
        """Verify the build pod log is relayed to the logger."""
        caplog.set_level(logging.INFO, logger="kubeship.openshift_build_service")
        openshift_cluster.pod_logs["app-1-build"] = "STEP 1/2: FROM busybox\nSTEP 2/2: COPY . /app"

        _service(openshift_cluster, tmp_path).build(_image())

        assert "[build] STEP 1/2: FROM busybox" in caplog.text
        assert "Build app-1 in status Complete" in caplog.text

    def test_already_complete_build_does_not_hang(self, openshift_cluster, tmp_path) -> None:
        """Verify a Build finished before the watch attached is detected by the direct fetch."""
        openshift_cluster.replay_watches = False

        run = _service(openshift_cluster, tmp_path, pod_ready_timeout_seconds=0).build(_image())

        assert run.phase == "Complete"
        assert ("GET", "Build", "app-1") in openshift_cluster.requests

    def test_closed_watch_warns_when_still_running(self, openshift_cluster, tmp_path, caplog) -> None:
        """Verify a watch closing before a terminal phase ends the wait with a warning."""
        caplog.set_level(logging.WARNING, logger="kubeship.openshift_build_service")
        openshift_cluster.build_phase_on_instantiate = "Running"
        openshift_cluster.close_watches_after_replay = True

        run = _service(openshift_cluster, tmp_path, output_kind=BuildOutputKind.DOCKER_IMAGE).build(_image())

        assert run.phase == "Running"
        assert "Could not wait for the completion of build app-1. It may be still running (status=Running)" in caplog.text
        assert not (tmp_path / "target" / "app-is.yml").exists()

    def test_docker_image_output_skips_image_stream(self, openshift_cluster, tmp_path) -> None:
        """Verify a DockerImage output neither creates nor records an ImageStream."""
        _service(openshift_cluster, tmp_path, output_kind=BuildOutputKind.DOCKER_IMAGE).build(_image())

        assert openshift_cluster.stored("ImageStream", "app") is None
        assert openshift_cluster.stored("BuildConfig", "app")["spec"]["output"]["to"] == {"kind": "DockerImage", "name": "acme/app:1.0"}


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------


class TestBuildFailures:
    """Tests for failed, rejected and unsupported builds."""

    def test_failed_build_raises(self, openshift_cluster, tmp_path) -> None:
        """Verify a Failed build raises ``BuildFailedError`` with the status message."""
        openshift_cluster.build_phase_on_instantiate = "Failed"
        openshift_cluster.build_status_message = "Docker build strategy has failed."

        with pytest.raises(BuildFailedError, match="OpenShift Build app-1 failed: Docker build strategy has failed.") as exc_info:
            _service(openshift_cluster, tmp_path).build(_image())

        assert exc_info.value.phase == "Failed"

    def test_cancelled_build_raises(self, openshift_cluster, tmp_path) -> None:
        """Verify a Cancelled build is reported as failed."""
        openshift_cluster.build_phase_on_instantiate = "Cancelled"

        with pytest.raises(BuildFailedError, match="failed: Cancelled"):
            _service(openshift_cluster, tmp_path).build(_image())

    def test_closed_upload_stream(self, openshift_cluster, tmp_path, caplog) -> None:
        """Verify an upload interrupted by a closed stream raises ``BuildServiceException``."""
        caplog.set_level(logging.ERROR, logger="kubeship.openshift_build_service")
        openshift_cluster.failures[("INSTANTIATE", "BuildConfig")] = KubernetesControllerException(
            "Failed to instantiate BuildConfig app: Connection closed", stream_closed=True,
        )

        with pytest.raises(BuildServiceException, match="Unable to build the image using the OpenShift build service"):
            _service(openshift_cluster, tmp_path).build(_image())

        assert "Please, ensure that the Docker image 'busybox:latest' exists and is accessible by OpenShift" in caplog.text
        assert ("LIST", "Build", None) in openshift_cluster.requests

    def test_other_api_errors_propagate(self, openshift_cluster, tmp_path) -> None:
        """Verify API errors other than a closed stream are raised unchanged."""
        openshift_cluster.failures[("POST", "BuildConfig")] = KubernetesControllerException("Forbidden", status=403)

        with pytest.raises(KubernetesControllerException, match="Forbidden"):
            _service(openshift_cluster, tmp_path).build(_image())

    def test_jib_is_unsupported(self, openshift_cluster, tmp_path) -> None:
        """Verify the jib strategy is rejected with a ``ValueError`` before anything is created."""
        with pytest.raises(ValueError, match="Unsupported BuildStrategy jib"):
            _service(openshift_cluster, tmp_path, build_strategy=BuildStrategy.JIB).build(_image())
        assert openshift_cluster.requests == []

    def test_requires_openshift(self, cluster, tmp_path) -> None:
        """Verify builds are refused on vanilla Kubernetes."""
        with pytest.raises(BuildServiceException, match="require a connection to an OpenShift cluster"):
            _service(cluster, tmp_path).build(_image())

    def test_archive_failure(self, openshift_cluster, tmp_path) -> None:
        """Verify an unreadable build context is reported as a build service error."""
        service = _service(openshift_cluster, tmp_path)
        service._archive_creator = lambda image_config, build_directory: tmp_path / "missing.tar"

        with pytest.raises(BuildServiceException, match="Unable to create the build archive for image acme/app:1.0"):
            service.build(_image())


# ---------------------------------------------------------------------------
# BuildConfig and ImageStream reconciliation
# ---------------------------------------------------------------------------


class TestReconciliation:
    """Tests for reusing, updating and recreating build resources."""

    def test_unchanged_build_config_is_reused(self, openshift_cluster, tmp_path) -> None:
        """Verify a second build reuses the BuildConfig and ImageStream."""
        _service(openshift_cluster, tmp_path).build(_image())
        openshift_cluster.requests.clear()

        _service(openshift_cluster, tmp_path).build(_image())

        mutations = [r for r in openshift_cluster.requests if r[0] in ("POST", "PUT", "DELETE") and r[1] in ("BuildConfig", "ImageStream")]
        assert mutations == []

    def test_changed_strategy_updates_build_config(self, openshift_cluster, tmp_path) -> None:
        """Verify a changed base image replaces the BuildConfig."""
        _service(openshift_cluster, tmp_path).build(_image())

        _service(openshift_cluster, tmp_path).build(_image(from_image="alpine:3.20"))

        assert ("PUT", "BuildConfig", "app") in openshift_cluster.requests
        strategy = openshift_cluster.stored("BuildConfig", "app")["spec"]["strategy"]
        assert strategy["dockerStrategy"]["from"]["name"] == "alpine:3.20"

    def test_recreate_mode(self, openshift_cluster, tmp_path) -> None:
        """Verify recreate mode deletes and creates the BuildConfig and ImageStream."""
        _service(openshift_cluster, tmp_path).build(_image())
        openshift_cluster.requests.clear()

        _service(openshift_cluster, tmp_path, recreate_mode=RecreateMode.ALL).build(_image())

        for kind in ("BuildConfig", "ImageStream"):
            assert ("DELETE", kind, "app") in openshift_cluster.requests
            assert ("POST", kind, "app") in openshift_cluster.requests

    def test_s2i_build_config_name(self, openshift_cluster, tmp_path) -> None:
        """Verify the S2I strategy names the BuildConfig with the s2i suffix."""
        run = _service(openshift_cluster, tmp_path, build_strategy=BuildStrategy.S2I).build(_image())

        assert run.build_name == "app-s2i-1"
        assert openshift_cluster.stored("BuildConfig", "app-s2i")["spec"]["strategy"]["type"] == "Source"


# ---------------------------------------------------------------------------
# Pull secret and tags
# ---------------------------------------------------------------------------


class TestPullSecretAndTags:
    """Tests for pull secret handling and additional ImageStreamTags."""

    def test_pull_secret_created_with_credentials(self, openshift_cluster, tmp_path) -> None:
        """Verify a pull secret is created and referenced when base image credentials exist."""
        credentials = {"registry.example.com": RegistryAuth("user", "pass")}

        _service(openshift_cluster, tmp_path, credentials=credentials).build(_image(from_image="registry.example.com/base/java:17"))

        secret = openshift_cluster.stored("Secret", "pullsecret-kubeship")
        assert secret["type"] == "kubernetes.io/dockerconfigjson"
        assert _docker_config(secret) == {"auths": {"registry.example.com": {"auth": "dXNlcjpwYXNz"}}}
        strategy = openshift_cluster.stored("BuildConfig", "app")["spec"]["strategy"]
        assert strategy["dockerStrategy"]["pullSecret"] == {"name": "pullsecret-kubeship"}

    def test_pull_secret_follows_from_ext(self, openshift_cluster, tmp_path) -> None:
        """Verify the pull secret is created for the registry of the ``from_ext`` base image."""
        credentials = {"quay.io": RegistryAuth("user", "pass")}
        image = _image(from_image="busybox:latest", from_ext={"name": "quay.io/acme/base:1"})

        _service(openshift_cluster, tmp_path, credentials=credentials).build(image)

        secret = openshift_cluster.stored("Secret", "pullsecret-kubeship")
        assert _docker_config(secret) == {"auths": {"quay.io": {"auth": "dXNlcjpwYXNz"}}}
        strategy = openshift_cluster.stored("BuildConfig", "app")["spec"]["strategy"]
        assert strategy["dockerStrategy"]["from"]["name"] == "quay.io/acme/base:1"
        assert strategy["dockerStrategy"]["pullSecret"] == {"name": "pullsecret-kubeship"}

    def test_no_pull_secret_without_credentials(self, openshift_cluster, tmp_path) -> None:
        """Verify no secret is created when the registry has no credentials."""
        _service(openshift_cluster, tmp_path).build(_image(from_image="registry.example.com/base/java:17"))

        assert openshift_cluster.stored("Secret", "pullsecret-kubeship") is None
        assert "pullSecret" not in openshift_cluster.stored("BuildConfig", "app")["spec"]["strategy"]["dockerStrategy"]

    def test_existing_pull_secret_is_extended(self, openshift_cluster, tmp_path) -> None:
        """Verify credentials are added to an existing pull secret without dropping others."""
        other = base64.b64encode(json.dumps({"auths": {"quay.io": {"auth": "b3RoZXI6eA=="}}}).encode()).decode()
        openshift_cluster.add({"kind": "Secret", "metadata": {"name": "pullsecret-kubeship"}, "data": {".dockerconfigjson": other}})
        credentials = {"registry.example.com": RegistryAuth("user", "pass")}

        _service(openshift_cluster, tmp_path, credentials=credentials).build(_image(from_image="registry.example.com/base/java:17"))

        assert ("PUT", "Secret", "pullsecret-kubeship") in openshift_cluster.requests
        auths = _docker_config(openshift_cluster.stored("Secret", "pullsecret-kubeship"))["auths"]
        assert set(auths) == {"quay.io", "registry.example.com"}

    def test_additional_tags(self, openshift_cluster, tmp_path) -> None:
        """Verify extra build tags become ImageStreamTags pointing at the pushed image."""
        openshift_cluster.add({"kind": "ImageStreamTag", "metadata": {"name": "app:prod"}, "tag": {}})

        _service(openshift_cluster, tmp_path).build(_image(tags=["1.0", "stable", "prod"]))

        stable = openshift_cluster.stored("ImageStreamTag", "app:stable")
        reference = openshift_cluster.stored("ImageStreamTag", "app:1.0")["image"]["dockerImageReference"]
        assert stable["tag"]["from"] == {"kind": "DockerImage", "name": reference}
        assert ("POST", "ImageStreamTag", "app:stable") in openshift_cluster.requests
        assert ("PUT", "ImageStreamTag", "app:prod") in openshift_cluster.requests
        assert ("POST", "ImageStreamTag", "app:1.0") not in openshift_cluster.requests
