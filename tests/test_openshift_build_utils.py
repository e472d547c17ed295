"""Unit tests for the BuildConfig helpers."""

from __future__ import annotations

import pytest

from kubeship.image_name import ImageName
from kubeship.models import (
    BuildConfiguration,
    BuildOutputKind,
    BuildServiceConfig,
    BuildStrategy,
    ImageConfiguration,
)
from kubeship.openshift_build_utils import (
    compute_s2i_build_name,
    create_additional_tags,
    create_build_config_spec,
    create_build_output,
    create_build_strategy,
    get_additional_tags_to_create,
    is_finished,
)


def _config(**kwargs: object) -> BuildServiceConfig:
    return BuildServiceConfig("target/build", "app", **kwargs)


class TestBuildNames:
    """Tests for ``compute_s2i_build_name``."""

    @pytest.mark.parametrize(
        ("strategy", "suffix", "expected"),
        [
            (BuildStrategy.DOCKER, None, "app"),
            (BuildStrategy.S2I, None, "app-s2i"),
            (BuildStrategy.DOCKER, "-build", "app-build"),
        ],
    )
    def test_build_name(self, strategy: BuildStrategy, suffix: str | None, expected: str) -> None:
        """Verify the BuildConfig name is the ImageStream name plus the applicable suffix."""
        config = _config(build_strategy=strategy, s2i_build_name_suffix=suffix)
        assert compute_s2i_build_name(config, ImageName.parse("registry.io/acme/app:1.0")) == expected


class TestBuildStrategy:
    """Tests for ``create_build_strategy``."""

    def test_docker_strategy(self) -> None:
        """Verify a Docker strategy carries base image, build args, cache flag and pull secret."""
        image = ImageConfiguration("acme/app:1.0", BuildConfiguration(from_image="busybox:1.36", args={"VERSION": "1"}, no_cache=True))

        strategy = create_build_strategy(_config(), image, "pullsecret-kubeship")

        assert strategy == {
            "type": "Docker",
            "dockerStrategy": {
                "from": {"kind": "DockerImage", "name": "busybox:1.36"},
                "env": [{"name": "VERSION", "value": "1"}],
                "noCache": True,
                "pullSecret": {"name": "pullsecret-kubeship"},
            },
        }

    def test_source_strategy_from_image_stream_tag(self) -> None:
        """Verify an ImageStreamTag base defaults to the ``openshift`` namespace."""
        build = BuildConfiguration(from_ext={"kind": "ImageStreamTag", "name": "java:17"})
        config = _config(build_strategy=BuildStrategy.S2I, force_pull=True)

        strategy = create_build_strategy(config, ImageConfiguration("acme/app", build), None)

        assert strategy == {
            "type": "Source",
            "sourceStrategy": {"from": {"kind": "ImageStreamTag", "name": "java:17", "namespace": "openshift"}, "forcePull": True},
        }

    def test_dockerfile_base_image(self, tmp_path) -> None:
        """Verify the base image is read from the Dockerfile in Dockerfile mode."""
        dockerfile = tmp_path / "Dockerfile"
        dockerfile.write_text("FROM eclipse-temurin:17\nCOPY app.jar /app.jar\n")
        image = ImageConfiguration("acme/app", BuildConfiguration(dockerfile=str(dockerfile)))

        strategy = create_build_strategy(_config(), image, None)

        assert strategy["dockerStrategy"]["from"]["name"] == "eclipse-temurin:17"

    def test_jib_is_unsupported(self) -> None:
        """Verify the jib strategy is rejected."""
        image = ImageConfiguration("acme/app", BuildConfiguration(from_image="busybox"))
        with pytest.raises(ValueError, match="Unsupported BuildStrategy jib"):
            create_build_strategy(_config(build_strategy=BuildStrategy.JIB), image, None)


class TestBuildOutput:
    """Tests for ``create_build_output`` and ``create_build_config_spec``."""

    def test_image_stream_tag_output(self) -> None:
        """Verify the default output is an ImageStreamTag named after the image."""
        output = create_build_output(_config(), ImageName.parse("registry.io/acme/app:1.0"))
        assert output == {"to": {"kind": "ImageStreamTag", "name": "app:1.0"}}

    def test_docker_image_output_with_push_secret(self) -> None:
        """Verify a DockerImage output uses the full image name and the push secret."""
        config = _config(output_kind=BuildOutputKind.DOCKER_IMAGE, openshift_push_secret="push")
        output = create_build_output(config, ImageName.parse("registry.io/acme/app"))
        assert output == {"to": {"kind": "DockerImage", "name": "registry.io/acme/app:latest"}, "pushSecret": {"name": "push"}}

    def test_spec_is_binary_with_resources(self) -> None:
        """Verify the BuildConfig spec uses a Binary source and the configured resources."""
        config = _config(build_resources={"limits": {"memory": "1Gi"}})
        spec = create_build_config_spec(config, {"type": "Docker"}, {"to": {}})
        assert spec["source"] == {"type": "Binary"}
        assert spec["resources"] == {"limits": {"memory": "1Gi"}}


class TestAdditionalTags:
    """Tests for additional ImageStreamTags."""

    def test_image_tag_is_excluded(self) -> None:
        """Verify the image's own tag is not created again."""
        image = ImageConfiguration("acme/app:1.0", BuildConfiguration(tags=["1.0", "stable", "prod"]))
        assert get_additional_tags_to_create(image) == ["stable", "prod"]
        assert get_additional_tags_to_create(ImageConfiguration("acme/app")) == []

    def test_tags_point_at_original_image(self) -> None:
        """Verify new tags copy labels and reference the pushed image."""
        image = ImageConfiguration("acme/app:1.0", BuildConfiguration(tags=["stable"]))
        original = {
            "metadata": {"name": "app:1.0", "labels": {"app": "app"}},
            "image": {"dockerImageReference": "172.30.1.1:5000/test/app@sha256:abc"},
        }

        tags = create_additional_tags(image, "test", original)

        assert len(tags) == 1
        assert tags[0]["metadata"]["name"] == "app:stable"
        assert tags[0]["metadata"]["labels"] == {"app": "app"}
        assert tags[0]["tag"]["from"] == {"kind": "DockerImage", "name": "172.30.1.1:5000/test/app@sha256:abc"}


@pytest.mark.parametrize(
    ("phase", "finished"),
    [("Complete", True), ("Failed", True), ("Error", True), ("Cancelled", True), ("Running", False), (None, False)],
)
def test_is_finished(phase: str | None, finished: bool) -> None:
    """Verify which build phases count as finished."""
    assert is_finished(phase) is finished
