"""Pure helpers building the BuildConfig pieces of an OpenShift build."""

from __future__ import annotations

from typing import Any

from .archive import extract_base_images
from .image_name import ImageName, resolve_image_stream_name
from .models import (
    DEFAULT_IMAGE_STREAM_TAG_NAMESPACE,
    DEFAULT_S2I_BUILD_SUFFIX,
    DEFAULT_S2I_SOURCE_TYPE,
    BuildOutputKind,
    BuildServiceConfig,
    BuildStrategy,
    ImageConfiguration,
    Resource,
)


def compute_s2i_build_name(config: BuildServiceConfig, image_name: ImageName) -> str:
    """Return the BuildConfig name: the ImageStream name plus the configured or s2i suffix."""
    name = resolve_image_stream_name(image_name)
    if config.s2i_build_name_suffix:
        return name + config.s2i_build_name_suffix
    if config.build_strategy == BuildStrategy.S2I:
        return name + DEFAULT_S2I_BUILD_SUFFIX
    return name


def resolve_base_image(image_config: ImageConfiguration) -> str | None:
    """Return the image the build starts from: the Dockerfile's first ``FROM``, else ``from_ext`` or ``from``."""
    build = image_config.build
    if build.is_dockerfile_mode:
        images = extract_base_images(build.dockerfile, build.args)
        return images[0] if images else None
    return build.from_ext.get("name", build.from_image)


def create_build_strategy(
    config: BuildServiceConfig, image_config: ImageConfiguration, pull_secret: str | None,
) -> dict[str, Any]:
    """Create the ``spec.strategy`` of a BuildConfig.

    Raises:
        ValueError: For strategies OpenShift binary builds do not support.
    """
    build = image_config.build
    from_kind = build.from_ext.get("kind", BuildOutputKind.DOCKER_IMAGE.value)
    default_namespace = DEFAULT_IMAGE_STREAM_TAG_NAMESPACE if from_kind == BuildOutputKind.IMAGE_STREAM_TAG.value else None
    from_namespace = build.from_ext.get("namespace", default_namespace)

    source: dict[str, Any] = {"kind": from_kind, "name": resolve_base_image(image_config)}
    if from_namespace:
        source["namespace"] = from_namespace

    if config.build_strategy == BuildStrategy.DOCKER:
        strategy_type, strategy_key = "Docker", "dockerStrategy"
        details: dict[str, Any] = {
            "from": source,
            "env": [{"name": key, "value": value} for key, value in build.args.items()],
            "noCache": build.no_cache,
        }
    elif config.build_strategy == BuildStrategy.S2I:
        strategy_type, strategy_key = "Source", "sourceStrategy"
        details = {"from": source, "forcePull": config.force_pull}
    else:
        raise ValueError(f"Unsupported BuildStrategy {config.build_strategy.value}")

    if pull_secret:
        details["pullSecret"] = {"name": pull_secret}
    return {"type": strategy_type, strategy_key: details}


def create_build_output(config: BuildServiceConfig, image_name: ImageName) -> dict[str, Any]:
    """Create the ``spec.output`` of a BuildConfig."""
    if config.output_kind == BuildOutputKind.DOCKER_IMAGE:
        target_name = image_name.full_name
    else:
        target_name = f"{resolve_image_stream_name(image_name)}:{image_name.tag_or_latest}"
    output: dict[str, Any] = {"to": {"kind": config.output_kind.value, "name": target_name}}
    if config.openshift_push_secret and config.openshift_push_secret.strip():
        output["pushSecret"] = {"name": config.openshift_push_secret}
    return output


def create_build_config_spec(
    config: BuildServiceConfig, strategy: dict[str, Any], output: dict[str, Any],
) -> dict[str, Any]:
    spec: dict[str, Any] = {
        "source": {"type": DEFAULT_S2I_SOURCE_TYPE},
        "strategy": strategy,
        "output": output,
    }
    if config.build_resources:
        spec["resources"] = {key: dict(value) for key, value in config.build_resources.items()}
    return spec


def get_additional_tags_to_create(image_config: ImageConfiguration) -> list[str]:
    """Return the build tags other than the image's own tag."""
    if image_config.build is None:
        return []
    image_tag = ImageName.parse(image_config.name).tag
    return [tag for tag in image_config.build.tags if tag != image_tag]


def create_new_image_stream_tag(name: str, namespace: str, original: Resource) -> Resource:
    """Create an ImageStreamTag ``name`` pointing at the image of ``original``."""
    metadata = original.get("metadata") or {}
    return {
        "apiVersion": "image.openshift.io/v1",
        "kind": "ImageStreamTag",
        "metadata": {
            "name": name,
            "namespace": namespace,
            "labels": dict(metadata.get("labels") or {}),
            "annotations": dict(metadata.get("annotations") or {}),
        },
        "tag": {
            "from": {
                "kind": BuildOutputKind.DOCKER_IMAGE.value,
                "name": (original.get("image") or {}).get("dockerImageReference"),
            },
        },
        "generation": 0,
    }


def create_additional_tags(image_config: ImageConfiguration, namespace: str, original: Resource) -> list[Resource]:
    image_stream_name = resolve_image_stream_name(ImageName.parse(image_config.name))
    return [
        create_new_image_stream_tag(f"{image_stream_name}:{tag}", namespace, original)
        for tag in get_additional_tags_to_create(image_config)
    ]


# ---------------------------------------------------------------------------
# Build phases
# ---------------------------------------------------------------------------


def is_failed(phase: str | None) -> bool:
    return bool(phase) and phase.startswith(("Fail", "Error"))


def is_cancelled(phase: str | None) -> bool:
    return phase == "Cancelled"


def is_completed(phase: str | None) -> bool:
    return phase == "Complete"


def is_finished(phase: str | None) -> bool:
    return is_failed(phase) or is_cancelled(phase) or is_completed(phase)
