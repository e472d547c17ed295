"""Container image name parser for Kubeship.

Splits references of the form ``[registry/][user/]repository[:tag][@digest]``
into their parts and derives the OpenShift ImageStream names built from them.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

_DEFAULT_TAG: str = "latest"

_DIGEST_PATTERN = re.compile(r"^[A-Za-z][A-Za-z0-9]*(?:[-_+.][A-Za-z][A-Za-z0-9]*)*:[0-9a-fA-F]{32,}$")
_TAG_PATTERN = re.compile(r"^[\w][\w.-]{0,127}$")
_COMPONENT_PATTERN = re.compile(r"^[a-z0-9]+(?:(?:[._]|__|-+)[a-z0-9]+)*$")


def _has_registry_host(first_segment: str) -> bool:
    """Determine whether the first path segment is a registry host."""
    return "." in first_segment or ":" in first_segment or first_segment == "localhost"


@dataclass(frozen=True)
class ImageName:
    """Parsed container image reference."""

    repository: str
    registry: str | None = None
    tag: str | None = None
    digest: str | None = None

    @classmethod
    def parse(cls, image: str) -> ImageName:
        """Parse a container image reference into structured components.

        Raises:
            ValueError: If the reference is empty or has an invalid tag, digest or path.
        """
        if not image or not image.strip():
            raise ValueError("Image name must not be empty")

        working = image.strip()

        # Step 1: Split off a digest
        digest: str | None = None
        if "@" in working:
            working, digest = working.split("@", 1)
            if not _DIGEST_PATTERN.match(digest):
                raise ValueError(f"Invalid digest '{digest}' in image name {image}")

        # Step 2: Extract tag from the last path segment
        segments = working.split("/")
        tag: str | None = None
        if ":" in segments[-1]:
            segments[-1], tag = segments[-1].rsplit(":", 1)
            if not _TAG_PATTERN.match(tag):
                raise ValueError(f"Invalid tag '{tag}' in image name {image}")

        # Step 3: Determine registry host
        registry: str | None = None
        if len(segments) > 1 and _has_registry_host(segments[0]):
            registry = segments.pop(0)

        for segment in segments:
            if not _COMPONENT_PATTERN.match(segment):
                raise ValueError(f"Invalid path component '{segment}' in image name {image}")

        return cls(repository="/".join(segments), registry=registry, tag=tag, digest=digest)

    @property
    def user(self) -> str | None:
        """Return the first path segment when the repository has more than one."""
        if "/" not in self.repository:
            return None
        return self.repository.split("/", 1)[0]

    @property
    def simple_name(self) -> str:
        """Return the repository without its user part."""
        user = self.user
        if user is None:
            return self.repository
        return self.repository[len(user) + 1:]

    @property
    def tag_or_latest(self) -> str:
        return self.tag or _DEFAULT_TAG

    @property
    def name_without_tag(self) -> str:
        if self.registry:
            return f"{self.registry}/{self.repository}"
        return self.repository

    @property
    def full_name(self) -> str:
        name = self.name_without_tag
        if self.digest:
            return f"{name}@{self.digest}"
        return f"{name}:{self.tag_or_latest}"

    def __str__(self) -> str:
        return self.full_name


def resolve_image_stream_name(image_name: ImageName) -> str:
    """Return the ImageStream name for an image: the last segment of its simple name."""
    return image_name.simple_name.rsplit("/", 1)[-1]


def resolve_image_stream_tag_name(image_name: ImageName) -> str:
    """Return ``<imagestream>:<tag>``, defaulting the tag to ``latest``."""
    return f"{resolve_image_stream_name(image_name)}:{image_name.tag_or_latest}"
