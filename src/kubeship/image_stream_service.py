"""Resolve the image pushed to an ImageStream and record it in an ImageStream file."""

from __future__ import annotations

import logging
import pathlib
import time
from collections.abc import Callable
from datetime import datetime
from typing import Any

from .image_name import ImageName, resolve_image_stream_name
from .kubernetes_controller import KubernetesController
from .models import (
    IMAGE_STREAM_TAG_DATE_FORMAT,
    IMAGE_STREAM_TAG_RETRIES,
    IMAGE_STREAM_TAG_RETRY_DELAY_SECONDS,
    Resource,
)
from .resources import kind_of, load_resources, write_resources
from .retry import poll

TagEvent = dict[str, Any]


class ImageStreamTagNotFoundError(RuntimeError):
    """Raised when no tag could be resolved for an ImageStream.

    ``image_stream_found`` tells a missing ImageStream apart from one that
    exists but never reported a tag.
    """

    def __init__(self, message: str, image_stream_found: bool) -> None:
        super().__init__(message)
        self.image_stream_found = image_stream_found


class ImageStreamService:
    """Handler for ImageStream tag lookups.

    Args:
        controller: Cluster access.
        namespace: Namespace of the ImageStreams; defaults to the controller namespace.
        max_attempts: Lookups before giving up.
        delay_seconds: Fixed delay between lookups.
        sleep: Sleep function, injectable for tests.
    """

    def __init__(
        self,
        controller: KubernetesController,
        namespace: str | None = None,
        max_attempts: int = IMAGE_STREAM_TAG_RETRIES,
        delay_seconds: float = IMAGE_STREAM_TAG_RETRY_DELAY_SECONDS,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.logger = logging.getLogger(__name__)
        self.controller = controller
        self.namespace = namespace or controller.namespace
        self.max_attempts = max_attempts
        self.delay_seconds = delay_seconds
        self._sleep = sleep

    # ------------------------------------------------------------------
    # Tag resolution
    # ------------------------------------------------------------------

    def _parse_created(self, tag: TagEvent | None) -> datetime | None:
        if tag is None:
            return None
        created = tag.get("created")
        if created is None:
            self.logger.debug("Tag event has no creation date")
            return None
        try:
            return datetime.strptime(str(created).strip(), IMAGE_STREAM_TAG_DATE_FORMAT)
        except ValueError as e:
            self.logger.debug(f"Unable to parse tag creation date '{created}': {e}")
            return None

    def newer_tag(self, tag: TagEvent | None, latest: TagEvent | None) -> TagEvent | None:
        """Return the more recently created of two tag events.

        A tag event without a parsable ``created`` date loses against one with
        a valid date; between two undated events ``latest`` wins.
        """
        tag_date = self._parse_created(tag)
        latest_date = self._parse_created(latest)
        if tag_date is None:
            return latest
        if latest_date is None:
            return tag
        return tag if tag_date > latest_date else latest

    def latest_tag(self, image_stream: Resource) -> TagEvent | None:
        """Return the most recently created tag event across all of the stream's tags."""
        latest: TagEvent | None = None
        for tag_list in (image_stream.get("status") or {}).get("tags") or []:
            for tag in tag_list.get("items") or []:
                latest = tag if latest is None else self.newer_tag(tag, latest)
        return latest

    def resolve_tag_digest(self, image_stream_name: str, namespace: str | None = None) -> str:
        """Return the image digest of the newest tag of an ImageStream, retrying until it appears.

        Raises:
            ImageStreamTagNotFoundError: Once all attempts are exhausted.
        """
        target_namespace = namespace or self.namespace
        found = False

        def _attempt() -> str | None:
            nonlocal found
            image_stream = self.controller.get_resource("ImageStream", image_stream_name, namespace=target_namespace)
            if image_stream is None:
                return None
            found = True
            latest = self.latest_tag(image_stream)
            if latest and latest.get("image"):
                self.logger.info(f"Found tag on ImageStream {image_stream_name} tag: {latest['image']}")
                return latest["image"]
            return None

        digest = poll(
            _attempt,
            max_attempts=self.max_attempts,
            delay_seconds=self.delay_seconds,
            sleep=self._sleep,
            before_retry=lambda attempt: self.logger.info(f"Retrying to find tag on ImageStream {image_stream_name}"),
        )
        if digest:
            return digest
        if not found:
            raise ImageStreamTagNotFoundError(
                f"Could not find a current ImageStream with name {image_stream_name} in namespace {target_namespace}",
                image_stream_found=False,
            )
        raise ImageStreamTagNotFoundError(
            f"Could not find a tag in the ImageStream {image_stream_name}", image_stream_found=True,
        )

    # ------------------------------------------------------------------
    # ImageStream file
    # ------------------------------------------------------------------

    def append_image_stream_resource(self, image_name: ImageName, target: str | pathlib.Path) -> Resource:
        """Resolve the pushed image and add its ImageStream to ``target``.

        ImageStreams already in the file are kept; one with the same name is replaced.

        Returns:
            The ImageStream written.

        Raises:
            OSError: If the file cannot be written.
        """
        name = resolve_image_stream_name(image_name)
        digest = self.resolve_tag_digest(name, self.namespace)
        image_stream = {
            "apiVersion": "image.openshift.io/v1",
            "kind": "ImageStream",
            "metadata": {"name": name},
            "spec": {
                "tags": [
                    {
                        "name": image_name.tag_or_latest,
                        "from": {"kind": "ImageStreamImage", "name": f"{name}@{digest}", "namespace": self.namespace},
                    },
                ],
            },
        }
        existing = [resource for resource in load_resources(target) if kind_of(resource) == "ImageStream"]
        try:
            write_resources(target, [*existing, image_stream], merge=False)
        except OSError as e:
            raise OSError(f"Cannot write ImageStream descriptor for {image_name.full_name} to {target}: {e}") from e
        self.logger.info(f"ImageStream {name} written to {target}")
        return image_stream
