"""Build context archives for OpenShift binary builds."""

from __future__ import annotations

import io
import logging
import pathlib
import re
import tarfile

from .models import ImageConfiguration

logger = logging.getLogger(__name__)

_ARG_REFERENCE = re.compile(r"\$\{([^}:]+)(?::-([^}]*))?\}|\$([A-Za-z_][A-Za-z0-9_]*)")
_SANITIZE = re.compile(r"[^A-Za-z0-9._-]")


def _resolve_args(value: str, args: dict[str, str]) -> str:
    def _replace(match: re.Match[str]) -> str:
        name = match.group(1) or match.group(3)
        default = match.group(2)
        if name in args:
            return args[name]
        return default if default is not None else match.group(0)

    return _ARG_REFERENCE.sub(_replace, value)


def extract_base_images(dockerfile: str | pathlib.Path, build_args: dict[str, str] | None = None) -> list[str]:
    """Return the distinct base images named in ``FROM`` lines, skipping earlier stage aliases.

    ``ARG`` defaults and ``build_args`` are substituted into the image names.
    """
    args: dict[str, str] = {}
    images: list[str] = []
    aliases: set[str] = set()
    for raw_line in pathlib.Path(dockerfile).read_text().splitlines():
        parts = raw_line.strip().split()
        if not parts or parts[0].startswith("#"):
            continue
        instruction = parts[0].upper()
        if instruction == "ARG" and len(parts) > 1:
            key, _, default = parts[1].partition("=")
            args[key] = (build_args or {}).get(key, default)
        elif instruction == "FROM" and len(parts) > 1:
            image_parts = [part for part in parts[1:] if not part.startswith("--")]
            if not image_parts:
                continue
            image = _resolve_args(image_parts[0], {**args, **(build_args or {})})
            if image not in aliases and image not in images:
                images.append(image)
            if len(image_parts) == 3 and image_parts[1].upper() == "AS":
                aliases.add(image_parts[2])
    return images


def _add_bytes(tar: tarfile.TarFile, name: str, data: bytes) -> None:
    info = tarfile.TarInfo(name)
    info.size = len(data)
    info.mode = 0o644
    tar.addfile(info, io.BytesIO(data))


def create_build_archive(image_config: ImageConfiguration, build_directory: str | pathlib.Path) -> pathlib.Path:
    """Pack the build context of an image into a tar file.

    The context is ``build.context_dir``, else the Dockerfile's directory.  In
    Dockerfile mode the Dockerfile is placed at the archive root; build
    ``env`` entries are written to ``.s2i/environment``.

    Args:
        image_config: The image to build.
        build_directory: Directory receiving the archive.

    Returns:
        Path to the created archive.

    Raises:
        OSError: If the context cannot be read or the archive cannot be written.
    """
    build = image_config.build
    if build is None:
        raise OSError(f"Image {image_config.name} has no build configuration")

    dockerfile = pathlib.Path(build.dockerfile) if build.dockerfile else None
    if build.context_dir:
        context = pathlib.Path(build.context_dir)
    elif dockerfile is not None:
        context = dockerfile.parent
    else:
        raise OSError(f"Image {image_config.name} has neither a context directory nor a Dockerfile")
    if not context.is_dir():
        raise FileNotFoundError(f"Build context {context} of image {image_config.name} does not exist")

    target_dir = pathlib.Path(build_directory) / _SANITIZE.sub("_", image_config.name)
    target_dir.mkdir(parents=True, exist_ok=True)
    archive_path = target_dir / "docker-build.tar"

    with tarfile.open(archive_path, "w") as tar:
        for path in sorted(context.rglob("*")):
            if path.is_file() and path.resolve() != archive_path.resolve():
                tar.add(path, arcname=path.relative_to(context).as_posix())
        if dockerfile is not None and dockerfile.resolve() != (context / "Dockerfile").resolve():
            _add_bytes(tar, "Dockerfile", dockerfile.read_bytes())
        if build.env:
            environment = "".join(f"{key}={value}\n" for key, value in build.env.items())
            _add_bytes(tar, ".s2i/environment", environment.encode())

    logger.debug(f"Created build archive {archive_path} from {context}")
    return archive_path
