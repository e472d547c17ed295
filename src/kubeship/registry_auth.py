"""Registry credential lookup from explicit settings or the local docker config."""

from __future__ import annotations

import base64
import json
import logging
import os
import pathlib

from .models import RegistryAuth

_DOCKER_HUB_ALIASES: tuple[str, ...] = ("docker.io", "index.docker.io", "registry-1.docker.io", "https://index.docker.io/v1/")


def _docker_config_path() -> pathlib.Path:
    return pathlib.Path(os.environ.get("DOCKER_CONFIG", pathlib.Path.home() / ".docker")) / "config.json"


class RegistryAuthResolver:
    """Resolve credentials for a registry host.

    Args:
        credentials: Explicitly configured credentials keyed by registry host.
        docker_config: Path of the docker ``config.json``; ``$DOCKER_CONFIG`` or ``~/.docker`` by default.
    """

    def __init__(
        self,
        credentials: dict[str, RegistryAuth] | None = None,
        docker_config: str | pathlib.Path | None = None,
    ) -> None:
        self.logger = logging.getLogger(__name__)
        self.credentials = dict(credentials or {})
        self.docker_config = pathlib.Path(docker_config) if docker_config else _docker_config_path()

    def resolve(self, registry: str | None) -> RegistryAuth | None:
        """Return credentials for ``registry``, or ``None`` when none are configured."""
        if not registry:
            return None
        if registry in self.credentials:
            return self.credentials[registry]
        return self._from_docker_config(registry)

    def _from_docker_config(self, registry: str) -> RegistryAuth | None:
        if not self.docker_config.is_file():
            return None
        try:
            auths = json.loads(self.docker_config.read_text()).get("auths") or {}
        except (OSError, ValueError) as e:
            self.logger.warning(f"Unable to read docker config {self.docker_config}: {e}")
            return None

        candidates = [registry, f"https://{registry}", f"http://{registry}"]
        if registry in _DOCKER_HUB_ALIASES:
            candidates.extend(_DOCKER_HUB_ALIASES)
        for candidate in candidates:
            entry = auths.get(candidate) or auths.get(candidate.rstrip("/"))
            if entry and entry.get("auth"):
                username, _, password = base64.b64decode(entry["auth"]).decode().partition(":")
                self.logger.debug(f"Using credentials for {registry} from {self.docker_config}")
                return RegistryAuth(username=username, password=password, email=entry.get("email"))
        return None
