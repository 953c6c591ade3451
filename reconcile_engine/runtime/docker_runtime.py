# reconcile_engine/runtime/docker_runtime.py
"""Local Docker daemon as a container runtime (docker SDK)."""

import logging
from typing import Dict, List, Optional

import docker
from docker.errors import DockerException, ImageNotFound, NotFound

from reconcile_engine.core.hashing import ConfigHasher
from reconcile_engine.core.models import RuntimeContainer
from reconcile_engine.runtime.base import ContainerRuntime, RuntimeUnavailable
from reconcile_engine.runtime.inspect import container_from_attrs

logger = logging.getLogger(__name__)


class DockerRuntime(ContainerRuntime):
    """Reads containers from the daemon this process can reach (DOCKER_HOST or socket)."""

    def __init__(self, client=None, hasher: Optional[ConfigHasher] = None):
        self._client = client
        self._hasher = hasher or ConfigHasher()

    @property
    def client(self):
        if self._client is None:
            try:
                self._client = docker.from_env()
            except DockerException as e:
                raise RuntimeUnavailable(f"Docker not available: {e}") from None
        return self._client

    def list_containers(self, host: str) -> List[RuntimeContainer]:
        try:
            containers = self.client.containers.list(all=True)
        except DockerException as e:
            raise RuntimeUnavailable(f"[{host}] listing containers failed: {e}") from None

        image_cache: Dict[str, Optional[dict]] = {}
        result = []
        for c in containers:
            image_id = c.attrs.get("Image", "")
            if image_id not in image_cache:
                image_cache[image_id] = self._image_attrs(image_id)
            result.append(container_from_attrs(c.attrs, image_cache[image_id], self._hasher))

        logger.debug(f"[runtime] {host}: {len(result)} containers")
        return result

    def _image_attrs(self, image_id: str) -> Optional[dict]:
        if not image_id:
            return None
        try:
            return self.client.images.get(image_id).attrs
        except (ImageNotFound, NotFound):
            logger.warning(f"[runtime] image {image_id[:19]} not found; defaults not subtracted")
            return None
