# reconcile_engine/core/hashing.py
"""
Content hashing for drift comparison and deploy idempotency.

The same canonical form is built for rendered services and live containers,
so their hashes are directly comparable. Only effective configuration is
hashed: image, environment, ports, volumes, command and entrypoint.
"""

import hashlib
import json
from typing import Any, Dict, Iterable, Optional, Sequence

from reconcile_engine.core.models import (
    IacFile,
    RenderedService,
    RenderedServiceSet,
    RuntimeContainer,
)


def _canonical(value: Any) -> Any:
    """Sort dict keys (via json) and list items so ordering never leaks into the hash."""
    if isinstance(value, dict):
        return {str(k): _canonical(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        items = [_canonical(v) for v in value]
        return sorted(items, key=lambda v: json.dumps(v, sort_keys=True))
    return value


def _digest(payload: Any) -> str:
    data = json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(data.encode("utf-8")).hexdigest()


class ConfigHasher:
    """Stable sha256 over the drift-relevant configuration fields."""

    FIELDS = ("image", "env", "ports", "volumes", "command", "entrypoint")

    def hash_fields(
        self,
        *,
        image: str,
        env: Dict[str, str],
        ports: Iterable[str],
        volumes: Iterable[str],
        command: Optional[Sequence[str]],
        entrypoint: Optional[Sequence[str]],
    ) -> str:
        payload = {
            "image": (image or "").strip(),
            "env": _canonical({k: "" if v is None else str(v) for k, v in (env or {}).items()}),
            "ports": _canonical(list(ports or ())),
            "volumes": _canonical(list(volumes or ())),
            # argv order is significant; keep as-is
            "command": list(command) if command else None,
            "entrypoint": list(entrypoint) if entrypoint else None,
        }
        return _digest(payload)

    def hash_service(self, service: RenderedService) -> str:
        return self.hash_fields(
            image=service.image,
            env=service.env,
            ports=service.ports,
            volumes=service.volumes,
            command=service.command,
            entrypoint=service.entrypoint,
        )

    def hash_container(self, container: RuntimeContainer) -> str:
        return self.hash_fields(
            image=container.image,
            env=container.env,
            ports=container.ports,
            volumes=container.volumes,
            command=container.command,
            entrypoint=container.entrypoint,
        )

    def hash_service_set(self, rendered: RenderedServiceSet) -> str:
        """Deployment hash: project label plus every service's config hash."""
        payload = {
            "project": rendered.project_label,
            "services": {
                s.service_name: {
                    "hash": s.config_hash or self.hash_service(s),
                    "container_name": s.container_name,
                }
                for s in rendered.services
            },
        }
        return _digest(payload)


def sha256_bytes(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def bundle_hash(files: Iterable[IacFile]) -> str:
    """Hash of the stored file set: sorted 'relpath:sha256' lines."""
    lines = sorted(
        f"{f.rel_path}:{f.sha256 or sha256_bytes(f.content or b'')}" for f in files
    )
    return hashlib.sha256("\n".join(lines).encode("utf-8")).hexdigest()
