# reconcile_engine/runtime/inspect.py
"""
Docker inspect data -> RuntimeContainer.

Values the image supplies by default (env, cmd, entrypoint, and the anonymous
volumes backing its VOLUME declarations) are removed so the
result hashes the same as a rendered service that never mentioned them.
"""

import re
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from reconcile_engine.core.hashing import ConfigHasher
from reconcile_engine.core.models import RuntimeContainer
from reconcile_engine.render.normalize import format_port, format_volume

PROJECT_LABEL = "com.docker.compose.project"
SERVICE_LABEL = "com.docker.compose.service"
OWNER_LABEL = "owner"

_ANONYMOUS_VOLUME = re.compile(r"^[0-9a-f]{64}$")


def _env_dict(items: Optional[List[str]]) -> Dict[str, str]:
    result = {}
    for item in items or []:
        key, _, value = item.partition("=")
        result[key] = value
    return result


def _argv(value: Any) -> Optional[Tuple[str, ...]]:
    if not value:
        return None
    if isinstance(value, str):
        return (value,)
    return tuple(str(v) for v in value)


def _created(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        # Docker reports nanoseconds; fromisoformat stops at microseconds
        return datetime.fromisoformat(value[:19])
    except ValueError:
        return None


def _ports(attrs: Dict[str, Any]) -> Tuple[str, ...]:
    bindings = (attrs.get("HostConfig") or {}).get("PortBindings") or {}
    result = []
    for port_proto, hosts in bindings.items():
        target, _, protocol = port_proto.partition("/")
        for binding in hosts or [{}]:
            published = binding.get("HostPort") or None
            result.append(format_port(target, published, binding.get("HostIp"), protocol or "tcp"))
    return tuple(result)


def _volumes(
    attrs: Dict[str, Any],
    project: Optional[str],
    image_volumes: Optional[Dict[str, Any]] = None,
) -> Tuple[str, ...]:
    result = []
    for mount in attrs.get("Mounts") or []:
        target = mount.get("Destination", "")
        read_only = not mount.get("RW", True)
        if mount.get("Type") == "volume":
            name = mount.get("Name") or ""
            if _ANONYMOUS_VOLUME.match(name):
                # created for the image's own VOLUME declaration
                if image_volumes and target in image_volumes:
                    continue
                result.append(format_volume(None, target, read_only))
                continue
            # Compose prefixes named volumes with the project label
            if project and name.startswith(f"{project}_"):
                name = name[len(project) + 1:]
            result.append(format_volume(name, target, read_only))
        elif mount.get("Type") == "bind":
            result.append(format_volume(mount.get("Source"), target, read_only))
    return tuple(result)


def _ip(attrs: Dict[str, Any]) -> Optional[str]:
    networks = (attrs.get("NetworkSettings") or {}).get("Networks") or {}
    for network in networks.values():
        if network.get("IPAddress"):
            return network["IPAddress"]
    return None


def container_from_attrs(
    attrs: Dict[str, Any],
    image_attrs: Optional[Dict[str, Any]] = None,
    hasher: Optional[ConfigHasher] = None,
) -> RuntimeContainer:
    """Build a RuntimeContainer (with config hash) from `docker inspect` output."""
    config = attrs.get("Config") or {}
    image_config = (image_attrs or {}).get("Config") or {}
    labels = config.get("Labels") or {}
    project = labels.get(PROJECT_LABEL)

    image_env = _env_dict(image_config.get("Env"))
    env = {
        k: v for k, v in _env_dict(config.get("Env")).items()
        if image_env.get(k) != v
    }

    command = _argv(config.get("Cmd"))
    if image_attrs is not None and command == _argv(image_config.get("Cmd")):
        command = None
    entrypoint = _argv(config.get("Entrypoint"))
    if image_attrs is not None and entrypoint == _argv(image_config.get("Entrypoint")):
        entrypoint = None

    container = RuntimeContainer(
        name=(attrs.get("Name") or "").lstrip("/"),
        state=(attrs.get("State") or {}).get("Status", "unknown"),
        image=config.get("Image", ""),
        compose_project=project,
        compose_service=labels.get(SERVICE_LABEL),
        ip=_ip(attrs),
        ports=_ports(attrs),
        created_ts=_created(attrs.get("Created")),
        owner=labels.get(OWNER_LABEL),
        env=env,
        volumes=_volumes(attrs, project, image_config.get("Volumes")),
        command=command,
        entrypoint=entrypoint,
    )
    container.config_hash = (hasher or ConfigHasher()).hash_container(container)
    return container


def container_to_dict(container: RuntimeContainer) -> Dict[str, Any]:
    return {
        "name": container.name,
        "state": container.state,
        "image": container.image,
        "compose_project": container.compose_project,
        "compose_service": container.compose_service,
        "ip": container.ip,
        "ports": list(container.ports),
        "created": container.created_ts.isoformat() if container.created_ts else None,
        "owner": container.owner,
        "env": dict(container.env),
        "volumes": list(container.volumes),
        "command": list(container.command) if container.command else None,
        "entrypoint": list(container.entrypoint) if container.entrypoint else None,
        "config_hash": container.config_hash,
    }


def container_from_dict(data: Dict[str, Any]) -> RuntimeContainer:
    return RuntimeContainer(
        name=data["name"],
        state=data.get("state", "unknown"),
        image=data.get("image", ""),
        compose_project=data.get("compose_project"),
        compose_service=data.get("compose_service"),
        ip=data.get("ip"),
        ports=tuple(data.get("ports") or ()),
        created_ts=_created(data.get("created")),
        owner=data.get("owner"),
        env=dict(data.get("env") or {}),
        volumes=tuple(data.get("volumes") or ()),
        command=_argv(data.get("command")),
        entrypoint=_argv(data.get("entrypoint")),
        config_hash=data.get("config_hash"),
    )
