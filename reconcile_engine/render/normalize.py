# reconcile_engine/render/normalize.py
"""Normalizers turning compose field shapes into canonical, hashable values."""

import os
import shlex
from typing import Any, Dict, List, Mapping, Optional, Tuple

UNSPECIFIED_HOST_IPS = ("", "0.0.0.0", "::")


# ============================================
# PORTS
# ============================================

def format_port(
    target: str,
    published: Optional[str] = None,
    host_ip: Optional[str] = None,
    protocol: Optional[str] = None,
) -> str:
    """Canonical 'host_ip:published:target/protocol' form (empty parts dropped)."""
    protocol = (protocol or "tcp").lower()
    host_ip = (host_ip or "").strip("[]")
    if host_ip in UNSPECIFIED_HOST_IPS:
        host_ip = ""

    head = f"{target}/{protocol}"
    if published:
        head = f"{published}:{head}"
        if host_ip:
            head = f"{host_ip}:{head}"
    return head


def _parse_short_port(spec: str) -> str:
    spec = spec.strip()
    protocol = None
    if "/" in spec:
        spec, protocol = spec.rsplit("/", 1)

    host_ip = None
    if spec.startswith("["):
        # [::1]:8080:80
        end = spec.index("]")
        host_ip = spec[1:end]
        spec = spec[end + 2:]

    parts = spec.split(":")
    if len(parts) == 1:
        return format_port(parts[0], protocol=protocol)
    if len(parts) == 2:
        return format_port(parts[1], published=parts[0], host_ip=host_ip, protocol=protocol)
    return format_port(
        parts[-1], published=parts[-2], host_ip=host_ip or ":".join(parts[:-2]), protocol=protocol
    )


def normalize_ports(ports: Any) -> Tuple[str, ...]:
    if not ports:
        return ()
    result = []
    for entry in ports:
        if isinstance(entry, dict):
            published = entry.get("published")
            result.append(format_port(
                str(entry.get("target", "")),
                published=str(published) if published not in (None, "") else None,
                host_ip=entry.get("host_ip"),
                protocol=entry.get("protocol"),
            ))
        else:
            result.append(_parse_short_port(str(entry)))
    return tuple(result)


# ============================================
# VOLUMES
# ============================================

def _resolve_source(source: str, project_dir: Optional[str]) -> str:
    if project_dir and source.startswith((".", "~")):
        if source.startswith("~"):
            return os.path.expanduser(source)
        return os.path.normpath(os.path.join(project_dir, source))
    return source


def format_volume(source: Optional[str], target: str, read_only: bool = False) -> str:
    parts = [p for p in (source, target) if p]
    text = ":".join(parts)
    return f"{text}:ro" if read_only else text


def normalize_volumes(volumes: Any, project_dir: Optional[str] = None) -> Tuple[str, ...]:
    """
    Canonical 'source:target[:ro]' entries; relative bind sources are made
    absolute against the stack directory.
    """
    if not volumes:
        return ()
    result = []
    for entry in volumes:
        if isinstance(entry, dict):
            source = entry.get("source")
            if source and entry.get("type", "volume") == "bind":
                source = _resolve_source(str(source), project_dir)
            result.append(format_volume(
                source, str(entry.get("target", "")), bool(entry.get("read_only"))
            ))
            continue

        parts = str(entry).split(":")
        if len(parts) == 1:
            result.append(parts[0])
            continue
        source, target = parts[0], parts[1]
        mode = parts[2] if len(parts) > 2 else ""
        read_only = "ro" in mode.split(",")
        result.append(format_volume(_resolve_source(source, project_dir), target, read_only))
    return tuple(result)


# ============================================
# ENVIRONMENT / COMMAND
# ============================================

def _stringify(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def normalize_environment(
    environment: Any,
    fallback: Optional[Mapping[str, str]] = None,
) -> Dict[str, str]:
    """
    List ('KEY=value' / 'KEY') or mapping form to a dict. A bare 'KEY'
    takes its value from fallback, or is skipped.
    """
    result: Dict[str, str] = {}
    if not environment:
        return result

    if isinstance(environment, dict):
        for k, v in environment.items():
            if v is None:
                if fallback and k in fallback:
                    result[str(k)] = fallback[k]
                continue
            result[str(k)] = _stringify(v)
        return result

    for item in environment:
        item = str(item)
        if "=" in item:
            k, v = item.split("=", 1)
            result[k.strip()] = v
        elif fallback and item.strip() in fallback:
            result[item.strip()] = fallback[item.strip()]
    return result


def normalize_command(command: Any) -> Optional[Tuple[str, ...]]:
    if command is None or command == "" or command == []:
        return None
    if isinstance(command, str):
        return tuple(shlex.split(command))
    return tuple(_stringify(c) for c in command)


def normalize_env_files(env_file: Any) -> List[str]:
    """env_file as str, list of str, or list of {path, required} mappings."""
    if not env_file:
        return []
    if isinstance(env_file, str):
        return [env_file]
    result = []
    for entry in env_file:
        if isinstance(entry, dict):
            if entry.get("path"):
                result.append(str(entry["path"]))
        else:
            result.append(str(entry))
    return result
