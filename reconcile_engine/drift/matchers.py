# reconcile_engine/drift/matchers.py
"""
Ordered matchers pairing a rendered service with a live container.

Each matcher is a pure function; the first one that returns a container wins.
"""

import re
from typing import Callable, List, Optional, Sequence, Tuple

from reconcile_engine.core.models import RenderedService, RuntimeContainer

Matcher = Callable[[RenderedService, str, Sequence[RuntimeContainer]], Optional[RuntimeContainer]]

_REPLICA_SUFFIX = re.compile(r"[-_]\d+$")


def match_by_container_name(
    service: RenderedService,
    project_label: str,
    containers: Sequence[RuntimeContainer],
) -> Optional[RuntimeContainer]:
    """Exact container_name, only when the service declares one."""
    if not service.explicit_container_name:
        return None
    for c in containers:
        if c.name == service.container_name:
            return c
    return None


def match_by_service_label(
    service: RenderedService,
    project_label: str,
    containers: Sequence[RuntimeContainer],
) -> Optional[RuntimeContainer]:
    """com.docker.compose.project / .service labels reported by the runtime."""
    for c in containers:
        if c.compose_service is None:
            continue
        if c.compose_service == service.service_name and c.compose_project == project_label:
            return c
    return None


def strip_replica_suffix(name: str) -> str:
    return _REPLICA_SUFFIX.sub("", name)


def match_by_name_decomposition(
    service: RenderedService,
    project_label: str,
    containers: Sequence[RuntimeContainer],
) -> Optional[RuntimeContainer]:
    """'<project>-<service>-N' (compose v2) or '<project>_<service>_N' (v1)."""
    candidates = (
        f"{project_label}-{service.service_name}",
        f"{project_label}_{service.service_name}",
    )
    for c in containers:
        if strip_replica_suffix(c.name) in candidates:
            return c
    return None


MATCHERS: List[Tuple[str, Matcher]] = [
    ("container_name", match_by_container_name),
    ("service_label", match_by_service_label),
    ("name_decomposition", match_by_name_decomposition),
]


def find_match(
    service: RenderedService,
    project_label: str,
    containers: Sequence[RuntimeContainer],
    matchers: Optional[List[Tuple[str, Matcher]]] = None,
) -> Tuple[Optional[RuntimeContainer], Optional[str]]:
    """Return (container, matcher name), or (None, None)."""
    for name, matcher in matchers or MATCHERS:
        found = matcher(service, project_label, containers)
        if found is not None:
            return found, name
    return None, None
