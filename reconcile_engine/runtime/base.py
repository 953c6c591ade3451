# reconcile_engine/runtime/base.py
"""Container runtime contract: read-only view of live containers per host."""

import logging
from abc import ABC, abstractmethod
from typing import Dict, List, Optional

from reconcile_engine.core.models import RuntimeContainer

logger = logging.getLogger(__name__)


class RuntimeUnavailable(Exception):
    """The runtime for a host could not be reached."""
    pass


class ContainerRuntime(ABC):
    @abstractmethod
    def list_containers(self, host: str) -> List[RuntimeContainer]:
        """All containers on the host, running or not."""
        pass


class RoutedContainerRuntime(ContainerRuntime):
    """Dispatch per host: explicit routes first, then the default runtime."""

    def __init__(
        self,
        routes: Optional[Dict[str, ContainerRuntime]] = None,
        default: Optional[ContainerRuntime] = None,
    ):
        self._routes = dict(routes or {})
        self._default = default

    def list_containers(self, host: str) -> List[RuntimeContainer]:
        runtime = self._routes.get(host, self._default)
        if runtime is None:
            raise RuntimeUnavailable(f"No container runtime configured for host {host}")
        return runtime.list_containers(host)
