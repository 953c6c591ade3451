# reconcile_engine/runtime/agent_runtime.py
"""Remote hosts, read through their runtime agent."""

from typing import Dict, List

from reconcile_engine.core.models import RuntimeContainer
from reconcile_engine.runtime.base import ContainerRuntime, RuntimeUnavailable
from runtime_agent.client import RuntimeAgentClient


class AgentContainerRuntime(ContainerRuntime):
    def __init__(self, agents: Dict[str, RuntimeAgentClient]):
        self._agents = dict(agents)

    @classmethod
    def from_urls(cls, urls: Dict[str, str], timeout: int = 30) -> "AgentContainerRuntime":
        return cls({host: RuntimeAgentClient(url, timeout=timeout) for host, url in urls.items()})

    def list_containers(self, host: str) -> List[RuntimeContainer]:
        client = self._agents.get(host)
        if client is None:
            raise RuntimeUnavailable(f"No runtime agent configured for host {host}")
        return client.list_containers()
