# runtime_agent/client.py
"""Runtime Agent client used by the engine to read remote hosts."""

import logging
from typing import Any, Dict, List, Optional

import requests

from reconcile_engine.core.models import RuntimeContainer
from reconcile_engine.runtime.base import RuntimeUnavailable
from reconcile_engine.runtime.inspect import container_from_dict

logger = logging.getLogger(__name__)


class RuntimeAgentClient:
    """Client for communicating with a Runtime Agent."""

    def __init__(self, agent_url: str, timeout: int = 30, session: Optional[requests.Session] = None):
        """
        Initialize client.

        Args:
            agent_url: Base URL of runtime agent (e.g., "http://10.0.1.10:9000")
            timeout: Request timeout in seconds
            session: Optional requests session (tests pass a stub)
        """
        self.base_url = agent_url.rstrip('/')
        self.timeout = timeout
        self._http = session or requests.Session()

    def health_check(self) -> bool:
        """
        Check if agent is healthy.

        Returns:
            True if healthy, False otherwise
        """
        try:
            response = self._http.get(f"{self.base_url}/health", timeout=5)
            return response.status_code == 200
        except requests.exceptions.RequestException as e:
            logger.error(f"Health check failed for {self.base_url}: {e}")
            return False

    def list_containers(self) -> List[RuntimeContainer]:
        """
        All containers on the agent's host.

        Raises:
            RuntimeUnavailable: agent unreachable or returned an error
        """
        try:
            response = self._http.get(f"{self.base_url}/containers", timeout=self.timeout)
        except requests.exceptions.Timeout:
            raise RuntimeUnavailable(f"Runtime agent timeout after {self.timeout}s") from None
        except requests.exceptions.ConnectionError:
            raise RuntimeUnavailable(f"Cannot connect to runtime agent at {self.base_url}") from None

        if response.status_code != 200:
            detail = _detail(response)
            raise RuntimeUnavailable(f"Runtime agent error [{response.status_code}]: {detail}")

        data = response.json()
        return [container_from_dict(item) for item in data.get("containers", [])]


def _detail(response) -> str:
    try:
        body: Dict[str, Any] = response.json()
        return str(body.get("detail", response.text))
    except ValueError:
        return response.text
