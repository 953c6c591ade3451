"""Event models for deploy streams."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional

from reconcile_engine.core.models import StackKey


@dataclass
class DeployEvent:
    """One discrete progress event of a deploy stream."""

    event_type: str
    stack: StackKey
    message: str
    timestamp: datetime = field(default_factory=datetime.utcnow)
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def terminal(self) -> bool:
        return self.event_type in ("complete", "error", "config_unchanged")

    @staticmethod
    def info(stack, message: str, **metadata):
        return DeployEvent("info", stack, message, metadata=metadata)

    @staticmethod
    def stdout(stack, line: str):
        return DeployEvent("stdout", stack, line)

    @staticmethod
    def stderr(stack, line: str):
        return DeployEvent("stderr", stack, line)

    @staticmethod
    def success(stack, message: str, **metadata):
        return DeployEvent("success", stack, message, metadata=metadata)

    @staticmethod
    def error(stack, message: str, exit_code: Optional[int] = None, **metadata):
        """Terminal failure event."""
        return DeployEvent(
            "error",
            stack,
            message,
            metadata={"exit_code": exit_code, **metadata},
        )

    @staticmethod
    def complete(stack, deployment_hash: str, service_results: Dict[str, str]):
        """Apply command exited zero. Says nothing about containers reaching running."""
        return DeployEvent(
            "complete",
            stack,
            "deployment complete",
            metadata={
                "exit_code": 0,
                "deployment_hash": deployment_hash,
                "services": dict(service_results),
            },
        )

    @staticmethod
    def config_unchanged(stack, deployment_hash: str):
        return DeployEvent(
            "config_unchanged",
            stack,
            "configuration unchanged since last successful deploy; pass force to redeploy",
            metadata={"deployment_hash": deployment_hash},
        )
