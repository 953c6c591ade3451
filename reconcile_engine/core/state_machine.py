# reconcile_engine/core/state_machine.py

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional, Tuple

from reconcile_engine.core.models import StackKey


class DeployState(Enum):
    IDLE = "idle"
    CONFIG_CHECK = "config_check"
    UNCHANGED = "unchanged"
    PROCEEDING = "proceeding"
    APPLYING = "applying"
    SUCCESS = "success"
    FAILED = "failed"


ALLOWED_TRANSITIONS = {
    DeployState.IDLE: {
        DeployState.CONFIG_CHECK,
    },
    DeployState.CONFIG_CHECK: {
        DeployState.UNCHANGED,
        DeployState.PROCEEDING,
        DeployState.FAILED,
    },
    # Leaving UNCHANGED requires an explicit confirmation (force)
    DeployState.UNCHANGED: {
        DeployState.PROCEEDING,
    },
    DeployState.PROCEEDING: {
        DeployState.APPLYING,
        DeployState.FAILED,
    },
    DeployState.APPLYING: {
        DeployState.SUCCESS,
        DeployState.FAILED,
    },
}

TERMINAL_STATES = {DeployState.SUCCESS, DeployState.FAILED}


class InvalidStateTransition(Exception):
    pass


@dataclass
class DeployRun:
    """State of a single deploy invocation."""

    stack: StackKey
    force: bool = False
    state: DeployState = DeployState.IDLE
    history: List[Tuple[DeployState, datetime]] = field(default_factory=list)
    reason: Optional[str] = None

    @property
    def finished(self) -> bool:
        return self.state in TERMINAL_STATES


class DeployStateMachine:
    @staticmethod
    def transition(
        run: DeployRun,
        new_state: DeployState,
        *,
        now: datetime | None = None,
    ) -> DeployRun:
        now = now or datetime.utcnow()

        current = run.state

        if current == new_state:
            return run

        allowed = ALLOWED_TRANSITIONS.get(current, set())
        if new_state not in allowed:
            raise InvalidStateTransition(
                f"Cannot transition from {current} to {new_state}"
            )

        if current == DeployState.UNCHANGED and not run.force:
            raise InvalidStateTransition(
                "Configuration unchanged since last successful deploy; force required"
            )

        run.history.append((new_state, now))
        run.state = new_state
        return run
