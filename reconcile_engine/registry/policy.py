# reconcile_engine/registry/policy.py
"""
Effective auto-devops resolution.

Most specific explicit value wins:
    stack override
    -> same-named stack in one of the host's groups (groups by name, ascending)
    -> host- or group-level default
    -> global override
    -> environment default
    -> off
"""

from dataclasses import dataclass
from typing import Iterable, Optional, Tuple

TRUE_WORDS = ("enable", "on", "true", "1", "yes")
FALSE_WORDS = ("disable", "off", "false", "0", "no")

GLOBAL_SETTING = "auto_devops"


def scope_setting(scope_kind: str, scope_name: str) -> str:
    return f"auto_devops.{scope_kind}.{scope_name}"


def parse_tristate(value: Optional[str]) -> Optional[bool]:
    if value is None:
        return None
    v = value.strip().lower()
    if v in TRUE_WORDS:
        return True
    if v in FALSE_WORDS:
        return False
    return None


@dataclass(frozen=True)
class AutoDevopsDecision:
    enabled: bool
    origin: str


def effective_auto_devops(
    stack_override: Optional[bool],
    group_overrides: Iterable[Tuple[str, Optional[bool]]] = (),
    scope_default: Optional[bool] = None,
    scope_kind: str = "host",
    global_override: Optional[bool] = None,
    env_default: Optional[bool] = None,
) -> AutoDevopsDecision:
    if stack_override is not None:
        return AutoDevopsDecision(stack_override, "stack")

    for _, override in sorted(group_overrides, key=lambda g: g[0]):
        if override is not None:
            return AutoDevopsDecision(override, "group")

    if scope_default is not None:
        return AutoDevopsDecision(scope_default, scope_kind)

    if global_override is not None:
        return AutoDevopsDecision(global_override, "global")

    if env_default is not None:
        return AutoDevopsDecision(env_default, "env")

    return AutoDevopsDecision(False, "fallback")
