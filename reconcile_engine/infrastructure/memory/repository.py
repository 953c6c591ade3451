# reconcile_engine/infrastructure/memory/repository.py

from dataclasses import replace
from threading import Lock
from typing import Dict, List, Optional, Tuple

from reconcile_engine.core.repository import StackRepository, VARIABLE_SCOPES
from reconcile_engine.core.models import (
    DeployStamp,
    DeployStatus,
    IacFile,
    ScopeKind,
    Stack,
    StackKey,
)
from reconcile_engine.core.errors import Conflict, NotFound


class InMemoryStackRepository(StackRepository):
    def __init__(self):
        self._stacks: dict[StackKey, Stack] = {}
        self._files: dict[StackKey, dict[str, IacFile]] = {}
        self._stamps: dict[StackKey, list[DeployStamp]] = {}
        self._variables: dict[Tuple[str, str], Dict[str, str]] = {}
        self._host_groups: dict[str, list[str]] = {}
        self._settings: dict[str, str] = {}
        self._next_stamp_id = 1
        self._lock = Lock()

    # -------------------------
    # STACKS
    # -------------------------

    def create_stack(self, stack: Stack) -> None:
        with self._lock:
            if stack.key in self._stacks:
                raise Conflict(f"Stack {stack.key} already exists")
            self._stacks[stack.key] = stack
            self._files.setdefault(stack.key, {})

    def get_stack(self, key: StackKey) -> Optional[Stack]:
        return self._stacks.get(key)

    def list_stacks(
        self,
        scope_kind: Optional[ScopeKind] = None,
        scope_name: Optional[str] = None,
    ) -> List[Stack]:
        results = []
        for key, stack in self._stacks.items():
            if scope_kind is not None and key.scope_kind != scope_kind:
                continue
            if scope_name is not None and key.scope_name != scope_name:
                continue
            results.append(stack)
        return sorted(results, key=lambda s: (s.key.scope_kind.value, s.key.scope_name, s.key.stack_name))

    def update_stack(self, stack: Stack) -> None:
        with self._lock:
            if stack.key not in self._stacks:
                raise NotFound(f"Stack {stack.key} not found")
            self._stacks[stack.key] = stack

    def delete_stack(self, key: StackKey) -> None:
        with self._lock:
            if key not in self._stacks:
                raise NotFound(f"Stack {key} not found")
            del self._stacks[key]
            self._files.pop(key, None)
            self._stamps.pop(key, None)

    # -------------------------
    # FILES
    # -------------------------

    def upsert_file(self, key: StackKey, iac_file: IacFile) -> None:
        with self._lock:
            if key not in self._stacks:
                raise NotFound(f"Stack {key} not found")
            self._files.setdefault(key, {})[iac_file.rel_path] = replace(iac_file, content=None)

    def list_files(self, key: StackKey) -> List[IacFile]:
        files = self._files.get(key, {})
        return [files[p] for p in sorted(files)]

    def delete_file(self, key: StackKey, rel_path: str) -> bool:
        with self._lock:
            return self._files.get(key, {}).pop(rel_path, None) is not None

    # -------------------------
    # DEPLOY STAMPS
    # -------------------------

    def add_stamp(self, stamp: DeployStamp) -> DeployStamp:
        with self._lock:
            stamp.stamp_id = self._next_stamp_id
            self._next_stamp_id += 1
            self._stamps.setdefault(stamp.stack, []).append(stamp)
            return stamp

    def update_stamp(self, stamp: DeployStamp) -> None:
        with self._lock:
            stamps = self._stamps.get(stamp.stack, [])
            for i, existing in enumerate(stamps):
                if existing.stamp_id == stamp.stamp_id:
                    stamps[i] = stamp
                    return
            raise NotFound(f"Stamp {stamp.stamp_id} not found")

    def latest_stamp(
        self,
        key: StackKey,
        status: Optional[DeployStatus] = None,
    ) -> Optional[DeployStamp]:
        for stamp in reversed(self._stamps.get(key, [])):
            if status is None or stamp.status == status:
                return stamp
        return None

    def list_stamps(self, key: StackKey, limit: int = 20) -> List[DeployStamp]:
        return list(reversed(self._stamps.get(key, [])))[:limit]

    # -------------------------
    # SCOPE VARIABLES / GROUPS / SETTINGS
    # -------------------------

    def get_variables(self, scope: str, name: str = "") -> Dict[str, str]:
        return dict(self._variables.get((scope, name), {}))

    def set_variables(self, scope: str, name: str, variables: Dict[str, str]) -> None:
        if scope not in VARIABLE_SCOPES:
            raise ValueError(f"Unknown variable scope: {scope}")
        with self._lock:
            self._variables[(scope, name)] = dict(variables)

    def get_host_groups(self, host: str) -> List[str]:
        return sorted(self._host_groups.get(host, []))

    def set_host_groups(self, host: str, groups: List[str]) -> None:
        with self._lock:
            self._host_groups[host] = sorted(set(groups))

    def list_groups(self) -> List[str]:
        groups = {g for gs in self._host_groups.values() for g in gs}
        groups |= {name for (scope, name) in self._variables if scope == "group"}
        return sorted(groups)

    def get_setting(self, key: str) -> Optional[str]:
        return self._settings.get(key)

    def set_setting(self, key: str, value: Optional[str]) -> None:
        with self._lock:
            if value is None:
                self._settings.pop(key, None)
            else:
                self._settings[key] = value
