# reconcile_engine/registry/service.py
"""Stack Registry - stack records, IaC files and auto-devops policy."""

import logging
from datetime import datetime
from typing import Callable, Dict, List, Optional, Union

from reconcile_engine.core.errors import NotFound, PreconditionFailed
from reconcile_engine.core.hashing import bundle_hash, sha256_bytes
from reconcile_engine.core.locks import StackLockTable
from reconcile_engine.core.models import (
    IacFile,
    ScopeKind,
    Stack,
    StackKey,
    StackSnapshot,
)
from reconcile_engine.core.repository import StackRepository
from reconcile_engine.registry.file_store import IacFileStore
from reconcile_engine.registry.policy import (
    GLOBAL_SETTING,
    AutoDevopsDecision,
    effective_auto_devops,
    parse_tristate,
    scope_setting,
)
from reconcile_engine.registry.roles import infer_role, wants_auto_encrypt
from reconcile_engine.secrets.dotenv import detect_format, is_sops_document
from reconcile_engine.secrets.resolver import SecretResolver

logger = logging.getLogger(__name__)

ChangeListener = Callable[[StackKey], None]


def _tristate_text(value: Optional[bool]) -> Optional[str]:
    if value is None:
        return None
    return "true" if value else "false"


def _looks_encrypted(rel_path: str, data: bytes) -> bool:
    try:
        text = data.decode("utf-8")
    except UnicodeDecodeError:
        return False
    return is_sops_document(text, detect_format(rel_path))


class StackRegistry:
    """
    CRUD over stacks keyed by (scope_kind, scope_name, stack_name).

    File writes and snapshots for a stack are serialized on the same lock,
    so a renderer never sees half-written files.
    """

    def __init__(
        self,
        repository: StackRepository,
        file_store: IacFileStore,
        resolver: SecretResolver,
        env_default: Optional[bool] = None,
    ):
        self._repo = repository
        self._files = file_store
        self._resolver = resolver
        self._env_default = env_default
        self._locks = StackLockTable()
        self._listeners: List[ChangeListener] = []

    @property
    def repository(self) -> StackRepository:
        return self._repo

    @property
    def file_store(self) -> IacFileStore:
        return self._files

    def add_listener(self, listener: ChangeListener) -> None:
        """Called with the stack key after any file or record change."""
        self._listeners.append(listener)

    def _notify(self, key: StackKey) -> None:
        for listener in self._listeners:
            listener(key)

    # -------------------------
    # STACKS
    # -------------------------

    def create(self, scope_kind: ScopeKind, scope_name: str, stack_name: str) -> Stack:
        """Create an empty stack record. Raises Conflict on duplicate name in scope."""
        key = StackKey(scope_kind, scope_name, stack_name)
        # Validates the name as a path component before anything is stored
        self._files.stack_dir(key)

        stack = Stack(key=key, iac_enabled=False)
        self._repo.create_stack(stack)
        logger.info(f"[registry] created stack {key}")
        return stack

    def get(self, key: StackKey) -> Stack:
        stack = self._repo.get_stack(key)
        if stack is None:
            raise NotFound(f"Stack {key} not found")
        return stack

    def list(
        self,
        scope_kind: Optional[ScopeKind] = None,
        scope_name: Optional[str] = None,
    ) -> List[Stack]:
        return self._repo.list_stacks(scope_kind, scope_name)

    def delete(self, key: StackKey) -> None:
        """
        Remove the registry entry and the stack's IaC files.

        Running containers are NOT touched; the registry has no runtime access.
        """
        with self._locks.hold(key):
            self.get(key)
            self._repo.delete_stack(key)
            self._files.delete_stack(key)
        logger.info(f"[registry] deleted stack {key} (containers left running)")
        self._notify(key)

    def update(self, stack: Stack) -> None:
        stack.updated_at = datetime.utcnow()
        self._repo.update_stack(stack)

    # -------------------------
    # FLAGS
    # -------------------------

    def set_auto_devops(self, key: StackKey, enabled: Optional[bool]) -> Stack:
        """Set the stack override; None clears it. Enabling needs content."""
        stack = self.get(key)
        if enabled and not stack.has_content:
            raise PreconditionFailed(
                f"Stack {key} has no compose file; add content before enabling auto-devops"
            )
        stack.auto_devops = enabled
        self.update(stack)
        logger.info(f"[registry] {key} auto_devops={enabled}")
        return stack

    def set_iac_enabled(self, key: StackKey, enabled: bool) -> Stack:
        stack = self.get(key)
        stack.iac_enabled = enabled
        self.update(stack)
        return stack

    def set_pull_policy(self, key: StackKey, pull_policy: Optional[str]) -> Stack:
        stack = self.get(key)
        stack.pull_policy = pull_policy
        self.update(stack)
        return stack

    def set_scope_auto_devops(
        self, scope_kind: ScopeKind, scope_name: str, enabled: Optional[bool]
    ) -> None:
        """Host- or group-level default for stacks without their own override."""
        self._repo.set_setting(scope_setting(scope_kind.value, scope_name), _tristate_text(enabled))

    def set_global_auto_devops(self, enabled: Optional[bool]) -> None:
        self._repo.set_setting(GLOBAL_SETTING, _tristate_text(enabled))

    def effective_auto_devops(self, key: StackKey) -> AutoDevopsDecision:
        stack = self.get(key)

        group_overrides = []
        if key.scope_kind == ScopeKind.HOST:
            for group in self._repo.get_host_groups(key.scope_name):
                group_stack = self._repo.get_stack(StackKey(ScopeKind.GROUP, group, key.stack_name))
                group_overrides.append((group, group_stack.auto_devops if group_stack else None))

        return effective_auto_devops(
            stack.auto_devops,
            group_overrides,
            scope_default=parse_tristate(
                self._repo.get_setting(scope_setting(key.scope_kind.value, key.scope_name))
            ),
            scope_kind=key.scope_kind.value,
            global_override=parse_tristate(self._repo.get_setting(GLOBAL_SETTING)),
            env_default=self._env_default,
        )

    # -------------------------
    # FILES
    # -------------------------

    def save_file(
        self,
        key: StackKey,
        rel_path: str,
        content: Union[bytes, str],
        *,
        sops: bool = False,
    ) -> IacFile:
        """
        Save a file, creating the stack record on first save.

        Files named *_secret.env / *_private.env, or saved with sops=True,
        are encrypted before they reach disk.
        """
        data = content.encode("utf-8") if isinstance(content, str) else content
        role = infer_role(rel_path)
        fmt = detect_format(rel_path)

        encrypted = _looks_encrypted(rel_path, data)
        if (sops or wants_auto_encrypt(rel_path)) and not encrypted:
            if fmt not in ("dotenv", "yaml", "json"):
                raise PreconditionFailed(f"{rel_path}: SOPS encryption not supported for this file type")
            data = self._resolver.encrypt(data.decode("utf-8"), fmt, name=rel_path).encode("utf-8")
            encrypted = True

        iac_file = IacFile(
            rel_path=rel_path,
            role=role,
            sops=encrypted,
            size_bytes=len(data),
            sha256=sha256_bytes(data),
            updated_at=datetime.utcnow(),
        )

        with self._locks.hold(key):
            stack = self._repo.get_stack(key)
            if stack is None:
                stack = self.create(key.scope_kind, key.scope_name, key.stack_name)

            self._files.write(key, rel_path, data)
            self._repo.upsert_file(key, iac_file)

            stack.refresh_from_files(self._repo.list_files(key))
            self._repo.update_stack(stack)

        logger.info(
            f"[registry] saved {key}/{rel_path} role={role.value} sops={encrypted} size={len(data)}"
        )
        self._notify(key)
        return iac_file

    def delete_file(self, key: StackKey, rel_path: str) -> None:
        with self._locks.hold(key):
            stack = self.get(key)
            removed = self._repo.delete_file(key, rel_path)
            self._files.delete(key, rel_path)
            if not removed:
                raise NotFound(f"File {rel_path} not found in {key}")

            stack.refresh_from_files(self._repo.list_files(key))
            self._repo.update_stack(stack)
        self._notify(key)

    def list_files(self, key: StackKey) -> List[IacFile]:
        return self._repo.list_files(key)

    def read_file(self, key: StackKey, rel_path: str) -> bytes:
        """Raw stored content (ciphertext for SOPS files)."""
        return self._files.read(key, rel_path)

    def snapshot(self, key: StackKey) -> StackSnapshot:
        """Consistent, immutable view of a stack's record and file contents."""
        with self._locks.hold(key):
            stack = self.get(key)
            files = []
            for meta in self._repo.list_files(key):
                try:
                    data = self._files.read(key, meta.rel_path)
                except NotFound:
                    logger.warning(f"[registry] {key}/{meta.rel_path} registered but missing on disk")
                    continue
                files.append(IacFile(
                    rel_path=meta.rel_path,
                    role=meta.role,
                    sops=meta.sops,
                    size_bytes=len(data),
                    sha256=sha256_bytes(data),
                    updated_at=meta.updated_at,
                    content=data,
                ))
        return StackSnapshot(stack=stack, files=tuple(files), bundle_hash=bundle_hash(files))

    # -------------------------
    # SCAN
    # -------------------------

    def scan_iac(self) -> Dict[str, int]:
        """
        Import the on-disk tree <base>/<scope>/<stack>/** into the registry.
        Scope dirs named like a known group register as group stacks.
        """
        groups = set(self._repo.list_groups())
        summary = {"stacks": 0, "files": 0, "pruned": 0}

        for scope_name in self._files.list_scopes():
            kind = ScopeKind.GROUP if scope_name in groups else ScopeKind.HOST
            for stack_name in self._files.list_stack_names(scope_name):
                key = StackKey(kind, scope_name, stack_name)
                summary["stacks"] += 1

                with self._locks.hold(key):
                    stack = self._repo.get_stack(key)
                    if stack is None:
                        stack = Stack(key=key, iac_enabled=True)
                        self._repo.create_stack(stack)

                    on_disk = set()
                    for rel_path in self._files.walk(key):
                        data = self._files.read(key, rel_path)
                        on_disk.add(rel_path)
                        self._repo.upsert_file(key, IacFile(
                            rel_path=rel_path,
                            role=infer_role(rel_path),
                            sops=_looks_encrypted(rel_path, data),
                            size_bytes=len(data),
                            sha256=sha256_bytes(data),
                        ))
                        summary["files"] += 1

                    for meta in self._repo.list_files(key):
                        if meta.rel_path not in on_disk:
                            self._repo.delete_file(key, meta.rel_path)
                            summary["pruned"] += 1

                    stack.refresh_from_files(self._repo.list_files(key))
                    self._repo.update_stack(stack)
                self._notify(key)

        logger.info(
            f"[registry] scan complete: {summary['stacks']} stacks, "
            f"{summary['files']} files, {summary['pruned']} pruned"
        )
        return summary
