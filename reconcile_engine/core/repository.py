# reconcile_engine/core/repository.py

from abc import ABC, abstractmethod
from typing import Dict, List, Optional

from reconcile_engine.core.models import (
    DeployStamp,
    DeployStatus,
    IacFile,
    ScopeKind,
    Stack,
    StackKey,
)

# Variable scopes, least specific first
VARIABLE_SCOPES = ("global", "group", "host")


class StackRepository(ABC):
    """
    Persistence contract for the stack registry.
    File contents live in the file store; this holds metadata only.
    """

    # -------------------------
    # STACKS
    # -------------------------

    @abstractmethod
    def create_stack(self, stack: Stack) -> None:
        """
        Persist a new stack.
        Must raise Conflict if the key already exists.
        """
        raise NotImplementedError

    @abstractmethod
    def get_stack(self, key: StackKey) -> Optional[Stack]:
        """Returns None if not found."""
        raise NotImplementedError

    @abstractmethod
    def list_stacks(
        self,
        scope_kind: Optional[ScopeKind] = None,
        scope_name: Optional[str] = None,
    ) -> List[Stack]:
        raise NotImplementedError

    @abstractmethod
    def update_stack(self, stack: Stack) -> None:
        """Must raise NotFound if the stack does not exist."""
        raise NotImplementedError

    @abstractmethod
    def delete_stack(self, key: StackKey) -> None:
        """Remove the stack row with its file metadata and deploy stamps."""
        raise NotImplementedError

    # -------------------------
    # FILES
    # -------------------------

    @abstractmethod
    def upsert_file(self, key: StackKey, iac_file: IacFile) -> None:
        raise NotImplementedError

    @abstractmethod
    def list_files(self, key: StackKey) -> List[IacFile]:
        """File metadata ordered by rel_path."""
        raise NotImplementedError

    @abstractmethod
    def delete_file(self, key: StackKey, rel_path: str) -> bool:
        raise NotImplementedError

    # -------------------------
    # DEPLOY STAMPS
    # -------------------------

    @abstractmethod
    def add_stamp(self, stamp: DeployStamp) -> DeployStamp:
        """Persist a stamp and assign stamp_id."""
        raise NotImplementedError

    @abstractmethod
    def update_stamp(self, stamp: DeployStamp) -> None:
        raise NotImplementedError

    @abstractmethod
    def latest_stamp(
        self,
        key: StackKey,
        status: Optional[DeployStatus] = None,
    ) -> Optional[DeployStamp]:
        raise NotImplementedError

    @abstractmethod
    def list_stamps(self, key: StackKey, limit: int = 20) -> List[DeployStamp]:
        """Newest first."""
        raise NotImplementedError

    # -------------------------
    # SCOPE VARIABLES / GROUPS / SETTINGS
    # -------------------------

    @abstractmethod
    def get_variables(self, scope: str, name: str = "") -> Dict[str, str]:
        """Variables for 'global', a group or a host."""
        raise NotImplementedError

    @abstractmethod
    def set_variables(self, scope: str, name: str, variables: Dict[str, str]) -> None:
        raise NotImplementedError

    @abstractmethod
    def get_host_groups(self, host: str) -> List[str]:
        """Groups a host belongs to, sorted by name."""
        raise NotImplementedError

    @abstractmethod
    def set_host_groups(self, host: str, groups: List[str]) -> None:
        raise NotImplementedError

    @abstractmethod
    def list_groups(self) -> List[str]:
        raise NotImplementedError

    @abstractmethod
    def get_setting(self, key: str) -> Optional[str]:
        raise NotImplementedError

    @abstractmethod
    def set_setting(self, key: str, value: Optional[str]) -> None:
        """None removes the setting."""
        raise NotImplementedError
