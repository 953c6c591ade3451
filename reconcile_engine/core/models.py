# reconcile_engine/core/models.py
"""Core domain models for stacks, rendered services and drift."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Tuple


class ScopeKind(Enum):
    """Where a stack is declared."""

    HOST = "host"
    GROUP = "group"


class SopsStatus(Enum):
    NONE = "none"
    PARTIAL = "partial"
    ALL = "all"


class DeployKind(Enum):
    COMPOSE = "compose"
    UNMANAGED = "unmanaged"


class FileRole(Enum):
    COMPOSE = "compose"
    ENV = "env"
    SCRIPT = "script"


class DriftStatus(Enum):
    IN_SYNC = "in_sync"
    DRIFT = "drift"
    UNKNOWN = "unknown"


class DeployStatus(Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class StackKey:
    """Identity of a stack: (scope_kind, scope_name, stack_name)."""

    scope_kind: ScopeKind
    scope_name: str
    stack_name: str

    def __str__(self) -> str:
        return f"{self.scope_kind.value}:{self.scope_name}/{self.stack_name}"


# ============================================
# STACK + FILES
# ============================================

@dataclass
class IacFile:
    """One file under a stack directory."""

    rel_path: str
    role: FileRole
    sops: bool = False
    size_bytes: int = 0
    sha256: str = ""
    updated_at: datetime = field(default_factory=datetime.utcnow)

    # Only populated on snapshots; metadata rows carry None
    content: Optional[bytes] = None

    def text(self) -> str:
        return (self.content or b"").decode("utf-8")


@dataclass
class Stack:
    """Registry record for a stack."""

    key: StackKey

    iac_enabled: bool = False
    # None means inherit from group/host/global policy
    auto_devops: Optional[bool] = None
    pull_policy: Optional[str] = None
    sops_status: SopsStatus = SopsStatus.NONE
    deploy_kind: DeployKind = DeployKind.UNMANAGED
    has_content: bool = False

    # Last deploy
    last_deploy_status: Optional[DeployStatus] = None
    last_deploy_hash: Optional[str] = None
    last_deploy_reason: Optional[str] = None

    # Latest drift verdict, for dashboard aggregation
    drift_status: DriftStatus = DriftStatus.UNKNOWN
    drift_reason: str = ""

    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime = field(default_factory=datetime.utcnow)

    def refresh_from_files(self, files: List[IacFile]) -> None:
        """Recompute has_content, sops_status and deploy_kind from file metadata."""
        self.has_content = any(f.role == FileRole.COMPOSE for f in files)
        self.deploy_kind = DeployKind.COMPOSE if self.has_content else DeployKind.UNMANAGED
        # auto_devops=True requires content; fall back to the inherited default
        if not self.has_content and self.auto_devops:
            self.auto_devops = None

        encrypted = sum(1 for f in files if f.sops)
        if encrypted == 0:
            self.sops_status = SopsStatus.NONE
        elif encrypted == len(files):
            self.sops_status = SopsStatus.ALL
        else:
            self.sops_status = SopsStatus.PARTIAL

        self.updated_at = datetime.utcnow()


@dataclass(frozen=True)
class StackSnapshot:
    """Immutable file set read under the stack's read lock."""

    stack: Stack
    files: Tuple[IacFile, ...]
    bundle_hash: str

    def by_role(self, role: FileRole) -> List[IacFile]:
        return [f for f in self.files if f.role == role]

    def find(self, rel_path: str) -> Optional[IacFile]:
        for f in self.files:
            if f.rel_path == rel_path:
                return f
        return None


# ============================================
# RENDERED / RUNTIME
# ============================================

@dataclass
class RenderedService:
    """Desired-state service after interpolation and decryption."""

    service_name: str
    image: str
    container_name: str
    explicit_container_name: bool = False

    env: Dict[str, str] = field(default_factory=dict)
    ports: Tuple[str, ...] = ()
    volumes: Tuple[str, ...] = ()
    command: Optional[Tuple[str, ...]] = None
    entrypoint: Optional[Tuple[str, ...]] = None
    pull_policy: Optional[str] = None

    # None when the data source could not provide one (basic source)
    config_hash: Optional[str] = None


@dataclass
class RenderedServiceSet:
    """Ordered rendered services for one stack (compose declaration order)."""

    stack: StackKey
    project_label: str
    services: List[RenderedService] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    bundle_hash: str = ""
    pull_policy: Optional[str] = None
    enhanced: bool = True

    # Fully resolved compose document for staging; holds plaintext, never persisted
    document: Optional[dict] = field(default=None, repr=False, compare=False)

    def __len__(self) -> int:
        return len(self.services)

    def service(self, name: str) -> Optional[RenderedService]:
        for s in self.services:
            if s.service_name == name:
                return s
        return None


@dataclass
class RuntimeContainer:
    """Live container as reported by the runtime. Read-only to the engine."""

    name: str
    state: str
    image: str
    compose_project: Optional[str] = None
    compose_service: Optional[str] = None
    ip: Optional[str] = None
    ports: Tuple[str, ...] = ()
    created_ts: Optional[datetime] = None
    owner: Optional[str] = None

    env: Dict[str, str] = field(default_factory=dict)
    volumes: Tuple[str, ...] = ()
    command: Optional[Tuple[str, ...]] = None
    entrypoint: Optional[Tuple[str, ...]] = None

    config_hash: Optional[str] = None


# ============================================
# DRIFT
# ============================================

class RowStatus(Enum):
    OK = "ok"
    MISSING = "missing"
    CHANGED = "changed"
    UNVERIFIED = "unverified"
    UNMANAGED = "unmanaged"


@dataclass
class DriftRow:
    """One line of the drift table shown to operators."""

    status: RowStatus
    service_name: Optional[str] = None
    container_name: Optional[str] = None
    desired_image: Optional[str] = None
    running_image: Optional[str] = None
    desired_hash: Optional[str] = None
    actual_hash: Optional[str] = None
    matched_by: Optional[str] = None


@dataclass
class DriftVerdict:
    stack: StackKey
    status: DriftStatus
    reason: str
    rows: List[DriftRow] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    evaluated_at: datetime = field(default_factory=datetime.utcnow)

    def missing(self) -> List[DriftRow]:
        return [r for r in self.rows if r.status == RowStatus.MISSING]


# ============================================
# DEPLOY
# ============================================

@dataclass
class DeployStamp:
    """Record of one deploy attempt."""

    stack: StackKey
    deployment_hash: str
    bundle_hash: str
    method: str = "manual"
    status: DeployStatus = DeployStatus.PENDING
    reason: Optional[str] = None
    exit_code: Optional[int] = None

    # service_name -> last observed compose status ("Started", "Error", ...)
    service_results: Dict[str, str] = field(default_factory=dict)

    started_at: datetime = field(default_factory=datetime.utcnow)
    finished_at: Optional[datetime] = None
    stamp_id: Optional[int] = None

    def partial(self) -> bool:
        """True when some services came up and others did not."""
        values = [v.lower() for v in self.service_results.values()]
        ok = [v for v in values if v in ("started", "running", "created", "recreated")]
        return bool(ok) and len(ok) != len(values)
