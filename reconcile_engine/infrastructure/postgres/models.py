# reconcile_engine/infrastructure/postgres/models.py
"""SQLAlchemy ORM models for database tables."""

from datetime import datetime

from sqlalchemy import (
    Column, String, Integer, DateTime, JSON, Enum as SQLEnum, Index, Text, Boolean,
    ForeignKey, UniqueConstraint,
)
from sqlalchemy.orm import relationship

from reconcile_engine.core.models import (
    DeployKind, DeployStatus, DriftStatus, FileRole, ScopeKind, SopsStatus,
)
from reconcile_engine.infrastructure.postgres.database import Base


# ============================================
# STACKS
# ============================================

class StackORM(Base):
    """
    IaC stack registry.

    Indexes:
    - Unique (scope_kind, scope_name, stack_name)
    - (scope_kind, scope_name) for per-host listing
    """

    __tablename__ = "iac_stacks"

    id = Column(Integer, primary_key=True, autoincrement=True)

    # Identity
    scope_kind = Column(SQLEnum(ScopeKind, name="scope_kind"), nullable=False)
    scope_name = Column(String(255), nullable=False)
    stack_name = Column(String(255), nullable=False)

    # Flags
    iac_enabled = Column(Boolean, nullable=False, default=False)
    auto_devops = Column(Boolean, nullable=True)
    pull_policy = Column(String(50), nullable=True)
    sops_status = Column(SQLEnum(SopsStatus, name="sops_status"), nullable=False, default=SopsStatus.NONE)
    deploy_kind = Column(SQLEnum(DeployKind, name="deploy_kind"), nullable=False, default=DeployKind.UNMANAGED)
    has_content = Column(Boolean, nullable=False, default=False)

    # Last deploy
    last_deploy_status = Column(SQLEnum(DeployStatus, name="deploy_status"), nullable=True)
    last_deploy_hash = Column(String(64), nullable=True)
    last_deploy_reason = Column(Text, nullable=True)

    # Latest drift verdict
    drift_status = Column(SQLEnum(DriftStatus, name="drift_status"), nullable=False, default=DriftStatus.UNKNOWN)
    drift_reason = Column(Text, nullable=False, default="")

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    files = relationship("IacFileORM", back_populates="stack", cascade="all, delete-orphan")
    stamps = relationship("DeploymentStampORM", back_populates="stack", cascade="all, delete-orphan")

    __table_args__ = (
        UniqueConstraint("scope_kind", "scope_name", "stack_name", name="uq_iac_stacks_identity"),
        Index("ix_iac_stacks_scope", "scope_kind", "scope_name"),
    )

    def __repr__(self) -> str:
        return (
            f"<StackORM(id={self.id}, "
            f"{self.scope_kind.value}:{self.scope_name}/{self.stack_name})>"
        )


# ============================================
# FILES
# ============================================

class IacFileORM(Base):
    """File metadata; contents live in the IaC tree."""

    __tablename__ = "iac_files"

    id = Column(Integer, primary_key=True, autoincrement=True)
    stack_id = Column(Integer, ForeignKey("iac_stacks.id", ondelete="CASCADE"), nullable=False, index=True)

    rel_path = Column(String(1024), nullable=False)
    role = Column(SQLEnum(FileRole, name="file_role"), nullable=False)
    sops = Column(Boolean, nullable=False, default=False)
    size_bytes = Column(Integer, nullable=False, default=0)
    sha256 = Column(String(64), nullable=False, default="")
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    stack = relationship("StackORM", back_populates="files")

    __table_args__ = (
        UniqueConstraint("stack_id", "rel_path", name="uq_iac_files_path"),
    )


# ============================================
# DEPLOYMENT STAMPS
# ============================================

class DeploymentStampORM(Base):
    """One row per deploy attempt."""

    __tablename__ = "deployment_stamps"

    id = Column(Integer, primary_key=True, autoincrement=True)
    stack_id = Column(Integer, ForeignKey("iac_stacks.id", ondelete="CASCADE"), nullable=False)

    deployment_hash = Column(String(64), nullable=False)
    bundle_hash = Column(String(64), nullable=False)
    method = Column(String(20), nullable=False, default="manual")
    status = Column(SQLEnum(DeployStatus, name="deploy_status"), nullable=False, default=DeployStatus.PENDING)
    reason = Column(Text, nullable=True)
    exit_code = Column(Integer, nullable=True)
    service_results = Column(JSON, nullable=False, default=dict)

    started_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    finished_at = Column(DateTime, nullable=True)

    stack = relationship("StackORM", back_populates="stamps")

    __table_args__ = (
        Index("ix_deployment_stamps_stack_status", "stack_id", "status", "id"),
    )


# ============================================
# SCOPE VARIABLES / GROUPS / SETTINGS
# ============================================

class ScopeVariableORM(Base):
    """KEY=VALUE variables at global, group or host scope."""

    __tablename__ = "scope_variables"

    id = Column(Integer, primary_key=True, autoincrement=True)
    scope = Column(String(20), nullable=False)
    scope_name = Column(String(255), nullable=False, default="")
    key = Column(String(255), nullable=False)
    value = Column(Text, nullable=False, default="")

    __table_args__ = (
        UniqueConstraint("scope", "scope_name", "key", name="uq_scope_variables_key"),
    )


class HostGroupORM(Base):
    __tablename__ = "host_groups"

    host = Column(String(255), primary_key=True)
    group_name = Column(String(255), primary_key=True)


class AppSettingORM(Base):
    __tablename__ = "app_settings"

    key = Column(String(255), primary_key=True)
    value = Column(Text, nullable=False)
