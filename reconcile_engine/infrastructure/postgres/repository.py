# reconcile_engine/infrastructure/postgres/repository.py

"""SQL repository implementation using SQLAlchemy."""

from typing import Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from reconcile_engine.core.repository import StackRepository, VARIABLE_SCOPES
from reconcile_engine.core.models import (
    DeployStamp,
    DeployStatus,
    IacFile,
    ScopeKind,
    Stack,
    StackKey,
)
from reconcile_engine.core.errors import Conflict, NotFound, ReconcileError
from reconcile_engine.infrastructure.postgres.database import get_session_factory
from reconcile_engine.infrastructure.postgres.models import (
    AppSettingORM,
    DeploymentStampORM,
    HostGroupORM,
    IacFileORM,
    ScopeVariableORM,
    StackORM,
)


# ============================================
# Mapping Functions
# ============================================

def orm_to_stack(orm: StackORM) -> Stack:
    """Convert ORM model to domain model."""
    return Stack(
        key=StackKey(orm.scope_kind, orm.scope_name, orm.stack_name),
        iac_enabled=orm.iac_enabled,
        auto_devops=orm.auto_devops,
        pull_policy=orm.pull_policy,
        sops_status=orm.sops_status,
        deploy_kind=orm.deploy_kind,
        has_content=orm.has_content,
        last_deploy_status=orm.last_deploy_status,
        last_deploy_hash=orm.last_deploy_hash,
        last_deploy_reason=orm.last_deploy_reason,
        drift_status=orm.drift_status,
        drift_reason=orm.drift_reason or "",
        created_at=orm.created_at,
        updated_at=orm.updated_at,
    )


def apply_stack(orm: StackORM, stack: Stack) -> StackORM:
    """Copy domain fields onto an ORM row."""
    orm.scope_kind = stack.key.scope_kind
    orm.scope_name = stack.key.scope_name
    orm.stack_name = stack.key.stack_name
    orm.iac_enabled = stack.iac_enabled
    orm.auto_devops = stack.auto_devops
    orm.pull_policy = stack.pull_policy
    orm.sops_status = stack.sops_status
    orm.deploy_kind = stack.deploy_kind
    orm.has_content = stack.has_content
    orm.last_deploy_status = stack.last_deploy_status
    orm.last_deploy_hash = stack.last_deploy_hash
    orm.last_deploy_reason = stack.last_deploy_reason
    orm.drift_status = stack.drift_status
    orm.drift_reason = stack.drift_reason
    orm.created_at = stack.created_at
    orm.updated_at = stack.updated_at
    return orm


def orm_to_file(orm: IacFileORM) -> IacFile:
    return IacFile(
        rel_path=orm.rel_path,
        role=orm.role,
        sops=orm.sops,
        size_bytes=orm.size_bytes,
        sha256=orm.sha256,
        updated_at=orm.updated_at,
    )


def orm_to_stamp(orm: DeploymentStampORM) -> DeployStamp:
    return DeployStamp(
        stack=StackKey(orm.stack.scope_kind, orm.stack.scope_name, orm.stack.stack_name),
        deployment_hash=orm.deployment_hash,
        bundle_hash=orm.bundle_hash,
        method=orm.method,
        status=orm.status,
        reason=orm.reason,
        exit_code=orm.exit_code,
        service_results=dict(orm.service_results or {}),
        started_at=orm.started_at,
        finished_at=orm.finished_at,
        stamp_id=orm.id,
    )


# ============================================
# Repository Implementation
# ============================================

class SqlStackRepository(StackRepository):
    """SQLAlchemy implementation with an injected session factory."""

    def __init__(self, session_factory: Optional[sessionmaker] = None):
        """
        Initialize repository with optional session factory.

        Args:
            session_factory: SQLAlchemy session factory. If None, uses default production factory.
        """
        self._session_factory = session_factory or get_session_factory()

    def _get_session(self) -> Session:
        """Get new session from the injected factory."""
        return self._session_factory()

    @staticmethod
    def _find_stack(session: Session, key: StackKey) -> Optional[StackORM]:
        return session.execute(
            select(StackORM).where(
                StackORM.scope_kind == key.scope_kind,
                StackORM.scope_name == key.scope_name,
                StackORM.stack_name == key.stack_name,
            )
        ).scalar_one_or_none()

    def _require_stack(self, session: Session, key: StackKey) -> StackORM:
        orm = self._find_stack(session, key)
        if orm is None:
            raise NotFound(f"Stack {key} not found")
        return orm

    # -------------------------
    # STACKS
    # -------------------------

    def create_stack(self, stack: Stack) -> None:
        session = self._get_session()
        try:
            session.add(apply_stack(StackORM(), stack))
            session.commit()
        except IntegrityError as e:
            session.rollback()
            raise Conflict(f"Stack {stack.key} already exists") from e
        except SQLAlchemyError as e:
            session.rollback()
            raise ReconcileError(f"Failed to create stack: {e}") from e
        finally:
            session.close()

    def get_stack(self, key: StackKey) -> Optional[Stack]:
        session = self._get_session()
        try:
            orm = self._find_stack(session, key)
            return orm_to_stack(orm) if orm else None
        finally:
            session.close()

    def list_stacks(
        self,
        scope_kind: Optional[ScopeKind] = None,
        scope_name: Optional[str] = None,
    ) -> List[Stack]:
        session = self._get_session()
        try:
            query = select(StackORM)
            if scope_kind is not None:
                query = query.where(StackORM.scope_kind == scope_kind)
            if scope_name is not None:
                query = query.where(StackORM.scope_name == scope_name)
            query = query.order_by(StackORM.scope_kind, StackORM.scope_name, StackORM.stack_name)
            return [orm_to_stack(o) for o in session.execute(query).scalars()]
        finally:
            session.close()

    def update_stack(self, stack: Stack) -> None:
        session = self._get_session()
        try:
            orm = self._require_stack(session, stack.key)
            apply_stack(orm, stack)
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            raise ReconcileError(f"Failed to update stack: {e}") from e
        finally:
            session.close()

    def delete_stack(self, key: StackKey) -> None:
        session = self._get_session()
        try:
            orm = self._require_stack(session, key)
            session.delete(orm)
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            raise ReconcileError(f"Failed to delete stack: {e}") from e
        finally:
            session.close()

    # -------------------------
    # FILES
    # -------------------------

    def upsert_file(self, key: StackKey, iac_file: IacFile) -> None:
        session = self._get_session()
        try:
            stack = self._require_stack(session, key)
            orm = session.execute(
                select(IacFileORM).where(
                    IacFileORM.stack_id == stack.id,
                    IacFileORM.rel_path == iac_file.rel_path,
                )
            ).scalar_one_or_none()
            if orm is None:
                orm = IacFileORM(stack_id=stack.id, rel_path=iac_file.rel_path)
                session.add(orm)
            orm.role = iac_file.role
            orm.sops = iac_file.sops
            orm.size_bytes = iac_file.size_bytes
            orm.sha256 = iac_file.sha256
            orm.updated_at = iac_file.updated_at
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            raise ReconcileError(f"Failed to save file metadata: {e}") from e
        finally:
            session.close()

    def list_files(self, key: StackKey) -> List[IacFile]:
        session = self._get_session()
        try:
            stack = self._find_stack(session, key)
            if stack is None:
                return []
            rows = session.execute(
                select(IacFileORM)
                .where(IacFileORM.stack_id == stack.id)
                .order_by(IacFileORM.rel_path)
            ).scalars()
            return [orm_to_file(o) for o in rows]
        finally:
            session.close()

    def delete_file(self, key: StackKey, rel_path: str) -> bool:
        session = self._get_session()
        try:
            stack = self._find_stack(session, key)
            if stack is None:
                return False
            orm = session.execute(
                select(IacFileORM).where(
                    IacFileORM.stack_id == stack.id,
                    IacFileORM.rel_path == rel_path,
                )
            ).scalar_one_or_none()
            if orm is None:
                return False
            session.delete(orm)
            session.commit()
            return True
        finally:
            session.close()

    # -------------------------
    # DEPLOY STAMPS
    # -------------------------

    def add_stamp(self, stamp: DeployStamp) -> DeployStamp:
        session = self._get_session()
        try:
            stack = self._require_stack(session, stamp.stack)
            orm = DeploymentStampORM(
                stack_id=stack.id,
                deployment_hash=stamp.deployment_hash,
                bundle_hash=stamp.bundle_hash,
                method=stamp.method,
                status=stamp.status,
                reason=stamp.reason,
                exit_code=stamp.exit_code,
                service_results=dict(stamp.service_results),
                started_at=stamp.started_at,
                finished_at=stamp.finished_at,
            )
            session.add(orm)
            session.commit()
            stamp.stamp_id = orm.id
            return stamp
        except SQLAlchemyError as e:
            session.rollback()
            raise ReconcileError(f"Failed to record deploy stamp: {e}") from e
        finally:
            session.close()

    def update_stamp(self, stamp: DeployStamp) -> None:
        session = self._get_session()
        try:
            orm = session.get(DeploymentStampORM, stamp.stamp_id)
            if orm is None:
                raise NotFound(f"Stamp {stamp.stamp_id} not found")
            orm.status = stamp.status
            orm.reason = stamp.reason
            orm.exit_code = stamp.exit_code
            orm.service_results = dict(stamp.service_results)
            orm.finished_at = stamp.finished_at
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            raise ReconcileError(f"Failed to update deploy stamp: {e}") from e
        finally:
            session.close()

    def latest_stamp(
        self,
        key: StackKey,
        status: Optional[DeployStatus] = None,
    ) -> Optional[DeployStamp]:
        session = self._get_session()
        try:
            stack = self._find_stack(session, key)
            if stack is None:
                return None
            query = select(DeploymentStampORM).where(DeploymentStampORM.stack_id == stack.id)
            if status is not None:
                query = query.where(DeploymentStampORM.status == status)
            orm = session.execute(
                query.order_by(DeploymentStampORM.id.desc()).limit(1)
            ).scalar_one_or_none()
            return orm_to_stamp(orm) if orm else None
        finally:
            session.close()

    def list_stamps(self, key: StackKey, limit: int = 20) -> List[DeployStamp]:
        session = self._get_session()
        try:
            stack = self._find_stack(session, key)
            if stack is None:
                return []
            rows = session.execute(
                select(DeploymentStampORM)
                .where(DeploymentStampORM.stack_id == stack.id)
                .order_by(DeploymentStampORM.id.desc())
                .limit(limit)
            ).scalars()
            return [orm_to_stamp(o) for o in rows]
        finally:
            session.close()

    # -------------------------
    # SCOPE VARIABLES / GROUPS / SETTINGS
    # -------------------------

    def get_variables(self, scope: str, name: str = "") -> Dict[str, str]:
        session = self._get_session()
        try:
            rows = session.execute(
                select(ScopeVariableORM).where(
                    ScopeVariableORM.scope == scope,
                    ScopeVariableORM.scope_name == name,
                )
            ).scalars()
            return {r.key: r.value for r in rows}
        finally:
            session.close()

    def set_variables(self, scope: str, name: str, variables: Dict[str, str]) -> None:
        if scope not in VARIABLE_SCOPES:
            raise ValueError(f"Unknown variable scope: {scope}")
        session = self._get_session()
        try:
            session.query(ScopeVariableORM).filter(
                ScopeVariableORM.scope == scope,
                ScopeVariableORM.scope_name == name,
            ).delete()
            for k, v in variables.items():
                session.add(ScopeVariableORM(scope=scope, scope_name=name, key=k, value=v))
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            raise ReconcileError(f"Failed to save variables: {e}") from e
        finally:
            session.close()

    def get_host_groups(self, host: str) -> List[str]:
        session = self._get_session()
        try:
            rows = session.execute(
                select(HostGroupORM.group_name)
                .where(HostGroupORM.host == host)
                .order_by(HostGroupORM.group_name)
            ).scalars()
            return list(rows)
        finally:
            session.close()

    def set_host_groups(self, host: str, groups: List[str]) -> None:
        session = self._get_session()
        try:
            session.query(HostGroupORM).filter(HostGroupORM.host == host).delete()
            for group in sorted(set(groups)):
                session.add(HostGroupORM(host=host, group_name=group))
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            raise ReconcileError(f"Failed to save host groups: {e}") from e
        finally:
            session.close()

    def list_groups(self) -> List[str]:
        session = self._get_session()
        try:
            members = set(session.execute(select(HostGroupORM.group_name)).scalars())
            scoped = set(session.execute(
                select(ScopeVariableORM.scope_name).where(ScopeVariableORM.scope == "group")
            ).scalars())
            return sorted(members | scoped)
        finally:
            session.close()

    def get_setting(self, key: str) -> Optional[str]:
        session = self._get_session()
        try:
            orm = session.get(AppSettingORM, key)
            return orm.value if orm else None
        finally:
            session.close()

    def set_setting(self, key: str, value: Optional[str]) -> None:
        session = self._get_session()
        try:
            orm = session.get(AppSettingORM, key)
            if value is None:
                if orm is not None:
                    session.delete(orm)
            elif orm is None:
                session.add(AppSettingORM(key=key, value=value))
            else:
                orm.value = value
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            raise ReconcileError(f"Failed to save setting: {e}") from e
        finally:
            session.close()
