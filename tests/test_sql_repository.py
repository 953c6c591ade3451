"""Test the SQLAlchemy repository against a file-backed SQLite database."""

import pytest

from reconcile_engine.core.errors import Conflict, NotFound
from reconcile_engine.core.models import (
    DeployStamp,
    DeployStatus,
    DriftStatus,
    FileRole,
    IacFile,
    ScopeKind,
    SopsStatus,
    Stack,
    StackKey,
)
from reconcile_engine.registry.service import StackRegistry


KEY = StackKey(ScopeKind.HOST, "node-1", "myproj")


class TestSqlStackRepository:
    """Test persistence of stacks and their metadata."""

    # -------------------------
    # STACKS
    # -------------------------

    def test_create_and_get(self, sql_repository):
        """Test a stack round-trips through the database."""
        sql_repository.create_stack(Stack(key=KEY, iac_enabled=True, auto_devops=True))

        stack = sql_repository.get_stack(KEY)
        assert stack.key == KEY
        assert stack.iac_enabled is True
        assert stack.auto_devops is True
        assert stack.drift_status == DriftStatus.UNKNOWN

    def test_duplicate_conflicts(self, sql_repository):
        """Test the identity unique constraint maps to Conflict."""
        sql_repository.create_stack(Stack(key=KEY))
        with pytest.raises(Conflict):
            sql_repository.create_stack(Stack(key=KEY))

    def test_same_name_other_scope(self, sql_repository):
        """Test host and group stacks may share a name."""
        sql_repository.create_stack(Stack(key=KEY))
        sql_repository.create_stack(Stack(key=StackKey(ScopeKind.GROUP, "node-1", "myproj")))

        assert len(sql_repository.list_stacks()) == 2
        assert len(sql_repository.list_stacks(ScopeKind.HOST, "node-1")) == 1

    def test_update(self, sql_repository):
        """Test updates persist flags and verdicts."""
        sql_repository.create_stack(Stack(key=KEY))
        stack = sql_repository.get_stack(KEY)
        stack.auto_devops = False
        stack.sops_status = SopsStatus.PARTIAL
        stack.drift_status = DriftStatus.DRIFT
        stack.drift_reason = "service db missing"
        stack.last_deploy_status = DeployStatus.FAILED
        sql_repository.update_stack(stack)

        stored = sql_repository.get_stack(KEY)
        assert stored.auto_devops is False
        assert stored.sops_status == SopsStatus.PARTIAL
        assert stored.drift_reason == "service db missing"
        assert stored.last_deploy_status == DeployStatus.FAILED

    def test_update_missing(self, sql_repository):
        """Test NotFound for unknown stacks."""
        with pytest.raises(NotFound):
            sql_repository.update_stack(Stack(key=KEY))

    def test_delete_cascades(self, sql_repository):
        """Test deleting a stack removes files and stamps."""
        sql_repository.create_stack(Stack(key=KEY))
        sql_repository.upsert_file(KEY, IacFile("docker-compose.yml", FileRole.COMPOSE))
        sql_repository.add_stamp(DeployStamp(stack=KEY, deployment_hash="a" * 64, bundle_hash="b" * 64))

        sql_repository.delete_stack(KEY)
        assert sql_repository.get_stack(KEY) is None
        assert sql_repository.list_files(KEY) == []
        assert sql_repository.latest_stamp(KEY) is None

    # -------------------------
    # FILES
    # -------------------------

    def test_files(self, sql_repository):
        """Test upsert replaces metadata and listing is ordered by path."""
        sql_repository.create_stack(Stack(key=KEY))
        sql_repository.upsert_file(KEY, IacFile("docker-compose.yml", FileRole.COMPOSE, size_bytes=10))
        sql_repository.upsert_file(KEY, IacFile(".env", FileRole.ENV))
        sql_repository.upsert_file(KEY, IacFile("docker-compose.yml", FileRole.COMPOSE, sops=True, size_bytes=99))

        files = sql_repository.list_files(KEY)
        assert [f.rel_path for f in files] == [".env", "docker-compose.yml"]
        assert files[1].sops is True
        assert files[1].size_bytes == 99

        assert sql_repository.delete_file(KEY, ".env") is True
        assert sql_repository.delete_file(KEY, ".env") is False

    # -------------------------
    # STAMPS
    # -------------------------

    def test_stamps(self, sql_repository):
        """Test stamps get ids, update in place and filter by status."""
        sql_repository.create_stack(Stack(key=KEY))

        first = sql_repository.add_stamp(DeployStamp(stack=KEY, deployment_hash="1" * 64, bundle_hash="x" * 64))
        first.status = DeployStatus.SUCCESS
        first.service_results = {"web": "Started"}
        sql_repository.update_stamp(first)

        second = sql_repository.add_stamp(DeployStamp(stack=KEY, deployment_hash="2" * 64, bundle_hash="y" * 64))
        second.status = DeployStatus.FAILED
        sql_repository.update_stamp(second)

        assert second.stamp_id > first.stamp_id
        assert sql_repository.latest_stamp(KEY).deployment_hash == "2" * 64

        success = sql_repository.latest_stamp(KEY, DeployStatus.SUCCESS)
        assert success.deployment_hash == "1" * 64
        assert success.service_results == {"web": "Started"}
        assert success.stack == KEY

        assert [s.stamp_id for s in sql_repository.list_stamps(KEY)] == [second.stamp_id, first.stamp_id]

    def test_stamp_for_unknown_stack(self, sql_repository):
        """Test stamps need a registered stack."""
        with pytest.raises(NotFound):
            sql_repository.add_stamp(DeployStamp(stack=KEY, deployment_hash="1", bundle_hash="2"))

    # -------------------------
    # VARIABLES / GROUPS / SETTINGS
    # -------------------------

    def test_variables(self, sql_repository):
        """Test variables are replaced per scope."""
        sql_repository.set_variables("global", "", {"A": "1", "B": "2"})
        sql_repository.set_variables("host", "node-1", {"A": "host"})
        sql_repository.set_variables("global", "", {"C": "3"})

        assert sql_repository.get_variables("global") == {"C": "3"}
        assert sql_repository.get_variables("host", "node-1") == {"A": "host"}

        with pytest.raises(ValueError):
            sql_repository.set_variables("planet", "earth", {})

    def test_host_groups(self, sql_repository):
        """Test membership is sorted and groups are listed."""
        sql_repository.set_host_groups("node-1", ["web", "db", "web"])
        sql_repository.set_variables("group", "edge", {"X": "1"})

        assert sql_repository.get_host_groups("node-1") == ["db", "web"]
        assert sql_repository.list_groups() == ["db", "edge", "web"]

    def test_settings(self, sql_repository):
        """Test setting, overwriting and removing a setting."""
        assert sql_repository.get_setting("auto_devops") is None
        sql_repository.set_setting("auto_devops", "true")
        sql_repository.set_setting("auto_devops", "false")
        assert sql_repository.get_setting("auto_devops") == "false"
        sql_repository.set_setting("auto_devops", None)
        assert sql_repository.get_setting("auto_devops") is None


class TestRegistryOnSql:
    """Test the registry with the SQL repository underneath."""

    def test_save_and_snapshot(self, sql_repository, file_store, resolver):
        """Test saving files updates the stored stack and snapshots read them back."""
        registry = StackRegistry(sql_repository, file_store, resolver)
        registry.save_file(KEY, "docker-compose.yml", "services:\n  web:\n    image: nginx\n")
        registry.save_file(KEY, "db_secret.env", "PW=abcdefgh\n")

        stack = registry.get(KEY)
        assert stack.has_content
        assert stack.sops_status == SopsStatus.PARTIAL

        snap = registry.snapshot(KEY)
        assert {f.rel_path for f in snap.files} == {"db_secret.env", "docker-compose.yml"}
        assert snap.find("db_secret.env").sops
