"""Test the deployment orchestrator, its state machine and the compose applier."""

import threading
from datetime import datetime

import pytest
import yaml

from reconcile_engine.core.errors import Conflict, DeployFailed, PreconditionFailed
from reconcile_engine.core.locks import StackLockTable
from reconcile_engine.core.models import DeployStatus, ScopeKind, StackKey
from reconcile_engine.core.state_machine import (
    DeployRun,
    DeployState,
    DeployStateMachine,
    InvalidStateTransition,
)
from reconcile_engine.orchestrator.applier import (
    ApplyRequest,
    ComposeCliApplier,
    parse_service_status,
)

from conftest import HOST


def types(events):
    return [e.event_type for e in events]


class TestDeploymentOrchestrator:
    """Test deploy streams against the fake applier."""

    # -------------------------
    # SUCCESS
    # -------------------------

    def test_successful_deploy(self, orchestrator, registry, applier, myproj):
        """Test a deploy streams info, output, success and complete events."""
        events = list(orchestrator.deploy(myproj))

        assert types(events)[0] == "info"
        assert "stderr" in types(events)
        assert events[-1].event_type == "complete"
        assert events[-1].metadata["services"] == {"web": "Started"}
        assert any(e.event_type == "success" and e.message == "service web started" for e in events)

        stamp = registry.repository.latest_stamp(myproj)
        assert stamp.status == DeployStatus.SUCCESS
        assert stamp.exit_code == 0
        assert stamp.method == "manual"

        stack = registry.get(myproj)
        assert stack.last_deploy_status == DeployStatus.SUCCESS
        assert stack.last_deploy_hash == stamp.deployment_hash

    def test_request_shape(self, orchestrator, registry, applier, myproj):
        """Test the applier gets the sanitized label, stack dir and a self-contained file."""
        list(orchestrator.deploy(myproj))

        request = applier.requests[0]
        assert request.project_label == "myproj"
        assert request.host == HOST
        assert request.project_dir == registry.file_store.stack_dir(myproj)
        assert request.containers == {"myproj-web-1": "web", "myproj-db-1": "db"}

        staged = yaml.safe_load(applier.staged[0])
        assert staged["services"]["db"]["environment"] == {"POSTGRES_PASSWORD": "hunter2-long"}
        assert "env_file" not in staged["services"]["db"]

    def test_stack_pull_policy_passed(self, orchestrator, registry, applier, myproj):
        """Test the stack's pull policy reaches the applier."""
        registry.set_pull_policy(myproj, "always")
        list(orchestrator.deploy(myproj))
        assert applier.requests[0].pull_policy == "always"

    def test_scratch_removed_after_deploy(self, orchestrator, applier, myproj, tmp_path):
        """Test the staged plaintext does not outlive the deploy."""
        list(orchestrator.deploy(myproj))
        scratch = tmp_path / "scratch"
        assert not scratch.exists() or list(scratch.iterdir()) == []

    def test_events_reach_emitters(self, orchestrator, event_log, myproj):
        """Test every yielded event is also emitted."""
        events = list(orchestrator.deploy(myproj))
        assert list(event_log.events) == events

    # -------------------------
    # UNCHANGED / FORCE
    # -------------------------

    def test_unchanged_without_force(self, orchestrator, applier, myproj):
        """Test a second deploy of identical config does not apply."""
        list(orchestrator.deploy(myproj))
        events = list(orchestrator.deploy(myproj))

        assert events[-1].event_type == "config_unchanged"
        assert len(applier.requests) == 1

    def test_force_redeploys(self, orchestrator, registry, applier, myproj):
        """Test force re-applies identical config."""
        list(orchestrator.deploy(myproj))
        events = list(orchestrator.deploy(myproj, force=True))

        assert events[-1].event_type == "complete"
        assert len(applier.requests) == 2
        assert any("forced redeploy" in e.message for e in events)

    def test_changed_config_applies(self, orchestrator, registry, applier, myproj):
        """Test a config change is applied without force."""
        list(orchestrator.deploy(myproj))
        registry.save_file(myproj, ".env", "DB_PASSWORD=rotated-secret\n")

        events = list(orchestrator.deploy(myproj))
        assert events[-1].event_type == "complete"
        assert len(applier.requests) == 2

    # -------------------------
    # FAILURE
    # -------------------------

    def test_failed_apply(self, orchestrator, registry, applier, myproj):
        """Test a non-zero exit gives an error event and a failed stamp."""
        applier.exit_code = 1

        events = list(orchestrator.deploy(myproj))
        last = events[-1]
        assert last.event_type == "error"
        assert last.metadata["exit_code"] == 1
        assert last.message == "Error response from daemon: boom"

        assert registry.repository.latest_stamp(myproj).status == DeployStatus.FAILED
        assert registry.get(myproj).last_deploy_status == DeployStatus.FAILED

    def test_deploy_and_wait_raises(self, orchestrator, applier, myproj):
        """Test the blocking helper raises DeployFailed."""
        applier.exit_code = 2
        with pytest.raises(DeployFailed) as exc:
            orchestrator.deploy_and_wait(myproj)
        assert exc.value.exit_code == 2

    def test_partial_results(self, orchestrator, applier, myproj):
        """Test mixed per-service outcomes are flagged partial."""
        applier.exit_code = 1
        applier.service_results = {"web": "Started", "db": "Error"}

        last = list(orchestrator.deploy(myproj))[-1]
        assert last.metadata["partial"] is True
        assert last.metadata["services"] == {"web": "Started", "db": "Error"}

    def test_render_failure(self, orchestrator, registry, applier):
        """Test a broken compose file fails before apply."""
        key = StackKey(ScopeKind.HOST, HOST, "broken")
        registry.save_file(key, "docker-compose.yml", "services: [\n")

        events = list(orchestrator.deploy(key))
        assert events[-1].event_type == "error"
        assert applier.requests == []
        assert registry.get(key).last_deploy_status == DeployStatus.FAILED

    def test_no_content(self, orchestrator, registry, applier):
        """Test stacks without a compose file are refused."""
        registry.create(ScopeKind.HOST, HOST, "empty")
        events = list(orchestrator.deploy(StackKey(ScopeKind.HOST, HOST, "empty")))
        assert events[-1].event_type == "error"
        assert "no compose file" in events[-1].message

    def test_group_stack_needs_host(self, orchestrator, registry):
        """Test group stacks cannot deploy without a target host."""
        key = StackKey(ScopeKind.GROUP, "web-tier", "proxy")
        registry.save_file(key, "compose.yaml", "services:\n  nginx:\n    image: nginx\n")

        with pytest.raises(PreconditionFailed):
            list(orchestrator.deploy(key))

        events = list(orchestrator.deploy(key, host="node-3"))
        assert events[-1].event_type == "complete"

    # -------------------------
    # CANCELLATION
    # -------------------------

    def test_cancelled(self, orchestrator, registry, applier, myproj):
        """Test a set cancel event ends the deploy as cancelled."""
        cancel = threading.Event()
        cancel.set()

        last = list(orchestrator.deploy(myproj, cancel=cancel))[-1]
        assert last.event_type == "error"
        assert last.metadata["cancelled"] is True
        assert registry.repository.latest_stamp(myproj).status == DeployStatus.CANCELLED

    def test_abandoned_stream(self, orchestrator, registry, myproj):
        """Test closing the stream mid-apply cancels the stamp and frees the lock."""
        stream = orchestrator.deploy(myproj)
        for event in stream:
            if event.event_type == "stderr":
                break
        stream.close()

        assert registry.repository.latest_stamp(myproj).status == DeployStatus.CANCELLED
        assert not orchestrator.is_deploying(myproj)

    # -------------------------
    # CONCURRENCY
    # -------------------------

    def test_one_deploy_per_stack(self, orchestrator, applier, myproj):
        """Test a second deploy of a busy stack conflicts."""
        applier.block = threading.Event()
        results = []
        worker = threading.Thread(target=lambda: results.append(list(orchestrator.deploy(myproj))))
        worker.start()
        try:
            assert applier.started.wait(timeout=5)
            assert orchestrator.is_deploying(myproj)
            with pytest.raises(Conflict):
                list(orchestrator.deploy(myproj, force=True))
        finally:
            applier.block.set()
            worker.join(timeout=5)

        assert results[0][-1].event_type == "complete"
        assert applier.max_active == 1
        assert not orchestrator.is_deploying(myproj)

    def test_different_stacks_run_in_parallel(self, orchestrator, registry, applier, myproj):
        """Test locks are per stack."""
        other = StackKey(ScopeKind.HOST, HOST, "other")
        registry.save_file(other, "docker-compose.yml", "services:\n  a:\n    image: busybox\n")

        applier.block = threading.Event()
        worker = threading.Thread(target=lambda: list(orchestrator.deploy(myproj)))
        worker.start()
        try:
            assert applier.started.wait(timeout=5)
            stream = orchestrator.deploy(other)
            first = next(stream)
            assert first.event_type == "info"
            assert orchestrator.is_deploying(other)
            assert orchestrator.is_deploying(myproj)
        finally:
            applier.block.set()
            worker.join(timeout=5)

        assert list(stream)[-1].event_type == "complete"

    def test_listener_called(self, orchestrator, myproj):
        """Test finished listeners get the stack key."""
        seen = []
        orchestrator.add_listener(seen.append)
        list(orchestrator.deploy(myproj))
        assert seen == [myproj]


class TestStackLockTable:
    """Test per-stack locking and entry cleanup."""

    def test_entry_dropped_after_release(self):
        """Test the table holds no entry once nobody holds or waits."""
        locks = StackLockTable()
        key = StackKey(ScopeKind.HOST, HOST, "gone")

        with locks.hold(key):
            assert locks.is_locked(key)
            assert len(locks) == 1

        assert not locks.is_locked(key)
        assert len(locks) == 0

    def test_conflict_leaves_holder_entry(self):
        """Test a failed fast acquire does not drop the holder's lock."""
        locks = StackLockTable()
        key = StackKey(ScopeKind.HOST, HOST, "busy")

        with locks.hold(key):
            with pytest.raises(Conflict):
                with locks.hold(key, timeout=0):
                    pass
            assert locks.is_locked(key)
            assert len(locks) == 1
        assert len(locks) == 0

    def test_waiter_keeps_entry(self):
        """Test a blocked waiter gets the same lock after the holder leaves."""
        locks = StackLockTable()
        key = StackKey(ScopeKind.HOST, HOST, "queued")
        acquired = threading.Event()

        def waiter():
            with locks.hold(key, timeout=5):
                acquired.set()

        with locks.hold(key):
            thread = threading.Thread(target=waiter)
            thread.start()
            assert not acquired.wait(timeout=0.2)
        thread.join(timeout=5)

        assert acquired.is_set()
        assert len(locks) == 0


class TestDeployStateMachine:
    """Test allowed and rejected transitions."""

    def _run(self, force=False):
        return DeployRun(stack=StackKey(ScopeKind.HOST, HOST, "s"), force=force)

    def test_happy_path(self):
        """Test the normal path to success."""
        run = self._run()
        for state in (DeployState.CONFIG_CHECK, DeployState.PROCEEDING, DeployState.APPLYING, DeployState.SUCCESS):
            DeployStateMachine.transition(run, state, now=datetime(2024, 1, 1))
        assert run.finished
        assert [s for s, _ in run.history][-1] == DeployState.SUCCESS

    def test_unchanged_requires_force(self):
        """Test leaving UNCHANGED needs force."""
        run = self._run()
        DeployStateMachine.transition(run, DeployState.CONFIG_CHECK)
        DeployStateMachine.transition(run, DeployState.UNCHANGED)
        with pytest.raises(InvalidStateTransition):
            DeployStateMachine.transition(run, DeployState.PROCEEDING)

        forced = self._run(force=True)
        DeployStateMachine.transition(forced, DeployState.CONFIG_CHECK)
        DeployStateMachine.transition(forced, DeployState.UNCHANGED)
        DeployStateMachine.transition(forced, DeployState.PROCEEDING)
        assert forced.state == DeployState.PROCEEDING

    def test_cannot_skip_apply(self):
        """Test success is only reachable from applying."""
        run = self._run()
        DeployStateMachine.transition(run, DeployState.CONFIG_CHECK)
        with pytest.raises(InvalidStateTransition):
            DeployStateMachine.transition(run, DeployState.SUCCESS)

    def test_terminal_states_are_final(self):
        """Test nothing leaves a terminal state."""
        run = self._run()
        DeployStateMachine.transition(run, DeployState.CONFIG_CHECK)
        DeployStateMachine.transition(run, DeployState.FAILED)
        with pytest.raises(InvalidStateTransition):
            DeployStateMachine.transition(run, DeployState.PROCEEDING)


class TestComposeCliApplier:
    """Test command construction and progress parsing."""

    def _request(self, **overrides):
        fields = dict(
            stack=StackKey(ScopeKind.HOST, HOST, "My Stack"),
            host=HOST,
            project_label="my_stack",
            project_dir="/srv/iac/node-1/My Stack",
            compose_file="/dev/shm/reconcile-x/docker-compose.yml",
        )
        fields.update(overrides)
        return ApplyRequest(**fields)

    def test_build_command(self):
        """Test the project label and staged file are passed explicitly."""
        cmd = ComposeCliApplier().build_command(self._request())
        assert cmd == [
            "docker", "compose",
            "-p", "my_stack",
            "--project-directory", "/srv/iac/node-1/My Stack",
            "-f", "/dev/shm/reconcile-x/docker-compose.yml",
            "up", "-d", "--remove-orphans",
        ]

    def test_pull_policy_flag(self):
        """Test pull policies map to --pull values."""
        applier = ComposeCliApplier()
        assert applier.build_command(self._request(pull_policy="always"))[-2:] == ["--pull", "always"]
        assert applier.build_command(self._request(pull_policy="if_not_present"))[-2:] == ["--pull", "missing"]
        assert "--pull" not in applier.build_command(self._request(pull_policy="bogus"))

    def test_environment_drops_key(self, monkeypatch):
        """Test the SOPS key never reaches docker and DOCKER_HOST is routed."""
        monkeypatch.setenv("SOPS_AGE_KEY", "AGE-SECRET-KEY-1XYZ")
        applier = ComposeCliApplier(docker_hosts={"node-2": "ssh://deploy@node-2"})

        env = applier._environment("node-2")
        assert "SOPS_AGE_KEY" not in env
        assert env["DOCKER_HOST"] == "ssh://deploy@node-2"

    def test_parse_service_status(self):
        """Test compose progress lines map containers back to services."""
        containers = {"myproj-web-1": "web"}
        assert parse_service_status(" Container myproj-web-1  Started", containers) == ("web", "Started")
        assert parse_service_status(" Container other-1  Started", containers) is None
        assert parse_service_status(" Network myproj_default  Created", containers) is None

    def test_missing_binary(self, tmp_path):
        """Test an unavailable docker binary ends with exit 127."""
        applier = ComposeCliApplier(docker_binary=str(tmp_path / "no-docker"))
        items = list(applier.apply(self._request()))
        outcome = items[-1]
        assert outcome.exit_code == 127
        assert outcome.last_error
