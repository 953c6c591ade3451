# reconcile_engine/orchestrator/deploy.py
"""
Deployment Orchestrator.

One deploy in flight per stack:

    IDLE -> CONFIG_CHECK -> (UNCHANGED | PROCEEDING) -> APPLYING -> (SUCCESS | FAILED)

Progress is yielded as DeployEvents while docker compose runs, and every
event is also handed to the configured emitters.
"""

import logging
import threading
from datetime import datetime
from typing import Callable, Iterable, Iterator, List, Optional

import yaml

from reconcile_engine.core.errors import DeployFailed, PreconditionFailed, ReconcileError
from reconcile_engine.core.events import EventEmitter, NullEventEmitter
from reconcile_engine.core.events_model import DeployEvent
from reconcile_engine.core.hashing import ConfigHasher
from reconcile_engine.core.locks import StackLockTable
from reconcile_engine.core.logging_setup import redact
from reconcile_engine.core.models import (
    DeployStamp,
    DeployStatus,
    RenderedServiceSet,
    ScopeKind,
    StackKey,
)
from reconcile_engine.core.state_machine import (
    DeployRun,
    DeployState,
    DeployStateMachine,
)
from reconcile_engine.orchestrator.applier import ApplyLine, ApplyOutcome, ApplyRequest, ComposeApplier
from reconcile_engine.registry.service import StackRegistry
from reconcile_engine.render.compose import ComposeRenderer
from reconcile_engine.secrets.scratch import ScratchDir

logger = logging.getLogger(__name__)

STAGED_COMPOSE_FILE = "docker-compose.yml"
OK_STATUSES = ("started", "running", "created", "recreated", "healthy")

FinishedListener = Callable[[StackKey], None]


class DeploymentOrchestrator:
    def __init__(
        self,
        registry: StackRegistry,
        renderer: ComposeRenderer,
        applier: ComposeApplier,
        hasher: Optional[ConfigHasher] = None,
        emitters: Optional[Iterable[EventEmitter]] = None,
        scratch_base: str = "",
        lock_timeout: float = 0.0,
    ):
        self._registry = registry
        self._renderer = renderer
        self._applier = applier
        self._hasher = hasher or ConfigHasher()
        self._emitters = list(emitters or [NullEventEmitter()])
        self._scratch_base = scratch_base
        self._lock_timeout = lock_timeout
        self._locks = StackLockTable()
        self._listeners: List[FinishedListener] = []

    def add_listener(self, listener: FinishedListener) -> None:
        """Called with the stack key after every deploy that reached the apply step."""
        self._listeners.append(listener)

    def is_deploying(self, key: StackKey) -> bool:
        return self._locks.is_locked(key)

    # -------------------------
    # PUBLIC
    # -------------------------

    def deploy(
        self,
        key: StackKey,
        *,
        force: bool = False,
        method: str = "manual",
        host: Optional[str] = None,
        cancel: Optional[threading.Event] = None,
    ) -> Iterator[DeployEvent]:
        """
        Stream a deploy of one stack.

        Raises Conflict (on first iteration) when another deploy of the same
        stack holds the lock past lock_timeout.
        """
        target = self._target_host(key, host)

        with self._locks.hold(key, timeout=self._lock_timeout):
            yield from self._run(key, target, force, method, cancel)

    def deploy_and_wait(self, key: StackKey, **kwargs) -> List[DeployEvent]:
        """Drain the stream; raise DeployFailed on an error event."""
        events = list(self.deploy(key, **kwargs))
        last = events[-1] if events else None
        if last is not None and last.event_type == "error":
            raise DeployFailed(str(key), last.metadata.get("exit_code"), last.message)
        return events

    # -------------------------
    # INTERNALS
    # -------------------------

    def _target_host(self, key: StackKey, host: Optional[str]) -> str:
        if host:
            return host
        if key.scope_kind == ScopeKind.HOST:
            return key.scope_name
        raise PreconditionFailed(f"Stack {key} is a group stack; a target host is required")

    def _publish(self, event: DeployEvent) -> DeployEvent:
        for emitter in self._emitters:
            emitter.emit([event])
        return event

    def _run(
        self,
        key: StackKey,
        host: str,
        force: bool,
        method: str,
        cancel: Optional[threading.Event],
    ) -> Iterator[DeployEvent]:
        run = DeployRun(stack=key, force=force)
        DeployStateMachine.transition(run, DeployState.CONFIG_CHECK)
        yield self._publish(DeployEvent.info(key, f"checking configuration ({method} deploy to {host})"))

        try:
            snapshot = self._registry.snapshot(key)
            if not snapshot.stack.has_content:
                raise PreconditionFailed(f"Stack {key} has no compose file")
            rendered = self._renderer.render_snapshot(snapshot, cancel=cancel)
        except ReconcileError as e:
            reason = redact(str(e))
            DeployStateMachine.transition(run, DeployState.FAILED)
            self._record_stack(key, DeployStatus.FAILED, None, reason)
            yield self._publish(DeployEvent.error(key, reason))
            return

        deployment_hash = self._hasher.hash_service_set(rendered)

        latest = self._registry.repository.latest_stamp(key, DeployStatus.SUCCESS)
        if latest is not None and latest.deployment_hash == deployment_hash:
            DeployStateMachine.transition(run, DeployState.UNCHANGED)
            if not force:
                logger.info(f"[deploy] {key}: unchanged ({deployment_hash[:12]}), not forced")
                yield self._publish(DeployEvent.config_unchanged(key, deployment_hash))
                return
            yield self._publish(DeployEvent.info(key, "configuration unchanged; forced redeploy"))

        DeployStateMachine.transition(run, DeployState.PROCEEDING)

        for warning in rendered.warnings:
            yield self._publish(DeployEvent.info(key, f"warning: {warning}"))

        stamp = self._registry.repository.add_stamp(DeployStamp(
            stack=key,
            deployment_hash=deployment_hash,
            bundle_hash=rendered.bundle_hash,
            method=method,
        ))

        try:
            yield from self._apply(run, key, host, rendered, stamp, cancel)
        finally:
            if stamp.status == DeployStatus.PENDING:
                # Stream abandoned by the consumer before the outcome arrived
                self._finish(run, stamp, DeployStatus.CANCELLED, "deploy stream closed", None)
            for listener in self._listeners:
                listener(key)

    def _apply(
        self,
        run: DeployRun,
        key: StackKey,
        host: str,
        rendered: RenderedServiceSet,
        stamp: DeployStamp,
        cancel: Optional[threading.Event],
    ) -> Iterator[DeployEvent]:
        outcome: Optional[ApplyOutcome] = None
        try:
            with ScratchDir(self._scratch_base) as scratch:
                compose_path = scratch.write(
                    STAGED_COMPOSE_FILE,
                    yaml.safe_dump(rendered.document or {}, sort_keys=False).encode("utf-8"),
                )
                request = ApplyRequest(
                    stack=key,
                    host=host,
                    project_label=rendered.project_label,
                    project_dir=self._registry.file_store.stack_dir(key),
                    compose_file=compose_path,
                    pull_policy=rendered.pull_policy,
                    containers={s.container_name: s.service_name for s in rendered.services},
                )

                DeployStateMachine.transition(run, DeployState.APPLYING)
                yield self._publish(DeployEvent.info(
                    key, f"applying {len(rendered)} services as project {rendered.project_label}"
                ))

                for item in self._applier.apply(request, cancel=cancel):
                    if isinstance(item, ApplyLine):
                        if item.stream == "stderr":
                            yield self._publish(DeployEvent.stderr(key, item.text))
                        else:
                            yield self._publish(DeployEvent.stdout(key, item.text))
                    else:
                        outcome = item
        except (ReconcileError, OSError) as e:
            reason = redact(str(e))
            self._finish(run, stamp, DeployStatus.FAILED, reason, None)
            yield self._publish(DeployEvent.error(key, reason))
            return

        if outcome is None:
            outcome = ApplyOutcome(exit_code=-1, last_error="applier produced no outcome")

        stamp.service_results = dict(outcome.service_results)

        if outcome.exit_code == 0 and not outcome.cancelled:
            self._finish(run, stamp, DeployStatus.SUCCESS, None, 0)
            for service, status in sorted(outcome.service_results.items()):
                if status.lower() in OK_STATUSES:
                    yield self._publish(DeployEvent.success(key, f"service {service} {status.lower()}"))
            yield self._publish(DeployEvent.complete(key, stamp.deployment_hash, outcome.service_results))
            return

        status = DeployStatus.CANCELLED if outcome.cancelled else DeployStatus.FAILED
        reason = outcome.last_error or f"docker compose exited with status {outcome.exit_code}"
        self._finish(run, stamp, status, reason, outcome.exit_code)
        yield self._publish(DeployEvent.error(
            key,
            reason,
            exit_code=outcome.exit_code,
            services=dict(outcome.service_results),
            partial=stamp.partial(),
            cancelled=outcome.cancelled,
        ))

    def _finish(
        self,
        run: DeployRun,
        stamp: DeployStamp,
        status: DeployStatus,
        reason: Optional[str],
        exit_code: Optional[int],
    ) -> None:
        DeployStateMachine.transition(
            run, DeployState.SUCCESS if status == DeployStatus.SUCCESS else DeployState.FAILED
        )
        run.reason = reason

        stamp.status = status
        stamp.reason = reason
        stamp.exit_code = exit_code
        stamp.finished_at = datetime.utcnow()
        self._registry.repository.update_stamp(stamp)

        self._record_stack(stamp.stack, status, stamp.deployment_hash, reason)

        if status == DeployStatus.SUCCESS:
            logger.info(f"[deploy] {stamp.stack}: success ({stamp.deployment_hash[:12]})")
        else:
            logger.error(f"[deploy] {stamp.stack}: {status.value}: {reason}")

    def _record_stack(
        self,
        key: StackKey,
        status: DeployStatus,
        deployment_hash: Optional[str],
        reason: Optional[str],
    ) -> None:
        stack = self._registry.get(key)
        stack.last_deploy_status = status
        stack.last_deploy_reason = reason
        if deployment_hash is not None:
            stack.last_deploy_hash = deployment_hash
        self._registry.update(stack)
