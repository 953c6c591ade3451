# reconcile_engine/core/service.py
"""Reconcile service - the engine's inbound operations."""

import logging
import threading
from typing import Dict, Iterator, List, Optional, Tuple, Union

from reconcile_engine.core.errors import NotFound, ReconcileError
from reconcile_engine.core.events_model import DeployEvent
from reconcile_engine.core.hashing import ConfigHasher
from reconcile_engine.core.logging_setup import redact
from reconcile_engine.core.models import (
    DriftVerdict,
    RenderedServiceSet,
    RuntimeContainer,
    ScopeKind,
    Stack,
    StackKey,
)
from reconcile_engine.drift.cache import DriftCache, render_inputs_key, runtime_fingerprint
from reconcile_engine.drift.detector import DriftDetector, unknown_verdict
from reconcile_engine.orchestrator.deploy import DeploymentOrchestrator
from reconcile_engine.registry.service import StackRegistry
from reconcile_engine.render.compose import ComposeRenderer
from reconcile_engine.render.source import Enhanced, normalize_source
from reconcile_engine.runtime.base import ContainerRuntime, RuntimeUnavailable

logger = logging.getLogger(__name__)

ScopeRef = Union[str, Tuple[ScopeKind, str]]


def parse_scope(scope: ScopeRef) -> Tuple[ScopeKind, str]:
    """
    Accepts (ScopeKind, name), "host:<name>", "group:<name>" or a bare
    host name.
    """
    if isinstance(scope, tuple):
        kind, name = scope
        return ScopeKind(kind), name
    kind, sep, name = scope.partition(":")
    if sep and kind in ("host", "group"):
        return ScopeKind(kind), name
    return ScopeKind.HOST, scope


def stack_key(scope: ScopeRef, stack_name: str) -> StackKey:
    kind, name = parse_scope(scope)
    return StackKey(kind, name, stack_name)


class ReconcileService:
    def __init__(
        self,
        registry: StackRegistry,
        renderer: ComposeRenderer,
        detector: DriftDetector,
        orchestrator: DeploymentOrchestrator,
        runtime: ContainerRuntime,
        cache: Optional[DriftCache] = None,
        hasher: Optional[ConfigHasher] = None,
    ):
        self._registry = registry
        self._renderer = renderer
        self._detector = detector
        self._orchestrator = orchestrator
        self._runtime = runtime
        self._cache = cache or DriftCache()
        self._hasher = hasher or ConfigHasher()

        registry.add_listener(self._cache.invalidate)
        orchestrator.add_listener(self._cache.invalidate)

    @property
    def registry(self) -> StackRegistry:
        return self._registry

    # -------------------------
    # RENDER
    # -------------------------

    def render_stack(self, scope: ScopeRef, name: str) -> RenderedServiceSet:
        """Full render; raises RenderError / NotFound."""
        return self._renderer.render(stack_key(scope, name))

    def _rendered_for_drift(
        self, key: StackKey, cancel: Optional[threading.Event] = None
    ) -> Tuple[RenderedServiceSet, str]:
        """Rendered set plus the render-inputs key it is cached under."""
        snapshot = self._registry.snapshot(key)
        inputs = render_inputs_key(snapshot.bundle_hash, self._renderer.scope_variables(key))
        cached = self._cache.get_rendered(key, inputs)
        if cached is not None:
            return cached, inputs

        source = self._renderer.source_for_snapshot(snapshot, cancel=cancel)
        rendered = normalize_source(source)
        # Basic renders depend on key availability, not only on file content
        if isinstance(source, Enhanced):
            self._cache.put_rendered(key, inputs, rendered)
        return rendered, inputs

    # -------------------------
    # DRIFT
    # -------------------------

    def get_drift(self, scope: ScopeRef, name: str, host: Optional[str] = None) -> DriftVerdict:
        key = stack_key(scope, name)
        self._registry.get(key)

        target = self._target_host(key, host)
        if target is None:
            return unknown_verdict(key, "group stack: no target host selected")

        try:
            containers = self._runtime.list_containers(target)
        except RuntimeUnavailable as e:
            return self._record(unknown_verdict(key, f"runtime unavailable: {e}"))

        return self._evaluate(key, containers)

    def drift_for_scope(self, scope: ScopeRef, host: Optional[str] = None) -> Dict[StackKey, DriftVerdict]:
        """
        Verdicts for every stack of a scope. For a host scope, stacks of the
        host's groups are included; one stack failing never affects another.
        """
        kind, name = parse_scope(scope)
        keys = self.stacks_for_scope(kind, name)
        target = host or (name if kind == ScopeKind.HOST else None)

        if target is None:
            return {k: unknown_verdict(k, "group stack: no target host selected") for k in keys}

        try:
            containers = self._runtime.list_containers(target)
        except RuntimeUnavailable as e:
            return {k: self._record(unknown_verdict(k, f"runtime unavailable: {e}")) for k in keys}

        return {k: self._evaluate(k, containers) for k in keys}

    def stacks_for_scope(self, kind: ScopeKind, name: str) -> List[StackKey]:
        keys = [s.key for s in self._registry.list(kind, name)]
        if kind == ScopeKind.HOST:
            for group in self._registry.repository.get_host_groups(name):
                keys += [s.key for s in self._registry.list(ScopeKind.GROUP, group)]
        return keys

    def _target_host(self, key: StackKey, host: Optional[str]) -> Optional[str]:
        if host:
            return host
        return key.scope_name if key.scope_kind == ScopeKind.HOST else None

    def _evaluate(self, key: StackKey, containers: List[RuntimeContainer]) -> DriftVerdict:
        try:
            rendered, inputs = self._rendered_for_drift(key)
        except ReconcileError as e:
            reason = redact(str(e))
            logger.warning(f"[drift] {key}: {reason}")
            return self._record(unknown_verdict(key, reason))

        fingerprint = runtime_fingerprint(rendered, containers, self._hasher)
        if rendered.enhanced:
            cached = self._cache.get_verdict(key, inputs, fingerprint)
            if cached is not None:
                return cached

        verdict = self._detector.detect(key, rendered, containers)
        if rendered.enhanced:
            self._cache.put_verdict(key, inputs, fingerprint, verdict)
        return self._record(verdict)

    def _record(self, verdict: DriftVerdict) -> DriftVerdict:
        """Mirror the verdict onto the stack row for dashboard aggregation."""
        try:
            stack = self._registry.get(verdict.stack)
        except NotFound:
            return verdict
        if stack.drift_status != verdict.status or stack.drift_reason != verdict.reason:
            stack.drift_status = verdict.status
            stack.drift_reason = verdict.reason
            self._registry.update(stack)
        return verdict

    # -------------------------
    # DEPLOY
    # -------------------------

    def deploy_stack(
        self,
        scope: ScopeRef,
        name: str,
        force: bool = False,
        cancel: Optional[threading.Event] = None,
        *,
        method: str = "manual",
        host: Optional[str] = None,
    ) -> Iterator[DeployEvent]:
        """Stream of DeployEvents; ends with complete, error or config_unchanged."""
        return self._orchestrator.deploy(
            stack_key(scope, name), force=force, method=method, host=host, cancel=cancel
        )

    def is_deploying(self, key: StackKey) -> bool:
        return self._orchestrator.is_deploying(key)

    # -------------------------
    # REGISTRY
    # -------------------------

    def set_auto_devops(self, scope: ScopeRef, name: str, enabled: Optional[bool]) -> Stack:
        return self._registry.set_auto_devops(stack_key(scope, name), enabled)

    def delete_stack_iac(self, scope: ScopeRef, name: str) -> None:
        """Registry entry and IaC files only; running containers are left alone."""
        key = stack_key(scope, name)
        self._registry.delete(key)
        self._cache.invalidate(key)
