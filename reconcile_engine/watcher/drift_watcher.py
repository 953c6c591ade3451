# reconcile_engine/watcher/drift_watcher.py
"""
Drift Watcher - periodically evaluates drift for every host and triggers
auto deploys for drifted stacks whose effective auto-devops is on.
"""

import logging
import signal
import threading
from typing import Callable, Dict, Iterable, List, Optional

from reconcile_engine.core.errors import ReconcileError
from reconcile_engine.core.models import DriftStatus, DriftVerdict, ScopeKind, StackKey
from reconcile_engine.core.service import ReconcileService

logger = logging.getLogger(__name__)


class DriftWatcher:
    """
    Background loop over hosts.

    Each cycle:
    1. List containers once per host
    2. Evaluate host stacks and the host's group stacks
    3. Auto deploy drifted stacks that are IaC-enabled with auto-devops on
    """

    def __init__(
        self,
        service: ReconcileService,
        interval: float = 30.0,
        extra_hosts: Iterable[str] = (),
        hosts_provider: Optional[Callable[[], List[str]]] = None,
    ):
        self.service = service
        self.interval = interval
        self._extra_hosts = [h for h in extra_hosts if h]
        self._hosts_provider = hosts_provider
        self._stop = threading.Event()

    def hosts(self) -> List[str]:
        if self._hosts_provider is not None:
            return self._hosts_provider()
        names = {s.key.scope_name for s in self.service.registry.list(ScopeKind.HOST)}
        names.update(self._extra_hosts)
        return sorted(names)

    def run_once(self) -> Dict[str, Dict[StackKey, DriftVerdict]]:
        """One evaluation cycle; returns verdicts per host."""
        results: Dict[str, Dict[StackKey, DriftVerdict]] = {}
        for host in self.hosts():
            verdicts = self.service.drift_for_scope((ScopeKind.HOST, host))
            results[host] = verdicts

            drifted = [k for k, v in verdicts.items() if v.status == DriftStatus.DRIFT]
            logger.info(f"[watcher] {host}: {len(verdicts)} stacks, {len(drifted)} drifted")

            for key in drifted:
                self._maybe_auto_deploy(key, host, verdicts[key])
        return results

    def _maybe_auto_deploy(self, key: StackKey, host: str, verdict: DriftVerdict) -> None:
        try:
            stack = self.service.registry.get(key)
            if not stack.iac_enabled:
                return
            decision = self.service.registry.effective_auto_devops(key)
        except ReconcileError as e:
            logger.warning(f"[watcher] {key}: {e}")
            return

        if not decision.enabled:
            logger.debug(f"[watcher] {key}: drift but auto-devops off (origin={decision.origin})")
            return
        if self.service.is_deploying(key):
            logger.info(f"[watcher] {key}: deploy already in flight")
            return

        logger.info(f"[watcher] {key}: auto deploy on {host} ({verdict.reason})")
        try:
            for event in self.service.deploy_stack(
                (key.scope_kind, key.scope_name), key.stack_name, method="auto", host=host
            ):
                if event.terminal:
                    logger.info(f"[watcher] {key}: {event.event_type}: {event.message}")
        except ReconcileError as e:
            logger.error(f"[watcher] {key}: auto deploy not started: {e}")

    # -------------------------
    # LOOP
    # -------------------------

    def start(self) -> None:
        """Run until SIGINT/SIGTERM or stop()."""
        signal.signal(signal.SIGINT, self._signal_handler)
        signal.signal(signal.SIGTERM, self._signal_handler)

        logger.info(f"Drift watcher started (interval {self.interval}s)")
        while not self._stop.is_set():
            try:
                self.run_once()
            except Exception as e:
                logger.error(f"Error in drift cycle: {e}", exc_info=True)
            self._stop.wait(self.interval)
        logger.info("Drift watcher stopped")

    def stop(self) -> None:
        self._stop.set()

    def _signal_handler(self, signum, frame):
        logger.info(f"Received signal {signum}, stopping...")
        self._stop.set()
