# reconcile_engine/drift/detector.py
"""
Drift Detector - compares rendered services against live containers.

Matched rows are judged on config hash only; image tags are shown but never
compared, since floating tags would otherwise report drift on every pull.
"""

import logging
from typing import Callable, Dict, Iterable, List, Optional, Sequence

from reconcile_engine.core.errors import ReconcileError
from reconcile_engine.core.hashing import ConfigHasher
from reconcile_engine.core.logging_setup import redact
from reconcile_engine.core.models import (
    DriftRow,
    DriftStatus,
    DriftVerdict,
    RenderedServiceSet,
    RowStatus,
    RuntimeContainer,
    StackKey,
)
from reconcile_engine.drift.matchers import MATCHERS, find_match

logger = logging.getLogger(__name__)

RenderFn = Callable[[StackKey], Optional[RenderedServiceSet]]


def unknown_verdict(stack: StackKey, reason: str, warnings: Optional[List[str]] = None) -> DriftVerdict:
    return DriftVerdict(stack=stack, status=DriftStatus.UNKNOWN, reason=reason, warnings=warnings or [])


class DriftDetector:
    def __init__(self, hasher: Optional[ConfigHasher] = None, matchers=None):
        self._hasher = hasher or ConfigHasher()
        self._matchers = matchers or MATCHERS

    def container_hash(self, container: RuntimeContainer) -> str:
        return container.config_hash or self._hasher.hash_container(container)

    def detect(
        self,
        stack: StackKey,
        rendered: Optional[RenderedServiceSet],
        containers: Sequence[RuntimeContainer],
    ) -> DriftVerdict:
        """
        Build the drift table for one stack.

        No rendered data at all means unknown, never in_sync. A basic
        (non-enhanced) render still lists rows but cannot prove anything.
        """
        if rendered is None:
            return unknown_verdict(stack, "enhanced data unavailable")

        remaining = list(containers)
        rows: List[DriftRow] = []
        missing: List[str] = []
        changed: List[str] = []

        for service in rendered.services:
            container, matched_by = find_match(
                service, rendered.project_label, remaining, self._matchers
            )
            if container is None:
                rows.append(DriftRow(
                    status=RowStatus.MISSING,
                    service_name=service.service_name,
                    container_name=service.container_name,
                    desired_image=service.image,
                    desired_hash=service.config_hash,
                ))
                missing.append(service.service_name)
                continue

            remaining.remove(container)

            if service.config_hash is None:
                status = RowStatus.UNVERIFIED
                actual = None
            else:
                actual = self.container_hash(container)
                status = RowStatus.OK if actual == service.config_hash else RowStatus.CHANGED
                if status == RowStatus.CHANGED:
                    changed.append(service.service_name)

            rows.append(DriftRow(
                status=status,
                service_name=service.service_name,
                container_name=container.name,
                desired_image=service.image,
                running_image=container.image,
                desired_hash=service.config_hash,
                actual_hash=actual,
                matched_by=matched_by,
            ))

        # Displayed only; they may belong to a manual deployment
        for container in remaining:
            if not self._belongs_to(container, rendered.project_label):
                continue
            rows.append(DriftRow(
                status=RowStatus.UNMANAGED,
                container_name=container.name,
                running_image=container.image,
            ))

        warnings = list(rendered.warnings)

        if missing or changed:
            reasons = [f"service {name} missing" for name in missing]
            reasons += [f"service {name}: config changed" for name in changed]
            status, reason = DriftStatus.DRIFT, "; ".join(reasons)
        elif not rendered.enhanced:
            reason = warnings[0] if warnings else "enhanced data unavailable"
            status = DriftStatus.UNKNOWN
        else:
            status, reason = DriftStatus.IN_SYNC, ""

        return DriftVerdict(stack=stack, status=status, reason=reason, rows=rows, warnings=warnings)

    @staticmethod
    def _belongs_to(container: RuntimeContainer, project_label: str) -> bool:
        if container.compose_project is not None:
            return container.compose_project == project_label
        return container.name.startswith((f"{project_label}-", f"{project_label}_"))

    def detect_safe(
        self,
        stack: StackKey,
        render: RenderFn,
        containers: Sequence[RuntimeContainer],
    ) -> DriftVerdict:
        """Render then detect; any engine error becomes an unknown verdict."""
        try:
            rendered = render(stack)
        except ReconcileError as e:
            reason = redact(str(e))
            logger.warning(f"[drift] {stack}: {reason}")
            return unknown_verdict(stack, reason)
        return self.detect(stack, rendered, containers)

    def evaluate(
        self,
        stacks: Iterable[StackKey],
        render: RenderFn,
        containers: Sequence[RuntimeContainer],
    ) -> Dict[StackKey, DriftVerdict]:
        """Batch evaluation; one stack failing to render never touches another's verdict."""
        return {key: self.detect_safe(key, render, containers) for key in stacks}
