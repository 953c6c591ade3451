# reconcile_engine/drift/cache.py
"""
Two-tier drift cache.

Tier 1: rendered service set per stack, keyed by its render inputs (file
bundle hash plus scope variables), so SOPS decryption is skipped while
neither has changed.
Tier 2: verdict per stack, keyed by (render inputs, runtime fingerprint).
"""

import hashlib
import json
import threading
from dataclasses import replace
from typing import Dict, Mapping, Optional, Sequence, Tuple

from reconcile_engine.core.hashing import ConfigHasher
from reconcile_engine.core.models import (
    DriftVerdict,
    RenderedServiceSet,
    RuntimeContainer,
    StackKey,
)


def render_inputs_key(bundle_hash: str, scope_variables: Mapping[str, str]) -> str:
    """Digest of everything outside the stack's files that feeds a render."""
    payload = json.dumps(dict(scope_variables), sort_keys=True, separators=(",", ":"))
    digest = hashlib.sha256(payload.encode("utf-8")).hexdigest()
    return f"{bundle_hash}:{digest}"


def runtime_fingerprint(
    rendered: RenderedServiceSet,
    containers: Sequence[RuntimeContainer],
    hasher: ConfigHasher,
) -> str:
    """Sorted name=config_hash of every container that could match the stack."""
    label = rendered.project_label
    explicit = {s.container_name for s in rendered.services if s.explicit_container_name}

    lines = []
    for c in containers:
        relevant = (
            c.name in explicit
            or c.compose_project == label
            or c.name.startswith((f"{label}-", f"{label}_"))
        )
        if relevant:
            lines.append(f"{c.name}={c.config_hash or hasher.hash_container(c)}:{c.state}")
    return hashlib.sha256("\n".join(sorted(lines)).encode("utf-8")).hexdigest()


class DriftCache:
    def __init__(self):
        self._lock = threading.Lock()
        self._rendered: Dict[StackKey, Tuple[str, RenderedServiceSet]] = {}
        self._verdicts: Dict[StackKey, Tuple[str, str, DriftVerdict]] = {}

    def get_rendered(self, key: StackKey, inputs: str) -> Optional[RenderedServiceSet]:
        with self._lock:
            entry = self._rendered.get(key)
        if entry and entry[0] == inputs:
            return entry[1]
        return None

    def put_rendered(self, key: StackKey, inputs: str, rendered: RenderedServiceSet) -> None:
        # The staged document holds plaintext; only deploys need it
        with self._lock:
            self._rendered[key] = (inputs, replace(rendered, document=None))

    def get_verdict(self, key: StackKey, inputs: str, fingerprint: str) -> Optional[DriftVerdict]:
        with self._lock:
            entry = self._verdicts.get(key)
        if entry and entry[0] == inputs and entry[1] == fingerprint:
            return entry[2]
        return None

    def put_verdict(self, key: StackKey, inputs: str, fingerprint: str, verdict: DriftVerdict) -> None:
        with self._lock:
            self._verdicts[key] = (inputs, fingerprint, verdict)

    def invalidate(self, key: StackKey) -> None:
        with self._lock:
            self._rendered.pop(key, None)
            self._verdicts.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._rendered.clear()
            self._verdicts.clear()
