# reconcile_engine/core/sanitize.py
"""Compose project label derivation and safe path joins."""

import os
import re

from reconcile_engine.core.errors import InvalidPath


_INVALID_LABEL_CHARS = re.compile(r"[^a-z0-9_-]+")

DEFAULT_PROJECT_LABEL = "default"


def sanitize_project_label(stack_name: str) -> str:
    """
    Derive the compose project label for a stack name.

    The user's typed name is kept for display and storage; runtime containers
    carry this label in com.docker.compose.project.
    """
    s = stack_name.strip().lower()
    s = s.replace(" ", "_")
    s = _INVALID_LABEL_CHARS.sub("_", s)
    s = s.strip("_-")
    return s or DEFAULT_PROJECT_LABEL


def join_under(root: str, rel_path: str) -> str:
    """Join rel_path under root, refusing absolute paths and '..' escapes."""
    if not rel_path or os.path.isabs(rel_path) or rel_path.startswith(("/", "\\")):
        raise InvalidPath(f"path must be relative: {rel_path!r}")

    root_abs = os.path.abspath(root)
    full = os.path.abspath(os.path.join(root_abs, rel_path))

    if full != root_abs and not full.startswith(root_abs + os.sep):
        raise InvalidPath(f"path escapes stack directory: {rel_path!r}")
    return full
