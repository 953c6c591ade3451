# reconcile_engine/registry/roles.py
"""File role inference from naming conventions."""

from fnmatch import fnmatch

from reconcile_engine.core.models import FileRole

COMPOSE_PATTERN = "*compose*.y*ml"
ENV_PATTERNS = ("*.env", ".env")
AUTO_ENCRYPT_PATTERNS = ("*_secret.env", "*_private.env")


def _basename(rel_path: str) -> str:
    return rel_path.replace("\\", "/").rsplit("/", 1)[-1].lower()


def infer_role(rel_path: str) -> FileRole:
    name = _basename(rel_path)
    if fnmatch(name, COMPOSE_PATTERN):
        return FileRole.COMPOSE
    if any(fnmatch(name, p) for p in ENV_PATTERNS):
        return FileRole.ENV
    return FileRole.SCRIPT


def wants_auto_encrypt(rel_path: str) -> bool:
    """Secret-naming convention: *_secret.env / *_private.env."""
    name = _basename(rel_path)
    return any(fnmatch(name, p) for p in AUTO_ENCRYPT_PATTERNS)
