# reconcile_engine/secrets/scratch.py
"""Per-request scratch directory for decrypted staging, wiped on every exit path."""

import logging
import os
import shutil
import tempfile
from typing import Optional

from reconcile_engine.core.sanitize import join_under

logger = logging.getLogger(__name__)

TMPFS_CANDIDATES = ("/dev/shm",)


def scratch_base(builds_dir: str = "") -> str:
    """Prefer the configured dir, then tmpfs, then the system temp dir."""
    if builds_dir:
        os.makedirs(builds_dir, mode=0o700, exist_ok=True)
        return builds_dir
    for candidate in TMPFS_CANDIDATES:
        if os.path.isdir(candidate) and os.access(candidate, os.W_OK):
            return candidate
    return tempfile.gettempdir()


class ScratchDir:
    """
    Context manager owning a private staging directory.

    Usage:
        with ScratchDir(base) as scratch:
            scratch.write("docker-compose.yml", data)
    """

    def __init__(self, base: str = "", prefix: str = "reconcile-"):
        self._base = base
        self._prefix = prefix
        self.path: Optional[str] = None

    def __enter__(self) -> "ScratchDir":
        self.path = tempfile.mkdtemp(prefix=self._prefix, dir=scratch_base(self._base))
        os.chmod(self.path, 0o700)
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.wipe()

    def write(self, rel_path: str, data: bytes) -> str:
        if self.path is None:
            raise RuntimeError("scratch directory is not open")
        full = join_under(self.path, rel_path)
        os.makedirs(os.path.dirname(full), mode=0o700, exist_ok=True)
        fd = os.open(full, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "wb") as f:
            f.write(data)
        return full

    def wipe(self) -> None:
        """Overwrite every staged file with zeros, then remove the tree."""
        if self.path is None:
            return
        path, self.path = self.path, None

        for dirpath, _, filenames in os.walk(path):
            for filename in filenames:
                full = os.path.join(dirpath, filename)
                try:
                    size = os.path.getsize(full)
                    with open(full, "r+b") as f:
                        f.write(b"\0" * size)
                        f.flush()
                except OSError as e:
                    logger.warning(f"[scratch] could not overwrite {filename}: {e.strerror}")

        shutil.rmtree(path, ignore_errors=True)
        logger.debug(f"[scratch] wiped {path}")
