# reconcile_engine/registry/file_store.py
"""IaC files on disk: <base>/<scope_name>/<stack_name>/<rel_path>."""

import logging
import os
import shutil
import tempfile
from typing import List

from reconcile_engine.core.errors import NotFound
from reconcile_engine.core.models import StackKey
from reconcile_engine.core.sanitize import join_under

logger = logging.getLogger(__name__)


class IacFileStore:
    def __init__(self, base_dir: str):
        self.base_dir = base_dir

    def stack_dir(self, key: StackKey) -> str:
        scope_dir = join_under(self.base_dir, key.scope_name)
        return join_under(scope_dir, key.stack_name)

    def path_for(self, key: StackKey, rel_path: str) -> str:
        return join_under(self.stack_dir(key), rel_path)

    # -------------------------
    # READ
    # -------------------------

    def read(self, key: StackKey, rel_path: str) -> bytes:
        path = self.path_for(key, rel_path)
        try:
            with open(path, "rb") as f:
                return f.read()
        except FileNotFoundError:
            raise NotFound(f"File {rel_path} not found in {key}") from None

    def walk(self, key: StackKey) -> List[str]:
        """Relative paths of every file under the stack dir, sorted."""
        root = self.stack_dir(key)
        results = []
        for dirpath, dirnames, filenames in os.walk(root):
            dirnames[:] = sorted(d for d in dirnames if not d.startswith(".git"))
            for filename in filenames:
                full = os.path.join(dirpath, filename)
                results.append(os.path.relpath(full, root).replace(os.sep, "/"))
        return sorted(results)

    def list_scopes(self) -> List[str]:
        if not os.path.isdir(self.base_dir):
            return []
        return sorted(
            d for d in os.listdir(self.base_dir)
            if os.path.isdir(os.path.join(self.base_dir, d)) and not d.startswith(".")
        )

    def list_stack_names(self, scope_name: str) -> List[str]:
        scope_dir = join_under(self.base_dir, scope_name)
        if not os.path.isdir(scope_dir):
            return []
        return sorted(
            d for d in os.listdir(scope_dir)
            if os.path.isdir(os.path.join(scope_dir, d)) and not d.startswith(".")
        )

    # -------------------------
    # WRITE
    # -------------------------

    def write(self, key: StackKey, rel_path: str, data: bytes) -> str:
        """Atomic write: temp file in the same dir, then os.replace."""
        path = self.path_for(key, rel_path)
        directory = os.path.dirname(path)
        os.makedirs(directory, exist_ok=True)

        fd, tmp = tempfile.mkstemp(prefix=".tmp-", dir=directory)
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, path)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise
        return path

    def delete(self, key: StackKey, rel_path: str) -> bool:
        path = self.path_for(key, rel_path)
        try:
            os.unlink(path)
            return True
        except FileNotFoundError:
            return False

    def delete_stack(self, key: StackKey) -> None:
        path = self.stack_dir(key)
        if os.path.isdir(path):
            shutil.rmtree(path)
            logger.info(f"[iac] removed directory for {key}")
