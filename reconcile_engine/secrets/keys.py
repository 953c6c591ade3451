# reconcile_engine/secrets/keys.py
"""Providers for the SOPS age private key."""

import logging
import os
from abc import ABC, abstractmethod
from threading import Lock
from typing import Mapping, Optional

from reconcile_engine.core.errors import DecryptionError

logger = logging.getLogger(__name__)


class KeyProvider(ABC):
    """Source of the process-wide private key. Key material stays in memory."""

    @abstractmethod
    def get_private_key(self) -> str:
        """Return key material or raise DecryptionError."""
        raise NotImplementedError


class StaticKeyProvider(KeyProvider):
    """Fixed key, for tests and embedding."""

    def __init__(self, key: Optional[str]):
        self._key = key

    def get_private_key(self) -> str:
        if not self._key:
            raise DecryptionError("no SOPS private key configured")
        return self._key


class EnvKeyProvider(KeyProvider):
    """
    Loads the age key once from SOPS_AGE_KEY, or from the file named by
    SOPS_AGE_KEY_FILE, and keeps it in memory for the life of the process.
    """

    def __init__(self, environ: Optional[Mapping[str, str]] = None):
        self._environ = environ if environ is not None else os.environ
        self._key: Optional[str] = None
        self._loaded = False
        self._lock = Lock()

    def _load(self) -> Optional[str]:
        key = (self._environ.get("SOPS_AGE_KEY") or "").strip()
        if key:
            logger.info("[secrets] SOPS key loaded from SOPS_AGE_KEY")
            return key

        key_file = (self._environ.get("SOPS_AGE_KEY_FILE") or "").strip()
        if key_file:
            try:
                with open(key_file, "r", encoding="utf-8") as f:
                    key = f.read().strip()
            except OSError as e:
                logger.error(f"[secrets] cannot read SOPS_AGE_KEY_FILE: {e.strerror}")
                return None
            if key:
                logger.info("[secrets] SOPS key loaded from SOPS_AGE_KEY_FILE")
                return key

        logger.warning("[secrets] no SOPS key available; encrypted files cannot be rendered")
        return None

    def get_private_key(self) -> str:
        with self._lock:
            if not self._loaded:
                self._key = self._load()
                self._loaded = True
        if not self._key:
            raise DecryptionError("no SOPS private key configured")
        return self._key
