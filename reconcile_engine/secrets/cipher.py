# reconcile_engine/secrets/cipher.py
"""SOPS encryption backends."""

import logging
import os
import subprocess
import threading
import time
from abc import ABC, abstractmethod
from typing import List, Optional

from reconcile_engine.core.errors import DecryptionError, ReconcileError
from reconcile_engine.core.logging_setup import redact

logger = logging.getLogger(__name__)

FORMATS = ("dotenv", "yaml", "json")


class SopsCipher(ABC):
    """Encrypts/decrypts whole SOPS documents in memory."""

    @abstractmethod
    def decrypt(
        self,
        data: bytes,
        fmt: str,
        private_key: str,
        *,
        name: str = "",
        cancel: Optional[threading.Event] = None,
    ) -> bytes:
        raise NotImplementedError

    @abstractmethod
    def encrypt(self, data: bytes, fmt: str, *, name: str = "") -> bytes:
        raise NotImplementedError


class SopsCliCipher(SopsCipher):
    """
    Shells out to the sops binary. Documents travel over stdin/stdout and the
    key over the child's environment, so neither plaintext nor key touch disk.
    """

    POLL_SECONDS = 0.1

    def __init__(
        self,
        binary: str = "sops",
        age_recipients: str = "",
        timeout: float = 30.0,
    ):
        self.binary = binary
        self.age_recipients = age_recipients
        self.timeout = timeout

    def _run(
        self,
        args: List[str],
        data: bytes,
        env: dict,
        name: str,
        cancel: Optional[threading.Event],
        error_cls,
    ) -> bytes:
        try:
            process = subprocess.Popen(
                [self.binary, *args, "/dev/stdin"],
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                env=env,
            )
        except OSError as e:
            raise error_cls(f"{name}: cannot run sops: {e.strerror}") from None

        deadline = time.monotonic() + self.timeout
        payload = data
        while True:
            try:
                out, err = process.communicate(input=payload, timeout=self.POLL_SECONDS)
                break
            except subprocess.TimeoutExpired:
                # Input is only written on the first call
                payload = None
                if cancel is not None and cancel.is_set():
                    process.kill()
                    process.communicate()
                    raise error_cls(f"{name}: sops cancelled")
                if time.monotonic() > deadline:
                    process.kill()
                    process.communicate()
                    raise error_cls(f"{name}: sops timed out after {self.timeout}s")

        if process.returncode != 0:
            # stderr never contains plaintext, but may echo key ids; redact and trim
            detail = redact(err.decode("utf-8", "replace").strip())[:200]
            raise error_cls(f"{name}: sops exited {process.returncode}: {detail}")
        return out

    def decrypt(self, data, fmt, private_key, *, name="", cancel=None) -> bytes:
        if fmt not in FORMATS:
            raise DecryptionError(f"{name}: unsupported sops format {fmt!r}")

        env = {k: v for k, v in os.environ.items() if k != "SOPS_AGE_KEY_FILE"}
        env["SOPS_AGE_KEY"] = private_key

        logger.debug(f"[sops] decrypting {name} ({fmt})")
        return self._run(
            ["-d", "--input-type", fmt, "--output-type", fmt],
            data, env, name, cancel, DecryptionError,
        )

    def encrypt(self, data, fmt, *, name="") -> bytes:
        if fmt not in FORMATS:
            raise ReconcileError(f"{name}: unsupported sops format {fmt!r}")

        args = ["-e", "--input-type", fmt, "--output-type", fmt]
        if self.age_recipients:
            args += ["--age", self.age_recipients]

        logger.info(f"[sops] encrypting {name} ({fmt})")
        return self._run(args, data, dict(os.environ), name, None, ReconcileError)
