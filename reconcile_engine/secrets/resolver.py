# reconcile_engine/secrets/resolver.py
"""
Secret Resolver - decrypts SOPS documents and interpolates ${VAR} references.

Plaintext only ever lives in process memory. Decrypted values are registered
with the log redaction filter before they are returned.
"""

import logging
import re
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

import yaml

from reconcile_engine.core.errors import DecryptionError, InterpolationError
from reconcile_engine.core.logging_setup import register_secrets
from reconcile_engine.secrets.cipher import SopsCipher
from reconcile_engine.secrets.dotenv import (
    ENC_MARKER,
    is_sops_document,
    parse_dotenv,
)
from reconcile_engine.secrets.keys import KeyProvider

logger = logging.getLogger(__name__)


_VAR_PATTERN = re.compile(
    r"""
    \$(?:
        (?P<escaped>\$)
      | (?P<named>[A-Za-z_][A-Za-z0-9_]*)
      | \{(?P<braced>[A-Za-z_][A-Za-z0-9_]*)(?:(?P<op>:?[-?])(?P<arg>[^}]*))?\}
      | (?P<invalid>\{[^}]*\}?)
    )
    """,
    re.VERBOSE,
)


@dataclass
class Resolution:
    """Result of resolving one piece of IaC text."""

    text: str
    warnings: List[str] = field(default_factory=list)
    # Malformed ${...} tokens left in the output
    unresolved: List[str] = field(default_factory=list)


class SecretResolver:
    """Decrypt + interpolate, with the private key injected via a provider."""

    def __init__(self, key_provider: KeyProvider, cipher: SopsCipher):
        self._keys = key_provider
        self._cipher = cipher

    # -------------------------
    # DECRYPTION
    # -------------------------

    def is_encrypted(self, text: str, fmt: str) -> bool:
        return is_sops_document(text, fmt)

    def decrypt(
        self,
        text: str,
        fmt: str,
        *,
        name: str = "",
        cancel: Optional[threading.Event] = None,
    ) -> str:
        """Return plaintext; documents without SOPS markers pass through untouched."""
        if not self.is_encrypted(text, fmt):
            return text

        if cancel is not None and cancel.is_set():
            raise DecryptionError(f"{name}: decryption cancelled")

        key = self._keys.get_private_key()

        plaintext = self._cipher.decrypt(
            text.encode("utf-8"), fmt, key, name=name, cancel=cancel
        )
        try:
            decoded = plaintext.decode("utf-8")
        except UnicodeDecodeError:
            raise DecryptionError(f"{name}: decrypted document is not valid UTF-8") from None

        if ENC_MARKER in decoded:
            raise DecryptionError(f"{name}: ciphertext remains after decryption")

        self._register_plaintext(decoded, fmt)
        logger.debug(f"[secrets] decrypted {name}")
        return decoded

    def encrypt(self, text: str, fmt: str, *, name: str = "") -> str:
        """Encrypt a document for storage at rest."""
        return self._cipher.encrypt(text.encode("utf-8"), fmt, name=name).decode("utf-8")

    def _register_plaintext(self, text: str, fmt: str) -> None:
        if fmt == "dotenv":
            register_secrets(parse_dotenv(text).values())
        elif fmt in ("yaml", "json"):
            try:
                register_secrets(_leaf_strings(yaml.safe_load(text)))
            except yaml.YAMLError:
                pass

    # -------------------------
    # INTERPOLATION
    # -------------------------

    def interpolate(
        self,
        text: str,
        env: Mapping[str, str],
        *,
        strict: bool = False,
    ) -> Resolution:
        """
        Substitute $VAR, ${VAR}, ${VAR:-default}, ${VAR-default},
        ${VAR:?msg} and ${VAR?msg}; '$$' yields a literal '$'.

        A missing variable without default becomes "" plus a warning, unless
        strict is set, in which case InterpolationError is raised.
        """
        warnings: List[str] = []
        unresolved: List[str] = []

        def substitute(match: re.Match) -> str:
            if match.group("escaped"):
                return "$"
            if match.group("invalid") is not None:
                unresolved.append(match.group(0))
                return match.group(0)

            var = match.group("named") or match.group("braced")
            op = match.group("op")
            arg = match.group("arg") or ""
            value = env.get(var)

            if op in (":-", "-"):
                if value is None or (op == ":-" and value == ""):
                    return arg
                return value

            if op in (":?", "?"):
                if value is None or (op == ":?" and value == ""):
                    raise InterpolationError(
                        f"required variable {var} is not set" + (f": {arg}" if arg else "")
                    )
                return value

            if value is None:
                if strict:
                    raise InterpolationError(f"variable {var} is not set and has no default")
                message = f"variable {var} is not set; substituting empty string"
                if message not in warnings:
                    warnings.append(message)
                return ""
            return value

        result = _VAR_PATTERN.sub(substitute, text)
        return Resolution(text=result, warnings=warnings, unresolved=unresolved)

    def interpolate_tree(
        self,
        node: Any,
        env: Mapping[str, str],
        warnings: List[str],
        unresolved: List[str],
        *,
        strict: bool = False,
    ) -> Any:
        """Interpolate every string leaf of a parsed YAML tree."""
        if isinstance(node, str):
            res = self.interpolate(node, env, strict=strict)
            for w in res.warnings:
                if w not in warnings:
                    warnings.append(w)
            unresolved.extend(res.unresolved)
            return res.text
        if isinstance(node, dict):
            return {
                k: self.interpolate_tree(v, env, warnings, unresolved, strict=strict)
                for k, v in node.items()
            }
        if isinstance(node, list):
            return [
                self.interpolate_tree(v, env, warnings, unresolved, strict=strict)
                for v in node
            ]
        return node

    # -------------------------
    # CONTRACT
    # -------------------------

    def resolve(
        self,
        raw_text: str,
        env: Optional[Mapping[str, str]] = None,
        *,
        fmt: str = "dotenv",
        name: str = "",
        strict: bool = False,
        cancel: Optional[threading.Event] = None,
    ) -> Resolution:
        """Decrypt (if SOPS-protected) then interpolate raw IaC text."""
        plaintext = self.decrypt(raw_text, fmt, name=name, cancel=cancel)
        return self.interpolate(plaintext, env or {}, strict=strict)

    def load_env_file(
        self,
        raw_text: str,
        *,
        name: str = "",
        cancel: Optional[threading.Event] = None,
    ) -> Dict[str, str]:
        """Decrypt and parse a dotenv file into a mapping."""
        return parse_dotenv(self.decrypt(raw_text, "dotenv", name=name, cancel=cancel))


def _leaf_strings(node: Any) -> List[str]:
    if isinstance(node, str):
        return [node]
    if isinstance(node, dict):
        return [s for k, v in node.items() if k != "sops" for s in _leaf_strings(v)]
    if isinstance(node, list):
        return [s for v in node for s in _leaf_strings(v)]
    return []
