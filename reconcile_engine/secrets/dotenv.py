# reconcile_engine/secrets/dotenv.py
"""Dotenv parsing and SOPS document detection."""

import io
import re
from typing import Dict

import yaml
from dotenv import dotenv_values


ENC_MARKER = "ENC["
DOTENV_SOPS_MARKERS = ("sops_mac=", "sops_version=", "sops_age__")

_YAML_SOPS_BLOCK = re.compile(r"^sops:\s*$", re.MULTILINE)


def parse_dotenv(text: str) -> Dict[str, str]:
    """
    Parse dotenv content into an ordered dict.

    Accepts 'export KEY=value'; drops SOPS metadata keys (sops_*). A key
    without '=' has no value and is skipped.
    """
    values = dotenv_values(stream=io.StringIO(text), interpolate=False)
    return {
        k: v
        for k, v in values.items()
        if v is not None and not k.lower().startswith("sops_")
    }


def is_sops_dotenv(text: str) -> bool:
    if ENC_MARKER in text:
        return True
    return any(marker in text for marker in DOTENV_SOPS_MARKERS)


def is_sops_yaml(text: str) -> bool:
    """True for a YAML/JSON document carrying a top-level sops metadata block."""
    try:
        doc = yaml.safe_load(text)
    except yaml.YAMLError:
        return bool(_YAML_SOPS_BLOCK.search(text))
    return isinstance(doc, dict) and isinstance(doc.get("sops"), dict)


def detect_format(rel_path: str) -> str:
    """Map a file name to the sops input type."""
    name = rel_path.lower().rsplit("/", 1)[-1]
    if name.endswith((".yml", ".yaml")):
        return "yaml"
    if name.endswith(".json"):
        return "json"
    if name.endswith(".env") or name.startswith(".env"):
        return "dotenv"
    return "binary"


def is_sops_document(text: str, fmt: str) -> bool:
    if fmt == "dotenv":
        return is_sops_dotenv(text)
    if fmt in ("yaml", "json"):
        return is_sops_yaml(text)
    return False
