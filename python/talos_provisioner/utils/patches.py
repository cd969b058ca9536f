"""
talos_provisioner/utils/patches.py

Merges YAML configuration patches into a rendered document mapping.

Mappings merge recursively; any other value (lists included) replaces the
existing one; an explicit null removes the key.
"""

from __future__ import annotations

import copy
from typing import Any, Dict, Iterable

import yaml


class PatchFormatError(ValueError):
    """A patch is not valid YAML or does not decode to a mapping."""


def load_patch(text: str) -> Dict[str, Any]:
    """
    Parse one YAML patch.

    Raises:
        PatchFormatError: If the text is not YAML or not a mapping.
    """
    try:
        loaded = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise PatchFormatError(f"patch is not valid YAML: {exc}") from exc
    if loaded is None:
        return {}
    if not isinstance(loaded, dict):
        raise PatchFormatError(
            f"patch must be a YAML mapping, got {type(loaded).__name__}"
        )
    return loaded


def merge_patch(base: Dict[str, Any], patch: Dict[str, Any]) -> Dict[str, Any]:
    """Return a new mapping with `patch` merged over `base`. Inputs are untouched."""
    merged = copy.deepcopy(base)
    for key, value in patch.items():
        if value is None:
            merged.pop(key, None)
        elif isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = merge_patch(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def apply_patches(base: Dict[str, Any], patches: Iterable[str]) -> Dict[str, Any]:
    """Apply YAML patches in order."""
    result = base
    for text in patches:
        result = merge_patch(result, load_patch(text))
    return result
