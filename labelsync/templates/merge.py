"""Deep merge for layered template documents."""

import copy
from typing import Any


def deep_merge(base: Any, overlay: Any) -> Any:
    """Merge ``overlay`` onto ``base`` without mutating either.

    Dicts are merged key by key, lists are concatenated (base first) and any
    other value in ``overlay`` replaces the base value.

    Args:
        base: Base document
        overlay: Overriding document

    Returns:
        New merged document
    """
    if isinstance(base, dict) and isinstance(overlay, dict):
        merged = {key: copy.deepcopy(value) for key, value in base.items()}
        for key, value in overlay.items():
            if key in merged:
                merged[key] = deep_merge(merged[key], value)
            else:
                merged[key] = copy.deepcopy(value)
        return merged

    if isinstance(base, list) and isinstance(overlay, list):
        return copy.deepcopy(base) + copy.deepcopy(overlay)

    return copy.deepcopy(overlay)
