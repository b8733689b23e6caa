"""
Merging of YAML value trees.

A value tree is what yaml.safe_load returns: mappings, sequences and
scalars. Mappings merge key by key; a sequence or scalar in the override
replaces the base value wholesale.
"""

import copy
from typing import Any


def merge_values(base: Any, override: Any) -> Any:
    """Return a new tree with `override` merged over `base`. Inputs are not modified."""
    if isinstance(base, dict) and isinstance(override, dict):
        merged = {key: copy.deepcopy(value) for key, value in base.items()}
        for key, value in override.items():
            if key in merged:
                merged[key] = merge_values(merged[key], value)
            else:
                merged[key] = copy.deepcopy(value)
        return merged

    if override is None:
        return copy.deepcopy(base)

    return copy.deepcopy(override)
