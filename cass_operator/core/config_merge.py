"""
Deep merge for the free-form server configuration.

The user supplied ``config`` blob is overlaid on generated defaults:

- object nodes merge recursively
- arrays are replaced wholesale
- scalar leaves from the override win

Example:
    >>> deep_merge({"a": {"b": 1, "c": [1]}}, {"a": {"c": [2], "d": 3}})
    {'a': {'b': 1, 'c': [2], 'd': 3}}
"""
import copy
from typing import Any, Dict, Mapping


def deep_merge(base: Mapping[str, Any], override: Mapping[str, Any]) -> Dict[str, Any]:
    """
    Merge ``override`` into a copy of ``base``.

    Neither input is mutated.
    """
    merged: Dict[str, Any] = copy.deepcopy(dict(base))
    for key, value in override.items():
        current = merged.get(key)
        if isinstance(current, Mapping) and isinstance(value, Mapping):
            merged[key] = deep_merge(current, value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def search(tree: Mapping[str, Any], key: str) -> Dict[str, Any]:
    """
    Return the first mapping stored under ``key`` anywhere in ``tree``.

    Breadth first; returns an empty dict when nothing matches.
    """
    queue = [tree]
    while queue:
        node = queue.pop(0)
        for k, v in node.items():
            if k == key and isinstance(v, Mapping):
                return dict(v)
        queue.extend(v for v in node.values() if isinstance(v, Mapping))
    return {}
