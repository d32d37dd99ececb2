"""
Dotted key-path helpers over nested record dicts.

A path such as ``"Inventory.Weapons.Sword"`` addresses nested mappings.
An empty or ``None`` path addresses the whole record.
"""

from __future__ import annotations

import copy
from typing import Any, Mapping, MutableMapping, Optional

from reliastore.core.constants import PATH_SEPARATOR


def split_path(path: str) -> list[str]:
    """Split a dotted path into its segments."""
    return path.split(PATH_SEPARATOR)


def deep_copy(value: Any) -> Any:
    return copy.deepcopy(value)


def deep_merge(target: MutableMapping[str, Any], defaults: Mapping[str, Any]) -> None:
    """
    Fill keys missing from ``target`` with values from ``defaults``.

    Existing scalar keys are never overwritten, including those holding
    ``None``. Nested default mappings recurse; where the target holds a
    non-mapping under a key whose default is a mapping, the target value
    is replaced by a copy of the default.
    """
    for key, default in defaults.items():
        if isinstance(default, Mapping):
            current = target.get(key)
            if not isinstance(current, MutableMapping):
                target[key] = deep_copy(default)
            else:
                deep_merge(current, default)
        elif key not in target:
            target[key] = deep_copy(default)


def deep_get(record: Any, path: Optional[str]) -> Any:
    """Read the value at ``path``; ``None`` if any hop is missing."""
    if not path:
        return record
    node = record
    for segment in split_path(path):
        if not isinstance(node, Mapping):
            return None
        node = node.get(segment)
    return node


def deep_set(record: MutableMapping[str, Any], path: str, value: Any) -> None:
    """Write ``value`` at ``path``, creating intermediate mappings."""
    segments = split_path(path)
    node = record
    for segment in segments[:-1]:
        child = node.get(segment)
        if not isinstance(child, MutableMapping):
            child = {}
            node[segment] = child
        node = child
    node[segments[-1]] = value
