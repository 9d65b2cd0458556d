"""
Read fields out of arbitrary provider JSON with dotted path expressions.

    extract({"a": {"b": [{"c": 5}]}}, "a.b[0].c")  ->  5

A segment is a key, a key followed by one or more `[index]` suffixes, or a
bare integer (indexes a list). Any missing hop resolves to None; lookups
never raise.
"""

import re
from typing import Any, Optional

_SEGMENT = re.compile(r"^([^\[\]]*)((?:\[-?\d+\])*)$")
_INDEX = re.compile(r"\[(-?\d+)\]")

_MISSING = object()


def _step(value: Any, key: Any) -> Any:
    if isinstance(value, dict):
        return value.get(key, _MISSING) if isinstance(key, str) else _MISSING
    if isinstance(value, list):
        if isinstance(key, str):
            if not key.lstrip("-").isdigit():
                return _MISSING
            key = int(key)
        try:
            return value[key]
        except IndexError:
            return _MISSING
    return _MISSING


def _parse(path: str) -> Optional[list[Any]]:
    steps: list[Any] = []
    for segment in path.split("."):
        match = _SEGMENT.match(segment)
        if match is None:
            return None
        name, indexes = match.groups()
        if name:
            steps.append(name)
        elif not indexes:
            # empty segment, e.g. "a..b"
            return None
        steps.extend(int(i) for i in _INDEX.findall(indexes))
    return steps


def extract(obj: Any, path: Optional[str]) -> Any:
    """
    Extract the value at `path` from `obj`.

    Returns:
        The value, `obj` itself for an empty path, or None when any part of
        the path is missing or malformed.
    """
    if not path:
        return obj

    steps = _parse(path.strip())
    if steps is None:
        return None

    current = obj
    for key in steps:
        current = _step(current, key)
        if current is _MISSING:
            return None
    return current


def matches(obj: Any, path: str, expected: Any) -> bool:
    """Check whether the value at `path` equals `expected`."""
    value = extract(obj, path)
    return value is not None and value == expected
