"""Structural cleaning of payloads before they are written to the database.

The realtime database rejects values it cannot represent, so every write goes
through :func:`clean`, which removes fields explicitly marked as ``MISSING``.
``None`` is a real value (it deletes the field on write) and is never removed.
"""

from collections.abc import Mapping
from typing import Any, Dict, List, Tuple, Union


class _Missing:
    _instance = None

    def __new__(cls) -> "_Missing":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False

    def __copy__(self) -> "_Missing":
        return self

    def __deepcopy__(self, memo: Dict) -> "_Missing":
        return self

    def __reduce__(self) -> str:
        return "MISSING"


MISSING: Any = _Missing()

Scalar = Union[None, bool, int, float, str, bytes]
Value = Union[Scalar, List["Value"], Tuple["Value", ...], Dict[str, "Value"]]


def is_missing(value: Any) -> bool:
    return value is MISSING


def clean(value: Value) -> Value:
    """Return a copy of ``value`` with every ``MISSING`` field removed.

    Sequences are compacted, mapping keys holding ``MISSING`` are dropped.
    Containers that become empty are kept; only a direct ``MISSING`` is removed.
    """
    if isinstance(value, (list, tuple)):
        return _clean_sequence(value)
    if isinstance(value, Mapping):
        return _clean_mapping(value)
    return value


def _clean_sequence(items: Union[List[Any], Tuple[Any, ...]]) -> Union[List[Any], Tuple[Any, ...]]:
    cleaned = []
    for item in items:
        if item is MISSING:
            continue
        result = clean(item)
        if result is not MISSING:
            cleaned.append(result)
    if isinstance(items, tuple):
        return tuple(cleaned)
    return cleaned


def _clean_mapping(mapping: Mapping) -> Dict[str, Any]:
    result: Dict[str, Any] = {}
    for key, item in mapping.items():
        if item is MISSING:
            continue
        cleaned = clean(item)
        if cleaned is not MISSING:
            result[key] = cleaned
    return result
