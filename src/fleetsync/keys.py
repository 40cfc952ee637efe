"""Cache key normalization and matching."""

from collections.abc import Iterable, Mapping
from typing import Any

from fleetsync.types import CacheKey

_ESCAPE_MAP = {"\\": "\\\\", ":": "\\:"}


def _normalize_part(part: Any) -> Any:
    if isinstance(part, Mapping):
        return tuple(sorted((str(k), _normalize_part(v)) for k, v in part.items()))
    if isinstance(part, (list, tuple)):
        return tuple(_normalize_part(p) for p in part)
    if isinstance(part, (set, frozenset)):
        return tuple(sorted(_normalize_part(p) for p in part))
    hash(part)  # unhashable leaves raise TypeError here
    return part


def make_key(key: Any) -> CacheKey:
    """Normalize a key so structurally equal keys compare and hash equal.

    Example:
        make_key("vehicles")                              # ("vehicles",)
        make_key(["spare_parts", {"direction": "asc", "column": "name"}])
        # ("spare_parts", (("column", "name"), ("direction", "asc")))
    """
    if isinstance(key, str):
        return (key,)
    if isinstance(key, (list, tuple)):
        return tuple(_normalize_part(p) for p in key)
    raise TypeError(f"Cache key must be a str, list or tuple, got {type(key)}")


def make_keys(keys: Iterable[Any]) -> list[CacheKey]:
    """Normalize a collection of keys or prefixes."""
    if isinstance(keys, str) or (
        isinstance(keys, tuple) and keys and not isinstance(keys[0], (list, tuple))
    ):
        raise TypeError("Expected a collection of keys, not a single key")
    return [make_key(k) for k in keys]


def is_key_prefix(prefix: CacheKey, key: CacheKey) -> bool:
    """Check if prefix matches the leading elements of key."""
    if len(prefix) > len(key):
        return False
    return key[: len(prefix)] == prefix


def serialize_key(key: CacheKey) -> str:
    """Serialize a key to a readable string, used for logs and channel names."""

    def escape(part: Any) -> str:
        result = part if isinstance(part, str) else repr(part)
        for char, escaped in _ESCAPE_MAP.items():
            result = result.replace(char, escaped)
        return result

    return ":".join(escape(p) for p in key)
