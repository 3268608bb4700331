"""Disk persistence for type definitions."""

from __future__ import annotations

import os
from pathlib import Path
import tempfile
from typing import Iterable, Optional

from diskcache import Cache

from rulebridge.schema.definitions import TypeDefinition


_TYPE_CACHE_ENV = "RULEBRIDGE_TYPE_CACHE_DIR"
_CACHE_ENV = "RULEBRIDGE_CACHE_DIR"


def type_cache_dir(directory: Optional[str | Path] = None) -> Path:
    if directory:
        return Path(directory).expanduser()
    env_dir = os.environ.get(_TYPE_CACHE_ENV) or os.environ.get(_CACHE_ENV)
    if env_dir:
        return Path(env_dir).expanduser()
    return Path(tempfile.gettempdir()) / "rulebridge" / "type_cache"


def _open_type_cache(directory: Optional[str | Path] = None) -> Cache:
    return Cache(str(type_cache_dir(directory)))


def cache_type_definitions(
    definitions: Iterable[TypeDefinition],
    directory: Optional[str | Path] = None,
    *,
    replace: bool = False,
) -> int:
    """Write ``definitions`` keyed by qualified name.

    With ``replace`` the cache is cleared first, so it holds exactly
    ``definitions`` afterwards.
    """
    cache = _open_type_cache(directory)
    count = 0
    try:
        if replace:
            cache.clear()
        for definition in definitions:
            cache.set(definition.qualified_name, definition.to_dict())
            count += 1
    finally:
        cache.close()
    return count


def load_type_definitions_from_cache(
    directory: Optional[str | Path] = None,
) -> list[TypeDefinition]:
    cache = _open_type_cache(directory)
    try:
        items = [cache[key] for key in sorted(cache.iterkeys())]
    finally:
        cache.close()
    return [TypeDefinition.from_dict(item) for item in items]


def clear_type_cache(directory: Optional[str | Path] = None) -> int:
    cache = _open_type_cache(directory)
    try:
        return cache.clear()
    finally:
        cache.close()
