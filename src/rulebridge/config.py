"""Runtime configuration for materialisation and rule execution."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Literal

logger = logging.getLogger(__name__)

_STRATEGY_ENV = "RULEBRIDGE_STRATEGY"
_TYPE_KEY_ENV = "RULEBRIDGE_TYPE_KEY"
_UNRESOLVED_ENV = "RULEBRIDGE_UNRESOLVED"
_ISOLATE_FAULTS_ENV = "RULEBRIDGE_ISOLATE_FAULTS"
_FIRING_WATCHDOG_ENV = "RULEBRIDGE_FIRING_WATCHDOG"
_CACHE_DIR_ENV = "RULEBRIDGE_CACHE_DIR"

_STRATEGIES = ("bag", "compiled")
_UNRESOLVED_POLICIES = ("raw", "skip")
_TRUE_TEXT = {"1", "true", "yes", "on"}
_FALSE_TEXT = {"0", "false", "no", "off"}

Strategy = Literal["bag", "compiled"]
UnresolvedPolicy = Literal["raw", "skip"]


@dataclass
class RuntimeConfig:
    strategy: Strategy = "bag"
    type_key: str = "_type"
    unresolved: UnresolvedPolicy = "raw"
    isolate_faults: bool = True
    # 0 disables the cap applied to otherwise unbounded firing.
    firing_watchdog: int = 0
    cache_dir: str | None = None


def load_config(path: Path | None = None) -> RuntimeConfig:
    """Load runtime config from a JSON file with env var overrides."""
    config = RuntimeConfig()

    if path and path.exists():
        try:
            text = path.read_text(encoding="utf-8")
            if text.strip():
                data = json.loads(text)
                _apply(config, data.get("rulebridge", {}))
        except (json.JSONDecodeError, OSError) as exc:
            logger.warning("Ignoring unreadable config file %s: %s", path, exc)

    overrides: dict[str, object] = {}
    if _STRATEGY_ENV in os.environ:
        overrides["strategy"] = os.environ[_STRATEGY_ENV].strip().lower()
    if os.environ.get(_TYPE_KEY_ENV):
        overrides["type_key"] = os.environ[_TYPE_KEY_ENV]
    if _UNRESOLVED_ENV in os.environ:
        overrides["unresolved"] = os.environ[_UNRESOLVED_ENV].strip().lower()
    if _ISOLATE_FAULTS_ENV in os.environ:
        overrides["isolate_faults"] = os.environ[_ISOLATE_FAULTS_ENV]
    if _FIRING_WATCHDOG_ENV in os.environ:
        overrides["firing_watchdog"] = os.environ[_FIRING_WATCHDOG_ENV]
    if os.environ.get(_CACHE_DIR_ENV):
        overrides["cache_dir"] = os.environ[_CACHE_DIR_ENV]
    _apply(config, overrides)

    return config


def _apply(cfg: RuntimeConfig, data: dict) -> None:
    if not isinstance(data, dict):
        logger.warning("Ignoring non-object rulebridge config section.")
        return
    if "strategy" in data:
        if data["strategy"] in _STRATEGIES:
            cfg.strategy = data["strategy"]
        else:
            logger.warning("Ignoring unknown strategy %r.", data["strategy"])
    if "type_key" in data and isinstance(data["type_key"], str) and data["type_key"]:
        cfg.type_key = data["type_key"]
    if "unresolved" in data:
        if data["unresolved"] in _UNRESOLVED_POLICIES:
            cfg.unresolved = data["unresolved"]
        else:
            logger.warning("Ignoring unknown unresolved policy %r.", data["unresolved"])
    if "isolate_faults" in data:
        flag = _parse_flag(data["isolate_faults"])
        if flag is not None:
            cfg.isolate_faults = flag
    if "firing_watchdog" in data:
        try:
            limit = int(data["firing_watchdog"])
        except (TypeError, ValueError):
            logger.warning("Ignoring non-integer firing watchdog %r.", data["firing_watchdog"])
        else:
            cfg.firing_watchdog = max(limit, 0)
    if "cache_dir" in data and data["cache_dir"]:
        cfg.cache_dir = str(data["cache_dir"])


def _parse_flag(value: object) -> bool | None:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in _TRUE_TEXT:
        return True
    if text in _FALSE_TEXT:
        return False
    logger.warning("Ignoring non-boolean flag %r.", value)
    return None
