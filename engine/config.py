"""
Agent Runtime - Configuration Loader

Three-tier configuration loading (highest wins):
  1. Environment variable overrides (AR_ prefixed)
  2. Per-environment overlay file (config/{AR_ENV}.yaml)
  3. Base config file (agent_runtime.yaml)

Usage:
    from engine.config import load_config, get_config_value

    cfg = load_config(base_path="agent_runtime.yaml", env="prod")
    timeout = get_config_value("defaults.approval_timeout_seconds", cfg, 3600)

Environment variables:
    AR_ENV          active profile (dev, staging, prod)
    AR_CONFIG_DIR   directory for overlay files (default: config/)
    AR_CONFIG_PATH  base config file (default: agent_runtime.yaml)
    AR_<SECTION>__<KEY>=value   nested override, double underscore separates
                    levels (AR_DEFAULTS__MAX_ITERATIONS=40)
"""

from __future__ import annotations

import copy
import logging
import os
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger("agent_runtime.config")

_META_VARS = {"AR_ENV", "AR_CONFIG_DIR", "AR_CONFIG_PATH", "AR_WORKER_MODE",
              "AR_VERSION", "AR_DB_BACKEND", "AR_DB_DSN",
              "AR_MAX_WORKERS", "AR_JOB_TIMEOUT", "AR_REDIS_URL"}


# ═══════════════════════════════════════════════════════════════════
# Built-in Defaults
# ═══════════════════════════════════════════════════════════════════

DEFAULTS: dict[str, Any] = {
    "defaults": {
        "max_iterations": 20,
        "max_cost_units": 5.0,
        "approval_timeout_seconds": 3600,
        "actions_requiring_approval": [
            "COMMIT_CHANGES", "CREATE_PULL_REQUEST", "DELETE_FILE", "MERGE_PR",
        ],
        "actions_never_requiring_approval": [
            "FETCH_JIRA_STORY", "QUERY_ELEMENT_REGISTRY", "READ_FILE",
        ],
        "max_delegation_depth": 5,
    },
    "store": {"backend": "sqlite", "path": "agent_runtime.db", "dsn": ""},
    "worker": {"mode": "thread", "max_workers": 4, "redis_url": "redis://localhost:6379"},
    "tools": {"factory": ""},
    "approvals": {"sweep_interval_seconds": 60},
    "circuit_breaker": {"threshold": 5, "reset_seconds": 60},
    "logging": {"level": "INFO", "json": True},
    "agents": {"enabled": []},
}


# ═══════════════════════════════════════════════════════════════════
# Deep Merge
# ═══════════════════════════════════════════════════════════════════

def deep_merge(base: dict, overlay: dict) -> dict:
    """
    Deep-merge overlay into base. Overlay values win.
    Lists are replaced (not appended). Dicts are recursed.
    """
    result = copy.deepcopy(base)
    for key, value in overlay.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = copy.deepcopy(value)
    return result


def _set_nested(d: dict, keys: list[str], value: str):
    """Set a nested dict value from a list of keys, YAML-parsing the value."""
    for key in keys[:-1]:
        d = d.setdefault(key, {})
    try:
        d[keys[-1]] = yaml.safe_load(value)
    except yaml.YAMLError:
        d[keys[-1]] = value


# ═══════════════════════════════════════════════════════════════════
# Tier 2: Overlay Files
# ═══════════════════════════════════════════════════════════════════

def _load_overlay_file(base_path: str, env: str = "", config_dir: str = "") -> dict[str, Any]:
    """Load the per-environment overlay. Empty dict when none is found."""
    env = env or os.environ.get("AR_ENV", "")
    if not env:
        return {}

    config_dir = config_dir or os.environ.get("AR_CONFIG_DIR", "config")
    candidates = [
        Path(config_dir) / f"{env}.yaml",
        Path(config_dir) / f"{env}.yml",
        Path(os.path.dirname(os.path.abspath(base_path))) / "config" / f"{env}.yaml",
    ]

    for path in candidates:
        if path.exists():
            with open(path) as f:
                overlay = yaml.safe_load(f) or {}
            logger.info("Loaded config overlay: %s (%d keys)", path, len(overlay))
            return overlay

    logger.debug("No config overlay found for env=%s", env)
    return {}


# ═══════════════════════════════════════════════════════════════════
# Tier 1: Environment Variable Overrides
# ═══════════════════════════════════════════════════════════════════

def _load_env_overrides(prefix: str = "AR_") -> dict[str, Any]:
    """
    AR_SECTION__KEY=value → {"section": {"key": value}}

    Values are YAML-parsed so numbers, booleans and lists come through typed.
    """
    overrides: dict[str, Any] = {}
    for key, value in os.environ.items():
        if not key.startswith(prefix) or key in _META_VARS:
            continue
        path = [p for p in key[len(prefix):].lower().split("__") if p]
        if path:
            _set_nested(overrides, path, value)

    if overrides:
        logger.debug("Loaded %d env var overrides", len(overrides))
    return overrides


# ═══════════════════════════════════════════════════════════════════
# Main Loader
# ═══════════════════════════════════════════════════════════════════

def load_config(
    base_path: str = "",
    env: str = "",
    config_dir: str = "",
    include_env_vars: bool = True,
) -> dict[str, Any]:
    """
    Load configuration: built-in defaults ← base file ← overlay ← env vars.

    Args:
        base_path: Base YAML config (default AR_CONFIG_PATH or agent_runtime.yaml)
        env: Environment name (overrides AR_ENV)
        config_dir: Overlay directory (overrides AR_CONFIG_DIR)
        include_env_vars: Whether to apply AR_* overrides
    """
    base_path = base_path or os.environ.get("AR_CONFIG_PATH", "agent_runtime.yaml")
    config = copy.deepcopy(DEFAULTS)

    if os.path.exists(base_path):
        with open(base_path) as f:
            config = deep_merge(config, yaml.safe_load(f) or {})
        logger.debug("Loaded base config: %s", base_path)

    overlay = _load_overlay_file(base_path, env=env, config_dir=config_dir)
    if overlay:
        config = deep_merge(config, overlay)

    if include_env_vars:
        env_overrides = _load_env_overrides()
        if env_overrides:
            config = deep_merge(config, env_overrides)

    config["_active_env"] = env or os.environ.get("AR_ENV", "default")
    config["_config_source"] = base_path
    return config


def get_config_value(
    path: str,
    config: dict[str, Any] | None = None,
    default: Any = None,
) -> Any:
    """
    Get a nested config value by dotted path.

    Example:
        get_config_value("worker.max_workers", cfg, 4)
    """
    if config is None:
        config = load_config()

    current: Any = config
    for key in path.split("."):
        if isinstance(current, dict) and key in current:
            current = current[key]
        else:
            return default
    return current
