"""
Runner Pool — Configuration Loader

Layered config loading with environment profile support:

  Tier 1: Base YAML (pool/config.yaml, shipped with the package)
  Tier 2: Per-environment overlay (config/{env}.yaml under project_root)
  Tier 3: Environment variable overrides (RP_* prefix)

Active environment is set via RP_ENV (default: "dev").
Config is loaded once and cached for the process lifetime.

Usage:
    from ops.config import get_config

    config = get_config()
    tolerance = config.get("pickup.freq_tolerance", 5)
    spec = config.get("resource_classes.large")
"""

from __future__ import annotations

import copy
import logging
import os
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger("runner_pool.config")

DEFAULT_BASE_FILE = Path(__file__).resolve().parent.parent / "pool" / "config.yaml"


class ConfigLoader:
    """
    Hierarchical config loader with deep merge.

    Merge order (later overrides earlier):
      1. Base YAML files
      2. Environment overlay (config/{env}.yaml)
      3. Environment variable overrides (RP_* prefix)
    """

    def __init__(
        self,
        env: str = "dev",
        project_root: str = ".",
        base_files: list[str | Path] | None = None,
    ):
        self.env = env
        self.project_root = Path(project_root)
        self.base_files = base_files if base_files is not None else [DEFAULT_BASE_FILE]
        self._data: dict[str, Any] = {}
        self._source_log: list[str] = []
        self._loaded = False

    def load(self) -> dict[str, Any]:
        """Load and merge all config tiers. Returns merged dict."""
        self._data = {}
        self._source_log = []

        for base_file in self.base_files:
            base_path = Path(base_file)
            if not base_path.is_absolute():
                base_path = self.project_root / base_path
            if base_path.exists():
                with open(base_path) as f:
                    base_data = yaml.safe_load(f) or {}
                self._data = _deep_merge(self._data, base_data)
                self._source_log.append(f"base:{base_path.name}")

        overlay_path = self.project_root / "config" / f"{self.env}.yaml"
        if overlay_path.exists():
            with open(overlay_path) as f:
                overlay_data = yaml.safe_load(f) or {}
            self._data = _deep_merge(self._data, overlay_data)
            self._source_log.append(f"overlay:config/{self.env}.yaml")

        env_overrides = _load_env_overrides()
        if env_overrides:
            self._data = _deep_merge(self._data, env_overrides)
            self._source_log.append(f"env_vars({len(env_overrides)} keys)")

        self._data["_config_meta"] = {
            "env": self.env,
            "sources": self._source_log,
            "project_root": str(self.project_root),
        }

        self._loaded = True
        logger.info(
            "Config loaded: env=%s sources=%s",
            self.env, self._source_log,
        )
        return self._data

    def get(self, dotted_key: str, default: Any = None) -> Any:
        """
        Get a value by dotted key path.

        Example: config.get("health.period_seconds", 2)
        """
        if not self._loaded:
            self.load()

        return lookup(self._data, dotted_key, default)

    def get_all(self) -> dict[str, Any]:
        """Return the full merged config dict."""
        if not self._loaded:
            self.load()
        return copy.deepcopy(self._data)

    @property
    def sources(self) -> list[str]:
        return list(self._source_log)

    def reload(self) -> dict[str, Any]:
        """Force reload from all tiers."""
        self._loaded = False
        return self.load()


def lookup(data: dict[str, Any], dotted_key: str, default: Any = None) -> Any:
    """Walk `data` along a dotted key path; `default` if any step is missing."""
    current: Any = data
    for k in dotted_key.split("."):
        if isinstance(current, dict) and k in current:
            current = current[k]
        else:
            return default
    return current


# ═══════════════════════════════════════════════════════════════════
# Deep Merge
# ═══════════════════════════════════════════════════════════════════

def _deep_merge(base: dict, overlay: dict) -> dict:
    """
    Deep merge overlay into base. Overlay values win.
    Dicts are merged recursively. Lists and scalars are replaced.
    """
    result = copy.deepcopy(base)
    for key, value in overlay.items():
        if (
            key in result
            and isinstance(result[key], dict)
            and isinstance(value, dict)
        ):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = copy.deepcopy(value)
    return result


# ═══════════════════════════════════════════════════════════════════
# Environment Variable Overrides
# ═══════════════════════════════════════════════════════════════════

_ENV_MAPPINGS: dict[str, str] = {
    "RP_FREQ_TOLERANCE": "pickup.freq_tolerance",
    "RP_CLAIM_LEASE_SECONDS": "claim.lease_seconds",
    "RP_HEARTBEAT_PERIOD_SECONDS": "health.period_seconds",
    "RP_HEARTBEAT_MULTIPLIER": "health.multiplier",
    "RP_MAX_CLAIM_WORKERS": "selection.max_workers",
    "RP_DB_PATH": "store.db_path",
    "RP_LOG_LEVEL": "logging.level",
}


def _set_path(target: dict, config_path: str, value: Any) -> None:
    keys = config_path.split(".")
    current = target
    for k in keys[:-1]:
        current = current.setdefault(k, {})
    current[keys[-1]] = value


def _load_env_overrides() -> dict[str, Any]:
    """
    Load RP_* environment variables and map to config paths.
    Also supports arbitrary RP_CONFIG__path__to__key for unmapped overrides.
    """
    result: dict[str, Any] = {}

    for env_key, config_path in _ENV_MAPPINGS.items():
        value = os.environ.get(env_key)
        if value is not None:
            _set_path(result, config_path, _auto_convert(value))

    # Double underscores map to dots in the config path
    for key, value in os.environ.items():
        if key.startswith("RP_CONFIG__"):
            config_path = key[len("RP_CONFIG__"):].lower().replace("__", ".")
            _set_path(result, config_path, _auto_convert(value))

    return result


def _auto_convert(value: str) -> Any:
    """Convert string values to appropriate types."""
    if value.lower() in ("true", "yes"):
        return True
    if value.lower() in ("false", "no"):
        return False
    try:
        return int(value)
    except ValueError:
        pass
    try:
        return float(value)
    except ValueError:
        pass
    return value


# ═══════════════════════════════════════════════════════════════════
# Singleton / Module-level Access
# ═══════════════════════════════════════════════════════════════════

_instance: ConfigLoader | None = None


def get_config(
    env: str | None = None,
    project_root: str | None = None,
) -> ConfigLoader:
    """
    Get or create the singleton config loader.
    First call initializes; subsequent calls return cached instance.
    """
    global _instance
    if _instance is None:
        _env = env or os.environ.get("RP_ENV", "dev")
        _root = project_root or os.environ.get("RP_PROJECT_ROOT", ".")
        _instance = ConfigLoader(env=_env, project_root=_root)
        _instance.load()
    return _instance


def load_config(
    env: str = "dev",
    project_root: str = ".",
    base_files: list[str | Path] | None = None,
) -> ConfigLoader:
    """Create a fresh (non-singleton) config loader."""
    loader = ConfigLoader(env=env, project_root=project_root, base_files=base_files)
    loader.load()
    return loader


def reset_config():
    """Reset singleton for testing."""
    global _instance
    _instance = None
