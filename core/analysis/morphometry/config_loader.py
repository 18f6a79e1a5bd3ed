import json
import os
from copy import deepcopy
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from .errors import ConfigurationError, VolumeIOError

PROJECT_ROOT = Path(__file__).resolve().parents[3]
_CONFIG_PATH = PROJECT_ROOT / "config" / "morphometry" / "config.yaml"
_ENV_CONFIG_KEY = "MORPHOMETRY_CONFIG_JSON"
_PATH_KEYS = ("distance_transform_path", "phase_model_path")


def _deep_update(base: Dict[str, Any], updates: Dict[str, Any]) -> None:
    for key, value in updates.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            _deep_update(base[key], value)
        else:
            base[key] = value


def _resolve_path(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    path = Path(value)
    if not path.is_absolute():
        path = PROJECT_ROOT / path
    return str(path)


def _resolve_paths(config: Dict[str, Any]) -> None:
    paths = config.setdefault("paths", {})

    for key in _PATH_KEYS:
        paths[key] = _resolve_path(paths.get(key))

    paths["output_dir"] = _resolve_path(paths.get("output_dir") or "results")
    paths["checkpoint_dir"] = _resolve_path(paths.get("checkpoint_dir") or "checkpoints")


def _load_env_overrides() -> Optional[Dict[str, Any]]:
    raw = os.environ.get(_ENV_CONFIG_KEY)
    if not raw:
        return None
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"{_ENV_CONFIG_KEY} is not valid JSON: {e}") from e
    if not isinstance(payload, dict):
        raise ConfigurationError(f"{_ENV_CONFIG_KEY} must hold a JSON object")
    return payload


def load_config(overrides: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Load the morphometry config, preferring a JSON payload from the environment."""
    env_overrides = _load_env_overrides()
    if env_overrides:
        config = deepcopy(env_overrides)
    else:
        if not _CONFIG_PATH.exists():
            raise VolumeIOError(f"Config file not found: {_CONFIG_PATH}")
        try:
            with _CONFIG_PATH.open("r", encoding="utf-8") as handle:
                config = deepcopy(yaml.safe_load(handle) or {})
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Couldn't parse {_CONFIG_PATH}: {e}") from e

    if overrides:
        _deep_update(config, overrides)

    _resolve_paths(config)
    return config


def get_section(name: str) -> Dict[str, Any]:
    """One top-level section of the current config, empty when absent."""
    return load_config().get(name) or {}
