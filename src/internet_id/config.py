import os
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml

from .models import AppConfig

DEFAULT_CONFIG_PATH = Path("config/default.yaml")
LOCAL_CONFIG_PATH = Path("config/local.yaml")


def get_config_value(config: Union[AppConfig, Dict], path: str, default=None):
    """
    Safely get a config value from either Pydantic model or dict.

    Args:
        config: AppConfig model or dict
        path: Dot-separated path like "queue.retry.max_attempts"
        default: Default value if not found

    Returns:
        The config value or default
    """
    if isinstance(config, AppConfig):
        config = config.model_dump()

    value = config
    for key in path.split("."):
        if isinstance(value, dict) and key in value:
            value = value[key]
        else:
            return default
    return value


def load_yaml(path: Path) -> Dict[str, Any]:
    """Load YAML file, returning empty dict if not found."""
    if not path.exists():
        return {}
    with open(path, "r") as f:
        return yaml.safe_load(f) or {}


def merge_dicts(base: Dict, override: Dict) -> Dict:
    """Recursive merge of two dictionaries."""
    result = base.copy()
    for k, v in override.items():
        if k in result and isinstance(result[k], dict) and isinstance(v, dict):
            result[k] = merge_dicts(result[k], v)
        else:
            result[k] = v
    return result


def env_overrides(environ: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
    """Collect overrides from QUEUE_URL / REDIS_URL, DATABASE_URL and LOG_LEVEL."""
    environ = os.environ if environ is None else environ
    overrides: Dict[str, Any] = {}

    queue_url = environ.get("QUEUE_URL") or environ.get("REDIS_URL")
    if queue_url:
        overrides.setdefault("queue", {})["url"] = queue_url
    if environ.get("DATABASE_URL"):
        overrides.setdefault("database", {})["url"] = environ["DATABASE_URL"]
    if environ.get("LOG_LEVEL"):
        overrides.setdefault("logging", {})["level"] = environ["LOG_LEVEL"]

    return overrides


def resolve_config(
    overrides: Optional[Dict[str, Any]] = None,
    environ: Optional[Dict[str, str]] = None,
    default_path: Path = DEFAULT_CONFIG_PATH,
    local_path: Path = LOCAL_CONFIG_PATH,
) -> AppConfig:
    """
    Resolve config: Default < Local < Environment < explicit overrides.
    Returns validated Pydantic AppConfig model.
    """
    config_data = load_yaml(default_path)
    config_data = merge_dicts(config_data, load_yaml(local_path))
    config_data = merge_dicts(config_data, env_overrides(environ))
    config_data = merge_dicts(config_data, overrides or {})

    return AppConfig.from_dict(config_data)
