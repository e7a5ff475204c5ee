import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

from .models import ConverterConfig

DEFAULT_CONFIG_PATH = Path("config/default.yaml")
LOCAL_CONFIG_PATH = Path("config/local.yaml")

# Environment variable -> dotted config path
ENV_OVERRIDES = {
    "VIDEO_CONVERTER_DB": "database.path",
    "CONVERSION_QUEUE": "queue.conversion_queue",
    "CONFIRMATION_QUEUE": "queue.confirmation_queue",
    "DEAD_LETTER_QUEUE": "queue.retry.dead_letter_queue",
    "FFMPEG_PATH": "transcoder.ffmpeg_path",
    "WORKER_COUNT": "worker.n_workers",
    "LOG_LEVEL": "logging.level",
}


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


def env_overrides(environ: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
    """Build a nested override dict from the environment.

    Empty values are ignored. Values stay strings; pydantic coerces them.
    """
    environ = os.environ if environ is None else environ
    overrides: Dict[str, Any] = {}
    for var, dotted in ENV_OVERRIDES.items():
        value = environ.get(var)
        if not value:
            continue
        node = overrides
        *parents, leaf = dotted.split(".")
        for key in parents:
            node = node.setdefault(key, {})
        node[leaf] = value
    return overrides


def resolve_config(
    cli_args: Dict[str, Any] = None,
    config_path: Optional[Path] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> ConverterConfig:
    """
    Resolve config: Default < Local < Environment < CLI
    Returns validated Pydantic ConverterConfig model.

    Raises:
        pydantic.ValidationError: If the merged config is invalid
    """
    cli_args = cli_args or {}

    config_data = load_yaml(config_path or DEFAULT_CONFIG_PATH)
    config_data = merge_dicts(config_data, load_yaml(LOCAL_CONFIG_PATH))
    config_data = merge_dicts(config_data, env_overrides(environ))

    config = ConverterConfig.from_dict(config_data)
    return config.merge_cli_overrides(cli_args)
