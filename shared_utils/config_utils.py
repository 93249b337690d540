"""
Configuration loading for the productivity gap components.

Each component ships a ``config.yaml`` next to its package. Pipelines accept
either an already-built dictionary (tests, the recipe) or a path, and
validate the keys they read before any data is touched.
"""

import os
import logging
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

import yaml

REPO_ROOT = Path(__file__).resolve().parent.parent
CONFIG_ENV_VAR = 'PRODUCTIVITY_GAP_CONFIG'

logger = logging.getLogger(__name__)


def _candidate_paths(
    config_path: Optional[Union[str, Path]],
    component_name: Optional[str],
    default_config_name: str
) -> List[Path]:
    candidates = []
    if config_path:
        candidates.append(Path(config_path))
    if component_name:
        candidates.append(REPO_ROOT / component_name / default_config_name)
        candidates.append(Path(component_name) / default_config_name)
    candidates.append(Path(default_config_name))
    if os.environ.get(CONFIG_ENV_VAR):
        candidates.append(Path(os.environ[CONFIG_ENV_VAR]))
    return candidates


def load_config(
    config_path: Optional[Union[str, Path]] = None,
    component_name: Optional[str] = None,
    default_config_name: str = "config.yaml"
) -> Dict[str, Any]:
    """
    Load a component configuration from YAML.

    Search order:
    1. Explicit config_path if provided
    2. The component's package directory
    3. ``<component_name>/config.yaml`` and ``config.yaml`` under the
       working directory
    4. The file named by PRODUCTIVITY_GAP_CONFIG

    Args:
        config_path: Explicit path to configuration file
        component_name: Component package name, e.g. 'trend_analysis'
        default_config_name: File name searched for in each location

    Returns:
        Dict[str, Any]: Configuration with a ``_meta`` entry recording its source

    Raises:
        FileNotFoundError: If no candidate file exists
        ValueError: If the file does not hold a YAML mapping

    Examples:
        >>> config = load_config(component_name="benchmark_methods")
        >>> config = load_config("configs/spain_gpp.yaml")
    """
    candidates = _candidate_paths(config_path, component_name, default_config_name)
    config_file = next((path for path in candidates if path.exists()), None)
    if config_file is None:
        raise FileNotFoundError(
            f"Configuration file not found. Searched paths: {[str(p) for p in candidates]}"
        )

    with open(config_file, 'r', encoding='utf-8') as f:
        try:
            config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in {config_file}: {e}")

    if not isinstance(config, dict):
        raise ValueError(f"Configuration file {config_file} does not contain a mapping")

    config['_meta'] = {
        'config_file': str(config_file.absolute()),
        'component_name': component_name
    }
    logger.info(f"Loaded configuration from: {config_file}")
    return config


def validate_config(config: Dict[str, Any], required_keys: Optional[Iterable[str]] = None) -> bool:
    """
    Check that a configuration holds every required key.

    Keys may be dotted paths into nested sections, e.g. 'training.quantile'.

    Raises:
        ValueError: If config is not a mapping or any key is missing
    """
    if not isinstance(config, dict):
        raise ValueError("Configuration must be a dictionary")

    sentinel = object()
    missing = [key for key in (required_keys or []) if get_config_value(config, key, sentinel) is sentinel]
    if missing:
        raise ValueError(f"Missing required configuration keys: {missing}")
    return True


def resolve_config(
    config: Optional[Union[Dict[str, Any], str, Path]],
    component_name: str,
    required_keys: Iterable[str] = ()
) -> Dict[str, Any]:
    """
    Return a validated configuration from a dictionary, a path or the
    component default.

    Args:
        config: Configuration dictionary, path to a YAML file, or None
        component_name: Component package used for default discovery
        required_keys: Dotted keys the caller reads unconditionally

    Returns:
        Dict[str, Any]: The configuration dictionary
    """
    if not isinstance(config, dict):
        config = load_config(config, component_name=component_name)
    validate_config(config, ['logging.level', *required_keys])
    return config


def get_config_value(config: Dict[str, Any], key_path: str, default: Any = None) -> Any:
    """
    Get nested configuration value using dot notation.

    Examples:
        >>> quantile = get_config_value(config, 'training.quantile', 0.9)
        >>> workers = get_config_value(config, 'compute.num_workers', 1)
    """
    value = config
    for key in key_path.split('.'):
        if not isinstance(value, dict) or key not in value:
            return default
        value = value[key]
    return value


def save_config(config: Dict[str, Any], output_path: Union[str, Path]) -> None:
    """Write a configuration to YAML without its ``_meta`` bookkeeping."""
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)

    with open(output_path, 'w', encoding='utf-8') as f:
        yaml.dump({k: v for k, v in config.items() if not k.startswith('_')}, f,
                  default_flow_style=False, sort_keys=False)

    logger.info(f"Configuration saved to: {output_path}")
