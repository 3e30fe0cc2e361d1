# fleet_trip_engine/config/loader.py
"""
Reads the YAML configuration file into a validated EngineConfig.

The provider token is a credential and is usually kept out of the file:
when FLEET_TRIP_ENGINE_TOKEN is set it replaces `provider.token`. Every
failure is logged with the file path before it is raised.
"""

import logging
import os
from pathlib import Path
from typing import Any, Final

import yaml

from fleet_trip_engine.config.config_models import EngineConfig

logger: logging.Logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH: Final[Path] = Path('config/engine_config.yaml')
TOKEN_ENV_VAR: Final[str] = 'FLEET_TRIP_ENGINE_TOKEN'


def _apply_token_override(raw_config_data: dict[str, Any]) -> None:
    token: str | None = os.environ.get(TOKEN_ENV_VAR)
    if not token:
        return
    provider_section: Any = raw_config_data.setdefault('provider', {})
    if isinstance(provider_section, dict):
        provider_section['token'] = token
        logger.debug('Provider token taken from %s', TOKEN_ENV_VAR)


def load_config(config_path: Path | str | None = None) -> EngineConfig:
    """Load and validate engine configuration from a YAML file.

    Args:
        config_path: YAML file; defaults to config/engine_config.yaml under
            the working directory.

    Returns:
        Validated EngineConfig.

    Raises:
        FileNotFoundError: The file does not exist.
        yaml.YAMLError: The file is not valid YAML.
        ValueError: The top level is not a mapping, or validation failed.

    Example:
        >>> config = load_config('config/engine_config.yaml')
        >>> config.segmentation.idle_timeout_seconds
        180
    """
    path: Path = DEFAULT_CONFIG_PATH if config_path is None else Path(config_path)
    logger.info('Loading engine configuration from: %s', path)

    if not path.exists():
        error_message: str = f'Configuration file not found: {path}'
        logger.error(error_message)
        raise FileNotFoundError(error_message)

    try:
        with path.open(encoding='utf-8') as config_file:
            raw_config_data: Any = yaml.safe_load(config_file)
    except yaml.YAMLError as error:
        error_message = f'Failed to parse YAML configuration {path}: {error}'
        logger.error(error_message)
        raise yaml.YAMLError(error_message) from error

    if not isinstance(raw_config_data, dict):
        error_message = (
            f'Configuration validation failed for {path}: top level must be a mapping, '
            f'got {type(raw_config_data).__name__}'
        )
        logger.error(error_message)
        raise ValueError(error_message)

    _apply_token_override(raw_config_data)

    try:
        validated_config = EngineConfig(**raw_config_data)
    except ValueError as error:
        error_message = f'Configuration validation failed for {path}: {error}'
        logger.error(error_message)
        raise ValueError(error_message) from error

    logger.info(
        'Configuration loaded: %d configured device(s), database=%s',
        len(validated_config.devices),
        validated_config.storage.database_url.split('://', 1)[0],
    )
    return validated_config
