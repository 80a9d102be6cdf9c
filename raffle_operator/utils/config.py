"""
Configuration Management
"""

import json
import os
from pathlib import Path
from typing import Any, Dict, Optional

from raffle_operator.utils.logger import get_logger

logger = get_logger(__name__)

DEFAULT_CONFIG_FILE = Path(__file__).parent.parent.parent / "config" / "raffle.conf"

# Environment prefix -> config section
ENV_SECTIONS = {
    "RAFFLE_": "raffle",
    "ORACLE_": "oracle",
    "OPERATOR_": "operator",
    "PAYOUT_": "payout",
    "BLOCKCHAIN_": "blockchain",
    "SERVER_": "server",
}


def load_config(config_file: Optional[str] = None) -> Dict[str, Any]:
    """Load configuration from files and environment variables"""
    config: Dict[str, Any] = {}

    if config_file is None:
        config_file = os.getenv("RAFFLE_CONFIG_FILE") or DEFAULT_CONFIG_FILE
    config_path = Path(config_file)

    if config_path.exists():
        try:
            with open(config_path, 'r') as f:
                file_config = json.load(f)
                config.update(file_config)
                logger.info(f"Loaded configuration from {config_path}")
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Error loading config file: {e}")
    else:
        logger.warning(f"Config file {config_path} not found. Will only use environment variables.")

    # Override with environment variables, defined in .env
    config = _apply_env_overrides(config)

    logger.debug(f"Configuration after applying environment overrides: {json.dumps(_redacted(config), indent=2)}")

    return config


def _apply_env_overrides(config: Dict[str, Any]) -> Dict[str, Any]:
    """Apply environment variable overrides to configuration"""
    for key, value in os.environ.items():
        if key == "RAFFLE_CONFIG_FILE":
            continue
        for prefix, section in ENV_SECTIONS.items():
            if key.startswith(prefix):
                config.setdefault(section, {})[key[len(prefix):].lower()] = value
                break

    return config


def _redacted(config: Dict[str, Any]) -> Dict[str, Any]:
    """Copy of config with private keys and tokens masked for logging"""
    masked: Dict[str, Any] = {}
    for section, values in config.items():
        if isinstance(values, dict):
            masked[section] = {
                k: ("***" if "private_key" in k or k.endswith("token") else v) for k, v in values.items()
            }
        else:
            masked[section] = values
    return masked


def get_config_value(config: Dict[str, Any], key_path: str, default=None):
    """Get configuration value by dot-separated key path"""
    keys = key_path.split('.')
    value = config

    try:
        for key in keys:
            value = value[key]
        return value
    except (KeyError, TypeError):
        return default


def as_bool(value: Any, default: bool = False) -> bool:
    """Interpret env-style booleans ("true", "1", "yes")"""
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")
