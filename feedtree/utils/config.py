"""
Configuration Management Module

Handles loading and merging application configuration from config.json.
Missing keys are filled in from defaults and written back.
"""

import json
from pathlib import Path
from typing import Optional
import logging

logger = logging.getLogger("feedtree")


def default_config() -> dict:
    """Build the default configuration from the static constants."""
    from .constants import (
        DB_FILE,
        DB_BUSY_TIMEOUT_SECONDS,
        FETCH_TIMEOUT_SECONDS,
        FETCH_MAX_WORKERS,
        FETCH_RETRY_ATTEMPTS,
        FETCH_USER_AGENT,
        REFRESH_CHECK_INTERVAL_MINUTES,
        LOCK_DIR,
        OWNER_LOCK_TIMEOUT_SECONDS,
    )

    return {
        "database": {
            "path": str(DB_FILE),
            "busy_timeout_seconds": DB_BUSY_TIMEOUT_SECONDS,
        },
        "refresh": {
            "timeout_seconds": FETCH_TIMEOUT_SECONDS,
            "max_workers": FETCH_MAX_WORKERS,
            "retry_attempts": FETCH_RETRY_ATTEMPTS,
            "user_agent": FETCH_USER_AGENT,
            "check_interval_minutes": REFRESH_CHECK_INTERVAL_MINUTES,
        },
        "locks": {
            "dir": str(LOCK_DIR),
            "timeout_seconds": OWNER_LOCK_TIMEOUT_SECONDS,
        },
        "web": {
            "host": "127.0.0.1",
            "port": 5000,
        },
    }


def load_config(config_file: Optional[Path] = None) -> dict:
    """
    Load configuration from config.json with sensible defaults

    Args:
        config_file: Override for the config location (defaults to CONFIG_FILE)

    Returns:
        dict: Configuration dictionary
    """
    if config_file is None:
        from .constants import CONFIG_FILE
        config_file = CONFIG_FILE

    defaults = default_config()

    if not config_file.exists():
        _save_config(config_file, defaults)
        return defaults

    try:
        with open(config_file, 'r') as f:
            config = json.load(f)

        # Merge with defaults to ensure all keys exist
        merged = _deep_merge(defaults, config)

        # Save merged config back if anything was added
        if merged != config:
            _save_config(config_file, merged)

        return merged
    except json.JSONDecodeError as e:
        logger.error(f"Config file corrupted: {e}. Using defaults.")
        return defaults
    except OSError as e:
        logger.error(f"Error loading config: {e}. Using defaults.")
        return defaults


def _deep_merge(defaults: dict, override: dict) -> dict:
    """
    Deep merge override config into defaults, preserving new defaults

    Args:
        defaults: Default configuration
        override: User-provided configuration

    Returns:
        dict: Merged configuration
    """
    result = defaults.copy()
    for key, value in override.items():
        if key in defaults and isinstance(defaults[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(defaults[key], value)
        else:
            result[key] = value
    return result


def _save_config(config_file: Path, config: dict):
    """
    Save configuration to file

    Args:
        config_file: Path to config file
        config: Configuration dictionary
    """
    try:
        config_file.parent.mkdir(parents=True, exist_ok=True)
        with open(config_file, 'w') as f:
            json.dump(config, f, indent=4)
    except OSError as e:
        logger.error(f"Failed to save config: {e}")
