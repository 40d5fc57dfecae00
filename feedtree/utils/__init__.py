"""
================================================================================
UTILS MODULE - Shared Utilities and Helpers
================================================================================

Shared infrastructure used across all application components.

Exported Functions:
    Logging:
        - setup_logging() - Initialize logging infrastructure
        - set_run_context(context) - Set execution context
        - logger - Main application logger

    Configuration:
        - load_config() - Load configuration from config.json

Usage:
    from feedtree.utils import logger, load_config
    from feedtree.utils.constants import DEFAULT_REFRESH_INTERVAL
================================================================================
"""

from .logger import setup_logging, set_run_context, logger
from .config import load_config

__all__ = [
    'setup_logging',
    'set_run_context',
    'logger',
    'load_config',
]
