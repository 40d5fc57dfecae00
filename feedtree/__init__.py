"""
================================================================================
FEEDTREE PACKAGE - Collection Hierarchy & Feed Refresh Engine
================================================================================

Top-level package for the personal feed reader core.

Package Structure:
    feedtree/core/        - Tree store, mutations, refresh, persistence
    feedtree/processors/  - Feed fetching, URL normalization, retries
    feedtree/utils/       - Shared utilities (logging, config, constants)
    feedtree/web/         - Flask request layer and background refresh job

Design Principles:
    - One explicit ServiceContext instead of global clients
    - SQLite is the single source of truth, no cached tree state
    - Typed failures the request layer can map to statuses
================================================================================
"""

__version__ = "2026.1"
