"""
================================================================================
WEB MODULE - Request Layer and Scheduling
================================================================================

JSON API over the collection tree and the background refresh job.

Components:
    server.py - Flask app factory and /api/collections routes
    scheduler.py - Background due-refresh job (APScheduler)

Note:
    Server is imported directly by cli.py (`feedtree web`).
    No exports in __init__.py to avoid circular import issues.

Usage:
    python cli.py web
    python -m feedtree.web.server
================================================================================
"""

__all__ = []
