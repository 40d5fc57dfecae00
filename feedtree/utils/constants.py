"""
================================================================================
CONSTANTS - System-Wide Configuration Values
================================================================================

Centralized repository for the hardcoded constants used by the collection
tree and the refresh engine. Organized by functional category.

Constant Categories:
    1. File Paths - Directory and file locations
    2. Collections - Icons, layouts and per-collection defaults
    3. Refresh - Network timeouts, workers, retry limits
    4. Items - Reading time estimation

Key Constants:

    DEFAULT_REFRESH_INTERVAL = 120
        Minutes between two refreshes of a collection when none is given

    WORDS_PER_MINUTE = 200
        Reading speed used to derive an item's reading time

File Path Constants:
    All paths are relative to BASE_DIR (current working directory)
    Supports monkeypatching for test isolation

Note:
    Values in this file are STATIC. For runtime-configurable settings,
    use config.json via feedtree.utils.config.
================================================================================
"""

import os
from pathlib import Path

# ==========================================
# FILE PATHS
# ==========================================
BASE_DIR = Path.cwd()
OUTPUT_DIR = BASE_DIR / 'outputs'
LOG_DIR = OUTPUT_DIR / 'logs'
LOCK_DIR = OUTPUT_DIR / 'locks'
DB_FILE = BASE_DIR / 'feedtree.db'
CONFIG_FILE = BASE_DIR / 'configs' / 'config.json'

# ==========================================
# COLLECTIONS
# ==========================================
COLLECTION_ICONS = (
    'Folder', 'Archive', 'Book', 'Bookmark', 'Calendar', 'Code', 'Film',
    'Gamepad', 'Globe', 'Heart', 'Image', 'Music', 'Newspaper', 'Podcast',
    'Rss', 'Science', 'Sport', 'Star', 'Tech', 'Travel',
)
DEFAULT_ICON = 'Folder'

COLLECTION_LAYOUTS = ('card', 'magazine', 'list')
DEFAULT_LAYOUT = 'magazine'

DEFAULT_REFRESH_INTERVAL = 120  # minutes

# ==========================================
# REFRESH
# ==========================================
FETCH_TIMEOUT_SECONDS = 15  # Per-request timeout for a feed download
FETCH_MAX_WORKERS = 8  # Concurrent fetches in one refresh batch
FETCH_RETRY_ATTEMPTS = 2  # Attempts on connection errors (timeouts never retried)
FETCH_USER_AGENT = 'feedtree/2026.1 (+https://github.com/feedtree)'
REFRESH_CHECK_INTERVAL_MINUTES = 5  # Background due-check period

# ==========================================
# ITEMS
# ==========================================
WORDS_PER_MINUTE = 200

# ==========================================
# LOCKS & DATABASE
# ==========================================
OWNER_LOCK_TIMEOUT_SECONDS = 30
DB_BUSY_TIMEOUT_SECONDS = 10

# ==========================================
# RUNTIME CONTEXT
# ==========================================
RUN_CONTEXT = 'imported'  # Can be: 'imported', 'scheduler', 'web', 'cli', 'test'
TEST_MODE = os.environ.get('TEST_MODE') == '1'
