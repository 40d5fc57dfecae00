"""Bounded retry with exponential backoff for feed downloads.

Only connection-level failures are retried. A timeout means the collection
is treated as failed for this batch, so it is re-raised immediately.
"""

import time
import logging

import requests

from feedtree.utils.constants import TEST_MODE

logger = logging.getLogger("feedtree")


class NetworkRetry:
    @staticmethod
    def run(func, retries=2, delay=0.5, backoff=2, context="Network"):
        if TEST_MODE:
            delay = 0
        retries = max(1, retries)
        for i in range(retries):
            try:
                return func()
            except requests.Timeout:
                raise
            except requests.ConnectionError as e:
                if i == retries - 1:
                    raise
                logger.debug(f"{context} attempt {i + 1}/{retries} failed: {e}")
                time.sleep(delay * (backoff ** i))
