"""
================================================================================
REFRESH SCHEDULER - Due Detection, Fetch Fan-Out and Reconciliation
================================================================================

Decides which collections need a refresh, fetches them concurrently and
merges the fetched items into storage.

Due Test:
    url IS NOT NULL AND (date_updated IS NULL
                         OR now - date_updated >= refresh_interval minutes)

Per-Collection Flow (transient, only date_updated is persisted):
    Due -> Fetching -> Reconciling -> Fresh
    On fetch failure the collection keeps its previous date_updated.

Reconciliation:
    Upsert keyed on (collection_id, url). New items arrive unread; existing
    items keep date_read and are rewritten only when their content changed.
    Items and the new date_updated commit in one transaction.

Batch Policy:
    BatchResult.ok is True only when every unit succeeded. Units that did
    succeed stay committed even when the batch as a whole reports failure.
    An unexpected exception in one unit fails that unit only.

Concurrency:
    One ThreadPoolExecutor task per target, joined before returning.
    Single-flight per collection id: a collection already being refreshed
    is reported as skipped instead of being reconciled twice.
================================================================================
"""

import logging
import sqlite3
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Set

from feedtree.core.context import ServiceContext
from feedtree.core.database import ITEM_INSERTED, ITEM_UPDATED
from feedtree.core.errors import FeedTreeError, NotFoundError
from feedtree.core.models import Collection, collection_from_row, to_timestamp
from feedtree.core.tree import get_owned_collection
from feedtree.processors.feed_fetcher import FeedFetcher

logger = logging.getLogger("feedtree")

REFRESHED = 'refreshed'
FAILED = 'failed'
SKIPPED = 'skipped'


def is_due(collection: Collection, now: datetime) -> bool:
    if not collection.url:
        return False
    if collection.date_updated is None:
        return True
    return (now - collection.date_updated).total_seconds() >= collection.refresh_interval * 60


@dataclass
class RefreshOutcome:
    collection_id: int
    status: str
    inserted: int = 0
    updated: int = 0
    error: Optional[FeedTreeError] = None


@dataclass
class BatchResult:
    outcomes: Dict[int, RefreshOutcome] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return all(o.status != FAILED for o in self.outcomes.values())

    @property
    def refreshed_ids(self) -> Set[int]:
        return {cid for cid, o in self.outcomes.items() if o.status == REFRESHED}

    @property
    def failed_ids(self) -> Set[int]:
        return {cid for cid, o in self.outcomes.items() if o.status == FAILED}


class RefreshScheduler:
    """Drives fetch + reconciliation for batches of collections."""

    def __init__(self, context: ServiceContext, fetcher: Optional[FeedFetcher] = None):
        self.context = context
        self.fetcher = fetcher or FeedFetcher(context)
        self.max_workers = context.config['refresh']['max_workers']
        self._in_flight: Set[int] = set()
        self._in_flight_lock = threading.Lock()

    # --------------------------------------------------------------------------------
    # Target resolution
    # --------------------------------------------------------------------------------

    def list_due(self, owner_id: Optional[int] = None, now: Optional[datetime] = None) -> List[Collection]:
        """Collections with a url whose interval has elapsed, never-refreshed first."""
        now = now or self.context.now()
        with self.context.session() as db:
            rows = db.select_due_with_url(to_timestamp(now), owner_id)
        return [collection_from_row(row) for row in rows]

    def refresh_one(self, owner_id: int, collection_id: int) -> BatchResult:
        with self.context.session() as db:
            collection = get_owned_collection(db, owner_id, collection_id)
        return self._run_batch([collection] if collection.url else [])

    def refresh_subtree(self, owner_id: int, root_id: int) -> BatchResult:
        with self.context.session() as db:
            get_owned_collection(db, owner_id, root_id)
            ids = db.select_descendant_ids(root_id)
            rows = db.select_collections_with_url(owner_id, ids)
        return self._run_batch([collection_from_row(row) for row in rows])

    def refresh_all(self, owner_id: int) -> BatchResult:
        with self.context.session() as db:
            rows = db.select_collections_with_url(owner_id)
        return self._run_batch([collection_from_row(row) for row in rows])

    def refresh_due(self, owner_id: Optional[int] = None) -> BatchResult:
        """Refresh whatever is due right now (background job entry point)."""
        return self._run_batch(self.list_due(owner_id))

    # --------------------------------------------------------------------------------
    # Batch execution
    # --------------------------------------------------------------------------------

    def _run_batch(self, targets: List[Collection]) -> BatchResult:
        result = BatchResult()
        if not targets:
            return result

        workers = max(1, min(self.max_workers, len(targets)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix='feedtree-refresh') as pool:
            futures = [pool.submit(self._refresh_collection, collection) for collection in targets]
            for future in futures:
                outcome = future.result()
                result.outcomes[outcome.collection_id] = outcome

        logger.info(
            f"[REFRESH] {len(result.refreshed_ids)}/{len(targets)} refreshed, "
            f"{len(result.failed_ids)} failed"
        )
        return result

    def _claim(self, collection_id: int) -> bool:
        with self._in_flight_lock:
            if collection_id in self._in_flight:
                return False
            self._in_flight.add(collection_id)
            return True

    def _release(self, collection_id: int):
        with self._in_flight_lock:
            self._in_flight.discard(collection_id)

    def _refresh_collection(self, collection: Collection) -> RefreshOutcome:
        cid = collection.id
        if not self._claim(cid):
            logger.info(f"[REFRESH] Collection {cid} already refreshing, skipped")
            return RefreshOutcome(cid, SKIPPED)

        try:
            fetched = self.fetcher.fetch(collection.url)
            if not fetched.ok:
                return RefreshOutcome(cid, FAILED, error=fetched.error)
            return self._reconcile(collection, fetched.items)
        except FeedTreeError as e:
            logger.error(f"[REFRESH] Collection {cid} failed: {e}")
            return RefreshOutcome(cid, FAILED, error=e)
        except sqlite3.Error as e:
            logger.error(f"[REFRESH] Storage error for collection {cid}: {e}")
            return RefreshOutcome(cid, FAILED, error=FeedTreeError(f"Storage error: {e}"))
        except Exception as e:
            logger.exception(f"[REFRESH] Unexpected error for collection {cid}")
            return RefreshOutcome(cid, FAILED, error=FeedTreeError(f"Unexpected error: {e}"))
        finally:
            self._release(cid)

    def _reconcile(self, collection: Collection, items) -> RefreshOutcome:
        cid = collection.id
        now = to_timestamp(self.context.now())
        inserted = updated = 0

        with self.context.session() as db:
            with db.transaction():
                if db.select_collection(cid) is None:
                    raise NotFoundError(f"Collection {cid} was deleted during refresh")
                for item in items:
                    status = db.upsert_item(cid, item, now)
                    if status == ITEM_INSERTED:
                        inserted += 1
                    elif status == ITEM_UPDATED:
                        updated += 1
                db.set_date_updated(cid, now)

        logger.info(f"[REFRESH] Collection {cid}: {inserted} new, {updated} updated, {len(items)} fetched")
        return RefreshOutcome(cid, REFRESHED, inserted=inserted, updated=updated)
