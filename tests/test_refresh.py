"""
================================================================================
TEST: Refresh Scheduler
================================================================================

Due detection, concurrent fetch fan-out and reconciliation.

Test Coverage:
    - Due test boundaries (29 vs 31 minutes for a 30-minute interval)
    - list_due never returns url-less collections, never-refreshed first
    - Scenario: refresh a child feed, badges aggregate to the parent
    - Batch failure asymmetry (failure reported, successes persisted)
    - Reconciliation idempotence and read-state preservation
    - Changed upstream content updates items in place
    - Single-flight per collection
    - Collection deleted while its fetch is in flight
    - An unexpected error in one unit leaves sibling outcomes intact
================================================================================
"""
import logging
import threading
from datetime import timedelta

import pytest

from feedtree.core.models import to_timestamp
from feedtree.core.refresh import FAILED, REFRESHED, SKIPPED, RefreshScheduler, is_due
from feedtree.processors.feed_fetcher import FeedFetcher, FetchResult


def _stamp(context, collection_id, when):
    with context.session() as db:
        db.set_date_updated(collection_id, to_timestamp(when))


class TestDue:
    def test_interval_boundaries(self, context, clock, tree_store, make_collection):
        c = make_collection('Feed', url='https://example.com/feed', refresh_interval=30)
        now = clock.current

        _stamp(context, c.id, now - timedelta(minutes=31))
        assert is_due(tree_store.get_collection(1, c.id), now)

        _stamp(context, c.id, now - timedelta(minutes=29))
        assert not is_due(tree_store.get_collection(1, c.id), now)

    def test_exact_interval_is_due(self, context, clock, tree_store, make_collection):
        c = make_collection('Feed', url='https://example.com/feed', refresh_interval=30)
        _stamp(context, c.id, clock.current - timedelta(minutes=30))
        assert is_due(tree_store.get_collection(1, c.id), clock.current)

    def test_list_due_matches_is_due(self, context, clock, refresh, make_collection):
        stale = make_collection('Stale', url='https://example.com/stale', refresh_interval=30)
        fresh = make_collection('Fresh', url='https://example.com/fresh', refresh_interval=30)
        never = make_collection('Never', url='https://example.com/never')
        make_collection('Folder only')
        _stamp(context, stale.id, clock.current - timedelta(minutes=31))
        _stamp(context, fresh.id, clock.current - timedelta(minutes=29))

        due = refresh.list_due()

        assert [c.id for c in due] == [never.id, stale.id]
        assert all(c.url for c in due)

    def test_list_due_per_owner(self, refresh, make_collection):
        mine = make_collection('Mine', url='https://example.com/a', owner=1)
        make_collection('Theirs', url='https://example.com/b', owner=2)

        assert [c.id for c in refresh.list_due(owner_id=1)] == [mine.id]
        assert len(refresh.list_due()) == 2

    def test_list_due_at_later_time(self, context, clock, refresh, make_collection):
        c = make_collection('Feed', url='https://example.com/feed', refresh_interval=60)
        _stamp(context, c.id, clock.current)

        assert refresh.list_due() == []
        assert [d.id for d in refresh.list_due(now=clock.current + timedelta(minutes=60))] == [c.id]


class TestScenario:
    def test_refresh_child_then_detach(self, http, feeds, clock, refresh, mutations, tree_store, make_collection):
        a = make_collection('A')
        b = make_collection('B', parent_id=a.id, url='example.com/feed', refresh_interval=60)
        http.route('http://example.com/feed', feeds.response(content=feeds.rss(*feeds.items(3))))

        result = refresh.refresh_one(1, b.id)

        assert result.ok
        assert result.refreshed_ids == {b.id}
        by_id = {n.id: n for n in tree_store.list_tree(1)}
        assert by_id[a.id].unread_count == 3
        assert by_id[b.id].unread_count == 3
        assert by_id[b.id].collection.date_updated == clock.current

        mutations.move(1, b.id, None, 0)

        by_id = {n.id: n for n in tree_store.list_tree(1)}
        assert by_id[b.id].collection.parent_id is None
        assert by_id[b.id].collection.order == 0
        assert by_id[a.id].collection.order == 1
        assert not [n for n in by_id.values() if n.collection.parent_id == a.id]
        assert by_id[a.id].unread_count == 0

    def test_refresh_one_without_url_is_empty_success(self, refresh, make_collection):
        folder = make_collection('Folder')
        result = refresh.refresh_one(1, folder.id)
        assert result.ok
        assert result.outcomes == {}

    def test_refresh_subtree_only_touches_subtree(self, http, feeds, refresh, make_collection):
        a = make_collection('A')
        b = make_collection('B', parent_id=a.id, url='https://example.com/b')
        c = make_collection('C', parent_id=b.id, url='https://example.com/c')
        make_collection('Outside', url='https://example.com/outside')
        for url in ('https://example.com/b', 'https://example.com/c'):
            http.route(url, feeds.response(content=feeds.rss(*feeds.items(1, prefix=url))))

        result = refresh.refresh_subtree(1, a.id)

        assert result.refreshed_ids == {b.id, c.id}
        assert 'https://example.com/outside' not in http.calls


class TestBatchPolicy:
    def test_one_failure_fails_batch_but_success_persists(self, http, feeds, clock, refresh, tree_store, make_collection):
        good = make_collection('Good', url='https://example.com/good')
        bad = make_collection('Bad', url='https://example.com/bad')
        http.route('https://example.com/good', feeds.response(content=feeds.rss(*feeds.items(2))))
        http.route('https://example.com/bad', feeds.response(status_code=503))

        result = refresh.refresh_all(1)

        assert not result.ok
        assert result.failed_ids == {bad.id}
        assert result.refreshed_ids == {good.id}
        assert result.outcomes[bad.id].error.status == 503
        assert tree_store.get_collection(1, good.id).date_updated == clock.current
        assert tree_store.get_collection(1, bad.id).date_updated is None

    def test_failed_collection_keeps_previous_date_updated(self, context, http, feeds, clock, refresh, tree_store, make_collection):
        c = make_collection('Flaky', url='https://example.com/flaky')
        earlier = clock.current - timedelta(days=1)
        _stamp(context, c.id, earlier)
        http.route('https://example.com/flaky', feeds.response(
            content=b'<html><body>maintenance</body></html>', headers={'Content-Type': 'text/html'}))

        result = refresh.refresh_one(1, c.id)

        assert not result.ok
        assert tree_store.get_collection(1, c.id).date_updated == earlier

    def test_empty_feed_is_success(self, http, feeds, refresh, tree_store, make_collection):
        c = make_collection('Quiet', url='https://example.com/quiet')
        http.route('https://example.com/quiet', feeds.response(content=feeds.rss()))

        result = refresh.refresh_one(1, c.id)

        assert result.ok
        assert tree_store.get_collection(1, c.id).date_updated is not None


class TestReconciliation:
    def test_refetch_creates_no_duplicates_and_keeps_read_state(
            self, context, http, feeds, clock, refresh, mutations, tree_store, make_collection):
        c = make_collection('Feed', url='https://example.com/feed')
        http.route('https://example.com/feed', feeds.response(content=feeds.rss(*feeds.items(4))))

        refresh.refresh_one(1, c.id)
        first = tree_store.list_items(1, c.id)
        mutations.set_item_date_read(1, c.id, first[0].id, clock.current)
        before = {i.url: (i.id, i.date_read, i.date_updated) for i in tree_store.list_items(1, c.id)}

        clock.advance(hours=3)
        second = refresh.refresh_one(1, c.id)

        after = {i.url: (i.id, i.date_read, i.date_updated) for i in tree_store.list_items(1, c.id)}
        assert after == before
        assert second.outcomes[c.id].inserted == 0
        assert second.outcomes[c.id].updated == 0
        assert tree_store.get_collection(1, c.id).date_updated == clock.current

    def test_changed_item_updated_in_place(self, http, feeds, clock, refresh, mutations, tree_store, make_collection):
        c = make_collection('Feed', url='https://example.com/feed')
        item = {'title': 'Original', 'link': 'https://example.com/p/1', 'description': 'v1'}
        http.route('https://example.com/feed', feeds.response(content=feeds.rss(item)))
        refresh.refresh_one(1, c.id)
        stored = tree_store.list_items(1, c.id)[0]
        mutations.set_item_date_read(1, c.id, stored.id, clock.current)
        read_at = clock.current

        clock.advance(hours=1)
        http.route('https://example.com/feed', feeds.response(content=feeds.rss(dict(item, title='Edited', description='v2'))))
        result = refresh.refresh_one(1, c.id)

        items = tree_store.list_items(1, c.id)
        assert len(items) == 1
        assert result.outcomes[c.id].updated == 1
        assert items[0].id == stored.id
        assert items[0].title == 'Edited'
        assert items[0].summary == 'v2'
        assert items[0].date_read == read_at
        assert items[0].date_updated == clock.current
        assert items[0].date_published == read_at

    def test_undated_items_are_stable_across_refreshes(self, http, feeds, clock, refresh, tree_store, make_collection):
        c = make_collection('Feed', url='https://example.com/feed')
        http.route('https://example.com/feed', feeds.response(content=feeds.rss(
            {'title': 'Undated', 'link': 'https://example.com/p/undated', 'description': 'same'},
        )))
        refresh.refresh_one(1, c.id)
        first_seen = clock.current

        clock.advance(hours=2)
        result = refresh.refresh_one(1, c.id)

        item = tree_store.list_items(1, c.id)[0]
        assert result.outcomes[c.id].updated == 0
        assert item.date_published == first_seen
        assert item.date_updated == first_seen

    def test_new_items_arrive_unread(self, http, feeds, refresh, tree_store, make_collection):
        c = make_collection('Feed', url='https://example.com/feed')
        http.route('https://example.com/feed', feeds.response(content=feeds.rss(*feeds.items(2))))
        refresh.refresh_one(1, c.id)
        http.route('https://example.com/feed', feeds.response(content=feeds.rss(*feeds.items(3))))

        result = refresh.refresh_one(1, c.id)

        assert result.outcomes[c.id].inserted == 1
        assert all(i.date_read is None for i in tree_store.list_items(1, c.id))


class _ExplodingFetcher(FeedFetcher):
    """Raises a non-FeedTreeError for one URL, fetches the rest normally."""

    def __init__(self, context, broken_url):
        super().__init__(context)
        self.broken_url = broken_url

    def fetch(self, url):
        if url == self.broken_url:
            raise KeyError('published_parsed')
        return super().fetch(url)


class TestUnexpectedErrors:
    def test_unexpected_error_fails_only_its_unit(self, context, http, feeds, tree_store, make_collection, caplog):
        good = make_collection('Good', url='https://example.com/good')
        bad = make_collection('Bad', url='https://example.com/bad')
        http.route('https://example.com/good', feeds.response(content=feeds.rss(*feeds.items(2))))
        scheduler = RefreshScheduler(context, fetcher=_ExplodingFetcher(context, 'https://example.com/bad'))

        with caplog.at_level(logging.ERROR, logger='feedtree'):
            result = scheduler.refresh_all(1)

        assert not result.ok
        assert result.outcomes[bad.id].status == FAILED
        assert result.outcomes[good.id].status == REFRESHED
        assert len(tree_store.list_items(1, good.id)) == 2
        assert 'Unexpected error for collection' in caplog.text
        assert scheduler._claim(bad.id)


class _GatedFetcher(FeedFetcher):
    """Blocks inside fetch() until released, so overlapping refreshes can be observed."""

    def __init__(self, context, on_fetch=None):
        super().__init__(context)
        self.entered = threading.Event()
        self.release = threading.Event()
        self.on_fetch = on_fetch

    def fetch(self, url):
        self.entered.set()
        assert self.release.wait(timeout=10)
        if self.on_fetch is not None:
            self.on_fetch()
        return FetchResult(url=url)


@pytest.mark.concurrency
class TestSingleFlight:
    def test_overlapping_refresh_is_skipped(self, context, make_collection):
        c = make_collection('Feed', url='https://example.com/feed')
        fetcher = _GatedFetcher(context)
        scheduler = RefreshScheduler(context, fetcher=fetcher)
        results = {}

        worker = threading.Thread(target=lambda: results.setdefault('first', scheduler.refresh_one(1, c.id)))
        worker.start()
        assert fetcher.entered.wait(timeout=10)

        results['second'] = scheduler.refresh_one(1, c.id)
        fetcher.release.set()
        worker.join()

        assert results['second'].outcomes[c.id].status == SKIPPED
        assert results['second'].ok
        assert results['first'].outcomes[c.id].status == REFRESHED

    def test_collection_deleted_during_fetch(self, context, mutations, tree_store, make_collection):
        c = make_collection('Doomed', url='https://example.com/doomed')
        fetcher = _GatedFetcher(context, on_fetch=lambda: mutations.delete(1, c.id))
        fetcher.release.set()

        result = RefreshScheduler(context, fetcher=fetcher).refresh_one(1, c.id)

        assert result.outcomes[c.id].status == FAILED
        assert tree_store.list_tree(1) == []

    def test_many_collections_refresh_in_parallel(self, http, feeds, refresh, make_collection):
        ids = []
        for n in range(10):
            url = f'https://example.com/feed/{n}'
            ids.append(make_collection(f'Feed {n}', url=url).id)
            http.route(url, feeds.response(content=feeds.rss(*feeds.items(2, prefix=url))))

        result = refresh.refresh_all(1)

        assert result.ok
        assert result.refreshed_ids == set(ids)
