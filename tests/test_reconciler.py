import asyncio
import unittest
from collections import defaultdict, deque

from flipside.clients.discogs_client import Pagination, RequestFailedError
from flipside.models import EntryKey, LibraryRemoteItem, ListType
from flipside.reconciler import LibraryReconciler, SyncSuperseded
from flipside.store import RecordStore

def item(release_id, list_item_id=None):
    return LibraryRemoteItem(
        release_id=release_id,
        title=f"Release {release_id}",
        artist="Artist",
        list_item_id=list_item_id,
    )

def page(items, page_no, pages):
    return items, Pagination(page=page_no, pages=pages, items=pages * 2, per_page=2)

class MockClient:
    """Serves scripted responses per list type, in call order.

    A response is a (items, pagination) tuple, an exception to raise, or an
    async callable returning a tuple.
    """

    def __init__(self):
        self.responses = defaultdict(deque)
        self.requested = []

    def script(self, list_type, *responses):
        self.responses[list_type].extend(responses)

    async def fetch_list_page(self, list_type, page_no):
        self.requested.append((list_type, page_no))
        response = self.responses[list_type].popleft()
        if isinstance(response, Exception):
            raise response
        if callable(response):
            return await response()
        await asyncio.sleep(0)
        return response

A = item(1, 11)
B = item(2, 12)
C = item(3, 13)
D = item(4, 14)

def keys(*items):
    return {i.key(ListType.COLLECTION) for i in items}

class TestMarkAndSweep(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.client = MockClient()
        self.store = RecordStore()
        self.reconciler = LibraryReconciler(self.client, self.store, clock=lambda: 1234.0)
        for existing in (A, B, D):
            self.store.upsert(existing, ListType.COLLECTION, 1.0)

    async def test_completed_sync_mirrors_remote_list(self):
        self.client.script(
            ListType.COLLECTION,
            page([A, B], 1, 2),
            page([A, C], 2, 2),
        )

        summary = await self.reconciler.sync(ListType.COLLECTION)

        self.assertEqual(self.store.keys(ListType.COLLECTION), keys(A, B, C))
        self.assertTrue(summary.completed)
        self.assertEqual(summary.pages_fetched, 2)
        self.assertEqual(summary.items_fetched, 4)
        self.assertEqual(self.store.last_refreshed_at(ListType.COLLECTION), 1234.0)
        self.assertIsNone(self.reconciler.active_session_id(ListType.COLLECTION))

    async def test_resighted_entry_keeps_identity(self):
        entry_id = self.store.get(A.key(ListType.COLLECTION)).id
        self.client.script(ListType.COLLECTION, page([A], 1, 1))

        await self.reconciler.sync(ListType.COLLECTION)

        entry = self.store.get(A.key(ListType.COLLECTION))
        self.assertEqual(entry.id, entry_id)
        self.assertEqual(entry.updated_at, 1234.0)

    async def test_cancelled_session_never_sweeps(self):
        self.client.script(
            ListType.COLLECTION,
            page([A, B], 1, 2),
            page([A, C], 2, 2),
        )

        def cancel_after_first(items, progress):
            if progress.page == 1:
                self.reconciler.cancel(ListType.COLLECTION)

        with self.assertRaises(SyncSuperseded):
            await self.reconciler.sync(ListType.COLLECTION, on_page=cancel_after_first)

        self.assertEqual(self.store.keys(ListType.COLLECTION), keys(A, B, D))
        self.assertIsNone(self.store.last_refreshed_at(ListType.COLLECTION))

    async def test_newer_session_supersedes_older(self):
        gate = asyncio.Event()
        blocked = asyncio.Event()

        async def slow_second_page():
            blocked.set()
            await gate.wait()
            return page([C], 2, 2)

        self.client.script(
            ListType.COLLECTION,
            page([A, B], 1, 2),       # old session, page 1
            slow_second_page,         # old session, page 2 (held)
            page([B], 1, 1),          # new session, only page
        )

        old = asyncio.create_task(self.reconciler.sync(ListType.COLLECTION))
        await blocked.wait()

        summary = await self.reconciler.sync(ListType.COLLECTION)
        self.assertTrue(summary.completed)
        self.assertEqual(self.store.keys(ListType.COLLECTION), keys(B))

        gate.set()
        with self.assertRaises(SyncSuperseded):
            await old

        # The old session's late page was never written
        self.assertEqual(self.store.keys(ListType.COLLECTION), keys(B))

    async def test_failed_page_leaves_unseen_entries(self):
        self.client.script(
            ListType.COLLECTION,
            page([A, C], 1, 2),
            RequestFailedError(500, "Server error"),
        )

        with self.assertRaises(RequestFailedError):
            await self.reconciler.sync(ListType.COLLECTION)

        # Page 1 was applied, nothing was swept
        self.assertEqual(self.store.keys(ListType.COLLECTION), keys(A, B, C, D))
        self.assertIsNone(self.store.last_refreshed_at(ListType.COLLECTION))
        self.assertIsNone(self.reconciler.active_session_id(ListType.COLLECTION))

    async def test_sync_can_run_again_after_failure(self):
        self.client.script(
            ListType.COLLECTION,
            RequestFailedError(502, "Bad gateway"),
            page([C], 1, 1),
        )

        with self.assertRaises(RequestFailedError):
            await self.reconciler.sync(ListType.COLLECTION)
        await self.reconciler.sync(ListType.COLLECTION)

        self.assertEqual(self.store.keys(ListType.COLLECTION), keys(C))

    async def test_empty_remote_list_sweeps_everything(self):
        self.client.script(ListType.COLLECTION, ([], Pagination(page=1, pages=0, items=0)))

        summary = await self.reconciler.sync(ListType.COLLECTION)

        self.assertEqual(self.store.count(ListType.COLLECTION), 0)
        self.assertEqual(summary.pages_fetched, 1)

    async def test_total_pages_follows_latest_page_metadata(self):
        # The list shrank between page 1 and page 2
        self.client.script(
            ListType.COLLECTION,
            page([A, B], 1, 3),
            page([C], 2, 2),
        )

        summary = await self.reconciler.sync(ListType.COLLECTION)

        self.assertEqual(self.client.requested, [(ListType.COLLECTION, 1), (ListType.COLLECTION, 2)])
        self.assertEqual(summary.total_pages, 2)
        self.assertEqual(self.store.keys(ListType.COLLECTION), keys(A, B, C))

    async def test_progress_reported_per_page(self):
        self.client.script(
            ListType.COLLECTION,
            page([A, B], 1, 2),
            page([C], 2, 2),
        )
        events = []

        await self.reconciler.sync(ListType.COLLECTION, on_page=lambda items, p: events.append(p))

        self.assertEqual([(p.page, p.total_pages, p.items_received) for p in events], [(1, 2, 2), (2, 2, 1)])
        self.assertEqual(events[0].total_items_expected, 4)

    async def test_list_types_sync_independently(self):
        wanted = item(9)
        self.client.script(ListType.COLLECTION, page([A], 1, 1))
        self.client.script(ListType.WANTLIST, page([wanted], 1, 1))

        await asyncio.gather(
            self.reconciler.sync(ListType.COLLECTION),
            self.reconciler.sync(ListType.WANTLIST),
        )

        self.assertEqual(self.store.keys(ListType.COLLECTION), keys(A))
        self.assertEqual(self.store.keys(ListType.WANTLIST), {EntryKey(ListType.WANTLIST, 9, None)})

if __name__ == '__main__':
    unittest.main()
