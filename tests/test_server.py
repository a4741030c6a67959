import unittest

from fastapi.testclient import TestClient

from flipside import server
from flipside.cache import SingleFlightCache
from flipside.catalog import CatalogService
from flipside.clients.discogs_client import NotConnectedError
from flipside.config import settings
from flipside.library import LibraryManager
from flipside.models import CollectionStatus, LibraryRemoteItem, ListType
from flipside.reconciler import LibraryReconciler
from flipside.store import RecordStore

class MockCredentials:
    is_connected = True
    username = "alice"

class MockClient:
    def __init__(self):
        self.credentials = MockCredentials()
        self.request_counts = {"discogs_api_get_collection_pages": 3}
        self.connected = True

    async def membership(self, release_id):
        if not self.connected:
            raise NotConnectedError("Please reconnect")
        return 55, False

class TestServer(unittest.TestCase):
    def setUp(self):
        self.client = MockClient()
        store = RecordStore()
        store.upsert(LibraryRemoteItem(release_id=1, title="A", artist="X", list_item_id=9), ListType.COLLECTION, 1.0)
        store.set_last_refreshed_at(ListType.COLLECTION, 100.0)
        self.library = LibraryManager(LibraryReconciler(self.client, store))
        self.catalog = CatalogService(self.client, SingleFlightCache())

        self.saved = (server.library, server.client, server.catalog, settings.HTTP_SERVER_TOKEN)
        server.library, server.client, server.catalog = self.library, self.client, self.catalog
        settings.HTTP_SERVER_TOKEN = None
        self.http = TestClient(server.app)

    def tearDown(self):
        server.library, server.client, server.catalog, settings.HTTP_SERVER_TOKEN = self.saved

    def test_healthz(self):
        self.assertEqual(self.http.get("/healthz").json(), {"status": "ok"})

        self.library.state(ListType.WANTLIST).error_message = "Please reconnect"
        self.assertEqual(
            self.http.get("/healthz").json(), {"status": "degraded", "failing": ["wantlist"]}
        )

    def test_status(self):
        body = self.http.get("/status").json()

        self.assertTrue(body["connected"])
        self.assertEqual(body["lists"]["collection"]["entries"], 1)
        self.assertEqual(body["lists"]["collection"]["last_refreshed_at"], 100.0)
        self.assertEqual(body["lists"]["wantlist"]["entries"], 0)

    def test_token_required_when_configured(self):
        settings.HTTP_SERVER_TOKEN = "secret"

        self.assertEqual(self.http.get("/status").status_code, 401)
        self.assertEqual(self.http.get("/status", headers={"X-Token": "secret"}).status_code, 200)

    def test_metrics(self):
        text = self.http.get("/metrics").text

        self.assertIn('flipside_library_entries{list="collection"} 1', text)
        self.assertIn('flipside_library_refresh_failing{list="wantlist"} 0', text)
        self.assertIn('flipside_requests_total{counter="discogs_api_get_collection_pages"} 3', text)

    def test_release_status(self):
        body = self.http.get("/releases/5/status").json()
        self.assertEqual(body, CollectionStatus(in_collection=True, in_wantlist=False, collection_instance_id=55).model_dump())

    def test_release_status_when_disconnected(self):
        self.client.connected = False
        self.assertEqual(self.http.get("/releases/5/status").status_code, 401)

    def test_not_ready(self):
        server.library = None
        self.assertEqual(self.http.get("/healthz").json(), {"status": "starting"})

if __name__ == '__main__':
    unittest.main()
