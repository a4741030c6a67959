import asyncio
import logging
import signal
import sys
import uvicorn

from .config import settings
from .rate_limiter import RateLimiter
from .cache import SingleFlightCache
from .store import JsonRecordStore
from .clients.auth import CredentialStore
from .clients.discogs_client import DiscogsClient
from .reconciler import LibraryReconciler
from .library import LibraryManager
from .catalog import CatalogService
from .models import ListType, PageProgress
from . import server

# Setup logging
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
# Silence noisy libraries
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)
logging.getLogger("uvicorn.access").setLevel(logging.WARNING)

logger = logging.getLogger("main")

class FlipsideService:
    def __init__(self):
        self.running = True
        # One limiter for everything that talks to Discogs
        self.rate_limiter = RateLimiter(
            requests_per_minute=settings.RATE_LIMIT_REQUESTS_PER_MINUTE,
            burst_capacity=settings.RATE_LIMIT_BURST_CAPACITY,
            acquire_jitter=settings.RATE_LIMIT_ACQUIRE_JITTER_SECONDS,
            backoff_jitter=settings.RATE_LIMIT_BACKOFF_JITTER_SECONDS,
        )
        self.credentials = CredentialStore.from_settings(settings)
        self.client = DiscogsClient(self.credentials, self.rate_limiter)
        self.store = JsonRecordStore(settings.LIBRARY_PATH, persist=settings.PERSIST_ENABLED)
        self.reconciler = LibraryReconciler(self.client, self.store)
        self.library = LibraryManager(self.reconciler, on_progress=self.log_progress)
        self.catalog = CatalogService(self.client, SingleFlightCache())

        # Link library to server module
        server.library = self.library
        server.client = self.client
        server.catalog = self.catalog

    @staticmethod
    def log_progress(progress: PageProgress):
        expected = progress.total_items_expected if progress.total_items_expected is not None else "?"
        logger.info(
            f"{progress.list_type.display_name}: page {progress.page}/{progress.total_pages} "
            f"({progress.items_received} items, {expected} expected)"
        )

    async def sync_loop(self):
        while self.running:
            try:
                if not self.credentials.is_connected:
                    logger.warning("Discogs account not connected; skipping refresh cycle.")
                else:
                    for list_type in ListType:
                        await self.library.refresh_if_stale(list_type)
            except Exception as e:
                logger.error(f"Error in sync loop: {e}", exc_info=True)

            await asyncio.sleep(settings.SYNC_INTERVAL_SECONDS)

    async def start(self):
        if self.credentials.is_connected:
            result = await self.library.refresh_all(
                on_first_pages=lambda: logger.info("First page of every list is available")
            )
            if result.ok:
                logger.info(result.success_message)
            else:
                logger.error(f"Initial refresh failed: {result.failure_message}")

        tasks = [asyncio.create_task(self.sync_loop())]

        if settings.HTTP_SERVER_ENABLED:
            config = uvicorn.Config(server.app, host="0.0.0.0", port=settings.HTTP_SERVER_PORT, log_level="warning")
            server_task = uvicorn.Server(config).serve()
            tasks.append(asyncio.create_task(server_task))

        try:
            await asyncio.gather(*tasks)
        except asyncio.CancelledError:
            pass
        finally:
            self.store.save()
            await self.client.close()

def handle_sigterm(sig, frame):
    logger.info("Received SIGTERM, shutting down...")
    sys.exit(0)

if __name__ == "__main__":
    signal.signal(signal.SIGTERM, handle_sigterm)
    service = FlipsideService()
    try:
        asyncio.run(service.start())
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
