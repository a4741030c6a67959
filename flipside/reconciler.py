import logging
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional, Set

from .clients.discogs_client import DiscogsClient
from .models import EntryKey, LibraryRemoteItem, ListType, PageProgress, SyncSummary
from .store import RecordStore

logger = logging.getLogger(__name__)

PageCallback = Callable[[List[LibraryRemoteItem], PageProgress], None]

class SyncSuperseded(Exception):
    """A newer session for the same list type took over; this one stopped without sweeping."""

class SessionState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

@dataclass
class SyncSession:
    list_type: ListType
    session_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    state: SessionState = SessionState.IDLE
    seen_keys: Set[EntryKey] = field(default_factory=set)
    page: int = 1
    total_pages: int = 1
    items_fetched: int = 0
    total_items_expected: Optional[int] = None

    def summary(self) -> SyncSummary:
        return SyncSummary(
            list_type=self.list_type,
            pages_fetched=self.page - 1,
            total_pages=self.total_pages,
            items_fetched=self.items_fetched,
            total_items_expected=self.total_items_expected,
            completed=self.state is SessionState.COMPLETED,
        )

class LibraryReconciler:
    """
    Mirrors a paginated remote list into the record store with mark-and-sweep.

    Pages are fetched in order and upserted as they arrive; entries not seen
    during the pass are deleted only once the last page has been applied. A
    session that fails or is superseded never deletes anything.
    """

    def __init__(self, client: DiscogsClient, store: RecordStore, clock: Callable[[], float] = time.time):
        self.client = client
        self.store = store
        self._clock = clock
        self._active: Dict[ListType, str] = {}

    def is_active(self, session: SyncSession) -> bool:
        return self._active.get(session.list_type) == session.session_id

    def active_session_id(self, list_type: ListType) -> Optional[str]:
        return self._active.get(list_type)

    def cancel(self, list_type: ListType) -> bool:
        """Retire the running session for list_type; it stops at its next store mutation."""
        return self._active.pop(list_type, None) is not None

    def _check_active(self, session: SyncSession):
        if not self.is_active(session):
            raise SyncSuperseded(
                f"{session.list_type.value} sync {session.session_id[:8]} superseded on page {session.page}"
            )

    async def sync(self, list_type: ListType, on_page: Optional[PageCallback] = None) -> SyncSummary:
        session = SyncSession(list_type=list_type)
        previous = self._active.get(list_type)
        if previous:
            logger.info(f"Superseding {list_type.value} sync {previous[:8]}")
        self._active[list_type] = session.session_id
        session.state = SessionState.RUNNING
        logger.info(f"Starting {list_type.value} sync {session.session_id[:8]}")

        try:
            while session.page <= session.total_pages:
                items, pagination = await self.client.fetch_list_page(list_type, session.page)
                # The server's latest pagination is authoritative, even if it changed mid-sync.
                session.total_pages = max(pagination.pages, 1)
                session.total_items_expected = pagination.items
                session.items_fetched += len(items)

                self._check_active(session)
                updated_at = self._clock()
                for item in items:
                    session.seen_keys.add(self.store.upsert(item, list_type, updated_at))
                self.store.save()

                if on_page is not None:
                    on_page(items, PageProgress(
                        list_type=list_type,
                        page=session.page,
                        total_pages=session.total_pages,
                        items_received=len(items),
                        total_items_expected=session.total_items_expected,
                    ))
                logger.debug(
                    f"{list_type.value} page {session.page}/{session.total_pages}: {len(items)} items"
                )
                session.page += 1

            self._finalize(session)
        except SyncSuperseded as e:
            session.state = SessionState.FAILED
            logger.info(str(e))
            raise
        except Exception as e:
            session.state = SessionState.FAILED
            logger.error(f"{list_type.value} sync failed on page {session.page}: {e}")
            raise
        finally:
            if self.is_active(session):
                del self._active[list_type]

        return session.summary()

    def _finalize(self, session: SyncSession):
        self._check_active(session)
        stale = self.store.keys(session.list_type) - session.seen_keys
        removed = self.store.delete_many(stale)
        self.store.set_last_refreshed_at(session.list_type, self._clock())
        # One save covers the sweep and the refresh timestamp.
        self.store.save()
        session.state = SessionState.COMPLETED
        logger.info(
            f"{session.list_type.value} sync complete: {session.items_fetched} items over "
            f"{session.page - 1} pages, {removed} stale entries removed"
        )
