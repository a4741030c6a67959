import asyncio
import logging
import time
from typing import Callable, Dict, List, Optional
from pydantic import BaseModel, Field

from .config import settings
from .models import LibraryEntry, LibraryRemoteItem, ListType, PageProgress, SyncSummary
from .reconciler import LibraryReconciler, SyncSuperseded

logger = logging.getLogger(__name__)

class ListState(BaseModel):
    is_refreshing: bool = False
    error_message: Optional[str] = None
    last_refreshed_at: Optional[float] = None
    pages_fetched: int = 0
    total_pages: int = 0
    items_fetched: int = 0
    total_items_expected: Optional[int] = None

class RefreshResult(BaseModel):
    success_message: str = ""
    failure_message: Optional[str] = None
    summaries: Dict[str, SyncSummary] = Field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.failure_message is None

class LibraryManager:
    """
    Drives refreshes of the collection and wantlist and tracks their state.

    Refresh failures are recorded on the list state and never raised; the
    previously synced entries stay readable while a refresh runs or fails.
    """

    def __init__(
        self,
        reconciler: LibraryReconciler,
        stale_interval: float = settings.LIBRARY_STALE_SECONDS,
        on_progress: Optional[Callable[[PageProgress], None]] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.reconciler = reconciler
        self.store = reconciler.store
        self.stale_interval = stale_interval
        self.on_progress = on_progress
        self._clock = clock
        self.states: Dict[ListType, ListState] = {
            lt: ListState(last_refreshed_at=self.store.last_refreshed_at(lt)) for lt in ListType
        }

    def state(self, list_type: ListType) -> ListState:
        return self.states[list_type]

    def entries(self, list_type: ListType) -> List[LibraryEntry]:
        return self.store.entries(list_type)

    def should_refresh(self, list_type: ListType) -> bool:
        if self.states[list_type].is_refreshing:
            return False
        if self.store.count(list_type) == 0:
            return True
        last = self.store.last_refreshed_at(list_type)
        if last is None:
            return True
        return self._clock() - last > self.stale_interval

    async def refresh_if_stale(self, list_type: ListType) -> Optional[SyncSummary]:
        if not self.should_refresh(list_type):
            return None
        return await self.refresh(list_type)

    async def refresh(
        self,
        list_type: ListType,
        on_first_page: Optional[Callable[[], None]] = None,
    ) -> Optional[SyncSummary]:
        state = self.states[list_type]
        state.is_refreshing = True
        state.error_message = None
        state.pages_fetched = 0
        state.items_fetched = 0

        def on_page(items: List[LibraryRemoteItem], progress: PageProgress):
            state.pages_fetched = progress.page
            state.total_pages = progress.total_pages
            state.items_fetched += progress.items_received
            state.total_items_expected = progress.total_items_expected
            if self.on_progress is not None:
                self.on_progress(progress)
            if progress.page == 1 and on_first_page is not None:
                on_first_page()

        try:
            summary = await self.reconciler.sync(list_type, on_page)
        except SyncSuperseded:
            # The newer session owns the list state now, unless there is none.
            if self.reconciler.active_session_id(list_type) is None:
                state.is_refreshing = False
            return None
        except Exception as e:
            logger.error(f"Failed to refresh {list_type.display_name}: {e}", exc_info=True)
            state.is_refreshing = False
            state.error_message = str(e)
            return None

        state.is_refreshing = False
        state.last_refreshed_at = self.store.last_refreshed_at(list_type)
        return summary

    async def refresh_all(self, on_first_pages: Optional[Callable[[], None]] = None) -> RefreshResult:
        """
        Refresh both lists concurrently.

        ``on_first_pages`` fires once, as soon as every list has either shown
        its first page or finished (successfully or not).
        """
        pending = set(ListType)

        def reached(list_type: ListType):
            if list_type not in pending:
                return
            pending.discard(list_type)
            if not pending and on_first_pages is not None:
                on_first_pages()

        async def run(list_type: ListType) -> Optional[SyncSummary]:
            try:
                return await self.refresh(list_type, on_first_page=lambda: reached(list_type))
            finally:
                reached(list_type)

        results = await asyncio.gather(*(run(lt) for lt in ListType))

        summaries = {
            lt.value: summary for lt, summary in zip(ListType, results) if summary is not None
        }
        failures = [
            f"{lt.display_name}: {self.states[lt].error_message}"
            for lt in ListType if self.states[lt].error_message
        ]
        if failures:
            return RefreshResult(failure_message="\n".join(failures), summaries=summaries)
        return RefreshResult(success_message="Collection and wantlist refreshed.", summaries=summaries)

    def reset(self):
        """Drop every synced entry and list state, e.g. after the account is disconnected."""
        for list_type in ListType:
            self.reconciler.cancel(list_type)
        self.store.clear()
        self.store.save()
        self.states = {lt: ListState() for lt in ListType}
        logger.info("Library data cleared")
