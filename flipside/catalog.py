import logging
from typing import Dict, List, Optional, Tuple
from pydantic import BaseModel

from .cache import SingleFlightCache
from .clients.discogs_client import (
    DiscogsClient,
    DiscogsError,
    MissingUsernameError,
    PriceSuggestion,
    ReleaseDetails,
    SearchResult,
)
from .config import settings
from .models import CollectionStatus

logger = logging.getLogger(__name__)

class CompleteRelease(BaseModel):
    details: ReleaseDetails
    # None when Discogs had no price data for us; details are still usable
    prices: Optional[Dict[str, PriceSuggestion]] = None

class CatalogService:
    """Ad-hoc Discogs lookups, de-duplicated and cached per resource kind."""

    def __init__(
        self,
        client: DiscogsClient,
        cache: Optional[SingleFlightCache] = None,
        search_ttl: float = settings.CACHE_TTL_SEARCH_SECONDS,
        release_ttl: float = settings.CACHE_TTL_RELEASE_SECONDS,
        prices_ttl: float = settings.CACHE_TTL_PRICES_SECONDS,
        status_ttl: float = settings.CACHE_TTL_STATUS_SECONDS,
    ):
        self.client = client
        self.cache = cache if cache is not None else SingleFlightCache()
        self.ttls = {
            "search": search_ttl,
            "release": release_ttl,
            "prices": prices_ttl,
            "status": status_ttl,
        }

    def _status_key(self, release_id: int) -> Tuple[str, str, int]:
        username = self.client.credentials.username
        if not username:
            raise MissingUsernameError("Discogs username not configured. Please add your username in Settings.")
        return ("status", username.lower(), release_id)

    async def search(self, query: str, force_refresh: bool = False) -> List[SearchResult]:
        normalized = " ".join(query.split()).lower()
        if not normalized:
            return []
        return await self.cache.get_or_fetch(
            ("search", normalized),
            self.ttls["search"],
            lambda: self.client.search_releases(query.strip()),
            force_refresh=force_refresh,
        )

    async def release(self, release_id: int, force_refresh: bool = False) -> ReleaseDetails:
        return await self.cache.get_or_fetch(
            ("release", release_id),
            self.ttls["release"],
            lambda: self.client.release_details(release_id),
            force_refresh=force_refresh,
        )

    async def prices(self, release_id: int, force_refresh: bool = False) -> Dict[str, PriceSuggestion]:
        return await self.cache.get_or_fetch(
            ("prices", release_id),
            self.ttls["prices"],
            lambda: self.client.price_suggestions(release_id),
            force_refresh=force_refresh,
        )

    async def complete_release(self, release_id: int, force_refresh: bool = False) -> CompleteRelease:
        """Release details plus price suggestions; a failed price lookup only drops the prices."""
        details = await self.release(release_id, force_refresh=force_refresh)
        try:
            prices = await self.prices(release_id, force_refresh=force_refresh)
        except DiscogsError as e:
            logger.warning(f"Price suggestions unavailable for release {release_id}: {e}")
            prices = None
        return CompleteRelease(details=details, prices=prices)

    async def _fetch_status(self, release_id: int) -> CollectionStatus:
        instance_id, in_wantlist = await self.client.membership(release_id)
        return CollectionStatus(
            in_collection=instance_id is not None,
            in_wantlist=in_wantlist,
            collection_instance_id=instance_id,
        )

    async def collection_status(self, release_id: int, force_refresh: bool = False) -> CollectionStatus:
        return await self.cache.get_or_fetch(
            self._status_key(release_id),
            self.ttls["status"],
            lambda: self._fetch_status(release_id),
            force_refresh=force_refresh,
        )

    def cached_status(self, release_id: int) -> Optional[CollectionStatus]:
        return self.cache.peek(self._status_key(release_id))

    def _record_status(self, release_id: int, **changes):
        key = self._status_key(release_id)
        current = self.cache.peek(key)
        if current is None:
            # Unknown other half of the status; let the next read fetch it.
            self.cache.invalidate(key)
            return
        self.cache.update(key, current.model_copy(update=changes), self.ttls["status"])

    async def _mutate(self, release_id: int, action, **changes):
        try:
            result = await action(release_id)
        except Exception:
            self.cache.invalidate(self._status_key(release_id))
            raise
        self._record_status(release_id, **changes)
        return result

    async def add_to_collection(self, release_id: int) -> Optional[int]:
        instance_id = await self._mutate(release_id, self.client.add_to_collection, in_collection=True)
        if instance_id is not None:
            self._record_status(release_id, collection_instance_id=instance_id)
        return instance_id

    async def remove_from_collection(self, release_id: int):
        await self._mutate(
            release_id, self.client.remove_from_collection, in_collection=False, collection_instance_id=None
        )

    async def add_to_wantlist(self, release_id: int):
        await self._mutate(release_id, self.client.add_to_wantlist, in_wantlist=True)

    async def remove_from_wantlist(self, release_id: int):
        await self._mutate(release_id, self.client.remove_from_wantlist, in_wantlist=False)

    def disconnect(self):
        """Forget the access token and every cached status of the current user."""
        username = self.client.credentials.username
        self.client.credentials.invalidate()
        if username:
            self.cache.invalidate_all(("status", username.lower()))
