import asyncio
import logging
from collections import defaultdict
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple, Type, TypeVar, Union
from urllib.parse import parse_qs, quote, urlsplit

import httpx
from pydantic import BaseModel, Field, ValidationError, field_validator

from ..config import settings
from ..models import LibraryRemoteItem, ListType
from ..rate_limiter import RateLimiter, retry_after_seconds
from .auth import CredentialStore, OAuthCredentials
from .oauth import make_authorization_header

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)

class DiscogsError(Exception):
    """Base class for failures talking to Discogs."""

class NotConnectedError(DiscogsError):
    """No usable access token: never connected, or rejected by the server."""

class MissingUsernameError(DiscogsError):
    """The connected account has no username to build user endpoints with."""

class RateLimitExceededError(DiscogsError):
    """Still rate limited after the bounded number of backoff retries."""

class NotFoundError(DiscogsError):
    """The requested resource does not exist."""

class InvalidResponseError(DiscogsError):
    """The server answered 2xx with a payload we could not understand."""

class RequestFailedError(DiscogsError):
    def __init__(self, status_code: int, message: str):
        super().__init__(f"Discogs request failed ({status_code}): {message}")
        self.status_code = status_code
        self.message = message

# Typed outcome of a single request

class Pagination(BaseModel):
    page: int = 1
    pages: int = 1
    items: int = 0
    per_page: Optional[int] = None

class Ok(BaseModel):
    payload: Any = None
    pagination: Optional[Pagination] = None

class RateLimited(BaseModel):
    retry_after: Optional[float] = None

class Unauthorized(BaseModel):
    pass

class NotFound(BaseModel):
    pass

class OtherError(BaseModel):
    code: int
    message: str

Outcome = Union[Ok, RateLimited, Unauthorized, NotFound, OtherError]

# Payload shapes

class Artist(BaseModel):
    name: str

class Label(BaseModel):
    name: str
    catno: Optional[str] = None

class Format(BaseModel):
    name: str
    qty: Optional[str] = None
    descriptions: Optional[List[str]] = None
    text: Optional[str] = None

class BasicInformation(BaseModel):
    id: int
    title: str
    year: Optional[int] = None
    country: Optional[str] = None
    cover_image: Optional[str] = None
    artists: Optional[List[Artist]] = None
    labels: Optional[List[Label]] = None
    formats: Optional[List[Format]] = None

class CollectionRelease(BaseModel):
    instance_id: int
    date_added: Optional[datetime] = None
    basic_information: BasicInformation

class WantItem(BaseModel):
    id: int
    date_added: Optional[datetime] = None
    basic_information: BasicInformation

class CollectionPage(BaseModel):
    pagination: Pagination
    releases: List[CollectionRelease] = Field(default_factory=list)

class WantlistPage(BaseModel):
    pagination: Pagination
    wants: List[WantItem] = Field(default_factory=list)

class CollectionInstance(BaseModel):
    id: int
    instance_id: int
    folder_id: Optional[int] = None

class CollectionInstances(BaseModel):
    releases: List[CollectionInstance] = Field(default_factory=list)

class SearchResult(BaseModel):
    id: int
    title: str
    type: Optional[str] = None
    year: Optional[str] = None
    country: Optional[str] = None
    label: List[str] = Field(default_factory=list)
    catno: Optional[str] = None
    genre: List[str] = Field(default_factory=list)
    format: List[str] = Field(default_factory=list)
    cover_image: Optional[str] = None
    thumb: Optional[str] = None

class SearchPage(BaseModel):
    results: List[SearchResult] = Field(default_factory=list)

class Track(BaseModel):
    position: Optional[str] = None
    title: str
    duration: Optional[str] = None

class Identifier(BaseModel):
    type: str
    value: Optional[str] = None
    description: Optional[str] = None

class Community(BaseModel):
    have: Optional[int] = None
    want: Optional[int] = None

class Image(BaseModel):
    type: Optional[str] = None
    uri: str

class Video(BaseModel):
    uri: str = ""
    title: str = ""
    description: Optional[str] = None
    duration: Optional[int] = None

class ReleaseDetails(BaseModel):
    id: int
    title: str
    artists: Optional[List[Artist]] = None
    year: Optional[int] = None
    released: Optional[str] = None
    country: Optional[str] = None
    labels: Optional[List[Label]] = None
    genres: Optional[List[str]] = None
    styles: Optional[List[str]] = None
    formats: Optional[List[Format]] = None
    tracklist: Optional[List[Track]] = None
    identifiers: Optional[List[Identifier]] = None
    images: Optional[List[Image]] = None
    thumb: Optional[str] = None
    lowest_price: Optional[float] = None
    num_for_sale: Optional[int] = None
    community: Optional[Community] = None
    notes: Optional[str] = None
    data_quality: Optional[str] = None
    master_id: Optional[int] = None
    uri: Optional[str] = None
    resource_url: Optional[str] = None
    videos: List[Video] = Field(default_factory=list)

    @field_validator("videos", mode="before")
    @classmethod
    def _no_null_videos(cls, value):
        return value or []

    @field_validator("videos")
    @classmethod
    def _dedupe_videos(cls, value: List[Video]) -> List[Video]:
        return unique_videos(value)

class PriceSuggestion(BaseModel):
    currency: str
    value: float

def format_summary(formats: Optional[List[Format]]) -> Optional[str]:
    """Join format names, descriptions and free text, dropping case-insensitive repeats."""
    if not formats:
        return None
    parts: List[str] = []
    seen = set()
    for fmt in formats:
        for value in [fmt.name, *(fmt.descriptions or []), fmt.text]:
            trimmed = (value or "").strip()
            if not trimmed or trimmed.lower() in seen:
                continue
            seen.add(trimmed.lower())
            parts.append(trimmed)
    return ", ".join(parts) or None

_YOUTUBE_HOSTS = {"youtube.com", "www.youtube.com", "m.youtube.com", "music.youtube.com"}

def youtube_video_id(uri: str) -> Optional[str]:
    try:
        parts = urlsplit(uri.strip())
    except ValueError:
        return None
    host = (parts.hostname or "").lower()
    if host == "youtu.be" or host.endswith(".youtu.be"):
        return parts.path.strip("/") or None
    if host not in _YOUTUBE_HOSTS:
        return None

    path = parts.path.lower()
    if path == "/watch":
        query = {k.lower(): v for k, v in parse_qs(parts.query).items()}
        video_id = (query.get("v") or [""])[0].strip()
        return video_id or None
    for prefix in ("/embed/", "/shorts/", "/live/", "/v/"):
        if path.startswith(prefix):
            return parts.path[len(prefix):].split("/")[0] or None
    return None

def unique_videos(videos: List[Video]) -> List[Video]:
    """Drop repeated videos: same YouTube id, else same normalised URI, else same title and duration."""
    unique = []
    seen = set()
    for video in videos:
        uri = video.uri.strip().lower()
        video_id = youtube_video_id(video.uri)
        if video_id:
            key = f"youtube:{video_id}"
        elif uri:
            key = f"uri:{uri}"
        else:
            key = f"title:{video.title.strip().lower()}|duration:{video.duration}"
        if key in seen:
            continue
        seen.add(key)
        unique.append(video)
    return unique

def _remote_item(
    basic: BasicInformation,
    position: int,
    date_added: Optional[datetime],
    list_item_id: Optional[int] = None,
) -> LibraryRemoteItem:
    first_label = basic.labels[0] if basic.labels else None
    return LibraryRemoteItem(
        release_id=basic.id,
        title=basic.title,
        artist=basic.artists[0].name if basic.artists else "Unknown Artist",
        image_url=basic.cover_image,
        year=basic.year or None,  # Discogs reports unknown years as 0
        country=basic.country,
        format_summary=format_summary(basic.formats),
        label=first_label.name if first_label else None,
        catalog_number=first_label.catno if first_label else None,
        list_item_id=list_item_id,
        position=position,
        date_added=date_added.timestamp() if date_added else None,
    )

class DiscogsClient:
    def __init__(
        self,
        credentials: CredentialStore,
        rate_limiter: RateLimiter,
        base_url: str = settings.DISCOGS_BASE_URL,
        user_agent: str = settings.DISCOGS_USER_AGENT,
        per_page: int = settings.DISCOGS_PER_PAGE,
        max_retries: int = settings.RATE_LIMIT_MAX_RETRIES,
        timeout: float = settings.REQUEST_TIMEOUT_SECONDS,
        http_client: Optional[httpx.AsyncClient] = None,
        signer: Callable[[str, str, OAuthCredentials], str] = make_authorization_header,
    ):
        self.credentials = credentials
        self.rate_limiter = rate_limiter
        self.per_page = per_page
        self.max_retries = max_retries
        self.signer = signer
        self.client = http_client or httpx.AsyncClient(
            base_url=base_url.rstrip('/'),
            headers={"User-Agent": user_agent, "Accept": "application/json"},
            timeout=timeout
        )
        self.request_counts: Dict[str, int] = defaultdict(int)

    async def close(self):
        await self.client.aclose()

    # -------------------- transport --------------------
    def _require_connected(self) -> OAuthCredentials:
        if not self.credentials.is_connected:
            raise NotConnectedError("Discogs account is not connected. Connect in Settings.")
        return self.credentials.credentials

    def _user_path(self, suffix: str) -> str:
        username = self.credentials.username
        if not username:
            raise MissingUsernameError(
                "Discogs username is unavailable. Reconnect your Discogs account in Settings."
            )
        return f"/users/{quote(username, safe='')}{suffix}"

    @staticmethod
    def _counter_name(method: str, path: str) -> str:
        if "/collection/folders/0/releases" in path:
            return "discogs_api_get_collection_pages"
        if path.endswith("/wants"):
            return "discogs_api_get_wantlist_pages"
        segment = path.strip("/").split("/")[0] or "root"
        return f"discogs_api_{method.lower()}_{segment}"

    async def send(self, method: str, path: str, params: Optional[Dict[str, Any]] = None) -> Outcome:
        """One signed request, no retries, no admission control."""
        credentials = self._require_connected()
        request = self.client.build_request(method, path, params=params)
        request.headers["Authorization"] = self.signer(method, str(request.url), credentials)
        self.request_counts[self._counter_name(method, path)] += 1

        response = await self.client.send(request)
        status = response.status_code

        if 200 <= status < 300:
            if not response.content:
                return Ok()
            try:
                payload = response.json()
            except ValueError:
                return OtherError(code=status, message="Response body is not valid JSON")
            pagination = None
            if isinstance(payload, dict) and isinstance(payload.get("pagination"), dict):
                try:
                    pagination = Pagination(**payload["pagination"])
                except ValidationError:
                    pagination = None
            return Ok(payload=payload, pagination=pagination)
        if status == 401:
            return Unauthorized()
        if status == 404:
            return NotFound()
        if status == 429:
            return RateLimited(retry_after=retry_after_seconds(response.headers))

        body = response.text.strip()
        return OtherError(code=status, message=body or "Request failed. Please try again in a moment.")

    async def call(self, method: str, path: str, params: Optional[Dict[str, Any]] = None) -> Ok:
        """Admitted, rate-limit aware request that raises on anything but success."""
        self._require_connected()
        attempt = 0
        while True:
            await self.rate_limiter.acquire()
            outcome = await self.send(method, path, params)

            if isinstance(outcome, Ok):
                return outcome
            if isinstance(outcome, RateLimited):
                if attempt < self.max_retries:
                    await self.rate_limiter.backoff(attempt, outcome.retry_after)
                    attempt += 1
                    continue
                raise RateLimitExceededError(
                    "Discogs API rate limit exceeded. Please wait a moment and try again."
                )
            if isinstance(outcome, Unauthorized):
                self.credentials.invalidate()
                raise NotConnectedError(
                    "OAuth authentication failed. Please reconnect your Discogs account in Settings."
                )
            if isinstance(outcome, NotFound):
                raise NotFoundError(f"{method} {path} not found")
            raise RequestFailedError(outcome.code, outcome.message)

    @staticmethod
    def _parse(model: Type[M], payload: Any) -> M:
        try:
            return model.model_validate(payload)
        except ValidationError as e:
            raise InvalidResponseError(f"Unexpected {model.__name__} payload: {e}") from e

    # -------------------- library lists --------------------
    def list_path(self, list_type: ListType) -> str:
        if list_type is ListType.COLLECTION:
            return self._user_path("/collection/folders/0/releases")
        return self._user_path("/wants")

    async def fetch_list_page(self, list_type: ListType, page: int) -> Tuple[List[LibraryRemoteItem], Pagination]:
        ok = await self.call("GET", self.list_path(list_type), params={"page": page, "per_page": self.per_page})
        offset = (page - 1) * self.per_page

        if list_type is ListType.COLLECTION:
            parsed = self._parse(CollectionPage, ok.payload)
            items = [
                _remote_item(r.basic_information, offset + i, r.date_added, list_item_id=r.instance_id)
                for i, r in enumerate(parsed.releases)
            ]
        else:
            parsed = self._parse(WantlistPage, ok.payload)
            items = [
                _remote_item(w.basic_information, offset + i, w.date_added)
                for i, w in enumerate(parsed.wants)
            ]
        return items, parsed.pagination

    # -------------------- catalog lookups --------------------
    async def search_releases(self, query: str, per_page: int = 25) -> List[SearchResult]:
        ok = await self.call("GET", "/database/search", params={"q": query, "type": "release", "per_page": per_page})
        return self._parse(SearchPage, ok.payload).results

    async def release_details(self, release_id: int) -> ReleaseDetails:
        ok = await self.call("GET", f"/releases/{release_id}")
        return self._parse(ReleaseDetails, ok.payload)

    async def price_suggestions(self, release_id: int) -> Dict[str, PriceSuggestion]:
        ok = await self.call("GET", f"/marketplace/price_suggestions/{release_id}")
        if not isinstance(ok.payload, dict):
            raise InvalidResponseError("Price suggestions payload is not an object")
        return {condition: self._parse(PriceSuggestion, value) for condition, value in ok.payload.items()}

    # -------------------- membership --------------------
    async def collection_instance(self, release_id: int) -> Optional[CollectionInstance]:
        try:
            ok = await self.call("GET", self._user_path(f"/collection/releases/{release_id}"))
        except NotFoundError:
            return None
        instances = self._parse(CollectionInstances, ok.payload or {})
        return instances.releases[0] if instances.releases else None

    async def collection_instance_id(self, release_id: int) -> Optional[int]:
        instance = await self.collection_instance(release_id)
        return instance.instance_id if instance else None

    async def is_in_collection(self, release_id: int) -> bool:
        return (await self.collection_instance(release_id)) is not None

    async def is_in_wantlist(self, release_id: int) -> bool:
        try:
            await self.call("GET", self._user_path(f"/wants/{release_id}"))
        except NotFoundError:
            return False
        return True

    async def membership(self, release_id: int) -> Tuple[Optional[int], bool]:
        """Collection instance id (None when absent) and wantlist flag, checked concurrently."""
        instance_id, in_wantlist = await asyncio.gather(
            self.collection_instance_id(release_id),
            self.is_in_wantlist(release_id),
        )
        return instance_id, in_wantlist

    # -------------------- mutations --------------------
    async def add_to_collection(self, release_id: int, folder_id: int = 1) -> Optional[int]:
        # Folder 1 is the default "Uncategorized" folder
        ok = await self.call("POST", self._user_path(f"/collection/folders/{folder_id}/releases/{release_id}"))
        instance_id = ok.payload.get("instance_id") if isinstance(ok.payload, dict) else None
        logger.info(f"Added release {release_id} to collection (instance {instance_id})")
        return instance_id

    async def remove_from_collection(self, release_id: int):
        instance = await self.collection_instance(release_id)
        if instance is None:
            raise NotFoundError(f"Release {release_id} is not in the collection")
        folder_id = instance.folder_id or 1
        await self.call(
            "DELETE",
            self._user_path(f"/collection/folders/{folder_id}/releases/{release_id}/instances/{instance.instance_id}")
        )
        logger.info(f"Removed release {release_id} (instance {instance.instance_id}) from collection")

    async def add_to_wantlist(self, release_id: int):
        await self.call("PUT", self._user_path(f"/wants/{release_id}"))
        logger.info(f"Added release {release_id} to wantlist")

    async def remove_from_wantlist(self, release_id: int):
        await self.call("DELETE", self._user_path(f"/wants/{release_id}"))
        logger.info(f"Removed release {release_id} from wantlist")
