import uuid
from enum import Enum
from typing import Dict, List, NamedTuple, Optional
from pydantic import BaseModel, Field

class ListType(str, Enum):
    COLLECTION = "collection"
    WANTLIST = "wantlist"

    @property
    def display_name(self) -> str:
        if self is ListType.COLLECTION:
            return "My Collection"
        return "My Wantlist"

class EntryKey(NamedTuple):
    list_type: ListType
    release_id: int
    list_item_id: Optional[int] = None  # collection instance id; several copies of one release

class LibraryRemoteItem(BaseModel):
    release_id: int
    title: str
    artist: str
    image_url: Optional[str] = None
    year: Optional[int] = None
    country: Optional[str] = None
    format_summary: Optional[str] = None
    label: Optional[str] = None
    catalog_number: Optional[str] = None
    list_item_id: Optional[int] = None
    position: Optional[int] = None
    date_added: Optional[float] = None

    def key(self, list_type: ListType) -> EntryKey:
        return EntryKey(list_type, self.release_id, self.list_item_id)

class LibraryEntry(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    list_type: ListType
    release_id: int
    title: str
    artist: str
    image_url: Optional[str] = None
    year: Optional[int] = None
    country: Optional[str] = None
    format_summary: Optional[str] = None
    label: Optional[str] = None
    catalog_number: Optional[str] = None
    list_item_id: Optional[int] = None
    position: Optional[int] = None
    date_added: Optional[float] = None
    updated_at: float = 0.0

    @property
    def key(self) -> EntryKey:
        return EntryKey(self.list_type, self.release_id, self.list_item_id)

    @classmethod
    def from_remote(cls, item: LibraryRemoteItem, list_type: ListType, updated_at: float) -> "LibraryEntry":
        return cls(list_type=list_type, updated_at=updated_at, **item.model_dump())

    def apply(self, item: LibraryRemoteItem, updated_at: float):
        """Refresh display fields in place from a re-sighting."""
        for field, value in item.model_dump().items():
            setattr(self, field, value)
        self.updated_at = updated_at

class SyncStateRecord(BaseModel):
    list_type: ListType
    last_refreshed_at: Optional[float] = None

class LibraryData(BaseModel):
    entries: List[LibraryEntry] = Field(default_factory=list)
    sync_states: Dict[str, SyncStateRecord] = Field(default_factory=dict)

class PageProgress(BaseModel):
    list_type: ListType
    page: int
    total_pages: int
    items_received: int
    total_items_expected: Optional[int] = None

class SyncSummary(BaseModel):
    list_type: ListType
    pages_fetched: int
    total_pages: int
    items_fetched: int
    total_items_expected: Optional[int] = None
    completed: bool

class CollectionStatus(BaseModel):
    in_collection: bool
    in_wantlist: bool
    collection_instance_id: Optional[int] = None
