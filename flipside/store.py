import json
import logging
import os
import fcntl
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Set
from .models import EntryKey, LibraryData, LibraryEntry, LibraryRemoteItem, ListType, SyncStateRecord

logger = logging.getLogger(__name__)

class RecordStore:
    """
    Keyed store of library entries plus one sync-state record per list type.

    Entries are addressed by EntryKey. This base class keeps everything in
    memory and ``save`` is a no-op; JsonRecordStore persists to disk.
    """

    def __init__(self):
        self._entries: Dict[EntryKey, LibraryEntry] = {}
        self._sync_states: Dict[ListType, SyncStateRecord] = {}

    def get(self, key: EntryKey) -> Optional[LibraryEntry]:
        return self._entries.get(key)

    def upsert(self, item: LibraryRemoteItem, list_type: ListType, updated_at: float) -> EntryKey:
        key = item.key(list_type)
        entry = self._entries.get(key)
        if entry is not None:
            entry.apply(item, updated_at)
        else:
            self._entries[key] = LibraryEntry.from_remote(item, list_type, updated_at)
        return key

    def delete(self, key: EntryKey) -> bool:
        return self._entries.pop(key, None) is not None

    def delete_many(self, keys: Iterable[EntryKey]) -> int:
        return sum(1 for key in list(keys) if self.delete(key))

    def keys(self, list_type: ListType) -> Set[EntryKey]:
        return {k for k in self._entries if k.list_type == list_type}

    def entries(self, list_type: ListType) -> List[LibraryEntry]:
        found = [e for e in self._entries.values() if e.list_type == list_type]
        # Entries without a position sort last
        found.sort(key=lambda e: (e.position is None, e.position or 0, e.title))
        return found

    def count(self, list_type: ListType) -> int:
        return len(self.keys(list_type))

    def last_refreshed_at(self, list_type: ListType) -> Optional[float]:
        state = self._sync_states.get(list_type)
        return state.last_refreshed_at if state else None

    def set_last_refreshed_at(self, list_type: ListType, when: float):
        state = self._sync_states.get(list_type)
        if state is None:
            self._sync_states[list_type] = SyncStateRecord(list_type=list_type, last_refreshed_at=when)
        else:
            state.last_refreshed_at = when

    def clear(self, list_type: Optional[ListType] = None):
        if list_type is None:
            self._entries.clear()
            self._sync_states.clear()
            return
        self.delete_many(self.keys(list_type))
        self._sync_states.pop(list_type, None)

    def save(self):
        pass

    def to_data(self) -> LibraryData:
        return LibraryData(
            entries=list(self._entries.values()),
            sync_states={lt.value: s for lt, s in self._sync_states.items()},
        )

    def load_data(self, data: LibraryData):
        self._entries = {e.key: e for e in data.entries}
        self._sync_states = {s.list_type: s for s in data.sync_states.values()}

class JsonRecordStore(RecordStore):
    def __init__(self, path: str, persist: bool = True):
        super().__init__()
        self.path = Path(path)
        self.persist = persist
        self.read_only = False
        self._load()

    def _load(self):
        if not self.path.exists():
            logger.info(f"No library file found at {self.path}, creating new.")
            return

        try:
            with open(self.path, 'r') as f:
                self.load_data(LibraryData(**json.load(f)))
            logger.info(f"Loaded {len(self._entries)} library entries from {self.path}")
        except Exception as e:
            logger.error(f"Failed to load library: {e}. Starting fresh.", exc_info=True)

    def save(self):
        if not self.persist or self.read_only:
            return

        tmp_path = self.path.with_suffix('.tmp')
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            if self._write_snapshot(tmp_path):
                # Readers only ever see a complete file
                os.rename(tmp_path, self.path)
        except OSError as e:
            logger.error(f"Failed to save library to {self.path}: {e}. Further saves disabled for this run.")
            self.read_only = True

    def _write_snapshot(self, tmp_path: Path) -> bool:
        with open(tmp_path, 'w') as f:
            try:
                fcntl.flock(f, fcntl.LOCK_EX | fcntl.LOCK_NB)
            except BlockingIOError:
                logger.warning(f"{tmp_path} is locked by another writer; library save skipped.")
                return False
            try:
                json.dump(self.to_data().model_dump(mode="json"), f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            finally:
                fcntl.flock(f, fcntl.LOCK_UN)
        return True
