"""Offline session state kept on the scanning device.

The active session and the history of past sessions are persisted as JSON
blobs in a small key/value storage. Every scanned item carries a sync tag, so
the pending and "all scans" lists are views over a single item list.
"""
import logging
import os
import tempfile
import uuid
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Callable, Optional, Protocol

from pydantic import BaseModel, Field

from scanshare import aggregator
from scanshare.config import Settings
from scanshare.models import ScanDelta, ScanItem

logger = logging.getLogger(__name__)

SESSION_KEY = "scanshare_session"
HISTORY_KEY = "scanshare_history"
DEFAULT_TTL = timedelta(hours=24)


# Storage backends

class KeyValueStorage(Protocol):
    def get(self, key: str) -> Optional[str]: ...

    def set(self, key: str, value: str) -> None: ...

    def remove(self, key: str) -> None: ...


class MemoryStorage:
    """In-process storage, mostly for tests."""

    def __init__(self):
        self.data: dict[str, str] = {}

    def get(self, key: str) -> Optional[str]:
        return self.data.get(key)

    def set(self, key: str, value: str) -> None:
        self.data[key] = value

    def remove(self, key: str) -> None:
        self.data.pop(key, None)


class JsonFileStorage:
    """Stores each key as ``<directory>/<key>.json``."""

    def __init__(self, directory):
        self.directory = Path(directory)

    def _path(self, key: str) -> Path:
        return self.directory / f"{key}.json"

    def get(self, key: str) -> Optional[str]:
        path = self._path(key)
        if not path.exists():
            return None
        return path.read_text(encoding="utf-8")

    def set(self, key: str, value: str) -> None:
        # Write to a temp file and swap it in so a crash never leaves half a blob
        self.directory.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(prefix=".tmp-", dir=self.directory)
        try:
            with open(fd, "w", encoding="utf-8") as f:
                f.write(value)
            os.replace(tmp, self._path(key))
        finally:
            if os.path.exists(tmp):
                os.remove(tmp)

    def remove(self, key: str) -> None:
        self._path(key).unlink(missing_ok=True)


# Local state models

class SyncState(str, Enum):
    SYNCED = "synced"
    PENDING_CREATE = "pending_create"
    PENDING_UPDATE = "pending_update"
    PENDING_DELETE = "pending_delete"
    # Removed after a sync, then scanned again: delete the server row and send the full quantity
    PENDING_RECREATE = "pending_recreate"


PENDING_STATES = (SyncState.PENDING_CREATE, SyncState.PENDING_UPDATE, SyncState.PENDING_RECREATE)


class TrackedScan(ScanItem):
    """A scanned item plus what the remote side is known to hold for it."""
    state: SyncState = SyncState.PENDING_CREATE
    syncedQuantity: int = 0

    def to_item(self) -> ScanItem:
        return ScanItem(**self.model_dump(include={"code", "quantity", *aggregator.DETAIL_FIELDS}))

    def to_delta(self) -> ScanDelta:
        values = self.model_dump(include={"code", *aggregator.DETAIL_FIELDS})
        if self.state == SyncState.PENDING_RECREATE:
            # Sent after the delete of the same code, so the server row starts from nothing
            return ScanDelta(quantity=self.quantity, **values)
        return ScanDelta(quantity=self.quantity - self.syncedQuantity, **values)

    def same_values(self, other: ScanItem) -> bool:
        return self.to_item() == ScanItem(
            **other.model_dump(include={"code", "quantity", *aggregator.DETAIL_FIELDS})
        )


class ScanDetails(BaseModel):
    quantity: Optional[int] = Field(None, ge=1)
    internalCode: Optional[str] = None
    productName: Optional[str] = None
    price: Optional[float] = None


class SessionMeta(BaseModel):
    id: str
    name: str
    type: str
    shortCode: Optional[str] = None
    accessCode: Optional[str] = None
    createdAt: datetime
    askInternalCode: bool = False
    askProductName: bool = False
    askPrice: bool = False

    @property
    def is_synced(self) -> bool:
        return self.shortCode is not None


class SessionState(BaseModel):
    session: Optional[SessionMeta] = None
    items: list[TrackedScan] = []

    def find(self, code: str) -> Optional[TrackedScan]:
        for item in self.items:
            if item.code == code:
                return item
        return None

    @property
    def pending_scans(self) -> list[TrackedScan]:
        return [item for item in self.items if item.state in PENDING_STATES]

    @property
    def all_scans(self) -> list[TrackedScan]:
        return [item for item in self.items if item.state != SyncState.PENDING_DELETE]

    @property
    def pending_deletes(self) -> list[str]:
        return [item.code for item in self.items if item.state == SyncState.PENDING_DELETE]

    @property
    def pending_recreates(self) -> list[str]:
        """Codes whose server row must be deleted before the item is sent again."""
        return [item.code for item in self.items if item.state == SyncState.PENDING_RECREATE]

    @property
    def has_pending(self) -> bool:
        return any(item.state != SyncState.SYNCED for item in self.items)


class HistoryIndex(BaseModel):
    """Session id -> snapshot, plus ids ordered most recent first."""
    entries: dict[str, SessionState] = {}
    order: list[str] = []


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LocalSessionStore:
    """Active scanning session and its history, persisted on the device.

    Nothing here raises to the caller: unreadable blobs are treated as empty
    state, and mutations without an active session are ignored.
    """

    def __init__(
        self,
        storage: KeyValueStorage,
        ttl: timedelta = DEFAULT_TTL,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.storage = storage
        self.ttl = ttl
        self._clock = clock

    @classmethod
    def from_settings(cls, settings: Settings) -> "LocalSessionStore":
        return cls(
            JsonFileStorage(settings.get_local_state_dir()),
            ttl=timedelta(hours=settings.session_ttl_hours),
        )

    # Persistence helpers

    def _read(self, key: str) -> Optional[str]:
        try:
            return self.storage.get(key)
        except OSError as e:
            logger.warning("Could not read %s: %s", key, e)
            return None

    def _write(self, key: str, value: str):
        try:
            self.storage.set(key, value)
        except OSError as e:
            logger.error("Could not persist %s: %s", key, e)

    def _remove(self, key: str):
        try:
            self.storage.remove(key)
        except OSError as e:
            logger.error("Could not remove %s: %s", key, e)

    def _is_expired(self, meta: SessionMeta) -> bool:
        created_at = meta.createdAt
        # Handle naive timestamps written by older clients
        if created_at.tzinfo is None:
            created_at = created_at.replace(tzinfo=timezone.utc)
        return self._clock() - created_at > self.ttl

    # History

    def _load_history(self) -> HistoryIndex:
        raw = self._read(HISTORY_KEY)
        if not raw:
            return HistoryIndex()
        try:
            return HistoryIndex.model_validate_json(raw)
        except ValueError as e:
            logger.warning("Discarding unreadable session history: %s", e)
            return HistoryIndex()

    def _save_history(self, index: HistoryIndex):
        self._write(HISTORY_KEY, index.model_dump_json())

    def _prune_history(self, index: HistoryIndex) -> bool:
        """Drop expired entries and repair the order list. Returns True if changed."""
        before = (set(index.entries), list(index.order))
        for session_id, entry in list(index.entries.items()):
            if entry.session is None or self._is_expired(entry.session):
                del index.entries[session_id]
        order = [sid for sid in dict.fromkeys(index.order) if sid in index.entries]
        order += [sid for sid in index.entries if sid not in order]
        index.order = order
        return before != (set(index.entries), index.order)

    def _upsert_history(self, state: SessionState):
        if state.session is None:
            return
        index = self._load_history()
        session_id = state.session.id
        if session_id not in index.entries:
            index.order.insert(0, session_id)
        index.entries[session_id] = state
        self._save_history(index)

    def list_history(self) -> list[SessionState]:
        """Non-expired history entries, most recent first."""
        index = self._load_history()
        if self._prune_history(index):
            self._save_history(index)
        return [index.entries[session_id] for session_id in index.order]

    def delete_history_entry(self, session_id: str):
        index = self._load_history()
        if index.entries.pop(session_id, None) is None:
            return
        index.order = [sid for sid in index.order if sid != session_id]
        self._save_history(index)

    # Active session

    def get_state(self) -> SessionState:
        raw = self._read(SESSION_KEY)
        if not raw:
            return SessionState()
        try:
            state = SessionState.model_validate_json(raw)
        except ValueError as e:
            logger.warning("Discarding unreadable active session: %s", e)
            return SessionState()

        if state.session is not None and self._is_expired(state.session):
            logger.info("Active session %s expired", state.session.id)
            self._remove(SESSION_KEY)
            return SessionState()
        return state

    def _save(self, state: SessionState):
        self._write(SESSION_KEY, state.model_dump_json())
        self._upsert_history(state)

    def _load_active(self, action: str) -> Optional[SessionState]:
        state = self.get_state()
        if state.session is None:
            logger.warning("Ignoring %s: no active session", action)
            return None
        return state

    def start(
        self,
        name: str,
        type: str,
        *,
        ask_internal_code: bool = False,
        ask_product_name: bool = False,
        ask_price: bool = False,
    ) -> SessionMeta:
        """Start a new, never-synced session and make it the active one."""
        meta = SessionMeta(
            id=uuid.uuid4().hex,
            name=name,
            type=type,
            createdAt=self._clock(),
            askInternalCode=ask_internal_code,
            askProductName=ask_product_name,
            askPrice=ask_price,
        )
        self._save(SessionState(session=meta))
        return meta

    def resume(self, entry: SessionState):
        """Make a history entry the active session again, sync status included."""
        self._write(SESSION_KEY, entry.model_dump_json())

    def clear_active(self):
        self._remove(SESSION_KEY)

    def add_scan(self, code: str) -> bool:
        """Count one scan of ``code``. Returns False when the code was already listed."""
        if not code:
            logger.warning("Ignoring scan with an empty code")
            return False
        state = self._load_active("scan")
        if state is None:
            return False

        item = state.find(code)
        if item is not None and item.state == SyncState.PENDING_DELETE:
            # The delete may already have reached the server, so resend it along with the item
            item.quantity = 1
            item.state = SyncState.PENDING_RECREATE
            self._save(state)
            return True

        state.items, is_new = aggregator.merge(state.items, code, factory=TrackedScan)
        if not is_new:
            item = state.find(code)
            if item.state == SyncState.SYNCED:
                item.state = SyncState.PENDING_UPDATE
        self._save(state)
        return is_new

    def remove_scan(self, code: str):
        state = self._load_active("remove")
        if state is None:
            return

        item = state.find(code)
        if item is None or item.state == SyncState.PENDING_DELETE:
            return
        if item.syncedQuantity > 0:
            item.state = SyncState.PENDING_DELETE
        else:
            # Never reached the server
            state.items.remove(item)
        self._save(state)

    def _edit(self, code: str, changes: dict):
        state = self._load_active("edit")
        if state is None:
            return

        item = state.find(code)
        if item is None or item.state == SyncState.PENDING_DELETE:
            return
        for field, value in changes.items():
            setattr(item, field, value)
        if item.state == SyncState.SYNCED:
            item.state = SyncState.PENDING_UPDATE
        self._save(state)

    def update_quantity(self, code: str, quantity: int):
        if quantity < 1:
            logger.warning("Ignoring quantity %s for %s", quantity, code)
            return
        self._edit(code, {"quantity": quantity})

    def update_details(self, code: str, details: ScanDetails):
        changes = details.model_dump(exclude_unset=True)
        if changes.get("quantity") is None:
            changes.pop("quantity", None)
        self._edit(code, changes)

    def set_session_meta(self, **fields):
        state = self._load_active("session update")
        if state is None:
            return
        state.session = state.session.model_copy(update=fields)
        self._save(state)

    def clear_pending(self):
        """Mark everything as confirmed by the server."""
        state = self._load_active("clear pending")
        if state is None:
            return
        state.items = [item for item in state.items if item.state != SyncState.PENDING_DELETE]
        for item in state.items:
            item.state = SyncState.SYNCED
            item.syncedQuantity = item.quantity
        self._save(state)

    # Sync acknowledgement

    def _load_session(self, session_id: str) -> tuple[Optional[SessionState], bool]:
        """Find a session by id: (state, is_active)."""
        active = self.get_state()
        if active.session is not None and active.session.id == session_id:
            return active, True
        for entry in self.list_history():
            if entry.session.id == session_id:
                return entry, False
        return None, False

    def acknowledge_sync(
        self,
        session_id: str,
        sent_scans: list[TrackedScan],
        sent_deletes: list[str],
        **meta,
    ):
        """Record that the server applied ``sent_scans`` and ``sent_deletes``.

        Only the values that were sent are marked synced. Anything edited
        while the request was in flight stays pending for the next sync.
        """
        state, is_active = self._load_session(session_id)
        if state is None:
            logger.warning("Sync acknowledged for unknown or expired session %s", session_id)
            return

        if meta:
            state.session = state.session.model_copy(update=meta)

        for code in sent_deletes:
            item = state.find(code)
            if item is None:
                continue
            if item.state == SyncState.PENDING_DELETE:
                state.items.remove(item)
            else:
                # Scanned again after removal; the server row is gone either way
                item.syncedQuantity = 0
                item.state = SyncState.PENDING_CREATE

        for sent in sent_scans:
            item = state.find(sent.code)
            if item is None:
                # Removed locally while the request was in flight
                state.items.append(sent.model_copy(update={
                    "state": SyncState.PENDING_DELETE,
                    "syncedQuantity": sent.quantity,
                }))
                continue
            item.syncedQuantity = sent.quantity
            if item.state == SyncState.PENDING_DELETE:
                continue
            item.state = SyncState.SYNCED if item.same_values(sent) else SyncState.PENDING_UPDATE

        if is_active:
            self._save(state)
        else:
            self._upsert_history(state)
