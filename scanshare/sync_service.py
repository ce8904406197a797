import logging
from enum import Enum
from typing import Optional

from scanshare.client import ScanShareClient
from scanshare.exceptions import SyncError
from scanshare.models import SessionFlags
from scanshare.storage import LocalSessionStore, SessionState

logger = logging.getLogger(__name__)


class SyncStatus(str, Enum):
    IDLE = "idle"
    SYNCING = "syncing"
    ERROR = "error"


class SyncResult:
    """Outcome of one sync request."""

    def __init__(self, outcome: str, short_code: Optional[str] = None):
        self.outcome = outcome  # "success", "skipped", "error"
        self.short_code = short_code
        self.access_code: Optional[str] = None
        self.created = False
        self.sent_scans = 0
        self.sent_deletes = 0
        self.total_scans: Optional[int] = None
        self.error: Optional[SyncError] = None

    @property
    def ok(self) -> bool:
        return self.outcome == "success"


class SyncReconciler:
    """Ships the local pending delta of the active session to the server.

    The first successful sync creates the remote session; later ones delete
    and then add against it. Local pending markers are only acknowledged once
    the whole exchange succeeded, so a failed attempt can be retried as is.
    """

    def __init__(self, store: LocalSessionStore, client: ScanShareClient):
        self.store = store
        self.client = client
        self.status = SyncStatus.IDLE
        self.last_error: Optional[SyncError] = None

    async def sync(self) -> SyncResult:
        if self.status == SyncStatus.SYNCING:
            logger.debug("Sync already in progress, ignoring request")
            return SyncResult("skipped")

        # Always work from fresh state, never from a previously failed payload
        state = self.store.get_state()
        if state.session is None or not state.has_pending:
            return SyncResult("skipped", state.session.shortCode if state.session else None)

        self.status = SyncStatus.SYNCING
        try:
            result = await self._run(state)
        except SyncError as e:
            self.status = SyncStatus.ERROR
            self.last_error = e
            logger.error("Sync of session %s failed: %s", state.session.id, e)
            result = SyncResult("error", state.session.shortCode)
            result.error = e
            return result
        except Exception:
            self.status = SyncStatus.ERROR
            raise

        self.status = SyncStatus.IDLE
        self.last_error = None
        logger.info(
            "Synced session %s as %s: %d scans, %d deletes",
            state.session.id, result.short_code, result.sent_scans, result.sent_deletes,
        )
        return result

    async def retry(self) -> SyncResult:
        """Re-run a failed sync with whatever is pending now."""
        return await self.sync()

    async def _run(self, state: SessionState) -> SyncResult:
        session = state.session
        sent_scans = [item.model_copy() for item in state.pending_scans]
        # Recreated codes are deleted first, then sent with their full quantity
        sent_deletes = state.pending_deletes + state.pending_recreates

        if not session.is_synced:
            flags = SessionFlags(
                askInternalCode=session.askInternalCode,
                askProductName=session.askProductName,
                askPrice=session.askPrice,
            )
            created = await self.client.create_session(session.name, session.type, sent_scans, flags)
            self.store.acknowledge_sync(
                session.id,
                sent_scans,
                [],
                shortCode=created.shortCode,
                accessCode=created.accessCode,
                askInternalCode=created.askInternalCode,
                askProductName=created.askProductName,
                askPrice=created.askPrice,
            )
            result = SyncResult("success", created.shortCode)
            result.access_code = created.accessCode
            result.created = True
            result.sent_scans = len(sent_scans)
            result.total_scans = created.totalScans
            return result

        # Deletes are applied before additions
        result = SyncResult("success", session.shortCode)
        result.access_code = session.accessCode
        if sent_deletes:
            response = await self.client.delete_scans(session.shortCode, sent_deletes)
            result.total_scans = response.totalScans
        if sent_scans:
            response = await self.client.add_scans(
                session.shortCode, [item.to_delta() for item in sent_scans]
            )
            result.total_scans = response.totalScans

        self.store.acknowledge_sync(session.id, sent_scans, sent_deletes)
        result.sent_scans = len(sent_scans)
        result.sent_deletes = len(sent_deletes)
        return result
