import logging
import secrets
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Optional

from sqlalchemy import case
from sqlalchemy.orm import Session

from scanshare import aggregator
from scanshare.config import Settings
from scanshare.db_models import Scan, ScanSession
from scanshare.exceptions import SessionNotFoundError
from scanshare.models import (
    AddScansResponse,
    ScanDelta,
    ScanItem,
    ScanRow,
    SessionCreatedResponse,
    SessionDetail,
    SessionFlags,
)

logger = logging.getLogger(__name__)

# Export column -> Scan attribute
EXPORT_FIELDS = {
    "code": "code",
    "quantity": "quantity",
    **aggregator.DB_DETAIL_FIELDS,
}


def generate_short_code(nbytes: int = 3) -> str:
    return secrets.token_hex(nbytes)


def generate_access_code() -> str:
    """Four digits, never starting with 0."""
    return str(1000 + secrets.randbelow(9000))


class _KeyedLocks:
    """One lock per short code, so writes to the same session run one at a time."""

    def __init__(self):
        # key -> [lock, number of holders and waiters]
        self._locks: dict[str, list] = {}
        self._guard = threading.Lock()

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            entry = self._locks.setdefault(key, [threading.Lock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[key]


_session_locks = _KeyedLocks()


def scan_to_row(scan: Scan) -> ScanRow:
    return ScanRow(
        code=scan.code,
        quantity=scan.quantity,
        internalCode=scan.internal_code,
        productName=scan.product_name,
        price=scan.price,
        scannedAt=scan.scanned_at,
    )


def session_to_detail(session: ScanSession, scans: list[Scan]) -> SessionDetail:
    return SessionDetail(
        shortCode=session.short_code,
        name=session.name,
        type=session.type,
        createdAt=session.created_at,
        askInternalCode=session.ask_internal_code,
        askProductName=session.ask_product_name,
        askPrice=session.ask_price,
        totalScans=len(scans),
        scans=[scan_to_row(scan) for scan in scans],
    )


class SessionService:
    """Persisted scan sessions, addressed by short code."""

    def __init__(self, db: Session, settings: Settings):
        self.db = db
        self.settings = settings

    def _get(self, short_code: str) -> ScanSession:
        session = self.db.query(ScanSession).filter(ScanSession.short_code == short_code).first()
        if session is None:
            raise SessionNotFoundError(short_code)
        return session

    def _ordered_scans(self, session: ScanSession) -> list[Scan]:
        return (
            self.db.query(Scan)
            .filter(Scan.session_id == session.id)
            .order_by(Scan.scanned_at.asc(), Scan.id.asc())
            .all()
        )

    def _count_scans(self, session: ScanSession) -> int:
        return self.db.query(Scan).filter(Scan.session_id == session.id).count()

    def _new_short_code(self) -> str:
        for _ in range(self.settings.short_code_attempts):
            short_code = generate_short_code(self.settings.short_code_bytes)
            taken = self.db.query(ScanSession.id).filter(ScanSession.short_code == short_code).first()
            if taken is None:
                return short_code
        raise RuntimeError("Could not generate an unused short code")

    def create_session(
        self,
        name: str,
        type: Optional[str],
        scans: list[ScanItem],
        flags: Optional[SessionFlags] = None,
    ) -> SessionCreatedResponse:
        """Create a session with its first batch of scans (duplicates collapsed)."""
        flags = flags or SessionFlags()
        session = ScanSession(
            short_code=self._new_short_code(),
            access_code=generate_access_code(),
            name=name,
            type=type,
            ask_internal_code=flags.askInternalCode,
            ask_product_name=flags.askProductName,
            ask_price=flags.askPrice,
        )
        grouped = aggregator.group_by_code(scans)

        try:
            self.db.add(session)
            self.db.flush()
            for item in grouped:
                self.db.add(Scan(
                    session_id=session.id,
                    code=item.code,
                    quantity=item.quantity,
                    internal_code=item.internalCode,
                    product_name=item.productName,
                    price=item.price,
                ))
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info("Created session %s with %d scans", session.short_code, len(grouped))
        return SessionCreatedResponse(
            shortCode=session.short_code,
            accessCode=session.access_code,
            name=session.name,
            type=session.type,
            askInternalCode=session.ask_internal_code,
            askProductName=session.ask_product_name,
            askPrice=session.ask_price,
            totalScans=len(grouped),
        )

    def add_scans(self, short_code: str, scans: list[ScanDelta]) -> AddScansResponse:
        """Merge a batch into the persisted rows: increment or insert per code."""
        with _session_locks.hold(short_code):
            session = self._get(short_code)
            try:
                for item in aggregator.group_by_code(scans):
                    self._merge_row(session, item)
                self.db.commit()
            except Exception:
                self.db.rollback()
                raise
            return AddScansResponse(shortCode=short_code, totalScans=self._count_scans(session))

    def _merge_row(self, session: ScanSession, item: ScanDelta):
        row = (
            self.db.query(Scan)
            .filter(Scan.session_id == session.id, Scan.code == item.code)
            .first()
        )
        if row is None:
            if item.quantity < 1:
                logger.warning(
                    "Skipping %s for session %s: quantity %d for an unknown code",
                    item.code, session.short_code, item.quantity,
                )
                return
            self.db.add(Scan(
                session_id=session.id,
                code=item.code,
                quantity=item.quantity,
                internal_code=item.internalCode,
                product_name=item.productName,
                price=item.price,
            ))
            self.db.flush()
            return

        # Single UPDATE so concurrent increments of the same row are not lost
        new_quantity = Scan.quantity + item.quantity
        values = {Scan.quantity: case((new_quantity < 1, 1), else_=new_quantity)}
        for field, value in aggregator.present_details(item).items():
            values[getattr(Scan, aggregator.DB_DETAIL_FIELDS[field])] = value
        self.db.query(Scan).filter(Scan.id == row.id).update(values, synchronize_session=False)

    def delete_scans(self, short_code: str, codes: list[str]) -> AddScansResponse:
        """Delete rows by code. Codes that are not there are ignored."""
        with _session_locks.hold(short_code):
            session = self._get(short_code)
            try:
                deleted = 0
                if codes:
                    deleted = (
                        self.db.query(Scan)
                        .filter(Scan.session_id == session.id, Scan.code.in_(codes))
                        .delete(synchronize_session=False)
                    )
                self.db.commit()
            except Exception:
                self.db.rollback()
                raise
            logger.info("Deleted %d of %d codes from session %s", deleted, len(codes), short_code)
            return AddScansResponse(shortCode=short_code, totalScans=self._count_scans(session))

    def get_session(self, short_code: str) -> SessionDetail:
        session = self._get(short_code)
        return session_to_detail(session, self._ordered_scans(session))

    def verify_access(self, short_code: str, access_code: str) -> Optional[SessionDetail]:
        """Session detail when ``access_code`` matches, None when it does not."""
        session = self._get(short_code)
        if not secrets.compare_digest(session.access_code.encode(), access_code.encode()):
            return None
        return session_to_detail(session, self._ordered_scans(session))

    def export_rows(self, short_code: str, fields: Optional[list[str]] = None) -> tuple[str, list[dict]]:
        """Session name and scan rows projected to ``fields``, in scan order.

        Raises ValueError for unknown field names.
        """
        fields = fields or list(EXPORT_FIELDS)
        unknown = [field for field in fields if field not in EXPORT_FIELDS]
        if unknown:
            raise ValueError(f"Unknown export fields: {', '.join(unknown)}")

        session = self._get(short_code)
        rows = [
            {field: getattr(scan, EXPORT_FIELDS[field]) for field in fields}
            for scan in self._ordered_scans(session)
        ]
        return session.name, rows
