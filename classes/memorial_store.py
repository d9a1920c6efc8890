# classes/memorial_store.py
"""
Document-style access to memorial records on top of SQLAlchemy.

The rest of the backend treats a memorial as a JSON document. This module
supplies the few primitives the relative-link sync needs:

- point reads (`get`)
- single-document writes (`create`, `set`, `update`, `delete`)
- multi-document atomic batches (`batch`), unconditional
- read-modify-write transactions with optimistic concurrency (`run_transaction`)
- field sentinels: `ArrayUnion(...)` (deduplicating append) and
  `SERVER_TIMESTAMP` (resolved with the store clock at write time)

Every committed write also enqueues a change trigger (QueueMessage) in the same
DB transaction, carrying the before/after snapshots of the document. The worker
delivers those triggers to the LinkageReconciler.
"""

import copy
import logging
from collections import OrderedDict
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence, TypeVar

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from classes.entities import MEMORIAL_COLUMNS, Memorial, QueueMessage, as_utc
from classes.errors import DocumentExists, DocumentNotFound, StoreError, TransactionAborted
from classes.google_helpers import TRIGGER_RECEIVER_ID

logger = logging.getLogger("headstone_backend")

T = TypeVar("T")

TRIGGER_APP_KEY = "memorials"
TRIGGER_KEY_DELIM = "::"

MEMORIAL_CREATED = "memorial_created"
MEMORIAL_UPDATED = "memorial_updated"
MEMORIAL_DELETED = "memorial_deleted"


class ArrayUnion:
    """
    Field sentinel: append each element unless a deep-equal element is already
    in the array. Idempotent and commutative.
    """

    def __init__(self, *elements: Any):
        self.elements = [copy.deepcopy(e) for e in elements]

    def __repr__(self) -> str:
        return f"ArrayUnion({self.elements!r})"


class _ServerTimestamp:
    def __repr__(self) -> str:
        return "SERVER_TIMESTAMP"


SERVER_TIMESTAMP = _ServerTimestamp()


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def array_union(current: Optional[List[Any]], elements: List[Any]) -> List[Any]:
    merged = [copy.deepcopy(e) for e in (current or [])]
    for element in elements:
        if element not in merged:
            merged.append(copy.deepcopy(element))
    return merged


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return as_utc(value)
    return as_utc(datetime.fromisoformat(str(value)))


def _json_safe(value: Any) -> Any:
    if isinstance(value, datetime):
        return as_utc(value).isoformat()
    return copy.deepcopy(value)


def _reset_row(row: Memorial) -> None:
    for key in MEMORIAL_COLUMNS:
        setattr(row, key, None)
    row.name = ""
    row.relatives = []
    row.fields = {}


def _apply_fields(row: Memorial, fields: Dict[str, Any], now: datetime) -> None:
    extra = dict(row.fields or {})
    extra_changed = False

    for key, value in fields.items():
        if key in ("id", "created_at", "name_lowercase"):
            continue
        if value is SERVER_TIMESTAMP:
            value = now

        if key in MEMORIAL_COLUMNS:
            if isinstance(value, ArrayUnion):
                value = array_union(getattr(row, key), value.elements)
            elif key == "relatives":
                value = copy.deepcopy(list(value or []))
            elif key == "last_updated_by_function":
                value = _parse_timestamp(value)
            setattr(row, key, value)
        else:
            if isinstance(value, ArrayUnion):
                value = array_union(extra.get(key), value.elements)
            extra[key] = _json_safe(value)
            extra_changed = True

    if row.name is None:
        row.name = ""
    if row.relatives is None:
        row.relatives = []
    # derived on every write, whatever the caller sent
    row.name_lowercase = row.name.lower()

    if extra_changed:
        row.fields = extra


class Transaction:
    """
    Handle passed to the function given to MemorialStore.run_transaction.
    Reads must come before writes; writes are applied at commit.
    """

    def __init__(self, session: Session):
        self._session = session
        self._rows: Dict[str, Optional[Memorial]] = {}
        self._writes: List[tuple] = []

    def get(self, memorial_id: str) -> Optional[dict]:
        if self._writes:
            raise StoreError("Transactions require all reads to run before any write")
        row = self._session.get(Memorial, str(memorial_id))
        self._rows[str(memorial_id)] = row
        return row.to_snapshot() if row is not None else None

    def update(self, memorial_id: str, fields: Dict[str, Any]) -> None:
        self._writes.append((str(memorial_id), dict(fields)))


class WriteBatch:
    """
    Unconditional multi-document update, applied all-or-nothing.
    Updating a document that does not exist fails the whole batch.
    """

    def __init__(self, store: "MemorialStore"):
        self._store = store
        self._writes: List[tuple] = []

    def __len__(self) -> int:
        return len(self._writes)

    def update(self, memorial_id: str, fields: Dict[str, Any]) -> "WriteBatch":
        self._writes.append((str(memorial_id), dict(fields)))
        return self

    def commit(self) -> int:
        """
        Returns the number of documents written.
        """
        if not self._writes:
            return 0

        writes = list(self._writes)

        def _work(session: Session, now: datetime) -> int:
            grouped = self._store._group_writes(writes)
            for memorial_id, field_list in grouped.items():
                row = session.execute(
                    select(Memorial).where(Memorial.id == memorial_id).with_for_update()
                ).scalar_one_or_none()
                if row is None:
                    raise DocumentNotFound(memorial_id)
                self._store._apply_and_emit(session, row, field_list, now)
            return len(grouped)

        return self._store._run(_work)


class MemorialStore:
    def __init__(
        self,
        session_factory: sessionmaker,
        *,
        clock: Optional[Callable[[], datetime]] = None,
        trigger_receiver_id: str = TRIGGER_RECEIVER_ID,
        emit_triggers: bool = True,
        max_attempts: int = 5,
    ):
        self.SessionFactory = session_factory
        self._clock = clock or utc_now
        self.trigger_receiver_id = trigger_receiver_id
        self.emit_triggers = emit_triggers
        self.max_attempts = max_attempts

    # -----------------------
    # Clock / triggers
    # -----------------------

    def server_timestamp(self) -> datetime:
        return as_utc(self._clock())

    def _emit(self, session: Session, msg_type: str, memorial_id: str,
              before: Optional[dict], after: Optional[dict]) -> None:
        if not self.emit_triggers:
            return
        session.add(
            QueueMessage(
                sender_id=f"{TRIGGER_APP_KEY}{TRIGGER_KEY_DELIM}{memorial_id}",
                receiver_id=str(self.trigger_receiver_id),
                type=msg_type,
                payload={"memorial_id": memorial_id, "before": before, "after": after},
                attempts=0,
            )
        )

    def _group_writes(self, writes: List[tuple]) -> "OrderedDict[str, List[dict]]":
        grouped: "OrderedDict[str, List[dict]]" = OrderedDict()
        for memorial_id, fields in writes:
            grouped.setdefault(memorial_id, []).append(fields)
        return grouped

    def _apply_and_emit(self, session: Session, row: Memorial,
                        field_list: List[dict], now: datetime) -> dict:
        before = row.to_snapshot()
        for fields in field_list:
            _apply_fields(row, fields, now)
        after = row.to_snapshot()
        self._emit(session, MEMORIAL_UPDATED, row.id, before, after)
        return after

    def _run(self, work: Callable[[Session, datetime], T], max_attempts: Optional[int] = None) -> T:
        """
        Run work(session, now) and commit. A version conflict rolls back and
        re-runs the whole unit; other errors roll back and propagate.
        """
        attempts = max_attempts or self.max_attempts
        last_error: Exception | None = None

        for attempt in range(attempts):
            session = self.SessionFactory()
            try:
                result = work(session, self.server_timestamp())
                session.commit()
                return result
            except StaleDataError as e:
                session.rollback()
                last_error = e
                logger.info("Write conflict on attempt %d/%d, retrying: %s", attempt + 1, attempts, e)
            except Exception:
                session.rollback()
                raise
            finally:
                session.close()

        raise TransactionAborted(f"Gave up after {attempts} conflicting attempts") from last_error

    # -----------------------
    # Reads
    # -----------------------

    def get(self, memorial_id: str) -> Optional[dict]:
        session = self.SessionFactory()
        try:
            row = session.get(Memorial, str(memorial_id))
            return row.to_snapshot() if row is not None else None
        finally:
            session.close()

    def query(
        self,
        *,
        status: Optional[str | Sequence[str]] = None,
        curator_id: Optional[str] = None,
        name_prefix: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[dict]:
        stmt = select(Memorial)
        if isinstance(status, (list, tuple, set)):
            stmt = stmt.where(Memorial.status.in_(list(status)))
        elif status is not None:
            stmt = stmt.where(Memorial.status == status)
        if curator_id is not None:
            stmt = stmt.where(Memorial.curator_id == str(curator_id))
        if name_prefix is not None:
            stmt = stmt.where(
                Memorial.name_lowercase.startswith(name_prefix.lower(), autoescape=True)
            ).order_by(Memorial.name_lowercase.asc())
        else:
            stmt = stmt.order_by(Memorial.created_at.desc(), Memorial.id.asc())
        if limit is not None:
            stmt = stmt.limit(limit)

        session = self.SessionFactory()
        try:
            return [row.to_snapshot() for row in session.execute(stmt).scalars().all()]
        finally:
            session.close()

    # -----------------------
    # Single-document writes
    # -----------------------

    def create(self, memorial_id: str, data: Dict[str, Any]) -> dict:
        memorial_id = str(memorial_id)

        def _work(session: Session, now: datetime) -> dict:
            if session.get(Memorial, memorial_id) is not None:
                raise DocumentExists(memorial_id)
            row = Memorial(id=memorial_id, name="", relatives=[], fields={}, created_at=now)
            _apply_fields(row, data, now)
            session.add(row)
            after = row.to_snapshot()
            self._emit(session, MEMORIAL_CREATED, memorial_id, None, after)
            return after

        return self._run(_work)

    def set(self, memorial_id: str, data: Dict[str, Any], *, merge: bool = True) -> dict:
        """
        Create or overwrite. With merge=True only the given fields change.
        """
        memorial_id = str(memorial_id)

        def _work(session: Session, now: datetime) -> dict:
            row = session.execute(
                select(Memorial).where(Memorial.id == memorial_id).with_for_update()
            ).scalar_one_or_none()
            if row is None:
                row = Memorial(id=memorial_id, name="", relatives=[], fields={}, created_at=now)
                _apply_fields(row, data, now)
                session.add(row)
                after = row.to_snapshot()
                self._emit(session, MEMORIAL_CREATED, memorial_id, None, after)
                return after

            before = row.to_snapshot()
            if not merge:
                _reset_row(row)
            _apply_fields(row, data, now)
            after = row.to_snapshot()
            self._emit(session, MEMORIAL_UPDATED, memorial_id, before, after)
            return after

        return self._run(_work)

    def update(self, memorial_id: str, fields: Dict[str, Any]) -> dict:
        memorial_id = str(memorial_id)

        def _work(session: Session, now: datetime) -> dict:
            row = session.execute(
                select(Memorial).where(Memorial.id == memorial_id).with_for_update()
            ).scalar_one_or_none()
            if row is None:
                raise DocumentNotFound(memorial_id)
            return self._apply_and_emit(session, row, [fields], now)

        return self._run(_work)

    def delete(self, memorial_id: str) -> Optional[dict]:
        """
        Returns the last snapshot of the deleted record, or None if it did not exist.
        """
        memorial_id = str(memorial_id)

        def _work(session: Session, now: datetime) -> Optional[dict]:
            row = session.get(Memorial, memorial_id)
            if row is None:
                return None
            before = row.to_snapshot()
            session.delete(row)
            self._emit(session, MEMORIAL_DELETED, memorial_id, before, None)
            return before

        return self._run(_work)

    # -----------------------
    # Multi-document writes
    # -----------------------

    def batch(self) -> WriteBatch:
        return WriteBatch(self)

    def run_transaction(self, fn: Callable[[Transaction], T], *, max_attempts: Optional[int] = None) -> T:
        """
        Run fn(txn) as an optimistic read-modify-write transaction.

        Documents written through txn.update are version-checked at commit;
        if another writer got there first the whole function is re-run from
        scratch. Exceptions raised by fn abort without retry.
        """

        def _work(session: Session, now: datetime) -> T:
            txn = Transaction(session)
            result = fn(txn)
            for memorial_id, field_list in self._group_writes(txn._writes).items():
                row = txn._rows.get(memorial_id)
                if row is None:
                    row = session.get(Memorial, memorial_id)
                if row is None:
                    raise DocumentNotFound(memorial_id)
                self._apply_and_emit(session, row, field_list, now)
            return result

        return self._run(_work, max_attempts)
