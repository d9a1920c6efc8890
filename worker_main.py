# worker_main.py
"""
DB Queue Worker for memorial change triggers

Where do the triggers come from?
--------------------------------
MemorialStore writes one QueueMessage per committed create/update/delete of a
memorial, in the same DB transaction as the write itself:

    sender_id   = "memorials::<memorial id>"
    receiver_id = TRIGGER_RECEIVER_ID
    type        = memorial_created | memorial_updated | memorial_deleted
    payload     = {"memorial_id": ..., "before": {...} | None, "after": {...} | None}

This worker process polls ONLY messages where
    QueueMessage.receiver_id == TRIGGER_RECEIVER_ID

Routing logic
-------------
Routing is done by sender_id prefix, as "<app_key><app_key_delim><document id>".
STRICT mode: there is NO default/fallback app. A sender_id that does not match a
registered prefix is an error (the message is logged and dropped).

Delivery guarantees
-------------------
- At-least-once: claim() only leases rows (claimed_until = now + TRIGGER_LEASE_SECONDS).
  A row is deleted after its handler succeeds. A failing message stays where it
  is with attempts + 1 until MAX_TRIGGER_ATTEMPTS, then it is dropped with an
  error log. If a worker dies, its lease runs out and the rows are claimed
  again. Handlers must be idempotent.
- Per-document ordering: a document is claimable only when its oldest message
  is free. Its messages run sequentially in id order, and nothing newer is
  claimed while an older one is leased or waiting for another attempt.
- max_concurrent caps how many documents are processed at the same time.
"""

import asyncio
import logging
import traceback
from dataclasses import asdict
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy import delete, func, or_, select, update

from classes.GCConnection_hlpr import GCConnection
from classes.entities import QueueMessage, as_utc
from classes.google_helpers import (
    CONCURRENT_INSTANCES,
    MAX_TRIGGER_ATTEMPTS,
    RECONCILE_ON_DELETE,
    TRIGGER_LEASE_SECONDS,
    TRIGGER_RECEIVER_ID,
)
from classes.memorial_store import (
    MEMORIAL_CREATED,
    MEMORIAL_DELETED,
    MEMORIAL_UPDATED,
    TRIGGER_APP_KEY,
    TRIGGER_KEY_DELIM,
    MemorialStore,
    utc_now,
)
from classes.reconciler import LinkageReconciler


logging.basicConfig(
    level=logging.DEBUG,
    format="%(asctime)s | %(levelname)s | %(name)s\n%(message)s\n",
)
logger = logging.getLogger("headstone_worker")


class RelativesSyncApp:
    """
    Routes memorial triggers to the LinkageReconciler.

    KEY WIRING:
      sender_id must start with:  "memorials::"
    """
    key = TRIGGER_APP_KEY
    key_delim = TRIGGER_KEY_DELIM

    def __init__(self, reconciler: LinkageReconciler, *, reconcile_on_delete: bool = RECONCILE_ON_DELETE):
        self.reconciler = reconciler
        self.reconcile_on_delete = reconcile_on_delete

    def handle(self, job: Dict[str, Any], memorial_id: str) -> Optional[Dict[str, Any]]:
        payload = job.get("payload") or {}
        msg_type = job.get("type")
        before = payload.get("before")
        after = payload.get("after")

        if msg_type in (MEMORIAL_CREATED, MEMORIAL_UPDATED):
            result = self.reconciler.handle_change(memorial_id, before, after)
            return asdict(result)
        if msg_type == MEMORIAL_DELETED:
            if not self.reconcile_on_delete:
                return None
            return asdict(self.reconciler.handle_delete(memorial_id, before))

        logger.warning("Ignoring trigger of unknown type=%s for %s", msg_type, memorial_id)
        return None


class AppHost:
    def __init__(
        self,
        Session,
        receiver_id: str,
        apps: List[Any],
        *,
        max_attempts: int = MAX_TRIGGER_ATTEMPTS,
        lease_seconds: float = TRIGGER_LEASE_SECONDS,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.SessionFactory = Session
        self.receiver_id = receiver_id
        self.apps = list(apps or [])
        self.max_attempts = max_attempts
        self.lease_seconds = lease_seconds
        self._clock = clock or utc_now

    def _now(self) -> datetime:
        return as_utc(self._clock())

    def _resolve_app(self, sender_full: str) -> Tuple[Any, str, str]:
        """
        STRICT: must match a registered app prefix.
        Returns: (app, matched_prefix, document_id)
        """
        candidates: List[Tuple[int, str, Any]] = []

        for app in self.apps:
            key = getattr(app, "key", "")
            delim = getattr(app, "key_delim", "")
            prefix = f"{key}{delim}"
            if not prefix:
                continue
            if sender_full.startswith(prefix):
                candidates.append((len(prefix), prefix, app))

        if not candidates:
            known = [f"{getattr(a,'key','')}{getattr(a,'key_delim','')}" for a in self.apps]
            raise RuntimeError(f"No app matched sender_id='{sender_full}'. Known prefixes: {known}")

        candidates.sort(key=lambda x: x[0], reverse=True)
        _, prefix, app = candidates[0]
        return app, prefix, sender_full[len(prefix):]

    def claim(self, limit: int, exclude_senders: Optional[set] = None) -> List[Dict[str, Any]]:
        """
        Lease the queued messages of up to `limit` documents, oldest document first.

        A document is only claimable when its OLDEST message is free, so nothing
        newer runs while an older message of the same document is leased or
        waiting for another attempt. Rows stay in the table until acked.
        """
        exclude_senders = exclude_senders or set()
        now = self._now()
        unleased = or_(QueueMessage.claimed_until.is_(None), QueueMessage.claimed_until < now)

        session = self.SessionFactory()
        try:
            head = (
                select(QueueMessage.sender_id, func.min(QueueMessage.id).label("head_id"))
                .where(QueueMessage.receiver_id == str(self.receiver_id))
                .group_by(QueueMessage.sender_id)
                .subquery()
            )
            stmt = (
                select(QueueMessage.sender_id, QueueMessage.id)
                .join(head, QueueMessage.id == head.c.head_id)
                .where(unleased)
            )
            if exclude_senders:
                stmt = stmt.where(QueueMessage.sender_id.not_in(list(exclude_senders)))
            stmt = stmt.order_by(QueueMessage.id.asc()).limit(limit)
            heads = {sender_id: head_id for sender_id, head_id in session.execute(stmt).all()}
            if not heads:
                return []

            rows = (
                session.execute(
                    select(QueueMessage)
                    .where(QueueMessage.receiver_id == str(self.receiver_id))
                    .where(QueueMessage.sender_id.in_(list(heads)))
                    .where(unleased)
                    .order_by(QueueMessage.id.asc())
                    .with_for_update(skip_locked=True)
                )
                .scalars()
                .all()
            )

            # another worker may have locked a head between the two selects
            first_seen: Dict[str, int] = {}
            for r in rows:
                first_seen.setdefault(r.sender_id, r.id)
            claimed = [r for r in rows if first_seen[r.sender_id] == heads[r.sender_id]]

            lease_until = now + timedelta(seconds=self.lease_seconds)
            for r in claimed:
                r.claimed_until = lease_until

            jobs = [
                {
                    "id": r.id,
                    "sender_id": r.sender_id,
                    "receiver_id": r.receiver_id,
                    "type": r.type,
                    "payload": r.payload,
                    "attempts": r.attempts or 0,
                }
                for r in claimed
            ]
            session.commit()
            return jobs
        finally:
            session.close()

    def _ack(self, job: Dict[str, Any]) -> None:
        session = self.SessionFactory()
        try:
            session.execute(delete(QueueMessage).where(QueueMessage.id == job["id"]))
            session.commit()
        finally:
            session.close()

    def _release(self, jobs: List[Dict[str, Any]]) -> None:
        if not jobs:
            return
        session = self.SessionFactory()
        try:
            session.execute(
                update(QueueMessage)
                .where(QueueMessage.id.in_([j["id"] for j in jobs]))
                .values(claimed_until=None)
            )
            session.commit()
        finally:
            session.close()

    def _retry_later(self, job: Dict[str, Any], error: Exception) -> bool:
        """
        Record the failure on the message itself; it keeps its id and so its
        place at the head of the document's queue.
        Returns False when the message was dropped instead.
        """
        attempts = int(job.get("attempts") or 0) + 1
        session = self.SessionFactory()
        try:
            row = session.get(QueueMessage, job["id"])
            if row is None:
                return False
            if attempts >= self.max_attempts:
                logger.error(
                    "Dropping trigger id=%s type=%s for %s after %d attempts: %s",
                    job.get("id"), job.get("type"), job.get("sender_id"), attempts, error,
                )
                session.delete(row)
                session.commit()
                return False

            row.attempts = attempts
            row.last_error = str(error)
            row.claimed_until = None
            session.commit()
            return True
        finally:
            session.close()

    def process_queue_job(self, job: Dict[str, Any]) -> bool:
        """
        Returns False when the job stays queued for another attempt.
        """
        sender_full = str(job.get("sender_id") or "")
        msg_type = job.get("type") or "unknown"

        try:
            app, _prefix, document_id = self._resolve_app(sender_full)
        except RuntimeError as e:
            logger.error("Dropping trigger id=%s: %s", job.get("id"), e)
            self._ack(job)
            return True

        try:
            response = app.handle(job, document_id)
        except Exception as e:
            logger.info("Error processing trigger id=%s type=%s: %s", job.get("id"), msg_type, e)
            traceback.print_exc()
            return not self._retry_later(job, e)

        self._ack(job)
        logger.debug("Trigger id=%s type=%s for %s -> %s", job.get("id"), msg_type, document_id, response)
        return True

    def process_sender_jobs(self, jobs: List[Dict[str, Any]]) -> None:
        """
        Jobs of ONE document, in order. After a failure the rest of the
        document's jobs are released and wait behind the failed one.
        """
        for i, job in enumerate(jobs):
            if not self.process_queue_job(job):
                self._release(jobs[i + 1:])
                return

    def drain(self, max_rounds: int = 100) -> int:
        """
        Synchronously process the queue until it is empty (or max_rounds).
        Returns how many messages were claimed along the way.
        """
        processed = 0
        for _ in range(max_rounds):
            jobs = self.claim(limit=1_000_000)
            if not jobs:
                break
            processed += len(jobs)
            for sender_jobs in _group_by_sender(jobs).values():
                self.process_sender_jobs(sender_jobs)
        return processed


def _group_by_sender(jobs: List[Dict[str, Any]]) -> Dict[str, List[Dict[str, Any]]]:
    grouped: Dict[str, List[Dict[str, Any]]] = {}
    for job in jobs:
        grouped.setdefault(str(job["sender_id"]), []).append(job)
    return grouped


class AsyncGuard:
    def __init__(
        self,
        host: AppHost,
        poll_interval: float = 1.0,
        max_concurrent: int = 4,
    ):
        self.host = host
        self.poll_interval = poll_interval
        self.max_concurrent = max_concurrent
        self._in_flight: set = set()

    async def _run_sender_jobs(self, sender_id: str, jobs: List[Dict[str, Any]]) -> None:
        try:
            await asyncio.to_thread(self.host.process_sender_jobs, jobs)
        finally:
            self._in_flight.discard(sender_id)

    async def run(self) -> None:
        logger.info("AsyncGuard running - receiver_id=%s (max_concurrent=%d)", self.host.receiver_id, self.max_concurrent)

        while True:
            available_slots = self.max_concurrent - len(self._in_flight)
            if available_slots <= 0:
                await asyncio.sleep(self.poll_interval)
                continue

            jobs = self.host.claim(available_slots, exclude_senders=set(self._in_flight))
            if not jobs:
                await asyncio.sleep(self.poll_interval)
                continue

            for sender_id, sender_jobs in _group_by_sender(jobs).items():
                self._in_flight.add(sender_id)
                asyncio.create_task(self._run_sender_jobs(sender_id, sender_jobs))

            await asyncio.sleep(self.poll_interval)


def build_host(
    session_factory,
    *,
    receiver_id: str = TRIGGER_RECEIVER_ID,
    clock=None,
    max_attempts: int = MAX_TRIGGER_ATTEMPTS,
) -> AppHost:
    store = MemorialStore(session_factory, clock=clock, trigger_receiver_id=receiver_id)
    apps = [
        RelativesSyncApp(LinkageReconciler(store)),
    ]
    return AppHost(
        session_factory,
        receiver_id=receiver_id,
        apps=apps,
        max_attempts=max_attempts,
        clock=clock,
    )


def main() -> None:
    if not TRIGGER_RECEIVER_ID:
        raise RuntimeError("TRIGGER_RECEIVER_ID env var is required for DB queue mode")

    host = build_host(GCConnection().build_db_session_factory())
    guard = AsyncGuard(
        host=host,
        max_concurrent=CONCURRENT_INSTANCES,
    )
    asyncio.run(guard.run())


if __name__ == "__main__":
    main()
