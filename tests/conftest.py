"""Pytest fixtures for the headstone backend tests.

Every test gets its own SQLite file under tmp_path. A file (not :memory:) so
that separate sessions see each other's commits, which the optimistic
concurrency tests depend on.
"""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from classes.approval_linker import ApprovalLinker
from classes.entities import Base, QueueMessage
from classes.google_helpers import create_session_factory, get_db_engine
from classes.memorial_service import MemorialService
from classes.memorial_store import MemorialStore
from classes.reconciler import LinkageReconciler
from classes.tribute_service import TributeService
from worker_main import build_host

RECEIVER_ID = "memorial_triggers_test"


class FakeClock:
    """Store clock the tests move by hand."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class FakeLlm:
    """Stands in for LlmClient; records prompts."""

    def __init__(self, reply: str = "A life well lived.", error: Exception | None = None):
        self.reply = reply
        self.error = error
        self.prompts = []

    def invoke(self, prompt: str) -> str:
        self.prompts.append(prompt)
        if self.error is not None:
            raise self.error
        return self.reply


class FakeGCConnection:
    """Stands in for GCConnection photo uploads and Vision text detection."""

    def __init__(self):
        self.uploads = []
        self.image_text = "IN LOVING MEMORY\nJANE DOE\n1950 - 2020"
        self.vision_error = None
        self.images = []

    def upload_memorial_photo(self, memorial_id, data, content_type="image/jpeg"):
        self.uploads.append((memorial_id, data, content_type))
        return f"https://storage.googleapis.com/test-bucket/memorials/{memorial_id}/photo-{len(self.uploads)}"

    def detect_image_text(self, image_url):
        self.images.append(image_url)
        if self.vision_error is not None:
            raise self.vision_error
        return self.image_text


@pytest.fixture
def engine(tmp_path):
    engine = get_db_engine(f"sqlite:///{tmp_path / 'headstone.db'}")
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(session_factory, clock):
    return MemorialStore(session_factory, clock=clock, trigger_receiver_id=RECEIVER_ID)


@pytest.fixture
def reconciler(store):
    return LinkageReconciler(store, suppression_window_seconds=10)


@pytest.fixture
def linker(store):
    return ApprovalLinker(store, strict_curator_identity=True, reciprocal_labels=False)


@pytest.fixture
def gc_connection():
    return FakeGCConnection()


@pytest.fixture
def bio_llm():
    return FakeLlm()


@pytest.fixture
def service(store, gc_connection, bio_llm):
    return MemorialService(store, gc_connection=gc_connection, bio_llm=bio_llm)


@pytest.fixture
def tributes(store):
    return TributeService(store)


@pytest.fixture
def host(session_factory, clock):
    """Trigger worker sharing the store clock, drained synchronously."""
    return build_host(session_factory, receiver_id=RECEIVER_ID, clock=clock, max_attempts=3)


@pytest.fixture
def queued(session_factory):
    """Callable returning the pending trigger messages, oldest first."""

    def _queued():
        session = session_factory()
        try:
            rows = session.execute(select(QueueMessage).order_by(QueueMessage.id.asc())).scalars().all()
            return [
                {
                    "id": r.id,
                    "sender_id": r.sender_id,
                    "type": r.type,
                    "payload": r.payload,
                    "attempts": r.attempts,
                    "claimed_until": r.claimed_until,
                }
                for r in rows
            ]
        finally:
            session.close()

    return _queued
