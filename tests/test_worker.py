"""Tests for the trigger worker (worker_main.AppHost / AsyncGuard)."""

import asyncio

from classes.entities import QueueMessage
from classes.memorial_store import MEMORIAL_DELETED
from worker_main import AsyncGuard, RelativesSyncApp


def _link(name, relationship, memorial_id):
    return {"name": name, "relationship": relationship, "memorial_id": memorial_id}


class TestDrain:

    def test_reciprocal_link_end_to_end(self, store, host, queued):
        store.create("a1", {"name": "A"})
        store.create("b1", {"name": "B"})
        store.update("b1", {"relatives": [_link("A", "Parent", "a1")]})

        # a1 created, b1 created, b1 updated, then a1's echo from the reciprocal write
        assert host.drain() == 4

        assert store.get("a1")["relatives"] == [_link("B", "Child", "b1")]
        assert store.get("b1")["relatives"] == [_link("A", "Parent", "a1")]
        assert queued() == []

    def test_delete_unlinks_counterparts(self, store, host, clock):
        store.create("b1", {"name": "B"})
        store.create("a1", {"name": "A", "relatives": [_link("B", "Mother", "b1")]})
        host.drain()
        assert store.get("b1")["relatives"] == [_link("A", "Son/Daughter", "a1")]

        clock.advance(30)
        store.delete("a1")
        host.drain()

        assert store.get("b1")["relatives"] == []

    def test_unlinking_end_to_end(self, store, host, clock):
        store.create("a1", {"name": "A"})
        store.create("b1", {"name": "B", "relatives": [_link("A", "Sibling", "a1")]})
        host.drain()

        clock.advance(30)
        store.update("b1", {"relatives": []})
        host.drain()

        assert store.get("a1")["relatives"] == []


class TestRedelivery:

    def test_failed_message_stays_in_place_with_attempts(self, store, host, queued):
        store.create("b1", {"name": "B", "relatives": [_link("Ghost", "Parent", "ghost")]})

        jobs = host.claim(limit=10)
        host.process_sender_jobs(jobs)

        messages = queued()
        assert len(messages) == 1
        assert messages[0]["id"] == jobs[0]["id"]
        assert messages[0]["sender_id"] == "memorials::b1"
        assert messages[0]["attempts"] == 1
        assert messages[0]["claimed_until"] is None

    def test_failed_message_is_not_overtaken_by_newer_edits(self, store, host):
        """a1 links x1 before x1 exists, then drops the link while the first trigger is failing."""
        store.create("a1", {"name": "A", "relatives": [_link("X", "Sibling", "x1")]})

        jobs = host.claim(limit=10)
        store.update("a1", {"relatives": []})
        host.process_sender_jobs(jobs)

        store.create("x1", {"name": "X"})
        host.drain()

        assert store.get("a1")["relatives"] == []
        assert store.get("x1")["relatives"] == []

    def test_message_is_dropped_after_max_attempts(self, store, host, queued):
        store.create("a1", {"name": "A"})
        store.create("b1", {"name": "B", "relatives": [_link("Ghost", "Parent", "ghost")]})

        host.drain()

        assert queued() == []
        assert store.get("a1")["relatives"] == []

    def test_later_messages_wait_behind_a_failing_one(self, store, host, session_factory):
        store.create("a1", {"name": "A"})
        store.create("b1", {"name": "B"})
        host.drain()

        store.update("b1", {"relatives": [_link("Ghost", "Parent", "ghost")]})
        store.update("b1", {"relatives": [_link("A", "Child", "a1")]})

        jobs = host.claim(limit=10)
        host.process_sender_jobs(jobs)

        session = session_factory()
        try:
            rows = session.query(QueueMessage).order_by(QueueMessage.id.asc()).all()
            assert [r.attempts for r in rows] == [1, 0]
            assert rows[0].last_error
            assert rows[1].payload["after"]["relatives"] == [_link("A", "Child", "a1")]
        finally:
            session.close()

        # the failing edit is eventually dropped and the later one still applies
        host.drain()
        assert store.get("a1")["relatives"] == [_link("B", "Parent", "b1")]

    def test_unknown_sender_is_dropped(self, session_factory, host, queued):
        session = session_factory()
        try:
            session.add(QueueMessage(
                sender_id="tributes::t1",
                receiver_id=host.receiver_id,
                type="tribute_created",
                payload={},
                attempts=0,
            ))
            session.commit()
        finally:
            session.close()

        assert host.drain() == 1
        assert queued() == []


class TestClaim:

    def test_claim_limits_documents_not_messages(self, store, host):
        store.create("a1", {"name": "A"})
        store.update("a1", {"bio": "x"})
        store.create("b1", {"name": "B"})

        jobs = host.claim(limit=1)

        assert [j["sender_id"] for j in jobs] == ["memorials::a1", "memorials::a1"]
        assert [j["sender_id"] for j in host.claim(limit=5)] == ["memorials::b1"]

    def test_claim_skips_in_flight_documents(self, store, host):
        store.create("a1", {"name": "A"})
        store.create("b1", {"name": "B"})

        jobs = host.claim(limit=5, exclude_senders={"memorials::a1"})

        assert [j["sender_id"] for j in jobs] == ["memorials::b1"]

    def test_claimed_messages_stay_queued_until_acked(self, store, host, queued):
        store.create("a1", {"name": "A"})

        jobs = host.claim(limit=5)

        assert [m["id"] for m in queued()] == [j["id"] for j in jobs]
        host.process_sender_jobs(jobs)
        assert queued() == []

    def test_document_with_a_leased_message_is_not_claimed_again(self, store, host):
        store.create("a1", {"name": "A"})
        host.claim(limit=5)

        store.update("a1", {"bio": "newer edit"})

        assert host.claim(limit=5) == []

    def test_expired_lease_is_claimed_again(self, store, host, clock):
        store.create("a1", {"name": "A"})
        jobs = host.claim(limit=5)
        assert host.claim(limit=5) == []

        clock.advance(host.lease_seconds + 1)

        assert [j["id"] for j in host.claim(limit=5)] == [j["id"] for j in jobs]


class TestRelativesSyncApp:

    def test_delete_hook_can_be_turned_off(self, store, reconciler):
        store.create("b1", {"name": "B"})
        app = RelativesSyncApp(reconciler, reconcile_on_delete=False)
        job = {
            "type": MEMORIAL_DELETED,
            "payload": {"memorial_id": "a1", "before": {"relatives": [_link("B", "Child", "b1")]}, "after": None},
        }
        assert app.handle(job, "a1") is None
        assert store.get("b1")["relatives"] == []

    def test_unknown_type_is_ignored(self, reconciler):
        app = RelativesSyncApp(reconciler)
        assert app.handle({"type": "memorial_archived", "payload": {}}, "a1") is None


class TestAsyncGuard:

    def test_sender_is_released_after_processing(self, store, host):
        store.create("a1", {"name": "A"})
        guard = AsyncGuard(host, poll_interval=0.01, max_concurrent=2)
        jobs = host.claim(limit=2)
        guard._in_flight.add("memorials::a1")

        asyncio.run(guard._run_sender_jobs("memorials::a1", jobs))

        assert guard._in_flight == set()
