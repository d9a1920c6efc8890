"""HTTP surface tests (FastAPI TestClient)."""

import pytest
from fastapi.testclient import TestClient

from server import ServerContext, create_app


@pytest.fixture
def context(session_factory, clock, gc_connection, bio_llm):
    return ServerContext(session_factory, gc_connection=gc_connection, clock=clock, bio_llm=bio_llm)


@pytest.fixture
def client(context):
    return TestClient(create_app(context))


def _as(uid):
    return {"X-Auth-Uid": uid}


class TestCallableFunctions:

    def test_approve_and_link(self, client, context):
        context.store.create("s1", {"name": "John Doe", "relatives": [
            {"name": "Jane Doe", "relationship": "Daughter", "memorial_id": None},
        ]})
        context.store.create("sub1", {"name": "Jane Doe", "status": "pending", "source_memorial_id": "s1"})

        resp = client.post(
            "/functions/approveAndLinkSubmission",
            json={"submissionId": "sub1", "curatorId": "curator-1"},
            headers=_as("curator-1"),
        )

        assert resp.status_code == 200
        assert resp.json() == {"success": True}
        assert context.store.get("s1")["relatives"][0]["memorial_id"] == "sub1"

    @pytest.mark.parametrize(
        "headers, body, status, kind",
        [
            ({}, {"submissionId": "sub1", "curatorId": "c"}, 401, "unauthenticated"),
            (_as("c"), {"submissionId": "sub1"}, 400, "invalid-argument"),
            (_as("c"), {"submissionId": "nope", "curatorId": "c"}, 404, "not-found"),
            (_as("c"), {"submissionId": "sub1", "curatorId": "other"}, 403, "permission-denied"),
        ],
    )
    def test_approve_errors(self, client, headers, body, status, kind):
        resp = client.post("/functions/approveAndLinkSubmission", json=body, headers=headers)

        assert resp.status_code == status
        assert resp.json()["error"]["status"] == kind
        assert resp.json()["error"]["message"]

    def test_upgrade_tier(self, client, context):
        context.store.create("jane", {"name": "Jane", "curator_id": "curator-1"})

        resp = client.post(
            "/functions/upgradeMemorialTier",
            json={"memorialId": "jane", "newTier": "legacy"},
            headers=_as("curator-1"),
        )

        assert resp.status_code == 200
        assert resp.json()["message"] == "Memorial upgraded to legacy!"
        assert context.store.get("jane")["tier_sort_order"] == 2

    def test_geocode(self, client):
        resp = client.post("/functions/geocodeAddress", json={"address": "1 Main St"})
        assert resp.json() == {"lat": 40.7128, "lng": -74.006}

    def test_generate_bio(self, client):
        resp = client.post(
            "/functions/generateBioFromPrompts",
            json={"name": "Jane", "promptData": "Loved the sea"},
            headers=_as("curator-1"),
        )
        assert resp.status_code == 200
        assert resp.json() == {"biography": "A life well lived."}

    def test_transcribe_headstone_image(self, client, gc_connection):
        resp = client.post(
            "/functions/transcribeHeadstoneImage",
            json={"imageUrl": "https://example.com/stone.jpg"},
            headers=_as("curator-1"),
        )
        assert resp.status_code == 200
        assert resp.json() == {"text": gc_connection.image_text}

    def test_transcribe_needs_image_url(self, client):
        resp = client.post("/functions/transcribeHeadstoneImage", json={}, headers=_as("curator-1"))
        assert resp.status_code == 400
        assert resp.json()["error"]["message"] == 'The function must be called with an "imageUrl" argument.'


class TestMemorialRoutes:

    def test_create_get_and_search(self, client):
        resp = client.post("/memorials", json={"name": "Jane Doe"}, headers=_as("curator-1"))
        assert resp.status_code == 200
        memorial_id = resp.json()["id"]

        assert client.get(f"/memorials/{memorial_id}").json()["name"] == "Jane Doe"
        results = client.get("/memorials/search", params={"q": "jane"}).json()["results"]
        assert [r["id"] for r in results] == [memorial_id]

    def test_search_too_short(self, client):
        resp = client.get("/memorials/search", params={"q": "j"})
        assert resp.status_code == 400

    def test_missing_memorial(self, client):
        resp = client.get("/memorials/ghost")
        assert resp.status_code == 404
        assert resp.json() == {"error": {"status": "not-found", "message": "No memorial found with that ID."}}

    def test_update_and_delete(self, client, context):
        context.store.create("jane", {"name": "Jane", "curator_id": "curator-1"})

        resp = client.put("/memorials/jane", json={"name": "Jane Doe"}, headers=_as("curator-1"))
        assert resp.json()["name"] == "Jane Doe"

        assert client.delete("/memorials/jane", headers=_as("curator-2")).status_code == 403
        assert client.delete("/memorials/jane", headers=_as("curator-1")).json() == {"success": True}
        assert context.store.get("jane") is None

    def test_photo_upload(self, client, context, gc_connection):
        context.store.create("jane", {"name": "Jane", "curator_id": "curator-1"})

        resp = client.post(
            "/memorials/jane/photos",
            content=b"\x89PNG...",
            headers={**_as("curator-1"), "Content-Type": "image/png"},
        )

        assert resp.status_code == 200
        assert resp.json()["main_photo"].startswith("https://storage.googleapis.com/")
        assert gc_connection.uploads == [("jane", b"\x89PNG...", "image/png")]

    def test_put_cannot_approve_a_pending_submission(self, client, context):
        context.store.create("sub1", {"name": "Ezra", "status": "pending", "source_memorial_id": "s1"})

        resp = client.put("/memorials/sub1", json={"name": "Ezra", "status": "approved"}, headers=_as("random-user"))

        assert resp.status_code == 403
        assert context.store.get("sub1")["status"] == "pending"

    def test_recent_and_map(self, client, context, clock):
        context.store.create("a", {"name": "A", "status": "approved", "location": {"lat": 1.5, "lng": 2.5}})
        clock.advance(10)
        context.store.create("b", {"name": "B", "status": "published"})

        assert [m["id"] for m in client.get("/memorials/recent").json()["results"]] == ["b", "a"]
        features = client.get("/memorials/map").json()["features"]
        assert [f["properties"]["memorial_id"] for f in features] == ["a"]


class TestCuratorAndScoutRoutes:

    def test_pin_and_curator_list(self, client):
        resp = client.post("/scout/pins", json={"lat": 10.5, "lng": 20.25}, headers=_as("curator-1"))
        assert resp.status_code == 200

        drafts = client.get("/curator/memorials", params={"status": "draft"}, headers=_as("curator-1")).json()
        assert [d["id"] for d in drafts["results"]] == [resp.json()["id"]]

    def test_guest_submission_shows_up_as_pending(self, client):
        resp = client.post("/scout/submissions", json={
            "memorial": {"name": "Ezra Pike", "location": {"lat": 1.0, "lng": 2.0}},
            "contributor": {"name": "Visitor", "email": "v@example.com"},
        })
        assert resp.status_code == 200

        pending = client.get("/curator/pending", headers=_as("curator-1")).json()["results"]
        assert [p["name"] for p in pending] == ["Ezra Pike"]

    def test_curator_routes_need_auth(self, client):
        assert client.get("/curator/pending").status_code == 401


class TestTributeRoutes:

    def test_submit_moderate_and_show(self, client, context):
        context.store.create("jane", {"name": "Jane", "curator_id": "curator-1", "status": "approved"})

        resp = client.post("/memorials/jane/tributes", json={"authorName": "Visitor", "message": "Rest well."})
        assert resp.status_code == 200
        tribute_id = resp.json()["id"]

        pending = client.get("/curator/tributes", headers=_as("curator-1")).json()["results"]
        assert [t["id"] for t in pending] == [tribute_id]
        assert client.post(f"/curator/tributes/{tribute_id}/approve", headers=_as("curator-2")).status_code == 403

        resp = client.post(f"/curator/tributes/{tribute_id}/approve", headers=_as("curator-1"))
        assert resp.json()["status"] == "approved"
        shown = client.get("/memorials/jane/tributes").json()["results"]
        assert [t["message"] for t in shown] == ["Rest well."]

    def test_reject(self, client, context):
        context.store.create("jane", {"name": "Jane", "curator_id": "curator-1"})
        tribute_id = client.post("/memorials/jane/tributes", json={"name": "Bot", "message": "spam"}).json()["id"]

        assert client.delete(f"/curator/tributes/{tribute_id}", headers=_as("curator-1")).json() == {"success": True}
        assert client.get("/curator/tributes", headers=_as("curator-1")).json()["results"] == []

    def test_deleting_a_memorial_drops_its_tributes(self, client, context):
        context.store.create("jane", {"name": "Jane", "curator_id": "curator-1"})
        client.post("/memorials/jane/tributes", json={"authorName": "Visitor", "message": "Hello"})

        client.delete("/memorials/jane", headers=_as("curator-1"))

        assert context.tributes.list_pending_tributes("curator-1") == []
        assert context.tributes.delete_for_memorial("jane") == 0
