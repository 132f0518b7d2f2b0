"""
API tests for the CivicSense portal.

Uses httpx AsyncClient + ASGITransport against the app in-process, with
mongomock for storage, a temporary media directory and a scripted model
client (or none, for the AI-unavailable paths).
"""

import uuid

import pytest

from civicsense import config
from civicsense.config import new_id, now_utc
from civicsense.enrichment import PLACEHOLDER_DESCRIPTION

from conftest import PNG_BYTES, FakeModelClient

pytestmark = pytest.mark.asyncio

FORM = {"description": "", "category": "", "location_name": "Kalanki Chowk",
        "ward": "Ward 14", "lat": "27.6932", "lng": "85.2812"}


async def submit(client, headers, image=PNG_BYTES, mime="image/png", **fields):
    files = {"image": ("photo.png", image, mime)} if image is not None else None
    return await client.post("/issues", data={**FORM, **fields}, files=files, headers=headers)


def points_of(db, user_id):
    return db.users.find_one({"_id": user_id})["points"]


def insert_issue(db, lat, lng, **overrides):
    now = now_utc()
    doc = {"_id": new_id(), "reporter_id": None, "description": "Seeded issue for the map",
           "category": "Waste", "location_name": "Ratna Park", "lat": lat, "lng": lng,
           "image": None, "status": "pending", "is_anonymous": False, "priority": "medium",
           "created_at": now, "updated_at": now, "resolved_at": None}
    doc.update(overrides)
    db.issues.insert_one(doc)
    return doc


# ═══════════════════════════════════════════════════════════════════════════════
# HEALTH & HEADERS
# ═══════════════════════════════════════════════════════════════════════════════

class TestHealthCheck:
    async def test_health_endpoint(self, client):
        resp = await client.get("/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "healthy"
        assert "timestamp" in resp.json()

    async def test_security_headers(self, client):
        resp = await client.get("/health")
        assert resp.headers["X-Content-Type-Options"] == "nosniff"
        assert resp.headers["X-Frame-Options"] == "DENY"


# ═══════════════════════════════════════════════════════════════════════════════
# AUTHENTICATION
# ═══════════════════════════════════════════════════════════════════════════════

class TestAuth:
    async def test_login_citizen(self, client):
        resp = await client.post("/auth/login", json={"username": "citizen1", "password": "citizen123"})
        assert resp.status_code == 200
        data = resp.json()
        assert "access_token" in data
        assert data["user"]["role"] == "citizen"
        assert data["user"]["points"] == 0

    async def test_login_invalid_credentials(self, client):
        resp = await client.post("/auth/login", json={"username": "citizen1", "password": "wrongpass"})
        assert resp.status_code == 401

    async def test_get_me(self, client, citizen_headers):
        resp = await client.get("/auth/me", headers=citizen_headers)
        assert resp.status_code == 200
        assert resp.json()["username"] == "citizen1"

    async def test_get_me_invalid_token(self, client):
        resp = await client.get("/auth/me", headers={"Authorization": "Bearer invalid.token.here"})
        assert resp.status_code == 401

    async def test_register_citizen(self, client):
        unique = uuid.uuid4().hex[:8]
        resp = await client.post("/auth/register", json={
            "username": f"citizen_{unique}", "password": "testpass123",
            "full_name": "Test Citizen", "email": f"{unique}@example.com"})
        assert resp.status_code == 200
        assert resp.json()["user"]["role"] == "citizen"
        me = await client.get("/auth/me", headers={"Authorization": f"Bearer {resp.json()['access_token']}"})
        assert me.status_code == 200

    async def test_register_duplicate_username(self, client):
        resp = await client.post("/auth/register", json={
            "username": "citizen1", "password": "testpass123",
            "full_name": "Duplicate", "email": "dup@example.com"})
        assert resp.status_code == 400

    async def test_register_admin_forbidden(self, client):
        resp = await client.post("/auth/register", json={
            "username": "sneaky_admin", "password": "testpass123",
            "full_name": "Sneaky", "email": "sneaky@example.com", "role": "admin"})
        assert resp.status_code == 403


# ═══════════════════════════════════════════════════════════════════════════════
# ISSUE SUBMISSION
# ═══════════════════════════════════════════════════════════════════════════════

class TestSubmitIssue:
    async def test_blank_fields_without_ai(self, client, citizen_headers, db, users):
        resp = await submit(client, citizen_headers)
        assert resp.status_code == 200, resp.text
        data = resp.json()
        assert data["issue"]["category"] == "Other"
        assert data["issue"]["description"] == PLACEHOLDER_DESCRIPTION
        assert data["issue"]["status"] == "pending"
        assert data["budget"]["ai_generated"] is False
        assert data["budget"]["allocated_amount"] == round(85000 * 0.85)
        assert points_of(db, users["citizen1"]) == 10

    async def test_uploaded_image_is_stored(self, client, citizen_headers, assets):
        resp = await submit(client, citizen_headers)
        ref = resp.json()["issue"]["image"]
        stored = await assets.fetch(ref)
        assert stored.content == PNG_BYTES

    async def test_invalid_latitude_rejected(self, client, citizen_headers, db, users):
        resp = await submit(client, citizen_headers, lat="95")
        assert resp.status_code == 400
        assert resp.json()["detail"]["field"] == "lat"
        assert db.issues.count_documents({}) == 0
        assert points_of(db, users["citizen1"]) == 0

    async def test_missing_image_rejected(self, client, citizen_headers):
        resp = await submit(client, citizen_headers, image=None)
        assert resp.status_code == 400
        assert resp.json()["detail"]["field"] == "image"

    async def test_oversized_image_rejected(self, client, citizen_headers, monkeypatch):
        monkeypatch.setattr(config, "MAX_IMAGE_BYTES", 16)
        resp = await submit(client, citizen_headers)
        assert resp.status_code == 400
        assert resp.json()["detail"]["field"] == "image"

    async def test_unsupported_image_type_rejected(self, client, citizen_headers, db):
        resp = await submit(client, citizen_headers, mime="application/octet-stream")
        assert resp.status_code == 400
        assert resp.json()["detail"]["field"] == "image"
        assert db.issues.count_documents({}) == 0

    async def test_storage_failure_is_upload_failure(self, client, citizen_headers, db, assets, tmp_path):
        blocked = tmp_path / "blocked"
        blocked.write_bytes(b"")
        assets.root = blocked
        resp = await submit(client, citizen_headers)
        assert resp.status_code == 502
        assert "message" in resp.json()["detail"]
        assert db.issues.count_documents({}) == 0

    async def test_requires_login(self, client):
        resp = await submit(client, {})
        assert resp.status_code == 401

    async def test_emergency_water_leak(self, client, citizen_headers):
        resp = await submit(client, citizen_headers, description="emergency water leak", category="Water")
        budget = resp.json()["budget"]
        assert budget["probability_factor"] == 1.15
        assert budget["allocated_amount"] == round(125000 * 1.15)

    async def test_with_ai_enrichment(self, client, citizen_headers, ai_switch):
        ai_switch["client"] = FakeModelClient({
            "which category": "Electricity",
            "Generate a clear, concise description": "Street light hanging from its pole.",
            "priority level": "high",
        })
        resp = await submit(client, citizen_headers)
        issue = resp.json()["issue"]
        assert issue["category"] == "Electricity"
        assert issue["description"] == "Street light hanging from its pole."
        assert issue["priority"] == "high"

    async def test_client_submission_id_deduplicates(self, client, citizen_headers, db):
        first = await submit(client, citizen_headers, client_submission_id="offline-42")
        second = await submit(client, citizen_headers, client_submission_id="offline-42")
        assert first.json()["issue"]["id"] == second.json()["issue"]["id"]
        assert db.issues.count_documents({}) == 1


# ═══════════════════════════════════════════════════════════════════════════════
# ISSUE READS & ADMIN ACTIONS
# ═══════════════════════════════════════════════════════════════════════════════

class TestIssueReads:
    async def test_anonymous_reporter_masked(self, client, citizen_headers):
        issue_id = (await submit(client, citizen_headers, is_anonymous="true")).json()["issue"]["id"]
        detail = (await client.get(f"/issues/{issue_id}")).json()
        assert detail["reporter"]["full_name"] == "Anonymous"
        assert detail["reporter"]["email"] == "anonymous@example.com"
        listed = (await client.get("/issues")).json()
        assert listed[0]["reporter"]["full_name"] == "Anonymous"

    async def test_named_reporter_shown(self, client, citizen_headers):
        issue_id = (await submit(client, citizen_headers)).json()["issue"]["id"]
        detail = (await client.get(f"/issues/{issue_id}")).json()
        assert detail["reporter"]["full_name"] == "Sita Shrestha"

    async def test_list_filters(self, client, citizen_headers):
        await submit(client, citizen_headers, category="Water")
        await submit(client, citizen_headers, category="Waste")
        resp = await client.get("/issues", params={"category": "Water"})
        assert [i["category"] for i in resp.json()] == ["Water"]

    async def test_unknown_issue(self, client):
        assert (await client.get(f"/issues/{uuid.uuid4()}")).status_code == 404


class TestStatusAndComments:
    async def test_citizen_cannot_change_status(self, client, citizen_headers):
        issue_id = (await submit(client, citizen_headers)).json()["issue"]["id"]
        resp = await client.put(f"/issues/{issue_id}/status", json={"status": "resolved"},
                                headers=citizen_headers)
        assert resp.status_code == 403

    async def test_resolve_awards_bonus_once(self, client, citizen_headers, admin_headers, db, users):
        issue_id = (await submit(client, citizen_headers)).json()["issue"]["id"]
        resp = await client.put(f"/issues/{issue_id}/status", json={"status": "resolved"},
                                headers=admin_headers)
        assert resp.status_code == 200
        assert resp.json()["status"] == "resolved"
        assert resp.json()["resolved_at"] is not None
        await client.put(f"/issues/{issue_id}/status", json={"status": "resolved"}, headers=admin_headers)
        assert points_of(db, users["citizen1"]) == 15

    async def test_reopen_and_resolve_again_pays_no_second_bonus(self, client, citizen_headers,
                                                                 admin_headers, db, users):
        issue_id = (await submit(client, citizen_headers)).json()["issue"]["id"]
        for status in ("resolved", "in_progress", "resolved", "pending", "resolved"):
            resp = await client.put(f"/issues/{issue_id}/status", json={"status": status},
                                    headers=admin_headers)
            assert resp.status_code == 200
        assert resp.json()["status"] == "resolved"
        assert resp.json()["resolved_at"] is not None
        assert points_of(db, users["citizen1"]) == 15

    async def test_reopen_clears_resolved_at(self, client, citizen_headers, admin_headers):
        issue_id = (await submit(client, citizen_headers)).json()["issue"]["id"]
        await client.put(f"/issues/{issue_id}/status", json={"status": "resolved"}, headers=admin_headers)
        resp = await client.put(f"/issues/{issue_id}/status", json={"status": "in_progress"},
                                headers=admin_headers)
        assert resp.json()["resolved_at"] is None

    async def test_comment_awards_points(self, client, citizen_headers, citizen2_headers, db, users):
        issue_id = (await submit(client, citizen_headers)).json()["issue"]["id"]
        resp = await client.post(f"/issues/{issue_id}/comments", json={"comment": "  Same on my street  "},
                                 headers=citizen2_headers)
        assert resp.status_code == 200
        assert resp.json()["comment"] == "Same on my street"
        assert points_of(db, users["citizen2"]) == 2
        listed = (await client.get(f"/issues/{issue_id}/comments")).json()
        assert [c["full_name"] for c in listed] == ["Ramesh Thapa"]

    async def test_blank_comment_rejected(self, client, citizen_headers):
        issue_id = (await submit(client, citizen_headers)).json()["issue"]["id"]
        resp = await client.post(f"/issues/{issue_id}/comments", json={"comment": "   "},
                                 headers=citizen_headers)
        assert resp.status_code == 422

    async def test_before_after_photos(self, client, citizen_headers, admin_headers):
        issue = (await submit(client, citizen_headers)).json()["issue"]
        assert (await client.get(f"/issues/{issue['id']}/before-after")).json() == []
        resp = await client.post(f"/issues/{issue['id']}/before-after",
                                 files={"image": ("after.png", PNG_BYTES, "image/png")},
                                 data={"note": "Resurfaced"}, headers=admin_headers)
        assert resp.status_code == 200
        photos = (await client.get(f"/issues/{issue['id']}/before-after")).json()
        assert photos[0]["before_image"] == issue["image"]
        assert photos[0]["after_image"].startswith("/media/resolutions/")
        assert photos[0]["note"] == "Resurfaced"


# ═══════════════════════════════════════════════════════════════════════════════
# AI HELPERS
# ═══════════════════════════════════════════════════════════════════════════════

class TestAIEndpoints:
    async def test_enhance_without_ai_returns_input(self, client, citizen_headers):
        resp = await client.post("/issues/ai-enhance", json={"description": "hole in road near school"},
                                 headers=citizen_headers)
        assert resp.json() == {"enhanced": "hole in road near school"}

    async def test_enhance_with_ai(self, client, citizen_headers, ai_switch):
        ai_switch["client"] = FakeModelClient(default="A pothole near the school endangers pupils.")
        resp = await client.post("/issues/ai-enhance", json={"description": "hole in road near school"},
                                 headers=citizen_headers)
        assert resp.json()["enhanced"] == "A pothole near the school endangers pupils."

    async def test_generate_without_ai(self, client, citizen_headers):
        resp = await client.post("/issues/ai-generate", files={"image": ("p.png", PNG_BYTES, "image/png")},
                                 headers=citizen_headers)
        data = resp.json()
        assert data["ai_description"] == PLACEHOLDER_DESCRIPTION
        assert data["category"] == "Other"
        assert data["priority"] == "medium"
        assert data["tags"] == []

    async def test_generate_with_ai(self, client, citizen_headers, ai_switch):
        ai_switch["client"] = FakeModelClient({
            "top 3": '[{"category": "Waste", "confidence": 0.9}]',
            "which category": "Waste",
            "tags/keywords": "garbage, overflow",
            "assess:": '{"severity": "high", "urgency": "urgent"}',
            "priority level": "high",
            "Generate a clear, concise description": "Garbage overflowing onto the road.",
        })
        resp = await client.post("/issues/ai-generate", files={"image": ("p.png", PNG_BYTES, "image/png")},
                                 headers=citizen_headers)
        data = resp.json()
        assert data["category"] == "Waste"
        assert data["tags"] == ["garbage", "overflow"]
        assert data["severity"]["severity"] == "high"
        assert data["categories"][0]["category"] == "Waste"

    async def test_duplicates_invalid_coordinates(self, client, citizen_headers):
        resp = await client.post("/issues/ai-duplicates", data={"lat": "abc", "lng": "85.3"},
                                 headers=citizen_headers)
        assert resp.status_code == 400
        assert resp.json()["detail"]["field"] == "lat"

    async def test_duplicates_nearby(self, client, citizen_headers, ai_switch, db):
        insert_issue(db, 27.7001, 85.3001)
        ai_switch["client"] = FakeModelClient()
        resp = await client.post("/issues/ai-duplicates", data={"lat": "27.7", "lng": "85.3"},
                                 headers=citizen_headers)
        data = resp.json()
        assert data["is_duplicate"] is True
        assert data["confidence"] == 0.3

    async def test_insights_defaults_without_ai(self, client, citizen_headers):
        issue_id = (await submit(client, citizen_headers, category="Water")).json()["issue"]["id"]
        resp = await client.post(f"/issues/{issue_id}/ai-insights", headers=citizen_headers)
        data = resp.json()
        assert data["department"]["department"] == "Water Supply Department"
        assert data["resolution_time"]["estimated_days"] == 7
        assert data["similar_issues"] == []
        assert data["sentiment"]["sentiment"] == "neutral"
        assert data["impact"]["impact_level"] == "medium"


# ═══════════════════════════════════════════════════════════════════════════════
# UPVOTES & LEADERBOARD
# ═══════════════════════════════════════════════════════════════════════════════

class TestUpvotes:
    async def test_two_anonymous_sessions(self, client, citizen_headers):
        issue_id = (await submit(client, citizen_headers)).json()["issue"]["id"]
        await client.post("/upvotes/toggle", json={"issue_id": issue_id, "session_id": "session_a"})
        resp = await client.post("/upvotes/toggle", json={"issue_id": issue_id, "session_id": "session_b"})
        assert resp.json() == {"upvoted": True, "upvote_count": 2}
        resp = await client.post("/upvotes/toggle", json={"issue_id": issue_id, "session_id": "session_a"})
        assert resp.json() == {"upvoted": False, "upvote_count": 1}
        status = await client.get(f"/upvotes/status/{issue_id}", params={"session_id": "session_b"})
        assert status.json() == {"upvoted": True, "upvote_count": 1}

    async def test_upvote_credits_reporter(self, client, citizen_headers, citizen2_headers, db, users):
        issue_id = (await submit(client, citizen_headers)).json()["issue"]["id"]
        resp = await client.post("/upvotes/toggle", json={"issue_id": issue_id}, headers=citizen2_headers)
        assert resp.json()["upvoted"] is True
        assert points_of(db, users["citizen1"]) == 11
        await client.post("/upvotes/toggle", json={"issue_id": issue_id}, headers=citizen2_headers)
        assert points_of(db, users["citizen1"]) == 11

    async def test_upvote_count_on_issue(self, client, citizen_headers):
        issue_id = (await submit(client, citizen_headers)).json()["issue"]["id"]
        await client.post("/upvotes/toggle", json={"issue_id": issue_id, "session_id": "s1"})
        assert (await client.get(f"/issues/{issue_id}")).json()["upvote_count"] == 1

    async def test_identity_required(self, client, citizen_headers):
        issue_id = (await submit(client, citizen_headers)).json()["issue"]["id"]
        resp = await client.post("/upvotes/toggle", json={"issue_id": issue_id})
        assert resp.status_code == 400

    async def test_unknown_issue(self, client):
        resp = await client.post("/upvotes/toggle", json={"issue_id": "nope", "session_id": "s1"})
        assert resp.status_code == 404

    async def test_leaderboard(self, client, citizen_headers, citizen2_headers, admin_headers):
        await submit(client, citizen_headers)
        await submit(client, citizen_headers)
        await submit(client, citizen2_headers)
        board = (await client.get("/users/leaderboard")).json()
        assert [(e["full_name"], e["points"]) for e in board] == [
            ("Sita Shrestha", 20), ("Ramesh Thapa", 10), ("Ward Office Administrator", 0)]


# ═══════════════════════════════════════════════════════════════════════════════
# HEATMAP & STATISTICS
# ═══════════════════════════════════════════════════════════════════════════════

class TestHeatmapAndStatistics:
    async def test_heatmap_clusters_valid_issues(self, client, db, users):
        for i in range(3):
            insert_issue(db, 27.7 + i * 0.0001, 85.3)
        insert_issue(db, 27.72, 85.32)
        insert_issue(db, 0, 0)
        data = (await client.get("/heatmap")).json()
        assert len(data["issues"]) == 4
        counts = sorted(c["member_count"] for c in data["clusters"])
        assert counts == [1, 3]
        big = next(c for c in data["clusters"] if c["member_count"] == 3)
        assert big["intensity"] == 0.3

    async def test_heatmap_empty(self, client):
        assert (await client.get("/heatmap")).json() == {"issues": [], "clusters": []}

    async def test_statistics(self, client, citizen_headers, admin_headers):
        first = (await submit(client, citizen_headers, category="Water")).json()
        await submit(client, citizen_headers, category="Waste")
        await client.put(f"/issues/{first['issue']['id']}/status", json={"status": "resolved"},
                         headers=admin_headers)
        data = (await client.get("/statistics")).json()
        assert data["total_issues"] == 2
        assert data["resolution_rate"] == 50.0
        assert data["status_distribution"] == {"resolved": 1, "pending": 1}
        assert data["category_distribution"] == {"Water": 1, "Waste": 1}
        assert data["total_allocated_budget"] == round(125000 * 0.85) + round(75000 * 0.85)
