"""HTTP-level tests through the FastAPI app with an in-memory database."""
import json
import uuid
from unittest.mock import patch

import pytest


API = "/api/v1"


@pytest.fixture
def seed(db_session, make_user):
    """Create two members and a matchmaker and commit them for the API."""

    async def _seed(**female_overrides):
        member1 = await make_user(first_name="Sam")
        member2 = await make_user(first_name="Alex", gender="FEMALE", **female_overrides)
        matchmaker = await make_user(role="matchmaker", first_name="Grace", last_name="Hopper")
        await db_session.commit()
        return member1, member2, matchmaker

    return _seed


async def _create_match(client, member1, member2, matchmaker):
    response = await client.post(
        f"{API}/matches/",
        json={
            "member1_id": str(member1.id),
            "member2_id": str(member2.id),
            "matchmaker_id": str(matchmaker.id),
        },
    )
    assert response.status_code == 201, response.text
    return response.json()


class TestHealth:

    @pytest.mark.asyncio
    async def test_liveness(self, client):
        response = await client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "healthy"}

    @pytest.mark.asyncio
    async def test_request_id_echoed(self, client):
        response = await client.get("/health", headers={"X-Request-ID": "req-42"})
        assert response.headers["x-request-id"] == "req-42"

        generated = await client.get("/health")
        assert len(generated.headers["x-request-id"]) == 32


class TestUsersApi:

    @pytest.mark.asyncio
    async def test_create_and_fetch(self, client):
        response = await client.post(
            f"{API}/users/",
            json={"email": "jo@example.com", "first_name": "Jo", "gender": "FEMALE"},
        )
        assert response.status_code == 201
        user = response.json()
        assert user["questionnaire_completed"] is False
        assert user["role"] == "member"

        fetched = await client.get(f"{API}/users/{user['id']}")
        assert fetched.json()["email"] == "jo@example.com"

    @pytest.mark.asyncio
    async def test_duplicate_email(self, client):
        body = {"email": "dup@example.com", "first_name": "Dup"}
        await client.post(f"{API}/users/", json=body)
        response = await client.post(f"{API}/users/", json=body)
        assert response.status_code == 409

    @pytest.mark.asyncio
    async def test_update_and_list_by_role(self, client):
        created = (await client.post(
            f"{API}/users/", json={"email": "mm@example.com", "first_name": "M", "role": "matchmaker"}
        )).json()

        updated = await client.put(f"{API}/users/{created['id']}", json={"suburb": "Bondi"})
        assert updated.json()["suburb"] == "Bondi"

        listed = await client.get(f"{API}/users/", params={"role": "matchmaker"})
        assert [u["id"] for u in listed.json()] == [created["id"]]

    @pytest.mark.asyncio
    async def test_unknown_user(self, client):
        response = await client.get(f"{API}/users/{uuid.uuid4()}")
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_questionnaire_refreshes_compatibility(self, client, seed, full_answers):
        await seed()
        created = (await client.post(
            f"{API}/users/", json={"email": "q@example.com", "first_name": "Q", "gender": "MALE"}
        )).json()

        response = await client.put(
            f"{API}/users/{created['id']}/questionnaire",
            json={"answers": full_answers, "completed": True},
        )

        assert response.status_code == 200
        body = response.json()
        assert body["questionnaire_completed"] is True
        assert body["compatibility_refreshed"] is True

        snapshot = await client.get(f"{API}/users/{created['id']}/compatibility")
        assert snapshot.status_code == 200
        assert snapshot.json()["matches"][0]["score"] == 1.0

    @pytest.mark.asyncio
    async def test_missing_snapshot(self, client, seed):
        member1, _, _ = await seed()
        response = await client.get(f"{API}/users/{member1.id}/compatibility")
        assert response.status_code == 404


class TestMatchesApi:

    @pytest.mark.asyncio
    async def test_score_endpoint(self, client, full_answers):
        response = await client.post(
            f"{API}/matches/score", json={"answers1": full_answers, "answers2": full_answers}
        )
        body = response.json()
        assert body["score"] == 100
        assert body["status"] == "ok"
        assert len(body["matching_points"]) == 5

    @pytest.mark.asyncio
    async def test_full_workflow(self, client, seed):
        member1, member2, matchmaker = await seed()
        match = await _create_match(client, member1, member2, matchmaker)
        match_id = match["id"]
        assert match["stage"] == "pending"

        sent = await client.post(f"{API}/matches/send-with-explanation", json={"matchId": match_id})
        assert sent.status_code == 200
        assert len(sent.json()["notificationIds"]) == 2

        await client.post(f"{API}/matches/{match_id}/accept", json={"user_id": str(member1.id)})
        accepted = await client.post(f"{API}/matches/{match_id}/accept", json={"user_id": str(member2.id)})
        assert accepted.json()["stage"] == "payment_required"
        assert accepted.json()["payment_required"] is True

        paid = await client.post(f"{API}/matches/{match_id}/payment", json={"payment_method": "card"})
        assert paid.json()["stage"] == "virtual_meeting_required"

        mm = {"matchmaker_id": str(matchmaker.id)}
        scheduled = await client.post(f"{API}/matches/{match_id}/schedule-meeting", json=mm)
        assert scheduled.json()["virtual_meeting_details"]["event_id"]

        early = await client.post(f"{API}/matches/{match_id}/approve-date", json=mm)
        assert early.status_code == 400
        assert early.json()["error"] == "Virtual meeting must be completed before approving the date"

        await client.post(f"{API}/matches/{match_id}/complete-meeting", json=mm)
        approved = await client.post(f"{API}/matches/{match_id}/approve-date", json=mm)
        assert approved.status_code == 200
        assert approved.json()["date_approved"] is True

        transitions = (await client.get(f"{API}/matches/{match_id}/transitions")).json()
        assert transitions[-1]["to_stage"] == "date_approved"

        notifications = (await client.get(f"{API}/notifications/member/{member1.id}")).json()
        assert notifications[0]["type"] == "date_approved"

        mm_notes = (await client.get(f"{API}/notifications/matchmaker/{matchmaker.id}")).json()
        assert [n["type"] for n in mm_notes] == ["match_accepted"]

    @pytest.mark.asyncio
    async def test_workflow_errors_rendered_as_json(self, client, seed):
        member1, member2, matchmaker = await seed()
        await _create_match(client, member1, member2, matchmaker)

        duplicate = await client.post(
            f"{API}/matches/",
            json={"member1_id": str(member2.id), "member2_id": str(member1.id)},
        )
        assert duplicate.status_code == 409
        assert duplicate.json()["error"] == "These members have already been matched"
        assert "matchId" in duplicate.json()["details"]

        missing = await client.get(f"{API}/matches/{uuid.uuid4()}")
        assert missing.status_code == 404
        assert missing.json()["detail"] == "Match not found"

    @pytest.mark.asyncio
    async def test_non_member_accept_forbidden(self, client, seed):
        member1, member2, matchmaker = await seed()
        match = await _create_match(client, member1, member2, matchmaker)
        response = await client.post(
            f"{API}/matches/{match['id']}/accept", json={"user_id": str(matchmaker.id)}
        )
        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_decline_then_accept_conflicts(self, client, seed):
        member1, member2, matchmaker = await seed()
        match = await _create_match(client, member1, member2, matchmaker)

        declined = await client.post(
            f"{API}/matches/{match['id']}/decline",
            json={"user_id": str(member1.id), "reason": "Distance"},
        )
        assert declined.json()["status"] == "declined"

        conflict = await client.post(
            f"{API}/matches/{match['id']}/accept", json={"user_id": str(member2.id)}
        )
        assert conflict.status_code == 409

        analytics = await client.get(f"{API}/analytics/declines/{member1.id}")
        assert analytics.json()["total_declines"] == 1

    @pytest.mark.asyncio
    async def test_member_matches_by_stage(self, client, seed):
        member1, member2, matchmaker = await seed()
        await _create_match(client, member1, member2, matchmaker)

        pending = await client.get(f"{API}/matches/member/{member1.id}", params={"stage": "pending"})
        declined = await client.get(f"{API}/matches/member/{member1.id}", params={"stage": "declined"})

        assert len(pending.json()) == 1
        assert declined.json() == []


class TestExplanationEndpoints:

    @pytest.mark.asyncio
    async def test_generate_for_match(self, client, seed):
        member1, member2, matchmaker = await seed()
        match = await _create_match(client, member1, member2, matchmaker)

        response = await client.post(f"{API}/matches/generate-explanation", json={"matchId": match["id"]})

        body = response.json()
        assert response.status_code == 200
        assert body["generated"] is True
        assert body["member1Id"] == str(member1.id)
        assert len(body["member2Points"]) == 5

    @pytest.mark.asyncio
    async def test_missing_member_ids(self, client):
        response = await client.post(f"{API}/matches/generate-explanation", json={})
        assert response.status_code == 400
        assert response.json()["error"] == "Missing required parameters"

    @pytest.mark.asyncio
    async def test_low_data_quality_is_logged(self, client, db_session, make_user):
        sparse = {"last_name": None, "dob": None, "location": None, "state": None,
                  "suburb": None, "marital_status": None, "has_children": None,
                  "questionnaire_answers": {}}
        member1 = await make_user(**sparse)
        member2 = await make_user(gender="FEMALE", **sparse)
        await db_session.commit()

        response = await client.post(
            f"{API}/matches/generate-explanation",
            json={"member1Id": str(member1.id), "member2Id": str(member2.id)},
        )
        assert response.status_code == 400
        assert "dataQualityScore" in response.json()["details"]

        today = (await client.get(f"{API}/analytics/explanations/daily/{_today()}")).json()
        assert today["errors_by_type"] == {"insufficient_data": 1}

    @pytest.mark.asyncio
    async def test_send_requires_match_id(self, client):
        response = await client.post(f"{API}/matches/send-with-explanation", json={})
        assert response.status_code == 400
        assert response.json()["error"] == "Match ID is required"

    @pytest.mark.asyncio
    async def test_send_unknown_match(self, client):
        response = await client.post(
            f"{API}/matches/send-with-explanation", json={"matchId": str(uuid.uuid4())}
        )
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_preflight(self, client):
        response = await client.options(f"{API}/matches/send-with-explanation")
        assert response.status_code == 204
        assert response.headers["access-control-allow-origin"] == "*"
        assert response.headers["access-control-allow-methods"] == "POST, OPTIONS"


def _today():
    from app.services.explanation_monitoring_service import day_key

    return day_key()


class TestNotificationsApi:

    @pytest.mark.asyncio
    async def test_mark_viewed_and_all(self, client, seed):
        member1, member2, matchmaker = await seed()
        match = await _create_match(client, member1, member2, matchmaker)
        sent = (await client.post(
            f"{API}/matches/send-with-explanation", json={"matchId": match["id"]}
        )).json()

        first_id = sent["notificationIds"][0]
        viewed = await client.post(f"{API}/notifications/{first_id}/viewed")
        assert viewed.json()["status"] == "viewed"

        everything = await client.post(f"{API}/notifications/member/{member2.id}/viewed-all")
        assert everything.json() == {"member_id": str(member2.id), "updated": 1}

    @pytest.mark.asyncio
    async def test_unknown_notification(self, client):
        response = await client.post(f"{API}/notifications/{uuid.uuid4()}/viewed")
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_invalid_status_filter(self, client):
        response = await client.get(
            f"{API}/notifications/matchmaker/{uuid.uuid4()}", params={"status": "archived"}
        )
        assert response.status_code == 422


class TestTipsApi:

    async def _create(self, client, title="Be curious"):
        response = await client.post(
            f"{API}/tips/",
            json={
                "title": title,
                "main_content": "Ask open questions.",
                "category": "conversation_starters",
                "quick_tips": ["Ask why"],
            },
        )
        assert response.status_code == 201, response.text
        return response.json()

    @pytest.mark.asyncio
    async def test_lifecycle(self, client, seed):
        member1, _, _ = await seed()
        tip = await self._create(client)
        assert tip["status"] == "pending"
        assert tip["category_display_name"] == "Conversation Starters"

        assert (await client.get(f"{API}/tips/active")).json() == {"tip": None}

        await client.post(f"{API}/tips/{tip['id']}/approve", json={"matchmaker_name": "Grace"})
        activated = await client.post(f"{API}/tips/{tip['id']}/activate")
        assert activated.json()["status"] == "active"

        active = (await client.get(f"{API}/tips/active")).json()["tip"]
        assert active["id"] == tip["id"]

        view = await client.post(
            f"{API}/tips/{tip['id']}/view", json={"user_id": str(member1.id), "full_read": True}
        )
        assert view.json()["read_status"] is True
        assert (await client.get(f"{API}/tips/{tip['id']}")).json()["unique_view_count"] == 1

        viewed = (await client.get(f"{API}/tips/viewed/{member1.id}")).json()
        assert [v["tip_id"] for v in viewed] == [tip["id"]]

    @pytest.mark.asyncio
    async def test_activate_pending_conflicts(self, client):
        tip = await self._create(client)
        response = await client.post(f"{API}/tips/{tip['id']}/activate")
        assert response.status_code == 409

    @pytest.mark.asyncio
    async def test_reject_update_delete(self, client):
        tip = await self._create(client)

        rejected = await client.post(f"{API}/tips/{tip['id']}/reject", json={"reason": "Vague"})
        assert rejected.json()["rejection_reason"] == "Vague"

        updated = await client.put(f"{API}/tips/{tip['id']}", json={"title": "Sharper"})
        assert updated.json()["title"] == "Sharper"

        deleted = await client.delete(f"{API}/tips/{tip['id']}")
        assert deleted.status_code == 204
        assert (await client.get(f"{API}/tips/{tip['id']}")).status_code == 404

    @pytest.mark.asyncio
    async def test_invalid_category_rejected(self, client):
        response = await client.post(
            f"{API}/tips/", json={"title": "x", "main_content": "y", "category": "astrology"}
        )
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_list_by_status(self, client):
        await self._create(client, "One")
        await self._create(client, "Two")
        listed = await client.get(f"{API}/tips/", params={"status": "pending"})
        assert {t["title"] for t in listed.json()} == {"One", "Two"}


class TestAnalyticsApi:

    @pytest.mark.asyncio
    async def test_engagement_recorded(self, client, seed):
        member1, member2, matchmaker = await seed()
        match = await _create_match(client, member1, member2, matchmaker)

        response = await client.post(
            f"{API}/analytics/explanations/{match['id']}/engagement",
            json={"user_id": str(member1.id), "action": "liked", "duration_ms": 1200},
        )
        assert response.status_code == 201
        assert response.json()["event_type"] == "engagement"

        usage = (await client.get(f"{API}/analytics/explanations/daily/{_today()}")).json()
        assert usage["engagement_by_type"] == {"liked": 1}

    @pytest.mark.asyncio
    async def test_unknown_engagement_action(self, client):
        response = await client.post(
            f"{API}/analytics/explanations/{uuid.uuid4()}/engagement",
            json={"user_id": str(uuid.uuid4()), "action": "shared"},
        )
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_missing_daily_usage(self, client):
        response = await client.get(f"{API}/analytics/explanations/daily/2001-01-01")
        assert response.status_code == 404


class TestPaymentsApi:

    @pytest.mark.asyncio
    async def test_webhook_without_signature(self, client):
        response = await client.post(f"{API}/payments/webhook", content=b"{}")
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_payment_for_declined_match_is_acknowledged(self, client, seed, approval_service):
        from app.api import deps
        from app.main import app
        from app.services.payment_service import PaymentService

        member1, member2, matchmaker = await seed()
        match = await _create_match(client, member1, member2, matchmaker)
        await client.post(
            f"{API}/matches/{match['id']}/decline",
            json={"user_id": str(member1.id), "reason": "Distance"},
        )
        app.dependency_overrides[deps.get_payment_service] = (
            lambda: PaymentService(approval_service=approval_service)
        )
        payload = json.dumps({
            "id": "evt_late",
            "type": "checkout.session.completed",
            "data": {"object": {"metadata": {"match_id": match["id"]}}},
        }).encode()

        with patch("stripe.Webhook.construct_event"):
            response = await client.post(
                f"{API}/payments/webhook",
                content=payload,
                headers={"stripe-signature": "t=1,v1=sig"},
            )

        assert response.status_code == 200
        assert response.json() == {"received": True, "handled": False, "matchId": match["id"]}
        fetched = await client.get(f"{API}/matches/{match['id']}")
        assert fetched.json()["status"] == "declined"
