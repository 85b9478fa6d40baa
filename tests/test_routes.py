import asyncio
import json
import time

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from jose import jwt

from perks.api.routes.session import get_resolver
from perks.core.config import settings
from perks.core.permissions import RoleResolver, get_user_db
from perks.domain.schemas import Notice
from perks.main import create_app

from tests.conftest import CARD_ID, CUSTOMER_USER_ID, LOCATION_ID, OWNER_ID, REWARD_ID, STORE_ID

JWT_SECRET = "test-jwt-secret"


def _token(user_id: str, **claims) -> str:
    payload = {"sub": user_id, "aud": "authenticated", "exp": int(time.time()) + 3600, **claims}
    return jwt.encode(payload, JWT_SECRET, algorithm="HS256")


def _auth(user_id: str, **claims) -> dict:
    return {"Authorization": f"Bearer {_token(user_id, **claims)}"}


OWNER = _auth(OWNER_ID)
CUSTOMER = _auth(CUSTOMER_USER_ID)


@pytest_asyncio.fixture
async def client(monkeypatch, registry, supabase):
    monkeypatch.setattr(settings, "supabase_jwt_secret", JWT_SECRET)
    app = create_app(registry)

    async def user_db():
        return supabase

    async def resolver():
        return RoleResolver(supabase, delay_ms=0)

    app.dependency_overrides[get_user_db] = user_db
    app.dependency_overrides[get_resolver] = resolver

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


@pytest.mark.asyncio
async def test_health(client) -> None:
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "healthy"}


@pytest.mark.asyncio
async def test_anonymous_session_goes_to_login(client) -> None:
    response = await client.get("/session")

    assert response.status_code == 200
    assert response.json()["redirect_to"] == "/login"


@pytest.mark.asyncio
async def test_session_resolves_owner_and_super_admin_flag(client) -> None:
    headers = _auth(OWNER_ID, app_metadata={"is_superadmin": True})

    body = (await client.get("/session", headers=headers)).json()

    assert body["role"] == "store_owner"
    assert body["redirect_to"] == "/store/dashboard"
    assert body["store_id"] == STORE_ID
    assert body["is_super_admin"] is True


@pytest.mark.asyncio
async def test_bad_token_is_rejected(client) -> None:
    forged = jwt.encode({"sub": OWNER_ID, "aud": "authenticated"}, "wrong-secret", algorithm="HS256")

    response = await client.post(
        f"/dashboard/{STORE_ID}/session", headers={"Authorization": f"Bearer {forged}"}
    )

    assert response.status_code == 401


@pytest.mark.asyncio
async def test_only_the_owner_can_mount_a_store(client) -> None:
    response = await client.post(f"/dashboard/{STORE_ID}/session", headers=CUSTOMER)

    assert response.status_code == 403
    assert response.json()["detail"] == "You don't have access to this store"


@pytest.mark.asyncio
async def test_actions_need_a_mounted_dashboard(client) -> None:
    response = await client.post(f"/dashboard/{STORE_ID}/cards/{CARD_ID}/stamp", headers=OWNER)

    assert response.status_code == 404
    assert response.json()["detail"] == "No open dashboard session for this store."


@pytest.mark.asyncio
async def test_stamp_then_undo(client, backend) -> None:
    mounted = await client.post(f"/dashboard/{STORE_ID}/session", headers=OWNER)
    assert mounted.status_code == 200
    assert mounted.json()["channel_status"] == "subscribed"

    stamped = await client.post(f"/dashboard/{STORE_ID}/cards/{CARD_ID}/stamp", headers=OWNER)
    body = stamped.json()
    assert body["accepted"] is True
    assert body["status"] == "undo_window"
    assert body["card"]["stamps"] == 5
    assert body["notice"]["title"] == "Stamp Added! ⭐"

    undone = await client.post(
        f"/dashboard/{STORE_ID}/cards/{CARD_ID}/undo", headers=OWNER, json={"kind": "add_stamp"}
    )
    body = undone.json()
    assert body["status"] == "idle"
    assert body["card"]["stamps"] == 4
    assert body["notice"]["title"] == "Action Undone!"
    assert [b["undo"] for b in backend.calls_to("add-stamp-manually")] == [False, True]

    closed = await client.delete(f"/dashboard/{STORE_ID}/session", headers=OWNER)
    assert closed.json() == {"closed": True}


@pytest.mark.asyncio
async def test_redeem_without_enough_stamps(client, backend) -> None:
    await client.post(f"/dashboard/{STORE_ID}/session", headers=OWNER)

    response = await client.post(
        f"/dashboard/{STORE_ID}/cards/{CARD_ID}/redeem/{REWARD_ID}", headers=OWNER
    )

    body = response.json()
    assert body["accepted"] is False
    assert body["notice"]["description"] == "Not enough stamps to redeem this reward."
    assert backend.calls == []


@pytest.mark.asyncio
async def test_manual_lookup_requires_email(client) -> None:
    await client.post(f"/dashboard/{STORE_ID}/session", headers=OWNER)

    response = await client.post(
        f"/dashboard/{STORE_ID}/manual-stamps/lookup", headers=OWNER, json={"email": " "}
    )

    assert response.status_code == 400
    assert response.json()["detail"] == "Please enter an email address."


@pytest.mark.asyncio
async def test_partial_manual_batch_reports_applied_count(client, backend) -> None:
    await client.post(f"/dashboard/{STORE_ID}/session", headers=OWNER)
    backend.errors.append("Daily stamp limit reached")

    response = await client.post(
        f"/dashboard/{STORE_ID}/manual-stamps",
        headers=OWNER,
        json={"loyalty_card_id": CARD_ID, "stamps": 2, "full_name": "Ada Lovelace"},
    )

    assert response.status_code == 400
    assert response.json() == {"detail": "Daily stamp limit reached", "applied": 1, "requested": 2}


@pytest.mark.asyncio
async def test_customer_opens_card_and_sees_rendering(client) -> None:
    response = await client.post(f"/customer/cards/{CARD_ID}/session", headers=CUSTOMER)

    body = response.json()
    assert response.status_code == 200
    assert body["stamps"] == 4
    assert body["max_stamps"] == 10
    assert body["store_name"] == "Puff Perks"

    again = await client.get(f"/customer/cards/{CARD_ID}", headers=CUSTOMER)
    assert again.json()["loyalty_card_id"] == CARD_ID


@pytest.mark.asyncio
async def test_customer_cannot_open_someone_elses_card(client) -> None:
    response = await client.post(f"/customer/cards/{CARD_ID}/session", headers=OWNER)

    assert response.status_code == 404


@pytest.mark.asyncio
async def test_card_route_reports_control_states(client, backend) -> None:
    backend.cards[CARD_ID]["stamps"] = 10
    await client.post(f"/dashboard/{STORE_ID}/session", headers=OWNER)

    body = (await client.get(f"/dashboard/{STORE_ID}/cards/{CARD_ID}", headers=OWNER)).json()

    assert body["card"]["stamps"] == 10
    assert body["add_stamp_state"] == "ready"
    assert body["rewards"][0]["reward"]["id"] == REWARD_ID
    assert body["rewards"][0]["redeemable"] is True


@pytest.mark.asyncio
async def test_customers_route_lists_cards_of_the_location(client) -> None:
    await client.post(f"/dashboard/{STORE_ID}/session", headers=OWNER)

    body = (await client.get(f"/dashboard/{STORE_ID}/customers", headers=OWNER)).json()

    assert body["location_id"] == LOCATION_ID
    assert body["auto_refresh"] is False
    assert [(c["loyalty_card_id"], c["full_name"]) for c in body["customers"]] == [(CARD_ID, "Ada Lovelace")]

    missing = await client.get(
        f"/dashboard/{STORE_ID}/customers", params={"location_id": "loc-404"}, headers=OWNER
    )
    assert missing.status_code == 404


@pytest.mark.asyncio
async def test_event_stream_sends_live_state_then_events(client, registry) -> None:
    await client.post(f"/dashboard/{STORE_ID}/session", headers=OWNER)
    session = registry.get_dashboard(OWNER_ID, STORE_ID)

    request = asyncio.create_task(client.get(f"/dashboard/{STORE_ID}/events", headers=OWNER))
    for _ in range(100):
        if session.events.listeners:
            break
        await asyncio.sleep(0.01)
    session.push_notice(Notice(title="Hello", description="Welcome back"))
    # Closing the session ends the stream
    await registry.release_dashboard(OWNER_ID, STORE_ID)
    response = await request

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    frames = response.text.split("\n\n")
    event, data = frames[0].split("\n")
    assert event == "event: presence"
    assert json.loads(data[len("data: "):])["channel_status"] == "subscribed"
    assert "event: notice" in frames[1]
    assert json.loads(frames[1].split("data: ", 1)[1])["title"] == "Hello"
    assert frames[-2] == "event: closed\ndata: {}"
