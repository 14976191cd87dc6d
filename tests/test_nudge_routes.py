import httpx
import pytest

import db
import main
from app.workers import nudge as nudge_worker
from conftest import NOW, seed_trip


@pytest.fixture
def client(make_engine):
    main.app.state.nudge_engine = make_engine()
    transport = httpx.ASGITransport(app=main.app)
    return httpx.AsyncClient(transport=transport, base_url="http://test")


@pytest.mark.asyncio
async def test_manual_run_returns_cycle_result(database, client):
    await seed_trip(participants=[{"id": "p-org", "role": "organizer", "email": "o@x.com"}])
    async with client:
        resp = await client.post("/v1/nudge/run")

    assert resp.status_code == 200
    body = resp.json()
    assert body["processed"] == 1
    assert body["notifications_sent"] == ["in_app:countdown→p-org", "email:countdown→o@x.com"]
    assert body["errors"] == []


@pytest.mark.asyncio
async def test_trigger_event_is_queued(client, monkeypatch):
    queued = []
    monkeypatch.setattr(nudge_worker, "submit_event", lambda *args: queued.append(args))

    async with client:
        resp = await client.post(
            "/v1/nudge/trigger-event", json={"trip_id": "trip-1", "event_type": "trip_activated"}
        )

    assert resp.status_code == 200
    assert resp.json() == {"ok": True}
    assert queued == [("trip-1", "trip_activated", "trip_activated")]


@pytest.mark.asyncio
async def test_trigger_event_requires_ids(client):
    async with client:
        resp = await client.post("/v1/nudge/trigger-event", json={"trip_id": "trip-1"})
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_settings_endpoint(client):
    async with client:
        resp = await client.get("/v1/nudge/settings")
    assert resp.status_code == 200
    assert resp.json()["countdown_days"] == [30, 14, 7, 3, 1]


@pytest.mark.asyncio
async def test_notification_reads(database, client):
    trip = await seed_trip(participants=[{"id": "p-1", "user_id": "user-1"}])
    notif = await db.create_notification(
        trip_id=trip.id, participant_id="p-1", trigger_type="countdown",
        channel="in_app", created_at=NOW,
    )
    await db.mark_notification_sent(notif.id, NOW)

    async with client:
        by_trip = await client.get(f"/v1/nudge/notifications/{trip.id}")
        feed = await client.get("/v1/nudge/user-notifications", params={"user_id": "user-1"})
        unread = await client.get("/v1/nudge/unread-count", params={"user_id": "user-1"})
        read = await client.post("/v1/nudge/notifications/read", json={"notification_id": notif.id})
        after = await client.get("/v1/nudge/unread-count", params={"user_id": "user-1"})
        read_all = await client.post("/v1/nudge/notifications/read-all", json={"user_id": "user-1"})

    assert [n["id"] for n in by_trip.json()] == [notif.id]
    assert feed.json()["notifications"][0]["trip_slug"] == "keys-tarpon"
    assert unread.json() == {"count": 1}
    assert read.json() == {"ok": True}
    assert after.json() == {"count": 0}
    assert read_all.json() == {"ok": True, "marked": 0}


@pytest.mark.asyncio
async def test_unread_count_requires_user(client):
    async with client:
        resp = await client.get("/v1/nudge/unread-count")
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_db_failure_maps_to_500(client, monkeypatch):
    async def broken(user_id):
        raise RuntimeError("db down")

    monkeypatch.setattr(db, "count_unread_for_user", broken)
    async with client:
        resp = await client.get("/v1/nudge/unread-count", params={"user_id": "u"})
    assert resp.status_code == 500
    assert resp.json() == {"detail": {"error": "db down"}}
