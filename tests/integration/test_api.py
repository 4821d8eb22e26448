"""
Integration tests for the HTTP API.
Uses pytest-asyncio + HTTPX AsyncClient over the ASGI app, backed by the
in-memory Firestore fake.
"""
from datetime import timedelta

import pytest
from httpx import AsyncClient, ASGITransport

from conftest import NOW
from main import app
from models import RideStatus

DRIVER = {"X-User-ID": "driver-1"}
SARA = {"X-User-ID": "p-sara"}
OMAR = {"X-User-ID": "p-omar"}

RIDE_OFFER = {
    "origin": {"address": "Campus Gate", "latitude": 24.72, "longitude": 46.62},
    "destination": {"address": "City Mall", "latitude": 24.75, "longitude": 46.70},
    "destination_street": "King Fahd Road",
    "ride_date": (NOW + timedelta(days=1)).strftime("%d/%m/%Y"),
    "ride_time": "07:30",
    "available_seats": 1,
    "is_recurring": True,
    "ride_days": ["Tuesday"],
    "required_gender": "either",
}


@pytest.fixture
async def client(ctx, add_user):
    add_user("driver-1", "Khalid", "male")
    add_user("p-sara", "Sara", "female")
    add_user("p-omar", "Omar", "male")
    app.state.ctx = ctx
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c
    app.state.ctx = None


@pytest.mark.asyncio
class TestRideAPI:
    async def test_health_check(self, client):
        resp = await client.get("/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "ok"

    async def test_missing_user_id(self, client):
        resp = await client.post("/rides", json=RIDE_OFFER)
        assert resp.status_code == 401

    async def test_uninitialised_store(self):
        app.state.ctx = None
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
            resp = await c.get("/rides/1")
        assert resp.status_code == 500

    async def test_create_ride(self, client):
        resp = await client.post("/rides", json=RIDE_OFFER, headers=DRIVER)
        assert resp.status_code == 201
        body = resp.json()
        assert body["ride_number"] == 1
        assert body["status"] == "available"
        assert body["ride_datetime"] == f"{RIDE_OFFER['ride_date']} 07:30"

    async def test_create_ride_invalid_lat(self, client):
        offer = {**RIDE_OFFER, "origin": {"address": "Nowhere", "latitude": 999, "longitude": 0}}
        resp = await client.post("/rides", json=offer, headers=DRIVER)
        assert resp.status_code == 422

    async def test_create_ride_incomplete(self, client):
        resp = await client.post("/rides", json={**RIDE_OFFER, "ride_days": []}, headers=DRIVER)
        assert resp.status_code == 422
        assert resp.json()["error"] == "IncompleteRideData"

    async def test_schedule_conflict(self, client):
        await client.post("/rides", json=RIDE_OFFER, headers=DRIVER)
        resp = await client.post("/rides", json={**RIDE_OFFER, "ride_time": "07:40"}, headers=DRIVER)
        assert resp.status_code == 409
        assert resp.json()["error"] == "ScheduleConflict"

    async def test_get_nonexistent_ride(self, client):
        resp = await client.get("/rides/404")
        assert resp.status_code == 404
        assert resp.json()["error"] == "RideNotFound"

    async def test_events_for_unknown_ride(self, client):
        resp = await client.get("/rides/404/events")
        assert resp.status_code == 404

    async def test_stale_ride_is_put_on_hold_when_read(self, client, clock):
        ride = (await client.post("/rides", json=RIDE_OFFER, headers=DRIVER)).json()
        clock.advance(days=1, hours=1)

        resp = await client.get(f"/rides/{ride['id']}")

        assert resp.json()["status"] == RideStatus.ON_HOLD.value

    async def test_search(self, client):
        await client.post("/rides", json=RIDE_OFFER, headers=DRIVER)
        resp = await client.get("/rides/search", params={"status": ["available"], "destination": "mall"})
        assert resp.status_code == 200
        assert [r["ride_number"] for r in resp.json()["rides"]] == [1]

    async def test_user_rides_are_private(self, client):
        resp = await client.get("/rides/user/driver-1", headers=SARA)
        assert resp.status_code == 403

    async def test_suggestions(self, client):
        await client.post("/rides", json=RIDE_OFFER, headers=DRIVER)
        resp = await client.get("/rides/suggested", params={"latitude": 24.72, "longitude": 46.62},
                                headers=SARA)
        assert resp.status_code == 200
        assert resp.json()[0]["distance_km"] == 0


@pytest.mark.asyncio
class TestBookingAPI:
    async def test_full_ride_lifecycle(self, client, clock):
        ride = (await client.post("/rides", json=RIDE_OFFER, headers=DRIVER)).json()
        ride_id = ride["id"]

        booked = await client.post(f"/rides/{ride_id}/requests", headers=SARA)
        assert booked.status_code == 201
        request_id = booked.json()["id"]

        pending = await client.get(f"/rides/{ride_id}/requests", headers=DRIVER)
        assert [r["id"] for r in pending.json()] == [request_id]

        accepted = await client.put(f"/requests/{request_id}/accept", headers=DRIVER)
        assert accepted.json()["status"] == "accepted"
        assert (await client.get(f"/rides/{ride_id}")).json()["status"] == "full"

        waitlisted = await client.post(f"/rides/{ride_id}/requests", headers=OMAR)
        assert waitlisted.status_code == 201
        assert waitlisted.json()["is_waitlist"] is True

        too_early = await client.post(f"/rides/{ride_id}/start", headers=DRIVER)
        assert too_early.status_code == 409

        clock.advance(hours=23, minutes=30)
        assert (await client.put(f"/requests/{request_id}/check-in", headers=SARA)).status_code == 200
        started = await client.post(f"/rides/{ride_id}/start", headers=DRIVER)
        assert started.json()["status"] == "in-progress"

        checked_out = await client.put(f"/requests/{request_id}/check-out", headers=SARA)
        assert checked_out.json()["rating_prompt"] is True

        finished = await client.post(f"/rides/{ride_id}/finish", json={"repeat_next_week": True},
                                     headers=DRIVER)
        assert finished.json()["ride"]["status"] == "completed"
        assert finished.json()["next_ride"]["ride_number"] == 2

        rating = await client.post(f"/requests/{request_id}/rating", headers=SARA, json={
            "overall": 5, "driving": 5, "behavior": 4, "punctuality": 5, "cleanliness": 4,
        })
        assert rating.status_code == 201
        summary = await client.get("/ratings/driver/driver-1")
        assert summary.json()["count"] == 1
        assert summary.json()["behavior"] == 4

        passengers = await client.get(f"/rides/{ride_id}/passengers")
        assert [p["user_id"] for p in passengers.json()] == ["p-sara"]
        waitlist = await client.get(f"/requests/{waitlisted.json()['id']}", headers=OMAR)
        assert waitlist.json()["status"] == "waiting"

    async def test_gender_restricted_ride(self, client):
        offer = {**RIDE_OFFER, "required_gender": "female only"}
        ride = (await client.post("/rides", json=offer, headers=DRIVER)).json()

        resp = await client.post(f"/rides/{ride['id']}/requests", headers=OMAR)

        assert resp.status_code == 403
        assert resp.json()["error"] == "PreferenceMismatch"

    async def test_cancel_ride_then_check_in(self, client):
        ride = (await client.post("/rides", json=RIDE_OFFER, headers=DRIVER)).json()
        request_id = (await client.post(f"/rides/{ride['id']}/requests", headers=SARA)).json()["id"]
        await client.put(f"/requests/{request_id}/accept", headers=DRIVER)

        cancelled = await client.post(f"/rides/{ride['id']}/cancel", headers=DRIVER)
        assert cancelled.json()["status"] == "cancelled"

        resp = await client.put(f"/requests/{request_id}/check-in", headers=SARA)
        assert resp.status_code == 409
        assert resp.json()["error"] == "RideNotBookable"

    async def test_cancel_request_twice(self, client):
        ride = (await client.post("/rides", json=RIDE_OFFER, headers=DRIVER)).json()
        request_id = (await client.post(f"/rides/{ride['id']}/requests", headers=SARA)).json()["id"]

        first = await client.put(f"/requests/{request_id}/cancel", headers=SARA)
        second = await client.put(f"/requests/{request_id}/cancel", headers=SARA)

        assert first.json()["status"] == second.json()["status"] == "cancelled"

    async def test_request_visibility(self, client):
        ride = (await client.post("/rides", json=RIDE_OFFER, headers=DRIVER)).json()
        request_id = (await client.post(f"/rides/{ride['id']}/requests", headers=SARA)).json()["id"]

        assert (await client.get(f"/requests/{request_id}", headers=DRIVER)).status_code == 200
        assert (await client.get(f"/requests/{request_id}", headers=OMAR)).status_code == 403
        assert (await client.get("/requests/rider/p-sara", headers=OMAR)).status_code == 403
        mine = await client.get("/requests/rider/p-sara", headers=SARA)
        assert [r["id"] for r in mine.json()] == [request_id]

    async def test_passenger_cannot_accept(self, client):
        ride = (await client.post("/rides", json=RIDE_OFFER, headers=DRIVER)).json()
        request_id = (await client.post(f"/rides/{ride['id']}/requests", headers=SARA)).json()["id"]

        resp = await client.put(f"/requests/{request_id}/accept", headers=SARA)

        assert resp.status_code == 403
        assert resp.json()["error"] == "PermissionDenied"
