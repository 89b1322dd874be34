import httpx
import pytest
import pytest_asyncio

from seatbook.main import app, install_services
from tests.util_constant import CUSTOMER_PHONE, OPERATOR_PHONE


@pytest_asyncio.fixture
async def client(settings, db, operator, messenger, clock):
    install_services(app, settings, db, messenger, clock)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


def text_webhook(sender, body):
    return {"entry": [{"changes": [{"value": {
        "messages": [{"from": sender, "id": "wamid.1", "type": "text", "text": {"body": body}}],
    }}]}]}


def image_webhook(sender, media_id="ticket-1"):
    return {"entry": [{"changes": [{"value": {
        "messages": [{"from": sender, "id": "wamid.2", "type": "image",
                      "image": {"id": media_id, "mime_type": "image/png"}}],
    }}]}]}


async def create_trip(client, seat_quota=5, journey_date="2024-01-15", departure_time="08:00:00"):
    route = (await client.post("/routes", json={"source": "Mumbai", "destination": "Pune",
                                                "price": "450.00"})).json()
    response = await client.post("/trips", json={
        "route_id": route["id"], "journey_date": journey_date,
        "departure_time": departure_time, "seat_quota": seat_quota,
    })
    assert response.status_code == 201
    return response.json()


async def test_health(client):
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"ok": True}


class TestWebhookVerification:

    async def test_challenge_is_echoed(self, client):
        response = await client.get("/whatsapp/webhook", params={
            "hub.mode": "subscribe", "hub.verify_token": "s3cret", "hub.challenge": "1158201444",
        })

        assert response.status_code == 200
        assert response.text == "1158201444"

    @pytest.mark.parametrize("mode,token", [("subscribe", "wrong"), ("unsubscribe", "s3cret")])
    async def test_mismatch_is_forbidden(self, client, mode, token):
        response = await client.get("/whatsapp/webhook", params={
            "hub.mode": mode, "hub.verify_token": token, "hub.challenge": "x",
        })
        assert response.status_code == 403

    async def test_unset_secret_is_forbidden(self, client, settings):
        settings.WEBHOOK_VERIFY_TOKEN = None
        response = await client.get("/whatsapp/webhook", params={
            "hub.mode": "subscribe", "hub.verify_token": "anything", "hub.challenge": "x",
        })
        assert response.status_code == 403

    async def test_missing_parameters(self, client):
        response = await client.get("/whatsapp/webhook", params={"hub.challenge": "x"})
        assert response.status_code == 400


class TestWebhookDelivery:

    async def test_booking_flow(self, client, messenger):
        trip = await create_trip(client)

        response = await client.post("/whatsapp/webhook", json=text_webhook(
            "+91 98111 11111", "BOOK Mumbai to Pune 2024-01-15 08:00 2"
        ))
        assert response.status_code == 200
        assert response.text == "OK"

        detail = (await client.get(f"/trips/{trip['id']}")).json()
        assert detail["held"] == 2
        assert detail["available"] == 3
        [booking] = detail["bookings"]
        assert booking["status"] == "HOLD"
        assert booking["customer_phone"] == CUSTOMER_PHONE

        await client.post("/whatsapp/webhook", json=image_webhook(OPERATOR_PHONE))

        confirmed = (await client.get(f"/bookings/{booking['id']}")).json()
        assert confirmed["status"] == "CONFIRMED"
        assert confirmed["hold_expires_at"] is None
        assert confirmed["attachment"]["media_id"] == "ticket-1"
        assert confirmed["attachment"]["media_type"] == "image"
        assert len(messenger.messages_to(CUSTOMER_PHONE)) == 2

    async def test_invalid_json_is_acknowledged(self, client):
        response = await client.post("/whatsapp/webhook", content=b"{not json",
                                     headers={"Content-Type": "application/json"})
        assert response.status_code == 200
        assert response.text == "OK"

    async def test_unrelated_payload_is_acknowledged(self, client, messenger):
        response = await client.post("/whatsapp/webhook", json={"object": "page"})
        assert response.status_code == 200
        assert messenger.sent == []


class TestManagement:

    async def test_routes(self, client, operator):
        response = await client.post("/routes", json={"source": "Delhi", "destination": "Agra",
                                                      "price": "300"})
        assert response.status_code == 201
        route = response.json()
        assert route["operator_id"] == operator.id

        routes = (await client.get("/routes")).json()
        assert [item["id"] for item in routes] == [route["id"]]

    async def test_invalid_route_is_rejected(self, client):
        response = await client.post("/routes", json={"source": "Delhi", "destination": "Agra",
                                                      "price": "0"})
        assert response.status_code == 422

    async def test_trips_are_listed_with_stats(self, client):
        trip = await create_trip(client)
        await create_trip(client, journey_date="2024-01-16")

        trips = (await client.get("/trips", params={"journey_date": "2024-01-15"})).json()

        assert [item["id"] for item in trips] == [trip["id"]]
        assert trips[0]["available"] == 5
        assert trips[0]["route"]["source"] == "Mumbai"
        assert len((await client.get("/trips")).json()) == 2

    async def test_duplicate_trip_conflicts(self, client):
        trip = await create_trip(client)
        response = await client.post("/trips", json={
            "route_id": trip["route"]["id"], "journey_date": "2024-01-15",
            "departure_time": "08:00:00", "seat_quota": 3,
        })
        assert response.status_code == 409

    async def test_trip_for_unknown_route(self, client):
        response = await client.post("/trips", json={
            "route_id": 999, "journey_date": "2024-01-15", "departure_time": "08:00:00", "seat_quota": 3,
        })
        assert response.status_code == 404

    async def test_unknown_trip_and_booking(self, client):
        assert (await client.get("/trips/999")).status_code == 404
        assert (await client.get("/bookings/999")).status_code == 404
        assert (await client.patch("/trips/999/quota", json={"seat_quota": 3})).status_code == 404

    async def test_quota_cannot_drop_below_committed_seats(self, client):
        trip = await create_trip(client)
        await client.post("/whatsapp/webhook", json=text_webhook(CUSTOMER_PHONE, "Mumbai, Pune, 2024-01-15, 08:00, 3"))

        response = await client.patch(f"/trips/{trip['id']}/quota", json={"seat_quota": 2})
        assert response.status_code == 409

        response = await client.patch(f"/trips/{trip['id']}/quota", json={"seat_quota": 3})
        assert response.status_code == 200
        assert response.json()["seat_quota"] == 3
        assert response.json()["available"] == 0

    async def test_expiry_sweep_endpoint(self, client, clock):
        trip = await create_trip(client)
        await client.post("/whatsapp/webhook", json=text_webhook(CUSTOMER_PHONE, "Mumbai, Pune, 2024-01-15, 08:00"))
        [booking] = (await client.get(f"/trips/{trip['id']}")).json()["bookings"]

        assert (await client.post("/sweeps/expire")).json() == {"expired": []}
        clock.advance(minutes=10)
        assert (await client.post("/sweeps/expire")).json() == {"expired": [booking["id"]]}

        assert (await client.get(f"/bookings/{booking['id']}")).json()["status"] == "EXPIRED"
