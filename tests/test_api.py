"""
HTTP API tests against the ASGI app with the test service graph.
"""
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from stockroom.main import create_app
from tests.helpers import make_order_payload


@pytest_asyncio.fixture
async def client(services, session_factory):
    app = create_app()
    app.state.services = services
    app.state.session_factory = session_factory
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client


async def track(client, product_id, units, **extra):
    response = await client.post(
        "/api/v1/inventory",
        json={"product_id": product_id, "initial_units": units, **extra},
    )
    assert response.status_code == 201, response.text
    return response.json()


class TestHealth:

    @pytest.mark.asyncio
    async def test_health(self, client):
        response = await client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["checks"]["database"] == "connected"


class TestInventoryEndpoints:

    @pytest.mark.asyncio
    async def test_track_and_read(self, client):
        created = await track(client, "LAMP-1", 12, product_name="Desk Lamp")

        assert created["available_units"] == 12
        assert created["stock_status"] == "in_stock"

        response = await client.get("/api/v1/inventory/LAMP-1")
        assert response.status_code == 200
        assert response.json()["product_name"] == "Desk Lamp"

        listing = (await client.get("/api/v1/inventory")).json()
        assert listing["total"] == 1

    @pytest.mark.asyncio
    async def test_track_twice_rejected(self, client):
        await track(client, "A", 1)

        response = await client.post("/api/v1/inventory", json={"product_id": "A"})

        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_unknown_product_is_404(self, client):
        response = await client.get("/api/v1/inventory/missing")

        assert response.status_code == 404
        assert response.json()["error"] == "NotFoundError"

    @pytest.mark.asyncio
    async def test_adjust(self, client):
        await track(client, "A", 5)

        response = await client.post("/api/v1/inventory/adjust", json={
            "product_id": "A", "quantity_change": 7, "reason": "Delivery", "movement_type": "restock",
        })

        assert response.status_code == 200
        body = response.json()
        assert (body["previous_stock"], body["new_stock"], body["stock_change"]) == (5, 12, 7)

    @pytest.mark.asyncio
    async def test_adjust_below_zero_is_conflict(self, client):
        await track(client, "A", 2)

        response = await client.post("/api/v1/inventory/adjust", json={
            "product_id": "A", "quantity_change": -5, "reason": "Damaged", "movement_type": "damage",
        })

        assert response.status_code == 409
        assert response.json()["detail"] == "Only 2 available"

    @pytest.mark.asyncio
    async def test_adjust_with_override_clamps(self, client):
        await track(client, "A", 2)

        response = await client.post("/api/v1/inventory/adjust", json={
            "product_id": "A", "quantity_change": -5, "reason": "Stock count", "override": True,
        })

        assert response.status_code == 200
        assert response.json()["new_stock"] == 0

    @pytest.mark.asyncio
    async def test_adjust_requires_reason(self, client):
        await track(client, "A", 2)

        response = await client.post("/api/v1/inventory/adjust", json={"product_id": "A", "quantity_change": 1})

        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_history(self, client):
        await track(client, "A", 10)
        await client.post("/api/v1/inventory/adjust", json={
            "product_id": "A", "quantity_change": -2, "reason": "Shrinkage",
        })

        response = await client.get("/api/v1/inventory/A/history")

        assert response.status_code == 200
        body = response.json()
        assert len(body["movements"]) == 2
        assert body["summary"]["current_stock"] == 8

    @pytest.mark.asyncio
    async def test_alerts_and_acknowledge(self, client):
        await track(client, "A", 0)

        alerts = (await client.get("/api/v1/inventory/alerts")).json()
        assert [a["alert_type"] for a in alerts] == ["out_of_stock"]

        response = await client.post(
            f"/api/v1/inventory/alerts/{alerts[0]['id']}/acknowledge",
            json={"acknowledged_by": "ops", "resolution_notes": "Reorder placed"},
        )

        assert response.status_code == 200
        assert response.json()["is_active"] is False
        assert (await client.get("/api/v1/inventory/alerts")).json() == []

    @pytest.mark.asyncio
    async def test_low_stock_report(self, client):
        await track(client, "A", 1)
        await track(client, "B", 40)

        body = (await client.get("/api/v1/inventory/low-stock", params={"threshold": 5})).json()

        assert [p["product_id"] for p in body["critical"]] == ["A"]
        assert body["total"] == 1

    @pytest.mark.asyncio
    async def test_bulk_update_reports_failures(self, client):
        await track(client, "A", 3)

        response = await client.post("/api/v1/inventory/bulk-update", json={"updates": [
            {"product_id": "A", "quantity_change": 2, "reason": "Count"},
            {"product_id": "NOPE", "quantity_change": -1, "reason": "Count"},
        ]})

        body = response.json()
        assert (body["success"], body["failed"]) == (1, 1)
        assert body["errors"][0]["index"] == 1


class TestReservationEndpoints:

    @pytest.mark.asyncio
    async def test_reserve_and_release(self, client):
        await track(client, "A", 5)

        response = await client.post("/api/v1/reservations", json={
            "product_id": "A", "quantity": 3, "cart_id": "cart1", "session_id": "s1",
        })
        body = response.json()
        assert response.status_code == 200
        assert body["success"] is True
        assert body["available_to_sell"] == 2

        level = (await client.get("/api/v1/inventory/A")).json()
        assert level["reserved_units"] == 3

        first = await client.delete(f"/api/v1/reservations/{body['reservation_id']}")
        second = await client.delete(f"/api/v1/reservations/{body['reservation_id']}")
        assert first.json() == {"released": 1}
        assert second.json() == {"released": 0}

    @pytest.mark.asyncio
    async def test_reserve_unavailable_is_not_an_error(self, client):
        await track(client, "A", 2)

        response = await client.post("/api/v1/reservations", json={
            "product_id": "A", "quantity": 3, "cart_id": "cart1", "session_id": "s1",
        })

        assert response.status_code == 200
        assert response.json()["success"] is False
        assert response.json()["message"] == "Only 2 available"

    @pytest.mark.asyncio
    async def test_cart_listing_and_clear(self, client):
        await track(client, "A", 5)
        await track(client, "B", 5)
        for product_id in ("A", "B"):
            await client.post("/api/v1/reservations", json={
                "product_id": product_id, "quantity": 1, "cart_id": "cart9", "session_id": "s9",
            })

        listing = (await client.get("/api/v1/reservations/cart/cart9")).json()
        cleared = (await client.delete("/api/v1/reservations/cart/cart9")).json()

        assert [r["product_id"] for r in listing] == ["A", "B"]
        assert cleared == {"released": 2}

    @pytest.mark.asyncio
    async def test_unknown_reservation(self, client):
        response = await client.get("/api/v1/reservations/not-a-reservation")

        assert response.status_code == 404


class TestOrderEndpoints:

    @pytest.mark.asyncio
    async def test_place_order(self, client):
        await track(client, "A", 10)

        response = await client.post("/api/v1/orders", json=make_order_payload(("A", 2, 25)))

        assert response.status_code == 201
        body = response.json()
        assert body["success"] is True
        assert body["inventory_updates"][0]["new_stock"] == 8

        order = (await client.get(f"/api/v1/orders/number/{body['order_number']}")).json()
        assert order["id"] == body["order_id"]
        assert order["status"] == "pending"

    @pytest.mark.asyncio
    async def test_insufficient_stock_is_conflict(self, client):
        await track(client, "A", 10)
        await track(client, "B", 2)

        response = await client.post("/api/v1/orders", json=make_order_payload(("A", 3, 10), ("B", 5, 10)))

        assert response.status_code == 409
        body = response.json()
        assert body["success"] is False
        assert body["errors"][0]["code"] == "INSUFFICIENT_STOCK"
        assert (await client.get("/api/v1/inventory/A")).json()["available_units"] == 10

    @pytest.mark.asyncio
    async def test_invalid_payload_is_422(self, client):
        response = await client.post("/api/v1/orders", json=make_order_payload(email="", total=0))

        assert response.status_code == 422
        assert {e["code"] for e in response.json()["errors"]} == {"MISSING_EMAIL", "NO_ITEMS", "INVALID_TOTAL"}

    @pytest.mark.asyncio
    async def test_status_lifecycle(self, client):
        await track(client, "A", 10)
        order_id = (await client.post("/api/v1/orders", json=make_order_payload(("A", 4, 10)))).json()["order_id"]

        transitions = (await client.get(f"/api/v1/orders/{order_id}/transitions")).json()
        assert transitions["allowed"] == ["confirmed", "cancelled"]

        bad = await client.patch(f"/api/v1/orders/{order_id}/status", json={"status": "delivered"})
        assert bad.status_code == 422

        cancelled = await client.patch(f"/api/v1/orders/{order_id}/status", json={
            "status": "cancelled", "notes": "Out of budget", "changed_by": "support",
        })
        assert cancelled.status_code == 200
        assert cancelled.json()["status"] == "cancelled"
        assert [h["to_status"] for h in cancelled.json()["status_history"]] == ["pending", "cancelled"]
        assert (await client.get("/api/v1/inventory/A")).json()["available_units"] == 10

    @pytest.mark.asyncio
    async def test_list_orders(self, client):
        await track(client, "A", 10)
        await client.post("/api/v1/orders", json=make_order_payload(("A", 1, 10), email="a@example.com"))
        await client.post("/api/v1/orders", json=make_order_payload(("A", 1, 10), email="b@example.com"))

        body = (await client.get("/api/v1/orders", params={"customer_email": "a@example.com"})).json()

        assert body["total"] == 1
        assert body["pages"] == 1
        assert body["items"][0]["customer_email"] == "a@example.com"

    @pytest.mark.asyncio
    async def test_unknown_order(self, client):
        response = await client.get("/api/v1/orders/00000000-0000-4000-8000-000000000000")

        assert response.status_code == 404
