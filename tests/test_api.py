"""
HTTP surface tests. Requests go through the ASGI app with the database
dependency pointed at the per-test SQLite file.
"""
import uuid

import httpx
import pytest
import pytest_asyncio

from supplychain.database import get_db
from supplychain.main import app


def headers(user_id, role="customer"):
    return {"X-User-Id": str(user_id), "X-User-Role": role}


@pytest_asyncio.fixture
async def client(session_factory):
    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()


def checkout_body(world, quantity):
    return {
        "lines": [{"product_id": str(world.widget.id), "quantity": quantity}],
        "carrier_id": str(world.carrier.id),
    }


@pytest.mark.asyncio
async def test_checkout_places_and_confirms_order(client, world, stock, customer_id):
    await stock(world.widget, world.north, 10)

    response = await client.post(
        "/api/v1/orders/checkout", json=checkout_body(world, 3), headers=headers(customer_id)
    )

    assert response.status_code == 201
    data = response.json()
    assert data["outcome"] == "fulfilled"
    assert data["order"]["status"] == "confirmed"
    assert data["errors"] == []

    availability = await client.get(f"/api/v1/inventory/{world.widget.id}", headers=headers(customer_id))
    assert availability.json()["total_quantity"] == 7


@pytest.mark.asyncio
async def test_checkout_shortage_is_a_conflict(client, world, stock, customer_id):
    await stock(world.widget, world.north, 10)

    response = await client.post(
        "/api/v1/orders/checkout", json=checkout_body(world, 50), headers=headers(customer_id)
    )

    assert response.status_code == 409
    [error] = response.json()["detail"]["errors"]
    assert error["code"] == "INSUFFICIENT_STOCK"
    assert error["requested"] == 50
    assert error["available"] == 10
    assert error["product_id"] == str(world.widget.id)


@pytest.mark.asyncio
async def test_unknown_carrier_is_a_bad_request(client, world, stock, customer_id):
    body = checkout_body(world, 1)
    body["carrier_id"] = str(uuid.uuid4())

    response = await client.post("/api/v1/orders/checkout", json=body, headers=headers(customer_id))

    assert response.status_code == 400
    assert "carrier" in response.json()["detail"]


@pytest.mark.asyncio
async def test_non_positive_quantity_fails_validation(client, world, customer_id):
    response = await client.post(
        "/api/v1/orders/checkout", json=checkout_body(world, 0), headers=headers(customer_id)
    )

    assert response.status_code == 422


@pytest.mark.asyncio
async def test_identity_headers_are_required(client, world):
    missing = await client.post("/api/v1/orders/checkout", json=checkout_body(world, 1))
    malformed = await client.get("/api/v1/orders", headers={"X-User-Id": "not-a-uuid"})
    unknown_role = await client.get("/api/v1/orders", headers=headers(uuid.uuid4(), "intern"))
    wrong_role = await client.post(
        "/api/v1/orders/checkout", json=checkout_body(world, 1), headers=headers(uuid.uuid4(), "supplier")
    )

    assert missing.status_code == 401
    assert malformed.status_code == 401
    assert unknown_role.status_code == 403
    assert wrong_role.status_code == 403


@pytest.mark.asyncio
async def test_customers_only_see_their_own_orders(client, world, stock, customer_id):
    await stock(world.widget, world.north, 10)
    placed = await client.post(
        "/api/v1/orders/checkout", json=checkout_body(world, 1), headers=headers(customer_id)
    )
    order_id = placed.json()["order"]["id"]

    mine = await client.get(f"/api/v1/orders/{order_id}", headers=headers(customer_id))
    theirs = await client.get(f"/api/v1/orders/{order_id}", headers=headers(uuid.uuid4()))
    listed = await client.get("/api/v1/orders", headers=headers(uuid.uuid4()))
    missing = await client.get(f"/api/v1/orders/{uuid.uuid4()}", headers=headers(customer_id, "admin"))

    assert mine.status_code == 200
    assert theirs.status_code == 404
    assert listed.json()["total"] == 0
    assert missing.status_code == 404


@pytest.mark.asyncio
async def test_shipping_flow_and_history(client, world, stock, customer_id):
    await stock(world.widget, world.north, 10)
    placed = await client.post(
        "/api/v1/orders/checkout", json=checkout_body(world, 2), headers=headers(customer_id)
    )
    order_id = placed.json()["order"]["id"]
    warehouse = headers(uuid.uuid4(), "warehouse")

    shipped = await client.post(f"/api/v1/orders/{order_id}/ship", headers=warehouse)
    cancel = await client.post(f"/api/v1/orders/{order_id}/cancel", headers=headers(customer_id))
    delivered = await client.post(f"/api/v1/orders/{order_id}/deliver", headers=headers(uuid.uuid4(), "carrier"))

    assert shipped.status_code == 200
    assert shipped.json()["status"] == "shipped"
    assert cancel.status_code == 409
    assert cancel.json()["detail"]["errors"][0]["code"] == "INVALID_TRANSITION"
    assert delivered.json()["status"] == "delivered"

    history = await client.get(f"/api/v1/history/order/{order_id}", headers=warehouse)
    assert [entry["new_status"] for entry in history.json()] == [
        "confirmed", "processing", "shipped", "delivered",
    ]
    own_history = await client.get(f"/api/v1/orders/{order_id}/history", headers=headers(customer_id))
    assert own_history.json() == history.json()

    unknown_type = await client.get(f"/api/v1/history/invoice/{order_id}", headers=warehouse)
    assert unknown_type.status_code == 400


@pytest.mark.asyncio
async def test_cancel_through_api_restores_stock(client, world, stock, customer_id):
    await stock(world.widget, world.north, 10)
    placed = await client.post(
        "/api/v1/orders/checkout", json=checkout_body(world, 4), headers=headers(customer_id)
    )
    order_id = placed.json()["order"]["id"]

    cancelled = await client.post(
        f"/api/v1/orders/{order_id}/cancel", json={"note": "Ordered by mistake"}, headers=headers(customer_id)
    )

    assert cancelled.status_code == 200
    assert cancelled.json()["status"] == "cancelled"
    availability = await client.get(f"/api/v1/inventory/{world.widget.id}", headers=headers(customer_id))
    assert availability.json()["total_quantity"] == 10


@pytest.mark.asyncio
async def test_release_stock_endpoint_is_idempotent(client, world, stock, customer_id):
    await stock(world.widget, world.north, 10)
    placed = await client.post(
        "/api/v1/orders/checkout", json=checkout_body(world, 4), headers=headers(customer_id)
    )
    order_id = placed.json()["order"]["id"]
    warehouse = headers(uuid.uuid4(), "warehouse")

    too_early = await client.post(f"/api/v1/orders/{order_id}/release-stock", headers=warehouse)
    await client.post(f"/api/v1/orders/{order_id}/cancel", headers=headers(customer_id))
    released = await client.post(f"/api/v1/orders/{order_id}/release-stock", headers=warehouse)
    as_customer = await client.post(f"/api/v1/orders/{order_id}/release-stock", headers=headers(customer_id))

    assert too_early.status_code == 400
    assert released.status_code == 200
    assert released.json() == []
    assert as_customer.status_code == 403
    availability = await client.get(f"/api/v1/inventory/{world.widget.id}", headers=headers(customer_id))
    assert availability.json()["total_quantity"] == 10


@pytest.mark.asyncio
async def test_purchase_order_flow(client, world):
    supplier_id = uuid.uuid4()
    supplier = headers(supplier_id, "supplier")
    warehouse = headers(uuid.uuid4(), "warehouse")

    created = await client.post("/api/v1/purchase-orders", json={
        "supplier_id": str(supplier_id),
        "product_id": str(world.gadget.id),
        "warehouse_id": str(world.south.id),
        "quantity": 8,
        "unit_cost": "12.50",
    }, headers=warehouse)
    assert created.status_code == 201
    po = created.json()
    assert po["status"] == "pending"
    assert float(po["total_amount"]) == 100.0
    url = f"/api/v1/purchase-orders/{po['id']}"

    by_supplier = await client.post("/api/v1/purchase-orders", json={
        "supplier_id": str(supplier_id),
        "product_id": str(world.gadget.id),
        "warehouse_id": str(world.south.id),
        "quantity": 1,
        "unit_cost": "1.00",
    }, headers=supplier)
    other_supplier = await client.get(url, headers=headers(uuid.uuid4(), "supplier"))
    warehouse_approves = await client.put(f"{url}/status", json={"status": "approved"}, headers=warehouse)
    assert by_supplier.status_code == 403
    assert other_supplier.status_code == 404
    assert warehouse_approves.status_code == 403

    approved = await client.put(f"{url}/status", json={"status": "approved"}, headers=supplier)
    supplier_delivers = await client.put(f"{url}/status", json={"status": "delivered"}, headers=supplier)
    delivered = await client.put(f"{url}/status", json={"status": "delivered"}, headers=warehouse)
    again = await client.put(f"{url}/status", json={"status": "delivered"}, headers=warehouse)

    assert approved.json()["status"] == "approved"
    assert supplier_delivers.status_code == 403
    assert delivered.json()["status"] == "delivered"
    assert again.status_code == 409
    assert again.json()["detail"]["errors"][0]["code"] == "INVALID_TRANSITION"

    own = await client.get("/api/v1/purchase-orders", headers=supplier)
    assert [p["id"] for p in own.json()] == [po["id"]]
    availability = await client.get(f"/api/v1/inventory/{world.gadget.id}", headers=warehouse)
    assert availability.json()["total_quantity"] == 8
    history = await client.get(f"/api/v1/history/purchase_order/{po['id']}", headers=warehouse)
    assert [entry["new_status"] for entry in history.json()] == ["approved", "delivered"]

    payment = await client.post("/api/v1/payments/supplier", json={
        "purchase_order_id": po["id"],
        "amount": "100.00",
        "method": "bank_transfer",
    }, headers=headers(uuid.uuid4(), "admin"))
    assert payment.status_code == 201
    assert payment.json()["supplier_id"] == str(supplier_id)
    assert payment.json()["purchase_order_id"] == po["id"]
