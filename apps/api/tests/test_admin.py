import csv
import io

import pytest
from sqlalchemy import update

from conftest import ADMIN_EMAIL, auth_header
from models.order import Order
from services.inventory import get_image, publish, reserve_edition


ADMIN = auth_header(ADMIN_EMAIL)


async def _completed_order(client, provider, shipping, edition_id):
    prepared = await client.post(
        "/api/prepare-checkout",
        json={"order_type": "catalogue", "shipping": shipping, "items": [{"image_id": edition_id}]},
    )
    checkout = prepared.json()
    provider.succeed_intent(checkout["payment_intent_id"])
    completed = await client.post(
        "/api/complete-catalogue-order",
        json={"confirmation_id": checkout["confirmation_id"], "payment_intent_id": checkout["payment_intent_id"]},
    )
    return completed.json()["order"]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "method,path",
    [
        ("get", "/api/admin/orders"),
        ("get", "/api/admin/orders/export/csv"),
        ("get", "/api/admin/pending-review"),
        ("post", "/api/admin/reconcile"),
    ],
)
async def test_admin_routes_need_allow_listed_operator(client, method, path):
    kwargs = {"json": {}} if method == "post" else {}

    anonymous = await getattr(client, method)(path, **kwargs)
    customer = await getattr(client, method)(path, headers=auth_header("buyer@posters.test"), **kwargs)

    assert anonymous.status_code == 401
    assert customer.status_code == 403


@pytest.mark.asyncio
async def test_order_listing_detail_and_status(client, provider, make_image, shipping):
    edition_id = await make_image(total_supply=3)
    order = await _completed_order(client, provider, shipping, edition_id)

    listing = await client.get("/api/admin/orders", headers=ADMIN)
    assert listing.status_code == 200
    assert listing.json()["total"] == 1
    assert listing.json()["items"][0]["confirmation_id"] == order["confirmation_id"]

    by_confirmation = await client.get(f"/api/admin/orders/{order['confirmation_id']}", headers=ADMIN)
    assert by_confirmation.status_code == 200
    assert by_confirmation.json()["id"] == order["id"]

    shipped = await client.patch(f"/api/admin/orders/{order['id']}/status", json={"status": "shipped"}, headers=ADMIN)
    assert shipped.status_code == 200
    assert shipped.json()["status"] == "shipped"

    delivered = await client.patch(f"/api/admin/orders/{order['id']}/status", json={"status": "delivered"}, headers=ADMIN)
    assert delivered.json()["status"] == "delivered"

    reopened = await client.patch(f"/api/admin/orders/{order['id']}/status", json={"status": "processing"}, headers=ADMIN)
    assert reopened.status_code == 409

    unknown = await client.patch(f"/api/admin/orders/{order['id']}/status", json={"status": "lost"}, headers=ADMIN)
    assert unknown.status_code == 409
    assert "allowed" in unknown.json()

    filtered = await client.get("/api/admin/orders", params={"status": "pending"}, headers=ADMIN)
    assert filtered.json()["total"] == 0


@pytest.mark.asyncio
async def test_missing_order_is_404(client):
    resp = await client.get("/api/admin/orders/ORD-NOPE", headers=ADMIN)
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_csv_export_lists_orders_with_edition_numbers(client, provider, make_image, shipping):
    edition_id = await make_image(total_supply=3, price="75.00")
    order = await _completed_order(client, provider, shipping, edition_id)

    resp = await client.get("/api/admin/orders/export/csv", headers=ADMIN)

    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/csv")
    assert "attachment" in resp.headers["content-disposition"]
    rows = list(csv.DictReader(io.StringIO(resp.text)))
    assert len(rows) == 1
    assert rows[0]["confirmation_id"] == order["confirmation_id"]
    assert rows[0]["amount"] == "75.00"
    assert rows[0]["needs_reconciliation"] == "no"
    assert rows[0]["items"].endswith("#1")


@pytest.mark.asyncio
async def test_reconciliation_filter(client, provider, make_image, shipping, session_maker):
    edition_id = await make_image(total_supply=3)
    order = await _completed_order(client, provider, shipping, edition_id)
    async with session_maker() as db:
        await db.execute(update(Order).where(Order.id == order["id"]).values(needs_reconciliation=True))
        await db.commit()

    flagged = await client.get("/api/admin/orders", params={"needs_reconciliation": True}, headers=ADMIN)

    assert flagged.json()["total"] == 1
    assert flagged.json()["items"][0]["needs_reconciliation"] is True


@pytest.mark.asyncio
async def test_edition_override_respects_bounds(client, make_image):
    image_id = await make_image(total_supply=10)

    resp = await client.patch(f"/api/admin/images/{image_id}/edition", json={"sold_count": 4}, headers=ADMIN)
    assert resp.status_code == 200
    assert resp.json()["sold_count"] == 4
    assert resp.json()["remaining"] == 6

    too_many = await client.patch(f"/api/admin/images/{image_id}/edition", json={"sold_count": 11}, headers=ADMIN)
    assert too_many.status_code == 422
    assert too_many.json()["code"] == "invalid_supply"


@pytest.mark.asyncio
async def test_review_queue_approve_and_reject(client, make_image, session_maker):
    first = await make_image("artist@posters.test")
    second = await make_image("artist@posters.test")
    async with session_maker() as db:
        await publish(first, db, owner_email="artist@posters.test", total_supply=5, price_per_unit="40")
        await publish(second, db, owner_email="artist@posters.test", total_supply=5, price_per_unit="40")

    pending = await client.get("/api/admin/pending-review", headers=ADMIN)
    assert pending.json()["count"] == 2

    approved = await client.post(f"/api/admin/images/{first}/approve", headers=ADMIN)
    assert approved.json()["review_status"] == "approved"

    rejected = await client.post(f"/api/admin/images/{second}/reject", headers=ADMIN)
    assert rejected.json()["review_status"] == "rejected"
    assert rejected.json()["is_public"] is False

    catalogue = await client.get("/api/public-images")
    assert [item["id"] for item in catalogue.json()["items"]] == [first]


@pytest.mark.asyncio
async def test_reject_refused_once_an_edition_is_held(client, make_image, session_maker):
    image_id = await make_image(total_supply=5)
    async with session_maker() as db:
        await reserve_edition(image_id, db)

    resp = await client.post(f"/api/admin/images/{image_id}/reject", headers=ADMIN)

    assert resp.status_code == 409
    async with session_maker() as db:
        image = await get_image(image_id, db)
    assert image.is_public is True


@pytest.mark.asyncio
async def test_reconcile_endpoint_runs_the_sweep(client):
    resp = await client.post("/api/admin/reconcile", json={}, headers=ADMIN)

    assert resp.status_code == 200
    assert resp.json()["orders"]["checked"] == 0
    assert "orphans_released" in resp.json()["expired"]


@pytest.mark.asyncio
async def test_admin_cancels_a_members_subscription(client, provider):
    member = auth_header("member@posters.test")
    started = await client.post("/api/create-subscription", json={}, headers=member)
    provider.succeed_setup_intent(started.json()["setup_intent_id"])
    await client.post(
        "/api/confirm-subscription",
        json={"setup_intent_id": started.json()["setup_intent_id"]},
        headers=member,
    )

    resp = await client.post("/api/admin/subscriptions/member@posters.test/cancel", headers=ADMIN)

    assert resp.status_code == 200
    assert resp.json()["cancel_at_period_end"] is True
    assert resp.json()["is_subscribed"] is True
