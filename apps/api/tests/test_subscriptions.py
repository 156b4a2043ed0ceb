import json
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import update
from sqlalchemy.future import select

from conftest import WEBHOOK_SIGNATURE, auth_header
from models.subscription import Subscription
from services.accounts import get_account
from services.subscriptions import is_unlimited, resolve_promo_discount


MEMBER = "member@posters.test"


async def _subscribe(client, provider, promo_code=None):
    started = await client.post(
        "/api/create-subscription",
        json={"promo_code": promo_code},
        headers=auth_header(MEMBER),
    )
    assert started.status_code == 200
    setup_intent_id = started.json()["setup_intent_id"]
    provider.succeed_setup_intent(setup_intent_id)
    confirmed = await client.post(
        "/api/confirm-subscription",
        json={"setup_intent_id": setup_intent_id},
        headers=auth_header(MEMBER),
    )
    return started, confirmed


@pytest.mark.asyncio
async def test_confirm_flips_account_to_collective(client, provider, session_maker):
    started, confirmed = await _subscribe(client, provider)

    assert started.json()["monthly_price"] == "9.99"
    assert started.json()["discount_applied"] is False
    assert confirmed.status_code == 200
    assert confirmed.json()["is_subscribed"] is True
    async with session_maker() as db:
        user = await get_account(MEMBER, db)
        assert user.user_type == "artistic_collective"
        assert await is_unlimited(MEMBER, db) is True

    credits = await client.get("/api/generation-credits", headers=auth_header(MEMBER))
    assert credits.json()["is_unlimited"] is True


@pytest.mark.asyncio
async def test_promo_code_discounts_first_cycle(client, provider):
    started, confirmed = await _subscribe(client, provider, promo_code="beta60")

    assert started.json()["discount_percent"] == 60
    assert started.json()["first_cycle_price"] == "4.00"
    assert confirmed.json()["promo_code"] == "BETA60"
    assert provider.created_subscriptions[0]["discount_percent"] == 60


def test_unknown_promo_codes_give_nothing():
    assert resolve_promo_discount("LAUNCH60") == 60
    assert resolve_promo_discount("FREE100") == 0
    assert resolve_promo_discount(None) == 0


@pytest.mark.asyncio
async def test_confirm_is_idempotent_on_setup_intent(client, provider, session_maker):
    started, confirmed = await _subscribe(client, provider)
    again = await client.post(
        "/api/confirm-subscription",
        json={"setup_intent_id": started.json()["setup_intent_id"]},
        headers=auth_header(MEMBER),
    )

    assert again.status_code == 200
    assert again.json()["subscription_id"] == confirmed.json()["subscription_id"]
    assert len(provider.created_subscriptions) == 1
    async with session_maker() as db:
        rows = (await db.execute(select(Subscription))).scalars().all()
    assert len(rows) == 1


@pytest.mark.asyncio
async def test_confirm_requires_succeeded_setup(client, provider, session_maker):
    started = await client.post("/api/create-subscription", json={}, headers=auth_header(MEMBER))

    resp = await client.post(
        "/api/confirm-subscription",
        json={"setup_intent_id": started.json()["setup_intent_id"]},
        headers=auth_header(MEMBER),
    )

    assert resp.status_code == 409
    async with session_maker() as db:
        user = await get_account(MEMBER, db)
        assert user.user_type == "normal"


@pytest.mark.asyncio
async def test_confirm_rejects_another_accounts_setup_intent(client, provider):
    started = await client.post("/api/create-subscription", json={}, headers=auth_header(MEMBER))
    provider.succeed_setup_intent(started.json()["setup_intent_id"])

    resp = await client.post(
        "/api/confirm-subscription",
        json={"setup_intent_id": started.json()["setup_intent_id"]},
        headers=auth_header("thief@posters.test"),
    )

    assert resp.status_code == 409
    assert resp.json()["code"] == "payment_mismatch"


@pytest.mark.asyncio
async def test_cancel_keeps_unlimited_until_period_end(client, provider, session_maker):
    await _subscribe(client, provider)

    cancelled = await client.post("/api/cancel-subscription", headers=auth_header(MEMBER))

    assert cancelled.status_code == 200
    assert cancelled.json()["status"] == "active"
    assert cancelled.json()["cancel_at_period_end"] is True
    async with session_maker() as db:
        assert await is_unlimited(MEMBER, db) is True

    used = await client.post("/api/use-generation-credit", json={}, headers=auth_header(MEMBER))
    assert used.json()["source"] == "unlimited"

    async with session_maker() as db:
        await db.execute(
            update(Subscription).values(current_period_end=datetime.now(timezone.utc) - timedelta(seconds=1))
        )
        await db.commit()
        assert await is_unlimited(MEMBER, db) is False


@pytest.mark.asyncio
async def test_second_subscription_is_refused_while_active(client, provider):
    await _subscribe(client, provider)

    resp = await client.post("/api/create-subscription", json={}, headers=auth_header(MEMBER))

    assert resp.status_code == 409


@pytest.mark.asyncio
async def test_deleted_webhook_reverts_account(client, provider, session_maker):
    _, confirmed = await _subscribe(client, provider)
    async with session_maker() as db:
        subscription = (await db.execute(select(Subscription))).scalar_one()
    event = {
        "id": "evt_sub_deleted",
        "type": "customer.subscription.deleted",
        "data": {
            "object": {
                "id": subscription.provider_subscription_id,
                "customer": subscription.provider_customer_id,
                "status": "canceled",
                "cancel_at_period_end": False,
            }
        },
    }

    resp = await client.post(
        "/api/stripe/webhook",
        content=json.dumps(event),
        headers={"Stripe-Signature": WEBHOOK_SIGNATURE},
    )

    assert resp.status_code == 200
    assert resp.json()["handled"] is True
    async with session_maker() as db:
        user = await get_account(MEMBER, db)
        assert user.user_type == "normal"
        assert await is_unlimited(MEMBER, db) is False

    status = await client.get("/api/subscription-status", headers=auth_header(MEMBER))
    assert status.json()["is_subscribed"] is False
    assert status.json()["status"] == "canceled"
