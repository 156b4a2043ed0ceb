import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.future import select

from conftest import ADMIN_EMAIL, auth_header
from models.credit_ledger import CreditLedger
from models.generation_credit import GenerationCredit
from models.subscription import Subscription
from services.accounts import ensure_account
from services.credits import check_balance, grant_paid_credits, try_consume
from services.errors import InsufficientCredits


USER_EMAIL = "maker@posters.test"


async def _subscribe(session_maker, email: str, *, period_end=None, status="active", cancel=False):
    async with session_maker() as db:
        user = await ensure_account(email, db)
        db.add(
            Subscription(
                user_id=user.id,
                email=email,
                provider_subscription_id=f"sub_{email}",
                setup_intent_id=f"seti_{email}",
                status=status,
                current_period_end=period_end or datetime.now(timezone.utc) + timedelta(days=20),
                cancel_at_period_end=cancel,
            )
        )
        user.user_type = "artistic_collective"
        await db.commit()


@pytest.mark.asyncio
async def test_first_balance_check_creates_two_free_credits(client):
    resp = await client.get("/api/generation-credits", headers=auth_header(USER_EMAIL))
    assert resp.status_code == 200
    payload = resp.json()
    assert payload["free_credits_total"] == 2
    assert payload["free_credits_remaining"] == 2
    assert payload["paid_credits"] == 0
    assert payload["is_unlimited"] is False


@pytest.mark.asyncio
async def test_third_consume_is_refused_without_partial_decrement(client, session_maker):
    headers = auth_header(USER_EMAIL)

    first = await client.post("/api/use-generation-credit", json={}, headers=headers)
    second = await client.post("/api/use-generation-credit", json={}, headers=headers)
    third = await client.post("/api/use-generation-credit", json={}, headers=headers)

    assert first.status_code == 200
    assert first.json()["source"] == "free"
    assert first.json()["free_credits_remaining"] == 1
    assert second.status_code == 200
    assert second.json()["free_credits_remaining"] == 0
    assert third.status_code == 402
    assert third.json()["code"] == "insufficient_credits"

    async with session_maker() as db:
        row = (await db.execute(select(GenerationCredit).where(GenerationCredit.email == USER_EMAIL))).scalar_one()
        assert row.free_credits_used == 2
        assert row.paid_credits == 0
        uses = (await db.execute(select(CreditLedger).where(CreditLedger.email == USER_EMAIL))).scalars().all()
        assert sorted(entry.entry_type for entry in uses) == ["free_use", "free_use"]


@pytest.mark.asyncio
async def test_scope_mismatch_is_rejected(client):
    resp = await client.get(
        "/api/generation-credits?email=someone-else@posters.test",
        headers=auth_header(USER_EMAIL),
    )
    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_paid_credits_are_used_after_free(session_maker):
    async with session_maker() as db:
        await grant_paid_credits(USER_EMAIL, db, credits=1, provider="stripe", billing_reference="cs_1")
        assert (await try_consume(USER_EMAIL, db))["source"] == "free"
        assert (await try_consume(USER_EMAIL, db))["source"] == "free"
        paid = await try_consume(USER_EMAIL, db)
        assert paid["source"] == "paid"
        assert paid["paid_credits"] == 0
        with pytest.raises(InsufficientCredits):
            await try_consume(USER_EMAIL, db)


@pytest.mark.asyncio
async def test_grant_is_idempotent_per_billing_reference(session_maker):
    async with session_maker() as db:
        first = await grant_paid_credits(USER_EMAIL, db, credits=5, provider="stripe", billing_reference="cs_42")
        again = await grant_paid_credits(USER_EMAIL, db, credits=5, provider="stripe", billing_reference="cs_42")

    assert first["applied"] is True
    assert again["applied"] is False
    assert again["paid_credits"] == 5


@pytest.mark.asyncio
async def test_admin_grant_endpoint(client):
    resp = await client.post(
        "/api/admin/credits/grant",
        json={"email": USER_EMAIL, "credits": 3, "reference": "support-ticket-7"},
        headers=auth_header(ADMIN_EMAIL),
    )
    assert resp.status_code == 200
    assert resp.json()["paid_credits"] == 3

    forbidden = await client.post(
        "/api/admin/credits/grant",
        json={"email": USER_EMAIL, "credits": 3, "reference": "support-ticket-8"},
        headers=auth_header(USER_EMAIL),
    )
    assert forbidden.status_code == 403


@pytest.mark.asyncio
async def test_subscriber_consumes_without_touching_balance(session_maker):
    await _subscribe(session_maker, USER_EMAIL)

    async with session_maker() as db:
        for _ in range(5):
            result = await try_consume(USER_EMAIL, db)
            assert result["source"] == "unlimited"
        balance = await check_balance(USER_EMAIL, db)

    assert balance["is_unlimited"] is True
    assert balance["free_credits_remaining"] == 2


@pytest.mark.asyncio
async def test_expired_subscription_is_metered_again(session_maker):
    await _subscribe(session_maker, USER_EMAIL, period_end=datetime.now(timezone.utc) - timedelta(minutes=1))

    async with session_maker() as db:
        result = await try_consume(USER_EMAIL, db)

    assert result["source"] == "free"


@pytest.mark.asyncio
async def test_concurrent_consumers_never_overdraw(session_maker):
    async with session_maker() as db:
        await check_balance(USER_EMAIL, db)

    async def _attempt():
        async with session_maker() as db:
            try:
                await try_consume(USER_EMAIL, db)
                return True
            except InsufficientCredits:
                return False

    outcomes = await asyncio.gather(*[_attempt() for _ in range(5)])

    assert outcomes.count(True) == 2
    async with session_maker() as db:
        balance = await check_balance(USER_EMAIL, db)
    assert balance["free_credits_used"] == 2
    assert balance["paid_credits"] == 0
