import json
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from jose import jwt
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from config import settings
from database import Base, get_db
from main import app
from models.generated_image import GeneratedImage
from routers import rate_limit
from services.errors import PaymentProviderError
from services.payments import PaymentIntent, ProviderSubscription, SetupIntent, get_payment_provider
from services.session_token import SESSION_TOKEN_TYPE


ADMIN_EMAIL = "admin@posters.test"
WEBHOOK_SIGNATURE = "t=1,v1=test-signature"


def issue_token(email: str, *, token_type: str = SESSION_TOKEN_TYPE, expires_in: timedelta = timedelta(hours=1)) -> str:
    """Sign a token the way the storefront identity layer does."""
    now = datetime.now(timezone.utc)
    claims = {
        "sub": f"user-{email}",
        "email": email,
        "type": token_type,
        "iat": int(now.timestamp()),
        "exp": int((now + expires_in).timestamp()),
    }
    return jwt.encode(claims, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def auth_header(email: str) -> Dict[str, str]:
    token = issue_token(email)
    return {"Authorization": f"Bearer {token}"}


class FakePaymentProvider:
    """In-memory stand-in for the Stripe adapter with the same async surface."""

    def __init__(self) -> None:
        self.intents: Dict[str, PaymentIntent] = {}
        self.setup_intents: Dict[str, SetupIntent] = {}
        self.subscriptions: Dict[str, ProviderSubscription] = {}
        self.subscriptions_by_key: Dict[str, str] = {}
        self.created_subscriptions: List[Dict[str, Any]] = []
        self.cancelled_intents: List[str] = []
        self.fail_create_intent = False
        self._counter = 0

    def _next(self, prefix: str) -> str:
        self._counter += 1
        return f"{prefix}_test_{self._counter:04d}"

    async def create_intent(self, *, amount_minor, currency, metadata, idempotency_key) -> PaymentIntent:
        if self.fail_create_intent:
            raise PaymentProviderError("Payment provider timed out during create_intent.")
        ref = self._next("pi")
        self.intents[ref] = PaymentIntent(
            ref=ref,
            client_secret=f"{ref}_secret_abc",
            status="requires_payment_method",
            amount=amount_minor,
            amount_received=0,
            currency=currency,
            metadata=dict(metadata),
        )
        return replace(self.intents[ref])

    def succeed_intent(self, ref: str, amount_received: Optional[int] = None) -> None:
        intent = self.intents[ref]
        intent.status = "succeeded"
        intent.amount_received = intent.amount if amount_received is None else amount_received

    async def retrieve_intent(self, ref: str) -> PaymentIntent:
        if ref not in self.intents:
            raise PaymentProviderError("Payment provider rejected retrieve_intent.")
        return replace(self.intents[ref])

    async def cancel_intent(self, ref: str) -> PaymentIntent:
        intent = self.intents[ref]
        if intent.status == "succeeded":
            raise PaymentProviderError("Payment provider rejected cancel_intent.")
        intent.status = "canceled"
        self.cancelled_intents.append(ref)
        return replace(intent)

    async def get_or_create_customer(self, email: str) -> str:
        return f"cus_{email.split('@')[0]}"

    async def create_setup_intent(self, *, customer_id, metadata) -> SetupIntent:
        ref = self._next("seti")
        self.setup_intents[ref] = SetupIntent(
            ref=ref,
            client_secret=f"{ref}_secret_abc",
            status="requires_payment_method",
            customer_id=customer_id,
            payment_method_id=None,
            metadata=dict(metadata),
        )
        return replace(self.setup_intents[ref])

    def succeed_setup_intent(self, ref: str) -> None:
        setup_intent = self.setup_intents[ref]
        setup_intent.status = "succeeded"
        setup_intent.payment_method_id = "pm_card_visa"

    async def retrieve_setup_intent(self, ref: str) -> SetupIntent:
        if ref not in self.setup_intents:
            raise PaymentProviderError("Payment provider rejected retrieve_setup_intent.")
        return replace(self.setup_intents[ref])

    async def create_subscription(
        self, *, customer_id, payment_method_id, discount_percent, metadata, idempotency_key
    ) -> ProviderSubscription:
        if idempotency_key in self.subscriptions_by_key:
            return replace(self.subscriptions[self.subscriptions_by_key[idempotency_key]])
        ref = self._next("sub")
        self.created_subscriptions.append(
            {"customer_id": customer_id, "discount_percent": discount_percent, "metadata": dict(metadata)}
        )
        self.subscriptions[ref] = ProviderSubscription(
            ref=ref,
            customer_id=customer_id,
            status="active",
            current_period_end=datetime.now(timezone.utc) + timedelta(days=30),
            cancel_at_period_end=False,
        )
        self.subscriptions_by_key[idempotency_key] = ref
        return replace(self.subscriptions[ref])

    async def cancel_subscription_at_period_end(self, ref: str) -> ProviderSubscription:
        subscription = self.subscriptions[ref]
        subscription.cancel_at_period_end = True
        return replace(subscription)

    def construct_event(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        if signature != WEBHOOK_SIGNATURE:
            raise PaymentProviderError("Invalid webhook signature.")
        return json.loads(payload)


@pytest.fixture(autouse=True)
def reset_local_rate_limit_counters():
    """Keep in-memory rate-limit state isolated between tests."""
    previous = getattr(app.state, "disable_rate_limits", False)
    app.state.disable_rate_limits = True
    rate_limit.reset_local_counters()
    yield
    rate_limit.reset_local_counters()
    app.state.disable_rate_limits = previous


@pytest.fixture(autouse=True)
def admin_allow_list(monkeypatch):
    monkeypatch.setattr(settings, "ADMIN_EMAILS", [ADMIN_EMAIL])


@pytest.fixture
def provider():
    return FakePaymentProvider()


@pytest_asyncio.fixture
async def session_maker(tmp_path):
    db_path = tmp_path / "commerce.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}")
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield maker
    await engine.dispose()


@pytest_asyncio.fixture
async def client(session_maker, provider):
    async def override_get_db():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_payment_provider] = lambda: provider
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as http_client:
        yield http_client

    app.dependency_overrides.pop(get_db, None)
    app.dependency_overrides.pop(get_payment_provider, None)


@pytest.fixture
def make_image(session_maker):
    """Insert a generated poster, optionally already published as an edition."""

    async def _make_image(
        owner_email: str = "artist@posters.test",
        *,
        total_supply: Optional[int] = None,
        price: str = "49.00",
        sold_count: int = 0,
        style: str = "watercolor",
    ) -> str:
        async with session_maker() as db:
            image = GeneratedImage(
                owner_email=owner_email,
                original_path="https://cdn.posters.test/original.jpg",
                generated_path="https://cdn.posters.test/poster.png",
                style=style,
                sold_count=sold_count,
                committed_count=0,
            )
            if total_supply is not None:
                image.is_public = True
                image.review_status = "approved"
                image.total_supply = total_supply
                image.price_per_unit = Decimal(price)
                image.creator_share_rate = Decimal("0.16")
                image.published_at = datetime.now(timezone.utc)
            db.add(image)
            await db.commit()
            return image.id

    return _make_image


SHIPPING = {
    "first_name": "Lena",
    "last_name": "Meier",
    "email": "buyer@posters.test",
    "address": "Bahnhofstrasse 1",
    "city": "Zurich",
    "state": "ZH",
    "zip_code": "8001",
    "country": "Switzerland",
}


@pytest.fixture
def shipping():
    return dict(SHIPPING)
