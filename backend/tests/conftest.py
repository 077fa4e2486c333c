"""Shared test infrastructure for the Grannhjalp test suite.

Provides:
- db_session: async SQLite in-memory session with all tables created
- settings: Settings with test Stripe credentials
- fake_gateway: StripeGateway stand-in with AsyncMock calls
- make_profile / make_need / make_offer: row factories
"""

import uuid
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

# Import Base first, then models to register all tables
from grannhjalp.infra.database import Base

import grannhjalp.domain.models  # noqa: F401

from grannhjalp.app.config import Settings
from grannhjalp.domain.enums import NeedStatus, OfferState
from grannhjalp.domain.models import HelpOffer, Need, Profile
from grannhjalp.infra.stripe_gateway import CheckoutSession, ConnectedAccount, Transfer


# ---------------------------------------------------------------------------
# Database session fixture
# ---------------------------------------------------------------------------

@pytest.fixture
async def db_session():
    """Async SQLite in-memory session with all tables created.

    Creates a fresh engine + tables for each test, yields a session,
    then rolls back and tears down.
    """
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    session_factory = async_sessionmaker(
        engine, class_=AsyncSession, expire_on_commit=False,
    )

    async with session_factory() as session:
        yield session
        await session.rollback()

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


# ---------------------------------------------------------------------------
# Settings and Stripe gateway
# ---------------------------------------------------------------------------

@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        stripe_secret_key="sk_test_123",
        stripe_webhook_secret="whsec_test_secret",
        commission_rate=Decimal("0.10"),
        frontend_url="http://app.test",
        transfer_max_attempts=3,
        debug=False,
    )


@pytest.fixture
def fake_gateway(settings):
    """Mock StripeGateway recording every upstream call.

    Checkout sessions and transfers get sequential ids so tests can assert
    how many were created.
    """
    gateway = MagicMock()
    gateway.settings = settings
    counter = {"session": 0, "transfer": 0}

    async def _create_session(**kwargs):
        counter["session"] += 1
        n = counter["session"]
        return CheckoutSession(id=f"cs_test_{n}", url=f"https://checkout.test/cs_test_{n}")

    async def _create_transfer(**kwargs):
        counter["transfer"] += 1
        return Transfer(
            id=f"tr_test_{counter['transfer']}",
            amount=kwargs["amount_minor"],
            destination=kwargs["destination"],
        )

    gateway.create_checkout_session = AsyncMock(side_effect=_create_session)
    gateway.expire_checkout_session = AsyncMock(return_value=None)
    gateway.create_transfer = AsyncMock(side_effect=_create_transfer)
    gateway.create_connected_account = AsyncMock(return_value="acct_new")
    gateway.create_account_onboarding_link = AsyncMock(
        return_value="https://connect.test/onboarding"
    )
    gateway.retrieve_account = AsyncMock(
        return_value=ConnectedAccount(id="acct_new", details_submitted=True, payouts_enabled=True)
    )
    return gateway


# ---------------------------------------------------------------------------
# Row factories
# ---------------------------------------------------------------------------

@pytest.fixture
def make_profile(db_session):
    """Factory that creates a Profile row.

    Usage:
        helper = await make_profile(stripe_account_id="acct_1", onboarded=True)
    """
    async def _factory(
        user_id: str | None = None,
        full_name: str = "Test Neighbor",
        phone: str | None = "+46701234567",
        apartment_number: str | None = "1201",
        building_name: str | None = "Hus A",
        stripe_account_id: str | None = None,
        onboarded: bool = False,
    ) -> Profile:
        profile = Profile(
            id=str(uuid.uuid4()),
            user_id=user_id or str(uuid.uuid4()),
            full_name=full_name,
            phone=phone,
            apartment_number=apartment_number,
            building_name=building_name,
            stripe_account_id=stripe_account_id,
            stripe_onboarding_complete=onboarded,
        )
        db_session.add(profile)
        await db_session.commit()
        return profile

    return _factory


@pytest.fixture
def make_need(db_session):
    """Factory that creates a Need row owned by *user_id*."""
    async def _factory(
        user_id: str | None = None,
        title: str = "Walk my dog",
        budget_amount: Decimal | None = Decimal("200.00"),
        budget_currency: str = "SEK",
        status: str = NeedStatus.OPEN.value,
    ) -> Need:
        need = Need(
            id=str(uuid.uuid4()),
            user_id=user_id or str(uuid.uuid4()),
            title=title,
            description="Twice a day this week",
            category="pet_care",
            budget_amount=budget_amount,
            budget_currency=budget_currency,
            status=status,
        )
        db_session.add(need)
        await db_session.commit()
        return need

    return _factory


@pytest.fixture
def make_offer(db_session):
    """Factory that creates a HelpOffer row in the given state."""
    async def _factory(
        need: Need,
        helper_user_id: str | None = None,
        state: OfferState = OfferState.HELPER_APPROVED,
    ) -> HelpOffer:
        offer = HelpOffer(
            id=str(uuid.uuid4()),
            need_id=need.id,
            helper_user_id=helper_user_id or str(uuid.uuid4()),
            message="Happy to help",
            state=state.value,
        )
        db_session.add(offer)
        await db_session.commit()
        return offer

    return _factory
