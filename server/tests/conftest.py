"""Test configuration and fixtures."""

import os

# Settings are read at import time; point them at throwaway resources first
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["BEARER_TOKEN_SECRET"] = "test-secret"
os.environ.setdefault("ENVIRONMENT", "development")

from decimal import Decimal  # noqa: E402

import jwt  # noqa: E402
import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
import respx  # noqa: E402
from httpx import AsyncClient  # noqa: E402
from sqlalchemy import event  # noqa: E402
from sqlalchemy.exc import OperationalError  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from tour_payments.core.config import (  # noqa: E402
    MpesaConfig,
    PesapalConfig,
    StripeConfig,
    settings,
)
from tour_payments.core.database import Base, get_db  # noqa: E402
from tour_payments.core.dependencies import get_gateway_registry  # noqa: E402
from tour_payments.gateways import (  # noqa: E402
    GatewayRegistry,
    MpesaGateway,
    PesapalGateway,
    StripeCheckoutGateway,
)
from tour_payments.models import Destination, PaymentMethod, PaymentTransaction, RateClass  # noqa: E402
from tour_payments.services.booking_store import BookingStore  # noqa: E402
from tour_payments.services.pricing_service import (  # noqa: E402
    PriceQuote,
    compute_total,
    currency_for,
    unit_price_for,
)

# Test database URL (in-memory SQLite for speed)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

TEST_API_BASE = "http://test"


@pytest_asyncio.fixture(scope="function")
async def test_engine():
    """Create a test database engine."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    # Create tables
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    # Drop tables
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return async_sessionmaker(
        test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


@pytest_asyncio.fixture(scope="function")
async def test_session(session_factory):
    """Create a test database session."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def pesapal_config():
    return PesapalConfig(
        consumer_key="pesapal-key",
        consumer_secret="pesapal-secret",
        ipn_id="ipn-registered",
        ipn_url=f"{TEST_API_BASE}/v1/callbacks/pesapal/ipn",
        callback_url=f"{TEST_API_BASE}/v1/callbacks/pesapal/return",
        timeout_seconds=2.0,
    )


@pytest.fixture
def mpesa_config():
    return MpesaConfig(
        consumer_key="mpesa-key",
        consumer_secret="mpesa-secret",
        business_shortcode="174379",
        passkey="mpesa-passkey",
        callback_url=f"{TEST_API_BASE}/v1/callbacks/mpesa",
        timeout_seconds=2.0,
    )


@pytest.fixture
def stripe_config():
    return StripeConfig(
        secret_key="sk_test_123",
        success_url=f"{TEST_API_BASE}/v1/callbacks/card/return?session_id={{CHECKOUT_SESSION_ID}}",
        cancel_url="http://localhost:8080/booking",
        timeout_seconds=2.0,
    )


@pytest.fixture
def gateways(pesapal_config, mpesa_config, stripe_config):
    """Gateway registry with fake credentials; HTTP is mocked with respx."""
    return GatewayRegistry(
        [
            StripeCheckoutGateway(stripe_config),
            MpesaGateway(mpesa_config),
            PesapalGateway(pesapal_config),
        ],
        bank=settings.bank_config(),
    )


@pytest.fixture
def gateway_mock():
    """Intercept outbound gateway HTTP calls; unmatched calls fail the test."""
    with respx.mock(assert_all_called=False) as router:
        yield router


@pytest_asyncio.fixture(scope="function")
async def test_app(test_session, gateways):
    """Create a test FastAPI application."""
    from fastapi import FastAPI
    from fastapi.exceptions import RequestValidationError
    from fastapi.middleware.cors import CORSMiddleware

    from tour_payments.core.exceptions import (
        ProblemDetailsException,
        generic_exception_handler,
        problem_details_handler,
        validation_exception_handler,
    )
    from tour_payments.routers import admin, callbacks, health, metrics, payments

    # Create a simplified test app without lifespan
    app = FastAPI(
        title="Tour Payments API (Test)",
        description="Test version of the API",
        version="1.0.0-test",
    )

    # Configure CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Simplified for tests
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "PATCH", "OPTIONS"],
        allow_headers=["*"],
    )

    # Register exception handlers
    app.add_exception_handler(ProblemDetailsException, problem_details_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)

    # Add inline health endpoints (like in main app)
    @app.get("/health")
    async def health_check():
        return {
            "status": "healthy",
            "service": "tour-payments-api",
            "version": "1.0.0",
            "environment": "test",
            "debug": True,
        }

    @app.get("/ready")
    async def readiness_check():
        return {
            "status": "ready",
            "service": "tour-payments-api",
            "checks": {"database": "ok"},
        }

    @app.get("/info")
    async def service_info():
        return {
            "service": "tour-payments-api",
            "version": "1.0.0",
            "environment": "test",
            "features": {
                "authentication": True,
                "idempotency": True,
                "problem_details": True,
            },
            "payment_methods": ["card", "mpesa", "pesapal", "bank_transfer"],
        }

    # Register API routers
    app.include_router(health.router)
    app.include_router(payments.router)
    app.include_router(callbacks.router)
    app.include_router(admin.router)
    app.include_router(metrics.router)

    # Override database and gateway dependencies
    async def override_get_db():
        yield test_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_gateway_registry] = lambda: gateways

    yield app

    # Clean up
    app.dependency_overrides.clear()


@pytest_asyncio.fixture(scope="function")
async def test_client(test_app):
    """Create a test HTTP client."""
    from httpx import ASGITransport
    transport = ASGITransport(app=test_app)
    async with AsyncClient(transport=transport, base_url=TEST_API_BASE) as client:
        yield client


def _token(sub: str, roles: list[str]) -> str:
    return jwt.encode(
        {"sub": sub, "email": f"{sub}@example.com", "roles": roles},
        settings.bearer_token_secret,
        algorithm="HS256",
    )


@pytest.fixture
def auth_headers():
    return {"Authorization": f"Bearer {_token('user-1', [])}"}


@pytest.fixture
def other_user_headers():
    return {"Authorization": f"Bearer {_token('user-2', [])}"}


@pytest.fixture
def admin_headers():
    return {"Authorization": f"Bearer {_token('admin-1', ['admin'])}"}


@pytest_asyncio.fixture
async def destination(test_session):
    """Destination priced 1000 KES (citizen), 1500 and 3000 USD (resident, non-resident)."""
    destination = Destination(
        title="Maasai Mara Safari",
        description="Three days in the Mara",
        citizen_price=Decimal("1000.00"),
        resident_price=Decimal("1500.00"),
        non_resident_price=Decimal("3000.00"),
    )
    test_session.add(destination)
    await test_session.commit()
    return destination


@pytest.fixture
def make_booking(test_session, destination):
    """Factory for pending bookings, optionally already carrying a tracking id."""
    store = BookingStore(test_session)

    async def _make(
        payment_method=PaymentMethod.PESAPAL,
        tracking_id=None,
        rate_class=RateClass.CITIZEN,
        participants=2,
        payer_msisdn=None,
        user_id="user-1",
    ):
        unit_price = unit_price_for(destination, rate_class)
        quote = PriceQuote(
            unit_price=unit_price,
            total_amount=compute_total(unit_price, participants),
            currency=currency_for(rate_class, settings.local_currency, settings.settlement_currency),
            rate_class=rate_class,
            item_title=destination.title,
        )
        booking = await store.create_pending(
            destination_id=destination.id,
            user_id=user_id,
            customer_name="Jane Wanjiru",
            customer_email="jane@example.com",
            customer_phone="0712345678",
            participants=participants,
            quote=quote,
            payment_method=payment_method,
            payer_msisdn=payer_msisdn,
        )
        if tracking_id:
            await store.attach_tracking(booking.id, tracking_id)
        return await store.get(booking.id)

    return _make


@pytest.fixture
def failing_audit_writes(test_session):
    """Make every flush that writes a payment transaction fail like a locked database."""

    def _reject_audit(session, flush_context, instances):
        pending = list(session.new) + list(session.dirty)
        if any(isinstance(obj, PaymentTransaction) for obj in pending):
            raise OperationalError(
                "INSERT INTO payment_transactions", {}, Exception("database is locked")
            )

    sync_session = test_session.sync_session
    event.listen(sync_session, "before_flush", _reject_audit)
    yield
    event.remove(sync_session, "before_flush", _reject_audit)


@pytest.fixture
def initiate_payload(destination):
    """Valid initiation body for two citizens (2000 KES)."""
    return {
        "destination_id": destination.id,
        "participants": 2,
        "customer_name": "Jane Wanjiru",
        "customer_email": "jane@example.com",
        "customer_phone": "0712345678",
        "rate_class": "citizen",
        "client_declared_amount": "2000.00",
        "payment_method": "pesapal",
    }


@pytest.fixture
def stk_callback():
    """Build a Daraja STK push result envelope."""

    def _build(
        checkout_request_id,
        result_code=0,
        amount=2000,
        phone=254712345678,
        receipt="QK12ABC345",
    ):
        callback = {
            "MerchantRequestID": "29115-34620561-1",
            "CheckoutRequestID": checkout_request_id,
            "ResultCode": result_code,
            "ResultDesc": "The service request is processed successfully."
            if result_code == 0 else "Request cancelled by user",
        }
        if result_code == 0:
            callback["CallbackMetadata"] = {
                "Item": [
                    {"Name": "Amount", "Value": amount},
                    {"Name": "MpesaReceiptNumber", "Value": receipt},
                    {"Name": "TransactionDate", "Value": 20250802123000},
                    {"Name": "PhoneNumber", "Value": phone},
                ]
            }
        return {"Body": {"stkCallback": callback}}

    return _build
