"""Test configuration and fixtures."""

import os

# Settings are read at import time, so the environment is fixed before the
# package is imported.
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"
os.environ["DATABASE_URL"] = TEST_DATABASE_URL
os.environ["ENVIRONMENT"] = "test"
os.environ["CRON_SECRET"] = "test-cron-secret"
os.environ["BEARER_TOKEN_SECRET"] = "test-bearer-secret"
os.environ["WORKERS_ENABLED"] = "false"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test"

from datetime import date, datetime, timedelta  # noqa: E402
from uuid import uuid4  # noqa: E402

import jwt  # noqa: E402
import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy import update  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from retreat_engine.core.database import Base  # noqa: E402
from retreat_engine.core.dependencies import get_db, get_gateway, get_notifier  # noqa: E402
from retreat_engine.models import *  # noqa: E402,F403 - Import all models
from retreat_engine.models import (  # noqa: E402
    Booking,
    BookingStatus,
    PaymentSchedule,
    PaymentStatus,
    PromoCode,
    Retreat,
    Room,
    ScheduleStatus,
)
from retreat_engine.services.checkout_service import generate_booking_number  # noqa: E402
from retreat_engine.services.gateway import ChargeResult, ChargeStatus  # noqa: E402

NOW = datetime.utcnow().replace(microsecond=0)
TODAY = NOW.date()

CRON_HEADERS = {"Authorization": "Bearer test-cron-secret"}


class FakeGateway:
    """
    In-memory payment gateway.

    Charges succeed unless outcomes are queued with ``script``; a queued
    exception is raised from ``create_charge`` instead of returned.
    """

    def __init__(self):
        self.outcomes: list[ChargeStatus | Exception] = []
        self.charges: list[dict] = []
        self.customers: list[dict] = []
        self.links: list[dict] = []
        self.fail_links = False
        self.fail_customers = False

    def script(self, *outcomes: ChargeStatus | Exception) -> None:
        self.outcomes.extend(outcomes)

    @property
    def idempotency_keys(self) -> list[str]:
        return [charge["idempotency_key"] for charge in self.charges]

    async def create_charge(
        self,
        customer_ref,
        instrument_ref,
        amount,
        currency,
        idempotency_key,
        metadata,
    ) -> ChargeResult:
        self.charges.append(
            {
                "customer_ref": customer_ref,
                "instrument_ref": instrument_ref,
                "amount": amount,
                "currency": currency,
                "idempotency_key": idempotency_key,
                "metadata": metadata,
            }
        )
        outcome = self.outcomes.pop(0) if self.outcomes else ChargeStatus.SUCCEEDED
        if isinstance(outcome, Exception):
            raise outcome

        charge_id = f"pi_{uuid4().hex[:16]}"
        if outcome == ChargeStatus.FAILED:
            return ChargeResult(outcome, id=charge_id, failure_reason="Your card was declined.")
        if outcome == ChargeStatus.REQUIRES_ACTION:
            return ChargeResult(
                outcome,
                id=charge_id,
                failure_reason="Requires customer action (3D Secure authentication)",
            )
        return ChargeResult(outcome, id=charge_id)

    async def create_customer(self, email, name) -> str:
        if self.fail_customers:
            from retreat_engine.services.gateway import GatewayError

            raise GatewayError("Stripe is unavailable")
        self.customers.append({"email": email, "name": name})
        return f"cus_{uuid4().hex[:12]}"

    async def create_payment_link(self, amount, currency, description, metadata) -> str:
        if self.fail_links:
            from retreat_engine.services.gateway import GatewayError

            raise GatewayError("Payment links are unavailable")
        self.links.append({"amount": amount, "description": description, "metadata": metadata})
        return f"https://pay.example.com/link/{len(self.links)}"


class RecordingNotifier:
    """Notification sender that keeps every message; kinds in ``failing`` raise."""

    def __init__(self):
        self.sent: list[tuple] = []
        self.failing: set = set()

    async def send(self, kind, recipient, data) -> None:
        if kind in self.failing:
            raise RuntimeError("Mail relay unavailable")
        self.sent.append((kind, recipient, data))

    def kinds(self) -> list:
        return [kind for kind, _, _ in self.sent]

    def of(self, kind) -> list[tuple]:
        return [message for message in self.sent if message[0] == kind]


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


@pytest_asyncio.fixture(scope="function")
async def test_session(test_engine):
    """Create a test database session."""
    async_session = async_sessionmaker(
        test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )

    async with async_session() as session:
        yield session


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def notifier():
    return RecordingNotifier()


async def create_retreat(
    session: AsyncSession,
    start_date: date | None = None,
    base_price: int = 100000,
    early_bird_enabled: bool = True,
    early_bird_deadline: date | None = None,
) -> Retreat:
    start_date = start_date or TODAY + timedelta(days=200)
    retreat = Retreat(
        title="Silent Mountain Retreat",
        slug=f"silent-mountain-{uuid4().hex[:8]}",
        start_date=start_date,
        end_date=start_date + timedelta(days=7),
        base_price=base_price,
        early_bird_enabled=early_bird_enabled,
        early_bird_deadline=early_bird_deadline,
    )
    session.add(retreat)
    await session.commit()
    return retreat


async def create_room(
    session: AsyncSession,
    retreat: Retreat,
    capacity: int = 2,
    available: int | None = None,
    price: int | None = None,
    name: str = "Garden double",
) -> Room:
    room = Room(
        retreat_id=retreat.id,
        name=name,
        price=price,
        capacity=capacity,
        available=capacity if available is None else available,
    )
    session.add(room)
    await session.commit()
    return room


async def create_booking(
    session: AsyncSession,
    retreat: Retreat,
    room: Room | None = None,
    guests_count: int = 1,
    amounts: tuple[int, ...] = (10000, 50000, 40000),
    due_dates: tuple[date, ...] | None = None,
    status: BookingStatus = BookingStatus.PENDING,
    schedule_statuses: tuple[ScheduleStatus, ...] | None = None,
    with_payment_method: bool = True,
    email: str = "guest@example.com",
) -> Booking:
    """
    Insert a booking with its schedule rows as checkout would leave them.

    A booking with a room takes its places from the room's counter with
    the same conditional UPDATE the allocator uses.
    """
    due_dates = due_dates or tuple(TODAY for _ in amounts)
    schedule_statuses = schedule_statuses or tuple(ScheduleStatus.PENDING for _ in amounts)
    paid = sum(a for a, s in zip(amounts, schedule_statuses) if s == ScheduleStatus.PAID)

    booking = Booking(
        booking_number=generate_booking_number(),
        retreat_id=retreat.id,
        room_id=room.id if room else None,
        email=email,
        first_name="Ada",
        last_name="Guest",
        guests_count=guests_count,
        total_amount=sum(amounts),
        balance_due=sum(amounts) - paid,
        early_bird_discount=0,
        promo_discount=0,
        currency="eur",
        payment_type="deposit",
        status=status,
        payment_status=(
            PaymentStatus.PAID if paid == sum(amounts)
            else PaymentStatus.PARTIAL if paid else PaymentStatus.UNPAID
        ),
        gateway_customer_id="cus_test" if with_payment_method else None,
        gateway_payment_method_id="pm_test" if with_payment_method else None,
    )
    session.add(booking)
    await session.flush()

    for number, (amount, due, schedule_status) in enumerate(
        zip(amounts, due_dates, schedule_statuses), start=1
    ):
        session.add(
            PaymentSchedule(
                booking_id=booking.id,
                payment_number=number,
                kind="deposit" if number == 1 else "balance",
                description=f"Installment {number}",
                amount=amount,
                due_date=due,
                status=schedule_status,
                attempts=0,
                max_attempts=3,
                paid_at=NOW if schedule_status == ScheduleStatus.PAID else None,
            )
        )

    if room is not None:
        taken = await session.execute(
            update(Room)
            .where(Room.id == room.id, Room.available >= guests_count)
            .values(available=Room.available - guests_count)
            .execution_options(synchronize_session=False)
        )
        assert taken.rowcount == 1, "room is full"
    await session.commit()
    if room is not None:
        await session.refresh(room)
    return booking


async def create_promo(
    session: AsyncSession,
    code: str = "SPRING20",
    discount_type: str = "percentage",
    discount_value: int = 20,
    max_uses: int | None = None,
    current_uses: int = 0,
    retreat: Retreat | None = None,
) -> PromoCode:
    promo = PromoCode(
        code=code,
        discount_type=discount_type,
        discount_value=discount_value,
        max_uses=max_uses,
        current_uses=current_uses,
        is_active=True,
        retreat_id=retreat.id if retreat else None,
    )
    session.add(promo)
    await session.commit()
    return promo


@pytest_asyncio.fixture
async def retreat(test_session):
    return await create_retreat(test_session)


@pytest_asyncio.fixture
async def room(test_session, retreat):
    return await create_room(test_session, retreat)


def make_token(roles: list[str], sub: str = "user_1") -> str:
    return jwt.encode(
        {"sub": sub, "email": f"{sub}@example.com", "roles": roles},
        "test-bearer-secret",
        algorithm="HS256",
    )


@pytest.fixture
def admin_headers():
    return {"Authorization": f"Bearer {make_token(['admin'], sub='admin')}"}


@pytest.fixture
def guest_headers():
    return {"Authorization": f"Bearer {make_token(['guest'])}"}


@pytest_asyncio.fixture(scope="function")
async def test_app(test_session, gateway, notifier):
    """Create the application without its lifespan, wired to the test doubles."""
    from retreat_engine.main import create_app

    app = create_app(use_lifespan=False)

    # Override dependencies
    async def override_get_db():
        yield test_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_gateway] = lambda: gateway
    app.dependency_overrides[get_notifier] = lambda: notifier

    yield app

    # Clean up
    app.dependency_overrides.clear()


@pytest_asyncio.fixture(scope="function")
async def test_client(test_app):
    """Create a test HTTP client."""
    transport = ASGITransport(app=test_app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
