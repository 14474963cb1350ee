import pytest
import uuid
from datetime import date, timedelta
from decimal import Decimal
from typing import AsyncGenerator
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from hms_billing.core.permissions import Caller, Permissions
from hms_billing.infrastructure.database import Base
from hms_billing.domain.billing.bills import BillService
from hms_billing.domain.billing.calculation import BillCalculationService
from hms_billing.domain.billing.items import BillItemService
from hms_billing.domain.billing.payments import PaymentService
from hms_billing.domain.billing.schemas import BillCreate, ManualItemCreate, PaymentCreate
from hms_billing.domain.insurance.schemas import InsuranceProviderCreate, PatientInsuranceCreate
from hms_billing.domain.insurance.service import InsuranceClaimService
import hms_billing.models  # noqa: F401


# In-memory database shared by every connection of one test
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


@pytest.fixture(scope="function")
async def db_engine():
    """Create a fresh schema for each test."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture(scope="function")
async def db(db_engine) -> AsyncGenerator[AsyncSession, None]:
    """Database session for one test."""
    session_factory = async_sessionmaker(
        db_engine, class_=AsyncSession, expire_on_commit=False, autoflush=False
    )
    async with session_factory() as session:
        try:
            yield session
        finally:
            await session.close()


@pytest.fixture(scope="function")
async def other_db(db_engine) -> AsyncGenerator[AsyncSession, None]:
    """A second session on the same database, for concurrent writers."""
    session_factory = async_sessionmaker(
        db_engine, class_=AsyncSession, expire_on_commit=False, autoflush=False
    )
    async with session_factory() as session:
        try:
            yield session
        finally:
            await session.close()


@pytest.fixture
async def client() -> AsyncGenerator[AsyncClient, None]:
    """HTTP client bound to the application shell."""
    from hms_billing.main import app

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


# Callers

@pytest.fixture
def caller() -> Caller:
    """Billing clerk allowed to run every billing operation."""
    return Caller(
        user_id=uuid.uuid4(),
        username="billing_clerk",
        permissions=[
            Permissions.BILLING_CREATE,
            Permissions.BILLING_READ,
            Permissions.BILLING_EDIT,
            Permissions.BILLING_DISCOUNT,
            Permissions.BILLING_VOID,
            Permissions.PAYMENTS_RECORD,
            Permissions.PAYMENTS_REFUND,
            Permissions.PAYMENTS_VOID,
            Permissions.CLAIMS_MANAGE,
            Permissions.CLAIMS_PROCESS,
        ],
    )


@pytest.fixture
def admin_caller() -> Caller:
    return Caller(user_id=uuid.uuid4(), username="admin", permissions=[Permissions.SYSTEM_ADMIN])


@pytest.fixture
def read_only_caller() -> Caller:
    return Caller(user_id=uuid.uuid4(), username="auditor", permissions=[Permissions.BILLING_READ])


# Services

@pytest.fixture
def bill_service(db: AsyncSession) -> BillService:
    return BillService(db)


@pytest.fixture
def calculation_service(db: AsyncSession) -> BillCalculationService:
    return BillCalculationService(db)


@pytest.fixture
def item_service(db: AsyncSession) -> BillItemService:
    return BillItemService(db)


@pytest.fixture
def payment_service(db: AsyncSession) -> PaymentService:
    return PaymentService(db)


@pytest.fixture
def claim_service(db: AsyncSession) -> InsuranceClaimService:
    return InsuranceClaimService(db)


# Data

@pytest.fixture
def patient_id() -> uuid.UUID:
    return uuid.uuid4()


@pytest.fixture
async def bill(bill_service: BillService, caller: Caller, patient_id: uuid.UUID):
    """An empty pending bill."""
    result = await bill_service.create_bill(BillCreate(patient_id=patient_id), caller)
    return result.data


@pytest.fixture
async def bill_with_items(bill, item_service: BillItemService, caller: Caller):
    """Bill with a 170.00 line (2 x 100 less 10 and 10%) and a 30.00 line: subtotal 200.00."""
    await item_service.add_manual_item(
        bill.id,
        ManualItemCreate(
            item_description="Ward dressing",
            quantity=2,
            unit_price=Decimal("100"),
            discount_amount=Decimal("10"),
            discount_percentage=Decimal("10"),
        ),
        caller,
    )
    await item_service.add_manual_item(
        bill.id,
        ManualItemCreate(item_description="Registration", quantity=1, unit_price=Decimal("30")),
        caller,
    )
    return bill


@pytest.fixture
async def paid_payment(bill_with_items, payment_service: PaymentService, caller: Caller):
    """A completed cash payment settling the 200.00 bill."""
    result = await payment_service.process_payment(
        bill_with_items.id, PaymentCreate(amount=Decimal("200.00"), payment_method="cash"), caller
    )
    return result.data["payment"]


@pytest.fixture
async def policy(claim_service: InsuranceClaimService, caller: Caller, patient_id: uuid.UUID):
    """Active policy: 200.00 deductible, 10% co-pay, no annual maximum."""
    provider = await claim_service.register_provider(
        InsuranceProviderCreate(name="National Health Mutual", code="NHM"), caller
    )
    result = await claim_service.register_policy(
        PatientInsuranceCreate(
            patient_id=patient_id,
            provider_id=provider.data["id"],
            policy_number="NHM-000123",
            policy_holder_name="Jane Doe",
            coverage_start_date=date.today() - timedelta(days=30),
            coverage_end_date=date.today() + timedelta(days=335),
            co_pay_percentage=Decimal("10"),
            deductible_amount=Decimal("200"),
        ),
        caller,
    )
    return result.data["id"]


@pytest.fixture
async def insured_bill(bill, item_service: BillItemService, caller: Caller):
    """Bill totalling 1000.00."""
    await item_service.add_manual_item(
        bill.id,
        ManualItemCreate(item_description="Appendectomy", quantity=1, unit_price=Decimal("1000")),
        caller,
    )
    return bill
