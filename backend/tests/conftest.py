import asyncio
import os
import uuid
from collections.abc import Generator
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import pytest

# Point the module-level engine at sqlite before the app is imported.
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./cylinder-ledger-test.db")
os.environ.setdefault("CREDIT_EXPIRY_ENABLED", "false")

from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from cylinder_ledger.core import metrics
from cylinder_ledger.db.base import Base
import cylinder_ledger.models  # noqa: F401
from cylinder_ledger.schemas.credit import CreditCreate
from cylinder_ledger.services.policy import DepositPolicy


@pytest.fixture(scope="module")
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def session_factory(tmp_path) -> Generator[async_sessionmaker, None, None]:
    # File-backed so that separate sessions see each other's commits.
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}", poolclass=NullPool)
    factory = async_sessionmaker(engine, expire_on_commit=False, autoflush=False)

    async def init_models() -> None:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    asyncio.run(init_models())
    yield factory
    asyncio.run(engine.dispose())


@pytest.fixture
def policy() -> DepositPolicy:
    return DepositPolicy()


@pytest.fixture(autouse=True)
def _reset_metrics() -> Generator[None, None, None]:
    metrics.reset()
    yield
    metrics.reset()


@pytest.fixture
def make_credit():
    """Build a CreditCreate; opening charges the deposit by default so refunds have a balance."""

    def _build(
        *,
        customer_id: uuid.UUID | None = None,
        quantity: int = 3,
        unit: str = "1500.00",
        capacity: str = "13",
        deadline: date | None = None,
        grace_days: int | None = None,
        charge_deposit: bool = True,
    ) -> CreditCreate:
        return CreditCreate(
            order_id=uuid.uuid4(),
            customer_id=customer_id or uuid.uuid4(),
            product_id=uuid.uuid4(),
            capacity_l=Decimal(capacity),
            quantity=quantity,
            unit_credit_amount=Decimal(unit),
            currency_code="KES",
            return_deadline=deadline or datetime.now(timezone.utc).date() + timedelta(days=30),
            grace_period_days=grace_days,
            charge_deposit=charge_deposit,
        )

    return _build


@pytest.fixture
def client(session_factory) -> Generator["TestClient", None, None]:
    from fastapi.testclient import TestClient

    from cylinder_ledger.db.session import get_session
    from cylinder_ledger.main import app

    async def override_get_session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session
    test_client = TestClient(app)
    yield test_client
    test_client.close()
    app.dependency_overrides.clear()
