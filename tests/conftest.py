import os
import sys
from datetime import date
from pathlib import Path

os.environ.setdefault("OTEL_TRACES_EXPORTER", "none")


def _configure_path() -> None:
    src_path = Path(__file__).resolve().parents[1] / "src"
    if src_path.exists():
        sys.path.insert(0, str(src_path))


_configure_path()

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402

import atlalli_api.models  # noqa: E402,F401
from atlalli_api.app import create_app  # noqa: E402
from atlalli_api.db.base import Base  # noqa: E402
from atlalli_api.models.coupon import CouponTier  # noqa: E402
from atlalli_api.observability.redemption import get_redemption_store  # noqa: E402
from atlalli_api.services.redemption import (  # noqa: E402
    CouponRef,
    InMemoryCouponCatalog,
    InMemoryRedemptionLedger,
    RedemptionService,
)
from atlalli_api.services.secrets.venues import VenueKeyStore  # noqa: E402

# 2026-09-21T21:46:40Z
BASE_TIME = 1_790_027_200

VENUE_SECRETS = {
    "v1": "venue-one-secret",
    "v2": "venue-two-secret",
}


class FakeClock:
    def __init__(self, now: int = BASE_TIME) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: int) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def key_store() -> VenueKeyStore:
    return VenueKeyStore.from_mapping(VENUE_SECRETS)


@pytest.fixture
def catalog() -> InMemoryCouponCatalog:
    return InMemoryCouponCatalog(
        [
            CouponRef(id="p1", end_date=date(2026, 12, 31), venue_ids=frozenset({"v1", "v2"})),
            CouponRef(
                id="p-premium",
                end_date=date(2026, 12, 31),
                tier=CouponTier.PREMIUM,
                venue_ids=frozenset({"v1"}),
            ),
            CouponRef(id="p-ended", end_date=date(2026, 1, 31), venue_ids=frozenset({"v1"})),
        ]
    )


@pytest.fixture
def ledger() -> InMemoryRedemptionLedger:
    return InMemoryRedemptionLedger()


@pytest.fixture
def redemption_service(key_store, ledger, catalog, clock) -> RedemptionService:
    get_redemption_store().reset()
    return RedemptionService.from_key_store(
        key_store,
        ledger=ledger,
        catalog=catalog,
        clock=clock,
        refresh_window_seconds=30,
        static_link_max_age_seconds=60,
    )


@pytest_asyncio.fixture
async def session_factory():
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", future=True)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

    try:
        yield factory
    finally:
        await engine.dispose()


@pytest_asyncio.fixture
async def file_session_factory(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}", future=True)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

    try:
        yield factory
    finally:
        await engine.dispose()


@pytest_asyncio.fixture
async def api_client(redemption_service):
    app = create_app(redemption_service=redemption_service)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client
