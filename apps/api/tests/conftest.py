from unittest.mock import patch

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from database import Base, get_db, get_session_factory
from main import app
from models.product import Product
from routers import rate_limit


@pytest.fixture(autouse=True)
def reset_local_rate_limit_counters():
    """Keep in-memory rate-limit state isolated between tests."""
    previous = getattr(app.state, "disable_rate_limits", False)
    app.state.disable_rate_limits = True
    rate_limit._local_counters.clear()
    yield
    rate_limit._local_counters.clear()
    app.state.disable_rate_limits = previous


@pytest_asyncio.fixture
async def session_maker(tmp_path):
    db_path = tmp_path / "audit.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}")
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield maker
    await engine.dispose()


@pytest_asyncio.fixture
async def product(session_maker):
    async with session_maker() as session:
        row = Product(
            id="prod-explorer-2000",
            slug="jackery-explorer-2000",
            brand="Jackery",
            model_name="Explorer 2000 Plus",
            category="Portable Power Station",
            technical_specs=[
                {"label": "Battery Capacity", "value": "2042Wh"},
                {"label": "AC Output", "value": "3000W"},
                {"label": "Weight", "value": "61.5 lbs"},
            ],
            weight_lbs=61.5,
            msrp_usd=2199.0,
        )
        session.add(row)
        await session.commit()
        return row


@pytest_asyncio.fixture
async def audit_client(session_maker):
    async def override_get_db():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_maker
    with patch("services.audit_runs.settings.AUDIT_DISPATCH_MODE", "none"):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            yield client

    app.dependency_overrides.pop(get_db, None)
    app.dependency_overrides.pop(get_session_factory, None)


STAGE1_OUTPUT = {"claim_profile": [{"label": "Battery Capacity", "value": "2042Wh"}]}
STAGE2_OUTPUT = {
    "independent_signal": {
        "most_praised": [{"text": "Charges from empty in two hours", "sources": 6}],
        "most_reported_issues": [{"text": "Fan is loud while charging", "sources": 4}],
    }
}
STAGE3_OUTPUT = {
    "reality_ledger": [{"label": "Battery Capacity", "value": "1850Wh (tested avg)"}],
    "red_flags": [
        {
            "claim": "2042Wh capacity",
            "reality": "1850Wh usable in testing",
            "severity": "moderate",
            "impact": "About 10% less runtime",
        }
    ],
}
STAGE4_OUTPUT = {
    "truth_index": 82,
    "score_interpretation": "Solid power station with a measurable capacity gap.",
    "strengths": ["Fast recharge"],
    "limitations": ["Verified: usable capacity below rating"],
}


@pytest.fixture
def stage_outputs():
    return {
        "stage_1": dict(STAGE1_OUTPUT),
        "stage_2": dict(STAGE2_OUTPUT),
        "stage_3": dict(STAGE3_OUTPUT),
        "stage_4": dict(STAGE4_OUTPUT),
    }
