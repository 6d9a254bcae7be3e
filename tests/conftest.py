"""Pytest configuration and fixtures."""

import os

# Must be set before fieldwork.settings is imported anywhere
os.environ.setdefault("SQLALCHEMY_DATABASE_URI", "sqlite+aiosqlite:///:memory:")

from decimal import Decimal  # noqa: E402
from unittest.mock import AsyncMock  # noqa: E402

import pytest  # noqa: E402
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine  # noqa: E402

from fieldwork.db.models import AgentProfile, EvidenceItem, Job, PendingEarning, Property  # noqa: E402
from fieldwork.db.session import create_tables  # noqa: E402
from fieldwork.domain.sla import utcnow  # noqa: E402
from fieldwork.domain.states import EarningStatus  # noqa: E402

# Downtown Austin
AUSTIN = (30.2672, -97.7431)
# ~2.3 miles north of AUSTIN
NEAR_AUSTIN = (30.3000, -97.7500)
# ~74 miles from AUSTIN
SAN_ANTONIO = (29.4241, -98.4936)


@pytest.fixture
async def engine(tmp_path):
    # A file database gives every session its own connection, like Postgres does
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'fieldwork.db'}")
    await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(bind=engine, expire_on_commit=False, autoflush=False)


@pytest.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
async def property_row(session):
    prop = Property(
        address_line1="100 Congress Ave",
        city="Austin",
        state="TX",
        zip_code="78701",
        latitude=AUSTIN[0],
        longitude=AUSTIN[1],
    )
    session.add(prop)
    await session.commit()
    return prop


@pytest.fixture
def make_agent(session):
    async def _make(user_id, location=NEAR_AUSTIN, verified=True, coverage=25.0, payout_account_id="acct_1"):
        agent = AgentProfile(
            user_id=user_id,
            email=f"{user_id}@example.com",
            name=user_id.title(),
            home_base_lat=location[0],
            home_base_lng=location[1],
            coverage_radius_miles=coverage,
            verified=verified,
            payout_account_id=payout_account_id,
        )
        session.add(agent)
        await session.commit()
        return agent
    return _make


@pytest.fixture
def add_evidence(session):
    async def _add(job_id, count):
        for i in range(count):
            session.add(EvidenceItem(job_id=job_id, kind="photo", storage_key=f"{job_id}/{i}.jpg"))
        await session.commit()
    return _add


@pytest.fixture
def add_earning(session, property_row):
    """Seeds a completed job plus its PENDING earning for `payee_id`."""
    async def _add(payee_id, amount):
        now = utcnow()
        job = Job(
            property_id=property_row.id,
            status="completed",
            assigned_agent_id=payee_id,
            scope_preset="EXTERIOR_ONLY",
            payout_amount=Decimal(str(amount)),
            created_at=now,
            completed_at=now,
        )
        session.add(job)
        await session.flush()
        earning = PendingEarning(
            payee_id=payee_id,
            amount=Decimal(str(amount)),
            source_job_id=job.id,
            status=EarningStatus.PENDING,
            created_at=now,
        )
        session.add(earning)
        await session.commit()
        return earning
    return _add


@pytest.fixture
def email_channel():
    return AsyncMock()


@pytest.fixture
def push_channel():
    return AsyncMock()
