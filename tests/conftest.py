import uuid
from datetime import datetime, timedelta, timezone

import pytest

from leadengine.config import Settings
from leadengine.db.database import build_engine, build_session_factory, init_db
from leadengine.db.models import User
from tests.factories import add_rows, make_booking, make_partner


@pytest.fixture
def settings() -> Settings:
    return Settings(_env_file=None, scheduler_enabled=False)


@pytest.fixture
async def engine(tmp_path):
    """Fresh file-backed SQLite database per test."""
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'leads.db'}")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
async def partner(session_factory):
    row = make_partner()
    await add_rows(session_factory, row)
    return row


@pytest.fixture
async def second_partner(session_factory):
    row = make_partner(
        name="Shine Partners",
        created_at=datetime.now(timezone.utc) + timedelta(seconds=1),
    )
    await add_rows(session_factory, row)
    return row


@pytest.fixture
async def booking(session_factory):
    row = make_booking()
    await add_rows(session_factory, row)
    return row


@pytest.fixture
async def user(session_factory):
    row = User(id=uuid.uuid4(), phone="9876543210", name="Asha", email="")
    await add_rows(session_factory, row)
    return row


@pytest.fixture
def intake(session_factory, settings):
    from leadengine.intake.pipeline import DemandIntake
    return DemandIntake(session_factory, settings)


@pytest.fixture
def bidding(session_factory):
    from leadengine.bidding.engine import BiddingEngine
    return BiddingEngine(session_factory)


@pytest.fixture
async def open_lead(intake, booking):
    """A booking lead in awaiting_bid."""
    return await intake.from_booking(booking.id)
