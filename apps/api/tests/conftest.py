from datetime import datetime, timezone

import pytest
import pytest_asyncio

from database import Base, build_engine, build_session_maker
from main import app
from services import daily_limit


class FrozenClock:
    """Settable clock injected into the ledger so tests control the billing period."""

    def __init__(self, moment: datetime):
        self.moment = moment

    def __call__(self) -> datetime:
        return self.moment

    def set(self, year: int, month: int, day: int = 15) -> None:
        self.moment = datetime(year, month, day, 12, 0, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def reset_local_daily_counters():
    """Keep in-memory daily-limit counters isolated between tests."""
    previous = getattr(app.state, "disable_rate_limits", False)
    app.state.disable_rate_limits = True
    daily_limit._local_counters.clear()
    yield
    daily_limit._local_counters.clear()
    app.state.disable_rate_limits = previous


@pytest.fixture
def clock():
    return FrozenClock(datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc))


@pytest_asyncio.fixture
async def session_maker(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield build_session_maker(engine)
    await engine.dispose()
