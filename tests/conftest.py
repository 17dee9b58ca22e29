from datetime import datetime, timezone

import pytest
import pytest_asyncio

from review_engine.clock import FixedClock
from review_engine.config import Settings
from review_engine.db.sqlite import connect, init_sqlite, transaction
from review_engine.engine import build_engine
from review_engine.errors import DeliveryError

# A Friday, noon UTC
T0 = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


class RecordingSender:
    """Sender that remembers what it delivered and can be told to fail per channel."""

    def __init__(self, failing=()):
        self.sent = []
        self.failing = set(failing)

    async def send(self, message, channel):
        if channel in self.failing:
            raise DeliveryError(f"{channel.value} unavailable")
        self.sent.append((message.id, channel))


@pytest.fixture
def clock():
    return FixedClock(T0)


@pytest.fixture
def config():
    return Settings(
        timezone="UTC",
        max_notifications_per_hour=10,
        notification_max_attempts=5,
        webhook_url=None,
    )


@pytest.fixture
def sender():
    return RecordingSender()


@pytest_asyncio.fixture
async def db(tmp_path):
    path = await init_sqlite(tmp_path)
    conn = await connect(path)
    yield conn
    await conn.close()


@pytest.fixture
def engine(db, clock, sender, config):
    return build_engine(db, clock=clock, sender=sender, config=config)


@pytest.fixture
def seed(engine, db):
    """Create a schedule through the service, then force its state."""

    async def _seed(learner_id, item_id, **state):
        queue = engine.review_queue
        schedule = await queue.schedule_item(learner_id, item_id)
        if not state:
            return schedule
        updated = schedule.model_copy(update={**state, "version": schedule.version + 1})
        async with transaction(db):
            await queue.schedules.save(updated, expected_version=schedule.version)
        return updated

    return _seed
