import os
import tempfile
from datetime import timedelta

# Settings are read at import time; point them at a throwaway SQLite file first
_TMP_DIR = tempfile.mkdtemp(prefix="canvas-billing-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{_TMP_DIR}/import.db"
os.environ["DEBUG"] = "true"
os.environ["POLAR_WEBHOOK_SECRET"] = ""
os.environ["RESEND_API_KEY"] = ""

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from canvas_billing.models import Base
from canvas_billing.models.subscription import Subscription
from canvas_billing.models.user import User
from canvas_billing.queue import set_queue
from canvas_billing.utils import now_utc


class FakeQueue:
    """Records enqueued jobs. A repeated job id is ignored, as ARQ does."""

    def __init__(self):
        self.jobs = []
        self._job_ids = set()

    async def enqueue_job(self, function, *args, _job_id=None, _defer_until=None, **kwargs):
        if _job_id is not None:
            if _job_id in self._job_ids:
                return None
            self._job_ids.add(_job_id)
        job = {"function": function, "args": args, "job_id": _job_id, "defer_until": _defer_until}
        self.jobs.append(job)
        return job

    def named(self, name):
        return [job for job in self.jobs if job["function"] == "handle_billing_event" and job["args"][0] == name]


@pytest.fixture(autouse=True)
def queue():
    fake = FakeQueue()
    set_queue(fake)
    yield fake
    set_queue(None)


@pytest_asyncio.fixture
async def session_maker(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'billing.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


@pytest_asyncio.fixture
async def db(session_maker):
    async with session_maker() as session:
        yield session


@pytest.fixture
def make_user(db):
    async def _make(email="user@example.com", is_active=True):
        user = User(email=email, is_active=is_active)
        db.add(user)
        await db.commit()
        return user

    return _make


@pytest.fixture
def make_subscription(db):
    async def _make(user, provider_subscription_id="sub_1", status="active", **fields):
        fields.setdefault("current_period_end", now_utc() + timedelta(days=30))
        sub = Subscription(
            user_id=user.id,
            provider_subscription_id=provider_subscription_id,
            status=status,
            **fields,
        )
        db.add(sub)
        await db.commit()
        return sub

    return _make
