import os
from datetime import date, datetime, timezone
from types import SimpleNamespace

import pytest
import pytest_asyncio

# Keep real providers out of the test run before config is imported
os.environ.pop("OPENAI_API_KEY", None)
os.environ.pop("RESEND_API_KEY", None)
os.environ.pop("AIRTABLE_API_KEY", None)

import db
from app.services.nudge_ai import NudgeMessageGenerator
from app.services.nudge_engine import NudgeEngine
from app.services.nudge_settings import EnvSettingsProvider, SettingsCache
from app.types.nudge_contract import EmailResult

NOW = datetime(2026, 10, 18, 10, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


class FakeEmailSender:
    """Records every send; fails for addresses listed in `fail_for`."""

    def __init__(self, fail_for=()):
        self.fail_for = set(fail_for)
        self.calls = []

    async def __call__(self, template_key, to, variables):
        self.calls.append((template_key, to, dict(variables)))
        if to in self.fail_for:
            return EmailResult(success=False, error="Resend 422: invalid recipient")
        return EmailResult(success=True, message_id=f"msg-{len(self.calls)}")


def fake_openai(content=None, exc=None):
    """Minimal stand-in for AsyncOpenAI exposing chat.completions.create."""

    async def create(**kwargs):
        if exc is not None:
            raise exc
        message = SimpleNamespace(content=content)
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])

    return SimpleNamespace(chat=SimpleNamespace(completions=SimpleNamespace(create=create)))


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def email_sender():
    return FakeEmailSender()


@pytest.fixture
def nudge_env():
    return {
        "NUDGE_ENABLED": "true",
        "NUDGE_DEADLINE_DAYS": "7,3,1",
        "NUDGE_COUNTDOWN_DAYS": "30,14,7,3,1",
        "NUDGE_OVERDUE_DAYS": "1,3,7",
        "NUDGE_QUIET_HOURS_START": "22",
        "NUDGE_QUIET_HOURS_END": "8",
        "NUDGE_MAX_PER_DAY_PER_USER": "5",
    }


@pytest.fixture
def make_engine(clock, email_sender, nudge_env):
    def _make(generator=None, sender=None, env=None):
        cache = SettingsCache(EnvSettingsProvider(env or nudge_env), clock=clock)
        return NudgeEngine(
            cache,
            generator or NudgeMessageGenerator(client=None),
            send_email=sender or email_sender,
            clock=clock,
        )

    return _make


@pytest_asyncio.fixture
async def database(tmp_path, monkeypatch):
    """Fresh SQLite database behind the module-level db engine."""
    monkeypatch.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path / 'nudge.db'}")
    await db.dispose_engine()
    await db.create_all()
    yield
    await db.dispose_engine()


async def add_rows(*rows):
    async with db.session_scope() as s:
        s.add_all(rows)
        await s.commit()


async def seed_trip(
    *,
    start=date(2026, 10, 25),
    end=date(2026, 10, 28),
    status="active",
    slug="keys-tarpon",
    participants=(),
    tasks=(),
):
    """Insert a trip plus participants/tasks given as dicts; returns the trip."""
    trip = db.Trip(
        slug=slug,
        title="Keys Tarpon Week",
        status=status,
        region="Florida Keys",
        dates_start=start,
        dates_end=end,
        target_species=["tarpon", "permit"],
        user_id="owner-1",
    )
    await add_rows(trip)
    for i, p in enumerate(participants):
        row = {
            "role": "participant",
            "status": "confirmed",
            "name": f"Angler {i}",
            "created_at": datetime(2026, 1, 1, 0, i, tzinfo=timezone.utc),
            **p,
        }
        await add_rows(db.Participant(trip_id=trip.id, **row))
    for t in tasks:
        await add_rows(db.Task(trip_id=trip.id, **{"type": "booking", "title": "Book guide", **t}))
    return trip


async def ledger(**filters):
    from sqlalchemy import select

    async with db.session_scope() as s:
        stmt = select(db.Notification).order_by(db.Notification.created_at, db.Notification.channel)
        for key, value in filters.items():
            stmt = stmt.where(getattr(db.Notification, key) == value)
        res = await s.execute(stmt)
        return list(res.scalars())
