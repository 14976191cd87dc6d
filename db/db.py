"""
Async DB helpers for the nudge engine.
Uses SQLAlchemy 2.0 + asyncpg driver – no raw SQL strings in app code.

Trips, tasks, participants and trip events belong to the planner service;
this module only reads them (plus one stamp on tasks). The notification
ledger (`trip_notifications`) is owned here.
"""

from __future__ import annotations

import os
from contextlib import asynccontextmanager
from datetime import date, datetime, timezone
from typing import Any, AsyncIterator
from uuid import uuid4

from sqlalchemy import (
    JSON, Date, DateTime, ForeignKey, Index, String, Text, func, select, update
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import (
    DeclarativeBase, Mapped, mapped_column
)
from sqlalchemy.ext.asyncio import (
    create_async_engine, async_sessionmaker, AsyncSession
)

# ──────────────────────────────────────────────────────────────────────
# 1. Declarative metadata
# ──────────────────────────────────────────────────────────────────────
class Base(DeclarativeBase):
    pass

# ──────────────────────────────────────────────────────────────────────
# 2. Lazy engine / session factory
# ──────────────────────────────────────────────────────────────────────
_engine = None
_session_maker: async_sessionmaker[AsyncSession] | None = None

def _build_url() -> str:
    url = os.getenv("DATABASE_URL") or os.getenv("DATABASE_PUBLIC_URL")
    if not url:
        raise RuntimeError("DATABASE_URL not set")
    if "+asyncpg" not in url:
        url = url.replace("postgres://", "postgresql+asyncpg://", 1).replace(
            "postgresql://", "postgresql+asyncpg://", 1
        )
    return url

def get_engine():
    global _engine
    if _engine is None:
        _engine = create_async_engine(_build_url(), pool_size=5, max_overflow=5)
    return _engine

@asynccontextmanager
async def session_scope() -> AsyncIterator[AsyncSession]:
    """One session per statement-level unit of work."""
    global _session_maker
    if _session_maker is None:
        _session_maker = async_sessionmaker(get_engine(), expire_on_commit=False)
    async with _session_maker() as session:
        yield session


def _uuid() -> str:
    return str(uuid4())


def utc(dt: datetime | None) -> datetime | None:
    """Normalise a stored timestamp to an aware UTC datetime."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)

# ──────────────────────────────────────────────────────────────────────
# 3. ORM models
# ──────────────────────────────────────────────────────────────────────

class Trip(Base):
    __tablename__ = "trips"

    id:             Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    slug:           Mapped[str] = mapped_column(String(100), unique=True)
    user_id:        Mapped[str | None] = mapped_column(String(100))
    title:          Mapped[str] = mapped_column(String(300))
    status:         Mapped[str] = mapped_column(String(30), default="draft")
    region:         Mapped[str | None] = mapped_column(String(200))
    dates_start:    Mapped[date | None] = mapped_column(Date)
    dates_end:      Mapped[date | None] = mapped_column(Date)
    target_species: Mapped[list[str] | None] = mapped_column(JSON)
    created_at:     Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class Participant(Base):
    __tablename__ = "trip_participants"

    id:         Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    trip_id:    Mapped[str] = mapped_column(ForeignKey("trips.id", ondelete="CASCADE"), index=True)
    user_id:    Mapped[str | None] = mapped_column(String(100))
    name:       Mapped[str] = mapped_column(String(200))
    email:      Mapped[str | None] = mapped_column(String(200))
    role:       Mapped[str] = mapped_column(String(20), default="participant")
    status:     Mapped[str] = mapped_column(String(20), default="invited")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class Task(Base):
    __tablename__ = "trip_tasks"

    id:               Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    trip_id:          Mapped[str] = mapped_column(ForeignKey("trips.id", ondelete="CASCADE"), index=True)
    type:             Mapped[str] = mapped_column(String(30))
    title:            Mapped[str] = mapped_column(String(300))
    assigned_to:      Mapped[str | None] = mapped_column(ForeignKey("trip_participants.id"))
    deadline:         Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    status:           Mapped[str] = mapped_column(String(30), default="pending")
    automation_mode:  Mapped[str | None] = mapped_column(String(20), default="remind")
    last_reminder_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at:       Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class TripEvent(Base):
    __tablename__ = "trip_events"

    id:         Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    trip_id:    Mapped[str] = mapped_column(ForeignKey("trips.id", ondelete="CASCADE"), index=True)
    event_type: Mapped[str] = mapped_column(String(50))
    actor:      Mapped[str] = mapped_column(String(20))
    actor_id:   Mapped[str | None] = mapped_column(String(100))
    payload:    Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class Notification(Base):
    __tablename__ = "trip_notifications"

    id:              Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    trip_id:         Mapped[str] = mapped_column(ForeignKey("trips.id", ondelete="CASCADE"))
    task_id:         Mapped[str | None] = mapped_column(ForeignKey("trip_tasks.id", ondelete="CASCADE"))
    participant_id:  Mapped[str] = mapped_column(ForeignKey("trip_participants.id", ondelete="CASCADE"))
    trigger_type:    Mapped[str] = mapped_column(String(30))
    channel:         Mapped[str] = mapped_column(String(20), default="email")
    status:          Mapped[str] = mapped_column(String(20), default="pending")
    scheduled_at:    Mapped[datetime] = mapped_column(DateTime(timezone=True))
    sent_at:         Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    message_subject: Mapped[str | None] = mapped_column(String(300))
    message_text:    Mapped[str | None] = mapped_column(Text)
    error:           Mapped[str | None] = mapped_column(Text)
    # "metadata" is reserved on declarative classes
    meta:            Mapped[dict[str, Any]] = mapped_column("metadata", JSON, default=dict)
    dedup_key:       Mapped[str | None] = mapped_column(String(300))
    created_at:      Mapped[datetime] = mapped_column(DateTime(timezone=True))
    read_at:         Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        Index("uq_notifications_dedup_key", "dedup_key", unique=True),
        Index("idx_notifications_trip", "trip_id"),
        Index("idx_notifications_status", "status"),
        Index("idx_notifications_participant", "participant_id"),
    )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "trip_id": self.trip_id,
            "task_id": self.task_id,
            "participant_id": self.participant_id,
            "trigger_type": self.trigger_type,
            "channel": self.channel,
            "status": self.status,
            "scheduled_at": utc(self.scheduled_at),
            "sent_at": utc(self.sent_at),
            "message_subject": self.message_subject,
            "message_text": self.message_text,
            "error": self.error,
            "metadata": self.meta or {},
            "created_at": utc(self.created_at),
            "read_at": utc(self.read_at),
        }


# ──────────────────────────────────────────────────────────────────────
# 4. DDL helper (tests and local dev; production uses Alembic)
# ──────────────────────────────────────────────────────────────────────
async def create_all():
    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


# ──────────────────────────────────────────────────────────────────────
# 5. Trip / task / participant reads
# ──────────────────────────────────────────────────────────────────────

CLOSED_TASK_STATUSES = ("completed", "skipped")


async def fetch_active_trips() -> list[Trip]:
    async with session_scope() as s:
        stmt = (
            select(Trip)
            .where(Trip.status == "active", Trip.dates_start.is_not(None))
            .order_by(Trip.dates_start, Trip.id)
        )
        res = await s.execute(stmt)
        return list(res.scalars())


async def get_trip(trip_id: str) -> Trip | None:
    async with session_scope() as s:
        return await s.get(Trip, trip_id)


async def fetch_open_tasks(trip_id: str) -> list[Task]:
    async with session_scope() as s:
        stmt = (
            select(Task)
            .where(Task.trip_id == trip_id, Task.status.not_in(CLOSED_TASK_STATUSES))
            .order_by(Task.deadline, Task.id)
        )
        res = await s.execute(stmt)
        return list(res.scalars())


async def fetch_confirmed_participants(trip_id: str) -> list[Participant]:
    async with session_scope() as s:
        stmt = (
            select(Participant)
            .where(Participant.trip_id == trip_id, Participant.status == "confirmed")
            .order_by(Participant.created_at, Participant.id)
        )
        res = await s.execute(stmt)
        return list(res.scalars())


async def get_participant(participant_id: str) -> Participant | None:
    async with session_scope() as s:
        return await s.get(Participant, participant_id)


async def stamp_task_reminder(task_id: str, at: datetime):
    async with session_scope() as s:
        await s.execute(
            update(Task).where(Task.id == task_id).values(last_reminder_at=at)
        )
        await s.commit()


async def log_trip_event(
    trip_id: str,
    event_type: str,
    actor: str,
    payload: dict[str, Any] | None = None,
    actor_id: str | None = None,
    at: datetime | None = None,
) -> str:
    event = TripEvent(
        trip_id=trip_id,
        event_type=event_type,
        actor=actor,
        actor_id=actor_id,
        payload=payload or {},
        created_at=at or datetime.now(timezone.utc),
    )
    async with session_scope() as s:
        s.add(event)
        await s.commit()
    return event.id


# ──────────────────────────────────────────────────────────────────────
# 6. Notification ledger
# ──────────────────────────────────────────────────────────────────────

# 6.1 Create / claim -----------------------------------------------------
def _new_notification(
    *,
    trip_id: str,
    participant_id: str,
    trigger_type: str,
    channel: str,
    created_at: datetime,
    task_id: str | None = None,
    message_subject: str | None = None,
    message_text: str | None = None,
    metadata: dict[str, Any] | None = None,
    dedup_key: str | None = None,
    status: str = "pending",
    error: str | None = None,
) -> Notification:
    return Notification(
        trip_id=trip_id,
        task_id=task_id,
        participant_id=participant_id,
        trigger_type=trigger_type,
        channel=channel,
        status=status,
        error=error,
        scheduled_at=created_at,
        message_subject=message_subject,
        message_text=message_text,
        meta=dict(metadata or {}),
        dedup_key=dedup_key,
        created_at=created_at,
    )


async def create_notification(**fields: Any) -> Notification:
    notif = _new_notification(**fields)
    async with session_scope() as s:
        s.add(notif)
        await s.commit()
    return notif


async def claim_notification(**fields: Any) -> Notification | None:
    """Insert a pending record carrying `dedup_key`, or return None if the
    key is already taken by another writer."""
    if not fields.get("dedup_key"):
        raise ValueError("claim_notification requires a dedup_key")
    notif = _new_notification(**fields)
    async with session_scope() as s:
        s.add(notif)
        try:
            await s.commit()
        except IntegrityError:
            await s.rollback()
            return None
    return notif


# 6.2 Status transitions -------------------------------------------------
async def mark_notification_sent(
    notification_id: str,
    at: datetime,
    *,
    message_id: str | None = None,
    message_subject: str | None = None,
    message_text: str | None = None,
):
    async with session_scope() as s:
        notif = await s.get(Notification, notification_id)
        if notif is None:
            return
        notif.status = "sent"
        notif.sent_at = at
        if message_subject is not None:
            notif.message_subject = message_subject
        if message_text is not None:
            notif.message_text = message_text
        if message_id:
            notif.meta = {**(notif.meta or {}), "resend_message_id": message_id}
        await s.commit()


async def mark_notification_failed(notification_id: str, err: str, *, release_claim: bool = False):
    """Mark a record failed; `release_claim` frees its dedup key so the pair
    can be retried on a later cycle."""
    values: dict[str, Any] = {"status": "failed", "error": err}
    if release_claim:
        values["dedup_key"] = None
    async with session_scope() as s:
        await s.execute(
            update(Notification)
            .where(Notification.id == notification_id)
            .values(**values)
        )
        await s.commit()


# 6.3 Dedup / rate-limit queries ----------------------------------------
async def has_recent_notification(
    trip_id: str,
    task_id: str | None,
    trigger_type: str,
    participant_id: str,
    since: datetime,
) -> bool:
    async with session_scope() as s:
        stmt = select(func.count(Notification.id)).where(
            Notification.trip_id == trip_id,
            Notification.trigger_type == trigger_type,
            Notification.participant_id == participant_id,
            Notification.status.in_(("sent", "pending")),
            Notification.created_at > since,
        )
        if task_id is None:
            stmt = stmt.where(Notification.task_id.is_(None))
        else:
            stmt = stmt.where(Notification.task_id == task_id)
        res = await s.execute(stmt)
        return (res.scalar_one() or 0) > 0


async def count_sent_since(participant_id: str, since: datetime) -> int:
    async with session_scope() as s:
        stmt = select(func.count(Notification.id)).where(
            Notification.participant_id == participant_id,
            Notification.status == "sent",
            Notification.created_at >= since,
        )
        res = await s.execute(stmt)
        return res.scalar_one() or 0


# 6.4 Read endpoints -----------------------------------------------------
def _visible_in_app():
    return (
        Notification.channel == "in_app",
        Notification.status.in_(("sent", "pending")),
    )


async def list_notifications_for_trip(trip_id: str, limit: int = 50) -> list[dict]:
    async with session_scope() as s:
        stmt = (
            select(Notification)
            .where(Notification.trip_id == trip_id)
            .order_by(Notification.created_at.desc())
            .limit(limit)
        )
        res = await s.execute(stmt)
        return [n.to_dict() for n in res.scalars()]


async def list_notifications_for_user(user_id: str, limit: int = 50) -> list[dict]:
    async with session_scope() as s:
        stmt = (
            select(Notification, Trip.title, Trip.slug)
            .join(Participant, Participant.id == Notification.participant_id)
            .join(Trip, Trip.id == Notification.trip_id)
            .where(Participant.user_id == user_id, *_visible_in_app())
            .order_by(Notification.created_at.desc())
            .limit(limit)
        )
        res = await s.execute(stmt)
        return [
            {**n.to_dict(), "trip_title": title, "trip_slug": slug}
            for n, title, slug in res.all()
        ]


async def count_unread_for_user(user_id: str) -> int:
    async with session_scope() as s:
        stmt = (
            select(func.count(Notification.id))
            .join(Participant, Participant.id == Notification.participant_id)
            .where(
                Participant.user_id == user_id,
                Notification.read_at.is_(None),
                *_visible_in_app(),
            )
        )
        res = await s.execute(stmt)
        return res.scalar_one() or 0


async def mark_notification_read(notification_id: str, at: datetime):
    async with session_scope() as s:
        await s.execute(
            update(Notification)
            .where(Notification.id == notification_id, Notification.read_at.is_(None))
            .values(read_at=at)
        )
        await s.commit()


async def mark_all_read_for_user(user_id: str, at: datetime) -> int:
    async with session_scope() as s:
        participant_ids = select(Participant.id).where(Participant.user_id == user_id)
        res = await s.execute(
            update(Notification)
            .where(
                Notification.participant_id.in_(participant_ids),
                Notification.channel == "in_app",
                Notification.read_at.is_(None),
            )
            .values(read_at=at)
            .execution_options(synchronize_session=False)
        )
        await s.commit()
        return res.rowcount or 0


async def dispose_engine():
    global _engine, _session_maker
    if _engine is not None:
        await _engine.dispose()
        _engine = None
    _session_maker = None
