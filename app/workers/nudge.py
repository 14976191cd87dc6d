"""Celery tasks driving the nudge engine.

`run_cycle` is fired by the beat schedule; `trigger_event` is submitted by
request handlers that want a one-off notification without waiting on it.
"""

from __future__ import annotations

import asyncio
import logging

from sqlalchemy.exc import DBAPIError

from app.celery_app import celery_app
from app.services.nudge_engine import NudgeEngine, build_engine, build_settings_cache
from app.services.nudge_settings import SettingsCache
import db

_LOGGER = logging.getLogger(__name__)

# Settings survive across tasks; the engine (and its OpenAI client) is built
# per task because every asyncio.run() gets a new event loop.
_settings_cache: SettingsCache | None = None


def get_settings_cache() -> SettingsCache:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = build_settings_cache()
    return _settings_cache


def new_engine() -> NudgeEngine:
    return build_engine(settings_cache=get_settings_cache())


async def _run_cycle() -> dict:
    engine = new_engine()
    try:
        result = await engine.run_cycle()
    finally:
        # asyncio.run() closes the loop; pooled connections must not outlive it
        await engine.aclose()
        await db.dispose_engine()
    return result.model_dump()


async def _trigger_event(trip_id: str, event_type: str, event_text: str | None) -> dict:
    engine = new_engine()
    try:
        result = await engine.trigger_event(trip_id, event_type, event_text)
    finally:
        await engine.aclose()
        await db.dispose_engine()
    return result.model_dump()


# ---------------------------------------------------------------------------
# Celery Tasks
# ---------------------------------------------------------------------------

@celery_app.task(name="app.workers.nudge.run_cycle", bind=True, max_retries=3)
def run_cycle(self):  # noqa: D401
    """Run one scan + dispatch cycle and return its summary."""
    try:
        summary = asyncio.run(_run_cycle())
    except DBAPIError as exc:
        # Store unreachable before the engine could isolate the failure
        raise self.retry(exc=exc, countdown=30)
    _LOGGER.info(
        "nudge cycle: processed=%s sent=%s errors=%s",
        summary["processed"], len(summary["notifications_sent"]), len(summary["errors"]),
    )
    return summary


@celery_app.task(name="app.workers.nudge.trigger_event", bind=True)
def trigger_event(self, trip_id: str, event_type: str, event_text: str | None = None):  # noqa: D401
    """Send a one-off event nudge to every confirmed participant of a trip."""
    summary = asyncio.run(_trigger_event(trip_id, event_type, event_text))
    if summary["errors"]:
        _LOGGER.warning("trigger_event %s/%s errors: %s", trip_id, event_type, summary["errors"])
    return summary


def submit_event(trip_id: str, event_type: str, event_text: str | None = None):
    """Queue a trip event nudge; returns the Celery AsyncResult."""
    return trigger_event.apply_async(args=[trip_id, event_type, event_text], queue="nudge")
