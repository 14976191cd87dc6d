"""Nudge endpoints: manual cycle, event trigger, ledger reads."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field

import db
from app.services.nudge_engine import NudgeEngine
from app.types.nudge_contract import CycleResult, NudgeSettings
from app.workers import nudge as nudge_worker

_LOGGER = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/nudge", tags=["nudge"])


def get_nudge_engine(request: Request) -> NudgeEngine:
    return request.app.state.nudge_engine


class TriggerEventRequest(BaseModel):
    trip_id: str = Field(min_length=1)
    event_type: str = Field(min_length=1)
    event_text: Optional[str] = None


class MarkReadRequest(BaseModel):
    notification_id: str = Field(min_length=1)


class MarkAllReadRequest(BaseModel):
    user_id: str = Field(min_length=1)


def _internal_error(where: str, exc: Exception) -> HTTPException:
    _LOGGER.exception("%s failed", where)
    return HTTPException(status_code=500, detail={"error": str(exc) or "Internal server error"})


@router.post("/run", response_model=CycleResult)
async def run_cycle(engine: NudgeEngine = Depends(get_nudge_engine)):
    _LOGGER.info("Manual nudge run triggered")
    try:
        return await engine.run_cycle()
    except Exception as exc:  # noqa: BLE001
        raise _internal_error("run_cycle", exc)


@router.post("/trigger-event")
async def trigger_event(body: TriggerEventRequest):
    try:
        nudge_worker.submit_event(body.trip_id, body.event_type, body.event_text or body.event_type)
    except Exception as exc:  # noqa: BLE001
        raise _internal_error("trigger_event", exc)
    return {"ok": True}


@router.get("/settings", response_model=NudgeSettings)
async def get_settings(engine: NudgeEngine = Depends(get_nudge_engine)):
    return await engine.settings_cache.load()


@router.get("/notifications/{trip_id}")
async def list_trip_notifications(trip_id: str, limit: int = Query(50, ge=1, le=500)):
    try:
        return await db.list_notifications_for_trip(trip_id, limit=limit)
    except Exception as exc:  # noqa: BLE001
        raise _internal_error("list_trip_notifications", exc)


@router.get("/user-notifications")
async def list_user_notifications(
    user_id: str = Query(..., min_length=1),
    limit: int = Query(50, ge=1, le=500),
):
    try:
        notifications = await db.list_notifications_for_user(user_id, limit=limit)
    except Exception as exc:  # noqa: BLE001
        raise _internal_error("list_user_notifications", exc)
    return {"notifications": notifications}


@router.get("/unread-count")
async def unread_count(user_id: str = Query(..., min_length=1)):
    try:
        count = await db.count_unread_for_user(user_id)
    except Exception as exc:  # noqa: BLE001
        raise _internal_error("unread_count", exc)
    return {"count": count}


@router.post("/notifications/read")
async def mark_read(body: MarkReadRequest):
    try:
        await db.mark_notification_read(body.notification_id, datetime.now(timezone.utc))
    except Exception as exc:  # noqa: BLE001
        raise _internal_error("mark_read", exc)
    return {"ok": True}


@router.post("/notifications/read-all")
async def mark_all_read(body: MarkAllReadRequest):
    try:
        marked = await db.mark_all_read_for_user(body.user_id, datetime.now(timezone.utc))
    except Exception as exc:  # noqa: BLE001
        raise _internal_error("mark_all_read", exc)
    return {"ok": True, "marked": marked}
