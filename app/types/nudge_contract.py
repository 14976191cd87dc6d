"""Pydantic models shared by the nudge scanner, dispatcher, workers and API.

These classes are intentionally framework-agnostic so they can be reused by
workers, API responses, and tests without pulling in FastAPI or database
layers.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Literal, Mapping, Optional

from pydantic import BaseModel, Field, field_validator

_LOGGER = logging.getLogger(__name__)

TriggerType = Literal["deadline", "countdown", "overdue", "event"]


# ──────────────────────────────
# Settings
# ──────────────────────────────


def _parse_days(raw: Optional[str], fallback: List[int]) -> List[int]:
    if not raw:
        return list(fallback)
    days: List[int] = []
    for part in raw.split(","):
        try:
            days.append(int(part.strip()))
        except ValueError:
            continue
    return days or list(fallback)


def _parse_int(raw: Optional[str], fallback: int, lo: int, hi: Optional[int] = None) -> int:
    if raw is None or not str(raw).strip():
        return fallback
    try:
        value = int(str(raw).strip())
    except ValueError:
        _LOGGER.warning("Ignoring non-integer nudge setting %r", raw)
        return fallback
    if value < lo or (hi is not None and value > hi):
        _LOGGER.warning("Ignoring out-of-range nudge setting %r", raw)
        return fallback
    return value


class NudgeSettings(BaseModel):
    """Typed snapshot of the nudge tunables.

    Built once per load by `from_raw`; every field falls back to its own
    default when the source value is missing or malformed, so one bad key
    never discards the others.
    """

    model_config = {"frozen": True}

    enabled: bool = True
    deadline_days: List[int] = Field(default_factory=lambda: [7, 3, 1])
    countdown_days: List[int] = Field(default_factory=lambda: [30, 14, 7, 3, 1])
    overdue_days: List[int] = Field(default_factory=lambda: [1, 3, 7])
    quiet_hours_start: int = Field(default=22, ge=0, le=23)
    quiet_hours_end: int = Field(default=8, ge=0, le=23)
    max_per_day_per_user: int = Field(default=5, ge=0)

    @classmethod
    def from_raw(cls, raw: Mapping[str, Optional[str]]) -> "NudgeSettings":
        d = cls()
        enabled_raw = raw.get("NUDGE_ENABLED")
        return cls(
            enabled=str(enabled_raw).strip().lower() != "false" if enabled_raw is not None else d.enabled,
            deadline_days=_parse_days(raw.get("NUDGE_DEADLINE_DAYS"), d.deadline_days),
            countdown_days=_parse_days(raw.get("NUDGE_COUNTDOWN_DAYS"), d.countdown_days),
            overdue_days=_parse_days(raw.get("NUDGE_OVERDUE_DAYS"), d.overdue_days),
            quiet_hours_start=_parse_int(raw.get("NUDGE_QUIET_HOURS_START"), d.quiet_hours_start, 0, 23),
            quiet_hours_end=_parse_int(raw.get("NUDGE_QUIET_HOURS_END"), d.quiet_hours_end, 0, 23),
            max_per_day_per_user=_parse_int(raw.get("NUDGE_MAX_PER_DAY_PER_USER"), d.max_per_day_per_user, 0),
        )

    def is_quiet_hour(self, hour: int) -> bool:
        start, end = self.quiet_hours_start, self.quiet_hours_end
        if start == end:
            # Equal bounds disable quiet hours rather than silencing the whole day
            return False
        if start < end:
            return start <= hour < end
        # Wraps midnight: e.g. 22..8
        return hour >= start or hour < end


# ──────────────────────────────
# Scanner output
# ──────────────────────────────


class NudgeCandidate(BaseModel):
    """A (trigger, recipients) pair eligible for a reminder this cycle."""

    trip_id: str
    trip_title: str
    trip_slug: str
    task_id: Optional[str] = None
    task_title: Optional[str] = None
    trigger_type: TriggerType
    automation_mode: str = "remind"
    recipient_ids: List[str]
    days_until: Optional[int] = None  # negative → overdue
    context: Dict[str, str] = Field(default_factory=dict)

    @field_validator("recipient_ids")
    def _at_least_one(cls, v: List[str]):  # noqa: N805
        if not v:
            raise ValueError("a candidate needs at least one recipient")
        return v


# ──────────────────────────────
# Generator / sender contracts
# ──────────────────────────────


class NudgeMessageInput(BaseModel):
    trigger_type: str
    automation_mode: str = "remind"
    trip_title: str
    trip_region: Optional[str] = None
    trip_dates: Optional[str] = None
    target_species: Optional[str] = None
    task_title: Optional[str] = None
    task_type: Optional[str] = None
    days: Optional[int] = None
    participant_name: Optional[str] = None
    event_text: Optional[str] = None

    def as_prompt_lines(self) -> str:
        fields = {
            "trigger_type": self.trigger_type,
            "automation_mode": self.automation_mode,
            "trip_title": self.trip_title,
            "trip_region": self.trip_region or "",
            "trip_dates": self.trip_dates or "",
            "target_species": self.target_species or "",
            "task_title": self.task_title or "",
            "task_type": self.task_type or "",
            "days": "" if self.days is None else str(self.days),
            "participant_name": self.participant_name or "",
            "event_text": self.event_text or "",
        }
        return "\n".join(f"{k}: {v}" for k, v in fields.items())


class NudgeMessage(BaseModel):
    subject: str
    body: str


class EmailResult(BaseModel):
    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None


# ──────────────────────────────
# Cycle output
# ──────────────────────────────


class CycleResult(BaseModel):
    """Aggregate outcome of one nudge cycle."""

    processed: int = 0
    notifications_sent: List[str] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)
