"""
Nudge engine: scans active trips for due reminders and dispatches them.

Flow of one cycle:
1. Load settings; bail out when disabled or inside quiet hours (UTC).
2. Scan active trips → `NudgeCandidate`s (countdown / deadline / overdue).
3. For every (candidate, recipient):
   dedup → daily cap → resolve participant → claim → generate → in-app
   record → email record + send → stamp task.

Every date computation uses UTC. A failure for one trip or one recipient
is logged and reported in the `CycleResult`; it never stops the cycle.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

import db
from app.services.nudge_ai import NudgeMessageGenerator
from app.services.nudge_settings import (
    Clock,
    SettingsCache,
    build_settings_provider,
    utc_now,
)
from app.types.nudge_contract import (
    CycleResult,
    EmailResult,
    NudgeCandidate,
    NudgeMessageInput,
    NudgeSettings,
)
from app.utils.email import send_template
from config import settings as app_settings

_LOGGER = logging.getLogger(__name__)

EmailSender = Callable[[str, str, Dict[str, str]], Awaitable[EmailResult]]

DAILY_LIMIT_REASON = "daily_limit_reached"


# ──────────────────────────────────────────────────────────────────────────
# Helpers
# ──────────────────────────────────────────────────────────────────────────

def _fmt_date(d: date) -> str:
    return f"{d:%B} {d.day}, {d.year}"


def format_trip_dates(start: Optional[date], end: Optional[date]) -> str:
    if not start:
        return "Dates TBD"
    if not end:
        return _fmt_date(start)
    return f"{_fmt_date(start)} – {_fmt_date(end)}"


def start_of_day(now: datetime) -> datetime:
    return datetime.combine(now.date(), time.min, tzinfo=timezone.utc)


def dedup_key(
    trip_id: str,
    task_id: Optional[str],
    trigger_type: str,
    participant_id: str,
    now: datetime,
) -> str:
    return f"{trip_id}:{task_id or '-'}:{trigger_type}:{participant_id}:{now:%Y-%m-%d}"


def _unique(ids: List[Optional[str]]) -> List[str]:
    seen: List[str] = []
    for pid in ids:
        if pid and pid not in seen:
            seen.append(pid)
    return seen


# ──────────────────────────────────────────────────────────────────────────
# Engine
# ──────────────────────────────────────────────────────────────────────────

class NudgeEngine:
    def __init__(
        self,
        settings_cache: SettingsCache,
        generator: NudgeMessageGenerator,
        send_email: EmailSender = send_template,
        clock: Clock = utc_now,
        dedup_window: timedelta = timedelta(hours=20),
    ):
        self.settings_cache = settings_cache
        self._generator = generator
        self._send_email = send_email
        self._clock = clock
        self._dedup_window = dedup_window

    async def aclose(self) -> None:
        await self._generator.aclose()

    def _now(self) -> datetime:
        return self._clock().astimezone(timezone.utc)

    # ── cycle ────────────────────────────────────────────────────────────

    async def run_cycle(self) -> CycleResult:
        settings = await self.settings_cache.load()
        result = CycleResult()

        if not settings.enabled:
            _LOGGER.info("Nudge cycle disabled via settings")
            return result

        now = self._now()
        if settings.is_quiet_hour(now.hour):
            _LOGGER.info("Nudge cycle skipped: quiet hours (%02d:00 UTC)", now.hour)
            return result

        candidates = await self.scan(settings, now, result)
        await self.dispatch(candidates, settings, now, result)

        _LOGGER.info(
            "Nudge cycle done: %d processed, %d sent, %d errors",
            result.processed, len(result.notifications_sent), len(result.errors),
        )
        return result

    # ── scanner ──────────────────────────────────────────────────────────

    async def scan(
        self,
        settings: NudgeSettings,
        now: datetime,
        result: Optional[CycleResult] = None,
    ) -> List[NudgeCandidate]:
        try:
            trips = await db.fetch_active_trips()
        except Exception as exc:  # noqa: BLE001
            _LOGGER.exception("Failed to fetch active trips")
            if result is not None:
                result.errors.append(f"scan: {exc}")
            return []

        today = now.date()
        candidates: List[NudgeCandidate] = []
        for trip in trips:
            try:
                candidates.extend(await self._scan_trip(trip, settings, today))
            except Exception as exc:  # noqa: BLE001
                _LOGGER.exception("Failed to scan trip %s", trip.id)
                if result is not None:
                    result.errors.append(f"scan/{trip.title}: {exc}")

        _LOGGER.info("%d nudge candidates from %d active trips", len(candidates), len(trips))
        return candidates

    async def _scan_trip(
        self, trip: db.Trip, settings: NudgeSettings, today: date
    ) -> List[NudgeCandidate]:
        participants = await db.fetch_confirmed_participants(trip.id)
        if not participants:
            return []
        tasks = await db.fetch_open_tasks(trip.id)

        organizer = next((p for p in participants if p.role == "organizer"), None)
        trip_ctx = {
            "trip_title": trip.title,
            "trip_region": trip.region or "",
            "trip_dates": format_trip_dates(trip.dates_start, trip.dates_end),
            "target_species": ", ".join(trip.target_species or []),
            "trip_slug": trip.slug,
        }
        out: List[NudgeCandidate] = []

        days_until_trip = (trip.dates_start - today).days
        if days_until_trip >= 0 and days_until_trip in settings.countdown_days:
            out.append(NudgeCandidate(
                trip_id=trip.id,
                trip_title=trip.title,
                trip_slug=trip.slug,
                trigger_type="countdown",
                recipient_ids=[p.id for p in participants],
                days_until=days_until_trip,
                context={**trip_ctx, "days": str(days_until_trip)},
            ))

        for task in tasks:
            if task.deadline is None:
                continue
            days_until = (db.utc(task.deadline).date() - today).days

            if days_until >= 0:
                if days_until not in settings.deadline_days:
                    continue
                trigger = "deadline"
                if task.assigned_to:
                    recipients = [task.assigned_to]
                else:
                    recipients = [organizer.id] if organizer else []
            else:
                if -days_until not in settings.overdue_days:
                    continue
                trigger = "overdue"
                recipients = _unique([task.assigned_to, organizer.id if organizer else None])

            if not recipients:
                continue
            out.append(NudgeCandidate(
                trip_id=trip.id,
                trip_title=trip.title,
                trip_slug=trip.slug,
                task_id=task.id,
                task_title=task.title,
                trigger_type=trigger,
                automation_mode=task.automation_mode or "remind",
                recipient_ids=recipients,
                days_until=days_until,
                context={
                    **trip_ctx,
                    "task_title": task.title,
                    "task_type": task.type,
                    "days": str(abs(days_until)),
                },
            ))
        return out

    # ── dispatch loop ────────────────────────────────────────────────────

    async def dispatch(
        self,
        candidates: List[NudgeCandidate],
        settings: NudgeSettings,
        now: datetime,
        result: CycleResult,
    ) -> None:
        for candidate in candidates:
            for participant_id in candidate.recipient_ids:
                await self._process_pair(candidate, participant_id, settings, now, result)

    async def _process_pair(
        self,
        candidate: NudgeCandidate,
        participant_id: str,
        settings: NudgeSettings,
        now: datetime,
        result: CycleResult,
    ) -> None:
        try:
            if await db.has_recent_notification(
                candidate.trip_id,
                candidate.task_id,
                candidate.trigger_type,
                participant_id,
                since=now - self._dedup_window,
            ):
                return

            sent_today = await db.count_sent_since(participant_id, start_of_day(now))
            if sent_today >= settings.max_per_day_per_user:
                await db.create_notification(
                    trip_id=candidate.trip_id,
                    task_id=candidate.task_id,
                    participant_id=participant_id,
                    trigger_type=candidate.trigger_type,
                    channel="in_app",
                    metadata=candidate.context,
                    created_at=now,
                    status="skipped",
                    error=DAILY_LIMIT_REASON,
                )
                _LOGGER.info("Daily limit reached for participant %s", participant_id)
                return

            participant = await db.get_participant(participant_id)
            if participant is None:
                return

            message_input = NudgeMessageInput(
                trigger_type=candidate.trigger_type,
                automation_mode=candidate.automation_mode,
                trip_title=candidate.trip_title,
                trip_region=candidate.context.get("trip_region"),
                trip_dates=candidate.context.get("trip_dates"),
                target_species=candidate.context.get("target_species"),
                task_title=candidate.task_title,
                task_type=candidate.context.get("task_type"),
                days=abs(candidate.days_until) if candidate.days_until is not None else None,
                participant_name=participant.name,
            )
            delivered = await self._deliver(
                trip_id=candidate.trip_id,
                task_id=candidate.task_id,
                trigger_type=candidate.trigger_type,
                participant=participant,
                message_input=message_input,
                template_key=f"nudge_{candidate.trigger_type}",
                email_variables=dict(candidate.context),
                metadata=candidate.context,
                email_metadata=candidate.context,
                now=now,
                result=result,
            )
            if not delivered:
                return

            if candidate.task_id:
                await self._stamp_task(candidate.task_id)
            result.processed += 1
        except Exception as exc:  # noqa: BLE001
            _LOGGER.exception(
                "Error processing %s nudge for participant %s", candidate.trigger_type, participant_id
            )
            result.errors.append(f"{candidate.trigger_type}/{candidate.trip_title}: {exc}")

    async def _deliver(
        self,
        *,
        trip_id: str,
        task_id: Optional[str],
        trigger_type: str,
        participant: db.Participant,
        message_input: NudgeMessageInput,
        template_key: str,
        email_variables: Dict[str, str],
        metadata: Dict[str, Any],
        email_metadata: Dict[str, Any],
        now: datetime,
        result: CycleResult,
    ) -> bool:
        """Claim, generate and record one in-app (+ email) notification.

        Returns False when another writer already holds the claim for this
        pair today.
        """
        claim = await db.claim_notification(
            trip_id=trip_id,
            task_id=task_id,
            participant_id=participant.id,
            trigger_type=trigger_type,
            channel="in_app",
            metadata=metadata,
            dedup_key=dedup_key(trip_id, task_id, trigger_type, participant.id, now),
            created_at=now,
        )
        if claim is None:
            _LOGGER.info(
                "Skipping %s nudge for %s: already claimed", trigger_type, participant.id
            )
            return False

        try:
            message = await self._generator.generate(message_input)
            await db.mark_notification_sent(
                claim.id,
                self._now(),
                message_subject=message.subject,
                message_text=message.body,
            )
        except Exception as exc:
            await db.mark_notification_failed(claim.id, str(exc), release_claim=True)
            raise
        result.notifications_sent.append(f"in_app:{trigger_type}→{participant.id}")

        if participant.email:
            email_notif = await db.create_notification(
                trip_id=trip_id,
                task_id=task_id,
                participant_id=participant.id,
                trigger_type=trigger_type,
                channel="email",
                message_subject=message.subject,
                message_text=message.body,
                metadata=email_metadata,
                created_at=now,
            )
            variables = {
                **email_variables,
                "subject": message.subject,
                "body": message.body,
                "participant_name": participant.name,
            }
            outcome = await self._send_email(template_key, participant.email, variables)
            if outcome.success:
                await db.mark_notification_sent(
                    email_notif.id, self._now(), message_id=outcome.message_id
                )
                result.notifications_sent.append(f"email:{trigger_type}→{participant.email}")
            else:
                error = outcome.error or "Send failed"
                await db.mark_notification_failed(email_notif.id, error)
                result.errors.append(f"{template_key}→{participant.email}: {error}")
        return True

    async def _stamp_task(self, task_id: str) -> None:
        try:
            await db.stamp_task_reminder(task_id, self._now())
        except Exception as exc:  # noqa: BLE001
            _LOGGER.warning("Could not stamp last_reminder_at on task %s: %s", task_id, exc)

    # ── ad-hoc events ────────────────────────────────────────────────────

    async def trigger_event(
        self, trip_id: str, event_type: str, event_text: Optional[str] = None
    ) -> CycleResult:
        """Notify every confirmed participant about a one-off trip event.

        Never raises; problems are logged and returned in the result.
        """
        result = CycleResult()
        text = event_text or event_type
        try:
            settings = await self.settings_cache.load()
            if not settings.enabled:
                return result

            trip = await db.get_trip(trip_id)
            if trip is None:
                _LOGGER.warning("trigger_event: trip %s not found", trip_id)
                return result

            now = self._now()
            participants = await db.fetch_confirmed_participants(trip_id)
            for participant in participants:
                if await db.has_recent_notification(
                    trip_id, None, "event", participant.id, since=now - self._dedup_window
                ):
                    continue
                delivered = await self._deliver(
                    trip_id=trip_id,
                    task_id=None,
                    trigger_type="event",
                    participant=participant,
                    message_input=NudgeMessageInput(
                        trigger_type="event",
                        trip_title=trip.title,
                        trip_region=trip.region,
                        participant_name=participant.name,
                        event_text=text,
                    ),
                    template_key="nudge_event",
                    email_variables={"trip_slug": trip.slug, "trip_title": trip.title},
                    metadata={"event_type": event_type, "event_text": text},
                    email_metadata={"event_type": event_type},
                    now=now,
                    result=result,
                )
                if delivered:
                    result.processed += 1

            await db.log_trip_event(
                trip_id, event_type, "system", {"nudge": True, "event_text": text}, at=now
            )
        except Exception as exc:  # noqa: BLE001
            _LOGGER.exception("trigger_event failed for trip %s (%s)", trip_id, event_type)
            result.errors.append(f"event/{event_type}: {exc}")
        return result


def build_settings_cache(clock: Clock = utc_now) -> SettingsCache:
    return SettingsCache(
        build_settings_provider(),
        ttl=timedelta(seconds=app_settings.NUDGE_SETTINGS_TTL_SECONDS),
        clock=clock,
    )


def build_engine(
    clock: Clock = utc_now, settings_cache: Optional[SettingsCache] = None
) -> NudgeEngine:
    """Wire an engine from process configuration.

    The generator's OpenAI client is tied to the event loop it first runs
    on; callers that use a fresh loop per run (Celery tasks, the cron
    script) build a new engine each time and share only `settings_cache`.
    """
    cache = settings_cache or build_settings_cache(clock)
    return NudgeEngine(
        cache,
        NudgeMessageGenerator.from_settings(),
        clock=clock,
        dedup_window=timedelta(hours=app_settings.NUDGE_DEDUP_WINDOW_HOURS),
    )
