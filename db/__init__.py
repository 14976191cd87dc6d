from .db import (
    Base,
    Trip,
    Participant,
    Task,
    TripEvent,
    Notification,
    session_scope,
    create_all,
    dispose_engine,
    utc,
    fetch_active_trips,
    get_trip,
    fetch_open_tasks,
    fetch_confirmed_participants,
    get_participant,
    stamp_task_reminder,
    log_trip_event,
    create_notification,
    claim_notification,
    mark_notification_sent,
    mark_notification_failed,
    has_recent_notification,
    count_sent_since,
    list_notifications_for_trip,
    list_notifications_for_user,
    count_unread_for_user,
    mark_notification_read,
    mark_all_read_for_user,
)  # noqa: F401
