import asyncio
import logging
import re
from typing import Dict, Optional

import resend

from app.types.nudge_contract import EmailResult
from config import settings

_LOGGER = logging.getLogger(__name__)

# Minimal per-trigger templates; branded HTML lives with the web frontend.
TEMPLATES: Dict[str, Dict[str, str]] = {
    "nudge_deadline": {
        "subject": "{{subject}}",
        "body_html": "<p>Hi {{participant_name}},</p><p>{{body}}</p>"
                     "<p><strong>{{task_title}}</strong> is due in {{days}} day(s) "
                     "for {{trip_title}} ({{trip_dates}}).</p>",
    },
    "nudge_countdown": {
        "subject": "{{subject}}",
        "body_html": "<p>Hi {{participant_name}},</p><p>{{body}}</p>"
                     "<p>{{trip_title}} starts in {{days}} day(s) – {{trip_dates}}.</p>",
    },
    "nudge_overdue": {
        "subject": "{{subject}}",
        "body_html": "<p>Hi {{participant_name}},</p><p>{{body}}</p>"
                     "<p><strong>{{task_title}}</strong> is {{days}} day(s) overdue "
                     "for {{trip_title}}.</p>",
    },
    "nudge_event": {
        "subject": "{{subject}}",
        "body_html": "<p>Hi {{participant_name}},</p><p>{{body}}</p>",
    },
}

_VAR_RE = re.compile(r"\{\{\s*(\w+)\s*\}\}")


def interpolate(template: str, variables: Dict[str, str]) -> str:
    return _VAR_RE.sub(lambda m: str(variables.get(m.group(1), "")), template)


def _send(params: dict) -> dict:
    resend.api_key = settings.RESEND_API_KEY
    return resend.Emails.send(params)


async def send_template(template_key: str, to: str, variables: Dict[str, str]) -> EmailResult:
    """Send a templated email through Resend. Returns a result – never raises."""
    template: Optional[Dict[str, str]] = TEMPLATES.get(template_key)
    if template is None:
        return EmailResult(success=False, error=f"Template '{template_key}' not found")
    if not settings.RESEND_API_KEY:
        _LOGGER.warning("RESEND_API_KEY not configured – skipping send to %s", to)
        return EmailResult(success=False, error="Email not configured")

    params = {
        "from": f"{settings.EMAIL_FROM_NAME} <{settings.EMAIL_FROM_ADDRESS}>",
        "to": [to],
        "subject": interpolate(template["subject"], variables),
        "html": interpolate(template["body_html"], variables),
    }
    if settings.EMAIL_REPLY_TO:
        params["reply_to"] = [settings.EMAIL_REPLY_TO]

    try:
        response = await asyncio.to_thread(_send, params)
    except Exception as exc:  # noqa: BLE001
        _LOGGER.error("Failed to send %s to %s: %s", template_key, to, exc)
        return EmailResult(success=False, error=str(exc) or exc.__class__.__name__)

    message_id = response.get("id") if isinstance(response, dict) else getattr(response, "id", None)
    _LOGGER.info("Email %s sent to %s (id=%s)", template_key, to, message_id)
    return EmailResult(success=True, message_id=message_id)
