import pytest
import resend

from app.utils import email as email_util
from config import settings

VARS = {"subject": "Trip soon", "body": "Pack rods", "participant_name": "Olga",
        "trip_title": "Keys", "days": "7", "trip_dates": "October 25, 2026"}


def test_interpolate_blanks_unknown_vars():
    assert email_util.interpolate("Hi {{ name }} {{missing}}!", {"name": "Olga"}) == "Hi Olga !"


@pytest.mark.asyncio
async def test_unknown_template():
    result = await email_util.send_template("nudge_birthday", "o@x.com", VARS)
    assert not result.success
    assert result.error == "Template 'nudge_birthday' not found"


@pytest.mark.asyncio
async def test_not_configured(monkeypatch):
    monkeypatch.setattr(settings, "RESEND_API_KEY", None)
    result = await email_util.send_template("nudge_countdown", "o@x.com", VARS)
    assert (result.success, result.error) == (False, "Email not configured")


@pytest.mark.asyncio
async def test_send_renders_template(monkeypatch):
    sent = []

    def fake_send(params):
        sent.append(params)
        return {"id": "re_123"}

    monkeypatch.setattr(settings, "RESEND_API_KEY", "re_test")
    monkeypatch.setattr(resend.Emails, "send", fake_send)

    result = await email_util.send_template("nudge_countdown", "o@x.com", VARS)

    assert result.success and result.message_id == "re_123"
    assert sent[0]["to"] == ["o@x.com"]
    assert sent[0]["subject"] == "Trip soon"
    assert "Hi Olga" in sent[0]["html"]
    assert "starts in 7 day(s)" in sent[0]["html"]


@pytest.mark.asyncio
async def test_provider_error_is_returned(monkeypatch):
    def boom(params):
        raise RuntimeError("Resend 422: invalid recipient")

    monkeypatch.setattr(settings, "RESEND_API_KEY", "re_test")
    monkeypatch.setattr(resend.Emails, "send", boom)

    result = await email_util.send_template("nudge_event", "bad", VARS)
    assert not result.success
    assert result.error == "Resend 422: invalid recipient"
