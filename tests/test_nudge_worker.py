import json
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

import pytest

from app.celery_app import celery_app
from app.services.nudge_engine import NudgeEngine
from app.types.nudge_contract import CycleResult, NudgeMessageInput
from app.workers import nudge as nudge_worker
from config import settings
import db


class StubEngine:
    def __init__(self):
        self.events = []
        self.closed = False

    async def run_cycle(self):
        return CycleResult(processed=2, notifications_sent=["in_app:countdown→p-1"], errors=[])

    async def trigger_event(self, trip_id, event_type, event_text=None):
        self.events.append((trip_id, event_type, event_text))
        return CycleResult(errors=["event/trip_activated: db down"])

    async def aclose(self):
        self.closed = True


@pytest.fixture
def disposed(monkeypatch):
    calls = []

    async def fake_dispose():
        calls.append(True)

    monkeypatch.setattr(db, "dispose_engine", fake_dispose)
    return calls


def _stub(monkeypatch):
    engine = StubEngine()
    monkeypatch.setattr(nudge_worker, "new_engine", lambda: engine)
    return engine


def test_run_cycle_task_returns_summary(monkeypatch, disposed):
    engine = _stub(monkeypatch)

    summary = nudge_worker.run_cycle.apply().get()

    assert summary == {"processed": 2, "notifications_sent": ["in_app:countdown→p-1"], "errors": []}
    assert disposed == [True]
    assert engine.closed


def test_trigger_event_task_passes_arguments(monkeypatch, disposed):
    engine = _stub(monkeypatch)

    summary = nudge_worker.trigger_event.apply(args=("trip-1", "trip_activated", "Go!")).get()

    assert engine.events == [("trip-1", "trip_activated", "Go!")]
    assert summary["errors"] == ["event/trip_activated: db down"]
    assert disposed == [True]
    assert engine.closed


def test_settings_cache_is_shared_across_tasks(monkeypatch):
    monkeypatch.setattr(nudge_worker, "_settings_cache", None)
    first, second = nudge_worker.new_engine(), nudge_worker.new_engine()
    assert first is not second
    assert first.settings_cache is second.settings_cache


def test_beat_schedule_and_routes():
    entry = celery_app.conf.beat_schedule["nudge-cycle"]
    assert entry["task"] == "app.workers.nudge.run_cycle"
    assert entry["schedule"] == 3600
    assert celery_app.conf.task_routes["app.workers.nudge.trigger_event"] == {"queue": "nudge"}


# ── OpenAI client across task runs ─────────────────────────────────────────

COMPLETION = {
    "id": "chatcmpl-1",
    "object": "chat.completion",
    "created": 0,
    "model": "gpt-4o-mini",
    "choices": [{
        "index": 0,
        "finish_reason": "stop",
        "message": {"role": "assistant", "content": '{"subject": "AI subj", "body": "AI body"}'},
    }],
}


class _CompletionHandler(BaseHTTPRequestHandler):
    protocol_version = "HTTP/1.1"  # keep-alive, so the client pools the connection

    def do_POST(self):
        self.rfile.read(int(self.headers.get("Content-Length", 0)))
        body = json.dumps(COMPLETION).encode()
        self.send_response(200)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def log_message(self, *args):
        pass


@pytest.fixture
def openai_server(monkeypatch):
    server = ThreadingHTTPServer(("127.0.0.1", 0), _CompletionHandler)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    monkeypatch.setattr(settings, "OPENAI_API_KEY", "sk-test")
    monkeypatch.setenv("OPENAI_BASE_URL", f"http://127.0.0.1:{server.server_port}/v1")
    yield
    server.shutdown()
    server.server_close()


def test_generator_works_on_every_task_run(monkeypatch, disposed, openai_server):
    ctx = NudgeMessageInput(trigger_type="countdown", trip_title="Keys Tarpon Week", days=7)

    async def generate_only(self):
        message = await self._generator.generate(ctx)
        return CycleResult(notifications_sent=[message.subject])

    monkeypatch.setattr(NudgeEngine, "run_cycle", generate_only)

    first = nudge_worker.run_cycle.apply().get()
    second = nudge_worker.run_cycle.apply().get()

    assert first["notifications_sent"] == ["AI subj"]
    assert second["notifications_sent"] == ["AI subj"]
