"""
Nudge settings: providers and the TTL cache in front of them.

A provider returns raw ``{KEY: "value"}`` strings. `SettingsCache` turns
them into a typed `NudgeSettings` snapshot and keeps the last good one, so
an unreachable source degrades to stale (or default) settings instead of
failing the cycle.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional, Protocol

import httpx

from app.types.nudge_contract import NudgeSettings
from config import settings as app_settings

_LOGGER = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class SettingsProvider(Protocol):
    async def fetch(self) -> Dict[str, str]: ...


class EnvSettingsProvider:
    """Reads ``NUDGE_*`` keys from the process environment."""

    def __init__(self, environ: Optional[Dict[str, str]] = None):
        self._environ = environ

    async def fetch(self) -> Dict[str, str]:
        env = self._environ if self._environ is not None else os.environ
        return {k: v for k, v in env.items() if k.startswith("NUDGE_")}


class AirtableSettingsProvider:
    """Key/value rows (``Key``, ``Value`` fields) from an Airtable table."""

    API_ROOT = "https://api.airtable.com/v0"

    def __init__(
        self,
        api_key: str,
        base_id: str,
        table: str = "Settings",
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._url = f"{self.API_ROOT}/{base_id}/{table}"
        self._headers = {"Authorization": f"Bearer {api_key}"}
        self._timeout = timeout
        self._transport = transport

    async def fetch(self) -> Dict[str, str]:
        values: Dict[str, str] = {}
        params: Dict[str, str] = {}
        async with httpx.AsyncClient(
            headers=self._headers, timeout=self._timeout, transport=self._transport
        ) as client:
            while True:
                resp = await client.get(self._url, params=params)
                resp.raise_for_status()
                data = resp.json()
                for record in data.get("records", []):
                    fields = record.get("fields") or {}
                    key = fields.get("Key")
                    if key and str(key).startswith("NUDGE_"):
                        values[str(key)] = "" if fields.get("Value") is None else str(fields["Value"])
                offset = data.get("offset")
                if not offset:
                    break
                params = {"offset": offset}
        return values


@dataclass
class _Snapshot:
    data: NudgeSettings
    loaded_at: datetime


class SettingsCache:
    """Owns the current settings snapshot for one process.

    Constructed once at start-up and handed to the engine; never a module
    global.
    """

    def __init__(
        self,
        provider: SettingsProvider,
        ttl: timedelta = timedelta(minutes=5),
        clock: Clock = utc_now,
    ):
        self._provider = provider
        self._ttl = ttl
        self._clock = clock
        self._snapshot: Optional[_Snapshot] = None

    @property
    def current(self) -> NudgeSettings:
        return self._snapshot.data if self._snapshot else NudgeSettings()

    async def load(self) -> NudgeSettings:
        now = self._clock()
        if self._snapshot and now - self._snapshot.loaded_at < self._ttl:
            return self._snapshot.data
        try:
            raw = await self._provider.fetch()
        except Exception as exc:  # noqa: BLE001
            _LOGGER.error("Failed to load nudge settings: %s", exc)
            return self.current
        parsed = NudgeSettings.from_raw(raw)
        self._snapshot = _Snapshot(data=parsed, loaded_at=now)
        return parsed


def build_settings_provider() -> SettingsProvider:
    if app_settings.AIRTABLE_API_KEY and app_settings.AIRTABLE_BASE_ID:
        return AirtableSettingsProvider(
            api_key=app_settings.AIRTABLE_API_KEY,
            base_id=app_settings.AIRTABLE_BASE_ID,
            table=app_settings.AIRTABLE_SETTINGS_TABLE,
            timeout=app_settings.AIRTABLE_TIMEOUT,
        )
    return EnvSettingsProvider()
