"""One-shot nudge cycle for platform cron schedulers.
Run hourly instead of (not alongside) Celery beat:
    python -m app.scripts.run_nudge_cycle
"""

from __future__ import annotations

import asyncio
import json
import logging

from app.logging_setup import setup_logging
from app.services.nudge_engine import build_engine
import db

_LOGGER = logging.getLogger("app.scripts.run_nudge_cycle")


async def main() -> dict:
    engine = build_engine()
    try:
        result = await engine.run_cycle()
    finally:
        await engine.aclose()
        await db.dispose_engine()
    return result.model_dump()


if __name__ == "__main__":  # pragma: no cover
    setup_logging()
    _LOGGER.info("[CRON] run_nudge_cycle: job started")
    try:
        summary = asyncio.run(main())
        _LOGGER.info("[CRON] run_nudge_cycle: job completed %s", json.dumps(summary, ensure_ascii=False))
    except Exception:
        _LOGGER.exception("[CRON] run_nudge_cycle: job failed")
        raise SystemExit(1)
