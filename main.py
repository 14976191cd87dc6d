from fastapi import FastAPI

from app.logging_setup import setup_logging

# Initialize logging BEFORE anything else
setup_logging()

import db  # noqa: E402
from app.routes import nudge  # noqa: E402
from app.services.nudge_engine import build_engine  # noqa: E402

app = FastAPI(title="Trip Nudge API")

# The engine owns the settings cache for this process
app.state.nudge_engine = build_engine()

app.include_router(nudge.router)

# DB connections are managed lazily; tables via Alembic migrations

@app.on_event("shutdown")
async def shutdown_event():
    await db.dispose_engine()


@app.get("/")
async def root():
    return {"status": "online"}
