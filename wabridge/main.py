import asyncio
import os

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.orm import Session

from wabridge.config import settings
from wabridge.database import get_db
from wabridge.logging_config import get_logger, setup_logging
from wabridge.models import Chat, JidMapping, Message, WhatsAppSession
from wabridge.routers import messages, sessions, transport_events
from wabridge.services.session_supervisor import get_supervisor

setup_logging(settings.log_level)

app = FastAPI(
    title="wabridge",
    description="Multi-tenant WhatsApp session bridge",
    version="0.1.0",
)

cors_env = os.environ.get("CORS_ALLOW_ORIGINS", "*")
cors_origins = [origin.strip() for origin in cors_env.split(",") if origin.strip()]
if not cors_origins:
    cors_origins = ["*"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(messages.router)
app.include_router(transport_events.router)
app.include_router(sessions.router)

worker_logger = get_logger("workers")
_background_tasks: list[asyncio.Task] = []


def _are_workers_enabled() -> bool:
    if os.environ.get("PYTEST_CURRENT_TEST"):
        return False
    return settings.outbound_worker_enabled


async def _outbound_worker_loop() -> None:
    supervisor = get_supervisor()
    interval_seconds = max(settings.outbound_worker_interval_seconds, 0.1)
    while True:
        try:
            await asyncio.sleep(interval_seconds)
            results = await supervisor.dispatch_outbound(limit=settings.outbound_batch_limit)
            if results:
                worker_logger.info("Outbound worker processed", extra={"context": results})
        except asyncio.CancelledError:
            break
        except Exception as exc:
            worker_logger.error("Outbound worker loop failed", extra={"context": {"error": str(exc)}})


async def _session_sync_loop() -> None:
    supervisor = get_supervisor()
    interval_seconds = max(settings.session_sync_interval_seconds, 0.1)
    while True:
        try:
            await supervisor.sync_sessions()
            await asyncio.sleep(interval_seconds)
        except asyncio.CancelledError:
            break
        except Exception as exc:
            worker_logger.error("Session sync loop failed", extra={"context": {"error": str(exc)}})
            await asyncio.sleep(interval_seconds)


@app.on_event("startup")
async def start_workers() -> None:
    if not _are_workers_enabled():
        return
    _background_tasks.append(asyncio.create_task(_session_sync_loop()))
    _background_tasks.append(asyncio.create_task(_outbound_worker_loop()))
    worker_logger.info("Session sync and outbound workers started")


@app.on_event("shutdown")
async def stop_workers() -> None:
    for task in _background_tasks:
        task.cancel()
    for task in _background_tasks:
        try:
            await task
        except asyncio.CancelledError:
            pass
    _background_tasks.clear()
    await get_supervisor().shutdown()


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/db-check")
def db_check(db: Session = Depends(get_db)):
    return {
        "status": "ok",
        "sessions": db.query(WhatsAppSession).count(),
        "chats": db.query(Chat).count(),
        "messages": db.query(Message).count(),
        "jid_mappings": db.query(JidMapping).count(),
    }
