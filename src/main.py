"""Entry point for the Twilio <-> ElevenLabs call relay service."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from api.routes import router as api_router
from calls.broadcast import BroadcastHub
from calls.errors import CallError
from calls.store import CallRecordStore
from config.settings import get_settings
from integrations.elevenlabs import SignedUrlProvider, dial_ai_peer
from telephony.supervisor import SessionSupervisor


@asynccontextmanager
async def lifespan(app: FastAPI):
    store = CallRecordStore(
        history_size=settings.call_history_size,
        retain_terminated=settings.call_retain_terminated,
    )
    hub = BroadcastHub(queue_maxsize=settings.monitor_queue_size)
    supervisor = SessionSupervisor(
        store=store,
        hub=hub,
        endpoint_provider=SignedUrlProvider(),
        ai_dialer=dial_ai_peer,
        record_audio_events=settings.call_record_audio_events,
    )

    app.state.call_store = store
    app.state.broadcast_hub = hub
    app.state.session_supervisor = supervisor
    try:
        yield
    finally:
        await supervisor.shutdown()
        await hub.close()


settings = get_settings()

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)

app = FastAPI(
    title="Voice Call Relay",
    description="Relays Twilio Media Streams to ElevenLabs Conversational AI with live call monitoring.",
    lifespan=lifespan,
)
app.include_router(api_router, prefix="/api")


@app.exception_handler(CallError)
async def call_error_handler(request: Request, exc: CallError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})
