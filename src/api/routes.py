"""FastAPI routes exposing call tracking and monitoring."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect

from api.dependencies import get_hub, get_store
from api.schemas import CreateCallRequest, OutboundCallRequest, OutboundCallResponse, UpdateCallRequest
from api.twilio_routes import get_twilio_cfg, get_twilio_client, router as twilio_router
from calls.broadcast import BroadcastHub
from calls.errors import ValidationError
from calls.models import CallRecord, CallStatus
from calls.store import CallRecordStore
from integrations.twilio_client import place_call

LOGGER = logging.getLogger(__name__)

router = APIRouter()
router.include_router(twilio_router)


def parse_status(value: str) -> CallStatus:
    """Map a pushed status onto the lifecycle; ``completed`` is owned by the media stream."""

    normalized = (value or "").strip().lower().replace("-", "_")
    try:
        status = CallStatus(normalized)
    except ValueError as exc:
        raise ValidationError(f"Unknown call status: {value!r}") from exc

    if status is CallStatus.INITIATED:
        raise ValidationError("initiated is only set when the call is created")
    if status is CallStatus.COMPLETED:
        raise ValidationError("completed is only reached when the media stream stops")
    return status


@router.post("/outbound-call", response_model=OutboundCallResponse)
async def create_outbound_call(
    payload: OutboundCallRequest,
    store: CallRecordStore = Depends(get_store),
    hub: BroadcastHub = Depends(get_hub),
    twilio_client=Depends(get_twilio_client),
    cfg=Depends(get_twilio_cfg),
) -> OutboundCallResponse:
    number = (payload.number or "").strip()
    if not number:
        raise ValidationError("Phone number is required")

    call_sid = await place_call(twilio_client, cfg, to_number=number)
    record = await store.create(
        call_sid,
        peer_number=number,
        origin_number=cfg.from_number,
        metadata=payload.metadata,
        detail="Outbound call placed",
    )
    hub.publish("call_initiated", record)
    return OutboundCallResponse(call_sid=call_sid)


@router.post("/calls")
async def create_call(
    payload: CreateCallRequest,
    store: CallRecordStore = Depends(get_store),
    hub: BroadcastHub = Depends(get_hub),
) -> dict[str, Any]:
    record = await store.create(
        payload.call_id,
        peer_number=payload.peer_number,
        origin_number=payload.origin_number,
        metadata=payload.metadata,
    )
    hub.publish("call_initiated", record)
    return {"success": True, "call": record.to_dict()}


@router.put("/calls/{call_id}")
async def update_call(
    call_id: str,
    payload: UpdateCallRequest,
    store: CallRecordStore = Depends(get_store),
    hub: BroadcastHub = Depends(get_hub),
) -> dict[str, Any]:
    status = parse_status(payload.status)
    kind = payload.event or status.value

    def apply(record: CallRecord) -> None:
        record.transition(status, kind, payload.detail)

    record = await store.update(call_id, apply)
    hub.publish("call_updated", record)
    return {"success": True, "call": record.to_dict()}


@router.get("/calls")
async def list_calls(store: CallRecordStore = Depends(get_store)) -> dict[str, Any]:
    calls = await store.list_active()
    return {"calls": [record.to_dict() for record in calls]}


@router.get("/calls/{call_id}")
async def get_call(call_id: str, store: CallRecordStore = Depends(get_store)) -> dict[str, Any]:
    record = await store.get(call_id)
    return {"call": record.to_dict()}


@router.websocket("/monitor")
async def monitor_calls(
    websocket: WebSocket,
    store: CallRecordStore = Depends(get_store),
    hub: BroadcastHub = Depends(get_hub),
) -> None:
    await websocket.accept()
    subscriber = hub.subscribe(websocket, await store.list_active())
    try:
        while True:
            # Observers are read-only; inbound messages are ignored.
            await websocket.receive_text()
    except WebSocketDisconnect:
        return
    finally:
        hub.unsubscribe(subscriber)
