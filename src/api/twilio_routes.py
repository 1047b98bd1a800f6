"""Twilio Voice integration.

This module provides:
- TwiML that connects outbound and inbound calls to the media stream endpoint.
- The status callback webhook driving the ringing/answered states.
- The Media Streams WebSocket handed to the session supervisor.
"""

from __future__ import annotations

import logging
from urllib.parse import urlencode
from xml.sax.saxutils import escape

from fastapi import APIRouter, Depends, Request, Response, WebSocket

from api.dependencies import get_hub, get_store, get_supervisor
from calls.broadcast import BroadcastHub
from calls.errors import AlreadyExistsError, InvalidTransitionError, ValidationError
from calls.models import CallRecord, CallStatus
from calls.store import CallRecordStore
from config.settings import get_settings
from integrations.twilio_client import build_twilio_client, get_twilio_config
from telephony.peers import StarletteMediaPeer
from telephony.supervisor import SessionSupervisor

LOGGER = logging.getLogger(__name__)

router = APIRouter(prefix="/twilio", tags=["twilio"])

# Twilio CallStatus values that map onto the lifecycle; the rest are informational.
PROVIDER_STATUS_MAP: dict[str, CallStatus] = {
    "ringing": CallStatus.RINGING,
    "answered": CallStatus.ANSWERED,
    "in-progress": CallStatus.ANSWERED,
    "busy": CallStatus.FAILED,
    "no-answer": CallStatus.FAILED,
    "canceled": CallStatus.FAILED,
    "failed": CallStatus.FAILED,
}


def _twiml_response(xml: str) -> Response:
    # Twilio expects application/xml
    return Response(content=xml, media_type="application/xml")


def _attr(value: str) -> str:
    return escape(value, {'"': "&quot;"})


def _to_ws_url(http_url: str) -> str:
    if http_url.startswith("https://"):
        return "wss://" + http_url.removeprefix("https://")
    if http_url.startswith("http://"):
        return "ws://" + http_url.removeprefix("http://")
    return http_url


def _stream_url(request: Request, call_sid: str) -> str:
    settings = get_settings()
    if settings.public_base_url:
        base = settings.public_base_url.rstrip("/")
    else:
        # Fallback to request host. This may not work behind proxies; prefer PUBLIC_BASE_URL.
        base = str(request.base_url).rstrip("/")

    url = _to_ws_url(f"{base}/api/twilio/media-stream")
    if call_sid:
        url += "?" + urlencode({"callSid": call_sid})
    return url


def _twiml_stream(*, stream_url: str, parameters: dict[str, str]) -> str:
    params = "".join(
        f"<Parameter name=\"{_attr(name)}\" value=\"{_attr(value)}\" />"
        for name, value in parameters.items()
        if value
    )
    return (
        "<?xml version=\"1.0\" encoding=\"UTF-8\"?>"
        "<Response>"
        "<Connect>"
        f"<Stream url=\"{_attr(stream_url)}\">{params}</Stream>"
        "</Connect>"
        "</Response>"
    )


async def _form_value(request: Request, name: str) -> str:
    form = await request.form()
    return str(form.get(name) or request.query_params.get(name) or "").strip()


@router.api_route("/outbound-call-twiml", methods=["GET", "POST"])
async def outbound_call_twiml(request: Request) -> Response:
    call_sid = await _form_value(request, "CallSid")
    return _twiml_response(
        _twiml_stream(stream_url=_stream_url(request, call_sid), parameters={"callSid": call_sid})
    )


@router.post("/incoming-call")
async def incoming_call_twiml(
    request: Request,
    store: CallRecordStore = Depends(get_store),
    hub: BroadcastHub = Depends(get_hub),
) -> Response:
    call_sid = await _form_value(request, "CallSid")
    caller = await _form_value(request, "From")
    called = await _form_value(request, "To")
    if not call_sid:
        raise ValidationError("CallSid is required")

    try:
        record = await store.create(
            call_sid,
            peer_number=caller,
            origin_number=called or None,
            detail="Inbound call received",
        )
    except AlreadyExistsError:
        LOGGER.info("Inbound call %s already tracked", call_sid)
    else:
        hub.publish("call_initiated", record)

    return _twiml_response(
        _twiml_stream(
            stream_url=_stream_url(request, call_sid),
            parameters={"callSid": call_sid, "peerNumber": caller, "originNumber": called},
        )
    )


@router.post("/status", status_code=204)
async def twilio_status_callback(
    request: Request,
    store: CallRecordStore = Depends(get_store),
    hub: BroadcastHub = Depends(get_hub),
) -> Response:
    call_sid = await _form_value(request, "CallSid")
    provider_status = (await _form_value(request, "CallStatus")).lower()
    if not call_sid:
        raise ValidationError("CallSid is required")

    status = PROVIDER_STATUS_MAP.get(provider_status)
    if status is None:
        LOGGER.info("Ignoring provider status %r for call %s", provider_status, call_sid)
        return Response(status_code=204)

    def apply(record: CallRecord) -> None:
        record.transition(status, f"provider_{provider_status.replace('-', '_')}", "Provider status callback")

    try:
        record = await store.update(call_sid, apply)
    except InvalidTransitionError as exc:
        # Status callbacks race the media stream, which is authoritative.
        LOGGER.info("Ignoring stale provider status for call %s: %s", call_sid, exc.detail)
        return Response(status_code=204)

    hub.publish("call_updated", record)
    return Response(status_code=204)


@router.websocket("/media-stream")
async def twilio_media_stream(
    websocket: WebSocket,
    supervisor: SessionSupervisor = Depends(get_supervisor),
) -> None:
    await websocket.accept()
    LOGGER.info("[Server] Twilio connected to media stream")
    call_sid = websocket.query_params.get("callSid") or None
    await supervisor.handle(StarletteMediaPeer(websocket), call_id=call_sid)


def get_twilio_client():
    return build_twilio_client()


def get_twilio_cfg():
    return get_twilio_config()
