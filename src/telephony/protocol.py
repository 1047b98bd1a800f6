"""Frame parsing and construction for the two relayed protocols.

Media peer (Twilio Media Streams), keyed by ``event``:
- ``{"event": "start", "start": {"streamSid": ..., "callSid": ...}}``
- ``{"event": "media", "media": {"payload": <base64>}}``
- ``{"event": "stop"}``

AI peer (ElevenLabs Conversational AI), keyed by ``type``:
- ``conversation_initiation_metadata``, ``audio``, ``interruption``, ``ping``

Audio bytes are never transcoded; only the envelope changes.
"""

from __future__ import annotations

import base64
import binascii
import json
from dataclasses import dataclass, field
from typing import Any

from calls.errors import ProtocolError


@dataclass(frozen=True, slots=True)
class StreamStart:
    call_id: str
    stream_id: str
    custom_parameters: dict[str, str] = field(default_factory=dict)


def parse_frame(text: str | bytes) -> dict[str, Any]:
    try:
        frame = json.loads(text)
    except (TypeError, ValueError) as exc:
        raise ProtocolError(f"Unparseable frame: {exc}") from exc
    if not isinstance(frame, dict):
        raise ProtocolError("Frame is not a JSON object")
    return frame


def media_event(frame: dict[str, Any]) -> str:
    return str(frame.get("event") or "")


def ai_event(frame: dict[str, Any]) -> str:
    return str(frame.get("type") or "")


def parse_stream_start(frame: dict[str, Any]) -> StreamStart:
    start = frame.get("start")
    if not isinstance(start, dict):
        raise ProtocolError("start frame without start block")

    stream_id = str(start.get("streamSid") or frame.get("streamSid") or "").strip()
    call_id = str(start.get("callSid") or "").strip()
    if not stream_id or not call_id:
        raise ProtocolError("start frame missing streamSid or callSid")

    params = start.get("customParameters") or {}
    if not isinstance(params, dict):
        params = {}
    return StreamStart(
        call_id=call_id,
        stream_id=stream_id,
        custom_parameters={str(k): str(v) for k, v in params.items()},
    )


def _decode_payload(payload: Any) -> bytes:
    if not isinstance(payload, str) or not payload:
        raise ProtocolError("Missing audio payload")
    try:
        return base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ProtocolError(f"Invalid base64 audio payload: {exc}") from exc


def media_payload(frame: dict[str, Any]) -> bytes:
    media = frame.get("media")
    if not isinstance(media, dict):
        raise ProtocolError("media frame without media block")
    return _decode_payload(media.get("payload"))


def ai_audio_payload(frame: dict[str, Any]) -> str:
    """Return the base64 chunk of an AI ``audio`` frame in either accepted form."""

    audio = frame.get("audio")
    if isinstance(audio, dict) and audio.get("chunk"):
        chunk = audio["chunk"]
    else:
        audio_event = frame.get("audio_event")
        chunk = audio_event.get("audio_base_64") if isinstance(audio_event, dict) else None

    if not isinstance(chunk, str) or not chunk:
        raise ProtocolError("audio frame without chunk")
    return chunk


def ping_event_id(frame: dict[str, Any]) -> Any:
    ping = frame.get("ping_event")
    event_id = ping.get("event_id") if isinstance(ping, dict) else None
    if event_id is None:
        raise ProtocolError("ping frame without event_id")
    return event_id


def _dumps(message: dict[str, Any]) -> str:
    return json.dumps(message, separators=(",", ":"))


def build_media_frame(stream_id: str, payload: str) -> str:
    return _dumps({"event": "media", "streamSid": stream_id, "media": {"payload": payload}})


def build_clear_frame(stream_id: str) -> str:
    return _dumps({"event": "clear", "streamSid": stream_id})


def build_user_audio_frame(audio: bytes) -> str:
    return _dumps({"user_audio_chunk": base64.b64encode(audio).decode("ascii")})


def build_pong_frame(event_id: Any) -> str:
    return _dumps({"type": "pong", "event_id": event_id})
