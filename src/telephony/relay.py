"""Per-call relay between the telephony media stream and the conversational AI.

One relay owns exactly two peers and runs one pump task per peer. Whichever pump
finishes first ends the session: the other pump is cancelled, both peers are
closed and the call record is finalized.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from typing import Any, Protocol

from calls.broadcast import BroadcastHub
from calls.errors import (
    InvalidTransitionError,
    NotFoundError,
    ProtocolError,
    TransportError,
    UpstreamAuthError,
)
from calls.models import CallRecord, CallStatus
from calls.store import CallRecordStore
from telephony import protocol
from telephony.peers import PeerConnection

LOGGER = logging.getLogger(__name__)

AiDialer = Callable[[str], Awaitable[PeerConnection]]

_IGNORED_MEDIA_EVENTS = frozenset({"connected", "mark", "dtmf"})


class SignedEndpointProvider(Protocol):
    async def get_signed_url(self) -> str: ...


class CallSessionRelay:
    """Translate frames between the media peer and the AI peer for one call."""

    def __init__(
        self,
        media_peer: PeerConnection,
        *,
        call_id: str,
        store: CallRecordStore,
        hub: BroadcastHub,
        endpoint_provider: SignedEndpointProvider,
        ai_dialer: AiDialer,
        record_audio_events: bool = True,
        pending_frames: Sequence[dict[str, Any]] = (),
    ) -> None:
        self.call_id = call_id
        self.stream_id: str | None = None
        self.stop_seen = False
        self.dropped_ai_frames = 0
        self.dropped_media_frames = 0

        self._media = media_peer
        self._ai: PeerConnection | None = None
        self._store = store
        self._hub = hub
        self._endpoint_provider = endpoint_provider
        self._ai_dialer = ai_dialer
        self._record_audio_events = record_audio_events
        self._pending_frames = list(pending_frames)
        self._failure: str | None = None
        self._closed = False

    @property
    def ai_connected(self) -> bool:
        return self._ai is not None

    async def run(self) -> None:
        media_task = asyncio.create_task(self._pump_media(), name=f"relay-media-{self.call_id}")
        ai_task = asyncio.create_task(self._pump_ai(), name=f"relay-ai-{self.call_id}")
        try:
            await asyncio.wait({media_task, ai_task}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            self._note_failure("Session shut down")
            raise
        finally:
            for task in (media_task, ai_task):
                task.cancel()
            results = await asyncio.gather(media_task, ai_task, return_exceptions=True)
            for result in results:
                if isinstance(result, Exception):
                    LOGGER.error("Relay task for call %s crashed", self.call_id, exc_info=result)
                    self._note_failure("Relay task crashed")
            await self.close()

    async def close(self) -> None:
        """Finalize the record and close both peers. Runs once per relay."""

        if self._closed:
            return
        self._closed = True

        await self._finalize()
        await self._close_peer(self._ai, "AI")
        await self._close_peer(self._media, "media")

    def _note_failure(self, reason: str) -> None:
        if self._failure is None:
            self._failure = reason

    async def _close_peer(self, peer: PeerConnection | None, label: str) -> None:
        if peer is None:
            return
        try:
            await peer.close()
        except Exception as exc:
            LOGGER.debug("Closing %s peer for call %s failed: %s", label, self.call_id, exc)

    async def _finalize(self) -> None:
        if self.stop_seen:
            status, kind, detail = CallStatus.COMPLETED, "call_ended", "Call completed successfully"
        else:
            status, kind, detail = CallStatus.FAILED, "call_failed", self._failure or "Peer disconnected"

        changed = False

        def finish(record: CallRecord) -> None:
            nonlocal changed
            if record.is_terminal:
                return
            record.transition(status, kind, detail)
            changed = True

        try:
            record = await self._store.update(self.call_id, finish)
        except NotFoundError:
            LOGGER.debug("Call %s already finalized", self.call_id)
            return

        if changed:
            LOGGER.info("Call %s ended as %s: %s", self.call_id, status.value, detail)
            self._hub.publish("call_updated", record)

    # Media peer -> AI peer

    async def _pump_media(self) -> None:
        for frame in self._pending_frames:
            if await self._dispatch_media(frame):
                return

        while True:
            try:
                text = await self._media.receive_text()
            except TransportError as exc:
                LOGGER.info("[Twilio] Media stream for call %s closed: %s", self.call_id, exc.detail)
                self._note_failure(exc.detail)
                return

            try:
                frame = protocol.parse_frame(text)
            except ProtocolError as exc:
                LOGGER.warning("[Twilio] Dropped frame for call %s: %s", self.call_id, exc.detail)
                continue

            if await self._dispatch_media(frame):
                return

    async def _dispatch_media(self, frame: dict[str, Any]) -> bool:
        """Handle one media frame; returns True once the media stream is over."""

        event = protocol.media_event(frame)
        try:
            if event == "media":
                await self._on_media(frame)
            elif event == "start":
                await self._on_start(frame)
            elif event == "stop":
                await self._on_stop()
            elif event in _IGNORED_MEDIA_EVENTS:
                LOGGER.debug("[Twilio] %s event for call %s", event, self.call_id)
            else:
                LOGGER.info("[Twilio] Unhandled event %r for call %s", event, self.call_id)
        except (ProtocolError, InvalidTransitionError, NotFoundError) as exc:
            LOGGER.warning("[Twilio] Dropped %s frame for call %s: %s", event or "unknown", self.call_id, exc.detail)
        except TransportError as exc:
            LOGGER.info("[ElevenLabs] Forwarding for call %s failed: %s", self.call_id, exc.detail)
            self._note_failure(exc.detail)
            return True
        return event == "stop"

    async def _on_start(self, frame: dict[str, Any]) -> None:
        start = protocol.parse_stream_start(frame)
        if start.call_id != self.call_id:
            LOGGER.warning("[Twilio] Stream reports call %s, session owns %s", start.call_id, self.call_id)

        def begin(record: CallRecord) -> None:
            record.assign_stream(start.stream_id)
            record.transition(CallStatus.IN_PROGRESS, "call_started", "Call connected successfully")

        record = await self._store.update(self.call_id, begin)
        self.stream_id = start.stream_id
        LOGGER.info("[Twilio] Stream %s started for call %s", start.stream_id, self.call_id)
        self._hub.publish("call_updated", record)

    async def _on_media(self, frame: dict[str, Any]) -> None:
        audio = protocol.media_payload(frame)
        if self._ai is None:
            self.dropped_media_frames += 1
            return

        await self._ai.send_text(protocol.build_user_audio_frame(audio))
        await self._record_audio("media_received", "Received audio from user")

    async def _on_stop(self) -> None:
        self.stop_seen = True
        LOGGER.info("[Twilio] Stream %s ended for call %s", self.stream_id, self.call_id)

        def end(record: CallRecord) -> None:
            record.transition(CallStatus.COMPLETED, "call_ended", "Call completed successfully")

        record = await self._store.update(self.call_id, end)
        self._hub.publish("call_updated", record)

    async def _record_audio(self, kind: str, detail: str) -> None:
        if not self._record_audio_events:
            return

        def log(record: CallRecord) -> None:
            if not record.is_terminal:
                record.append_event(kind, detail)

        await self._store.update(self.call_id, log)

    # AI peer -> media peer

    async def _pump_ai(self) -> None:
        try:
            signed_url = await self._endpoint_provider.get_signed_url()
            self._ai = await self._ai_dialer(signed_url)
        except (UpstreamAuthError, TransportError) as exc:
            LOGGER.error("[ElevenLabs] Setup error for call %s: %s", self.call_id, exc.detail)
            self._note_failure(exc.detail)
            return

        LOGGER.info("[ElevenLabs] Connected to Conversational AI for call %s", self.call_id)
        while True:
            try:
                text = await self._ai.receive_text()
            except TransportError as exc:
                LOGGER.info("[ElevenLabs] Disconnected for call %s: %s", self.call_id, exc.detail)
                self._note_failure(exc.detail)
                return

            try:
                frame = protocol.parse_frame(text)
            except ProtocolError as exc:
                LOGGER.warning("[ElevenLabs] Dropped frame for call %s: %s", self.call_id, exc.detail)
                continue

            try:
                await self._dispatch_ai(frame)
            except TransportError as exc:
                LOGGER.info("[Twilio] Forwarding for call %s failed: %s", self.call_id, exc.detail)
                self._note_failure(exc.detail)
                return

    async def _dispatch_ai(self, frame: dict[str, Any]) -> None:
        kind = protocol.ai_event(frame)
        try:
            if kind == "audio":
                await self._on_ai_audio(frame)
            elif kind == "interruption":
                await self._on_interruption()
            elif kind == "ping":
                await self._on_ping(frame)
            elif kind == "conversation_initiation_metadata":
                LOGGER.info("[ElevenLabs] Received initiation metadata for call %s", self.call_id)
            else:
                LOGGER.info("[ElevenLabs] Unhandled message type %r for call %s", kind, self.call_id)
        except (ProtocolError, InvalidTransitionError, NotFoundError) as exc:
            LOGGER.warning("[ElevenLabs] Dropped %s frame for call %s: %s", kind or "unknown", self.call_id, exc.detail)

    async def _on_ai_audio(self, frame: dict[str, Any]) -> None:
        chunk = protocol.ai_audio_payload(frame)
        if self.stream_id is None:
            self.dropped_ai_frames += 1
            LOGGER.debug("[ElevenLabs] Received audio for call %s but no streamSid yet", self.call_id)
            return

        await self._media.send_text(protocol.build_media_frame(self.stream_id, chunk))
        await self._record_audio("agent_audio", "Sent agent audio to caller")

    async def _on_interruption(self) -> None:
        if self.stream_id is None:
            return
        await self._media.send_text(protocol.build_clear_frame(self.stream_id))

    async def _on_ping(self, frame: dict[str, Any]) -> None:
        event_id = protocol.ping_event_id(frame)
        try:
            await self._ai.send_text(protocol.build_pong_frame(event_id))
        except TransportError as exc:
            LOGGER.warning("[ElevenLabs] Failed to answer ping %s for call %s: %s", event_id, self.call_id, exc.detail)
