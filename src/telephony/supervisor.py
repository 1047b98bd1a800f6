"""Accepts media stream connections and runs one relay per call."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from calls.broadcast import BroadcastHub
from calls.errors import AlreadyExistsError, NotFoundError, ProtocolError, TransportError
from calls.store import CallRecordStore
from telephony import protocol
from telephony.peers import PeerConnection
from telephony.relay import AiDialer, CallSessionRelay, SignedEndpointProvider

LOGGER = logging.getLogger(__name__)


class SessionSupervisor:
    """Allocate a ``CallSessionRelay`` per accepted media connection.

    A call id is owned by at most one relay at a time; a second stream for the
    same call is refused.
    """

    def __init__(
        self,
        *,
        store: CallRecordStore,
        hub: BroadcastHub,
        endpoint_provider: SignedEndpointProvider,
        ai_dialer: AiDialer,
        record_audio_events: bool = True,
    ) -> None:
        self._store = store
        self._hub = hub
        self._endpoint_provider = endpoint_provider
        self._ai_dialer = ai_dialer
        self._record_audio_events = record_audio_events
        self._relays: dict[str, CallSessionRelay] = {}
        self._tasks: set[asyncio.Task] = set()
        # Handlers that have not started a relay task yet.
        self._pending: set[asyncio.Task] = set()

    @property
    def active_calls(self) -> list[str]:
        return list(self._relays)

    async def handle(self, media_peer: PeerConnection, *, call_id: str | None = None) -> None:
        """Run the session for one media connection until it ends.

        The media connection is closed exactly once on every exit path,
        including cancellation by ``shutdown``.
        """

        current = asyncio.current_task()
        if current is not None:
            self._pending.add(current)
        relay: CallSessionRelay | None = None
        try:
            pending: list[dict[str, Any]] = []
            start: protocol.StreamStart | None = None
            if not call_id:
                frame = await self._wait_for_start(media_peer)
                if frame is None:
                    return
                pending.append(frame)
                start = protocol.parse_stream_start(frame)
                call_id = start.call_id

            if call_id in self._relays:
                LOGGER.warning("Refusing second media stream for call %s", call_id)
                return

            relay = CallSessionRelay(
                media_peer,
                call_id=call_id,
                store=self._store,
                hub=self._hub,
                endpoint_provider=self._endpoint_provider,
                ai_dialer=self._ai_dialer,
                record_audio_events=self._record_audio_events,
                pending_frames=pending,
            )
            self._relays[call_id] = relay
            await self._attach_record(call_id, start)

            task = asyncio.create_task(relay.run(), name=f"relay-{call_id}")
            self._tasks.add(task)
            self._pending.discard(current)
            try:
                await task
            finally:
                self._tasks.discard(task)
        finally:
            self._pending.discard(current)
            if relay is None:
                await self._close_quietly(media_peer)
            else:
                # Runs even if the relay task never started.
                await relay.close()
                if self._relays.get(call_id) is relay:
                    del self._relays[call_id]

    async def shutdown(self) -> None:
        tasks = list(self._tasks) + list(self._pending)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        LOGGER.info("Session supervisor stopped %d session(s)", len(tasks))

    async def _attach_record(self, call_id: str, start: protocol.StreamStart | None) -> None:
        """Attach to a pre-created record or create one for an unseen call."""

        try:
            await self._store.get(call_id)
            return
        except NotFoundError:
            pass

        params = start.custom_parameters if start else {}
        try:
            record = await self._store.create(
                call_id,
                peer_number=params.get("peerNumber") or params.get("from") or "unknown",
                origin_number=params.get("originNumber") or params.get("to"),
                detail="Created from media stream",
            )
        except AlreadyExistsError:
            return
        self._hub.publish("call_initiated", record)

    async def _wait_for_start(self, media_peer: PeerConnection) -> dict[str, Any] | None:
        while True:
            try:
                text = await media_peer.receive_text()
            except TransportError as exc:
                LOGGER.info("[Twilio] Media stream closed before start: %s", exc.detail)
                return None

            try:
                frame = protocol.parse_frame(text)
                event = protocol.media_event(frame)
                if event == "start":
                    protocol.parse_stream_start(frame)
                    return frame
            except ProtocolError as exc:
                LOGGER.warning("[Twilio] Dropped frame before start: %s", exc.detail)
                continue

            if event == "stop":
                LOGGER.info("[Twilio] Media stream stopped before start")
                return None
            LOGGER.debug("[Twilio] Ignoring %s event before start", event)

    async def _close_quietly(self, peer: PeerConnection) -> None:
        try:
            await peer.close()
        except Exception as exc:
            LOGGER.debug("Closing media peer failed: %s", exc)
