"""ElevenLabs Conversational AI connectivity: signed URL fetch and socket dial."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

import httpx
import websockets
from websockets.exceptions import WebSocketException

from calls.errors import TransportError, UpstreamAuthError
from config.settings import get_settings
from telephony.peers import WebsocketsPeer

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class ElevenLabsConfig:
    api_key: str
    agent_id: str
    signed_url_endpoint: str
    timeout: float = 10.0


def get_elevenlabs_config() -> ElevenLabsConfig:
    settings = get_settings()
    if not settings.elevenlabs_api_key or not settings.elevenlabs_agent_id:
        raise UpstreamAuthError("ElevenLabs credentials are not configured")

    return ElevenLabsConfig(
        api_key=settings.elevenlabs_api_key,
        agent_id=settings.elevenlabs_agent_id,
        signed_url_endpoint=settings.elevenlabs_signed_url_endpoint,
        timeout=settings.elevenlabs_request_timeout,
    )


class SignedUrlProvider:
    """Fetch the time-limited URL that authenticates one AI conversation.

    Configuration is resolved per request so a missing key fails the session,
    not application startup.
    """

    def __init__(
        self,
        config: ElevenLabsConfig | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._config = config
        self._transport = transport

    async def get_signed_url(self) -> str:
        cfg = self._config or get_elevenlabs_config()

        async with httpx.AsyncClient(timeout=cfg.timeout, transport=self._transport) as client:
            try:
                response = await client.get(
                    cfg.signed_url_endpoint,
                    params={"agent_id": cfg.agent_id},
                    headers={"xi-api-key": cfg.api_key},
                )
                response.raise_for_status()
            except httpx.HTTPError as exc:
                LOGGER.error("Signed URL request failed: %s", exc)
                raise UpstreamAuthError(f"Failed to get signed URL: {exc}") from exc

        try:
            data = response.json()
        except ValueError as exc:
            raise UpstreamAuthError("Signed URL response is not JSON") from exc
        signed_url = data.get("signed_url") if isinstance(data, dict) else None
        if not isinstance(signed_url, str) or not signed_url:
            raise UpstreamAuthError("Signed URL missing from response")
        return signed_url


async def dial_ai_peer(url: str) -> WebsocketsPeer:
    try:
        connection = await websockets.connect(url)
    except (OSError, asyncio.TimeoutError, WebSocketException) as exc:
        raise TransportError(f"AI peer connection failed: {exc}") from exc

    LOGGER.info("Connected to ElevenLabs Conversational AI")
    return WebsocketsPeer(connection)
