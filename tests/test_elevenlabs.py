from __future__ import annotations

import asyncio

import httpx
import pytest

from calls.errors import TransportError, UpstreamAuthError
from integrations.elevenlabs import ElevenLabsConfig, SignedUrlProvider

CONFIG = ElevenLabsConfig(
    api_key="xi-test-key",
    agent_id="agent_123",
    signed_url_endpoint="https://api.elevenlabs.io/v1/convai/conversation/get_signed_url",
)


def _run(coro):
    return asyncio.run(coro)


def test_signed_url_request_is_authenticated():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"signed_url": "wss://api.elevenlabs.io/v1/convai/conversation?token=abc"})

    provider = SignedUrlProvider(CONFIG, transport=httpx.MockTransport(handler))
    url = _run(provider.get_signed_url())

    assert url == "wss://api.elevenlabs.io/v1/convai/conversation?token=abc"
    assert seen[0].headers["xi-api-key"] == "xi-test-key"
    assert seen[0].url.params["agent_id"] == "agent_123"


def test_signed_url_http_error_is_upstream_auth_error():
    provider = SignedUrlProvider(
        CONFIG,
        transport=httpx.MockTransport(lambda request: httpx.Response(401, json={"detail": "invalid key"})),
    )
    with pytest.raises(UpstreamAuthError):
        _run(provider.get_signed_url())


def test_signed_url_missing_from_response_is_upstream_auth_error():
    provider = SignedUrlProvider(
        CONFIG,
        transport=httpx.MockTransport(lambda request: httpx.Response(200, json={"unexpected": True})),
    )
    with pytest.raises(UpstreamAuthError, match="missing"):
        _run(provider.get_signed_url())


def test_missing_credentials_fail_at_fetch_time(monkeypatch):
    from config.settings import get_settings

    monkeypatch.delenv("ELEVENLABS_API_KEY", raising=False)
    monkeypatch.delenv("ELEVENLABS_AGENT_ID", raising=False)
    get_settings.cache_clear()
    try:
        with pytest.raises(UpstreamAuthError, match="not configured"):
            _run(SignedUrlProvider().get_signed_url())
    finally:
        get_settings.cache_clear()


def test_dial_timeout_is_a_transport_error(monkeypatch):
    import integrations.elevenlabs as elevenlabs

    async def timing_out_connect(url: str):
        raise asyncio.TimeoutError()

    monkeypatch.setattr(elevenlabs.websockets, "connect", timing_out_connect)

    with pytest.raises(TransportError, match="AI peer connection failed"):
        _run(elevenlabs.dial_ai_peer("wss://api.elevenlabs.io/v1/convai/conversation?token=abc"))
