from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from calls.errors import CallPlacementError
from config.settings import get_settings

LOGGER = logging.getLogger(__name__)

STATUS_CALLBACK_EVENTS = ["initiated", "ringing", "answered", "completed"]


@dataclass(frozen=True)
class TwilioConfig:
    account_sid: str
    auth_token: str
    from_number: str
    public_base_url: str


def get_twilio_config() -> TwilioConfig:
    settings = get_settings()
    if not settings.twilio_account_sid or not settings.twilio_auth_token:
        raise ValueError("Twilio credentials are not configured")
    if not settings.twilio_from_number:
        raise ValueError("Twilio from-number is not configured")
    if not settings.public_base_url:
        raise ValueError("PUBLIC_BASE_URL is required for Twilio callbacks")

    return TwilioConfig(
        account_sid=settings.twilio_account_sid,
        auth_token=settings.twilio_auth_token,
        from_number=settings.twilio_from_number,
        public_base_url=settings.public_base_url.rstrip("/"),
    )


def build_twilio_client():
    from twilio.rest import Client

    cfg = get_twilio_config()
    return Client(cfg.account_sid, cfg.auth_token)


async def place_call(twilio_client, cfg: TwilioConfig, *, to_number: str) -> str:
    """Start an outbound call whose media is streamed back to this service.

    Returns the provider call SID. The Twilio SDK is blocking, so it runs in a
    worker thread to keep live relays moving.
    """

    base = cfg.public_base_url
    try:
        call = await asyncio.to_thread(
            twilio_client.calls.create,
            to=to_number,
            from_=cfg.from_number,
            url=f"{base}/api/twilio/outbound-call-twiml",
            method="POST",
            status_callback=f"{base}/api/twilio/status",
            status_callback_event=STATUS_CALLBACK_EVENTS,
            status_callback_method="POST",
        )
    except Exception as exc:
        LOGGER.error("Error initiating outbound call to %s: %s", to_number, exc)
        raise CallPlacementError() from exc

    return str(call.sid)
