"""Telephony media relay components.

Call path:
PSTN -> Twilio -> Media Streams (WebSocket) -> CallSessionRelay -> ElevenLabs Conversational AI.
"""
