"""Domain-specific exceptions for call tracking and relaying.

Only the validation, not-found and conflict errors are meant to reach API callers.
Protocol, transport and upstream errors are absorbed by the relay.
"""

from __future__ import annotations


class CallError(Exception):
    status_code: int = 500
    default_detail: str = "Call error"

    def __init__(self, detail: str | None = None) -> None:
        super().__init__(detail or self.default_detail)
        self.detail = detail or self.default_detail


class ValidationError(CallError):
    status_code = 400
    default_detail = "Invalid call request."


class NotFoundError(CallError):
    status_code = 404
    default_detail = "Call not found"


class AlreadyExistsError(CallError):
    status_code = 409
    default_detail = "Call already exists"


class InvalidTransitionError(CallError):
    status_code = 409
    default_detail = "Invalid call status transition"


class ProtocolError(CallError):
    status_code = 400
    default_detail = "Malformed stream frame"


class TransportError(CallError):
    status_code = 502
    default_detail = "Peer connection lost"


class UpstreamAuthError(CallError):
    status_code = 502
    default_detail = "Failed to get signed URL"


class CallPlacementError(CallError):
    status_code = 502
    default_detail = "Failed to initiate call"
