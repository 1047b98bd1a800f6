"""API-facing Pydantic models."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class OutboundCallRequest(BaseModel):
    number: str | None = Field(default=None, description="E.164 phone number, e.g. +1555...")
    metadata: dict[str, Any] = Field(default_factory=dict)


class OutboundCallResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool = True
    message: str = "Call initiated"
    call_sid: str = Field(serialization_alias="callSid")


class CreateCallRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    call_id: str | None = Field(default=None, alias="callId")
    peer_number: str | None = Field(default=None, alias="peerNumber")
    origin_number: str | None = Field(default=None, alias="originNumber")
    metadata: dict[str, Any] = Field(default_factory=dict)


class UpdateCallRequest(BaseModel):
    status: str
    event: str | None = Field(default=None, description="Event kind recorded in the call log.")
    detail: str | None = None
