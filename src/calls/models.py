"""In-memory call record and its lifecycle state machine."""

from __future__ import annotations

import copy
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any

from calls.errors import InvalidTransitionError, ProtocolError


class CallStatus(str, Enum):
    INITIATED = "initiated"
    RINGING = "ringing"
    ANSWERED = "answered"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({CallStatus.COMPLETED, CallStatus.FAILED})

# Position on the success path. FAILED is reachable from any non-terminal state.
_STATUS_RANK: dict[CallStatus, int] = {
    CallStatus.INITIATED: 0,
    CallStatus.RINGING: 1,
    CallStatus.ANSWERED: 2,
    CallStatus.IN_PROGRESS: 3,
    CallStatus.COMPLETED: 4,
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _isoformat(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def can_transition(current: CallStatus, target: CallStatus) -> bool:
    """Return whether ``current -> target`` is allowed by the lifecycle."""

    if current in TERMINAL_STATUSES:
        return False
    if target is CallStatus.FAILED:
        return True
    return _STATUS_RANK[target] > _STATUS_RANK[current]


@dataclass(frozen=True)
class CallEvent:
    timestamp: datetime
    kind: str
    detail: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": _isoformat(self.timestamp),
            "kind": self.kind,
            "detail": self.detail,
        }


@dataclass
class CallRecord:
    """State of one active or recently terminated call."""

    call_id: str
    peer_number: str
    origin_number: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    stream_id: str | None = None
    status: CallStatus = CallStatus.INITIATED
    started_at: datetime = field(default_factory=utcnow)
    ended_at: datetime | None = None
    events: list[CallEvent] = field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def append_event(self, kind: str, detail: str | None = None) -> CallEvent:
        if self.is_terminal:
            raise InvalidTransitionError(f"Call {self.call_id} is {self.status.value}; no further events")

        timestamp = utcnow()
        if self.events and timestamp <= self.events[-1].timestamp:
            # Clock resolution can repeat a value; keep the log strictly increasing.
            timestamp = self.events[-1].timestamp + timedelta(microseconds=1)

        event = CallEvent(timestamp=timestamp, kind=kind, detail=detail)
        self.events.append(event)
        return event

    def transition(self, status: CallStatus, kind: str, detail: str | None = None) -> None:
        if not can_transition(self.status, status):
            raise InvalidTransitionError(
                f"Call {self.call_id} cannot move from {self.status.value} to {status.value}"
            )

        event = self.append_event(kind, detail)
        self.status = status
        if status in TERMINAL_STATUSES:
            self.ended_at = event.timestamp

    def assign_stream(self, stream_id: str) -> None:
        if self.stream_id is not None and self.stream_id != stream_id:
            raise ProtocolError(f"Call {self.call_id} already bound to stream {self.stream_id}")
        self.stream_id = stream_id

    def snapshot(self) -> CallRecord:
        # Events are immutable, so copies share them.
        return replace(self, metadata=copy.deepcopy(self.metadata), events=list(self.events))

    def to_dict(self) -> dict[str, Any]:
        return {
            "callId": self.call_id,
            "streamId": self.stream_id,
            "peerNumber": self.peer_number,
            "originNumber": self.origin_number,
            "status": self.status.value,
            "startedAt": _isoformat(self.started_at),
            "endedAt": _isoformat(self.ended_at),
            "metadata": dict(self.metadata),
            "events": [event.to_dict() for event in self.events],
        }
