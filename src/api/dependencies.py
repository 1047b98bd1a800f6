"""Shared FastAPI dependencies.

Separated to avoid circular imports between route modules. The service objects
are built once in the application lifespan and live on ``app.state``.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from starlette.requests import HTTPConnection

if TYPE_CHECKING:  # pragma: no cover
    from calls.broadcast import BroadcastHub
    from calls.store import CallRecordStore
    from telephony.supervisor import SessionSupervisor


def get_store(connection: HTTPConnection) -> CallRecordStore:
    return connection.app.state.call_store


def get_hub(connection: HTTPConnection) -> BroadcastHub:
    return connection.app.state.broadcast_hub


def get_supervisor(connection: HTTPConnection) -> SessionSupervisor:
    return connection.app.state.session_supervisor
