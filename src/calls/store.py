"""Concurrency-safe in-memory table of call records."""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections import OrderedDict
from collections.abc import Awaitable, Callable
from typing import Any

from calls.errors import AlreadyExistsError, NotFoundError, ValidationError
from calls.models import CallRecord

LOGGER = logging.getLogger(__name__)

Mutator = Callable[[CallRecord], "Awaitable[Any] | Any"]


class CallRecordStore:
    """In-memory store for call records, locked per call id.

    Terminated calls leave the active table and are kept in a bounded history so
    that ``get`` still answers for recently finished calls. With
    ``retain_terminated`` they stay in the active table instead.

    Note: This is a single-process store. For multi-worker deployments, replace
    with Redis or another shared store.
    """

    def __init__(self, *, history_size: int = 100, retain_terminated: bool = False) -> None:
        self._active: dict[str, CallRecord] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._history: OrderedDict[str, CallRecord] = OrderedDict()
        self._history_size = max(0, history_size)
        self._retain_terminated = retain_terminated

    def _lock_for(self, call_id: str) -> asyncio.Lock:
        return self._locks.setdefault(call_id, asyncio.Lock())

    async def create(
        self,
        call_id: str | None,
        *,
        peer_number: str | None,
        origin_number: str | None = None,
        metadata: dict[str, Any] | None = None,
        detail: str | None = None,
    ) -> CallRecord:
        call_id = (call_id or "").strip()
        peer_number = (peer_number or "").strip()
        if not call_id:
            raise ValidationError("callId is required")
        if not peer_number:
            raise ValidationError("peerNumber is required")

        async with self._lock_for(call_id):
            if call_id in self._active:
                raise AlreadyExistsError(f"Call {call_id} already exists")

            record = CallRecord(
                call_id=call_id,
                peer_number=peer_number,
                origin_number=origin_number,
                metadata=dict(metadata or {}),
            )
            record.append_event("initiated", detail)
            self._active[call_id] = record
            LOGGER.info("Call %s created for %s", call_id, peer_number)
            return record.snapshot()

    async def get(self, call_id: str) -> CallRecord:
        record = self._active.get(call_id) or self._history.get(call_id)
        if record is None:
            raise NotFoundError(f"Call {call_id} not found")
        return record.snapshot()

    async def update(self, call_id: str, mutator: Mutator) -> CallRecord:
        """Apply ``mutator`` to the record atomically.

        The mutator works on a copy; if it raises, the stored record is untouched.
        """

        if call_id not in self._active:
            raise NotFoundError(f"Call {call_id} not found")

        async with self._lock_for(call_id):
            # Eviction may have happened while waiting for the lock.
            record = self._active.get(call_id)
            if record is None:
                raise NotFoundError(f"Call {call_id} not found")

            working = record.snapshot()
            result = mutator(working)
            if inspect.isawaitable(result):
                await result

            self._active[call_id] = working
            if working.is_terminal and not self._retain_terminated:
                self._evict(call_id, working)
            return working.snapshot()

    async def remove(self, call_id: str) -> None:
        if call_id not in self._active:
            return
        async with self._lock_for(call_id):
            self._active.pop(call_id, None)
        self._locks.pop(call_id, None)

    async def list_active(self) -> list[CallRecord]:
        return [record.snapshot() for record in self._active.values()]

    async def list_history(self) -> list[CallRecord]:
        return [record.snapshot() for record in self._history.values()]

    def _evict(self, call_id: str, record: CallRecord) -> None:
        self._active.pop(call_id, None)
        self._locks.pop(call_id, None)
        LOGGER.info("Call %s finished with status %s", call_id, record.status.value)

        if not self._history_size:
            return
        self._history.pop(call_id, None)
        self._history[call_id] = record
        while len(self._history) > self._history_size:
            self._history.popitem(last=False)
