from __future__ import annotations

import asyncio

import pytest

from calls.errors import AlreadyExistsError, InvalidTransitionError, NotFoundError, ValidationError
from calls.models import CallRecord, CallStatus
from calls.store import CallRecordStore


def _run(coro):
    return asyncio.run(coro)


def test_create_without_peer_number_raises_and_stores_nothing():
    async def scenario():
        store = CallRecordStore()
        with pytest.raises(ValidationError):
            await store.create("CA1", peer_number=None)
        return await store.list_active()

    assert _run(scenario()) == []


def test_get_unknown_call_raises_not_found():
    store = CallRecordStore()
    with pytest.raises(NotFoundError):
        _run(store.get("CA-unknown"))


def test_create_twice_raises_already_exists():
    async def scenario():
        store = CallRecordStore()
        await store.create("CA1", peer_number="+15551234")
        await store.create("CA1", peer_number="+15559999")

    with pytest.raises(AlreadyExistsError):
        _run(scenario())


def test_concurrent_updates_on_one_call_are_serialized():
    async def scenario():
        store = CallRecordStore()
        await store.create("CA1", peer_number="+15551234")

        async def slow_append(record: CallRecord) -> None:
            record.append_event("first")
            await asyncio.sleep(0.01)

        def fast_append(record: CallRecord) -> None:
            record.append_event("second")

        await asyncio.gather(store.update("CA1", slow_append), store.update("CA1", fast_append))
        return await store.get("CA1")

    record = _run(scenario())
    assert [event.kind for event in record.events] == ["initiated", "first", "second"]


def test_updates_on_different_calls_do_not_block_each_other():
    async def scenario():
        store = CallRecordStore()
        await store.create("CA1", peer_number="+15551234")
        await store.create("CA2", peer_number="+15555678")
        release = asyncio.Event()

        async def held(record: CallRecord) -> None:
            record.append_event("held")
            await release.wait()

        blocked = asyncio.create_task(store.update("CA1", held))
        await asyncio.sleep(0)
        other = await asyncio.wait_for(
            store.update("CA2", lambda record: record.append_event("free")),
            timeout=1.0,
        )
        release.set()
        await blocked
        return other

    other = _run(scenario())
    assert other.events[-1].kind == "free"


def test_failing_mutator_leaves_record_untouched():
    async def scenario():
        store = CallRecordStore()
        await store.create("CA1", peer_number="+15551234")

        def bad(record: CallRecord) -> None:
            record.append_event("partial")
            record.transition(CallStatus.INITIATED, "initiated")

        with pytest.raises(InvalidTransitionError):
            await store.update("CA1", bad)
        return await store.get("CA1")

    record = _run(scenario())
    assert [event.kind for event in record.events] == ["initiated"]


def test_returned_records_are_snapshots():
    async def scenario():
        store = CallRecordStore()
        created = await store.create("CA1", peer_number="+15551234")
        created.append_event("tampered")
        return await store.get("CA1")

    assert [event.kind for event in _run(scenario()).events] == ["initiated"]


def test_terminal_call_moves_to_bounded_history():
    async def scenario():
        store = CallRecordStore(history_size=1)
        for call_id in ["CA1", "CA2"]:
            await store.create(call_id, peer_number="+15551234")
            await store.update(
                call_id,
                lambda record: record.transition(CallStatus.FAILED, "call_failed"),
            )
        return store, await store.list_active()

    store, active = _run(scenario())
    assert active == []
    assert _run(store.get("CA2")).status is CallStatus.FAILED
    with pytest.raises(NotFoundError):
        _run(store.get("CA1"))


def test_update_after_eviction_raises_not_found():
    async def scenario():
        store = CallRecordStore()
        await store.create("CA1", peer_number="+15551234")
        await store.update("CA1", lambda record: record.transition(CallStatus.FAILED, "call_failed"))
        await store.update("CA1", lambda record: record.append_event("late"))

    with pytest.raises(NotFoundError):
        _run(scenario())


def test_retain_terminated_keeps_calls_active():
    async def scenario():
        store = CallRecordStore(retain_terminated=True)
        await store.create("CA1", peer_number="+15551234")
        await store.update("CA1", lambda record: record.transition(CallStatus.FAILED, "call_failed"))
        return await store.list_active()

    active = _run(scenario())
    assert [record.call_id for record in active] == ["CA1"]
    assert active[0].ended_at is not None


def test_remove_is_idempotent():
    async def scenario():
        store = CallRecordStore()
        await store.create("CA1", peer_number="+15551234")
        await store.remove("CA1")
        await store.remove("CA1")
        return await store.list_active()

    assert _run(scenario()) == []


def test_update_cost_does_not_grow_with_event_history():
    async def scenario():
        store = CallRecordStore()
        await store.create("CA1", peer_number="+15551234")
        loop = asyncio.get_running_loop()
        began = loop.time()
        for _ in range(5000):
            await store.update("CA1", lambda record: record.append_event("media_received"))
        return loop.time() - began, await store.get("CA1")

    elapsed, record = _run(scenario())
    assert len(record.events) == 5001
    # About a minute of two-way audio; must stay well inside real time.
    assert elapsed < 5.0


def test_lookups_of_unknown_calls_leave_no_locks_behind():
    async def scenario():
        store = CallRecordStore()
        await store.create("CA1", peer_number="+15551234")
        await store.update("CA1", lambda record: record.transition(CallStatus.FAILED, "call_failed"))
        for call_id in ["CA1", "CA-unknown"]:
            with pytest.raises(NotFoundError):
                await store.update(call_id, lambda record: record.append_event("late"))
            await store.remove(call_id)
        return store._locks

    assert _run(scenario()) == {}
