"""Concurrency guard: idempotent replay, single-flight, in-flight joining, event lifecycle."""

import asyncio
from decimal import Decimal

import pytest

from conftest import MARKET_ID, OTHER_USER, USER
from lendcore.errors import ErrorCode, LendingError
from lendcore.lending.guard import ConcurrencyGuard, fingerprint_params
from lendcore.models import EventStatus, Operation
from lendcore.storage.event_log import list_events


async def _settle():
    for _ in range(5):
        await asyncio.sleep(0)


@pytest.fixture
def guard(temp_db, clock):
    return ConcurrencyGuard(temp_db, clock)


def test_fingerprint_is_order_independent():
    assert fingerprint_params({"a": "1", "b": "2"}) == fingerprint_params({"b": "2", "a": "1"})
    assert fingerprint_params({"a": "1"}) != fingerprint_params({"a": "2"})


@pytest.mark.asyncio
async def test_completed_key_replays_stored_result(guard, temp_db):
    calls = 0

    async def action(_pending):
        nonlocal calls
        calls += 1
        return {"borrowed": Decimal("70.5"), "txHash": "ABC"}

    first = await guard.run(Operation.BORROW, USER, MARKET_ID, action, idempotency_key="k1", params={"amount": "70.5"})
    second = await guard.run(Operation.BORROW, USER, MARKET_ID, action, idempotency_key="k1", params={"amount": "70.5"})

    assert first.success and second.success
    assert first.data == second.data == {"borrowed": "70.5", "txHash": "ABC"}
    assert calls == 1
    events = list_events(temp_db)
    assert len(events) == 1
    assert events[0].status == EventStatus.COMPLETED


@pytest.mark.asyncio
async def test_same_key_different_params_is_rejected(guard):
    async def action(_pending):
        return {"ok": True}

    await guard.run(Operation.BORROW, USER, MARKET_ID, action, idempotency_key="k1", params={"amount": "1"})
    result = await guard.run(Operation.BORROW, USER, MARKET_ID, action, idempotency_key="k1", params={"amount": "2"})
    assert not result.success
    assert result.error_code == ErrorCode.IDEMPOTENCY_MISMATCH.value


@pytest.mark.asyncio
async def test_key_is_scoped_per_operation(guard):
    async def action(_pending):
        return {"ok": True}

    await guard.run(Operation.BORROW, USER, MARKET_ID, action, idempotency_key="k1", params={"amount": "1"})
    result = await guard.run(Operation.REPAY, USER, MARKET_ID, action, idempotency_key="k1", params={"amount": "9"})
    assert result.success


@pytest.mark.asyncio
async def test_second_mutation_on_busy_pair_fails_fast(guard):
    gate = asyncio.Event()

    async def slow(_pending):
        await gate.wait()
        return {"done": True}

    async def fast(_pending):
        return {"done": True}

    first = asyncio.create_task(guard.run(Operation.BORROW, USER, MARKET_ID, slow))
    await _settle()
    assert guard.is_busy(USER, MARKET_ID)

    blocked = await guard.run(Operation.REPAY, USER, MARKET_ID, fast)
    assert blocked.error_code == ErrorCode.OPERATION_IN_PROGRESS.value

    # a different user in the same market is unaffected
    other = await guard.run(Operation.BORROW, OTHER_USER, MARKET_ID, fast)
    assert other.success

    gate.set()
    assert (await first).success
    assert not guard.is_busy(USER, MARKET_ID)


@pytest.mark.asyncio
async def test_concurrent_duplicates_join_in_flight_call(guard, temp_db):
    gate = asyncio.Event()
    calls = 0

    async def action(_pending):
        nonlocal calls
        calls += 1
        await gate.wait()
        return {"amount": Decimal("5")}

    params = {"amount": "5"}
    first = asyncio.create_task(
        guard.run(Operation.BORROW, USER, MARKET_ID, action, idempotency_key="dup", params=params)
    )
    await _settle()
    second = asyncio.create_task(
        guard.run(Operation.BORROW, USER, MARKET_ID, action, idempotency_key="dup", params=params)
    )
    await _settle()
    gate.set()
    a, b = await asyncio.gather(first, second)

    assert calls == 1
    assert a.success and b.success
    assert a.data == b.data == {"amount": "5"}
    assert len(list_events(temp_db)) == 1


@pytest.mark.asyncio
async def test_pending_key_reports_in_progress(guard, temp_db, clock):
    from lendcore.storage import event_log

    event_log.record_pending(
        temp_db,
        Operation.BORROW,
        USER,
        MARKET_ID,
        clock(),
        idempotency_key="stuck",
        params_hash=fingerprint_params({"amount": "1"}),
        params={"amount": "1"},
    )

    async def action(_pending):
        return {}

    result = await guard.run(
        Operation.BORROW, USER, MARKET_ID, action, idempotency_key="stuck", params={"amount": "1"}
    )
    assert result.error_code == ErrorCode.OPERATION_IN_PROGRESS.value


@pytest.mark.asyncio
async def test_failed_key_executes_again(guard, temp_db):
    attempts = 0

    async def flaky(_pending):
        nonlocal attempts
        attempts += 1
        if attempts == 1:
            raise LendingError(ErrorCode.TX_FAILED, "ledger down")
        return {"attempt": attempts}

    failed = await guard.run(Operation.BORROW, USER, MARKET_ID, flaky, idempotency_key="retry", params={"a": "1"})
    assert failed.error_code == ErrorCode.TX_FAILED.value
    retried = await guard.run(Operation.BORROW, USER, MARKET_ID, flaky, idempotency_key="retry", params={"a": "1"})
    assert retried.success
    assert retried.data == {"attempt": 2}

    statuses = [e.status for e in reversed(list_events(temp_db))]
    assert statuses == [EventStatus.FAILED, EventStatus.COMPLETED]


@pytest.mark.asyncio
async def test_unexpected_error_becomes_internal_error(guard, temp_db):
    async def broken(_pending):
        raise RuntimeError("boom")

    result = await guard.run(Operation.WITHDRAW, USER, MARKET_ID, broken)
    assert result.error_code == ErrorCode.INTERNAL_ERROR.value
    assert result.error.message == "Internal error"
    event = list_events(temp_db)[0]
    assert event.status == EventStatus.FAILED
    assert event.error_code == "INTERNAL_ERROR"
    assert not guard.is_busy(USER, MARKET_ID)


@pytest.mark.asyncio
async def test_retry_receives_hash_left_unconfirmed(guard, temp_db):
    seen = []

    async def submit(pending):
        seen.append(pending)
        if len(seen) == 1:
            raise LendingError(ErrorCode.TX_FAILED, "not confirmed", pending_tx_hash="ABC123")
        return {"txHash": pending}

    first = await guard.run(Operation.BORROW, USER, MARKET_ID, submit, idempotency_key="t", params={"a": "1"})
    assert first.error_code == ErrorCode.TX_FAILED.value
    assert list_events(temp_db)[0].pending_tx_hash == "ABC123"

    retried = await guard.run(Operation.BORROW, USER, MARKET_ID, submit, idempotency_key="t", params={"a": "1"})
    assert retried.data == {"txHash": "ABC123"}
    assert seen == [None, "ABC123"]


@pytest.mark.asyncio
async def test_cancelled_caller_leaves_operation_running(guard, temp_db):
    gate = asyncio.Event()

    async def slow(_pending):
        await gate.wait()
        return {"done": True}

    caller = asyncio.create_task(guard.run(Operation.BORROW, USER, MARKET_ID, slow, idempotency_key="c"))
    await _settle()
    caller.cancel()
    with pytest.raises(asyncio.CancelledError):
        await caller
    assert guard.is_busy(USER, MARKET_ID)

    gate.set()
    await guard.drain()
    assert not guard.is_busy(USER, MARKET_ID)
    assert list_events(temp_db)[0].status == EventStatus.COMPLETED


@pytest.mark.asyncio
async def test_idle_locks_are_dropped(guard):
    async def action(_pending):
        return {}

    await guard.run(Operation.BORROW, USER, MARKET_ID, action)
    async with guard.aggregate_lock(MARKET_ID):
        assert MARKET_ID in guard._market_locks
    assert guard._market_locks == {}
    assert guard._busy == set()
    assert guard._inflight == {}
