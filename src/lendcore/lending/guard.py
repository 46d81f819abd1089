"""Idempotency and single-flight concurrency control around every mutation."""

from __future__ import annotations

import asyncio
import hashlib
import json
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from decimal import Decimal
from typing import TYPE_CHECKING, Any

import structlog

from lendcore.errors import ErrorCode, LendingError
from lendcore.lending.registry import Clock, wall_clock_ms
from lendcore.models import EventStatus, Operation, OperationResult
from lendcore.storage import event_log as event_store

if TYPE_CHECKING:
    from duckdb import DuckDBPyConnection

log = structlog.get_logger(__name__)

# Receives the ledger hash a timed-out earlier attempt with the same
# idempotency key left unconfirmed, or None.
Action = Callable[[str | None], Awaitable[dict[str, Any]]]


def fingerprint_params(params: dict[str, Any]) -> str:
    """SHA-256 over canonical JSON of the logical request parameters."""
    canonical = event_store.dumps(params) or "{}"
    return hashlib.sha256(canonical.encode()).hexdigest()


def _normalize(data: dict[str, Any]) -> dict[str, Any]:
    """Same JSON shape whether a result is fresh or replayed from the log."""
    return json.loads(event_store.dumps(data) or "{}")


@dataclass
class _InFlight:
    fingerprint: str
    task: asyncio.Task[OperationResult]


@dataclass
class _SharedLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


class ConcurrencyGuard:
    """Wraps mutations with idempotency replay, single-flight locking and event logging.

    At most one mutation runs per (user, market); a second one arriving while the
    first holds the pair fails fast with OPERATION_IN_PROGRESS. A duplicate carrying
    the same idempotency key and parameters joins the in-flight call instead.

    A mutation runs in its own task. Cancelling the caller does not interrupt
    it mid-ledger-call: the task finishes, resolves its event and frees the pair.
    """

    def __init__(self, conn: DuckDBPyConnection, clock: Clock = wall_clock_ms):
        self.conn = conn
        self.clock = clock
        self._busy: set[tuple[str, str]] = set()
        self._market_locks: dict[str, _SharedLock] = {}
        self._inflight: dict[tuple[str, str, str, str], _InFlight] = {}
        self._tasks: set[asyncio.Task[OperationResult]] = set()

    @asynccontextmanager
    async def aggregate_lock(self, market_id: str) -> AsyncIterator[None]:
        """Per-market lock for read-check-write sequences on pool aggregates."""
        shared = self._market_locks.get(market_id)
        if shared is None:
            shared = self._market_locks[market_id] = _SharedLock()
        shared.users += 1
        try:
            async with shared.lock:
                yield
        finally:
            shared.users -= 1
            if shared.users == 0:
                del self._market_locks[market_id]

    def is_busy(self, user_address: str, market_id: str) -> bool:
        return (user_address, market_id) in self._busy

    async def drain(self) -> None:
        """Wait for every running mutation to resolve. Call before closing the connection."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def run(
        self,
        operation: Operation,
        user_address: str,
        market_id: str,
        action: Action,
        *,
        idempotency_key: str | None = None,
        params: dict[str, Any] | None = None,
        amount: Decimal | None = None,
        currency: str | None = None,
        tx_hash: str | None = None,
    ) -> OperationResult:
        params = params or {}
        fingerprint = fingerprint_params(params)
        scope = (idempotency_key, user_address, market_id, operation.value) if idempotency_key else None
        pending_tx: str | None = None

        if scope is not None:
            inflight = self._inflight.get(scope)
            if inflight is not None:
                if inflight.fingerprint != fingerprint:
                    return self._mismatch(idempotency_key)
                log.info("idempotent_join", operation=operation.value, idempotency_key=idempotency_key)
                return await asyncio.shield(inflight.task)
            prior = event_store.find_latest_by_key(
                self.conn, idempotency_key, user_address, market_id, operation
            )
            if prior is not None:
                if prior.params_hash != fingerprint:
                    return self._mismatch(idempotency_key)
                if prior.status == EventStatus.COMPLETED:
                    log.info("idempotent_replay", operation=operation.value, event_id=prior.id)
                    return OperationResult.ok(prior.result or {})
                if prior.status == EventStatus.PENDING:
                    return OperationResult.fail(
                        ErrorCode.OPERATION_IN_PROGRESS,
                        f"Operation with idempotency key {idempotency_key} is still pending",
                    )
                pending_tx = prior.pending_tx_hash
                log.info(
                    "idempotent_retry",
                    operation=operation.value,
                    failed_event_id=prior.id,
                    pending_tx_hash=pending_tx,
                )

        pair = (user_address, market_id)
        if pair in self._busy:
            return OperationResult.fail(
                ErrorCode.OPERATION_IN_PROGRESS,
                f"Another operation is in progress for {user_address} in market {market_id}",
            )

        self._busy.add(pair)
        task = asyncio.create_task(
            self._execute(
                operation,
                user_address,
                market_id,
                action,
                idempotency_key=idempotency_key,
                fingerprint=fingerprint,
                params=params,
                amount=amount,
                currency=currency,
                tx_hash=tx_hash,
                pending_tx=pending_tx,
            )
        )
        self._tasks.add(task)
        if scope is not None:
            self._inflight[scope] = _InFlight(fingerprint, task)

        def _release(done: asyncio.Task[OperationResult]) -> None:
            self._tasks.discard(done)
            self._busy.discard(pair)
            if scope is not None:
                self._inflight.pop(scope, None)

        task.add_done_callback(_release)
        return await asyncio.shield(task)

    async def _execute(
        self,
        operation: Operation,
        user_address: str,
        market_id: str,
        action: Action,
        *,
        idempotency_key: str | None,
        fingerprint: str,
        params: dict[str, Any],
        amount: Decimal | None,
        currency: str | None,
        tx_hash: str | None,
        pending_tx: str | None,
    ) -> OperationResult:
        event_id = event_store.record_pending(
            self.conn,
            operation,
            user_address,
            market_id,
            self.clock(),
            amount=amount,
            currency=currency,
            idempotency_key=idempotency_key,
            params_hash=fingerprint,
            tx_hash=tx_hash,
            params=params,
        )
        bound = log.bind(operation=operation.value, event_id=event_id, user=user_address, market_id=market_id)
        try:
            data = _normalize(await action(pending_tx))
        except LendingError as e:
            event_store.fail(
                self.conn, event_id, e.code.value, e.message, self.clock(), pending_tx_hash=e.pending_tx_hash
            )
            bound.info("operation_rejected", code=e.code.value, reason=e.message, pending_tx_hash=e.pending_tx_hash)
            return OperationResult.from_error(e)
        except asyncio.CancelledError:
            event_store.fail(self.conn, event_id, ErrorCode.INTERNAL_ERROR.value, "Operation cancelled", self.clock())
            bound.warning("operation_cancelled")
            raise
        except Exception:
            bound.exception("operation_failed")
            event_store.fail(self.conn, event_id, ErrorCode.INTERNAL_ERROR.value, "Internal error", self.clock())
            return OperationResult.fail(ErrorCode.INTERNAL_ERROR, "Internal error")
        event_store.complete(self.conn, event_id, data, self.clock())
        bound.info("operation_completed")
        return OperationResult.ok(data)

    @staticmethod
    def _mismatch(idempotency_key: str | None) -> OperationResult:
        return OperationResult.fail(
            ErrorCode.IDEMPOTENCY_MISMATCH,
            f"Idempotency key {idempotency_key} was used with different parameters",
        )
