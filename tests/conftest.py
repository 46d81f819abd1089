"""Shared fixtures: temp DuckDB, in-memory ledger, manual clock, seeded service."""

import asyncio
import tempfile
from collections.abc import Awaitable, Callable
from decimal import Decimal
from pathlib import Path

import pytest
import structlog

from lendcore.errors import LedgerError, LedgerTimeout
from lendcore.ledger.base import (
    TES_SUCCESS,
    TX_ESCROW_CREATE,
    TX_PAYMENT,
    TX_VAULT_DEPOSIT,
    EscrowObject,
    LedgerAmount,
    LedgerTransaction,
)
from lendcore.ledger.conditions import generate_condition
from lendcore.lending.service import LendingService
from lendcore.models import Asset, Market
from lendcore.storage.db import get_connection, init_schema

MARKET_ID = "XRP-RLUSD"
CUSTODY = "rPT1Sjq2YGrBMTttX4GZHjKu9dyfzbpAYe"
ISSUER = "rQhWct2fv4Vc4KRjRgMrxa8xPN9Zx9iLKV"
USER = "rHb9CJAWyB4rj91VRWn96DkukG4bwdtyTh"
OTHER_USER = "rGWrZyQqhTp9Xu7G5Pkayo7bXjH4k4QYpf"
LENDER = "rPEPPER7kfTD9w2To4CQk6UCfuHM9c6GDY"
VAULT_ID = "8E7C2F6B4AAE8D1F0B9B1C4D3E5F6A7B8C9D0E1F2A3B4C5D6E7F8091A2B3C4D5"
START_MS = 1_700_000_000_000


class ManualClock:
    """Millisecond clock that only moves when told to."""

    def __init__(self, now_ms: int = START_MS):
        self.now_ms = now_ms

    def __call__(self) -> int:
        return self.now_ms

    def advance(self, seconds: int | float) -> None:
        self.now_ms += int(seconds * 1000)


class FakeLedger:
    """In-memory ledger gateway: registered transactions, live escrow entries, recorded submissions.

    Names in `failing` (fetch_transaction, get_escrow, finish_escrow, send_payment,
    debit_account) raise LedgerError on every call until removed. Names in
    `timing_out` (send_payment, debit_account) apply the payment and then raise
    LedgerTimeout, like a submission whose validation was never observed.
    `on_submit` runs before a payment is applied.
    """

    def __init__(self, custody_address: str = CUSTODY):
        self.custody_address = custody_address
        self.transactions: dict[str, LedgerTransaction] = {}
        self.escrows: dict[tuple[str, int], EscrowObject] = {}
        self.payments: list[tuple[str, LedgerAmount]] = []
        self.debits: list[tuple[str, LedgerAmount]] = []
        self.finished: list[tuple[str, int]] = []
        self.failing: set[str] = set()
        self.fail_for: set[str] = set()  # destinations whose payments fail
        self.timing_out: set[str] = set()
        self.on_submit: Callable[[], Awaitable[None]] | None = None
        self._sequence = 100
        self._counter = 0

    def _next_hash(self) -> str:
        self._counter += 1
        return f"{self._counter:064X}"

    async def _enter(self, name: str) -> None:
        # yield to the loop so concurrent callers really interleave
        await asyncio.sleep(0)
        if name in self.failing:
            raise LedgerError(f"{name} rejected", reason="tecINTERNAL")

    # --- test setup ---

    def add_escrow_create(
        self,
        owner: str,
        amount: str,
        condition: str,
        *,
        currency: str = "XRP",
        issuer: str | None = None,
        destination: str | None = None,
        cancel_after: int | None = None,
        validated: bool = True,
        result: str = TES_SUCCESS,
        tx_type: str = TX_ESCROW_CREATE,
        on_ledger: bool = True,
    ) -> str:
        self._sequence += 1
        tx_hash = self._next_hash()
        value = LedgerAmount(value=Decimal(amount), currency=currency, issuer=issuer)
        dest = destination or self.custody_address
        self.transactions[tx_hash] = LedgerTransaction(
            hash=tx_hash,
            tx_type=tx_type,
            account=owner,
            validated=validated,
            result=result,
            destination=dest,
            amount=value,
            sequence=self._sequence,
            condition=condition,
            cancel_after=cancel_after,
        )
        if on_ledger:
            self.escrows[(owner, self._sequence)] = EscrowObject(
                owner=owner, destination=dest, amount=value, condition=condition, cancel_after=cancel_after
            )
        return tx_hash

    def add_vault_tx(
        self,
        tx_type: str,
        account: str,
        amount: str | None,
        vault_id: str = VAULT_ID,
        *,
        currency: str = "RLUSD",
        issuer: str | None = ISSUER,
        mpt_issuance_id: str | None = None,
    ) -> str:
        tx_hash = self._next_hash()
        value = None
        if mpt_issuance_id:
            value = LedgerAmount(value=Decimal(amount or "0"), mpt_issuance_id=mpt_issuance_id)
        elif amount is not None:
            value = LedgerAmount(value=Decimal(amount), currency=currency, issuer=issuer)
        self.transactions[tx_hash] = LedgerTransaction(
            hash=tx_hash,
            tx_type=tx_type,
            account=account,
            validated=True,
            result=TES_SUCCESS,
            amount=value,
            vault_id=vault_id,
        )
        return tx_hash

    # --- gateway ---

    async def fetch_transaction(self, tx_hash: str) -> LedgerTransaction:
        await self._enter("fetch_transaction")
        tx = self.transactions.get(tx_hash)
        if tx is None:
            raise LedgerError(f"Transaction not found: {tx_hash}", reason="not_found", tx_hash=tx_hash)
        return tx

    async def get_escrow(self, owner: str, sequence: int) -> EscrowObject | None:
        await self._enter("get_escrow")
        return self.escrows.get((owner, sequence))

    async def finish_escrow(self, owner: str, sequence: int, condition: str, fulfillment: str) -> str:
        await self._enter("finish_escrow")
        if self.escrows.pop((owner, sequence), None) is None:
            raise LedgerError("no such escrow", reason="tecNO_TARGET")
        self.finished.append((owner, sequence))
        return self._next_hash()

    async def _submit_payment(self, name: str, account: str, destination: str, amount: LedgerAmount) -> str:
        if self.on_submit is not None:
            await self.on_submit()
        tx_hash = self._next_hash()
        self.transactions[tx_hash] = LedgerTransaction(
            hash=tx_hash,
            tx_type=TX_PAYMENT,
            account=account,
            validated=True,
            result=TES_SUCCESS,
            destination=destination,
            amount=amount,
        )
        if name in self.timing_out:
            raise LedgerTimeout(f"Transaction {tx_hash} not validated in time", tx_hash=tx_hash)
        return tx_hash

    async def send_payment(self, destination: str, amount: LedgerAmount) -> str:
        await self._enter("send_payment")
        if destination in self.fail_for:
            raise LedgerError("payment failed", reason="tecPATH_DRY")
        self.payments.append((destination, amount))
        return await self._submit_payment("send_payment", self.custody_address, destination, amount)

    async def debit_account(self, source: str, amount: LedgerAmount) -> str:
        await self._enter("debit_account")
        self.debits.append((source, amount))
        return await self._submit_payment("debit_account", source, self.custody_address, amount)


def make_market(**overrides) -> Market:
    fields = dict(
        market_id=MARKET_ID,
        name="XRP / RLUSD",
        collateral=Asset(currency="XRP"),
        debt=Asset(currency="RLUSD", issuer=ISSUER),
        max_ltv_ratio=Decimal("0.7"),
        liquidation_ltv_ratio=Decimal("0.8"),
        base_interest_rate=Decimal("0.05"),
        liquidation_penalty=Decimal("0.05"),
        reserve_factor=Decimal("0.1"),
        min_collateral_amount=Decimal("0"),
        min_borrow_amount=Decimal("0"),
        min_supply_amount=Decimal("5"),
        vault_id=VAULT_ID,
        vault_scale=6,
    )
    fields.update(overrides)
    return Market(**fields)


@pytest.fixture(autouse=True)
def _reset_structlog():
    """Drop any logging config a test installed so later tests print to the live stdout."""
    yield
    structlog.reset_defaults()


@pytest.fixture
def temp_db():
    tmp = tempfile.mkdtemp()
    path = Path(tmp) / "test.duckdb"
    conn = get_connection(path)
    init_schema(conn)
    yield conn
    conn.close()
    path.unlink(missing_ok=True)
    Path(tmp).rmdir()


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def ledger():
    return FakeLedger()


@pytest.fixture
def service(temp_db, ledger, clock):
    """Service over one seeded market priced at 1 USD on both sides."""
    svc = LendingService(temp_db, ledger, custody_address=CUSTODY, clock=clock)
    svc.registry.sync([make_market()])
    svc.prices.set_price(MARKET_ID, "collateral", Decimal("1"), "test")
    svc.prices.set_price(MARKET_ID, "debt", Decimal("1"), "test")
    return svc


@pytest.fixture
def fund_pool(service, ledger):
    """Supply liquidity through a verified vault deposit."""

    async def _fund(amount: str = "1000", user: str = LENDER):
        tx = ledger.add_vault_tx(TX_VAULT_DEPOSIT, user, amount)
        result = await service.supply(tx, user, MARKET_ID)
        assert result.success, result.error
        return result

    return _fund


@pytest.fixture
def deposit(service, ledger):
    """Lock collateral in a fresh escrow and register it."""

    async def _deposit(amount: str = "100", user: str = USER, idempotency_key: str | None = None, **escrow):
        cond = generate_condition()
        tx = ledger.add_escrow_create(user, amount, cond["condition"], **escrow)
        return await service.deposit_collateral(
            tx,
            user,
            MARKET_ID,
            cond["condition"],
            cond["fulfillment"],
            cond["preimage"],
            idempotency_key=idempotency_key,
        )

    return _deposit
