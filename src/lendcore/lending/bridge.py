"""Escrow-collateral bridge: verifies ledger transactions before the core credits them.

Every ledger failure (transport, unknown hash, not yet validated, non-success
result, confirmation timeout) is translated to TX_FAILED here so positions and
pool accounting only ever see LendingError. A timeout keeps the submitted hash
on the error so a retry can look it up before paying again.
"""

from __future__ import annotations

from collections.abc import Awaitable
from dataclasses import dataclass
from decimal import Decimal
from typing import TYPE_CHECKING, TypeVar

import structlog

from lendcore.errors import ErrorCode, LedgerError, LedgerTimeout, LendingError
from lendcore.ledger.base import (
    TES_SUCCESS,
    TX_ESCROW_CREATE,
    TX_VAULT_DEPOSIT,
    TX_VAULT_WITHDRAW,
    LedgerAmount,
    LedgerGateway,
    LedgerTransaction,
    normalize_currency,
)
from lendcore.ledger.conditions import condition_for, fulfillment_for, is_valid_preimage
from lendcore.lending.registry import Clock, wall_clock_ms
from lendcore.models import Asset, EscrowRecord, EscrowStatus, Market
from lendcore.storage import escrows as escrow_store

if TYPE_CHECKING:
    from duckdb import DuckDBPyConnection

log = structlog.get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class VerifiedEscrow:
    tx_hash: str
    owner: str
    sequence: int
    amount: Decimal
    condition: str
    fulfillment: str
    preimage: str
    cancel_after: int | None


def amount_of(value: Decimal, asset: Asset) -> LedgerAmount:
    return LedgerAmount(value=value, currency=asset.currency, issuer=asset.issuer)


class EscrowBridge:
    def __init__(
        self,
        conn: DuckDBPyConnection,
        ledger: LedgerGateway,
        custody_address: str,
        clock: Clock = wall_clock_ms,
    ):
        self.conn = conn
        self.ledger = ledger
        self.custody_address = custody_address
        self.clock = clock

    # --- ledger call translation ---

    async def _ledger(self, call: Awaitable[T], what: str) -> T:
        try:
            return await call
        except LedgerTimeout as e:
            log.warning("ledger_call_unconfirmed", what=what, tx_hash=e.tx_hash, error=str(e))
            raise LendingError(
                ErrorCode.TX_FAILED, f"{what} was submitted but not confirmed: {e}", pending_tx_hash=e.tx_hash
            ) from e
        except LedgerError as e:
            log.warning("ledger_call_failed", what=what, reason=e.reason, tx_hash=e.tx_hash, error=str(e))
            raise LendingError(ErrorCode.TX_FAILED, f"{what} failed: {e}") from e

    async def _fetch_validated(self, tx_hash: str) -> LedgerTransaction:
        tx = await self._ledger(self.ledger.fetch_transaction(tx_hash), "transaction lookup")
        if not tx.validated:
            raise LendingError(ErrorCode.TX_FAILED, f"Transaction {tx_hash} is not validated")
        if tx.result != TES_SUCCESS:
            raise LendingError(ErrorCode.TX_FAILED, f"Transaction {tx_hash} failed: {tx.result}")
        return tx

    def ensure_unprocessed(self, tx_hash: str) -> None:
        if escrow_store.is_processed(self.conn, tx_hash):
            raise LendingError(ErrorCode.TX_ALREADY_PROCESSED, f"Transaction {tx_hash} was already processed")

    def mark_processed(self, tx_hash: str, kind: str, market_id: str, user_address: str) -> None:
        """Record tx_hash as consumed; call inside the transaction that applies its effect."""
        try:
            escrow_store.mark_processed(self.conn, tx_hash, kind, market_id, user_address, self.clock())
        except escrow_store.DuplicateTransaction as e:
            raise LendingError(ErrorCode.TX_ALREADY_PROCESSED, f"Transaction {tx_hash} was already processed") from e

    @staticmethod
    def _check_asset(amount: LedgerAmount | None, asset: Asset) -> LedgerAmount:
        if amount is None or amount.is_share or amount.value <= 0:
            raise LendingError(ErrorCode.INVALID_AMOUNT, "Transaction carries no positive asset amount")
        if normalize_currency(amount.currency) != normalize_currency(asset.currency):
            raise LendingError(
                ErrorCode.INVALID_CURRENCY, f"Expected currency {asset.currency}, got {amount.currency}"
            )
        if asset.issuer and amount.issuer != asset.issuer:
            raise LendingError(ErrorCode.INVALID_ISSUER, f"Expected issuer {asset.issuer}, got {amount.issuer}")
        return amount

    # --- collateral escrows ---

    async def verify_escrow_deposit(
        self,
        tx_hash: str,
        sender: str,
        market: Market,
        condition: str | None,
        fulfillment: str | None,
        preimage: str | None,
    ) -> VerifiedEscrow:
        """Check an EscrowCreate locks the market's collateral to the custody account under our condition."""
        self.ensure_unprocessed(tx_hash)
        if not condition or not fulfillment or not preimage:
            raise LendingError(
                ErrorCode.MISSING_ESCROW_PARAMS, "condition, fulfillment and preimage are required"
            )
        if not is_valid_preimage(preimage) or condition.upper() != condition_for(preimage) or (
            fulfillment.upper() != fulfillment_for(preimage)
        ):
            raise LendingError(
                ErrorCode.INVALID_ESCROW_PARAMS, "condition and fulfillment do not derive from the preimage"
            )

        tx = await self._fetch_validated(tx_hash)
        if tx.tx_type != TX_ESCROW_CREATE:
            raise LendingError(ErrorCode.NOT_VAULT_DEPOSIT, f"Expected {TX_ESCROW_CREATE}, got {tx.tx_type}")
        if tx.destination != self.custody_address:
            raise LendingError(ErrorCode.INVALID_DESTINATION, "Escrow destination is not the custody account")
        if (tx.condition or "").upper() != condition.upper():
            raise LendingError(ErrorCode.INVALID_CONDITION, "Escrow condition does not match")
        amount = self._check_asset(tx.amount, market.collateral)
        if tx.account != sender:
            raise LendingError(ErrorCode.INVALID_SENDER, "Escrow was not created by the user")
        if tx.sequence is None:
            raise LendingError(ErrorCode.INVALID_ESCROW_PARAMS, "Escrow transaction has no sequence")

        entry = await self._ledger(self.ledger.get_escrow(sender, tx.sequence), "escrow lookup")
        if entry is None:
            raise LendingError(ErrorCode.ESCROW_NOT_FOUND, f"Escrow {sender}:{tx.sequence} not found on ledger")
        if (
            entry.owner != sender
            or entry.destination != self.custody_address
            or entry.amount.value != amount.value
            or normalize_currency(entry.amount.currency) != normalize_currency(amount.currency)
            or entry.amount.issuer != amount.issuer
            or (entry.condition or "").upper() != condition.upper()
        ):
            raise LendingError(ErrorCode.ESCROW_MISMATCH, "On-ledger escrow does not match the transaction")

        return VerifiedEscrow(
            tx_hash=tx_hash,
            owner=sender,
            sequence=tx.sequence,
            amount=amount.value,
            condition=condition.upper(),
            fulfillment=fulfillment.upper(),
            preimage=preimage.upper(),
            cancel_after=tx.cancel_after,
        )

    def record_escrow(self, verified: VerifiedEscrow, position_id: str, market: Market) -> EscrowRecord:
        record = EscrowRecord(
            tx_hash=verified.tx_hash,
            position_id=position_id,
            market_id=market.market_id,
            owner=verified.owner,
            sequence=verified.sequence,
            destination=self.custody_address,
            amount=verified.amount,
            currency=market.collateral.currency,
            issuer=market.collateral.issuer,
            condition=verified.condition,
            fulfillment=verified.fulfillment,
            preimage=verified.preimage,
            cancel_after=verified.cancel_after,
            created_at=self.clock(),
        )
        escrow_store.insert_escrow(self.conn, record)
        return record

    async def release_escrows(self, position_id: str) -> list[str]:
        """Finish every ACTIVE escrow of a position into custody. Each success is recorded immediately."""
        hashes: list[str] = []
        for record in escrow_store.list_active_escrows(self.conn, position_id):
            finish_hash = await self._ledger(
                self.ledger.finish_escrow(record.owner, record.sequence, record.condition, record.fulfillment),
                "escrow finish",
            )
            escrow_store.mark_escrow(self.conn, record.tx_hash, EscrowStatus.FINISHED, self.clock())
            log.info("escrow_finished", position_id=position_id, escrow_tx=record.tx_hash, tx_hash=finish_hash)
            hashes.append(finish_hash)
        return hashes

    async def find_cancelled_escrows(self, market_id: str) -> list[EscrowRecord]:
        """Expired ACTIVE escrows that no longer exist on the ledger."""
        gone: list[EscrowRecord] = []
        for record in escrow_store.list_expired_escrows(self.conn, market_id, self.clock()):
            entry = await self._ledger(self.ledger.get_escrow(record.owner, record.sequence), "escrow lookup")
            if entry is None:
                gone.append(record)
        return gone

    def mark_cancelled(self, record: EscrowRecord) -> None:
        escrow_store.mark_escrow(self.conn, record.tx_hash, EscrowStatus.CANCELLED, self.clock())

    # --- supply vault ---

    async def verify_vault_deposit(self, tx_hash: str, sender: str, market: Market) -> LedgerAmount:
        if not market.vault_id:
            raise LendingError(ErrorCode.VAULT_NOT_CONFIGURED, f"Market {market.market_id} has no supply vault")
        self.ensure_unprocessed(tx_hash)
        tx = await self._fetch_validated(tx_hash)
        if tx.tx_type != TX_VAULT_DEPOSIT:
            raise LendingError(ErrorCode.NOT_VAULT_DEPOSIT, f"Expected {TX_VAULT_DEPOSIT}, got {tx.tx_type}")
        if tx.vault_id != market.vault_id:
            raise LendingError(ErrorCode.WRONG_VAULT, "Deposit targets a different vault")
        amount = self._check_asset(tx.amount, market.debt)
        if tx.account != sender:
            raise LendingError(ErrorCode.INVALID_SENDER, "Deposit was not sent by the user")
        return amount

    async def verify_vault_withdraw(
        self, tx_hash: str, user_address: str, market: Market, amount: Decimal
    ) -> LedgerTransaction:
        if not market.vault_id:
            raise LendingError(ErrorCode.VAULT_NOT_CONFIGURED, f"Market {market.market_id} has no supply vault")
        self.ensure_unprocessed(tx_hash)
        tx = await self._fetch_validated(tx_hash)
        if tx.tx_type != TX_VAULT_WITHDRAW:
            raise LendingError(ErrorCode.NOT_VAULT_WITHDRAW, f"Expected {TX_VAULT_WITHDRAW}, got {tx.tx_type}")
        if tx.vault_id != market.vault_id:
            raise LendingError(ErrorCode.WRONG_VAULT, "Withdrawal targets a different vault")
        if tx.account != user_address:
            raise LendingError(ErrorCode.INVALID_SENDER, "Withdrawal was not sent by the user")
        # share-denominated withdrawals cannot be compared to an asset amount
        if tx.amount is not None and not tx.amount.is_share:
            self._check_asset(tx.amount, market.debt)
            if tx.amount.value != amount:
                raise LendingError(
                    ErrorCode.AMOUNT_MISMATCH, f"Ledger withdrew {tx.amount.value}, request says {amount}"
                )
        return tx

    # --- payments ---

    async def pay_out(self, destination: str, value: Decimal, asset: Asset, what: str) -> str:
        return await self._ledger(self.ledger.send_payment(destination, amount_of(value, asset)), what)

    async def collect(self, source: str, value: Decimal, asset: Asset, what: str) -> str:
        return await self._ledger(self.ledger.debit_account(source, amount_of(value, asset)), what)

    async def confirm_submission(self, tx_hash: str, what: str) -> LedgerTransaction | None:
        """Outcome of a payment an earlier attempt submitted but never saw validated.

        Returns the transaction when it was applied, None when the ledger
        validated it as failed. Still unknown raises TX_FAILED carrying the same
        hash, so the next retry checks it again instead of paying twice.
        """
        try:
            tx = await self.ledger.fetch_transaction(tx_hash)
        except LedgerError as e:
            log.warning("pending_submission_unknown", what=what, tx_hash=tx_hash, error=str(e))
            raise LendingError(
                ErrorCode.TX_FAILED, f"{what} {tx_hash} is still unconfirmed", pending_tx_hash=tx_hash
            ) from e
        if not tx.validated:
            raise LendingError(
                ErrorCode.TX_FAILED, f"{what} {tx_hash} is still unconfirmed", pending_tx_hash=tx_hash
            )
        if tx.result != TES_SUCCESS:
            log.info("pending_submission_failed", what=what, tx_hash=tx_hash, result=tx.result)
            return None
        log.info("pending_submission_applied", what=what, tx_hash=tx_hash)
        return tx
