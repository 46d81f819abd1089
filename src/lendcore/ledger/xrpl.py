"""XRPL JSON-RPC gateway over httpx: tx lookup, escrow entries, signed submissions."""

from __future__ import annotations

import asyncio
from typing import Any

import httpx
import structlog

from lendcore.errors import LedgerError, LedgerTimeout
from lendcore.ledger.base import (
    TES_SUCCESS,
    TX_ESCROW_FINISH,
    TX_PAYMENT,
    EscrowObject,
    LedgerAmount,
    LedgerTransaction,
    Signer,
    ripple_time_to_ms,
)

log = structlog.get_logger(__name__)

# Engine results that mean the transaction was never applied and will not be.
_REJECTED_PREFIXES = ("tem", "tef", "tel")


def parse_transaction(result: dict[str, Any]) -> LedgerTransaction:
    """Build a LedgerTransaction from a `tx` result (API v1 flat or v2 tx_json form)."""
    tx = result.get("tx_json") or result
    meta = result.get("meta") if isinstance(result.get("meta"), dict) else {}
    tx_type = str(tx.get("TransactionType", ""))
    raw_amount = tx.get("Amount", tx.get("DeliverMax"))
    if tx_type == TX_PAYMENT and meta.get("delivered_amount") not in (None, "unavailable"):
        raw_amount = meta["delivered_amount"]
    sequence = tx.get("Sequence") or tx.get("TicketSequence")
    return LedgerTransaction(
        hash=str(result.get("hash") or tx.get("hash") or ""),
        tx_type=tx_type,
        account=str(tx.get("Account", "")),
        validated=bool(result.get("validated")),
        result=meta.get("TransactionResult"),
        destination=tx.get("Destination"),
        amount=LedgerAmount.parse(raw_amount),
        sequence=int(sequence) if sequence is not None else None,
        condition=tx.get("Condition"),
        cancel_after=ripple_time_to_ms(tx.get("CancelAfter")),
        vault_id=tx.get("VaultID"),
        raw=tx,
    )


class XrplJsonRpcClient:
    """LedgerGateway implementation talking to a rippled JSON-RPC endpoint.

    Outgoing transactions are built here, then filled and signed by the custody
    Signer; this client submits the blob and polls `tx` until the transaction is
    in a validated ledger or the confirmation deadline passes.
    """

    def __init__(
        self,
        rpc_url: str,
        signer: Signer,
        custody_address: str,
        *,
        request_timeout_sec: float = 10.0,
        confirm_timeout_sec: float = 20.0,
        poll_interval_sec: float = 1.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.rpc_url = rpc_url
        self.signer = signer
        self.custody_address = custody_address
        self.confirm_timeout_sec = confirm_timeout_sec
        self.poll_interval_sec = poll_interval_sec
        self._client = client or httpx.AsyncClient(timeout=request_timeout_sec)

    async def close(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> XrplJsonRpcClient:
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    async def _request(self, method: str, params: dict[str, Any]) -> dict[str, Any]:
        try:
            resp = await self._client.post(self.rpc_url, json={"method": method, "params": [params]})
            resp.raise_for_status()
            body = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            log.warning("ledger_request_failed", method=method, error=str(e))
            raise LedgerError(f"{method} request failed: {e}", reason="transport") from e
        result = body.get("result") or {}
        if result.get("status") == "error":
            reason = str(result.get("error") or "error")
            raise LedgerError(str(result.get("error_message") or reason), reason=reason)
        return result

    async def fetch_transaction(self, tx_hash: str) -> LedgerTransaction:
        try:
            result = await self._request("tx", {"transaction": tx_hash, "binary": False})
        except LedgerError as e:
            if e.reason == "txnNotFound":
                raise LedgerError(f"Transaction not found: {tx_hash}", reason="not_found", tx_hash=tx_hash) from e
            raise
        return parse_transaction(result)

    async def get_escrow(self, owner: str, sequence: int) -> EscrowObject | None:
        try:
            result = await self._request(
                "ledger_entry",
                {"escrow": {"owner": owner, "seq": sequence}, "ledger_index": "validated"},
            )
        except LedgerError as e:
            if e.reason == "entryNotFound":
                return None
            raise
        node = result.get("node") or {}
        amount = LedgerAmount.parse(node.get("Amount"))
        if amount is None:
            return None
        return EscrowObject(
            owner=str(node.get("Account", "")),
            destination=str(node.get("Destination", "")),
            amount=amount,
            condition=node.get("Condition"),
            cancel_after=ripple_time_to_ms(node.get("CancelAfter")),
        )

    async def finish_escrow(self, owner: str, sequence: int, condition: str, fulfillment: str) -> str:
        return await self._submit(
            {
                "TransactionType": TX_ESCROW_FINISH,
                "Account": self.custody_address,
                "Owner": owner,
                "OfferSequence": sequence,
                "Condition": condition,
                "Fulfillment": fulfillment,
            }
        )

    async def send_payment(self, destination: str, amount: LedgerAmount) -> str:
        return await self._submit(
            {
                "TransactionType": TX_PAYMENT,
                "Account": self.custody_address,
                "Destination": destination,
                "Amount": amount.to_wire(),
            }
        )

    async def debit_account(self, source: str, amount: LedgerAmount) -> str:
        return await self._submit(
            {
                "TransactionType": TX_PAYMENT,
                "Account": source,
                "Destination": self.custody_address,
                "Amount": amount.to_wire(),
            }
        )

    async def _submit(self, tx_json: dict[str, Any]) -> str:
        blob = await self.signer.sign(tx_json)
        result = await self._request("submit", {"tx_blob": blob})
        engine_result = str(result.get("engine_result", ""))
        tx_hash = (result.get("tx_json") or {}).get("hash")
        log.info(
            "ledger_submitted",
            tx_type=tx_json["TransactionType"],
            engine_result=engine_result,
            tx_hash=tx_hash,
        )
        if engine_result.startswith(_REJECTED_PREFIXES) or not tx_hash:
            raise LedgerError(
                str(result.get("engine_result_message") or engine_result or "submit rejected"),
                reason=engine_result or "rejected",
                tx_hash=tx_hash,
            )
        await self.wait_for_validation(tx_hash)
        return tx_hash

    async def wait_for_validation(self, tx_hash: str) -> LedgerTransaction:
        """Poll until validated. Raises LedgerTimeout after confirm_timeout_sec."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.confirm_timeout_sec
        while True:
            tx: LedgerTransaction | None
            try:
                tx = await self.fetch_transaction(tx_hash)
            except LedgerError as e:
                if e.reason != "not_found":
                    raise
                tx = None
            if tx is not None and tx.validated:
                if tx.result != TES_SUCCESS:
                    raise LedgerError(
                        f"Transaction {tx_hash} failed: {tx.result}", reason=str(tx.result), tx_hash=tx_hash
                    )
                return tx
            if loop.time() >= deadline:
                raise LedgerTimeout(f"Transaction {tx_hash} not validated in {self.confirm_timeout_sec}s", tx_hash=tx_hash)
            await asyncio.sleep(self.poll_interval_sec)


class HttpSigner:
    """Signer that delegates to a custody service: POST {tx_json} -> {tx_blob}."""

    def __init__(self, signer_url: str, *, timeout_sec: float = 10.0, client: httpx.AsyncClient | None = None):
        self.signer_url = signer_url
        self._client = client or httpx.AsyncClient(timeout=timeout_sec)

    async def sign(self, tx_json: dict[str, Any]) -> str:
        try:
            resp = await self._client.post(self.signer_url, json={"tx_json": tx_json})
            resp.raise_for_status()
            blob = resp.json().get("tx_blob")
        except (httpx.HTTPError, ValueError) as e:
            raise LedgerError(f"signing failed: {e}", reason="signer") from e
        if not blob:
            raise LedgerError("signer returned no tx_blob", reason="signer")
        return str(blob)

    async def close(self) -> None:
        await self._client.aclose()
