"""Ledger-facing types and the gateway protocol the lending core depends on."""

from __future__ import annotations

import re
from decimal import Decimal
from typing import Any, Protocol

from pydantic import BaseModel, Field

RIPPLE_EPOCH_OFFSET = 946_684_800
DROPS_PER_XRP = Decimal("1000000")
NATIVE_CURRENCY = "XRP"

TES_SUCCESS = "tesSUCCESS"
TX_ESCROW_CREATE = "EscrowCreate"
TX_ESCROW_FINISH = "EscrowFinish"
TX_VAULT_DEPOSIT = "VaultDeposit"
TX_VAULT_WITHDRAW = "VaultWithdraw"
TX_PAYMENT = "Payment"

_ADDRESS_RE = re.compile(r"^r[1-9A-HJ-NP-Za-km-z]{24,34}$")
_HEX40_RE = re.compile(r"^[0-9A-Fa-f]{40}$")


def is_valid_address(address: str | None) -> bool:
    """Classic account address: base58, leading 'r', 25-35 characters."""
    return bool(address) and bool(_ADDRESS_RE.match(address))


def normalize_currency(code: str | None) -> str | None:
    """Map 3-letter and 40-hex currency codes to one upper-case symbol."""
    if code is None:
        return None
    code = code.strip()
    if _HEX40_RE.match(code):
        try:
            decoded = bytes.fromhex(code).rstrip(b"\x00").decode("ascii")
        except UnicodeDecodeError:
            return code.upper()
        if decoded and decoded.isprintable():
            return decoded.upper()
        return code.upper()
    return code.upper()


def encode_currency(code: str) -> str:
    """Ledger wire form: 3-char codes as-is, longer codes as 40-hex."""
    if len(code) == 3 or _HEX40_RE.match(code):
        return code
    return code.encode("ascii").hex().upper().ljust(40, "0")


def ripple_time_to_ms(value: int | None) -> int | None:
    if value is None:
        return None
    return (int(value) + RIPPLE_EPOCH_OFFSET) * 1000


class LedgerAmount(BaseModel):
    """Issued-currency, native or MPT amount."""

    value: Decimal
    currency: str | None = None
    issuer: str | None = None
    mpt_issuance_id: str | None = None

    @classmethod
    def parse(cls, raw: Any) -> LedgerAmount | None:
        if raw is None:
            return None
        if isinstance(raw, (str, int)):
            return cls(value=Decimal(str(raw)) / DROPS_PER_XRP, currency=NATIVE_CURRENCY)
        if isinstance(raw, dict):
            if raw.get("mpt_issuance_id"):
                return cls(value=Decimal(str(raw.get("value", "0"))), mpt_issuance_id=raw["mpt_issuance_id"])
            if raw.get("currency"):
                return cls(
                    value=Decimal(str(raw.get("value", "0"))),
                    currency=normalize_currency(raw["currency"]),
                    issuer=raw.get("issuer"),
                )
        return None

    def to_wire(self) -> str | dict[str, str]:
        if self.mpt_issuance_id:
            return {"mpt_issuance_id": self.mpt_issuance_id, "value": str(self.value)}
        if self.currency == NATIVE_CURRENCY and not self.issuer:
            return str(int((self.value * DROPS_PER_XRP).to_integral_value()))
        return {
            "currency": encode_currency(self.currency or ""),
            "issuer": self.issuer or "",
            "value": format(self.value.normalize(), "f"),
        }

    @property
    def is_share(self) -> bool:
        return self.mpt_issuance_id is not None


class LedgerTransaction(BaseModel):
    """The fields of a fetched transaction the bridge verifies."""

    hash: str
    tx_type: str
    account: str
    validated: bool = False
    result: str | None = None
    destination: str | None = None
    amount: LedgerAmount | None = None
    sequence: int | None = None
    condition: str | None = None
    cancel_after: int | None = None  # ms epoch
    vault_id: str | None = None
    raw: dict[str, Any] = Field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.validated and self.result == TES_SUCCESS


class EscrowObject(BaseModel):
    """Escrow ledger entry as currently held on the ledger."""

    owner: str
    destination: str
    amount: LedgerAmount
    condition: str | None = None
    cancel_after: int | None = None


class LedgerGateway(Protocol):
    """Everything the lending core needs from the ledger.

    Implementations raise lendcore.errors.LedgerError for transport failures,
    unknown transactions and non-success results.
    """

    async def fetch_transaction(self, tx_hash: str) -> LedgerTransaction: ...

    async def get_escrow(self, owner: str, sequence: int) -> EscrowObject | None: ...

    async def finish_escrow(self, owner: str, sequence: int, condition: str, fulfillment: str) -> str: ...

    async def send_payment(self, destination: str, amount: LedgerAmount) -> str: ...

    async def debit_account(self, source: str, amount: LedgerAmount) -> str: ...


class Signer(Protocol):
    """Custody collaborator: fills and signs a transaction, returns the signed blob."""

    async def sign(self, tx_json: dict[str, Any]) -> str: ...
