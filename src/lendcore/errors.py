"""Error taxonomy shared by every lending operation."""

from __future__ import annotations

from enum import Enum


class ErrorCategory(str, Enum):
    VALIDATION = "validation"
    STATE_CONFLICT = "state_conflict"
    EXTERNAL = "external"
    BUSINESS_RULE = "business_rule"
    NOT_FOUND = "not_found"
    INTERNAL = "internal"


class ErrorCode(str, Enum):
    # validation
    MISSING_TX_HASH = "MISSING_TX_HASH"
    MISSING_USER_ADDRESS = "MISSING_USER_ADDRESS"
    MISSING_MARKET_ID = "MISSING_MARKET_ID"
    MISSING_AMOUNT = "MISSING_AMOUNT"
    MISSING_ESCROW_PARAMS = "MISSING_ESCROW_PARAMS"
    INVALID_ESCROW_PARAMS = "INVALID_ESCROW_PARAMS"
    INVALID_ADDRESS = "INVALID_ADDRESS"
    INVALID_AMOUNT = "INVALID_AMOUNT"
    INVALID_REPAY_KIND = "INVALID_REPAY_KIND"
    INVALID_SIDE = "INVALID_SIDE"
    INVALID_PRICE = "INVALID_PRICE"
    INVALID_DESTINATION = "INVALID_DESTINATION"
    INVALID_CURRENCY = "INVALID_CURRENCY"
    INVALID_ISSUER = "INVALID_ISSUER"
    INVALID_SENDER = "INVALID_SENDER"
    INVALID_CONDITION = "INVALID_CONDITION"
    NOT_VAULT_DEPOSIT = "NOT_VAULT_DEPOSIT"
    NOT_VAULT_WITHDRAW = "NOT_VAULT_WITHDRAW"
    WRONG_VAULT = "WRONG_VAULT"
    AMOUNT_MISMATCH = "AMOUNT_MISMATCH"
    ESCROW_MISMATCH = "ESCROW_MISMATCH"
    BELOW_MINIMUM = "BELOW_MINIMUM"
    # state conflict
    TX_ALREADY_PROCESSED = "TX_ALREADY_PROCESSED"
    OPERATION_IN_PROGRESS = "OPERATION_IN_PROGRESS"
    IDEMPOTENCY_MISMATCH = "IDEMPOTENCY_MISMATCH"
    POSITION_NOT_OPEN = "POSITION_NOT_OPEN"
    # external
    TX_FAILED = "TX_FAILED"
    ESCROW_NOT_FOUND = "ESCROW_NOT_FOUND"
    PRICE_STALE = "PRICE_STALE"
    # business rule
    EXCEEDS_MAX_LTV = "EXCEEDS_MAX_LTV"
    INSUFFICIENT_POOL_LIQUIDITY = "INSUFFICIENT_POOL_LIQUIDITY"
    INSUFFICIENT_COLLATERAL = "INSUFFICIENT_COLLATERAL"
    INSUFFICIENT_SUPPLY = "INSUFFICIENT_SUPPLY"
    POSITION_HEALTHY = "POSITION_HEALTHY"
    UNSUPPORTED_OPERATION = "UNSUPPORTED_OPERATION"
    VAULT_NOT_CONFIGURED = "VAULT_NOT_CONFIGURED"
    # not found
    MARKET_NOT_FOUND = "MARKET_NOT_FOUND"
    NO_POSITION = "NO_POSITION"
    NO_SUPPLY_POSITION = "NO_SUPPLY_POSITION"
    PRICES_NOT_FOUND = "PRICES_NOT_FOUND"
    # internal
    INTERNAL_ERROR = "INTERNAL_ERROR"


_CATEGORY_BY_PREFIX = {
    "MISSING_": ErrorCategory.VALIDATION,
    "INVALID_": ErrorCategory.VALIDATION,
}

_CATEGORIES: dict[ErrorCode, ErrorCategory] = {
    ErrorCode.NOT_VAULT_DEPOSIT: ErrorCategory.VALIDATION,
    ErrorCode.NOT_VAULT_WITHDRAW: ErrorCategory.VALIDATION,
    ErrorCode.WRONG_VAULT: ErrorCategory.BUSINESS_RULE,
    ErrorCode.AMOUNT_MISMATCH: ErrorCategory.VALIDATION,
    ErrorCode.ESCROW_MISMATCH: ErrorCategory.VALIDATION,
    ErrorCode.BELOW_MINIMUM: ErrorCategory.VALIDATION,
    ErrorCode.TX_ALREADY_PROCESSED: ErrorCategory.STATE_CONFLICT,
    ErrorCode.OPERATION_IN_PROGRESS: ErrorCategory.STATE_CONFLICT,
    ErrorCode.IDEMPOTENCY_MISMATCH: ErrorCategory.STATE_CONFLICT,
    ErrorCode.POSITION_NOT_OPEN: ErrorCategory.STATE_CONFLICT,
    ErrorCode.TX_FAILED: ErrorCategory.EXTERNAL,
    ErrorCode.ESCROW_NOT_FOUND: ErrorCategory.EXTERNAL,
    ErrorCode.PRICE_STALE: ErrorCategory.EXTERNAL,
    ErrorCode.EXCEEDS_MAX_LTV: ErrorCategory.BUSINESS_RULE,
    ErrorCode.INSUFFICIENT_POOL_LIQUIDITY: ErrorCategory.BUSINESS_RULE,
    ErrorCode.INSUFFICIENT_COLLATERAL: ErrorCategory.BUSINESS_RULE,
    ErrorCode.INSUFFICIENT_SUPPLY: ErrorCategory.BUSINESS_RULE,
    ErrorCode.POSITION_HEALTHY: ErrorCategory.BUSINESS_RULE,
    ErrorCode.UNSUPPORTED_OPERATION: ErrorCategory.BUSINESS_RULE,
    ErrorCode.VAULT_NOT_CONFIGURED: ErrorCategory.BUSINESS_RULE,
    ErrorCode.MARKET_NOT_FOUND: ErrorCategory.NOT_FOUND,
    ErrorCode.NO_POSITION: ErrorCategory.NOT_FOUND,
    ErrorCode.NO_SUPPLY_POSITION: ErrorCategory.NOT_FOUND,
    ErrorCode.PRICES_NOT_FOUND: ErrorCategory.NOT_FOUND,
    ErrorCode.INTERNAL_ERROR: ErrorCategory.INTERNAL,
}


def category_of(code: ErrorCode) -> ErrorCategory:
    """Return the category a code belongs to."""
    if code in _CATEGORIES:
        return _CATEGORIES[code]
    for prefix, category in _CATEGORY_BY_PREFIX.items():
        if code.value.startswith(prefix):
            return category
    return ErrorCategory.INTERNAL


class LendingError(Exception):
    """Raised anywhere in the core; rendered as an error envelope at the service boundary."""

    def __init__(self, code: ErrorCode, message: str, *, pending_tx_hash: str | None = None) -> None:
        super().__init__(f"{code.value}: {message}")
        self.code = code
        self.message = message
        # submitted ledger transaction whose outcome is still unknown
        self.pending_tx_hash = pending_tx_hash

    @property
    def category(self) -> ErrorCategory:
        return category_of(self.code)


class LedgerError(Exception):
    """Failure talking to the ledger or a ledger-reported transaction failure."""

    def __init__(self, message: str, *, reason: str = "error", tx_hash: str | None = None) -> None:
        super().__init__(message)
        self.reason = reason
        self.tx_hash = tx_hash


class LedgerTimeout(LedgerError):
    """Submitted transaction was not validated before the confirmation deadline."""

    def __init__(self, message: str, *, tx_hash: str | None = None) -> None:
        super().__init__(message, reason="timeout", tx_hash=tx_hash)
