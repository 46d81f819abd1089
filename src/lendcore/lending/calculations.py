"""Pure lending math on Decimal: interest, LTV, health, liquidation, pool yield.

Token amounts carry 8 decimal places, yield indices 18. Rounding always
favors the protocol: interest owed and collateral seized round up where the
borrower could otherwise gain, interest and yield paid out round down.
"""

from __future__ import annotations

from decimal import ROUND_DOWN, ROUND_UP, Decimal

SECONDS_PER_YEAR = 31_536_000
TOKEN_DECIMALS = 8
INDEX_DECIMALS = 18
LTV_DECIMALS = 6
HEALTH_DECIMALS = 4
DAYS_PER_YEAR = 365

ZERO = Decimal("0")
ONE = Decimal("1")


def quantize_down(value: Decimal, places: int = TOKEN_DECIMALS) -> Decimal:
    return value.quantize(Decimal(1).scaleb(-places), rounding=ROUND_DOWN)


def round_up(value: Decimal, places: int = TOKEN_DECIMALS) -> Decimal:
    return value.quantize(Decimal(1).scaleb(-places), rounding=ROUND_UP)


def calculate_interest(principal: Decimal, annual_rate: Decimal, elapsed_seconds: Decimal | int) -> Decimal:
    """Simple interest over the elapsed window, rounded down to token precision."""
    elapsed = Decimal(elapsed_seconds)
    if principal <= 0 or annual_rate <= 0 or elapsed <= 0:
        return ZERO
    return quantize_down(principal * annual_rate * elapsed / SECONDS_PER_YEAR)


def calculate_ltv(
    collateral_amount: Decimal,
    collateral_price: Decimal,
    debt_amount: Decimal,
    debt_price: Decimal,
) -> Decimal | None:
    """Exact debt/collateral value ratio. None when there is debt but no collateral value."""
    collateral_usd = collateral_amount * collateral_price
    debt_usd = debt_amount * debt_price
    if collateral_usd == 0:
        return ZERO if debt_usd == 0 else None
    return debt_usd / collateral_usd


def display_ltv(ltv: Decimal | None) -> Decimal | None:
    return None if ltv is None else round_up(ltv, LTV_DECIMALS)


def calculate_health_factor(ltv: Decimal | None, liquidation_ltv: Decimal) -> Decimal | None:
    """liquidation_ltv / ltv. None means no debt (infinitely healthy); 0 means no collateral."""
    if ltv is None:
        return ZERO
    if ltv == 0:
        return None
    return quantize_down(liquidation_ltv / ltv, HEALTH_DECIMALS)


def is_liquidatable(ltv: Decimal | None, liquidation_ltv: Decimal) -> bool:
    if ltv is None:
        return True
    return ltv >= liquidation_ltv and ltv > 0


def exceeds_max_ltv(ltv: Decimal | None, max_ltv: Decimal) -> bool:
    return ltv is None or ltv > max_ltv


def calculate_max_borrowable(
    collateral_amount: Decimal,
    collateral_price: Decimal,
    current_debt: Decimal,
    debt_price: Decimal,
    max_ltv: Decimal,
) -> Decimal:
    """Additional debt that keeps LTV at or below max_ltv."""
    if debt_price <= 0:
        return ZERO
    headroom_usd = collateral_amount * collateral_price * max_ltv - current_debt * debt_price
    if headroom_usd <= 0:
        return ZERO
    return quantize_down(headroom_usd / debt_price)


def calculate_max_withdrawable(
    collateral_amount: Decimal,
    collateral_price: Decimal,
    current_debt: Decimal,
    debt_price: Decimal,
    max_ltv: Decimal,
) -> Decimal:
    """Collateral that can leave while LTV stays at or below max_ltv."""
    if current_debt <= 0:
        return collateral_amount
    if collateral_price <= 0 or max_ltv <= 0:
        return ZERO
    required = round_up(current_debt * debt_price / max_ltv / collateral_price)
    return max(collateral_amount - required, ZERO)


def calculate_liquidation_seizure(
    total_debt: Decimal,
    debt_price: Decimal,
    collateral_price: Decimal,
    collateral_amount: Decimal,
    penalty: Decimal,
) -> tuple[Decimal, Decimal]:
    """Collateral seized to cover debt plus penalty, capped at what is held. Returns (seized, penalty_part)."""
    if collateral_price <= 0:
        return collateral_amount, ZERO
    debt_in_collateral = total_debt * debt_price / collateral_price
    required = round_up(debt_in_collateral * (ONE + penalty))
    seized = min(required, collateral_amount)
    penalty_part = max(seized - round_up(debt_in_collateral), ZERO)
    return seized, penalty_part


def allocate_repayment(
    amount: Decimal, interest_accrued: Decimal, principal: Decimal
) -> tuple[Decimal, Decimal, Decimal]:
    """Split a payment interest-first. Returns (interest_paid, principal_paid, excess)."""
    interest_paid = min(amount, interest_accrued)
    remaining = amount - interest_paid
    principal_paid = min(remaining, principal)
    return interest_paid, principal_paid, remaining - principal_paid


def calculate_utilization(total_borrowed: Decimal, total_supplied: Decimal) -> Decimal:
    if total_supplied <= 0:
        return ZERO
    return min(total_borrowed / total_supplied, ONE)


def calculate_supply_apr(borrow_apr: Decimal, utilization: Decimal, reserve_factor: Decimal) -> Decimal:
    return borrow_apr * utilization * (ONE - reserve_factor)


def calculate_supply_apy(supply_apr: Decimal) -> Decimal:
    """Daily compounding of the supply APR."""
    if supply_apr <= 0:
        return ZERO
    return quantize_down((ONE + supply_apr / DAYS_PER_YEAR) ** DAYS_PER_YEAR - ONE, LTV_DECIMALS)


def calculate_index_increment(
    interest: Decimal,
    reserve_factor: Decimal,
    total_supplied: Decimal,
    vault_scale: int,
) -> tuple[Decimal, Decimal]:
    """Split realized interest into (index increment per supplied unit, reserves).

    The lender share is truncated to the pool's unit precision before it is
    spread over total_supplied, so the sum of everything lenders can claim never
    exceeds the interest realized.
    """
    if interest <= 0:
        return ZERO, ZERO
    if total_supplied <= 0:
        return ZERO, interest
    lender_share = quantize_down(interest * (ONE - reserve_factor), vault_scale)
    increment = quantize_down(lender_share / total_supplied, INDEX_DECIMALS)
    distributed = increment * total_supplied
    return increment, interest - distributed


def calculate_accrued_yield(supply_amount: Decimal, global_index: Decimal, position_index: Decimal) -> Decimal:
    """Unclaimed yield of a supply position, rounded down to token precision."""
    if supply_amount <= 0 or global_index <= position_index:
        return ZERO
    return quantize_down(supply_amount * (global_index - position_index))


def derive_index_preserving_yield(
    accrued_yield: Decimal, new_supply_amount: Decimal, global_index: Decimal
) -> Decimal:
    """Position index after a balance change that keeps already-accrued yield claimable."""
    if new_supply_amount <= 0 or accrued_yield <= 0:
        return global_index
    return global_index - quantize_down(accrued_yield / new_supply_amount, INDEX_DECIMALS)
