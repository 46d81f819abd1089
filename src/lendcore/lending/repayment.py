"""Repayment kinds and the amount each one quotes."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum

from lendcore.errors import ErrorCode, LendingError
from lendcore.lending.calculations import ONE, ZERO, round_up
from lendcore.models import Position

DEFAULT_BUFFER_RATE = Decimal("0.002")
DEFAULT_REPAY_DECIMALS = 6
DEFAULT_TERM_MONTHS = 3


@dataclass(frozen=True)
class RepaymentSchedule:
    """What a position owes right now."""

    minimum: Decimal
    full: Decimal
    suggested_overpayment: Decimal

    @classmethod
    def for_position(cls, position: Position, term_months: int = DEFAULT_TERM_MONTHS) -> RepaymentSchedule:
        outstanding = position.total_debt
        if outstanding <= 0:
            return cls(ZERO, ZERO, ZERO)
        periodic = position.interest_accrued + position.loan_principal / max(term_months, 1)
        minimum = min(outstanding, periodic)
        return cls(
            minimum=minimum,
            full=outstanding,
            suggested_overpayment=min(outstanding, minimum * 2),
        )


class RepayKind(str, Enum):
    REGULAR = "regular"
    FULL = "full"
    OVERPAYMENT = "overpayment"
    LATE = "late"

    @classmethod
    def parse(cls, value: str | RepayKind | None) -> RepayKind:
        if value is None or value == "":
            return cls.REGULAR
        if isinstance(value, RepayKind):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            raise LendingError(
                ErrorCode.INVALID_REPAY_KIND,
                f"Unknown repay kind {value!r}; expected one of {', '.join(k.value for k in cls)}",
            ) from None

    def quote(
        self,
        schedule: RepaymentSchedule,
        buffer_rate: Decimal = DEFAULT_BUFFER_RATE,
        decimals: int = DEFAULT_REPAY_DECIMALS,
    ) -> Decimal:
        """Amount to send for this kind. Only FULL is unbuffered: it must clear the debt exactly."""
        if self is RepayKind.FULL:
            return round_up(schedule.full, decimals)
        base = schedule.suggested_overpayment if self is RepayKind.OVERPAYMENT else schedule.minimum
        if base <= 0:
            return ZERO
        return round_up(base * (ONE + buffer_rate), decimals)


def quote_all(
    schedule: RepaymentSchedule,
    buffer_rate: Decimal = DEFAULT_BUFFER_RATE,
    decimals: int = DEFAULT_REPAY_DECIMALS,
) -> dict[str, Decimal]:
    """Quoted amount per kind, keyed by kind value."""
    return {kind.value: kind.quote(schedule, buffer_rate, decimals) for kind in RepayKind}
