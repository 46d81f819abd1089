"""Canonical schema (Pydantic) - markets, positions, supply, escrows, events."""

from lendcore.models.escrow import EscrowRecord, EscrowStatus
from lendcore.models.event import EventStatus, LendingEvent, Operation
from lendcore.models.market import Asset, Market, PoolMetrics, PriceQuote
from lendcore.models.position import Position, PositionMetrics, PositionStatus, PositionView
from lendcore.models.result import ErrorBody, OperationResult
from lendcore.models.supply import SupplyPosition, SupplyStatus

__all__ = [
    "Asset",
    "Market",
    "PoolMetrics",
    "PriceQuote",
    "Position",
    "PositionMetrics",
    "PositionStatus",
    "PositionView",
    "SupplyPosition",
    "SupplyStatus",
    "EscrowRecord",
    "EscrowStatus",
    "LendingEvent",
    "Operation",
    "EventStatus",
    "ErrorBody",
    "OperationResult",
]
