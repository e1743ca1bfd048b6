# coinvest/lifecycle.py
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal, ROUND_DOWN
from typing import Dict, FrozenSet, Optional

from coinvest import models
from coinvest.core.config import settings
from coinvest.errors import InvalidHoldingPeriod, InvalidTransition

PENDING_PAYMENT = "pending_payment"
AWAITING_APPROVAL = "awaiting_approval"
APPROVED = "approved"
MATURED = "matured"
REJECTED = "rejected"

TERMINAL: FrozenSet[str] = frozenset({MATURED, REJECTED})

TRANSITIONS: Dict[str, FrozenSet[str]] = {
    PENDING_PAYMENT: frozenset({AWAITING_APPROVAL}),
    AWAITING_APPROVAL: frozenset({APPROVED, REJECTED}),
    APPROVED: frozenset({MATURED}),
    MATURED: frozenset(),
    REJECTED: frozenset(),
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(dt: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands timestamps back naive; everything we write is UTC.
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def d(x) -> Decimal:
    if isinstance(x, Decimal):
        return x
    return Decimal(str(x))


def quantize_coins(x: Decimal) -> Decimal:
    return x.quantize(Decimal("0.00000001"), rounding=ROUND_DOWN)


def transition(bid: models.Bid, new_status: str) -> None:
    current = bid.status
    if new_status not in TRANSITIONS.get(current, frozenset()):
        raise InvalidTransition(
            f"bid {bid.bid_number}: {current} -> {new_status} is not allowed",
            bid_number=bid.bid_number,
            current=current,
            requested=new_status,
        )
    bid.status = new_status


# -------- Holding terms --------

def holding_multipliers() -> Dict[int, Decimal]:
    return {int(k): d(v) for k, v in settings.HOLDING_PERIOD_MULTIPLIERS.items()}


def multiplier_for(holding_period) -> Decimal:
    try:
        days = int(holding_period)
    except (TypeError, ValueError):
        raise InvalidHoldingPeriod(f"holding period must be one of {sorted(holding_multipliers())}")
    if str(holding_period).strip() != str(days):
        raise InvalidHoldingPeriod(f"holding period must be one of {sorted(holding_multipliers())}")
    table = holding_multipliers()
    if days not in table:
        raise InvalidHoldingPeriod(f"holding period must be one of {sorted(table)}")
    return table[days]


def matured_coins(original_coins, multiplier) -> Decimal:
    return quantize_coins(d(original_coins) * d(multiplier))


def maturity_date(purchase_date: datetime, holding_period: int) -> datetime:
    return as_utc(purchase_date) + timedelta(days=int(holding_period))
