# coinvest/bid_engine.py
from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Optional

from sqlalchemy.orm import Session

from coinvest import crud, models
from coinvest.database import run_atomic
from coinvest.errors import (
    AmountOutOfRange,
    InsufficientLotCapacity,
    InvalidAmount,
    LotUnavailable,
    UserInactive,
)
from coinvest.events import BidCreated, bus
from coinvest.identifiers import new_bid_numbers
from coinvest.lifecycle import PENDING_PAYMENT, as_utc, d, multiplier_for, utcnow
from coinvest.locks import entity_locks, lot_key

logger = logging.getLogger(__name__)


def _parse_amount(amount) -> Decimal:
    try:
        amt = d(amount)
    except (InvalidOperation, ValueError, TypeError):
        raise InvalidAmount(f"amount is not a number: {amount!r}")
    if not amt.is_finite() or amt <= 0:
        raise InvalidAmount("amount must be > 0")
    return amt


def place_bid(
    db: Session,
    *,
    user_email: str,
    lot_number: str,
    amount,
    holding_period,
    now: Optional[datetime] = None,
) -> models.Bid:
    """Create a bid against a lot and reserve its coins.

    Checks run in a fixed order and stop at the first failure: amount,
    lot availability, lot bid range, remaining lot capacity, holding period.
    The reservation and the bid insert commit together while the lot is
    locked, so two placements can never overbook the same lot.
    """
    user = crud.require_user(db, user_email)
    if user.status != "active":
        raise UserInactive(f"{user.email} is {user.status}")
    email = user.email

    amt = _parse_amount(amount)
    lot_number = str(lot_number).strip()
    created_at = as_utc(now) if now else utcnow()

    with entity_locks.hold(lot_key(lot_number)):

        def op() -> models.Bid:
            lot = crud.get_lot(db, lot_number)
            if lot is None or lot.status != "active":
                raise LotUnavailable(
                    f"lot {lot_number} is not open for bids",
                    lot_number=lot_number,
                    status=(lot.status if lot else None),
                )

            low, high = d(lot.bid_range_min), d(lot.bid_range_max)
            if amt < low or amt > high:
                raise AmountOutOfRange(f"amount {amt} outside lot range [{low}, {high}]")

            remaining = crud.remaining_capacity(lot)
            if amt > remaining:
                raise InsufficientLotCapacity(
                    f"lot {lot_number} has {remaining} coins left, {amt} requested",
                    lot_number=lot_number,
                    remaining=remaining,
                )

            multiplier = multiplier_for(holding_period)

            bid_number, reference_number = new_bid_numbers(db)
            bid = models.Bid(
                bid_number=bid_number,
                reference_number=reference_number,
                user_email=email,
                lot_number=lot.lot_number,
                seller_bank=lot.bank_name,
                amount=amt,
                holding_period=int(holding_period),
                multiplier=multiplier,
                status=PENDING_PAYMENT,
                original_coins=amt,
                created_at=created_at,
            )
            db.add(bid)

            lot.allocated_coins = d(lot.allocated_coins or 0) + amt
            if crud.remaining_capacity(lot) <= 0:
                lot.status = "sold"
            return bid

        bid = run_atomic(db, op, label="place_bid")

    logger.info(
        "Bid %s placed by %s on lot %s: %s coins for %s days",
        bid.bid_number, email, bid.lot_number, amt, bid.holding_period,
    )
    bus.publish(
        BidCreated(
            bid_number=bid.bid_number,
            reference_number=bid.reference_number,
            user_email=email,
            lot_number=bid.lot_number,
            seller_bank=bid.seller_bank,
            amount=amt,
            holding_period=bid.holding_period,
            created_at=created_at,
        )
    )
    return bid
