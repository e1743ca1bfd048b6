# coinvest/identifiers.py
from __future__ import annotations

import logging
import secrets

from sqlalchemy.orm import Session

from coinvest import models
from coinvest.core.config import settings
from coinvest.errors import ConcurrencyConflict

logger = logging.getLogger(__name__)


def _random_digits(length: int) -> str:
    return str(secrets.randbelow(10 ** length)).zfill(length)


def _taken(db: Session, column, value: str) -> bool:
    return db.query(models.Bid.id).filter(column == value).first() is not None


def _unique_number(db: Session, column, label: str, exclude: set[str] | None = None) -> str:
    length = settings.REFERENCE_DIGITS
    for _ in range(max(1, settings.IDENTIFIER_ATTEMPTS)):
        candidate = _random_digits(length)
        if exclude and candidate in exclude:
            continue
        if not _taken(db, column, candidate):
            return candidate
        logger.info("%s %s already in use, regenerating", label, candidate)
    raise ConcurrencyConflict(f"could not generate a free {label} after {settings.IDENTIFIER_ATTEMPTS} attempts")


def new_bid_numbers(db: Session) -> tuple[str, str]:
    """Return a fresh (bid_number, reference_number) pair.

    Both are checked against the store; the unique constraints on the bids
    table catch anything that slips in between the check and the insert.
    """
    bid_number = _unique_number(db, models.Bid.bid_number, "bid number")
    reference_number = _unique_number(db, models.Bid.reference_number, "reference number", exclude={bid_number})
    return bid_number, reference_number
