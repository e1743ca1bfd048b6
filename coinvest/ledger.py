# coinvest/ledger.py
from __future__ import annotations

import json
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional, List, Dict, Any

from sqlalchemy import func, desc
from sqlalchemy.orm import Session

from coinvest import models
from coinvest.lifecycle import APPROVED, d, quantize_coins, utcnow

ISSUANCE_REASONS = ("welcome_bonus", "supply_adjustment")


def user_holder(email: str) -> str:
    return f"user:{email}"


def bank_holder(bank_name: str) -> str:
    return f"bank:{bank_name}"


def bid_holder(bid_number: str) -> str:
    return f"bid:{bid_number}"


def _canonical_json(meta: Dict[str, Any]) -> str:
    return json.dumps(meta, ensure_ascii=False, sort_keys=True, separators=(",", ":"), default=str)


def record_movement(
    db: Session,
    *,
    source: Optional[str],
    destination: Optional[str],
    amount,
    reason: str,
    bid_number: Optional[str] = None,
    meta: Optional[Dict[str, Any]] = None,
) -> models.CoinMovement:
    """Stage a journal row in the caller's transaction (no commit here)."""
    amt = d(amount)
    if amt == 0:
        raise ValueError("amount must be non-zero")
    if source is None and reason not in ISSUANCE_REASONS:
        raise ValueError(f"only issuance may have no source (reason={reason!r})")

    row = models.CoinMovement(
        source=source,
        destination=destination,
        amount=amt,
        reason=reason.strip(),
        bid_number=bid_number,
        meta=(_canonical_json(meta) if meta else None),
        created_at=utcnow(),
    )
    db.add(row)
    return row


def has_movement(db: Session, *, bid_number: str, reason: str) -> bool:
    row = (
        db.query(models.CoinMovement.id)
        .filter(
            models.CoinMovement.bid_number == bid_number,
            models.CoinMovement.reason == reason,
        )
        .first()
    )
    return bool(row)


def get_statement(db: Session, *, holder: str, limit: int = 20) -> List[models.CoinMovement]:
    return (
        db.query(models.CoinMovement)
        .filter((models.CoinMovement.source == holder) | (models.CoinMovement.destination == holder))
        .order_by(desc(models.CoinMovement.id))
        .limit(limit)
        .all()
    )


@dataclass(frozen=True)
class CoinSupply:
    users: Decimal
    banks: Decimal
    locked_in_bids: Decimal

    @property
    def total(self) -> Decimal:
        return self.users + self.banks + self.locked_in_bids


def coin_supply(db: Session) -> CoinSupply:
    """Coins currently held: user balances + bank balances + approved-bid locks."""
    users = db.query(func.coalesce(func.sum(models.User.coin_balance), 0)).scalar()
    banks = db.query(func.coalesce(func.sum(models.BankAccount.coin_balance), 0)).scalar()
    locked = (
        db.query(func.coalesce(func.sum(models.Bid.original_coins), 0))
        .filter(models.Bid.status == APPROVED)
        .scalar()
    )
    return CoinSupply(
        users=quantize_coins(d(users)),
        banks=quantize_coins(d(banks)),
        locked_in_bids=quantize_coins(d(locked)),
    )


def issued_supply(db: Session) -> Decimal:
    """Coins that entered circulation through the two issuance entry points."""
    total = (
        db.query(func.coalesce(func.sum(models.CoinMovement.amount), 0))
        .filter(models.CoinMovement.reason.in_(ISSUANCE_REASONS))
        .scalar()
    )
    return quantize_coins(d(total))
