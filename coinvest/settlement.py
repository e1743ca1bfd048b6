# coinvest/settlement.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Callable, List, Optional

from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.orm import Session

from coinvest import crud, ledger, models
from coinvest.core.config import settings
from coinvest.database import get_sessionmaker, run_atomic, store_guard
from coinvest.errors import CapacityError, ConcurrencyConflict, InsufficientBankCoins
from coinvest.lifecycle import (
    APPROVED,
    MATURED,
    as_utc,
    d,
    matured_coins,
    quantize_coins,
    transition,
    utcnow,
)
from coinvest.locks import bid_key, entity_locks

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SettlementResult:
    processed: int
    matured: int
    skipped: int
    failed: int
    total_credited: Decimal
    matured_bids: List[str]


def due_bid_numbers(db: Session, now: datetime) -> List[str]:
    with store_guard(db):
        rows = (
            db.query(models.Bid.bid_number)
            .filter(
                models.Bid.status == APPROVED,
                models.Bid.maturity_date.isnot(None),
                models.Bid.maturity_date <= now,
            )
            .order_by(models.Bid.maturity_date, models.Bid.id)
            .all()
        )
    return [r[0] for r in rows]


def _mature_one(db: Session, bid_number: str, now: datetime) -> Optional[Decimal]:
    """Mature a single bid; returns the credited coins, or None if there was nothing to do."""

    def op() -> Optional[Decimal]:
        bid = crud.require_bid(db, bid_number)
        if bid.status != APPROVED or as_utc(bid.maturity_date) > now:
            return None

        payout = matured_coins(bid.original_coins, bid.multiplier)
        original = d(bid.original_coins)

        if ledger.has_movement(db, bid_number=bid_number, reason="maturity_credit"):
            # credit landed on an earlier run but the status write did not: finish the transition only
            logger.warning("Bid %s already credited, completing status only", bid_number)
            transition(bid, MATURED)
            bid.matured_coins = payout
            bid.matured_at = now
            return None

        premium = payout - original
        bank = crud.require_bank_account(db, bid.seller_bank)
        if premium > 0:
            if d(bank.coin_balance) < premium:
                raise InsufficientBankCoins(
                    f"{bank.bank_name} cannot fund premium {premium} for bid {bid_number}"
                )
            bank.coin_balance = d(bank.coin_balance) - premium
            ledger.record_movement(
                db,
                source=ledger.bank_holder(bank.bank_name),
                destination=ledger.user_holder(bid.user_email),
                amount=premium,
                reason="maturity_premium",
                bid_number=bid_number,
            )

        # the buyer's fiat payment settles to the selling bank at maturity
        bank.balance = d(bank.balance) + d(bid.amount)

        user = crud.require_user(db, bid.user_email)
        user.coin_balance = d(user.coin_balance) + payout
        user.active_investments = max(0, (user.active_investments or 0) - 1)
        user.total_invested = d(user.total_invested) + original
        ledger.record_movement(
            db,
            source=ledger.bid_holder(bid_number),
            destination=ledger.user_holder(bid.user_email),
            amount=original,
            reason="maturity_credit",
            bid_number=bid_number,
            meta={"multiplier": str(bid.multiplier), "holding_period": bid.holding_period},
        )

        transition(bid, MATURED)
        bid.matured_coins = payout
        bid.matured_at = now
        return payout

    with entity_locks.hold(bid_key(bid_number)):
        return run_atomic(db, op, label=f"mature {bid_number}")


def mature_due(db: Session, *, now: Optional[datetime] = None) -> SettlementResult:
    """Mature every approved bid whose holding period has elapsed.

    Safe to re-run: a matured bid is skipped, and a bid whose credit is
    already journalled only gets its status finished, never a second credit.
    """
    now = as_utc(now) if now else utcnow()

    processed = 0
    matured = 0
    skipped = 0
    failed = 0
    total = Decimal("0")
    done: List[str] = []

    for bid_number in due_bid_numbers(db, now):
        processed += 1
        try:
            payout = _mature_one(db, bid_number, now)
        except (CapacityError, ConcurrencyConflict):
            logger.exception("Bid %s could not be matured this run", bid_number)
            failed += 1
            continue

        if payout is None:
            skipped += 1
            continue

        matured += 1
        total += payout
        done.append(bid_number)
        logger.info("Bid %s matured: %s coins credited", bid_number, payout)

    result = SettlementResult(
        processed=processed,
        matured=matured,
        skipped=skipped,
        failed=failed,
        total_credited=quantize_coins(total),
        matured_bids=done,
    )
    if processed:
        logger.info(
            "Settlement run at %s: processed=%d matured=%d skipped=%d failed=%d credited=%s",
            now.isoformat(), processed, matured, skipped, failed, result.total_credited,
        )
    return result


def run_settlement_cycle(session_factory: Optional[Callable[[], Session]] = None) -> SettlementResult:
    SessionLocal = session_factory or get_sessionmaker()
    db = SessionLocal()
    try:
        return mature_due(db)
    finally:
        db.close()


class SettlementScheduler:
    """Runs ``mature_due`` on a fixed interval with APScheduler."""

    JOB_ID = "settlement_mature_due"

    def __init__(self, interval_seconds: Optional[int] = None, session_factory=None):
        self.interval_seconds = interval_seconds or settings.SETTLEMENT_INTERVAL_SECONDS
        self.session_factory = session_factory
        self.scheduler = AsyncIOScheduler(
            jobstores={"default": MemoryJobStore()},
            executors={"default": AsyncIOExecutor()},
            job_defaults={"coalesce": True, "max_instances": 1, "misfire_grace_time": 60},
            timezone="UTC",
        )

    def run_once(self) -> SettlementResult:
        return run_settlement_cycle(self.session_factory)

    def setup_jobs(self) -> None:
        self.scheduler.add_job(
            self.run_once,
            trigger=IntervalTrigger(seconds=self.interval_seconds),
            id=self.JOB_ID,
            name="Settlement - mature due bids",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        logger.info("Settlement scheduled every %s seconds", self.interval_seconds)

    def start(self) -> None:
        self.setup_jobs()
        self.scheduler.start()

    def shutdown(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
