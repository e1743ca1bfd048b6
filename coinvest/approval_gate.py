# coinvest/approval_gate.py
from __future__ import annotations

import logging
import threading
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Dict, List, Optional

from sqlalchemy.orm import Session

from coinvest import crud, ledger, models
from coinvest.database import run_atomic
from coinvest.errors import (
    AlreadyClaimed,
    AlreadyDecided,
    ApprovalNotFound,
    BidNotAwaitingApproval,
    InsufficientBankCoins,
    InvalidAmount,
    InvalidDecision,
    LotNotFound,
    ReferenceMismatch,
)
from coinvest.events import BidCreated, bus
from coinvest.lifecycle import (
    APPROVED,
    AWAITING_APPROVAL,
    PENDING_PAYMENT,
    REJECTED,
    as_utc,
    d,
    maturity_date,
    transition,
    utcnow,
)
from coinvest.locks import bid_key, entity_locks, lot_key

logger = logging.getLogger(__name__)

DECISIONS = ("approve", "reject")


class ApprovalInbox:
    """Bids created but not yet claimed as paid.

    BidCreated events keep it current within this process. The store stays
    authoritative: ``load`` replaces the contents with every
    ``pending_payment`` bid, and ``pending(db)`` reloads before answering.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._items: Dict[str, BidCreated] = {}

    def receive(self, event: BidCreated) -> None:
        with self._lock:
            self._items[event.bid_number] = event

    def discard(self, bid_number: str) -> None:
        with self._lock:
            self._items.pop(bid_number, None)

    def load(self, db: Session) -> int:
        items = {
            bid.bid_number: BidCreated(
                bid_number=bid.bid_number,
                reference_number=bid.reference_number,
                user_email=bid.user_email,
                lot_number=bid.lot_number,
                seller_bank=bid.seller_bank,
                amount=d(bid.amount),
                holding_period=bid.holding_period,
                created_at=as_utc(bid.created_at),
            )
            for bid in crud.list_bids(db, status=PENDING_PAYMENT, limit=None)
        }
        with self._lock:
            self._items = items
        return len(items)

    def pending(self, db: Optional[Session] = None) -> List[BidCreated]:
        if db is not None:
            self.load(db)
        with self._lock:
            return sorted(self._items.values(), key=lambda e: (e.created_at, e.bid_number))

    def clear(self) -> None:
        with self._lock:
            self._items.clear()


inbox = ApprovalInbox()
bus.subscribe(BidCreated, inbox.receive)


# -------- Payment claims --------

def claim_payment(
    db: Session,
    *,
    bid_number: str,
    reference_number: str,
    payer_email: str,
    amount=None,
    payment_proof_url: Optional[str] = None,
    now: Optional[datetime] = None,
) -> models.PendingApproval:
    bid_number = str(bid_number).strip()
    payer = crud.normalize_email(payer_email)
    claimed_at = as_utc(now) if now else utcnow()

    claimed_amount: Optional[Decimal] = None
    if amount is not None:
        try:
            claimed_amount = d(amount)
        except (InvalidOperation, ValueError, TypeError):
            raise InvalidAmount(f"amount is not a number: {amount!r}")
        if not claimed_amount.is_finite() or claimed_amount <= 0:
            raise InvalidAmount("amount must be > 0")

    with entity_locks.hold(bid_key(bid_number)):

        def op() -> models.PendingApproval:
            bid = crud.require_bid(db, bid_number)
            if str(reference_number).strip() != bid.reference_number:
                raise ReferenceMismatch(f"reference does not match bid {bid_number}")

            earlier_claim = (
                db.query(models.PendingApproval.id)
                .filter(models.PendingApproval.bid_number == bid_number)
                .first()
            )
            if bid.status != PENDING_PAYMENT or earlier_claim:
                raise AlreadyClaimed(f"bid {bid_number} already has a payment claim")

            transition(bid, AWAITING_APPROVAL)
            approval = models.PendingApproval(
                bid_number=bid.bid_number,
                reference_number=bid.reference_number,
                lot_number=bid.lot_number,
                payer_email=payer,
                amount=(claimed_amount if claimed_amount is not None else d(bid.amount)),
                payment_proof_url=payment_proof_url,
                status="pending",
                created_at=claimed_at,
            )
            db.add(approval)
            return approval

        approval = run_atomic(db, op, label="claim_payment")

    inbox.discard(bid_number)
    logger.info("Payment claimed for bid %s by %s (approval %s)", bid_number, payer, approval.id)
    return approval


# -------- Admin decisions --------

def _approve(db: Session, bid: models.Bid, decided_at: datetime) -> None:
    transition(bid, APPROVED)
    bid.purchase_date = decided_at
    bid.maturity_date = maturity_date(decided_at, bid.holding_period)

    user = crud.require_user(db, bid.user_email)
    user.active_investments = (user.active_investments or 0) + 1

    bank = crud.require_bank_account(db, bid.seller_bank)
    coins = d(bid.original_coins)
    if d(bank.coin_balance) < coins:
        raise InsufficientBankCoins(
            f"{bank.bank_name} holds {bank.coin_balance} coins, bid {bid.bid_number} needs {coins}"
        )
    bank.coin_balance = d(bank.coin_balance) - coins
    ledger.record_movement(
        db,
        source=ledger.bank_holder(bank.bank_name),
        destination=ledger.bid_holder(bid.bid_number),
        amount=coins,
        reason="bid_lock",
        bid_number=bid.bid_number,
    )


def _reject(db: Session, bid: models.Bid) -> None:
    transition(bid, REJECTED)

    lot = crud.get_lot(db, bid.lot_number)
    if lot is None:
        raise LotNotFound(f"lot {bid.lot_number} of bid {bid.bid_number} is missing")
    lot.allocated_coins = d(lot.allocated_coins) - d(bid.original_coins)
    if lot.status == "sold" and crud.remaining_capacity(lot) > 0:
        lot.status = "active"


def decide(
    db: Session,
    *,
    approval_id: int,
    decision: str,
    admin_id: str,
    now: Optional[datetime] = None,
) -> models.Bid:
    """Apply an admin decision to a payment claim.

    Approval moves the bid to ``approved``, starts its holding period, bumps
    the owner's active investments and debits the backing bank's coins.
    Rejection releases the lot reservation. Either way the claim is marked
    resolved, and everything lands in one commit or not at all.
    """
    decision = (decision or "").strip().lower()
    if decision not in DECISIONS:
        raise InvalidDecision(f"decision must be one of {DECISIONS}")
    admin_id = crud.require_admin(admin_id)
    decided_at = as_utc(now) if now else utcnow()

    approval = crud.get_approval(db, approval_id)
    if approval is None:
        raise ApprovalNotFound(f"no approval {approval_id}")
    bid_number, lot_number = approval.bid_number, approval.lot_number
    if lot_number is None:
        lot_number = crud.require_bid(db, bid_number).lot_number

    with entity_locks.hold(bid_key(bid_number), lot_key(lot_number)):

        def op() -> models.Bid:
            current = crud.get_approval(db, approval_id)
            if current is None:
                raise ApprovalNotFound(f"no approval {approval_id}")
            if current.status != "pending":
                raise AlreadyDecided(
                    f"approval {approval_id} was already {current.status} by {current.decided_by}",
                    approval_id=approval_id,
                    status=current.status,
                )

            bid = crud.require_bid(db, current.bid_number)
            if bid.status != AWAITING_APPROVAL:
                raise BidNotAwaitingApproval(f"bid {bid.bid_number} is {bid.status}")

            if decision == "approve":
                _approve(db, bid, decided_at)
            else:
                _reject(db, bid)

            current.status = "approved" if decision == "approve" else "rejected"
            current.decided_by = admin_id
            current.decided_at = decided_at
            return bid

        bid = run_atomic(db, op, label="decide")

    logger.info("Admin %s %sd approval %s (bid %s)", admin_id, decision, approval_id, bid_number)
    return bid
