# coinvest/crud.py
from __future__ import annotations

import logging
from decimal import Decimal, InvalidOperation
from typing import Optional, List

from sqlalchemy.orm import Session

from coinvest import models, ledger
from coinvest.database import run_atomic, store_guard
from coinvest.core.config import settings
from coinvest.errors import (
    BankAccountNotFound,
    BidNotFound,
    DuplicateBankAccount,
    DuplicateLot,
    DuplicateUser,
    InsufficientBankCoins,
    InvalidAmount,
    LotNotFound,
    NotAuthorized,
    StateError,
    SupportChatNotFound,
    UserNotFound,
    ValidationError,
    AmountOutOfRange,
)
from coinvest.lifecycle import d, utcnow
from coinvest.locks import entity_locks, lot_key

logger = logging.getLogger(__name__)


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def _amount(x, *, field: str = "amount", allow_zero: bool = False) -> Decimal:
    try:
        amt = d(x)
    except (InvalidOperation, ValueError, TypeError):
        raise InvalidAmount(f"{field} is not a number: {x!r}")
    if not amt.is_finite():
        raise InvalidAmount(f"{field} must be finite")
    if amt < 0 or (amt == 0 and not allow_zero):
        raise InvalidAmount(f"{field} must be > 0")
    return amt


def require_admin(admin_id: str) -> str:
    admin_id = (str(admin_id) if admin_id is not None else "").strip()
    if not admin_id:
        raise NotAuthorized("admin id is required")
    allowed = settings.admin_ids()
    if allowed and admin_id not in allowed:
        raise NotAuthorized(f"{admin_id} is not an admin")
    return admin_id


# -------- Users --------

def get_user(db: Session, email: str) -> models.User | None:
    with store_guard(db):
        return db.query(models.User).filter(models.User.email == normalize_email(email)).first()


def require_user(db: Session, email: str) -> models.User:
    user = get_user(db, email)
    if not user:
        raise UserNotFound(f"no user {email}")
    return user


def register_user(db: Session, *, email: str, full_name: str, phone: str | None = None) -> models.User:
    email = normalize_email(email)
    if "@" not in email:
        raise ValidationError(f"invalid email {email!r}")
    if not (full_name or "").strip():
        raise ValidationError("full name is required")
    bonus = d(settings.WELCOME_BONUS)

    def op() -> models.User:
        if db.query(models.User.id).filter(models.User.email == email).first():
            raise DuplicateUser(f"{email} is already registered")
        user = models.User(
            email=email,
            full_name=full_name.strip(),
            phone=phone,
            status="active",
            coin_balance=bonus,
            total_invested=Decimal("0"),
            active_investments=0,
            is_verified=False,
            created_at=utcnow(),
        )
        db.add(user)
        if bonus > 0:
            ledger.record_movement(
                db,
                source=None,
                destination=ledger.user_holder(email),
                amount=bonus,
                reason="welcome_bonus",
            )
        return user

    user = run_atomic(db, op, label="register_user")
    logger.info("Registered user %s with welcome bonus %s", email, bonus)
    return user


def deactivate_user(db: Session, email: str) -> models.User:
    def op() -> models.User:
        user = require_user(db, email)
        user.status = "inactive"
        return user

    user = run_atomic(db, op, label="deactivate_user")
    logger.info("Deactivated user %s", user.email)
    return user


def verify_user(db: Session, email: str) -> models.User:
    def op() -> models.User:
        user = require_user(db, email)
        user.is_verified = True
        return user

    return run_atomic(db, op, label="verify_user")


# -------- Bank accounts --------

def get_bank_account(db: Session, bank_name: str) -> models.BankAccount | None:
    with store_guard(db):
        return db.query(models.BankAccount).filter(models.BankAccount.bank_name == bank_name).first()


def require_bank_account(db: Session, bank_name: str) -> models.BankAccount:
    bank = get_bank_account(db, bank_name)
    if not bank:
        raise BankAccountNotFound(f"no bank account for {bank_name}")
    return bank


def list_bank_accounts(db: Session) -> List[models.BankAccount]:
    with store_guard(db):
        return db.query(models.BankAccount).order_by(models.BankAccount.bank_name).all()


def create_bank_account(
    db: Session,
    *,
    bank_name: str,
    account_holder: str,
    account_number: str,
    branch_code: str,
    account_type: str = "Business",
    balance=0,
    coin_balance=0,
) -> models.BankAccount:
    bank_name = (bank_name or "").strip()
    if not bank_name:
        raise ValidationError("bank name is required")
    fiat = _amount(balance, field="balance", allow_zero=True)
    coins = _amount(coin_balance, field="coin_balance", allow_zero=True)

    def op() -> models.BankAccount:
        if db.query(models.BankAccount.id).filter(models.BankAccount.bank_name == bank_name).first():
            raise DuplicateBankAccount(f"{bank_name} already has an account")
        bank = models.BankAccount(
            bank_name=bank_name,
            account_holder=account_holder,
            account_number=account_number,
            branch_code=branch_code,
            account_type=account_type,
            balance=fiat,
            coin_balance=coins,
            created_at=utcnow(),
        )
        db.add(bank)
        if coins > 0:
            ledger.record_movement(
                db,
                source=None,
                destination=ledger.bank_holder(bank_name),
                amount=coins,
                reason="supply_adjustment",
                meta={"note": "opening supply"},
            )
        return bank

    bank = run_atomic(db, op, label="create_bank_account")
    logger.info("Created bank account %s with %s coins", bank_name, coins)
    return bank


def adjust_bank_coins(db: Session, *, bank_name: str, delta, admin_id: str, note: str | None = None) -> models.BankAccount:
    """Admin coin-supply edit: the only way besides the welcome bonus to change total supply."""
    admin_id = require_admin(admin_id)
    try:
        change = d(delta)
    except (InvalidOperation, ValueError, TypeError):
        raise InvalidAmount(f"delta is not a number: {delta!r}")
    if not change.is_finite() or change == 0:
        raise InvalidAmount("delta must be a non-zero number")

    def op() -> models.BankAccount:
        bank = require_bank_account(db, bank_name)
        new_balance = d(bank.coin_balance) + change
        if new_balance < 0:
            raise InsufficientBankCoins(f"{bank_name} holds {bank.coin_balance} coins, cannot remove {-change}")
        bank.coin_balance = new_balance
        ledger.record_movement(
            db,
            source=None,
            destination=ledger.bank_holder(bank_name),
            amount=change,
            reason="supply_adjustment",
            meta={"admin_id": admin_id, "note": note or ""},
        )
        return bank

    bank = run_atomic(db, op, label="adjust_bank_coins")
    logger.info("Admin %s adjusted %s coin supply by %s", admin_id, bank_name, change)
    return bank


# -------- Lots --------

def get_lot(db: Session, lot_number: str) -> models.AuctionLot | None:
    with store_guard(db):
        return db.query(models.AuctionLot).filter(models.AuctionLot.lot_number == str(lot_number)).first()


def list_lots(db: Session, *, status: Optional[str] = None, limit: int = 100) -> List[models.AuctionLot]:
    with store_guard(db):
        q = db.query(models.AuctionLot).order_by(models.AuctionLot.lot_number)
        if status:
            q = q.filter(models.AuctionLot.status == status)
        return q.limit(limit).all()


def remaining_capacity(lot: models.AuctionLot) -> Decimal:
    return d(lot.coin_amount) - d(lot.allocated_coins or 0)


def publish_lot(
    db: Session,
    *,
    lot_number: str,
    bank_name: str,
    coin_amount,
    going_price,
    bid_range_min,
    bid_range_max,
) -> models.AuctionLot:
    lot_number = str(lot_number).strip()
    if not lot_number:
        raise ValidationError("lot number is required")
    coins = _amount(coin_amount, field="coin_amount")
    price = _amount(going_price, field="going_price")
    low = _amount(bid_range_min, field="bid_range_min")
    high = _amount(bid_range_max, field="bid_range_max")
    if low > high:
        raise AmountOutOfRange(f"bid range [{low}, {high}] is empty")

    def op() -> models.AuctionLot:
        require_bank_account(db, bank_name)
        if db.query(models.AuctionLot.id).filter(models.AuctionLot.lot_number == lot_number).first():
            raise DuplicateLot(f"lot {lot_number} already exists")
        lot = models.AuctionLot(
            lot_number=lot_number,
            bank_name=bank_name,
            coin_amount=coins,
            going_price=price,
            bid_range_min=low,
            bid_range_max=high,
            allocated_coins=Decimal("0"),
            status="active",
            created_at=utcnow(),
        )
        db.add(lot)
        return lot

    lot = run_atomic(db, op, label="publish_lot")
    logger.info("Published lot %s (%s coins from %s)", lot_number, coins, bank_name)
    return lot


def close_lot(db: Session, lot_number: str) -> models.AuctionLot:
    """Stop accepting bids. Existing reservations on the lot stand."""
    with entity_locks.hold(lot_key(lot_number)):
        def op() -> models.AuctionLot:
            lot = get_lot(db, lot_number)
            if not lot:
                raise LotNotFound(f"no lot {lot_number}")
            lot.status = "closed"
            return lot

        lot = run_atomic(db, op, label="close_lot")
    logger.info("Closed lot %s", lot_number)
    return lot


# -------- Bids (read side) --------

def get_bid(db: Session, bid_number: str) -> models.Bid | None:
    with store_guard(db):
        return db.query(models.Bid).filter(models.Bid.bid_number == str(bid_number)).first()


def require_bid(db: Session, bid_number: str) -> models.Bid:
    bid = get_bid(db, bid_number)
    if not bid:
        raise BidNotFound(f"no bid {bid_number}")
    return bid


def list_bids(
    db: Session,
    *,
    user_email: Optional[str] = None,
    status: Optional[str] = None,
    lot_number: Optional[str] = None,
    limit: Optional[int] = 100,
) -> List[models.Bid]:
    with store_guard(db):
        q = db.query(models.Bid).order_by(models.Bid.id.desc())
        if user_email:
            q = q.filter(models.Bid.user_email == normalize_email(user_email))
        if status:
            q = q.filter(models.Bid.status == status)
        if lot_number:
            q = q.filter(models.Bid.lot_number == str(lot_number))
        return q.limit(limit).all()


# -------- Approvals (read side) --------

def get_approval(db: Session, approval_id: int) -> models.PendingApproval | None:
    with store_guard(db):
        return db.query(models.PendingApproval).filter(models.PendingApproval.id == approval_id).first()


def list_approvals(
    db: Session,
    *,
    status: Optional[str] = "pending",
    payer_email: Optional[str] = None,
    limit: int = 100,
) -> List[models.PendingApproval]:
    with store_guard(db):
        q = db.query(models.PendingApproval).order_by(models.PendingApproval.id.asc())
        if status:
            q = q.filter(models.PendingApproval.status == status)
        if payer_email:
            q = q.filter(models.PendingApproval.payer_email == normalize_email(payer_email))
        return q.limit(limit).all()


# -------- Support chats --------

def get_support_chat(db: Session, chat_id: int) -> models.SupportChat:
    with store_guard(db):
        chat = db.query(models.SupportChat).filter(models.SupportChat.id == chat_id).first()
    if not chat:
        raise SupportChatNotFound(f"no support chat {chat_id}")
    return chat


def open_support_chat(db: Session, *, user_email: str, issue: str, bid_number: str | None = None) -> models.SupportChat:
    email = normalize_email(user_email)

    def op() -> models.SupportChat:
        require_user(db, email)
        if bid_number is not None:
            require_bid(db, bid_number)
        chat = models.SupportChat(
            user_email=email,
            bid_number=bid_number,
            issue=issue,
            status="open",
            messages=[],
            created_at=utcnow(),
        )
        db.add(chat)
        return chat

    chat = run_atomic(db, op, label="open_support_chat")
    logger.info("Opened support chat %s for %s", chat.id, email)
    return chat


def post_chat_message(db: Session, *, chat_id: int, sender: str, text: str) -> models.SupportChat:
    if not (text or "").strip():
        raise ValidationError("message text is required")

    def op() -> models.SupportChat:
        chat = get_support_chat(db, chat_id)
        if chat.status != "open":
            raise StateError(f"support chat {chat_id} is {chat.status}")
        # reassign so the JSON column is flagged dirty
        chat.messages = list(chat.messages or []) + [
            {"sender": sender, "text": text.strip(), "at": utcnow().isoformat()}
        ]
        return chat

    return run_atomic(db, op, label="post_chat_message")


def close_support_chat(db: Session, chat_id: int) -> models.SupportChat:
    def op() -> models.SupportChat:
        chat = get_support_chat(db, chat_id)
        chat.status = "closed"
        return chat

    return run_atomic(db, op, label="close_support_chat")


def list_support_chats(
    db: Session,
    *,
    user_email: Optional[str] = None,
    status: Optional[str] = None,
    limit: int = 50,
) -> List[models.SupportChat]:
    with store_guard(db):
        q = db.query(models.SupportChat).order_by(models.SupportChat.id.desc())
        if user_email:
            q = q.filter(models.SupportChat.user_email == normalize_email(user_email))
        if status:
            q = q.filter(models.SupportChat.status == status)
        return q.limit(limit).all()
