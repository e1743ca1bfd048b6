# coinvest/models.py
from __future__ import annotations

from sqlalchemy import (
    Column,
    String,
    Numeric,
    DateTime,
    Integer,
    Boolean,
    Text,
    JSON,
    Index,
)
from sqlalchemy.orm import declarative_base
from sqlalchemy.sql import func

Base = declarative_base()


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    email = Column(String(255), unique=True, index=True, nullable=False)
    full_name = Column(String(128), nullable=False)
    phone = Column(String(32), nullable=True)

    # active / inactive (users are never deleted)
    status = Column(String(16), nullable=False, default="active")

    coin_balance = Column(Numeric(24, 8), nullable=False, default=0)
    total_invested = Column(Numeric(24, 8), nullable=False, default=0)
    active_investments = Column(Integer, nullable=False, default=0)
    is_verified = Column(Boolean, nullable=False, default=False)

    version = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=True)

    __mapper_args__ = {"version_id_col": version}


class BankAccount(Base):
    __tablename__ = "bank_accounts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    bank_name = Column(String(64), unique=True, index=True, nullable=False)
    account_holder = Column(String(128), nullable=False)
    account_number = Column(String(32), nullable=False)
    branch_code = Column(String(16), nullable=False)
    account_type = Column(String(32), nullable=False, default="Business")

    # fiat
    balance = Column(Numeric(24, 8), nullable=False, default=0)
    # coins available to back lots
    coin_balance = Column(Numeric(24, 8), nullable=False, default=0)

    version = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=True)

    __mapper_args__ = {"version_id_col": version}


class AuctionLot(Base):
    __tablename__ = "auction_lots"

    id = Column(Integer, primary_key=True, autoincrement=True)
    lot_number = Column(String(32), unique=True, index=True, nullable=False)
    bank_name = Column(String(64), nullable=False)

    coin_amount = Column(Numeric(24, 8), nullable=False)
    going_price = Column(Numeric(24, 8), nullable=False)
    bid_range_min = Column(Numeric(24, 8), nullable=False)
    bid_range_max = Column(Numeric(24, 8), nullable=False)

    # coins reserved by non-rejected bids
    allocated_coins = Column(Numeric(24, 8), nullable=False, default=0)

    # active / closed / sold
    status = Column(String(16), nullable=False, default="active")

    version = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=True)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index("ix_auction_lots_status", "status"),
    )


class Bid(Base):
    __tablename__ = "user_bids"

    id = Column(Integer, primary_key=True, autoincrement=True)
    bid_number = Column(String(16), unique=True, index=True, nullable=False)
    reference_number = Column(String(16), unique=True, nullable=False)

    user_email = Column(String(255), nullable=False)
    lot_number = Column(String(32), nullable=False)
    seller_bank = Column(String(64), nullable=False)

    amount = Column(Numeric(24, 8), nullable=False)
    holding_period = Column(Integer, nullable=False)
    multiplier = Column(Numeric(8, 4), nullable=False)

    # pending_payment / awaiting_approval / approved / matured / rejected
    status = Column(String(32), nullable=False, default="pending_payment")

    purchase_date = Column(DateTime(timezone=True), nullable=True)
    maturity_date = Column(DateTime(timezone=True), nullable=True)
    matured_at = Column(DateTime(timezone=True), nullable=True)

    original_coins = Column(Numeric(24, 8), nullable=False)
    matured_coins = Column(Numeric(24, 8), nullable=True)

    version = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=True)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index("ix_user_bids_user_email", "user_email"),
        Index("ix_user_bids_status", "status"),
        Index("ix_user_bids_lot_number", "lot_number"),
        Index("ix_user_bids_status_maturity", "status", "maturity_date"),
    )


class PendingApproval(Base):
    __tablename__ = "pending_approvals"

    id = Column(Integer, primary_key=True, autoincrement=True)
    bid_number = Column(String(16), nullable=False)
    reference_number = Column(String(16), nullable=False)
    lot_number = Column(String(32), nullable=True)

    payer_email = Column(String(255), nullable=False)
    amount = Column(Numeric(24, 8), nullable=False)
    payment_proof_url = Column(String(512), nullable=True)

    # pending / approved / rejected
    status = Column(String(16), nullable=False, default="pending")
    decided_by = Column(String(64), nullable=True)
    decided_at = Column(DateTime(timezone=True), nullable=True)

    version = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=True)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index("ix_pending_approvals_bid_number", "bid_number"),
        Index("ix_pending_approvals_status", "status"),
    )


class CoinMovement(Base):
    """Append-only journal of every coin movement.

    Issuance rows (welcome_bonus / supply_adjustment) have no source; every
    other row moves coins between two holders, so the journal doubles as the
    audit trail for the global coin supply.
    """

    __tablename__ = "coin_movements"

    id = Column(Integer, primary_key=True, autoincrement=True)

    # user:<email> / bank:<name> / bid:<number>, NULL for issuance
    source = Column(String(300), nullable=True)
    destination = Column(String(300), nullable=True)
    amount = Column(Numeric(24, 8), nullable=False)

    # welcome_bonus / supply_adjustment / bid_lock / maturity_credit / maturity_premium
    reason = Column(String(32), nullable=False)
    bid_number = Column(String(16), nullable=True)
    meta = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=True)

    __table_args__ = (
        Index("ix_coin_movements_reason", "reason"),
        Index("ix_coin_movements_bid_reason", "bid_number", "reason"),
    )


class SupportChat(Base):
    __tablename__ = "support_chats"

    id = Column(Integer, primary_key=True, autoincrement=True)
    bid_number = Column(String(16), nullable=True)
    user_email = Column(String(255), nullable=False)
    issue = Column(Text, nullable=True)

    # open / closed
    status = Column(String(16), nullable=False, default="open")
    messages = Column(JSON, nullable=False, default=list)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=True)

    __table_args__ = (
        Index("ix_support_chats_user_email", "user_email"),
    )
