# coinvest/schemas.py
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


# -------- Requests --------

class UserCreate(BaseModel):
    email: str
    full_name: str
    phone: Optional[str] = None


class BankAccountCreate(BaseModel):
    bank_name: str
    account_holder: str
    account_number: str
    branch_code: str
    account_type: str = "Business"
    balance: Decimal = Decimal("0")
    coin_balance: Decimal = Decimal("0")


class CoinAdjustment(BaseModel):
    delta: Decimal
    admin_id: str
    note: Optional[str] = None


class LotCreate(BaseModel):
    lot_number: str
    bank_name: str
    coin_amount: Decimal
    going_price: Decimal
    bid_range_min: Decimal
    bid_range_max: Decimal


class BidCreate(BaseModel):
    user_email: str
    lot_number: str
    # kept loose so the engine reports InvalidAmount / InvalidHoldingPeriod itself
    amount: Any
    holding_period: Any


class PaymentClaim(BaseModel):
    reference_number: str
    payer_email: str
    amount: Optional[Decimal] = None
    payment_proof_url: Optional[str] = None


class Decision(BaseModel):
    decision: str
    admin_id: str


class SettlementRun(BaseModel):
    now: Optional[datetime] = None


class SupportChatCreate(BaseModel):
    user_email: str
    issue: str
    bid_number: Optional[str] = None


class ChatMessage(BaseModel):
    sender: str
    text: str


# -------- Responses --------

class UserOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    email: str
    full_name: str
    phone: Optional[str] = None
    status: str
    coin_balance: Decimal
    total_invested: Decimal
    active_investments: int
    is_verified: bool


class BankAccountOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    bank_name: str
    account_holder: str
    account_number: str
    branch_code: str
    account_type: str
    balance: Decimal
    coin_balance: Decimal


class LotOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    lot_number: str
    bank_name: str
    coin_amount: Decimal
    going_price: Decimal
    bid_range_min: Decimal
    bid_range_max: Decimal
    allocated_coins: Decimal
    status: str


class BidOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    bid_number: str
    reference_number: str
    user_email: str
    lot_number: str
    seller_bank: str
    amount: Decimal
    holding_period: int
    multiplier: Decimal
    status: str
    purchase_date: Optional[datetime] = None
    maturity_date: Optional[datetime] = None
    original_coins: Decimal
    matured_coins: Optional[Decimal] = None
    created_at: Optional[datetime] = None


class ApprovalOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    bid_number: str
    reference_number: str
    lot_number: Optional[str] = None
    payer_email: str
    amount: Decimal
    payment_proof_url: Optional[str] = None
    status: str
    decided_by: Optional[str] = None
    decided_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


class InboxItemOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    bid_number: str
    reference_number: str
    user_email: str
    lot_number: str
    seller_bank: str
    amount: Decimal
    holding_period: int
    created_at: datetime


class SettlementOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    processed: int
    matured: int
    skipped: int
    failed: int
    total_credited: Decimal
    matured_bids: List[str] = Field(default_factory=list)


class SupportChatOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    bid_number: Optional[str] = None
    user_email: str
    issue: Optional[str] = None
    status: str
    messages: List[Dict[str, Any]] = Field(default_factory=list)
