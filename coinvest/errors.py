# coinvest/errors.py
from __future__ import annotations


class CoinvestError(Exception):
    """Base for every error the core reports to its callers.

    A rejected operation never leaves partial writes behind, so callers can
    treat any of these as "nothing happened".
    """

    code = "error"
    http_status = 400

    def __init__(self, message: str = "", **context):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.context = context


# -------- Validation --------

class ValidationError(CoinvestError):
    code = "validation_error"
    http_status = 400


class InvalidAmount(ValidationError):
    code = "invalid_amount"


class AmountOutOfRange(ValidationError):
    code = "amount_out_of_range"


class InvalidHoldingPeriod(ValidationError):
    code = "invalid_holding_period"


class ReferenceMismatch(ValidationError):
    code = "reference_mismatch"


class InvalidDecision(ValidationError):
    code = "invalid_decision"


# -------- Not found --------

class NotFoundError(CoinvestError):
    code = "not_found"
    http_status = 404


class UserNotFound(NotFoundError):
    code = "user_not_found"


class LotNotFound(NotFoundError):
    code = "lot_not_found"


class BidNotFound(NotFoundError):
    code = "bid_not_found"


class ApprovalNotFound(NotFoundError):
    code = "approval_not_found"


class BankAccountNotFound(NotFoundError):
    code = "bank_account_not_found"


class SupportChatNotFound(NotFoundError):
    code = "support_chat_not_found"


# -------- State --------

class StateError(CoinvestError):
    code = "state_error"
    http_status = 409


class LotUnavailable(StateError):
    code = "lot_unavailable"


class InvalidTransition(StateError):
    code = "invalid_transition"


class AlreadyClaimed(StateError):
    code = "already_claimed"


class AlreadyDecided(StateError):
    code = "already_decided"


class BidNotAwaitingApproval(StateError):
    code = "bid_not_awaiting_approval"


class DuplicateUser(StateError):
    code = "duplicate_user"


class DuplicateLot(StateError):
    code = "duplicate_lot"


class DuplicateBankAccount(StateError):
    code = "duplicate_bank_account"


class UserInactive(StateError):
    code = "user_inactive"


class ConcurrencyConflict(StateError):
    code = "concurrency_conflict"


class NotAuthorized(StateError):
    code = "not_authorized"
    http_status = 403


# -------- Capacity --------

class CapacityError(CoinvestError):
    code = "capacity_error"
    http_status = 409


class InsufficientLotCapacity(CapacityError):
    code = "insufficient_lot_capacity"


class InsufficientBankCoins(CapacityError):
    code = "insufficient_bank_coins"


# -------- Store --------

class StoreUnavailable(CoinvestError):
    code = "store_unavailable"
    http_status = 503
