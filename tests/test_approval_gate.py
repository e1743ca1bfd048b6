"""Payment claims and admin decisions."""

from datetime import timedelta
from decimal import Decimal

import pytest

from coinvest import approval_gate, bid_engine, crud, ledger, settlement
from coinvest.approval_gate import inbox
from coinvest.errors import (
    AlreadyClaimed,
    AlreadyDecided,
    ApprovalNotFound,
    BidNotFound,
    InsufficientBankCoins,
    InvalidDecision,
    NotAuthorized,
    ReferenceMismatch,
)
from coinvest.lifecycle import APPROVED, AWAITING_APPROVAL, MATURED, REJECTED, as_utc

from tests.conftest import T0


class TestClaimPayment:

    def test_claim_moves_bid_to_awaiting_approval(self, market):
        db = market
        bid = bid_engine.place_bid(
            db, user_email="john@example.com", lot_number="13878", amount=6000, holding_period=10, now=T0
        )
        approval = approval_gate.claim_payment(
            db,
            bid_number=bid.bid_number,
            reference_number=bid.reference_number,
            payer_email="John@Example.com",
            payment_proof_url="https://files.example.com/proof/1.pdf",
        )

        assert approval.status == "pending"
        assert approval.bid_number == bid.bid_number
        assert approval.payer_email == "john@example.com"
        assert approval.amount == Decimal("6000")
        assert approval.lot_number == "13878"
        assert crud.get_bid(db, bid.bid_number).status == AWAITING_APPROVAL
        assert [a.id for a in crud.list_approvals(db)] == [approval.id]

    def test_claim_removes_bid_from_inbox(self, market):
        db = market
        bid = bid_engine.place_bid(
            db, user_email="john@example.com", lot_number="13878", amount=6000, holding_period=10
        )
        assert [e.bid_number for e in inbox.pending()] == [bid.bid_number]
        approval_gate.claim_payment(
            db, bid_number=bid.bid_number, reference_number=bid.reference_number, payer_email="john@example.com"
        )
        assert inbox.pending() == []

    def test_inbox_is_rebuilt_from_store(self, market):
        db = market
        bid = bid_engine.place_bid(
            db, user_email="john@example.com", lot_number="13878", amount=6000, holding_period=10, now=T0
        )
        inbox.clear()
        assert inbox.pending() == []

        pending = inbox.pending(db)
        assert [e.bid_number for e in pending] == [bid.bid_number]
        assert pending[0].reference_number == bid.reference_number
        assert pending[0].amount == Decimal("6000")
        assert pending[0].created_at == T0

    def test_inbox_load_drops_claimed_bids(self, market, place_claim):
        db = market
        place_claim(6000)
        other = bid_engine.place_bid(
            db, user_email="sarah@example.com", lot_number="11528", amount=5000, holding_period=5
        )
        inbox.clear()

        assert inbox.load(db) == 1
        assert [e.bid_number for e in inbox.pending()] == [other.bid_number]

    def test_reclaim_is_rejected(self, market, place_claim):
        db = market
        bid_number, _ = place_claim(6000)
        bid = crud.get_bid(db, bid_number)
        with pytest.raises(AlreadyClaimed):
            approval_gate.claim_payment(
                db, bid_number=bid_number, reference_number=bid.reference_number, payer_email="john@example.com"
            )
        assert len(crud.list_approvals(db)) == 1

    def test_wrong_reference(self, market):
        db = market
        bid = bid_engine.place_bid(
            db, user_email="john@example.com", lot_number="13878", amount=6000, holding_period=10
        )
        with pytest.raises(ReferenceMismatch):
            approval_gate.claim_payment(
                db, bid_number=bid.bid_number, reference_number="000000x", payer_email="john@example.com"
            )
        assert crud.get_bid(db, bid.bid_number).status == "pending_payment"
        assert crud.list_approvals(db) == []

    def test_unknown_bid(self, market):
        with pytest.raises(BidNotFound):
            approval_gate.claim_payment(
                market, bid_number="000000", reference_number="000000", payer_email="john@example.com"
            )

    def test_claim_on_approved_bid(self, market, approved_bid):
        db = market
        bid_number = approved_bid(6000)
        bid = crud.get_bid(db, bid_number)
        with pytest.raises(AlreadyClaimed):
            approval_gate.claim_payment(
                db, bid_number=bid_number, reference_number=bid.reference_number, payer_email="john@example.com"
            )
        assert crud.get_bid(db, bid_number).status == APPROVED
        assert len(crud.list_approvals(db, status=None)) == 1

    def test_claim_on_rejected_bid(self, market, place_claim):
        db = market
        bid_number, approval_id = place_claim(6000)
        approval_gate.decide(db, approval_id=approval_id, decision="reject", admin_id="admin-1", now=T0)
        bid = crud.get_bid(db, bid_number)
        with pytest.raises(AlreadyClaimed):
            approval_gate.claim_payment(
                db, bid_number=bid_number, reference_number=bid.reference_number, payer_email="john@example.com"
            )
        assert crud.get_bid(db, bid_number).status == REJECTED

    def test_claim_on_matured_bid(self, market, approved_bid):
        db = market
        bid_number = approved_bid(6000, holding_period=5)
        settlement.mature_due(db, now=T0 + timedelta(days=5))
        bid = crud.get_bid(db, bid_number)
        with pytest.raises(AlreadyClaimed):
            approval_gate.claim_payment(
                db, bid_number=bid_number, reference_number=bid.reference_number, payer_email="john@example.com"
            )
        assert crud.get_bid(db, bid_number).status == MATURED


class TestDecideApprove:

    def test_approve_applies_all_effects(self, market, place_claim):
        db = market
        bid_number, approval_id = place_claim(6000, holding_period=10)

        bid = approval_gate.decide(db, approval_id=approval_id, decision="approve", admin_id="admin-1", now=T0)

        assert bid.status == APPROVED
        assert as_utc(bid.purchase_date) == T0
        assert as_utc(bid.maturity_date) == T0 + timedelta(days=10)

        user = crud.get_user(db, "john@example.com")
        assert user.active_investments == 1
        assert user.coin_balance == Decimal("1000")

        bank = crud.get_bank_account(db, "Nedbank")
        assert bank.coin_balance == Decimal("644000")

        approval = crud.get_approval(db, approval_id)
        assert approval.status == "approved"
        assert approval.decided_by == "admin-1"
        assert crud.list_approvals(db) == []

        assert ledger.has_movement(db, bid_number=bid_number, reason="bid_lock")

    def test_approved_bid_keeps_lot_reservation(self, market, approved_bid):
        db = market
        approved_bid(6000)
        assert crud.remaining_capacity(crud.get_lot(db, "13878")) == Decimal("4145")

    def test_bank_without_coins_blocks_approval_atomically(self, market, place_claim):
        db = market
        bid_number, approval_id = place_claim(6000)
        crud.adjust_bank_coins(db, bank_name="Nedbank", delta="-646000", admin_id="admin-1")

        with pytest.raises(InsufficientBankCoins):
            approval_gate.decide(db, approval_id=approval_id, decision="approve", admin_id="admin-1")

        assert crud.get_bid(db, bid_number).status == AWAITING_APPROVAL
        assert crud.get_user(db, "john@example.com").active_investments == 0
        assert crud.get_bank_account(db, "Nedbank").coin_balance == Decimal("4000")
        assert crud.get_approval(db, approval_id).status == "pending"


class TestDecideReject:

    def test_reject_releases_capacity(self, market, place_claim):
        db = market
        bid_number, approval_id = place_claim(6000)

        bid = approval_gate.decide(db, approval_id=approval_id, decision="reject", admin_id="admin-1")

        assert bid.status == REJECTED
        assert bid.purchase_date is None
        lot = crud.get_lot(db, "13878")
        assert lot.allocated_coins == 0
        assert crud.get_bank_account(db, "Nedbank").coin_balance == Decimal("650000")
        assert crud.get_user(db, "john@example.com").active_investments == 0
        assert crud.get_approval(db, approval_id).status == "rejected"

    def test_reject_reopens_sold_lot(self, market, place_claim):
        db = market
        place_claim(5000)
        _, approval_id = place_claim("5145", user="sarah@example.com")
        assert crud.get_lot(db, "13878").status == "sold"

        approval_gate.decide(db, approval_id=approval_id, decision="reject", admin_id="admin-1")

        lot = crud.get_lot(db, "13878")
        assert lot.status == "active"
        assert crud.remaining_capacity(lot) == Decimal("5145")

    def test_reject_on_closed_lot_keeps_it_closed(self, market, place_claim):
        db = market
        _, approval_id = place_claim(6000)
        crud.close_lot(db, "13878")
        approval_gate.decide(db, approval_id=approval_id, decision="reject", admin_id="admin-1")
        assert crud.get_lot(db, "13878").status == "closed"


class TestDecideErrors:

    def test_second_decision_is_already_decided(self, market, place_claim):
        db = market
        bid_number, approval_id = place_claim(6000)
        approval_gate.decide(db, approval_id=approval_id, decision="approve", admin_id="admin-1")

        with pytest.raises(AlreadyDecided):
            approval_gate.decide(db, approval_id=approval_id, decision="reject", admin_id="admin-2")

        assert crud.get_bid(db, bid_number).status == APPROVED
        assert crud.get_lot(db, "13878").allocated_coins == Decimal("6000")

    def test_reject_then_approve_is_already_decided(self, market, place_claim):
        db = market
        bid_number, approval_id = place_claim(6000)
        approval_gate.decide(db, approval_id=approval_id, decision="reject", admin_id="admin-1")

        with pytest.raises(AlreadyDecided):
            approval_gate.decide(db, approval_id=approval_id, decision="approve", admin_id="admin-1")

        assert crud.get_bid(db, bid_number).status == REJECTED
        assert crud.get_bank_account(db, "Nedbank").coin_balance == Decimal("650000")

    def test_unknown_approval(self, market):
        with pytest.raises(ApprovalNotFound):
            approval_gate.decide(market, approval_id=4242, decision="approve", admin_id="admin-1")

    def test_unknown_decision(self, market, place_claim):
        _, approval_id = place_claim(6000)
        with pytest.raises(InvalidDecision):
            approval_gate.decide(market, approval_id=approval_id, decision="maybe", admin_id="admin-1")

    def test_admin_allow_list(self, market, place_claim, monkeypatch):
        from coinvest.core.config import settings

        monkeypatch.setattr(settings, "ADMIN_USER_IDS", "admin-1, admin-2")
        _, approval_id = place_claim(6000)
        with pytest.raises(NotAuthorized):
            approval_gate.decide(market, approval_id=approval_id, decision="approve", admin_id="intruder")
        bid = approval_gate.decide(market, approval_id=approval_id, decision="approve", admin_id="admin-2")
        assert bid.status == APPROVED
