"""Bid placement: validation order, reservations, identifiers and events."""

from decimal import Decimal

import pytest

from coinvest import bid_engine, crud, identifiers
from coinvest.approval_gate import inbox
from coinvest.errors import (
    AmountOutOfRange,
    InsufficientLotCapacity,
    InvalidAmount,
    InvalidHoldingPeriod,
    LotUnavailable,
    UserInactive,
    UserNotFound,
)
from coinvest.events import BidCreated, bus
from coinvest.lifecycle import PENDING_PAYMENT

from tests.conftest import T0


def _place(db, amount, *, lot_number="13878", holding_period=10, user="john@example.com"):
    return bid_engine.place_bid(
        db, user_email=user, lot_number=lot_number, amount=amount, holding_period=holding_period, now=T0
    )


class TestPlaceBid:

    def test_creates_pending_bid_and_reserves_capacity(self, market):
        db = market
        bid = _place(db, "6000")

        assert bid.status == PENDING_PAYMENT
        assert bid.amount == Decimal("6000")
        assert bid.original_coins == Decimal("6000")
        assert bid.seller_bank == "Nedbank"
        assert bid.user_email == "john@example.com"
        assert bid.purchase_date is None
        assert bid.matured_coins is None

        lot = crud.get_lot(db, "13878")
        assert lot.allocated_coins == Decimal("6000")
        assert crud.remaining_capacity(lot) == Decimal("4145")
        assert lot.status == "active"

    def test_numbers_are_six_digits_and_distinct(self, market):
        bid = _place(market, 5000)
        assert len(bid.bid_number) == 6 and bid.bid_number.isdigit()
        assert len(bid.reference_number) == 6 and bid.reference_number.isdigit()
        assert bid.bid_number != bid.reference_number

    def test_second_bid_over_remaining_capacity_fails(self, market):
        db = market
        _place(db, 6000)
        with pytest.raises(InsufficientLotCapacity):
            _place(db, 5000)
        assert crud.remaining_capacity(crud.get_lot(db, "13878")) == Decimal("4145")
        assert len(crud.list_bids(db, lot_number="13878")) == 1

    def test_exhausting_lot_marks_it_sold(self, market):
        db = market
        _place(db, 5000)
        _place(db, "5145", user="sarah@example.com")
        lot = crud.get_lot(db, "13878")
        assert lot.status == "sold"
        assert crud.remaining_capacity(lot) == 0
        with pytest.raises(LotUnavailable):
            _place(db, 5000)

    @pytest.mark.parametrize("amount", [0, -5, "-0.01", "abc", None, "NaN"])
    def test_invalid_amount(self, market, amount):
        with pytest.raises(InvalidAmount):
            _place(market, amount)

    def test_unknown_lot_is_unavailable(self, market):
        with pytest.raises(LotUnavailable):
            _place(market, 5000, lot_number="99999")

    def test_closed_lot_is_unavailable(self, market):
        crud.close_lot(market, "13878")
        with pytest.raises(LotUnavailable):
            _place(market, 5000)

    @pytest.mark.parametrize("amount", [4999, "10000.01", 12000])
    def test_amount_outside_range(self, market, amount):
        with pytest.raises(AmountOutOfRange):
            _place(market, amount)

    @pytest.mark.parametrize("period", [0, 7, 30, "ten", 10.5, None])
    def test_invalid_holding_period(self, market, period):
        with pytest.raises(InvalidHoldingPeriod):
            _place(market, 5000, holding_period=period)
        assert crud.get_lot(market, "13878").allocated_coins == 0

    def test_validation_order_amount_before_lot(self, market):
        with pytest.raises(InvalidAmount):
            _place(market, 0, lot_number="99999", holding_period=7)

    def test_validation_order_range_before_capacity(self, market):
        _place(market, 6000)
        with pytest.raises(AmountOutOfRange):
            _place(market, 11000)

    def test_validation_order_capacity_before_period(self, market):
        _place(market, 6000)
        with pytest.raises(InsufficientLotCapacity):
            _place(market, 5000, holding_period=7)

    def test_unknown_user(self, market):
        with pytest.raises(UserNotFound):
            _place(market, 5000, user="nobody@example.com")

    def test_inactive_user_cannot_bid(self, market):
        crud.deactivate_user(market, "sarah@example.com")
        with pytest.raises(UserInactive):
            _place(market, 5000, user="sarah@example.com")

    @pytest.mark.parametrize("period,multiplier", [(5, "1.05"), (10, "1.07"), (20, "1.10")])
    def test_multiplier_recorded_for_period(self, market, period, multiplier):
        bid = _place(market, 5000, holding_period=period)
        assert bid.holding_period == period
        assert bid.multiplier == Decimal(multiplier)


class TestIdentifiers:

    def test_collision_triggers_regeneration(self, market, monkeypatch):
        db = market
        taken = _place(db, 5000)
        draws = iter([taken.bid_number, "111111", taken.reference_number, "111111", "222222"])
        monkeypatch.setattr(identifiers, "_random_digits", lambda length: next(draws))

        bid_number, reference_number = identifiers.new_bid_numbers(db)

        assert bid_number == "111111"
        assert reference_number == "222222"

    def test_gives_up_when_space_is_exhausted(self, market, monkeypatch):
        from coinvest.errors import ConcurrencyConflict

        db = market
        taken = _place(db, 5000)
        monkeypatch.setattr(identifiers, "_random_digits", lambda length: taken.bid_number)
        with pytest.raises(ConcurrencyConflict):
            identifiers.new_bid_numbers(db)


class TestBidCreatedEvent:

    def test_event_reaches_approval_inbox(self, market):
        bid = _place(market, 5000)
        pending = inbox.pending()
        assert [e.bid_number for e in pending] == [bid.bid_number]
        assert pending[0].amount == Decimal("5000")
        assert pending[0].seller_bank == "Nedbank"

    def test_no_event_for_rejected_placement(self, market):
        received = []
        bus.subscribe(BidCreated, received.append)
        try:
            with pytest.raises(AmountOutOfRange):
                _place(market, 100)
            _place(market, 5000)
        finally:
            bus.unsubscribe(BidCreated, received.append)
        assert len(received) == 1

    def test_failing_subscriber_does_not_break_placement(self, market):
        def boom(event):
            raise RuntimeError("subscriber down")

        bus.subscribe(BidCreated, boom)
        try:
            bid = _place(market, 5000)
        finally:
            bus.unsubscribe(BidCreated, boom)
        assert crud.get_bid(market, bid.bid_number) is not None
