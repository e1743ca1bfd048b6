"""Shared fixtures: a fresh SQLite database per test plus a small seeded market."""

from datetime import datetime, timezone
from decimal import Decimal

import pytest

from coinvest import approval_gate, bid_engine, crud, database
from coinvest.approval_gate import inbox
from coinvest.core.config import settings
from coinvest.locks import entity_locks

T0 = datetime(2026, 7, 15, 10, 0, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def isolated_settings(monkeypatch):
    monkeypatch.setattr(settings, "SETTLEMENT_ENABLED", False)
    monkeypatch.setattr(settings, "ADMIN_USER_IDS", None)
    monkeypatch.setattr(settings, "WELCOME_BONUS", Decimal("1000"))
    monkeypatch.setattr(
        settings,
        "HOLDING_PERIOD_MULTIPLIERS",
        {5: Decimal("1.05"), 10: Decimal("1.07"), 20: Decimal("1.10")},
    )
    yield


@pytest.fixture
def database_url(tmp_path):
    return f"sqlite:///{tmp_path / 'coinvest.db'}"


@pytest.fixture
def session_factory(database_url):
    database.configure(database_url)
    database.init_db()
    entity_locks.clear()
    inbox.clear()
    yield database.get_sessionmaker()
    inbox.clear()
    database.configure(None)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def market(db):
    """Nedbank backing lot 13878 (10145 coins, bids 5000-10000) and two registered users."""
    crud.create_bank_account(
        db,
        bank_name="Nedbank",
        account_holder="Openpeer Holdings",
        account_number="19384756291",
        branch_code="198765",
        balance=Decimal("3200000"),
        coin_balance=Decimal("650000"),
    )
    crud.create_bank_account(
        db,
        bank_name="FNB RSA",
        account_holder="Openpeer Digital SA",
        account_number="62847291734",
        branch_code="250655",
        balance=Decimal("2500000"),
        coin_balance=Decimal("500000"),
    )
    crud.publish_lot(
        db,
        lot_number="13878",
        bank_name="Nedbank",
        coin_amount=Decimal("10145"),
        going_price=Decimal("10145"),
        bid_range_min=Decimal("5000"),
        bid_range_max=Decimal("10000"),
    )
    crud.publish_lot(
        db,
        lot_number="11528",
        bank_name="FNB RSA",
        coin_amount=Decimal("20845"),
        going_price=Decimal("20845"),
        bid_range_min=Decimal("100"),
        bid_range_max=Decimal("15000"),
    )
    crud.register_user(db, email="john@example.com", full_name="John Smith", phone="+27831234567")
    crud.register_user(db, email="sarah@example.com", full_name="Sarah Johnson", phone="+27829876543")
    return db


@pytest.fixture
def place_claim(db):
    """Place a bid and claim its payment; returns (bid_number, approval_id)."""

    def _place_claim(amount, *, lot_number="13878", holding_period=10, user="john@example.com"):
        bid = bid_engine.place_bid(
            db, user_email=user, lot_number=lot_number, amount=amount, holding_period=holding_period, now=T0
        )
        approval = approval_gate.claim_payment(
            db, bid_number=bid.bid_number, reference_number=bid.reference_number, payer_email=user, now=T0
        )
        return bid.bid_number, approval.id

    return _place_claim


@pytest.fixture
def approved_bid(db, place_claim):
    """Place, claim and approve a bid at T0; returns its bid number."""

    def _approved_bid(amount, **kwargs):
        bid_number, approval_id = place_claim(amount, **kwargs)
        approval_gate.decide(db, approval_id=approval_id, decision="approve", admin_id="admin-1", now=T0)
        return bid_number

    return _approved_bid
