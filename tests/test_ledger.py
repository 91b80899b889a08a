from datetime import timedelta
from decimal import Decimal

import pytest

from extensions import db
from models import Affiliate, AffiliatePayout, Commission, Order
from affiliate.config import AffiliateConfig
from affiliate.ledger import CommissionLedger, build_payment_info
from errors import (
    BelowMinimumThreshold,
    ConflictError,
    DuplicateCommission,
    InsufficientBalance,
    NotFoundError,
    StateError,
    ValidationError,
)
from conftest import days_ago, utcnow

STRIPE_DETAILS = {"full_name": "Ada Lovelace", "stripe_email": "ada@example.com"}


def _affiliate(affiliate_id):
    return db.session.get(Affiliate, affiliate_id)


# ---- Commission calculation ----

def test_calculate_commission_rounds_to_pennies():
    assert AffiliateConfig.calculate_commission(Decimal("99.99"), Decimal("10")) == Decimal("10.00")
    assert AffiliateConfig.calculate_commission(Decimal("149.95"), Decimal("12.5")) == Decimal("18.74")
    assert AffiliateConfig.calculate_commission(Decimal("-5"), Decimal("10")) == Decimal("0.00")


def test_commission_basis_defaults_to_post_discount(app):
    assert AffiliateConfig.commission_basis(Decimal("90.00"), Decimal("10.00")) == Decimal("90.00")
    app.config["AFFILIATE_COMMISSION_BASIS"] = "pre_discount"
    assert AffiliateConfig.commission_basis(Decimal("90.00"), Decimal("10.00")) == Decimal("100.00")


# ---- Creation ----

def test_create_commission_starts_pending(make_affiliate, make_order):
    affiliate = make_affiliate()
    order = make_order()

    commission = CommissionLedger.create_commission(affiliate.id, order.id, Decimal("12.50"))

    assert commission.status == "pending"
    assert commission.rate == Decimal("10.00")
    assert _affiliate(affiliate.id).total_earnings == Decimal("12.50")
    assert _affiliate(affiliate.id).balance == Decimal("0.00")


def test_duplicate_commission_is_a_conflict_and_changes_nothing(make_affiliate, make_order):
    affiliate = make_affiliate()
    order = make_order()
    CommissionLedger.create_commission(affiliate.id, order.id, Decimal("5.00"))

    with pytest.raises(ConflictError) as excinfo:
        CommissionLedger.create_commission(affiliate.id, order.id, Decimal("7.00"))

    assert isinstance(excinfo.value, DuplicateCommission)
    rows = Commission.query.filter_by(affiliate_id=affiliate.id, order_id=order.id).all()
    assert len(rows) == 1
    assert rows[0].amount == Decimal("5.00")
    assert _affiliate(affiliate.id).total_earnings == Decimal("5.00")


def test_same_order_different_affiliates_is_allowed(make_affiliate, make_order):
    first, second = make_affiliate(), make_affiliate()
    order = make_order()
    CommissionLedger.create_commission(first.id, order.id, Decimal("5.00"))
    CommissionLedger.create_commission(second.id, order.id, Decimal("5.00"))
    assert Commission.query.filter_by(order_id=order.id).count() == 2


def test_unknown_affiliate_leaves_no_commission_behind(make_order):
    order = make_order()

    with pytest.raises(NotFoundError):
        CommissionLedger.create_commission(424242, order.id, Decimal("5.00"))
    db.session.commit()

    assert Commission.query.count() == 0


def test_storage_constraint_reports_duplicate(make_affiliate, make_order, monkeypatch):
    affiliate = make_affiliate()
    order = make_order()
    CommissionLedger.create_commission(affiliate.id, order.id, Decimal("5.00"))
    monkeypatch.setattr(CommissionLedger, "_existing_commission", staticmethod(lambda a, o: None))

    with pytest.raises(DuplicateCommission):
        CommissionLedger.create_commission(affiliate.id, order.id, Decimal("7.00"))

    assert Commission.query.count() == 1
    assert Commission.query.one().amount == Decimal("5.00")
    assert _affiliate(affiliate.id).total_earnings == Decimal("5.00")


def test_storage_constraint_inside_callers_transaction(make_affiliate, make_order, make_user, monkeypatch):
    affiliate = make_affiliate()
    order = make_order()
    CommissionLedger.create_commission(affiliate.id, order.id, Decimal("5.00"))
    monkeypatch.setattr(CommissionLedger, "_existing_commission", staticmethod(lambda a, o: None))

    customer = make_user()
    other = Order(order_number="ORD-999999-001", user_id=customer.id, package_type="signature",
                  original_price=Decimal("50.00"), total_price=Decimal("50.00"))
    db.session.add(other)
    db.session.flush()

    with pytest.raises(DuplicateCommission):
        CommissionLedger.create_commission(affiliate.id, order.id, Decimal("7.00"), commit=False)
    db.session.commit()

    assert db.session.get(Order, other.id) is not None
    assert Commission.query.count() == 1
    assert Commission.query.one().amount == Decimal("5.00")
    assert _affiliate(affiliate.id).total_earnings == Decimal("5.00")


# ---- Balances ----

def test_balance_counts_approved_and_earnings_count_everything(make_affiliate, make_commission):
    affiliate = make_affiliate()
    make_commission(affiliate, "5.00", status="approved")
    make_commission(affiliate, "10.00", status="approved")
    make_commission(affiliate, "3.00", status="pending")

    result = CommissionLedger.recalculate_balance(affiliate.id)

    assert result["balance"] == Decimal("15.00")
    assert result["total_earnings"] == Decimal("18.00")
    refreshed = _affiliate(affiliate.id)
    assert refreshed.balance == Decimal("15.00")
    assert refreshed.total_earnings == Decimal("18.00")


def test_recalculate_overwrites_a_drifted_balance(make_affiliate, make_commission):
    affiliate = make_affiliate()
    make_commission(affiliate, "8.00", status="approved")
    affiliate.balance = Decimal("999.00")
    db.session.commit()

    CommissionLedger.recalculate_balance(affiliate.id)
    assert _affiliate(affiliate.id).balance == Decimal("8.00")


def test_recalculate_unknown_affiliate(app):
    with pytest.raises(NotFoundError):
        CommissionLedger.recalculate_balance(424242)


# ---- Approval ----

def test_approve_commission_requires_paid_order(make_affiliate, make_order):
    affiliate = make_affiliate()
    order = make_order(payment_status="pending")
    CommissionLedger.create_commission(affiliate.id, order.id, Decimal("9.00"))

    assert CommissionLedger.approve_commission(order.id) == 0
    assert Commission.query.one().status == "pending"

    order.payment_status = "paid"
    db.session.commit()

    assert CommissionLedger.approve_commission(order.id) == 1
    commission = Commission.query.one()
    assert commission.status == "approved"
    assert commission.approved_at is not None
    assert _affiliate(affiliate.id).balance == Decimal("9.00")


def test_approve_commission_is_idempotent(make_affiliate, make_order):
    affiliate = make_affiliate()
    order = make_order(payment_status="paid")
    CommissionLedger.create_commission(affiliate.id, order.id, Decimal("9.00"))

    assert CommissionLedger.approve_commission(order.id) == 1
    assert CommissionLedger.approve_commission(order.id) == 0
    assert _affiliate(affiliate.id).balance == Decimal("9.00")


def test_approve_commission_unknown_order(app):
    with pytest.raises(NotFoundError):
        CommissionLedger.approve_commission(98765)


def test_approve_paid_commissions_sweeps_all_orders(make_affiliate, make_order):
    affiliate = make_affiliate()
    paid_a = make_order(payment_status="paid")
    paid_b = make_order(payment_status="paid")
    unpaid = make_order(payment_status="pending")
    for order in (paid_a, paid_b, unpaid):
        CommissionLedger.create_commission(affiliate.id, order.id, Decimal("4.00"))

    assert CommissionLedger.approve_paid_commissions() == 2
    assert _affiliate(affiliate.id).balance == Decimal("8.00")
    assert _affiliate(affiliate.id).total_earnings == Decimal("12.00")


# ---- Eligibility ----

def test_payout_eligibility_needs_approval_and_holding_period(make_affiliate, make_commission):
    affiliate = make_affiliate()
    old = make_commission(affiliate, "5.00", status="approved", created_at=days_ago(15))
    young = make_commission(affiliate, "5.00", status="approved", created_at=days_ago(3))
    pending = make_commission(affiliate, "5.00", status="pending", created_at=days_ago(30))

    assert CommissionLedger.is_payout_eligible(old) is True
    assert CommissionLedger.is_payout_eligible(young) is False
    assert CommissionLedger.is_payout_eligible(pending) is False


def test_payout_eligibility_boundary_is_inclusive(make_affiliate, make_commission):
    affiliate = make_affiliate()
    created = days_ago(20)
    commission = make_commission(affiliate, "5.00", created_at=created)

    assert CommissionLedger.is_payout_eligible(commission, now=created + timedelta(days=14))
    assert not CommissionLedger.is_payout_eligible(
        commission, now=created + timedelta(days=14) - timedelta(seconds=1)
    )


# ---- Payout requests ----

def test_payout_below_threshold(make_affiliate, make_commission):
    affiliate = make_affiliate()
    make_commission(affiliate, "10.00", status="approved")
    CommissionLedger.recalculate_balance(affiliate.id)

    with pytest.raises(BelowMinimumThreshold):
        CommissionLedger.request_payout(affiliate.id, "5.00", "stripe", STRIPE_DETAILS)
    assert AffiliatePayout.query.count() == 0


def test_payout_above_balance(make_affiliate, make_commission):
    affiliate = make_affiliate()
    make_commission(affiliate, "12.00", status="approved")

    with pytest.raises(InsufficientBalance):
        CommissionLedger.request_payout(affiliate.id, "20.00", "stripe", STRIPE_DETAILS)


def test_payout_claims_oldest_eligible_commissions(make_affiliate, make_commission):
    affiliate = make_affiliate()
    oldest = make_commission(affiliate, "6.00", created_at=days_ago(40))
    middle = make_commission(affiliate, "6.00", created_at=days_ago(30))
    newest = make_commission(affiliate, "6.00", created_at=days_ago(20))

    payout = CommissionLedger.request_payout(affiliate.id, "12.00", "stripe", STRIPE_DETAILS)

    assert payout.status == "pending"
    assert payout.amount == Decimal("12.00")
    assert payout.requested_amount == Decimal("12.00")
    assert payout.payment_info["stripe_email"] == "ada@example.com"
    claimed = {c.id for c in Commission.query.filter_by(payout_id=payout.id)}
    assert claimed == {oldest.id, middle.id}
    assert db.session.get(Commission, newest.id).status == "approved"
    assert db.session.get(Commission, oldest.id).status == "processing"
    assert _affiliate(affiliate.id).balance == Decimal("6.00")
    assert _affiliate(affiliate.id).total_earnings == Decimal("18.00")


def test_payout_skips_commissions_inside_holding_period(make_affiliate, make_commission):
    affiliate = make_affiliate()
    make_commission(affiliate, "25.00", created_at=days_ago(2))

    with pytest.raises(StateError):
        CommissionLedger.request_payout(affiliate.id, "20.00", "stripe", STRIPE_DETAILS)

    assert AffiliatePayout.query.count() == 0
    assert Commission.query.one().status == "approved"


def test_payout_for_unapproved_affiliate(make_affiliate):
    affiliate = make_affiliate(status="pending")
    with pytest.raises(StateError):
        CommissionLedger.request_payout(affiliate.id, "20.00", "stripe", STRIPE_DETAILS)


def test_payout_rejects_bad_amounts(make_affiliate):
    affiliate = make_affiliate()
    with pytest.raises(ValidationError):
        CommissionLedger.request_payout(affiliate.id, "abc", "stripe", STRIPE_DETAILS)
    with pytest.raises(ValidationError):
        CommissionLedger.request_payout(affiliate.id, "-1", "stripe", STRIPE_DETAILS)


def test_bank_transfer_details_keep_last_four_digits():
    info = build_payment_info("bank_transfer", {
        "full_name": "Ada Lovelace",
        "account_holder_name": "A Lovelace",
        "bank_name": "Analytical Bank",
        "account_number": "12345678",
        "sort_code": "12-34-56",
    })
    assert info["account_number"] == "5678"
    assert info["method"] == "bank_transfer"


@pytest.mark.parametrize("method, details", [
    ("paypal", STRIPE_DETAILS),
    ("stripe", {"full_name": "Ada"}),
    ("stripe", {"full_name": "Ada", "stripe_email": "not-an-email"}),
    ("bank_transfer", {"full_name": "Ada", "bank_name": "X"}),
])
def test_invalid_payment_details(method, details):
    with pytest.raises(ValidationError):
        build_payment_info(method, details)


# ---- Processing ----

def _pending_payout(make_affiliate, make_commission):
    affiliate = make_affiliate()
    make_commission(affiliate, "15.00", created_at=days_ago(20))
    payout = CommissionLedger.request_payout(affiliate.id, "15.00", "stripe", STRIPE_DETAILS)
    return affiliate, payout


def test_approving_payout_pays_commissions(make_affiliate, make_commission, make_user):
    admin = make_user(role="admin")
    affiliate, payout = _pending_payout(make_affiliate, make_commission)

    processed = CommissionLedger.process_payout(payout.id, "approve", admin.id, "sent", "tr_123")

    assert processed.status == "paid"
    assert processed.transaction_id == "tr_123"
    assert processed.paid_date is not None
    assert Commission.query.one().status == "paid"
    refreshed = _affiliate(affiliate.id)
    assert refreshed.total_paid == Decimal("15.00")
    assert refreshed.balance == Decimal("0.00")
    assert refreshed.total_earnings == Decimal("15.00")


def test_rejecting_payout_returns_commissions(make_affiliate, make_commission, make_user):
    admin = make_user(role="admin")
    affiliate, payout = _pending_payout(make_affiliate, make_commission)

    processed = CommissionLedger.process_payout(payout.id, "reject", admin.id)

    assert processed.status == "rejected"
    commission = Commission.query.one()
    assert commission.status == "approved"
    assert commission.payout_id is None
    assert _affiliate(affiliate.id).balance == Decimal("15.00")


def test_processed_payout_cannot_be_processed_again(make_affiliate, make_commission):
    _, payout = _pending_payout(make_affiliate, make_commission)
    CommissionLedger.process_payout(payout.id, "approve")

    with pytest.raises(StateError):
        CommissionLedger.process_payout(payout.id, "reject")


def test_process_payout_validates_action_and_id(make_affiliate, make_commission):
    with pytest.raises(ValidationError):
        CommissionLedger.process_payout(1, "maybe")
    with pytest.raises(NotFoundError):
        CommissionLedger.process_payout(5555, "approve")


def test_second_payout_cannot_reclaim_processing_commissions(make_affiliate, make_commission):
    affiliate, _ = _pending_payout(make_affiliate, make_commission)
    make_commission(affiliate, "4.00", created_at=days_ago(20))

    with pytest.raises(BelowMinimumThreshold):
        CommissionLedger.request_payout(affiliate.id, "4.00", "stripe", STRIPE_DETAILS)
    with pytest.raises(InsufficientBalance):
        CommissionLedger.request_payout(affiliate.id, "15.00", "stripe", STRIPE_DETAILS)


def test_now_helper_is_timezone_aware():
    assert utcnow().tzinfo is not None
