from datetime import timedelta
from decimal import Decimal

import pytest

from extensions import db
from models import Affiliate, PromoCode
from affiliate.program import AffiliateProgram, generate_affiliate_code
from errors import CooldownActive, NotFoundError, StateError, ValidationError
from conftest import days_ago, utcnow

APPLICATION = {
    "content_platforms": ["youtube", "instagram"],
    "audience_info": "Wedding planners and their couples",
    "promotion_strategy": "Pinned link under every wedding vlog",
}


def test_generated_codes_have_prefix_and_hex_suffix():
    code = generate_affiliate_code()
    assert code.startswith("SONG")
    assert len(code) == 12
    int(code[4:], 16)


def test_new_user_can_apply(make_user):
    user = make_user()
    assert AffiliateProgram.status_for_user(user.id) == {"has_application": False, "can_apply": True}

    affiliate = AffiliateProgram.submit_application(user.id, APPLICATION)

    assert affiliate.status == "pending"
    assert affiliate.commission_rate == Decimal("10.00")
    status = AffiliateProgram.status_for_user(user.id)
    assert status["has_application"] is True
    assert status["can_apply"] is False


def test_application_requires_fields(make_user):
    with pytest.raises(ValidationError):
        AffiliateProgram.submit_application(make_user().id, {"audience_info": "x"})


def test_duplicate_application(make_user):
    user = make_user()
    AffiliateProgram.submit_application(user.id, APPLICATION)
    with pytest.raises(StateError):
        AffiliateProgram.submit_application(user.id, APPLICATION)


def test_approval_issues_affiliate_code(make_user):
    user = make_user(name="Dana")
    affiliate = AffiliateProgram.submit_application(user.id, APPLICATION)

    result = AffiliateProgram.approve(affiliate.id, commission_rate="15")

    assert result["commission_rate"] == 15.0
    promo = PromoCode.query.filter_by(affiliate_id=affiliate.id).one()
    assert promo.code == result["affiliate_code"]
    assert promo.code_type == "affiliate"
    assert promo.discount_amount == Decimal("15.00")
    refreshed = db.session.get(Affiliate, affiliate.id)
    assert refreshed.status == "approved"
    assert refreshed.approval_date is not None


@pytest.mark.parametrize("rate", ["-1", "50.01", "lots"])
def test_approval_rejects_bad_rates(make_affiliate, rate):
    affiliate = make_affiliate(status="pending")
    with pytest.raises(ValidationError):
        AffiliateProgram.approve(affiliate.id, commission_rate=rate)
    assert db.session.get(Affiliate, affiliate.id).status == "pending"


def test_only_pending_applications_are_reviewed(make_affiliate):
    affiliate = make_affiliate(status="approved")
    with pytest.raises(StateError):
        AffiliateProgram.approve(affiliate.id)
    with pytest.raises(StateError):
        AffiliateProgram.deny(affiliate.id, "Not a good fit for now")
    with pytest.raises(NotFoundError):
        AffiliateProgram.approve(999)


def test_denial_sets_reapply_window(make_affiliate):
    affiliate = make_affiliate(status="pending")
    with pytest.raises(ValidationError):
        AffiliateProgram.deny(affiliate.id, "too short")

    denied = AffiliateProgram.deny(affiliate.id, "Audience too small at the moment")

    assert denied.status == "rejected"
    assert denied.can_reapply is True
    assert denied.next_allowed_application_date is not None
    assert AffiliateProgram.status_for_user(affiliate.user_id)["can_apply"] is False


def test_reapply_during_cooldown(make_affiliate):
    affiliate = make_affiliate(status="pending")
    AffiliateProgram.deny(affiliate.id, "Audience too small at the moment")

    with pytest.raises(CooldownActive):
        AffiliateProgram.submit_application(affiliate.user_id, APPLICATION)


def test_reapply_after_cooldown(make_affiliate):
    affiliate = make_affiliate(status="pending")
    AffiliateProgram.deny(affiliate.id, "Audience too small at the moment")
    affiliate = db.session.get(Affiliate, affiliate.id)
    affiliate.next_allowed_application_date = days_ago(1)
    db.session.commit()

    reapplied = AffiliateProgram.submit_application(affiliate.user_id, APPLICATION)
    assert reapplied.id == affiliate.id
    assert reapplied.status == "pending"
    assert reapplied.denial_reason is None


def test_denial_without_reapplication(make_affiliate):
    affiliate = make_affiliate(status="pending")
    AffiliateProgram.deny(affiliate.id, "Policy violation on previous account", allow_reapplication=False)

    with pytest.raises(StateError) as excinfo:
        AffiliateProgram.submit_application(affiliate.user_id, APPLICATION)
    assert not isinstance(excinfo.value, CooldownActive)


def test_update_settings(make_affiliate):
    affiliate = make_affiliate()
    AffiliateProgram.update_settings(affiliate.id, {"commission_rate": "12.5", "payout_threshold": "25"})

    refreshed = db.session.get(Affiliate, affiliate.id)
    assert refreshed.commission_rate == Decimal("12.50")
    assert refreshed.payout_threshold == Decimal("25.00")

    with pytest.raises(ValidationError):
        AffiliateProgram.update_settings(affiliate.id, {"payout_threshold": "5"})
    with pytest.raises(ValidationError):
        AffiliateProgram.update_settings(affiliate.id, {"status": "pending"})

    AffiliateProgram.update_settings(affiliate.id, {"status": "suspended"})
    assert db.session.get(Affiliate, affiliate.id).status == "suspended"


def test_regenerate_code_replaces_existing(make_affiliate):
    affiliate = make_affiliate(code="SONG00000000")

    new_code = AffiliateProgram.regenerate_code(affiliate.user_id)

    assert new_code != "SONG00000000"
    assert PromoCode.query.filter_by(affiliate_id=affiliate.id).one().code == new_code


def test_regenerate_code_cooldown(make_affiliate):
    affiliate = make_affiliate(code="SONG00000001")
    now = utcnow()
    AffiliateProgram.regenerate_code(affiliate.user_id, now=now)

    with pytest.raises(CooldownActive) as excinfo:
        AffiliateProgram.regenerate_code(affiliate.user_id, now=now + timedelta(hours=2))
    assert excinfo.value.status_code == 429

    AffiliateProgram.regenerate_code(affiliate.user_id, now=now + timedelta(hours=24))


def test_regenerate_requires_approved_affiliate(make_affiliate):
    affiliate = make_affiliate(status="pending")
    with pytest.raises(NotFoundError):
        AffiliateProgram.regenerate_code(affiliate.user_id)


def test_dashboard_totals(make_affiliate, make_commission):
    affiliate = make_affiliate()
    make_commission(affiliate, "5.00", status="approved")
    make_commission(affiliate, "10.00", status="approved")
    make_commission(affiliate, "3.00", status="pending")
    make_commission(affiliate, "4.00", status="paid")
    affiliate.balance = Decimal("15.00")
    db.session.commit()

    stats = AffiliateProgram.dashboard(affiliate.user_id)["stats"]

    assert stats["total_commissions"] == 4
    assert stats["approved_commissions"] == 2
    assert stats["paid_commissions"] == 1
    assert stats["total_earnings"] == 22.0
    assert stats["available_balance"] == 15.0
    assert stats["paid_earnings"] == 4.0
    assert stats["can_request_payout"] is True


def test_analytics_counts_by_status(make_affiliate, make_commission):
    approved = make_affiliate()
    make_affiliate(status="pending")
    make_commission(approved, "6.00", status="approved")

    analytics = AffiliateProgram.analytics()

    assert analytics["affiliates"]["approved"] == 1
    assert analytics["affiliates"]["pending"] == 1
    assert analytics["affiliates"]["suspended"] == 0
    assert analytics["commissions"]["approved"] == {"count": 1, "amount": 6.0}
