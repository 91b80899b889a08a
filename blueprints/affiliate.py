from flask import Blueprint, g, jsonify, request

from models import AffiliatePayout
from affiliate.ledger import CommissionLedger
from affiliate.program import AffiliateProgram
from orders.promo import PromoCodeHelper
from blueprints.auth import user_required


bp = Blueprint("affiliate", __name__, url_prefix="/api/affiliate")


@bp.route("/status", methods=["GET"])
@user_required
def affiliate_status():
    return jsonify({"success": True, "data": AffiliateProgram.status_for_user(g.user.id)}), 200


@bp.route("/apply", methods=["POST"])
@user_required
def apply():
    affiliate = AffiliateProgram.submit_application(g.user.id, request.get_json(silent=True))
    return jsonify({
        "success": True,
        "message": "Affiliate application submitted successfully",
        "data": {"status": affiliate.status},
    }), 201


@bp.route("/dashboard", methods=["GET"])
@user_required
def dashboard():
    return jsonify({"success": True, "data": AffiliateProgram.dashboard(g.user.id)}), 200


@bp.route("/regenerate-code", methods=["POST"])
@user_required
def regenerate_code():
    new_code = AffiliateProgram.regenerate_code(g.user.id)
    return jsonify({
        "success": True,
        "message": "Affiliate code regenerated successfully",
        "data": {"new_code": new_code},
    }), 200


# ---- Payouts ----

@bp.route("/payouts", methods=["POST"])
@user_required
def request_payout():
    data = request.get_json(silent=True) or {}
    affiliate = AffiliateProgram.get_approved_for_user(g.user.id)
    amount = data.get("amount")
    if amount is None:
        amount = affiliate.balance

    payout = CommissionLedger.request_payout(
        affiliate.id,
        amount,
        data.get("payment_method"),
        data,
    )
    return jsonify({
        "success": True,
        "message": f"Payout request for £{payout.amount:.2f} submitted successfully",
        "data": payout.to_dict(),
    }), 201


@bp.route("/payouts", methods=["GET"])
@user_required
def list_payouts():
    affiliate = AffiliateProgram.get_approved_for_user(g.user.id)
    payouts = (
        AffiliatePayout.query.filter_by(affiliate_id=affiliate.id)
        .order_by(AffiliatePayout.created_at.desc())
        .all()
    )
    return jsonify({"success": True, "data": [p.to_dict() for p in payouts]}), 200


# ---- Checkout codes ----

@bp.route("/validate-code", methods=["POST"])
def validate_code():
    data = request.get_json(silent=True) or {}
    user = getattr(g, "user", None)
    result = PromoCodeHelper.validate(
        data.get("code"),
        data.get("order_total"),
        user.id if user else None,
    )
    return jsonify({"success": True, "data": PromoCodeHelper.describe(result)}), 200
