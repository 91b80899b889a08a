#======================================================================================
#
# Admin API: order operations, affiliate review, promo codes and payouts
#
#=======================================================================================
from functools import wraps

from flask import Blueprint, abort, g, jsonify, request

from extensions import db
from models import AffiliatePayout, AuditLog, PromoCode
from orders.order_service import OrderService
from orders.promo import PromoCodeHelper
from affiliate.ledger import CommissionLedger
from affiliate.program import AffiliateProgram
from blueprints.auth import current_user_or_abort
from errors import ValidationError
from logger import app_logger as logger


def admin_required(f):
    """
    Restrict a route to admins.
    - 401 without a session user.
    - 403 when the user's role is not admin.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        user = current_user_or_abort()
        if user.role != "admin":
            abort(403)
        g.user = user
        return f(*args, **kwargs)

    return decorated_function


def _audit(action):
    db.session.add(AuditLog(actor_id=g.user.id, action=action, ip_address=request.remote_addr))
    db.session.commit()


def _json_body():
    data = request.get_json(silent=True)
    if data is None:
        raise ValidationError("Invalid or missing JSON body")
    return data


admin_bp = Blueprint('admin', __name__, url_prefix='/api/admin')


# ---------------------------------------------------------------------
# ORDERS
# ---------------------------------------------------------------------
@admin_bp.route("/orders", methods=["GET"])
@admin_required
def list_orders():
    page = request.args.get("page", 1, type=int)
    per_page = min(request.args.get("per_page", 20, type=int), 100)
    pagination = OrderService.list_orders(request.args.get("status"), page, per_page)
    return jsonify({
        "success": True,
        "data": [order.to_dict() for order in pagination.items],
        "pagination": {"page": page, "per_page": per_page, "total": pagination.total},
    }), 200


@admin_bp.route("/orders/<int:order_id>", methods=["GET"])
@admin_required
def order_details(order_id):
    order = OrderService.get_order(order_id)
    data = order.to_dict(include_brief=True)
    data["customer"] = order.user.to_dict() if order.user else None
    return jsonify({"success": True, "data": data}), 200


@admin_bp.route("/orders/<int:order_id>/status", methods=["PUT"])
@admin_required
def update_order_status(order_id):
    data = _json_body()
    order = OrderService.update_status(
        order_id,
        data.get("status"),
        payment_id=data.get("payment_id"),
        payment_status=data.get("payment_status"),
        lyrics_approved=bool(data.get("lyrics_approved")),
    )
    _audit(f"order {order.order_number} status -> {order.status}")
    return jsonify({"success": True, "message": "Order status updated successfully", "data": order.to_dict()}), 200


@admin_bp.route("/orders/<int:order_id>/lyrics", methods=["PUT"])
@admin_required
def update_order_lyrics(order_id):
    data = _json_body()
    order = OrderService.update_lyrics(order_id, data.get("lyrics"), data.get("status"))
    return jsonify({"success": True, "message": "Lyrics updated successfully", "data": order.to_dict()}), 200


@admin_bp.route("/orders/<int:order_id>/songs", methods=["POST"])
@admin_required
def upload_song_version(order_id):
    data = _json_body()
    song = OrderService.add_song_version(order_id, data.get("file_path"), data.get("title"))
    return jsonify({"success": True, "message": "Song version uploaded successfully", "data": song.to_dict()}), 201


@admin_bp.route("/orders/<int:order_id>/songs/<int:song_id>", methods=["DELETE"])
@admin_required
def delete_song_version(order_id, song_id):
    OrderService.delete_song_version(order_id, song_id)
    return jsonify({"success": True, "message": "Song version deleted successfully"}), 200


@admin_bp.route("/orders/<int:order_id>/revisions", methods=["GET"])
@admin_required
def order_revision_history(order_id):
    revisions = OrderService.get_revision_history(order_id)
    return jsonify({"success": True, "data": [r.to_dict() for r in revisions]}), 200


@admin_bp.route("/orders/<int:order_id>/revisions", methods=["POST"])
@admin_required
def add_revision_note(order_id):
    data = _json_body()
    revision = OrderService.add_revision_note(order_id, g.user.id, data.get("comment"))
    return jsonify({"success": True, "data": revision.to_dict()}), 201


# ---------------------------------------------------------------------
# AFFILIATES
# ---------------------------------------------------------------------
@admin_bp.route("/affiliates", methods=["GET"])
@admin_required
def list_affiliates():
    affiliates = AffiliateProgram.list_affiliates(request.args.get("status"))
    return jsonify({"success": True, "data": [a.to_dict() for a in affiliates]}), 200


@admin_bp.route("/affiliates/<int:affiliate_id>/approve", methods=["POST"])
@admin_required
def approve_affiliate(affiliate_id):
    data = request.get_json(silent=True) or {}
    result = AffiliateProgram.approve(affiliate_id, data.get("commission_rate"), data.get("admin_notes"))
    _audit(f"affiliate {affiliate_id} approved")
    return jsonify({
        "success": True,
        "message": f"Affiliate application approved successfully. Code: {result['affiliate_code']}",
        "data": result,
    }), 200


@admin_bp.route("/affiliates/<int:affiliate_id>/deny", methods=["POST"])
@admin_required
def deny_affiliate(affiliate_id):
    data = _json_body()
    affiliate = AffiliateProgram.deny(
        affiliate_id, data.get("denial_reason"), data.get("allow_reapplication", True)
    )
    _audit(f"affiliate {affiliate_id} denied")
    return jsonify({"success": True, "message": "Affiliate application denied", "data": affiliate.to_dict()}), 200


@admin_bp.route("/affiliates/<int:affiliate_id>", methods=["PUT"])
@admin_required
def update_affiliate_settings(affiliate_id):
    affiliate = AffiliateProgram.update_settings(affiliate_id, _json_body())
    return jsonify({"success": True, "data": affiliate.to_dict()}), 200


@admin_bp.route("/affiliates/analytics", methods=["GET"])
@admin_required
def affiliate_analytics():
    return jsonify({"success": True, "data": AffiliateProgram.analytics()}), 200


@admin_bp.route("/affiliates/sync", methods=["POST"])
@admin_required
def sync_affiliate_balances():
    approved = CommissionLedger.approve_paid_commissions()
    synced = CommissionLedger.recalculate_all_balances()
    logger.info(f"Admin {g.user.id} synced affiliate balances")
    return jsonify({"success": True, "data": {"approved_commissions": approved, "affiliates_synced": synced}}), 200


# ---------------------------------------------------------------------
# PROMO CODES
# ---------------------------------------------------------------------
@admin_bp.route("/promo-codes", methods=["GET"])
@admin_required
def list_promo_codes():
    query = PromoCode.query
    code_type = request.args.get("type")
    if code_type:
        query = query.filter_by(code_type=code_type)
    codes = query.order_by(PromoCode.created_at.desc()).all()
    return jsonify({"success": True, "data": [c.to_dict() for c in codes]}), 200


@admin_bp.route("/promo-codes", methods=["POST"])
@admin_required
def create_discount_code():
    promo = PromoCodeHelper.create_discount_code(_json_body())
    return jsonify({"success": True, "data": promo.to_dict()}), 201


@admin_bp.route("/promo-codes/<int:promo_id>", methods=["PUT"])
@admin_required
def update_promo_code(promo_id):
    promo = PromoCodeHelper.update_promo_code(promo_id, _json_body())
    return jsonify({"success": True, "data": promo.to_dict()}), 200


# ---------------------------------------------------------------------
# PAYOUTS
# ---------------------------------------------------------------------
@admin_bp.route("/payouts", methods=["GET"])
@admin_required
def list_payout_requests():
    query = AffiliatePayout.query
    status = request.args.get("status")
    if status:
        query = query.filter_by(status=status)
    payouts = query.order_by(AffiliatePayout.created_at.desc()).all()
    return jsonify({"success": True, "data": [p.to_dict() for p in payouts]}), 200


@admin_bp.route("/payouts/<int:payout_id>/process", methods=["POST"])
@admin_required
def process_payout(payout_id):
    data = _json_body()
    action = data.get("action")
    payout = CommissionLedger.process_payout(
        payout_id,
        action,
        admin_id=g.user.id,
        notes=data.get("processing_notes"),
        transaction_id=data.get("transaction_id"),
    )
    _audit(f"payout {payout_id} {payout.status}")
    return jsonify({
        "success": True,
        "message": f"Payout {'approved' if action == 'approve' else 'rejected'} successfully",
        "data": payout.to_dict(),
    }), 200
