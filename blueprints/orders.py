from flask import Blueprint, current_app, g, jsonify, request

from orders.lifecycle import stage_timeline
from orders.order_service import OrderService
from blueprints.auth import user_required
from errors import ValidationError
from logger import orders_logger as logger


bp = Blueprint("orders", __name__, url_prefix="/api/orders")


def _json_body():
    data = request.get_json(silent=True)
    if data is None:
        raise ValidationError("Invalid or missing JSON body")
    return data


@bp.route("", methods=["POST"])
@user_required
def create_order():
    order = OrderService.create_order(g.user, _json_body())
    return jsonify({
        "success": True,
        "message": "Order created successfully",
        "data": order.to_dict(include_brief=True),
    }), 201


@bp.route("", methods=["GET"])
@user_required
def list_orders():
    orders = OrderService.get_user_orders(g.user.id)
    return jsonify({"success": True, "data": [order.to_dict() for order in orders]}), 200


@bp.route("/<int:order_id>", methods=["GET"])
@user_required
def get_order(order_id):
    order = OrderService.get_order(order_id, g.user.id)
    data = order.to_dict(include_brief=True)
    data["timeline"] = stage_timeline(data["stage_index"])
    return jsonify({"success": True, "data": data}), 200


@bp.route("/<int:order_id>/checkout", methods=["POST"])
@user_required
def checkout(order_id):
    order = OrderService.get_order(order_id, g.user.id)
    if order.is_paid:
        return jsonify({"success": False, "message": "Order is already paid"}), 400

    base_url = current_app.config.get("APP_BASE_URL", "").rstrip("/")
    gateway = current_app.extensions["payment_gateway"]
    ok, data, message = gateway.create_checkout(
        order,
        success_url=f"{base_url}/orders/{order.id}?checkout=success",
        cancel_url=f"{base_url}/orders/{order.id}?checkout=cancelled",
    )
    if not ok:
        logger.error(f"Checkout failed for order {order.order_number}: {message}")
        return jsonify({"success": False, "message": message}), 502
    return jsonify({"success": True, "data": data}), 200


# ---- Customer reviews ----

@bp.route("/<int:order_id>/lyrics/approval", methods=["POST"])
@user_required
def approve_lyrics(order_id):
    data = _json_body()
    order = OrderService.approve_lyrics(
        order_id, g.user.id, bool(data.get("approved")), data.get("feedback")
    )
    message = "Lyrics approved" if data.get("approved") else "Lyrics change request submitted"
    return jsonify({"success": True, "message": message, "data": order.to_dict()}), 200


@bp.route("/<int:order_id>/song/approval", methods=["POST"])
@user_required
def approve_song(order_id):
    data = _json_body()
    order = OrderService.approve_song(
        order_id,
        g.user.id,
        bool(data.get("approved")),
        data.get("feedback"),
        data.get("selected_version_id"),
    )
    message = "Song approved" if data.get("approved") else "Song change request submitted"
    return jsonify({"success": True, "message": message, "data": order.to_dict()}), 200


# ---- Song versions ----

@bp.route("/<int:order_id>/songs/<int:song_id>/select", methods=["POST"])
@user_required
def select_song(order_id, song_id):
    song = OrderService.select_song_version(order_id, song_id, g.user.id)
    return jsonify({"success": True, "message": "Song version selected", "data": song.to_dict()}), 200


@bp.route("/<int:order_id>/songs/<int:song_id>/download", methods=["GET"])
@user_required
def download_song(order_id, song_id):
    result = OrderService.download_song(order_id, song_id, g.user.id)
    return jsonify({"success": True, "data": result}), 200


@bp.route("/<int:order_id>/revisions", methods=["GET"])
@user_required
def revision_history(order_id):
    revisions = OrderService.get_revision_history(order_id, g.user.id)
    return jsonify({"success": True, "data": [r.to_dict() for r in revisions]}), 200
