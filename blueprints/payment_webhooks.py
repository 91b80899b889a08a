from flask import Blueprint, current_app, jsonify, request

from affiliate.payment_processor import process_payment_event
from errors import ValidationError
from logger import payments_logger as logger

bp = Blueprint('payment_webhooks', __name__)


@bp.route('/api/webhooks/payments', methods=['POST'])
def payment_webhook():
    """
    Payment provider webhook. The signature is verified before anything is
    read; processed events are acknowledged with 200 so the provider stops
    retrying, and bad signatures get 400.
    """
    gateway = current_app.extensions["payment_gateway"]
    raw_body = request.get_data()
    signature = request.headers.get("Stripe-Signature", "")

    try:
        event = gateway.parse_event(raw_body, signature)
    except ValidationError as error:
        logger.warning(f"Webhook rejected: {error.message}")
        raise

    logger.info(f"Webhook received: {event.event_type} ({event.event_id})")
    success, message = process_payment_event(event, provider=gateway.provider)
    return jsonify({"received": True, "processed": success, "message": message}), 200
