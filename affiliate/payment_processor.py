# affiliate/payment_processor.py
from decimal import Decimal

from extensions import db
from models import Order, WebhookEvent
from orders.order_service import OrderService
from affiliate.ledger import CommissionLedger
from errors import SongSculptorsError, ValidationError
from logger import payments_logger as logger

PAYMENT_SUCCEEDED = "payment_intent.succeeded"
PAYMENT_FAILED = "payment_intent.payment_failed"
DISPUTE_CREATED = "charge.dispute.created"


def handle_payment_succeeded(order_id, payment_id=None, amount=None):
    """
    Mark the order paid and approve its commissions. Reusable for webhooks
    and for operator status updates.
    """
    order = OrderService.mark_paid(order_id, payment_id)

    if amount is not None and Decimal(str(amount)) != Decimal(str(order.total_price)):
        logger.warning(
            f"Order {order.order_number}: paid amount {amount} differs from total {order.total_price}"
        )

    approved = CommissionLedger.approve_commission(order.id)
    logger.info(f"Order {order.order_number} paid ({payment_id}); {approved} commission(s) approved")
    return order, approved


def handle_payment_failed(order_id, payment_id=None):
    order = OrderService.mark_payment_failed(order_id, payment_id)
    logger.info(f"Order {order.order_number} payment failed ({payment_id})")
    return order


def process_payment_event(event, provider="stripe"):
    """
    Apply a verified payment event once. Returns (success, message).
    Replayed event ids are acknowledged without reprocessing.
    """
    if not event.event_id:
        raise ValidationError("Webhook event id is missing")

    record = WebhookEvent.query.filter_by(event_id=event.event_id).first()
    if record and record.processed and record.status == "success":
        logger.info(f"Webhook event {event.event_id} already processed")
        return True, "Already processed"

    if not record:
        record = WebhookEvent(
            provider=provider,
            event_id=event.event_id,
            event_type=event.event_type,
            payload=event.payload,
            reference=event.payment_id,
        )
        db.session.add(record)
        db.session.commit()

    try:
        message = _dispatch(event)
        success = True
    except SongSculptorsError as error:
        logger.error(f"Webhook event {event.event_id} ({event.event_type}) failed: {error.message}")
        message, success = error.message, False

    record = WebhookEvent.query.filter_by(event_id=event.event_id).first()
    record.mark_processed(success=success, remarks=message[:255])
    db.session.commit()
    return success, message


def _dispatch(event):
    if event.event_type == PAYMENT_SUCCEEDED:
        if event.order_id is None or not db.session.get(Order, event.order_id):
            raise ValidationError(f"Unknown order for payment {event.payment_id}")
        order, approved = handle_payment_succeeded(event.order_id, event.payment_id, event.amount)
        return f"Order {order.order_number} paid; {approved} commission(s) approved"

    if event.event_type == PAYMENT_FAILED:
        if event.order_id is None or not db.session.get(Order, event.order_id):
            raise ValidationError(f"Unknown order for payment {event.payment_id}")
        order = handle_payment_failed(event.order_id, event.payment_id)
        return f"Order {order.order_number} marked failed"

    if event.event_type == DISPUTE_CREATED:
        logger.warning(f"Dispute opened for payment {event.payment_id} (order {event.order_id})")
        return "Dispute logged"

    logger.info(f"Unhandled webhook event type {event.event_type}")
    return f"Ignored {event.event_type}"
