# gateway.py: payment provider client, held on app.extensions["payment_gateway"]
import hashlib
import hmac
import json
import time
from collections import namedtuple
from decimal import Decimal, InvalidOperation

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from errors import ValidationError
from logger import payments_logger as logger

PaymentEvent = namedtuple(
    "PaymentEvent",
    ["event_id", "event_type", "order_id", "payment_id", "amount", "payload"],
)


class PaymentGateway:
    """Signature checks for incoming webhooks and checkout creation over HTTP."""

    provider = "stripe"

    def __init__(self, api_key=None, webhook_secret="", base_url="https://api.stripe.com/v1",
                 timeout=30, tolerance_seconds=300):
        self.api_key = api_key
        self.webhook_secret = webhook_secret or ""
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.tolerance_seconds = tolerance_seconds
        self._session = None

    @classmethod
    def from_config(cls, config):
        return cls(
            api_key=config.get("PAYMENT_API_KEY"),
            webhook_secret=config.get("PAYMENT_WEBHOOK_SECRET", ""),
            base_url=config.get("PAYMENT_API_BASE_URL", "https://api.stripe.com/v1"),
            timeout=config.get("REQUEST_TIMEOUT_SECONDS", 30),
            tolerance_seconds=config.get("PAYMENT_WEBHOOK_TOLERANCE_SECONDS", 300),
        )

    # ---- HTTP ----

    @property
    def session(self):
        if self._session is None:
            session = requests.Session()
            retry_strategy = Retry(
                total=3,
                backoff_factor=1,
                status_forcelist=[429, 500, 502, 503, 504],
                allowed_methods=["GET", "POST"],
            )
            adapter = HTTPAdapter(max_retries=retry_strategy)
            session.mount("http://", adapter)
            session.mount("https://", adapter)
            self._session = session
        return self._session

    def create_checkout(self, order, success_url, cancel_url):
        """Start a hosted checkout for an order. Returns (success, data, message)."""
        if not self.api_key:
            return False, None, "Payment provider is not configured"

        amount_minor = int((Decimal(str(order.total_price)) * 100).to_integral_value())
        payload = {
            "mode": "payment",
            "success_url": success_url,
            "cancel_url": cancel_url,
            "client_reference_id": order.order_number,
            "line_items[0][quantity]": 1,
            "line_items[0][price_data][currency]": "gbp",
            "line_items[0][price_data][unit_amount]": amount_minor,
            "line_items[0][price_data][product_data][name]": f"{order.package_type.title()} song",
            "payment_intent_data[metadata][order_id]": order.id,
            "metadata[order_id]": order.id,
        }
        try:
            response = self.session.post(
                f"{self.base_url}/checkout/sessions",
                data=payload,
                timeout=self.timeout,
                headers={"Authorization": f"Bearer {self.api_key}"},
            )
        except requests.exceptions.Timeout:
            logger.error(f"Checkout for order {order.order_number} timed out")
            return False, None, f"Payment API timeout after {self.timeout} seconds"
        except requests.exceptions.ConnectionError:
            logger.error(f"Checkout for order {order.order_number}: connection error")
            return False, None, "Payment API connection error"

        if response.status_code == 200:
            data = response.json()
            logger.info(f"Checkout session {data.get('id')} created for order {order.order_number}")
            return True, {"session_id": data.get("id"), "url": data.get("url")}, "Checkout session created"

        logger.error(f"Checkout API error {response.status_code}: {response.text}")
        return False, None, f"API error: {response.status_code}"

    # ---- Webhooks ----

    def sign(self, raw_body: bytes, timestamp=None) -> str:
        timestamp = int(timestamp if timestamp is not None else time.time())
        signed = f"{timestamp}.".encode() + raw_body
        digest = hmac.new(self.webhook_secret.encode(), signed, hashlib.sha256).hexdigest()
        return f"t={timestamp},v1={digest}"

    def verify_signature(self, raw_body: bytes, signature_header: str, now=None) -> bool:
        if not self.webhook_secret or not signature_header:
            return False

        parts = {}
        for item in signature_header.split(","):
            key, _, value = item.strip().partition("=")
            parts.setdefault(key, []).append(value)

        try:
            timestamp = int(parts.get("t", [""])[0])
        except ValueError:
            return False

        now = int(now if now is not None else time.time())
        if abs(now - timestamp) > self.tolerance_seconds:
            return False

        expected = self.sign(raw_body, timestamp).split("v1=", 1)[1]
        return any(hmac.compare_digest(expected, candidate) for candidate in parts.get("v1", []))

    def parse_event(self, raw_body: bytes, signature_header: str) -> PaymentEvent:
        if not self.verify_signature(raw_body, signature_header):
            raise ValidationError("Invalid webhook signature")

        try:
            payload = json.loads(raw_body)
        except ValueError:
            raise ValidationError("Webhook body is not valid JSON")

        obj = (payload.get("data") or {}).get("object") or {}
        metadata = obj.get("metadata") or {}
        order_id = metadata.get("order_id")
        amount = obj.get("amount_received", obj.get("amount"))

        try:
            order_id = int(order_id) if order_id not in (None, "") else None
        except (TypeError, ValueError):
            raise ValidationError(f"Invalid order reference in webhook: {order_id}")
        try:
            # Provider amounts are in minor units
            amount = (Decimal(str(amount)) / 100).quantize(Decimal("0.01")) if amount is not None else None
        except InvalidOperation:
            raise ValidationError(f"Invalid amount in webhook: {amount}")

        return PaymentEvent(
            event_id=payload.get("id"),
            event_type=payload.get("type"),
            order_id=order_id,
            payment_id=obj.get("payment_intent") or obj.get("id"),
            amount=amount,
            payload=payload,
        )
