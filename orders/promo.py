# orders/promo.py
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Dict, Optional

from extensions import db
from models import AffiliateStatus, PromoCode, PromoCodeUsage
from errors import NotFoundError, ValidationError
from logger import orders_logger as logger

CENT = Decimal("0.01")


def _as_utc(value):
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _to_decimal(value, field):
    try:
        return Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError(f"Invalid {field}")


class PromoCodeHelper:
    """Checkout-time validation and bookkeeping for discount and affiliate codes."""

    @staticmethod
    def calculate_discount(promo: PromoCode, order_total) -> Decimal:
        total = Decimal(str(order_total or 0))
        value = Decimal(str(promo.discount_amount or 0))
        if promo.is_percentage:
            discount = (total * value / Decimal("100")).quantize(CENT, rounding=ROUND_HALF_UP)
        else:
            discount = min(value, total)
        return max(Decimal("0.00"), discount).quantize(CENT)

    @staticmethod
    def validate(code: str, order_total=None, user_id: Optional[int] = None,
                 now: Optional[datetime] = None) -> Dict:
        """
        Check a code against its active window, usage limits, minimum order
        value and affiliate status. Raises ValidationError with a
        customer-facing message when the code cannot be used.
        """
        if not code or not code.strip():
            raise ValidationError("Promo code is required")

        promo = PromoCode.query.filter_by(code=code.strip().upper(), is_active=True).first()
        if not promo:
            raise NotFoundError("Invalid or inactive promo code")

        now = now or datetime.now(timezone.utc)
        if promo.expires_at and now > _as_utc(promo.expires_at):
            raise ValidationError("This promo code has expired")
        if promo.starts_at and now < _as_utc(promo.starts_at):
            raise ValidationError("This promo code is not yet active")

        if promo.max_uses and promo.current_uses >= promo.max_uses:
            raise ValidationError("This promo code has reached its usage limit")

        if user_id and promo.max_uses_per_user:
            used = PromoCodeUsage.query.filter_by(code_id=promo.id, user_id=user_id).count()
            if used >= promo.max_uses_per_user:
                raise ValidationError("You have already used this promo code the maximum number of times")

        total = None
        if order_total is not None:
            total = _to_decimal(order_total, "order total")
            minimum = Decimal(str(promo.min_order_value or 0))
            if minimum > 0 and total < minimum:
                raise ValidationError(f"Minimum order value for this code is £{minimum}")

        affiliate = promo.affiliate
        if promo.code_type == "affiliate":
            if not affiliate or affiliate.status != AffiliateStatus.APPROVED.value:
                raise ValidationError("Affiliate code is not currently available")
            if user_id and affiliate.user_id == user_id:
                raise ValidationError("You cannot use your own affiliate code")

        discount = PromoCodeHelper.calculate_discount(promo, total) if total is not None else Decimal("0.00")
        return {
            "promo_code": promo,
            "discount": discount,
            "affiliate_id": promo.affiliate_id if promo.code_type == "affiliate" else None,
            "affiliate_name": affiliate.user.name if affiliate and affiliate.user else None,
        }

    @staticmethod
    def record_usage(promo: PromoCode, user_id: int, order_id: int, discount) -> PromoCodeUsage:
        """Add a usage row and bump the counter. The caller commits."""
        usage = PromoCodeUsage(
            code_id=promo.id,
            user_id=user_id,
            order_id=order_id,
            discount_applied=discount,
        )
        db.session.add(usage)
        promo.current_uses = (promo.current_uses or 0) + 1
        return usage

    @staticmethod
    def describe(result: Dict) -> Dict:
        promo = result["promo_code"]
        name = result.get("affiliate_name")
        return {
            "code": promo.code,
            "name": promo.name,
            "type": promo.code_type,
            "discount_type": "percentage" if promo.is_percentage else "fixed",
            "discount_amount": float(promo.discount_amount or 0),
            "calculated_discount": float(result["discount"]),
            "affiliate_name": name,
            "message": f"Get a discount with {name}'s code!" if name else "Valid promo code applied!",
        }

    # ---- Admin management ----

    @staticmethod
    def create_discount_code(data: Dict) -> PromoCode:
        code = (data.get("code") or "").strip().upper()
        if not code:
            raise ValidationError("Code is required")
        if data.get("discount_amount") is None:
            raise ValidationError("Discount amount is required")
        if PromoCode.query.filter_by(code=code).first():
            raise ValidationError("Promo code already exists")

        promo = PromoCode(
            code=code,
            name=data.get("name") or code,
            code_type="discount",
            discount_amount=_to_decimal(data["discount_amount"], "discount amount"),
            is_percentage=bool(data.get("is_percentage", True)),
            min_order_value=_to_decimal(data.get("min_order_value") or 0, "minimum order value"),
            max_uses=data.get("max_uses"),
            max_uses_per_user=int(data.get("max_uses_per_user") or 1),
            starts_at=PromoCodeHelper._parse_datetime(data.get("starts_at")),
            expires_at=PromoCodeHelper._parse_datetime(data.get("expires_at")),
            is_active=True,
        )
        db.session.add(promo)
        db.session.commit()
        logger.info(f"Discount code {code} created")
        return promo

    @staticmethod
    def update_promo_code(promo_id: int, data: Dict) -> PromoCode:
        promo = db.session.get(PromoCode, promo_id)
        if not promo:
            raise NotFoundError("Promo code not found")

        if "name" in data:
            promo.name = data["name"]
        if "discount_amount" in data:
            promo.discount_amount = _to_decimal(data["discount_amount"], "discount amount")
        if "is_percentage" in data:
            promo.is_percentage = bool(data["is_percentage"])
        if "min_order_value" in data:
            promo.min_order_value = _to_decimal(data["min_order_value"] or 0, "minimum order value")
        if "max_uses" in data:
            promo.max_uses = data["max_uses"]
        if "max_uses_per_user" in data:
            promo.max_uses_per_user = int(data["max_uses_per_user"] or 1)
        if "is_active" in data:
            promo.is_active = bool(data["is_active"])
        if "expires_at" in data:
            promo.expires_at = PromoCodeHelper._parse_datetime(data["expires_at"])
        db.session.commit()
        return promo

    @staticmethod
    def _parse_datetime(value):
        if not value:
            return None
        try:
            parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            raise ValidationError(f"Invalid date: {value}")
        return _as_utc(parsed)
