# affiliate/program.py
"""Affiliate applications, admin review, referral codes and the dashboard."""
import secrets
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Dict, Optional

from sqlalchemy import case, func

from extensions import db
from models import (
    Affiliate,
    AffiliateStatus,
    Commission,
    CommissionStatus,
    PromoCode,
)
from affiliate.config import AffiliateConfig
from errors import (
    ConflictError,
    CooldownActive,
    NotFoundError,
    StateError,
    ValidationError,
)
from logger import affiliate_logger as logger

MAX_COMMISSION_RATE = Decimal("50")


def _utcnow():
    return datetime.now(timezone.utc)


def _as_utc(value):
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def generate_affiliate_code() -> str:
    return AffiliateConfig.CODE_PREFIX + secrets.token_hex(AffiliateConfig.CODE_HEX_LENGTH // 2).upper()


def unique_affiliate_code() -> str:
    for _ in range(AffiliateConfig.CODE_MAX_ATTEMPTS):
        code = generate_affiliate_code()
        if not PromoCode.query.filter_by(code=code).first():
            return code
    raise ConflictError("Failed to generate unique affiliate code")


def _parse_rate(value) -> Decimal:
    try:
        rate = Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError("Invalid commission rate")
    if rate < 0 or rate > MAX_COMMISSION_RATE:
        raise ValidationError("Commission rate must be between 0% and 50%")
    return AffiliateConfig.quantize(rate)


class AffiliateProgram:

    # ---- Applications ----

    @staticmethod
    def get_for_user(user_id: int) -> Optional[Affiliate]:
        return Affiliate.query.filter_by(user_id=user_id).first()

    @staticmethod
    def get_approved_for_user(user_id: int) -> Affiliate:
        affiliate = Affiliate.query.filter_by(
            user_id=user_id, status=AffiliateStatus.APPROVED.value
        ).first()
        if not affiliate:
            raise NotFoundError("Approved affiliate account not found")
        return affiliate

    @staticmethod
    def status_for_user(user_id: int) -> Dict:
        affiliate = AffiliateProgram.get_for_user(user_id)
        if not affiliate:
            return {"has_application": False, "can_apply": True}

        data = affiliate.to_dict()
        data["has_application"] = True
        data["can_apply"] = AffiliateProgram._can_reapply(affiliate)
        return data

    @staticmethod
    def _can_reapply(affiliate: Affiliate, now: Optional[datetime] = None) -> bool:
        if affiliate.status != AffiliateStatus.REJECTED.value or not affiliate.can_reapply:
            return False
        allowed = _as_utc(affiliate.next_allowed_application_date)
        return allowed is None or (now or _utcnow()) >= allowed

    @staticmethod
    def submit_application(user_id: int, data: Dict) -> Affiliate:
        data = data or {}
        content_platforms = data.get("content_platforms")
        audience_info = (data.get("audience_info") or "").strip()
        promotion_strategy = (data.get("promotion_strategy") or "").strip()
        if not content_platforms or not audience_info or not promotion_strategy:
            raise ValidationError("Content platforms, audience info, and promotion strategy are required")

        affiliate = AffiliateProgram.get_for_user(user_id)
        if affiliate:
            if affiliate.status != AffiliateStatus.REJECTED.value:
                raise StateError("You already have an affiliate application")
            if not AffiliateProgram._can_reapply(affiliate):
                allowed = affiliate.next_allowed_application_date
                if allowed and affiliate.can_reapply:
                    raise CooldownActive(f"You can reapply on {allowed.date().isoformat()}")
                raise StateError("Reapplication is not allowed for this account")
        else:
            affiliate = Affiliate(
                user_id=user_id,
                commission_rate=AffiliateConfig.default_rate(),
                payout_threshold=AffiliateConfig.min_payout_threshold(),
            )
            db.session.add(affiliate)

        affiliate.status = AffiliateStatus.PENDING.value
        affiliate.content_platforms = content_platforms
        affiliate.audience_info = audience_info
        affiliate.promotion_strategy = promotion_strategy
        affiliate.portfolio_links = data.get("portfolio_links")
        affiliate.denial_reason = None
        db.session.commit()

        logger.info(f"Affiliate application submitted by user {user_id}")
        return affiliate

    # ---- Admin review ----

    @staticmethod
    def list_affiliates(status: Optional[str] = None):
        query = Affiliate.query
        if status:
            query = query.filter_by(status=status)
        return query.order_by(Affiliate.created_at.desc()).all()

    @staticmethod
    def approve(affiliate_id: int, commission_rate=None, admin_notes: Optional[str] = None) -> Dict:
        rate = _parse_rate(commission_rate) if commission_rate is not None else AffiliateConfig.default_rate()
        try:
            affiliate = db.session.get(Affiliate, affiliate_id)
            if not affiliate:
                raise NotFoundError("Affiliate not found")
            if affiliate.status != AffiliateStatus.PENDING.value:
                raise StateError("Only pending applications can be approved")

            affiliate.status = AffiliateStatus.APPROVED.value
            affiliate.approval_date = _utcnow()
            affiliate.commission_rate = rate
            affiliate.admin_notes = admin_notes

            code = unique_affiliate_code()
            db.session.add(PromoCode(
                code=code,
                name=f"{affiliate.user.name}'s Affiliate Code",
                code_type="affiliate",
                affiliate_id=affiliate.id,
                discount_amount=rate,
                is_percentage=True,
                is_active=True,
            ))
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise

        logger.info(f"Affiliate {affiliate_id} approved at {rate}% with code {code}")
        return {"affiliate_id": affiliate.id, "affiliate_code": code, "commission_rate": float(rate)}

    @staticmethod
    def deny(affiliate_id: int, reason: str, allow_reapplication: bool = True) -> Affiliate:
        if not reason or len(reason.strip()) < 10:
            raise ValidationError("Denial reason must be at least 10 characters long")

        affiliate = db.session.get(Affiliate, affiliate_id)
        if not affiliate:
            raise NotFoundError("Affiliate not found")
        if affiliate.status != AffiliateStatus.PENDING.value:
            raise StateError("Only pending applications can be denied")

        affiliate.status = AffiliateStatus.REJECTED.value
        affiliate.denial_reason = reason.strip()
        affiliate.can_reapply = bool(allow_reapplication)
        affiliate.next_allowed_application_date = (
            _utcnow() + timedelta(days=AffiliateConfig.reapply_days()) if allow_reapplication else None
        )
        db.session.commit()
        logger.info(f"Affiliate {affiliate_id} denied")
        return affiliate

    @staticmethod
    def update_settings(affiliate_id: int, data: Dict) -> Affiliate:
        affiliate = db.session.get(Affiliate, affiliate_id)
        if not affiliate:
            raise NotFoundError("Affiliate not found")

        if data.get("commission_rate") is not None:
            affiliate.commission_rate = _parse_rate(data["commission_rate"])
        if data.get("payout_threshold") is not None:
            try:
                threshold = AffiliateConfig.quantize(Decimal(str(data["payout_threshold"])))
            except (InvalidOperation, TypeError, ValueError):
                raise ValidationError("Invalid payout threshold")
            if threshold < AffiliateConfig.min_payout_threshold():
                raise ValidationError(
                    f"Payout threshold cannot be below £{AffiliateConfig.min_payout_threshold()}"
                )
            affiliate.payout_threshold = threshold
        if data.get("status") is not None:
            if data["status"] not in (AffiliateStatus.APPROVED.value, AffiliateStatus.SUSPENDED.value):
                raise ValidationError("Invalid status. Must be approved or suspended")
            affiliate.status = data["status"]
        db.session.commit()
        return affiliate

    # ---- Codes ----

    @staticmethod
    def regenerate_code(user_id: int, now: Optional[datetime] = None) -> str:
        affiliate = AffiliateProgram.get_approved_for_user(user_id)
        now = now or _utcnow()

        last = _as_utc(affiliate.code_regenerated_at)
        cooldown = timedelta(hours=AffiliateConfig.code_cooldown_hours())
        if last and now - last < cooldown:
            remaining = cooldown - (now - last)
            hours = max(1, int(-(-remaining.total_seconds() // 3600)))
            raise CooldownActive(
                f"Code regeneration is limited to once per day. Try again in {hours} hours."
            )

        try:
            promo = affiliate.promo_code
            new_code = unique_affiliate_code()
            if promo:
                promo.code = new_code
            else:
                db.session.add(PromoCode(
                    code=new_code,
                    name=f"{affiliate.user.name}'s Affiliate Code",
                    code_type="affiliate",
                    affiliate_id=affiliate.id,
                    discount_amount=affiliate.commission_rate,
                    is_percentage=True,
                ))
            affiliate.code_regenerated_at = now
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise

        logger.info(f"Affiliate {affiliate.id} regenerated code")
        return new_code

    # ---- Dashboard ----

    @staticmethod
    def dashboard(user_id: int) -> Dict:
        affiliate = AffiliateProgram.get_approved_for_user(user_id)

        def _count(status):
            return func.count(case((Commission.status == status, 1)))

        def _sum(status):
            return func.coalesce(func.sum(case((Commission.status == status, Commission.amount), else_=0)), 0)

        row = db.session.query(
            func.count(Commission.id),
            _count(CommissionStatus.APPROVED.value),
            _count(CommissionStatus.PAID.value),
            func.coalesce(func.sum(Commission.amount), 0),
            _sum(CommissionStatus.APPROVED.value),
            _sum(CommissionStatus.PAID.value),
        ).filter(Commission.affiliate_id == affiliate.id).one()

        recent = (
            affiliate.commissions.order_by(Commission.created_at.desc()).limit(10).all()
        )
        balance = AffiliateConfig.quantize(affiliate.balance)
        threshold = AffiliateConfig.quantize(
            affiliate.payout_threshold or AffiliateConfig.min_payout_threshold()
        )

        return {
            "affiliate": affiliate.to_dict(),
            "stats": {
                "total_commissions": int(row[0] or 0),
                "approved_commissions": int(row[1] or 0),
                "paid_commissions": int(row[2] or 0),
                "total_earnings": float(AffiliateConfig.quantize(row[3])),
                "available_balance": float(AffiliateConfig.quantize(row[4])),
                "paid_earnings": float(AffiliateConfig.quantize(row[5])),
                "can_request_payout": balance >= threshold,
            },
            "recent_commissions": [c.to_dict() for c in recent],
        }

    @staticmethod
    def analytics() -> Dict:
        """Programme-wide totals for the admin panel."""
        by_status = dict(
            db.session.query(Affiliate.status, func.count(Affiliate.id)).group_by(Affiliate.status).all()
        )
        commission_rows = db.session.query(
            Commission.status,
            func.count(Commission.id),
            func.coalesce(func.sum(Commission.amount), 0),
        ).group_by(Commission.status).all()
        return {
            "affiliates": {status.value: by_status.get(status.value, 0) for status in AffiliateStatus},
            "commissions": {
                status: {"count": count, "amount": float(AffiliateConfig.quantize(amount))}
                for status, count, amount in commission_rows
            },
        }
