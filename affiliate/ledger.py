# affiliate/ledger.py
"""
Commission ledger.

One commission per (affiliate, order). Commissions move
pending -> approved (order paid) -> processing (claimed by a payout)
-> paid, and a rejected payout hands its commissions back to approved.
An affiliate's balance and total earnings are never adjusted
incrementally: both are recomputed from the commission rows.
"""
import re
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Dict, Optional

from sqlalchemy import case, func
from sqlalchemy.exc import IntegrityError

from extensions import db
from models import (
    Affiliate,
    AffiliatePayout,
    AffiliateStatus,
    Commission,
    CommissionStatus,
    Order,
    PaymentStatus,
    PayoutMethod,
    PayoutStatus,
)
from affiliate.config import AffiliateConfig
from errors import (
    BelowMinimumThreshold,
    DuplicateCommission,
    InsufficientBalance,
    NotFoundError,
    StateError,
    ValidationError,
)
from logger import affiliate_logger as logger

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


def _utcnow():
    return datetime.now(timezone.utc)


def _as_utc(value):
    """SQLite hands back naive datetimes; every stored timestamp is UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _parse_amount(amount) -> Decimal:
    try:
        value = AffiliateConfig.quantize(Decimal(str(amount)))
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError("Invalid amount format")
    if value <= 0:
        raise ValidationError("Amount must be greater than zero")
    return value


# ==========================================================
#                  PAYOUT DETAILS
# ==========================================================
def build_payment_info(payment_method: str, details: Dict) -> Dict:
    """Validate payout destination details and keep only what we store."""
    details = details or {}
    if payment_method not in {m.value for m in PayoutMethod}:
        raise ValidationError('Invalid payment method. Must be "stripe" or "bank_transfer"')

    full_name = (details.get("full_name") or "").strip()
    info = {"method": payment_method, "full_name": full_name}

    if payment_method == PayoutMethod.STRIPE.value:
        stripe_email = (details.get("stripe_email") or "").strip()
        if not stripe_email or not full_name:
            raise ValidationError("Stripe email and full name are required for Stripe payouts")
        if not EMAIL_PATTERN.match(stripe_email):
            raise ValidationError("Invalid email address format")
        info["stripe_email"] = stripe_email
    else:
        required = ("account_holder_name", "bank_name", "account_number", "sort_code")
        if not full_name or not all((details.get(key) or "").strip() for key in required):
            raise ValidationError("All bank details are required for bank transfer payouts")
        info.update({
            "account_holder_name": details["account_holder_name"].strip(),
            "bank_name": details["bank_name"].strip(),
            # Only the last four digits are kept
            "account_number": details["account_number"].strip()[-4:],
            "sort_code": details["sort_code"].strip(),
        })
    return info


# ==========================================================
#                  LEDGER
# ==========================================================
class CommissionLedger:

    @staticmethod
    def _existing_commission(affiliate_id: int, order_id: int) -> Optional[Commission]:
        return Commission.query.filter_by(affiliate_id=affiliate_id, order_id=order_id).first()

    @staticmethod
    def create_commission(affiliate_id: int, order_id: int, amount,
                          rate=None, order_total=None, commit: bool = True) -> Commission:
        """
        Record the commission for an order. A second commission for the same
        (affiliate, order) pair raises DuplicateCommission and changes nothing.
        With commit=False the row joins the caller's transaction.
        """
        if not db.session.get(Affiliate, affiliate_id):
            raise NotFoundError(f"Affiliate {affiliate_id} not found")

        existing = CommissionLedger._existing_commission(affiliate_id, order_id)
        if existing:
            raise DuplicateCommission(
                f"Commission already exists for affiliate {affiliate_id} and order {order_id}",
                commission_id=existing.id,
            )

        commission = Commission(
            affiliate_id=affiliate_id,
            order_id=order_id,
            amount=AffiliateConfig.quantize(amount),
            rate=AffiliateConfig.quantize(rate if rate is not None else AffiliateConfig.default_rate()),
            order_total=AffiliateConfig.quantize(order_total),
            status=CommissionStatus.PENDING.value,
        )

        if commit:
            try:
                db.session.add(commission)
                db.session.flush()
                CommissionLedger._recalculate(affiliate_id)
                db.session.commit()
            except IntegrityError:
                db.session.rollback()
                raise DuplicateCommission(
                    f"Commission already exists for affiliate {affiliate_id} and order {order_id}"
                )
            except Exception:
                db.session.rollback()
                raise
        else:
            try:
                with db.session.begin_nested():
                    db.session.add(commission)
            except IntegrityError:
                raise DuplicateCommission(
                    f"Commission already exists for affiliate {affiliate_id} and order {order_id}"
                )
            CommissionLedger._recalculate(affiliate_id)

        logger.info(
            f"Commission {commission.id} created: affiliate={affiliate_id} "
            f"order={order_id} amount={commission.amount}"
        )
        return commission

    @staticmethod
    def approve_commission(order_id: int) -> int:
        """
        Approve the pending commissions of a paid order and refresh the
        affected balances in the same unit of work. Safe to call repeatedly.
        """
        order = db.session.get(Order, order_id)
        if not order:
            raise NotFoundError(f"Order {order_id} not found")
        return CommissionLedger._approve_where(Commission.order_id == order_id)

    @staticmethod
    def approve_paid_commissions() -> int:
        """Sweep every paid order for commissions still pending."""
        return CommissionLedger._approve_where(None)

    @staticmethod
    def _approve_where(criterion) -> int:
        paid_orders = db.session.query(Order.id).filter(
            Order.payment_status == PaymentStatus.PAID.value
        )
        query = Commission.query.filter(
            Commission.status == CommissionStatus.PENDING.value,
            Commission.order_id.in_(paid_orders),
        )
        if criterion is not None:
            query = query.filter(criterion)

        try:
            pending = query.all()
            if not pending:
                return 0

            now = _utcnow()
            affiliate_ids = set()
            for commission in pending:
                commission.status = CommissionStatus.APPROVED.value
                commission.approved_at = now
                affiliate_ids.add(commission.affiliate_id)

            db.session.flush()
            for affiliate_id in affiliate_ids:
                CommissionLedger._recalculate(affiliate_id)
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise

        logger.info(f"Approved {len(pending)} commission(s) for affiliates {sorted(affiliate_ids)}")
        return len(pending)

    @staticmethod
    def recalculate_balance(affiliate_id: int) -> Dict[str, Decimal]:
        """Recompute balance and total earnings from the commission rows."""
        try:
            result = CommissionLedger._recalculate(affiliate_id)
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise
        return result

    @staticmethod
    def recalculate_all_balances() -> int:
        affiliate_ids = [row.id for row in db.session.query(Affiliate.id).all()]
        try:
            for affiliate_id in affiliate_ids:
                CommissionLedger._recalculate(affiliate_id)
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise
        logger.info(f"Recalculated balances for {len(affiliate_ids)} affiliate(s)")
        return len(affiliate_ids)

    @staticmethod
    def _recalculate(affiliate_id: int) -> Dict[str, Decimal]:
        affiliate = db.session.get(Affiliate, affiliate_id)
        if not affiliate:
            raise NotFoundError(f"Affiliate {affiliate_id} not found")

        db.session.flush()
        approved_sum, total_sum = db.session.query(
            func.coalesce(func.sum(case(
                (Commission.status == CommissionStatus.APPROVED.value, Commission.amount),
                else_=0,
            )), 0),
            func.coalesce(func.sum(Commission.amount), 0),
        ).filter(Commission.affiliate_id == affiliate_id).one()

        affiliate.balance = AffiliateConfig.quantize(approved_sum)
        affiliate.total_earnings = AffiliateConfig.quantize(total_sum)
        return {"balance": affiliate.balance, "total_earnings": affiliate.total_earnings}

    # ---- Payout eligibility ----

    @staticmethod
    def is_payout_eligible(commission: Commission, now: Optional[datetime] = None) -> bool:
        if commission.status != CommissionStatus.APPROVED.value:
            return False
        created_at = _as_utc(commission.created_at)
        if created_at is None:
            return False
        now = _as_utc(now) or _utcnow()
        return now - created_at >= timedelta(days=AffiliateConfig.holding_days())

    @staticmethod
    def request_payout(affiliate_id: int, amount, payment_method: str,
                       payment_details: Optional[Dict] = None,
                       now: Optional[datetime] = None) -> AffiliatePayout:
        """
        Create a pending payout. The affiliate row is locked for the whole
        unit of work so concurrent requests serialize. Eligible commissions
        are claimed oldest first while they fit within the requested amount.
        """
        requested = _parse_amount(amount)
        payment_info = build_payment_info(payment_method, payment_details)

        try:
            affiliate = (
                Affiliate.query.filter_by(id=affiliate_id)
                .with_for_update()
                .first()
            )
            if not affiliate:
                raise NotFoundError(f"Affiliate {affiliate_id} not found")
            if affiliate.status != AffiliateStatus.APPROVED.value:
                raise StateError("Approved affiliate account not found")

            threshold = AffiliateConfig.quantize(
                affiliate.payout_threshold or AffiliateConfig.min_payout_threshold()
            )
            if requested < threshold:
                raise BelowMinimumThreshold(
                    f"Minimum payout threshold is £{threshold}",
                    threshold=float(threshold),
                    requested=float(requested),
                )

            balance = CommissionLedger._recalculate(affiliate.id)["balance"]
            if requested > balance:
                raise InsufficientBalance(
                    f"Requested £{requested} exceeds available balance £{balance}",
                    balance=float(balance),
                    requested=float(requested),
                )

            candidates = (
                Commission.query.filter(
                    Commission.affiliate_id == affiliate.id,
                    Commission.status == CommissionStatus.APPROVED.value,
                    Commission.payout_id.is_(None),
                )
                .order_by(Commission.created_at.asc(), Commission.id.asc())
                .with_for_update()
                .all()
            )

            claimed, claimed_total = [], Decimal("0.00")
            for commission in candidates:
                if not CommissionLedger.is_payout_eligible(commission, now):
                    continue
                if claimed_total + commission.amount > requested:
                    break
                claimed.append(commission)
                claimed_total += commission.amount

            if not claimed or claimed_total < threshold:
                raise StateError(
                    f"No eligible commissions. Commissions must be "
                    f"{AffiliateConfig.holding_days()} days old to be eligible for payout.",
                    eligible_amount=float(claimed_total),
                )

            payout = AffiliatePayout(
                affiliate_id=affiliate.id,
                requested_amount=requested,
                amount=AffiliateConfig.quantize(claimed_total),
                status=PayoutStatus.PENDING.value,
                payment_method=payment_method,
                payment_info=payment_info,
            )
            db.session.add(payout)
            db.session.flush()

            for commission in claimed:
                commission.status = CommissionStatus.PROCESSING.value
                commission.payout_id = payout.id

            CommissionLedger._recalculate(affiliate.id)
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise

        logger.info(
            f"Payout {payout.id} requested: affiliate={affiliate_id} requested={requested} "
            f"claimed={payout.amount} commissions={len(claimed)}"
        )
        return payout

    @staticmethod
    def process_payout(payout_id: int, action: str, admin_id: Optional[int] = None,
                       notes: Optional[str] = None,
                       transaction_id: Optional[str] = None) -> AffiliatePayout:
        """Settle (approve) or return (reject) a pending payout."""
        if action not in ("approve", "reject"):
            raise ValidationError("Action must be either approve or reject")

        try:
            payout = (
                AffiliatePayout.query.filter_by(id=payout_id)
                .with_for_update()
                .first()
            )
            if not payout:
                raise NotFoundError("Payout request not found")
            if payout.status != PayoutStatus.PENDING.value:
                raise StateError("Only pending payouts can be processed")

            affiliate = (
                Affiliate.query.filter_by(id=payout.affiliate_id)
                .with_for_update()
                .first()
            )
            now = _utcnow()
            payout.processed_by = admin_id

            if action == "approve":
                payout.status = PayoutStatus.PAID.value
                payout.paid_date = now
                payout.transaction_id = transaction_id
                payout.processing_notes = notes
                for commission in payout.commissions:
                    commission.status = CommissionStatus.PAID.value
                    commission.paid_date = now
                affiliate.total_paid = AffiliateConfig.quantize(
                    (affiliate.total_paid or 0) + payout.amount
                )
                affiliate.last_payout_date = now
            else:
                payout.status = PayoutStatus.REJECTED.value
                payout.processing_notes = notes or "Payout rejected by admin"
                for commission in list(payout.commissions):
                    commission.status = CommissionStatus.APPROVED.value
                    commission.payout_id = None

            CommissionLedger._recalculate(affiliate.id)
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise

        logger.info(f"Payout {payout_id} {payout.status} by admin {admin_id}")
        return payout
