# orders/order_service.py
import os
import secrets
import time
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Dict, List, Optional

from flask import current_app

from extensions import db
from models import (
    Affiliate,
    AffiliateStatus,
    Order,
    OrderAddon,
    OrderRevision,
    PackageType,
    PaymentStatus,
    RevisionType,
    SongVersion,
)
from orders.lifecycle import (
    LEGACY_READY_FOR_REVIEW,
    OrderStatus,
    normalize_status,
    resolve_legacy_status,
    workflow_stage_for_status,
)
from orders.promo import PromoCodeHelper
from affiliate.config import AffiliateConfig
from affiliate.ledger import CommissionLedger
from errors import (
    ConflictError,
    NotFoundError,
    OrderNumberExhausted,
    StateError,
    ValidationError,
)
from logger import orders_logger as logger

# Frontend package names -> stored package types
PACKAGE_MAP = {
    "basic": PackageType.ESSENTIAL.value,
    "deluxe": PackageType.SIGNATURE.value,
    "premium": PackageType.MASTERPIECE.value,
    "essential": PackageType.ESSENTIAL.value,
    "signature": PackageType.SIGNATURE.value,
    "masterpiece": PackageType.MASTERPIECE.value,
}
DEFAULT_PACKAGE = PackageType.SIGNATURE.value

BRIEF_FIELDS = (
    "song_purpose", "recipient_name", "emotion", "lyrics", "song_theme",
    "personal_story", "music_style", "additional_notes",
)


def _utcnow():
    return datetime.now(timezone.utc)


def _to_price(value, field="total price") -> Decimal:
    try:
        price = Decimal(str(value)).quantize(Decimal("0.01"))
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError(f"Invalid {field}")
    if price < 0:
        raise ValidationError(f"{field.capitalize()} cannot be negative")
    return price


def _candidate_order_number() -> str:
    timestamp = str(int(time.time() * 1000))[-6:]
    return f"ORD-{timestamp}-{secrets.randbelow(1000):03d}"


# ==========================================================
#                  ORDER NUMBERS
# ==========================================================
def generate_order_number(max_attempts: Optional[int] = None) -> str:
    """Unique ORD-<timestamp>-<random> number, retried a bounded number of times."""
    if max_attempts is None:
        max_attempts = current_app.config.get("ORDER_NUMBER_MAX_ATTEMPTS", 5)

    for attempt in range(1, max_attempts + 1):
        candidate = _candidate_order_number()
        taken = db.session.query(Order.id).filter_by(order_number=candidate).first()
        if not taken:
            return candidate
        logger.warning(f"Order number collision on {candidate} (attempt {attempt}/{max_attempts})")

    raise OrderNumberExhausted(f"Could not allocate a unique order number after {max_attempts} attempts")


# ==========================================================
#                  ORDER SERVICE
# ==========================================================
class OrderService:

    # ---- Creation ----

    @staticmethod
    def create_order(user, data: Dict) -> Order:
        """
        Create an order with its addons, promo usage and pending affiliate
        commission in a single transaction.
        """
        if not data:
            raise ValidationError("Invalid or missing JSON body")
        if data.get("total_price") is None:
            raise ValidationError("Total price is required")

        original_price = _to_price(data.get("total_price"))
        package_type = PACKAGE_MAP.get(str(data.get("package_type") or "").lower(), DEFAULT_PACKAGE)

        addons = data.get("addons") or []
        for addon in addons:
            if not addon.get("type") or addon.get("price") is None:
                raise ValidationError("Each addon needs a type and a price")

        try:
            promo_result = None
            discount = Decimal("0.00")
            promo_code = (data.get("promo_code") or "").strip()
            if promo_code:
                promo_result = PromoCodeHelper.validate(promo_code, original_price, user.id)
                discount = promo_result["discount"]

            affiliate = None
            if promo_result and promo_result["affiliate_id"]:
                affiliate = db.session.get(Affiliate, promo_result["affiliate_id"])
                if affiliate.user_id == user.id:
                    raise ValidationError("You cannot use your own affiliate code")

            final_price = max(Decimal("0.00"), original_price - discount)

            order = Order(
                order_number=generate_order_number(),
                user_id=user.id,
                package_type=package_type,
                original_price=original_price,
                total_price=final_price,
                status=OrderStatus.PENDING.value,
                workflow_stage=workflow_stage_for_status(OrderStatus.PENDING.value),
                payment_status=PaymentStatus.PENDING.value,
                used_promo_code=promo_result["promo_code"].code if promo_result else None,
                promo_discount_amount=discount,
                referring_affiliate_id=affiliate.id if affiliate else None,
                provide_lyrics=bool(data.get("provide_lyrics")),
                show_in_gallery=bool(data.get("show_in_gallery")),
                **{field: data.get(field) for field in BRIEF_FIELDS},
            )
            db.session.add(order)
            db.session.flush()

            for addon in addons:
                db.session.add(OrderAddon(
                    order_id=order.id,
                    addon_type=addon["type"],
                    price=_to_price(addon["price"], "addon price"),
                ))

            if promo_result:
                PromoCodeHelper.record_usage(promo_result["promo_code"], user.id, order.id, discount)

            if affiliate and affiliate.status == AffiliateStatus.APPROVED.value:
                basis = AffiliateConfig.commission_basis(final_price, discount)
                CommissionLedger.create_commission(
                    affiliate_id=affiliate.id,
                    order_id=order.id,
                    amount=AffiliateConfig.calculate_commission(basis, affiliate.commission_rate),
                    rate=affiliate.commission_rate,
                    order_total=basis,
                    commit=False,
                )

            db.session.commit()
        except Exception:
            db.session.rollback()
            raise

        logger.info(
            f"Order {order.order_number} created for user {user.id}: "
            f"package={package_type} total={final_price} promo={order.used_promo_code}"
        )
        return order

    # ---- Queries ----

    @staticmethod
    def get_user_orders(user_id: int) -> List[Order]:
        return Order.query.filter_by(user_id=user_id).order_by(Order.created_at.desc()).all()

    @staticmethod
    def get_order(order_id: int, user_id: Optional[int] = None, lock: bool = False) -> Order:
        """Fetch an order; a user_id restricts it to that customer's orders."""
        query = Order.query.filter_by(id=order_id)
        if user_id is not None:
            query = query.filter_by(user_id=user_id)
        if lock:
            query = query.with_for_update()
        order = query.first()
        if not order:
            raise NotFoundError("Order not found")
        return order

    @staticmethod
    def list_orders(status: Optional[str] = None, page: int = 1, per_page: int = 20):
        query = Order.query
        if status:
            query = query.filter(Order.status == normalize_status(status))
        return query.order_by(Order.created_at.desc()).paginate(
            page=page, per_page=per_page, error_out=False
        )

    # ---- Operator updates ----

    @staticmethod
    def _set_status(order: Order, status: OrderStatus):
        order.status = status.value
        order.workflow_stage = workflow_stage_for_status(status.value)

    @staticmethod
    def update_status(order_id: int, status: str, payment_id: Optional[str] = None,
                      payment_status: Optional[str] = None, lyrics_approved: bool = False) -> Order:
        new_status = OrderStatus.parse(status)
        try:
            order = OrderService.get_order(order_id, lock=True)
            OrderService._set_status(order, new_status)
            if new_status == OrderStatus.SONG_PRODUCTION or lyrics_approved:
                order.lyrics_approved = True
            if payment_id:
                order.payment_id = payment_id

            became_paid = False
            if payment_status in ("paid", "completed"):
                became_paid = not order.is_paid
                order.payment_status = PaymentStatus.PAID.value
            elif payment_status == "failed":
                order.payment_status = PaymentStatus.FAILED.value
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise

        logger.info(f"Order {order.order_number} status -> {order.status} (stage {order.workflow_stage})")
        if order.is_paid:
            approved = CommissionLedger.approve_commission(order.id)
            if became_paid and approved:
                logger.info(f"Order {order.order_number}: {approved} commission(s) approved")
        return order

    @staticmethod
    def mark_paid(order_id: int, payment_id: Optional[str] = None) -> Order:
        try:
            order = OrderService.get_order(order_id, lock=True)
            order.payment_status = PaymentStatus.PAID.value
            if payment_id:
                order.payment_id = payment_id
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise
        return order

    @staticmethod
    def mark_payment_failed(order_id: int, payment_id: Optional[str] = None) -> Order:
        try:
            order = OrderService.get_order(order_id, lock=True)
            if order.is_paid:
                raise StateError("Order is already paid")
            order.payment_status = PaymentStatus.FAILED.value
            if payment_id:
                order.payment_id = payment_id
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise
        return order

    @staticmethod
    def update_lyrics(order_id: int, lyrics: str, status: Optional[str] = None) -> Order:
        new_status = OrderStatus.parse(status) if status else OrderStatus.LYRICS_REVIEW
        try:
            order = OrderService.get_order(order_id, lock=True)
            order.system_generated_lyrics = lyrics
            OrderService._set_status(order, new_status)
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise
        return order

    # ---- Song versions ----

    @staticmethod
    def add_song_version(order_id: int, file_path: str, title: Optional[str] = None) -> SongVersion:
        """Attach a delivered version and move the order into song review."""
        if not file_path:
            raise ValidationError("No file uploaded")
        try:
            order = OrderService.get_order(order_id, lock=True)
            next_version = (
                db.session.query(db.func.coalesce(db.func.max(SongVersion.version), 0))
                .filter(SongVersion.order_id == order.id)
                .scalar()
            ) + 1
            song = SongVersion(
                order_id=order.id,
                version=next_version,
                title=title or f"Version {next_version}",
                file_path=file_path,
            )
            db.session.add(song)
            if order.status not in (OrderStatus.SONG_REVIEW.value, OrderStatus.COMPLETED.value):
                OrderService._set_status(order, OrderStatus.SONG_REVIEW)
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise
        logger.info(f"Order {order.order_number}: song version {song.version} uploaded")
        return song

    @staticmethod
    def delete_song_version(order_id: int, song_id: int):
        try:
            song = SongVersion.query.filter_by(id=song_id, order_id=order_id).first()
            if not song:
                raise NotFoundError("Song version not found")
            if song.is_downloaded:
                raise StateError("A downloaded song version cannot be deleted")
            db.session.delete(song)
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise

    @staticmethod
    def _select_version(order: Order, song_id: int) -> SongVersion:
        versions = order.song_versions
        song = next((v for v in versions if v.id == song_id), None)
        if not song:
            raise NotFoundError("Song version not found")
        if any(v.is_downloaded for v in versions):
            raise StateError("A song version has already been downloaded; the selection is final")

        for version in versions:
            version.is_selected = version.id == song.id
        db.session.flush()

        selected = SongVersion.query.filter_by(order_id=order.id, is_selected=True).count()
        if selected != 1:
            raise ConflictError("Song selection did not settle on a single version")
        return song

    @staticmethod
    def select_song_version(order_id: int, song_id: int, user_id: Optional[int] = None) -> SongVersion:
        """Make song_id the only selected version of the order."""
        try:
            order = OrderService.get_order(order_id, user_id, lock=True)
            song = OrderService._select_version(order, song_id)
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise
        logger.info(f"Order {order.order_number}: version {song.version} selected")
        return song

    @staticmethod
    def download_song(order_id: int, song_id: int, user_id: Optional[int] = None) -> Dict:
        """
        Download the selected version. The first download locks the
        selection and completes the order.
        """
        try:
            order = OrderService.get_order(order_id, user_id, lock=True)
            song = SongVersion.query.filter_by(id=song_id, order_id=order.id, is_selected=True).first()
            if not song:
                raise NotFoundError("Selected song not found")

            if not song.is_downloaded:
                song.is_downloaded = True
                song.downloaded_at = _utcnow()
                OrderService._set_status(order, OrderStatus.COMPLETED)
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise

        prefix = current_app.config.get("SONG_DOWNLOAD_PREFIX", "/uploads/songs").rstrip("/")
        return {
            "download_url": f"{prefix}/{os.path.basename(song.file_path)}",
            "title": song.title,
            "version": song.version,
        }

    # ---- Customer approvals ----

    @staticmethod
    def _record_revision(order: Order, revision_type: RevisionType, comment: Optional[str],
                         user_id: Optional[int], user_type: str = "customer") -> OrderRevision:
        revision = OrderRevision(
            order_id=order.id,
            revision_type=revision_type.value,
            comment=comment,
            user_id=user_id,
            user_type=user_type,
        )
        db.session.add(revision)
        return revision

    @staticmethod
    def approve_lyrics(order_id: int, user_id: int, approved: bool,
                       feedback: Optional[str] = None) -> Order:
        review_states = (OrderStatus.LYRICS_REVIEW.value, LEGACY_READY_FOR_REVIEW)
        try:
            order = OrderService.get_order(order_id, user_id, lock=True)
            if normalize_status(order.status) not in review_states:
                raise StateError("Lyrics are not awaiting review for this order")

            if approved:
                order.lyrics_approved = True
                OrderService._set_status(order, OrderStatus.SONG_PRODUCTION)
                OrderService._record_revision(
                    order, RevisionType.LYRICS_APPROVED, feedback or "Lyrics approved", user_id
                )
            else:
                if not feedback or not feedback.strip():
                    raise ValidationError("Feedback is required when requesting lyrics changes")
                order.lyrics_revisions = (order.lyrics_revisions or 0) + 1
                OrderService._set_status(order, OrderStatus.IN_PRODUCTION)
                OrderService._record_revision(
                    order, RevisionType.LYRICS_CHANGE_REQUEST, feedback.strip(), user_id
                )
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise

        logger.info(f"Order {order.order_number}: lyrics {'approved' if approved else 'sent back'}")
        return order

    @staticmethod
    def approve_song(order_id: int, user_id: int, approved: bool,
                     feedback: Optional[str] = None,
                     selected_version_id: Optional[int] = None) -> Order:
        review_states = (OrderStatus.SONG_REVIEW.value, LEGACY_READY_FOR_REVIEW)
        try:
            order = OrderService.get_order(order_id, user_id, lock=True)
            if normalize_status(order.status) not in review_states:
                raise StateError("Song is not awaiting review for this order")

            if approved:
                if not selected_version_id:
                    raise ValidationError("Please select a song version")
                try:
                    song_id = int(selected_version_id)
                except (TypeError, ValueError):
                    raise ValidationError("Invalid song version id")
                OrderService._select_version(order, song_id)
                OrderService._set_status(order, OrderStatus.COMPLETED)
                OrderService._record_revision(
                    order, RevisionType.SONG_APPROVED, feedback or "Song approved", user_id
                )
            else:
                if not feedback or not feedback.strip():
                    raise ValidationError("Feedback is required when requesting song changes")
                order.song_revisions = (order.song_revisions or 0) + 1
                OrderService._set_status(order, OrderStatus.SONG_PRODUCTION)
                OrderService._record_revision(
                    order, RevisionType.SONG_CHANGE_REQUEST, feedback.strip(), user_id
                )
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise

        logger.info(f"Order {order.order_number}: song {'approved' if approved else 'sent back'}")
        return order

    # ---- Revision history ----

    @staticmethod
    def get_revision_history(order_id: int, user_id: Optional[int] = None) -> List[OrderRevision]:
        order = OrderService.get_order(order_id, user_id)
        return list(order.revisions)

    @staticmethod
    def add_revision_note(order_id: int, admin_id: int, comment: str) -> OrderRevision:
        if not comment or not comment.strip():
            raise ValidationError("Comment is required")
        try:
            order = OrderService.get_order(order_id)
            revision = OrderService._record_revision(
                order, RevisionType.ADMIN_NOTE, comment.strip(), admin_id, user_type="admin"
            )
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise
        return revision

    # ---- Legacy data ----

    @staticmethod
    def migrate_legacy_statuses() -> int:
        """Rewrite stored `ready_for_review` rows to the status they resolve to."""
        try:
            legacy = Order.query.filter(Order.status == LEGACY_READY_FOR_REVIEW).all()
            for order in legacy:
                resolved = resolve_legacy_status(order.lyrics_approved, len(order.song_versions))
                OrderService._set_status(order, resolved)
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise
        logger.info(f"Migrated {len(legacy)} legacy order status value(s)")
        return len(legacy)
