# models.py: Flask-SQLAlchemy models for orders, song delivery and the affiliate ledger
from datetime import datetime, timezone
from decimal import Decimal
import enum
from sqlalchemy import UniqueConstraint, Index, text
from flask_login import UserMixin
from werkzeug.security import check_password_hash, generate_password_hash

from extensions import db
from orders.lifecycle import (
    OrderStatus,
    derive_stage_index,
    stage_label,
    status_display,
)

# ===========================================================
# ENUM DEFINITIONS
# ===========================================================

class PaymentStatus(enum.Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"


class PackageType(enum.Enum):
    ESSENTIAL = "essential"
    SIGNATURE = "signature"
    MASTERPIECE = "masterpiece"


class AffiliateStatus(enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    SUSPENDED = "suspended"


class CommissionStatus(enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    PROCESSING = "processing"
    PAID = "paid"


class PayoutStatus(enum.Enum):
    PENDING = "pending"
    PAID = "paid"
    REJECTED = "rejected"


class PayoutMethod(enum.Enum):
    STRIPE = "stripe"
    BANK_TRANSFER = "bank_transfer"


class RevisionType(enum.Enum):
    LYRICS_APPROVED = "lyrics_approved"
    LYRICS_CHANGE_REQUEST = "lyrics_change_request"
    SONG_APPROVED = "song_approved"
    SONG_CHANGE_REQUEST = "song_change_request"
    ADMIN_NOTE = "admin_note"


def _money(value):
    if value is None:
        return 0.0
    return float(value)


def _iso(value):
    return value.isoformat() if value else None


# ===========================================================
# BASE MIXIN FOR COMMON FIELDS
# ===========================================================

class BaseMixin:
    """Provides created_at and updated_at timestamps to inheriting models."""
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(db.DateTime(timezone=True),
                           default=lambda: datetime.now(timezone.utc),
                           onupdate=lambda: datetime.now(timezone.utc))

# ===========================================================
# USER MODELS
# ===========================================================

class User(db.Model, BaseMixin, UserMixin):
    """Customer, affiliate or admin account."""
    __tablename__ = 'users'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False)
    email = db.Column(db.String(120), unique=True, nullable=False)
    role = db.Column(db.String(20), nullable=False, default="user", index=True)
    password_hash = db.Column(db.String(255), nullable=False)
    is_active = db.Column(db.Boolean, default=True)

    orders = db.relationship('Order', back_populates='user', lazy='dynamic')
    affiliate = db.relationship('Affiliate', uselist=False, back_populates='user')

    def set_password(self, password: str):
        self.password_hash = generate_password_hash(password)

    def check_password(self, password: str) -> bool:
        return check_password_hash(self.password_hash, password)

    @property
    def is_admin(self):
        return self.role == "admin"

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "role": self.role,
            "is_active": self.is_active,
            "created_at": _iso(self.created_at),
        }

# ===========================================================
# ORDERS
# ===========================================================

class Order(db.Model, BaseMixin):
    """A custom song order. The display stage is derived, never stored."""
    __tablename__ = 'orders'

    id = db.Column(db.Integer, primary_key=True)
    order_number = db.Column(db.String(32), unique=True, nullable=False)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)
    package_type = db.Column(db.String(20), nullable=False, default=PackageType.SIGNATURE.value)
    original_price = db.Column(db.Numeric(10, 2), nullable=False, default=0)
    total_price = db.Column(db.Numeric(10, 2), nullable=False)

    status = db.Column(db.String(30), nullable=False, default=OrderStatus.PENDING.value, index=True)
    workflow_stage = db.Column(db.Integer, nullable=True)
    lyrics_approved = db.Column(db.Boolean, nullable=False, default=False)
    lyrics_revisions = db.Column(db.Integer, nullable=False, default=0)
    song_revisions = db.Column(db.Integer, nullable=False, default=0)

    payment_status = db.Column(db.String(20), nullable=False, default=PaymentStatus.PENDING.value)
    payment_id = db.Column(db.String(120), nullable=True, index=True)

    used_promo_code = db.Column(db.String(50), nullable=True)
    promo_discount_amount = db.Column(db.Numeric(10, 2), nullable=False, default=0)
    referring_affiliate_id = db.Column(db.Integer, db.ForeignKey('affiliates.id'), nullable=True)

    # Customer brief
    song_purpose = db.Column(db.String(120))
    recipient_name = db.Column(db.String(120))
    emotion = db.Column(db.String(60))
    provide_lyrics = db.Column(db.Boolean, default=False)
    lyrics = db.Column(db.Text)
    system_generated_lyrics = db.Column(db.Text)
    song_theme = db.Column(db.String(255))
    personal_story = db.Column(db.Text)
    music_style = db.Column(db.String(120))
    show_in_gallery = db.Column(db.Boolean, default=False)
    additional_notes = db.Column(db.Text)

    user = db.relationship('User', back_populates='orders')
    addons = db.relationship('OrderAddon', back_populates='order', cascade="all,delete-orphan")
    song_versions = db.relationship(
        'SongVersion', back_populates='order',
        order_by='SongVersion.version', cascade="all,delete-orphan"
    )
    revisions = db.relationship(
        'OrderRevision', back_populates='order',
        order_by='OrderRevision.created_at', cascade="all,delete-orphan"
    )
    referring_affiliate = db.relationship('Affiliate', foreign_keys=[referring_affiliate_id])

    __table_args__ = (
        Index('idx_orders_referring_affiliate', 'referring_affiliate_id'),
    )

    @property
    def stage_index(self):
        return derive_stage_index(
            self.status,
            self.workflow_stage,
            self.lyrics_approved,
            len(self.song_versions),
        )

    @property
    def is_paid(self):
        return self.payment_status == PaymentStatus.PAID.value

    def to_dict(self, include_brief=False):
        index = self.stage_index
        result = {
            "id": self.id,
            "order_number": self.order_number,
            "user_id": self.user_id,
            "package_type": self.package_type,
            "original_price": _money(self.original_price),
            "total_price": _money(self.total_price),
            "status": self.status,
            "status_display": status_display(self.status),
            "workflow_stage": self.workflow_stage,
            "stage_index": index,
            "stage_label": stage_label(index),
            "lyrics_approved": bool(self.lyrics_approved),
            "system_generated_lyrics": self.system_generated_lyrics,
            "lyrics_revisions": self.lyrics_revisions,
            "song_revisions": self.song_revisions,
            "payment_status": self.payment_status,
            "used_promo_code": self.used_promo_code,
            "promo_discount_amount": _money(self.promo_discount_amount),
            "addons": [addon.to_dict() for addon in self.addons],
            "song_versions": [song.to_dict() for song in self.song_versions],
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }
        if include_brief:
            result.update({
                "song_purpose": self.song_purpose,
                "recipient_name": self.recipient_name,
                "emotion": self.emotion,
                "provide_lyrics": bool(self.provide_lyrics),
                "lyrics": self.lyrics,
                "song_theme": self.song_theme,
                "personal_story": self.personal_story,
                "music_style": self.music_style,
                "show_in_gallery": bool(self.show_in_gallery),
                "additional_notes": self.additional_notes,
            })
        return result


class OrderAddon(db.Model):
    __tablename__ = 'order_addons'

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey('orders.id'), nullable=False, index=True)
    addon_type = db.Column(db.String(50), nullable=False)
    price = db.Column(db.Numeric(10, 2), nullable=False, default=0)

    order = db.relationship('Order', back_populates='addons')

    def to_dict(self):
        return {"id": self.id, "addon_type": self.addon_type, "price": _money(self.price)}


class SongVersion(db.Model, BaseMixin):
    __tablename__ = 'songs'

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey('orders.id'), nullable=False, index=True)
    version = db.Column(db.Integer, nullable=False, default=1)
    title = db.Column(db.String(255))
    file_path = db.Column(db.String(500), nullable=False)
    is_selected = db.Column(db.Boolean, nullable=False, default=False)
    is_downloaded = db.Column(db.Boolean, nullable=False, default=False)
    downloaded_at = db.Column(db.DateTime(timezone=True), nullable=True)

    order = db.relationship('Order', back_populates='song_versions')

    __table_args__ = (
        UniqueConstraint('order_id', 'version', name='uq_song_order_version'),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "order_id": self.order_id,
            "version": self.version,
            "title": self.title,
            "is_selected": bool(self.is_selected),
            "is_downloaded": bool(self.is_downloaded),
            "uploaded_at": _iso(self.created_at),
        }


class OrderRevision(db.Model, BaseMixin):
    """Customer feedback and admin notes attached to an order."""
    __tablename__ = 'order_revisions'

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey('orders.id'), nullable=False, index=True)
    revision_type = db.Column(db.String(40), nullable=False)
    comment = db.Column(db.Text)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=True)
    user_type = db.Column(db.String(20), nullable=False, default="customer")

    order = db.relationship('Order', back_populates='revisions')
    author = db.relationship('User')

    def to_dict(self):
        return {
            "id": self.id,
            "order_id": self.order_id,
            "type": self.revision_type,
            "comment": self.comment,
            "user_type": self.user_type,
            "user_name": self.author.name if self.author else None,
            "created_at": _iso(self.created_at),
        }

# ===========================================================
# AFFILIATES, PROMO CODES AND COMMISSIONS
# ===========================================================

class Affiliate(db.Model, BaseMixin):
    __tablename__ = 'affiliates'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), unique=True, nullable=False)
    status = db.Column(db.String(20), nullable=False, default=AffiliateStatus.PENDING.value)
    commission_rate = db.Column(db.Numeric(5, 2), nullable=False, default=Decimal("10.00"))

    # Derived from commissions, recomputed by the ledger
    balance = db.Column(db.Numeric(10, 2), nullable=False, default=0, server_default=text("0.00"))
    total_earnings = db.Column(db.Numeric(10, 2), nullable=False, default=0, server_default=text("0.00"))
    total_paid = db.Column(db.Numeric(10, 2), nullable=False, default=0, server_default=text("0.00"))
    payout_threshold = db.Column(db.Numeric(10, 2), nullable=False, default=Decimal("10.00"))

    content_platforms = db.Column(db.JSON)
    audience_info = db.Column(db.Text)
    promotion_strategy = db.Column(db.Text)
    portfolio_links = db.Column(db.JSON)

    denial_reason = db.Column(db.Text)
    can_reapply = db.Column(db.Boolean, nullable=False, default=True)
    admin_notes = db.Column(db.Text)
    next_allowed_application_date = db.Column(db.DateTime(timezone=True), nullable=True)
    code_regenerated_at = db.Column(db.DateTime(timezone=True), nullable=True)
    approval_date = db.Column(db.DateTime(timezone=True), nullable=True)
    last_payout_date = db.Column(db.DateTime(timezone=True), nullable=True)

    user = db.relationship('User', back_populates='affiliate')
    commissions = db.relationship('Commission', back_populates='affiliate', lazy='dynamic')
    payouts = db.relationship('AffiliatePayout', back_populates='affiliate', lazy='dynamic')

    __table_args__ = (
        Index('idx_affiliates_user_status', 'user_id', 'status'),
    )

    @property
    def promo_code(self):
        return PromoCode.query.filter_by(affiliate_id=self.id, code_type="affiliate").first()

    def to_dict(self):
        code = self.promo_code
        return {
            "id": self.id,
            "user_id": self.user_id,
            "name": self.user.name if self.user else None,
            "email": self.user.email if self.user else None,
            "status": self.status,
            "commission_rate": _money(self.commission_rate),
            "balance": _money(self.balance),
            "total_earnings": _money(self.total_earnings),
            "total_paid": _money(self.total_paid),
            "payout_threshold": _money(self.payout_threshold),
            "affiliate_code": code.code if code else None,
            "denial_reason": self.denial_reason,
            "next_allowed_application_date": _iso(self.next_allowed_application_date),
            "approval_date": _iso(self.approval_date),
            "created_at": _iso(self.created_at),
        }


class PromoCode(db.Model, BaseMixin):
    __tablename__ = 'promo_codes'

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(50), unique=True, nullable=False)
    name = db.Column(db.String(120))
    code_type = db.Column(db.String(20), nullable=False, default="discount")
    affiliate_id = db.Column(db.Integer, db.ForeignKey('affiliates.id'), nullable=True, index=True)
    discount_amount = db.Column(db.Numeric(10, 2), nullable=False, default=0)
    is_percentage = db.Column(db.Boolean, nullable=False, default=True)
    min_order_value = db.Column(db.Numeric(10, 2), nullable=False, default=0)
    max_uses = db.Column(db.Integer, nullable=True)
    current_uses = db.Column(db.Integer, nullable=False, default=0)
    max_uses_per_user = db.Column(db.Integer, nullable=False, default=1)
    starts_at = db.Column(db.DateTime(timezone=True), nullable=True)
    expires_at = db.Column(db.DateTime(timezone=True), nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    affiliate = db.relationship('Affiliate')
    usages = db.relationship('PromoCodeUsage', back_populates='promo_code', lazy='dynamic')

    def to_dict(self):
        return {
            "id": self.id,
            "code": self.code,
            "name": self.name,
            "type": self.code_type,
            "affiliate_id": self.affiliate_id,
            "discount_amount": _money(self.discount_amount),
            "is_percentage": bool(self.is_percentage),
            "min_order_value": _money(self.min_order_value),
            "max_uses": self.max_uses,
            "current_uses": self.current_uses,
            "max_uses_per_user": self.max_uses_per_user,
            "starts_at": _iso(self.starts_at),
            "expires_at": _iso(self.expires_at),
            "is_active": bool(self.is_active),
        }


class PromoCodeUsage(db.Model, BaseMixin):
    __tablename__ = 'promo_code_usage'

    id = db.Column(db.Integer, primary_key=True)
    code_id = db.Column(db.Integer, db.ForeignKey('promo_codes.id'), nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)
    order_id = db.Column(db.Integer, db.ForeignKey('orders.id'), nullable=False)
    discount_applied = db.Column(db.Numeric(10, 2), nullable=False, default=0)

    promo_code = db.relationship('PromoCode', back_populates='usages')


class Commission(db.Model, BaseMixin):
    """One commission per (affiliate, order). Storage enforces the pair."""
    __tablename__ = 'commissions'

    id = db.Column(db.Integer, primary_key=True)
    affiliate_id = db.Column(db.Integer, db.ForeignKey('affiliates.id'), nullable=False)
    order_id = db.Column(db.Integer, db.ForeignKey('orders.id'), nullable=False)
    amount = db.Column(db.Numeric(10, 2), nullable=False)
    rate = db.Column(db.Numeric(5, 2), nullable=False)
    order_total = db.Column(db.Numeric(10, 2), nullable=False, default=0)
    status = db.Column(db.String(20), nullable=False, default=CommissionStatus.PENDING.value)
    payout_id = db.Column(db.Integer, db.ForeignKey('affiliate_payouts.id'), nullable=True)
    approved_at = db.Column(db.DateTime(timezone=True), nullable=True)
    paid_date = db.Column(db.DateTime(timezone=True), nullable=True)

    affiliate = db.relationship('Affiliate', back_populates='commissions')
    order = db.relationship('Order')
    payout = db.relationship('AffiliatePayout', back_populates='commissions')

    __table_args__ = (
        UniqueConstraint('affiliate_id', 'order_id', name='unique_affiliate_order'),
        Index('idx_commissions_affiliate_status', 'affiliate_id', 'status'),
        Index('idx_commissions_created_status', 'created_at', 'status'),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "affiliate_id": self.affiliate_id,
            "order_id": self.order_id,
            "order_number": self.order.order_number if self.order else None,
            "amount": _money(self.amount),
            "rate": _money(self.rate),
            "order_total": _money(self.order_total),
            "status": self.status,
            "payout_id": self.payout_id,
            "created_at": _iso(self.created_at),
            "approved_at": _iso(self.approved_at),
            "paid_date": _iso(self.paid_date),
        }


class AffiliatePayout(db.Model, BaseMixin):
    __tablename__ = 'affiliate_payouts'

    id = db.Column(db.Integer, primary_key=True)
    affiliate_id = db.Column(db.Integer, db.ForeignKey('affiliates.id'), nullable=False)
    requested_amount = db.Column(db.Numeric(10, 2), nullable=False)
    amount = db.Column(db.Numeric(10, 2), nullable=False)
    status = db.Column(db.String(20), nullable=False, default=PayoutStatus.PENDING.value)
    payment_method = db.Column(db.String(20), nullable=False, default=PayoutMethod.STRIPE.value)
    payment_info = db.Column(db.JSON)
    transaction_id = db.Column(db.String(120))
    processing_notes = db.Column(db.Text)
    processed_by = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=True)
    paid_date = db.Column(db.DateTime(timezone=True), nullable=True)

    affiliate = db.relationship('Affiliate', back_populates='payouts')
    commissions = db.relationship('Commission', back_populates='payout')

    __table_args__ = (
        Index('idx_payouts_affiliate_status', 'affiliate_id', 'status'),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "affiliate_id": self.affiliate_id,
            "requested_amount": _money(self.requested_amount),
            "amount": _money(self.amount),
            "status": self.status,
            "payment_method": self.payment_method,
            "transaction_id": self.transaction_id,
            "processing_notes": self.processing_notes,
            "commission_ids": [c.id for c in self.commissions],
            "created_at": _iso(self.created_at),
            "paid_date": _iso(self.paid_date),
        }

# ===========================================================
# AUDITING & WEBHOOKS
# ===========================================================

class AuditLog(db.Model, BaseMixin):
    __tablename__ = 'audit_logs'

    id = db.Column(db.Integer, primary_key=True)
    actor_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=True, index=True)
    action = db.Column(db.String(255))
    ip_address = db.Column(db.String(50))


class WebhookEvent(db.Model, BaseMixin):
    __tablename__ = 'webhook_events'

    id = db.Column(db.Integer, primary_key=True)
    provider = db.Column(db.String(50), nullable=False)
    event_id = db.Column(db.String(120), unique=True, nullable=False)
    event_type = db.Column(db.String(100))
    payload = db.Column(db.JSON, nullable=False)
    signature = db.Column(db.String(255))
    reference = db.Column(db.String(120), index=True)
    processed = db.Column(db.Boolean, default=False)
    processed_at = db.Column(db.DateTime(timezone=True))
    status = db.Column(db.String(50), default='pending')
    remarks = db.Column(db.String(255))

    def mark_processed(self, success=True, remarks=None):
        self.processed = True
        self.status = 'success' if success else 'failed'
        self.remarks = remarks
        self.processed_at = datetime.now(timezone.utc)
