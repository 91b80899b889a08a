import os
import tempfile
from datetime import datetime, timedelta, timezone
from decimal import Decimal

os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("FLASK_ENV", "testing")
os.environ.setdefault("LOG_DIR", tempfile.mkdtemp(prefix="songsculptors-logs-"))

import pytest

from app import create_app
from config import TestConfig
from extensions import db
from gateway import PaymentGateway
from models import (
    Affiliate,
    AffiliateStatus,
    Commission,
    Order,
    PromoCode,
    SongVersion,
    User,
)


class FakeGateway(PaymentGateway):
    """Real signature handling, no network."""

    def __init__(self):
        super().__init__(api_key="sk_test", webhook_secret=TestConfig.PAYMENT_WEBHOOK_SECRET)
        self.checkouts = []

    def create_checkout(self, order, success_url, cancel_url):
        self.checkouts.append(order.id)
        return True, {"session_id": f"cs_test_{order.id}", "url": "https://pay.test/session"}, "ok"


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def app(gateway):
    app = create_app(TestConfig, payment_gateway=gateway)
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


def utcnow():
    return datetime.now(timezone.utc)


def days_ago(days):
    return utcnow() - timedelta(days=days)


@pytest.fixture
def make_user(app):
    counter = {"n": 0}

    def _make_user(name=None, role="user", password="secret123"):
        counter["n"] += 1
        user = User(
            name=name or f"User {counter['n']}",
            email=f"user{counter['n']}@example.com",
            role=role,
        )
        user.set_password(password)
        db.session.add(user)
        db.session.commit()
        return user

    return _make_user


@pytest.fixture
def make_affiliate(app, make_user):
    def _make_affiliate(user=None, status=AffiliateStatus.APPROVED.value,
                        rate="10.00", code=None):
        user = user or make_user(name="Affiliate Person")
        affiliate = Affiliate(
            user_id=user.id,
            status=status,
            commission_rate=Decimal(rate),
            payout_threshold=Decimal("10.00"),
        )
        db.session.add(affiliate)
        db.session.flush()
        if code:
            db.session.add(PromoCode(
                code=code,
                name=f"{user.name}'s Affiliate Code",
                code_type="affiliate",
                affiliate_id=affiliate.id,
                discount_amount=Decimal(rate),
                is_percentage=True,
            ))
        db.session.commit()
        return affiliate

    return _make_affiliate


@pytest.fixture
def make_order(app, make_user):
    counter = {"n": 0}

    def _make_order(user=None, status="pending", workflow_stage=None,
                    total_price="100.00", payment_status="pending", **fields):
        counter["n"] += 1
        user = user or make_user()
        order = Order(
            order_number=f"ORD-TEST{counter['n']:02d}-{counter['n']:03d}",
            user_id=user.id,
            package_type="signature",
            original_price=Decimal(total_price),
            total_price=Decimal(total_price),
            status=status,
            workflow_stage=workflow_stage,
            payment_status=payment_status,
            **fields,
        )
        db.session.add(order)
        db.session.commit()
        return order

    return _make_order


@pytest.fixture
def make_commission(app, make_order):
    def _make_commission(affiliate, amount, status="approved", created_at=None, order=None):
        order = order or make_order(payment_status="paid" if status != "pending" else "pending")
        commission = Commission(
            affiliate_id=affiliate.id,
            order_id=order.id,
            amount=Decimal(amount),
            rate=Decimal("10.00"),
            order_total=order.total_price,
            status=status,
            created_at=created_at or days_ago(30),
        )
        db.session.add(commission)
        db.session.commit()
        return commission

    return _make_commission


@pytest.fixture
def add_song(app):
    def _add_song(order, version, selected=False, downloaded=False):
        song = SongVersion(
            order_id=order.id,
            version=version,
            title=f"Version {version}",
            file_path=f"songs/order-{order.id}-v{version}.mp3",
            is_selected=selected,
            is_downloaded=downloaded,
        )
        db.session.add(song)
        db.session.commit()
        return song

    return _add_song


@pytest.fixture
def login(client):
    def _login(user):
        with client.session_transaction() as sess:
            sess["user_id"] = user.id
        return user

    return _login
