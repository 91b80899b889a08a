import json
import time
from decimal import Decimal

from sqlalchemy.exc import IntegrityError

from extensions import db
from models import AuditLog, Commission, Order, SongVersion, WebhookEvent
from conftest import days_ago


def _post_webhook(client, gateway, payload, signature=None):
    body = json.dumps(payload).encode()
    return client.post(
        "/api/webhooks/payments",
        data=body,
        headers={"Stripe-Signature": signature or gateway.sign(body), "Content-Type": "application/json"},
    )


def _payment_event(event_id, order_id, amount_minor, event_type="payment_intent.succeeded"):
    return {
        "id": event_id,
        "type": event_type,
        "data": {"object": {
            "id": f"pi_{event_id}",
            "amount_received": amount_minor,
            "metadata": {"order_id": str(order_id)},
        }},
    }


# ---- Health and auth ----

def test_healthz(client):
    response = client.get("/healthz")
    assert response.status_code == 200
    assert response.get_json()["status"] == "ok"


def test_signup_login_and_me(client):
    response = client.post("/api/auth/signup", json={
        "name": "Sam", "email": "Sam@Example.com", "password": "hunter22",
    })
    assert response.status_code == 201
    assert response.get_json()["data"]["email"] == "sam@example.com"

    client.post("/api/auth/logout")
    assert client.get("/api/auth/me").status_code == 401

    response = client.post("/api/auth/login", json={"email": "sam@example.com", "password": "hunter22"})
    assert response.status_code == 200
    assert client.get("/api/auth/me").get_json()["data"]["name"] == "Sam"


def test_login_with_wrong_password(client, make_user):
    user = make_user()
    response = client.post("/api/auth/login", json={"email": user.email, "password": "nope"})
    assert response.status_code == 401


# ---- Orders ----

def test_orders_require_login(client):
    response = client.get("/api/orders")
    assert response.status_code == 401
    assert response.get_json()["error"] == "unauthorized"


def test_create_and_fetch_order(client, login, make_user):
    login(make_user())
    response = client.post("/api/orders", json={"total_price": 99, "package_type": "basic"})
    assert response.status_code == 201
    order = response.get_json()["data"]
    assert order["status"] == "pending"
    assert order["stage_index"] == 0
    assert order["stage_label"] == "Order Received"

    detail = client.get(f"/api/orders/{order['id']}").get_json()["data"]
    assert detail["timeline"][0]["current"] is True
    assert len(client.get("/api/orders").get_json()["data"]) == 1


def test_customer_cannot_see_other_orders(client, login, make_user, make_order):
    order = make_order()
    login(make_user())
    response = client.get(f"/api/orders/{order.id}")
    assert response.status_code == 404
    assert response.get_json()["error"] == "not_found"


def test_legacy_order_reports_derived_stage(client, login, make_order, add_song):
    order = make_order(status="ready_for_review", lyrics_approved=True)
    add_song(order, 1)
    login(order.user)

    data = client.get(f"/api/orders/{order.id}").get_json()["data"]
    assert data["stage_index"] == 4
    assert data["stage_label"] == "Song Review"


def test_checkout_uses_gateway(client, login, make_order, gateway):
    order = make_order()
    login(order.user)

    response = client.post(f"/api/orders/{order.id}/checkout")

    assert response.status_code == 200
    assert response.get_json()["data"]["session_id"] == f"cs_test_{order.id}"
    assert gateway.checkouts == [order.id]


def test_invalid_body_is_a_validation_error(client, login, make_user):
    login(make_user())
    response = client.post("/api/orders", data="not json", content_type="application/json")
    assert response.status_code == 400
    assert response.get_json()["error"] == "validation_error"


def test_select_and_download_flow(client, login, make_order, add_song):
    order = make_order(status="song_review", workflow_stage=5)
    a = add_song(order, 1)
    b = add_song(order, 2)
    login(order.user)

    assert client.post(f"/api/orders/{order.id}/songs/{a.id}/select").status_code == 200
    download = client.get(f"/api/orders/{order.id}/songs/{a.id}/download")
    assert download.status_code == 200
    assert download.get_json()["data"]["version"] == 1

    response = client.post(f"/api/orders/{order.id}/songs/{b.id}/select")
    assert response.status_code == 409
    assert response.get_json()["error"] == "invalid_state"
    assert db.session.get(SongVersion, a.id).is_selected is True
    assert db.session.get(Order, order.id).status == "completed"


def test_lyrics_approval_endpoint(client, login, make_order):
    order = make_order(status="lyrics_review", workflow_stage=3)
    login(order.user)

    response = client.post(f"/api/orders/{order.id}/lyrics/approval", json={"approved": True})

    assert response.status_code == 200
    assert response.get_json()["data"]["status"] == "song_production"
    history = client.get(f"/api/orders/{order.id}/revisions").get_json()["data"]
    assert history[0]["type"] == "lyrics_approved"


# ---- Payment webhooks ----

def test_webhook_marks_order_paid_and_approves_commission(client, gateway, make_affiliate, make_order):
    affiliate = make_affiliate()
    order = make_order(total_price="90.00")
    db.session.add(Commission(affiliate_id=affiliate.id, order_id=order.id, amount=Decimal("9.00"),
                              rate=Decimal("10.00"), order_total=Decimal("90.00"), status="pending"))
    db.session.commit()

    response = _post_webhook(client, gateway, _payment_event("evt_1", order.id, 9000))

    assert response.status_code == 200
    assert response.get_json()["processed"] is True
    assert db.session.get(Order, order.id).payment_status == "paid"
    assert Commission.query.one().status == "approved"
    assert WebhookEvent.query.one().status == "success"


def test_webhook_replay_is_idempotent(client, gateway, make_affiliate, make_order):
    affiliate = make_affiliate()
    order = make_order()
    db.session.add(Commission(affiliate_id=affiliate.id, order_id=order.id, amount=Decimal("10.00"),
                              rate=Decimal("10.00"), order_total=Decimal("100.00"), status="pending"))
    db.session.commit()
    payload = _payment_event("evt_replay", order.id, 10000)

    first = _post_webhook(client, gateway, payload)
    second = _post_webhook(client, gateway, payload)

    assert first.status_code == second.status_code == 200
    assert second.get_json()["message"] == "Already processed"
    assert WebhookEvent.query.count() == 1
    assert Commission.query.one().amount == Decimal("10.00")


def test_webhook_rejects_bad_signature(client, gateway, make_order):
    order = make_order()
    response = _post_webhook(client, gateway, _payment_event("evt_bad", order.id, 100),
                             signature="t=1,v1=deadbeef")

    assert response.status_code == 400
    assert db.session.get(Order, order.id).payment_status == "pending"
    assert WebhookEvent.query.count() == 0


def test_webhook_rejects_stale_timestamp(client, gateway, make_order):
    order = make_order()
    body = json.dumps(_payment_event("evt_old", order.id, 100)).encode()
    stale = gateway.sign(body, timestamp=int(time.time()) - 3600)

    response = client.post("/api/webhooks/payments", data=body, headers={"Stripe-Signature": stale})
    assert response.status_code == 400


def test_webhook_for_unknown_order_is_recorded_as_failed(client, gateway):
    response = _post_webhook(client, gateway, _payment_event("evt_ghost", 4040, 100))

    assert response.status_code == 200
    assert response.get_json()["processed"] is False
    assert WebhookEvent.query.one().status == "failed"


def test_payment_failed_event(client, gateway, make_order):
    order = make_order()
    _post_webhook(client, gateway, _payment_event("evt_fail", order.id, 100, "payment_intent.payment_failed"))
    assert db.session.get(Order, order.id).payment_status == "failed"


def test_webhook_with_malformed_order_reference(client, gateway):
    response = _post_webhook(client, gateway, _payment_event("evt_badref", "ORD-1", 100))

    assert response.status_code == 400
    assert response.get_json()["error"] == "validation_error"
    assert WebhookEvent.query.count() == 0


def test_storage_conflict_is_reported_as_conflict(app, client):
    def clash():
        raise IntegrityError(
            "INSERT INTO commissions", {}, Exception("UNIQUE constraint failed: commissions.affiliate_id")
        )

    app.add_url_rule("/clash", "clash", clash)
    response = client.get("/clash")

    assert response.status_code == 409
    assert response.get_json()["error"] == "conflict"


# ---- Affiliate ----

def test_affiliate_apply_and_status(client, login, make_user):
    login(make_user())
    response = client.post("/api/affiliate/apply", json={
        "content_platforms": ["tiktok"],
        "audience_info": "Musicians",
        "promotion_strategy": "Weekly shout-outs",
    })
    assert response.status_code == 201
    assert client.get("/api/affiliate/status").get_json()["data"]["status"] == "pending"


def test_validate_code_endpoint(client, make_affiliate):
    make_affiliate(code="SONGABCD1234")
    response = client.post("/api/affiliate/validate-code", json={"code": "songabcd1234", "order_total": 200})

    data = response.get_json()["data"]
    assert response.status_code == 200
    assert data["type"] == "affiliate"
    assert data["calculated_discount"] == 20.0


def test_payout_request_endpoint(client, login, make_affiliate, make_commission):
    affiliate = make_affiliate()
    make_commission(affiliate, "20.00", created_at=days_ago(30))
    login(affiliate.user)

    response = client.post("/api/affiliate/payouts", json={
        "amount": "20.00",
        "payment_method": "stripe",
        "stripe_email": "aff@example.com",
        "full_name": "Affiliate Person",
    })
    assert response.status_code == 201
    assert response.get_json()["data"]["amount"] == 20.0

    response = client.post("/api/affiliate/payouts", json={
        "amount": "5.00", "payment_method": "stripe",
        "stripe_email": "aff@example.com", "full_name": "Affiliate Person",
    })
    assert response.status_code == 400
    assert response.get_json()["error"] == "below_minimum_threshold"


# ---- Admin ----

def test_admin_routes_need_admin_role(client, login, make_user):
    assert client.get("/api/admin/orders").status_code == 401
    login(make_user())
    response = client.get("/api/admin/orders")
    assert response.status_code == 403
    assert response.get_json()["error"] == "forbidden"


def test_admin_status_update_is_audited(client, login, make_user, make_order):
    login(make_user(role="admin"))
    order = make_order()

    response = client.put(f"/api/admin/orders/{order.id}/status", json={"status": "in_production"})

    assert response.status_code == 200
    assert response.get_json()["data"]["stage_index"] == 1
    assert AuditLog.query.count() == 1

    response = client.put(f"/api/admin/orders/{order.id}/status", json={"status": "ready_for_review"})
    assert response.status_code == 400


def test_admin_uploads_song_version(client, login, make_user, make_order):
    login(make_user(role="admin"))
    order = make_order(status="song_production", workflow_stage=4)

    response = client.post(f"/api/admin/orders/{order.id}/songs", json={"file_path": "songs/take1.mp3"})

    assert response.status_code == 201
    assert db.session.get(Order, order.id).status == "song_review"


def test_admin_approves_affiliate(client, login, make_user, make_affiliate):
    login(make_user(role="admin"))
    affiliate = make_affiliate(status="pending")

    response = client.post(f"/api/admin/affiliates/{affiliate.id}/approve", json={"commission_rate": 12})

    assert response.status_code == 200
    assert response.get_json()["data"]["affiliate_code"].startswith("SONG")
