import dataclasses
import json
import time

import pytest

from backoffice.extensions import db
from backoffice.models import Client, Payment, Subscription, WebhookEvent
from backoffice.services.webhook_events import (
    EventKind,
    MalformedEvent,
    SignatureError,
    parse_event,
    verify_signature,
)
from conftest import WEBHOOK_SECRET, stripe_signature

URL = "/api/stripe/webhooks"


def _body(event_id="evt_1", event_type="payment_intent.succeeded", obj=None):
    return json.dumps({"id": event_id, "type": event_type, "data": {"object": obj or {"id": "pi_1"}}}).encode()


# ---------------------------------------------------------------------------
# Envelope
# ---------------------------------------------------------------------------

def test_verify_signature_accepts_exact_bytes():
    body = _body()
    verify_signature(body, stripe_signature(body), WEBHOOK_SECRET)


def test_any_single_byte_change_breaks_the_signature():
    body = _body()
    header = stripe_signature(body)
    for i in (0, len(body) // 2, len(body) - 1):
        mutated = bytearray(body)
        mutated[i] = (mutated[i] + 1) % 128
        with pytest.raises(SignatureError):
            verify_signature(bytes(mutated), header, WEBHOOK_SECRET)


def test_stale_or_foreign_signatures_are_rejected():
    body = _body()
    with pytest.raises(SignatureError):
        verify_signature(body, stripe_signature(body, timestamp=int(time.time()) - 3600), WEBHOOK_SECRET)
    with pytest.raises(SignatureError):
        verify_signature(body, stripe_signature(body, secret="whsec_other"), WEBHOOK_SECRET)
    with pytest.raises(SignatureError):
        verify_signature(body, "garbage", WEBHOOK_SECRET)
    with pytest.raises(SignatureError):
        verify_signature(body, "", WEBHOOK_SECRET)


def test_parse_event_kinds():
    ev = parse_event(_body(event_type="customer.subscription.deleted", obj={"id": "sub_1"}))
    assert ev.kind is EventKind.SUBSCRIPTION_DELETED
    assert ev.obj == {"id": "sub_1"}

    ev = parse_event(json.dumps({"id": "evt_2", "type": "charge.dispute.created"}).encode())
    assert ev.kind is EventKind.UNRECOGNIZED
    assert not ev.recognized


@pytest.mark.parametrize("raw", [
    b"not json",
    b"[1, 2]",
    json.dumps({"type": "payment_intent.succeeded", "data": {"object": {}}}).encode(),
    json.dumps({"id": "evt_1", "type": "payment_intent.succeeded", "data": {}}).encode(),
])
def test_parse_event_rejects_malformed(raw):
    with pytest.raises(MalformedEvent):
        parse_event(raw)


# ---------------------------------------------------------------------------
# Route: rejections
# ---------------------------------------------------------------------------

def test_missing_signature_header(client):
    resp = client.post(URL, data=_body(), content_type="application/json")
    assert resp.status_code == 400
    assert resp.get_json() == {"error": "Missing stripe-signature header"}


def test_bad_signature_is_rejected_and_recorded(client, app):
    body = _body()
    headers = {"Stripe-Signature": stripe_signature(body, secret="whsec_wrong")}
    resp = client.post(URL, data=body, headers=headers, content_type="application/json")
    assert resp.status_code == 400
    assert resp.get_json() == {"error": "Webhook signature verification failed"}

    # the same bad delivery again does not add a second row
    client.post(URL, data=body, headers=headers, content_type="application/json")
    with app.app_context():
        rows = WebhookEvent.query.all()
        assert len(rows) == 1
        assert rows[0].signature_valid is False
        assert rows[0].stripe_event_id.startswith("invalid:")
        assert rows[0].processed_at is None


def test_unsigned_deliveries_stop_filling_the_ledger(client, app, monkeypatch):
    from backoffice.blueprints.webhooks import routes
    monkeypatch.setattr(routes, "INVALID_SIGNATURE_ROWS_PER_HOUR", 3)

    for i in range(5):
        body = _body(event_id=f"evt_forged_{i}")
        headers = {"Stripe-Signature": stripe_signature(body, secret="whsec_wrong")}
        resp = client.post(URL, data=body, headers=headers, content_type="application/json")
        assert resp.status_code == 400

    with app.app_context():
        assert WebhookEvent.query.filter_by(signature_valid=False).count() == 3


def test_unconfigured_secret(client, app, monkeypatch):
    settings = dataclasses.replace(app.extensions["settings"], webhook_secret=None)
    monkeypatch.setitem(app.extensions, "settings", settings)
    body = _body()
    resp = client.post(URL, data=body, headers={"Stripe-Signature": stripe_signature(body)},
                       content_type="application/json")
    assert resp.status_code == 400
    assert resp.get_json() == {"error": "Webhook secret not configured"}


def test_malformed_but_signed_body(client):
    body = b'{"type": "payment_intent.succeeded"}'
    resp = client.post(URL, data=body, headers={"Stripe-Signature": stripe_signature(body)},
                       content_type="application/json")
    assert resp.status_code == 400
    assert resp.get_json() == {"error": "Malformed event"}


def test_unrecognized_type_is_acknowledged(post_event, app):
    resp = post_event("evt_unknown", "charge.dispute.created", {"id": "dp_1"})
    assert resp.status_code == 200
    assert resp.get_json() == {"received": True}
    with app.app_context():
        ledger = WebhookEvent.query.filter_by(stripe_event_id="evt_unknown").one()
        assert ledger.processed_at is not None
        assert ledger.notes == "unhandled"


# ---------------------------------------------------------------------------
# Payments
# ---------------------------------------------------------------------------

def test_payment_succeeded_is_idempotent(post_event, make_client, make_payment, app):
    cid = make_client()
    pid = make_payment(cid, status="PENDING", intent="pi_9")
    obj = {"id": "pi_9", "latest_charge": "ch_9", "payment_method_types": ["card"]}

    first = post_event("evt_pi_9", "payment_intent.succeeded", obj)
    assert first.status_code == 200
    second = post_event("evt_pi_9", "payment_intent.succeeded", obj)
    assert second.status_code == 200
    assert second.get_json() == {"received": True, "duplicate": True}

    with app.app_context():
        p = db.session.get(Payment, pid)
        assert p.status == "SUCCEEDED"
        assert p.stripe_charge_id == "ch_9"
        assert p.payment_method == "card"
        assert p.paid_at is not None
        assert WebhookEvent.query.filter_by(stripe_event_id="evt_pi_9").count() == 1


def test_late_failure_does_not_undo_success(post_event, make_client, make_payment, app):
    cid = make_client()
    pid = make_payment(cid, status="SUCCEEDED", intent="pi_ok")
    resp = post_event("evt_fail_late", "payment_intent.payment_failed",
                      {"id": "pi_ok", "last_payment_error": {"message": "card declined"}})
    assert resp.status_code == 200
    with app.app_context():
        assert db.session.get(Payment, pid).status == "SUCCEEDED"


def test_payment_failed_records_reason(post_event, make_client, make_payment, app):
    cid = make_client()
    pid = make_payment(cid, status="PENDING", intent="pi_bad")
    post_event("evt_fail", "payment_intent.payment_failed",
               {"id": "pi_bad", "last_payment_error": {"message": "card declined"}})
    with app.app_context():
        p = db.session.get(Payment, pid)
        assert p.status == "FAILED"
        assert p.meta["last_payment_error"] == "card declined"


CHECKOUT = {
    "id": "cs_1",
    "object": "checkout.session",
    "mode": "payment",
    "payment_status": "paid",
    "customer_email": "New@Buyer.com",
    "customer": "cus_9",
    "payment_intent": "pi_cs_1",
    "amount_total": 25000,
    "currency": "usd",
    "payment_method_types": ["card"],
    "metadata": {"customer_name": "New Buyer", "payment_type": "one-time"},
}


def test_checkout_completed_creates_client_and_payment(post_event, app):
    assert post_event("evt_cs_1", "checkout.session.completed", CHECKOUT).status_code == 200
    # a second event about the same session must not duplicate anything
    assert post_event("evt_cs_1b", "checkout.session.completed", CHECKOUT).status_code == 200
    assert post_event("evt_pi_cs_1", "payment_intent.succeeded", {"id": "pi_cs_1"}).status_code == 200

    with app.app_context():
        client = Client.query.one()
        assert client.email == "new@buyer.com"
        assert client.name == "New Buyer"
        assert client.stripe_customer_id == "cus_9"

        payment = Payment.query.one()
        assert payment.client_id == client.id
        assert payment.amount_cents == 25000
        assert payment.payment_type == "ONE_TIME"
        assert payment.status == "SUCCEEDED"
        assert payment.stripe_checkout_session_id == "cs_1"


def test_checkout_for_existing_client_reuses_it(post_event, make_client, app):
    cid = make_client(email="new@buyer.com", name="Known Buyer")
    post_event("evt_cs_2", "checkout.session.completed", CHECKOUT)
    with app.app_context():
        assert Client.query.count() == 1
        client = db.session.get(Client, cid)
        assert client.name == "Known Buyer"
        assert client.stripe_customer_id == "cus_9"


# ---------------------------------------------------------------------------
# Subscriptions
# ---------------------------------------------------------------------------

def _sub(status="active", **kw):
    obj = {
        "id": "sub_777",
        "object": "subscription",
        "customer": "cus_1",
        "status": status,
        "cancel_at_period_end": False,
        "currency": "usd",
        "metadata": {"product_type": "MAINTENANCE_PRO"},
        "items": {"data": [{"quantity": 1, "price": {"unit_amount": 9900, "currency": "usd"},
                            "current_period_start": 1760000000, "current_period_end": 1762600000}]},
    }
    obj.update(kw)
    return obj


def test_subscription_created_and_updated(post_event, make_client, app):
    make_client(stripe_customer_id="cus_1")
    assert post_event("evt_s1", "customer.subscription.created", _sub()).status_code == 200
    assert post_event("evt_s2", "customer.subscription.updated", _sub(status="past_due")).status_code == 200

    with app.app_context():
        sub = Subscription.query.filter_by(stripe_subscription_id="sub_777").one()
        assert sub.status == "PAST_DUE"
        assert sub.amount_cents == 9900
        assert sub.product_type == "MAINTENANCE_PRO"
        assert sub.current_period_end is not None


def test_delete_before_create_leaves_subscription_canceled(post_event, make_client, app):
    make_client(stripe_customer_id="cus_1")
    assert post_event("evt_del", "customer.subscription.deleted",
                      _sub(status="canceled", canceled_at=1761000000)).status_code == 200
    assert post_event("evt_create_late", "customer.subscription.created", _sub()).status_code == 200
    assert post_event("evt_update_late", "customer.subscription.updated", _sub()).status_code == 200

    with app.app_context():
        sub = Subscription.query.filter_by(stripe_subscription_id="sub_777").one()
        assert sub.status == "CANCELED"
        assert sub.canceled_at is not None


def test_canceled_subscription_is_never_resurrected(post_event, make_client, make_subscription, app):
    cid = make_client(stripe_customer_id="cus_1")
    sid = make_subscription(cid, stripe_id="sub_777")
    assert post_event("evt_d", "customer.subscription.deleted", _sub(status="canceled")).status_code == 200
    repeat = post_event("evt_d", "customer.subscription.deleted", _sub(status="canceled"))
    assert repeat.get_json() == {"received": True, "duplicate": True}
    post_event("evt_u", "customer.subscription.updated", _sub(status="active"))
    with app.app_context():
        assert db.session.get(Subscription, sid).status == "CANCELED"


def test_unknown_customer_is_deferred_then_applied(post_event, make_client, app):
    obj = _sub()
    first = post_event("evt_early", "customer.subscription.created", obj)
    assert first.status_code == 500
    assert first.get_json() == {"error": "Webhook handler failed"}
    post_event("evt_early", "customer.subscription.created", obj)

    with app.app_context():
        ledger = WebhookEvent.query.filter_by(stripe_event_id="evt_early").one()
        assert ledger.processed_at is None
        assert ledger.retries == 2
        assert ledger.notes == "handler_error:ReconciliationDeferred"
        assert Subscription.query.count() == 0

    make_client(stripe_customer_id="cus_1")
    assert post_event("evt_early", "customer.subscription.created", obj).status_code == 200
    with app.app_context():
        assert Subscription.query.count() == 1
        assert WebhookEvent.query.filter_by(stripe_event_id="evt_early").one().processed_at is not None


# ---------------------------------------------------------------------------
# Invoices
# ---------------------------------------------------------------------------

def _invoice(**kw):
    obj = {
        "id": "in_1",
        "object": "invoice",
        "subscription": "sub_123",
        "customer": "cus_1",
        "amount_paid": 5000,
        "amount_due": 5000,
        "currency": "usd",
        "payment_intent": "pi_in_1",
        "charge": "ch_in_1",
        "number": "0001",
        "status_transitions": {"paid_at": 1760000000},
    }
    obj.update(kw)
    return obj


def test_invoice_paid_records_subscription_payment(post_event, make_client, make_subscription, app):
    cid = make_client(stripe_customer_id="cus_1")
    sid = make_subscription(cid)
    assert post_event("evt_in_paid", "invoice.payment_succeeded", _invoice()).status_code == 200
    assert post_event("evt_in_paid_again", "invoice.payment_succeeded", _invoice()).status_code == 200

    with app.app_context():
        payment = Payment.query.one()
        assert payment.payment_type == "SUBSCRIPTION"
        assert payment.status == "SUCCEEDED"
        assert payment.subscription_id == sid
        assert payment.amount_cents == 5000
        assert payment.meta == {"invoice_number": "0001"}


def test_invoice_failed_marks_subscription_past_due(post_event, make_client, make_subscription, app):
    cid = make_client(stripe_customer_id="cus_1")
    sid = make_subscription(cid)
    resp = post_event("evt_in_failed", "invoice.payment_failed", _invoice(amount_paid=0, attempt_count=2))
    assert resp.status_code == 200
    with app.app_context():
        assert db.session.get(Subscription, sid).status == "PAST_DUE"
        payment = Payment.query.one()
        assert payment.status == "FAILED"
        assert payment.meta["attempt_count"] == 2
