import pytest

from backoffice.extensions import db
from backoffice.models import Payment


@pytest.fixture()
def csrf_enabled(app, monkeypatch):
    # Flask-WTF reads the flag per request
    monkeypatch.setitem(app.config, "WTF_CSRF_ENABLED", True)


def _login(client, admin_user):
    resp = client.post("/api/admin/auth/login", json={"email": admin_user["email"], "password": admin_user["password"]})
    assert resp.status_code == 200, resp.get_json()


def _assert_csrf_rejected(resp):
    assert resp.status_code == 400
    body = resp.get_json()
    assert body["success"] is False
    assert body["error"].startswith("CSRF validation failed")


def test_admin_mutations_require_token(csrf_enabled, client, admin_user, make_client, make_payment,
                                       fake_stripe, app):
    _login(client, admin_user)
    pid = make_payment(make_client())

    _assert_csrf_rejected(client.post(f"/api/admin/payments/{pid}/refund", json={}))
    _assert_csrf_rejected(client.post("/api/admin/auth/logout"))
    assert fake_stripe.refunds.calls == []
    with app.app_context():
        assert db.session.get(Payment, pid).status == "SUCCEEDED"

    # reads are not protected
    assert client.get("/api/admin/auth/verify").status_code == 200

    token = client.get("/api/admin/auth/csrf-token").get_json()["data"]["csrf_token"]
    headers = {"X-CSRFToken": token}

    resp = client.post(f"/api/admin/payments/{pid}/refund", json={}, headers=headers)
    assert resp.status_code == 200, resp.get_json()
    assert resp.get_json()["data"]["payment"]["status"] == "REFUNDED"

    resp = client.post("/api/admin/auth/logout", headers=headers)
    assert resp.status_code == 200
    assert client.get("/api/admin/auth/verify").status_code == 401


def test_wrong_token_is_rejected(csrf_enabled, client, admin_user):
    _login(client, admin_user)
    client.get("/api/admin/auth/csrf-token")
    _assert_csrf_rejected(client.post("/api/admin/auth/logout", headers={"X-CSRFToken": "not-a-token"}))


def test_login_checkout_and_webhooks_are_exempt(csrf_enabled, client, admin_user, fake_stripe, post_event):
    _login(client, admin_user)

    checkout = client.post("/api/stripe/checkout", json={
        "priceId": "price_1",
        "customerEmail": "buyer@example.com",
        "customerName": "Buyer",
        "paymentType": "one-time",
    })
    assert checkout.status_code == 200

    resp = post_event("evt_csrf_1", "charge.dispute.created", {"id": "dp_1"})
    assert resp.status_code == 200
    assert resp.get_json()["received"] is True
