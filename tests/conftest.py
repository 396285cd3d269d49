import hashlib
import hmac
import json
import os
import time
from types import SimpleNamespace

# Ensure the app factory picks the Testing config & SQLite memory DB
os.environ.setdefault("APP_ENV", "testing")
os.environ.setdefault("TEST_DATABASE_URL", "sqlite:///:memory:")

import pytest
from backoffice import create_app
from backoffice.extensions import db
from backoffice.models import AdminUser, Client, Payment, Subscription

WEBHOOK_SECRET = "whsec_test_x"
ADMIN_EMAIL = "a@x.com"
ADMIN_PASSWORD = "correct horse battery"


@pytest.fixture(scope="session")
def app():
    app = create_app()
    app.config.update(
        TESTING=True,
        WTF_CSRF_ENABLED=False,
    )
    with app.app_context():
        db.create_all()
    yield app
    with app.app_context():
        db.drop_all()


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture(autouse=True)
def _db_clean(app):
    # Clean BEFORE each test
    with app.app_context():
        db.session.rollback()
        for tbl in reversed(db.metadata.sorted_tables):
            db.session.execute(tbl.delete())
        db.session.commit()
    yield
    # And AFTER each test (keeps state hermetic even if a test fails mid-transaction)
    with app.app_context():
        db.session.rollback()
        for tbl in reversed(db.metadata.sorted_tables):
            db.session.execute(tbl.delete())
        db.session.commit()


@pytest.fixture()
def admin_user(app):
    with app.app_context():
        user = AdminUser(email=ADMIN_EMAIL, name="Studio Admin", is_active=True)
        user.set_password(ADMIN_PASSWORD)
        db.session.add(user)
        db.session.commit()
        return {"id": user.id, "email": ADMIN_EMAIL, "password": ADMIN_PASSWORD, "name": "Studio Admin"}


@pytest.fixture()
def auth_client(client, admin_user):
    resp = client.post("/api/admin/auth/login", json={"email": admin_user["email"], "password": admin_user["password"]})
    assert resp.status_code == 200, resp.get_json()
    return client


# ---------------------------------------------------------------------------
# Data builders
# ---------------------------------------------------------------------------

@pytest.fixture()
def make_client(app):
    def _make(email="buyer@example.com", name="Buyer", **kw):
        with app.app_context():
            c = Client(email=email, name=name, **kw)
            db.session.add(c)
            db.session.commit()
            return c.id
    return _make


@pytest.fixture()
def make_payment(app):
    def _make(client_id, amount_cents=10000, status="SUCCEEDED", payment_type="ONE_TIME",
              intent="pi_123", **kw):
        with app.app_context():
            p = Payment(client_id=client_id, amount_cents=amount_cents, status=status,
                        payment_type=payment_type, stripe_payment_intent_id=intent, currency="usd", **kw)
            db.session.add(p)
            db.session.commit()
            return p.id
    return _make


@pytest.fixture()
def make_subscription(app):
    def _make(client_id, stripe_id="sub_123", status="ACTIVE", amount_cents=5000, **kw):
        with app.app_context():
            s = Subscription(client_id=client_id, stripe_subscription_id=stripe_id, status=status,
                             amount_cents=amount_cents, product_type="MAINTENANCE_BASIC", **kw)
            db.session.add(s)
            db.session.commit()
            return s.id
    return _make


# ---------------------------------------------------------------------------
# Stripe boundary
# ---------------------------------------------------------------------------

def stripe_signature(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> str:
    """Stripe-format signature header over the exact payload bytes."""
    ts = int(timestamp if timestamp is not None else time.time())
    mac = hmac.new(secret.encode("utf-8"), f"{ts}.".encode("utf-8") + payload, hashlib.sha256).hexdigest()
    return f"t={ts},v1={mac}"


@pytest.fixture()
def post_event(client):
    def _post(event_id, event_type, obj):
        body = json.dumps({"id": event_id, "object": "event", "type": event_type,
                           "data": {"object": obj}}).encode("utf-8")
        return client.post(
            "/api/stripe/webhooks",
            data=body,
            headers={"Stripe-Signature": stripe_signature(body), "Content-Type": "application/json"},
        )
    return _post


class _Recorder:
    """Stands in for one StripeClient service (refunds, subscriptions, ...)."""

    def __init__(self, **responses):
        self.calls = []
        self._responses = responses

    def respond(self, method, result):
        self._responses[method] = result

    def __getattr__(self, method):
        if method.startswith("_"):
            raise AttributeError(method)

        def _call(*args, **kwargs):
            self.calls.append((method, args, kwargs))
            result = self._responses.get(method)
            if isinstance(result, Exception):
                raise result
            return result(*args, **kwargs) if callable(result) else result
        return _call


class FakeStripe:
    def __init__(self):
        self.refunds = _Recorder(create={"id": "re_123", "status": "succeeded"})
        self.subscriptions = _Recorder(
            update=lambda sub_id, params=None: {"id": sub_id, "status": "active", "cancel_at_period_end": True},
            cancel=lambda sub_id, params=None: {"id": sub_id, "status": "canceled"},
        )
        self.customers = _Recorder(create={"id": "cus_new"})
        self.prices = _Recorder(retrieve={"id": "price_1", "unit_amount": 10000})
        self.accounts = _Recorder()
        self.account_links = _Recorder(create={"url": "https://connect.stripe.test/onboard", "expires_at": 1})

        self.checkout = SimpleNamespace(
            sessions=_Recorder(create={"id": "cs_test_1", "url": "https://checkout.stripe.test/cs_test_1"}),
        )


@pytest.fixture()
def fake_stripe(monkeypatch):
    fake = FakeStripe()
    from backoffice.services import gateway
    monkeypatch.setattr(gateway, "_client", lambda: fake)
    return fake
