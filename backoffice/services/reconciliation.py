"""
Apply Stripe events to local records.

Every handler is an upsert keyed by a Stripe identifier, so a redelivered
event lands on the row it created the first time. Handlers only stage
changes on db.session; the webhook route owns the transaction, which also
covers the event ledger row.

Events arrive out of order. Two rules keep that safe:
  * a CANCELED subscription never changes again;
  * a SUCCEEDED or REFUNDED payment is never moved back.
"""
import logging
from typing import Any, Callable, Dict, Optional

from backoffice.errors import TransientError
from backoffice.extensions import db
from backoffice.models import (
    Client,
    Payment,
    Project,
    Subscription,
    PRODUCT_TYPES,
    PAYMENT_TYPES,
    PAYMENT_ONE_TIME,
    PAYMENT_SUBSCRIPTION,
    PAYMENT_DEPOSIT,
    PAYMENT_FINAL,
    PAY_PENDING,
    PAY_PROCESSING,
    PAY_SUCCEEDED,
    PAY_FAILED,
    PAY_REFUNDED,
    SUB_ACTIVE,
    SUB_PAST_DUE,
    SUB_UNPAID,
    SUB_INCOMPLETE,
    SUB_TRIALING,
    SUB_CANCELED,
)
from backoffice.services.gateway import field, object_id
from backoffice.services.webhook_events import EventKind, StripeEvent
from backoffice.utils.helpers import from_timestamp, isoformat, safe_int, utcnow
from backoffice.utils.validators import clean_str, email_local_part, normalize_email

logger = logging.getLogger(__name__)

_SETTLED = (PAY_SUCCEEDED, PAY_REFUNDED)

_STATUS_MAP = {
    "active": SUB_ACTIVE,
    "past_due": SUB_PAST_DUE,
    "unpaid": SUB_UNPAID,
    "incomplete": SUB_INCOMPLETE,
    "incomplete_expired": SUB_CANCELED,
    "trialing": SUB_TRIALING,
    "canceled": SUB_CANCELED,
}


def map_subscription_status(value: Optional[str]) -> Optional[str]:
    return _STATUS_MAP.get(value or "")


class ReconciliationDeferred(TransientError):
    """The event references something not recorded yet; let Stripe redeliver it later."""
    message = "Reconciliation deferred"


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------

def payment_type_from_metadata(metadata: Dict[str, Any]) -> str:
    raw = (metadata.get("payment_type") or "").strip().upper().replace("-", "_")
    if raw in PAYMENT_TYPES:
        return raw
    if metadata.get("subscription_id"):
        return PAYMENT_SUBSCRIPTION
    if metadata.get("deposit"):
        return PAYMENT_DEPOSIT
    if metadata.get("final_payment"):
        return PAYMENT_FINAL
    return PAYMENT_ONE_TIME


def _claim_customer_id(client: Client, customer_id: Optional[str]) -> None:
    if not customer_id or client.stripe_customer_id:
        return
    owner = Client.query.filter_by(stripe_customer_id=customer_id).first()
    if owner is None:
        client.stripe_customer_id = customer_id
    elif owner.id != client.id:
        logger.warning("webhook.customer_id_conflict",
                       extra={"customer_id": customer_id, "client_id": client.id, "owner_id": owner.id})


def resolve_client(customer_id: Optional[str], metadata: Optional[Dict[str, Any]] = None) -> Optional[Client]:
    """By Stripe customer id first, then by the client_id we stamp into metadata."""
    if customer_id:
        client = Client.query.filter_by(stripe_customer_id=customer_id).first()
        if client:
            return client
    client_id = safe_int((metadata or {}).get("client_id"))
    if client_id:
        client = db.session.get(Client, client_id)
        if client:
            _claim_customer_id(client, customer_id)
            return client
    return None


def _upsert_client_by_email(email: str, *, name: Optional[str], customer_id: Optional[str],
                            company: Optional[str], phone: Optional[str]) -> Client:
    client = Client.query.filter_by(email=email).first()
    if client is None:
        client = Client(email=email, name=name or email_local_part(email), company=company, phone=phone)
        db.session.add(client)
        db.session.flush()
        logger.info("webhook.client_created", extra={"client_id": client.id})
    else:
        if company and not client.company:
            client.company = company
        if phone and not client.phone:
            client.phone = phone
    _claim_customer_id(client, customer_id)
    return client


def _linked_project_id(metadata: Dict[str, Any], client: Client) -> Optional[int]:
    project_id = safe_int(metadata.get("project_id"))
    if not project_id:
        return None
    project = db.session.get(Project, project_id)
    if project is None or project.client_id != client.id:
        logger.warning("webhook.project_link_ignored", extra={"project_id": project_id, "client_id": client.id})
        return None
    return project.id


def _mark_succeeded(payment: Payment, *, charge_id: Optional[str] = None, method: Optional[str] = None) -> bool:
    if payment.status not in (PAY_PENDING, PAY_PROCESSING, PAY_FAILED):
        return False
    payment.status = PAY_SUCCEEDED
    payment.paid_at = payment.paid_at or utcnow()
    if charge_id and not payment.stripe_charge_id:
        payment.stripe_charge_id = charge_id
    if method and not payment.payment_method:
        payment.payment_method = method
    return True


def _first_method(obj: Dict[str, Any]) -> Optional[str]:
    types = obj.get("payment_method_types") or []
    return types[0] if types else None


# ---------------------------------------------------------------------------
# Checkout & payment intents
# ---------------------------------------------------------------------------

def handle_checkout_completed(session: Dict[str, Any]) -> str:
    details = session.get("customer_details") or {}
    email = normalize_email(session.get("customer_email") or field(details, "email"))
    if not email:
        logger.warning("webhook.checkout_without_email", extra={"session_id": session.get("id")})
        return "ignored"

    metadata = dict(session.get("metadata") or {})
    name = clean_str(metadata.get("customer_name") or metadata.get("customerName") or field(details, "name"))
    client = _upsert_client_by_email(
        email,
        name=name,
        customer_id=object_id(session.get("customer")),
        company=clean_str(metadata.get("company")),
        phone=clean_str(field(details, "phone"), max_len=32),
    )

    if session.get("mode") == "subscription":
        # Recurring money is recorded from invoice events
        return "client_linked"

    intent_id = object_id(session.get("payment_intent"))
    session_id = session.get("id")
    payment = None
    if intent_id:
        payment = Payment.query.filter_by(stripe_payment_intent_id=intent_id).first()
    if payment is None and session_id:
        payment = Payment.query.filter_by(stripe_checkout_session_id=session_id).first()

    if payment is None:
        payment = Payment(
            client_id=client.id,
            project_id=_linked_project_id(metadata, client),
            stripe_payment_intent_id=intent_id,
            stripe_checkout_session_id=session_id,
            amount_cents=int(session.get("amount_total") or 0),
            currency=(session.get("currency") or "usd").lower(),
            payment_type=payment_type_from_metadata(metadata),
            status=PAY_PENDING,
            payment_method=_first_method(session),
            meta=metadata,
        )
        db.session.add(payment)
        outcome = "payment_created"
    else:
        if intent_id and not payment.stripe_payment_intent_id:
            payment.stripe_payment_intent_id = intent_id
        if session_id and not payment.stripe_checkout_session_id:
            payment.stripe_checkout_session_id = session_id
        outcome = "payment_exists"

    if session.get("payment_status") in ("paid", "no_payment_required"):
        _mark_succeeded(payment, method=_first_method(session))
    return outcome


def handle_payment_succeeded(intent: Dict[str, Any]) -> str:
    payment = Payment.query.filter_by(stripe_payment_intent_id=intent.get("id")).first()
    if payment is None:
        # checkout.session.completed records it
        logger.info("webhook.payment_unknown", extra={"payment_intent": intent.get("id")})
        return "ignored"
    changed = _mark_succeeded(
        payment,
        charge_id=object_id(intent.get("latest_charge")),
        method=_first_method(intent),
    )
    return "payment_succeeded" if changed else "noop"


def handle_payment_failed(intent: Dict[str, Any]) -> str:
    payment = Payment.query.filter_by(stripe_payment_intent_id=intent.get("id")).first()
    if payment is None:
        logger.info("webhook.payment_unknown", extra={"payment_intent": intent.get("id")})
        return "ignored"
    if payment.status not in (PAY_PENDING, PAY_PROCESSING):
        return "noop"
    error = intent.get("last_payment_error") or {}
    payment.status = PAY_FAILED
    payment.merge_meta(
        last_payment_error=field(error, "message") or field(error, "code") or "unknown",
        failed_at=isoformat(utcnow()),
    )
    return "payment_failed"


# ---------------------------------------------------------------------------
# Subscriptions
# ---------------------------------------------------------------------------

def _first_item(sub: Dict[str, Any]) -> Dict[str, Any]:
    items = field(sub.get("items"), "data") or []
    return items[0] if items else {}


def _period(sub: Dict[str, Any], key: str):
    return from_timestamp(sub.get(key) or _first_item(sub).get(key))


def apply_subscription_fields(row: Subscription, sub: Dict[str, Any], status: Optional[str]) -> None:
    item = _first_item(sub)
    price = item.get("price") or {}
    if status:
        row.status = status
    if price.get("unit_amount") is not None:
        row.amount_cents = int(price["unit_amount"]) * int(item.get("quantity") or 1)
    row.currency = (sub.get("currency") or price.get("currency") or row.currency or "usd").lower()
    row.cancel_at_period_end = bool(sub.get("cancel_at_period_end"))
    row.canceled_at = from_timestamp(sub.get("canceled_at")) or row.canceled_at
    row.current_period_start = _period(sub, "current_period_start") or row.current_period_start
    row.current_period_end = _period(sub, "current_period_end") or row.current_period_end


def _new_subscription(sub: Dict[str, Any], client: Client) -> Subscription:
    product_type = ((sub.get("metadata") or {}).get("product_type") or "CUSTOM").upper()
    row = Subscription(
        client_id=client.id,
        stripe_subscription_id=sub["id"],
        product_type=product_type if product_type in PRODUCT_TYPES else "CUSTOM",
        status=SUB_INCOMPLETE,
        amount_cents=0,
    )
    db.session.add(row)
    return row


def handle_subscription_upsert(sub: Dict[str, Any]) -> str:
    row = Subscription.query.filter_by(stripe_subscription_id=sub.get("id")).first()
    if row is not None and row.is_canceled:
        logger.info("webhook.subscription_terminal", extra={"subscription": sub.get("id")})
        return "noop"

    status = map_subscription_status(sub.get("status"))
    if status is None:
        logger.warning("webhook.subscription_status_unmapped", extra={"status": sub.get("status")})

    created = row is None
    if created:
        client = resolve_client(object_id(sub.get("customer")), sub.get("metadata"))
        if client is None:
            raise ReconciliationDeferred(f"No client for customer {object_id(sub.get('customer'))}")
        row = _new_subscription(sub, client)

    apply_subscription_fields(row, sub, status)
    if row.status == SUB_CANCELED and not row.canceled_at:
        row.canceled_at = utcnow()
    return "subscription_created" if created else "subscription_updated"


def handle_subscription_deleted(sub: Dict[str, Any]) -> str:
    row = Subscription.query.filter_by(stripe_subscription_id=sub.get("id")).first()
    ended = from_timestamp(sub.get("canceled_at") or sub.get("ended_at")) or utcnow()
    if row is not None:
        if row.is_canceled:
            return "noop"
        row.status = SUB_CANCELED
        row.canceled_at = ended
        return "subscription_canceled"

    client = resolve_client(object_id(sub.get("customer")), sub.get("metadata"))
    if client is None:
        logger.warning("webhook.subscription_deleted_unknown", extra={"subscription": sub.get("id")})
        return "ignored"
    # Tombstone: a late created/updated event must find it already CANCELED
    row = _new_subscription(sub, client)
    apply_subscription_fields(row, sub, SUB_CANCELED)
    row.canceled_at = ended
    return "subscription_tombstoned"


# ---------------------------------------------------------------------------
# Invoices
# ---------------------------------------------------------------------------

def _invoice_subscription_id(invoice: Dict[str, Any]) -> Optional[str]:
    sub_id = object_id(invoice.get("subscription"))
    if sub_id:
        return sub_id
    # newer API versions nest it under parent.subscription_details
    details = field(invoice.get("parent"), "subscription_details")
    return object_id(field(details, "subscription"))


def _invoice_context(invoice: Dict[str, Any]):
    sub_id = _invoice_subscription_id(invoice)
    sub = Subscription.query.filter_by(stripe_subscription_id=sub_id).first() if sub_id else None
    if sub is not None:
        return sub, sub.client
    return None, resolve_client(object_id(invoice.get("customer")), invoice.get("metadata"))


def _invoice_payment(invoice: Dict[str, Any]) -> Optional[Payment]:
    payment = Payment.query.filter_by(stripe_invoice_id=invoice.get("id")).first()
    if payment is not None:
        return payment
    intent_id = object_id(invoice.get("payment_intent"))
    if intent_id:
        payment = Payment.query.filter_by(stripe_payment_intent_id=intent_id).first()
        if payment is not None:
            if not payment.stripe_invoice_id:
                payment.stripe_invoice_id = invoice.get("id")
            return payment
    return None


def _new_invoice_payment(invoice: Dict[str, Any], *, client: Client, sub: Optional[Subscription],
                         amount: int, status: str) -> Payment:
    payment = Payment(
        client_id=client.id,
        subscription_id=sub.id if sub else None,
        stripe_invoice_id=invoice.get("id"),
        stripe_payment_intent_id=object_id(invoice.get("payment_intent")),
        stripe_charge_id=object_id(invoice.get("charge")),
        amount_cents=amount,
        currency=(invoice.get("currency") or "usd").lower(),
        payment_type=PAYMENT_SUBSCRIPTION,
        status=status,
        meta={"invoice_number": invoice.get("number")} if invoice.get("number") else {},
    )
    db.session.add(payment)
    return payment


def handle_invoice_paid(invoice: Dict[str, Any]) -> str:
    amount = int(invoice.get("amount_paid") or 0)
    if amount <= 0:
        return "ignored"
    sub, client = _invoice_context(invoice)
    if client is None:
        raise ReconciliationDeferred(f"No client for invoice {invoice.get('id')}")

    payment = _invoice_payment(invoice)
    outcome = "invoice_updated"
    if payment is None:
        payment = _new_invoice_payment(invoice, client=client, sub=sub, amount=amount, status=PAY_PENDING)
        outcome = "invoice_recorded"
    if not _mark_succeeded(payment, charge_id=object_id(invoice.get("charge"))):
        return "noop"
    paid_ts = from_timestamp(field(invoice.get("status_transitions"), "paid_at"))
    if paid_ts:
        payment.paid_at = paid_ts
    return outcome


def handle_invoice_failed(invoice: Dict[str, Any]) -> str:
    sub, client = _invoice_context(invoice)
    if sub is not None and not sub.is_canceled:
        sub.status = SUB_PAST_DUE
    if client is None:
        logger.warning("webhook.invoice_client_unknown", extra={"invoice": invoice.get("id")})
        return "ignored"

    amount = int(invoice.get("amount_due") or 0)
    payment = _invoice_payment(invoice)
    if payment is None:
        if amount <= 0:
            return "subscription_past_due" if sub else "ignored"
        payment = _new_invoice_payment(invoice, client=client, sub=sub, amount=amount, status=PAY_FAILED)
    elif payment.status in _SETTLED:
        return "noop"
    else:
        payment.status = PAY_FAILED
    payment.merge_meta(failed_at=isoformat(utcnow()), attempt_count=invoice.get("attempt_count"))
    return "invoice_failed"


_HANDLERS: Dict[EventKind, Callable[[Dict[str, Any]], str]] = {
    EventKind.CHECKOUT_COMPLETED: handle_checkout_completed,
    EventKind.PAYMENT_SUCCEEDED: handle_payment_succeeded,
    EventKind.PAYMENT_FAILED: handle_payment_failed,
    EventKind.SUBSCRIPTION_CREATED: handle_subscription_upsert,
    EventKind.SUBSCRIPTION_UPDATED: handle_subscription_upsert,
    EventKind.SUBSCRIPTION_DELETED: handle_subscription_deleted,
    EventKind.INVOICE_PAID: handle_invoice_paid,
    EventKind.INVOICE_FAILED: handle_invoice_failed,
}


def reconcile(event: StripeEvent) -> str:
    """Stage the local effects of one event. Returns a short outcome label."""
    handler = _HANDLERS.get(event.kind)
    if handler is None:
        logger.info("webhook.unhandled_event", extra={"event_id": event.id, "type": event.type})
        return "unhandled"
    outcome = handler(event.obj)
    logger.info("webhook.reconciled", extra={"event_id": event.id, "type": event.type, "outcome": outcome})
    return outcome
