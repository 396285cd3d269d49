"""
Stripe webhook envelope: signature check over the raw body, then parsing into
a closed set of event kinds.
"""
import enum
import hashlib
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict

import stripe

logger = logging.getLogger(__name__)

SIGNATURE_TOLERANCE_SECONDS = 300


class SignatureError(Exception):
    """Signature header missing, unparsable, stale or not matching the body."""


class MalformedEvent(Exception):
    pass


class EventKind(enum.Enum):
    CHECKOUT_COMPLETED = "checkout.session.completed"
    PAYMENT_SUCCEEDED = "payment_intent.succeeded"
    PAYMENT_FAILED = "payment_intent.payment_failed"
    SUBSCRIPTION_CREATED = "customer.subscription.created"
    SUBSCRIPTION_UPDATED = "customer.subscription.updated"
    SUBSCRIPTION_DELETED = "customer.subscription.deleted"
    INVOICE_PAID = "invoice.payment_succeeded"
    INVOICE_FAILED = "invoice.payment_failed"
    UNRECOGNIZED = "unrecognized"

    @classmethod
    def from_type(cls, event_type: str) -> "EventKind":
        try:
            return cls(event_type)
        except ValueError:
            return cls.UNRECOGNIZED


@dataclass(frozen=True)
class StripeEvent:
    id: str
    type: str
    kind: EventKind
    obj: Dict[str, Any] = field(default_factory=dict)
    payload: Dict[str, Any] = field(default_factory=dict)

    @property
    def recognized(self) -> bool:
        return self.kind is not EventKind.UNRECOGNIZED


def body_digest(raw: bytes) -> str:
    return hashlib.sha256(raw).hexdigest()[:32]


def verify_signature(raw: bytes, header: str, secret: str) -> None:
    """
    Raise SignatureError unless header carries a valid v1 signature of the
    exact bytes in raw. The body must not be re-serialized before this.
    """
    if not header:
        raise SignatureError("missing header")
    try:
        payload = raw.decode("utf-8")
    except UnicodeDecodeError as e:
        raise SignatureError("body is not utf-8") from e
    try:
        stripe.WebhookSignature.verify_header(payload, header, secret, tolerance=SIGNATURE_TOLERANCE_SECONDS)
    except stripe.SignatureVerificationError as e:
        raise SignatureError(str(e)) from e


def parse_event(raw: bytes) -> StripeEvent:
    try:
        payload = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise MalformedEvent("body is not JSON") from e
    if not isinstance(payload, dict):
        raise MalformedEvent("event is not an object")

    ev_id, ev_type = payload.get("id"), payload.get("type")
    if not isinstance(ev_id, str) or not ev_id or not isinstance(ev_type, str) or not ev_type:
        raise MalformedEvent("event id or type missing")

    obj = (payload.get("data") or {}).get("object") if isinstance(payload.get("data"), dict) else None
    kind = EventKind.from_type(ev_type)
    if kind is not EventKind.UNRECOGNIZED and not isinstance(obj, dict):
        raise MalformedEvent("event data.object missing")
    return StripeEvent(id=ev_id, type=ev_type, kind=kind, obj=obj or {}, payload=payload)
