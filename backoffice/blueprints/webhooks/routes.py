import logging
from datetime import timedelta

from flask import request, jsonify
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from backoffice.config import current_settings
from backoffice.extensions import db, csrf, limiter
from backoffice.models import WebhookEvent
from backoffice.services.reconciliation import reconcile
from backoffice.services.webhook_events import (
    MalformedEvent,
    SignatureError,
    body_digest,
    parse_event,
    verify_signature,
)
from backoffice.utils.helpers import utcnow
from . import bp

logger = logging.getLogger(__name__)


def _error(message: str, status: int):
    return jsonify({"error": message}), status


# Ledger rows for unsigned deliveries kept per rolling hour; the rest are only logged
INVALID_SIGNATURE_ROWS_PER_HOUR = 100


def _failed_delivery(response) -> bool:
    return response.status_code == 400


def _record_invalid_signature(raw: bytes) -> None:
    # Deterministic synthetic id: repeated bad deliveries collapse into one row
    synthetic_id = f"invalid:{body_digest(raw)}"
    if WebhookEvent.query.filter_by(stripe_event_id=synthetic_id).first():
        return
    recent = WebhookEvent.query.filter(
        WebhookEvent.signature_valid.is_(False),
        WebhookEvent.created_at >= utcnow() - timedelta(hours=1),
    ).count()
    if recent >= INVALID_SIGNATURE_ROWS_PER_HOUR:
        logger.warning("webhook.invalid_ledger_full", extra={"digest": body_digest(raw)})
        return
    db.session.add(WebhookEvent(
        stripe_event_id=synthetic_id,
        type="signature_invalid",
        signature_valid=False,
        payload={},
    ))
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()


@csrf.exempt
@bp.post("/webhooks")
# Counts rejected deliveries only
@limiter.limit("60 per minute", deduct_when=_failed_delivery)
def stripe_webhook():
    """
    Stripe -> /api/stripe/webhooks

    400: missing header, unconfigured secret, bad signature, malformed event.
    200: processed, duplicate, or a type we don't handle.
    500: reconciliation failed; Stripe redelivers.
    """
    # The signature covers these exact bytes
    raw = request.get_data(cache=False, as_text=False) or b""
    sig_header = request.headers.get("Stripe-Signature", "")
    if not sig_header:
        return _error("Missing stripe-signature header", 400)

    secret = current_settings().webhook_secret
    if not secret:
        logger.error("webhook.secret_missing")
        return _error("Webhook secret not configured", 400)

    try:
        verify_signature(raw, sig_header, secret)
    except SignatureError as e:
        logger.warning("webhook.signature_invalid", extra={"reason": str(e), "digest": body_digest(raw)})
        _record_invalid_signature(raw)
        return _error("Webhook signature verification failed", 400)

    try:
        event = parse_event(raw)
    except MalformedEvent as e:
        logger.warning("webhook.malformed", extra={"reason": str(e)})
        return _error("Malformed event", 400)

    ledger = WebhookEvent.query.filter_by(stripe_event_id=event.id).first()
    if ledger is not None and ledger.processed_at is not None:
        logger.info("webhook.duplicate", extra={"event_id": event.id, "type": event.type})
        return jsonify({"received": True, "duplicate": True}), 200

    if ledger is None:
        ledger = WebhookEvent(stripe_event_id=event.id, type=event.type, signature_valid=True,
                              payload=event.payload, retries=0)
        db.session.add(ledger)

    try:
        outcome = reconcile(event)
        ledger.processed_at = utcnow()
        ledger.notes = outcome
        db.session.commit()
    except Exception as e:
        db.session.rollback()
        logger.exception("webhook.handler_failed", extra={"event_id": event.id, "type": event.type})
        _record_failure(event, e)
        return _error("Webhook handler failed", 500)

    return jsonify({"received": True}), 200


def _record_failure(event, exc: Exception) -> None:
    """Keep a ledger row with the attempt count; the event itself stays unprocessed."""
    try:
        ledger = WebhookEvent.query.filter_by(stripe_event_id=event.id).first()
        if ledger is None:
            ledger = WebhookEvent(stripe_event_id=event.id, type=event.type, signature_valid=True,
                                  payload=event.payload, retries=0)
            db.session.add(ledger)
        ledger.retries = (ledger.retries or 0) + 1
        ledger.notes = f"handler_error:{type(exc).__name__}"[:255]
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception("webhook.ledger_write_failed", extra={"event_id": event.id})
