import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError

from backoffice.errors import Conflict, NotFound, TransientError
from backoffice.extensions import db
from backoffice.models import Payment, PAYMENT_REFUND, PAY_SUCCEEDED, PAY_REFUNDED
from backoffice.services import gateway
from backoffice.utils.helpers import isoformat, utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RefundResult:
    payment: Payment
    refund_id: str
    amount_cents: int
    is_full_refund: bool
    status: str
    refund_row: Optional[Payment] = None

    def to_dict(self) -> dict:
        return {
            "id": self.refund_id,
            "amount_cents": self.amount_cents,
            "is_full_refund": self.is_full_refund,
            "status": self.status,
        }


def refunded_so_far(payment: Payment) -> int:
    """Cents already returned through partial refund rows (positive number)."""
    total = (
        db.session.query(func.coalesce(func.sum(Payment.amount_cents), 0))
        .filter(Payment.original_payment_id == payment.id,
                Payment.payment_type == PAYMENT_REFUND,
                Payment.status == PAY_SUCCEEDED)
        .scalar()
    )
    return -int(total or 0)


def refund_payment(payment_id: int, *, amount_cents: Optional[int] = None, reason: str = "requested_by_customer",
                   notes: Optional[str] = None, admin_id: Optional[int] = None) -> RefundResult:
    """
    Refund all or part of a succeeded payment.

    A refund of everything still refundable marks the payment REFUNDED. Anything
    less inserts a REFUND row with a negative amount and leaves the payment status as is.
    Validation happens before Stripe is called, so a rejected request changes nothing.
    """
    payment = db.session.get(Payment, payment_id)
    if payment is None:
        raise NotFound("Payment not found")
    if payment.payment_type == PAYMENT_REFUND:
        raise Conflict("Refund records cannot be refunded")
    if payment.status != PAY_SUCCEEDED:
        raise Conflict("Only succeeded payments can be refunded")
    if not payment.stripe_payment_intent_id:
        raise Conflict("Payment has no Stripe payment intent to refund")

    already = refunded_so_far(payment)
    remaining = payment.amount_cents - already
    if remaining <= 0:
        raise Conflict("Payment has already been fully refunded")
    amount = remaining if amount_cents is None else int(amount_cents)
    if amount > remaining:
        raise Conflict("Refund amount cannot exceed payment amount")
    is_full = amount == remaining

    refund = gateway.refund_payment(
        payment_intent_id=payment.stripe_payment_intent_id,
        amount_cents=amount,
        reason=reason,
        metadata={
            "payment_id": str(payment.id),
            "admin_id": str(admin_id or ""),
            "notes": notes or "",
        },
        # Same key for a retry of the same request; a later refund sees a different `already`
        idempotency_key=f"refund:{payment.id}:{amount}:{already}",
    )
    refund_id = gateway.field(refund, "id")
    refund_status = gateway.field(refund, "status") or "pending"

    refund_row = None
    try:
        # The original payment always carries the latest refund, partial or full
        payment.merge_meta(
            refund_id=refund_id,
            refund_amount_cents=amount,
            refund_reason=reason,
            refund_notes=notes,
            refunded_by=admin_id,
            refunded_at=isoformat(utcnow()),
        )
        if is_full:
            payment.status = PAY_REFUNDED
        else:
            refund_row = Payment(
                client_id=payment.client_id,
                project_id=payment.project_id,
                subscription_id=payment.subscription_id,
                original_payment_id=payment.id,
                stripe_refund_id=refund_id,
                stripe_charge_id=payment.stripe_charge_id,
                amount_cents=-amount,
                currency=payment.currency,
                payment_type=PAYMENT_REFUND,
                status=PAY_SUCCEEDED,
                payment_method=payment.payment_method,
                meta={"reason": reason, "notes": notes, "refund_status": refund_status},
                paid_at=utcnow(),
            )
            db.session.add(refund_row)
        db.session.commit()
    except SQLAlchemyError as e:
        db.session.rollback()
        # Money already moved at Stripe; this needs a manual fix
        logger.critical("refund.local_write_failed",
                        extra={"payment_id": payment_id, "refund_id": refund_id, "amount_cents": amount})
        raise TransientError() from e

    logger.info("refund.created", extra={"payment_id": payment.id, "refund_id": refund_id,
                                         "amount_cents": amount, "full": is_full})
    return RefundResult(payment=payment, refund_id=refund_id, amount_cents=amount,
                        is_full_refund=is_full, status=refund_status, refund_row=refund_row)
