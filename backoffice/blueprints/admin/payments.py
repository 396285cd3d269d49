from flask import jsonify
from sqlalchemy import func

from backoffice.errors import NotFound
from backoffice.extensions import db
from backoffice.models import Payment
from backoffice.schemas import PaymentListQuery, RefundRequest
from backoffice.services.activity import log_activity
from backoffice.services.auth import require_admin, require_auth
from backoffice.services.filters import DateRange, Eq, FilterSpec, paginate
from backoffice.services.refunds import refund_payment
from . import bp, json_body, query_args

PAYMENT_FILTERS = FilterSpec(
    Payment,
    eq=("client_id", "project_id", "subscription_id", "payment_type", "status"),
    dates=("paid_at",),
)


@bp.get("/payments")
@require_admin
def list_payments():
    q = PaymentListQuery.model_validate(query_args())
    filters = [
        Eq("client_id", q.client_id),
        Eq("project_id", q.project_id),
        Eq("subscription_id", q.subscription_id),
        Eq("payment_type", q.payment_type),
        Eq("status", q.status),
        DateRange("paid_at", q.start_date, q.end_date),
    ]
    query = PAYMENT_FILTERS.apply(Payment.query, filters)

    total_amount = PAYMENT_FILTERS.apply(
        db.session.query(func.coalesce(func.sum(Payment.amount_cents), 0)), filters
    ).scalar()

    items, pagination = paginate(query.order_by(Payment.created_at.desc(), Payment.id.desc()), q.page, q.limit)
    return jsonify({
        "success": True,
        "data": {
            "payments": [p.to_dict(with_relations=True) for p in items],
            "pagination": pagination,
            "totals": {"total_amount_cents": int(total_amount or 0)},
        },
    }), 200


@bp.get("/payments/<int:payment_id>")
@require_admin
def get_payment(payment_id: int):
    payment = db.session.get(Payment, payment_id)
    if payment is None:
        raise NotFound("Payment not found")
    data = payment.to_dict(with_relations=True)
    data["refunds"] = [r.to_dict() for r in payment.refunds]
    return jsonify({"success": True, "data": data}), 200


@bp.post("/payments/<int:payment_id>/refund")
@require_admin
def refund(payment_id: int):
    admin = require_auth()
    body = RefundRequest.model_validate(json_body())
    result = refund_payment(
        payment_id,
        amount_cents=body.amount_cents,
        reason=body.reason,
        notes=body.notes,
        admin_id=admin.id,
    )
    log_activity(
        admin=admin,
        action="refund_payment",
        entity_type="payment",
        entity_id=result.payment.id,
        client_id=result.payment.client_id,
        details={
            "refund_id": result.refund_id,
            "amount_cents": result.amount_cents,
            "is_full_refund": result.is_full_refund,
            "reason": body.reason,
            "notes": body.notes,
        },
    )
    return jsonify({
        "success": True,
        "data": {"payment": result.payment.to_dict(), "refund": result.to_dict()},
    }), 200
