import logging

from flask import jsonify

from backoffice.errors import Conflict, NotFound
from backoffice.extensions import db
from backoffice.models import Client, Payment, Subscription, CLIENT_ARCHIVED, SUB_CANCELED, SUB_INCOMPLETE
from backoffice.schemas import CancelSubscriptionRequest, CreateSubscriptionRequest, SubscriptionListQuery
from backoffice.services import gateway
from backoffice.services.activity import log_activity
from backoffice.services.auth import require_admin, require_auth
from backoffice.services.filters import Eq, FilterSpec, paginate
from backoffice.services.reconciliation import apply_subscription_fields, map_subscription_status
from backoffice.utils.helpers import utcnow
from . import bp, json_body, query_args

logger = logging.getLogger(__name__)

SUBSCRIPTION_FILTERS = FilterSpec(Subscription, eq=("client_id", "status", "product_type"))


def _get_subscription(subscription_id: int) -> Subscription:
    sub = db.session.get(Subscription, subscription_id)
    if sub is None:
        raise NotFound("Subscription not found")
    return sub


@bp.get("/subscriptions")
@require_admin
def list_subscriptions():
    q = SubscriptionListQuery.model_validate(query_args())
    query = SUBSCRIPTION_FILTERS.apply(Subscription.query, [
        Eq("client_id", q.client_id),
        Eq("status", q.status),
        Eq("product_type", q.product_type),
    ])
    items, pagination = paginate(query.order_by(Subscription.created_at.desc(), Subscription.id.desc()),
                                 q.page, q.limit)
    return jsonify({
        "success": True,
        "data": {
            "subscriptions": [s.to_dict(with_client=True) for s in items],
            "pagination": pagination,
        },
    }), 200


@bp.get("/subscriptions/<int:subscription_id>")
@require_admin
def get_subscription(subscription_id: int):
    sub = _get_subscription(subscription_id)
    data = sub.to_dict(with_client=True)
    data["payments"] = [p.to_dict() for p in sub.payments.order_by(Payment.created_at.desc(), Payment.id.desc())]
    return jsonify({"success": True, "data": data}), 200


@bp.post("/subscriptions/<int:subscription_id>/cancel")
@require_admin
def cancel_subscription(subscription_id: int):
    admin = require_auth()
    body = CancelSubscriptionRequest.model_validate(json_body())
    sub = _get_subscription(subscription_id)
    if sub.is_canceled:
        raise Conflict("Subscription is already canceled")

    gateway.cancel_subscription(
        sub.stripe_subscription_id,
        at_period_end=body.cancel_at_period_end,
        metadata={"cancellation_reason": body.reason or "", "canceled_by": str(admin.id)},
    )

    if body.cancel_at_period_end:
        # stays ACTIVE until Stripe ends it and sends customer.subscription.deleted
        sub.cancel_at_period_end = True
    else:
        sub.status = SUB_CANCELED
        sub.canceled_at = utcnow()
        sub.cancel_at_period_end = False
    db.session.commit()

    log_activity(
        admin=admin,
        action="cancel_subscription",
        entity_type="subscription",
        entity_id=sub.id,
        client_id=sub.client_id,
        details={"cancel_at_period_end": body.cancel_at_period_end, "reason": body.reason},
    )
    return jsonify({"success": True, "data": sub.to_dict()}), 200


@bp.post("/subscriptions")
@require_admin
def create_subscription():
    admin = require_auth()
    body = CreateSubscriptionRequest.model_validate(json_body())
    client = db.session.get(Client, body.client_id)
    if client is None:
        raise NotFound("Client not found")
    if client.status == CLIENT_ARCHIVED:
        raise Conflict("Client is archived")

    if not client.stripe_customer_id:
        client.stripe_customer_id = gateway.create_customer(
            email=client.email, name=client.name, client_id=client.id,
            company=client.company, phone=client.phone,
        )
        # keep the customer even if the subscription call below fails
        db.session.commit()

    stripe_sub = gateway.create_subscription(
        customer_id=client.stripe_customer_id,
        price_id=body.price_id,
        client_id=client.id,
        product_type=body.product_type,
        trial_days=body.trial_days,
    )
    sub_id = gateway.field(stripe_sub, "id")

    # the created webhook may already have inserted it
    sub = Subscription.query.filter_by(stripe_subscription_id=sub_id).first()
    if sub is None:
        sub = Subscription(
            client_id=client.id,
            stripe_subscription_id=sub_id,
            product_type=body.product_type,
            status=SUB_INCOMPLETE,
            amount_cents=0,
        )
        db.session.add(sub)
    if not sub.is_canceled:
        apply_subscription_fields(sub, stripe_sub, map_subscription_status(gateway.field(stripe_sub, "status")))
    db.session.commit()

    log_activity(
        admin=admin,
        action="create_subscription",
        entity_type="subscription",
        entity_id=sub.id,
        client_id=client.id,
        details={"price_id": body.price_id, "product_type": body.product_type, "trial_days": body.trial_days},
    )

    # present when latest_invoice.payment_intent was expanded
    intent = gateway.field(gateway.field(stripe_sub, "latest_invoice"), "payment_intent")
    return jsonify({
        "success": True,
        "data": {
            "subscription": sub.to_dict(),
            "client_secret": gateway.field(intent, "client_secret"),
        },
    }), 201
