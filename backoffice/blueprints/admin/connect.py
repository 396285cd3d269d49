from flask import jsonify, request

from backoffice.schemas import ConnectAccountRequest, ConnectCheckoutRequest, OnboardRequest
from backoffice.services import gateway
from backoffice.services.activity import log_activity
from backoffice.services.auth import require_admin, require_auth
from backoffice.utils.helpers import safe_int
from . import bp, json_body


@bp.post("/connect/accounts")
@require_admin
def create_connected_account():
    admin = require_auth()
    body = ConnectAccountRequest.model_validate(json_body())
    account = gateway.create_connected_account(
        email=body.email, business_name=body.business_name, account_type=body.account_type,
    )
    log_activity(admin=admin, action="create_connected_account", entity_type="connected_account",
                 entity_id=account["id"], details={"email": body.email, "type": body.account_type})
    return jsonify({"success": True, "data": account}), 201


@bp.get("/connect/accounts")
@require_admin
def list_connected_accounts():
    limit = safe_int(request.args.get("limit"), 100) or 100
    accounts = gateway.list_connected_accounts(limit)
    return jsonify({"success": True, "data": {"accounts": accounts}}), 200


@bp.post("/connect/onboard")
@require_admin
def onboard():
    admin = require_auth()
    body = OnboardRequest.model_validate(json_body())
    link = gateway.create_account_link(
        account_id=body.account_id, refresh_url=body.refresh_url, return_url=body.return_url,
    )
    log_activity(admin=admin, action="create_onboarding_link", entity_type="connected_account",
                 entity_id=body.account_id)
    return jsonify({
        "success": True,
        "data": {**link, "onboarded": gateway.is_account_onboarded(body.account_id)},
    }), 200


@bp.post("/connect/checkout")
@require_admin
def create_connected_checkout():
    admin = require_auth()
    body = ConnectCheckoutRequest.model_validate(json_body())
    session = gateway.create_checkout_session(
        price_id=body.price_id,
        customer_email=body.customer_email,
        customer_name=body.customer_name,
        payment_type=body.payment_type,
        description=body.description,
        quote_id=body.quote_id,
        success_url=body.success_url,
        cancel_url=body.cancel_url,
        connected_account_id=body.connected_account_id,
        fee_pct=body.application_fee_percent,
    )
    log_activity(admin=admin, action="create_connected_checkout", entity_type="connected_account",
                 entity_id=body.connected_account_id,
                 details={"session_id": session["id"], "price_id": body.price_id,
                          "application_fee_cents": session["application_fee_cents"]})
    return jsonify({"success": True, "data": session}), 201
