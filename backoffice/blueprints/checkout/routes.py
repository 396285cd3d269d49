from flask import jsonify, request

from backoffice.errors import ValidationError
from backoffice.extensions import csrf, limiter
from backoffice.schemas import CheckoutRequest
from backoffice.services import gateway
from . import bp


# Public: called by the site's checkout page, no admin session involved
@csrf.exempt
@bp.post("/checkout")
@limiter.limit("20 per minute; 200 per hour")
def create_checkout():
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        raise ValidationError("Request body must be a JSON object")
    body = CheckoutRequest.model_validate(payload)

    session = gateway.create_checkout_session(
        price_id=body.price_id,
        customer_email=body.customer_email,
        customer_name=body.customer_name,
        payment_type=body.payment_type,
        description=body.description,
        quote_id=body.quote_id,
        success_url=body.success_url,
        cancel_url=body.cancel_url,
    )
    return jsonify({"success": True, "sessionId": session["id"], "url": session["url"]}), 200
