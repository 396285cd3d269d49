"""
Thin adapter over the Stripe SDK.

Every call builds a StripeClient from the startup Settings with a bounded
timeout and a small number of network retries, and every SDK error is
translated into the app's error taxonomy before it leaves this module.
"""
import hashlib
import json
import logging
from contextlib import contextmanager
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Any, Dict, Optional
from urllib.parse import urljoin

import stripe
from stripe import StripeClient

from backoffice.config import current_settings
from backoffice.errors import ConfigError, TransientError, UpstreamError, ValidationError

logger = logging.getLogger(__name__)

CHECKOUT_PAYMENT_TYPES = ("one-time", "subscription", "quote")
REFUND_REASONS = ("duplicate", "fraudulent", "requested_by_customer")
ACCOUNT_TYPES = ("express", "standard", "custom")


def _client() -> StripeClient:
    settings = current_settings()
    if not settings.stripe_secret_key:
        raise ConfigError("STRIPE_SECRET_KEY is not configured")
    return StripeClient(
        settings.stripe_secret_key,
        http_client=stripe.RequestsClient(timeout=settings.stripe_timeout),
        max_network_retries=settings.stripe_max_retries,
    )


@contextmanager
def _translate_errors(operation: str):
    try:
        yield
    except (stripe.InvalidRequestError, stripe.CardError, stripe.PermissionError, stripe.IdempotencyError) as e:
        logger.warning("stripe.rejected", extra={"operation": operation, "code": getattr(e, "code", None),
                                                 "detail": e.user_message or str(e)})
        raise UpstreamError(e.user_message or _message(e)) from e
    except stripe.AuthenticationError as e:
        logger.critical("stripe.auth_failed", extra={"operation": operation})
        raise ConfigError("Payment processor credentials were rejected") from e
    except (stripe.APIConnectionError, stripe.RateLimitError, stripe.APIError) as e:
        logger.error("stripe.unavailable", extra={"operation": operation, "error": type(e).__name__})
        raise TransientError() from e


def _message(err: stripe.StripeError) -> str:
    msg = getattr(err, "_message", None) or str(err)
    # str(StripeError) may carry a "Request req_...: " prefix
    if msg.startswith("Request ") and ": " in msg:
        msg = msg.split(": ", 1)[1]
    return msg or UpstreamError.message


def field(obj: Any, key: str, default: Any = None) -> Any:
    """Read a field from a StripeObject or a plain dict."""
    if obj is None:
        return default
    if isinstance(obj, dict):
        return obj.get(key, default)
    return getattr(obj, key, default)


def object_id(value: Any) -> Optional[str]:
    """Expanded objects and bare id strings both appear in payloads."""
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return field(value, "id")


def _absolute_url(path: str) -> str:
    base = current_settings().base_url + "/"
    return urljoin(base, path.lstrip("/"))


def make_idempotency_key(prefix: str, *parts: Any) -> str:
    raw = "|".join(str(p) for p in parts)
    return f"{prefix}:" + hashlib.sha256(raw.encode("utf-8")).hexdigest()[:32]


def _params_hash(d: Dict[str, Any]) -> str:
    return hashlib.sha256(json.dumps(d, sort_keys=True, separators=(",", ":")).encode("utf-8")).hexdigest()[:16]


# ---------------------------------------------------------------------------
# Fees
# ---------------------------------------------------------------------------

def fee_percent(override_percent: Any = None) -> Decimal:
    """The configured fee percent, or a validated override (percent units, 15 means 15%)."""
    if override_percent is None:
        return current_settings().application_fee_percent
    try:
        percent = Decimal(str(override_percent))
    except InvalidOperation:
        raise ValidationError("Fee percent must be a number")
    if not percent.is_finite() or percent < 0 or percent > 100:
        raise ValidationError("Fee percent must be between 0 and 100")
    return percent


def application_fee(amount_cents: int, override_percent: Any = None) -> int:
    """Marketplace fee in cents: amount * percent / 100, rounded half-up."""
    percent = fee_percent(override_percent)
    fee = (Decimal(int(amount_cents)) * percent / Decimal(100)).quantize(Decimal(1), rounding=ROUND_HALF_UP)
    return int(fee)


# ---------------------------------------------------------------------------
# Checkout
# ---------------------------------------------------------------------------

def create_checkout_session(*, price_id: str, customer_email: str, customer_name: str, payment_type: str,
                            description: str | None = None, quote_id: str | None = None,
                            success_url: str | None = None, cancel_url: str | None = None,
                            connected_account_id: str | None = None, fee_pct: Any = None) -> Dict[str, Any]:
    """
    Create a hosted Checkout Session for a single Price.
    Returns {"id", "url", "application_fee_cents"} (the fee only for connected payment-mode sessions).
    """
    if payment_type not in CHECKOUT_PAYMENT_TYPES:
        raise ValidationError("Invalid payment type")

    client = _client()
    mode = "subscription" if payment_type == "subscription" else "payment"
    metadata = {
        "customer_name": customer_name,
        "payment_type": payment_type,
        "description": description or "",
    }
    if quote_id:
        metadata["quote_id"] = quote_id

    params: Dict[str, Any] = {
        "mode": mode,
        "line_items": [{"price": price_id, "quantity": 1}],
        "customer_email": customer_email,
        "success_url": success_url or _absolute_url("payment/success?session_id={CHECKOUT_SESSION_ID}"),
        "cancel_url": cancel_url or _absolute_url("payment/cancelled"),
        "billing_address_collection": "required",
        "metadata": metadata,
    }

    fee_cents = None
    if mode == "subscription":
        params["subscription_data"] = {"metadata": {"customer_name": customer_name}}
        if connected_account_id:
            params["subscription_data"]["application_fee_percent"] = float(fee_percent(fee_pct))
            params["subscription_data"]["transfer_data"] = {"destination": connected_account_id}
    elif connected_account_id:
        with _translate_errors("prices.retrieve"):
            price = client.prices.retrieve(price_id)
        unit_amount = field(price, "unit_amount")
        if unit_amount is None:
            raise UpstreamError("Price has no fixed amount")
        fee_cents = application_fee(unit_amount, fee_pct)
        params["payment_intent_data"] = {
            "application_fee_amount": fee_cents,
            "transfer_data": {"destination": connected_account_id},
        }

    idem = make_idempotency_key("checkout", customer_email, price_id, quote_id or "", _params_hash(params))
    with _translate_errors("checkout.sessions.create"):
        session = client.checkout.sessions.create(params=params, options={"idempotency_key": idem})
    logger.info("checkout.session_created", extra={"session_id": field(session, "id"), "mode": mode})
    return {"id": field(session, "id"), "url": field(session, "url"), "application_fee_cents": fee_cents}


# ---------------------------------------------------------------------------
# Connected accounts
# ---------------------------------------------------------------------------

def create_connected_account(*, email: str, business_name: str | None = None,
                             account_type: str = "express") -> Dict[str, Any]:
    if account_type not in ACCOUNT_TYPES:
        raise ValidationError("Invalid account type")
    params: Dict[str, Any] = {
        "type": account_type,
        "email": email,
        "capabilities": {
            "card_payments": {"requested": True},
            "transfers": {"requested": True},
        },
    }
    if business_name:
        params["business_profile"] = {"name": business_name}
    with _translate_errors("accounts.create"):
        account = _client().accounts.create(params=params)
    return _account_summary(account)


def list_connected_accounts(limit: int = 100) -> list[Dict[str, Any]]:
    limit = max(1, min(int(limit), 100))
    with _translate_errors("accounts.list"):
        page = _client().accounts.list(params={"limit": limit})
    return [_account_summary(a) for a in (field(page, "data") or [])]


def get_connected_account(account_id: str) -> Dict[str, Any]:
    with _translate_errors("accounts.retrieve"):
        account = _client().accounts.retrieve(account_id)
    return _account_summary(account)


def is_account_onboarded(account_id: str) -> bool:
    account = get_connected_account(account_id)
    return bool(account["details_submitted"] and account["charges_enabled"])


def create_account_link(*, account_id: str, refresh_url: str | None = None,
                        return_url: str | None = None) -> Dict[str, Any]:
    params = {
        "account": account_id,
        "refresh_url": refresh_url or _absolute_url("admin/connect/refresh"),
        "return_url": return_url or _absolute_url("admin/connect/complete"),
        "type": "account_onboarding",
    }
    with _translate_errors("account_links.create"):
        link = _client().account_links.create(params=params)
    return {"url": field(link, "url"), "expires_at": field(link, "expires_at")}


def _account_summary(account) -> Dict[str, Any]:
    profile = field(account, "business_profile") or {}
    return {
        "id": field(account, "id"),
        "email": field(account, "email"),
        "type": field(account, "type"),
        "business_name": field(profile, "name"),
        "charges_enabled": bool(field(account, "charges_enabled")),
        "payouts_enabled": bool(field(account, "payouts_enabled")),
        "details_submitted": bool(field(account, "details_submitted")),
        "created": field(account, "created"),
    }


# ---------------------------------------------------------------------------
# Customers & subscriptions
# ---------------------------------------------------------------------------

def create_customer(*, email: str, name: str, client_id: int, company: str | None = None,
                    phone: str | None = None) -> str:
    params: Dict[str, Any] = {"email": email, "name": name, "metadata": {"client_id": str(client_id)}}
    if phone:
        params["phone"] = phone
    if company:
        params["metadata"]["company"] = company
    with _translate_errors("customers.create"):
        customer = _client().customers.create(
            params=params,
            options={"idempotency_key": make_idempotency_key("customer", client_id, email)},
        )
    return field(customer, "id")


def create_subscription(*, customer_id: str, price_id: str, client_id: int, product_type: str,
                        trial_days: int = 0, metadata: Dict[str, str] | None = None):
    params: Dict[str, Any] = {
        "customer": customer_id,
        "items": [{"price": price_id}],
        "payment_behavior": "default_incomplete",
        "expand": ["latest_invoice.payment_intent"],
        "metadata": {"client_id": str(client_id), "product_type": product_type, **(metadata or {})},
    }
    if trial_days:
        params["trial_period_days"] = int(trial_days)
    with _translate_errors("subscriptions.create"):
        return _client().subscriptions.create(params=params)


def cancel_subscription(stripe_subscription_id: str, *, at_period_end: bool = True,
                        metadata: Dict[str, str] | None = None):
    """
    at_period_end=True schedules cancellation (the subscription stays active until the
    period ends); False cancels immediately.
    """
    client = _client()
    with _translate_errors("subscriptions.cancel"):
        if at_period_end:
            return client.subscriptions.update(
                stripe_subscription_id,
                params={"cancel_at_period_end": True, "metadata": metadata or {}},
            )
        return client.subscriptions.cancel(stripe_subscription_id)


# ---------------------------------------------------------------------------
# Refunds
# ---------------------------------------------------------------------------

def refund_payment(*, payment_intent_id: str, amount_cents: int, reason: str = "requested_by_customer",
                   metadata: Dict[str, str] | None = None, idempotency_key: str | None = None):
    if reason not in REFUND_REASONS:
        raise ValidationError("Invalid refund reason")
    params = {
        "payment_intent": payment_intent_id,
        "amount": int(amount_cents),
        "reason": reason,
        "metadata": metadata or {},
    }
    options = {"idempotency_key": idempotency_key} if idempotency_key else {}
    with _translate_errors("refunds.create"):
        return _client().refunds.create(params=params, options=options)
