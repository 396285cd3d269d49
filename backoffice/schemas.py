"""
Request schemas for the JSON API.

Routes call ``Schema.model_validate(payload)``; a pydantic ValidationError
is turned into a 400 carrying the first violation (see errors.py).
"""
import re
from datetime import date
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from backoffice.models import CLIENT_STATUSES, PAYMENT_STATUSES, PAYMENT_TYPES, PROJECT_STATUSES, SUBSCRIPTION_STATUSES

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

ProductType = Literal["MAINTENANCE_BASIC", "MAINTENANCE_PRO", "SUPPORT_STANDARD", "SUPPORT_PREMIUM", "CUSTOM"]
RefundReason = Literal["duplicate", "fraudulent", "requested_by_customer"]


def _email(v: str) -> str:
    v = (v or "").strip().lower()
    if not _EMAIL_RE.match(v):
        raise ValueError("Invalid email address")
    return v


def _one_of(value, allowed, label: str):
    if value is not None and value not in allowed:
        raise ValueError(f"Invalid {label}")
    return value


class _Body(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True, extra="ignore")


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------

class LoginRequest(_Body):
    # passwords are compared verbatim, never stripped
    model_config = ConfigDict(str_strip_whitespace=False, extra="ignore")

    email: str
    password: str = Field(..., min_length=1)

    @field_validator("email")
    @classmethod
    def validate_email(cls, v):
        return _email(v)

    @field_validator("password", mode="before")
    @classmethod
    def password_not_blank(cls, v):
        if isinstance(v, str) and not v.strip():
            raise ValueError("Password is required")
        return v


# ---------------------------------------------------------------------------
# Payments & refunds
# ---------------------------------------------------------------------------

class RefundRequest(_Body):
    amount_cents: Optional[int] = Field(None, ge=1, strict=True)
    reason: RefundReason = "requested_by_customer"
    notes: Optional[str] = Field(None, max_length=500)


class _ListQuery(_Body):
    page: int = Field(1, ge=1)
    limit: int = Field(20, ge=1, le=100)


class PaymentListQuery(_ListQuery):
    client_id: Optional[int] = None
    project_id: Optional[int] = None
    subscription_id: Optional[int] = None
    payment_type: Optional[str] = None
    status: Optional[str] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None

    @field_validator("payment_type")
    @classmethod
    def validate_type(cls, v):
        return _one_of(v, PAYMENT_TYPES, "payment type")

    @field_validator("status")
    @classmethod
    def validate_status(cls, v):
        return _one_of(v, PAYMENT_STATUSES, "payment status")

    @model_validator(mode="after")
    def dates_in_order(self):
        if self.start_date and self.end_date and self.start_date > self.end_date:
            raise ValueError("start_date must be on or before end_date")
        return self


# ---------------------------------------------------------------------------
# Subscriptions
# ---------------------------------------------------------------------------

class SubscriptionListQuery(_ListQuery):
    client_id: Optional[int] = None
    status: Optional[str] = None
    product_type: Optional[ProductType] = None

    @field_validator("status")
    @classmethod
    def validate_status(cls, v):
        return _one_of(v, SUBSCRIPTION_STATUSES, "subscription status")


class CancelSubscriptionRequest(_Body):
    cancel_at_period_end: bool = True
    reason: Optional[str] = Field(None, max_length=500)


class CreateSubscriptionRequest(_Body):
    client_id: int = Field(..., ge=1)
    price_id: str = Field(..., min_length=1, max_length=255)
    product_type: ProductType
    trial_days: int = Field(0, ge=0, le=365)


# ---------------------------------------------------------------------------
# Clients
# ---------------------------------------------------------------------------

class ClientListQuery(_ListQuery):
    search: Optional[str] = Field(None, max_length=255)
    status: Optional[str] = None

    @field_validator("status")
    @classmethod
    def validate_status(cls, v):
        return _one_of(v, CLIENT_STATUSES, "client status")


class ClientCreate(_Body):
    email: str
    name: str = Field(..., min_length=1, max_length=255)
    company: Optional[str] = Field(None, max_length=255)
    phone: Optional[str] = Field(None, max_length=32)
    notes: Optional[str] = Field(None, max_length=5000)
    status: str = "ACTIVE"

    @field_validator("email")
    @classmethod
    def validate_email(cls, v):
        return _email(v)

    @field_validator("status")
    @classmethod
    def validate_status(cls, v):
        return _one_of(v, CLIENT_STATUSES, "client status")


class ClientUpdate(_Body):
    email: Optional[str] = None
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    company: Optional[str] = Field(None, max_length=255)
    phone: Optional[str] = Field(None, max_length=32)
    notes: Optional[str] = Field(None, max_length=5000)
    status: Optional[str] = None

    @field_validator("email")
    @classmethod
    def validate_email(cls, v):
        return _email(v) if v is not None else v

    @field_validator("status")
    @classmethod
    def validate_status(cls, v):
        return _one_of(v, CLIENT_STATUSES, "client status")


# ---------------------------------------------------------------------------
# Projects
# ---------------------------------------------------------------------------

class ProjectListQuery(_ListQuery):
    client_id: Optional[int] = None
    status: Optional[str] = None
    search: Optional[str] = Field(None, max_length=255)

    @field_validator("status")
    @classmethod
    def validate_status(cls, v):
        return _one_of(v, PROJECT_STATUSES, "project status")


class _ProjectFields(_Body):
    description: Optional[str] = Field(None, max_length=5000)
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    budget_cents: Optional[int] = Field(None, ge=0)
    notes: Optional[str] = Field(None, max_length=5000)

    @model_validator(mode="after")
    def dates_in_order(self):
        if self.start_date and self.end_date and self.start_date > self.end_date:
            raise ValueError("start_date must be on or before end_date")
        return self


class ProjectCreate(_ProjectFields):
    client_id: int = Field(..., ge=1)
    name: str = Field(..., min_length=1, max_length=255)
    status: str = "PLANNING"

    @field_validator("status")
    @classmethod
    def validate_status(cls, v):
        return _one_of(v, PROJECT_STATUSES, "project status")


class ProjectUpdate(_ProjectFields):
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    status: Optional[str] = None

    @field_validator("status")
    @classmethod
    def validate_status(cls, v):
        return _one_of(v, PROJECT_STATUSES, "project status")


# ---------------------------------------------------------------------------
# Connect & checkout
# ---------------------------------------------------------------------------

class ConnectAccountRequest(_Body):
    email: str
    business_name: Optional[str] = Field(None, max_length=255)
    account_type: Literal["express", "standard", "custom"] = "express"

    @field_validator("email")
    @classmethod
    def validate_email(cls, v):
        return _email(v)


class OnboardRequest(_Body):
    account_id: str = Field(..., min_length=1, max_length=255)
    refresh_url: Optional[str] = Field(None, max_length=2000)
    return_url: Optional[str] = Field(None, max_length=2000)


class CheckoutRequest(_Body):
    """Public checkout body; accepts the camelCase names the site front-end sends."""
    model_config = ConfigDict(str_strip_whitespace=True, extra="ignore", populate_by_name=True)

    price_id: str = Field(..., alias="priceId", min_length=1, max_length=255)
    customer_email: str = Field(..., alias="customerEmail")
    customer_name: str = Field(..., alias="customerName", min_length=1, max_length=255)
    payment_type: Literal["one-time", "subscription", "quote"] = Field(..., alias="paymentType")
    description: Optional[str] = Field(None, max_length=500)
    quote_id: Optional[str] = Field(None, alias="quoteId", max_length=255)
    success_url: Optional[str] = Field(None, alias="successUrl", max_length=2000)
    cancel_url: Optional[str] = Field(None, alias="cancelUrl", max_length=2000)

    @field_validator("customer_email")
    @classmethod
    def validate_email(cls, v):
        return _email(v)


class ConnectCheckoutRequest(CheckoutRequest):
    """Admin-issued checkout that routes the charge to a connected account."""
    connected_account_id: str = Field(..., alias="connectedAccountId", min_length=1, max_length=255)
    application_fee_percent: Optional[float] = Field(None, alias="applicationFeePercent", ge=0, le=100)
