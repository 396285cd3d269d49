from sqlalchemy import func, text

from backoffice.extensions import db
from backoffice.utils.helpers import isoformat

SUB_ACTIVE = "ACTIVE"
SUB_PAST_DUE = "PAST_DUE"
SUB_UNPAID = "UNPAID"
SUB_INCOMPLETE = "INCOMPLETE"
SUB_TRIALING = "TRIALING"
SUB_CANCELED = "CANCELED"
SUBSCRIPTION_STATUSES = (SUB_ACTIVE, SUB_PAST_DUE, SUB_UNPAID, SUB_INCOMPLETE, SUB_TRIALING, SUB_CANCELED)

PRODUCT_TYPES = ("MAINTENANCE_BASIC", "MAINTENANCE_PRO", "SUPPORT_STANDARD", "SUPPORT_PREMIUM", "CUSTOM")


class Subscription(db.Model):
    __tablename__ = "subscriptions"

    id = db.Column(db.Integer, primary_key=True)
    client_id = db.Column(db.Integer, db.ForeignKey("clients.id", ondelete="RESTRICT"), nullable=False, index=True)

    stripe_subscription_id = db.Column(db.String(64), nullable=False, unique=True, index=True)
    product_type = db.Column(db.String(32), nullable=False, default="CUSTOM")

    # CANCELED is terminal; a new subscription is a new row
    status = db.Column(db.String(16), nullable=False, index=True, default=SUB_INCOMPLETE)
    amount_cents = db.Column(db.Integer, nullable=False, default=0)
    currency = db.Column(db.String(3), nullable=False, default="usd")

    cancel_at_period_end = db.Column(db.Boolean, nullable=False, default=False, server_default=text("false"))
    canceled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    current_period_start = db.Column(db.DateTime(timezone=True), nullable=True)
    current_period_end = db.Column(db.DateTime(timezone=True), nullable=True, index=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    client = db.relationship("Client", back_populates="subscriptions")
    payments = db.relationship("Payment", back_populates="subscription", lazy="dynamic")

    @property
    def is_canceled(self) -> bool:
        return self.status == SUB_CANCELED

    def to_dict(self, *, with_client: bool = False) -> dict:
        data = {
            "id": self.id,
            "client_id": self.client_id,
            "stripe_subscription_id": self.stripe_subscription_id,
            "product_type": self.product_type,
            "status": self.status,
            "amount_cents": self.amount_cents,
            "currency": self.currency,
            "cancel_at_period_end": bool(self.cancel_at_period_end),
            "canceled_at": isoformat(self.canceled_at),
            "current_period_start": isoformat(self.current_period_start),
            "current_period_end": isoformat(self.current_period_end),
            "created_at": isoformat(self.created_at),
            "updated_at": isoformat(self.updated_at),
        }
        if with_client:
            data["client"] = self.client.summary() if self.client else None
        return data

    def __repr__(self) -> str:
        return f"<Subscription id={self.id} client_id={self.client_id} status={self.status!r}>"
