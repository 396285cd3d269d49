from sqlalchemy import func

from backoffice.extensions import db
from backoffice.utils.helpers import isoformat

# payment_type
PAYMENT_ONE_TIME = "ONE_TIME"
PAYMENT_SUBSCRIPTION = "SUBSCRIPTION"
PAYMENT_DEPOSIT = "DEPOSIT"
PAYMENT_FINAL = "FINAL_PAYMENT"
PAYMENT_REFUND = "REFUND"
PAYMENT_TYPES = (PAYMENT_ONE_TIME, PAYMENT_SUBSCRIPTION, PAYMENT_DEPOSIT, PAYMENT_FINAL, PAYMENT_REFUND)

# status
PAY_PENDING = "PENDING"
PAY_PROCESSING = "PROCESSING"
PAY_SUCCEEDED = "SUCCEEDED"
PAY_FAILED = "FAILED"
PAY_CANCELED = "CANCELED"
PAY_REFUNDED = "REFUNDED"
PAYMENT_STATUSES = (PAY_PENDING, PAY_PROCESSING, PAY_SUCCEEDED, PAY_FAILED, PAY_CANCELED, PAY_REFUNDED)


class Payment(db.Model):
    """
    One money movement. Refunds never delete the original row: a full refund
    flips its status to REFUNDED, a partial refund adds a REFUND row with a
    negative amount pointing back via original_payment_id.
    """
    __tablename__ = "payments"

    id = db.Column(db.Integer, primary_key=True)
    client_id = db.Column(db.Integer, db.ForeignKey("clients.id", ondelete="RESTRICT"), nullable=False, index=True)
    project_id = db.Column(db.Integer, db.ForeignKey("projects.id", ondelete="SET NULL"), nullable=True, index=True)
    subscription_id = db.Column(db.Integer, db.ForeignKey("subscriptions.id", ondelete="SET NULL"), nullable=True, index=True)
    original_payment_id = db.Column(db.Integer, db.ForeignKey("payments.id", ondelete="RESTRICT"), nullable=True, index=True)

    # Processor identifiers double as idempotency keys
    stripe_payment_intent_id = db.Column(db.String(255), nullable=True, unique=True)
    stripe_checkout_session_id = db.Column(db.String(255), nullable=True, unique=True)
    stripe_invoice_id = db.Column(db.String(255), nullable=True, unique=True)
    stripe_refund_id = db.Column(db.String(255), nullable=True, unique=True)
    stripe_charge_id = db.Column(db.String(255), nullable=True)

    amount_cents = db.Column(db.Integer, nullable=False)  # signed: negative for refund rows
    currency = db.Column(db.String(3), nullable=False, default="usd")
    payment_type = db.Column(db.String(16), nullable=False, default=PAYMENT_ONE_TIME, index=True)
    status = db.Column(db.String(16), nullable=False, default=PAY_PENDING, index=True)
    payment_method = db.Column(db.String(64), nullable=True)
    meta = db.Column("metadata", db.JSON, nullable=False, default=dict)
    paid_at = db.Column(db.DateTime(timezone=True), nullable=True, index=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now(), index=True)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    client = db.relationship("Client", back_populates="payments")
    project = db.relationship("Project")
    subscription = db.relationship("Subscription", back_populates="payments")
    original = db.relationship("Payment", remote_side=[id], backref=db.backref("refunds", lazy="select"))

    def merge_meta(self, **values) -> None:
        # JSON columns don't track in-place mutation; always assign a new dict
        merged = dict(self.meta or {})
        merged.update(values)
        self.meta = merged

    def to_dict(self, *, with_relations: bool = False) -> dict:
        data = {
            "id": self.id,
            "client_id": self.client_id,
            "project_id": self.project_id,
            "subscription_id": self.subscription_id,
            "original_payment_id": self.original_payment_id,
            "stripe_payment_intent_id": self.stripe_payment_intent_id,
            "stripe_checkout_session_id": self.stripe_checkout_session_id,
            "stripe_invoice_id": self.stripe_invoice_id,
            "stripe_refund_id": self.stripe_refund_id,
            "stripe_charge_id": self.stripe_charge_id,
            "amount_cents": self.amount_cents,
            "currency": self.currency,
            "payment_type": self.payment_type,
            "status": self.status,
            "payment_method": self.payment_method,
            "metadata": self.meta or {},
            "paid_at": isoformat(self.paid_at),
            "created_at": isoformat(self.created_at),
            "updated_at": isoformat(self.updated_at),
        }
        if with_relations:
            data["client"] = self.client.summary() if self.client else None
            data["project"] = (
                {"id": self.project.id, "name": self.project.name, "status": self.project.status,
                 "budget_cents": self.project.budget_cents}
                if self.project else None
            )
            data["subscription"] = (
                {"id": self.subscription.id, "product_type": self.subscription.product_type,
                 "status": self.subscription.status, "amount_cents": self.subscription.amount_cents}
                if self.subscription else None
            )
        return data

    def __repr__(self) -> str:
        return f"<Payment id={self.id} amount_cents={self.amount_cents} type={self.payment_type} status={self.status}>"
