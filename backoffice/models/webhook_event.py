from sqlalchemy import func, text

from backoffice.extensions import db


class WebhookEvent(db.Model):
    __tablename__ = "webhook_events"

    id = db.Column(db.Integer, primary_key=True)
    stripe_event_id = db.Column(db.String(255), nullable=False, unique=True, index=True)
    type = db.Column(db.String(80), nullable=False, index=True)
    signature_valid = db.Column(db.Boolean, nullable=False, default=True, server_default=text("true"))
    payload = db.Column(db.JSON, nullable=False, default=dict)
    retries = db.Column(db.Integer, nullable=False, default=0, server_default=text("0"))
    notes = db.Column(db.String(255), nullable=True)

    # Set only once the reconciliation committed; redeliveries short-circuit on it
    processed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now())

    def __repr__(self) -> str:
        return f"<WebhookEvent {self.stripe_event_id} type={self.type} processed={self.processed_at is not None}>"
