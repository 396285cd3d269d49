from sqlalchemy import func, Index

from backoffice.extensions import db
from backoffice.utils.helpers import isoformat

CLIENT_ACTIVE = "ACTIVE"
CLIENT_INACTIVE = "INACTIVE"
CLIENT_ARCHIVED = "ARCHIVED"
CLIENT_STATUSES = (CLIENT_ACTIVE, CLIENT_INACTIVE, CLIENT_ARCHIVED)


class Client(db.Model):
    __tablename__ = "clients"

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(320), nullable=False, unique=True)
    name = db.Column(db.String(255), nullable=False)
    company = db.Column(db.String(255), nullable=True)
    phone = db.Column(db.String(32), nullable=True)
    notes = db.Column(db.Text, nullable=True)
    stripe_customer_id = db.Column(db.String(64), nullable=True, unique=True)

    # Soft delete only: ARCHIVED
    status = db.Column(db.String(16), nullable=False, default=CLIENT_ACTIVE, index=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    projects = db.relationship("Project", back_populates="client", lazy="select", order_by="Project.id")
    subscriptions = db.relationship("Subscription", back_populates="client", lazy="select", order_by="Subscription.id")
    payments = db.relationship("Payment", back_populates="client", lazy="dynamic")

    __table_args__ = (
        Index("ix_clients_name", name),
        Index("ix_clients_company", company),
        Index("ix_clients_created_at", created_at),
    )

    def summary(self) -> dict:
        return {"id": self.id, "name": self.name, "email": self.email, "company": self.company}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "email": self.email,
            "name": self.name,
            "company": self.company,
            "phone": self.phone,
            "notes": self.notes,
            "stripe_customer_id": self.stripe_customer_id,
            "status": self.status,
            "created_at": isoformat(self.created_at),
            "updated_at": isoformat(self.updated_at),
        }

    def __repr__(self) -> str:
        return f"<Client id={self.id} email={self.email!r} status={self.status}>"
