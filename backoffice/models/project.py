from sqlalchemy import func

from backoffice.extensions import db
from backoffice.utils.helpers import isoformat

PROJECT_STATUSES = ("PLANNING", "IN_PROGRESS", "ON_HOLD", "COMPLETED", "CANCELED")


class Project(db.Model):
    __tablename__ = "projects"

    id = db.Column(db.Integer, primary_key=True)
    client_id = db.Column(db.Integer, db.ForeignKey("clients.id", ondelete="RESTRICT"), nullable=False, index=True)
    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)
    status = db.Column(db.String(16), nullable=False, default="PLANNING", index=True)
    start_date = db.Column(db.Date, nullable=True)
    end_date = db.Column(db.Date, nullable=True)
    budget_cents = db.Column(db.Integer, nullable=True)
    notes = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    client = db.relationship("Client", back_populates="projects")

    def to_dict(self, *, with_client: bool = False) -> dict:
        data = {
            "id": self.id,
            "client_id": self.client_id,
            "name": self.name,
            "description": self.description,
            "status": self.status,
            "start_date": isoformat(self.start_date),
            "end_date": isoformat(self.end_date),
            "budget_cents": self.budget_cents,
            "notes": self.notes,
            "created_at": isoformat(self.created_at),
            "updated_at": isoformat(self.updated_at),
        }
        if with_client:
            data["client"] = self.client.summary() if self.client else None
        return data

    def __repr__(self) -> str:
        return f"<Project id={self.id} client_id={self.client_id} status={self.status}>"
