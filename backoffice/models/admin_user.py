from sqlalchemy import func

from backoffice.extensions import db
from backoffice.services.passwords import hash_password, verify_password


class AdminUser(db.Model):
    __tablename__ = "admin_users"

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(255), nullable=False, unique=True)  # stored lowercased
    password_hash = db.Column(db.String(255), nullable=False)
    name = db.Column(db.String(120), nullable=False)
    # Never deleted; deactivation blocks login
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    last_login = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    # helpers
    def set_password(self, password: str) -> None:
        self.password_hash = hash_password(password)

    def check_password(self, password: str) -> bool:
        return verify_password(password, self.password_hash)

    def to_public(self) -> dict:
        return {"id": self.id, "email": self.email, "name": self.name}

    def __repr__(self) -> str:
        return f"<AdminUser id={self.id} email={self.email!r} active={self.is_active}>"
