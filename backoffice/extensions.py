from flask_sqlalchemy import SQLAlchemy
from flask_migrate import Migrate
from flask_wtf import CSRFProtect
from flask_login import LoginManager
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address

db = SQLAlchemy()
migrate = Migrate()
csrf = CSRFProtect()

# Principals come from the signed admin_session cookie (see services/auth.py);
# Flask's own session never carries a user id.
login_manager = LoginManager()


def _rate_limit_key():
    # Lazy import avoids circulars during app init
    from flask_login import current_user
    if getattr(current_user, "is_authenticated", False) and getattr(current_user, "id", None):
        return f"admin:{current_user.id}"
    return get_remote_address()

# Storage is configured in create_app() via limiter.init_app(...).
limiter = Limiter(key_func=_rate_limit_key)
