import os
from flask import Flask

# Load .env only for local/dev. In prod, env vars come from the platform.
if os.getenv("APP_ENV", "development") not in ("production", "staging"):
    from dotenv import load_dotenv
    load_dotenv(".env")


from .config import Settings, get_config
from .errors import register_error_handlers
from .extensions import db, migrate, csrf, login_manager, limiter
from .security import init_security
from .observability import init_logging, init_sentry
from .services.sessions import SessionCodec


def create_app(config_object=None):
    app = Flask(__name__)

    app_env = (os.getenv("APP_ENV", "development") or "development").lower()
    prod_like = app_env in ("staging", "production")

    # Rate limit storage: shared Redis when several workers serve traffic
    storage_uri = os.environ.get("REDIS_URL") if prod_like else "memory://"
    if prod_like and not storage_uri:
        raise RuntimeError("REDIS_URL is required in staging/production for rate limiting")
    app.config["RATELIMIT_STORAGE_URI"] = storage_uri
    app.config.setdefault("RATELIMIT_HEADERS_ENABLED", True)

    app.config.from_object(config_object or get_config())
    app.config["APP_ENV"] = app_env

    if prod_like and not app.config.get("SQLALCHEMY_DATABASE_URI"):
        raise RuntimeError("Missing required environment variable: DATABASE_URL")

    # Secrets are read once here; components get them from app.extensions
    settings = Settings.from_config(app.config, strict=prod_like)
    app.extensions["settings"] = settings
    app.extensions["session_codec"] = SessionCodec(settings.session_secret, max_age=settings.session_max_age)

    init_logging(app)
    init_sentry(app)
    if prod_like:
        init_security(app)

    # Init extensions
    db.init_app(app)
    migrate.init_app(app, db, directory="migrations")
    csrf.init_app(app)
    login_manager.init_app(app)
    limiter.init_app(app)

    # Registers the request_loader on login_manager
    from .services import auth  # noqa: F401
    from .services.activity import init_activity
    init_activity(app)

    from .blueprints.auth import bp as auth_bp
    from .blueprints.admin import bp as admin_bp
    from .blueprints.webhooks import bp as webhooks_bp
    from .blueprints.checkout import bp as checkout_bp

    app.register_blueprint(auth_bp, url_prefix="/api/admin/auth")
    app.register_blueprint(admin_bp, url_prefix="/api/admin")
    app.register_blueprint(webhooks_bp, url_prefix="/api/stripe")
    app.register_blueprint(checkout_bp, url_prefix="/api/stripe")

    @limiter.exempt
    @app.get("/healthz")
    def healthz():
        return {"status": "ok"}, 200

    register_error_handlers(app)

    from .cli import register_cli
    register_cli(app)

    if not settings.stripe_secret_key:
        app.logger.warning("Stripe secret key missing; payment features will not work")

    return app
