import os
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation

from dotenv import dotenv_values

from .errors import ConfigError


class BaseConfig:
    # Flask secret: signs CSRF tokens (env in prod; dev/test may use defaults)
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-not-secure")
    WTF_CSRF_SECRET_KEY = SECRET_KEY
    WTF_CSRF_TIME_LIMIT = 3600
    WTF_CSRF_HEADERS = ["X-CSRFToken", "X-CSRF-Token"]

    # Admin session signing secret: no default anywhere, must be provisioned
    ADMIN_SESSION_SECRET = os.environ.get("ADMIN_SESSION_SECRET")
    ADMIN_SESSION_MAX_AGE = int(os.environ.get("ADMIN_SESSION_MAX_AGE", "86400"))
    ADMIN_SESSION_COOKIE_SECURE = False

    # Database (env in prod; dev/test may use default)
    _ENV_FALLBACK = dotenv_values(".env")
    SQLALCHEMY_DATABASE_URI = os.environ.get("DATABASE_URL") or _ENV_FALLBACK.get("DATABASE_URL") or "sqlite:///:memory:"
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Logging / misc
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Flask's own session only carries the CSRF secret
    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = "Strict"

    # Flask-Limiter default: off globally; prefer per-route limits
    RATELIMIT_DEFAULT = None

    # Used for checkout / onboarding return URLs
    APP_BASE_URL = os.getenv("APP_BASE_URL", "http://localhost:5000")

    # --- Stripe ---
    STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY")
    STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET")
    STRIPE_APPLICATION_FEE_PERCENT = os.getenv("STRIPE_APPLICATION_FEE_PERCENT", "15")
    STRIPE_TIMEOUT_SECONDS = float(os.getenv("STRIPE_TIMEOUT_SECONDS", "10"))
    STRIPE_MAX_NETWORK_RETRIES = int(os.getenv("STRIPE_MAX_NETWORK_RETRIES", "2"))


class DevelopmentConfig(BaseConfig):
    DEBUG = True
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "DEBUG")
    SESSION_COOKIE_SECURE = False


class ProductionConfig(BaseConfig):
    DEBUG = False
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "WARNING")
    # REQUIRE env vars in production (fail fast if missing)
    SECRET_KEY = os.environ.get("SECRET_KEY")
    WTF_CSRF_SECRET_KEY = SECRET_KEY
    SQLALCHEMY_DATABASE_URI = os.environ.get("DATABASE_URL")
    SESSION_COOKIE_SECURE = True
    ADMIN_SESSION_COOKIE_SECURE = True
    # Bounded waits on the shared database
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_timeout": int(os.environ.get("DB_POOL_TIMEOUT", "5")),
        "connect_args": {
            "connect_timeout": 5,
            "options": f"-c statement_timeout={int(os.environ.get('DB_STATEMENT_TIMEOUT_MS', '5000'))}",
        },
    }


class TestingConfig(BaseConfig):
    TESTING = True
    DEBUG = True
    SQLALCHEMY_DATABASE_URI = os.environ.get("TEST_DATABASE_URL", "sqlite:///:memory:")
    SESSION_COOKIE_SECURE = False
    ADMIN_SESSION_SECRET = os.environ.get("ADMIN_SESSION_SECRET", "test-session-secret")
    STRIPE_SECRET_KEY = "sk_test_x"
    STRIPE_WEBHOOK_SECRET = "whsec_test_x"
    APP_BASE_URL = "http://example.test"
    RATELIMIT_ENABLED = False


_ENV_MAP = {
    "development": DevelopmentConfig,
    "production": ProductionConfig,
    "staging": ProductionConfig,
    "testing": TestingConfig,
}


def get_config():
    env = os.environ.get("APP_ENV", "development").lower()
    return _ENV_MAP.get(env, DevelopmentConfig)


@dataclass(frozen=True)
class Settings:
    """Secrets and tunables handed to components once, at startup."""

    session_secret: str
    session_max_age: int
    session_cookie_secure: bool
    stripe_secret_key: str | None
    webhook_secret: str | None
    base_url: str
    application_fee_percent: Decimal
    stripe_timeout: float
    stripe_max_retries: int

    @classmethod
    def from_config(cls, config, *, strict: bool = False) -> "Settings":
        """
        Build settings from a Flask config mapping.
        strict=True (staging/production) also requires the Stripe secrets.
        """
        def _require(name: str) -> str:
            val = config.get(name)
            if not val:
                raise ConfigError(f"Missing required configuration value: {name}")
            return val

        session_secret = _require("ADMIN_SESSION_SECRET")
        if strict:
            _require("SECRET_KEY")
            _require("STRIPE_SECRET_KEY")
            _require("STRIPE_WEBHOOK_SECRET")
            _require("APP_BASE_URL")

        try:
            fee = Decimal(str(config.get("STRIPE_APPLICATION_FEE_PERCENT", "15")))
        except InvalidOperation:
            raise ConfigError("STRIPE_APPLICATION_FEE_PERCENT must be a number")
        if fee < 0 or fee > 100:
            raise ConfigError("STRIPE_APPLICATION_FEE_PERCENT must be between 0 and 100")

        return cls(
            session_secret=session_secret,
            session_max_age=int(config.get("ADMIN_SESSION_MAX_AGE", 86400)),
            session_cookie_secure=bool(config.get("ADMIN_SESSION_COOKIE_SECURE", False)),
            stripe_secret_key=config.get("STRIPE_SECRET_KEY") or None,
            webhook_secret=config.get("STRIPE_WEBHOOK_SECRET") or None,
            base_url=(config.get("APP_BASE_URL") or "").rstrip("/"),
            application_fee_percent=fee,
            stripe_timeout=float(config.get("STRIPE_TIMEOUT_SECONDS", 10)),
            stripe_max_retries=int(config.get("STRIPE_MAX_NETWORK_RETRIES", 2)),
        )


def current_settings() -> Settings:
    from flask import current_app
    return current_app.extensions["settings"]
