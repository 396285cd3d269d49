"""
Error taxonomy shared by routes and services.

Routes raise these (or let services raise them); the handlers registered in
register_error_handlers() turn them into the JSON envelope
{"success": false, "error": <message>} with the matching status.
"""
import logging

from flask import jsonify
from pydantic import ValidationError as SchemaError
import stripe

logger = logging.getLogger(__name__)


class ConfigError(RuntimeError):
    """A required secret or setting is missing or malformed."""


class AppError(Exception):
    status_code = 500
    message = "Internal server error"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.message)
        self.message = message or self.message


class ValidationError(AppError):
    status_code = 400
    message = "Invalid input"


class Unauthorized(AppError):
    # Same message for every cause: never reveal which check failed
    status_code = 401
    message = "Unauthorized"


class NotFound(AppError):
    status_code = 404
    message = "Not found"


class Conflict(AppError):
    status_code = 400
    message = "Conflict"


class UpstreamError(AppError):
    """The payment processor rejected the request."""
    status_code = 400
    message = "Payment processor rejected the request"


class TransientError(AppError):
    """Database or network failure; safe for the caller to retry."""
    status_code = 500
    message = "Temporary failure, please retry"


def first_schema_error(exc: SchemaError) -> str:
    """First human-readable violation from a pydantic error."""
    errors = exc.errors()
    if not errors:
        return ValidationError.message
    err = errors[0]
    msg = err.get("msg") or ValidationError.message
    if err.get("type") == "value_error":
        # custom validator messages are already human-readable
        return msg.removeprefix("Value error, ")
    loc = ".".join(str(p) for p in err.get("loc") or ())
    return f"{loc}: {msg}" if loc else msg


def error_response(message: str, status: int):
    return jsonify({"success": False, "error": message}), status


def register_error_handlers(app):
    @app.errorhandler(AppError)
    def _app_error(e: AppError):
        if e.status_code >= 500:
            app.logger.error("request.failed", extra={"error": type(e).__name__, "detail": e.message})
        return error_response(e.message, e.status_code)

    @app.errorhandler(SchemaError)
    def _schema_error(e: SchemaError):
        return error_response(first_schema_error(e), 400)

    @app.errorhandler(ConfigError)
    def _config_error(e: ConfigError):
        app.logger.critical("config.missing", extra={"detail": str(e)})
        return error_response("Internal server error", 500)

    @app.errorhandler(stripe.StripeError)
    def _stripe_error(e):
        # Services translate processor errors; anything reaching here slipped past them
        app.logger.exception("stripe.unmapped_error")
        return error_response("Payment processor error", 500)

    @app.errorhandler(404)
    def _not_found(e):
        return error_response("Not found", 404)

    @app.errorhandler(405)
    def _method_not_allowed(e):
        return error_response("Method not allowed", 405)

    @app.errorhandler(429)
    def _too_many_requests(e):
        retry_after = getattr(e, "retry_after", None)
        headers = {}
        if retry_after is not None:
            headers["Retry-After"] = str(int(retry_after))
        body, _ = error_response("Too many requests", 429)
        return body, 429, headers

    # CSRF error handler (clean 400 instead of generic 500)
    from flask_wtf.csrf import CSRFError

    @app.errorhandler(CSRFError)
    def _csrf_error(e):
        return error_response(f"CSRF validation failed: {e.description}", 400)

    @app.errorhandler(500)
    def _server_error(e):
        original = getattr(e, "original_exception", None)
        if original is not None:
            app.logger.error("request.unhandled_exception", exc_info=original)
        return error_response("Internal server error", 500)
