import logging

from flask import request, jsonify
from flask_wtf.csrf import generate_csrf
from sqlalchemy import func

from backoffice.errors import Unauthorized
from backoffice.extensions import db, limiter, csrf
from backoffice.models import AdminUser
from backoffice.schemas import LoginRequest
from backoffice.services.auth import require_auth, client_ip
from backoffice.services.passwords import burn_password_check
from backoffice.services.sessions import create_session, destroy_session
from backoffice.utils.helpers import utcnow
from . import bp

logger = logging.getLogger(__name__)

# Identical for unknown email, wrong password and deactivated account
INVALID_CREDENTIALS = "Invalid email or password"


def _login_email_scope():
    data_json = request.get_json(silent=True) or {}
    email = str(data_json.get("email") or "").strip().lower()
    # Keep a stable scope even if email is blank
    return f"login-email:{email or 'missing'}"


# No session exists yet to ride on, so there is nothing for CSRF to protect
@csrf.exempt
@bp.post("/login")
@limiter.limit("10 per minute; 100 per hour")              # per-IP
@limiter.limit("5 per minute; 20 per hour", key_func=_login_email_scope)  # per-account
def login():
    data = LoginRequest.model_validate(request.get_json(silent=True) or {})

    user = db.session.execute(
        db.select(AdminUser).where(func.lower(AdminUser.email) == data.email)
    ).scalar_one_or_none()

    if user is None:
        burn_password_check(data.password)
        logger.info("auth.login_failed", extra={"reason": "unknown_email", "ip": client_ip()})
        raise Unauthorized(INVALID_CREDENTIALS)
    if not user.check_password(data.password):
        logger.info("auth.login_failed", extra={"reason": "bad_password", "admin_id": user.id, "ip": client_ip()})
        raise Unauthorized(INVALID_CREDENTIALS)
    if not user.is_active:
        logger.info("auth.login_failed", extra={"reason": "inactive", "admin_id": user.id, "ip": client_ip()})
        raise Unauthorized(INVALID_CREDENTIALS)

    user.last_login = utcnow()
    db.session.commit()

    resp = jsonify({"success": True, "data": {"user": user.to_public()}})
    create_session(resp, user.id, user.email, user.name)
    logger.info("auth.login", extra={"admin_id": user.id, "ip": client_ip()})
    return resp, 200


@bp.post("/logout")
def logout():
    resp = jsonify({"success": True, "message": "Logged out successfully"})
    destroy_session(resp)
    return resp, 200


@bp.get("/verify")
def verify():
    user = require_auth()
    return jsonify({"success": True, "data": {"user": user.to_public(), "expires_at": user.expires_at}}), 200


@bp.get("/csrf-token")
def csrf_token():
    return jsonify({"success": True, "data": {"csrf_token": generate_csrf()}}), 200
