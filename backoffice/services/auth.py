from functools import wraps

from flask import request
from flask_login import current_user

from backoffice.errors import Unauthorized
from backoffice.extensions import login_manager
from backoffice.services.sessions import COOKIE_NAME, SessionUser, verify_session


@login_manager.request_loader
def _load_from_cookie(req):
    token = req.cookies.get(COOKIE_NAME)
    if not token:
        return None
    return verify_session(token)


@login_manager.unauthorized_handler
def _unauthorized():
    raise Unauthorized()


def require_auth() -> SessionUser:
    """The authenticated admin for this request, or Unauthorized."""
    user = current_user._get_current_object()
    if not isinstance(user, SessionUser):
        raise Unauthorized()
    return user


def require_admin(fn):
    @wraps(fn)
    def _wrap(*args, **kwargs):
        require_auth()
        return fn(*args, **kwargs)
    return _wrap


def client_ip() -> str | None:
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip.strip()
    return request.remote_addr
