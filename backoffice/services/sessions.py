"""
Signed admin session tokens.

The token is an itsdangerous URL-safe timed signature over
{uid, email, name, iat, exp}. Nothing is stored server-side; a token is
valid until it expires or the signing secret rotates.
"""
import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

from flask import current_app
from flask_login import UserMixin
from itsdangerous import URLSafeTimedSerializer, BadSignature, SignatureExpired

from backoffice.errors import ConfigError

logger = logging.getLogger(__name__)

COOKIE_NAME = "admin_session"
DEFAULT_MAX_AGE = 24 * 60 * 60
DEFAULT_SALT = "admin-session-v1"


@dataclass(frozen=True)
class SessionUser(UserMixin):
    id: int
    email: str
    name: str
    issued_at: int
    expires_at: int

    def get_id(self) -> str:
        return str(self.id)

    def to_public(self) -> dict:
        return {"id": self.id, "email": self.email, "name": self.name}


class SessionCodec:
    def __init__(self, secret: str, max_age: int = DEFAULT_MAX_AGE, salt: str = DEFAULT_SALT,
                 clock: Callable[[], float] = time.time):
        if not secret:
            raise ConfigError("Session signing secret is not configured")
        self.max_age = int(max_age)
        self._clock = clock
        self._serializer = URLSafeTimedSerializer(secret_key=secret, salt=salt)

    def encode(self, user_id: int, email: str, name: str) -> str:
        now = int(self._clock())
        payload = {"uid": int(user_id), "email": email, "name": name, "iat": now, "exp": now + self.max_age}
        return self._serializer.dumps(payload)

    def decode(self, token: Optional[str]) -> Optional[SessionUser]:
        if not token:
            return None
        try:
            data = self._serializer.loads(token, max_age=self.max_age)
        except SignatureExpired:
            logger.info("session.invalid", extra={"reason": "expired"})
            return None
        except BadSignature:
            logger.info("session.invalid", extra={"reason": "bad_signature"})
            return None

        if not isinstance(data, dict):
            logger.info("session.invalid", extra={"reason": "malformed"})
            return None
        uid, email, name = data.get("uid"), data.get("email"), data.get("name")
        iat, exp = data.get("iat"), data.get("exp")
        if not (isinstance(uid, int) and not isinstance(uid, bool)
                and isinstance(email, str) and isinstance(name, str)
                and isinstance(iat, int) and isinstance(exp, int)):
            logger.info("session.invalid", extra={"reason": "malformed"})
            return None
        if exp <= int(self._clock()):
            logger.info("session.invalid", extra={"reason": "expired"})
            return None
        return SessionUser(id=uid, email=email, name=name, issued_at=iat, expires_at=exp)


def get_codec() -> SessionCodec:
    return current_app.extensions["session_codec"]


def _cookie_secure() -> bool:
    return bool(current_app.extensions["settings"].session_cookie_secure)


def create_session(response, user_id: int, email: str, name: str) -> str:
    codec = get_codec()
    token = codec.encode(user_id, email, name)
    response.set_cookie(
        COOKIE_NAME,
        token,
        max_age=codec.max_age,
        path="/",
        httponly=True,
        secure=_cookie_secure(),
        samesite="Strict",
    )
    return token


def verify_session(token: Optional[str]) -> Optional[SessionUser]:
    return get_codec().decode(token)


def destroy_session(response) -> None:
    response.delete_cookie(COOKIE_NAME, path="/", httponly=True, secure=_cookie_secure(), samesite="Strict")
