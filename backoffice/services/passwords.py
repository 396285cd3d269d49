"""
Credential verification for admin accounts.

Hashes are werkzeug's "method$salt$hash" strings (scrypt by default), so the
salt and work factor travel with the hash and can be raised without a
migration.
"""
import logging

from werkzeug.security import generate_password_hash, check_password_hash

from backoffice.errors import ConfigError, ValidationError

logger = logging.getLogger(__name__)

# Compared against when the email is unknown so both login failure paths do the same work
_DUMMY_HASH = generate_password_hash("not-a-real-password-3f1c9e")


class CredentialConfigError(ConfigError):
    """A stored password hash can't be parsed."""


def hash_password(password: str) -> str:
    if not password or not password.strip():
        raise ValidationError("Password is required")
    return generate_password_hash(password)


def _check_format(password_hash: str) -> None:
    if not password_hash or password_hash.count("$") < 2:
        raise CredentialConfigError("Stored password hash is malformed")
    method = password_hash.split("$", 1)[0]
    if not method:
        raise CredentialConfigError("Stored password hash has no method")


def verify_password(password: str, password_hash: str) -> bool:
    """
    True iff password matches password_hash. A mismatch is never an error;
    a hash this code can't interpret is (CredentialConfigError).
    """
    _check_format(password_hash)
    if not password:
        return False
    try:
        return check_password_hash(password_hash, password)
    except (ValueError, TypeError) as exc:
        # unknown hashing method or bad parameters
        logger.error("credentials.hash_unreadable", extra={"error": str(exc)})
        raise CredentialConfigError("Stored password hash is malformed") from exc


def burn_password_check(password: str) -> None:
    check_password_hash(_DUMMY_HASH, password or "")
