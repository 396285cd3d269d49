import re

# Simple, pragmatic patterns
_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def clean_str(val: str | None, max_len: int = 255) -> str | None:
    """
    Collapse whitespace, trim, enforce max length. Returns None if empty after cleaning.
    """
    if val is None:
        return None
    s = re.sub(r"\s+", " ", val).strip()
    if not s:
        return None
    return s[:max_len]


def normalize_email(val: str | None) -> str | None:
    s = clean_str(val, max_len=320)
    return s.lower() if s else None


def is_valid_email(val: str | None) -> bool:
    if not val:
        return False
    return bool(_EMAIL_RE.match(val))


def normalize_phone(val: str | None) -> str | None:
    """
    Normalize US phone to (###) ###-####. Accept 10 digits or 11 starting with '1'.
    Anything else is kept as typed (international numbers), trimmed.
    """
    if not val:
        return None
    digits = "".join(re.findall(r"\d", val))
    if len(digits) == 11 and digits.startswith("1"):
        digits = digits[1:]
    if len(digits) != 10:
        return clean_str(val, max_len=32)
    return f"({digits[0:3]}) {digits[3:6]}-{digits[6:]}"


def email_local_part(email: str) -> str:
    return email.split("@", 1)[0] or email
