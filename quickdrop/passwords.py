import secrets
from typing import Optional

from werkzeug.security import check_password_hash, generate_password_hash

# No 0/O, 1/l/I: the password is read off a screen and typed by hand.
PASSWORD_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz23456789"
PASSWORD_MIN_LENGTH = 12
PASSWORD_MAX_LENGTH = 16
MAX_PASSWORD_INPUT_LENGTH = 1024


def generate_password() -> str:
    length = PASSWORD_MIN_LENGTH + secrets.randbelow(PASSWORD_MAX_LENGTH - PASSWORD_MIN_LENGTH + 1)
    return "".join(secrets.choice(PASSWORD_ALPHABET) for _ in range(length))


def hash_password(password: str) -> str:
    return generate_password_hash(password)


def check_password(password_hash: str, candidate: Optional[object]) -> bool:
    """Compare *candidate* against *password_hash*.

    Anything that is not a non-empty string of sane length compares false, so
    callers cannot tell malformed input apart from a wrong password.
    """

    if not isinstance(candidate, str) or not candidate:
        return False
    if len(candidate) > MAX_PASSWORD_INPUT_LENGTH:
        return False
    try:
        return check_password_hash(password_hash, candidate)
    except (TypeError, ValueError):
        return False
