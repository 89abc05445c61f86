import bcrypt
from flask import current_app

MIN_PASSWORD_LENGTH = 8
# bcrypt silently truncates anything past 72 bytes
MAX_PASSWORD_BYTES = 72


def _utf8(value: str) -> bytes:
    return value.encode("utf-8")


def validate_password(plain_password) -> list:
    """Return a list of human-readable problems; empty means acceptable."""
    if not isinstance(plain_password, str):
        return ["Password must be a string"]

    problems = []
    if len(plain_password) < MIN_PASSWORD_LENGTH:
        problems.append(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
    if len(_utf8(plain_password)) > MAX_PASSWORD_BYTES:
        problems.append(f"Password must be at most {MAX_PASSWORD_BYTES} bytes")
    if plain_password.strip() != plain_password:
        problems.append("Password cannot start or end with whitespace")
    return problems


def hash_password(plain_password: str) -> str:
    if not isinstance(plain_password, str) or not plain_password:
        raise ValueError("Password must be a non-empty string")

    rounds = current_app.config.get("BCRYPT_ROUNDS", 12)
    return bcrypt.hashpw(_utf8(plain_password), bcrypt.gensalt(rounds=rounds)).decode("ascii")


def verify_password(plain_password: str, password_hash: str) -> bool:
    if not plain_password or not password_hash:
        return False
    try:
        return bcrypt.checkpw(_utf8(plain_password), _utf8(password_hash))
    except ValueError:
        # malformed stored hash
        return False
