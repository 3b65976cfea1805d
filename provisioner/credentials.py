"""Guest login credential generation."""

from __future__ import annotations

import secrets
import string

try:
    import bcrypt  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("bcrypt is required but not installed") from exc

from provisioner.constants import PASSWORD_ALPHABET, PASSWORD_LENGTH, PASSWORD_MIN_LENGTH
from provisioner.exceptions import ManagerError

_CLASSES = (
    string.ascii_lowercase,
    string.ascii_uppercase,
    string.digits,
    "".join(ch for ch in PASSWORD_ALPHABET if ch in string.punctuation),
)


def generate_password(length: int = PASSWORD_LENGTH) -> str:
    """Return a random password drawing at least one character from every class."""
    if length < PASSWORD_MIN_LENGTH:
        raise ManagerError(f"Password length must be >= {PASSWORD_MIN_LENGTH} (got {length})")
    chars = [secrets.choice(pool) for pool in _CLASSES]
    chars += [secrets.choice(PASSWORD_ALPHABET) for _ in range(length - len(chars))]
    secrets.SystemRandom().shuffle(chars)
    return "".join(chars)


def hash_password(password: str) -> str:
    """Generate a bcrypt hash for cloud-init."""
    hashed = bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt())
    return hashed.decode("utf-8")
