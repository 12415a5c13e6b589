"""Random identifiers for naming per-test cloud resources."""
from __future__ import annotations

import secrets
import string

# Base62 keeps ids valid for EC2 key names, S3 keys and Terraform variables.
ALPHABET = string.ascii_letters + string.digits
DEFAULT_LENGTH = 8


def unique_id(length: int = DEFAULT_LENGTH) -> str:
    """Return a short random id that starts with a letter."""
    if length < 1:
        raise ValueError("length must be positive")
    first = secrets.choice(string.ascii_letters)
    return first + "".join(secrets.choice(ALPHABET) for _ in range(length - 1))
