"""
Credential helpers for walk-in / phone customers and guest order tracking.
"""

import re
import secrets
from typing import List, Tuple

# No I, O, 1 or 0 so passwords can be read out over the phone
PASSWORD_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
PASSWORD_PREFIX = "Ekm"


def generate_secure_password(segments: int = 2, segment_length: int = 4) -> str:
    """Memorable password like Ekm-A7B9-K3L5 that passes validate_password_strength."""
    while True:
        parts = [PASSWORD_PREFIX]
        for _ in range(segments):
            parts.append("".join(secrets.choice(PASSWORD_ALPHABET) for _ in range(segment_length)))
        password = "-".join(parts)
        # segments can come out without a digit
        if validate_password_strength(password)[0]:
            return password


def generate_tracking_token() -> str:
    return secrets.token_hex(16)


def validate_password_strength(password: str) -> Tuple[bool, List[str]]:
    errors: List[str] = []
    if len(password) < 8:
        errors.append("Password must be at least 8 characters long")
    if not re.search(r"[a-z]", password):
        errors.append("Password must contain at least one lowercase letter")
    if not re.search(r"[A-Z]", password):
        errors.append("Password must contain at least one uppercase letter")
    if not re.search(r"[0-9]", password):
        errors.append("Password must contain at least one number")
    return len(errors) == 0, errors
