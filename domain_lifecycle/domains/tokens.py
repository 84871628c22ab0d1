"""
Verification token generation for DNS TXT ownership proof.
"""

import secrets
import string

TOKEN_ALPHABET = string.ascii_lowercase + string.digits
DEFAULT_TOKEN_PREFIX = "adx_"
DEFAULT_TOKEN_LENGTH = 32


def generate_verification_token(
    prefix: str = DEFAULT_TOKEN_PREFIX,
    length: int = DEFAULT_TOKEN_LENGTH,
) -> str:
    """Return a fresh, unguessable token such as ``adx_k3v9...``."""
    return prefix + "".join(secrets.choice(TOKEN_ALPHABET) for _ in range(length))
