"""HMAC-SHA256 signing helpers used for cookies and the approval form state."""

import hashlib
import hmac
from typing import Optional


def _key(secret: str) -> bytes:
    return secret.encode("utf-8")


def sign(payload: str, secret: str) -> str:
    """Sign payload with secret and return the hex digest."""
    return hmac.new(_key(secret), payload.encode("utf-8"), hashlib.sha256).hexdigest()


def verify(signature_hex: Optional[str], payload: str, secret: str) -> bool:
    """Check a hex signature against payload.

    Returns False for any malformed signature instead of raising.
    """
    if not signature_hex or not isinstance(signature_hex, str):
        return False
    try:
        provided = bytes.fromhex(signature_hex)
    except ValueError:
        return False

    expected = hmac.new(_key(secret), payload.encode("utf-8"), hashlib.sha256).digest()
    return hmac.compare_digest(provided, expected)
