"""HMAC signing of lender webhook bodies"""

import hashlib
import hmac
from typing import Optional

SIGNATURE_HEADER = "X-PaySick-Signature"


def sign_payload(body: bytes, secret: str) -> str:
    """Hex HMAC-SHA256 of the exact bytes sent on the wire"""
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_signature(body: bytes, signature: Optional[str], secret: Optional[str]) -> bool:
    """Constant-time check; a missing signature or secret never verifies"""
    if not signature or not secret:
        return False
    return hmac.compare_digest(sign_payload(body, secret), signature.strip().lower())
