import hashlib
import hmac
from typing import Optional


def compute_signature(secret: str, message: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def signatures_match(expected: str, received: Optional[str]) -> bool:
    if not received:
        return False
    return hmac.compare_digest(expected, received)


def verify_hmac(secret: Optional[str], raw_body: bytes, received: Optional[str]) -> bool:
    if not secret:
        raise RuntimeError("Webhook secret not configured")
    return signatures_match(compute_signature(secret, raw_body), received)
