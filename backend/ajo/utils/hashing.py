"""
Cryptographic Hashing Utilities: Webhook signatures and payload digests.
"""
import hashlib
import hmac


def payload_digest(raw_body: bytes) -> str:
    """SHA-256 hex digest of a raw request body, for delivery bookkeeping."""
    return hashlib.sha256(raw_body).hexdigest()


def compute_signature(secret: str, raw_body: bytes) -> str:
    """HMAC-SHA512 hex digest of the raw body, as Paystack signs webhooks.

    The body must be the exact bytes received. Re-serialized JSON will not match.
    """
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha512).hexdigest()


def verify_signature(secret: str, raw_body: bytes, signature: str | None) -> bool:
    """Constant-time comparison of the expected and supplied signatures."""
    if not signature or not secret:
        return False
    expected = compute_signature(secret, raw_body)
    return hmac.compare_digest(expected, signature.strip().lower())
