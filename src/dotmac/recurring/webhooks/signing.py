"""HMAC-SHA256 payload signatures for outbound webhooks."""

import hashlib
import hmac

SIGNATURE_PREFIX = "sha256="


def generate_signature(payload: bytes, secret: str) -> str:
    """Hex HMAC-SHA256 of ``payload``."""
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def signature_header(payload: bytes, secret: str) -> str:
    return f"{SIGNATURE_PREFIX}{generate_signature(payload, secret)}"


def verify_signature(payload: bytes, header: str | None, secret: str) -> bool:
    """Constant-time check of a received ``X-Webhook-Signature`` header.

    Accepts the digest with or without the ``sha256=`` prefix.
    """
    if not header:
        return False
    received = header.removeprefix(SIGNATURE_PREFIX)
    return hmac.compare_digest(received, generate_signature(payload, secret))


__all__ = ["SIGNATURE_PREFIX", "generate_signature", "signature_header", "verify_signature"]
