"""Request signing and shared-key verification."""

import base64
import hashlib
import hmac
import secrets

SIGNATURE_PREFIX = "sha256="


def compute_webhook_signature(payload: bytes, secret: str) -> str:
    """Compute the Typeform webhook signature for a raw request body.

    Args:
        payload: Raw request body bytes
        secret: Webhook signing secret

    Returns:
        Signature header value in the form ``sha256=<base64 digest>``
    """
    digest = hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).digest()
    return SIGNATURE_PREFIX + base64.b64encode(digest).decode("ascii")


def verify_webhook_signature(
    payload: bytes,
    signature_header: str | None,
    secret: str | None,
) -> bool:
    """Verify a webhook signature header against the raw body.

    Verification is skipped (returns True) when no secret is configured.
    """
    if not secret:
        return True

    if not signature_header or not signature_header.startswith(SIGNATURE_PREFIX):
        return False

    expected = compute_webhook_signature(payload, secret)
    return hmac.compare_digest(expected, signature_header.strip())


def verify_cron_key(provided: str, expected: str | None) -> bool:
    """Constant-time comparison of a cron bearer key."""
    if not expected:
        return False
    return secrets.compare_digest(provided, expected)
