"""Webhook HMAC signature generation and verification.

Inbound webhook triggers may carry a shared secret. The caller signs the
raw request body with HMAC-SHA256 and sends the hex digest in the
signature header (default ``X-Webhook-Signature``), optionally prefixed
with ``sha256=``.

Usage:
    # Signing (caller side, also used by tests)
    headers = sign_webhook_payload(body_bytes, secret)

    # Verification (trigger dispatcher)
    is_valid = verify_webhook_signature(body_bytes, secret, signature)
"""

import hashlib
import hmac
from typing import Optional

SIGNATURE_PREFIX = "sha256="
DEFAULT_SIGNATURE_HEADER = "X-Webhook-Signature"


def compute_signature(payload: bytes, secret: str) -> str:
    """Hex HMAC-SHA256 digest of ``payload`` keyed by ``secret``."""
    return hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()


def sign_webhook_payload(
    payload: bytes,
    secret: str,
    header: str = DEFAULT_SIGNATURE_HEADER,
) -> dict[str, str]:
    """Sign a webhook payload and return headers to include in the request.

    Args:
        payload: Raw request body bytes
        secret: Webhook signing secret (shared with the receiver)
        header: Name of the signature header

    Returns:
        Dict of headers to add to the webhook request
    """
    return {
        header: f"{SIGNATURE_PREFIX}{compute_signature(payload, secret)}",
        "Content-Type": "application/json",
    }


def verify_webhook_signature(
    payload: bytes,
    secret: str,
    signature_header: Optional[str],
) -> bool:
    """Verify a webhook signature over the raw body.

    Args:
        payload: Raw request body bytes
        secret: Webhook signing secret
        signature_header: Value of the signature header, ``sha256=<hex>`` or bare hex

    Returns:
        True if the signature matches
    """
    if not signature_header:
        return False

    provided = signature_header.strip()
    if provided.lower().startswith(SIGNATURE_PREFIX):
        provided = provided[len(SIGNATURE_PREFIX):]

    expected = compute_signature(payload, secret)

    # Constant-time comparison
    return hmac.compare_digest(expected.encode(), provided.lower().encode())

