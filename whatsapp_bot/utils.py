"""
Utility functions for webhook security checks.
"""

import hashlib
import hmac
import logging
from typing import Optional

logger = logging.getLogger(__name__)

SIGNATURE_PREFIX = "sha256="


def verify_token(provided: str, expected: str) -> bool:
    """Constant-time comparison of the subscription verify token."""
    return hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))


def verify_hub_signature(body: bytes, signature: Optional[str], app_secret: str) -> bool:
    """
    Verify the platform's X-Hub-Signature-256 header.

    Args:
        body: Raw request body bytes
        signature: Header value, "sha256=<hex HMAC-SHA256 of body>"
        app_secret: The app secret shared with the platform

    Returns:
        True if signature is valid, False otherwise
    """
    if not signature or not signature.startswith(SIGNATURE_PREFIX):
        logger.debug("Signature header missing or malformed")
        return False

    expected_signature = hmac.new(
        app_secret.encode("utf-8"),
        body,
        hashlib.sha256
    ).hexdigest()

    # Use constant-time comparison to prevent timing attacks
    is_valid = hmac.compare_digest(expected_signature, signature[len(SIGNATURE_PREFIX):])
    logger.info(f"Hub signature verification: {'valid' if is_valid else 'invalid'}")
    return is_valid
