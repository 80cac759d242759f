# portal/signature.py
"""
Webhook signature verification (HMAC-SHA256, hex encoded).

The provider signs the exact request body it sent. Verification therefore has to
run on the raw bytes read from the request, before any JSON parsing: a parsed and
re-serialized body is a different byte sequence.
"""

import hashlib
import hmac
from typing import Optional, Union

from portal import monitoring

SIGNATURE_HEADER = "x-fedapay-signature"


def _to_bytes(value: Union[bytes, str]) -> bytes:
    if isinstance(value, bytes):
        return value
    return value.encode("utf-8")


def compute_signature(raw_body: Union[bytes, str], secret: str) -> str:
    """Hex HMAC-SHA256 of raw_body keyed by secret."""
    return hmac.new(_to_bytes(secret), _to_bytes(raw_body), hashlib.sha256).hexdigest()


def verify_signature(raw_body: Union[bytes, str], signature: Optional[str], secret: str) -> bool:
    """
    True when `signature` is the hex HMAC of `raw_body`.

    A missing signature or any failure while computing the digest yields False;
    nothing is raised to the caller.
    """
    if not signature:
        monitoring.logger.warning("Webhook received without signature")
        return False
    try:
        expected = compute_signature(raw_body, secret)
        provided = signature.strip().lower()
        valid = hmac.compare_digest(expected, provided)
    except Exception:
        monitoring.logger.exception("Signature verification error")
        return False
    if not valid:
        monitoring.logger.warning("Webhook signature mismatch")
    return valid
