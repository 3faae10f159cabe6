"""Webhook signing and verification."""

from __future__ import annotations

import hashlib
import hmac
import secrets
import time


class SignatureError(Exception):
    """Raised when a webhook signature does not verify."""


def compute_signature(payload: str | bytes, secret: str, timestamp: str | None = None) -> str:
    """Hex HMAC-SHA256 of ``"<timestamp>.<payload>"``, or of the payload alone.

    The HMAC covers the exact bytes received; text payloads are UTF-8 encoded.
    """
    if isinstance(payload, str):
        payload = payload.encode("utf-8")
    signed = f"{timestamp}.".encode("utf-8") + payload if timestamp else payload
    return hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()


def verify_webhook_signature(
    payload: str | bytes,
    secret: str,
    signature: str | None,
    timestamp: str | None = None,
    tolerance: int = 300,
    now: float | None = None,
) -> None:
    """Verify a webhook signature.

    Args:
        payload: Raw request body
        secret: Trigger's shared secret
        signature: Hex digest, optionally prefixed with ``sha256=``
        timestamp: Unix seconds the sender signed with, if any
        tolerance: Maximum age (either direction) of ``timestamp`` in seconds
        now: Current time, for tests

    Raises:
        SignatureError: Missing, malformed, expired or mismatching signature
    """
    if not signature:
        raise SignatureError("Missing signature")

    if timestamp:
        try:
            sent_at = int(timestamp)
        except ValueError:
            raise SignatureError("Invalid timestamp") from None
        current = now if now is not None else time.time()
        if abs(current - sent_at) > tolerance:
            raise SignatureError("Signature timestamp expired")

    provided = signature.strip()
    if provided.startswith("sha256="):
        provided = provided[len("sha256="):]

    expected = compute_signature(payload, secret, timestamp)
    if not hmac.compare_digest(expected, provided):
        raise SignatureError("Invalid signature")


def generate_webhook_credentials() -> tuple[str, str]:
    """A fresh ``(path, secret)`` pair for a webhook trigger."""
    return f"trigger_{secrets.token_hex(16)}", secrets.token_hex(32)
