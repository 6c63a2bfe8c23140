"""HMAC signing primitives shared by outbound delivery and inbound verification."""
from __future__ import annotations

import hashlib
import hmac
import logging
import time
from typing import Mapping, Optional, Union

from ..errors import WebhookVerificationError

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Subcycle-Signature"
TIMESTAMP_HEADER = "X-Subcycle-Timestamp"
EVENT_TYPE_HEADER = "X-Subcycle-Event-Type"
EVENT_ID_HEADER = "X-Subcycle-Event-Id"
SIGNATURE_PREFIX = "sha256="

Payload = Union[bytes, str]


def _as_bytes(payload: Payload) -> bytes:
    return payload.encode("utf-8") if isinstance(payload, str) else payload


def compute_signature(payload: Payload, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), _as_bytes(payload), hashlib.sha256).hexdigest()


def signature_header(payload: Payload, secret: str) -> str:
    return f"{SIGNATURE_PREFIX}{compute_signature(payload, secret)}"


def verify_signature(payload: Payload, signature: str, secret: str) -> bool:
    """Constant-time check of ``signature`` (bare hex or ``sha256=`` form)."""

    if not signature or not secret:
        return False
    provided = signature[len(SIGNATURE_PREFIX):] if signature.startswith(SIGNATURE_PREFIX) else signature
    expected = compute_signature(payload, secret)
    return hmac.compare_digest(expected.encode("ascii"), provided.strip().lower().encode("ascii", "ignore"))


def verify_timestamp(timestamp: Union[str, int, None], *, now: Optional[int] = None, tolerance: int = 300) -> bool:
    if timestamp is None:
        return False
    try:
        value = int(timestamp)
    except (TypeError, ValueError):
        return False
    current = int(time.time()) if now is None else now
    return abs(current - value) <= tolerance


def verify_webhook_request(
    payload: Payload,
    headers: Mapping[str, str],
    secret: str,
    *,
    tolerance: int = 300,
    now: Optional[int] = None,
) -> None:
    """Validate an inbound delivery; raises :class:`WebhookVerificationError`."""

    normalized = {key.lower(): value for key, value in headers.items()}
    timestamp = normalized.get(TIMESTAMP_HEADER.lower())
    if not verify_timestamp(timestamp, now=now, tolerance=tolerance):
        logger.warning("Rejected webhook with stale or missing timestamp %r", timestamp)
        raise WebhookVerificationError(
            "Webhook timestamp outside the accepted window",
            code="stale_timestamp",
        )
    signature = normalized.get(SIGNATURE_HEADER.lower(), "")
    if not verify_signature(payload, signature, secret):
        logger.warning("Rejected webhook with invalid signature")
        raise WebhookVerificationError("Webhook signature mismatch")


__all__ = [
    "EVENT_ID_HEADER",
    "EVENT_TYPE_HEADER",
    "SIGNATURE_HEADER",
    "TIMESTAMP_HEADER",
    "compute_signature",
    "signature_header",
    "verify_signature",
    "verify_timestamp",
    "verify_webhook_request",
]
