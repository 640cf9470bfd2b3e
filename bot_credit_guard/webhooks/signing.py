"""
Webhook envelope signing.

Signature header format: ``t=<unix seconds>,v1=<hex HMAC-SHA256>`` where the
HMAC covers ``"<t>.<json body>"`` with the bot's signing secret. Receivers
recompute it over the raw request body they received.
"""

import hashlib
import hmac
import json
import time
from typing import Any, Dict, List, Optional, Tuple

SIGNATURE_HEADER = "X-Bot-API-Signature"
EVENT_ID_HEADER = "X-Bot-API-Event-ID"
EVENT_TYPE_HEADER = "X-Bot-API-Event-Type"
SIGNATURE_VERSION = "v1"


def serialize_envelope(envelope: Dict[str, Any]) -> str:
    """Compact JSON body. The exact string signed is the exact string sent."""
    return json.dumps(envelope, separators=(",", ":"), ensure_ascii=False)


def compute_signature(payload: str, secret: str, timestamp: int) -> str:
    signed = f"{timestamp}.{payload}".encode("utf-8")
    return hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()


def sign(payload: str, secret: str, timestamp: Optional[int] = None) -> str:
    """Build the signature header value for a serialized envelope.

    Args:
        payload: Serialized JSON envelope
        secret: The bot's HMAC signing secret
        timestamp: Unix seconds; defaults to now

    Returns:
        Header value ``t=<timestamp>,v1=<hex digest>``
    """
    if timestamp is None:
        timestamp = int(time.time())
    return f"t={timestamp},{SIGNATURE_VERSION}={compute_signature(payload, secret, timestamp)}"


def parse_signature_header(header: str) -> Tuple[Optional[int], List[str]]:
    """Split a signature header into its timestamp and v1 digests.

    Unknown schemes are ignored. A missing or non-numeric timestamp
    yields None.
    """
    timestamp = None
    digests = []
    for part in (header or "").split(","):
        key, _, value = part.strip().partition("=")
        if key == "t":
            try:
                timestamp = int(value)
            except ValueError:
                timestamp = None
        elif key == SIGNATURE_VERSION and value:
            digests.append(value)
    return timestamp, digests


def verify(
    header: str,
    payload: str,
    secret: str,
    tolerance_seconds: Optional[int] = None,
    now: Optional[int] = None,
) -> bool:
    """Check a signature header against a payload and secret.

    Args:
        header: Received ``X-Bot-API-Signature`` value
        payload: Raw received body
        secret: Signing secret shared with the sender
        tolerance_seconds: Reject signatures older than this, if given
        now: Current unix seconds (for tests)

    Returns:
        True if any v1 digest matches and the timestamp is within tolerance
    """
    timestamp, digests = parse_signature_header(header)
    if timestamp is None or not digests:
        return False
    if tolerance_seconds is not None:
        current = int(time.time()) if now is None else now
        if abs(current - timestamp) > tolerance_seconds:
            return False
    expected = compute_signature(payload, secret, timestamp)
    return any(hmac.compare_digest(expected, digest) for digest in digests)
