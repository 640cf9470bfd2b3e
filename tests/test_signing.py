"""
Unit tests for webhook signatures.
"""

import hashlib
import hmac

from bot_credit_guard.webhooks.signing import (
    compute_signature,
    parse_signature_header,
    serialize_envelope,
    sign,
    verify,
)

SECRET = "whsec_test"
ENVELOPE = {
    "id": "evt_1",
    "event": "purchase",
    "botId": "bot-1",
    "timestamp": "2024-03-10T12:00:00+00:00",
    "data": {"amount": 10, "note": "café"},
}


class TestSigning:
    def test_header_format(self):
        body = serialize_envelope(ENVELOPE)
        header = sign(body, SECRET, 1710072000)

        expected = hmac.new(
            SECRET.encode(), f"1710072000.{body}".encode(), hashlib.sha256
        ).hexdigest()
        assert header == f"t=1710072000,v1={expected}"

    def test_serialization_is_compact(self):
        body = serialize_envelope(ENVELOPE)
        assert ", " not in body and ": " not in body
        assert "café" in body

    def test_signed_body_verifies(self):
        body = serialize_envelope(ENVELOPE)
        assert verify(sign(body, SECRET, 1710072000), body, SECRET)

    def test_one_byte_change_fails(self):
        body = serialize_envelope(ENVELOPE)
        header = sign(body, SECRET, 1710072000)
        tampered = body.replace('"amount":10', '"amount":11')

        assert not verify(header, tampered, SECRET)

    def test_wrong_secret_fails(self):
        body = serialize_envelope(ENVELOPE)
        assert not verify(sign(body, SECRET, 1710072000), body, "whsec_other")

    def test_timestamp_is_part_of_signature(self):
        body = serialize_envelope(ENVELOPE)
        digest = compute_signature(body, SECRET, 1710072000)
        assert not verify(f"t=1710072001,v1={digest}", body, SECRET)

    def test_tolerance(self):
        body = serialize_envelope(ENVELOPE)
        header = sign(body, SECRET, 1000)

        assert verify(header, body, SECRET, tolerance_seconds=300, now=1200)
        assert not verify(header, body, SECRET, tolerance_seconds=300, now=1400)

    def test_malformed_headers(self):
        body = serialize_envelope(ENVELOPE)
        assert not verify("", body, SECRET)
        assert not verify("v1=abc", body, SECRET)
        assert not verify("t=abc,v1=abc", body, SECRET)
        assert parse_signature_header("t=5,v0=x,v1=y") == (5, ["y"])
