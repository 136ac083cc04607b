"""Unit tests for reference validation and webhook signature helpers."""

import hashlib
import hmac

from ajo.utils.hashing import compute_signature, payload_digest, verify_signature
from ajo.utils.validators import generate_reference, validate_reference, validate_slot


class TestReferenceValidation:
    def test_accepts_gateway_safe_characters(self):
        assert validate_reference("AJO-2026.01_abc=9")

    def test_rejects_short_and_unsafe_references(self):
        assert not validate_reference("abc")
        assert not validate_reference("ref with spaces")
        assert not validate_reference("ref/slash/123")
        assert not validate_reference("")
        assert not validate_reference(None)

    def test_generated_references_are_valid_and_unique(self):
        first, second = generate_reference(), generate_reference()
        assert first.startswith("AJO-")
        assert validate_reference(first)
        assert first != second


class TestSlotValidation:
    def test_slot_must_be_within_capacity(self):
        assert validate_slot(1, 5)
        assert validate_slot(5, 5)
        assert not validate_slot(0, 5)
        assert not validate_slot(6, 5)

    def test_missing_slot_is_allowed(self):
        assert validate_slot(None, 5)


class TestWebhookSignature:
    SECRET = "sk_test_signature"

    def test_signature_is_hmac_sha512_of_raw_body(self):
        body = b'{"event":"charge.success"}'
        expected = hmac.new(self.SECRET.encode(), body, hashlib.sha512).hexdigest()
        assert compute_signature(self.SECRET, body) == expected

    def test_verify_accepts_matching_signature(self):
        body = b'{"event":"charge.success","data":{"reference":"AJO-1"}}'
        assert verify_signature(self.SECRET, body, compute_signature(self.SECRET, body))

    def test_verify_rejects_other_bytes_with_same_json_meaning(self):
        signed = b'{"event":"charge.success"}'
        sent = b'{"event": "charge.success"}'
        assert not verify_signature(self.SECRET, sent, compute_signature(self.SECRET, signed))

    def test_verify_rejects_missing_signature_or_secret(self):
        body = b"{}"
        assert not verify_signature(self.SECRET, body, None)
        assert not verify_signature(self.SECRET, body, "")
        assert not verify_signature("", body, compute_signature("", body))

    def test_payload_digest_is_sha256(self):
        assert payload_digest(b"abc") == hashlib.sha256(b"abc").hexdigest()
