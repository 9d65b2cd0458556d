"""
Tests for inbound webhook authenticity checks.
"""

import base64
import hashlib
import hmac

import pytest

from msgbridge.schemas import SignatureValidationConfig
from msgbridge.signatures import (
    validate,
    validate_basic_auth,
    validate_bearer_token,
    validate_request,
)

SECRET = "webhook-secret"
BODY = b'{"id":"m1","status":"DELIVRD"}'


def compute_signature(body: bytes, secret: str, digest=hashlib.sha256) -> str:
    """Compute a hex HMAC signature for a request body."""
    return hmac.new(secret.encode("utf-8"), body, digest).hexdigest()


def basic_header(username: str, password: str) -> str:
    return "Basic " + base64.b64encode(f"{username}:{password}".encode()).decode()


class TestHmac:
    """Test HMAC validation."""

    def test_valid_sha256(self):
        assert validate(BODY, compute_signature(BODY, SECRET), SECRET) is True

    @pytest.mark.parametrize("algorithm, digest", [("sha1", hashlib.sha1), ("md5", hashlib.md5)])
    def test_other_algorithms(self, algorithm, digest):
        signature = compute_signature(BODY, SECRET, digest)
        assert validate(BODY, signature, SECRET, algorithm=algorithm) is True
        assert validate(BODY, signature, SECRET, algorithm="sha256") is False

    def test_prefix_is_stripped(self):
        signature = "sha256=" + compute_signature(BODY, SECRET)
        assert validate(BODY, signature, SECRET, prefix="sha256=") is True

    def test_mutated_body_fails(self):
        signature = compute_signature(BODY, SECRET)
        assert validate(BODY.replace(b"m1", b"m2"), signature, SECRET) is False

    def test_every_single_character_mutation_fails(self):
        signature = compute_signature(BODY, SECRET)
        for i in range(len(signature)):
            replacement = "0" if signature[i] != "0" else "1"
            mutated = signature[:i] + replacement + signature[i + 1:]
            assert validate(BODY, mutated, SECRET) is False

    def test_uppercased_signature_fails(self):
        signature = compute_signature(BODY, SECRET).upper()
        assert validate(BODY, signature, SECRET) is False

    def test_wrong_secret_fails(self):
        assert validate(BODY, compute_signature(BODY, "other"), SECRET) is False

    @pytest.mark.parametrize("signature, secret", [(None, SECRET), ("", SECRET), ("abc", None), ("abc", "")])
    def test_missing_inputs_fail(self, signature, secret):
        assert validate(BODY, signature, secret) is False

    def test_unknown_algorithm_fails(self):
        assert validate(BODY, compute_signature(BODY, SECRET), SECRET, algorithm="sha512") is False

    def test_non_ascii_signature_does_not_raise(self):
        assert validate(BODY, "ü" * 64, SECRET) is False


class TestBasicAndBearer:
    """Test credential-style checks."""

    def test_basic_valid(self):
        assert validate_basic_auth(basic_header("user", "pa:ss"), "user", "pa:ss") is True

    def test_basic_wrong_password(self):
        assert validate_basic_auth(basic_header("user", "nope"), "user", "pass") is False

    def test_basic_wrong_user(self):
        assert validate_basic_auth(basic_header("other", "pass"), "user", "pass") is False

    @pytest.mark.parametrize("header", [None, "", "Bearer abc", "Basic !!!notbase64", "Basic " + base64.b64encode(b"nocolon").decode()])
    def test_basic_malformed(self, header):
        assert validate_basic_auth(header, "user", "pass") is False

    def test_bearer_valid(self):
        assert validate_bearer_token("Bearer token-1", "token-1") is True

    def test_bearer_invalid(self):
        assert validate_bearer_token("Bearer token-2", "token-1") is False
        assert validate_bearer_token("token-1", "token-1") is False
        assert validate_bearer_token("Bearer token-1", None) is False


class TestValidateRequest:
    """Test dispatch on the configured algorithm."""

    def test_header_lookup_is_case_insensitive(self):
        config = SignatureValidationConfig(enabled=True, header_name="X-Signature", secret_key=SECRET)
        headers = {"x-signature": compute_signature(BODY, SECRET)}
        assert validate_request(headers, BODY, config) is True

    def test_missing_header_fails(self):
        config = SignatureValidationConfig(enabled=True, secret_key=SECRET)
        assert validate_request({}, BODY, config) is False

    def test_none_algorithm_passes(self):
        config = SignatureValidationConfig(enabled=True, algorithm="none")
        assert validate_request({}, BODY, config) is True

    def test_bearer(self):
        config = SignatureValidationConfig(
            enabled=True, header_name="Authorization", algorithm="bearer", secret_key="tok"
        )
        assert validate_request({"authorization": "Bearer tok"}, BODY, config) is True
        assert validate_request({"authorization": "Bearer bad"}, BODY, config) is False

    def test_basic(self):
        config = SignatureValidationConfig(
            enabled=True, header_name="Authorization", algorithm="basic", username="u", password="p"
        )
        assert validate_request({"Authorization": basic_header("u", "p")}, BODY, config) is True

    def test_prefixed_hmac(self):
        config = SignatureValidationConfig(
            enabled=True, header_name="X-Hub-Signature-256", prefix="sha256=", secret_key=SECRET
        )
        headers = {"X-Hub-Signature-256": "sha256=" + compute_signature(BODY, SECRET)}
        assert validate_request(headers, BODY, config) is True
