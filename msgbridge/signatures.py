"""
Authenticity checks for inbound provider webhooks.
"""

import base64
import binascii
import hashlib
import hmac
import logging
from typing import Mapping, Optional

from msgbridge.schemas import SignatureValidationConfig

logger = logging.getLogger(__name__)

HMAC_ALGORITHMS = {
    "sha256": hashlib.sha256,
    "sha1": hashlib.sha1,
    "md5": hashlib.md5,
}


def _constant_time_equals(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))


def validate(
    body: bytes,
    signature: Optional[str],
    secret: Optional[str],
    algorithm: str = "sha256",
    prefix: str = "",
) -> bool:
    """
    Verify an HMAC signature over the raw request body.

    Args:
        body: Raw request body bytes
        signature: Hex-encoded signature from the provider's header
        secret: Shared secret configured on the route
        algorithm: sha256, sha1 or md5
        prefix: Optional prefix on the header value, e.g. "sha256="

    Returns:
        True if signature is valid, False otherwise
    """
    digest = HMAC_ALGORITHMS.get(algorithm)
    if digest is None or not signature or not secret:
        logger.info(f"HMAC signature verification skipped: algorithm={algorithm}, has_signature={bool(signature)}")
        return False

    if prefix and signature.startswith(prefix):
        signature = signature[len(prefix):]

    logger.debug(f"Body length: {len(body)} bytes, signature: {signature[:8]}...")

    expected_signature = hmac.new(
        secret.encode("utf-8"),
        body,
        digest
    ).hexdigest()

    # Use constant-time comparison to prevent timing attacks
    is_valid = _constant_time_equals(expected_signature, signature.strip())
    logger.info(f"HMAC signature verification: {'valid' if is_valid else 'invalid'}")

    return is_valid


def validate_basic_auth(
    auth_header: Optional[str],
    expected_username: Optional[str],
    expected_password: Optional[str],
) -> bool:
    """Verify an `Authorization: Basic ...` header."""
    if not auth_header or not auth_header.startswith("Basic "):
        return False
    if expected_username is None or expected_password is None:
        return False

    try:
        decoded = base64.b64decode(auth_header[6:].strip(), validate=True).decode("utf-8")
    except (binascii.Error, ValueError) as e:
        logger.warning(f"Malformed basic auth header: {e}")
        return False

    username, sep, password = decoded.partition(":")
    if not sep:
        return False

    # Compare both parts so a wrong username takes as long as a wrong password
    user_ok = _constant_time_equals(username, expected_username)
    password_ok = _constant_time_equals(password, expected_password)
    return user_ok and password_ok


def validate_bearer_token(auth_header: Optional[str], expected_token: Optional[str]) -> bool:
    """Verify an `Authorization: Bearer ...` header."""
    if not auth_header or not auth_header.startswith("Bearer ") or not expected_token:
        return False
    return _constant_time_equals(auth_header[7:].strip(), expected_token)


def validate_request(
    headers: Mapping[str, str],
    body: bytes,
    config: SignatureValidationConfig,
) -> bool:
    """
    Run the route's configured check against an inbound request.

    Header lookup is case-insensitive. A missing header fails every mode
    except "none".
    """
    if config.algorithm == "none":
        return True

    wanted = config.header_name.lower()
    value = next((v for k, v in headers.items() if k.lower() == wanted), None)
    if not value:
        logger.warning(f"Missing signature header: {config.header_name}")
        return False

    if config.algorithm == "bearer":
        return validate_bearer_token(value, config.secret_key)

    if config.algorithm == "basic":
        return validate_basic_auth(value, config.username, config.password)

    return validate(body, value, config.secret_key, config.algorithm, config.prefix)
