"""
Credential Vault: authenticated encryption for provider credentials and
webhook config blobs.

Storage format is base64(nonce ‖ tag ‖ ciphertext) with AES-256-GCM, a
16-byte random nonce and a 16-byte tag. The key is the SHA-256 digest of the
configured secret.
"""

import base64
import binascii
import hashlib
import json
import logging
import os
from typing import Any, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from pydantic import ValidationError

from msgbridge.errors import DecryptionError
from msgbridge.schemas import RouteConfig

logger = logging.getLogger(__name__)

NONCE_LENGTH = 16
TAG_LENGTH = 16


def _derive_key(secret: str) -> bytes:
    return hashlib.sha256(secret.encode("utf-8")).digest()


def encrypt(plaintext: str, secret: str) -> str:
    """
    Encrypt a string with a key derived from `secret`.

    Every call uses a fresh nonce, so encrypting the same plaintext twice
    gives different ciphertexts.
    """
    nonce = os.urandom(NONCE_LENGTH)
    sealed = AESGCM(_derive_key(secret)).encrypt(nonce, plaintext.encode("utf-8"), None)
    # cryptography appends the tag to the ciphertext
    body, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
    return base64.b64encode(nonce + tag + body).decode("ascii")


def decrypt(ciphertext: str, secret: str) -> str:
    """
    Decrypt a value produced by `encrypt`.

    Raises:
        DecryptionError: on malformed input, wrong key or tampered data.
    """
    try:
        raw = base64.b64decode(ciphertext, validate=True)
    except (binascii.Error, ValueError, TypeError) as e:
        raise DecryptionError("Ciphertext is not valid base64") from e

    if len(raw) < NONCE_LENGTH + TAG_LENGTH:
        raise DecryptionError("Ciphertext is too short")

    nonce = raw[:NONCE_LENGTH]
    tag = raw[NONCE_LENGTH:NONCE_LENGTH + TAG_LENGTH]
    body = raw[NONCE_LENGTH + TAG_LENGTH:]

    try:
        plaintext = AESGCM(_derive_key(secret)).decrypt(nonce, body + tag, None)
    except InvalidTag as e:
        raise DecryptionError("Authentication tag mismatch") from e

    try:
        return plaintext.decode("utf-8")
    except UnicodeDecodeError as e:
        raise DecryptionError("Decrypted data is not UTF-8") from e


def encrypt_json(value: Any, secret: str) -> str:
    """Serialize `value` as JSON and encrypt it."""
    return encrypt(json.dumps(value), secret)


def decrypt_json(ciphertext: str, secret: str) -> Any:
    """Decrypt a blob produced by `encrypt_json`."""
    plaintext = decrypt(ciphertext, secret)
    try:
        return json.loads(plaintext)
    except json.JSONDecodeError as e:
        raise DecryptionError("Decrypted data is not JSON") from e


def load_route_config(encrypted_config: Optional[str], secret: str) -> RouteConfig:
    """
    Decrypt a route's config blob into the `{credentials, webhook}` shape.

    A missing blob gives an empty config. Blobs written before webhooks
    existed hold the credentials object directly; they are read as
    credentials with an empty webhook section.
    """
    if not encrypted_config:
        return RouteConfig()

    data = decrypt_json(encrypted_config, secret)
    if not isinstance(data, dict):
        raise DecryptionError("Route config must be a JSON object")

    if "credentials" not in data and "webhook" not in data:
        logger.debug("Route config has no credentials/webhook keys, reading as credentials")
        data = {"credentials": data}

    try:
        return RouteConfig.model_validate(
            {
                "credentials": data.get("credentials") or {},
                "webhook": data.get("webhook") or {},
            }
        )
    except ValidationError as e:
        raise DecryptionError(f"Route config has an invalid shape: {e.error_count()} error(s)") from e


def dump_route_config(config: RouteConfig, secret: str) -> str:
    """Encrypt a RouteConfig for storage, using the camelCase stored keys."""
    return encrypt_json(config.model_dump(by_alias=True, exclude_none=True), secret)
