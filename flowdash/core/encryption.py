"""Connector auth encryption using Fernet symmetric encryption.

Connector auth configs (basic passwords, OAuth2 client secrets and cached
tokens) are encrypted before storage and decrypted only when a connector is
resolved for a request.

SECURITY NOTES:
- Uses Fernet (AES-128-CBC with HMAC-SHA256)
- Encryption key must be 32 url-safe base64-encoded bytes
- Never log decrypted auth values
"""

import json
from typing import Any

import structlog
from cryptography.fernet import Fernet, InvalidToken

logger = structlog.get_logger()


class EncryptionError(Exception):
    """Base exception for encryption operations."""

    pass


class EncryptionKeyError(EncryptionError):
    """Invalid or missing encryption key."""

    pass


class DecryptionError(EncryptionError):
    """Failed to decrypt data."""

    pass


class AuthEncryption:
    """Fernet-based encryption of connector auth configs.

    Stateless apart from the key - can be shared across requests.

    Example usage:
        encryption = AuthEncryption(key)
        token = encryption.encrypt({"type": "basic", "username": "u", "password": "p"})
        auth = encryption.decrypt(token)
    """

    def __init__(self, key: str) -> None:
        """Initialize with a Fernet key.

        Raises:
            EncryptionKeyError: If key is invalid
        """
        try:
            self._fernet = Fernet(key.encode())
        except (ValueError, TypeError) as e:
            logger.error("encryption_key_invalid", error=str(e))
            raise EncryptionKeyError(
                "Invalid encryption key format. "
                "Generate with: python -c 'from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())'"
            ) from e

    def encrypt(self, data: dict[str, Any]) -> str:
        """Encrypt an auth config dictionary into a url-safe token.

        Raises:
            EncryptionError: If the data is not JSON-serializable
        """
        try:
            payload = json.dumps(data, separators=(",", ":"), default=str).encode("utf-8")
        except (TypeError, ValueError) as e:
            logger.error("encryption_failed", error_type=type(e).__name__)
            raise EncryptionError("Failed to encrypt connector auth") from e
        return self._fernet.encrypt(payload).decode("utf-8")

    def decrypt(self, encrypted_data: str) -> dict[str, Any]:
        """Decrypt a token produced by `encrypt`.

        Raises:
            DecryptionError: Wrong key, corrupted data or non-JSON payload
        """
        try:
            decrypted = self._fernet.decrypt(encrypted_data.encode("utf-8"))
        except InvalidToken as e:
            logger.warning("decryption_invalid_token")
            raise DecryptionError(
                "Failed to decrypt: invalid token (wrong key or corrupted data)"
            ) from e
        try:
            return json.loads(decrypted.decode("utf-8"))
        except json.JSONDecodeError as e:
            logger.error("decryption_invalid_json")
            raise DecryptionError("Decrypted data is not valid JSON") from e

    @staticmethod
    def rotate_key(encrypted_data: str, old_key: str, new_key: str) -> str:
        """Re-encrypt a token under a new key.

        Raises:
            EncryptionError: If the token cannot be read with old_key
        """
        try:
            plain = Fernet(old_key.encode()).decrypt(encrypted_data.encode("utf-8"))
        except InvalidToken as e:
            logger.error("key_rotation_failed", error_type=type(e).__name__)
            raise EncryptionError("Failed to rotate encryption key") from e
        logger.info("connector_auth_key_rotated")
        return Fernet(new_key.encode()).encrypt(plain).decode("utf-8")

    @staticmethod
    def generate_key() -> str:
        """Generate a new Fernet encryption key."""
        return Fernet.generate_key().decode("utf-8")


def mask_secret(value: str | None, visible_chars: int = 4) -> str:
    """Mask a secret for safe logging or API responses.

    Returns strings like "eyJh********".
    """
    if not value:
        return ""
    if len(value) <= visible_chars:
        return "*" * len(value)
    return value[:visible_chars] + "*" * min(8, len(value) - visible_chars)
