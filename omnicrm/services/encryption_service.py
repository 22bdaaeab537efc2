"""
Encryption service for OAuth tokens.
Uses Fernet symmetric encryption for token storage.
"""

from cryptography.fernet import Fernet, InvalidToken

from omnicrm.config import settings
from omnicrm.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class EncryptionError(Exception):
    """Custom exception for encryption/decryption errors."""

    recoverable = False


def _get_fernet() -> Fernet:
    """
    Get Fernet instance with encryption key from settings.

    Raises:
        EncryptionError: If encryption key is missing or malformed
    """
    if not settings.ENCRYPTION_KEY:
        raise EncryptionError("ENCRYPTION_KEY not configured in environment")

    try:
        return Fernet(settings.ENCRYPTION_KEY.encode("utf-8"))
    except (ValueError, TypeError) as e:
        logger.error("Failed to initialize Fernet cipher", error=str(e))
        raise EncryptionError(f"Invalid encryption key: {e}") from e


def encrypt_token(token: str) -> bytes:
    """
    Encrypt a token string for BYTEA storage.

    Raises:
        EncryptionError: If token is empty or encryption fails
    """
    if not token or not isinstance(token, str):
        raise EncryptionError("Token must be a non-empty string")

    return _get_fernet().encrypt(token.encode("utf-8"))


def decrypt_token(encrypted_token: bytes | memoryview) -> str:
    """
    Decrypt a token read from the database.

    Raises:
        EncryptionError: If the value is empty, or was not produced with our key
    """
    if isinstance(encrypted_token, memoryview):
        encrypted_token = encrypted_token.tobytes()

    if not encrypted_token or not isinstance(encrypted_token, bytes):
        raise EncryptionError("Encrypted token must be non-empty bytes")

    try:
        return _get_fernet().decrypt(encrypted_token).decode("utf-8")
    except InvalidToken as e:
        logger.error("Token decryption failed - invalid token")
        raise EncryptionError("Invalid or corrupted token") from e
