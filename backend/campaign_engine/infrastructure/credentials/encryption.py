"""
API Key Encryption Service
Decrypts tenant API keys stored with Fernet (AES-128-CBC + HMAC-SHA256).

MultiFernet keeps keys written under a previous encryption key readable
while the key is being rotated.
"""
import logging
from typing import Optional, List
from cryptography.fernet import Fernet, MultiFernet, InvalidToken

from campaign_engine.core.config import get_settings

logger = logging.getLogger(__name__)


class ApiKeyEncryptionError(Exception):
    """Raised when API key encryption/decryption fails"""
    pass


class ApiKeyEncryptionService:
    """
    Encrypt/decrypt tenant API key payloads.

    Environment Variables:
    - API_KEY_ENCRYPTION_KEY: Current encryption key
    - API_KEY_ENCRYPTION_KEYS_OLD: Comma-separated old keys for rotation (optional)

    Without a current key the service stays usable but every decrypt fails,
    which makes credential resolution fall through to the next source.
    """

    def __init__(self, key: Optional[str] = None, old_keys: Optional[List[str]] = None):
        self._fernet: Optional[MultiFernet] = None
        self._initialize_keys(key, old_keys)

    def _initialize_keys(
        self,
        key: Optional[str] = None,
        old_keys: Optional[List[str]] = None
    ) -> None:
        settings = get_settings()
        current_key = key or settings.api_key_encryption_key

        if not current_key:
            logger.warning("API_KEY_ENCRYPTION_KEY not set - stored tenant API keys cannot be decrypted")
            return

        if old_keys is None:
            old_keys = [k.strip() for k in settings.api_key_encryption_keys_old.split(",") if k.strip()]

        try:
            keys = [Fernet(current_key.encode() if isinstance(current_key, str) else current_key)]
            for old_key in old_keys:
                keys.append(Fernet(old_key.encode() if isinstance(old_key, str) else old_key))

            self._fernet = MultiFernet(keys)
            logger.info(f"API key encryption initialized with {len(keys)} key(s)")

        except Exception as e:
            raise ApiKeyEncryptionError(f"Failed to initialize encryption keys: {e}")

    @property
    def is_configured(self) -> bool:
        return self._fernet is not None

    def encrypt(self, plaintext: str) -> str:
        """Encrypt a payload with the current key."""
        if not plaintext:
            return ""
        if not self._fernet:
            raise ApiKeyEncryptionError("Encryption key not configured")

        return self._fernet.encrypt(plaintext.encode()).decode()

    def decrypt(self, ciphertext: str) -> str:
        """Decrypt a payload written under any key in the chain."""
        if not ciphertext:
            return ""
        if not self._fernet:
            raise ApiKeyEncryptionError("Encryption key not configured")

        try:
            return self._fernet.decrypt(ciphertext.encode()).decode()
        except InvalidToken:
            logger.error("Decryption failed: Invalid token or wrong key")
            raise ApiKeyEncryptionError("Failed to decrypt API key: Invalid token or key")


_encryption_service: Optional[ApiKeyEncryptionService] = None


def get_encryption_service() -> ApiKeyEncryptionService:
    """Get singleton encryption service instance."""
    global _encryption_service
    if _encryption_service is None:
        _encryption_service = ApiKeyEncryptionService()
    return _encryption_service


def reset_encryption_service() -> None:
    """Reset singleton for testing."""
    global _encryption_service
    _encryption_service = None
