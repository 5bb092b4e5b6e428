"""
Kubeconfig Encryption Service.

Cluster credentials are stored Fernet-encrypted. Rows written before
encryption was introduced hold plain YAML; decrypt() raises EncryptionError
for those and the credential resolver decides what to do with the raw blob.
"""
import logging
import base64
import hashlib
from typing import Optional
from cryptography.fernet import Fernet, InvalidToken

from ..config import get_settings

logger = logging.getLogger(__name__)


class EncryptionError(Exception):
    """Raised when a credential cannot be encrypted or decrypted."""
    pass


class KubeconfigEncryptionService:
    """Fernet wrapper for stored cluster credentials."""

    def __init__(self, encryption_key: Optional[str] = None):
        """
        Args:
            encryption_key: Base64-encoded Fernet key. If None, uses
                KUBECONFIG_ENCRYPTION_KEY or derives one from SECRET_KEY.

        Raises:
            EncryptionError: If no usable key is available.
        """
        settings = get_settings()

        try:
            if encryption_key:
                key = encryption_key.encode()
            elif settings.kubeconfig_encryption_key:
                logger.debug("Using KUBECONFIG_ENCRYPTION_KEY from settings")
                key = settings.kubeconfig_encryption_key.encode()
            else:
                if not settings.secret_key:
                    raise EncryptionError(
                        "No encryption key available. Set KUBECONFIG_ENCRYPTION_KEY or SECRET_KEY."
                    )
                # SHA-256 of the secret key gives the 32 bytes Fernet needs
                hashed = hashlib.sha256(settings.secret_key.encode()).digest()
                key = base64.urlsafe_b64encode(hashed)
                logger.debug("Derived kubeconfig encryption key from SECRET_KEY")

            self.cipher_suite = Fernet(key)

        except EncryptionError:
            raise
        except Exception as e:
            logger.error(f"Failed to initialize kubeconfig encryption service: {e}", exc_info=True)
            raise EncryptionError(f"Encryption service initialization failed: {e}") from e

    def encrypt(self, plaintext: str) -> str:
        if not plaintext:
            return ""
        try:
            return self.cipher_suite.encrypt(plaintext.encode()).decode()
        except Exception as e:
            logger.error(f"Encryption failed: {e}", exc_info=True)
            raise EncryptionError(f"Failed to encrypt credential: {e}") from e

    def decrypt(self, encrypted_text: str) -> str:
        """
        Decrypt a stored credential.

        Raises:
            EncryptionError: On an empty blob, a wrong key or data that was
                never encrypted.
        """
        if not encrypted_text:
            raise EncryptionError("Nothing to decrypt")

        try:
            return self.cipher_suite.decrypt(encrypted_text.encode()).decode()
        except InvalidToken as e:
            # Expected for legacy plaintext rows, so no traceback here
            logger.debug("Decryption failed: invalid token or wrong encryption key")
            raise EncryptionError(
                "Failed to decrypt credential. The encryption key may have changed or the data is not encrypted."
            ) from e
        except Exception as e:
            logger.error(f"Decryption failed with unexpected error: {e}", exc_info=True)
            raise EncryptionError(f"Failed to decrypt credential: {e}") from e

    @staticmethod
    def generate_key() -> str:
        """Generate a new Fernet key suitable for KUBECONFIG_ENCRYPTION_KEY."""
        return Fernet.generate_key().decode()


_encryption_service: Optional[KubeconfigEncryptionService] = None


def get_encryption_service(encryption_key: Optional[str] = None) -> KubeconfigEncryptionService:
    """Get or create the process-wide encryption service."""
    global _encryption_service

    if _encryption_service is None:
        _encryption_service = KubeconfigEncryptionService(encryption_key=encryption_key)
        logger.info("Kubeconfig encryption service created")

    return _encryption_service


def reset_encryption_service():
    """Drop the cached instance (tests, key rotation)."""
    global _encryption_service
    _encryption_service = None
