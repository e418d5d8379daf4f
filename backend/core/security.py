"""
Credential encryption for the workflow automation engine.

Secrets are stored encrypted with Fernet (AES-128-CBC + HMAC-SHA256) and
decrypted only when an execution attempt resolves them.
"""

import base64
import hashlib
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from app.config import get_settings


def derive_fernet_key(secret: str) -> bytes:
    """Turn an arbitrary secret string into a valid Fernet key.

    Accepts an existing urlsafe base64 Fernet key as-is.
    """
    raw = secret.encode()
    try:
        if len(base64.urlsafe_b64decode(raw)) == 32:
            return raw
    except (ValueError, TypeError):
        pass
    return base64.urlsafe_b64encode(hashlib.sha256(raw).digest())


class CredentialVault:
    """
    Manages encryption and decryption of stored credentials using Fernet.
    """

    def __init__(self, key: Optional[str] = None):
        """
        Initialize the vault with an encryption key.

        Args:
            key: Encryption key or passphrase. If None, uses ENCRYPTION_KEY from settings.
        """
        if key is None:
            key = get_settings().ENCRYPTION_KEY
        if not key:
            raise ValueError("ENCRYPTION_KEY is not configured")

        self.cipher = Fernet(derive_fernet_key(key))

    def encrypt(self, plaintext: str) -> str:
        """
        Encrypt a string using Fernet.

        Args:
            plaintext: Plain text to encrypt

        Returns:
            Encrypted string (base64 encoded)
        """
        return self.cipher.encrypt(plaintext.encode()).decode()

    def decrypt(self, ciphertext: str) -> str:
        """
        Decrypt a string using Fernet.

        Raises:
            ValueError: If decryption fails (wrong key or tampered value)
        """
        try:
            return self.cipher.decrypt(ciphertext.encode()).decode()
        except InvalidToken as e:
            raise ValueError("Failed to decrypt credential") from e
