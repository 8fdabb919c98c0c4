"""
Token encryption at rest.

Fernet gives authenticated encryption with a fresh random IV per call; the
token it produces embeds version, timestamp, IV and HMAC, so decrypt() needs
nothing but the key.

The configured ENCRYPTION_KEY may be any passphrase: the 32-byte Fernet key
is derived from it with SHA-256.
"""
import base64
import hashlib
import logging
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from codetrack.config import get_settings

logger = logging.getLogger(__name__)


class TokenVault:
    """Encrypts and decrypts GitLab tokens with a process-wide secret."""

    def __init__(self, secret: str):
        if not secret:
            raise RuntimeError("ENCRYPTION_KEY not configured in environment")
        digest = hashlib.sha256(secret.encode()).digest()
        self._fernet = Fernet(base64.urlsafe_b64encode(digest))

    def encrypt(self, plaintext: str) -> str:
        return self._fernet.encrypt(plaintext.encode()).decode()

    def decrypt(self, ciphertext: Optional[str]) -> Optional[str]:
        """
        Decrypt a stored token.

        Returns None for empty, corrupt, or foreign-key ciphertext. Callers
        treat None as "integration unusable, prompt reconnect".
        """
        if not ciphertext or not isinstance(ciphertext, str):
            return None
        try:
            return self._fernet.decrypt(ciphertext.encode()).decode()
        except (InvalidToken, ValueError, UnicodeError):
            logger.error("Token decryption failed (corrupt ciphertext or wrong key)")
            return None


_vault: Optional[TokenVault] = None


def get_vault() -> TokenVault:
    global _vault
    if _vault is None:
        _vault = TokenVault(get_settings().encryption_key)
    return _vault
