"""Encryption of offline payloads using AES-256-GCM.

Note: payloads stored by the offline store are patient data. The key never
leaves the settings object and is not logged.
"""

import base64
import os
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.backends import default_backend
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from caresync.core.exceptions import StorageFailure


class EncryptionService:
    """Service for encrypting and decrypting stored payloads using AES-256."""

    def __init__(self, encryption_key: str, salt: str) -> None:
        """Initialize encryption service.

        Args:
            encryption_key: 32 character secret from settings
            salt: Salt for key derivation; must be stable across restarts
        """
        self.encryption_key = encryption_key.encode()
        self._salt = salt.encode()
        self._key: Optional[bytes] = None

    @property
    def key(self) -> bytes:
        """Get or derive the encryption key."""
        if not self._key:
            kdf = PBKDF2HMAC(
                algorithm=hashes.SHA256(),
                length=32,  # 256 bits
                salt=self._salt,
                iterations=100000,
                backend=default_backend(),
            )
            self._key = kdf.derive(self.encryption_key)
        return self._key

    def encrypt(self, data: str) -> str:
        """Encrypt a string using AES-256-GCM."""
        if not data:
            return data

        iv = os.urandom(12)
        cipher = Cipher(
            algorithms.AES(self.key), modes.GCM(iv), backend=default_backend()
        )
        encryptor = cipher.encryptor()
        ciphertext = encryptor.update(data.encode()) + encryptor.finalize()

        # IV + tag + ciphertext
        result = iv + encryptor.tag + ciphertext
        return base64.urlsafe_b64encode(result).decode()

    def decrypt(self, encrypted_data: str) -> str:
        """Decrypt a string encrypted with AES-256-GCM."""
        if not encrypted_data:
            return encrypted_data

        data = base64.urlsafe_b64decode(encrypted_data.encode())
        iv = data[:12]
        tag = data[12:28]
        ciphertext = data[28:]

        cipher = Cipher(
            algorithms.AES(self.key), modes.GCM(iv, tag), backend=default_backend()
        )
        decryptor = cipher.decryptor()
        try:
            plaintext = decryptor.update(ciphertext) + decryptor.finalize()
        except InvalidTag as e:
            raise StorageFailure("Stored payload could not be decrypted") from e

        return plaintext.decode()
