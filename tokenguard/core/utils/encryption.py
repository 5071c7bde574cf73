"""
Symmetric encryption of secrets kept in the shared cache.

Uses Fernet with a key derived from a configured passphrase via PBKDF2.
"""

import base64

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from tokenguard.core.errors.exceptions import ConfigurationError

KDF_SALT = b"tokenguard.signing-keys"
KDF_ITERATIONS = 100_000


class SecretCipher:
    def __init__(self, passphrase: str) -> None:
        if not passphrase:
            raise ConfigurationError(
                "Encryption passphrase cannot be empty",
                code="JWT_MISSING_STORAGE_SECRET",
            )
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=KDF_SALT,
            iterations=KDF_ITERATIONS,
        )
        derived_key = base64.urlsafe_b64encode(kdf.derive(passphrase.encode("utf-8")))
        self.cipher = Fernet(derived_key)

    def encrypt(self, plaintext: str) -> str:
        return self.cipher.encrypt(plaintext.encode("utf-8")).decode("utf-8")

    def decrypt(self, token: str) -> str:
        """
        Raises:
            ValueError: If the token was not produced with the same passphrase
        """
        try:
            return self.cipher.decrypt(token.encode("utf-8")).decode("utf-8")
        except InvalidToken as exc:
            raise ValueError("Unable to decrypt value") from exc
