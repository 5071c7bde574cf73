import base64
import secrets

from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa

from loggers import get_logger
from tokenguard.core.errors.exceptions import ConfigurationError, KeyGenerationError
from tokenguard.main.config import SUPPORTED_ALGORITHMS
from tokenguard.tokens.keys import SigningKey

logger = get_logger(__name__)

MIN_HMAC_BYTES = 32
MIN_RSA_BITS = 2048


def new_key_id(now: int) -> str:
    return f"key_{secrets.token_hex(8)}_{now}"


def _pem_pair(
    private_key: rsa.RSAPrivateKey | ec.EllipticCurvePrivateKey,
) -> tuple[str, str]:
    private_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )
    public_pem = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return private_pem.decode(), public_pem.decode()


class KeyFactory:
    """
    Creates fresh key material.

    HS256 secrets are ``max(32, strength // 8)`` random bytes, RS256 moduli are
    ``max(2048, strength * 8)`` bits, ES256 keys live on P-256.
    """

    def __init__(self, key_strength: int = 256) -> None:
        self.key_strength = key_strength

    def create(
        self, algorithm: str, *, now: int, lifetime: int, grace_period: int
    ) -> SigningKey:
        """
        Raises:
            ConfigurationError: Unsupported algorithm
            KeyGenerationError: The crypto backend failed to produce a key
        """
        if algorithm not in SUPPORTED_ALGORITHMS:
            raise ConfigurationError(
                f"Unsupported algorithm: {algorithm}",
                code="JWT_UNSUPPORTED_ALGORITHM",
            )

        secret = private_key = public_key = None
        try:
            if algorithm == "HS256":
                size = max(MIN_HMAC_BYTES, self.key_strength // 8)
                secret = base64.b64encode(secrets.token_bytes(size)).decode()
            elif algorithm == "RS256":
                bits = max(MIN_RSA_BITS, self.key_strength * 8)
                private_key, public_key = _pem_pair(
                    rsa.generate_private_key(public_exponent=65537, key_size=bits)
                )
            else:
                private_key, public_key = _pem_pair(
                    ec.generate_private_key(ec.SECP256R1())
                )
        except (UnsupportedAlgorithm, ValueError) as exc:
            logger.critical("Key generation failed for %s: %s", algorithm, exc)
            raise KeyGenerationError(
                f"Unable to generate {algorithm} key material"
            ) from exc

        expires_at = now + lifetime
        return SigningKey(
            id=new_key_id(now),
            algorithm=algorithm,
            secret=secret,
            private_key=private_key,
            public_key=public_key,
            created_at=now,
            expires_at=expires_at,
            grace_expires_at=expires_at + grace_period,
        )
