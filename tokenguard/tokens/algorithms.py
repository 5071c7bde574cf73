from typing import Any

from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives.asymmetric.ec import EllipticCurvePrivateKey
from cryptography.hazmat.primitives.asymmetric.rsa import RSAPrivateKey
from jwt.algorithms import Algorithm, ECAlgorithm, HMACAlgorithm, RSAAlgorithm
from jwt.exceptions import InvalidKeyError

from loggers import get_logger
from tokenguard.core.errors.exceptions import SigningKeyError

logger = get_logger(__name__)


def _default_algorithms() -> dict[str, Algorithm]:
    return {
        "HS256": HMACAlgorithm(HMACAlgorithm.SHA256),
        "RS256": RSAAlgorithm(RSAAlgorithm.SHA256),
        "ES256": ECAlgorithm(ECAlgorithm.SHA256),
    }


def _public_half(prepared: Any) -> Any:
    if isinstance(prepared, (RSAPrivateKey, EllipticCurvePrivateKey)):
        return prepared.public_key()
    return prepared


class AlgorithmProvider:
    """
    Signature algorithms available to the encoder and decoder.

    HS256 keys are shared secrets; RS256 and ES256 keys are PEM strings.
    """

    def __init__(self, algorithms: dict[str, Algorithm] | None = None) -> None:
        self._algorithms = algorithms or _default_algorithms()

    def supported(self) -> list[str]:
        return list(self._algorithms)

    def is_supported(self, algorithm: Any) -> bool:
        return isinstance(algorithm, str) and algorithm in self._algorithms

    def is_symmetric(self, algorithm: str) -> bool:
        return algorithm.startswith("HS")

    def get(self, algorithm: str) -> Algorithm:
        try:
            return self._algorithms[algorithm]
        except KeyError:
            raise SigningKeyError(
                f"Unsupported algorithm: {algorithm}",
                code="JWT_UNSUPPORTED_ALGORITHM",
            ) from None

    def sign(self, algorithm: str, message: bytes, key: str | bytes) -> bytes:
        """
        Sign ``message`` with ``key``.

        Raises:
            SigningKeyError: If the algorithm is unsupported or the key unusable
        """
        impl = self.get(algorithm)
        try:
            prepared = impl.prepare_key(key)
            return impl.sign(message, prepared)
        except (InvalidKeyError, UnsupportedAlgorithm, ValueError, TypeError) as exc:
            raise SigningKeyError(
                f"Unable to sign with {algorithm} key: {exc}",
                code="JWT_INVALID_KEY",
            ) from exc

    def verify(
        self, algorithm: str, message: bytes, signature: bytes, key: str | bytes
    ) -> bool:
        """
        Check ``signature`` over ``message``. Never raises on a bad signature or
        unusable key material, it returns False instead.
        """
        if not self.is_supported(algorithm):
            return False
        impl = self._algorithms[algorithm]
        try:
            prepared = _public_half(impl.prepare_key(key))
            return bool(impl.verify(message, prepared, signature))
        except (
            InvalidKeyError,
            InvalidSignature,
            UnsupportedAlgorithm,
            ValueError,
            TypeError,
        ) as exc:
            logger.debug("Signature verification failed for %s: %s", algorithm, exc)
            return False
