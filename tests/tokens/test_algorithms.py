from collections.abc import Callable

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa
import pytest

from tokenguard.core.errors.exceptions import SigningKeyError
from tokenguard.tokens.algorithms import AlgorithmProvider

MESSAGE = b"header.payload"


def _rsa_pem() -> tuple[str, str]:
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    return _pem(key)


def _ec_pem() -> tuple[str, str]:
    return _pem(ec.generate_private_key(ec.SECP256R1()))


def _pem(key: rsa.RSAPrivateKey | ec.EllipticCurvePrivateKey) -> tuple[str, str]:
    private = key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ).decode()
    public = (
        key.public_key()
        .public_bytes(
            serialization.Encoding.PEM,
            serialization.PublicFormat.SubjectPublicKeyInfo,
        )
        .decode()
    )
    return private, public


def test_supported_algorithms(algorithms: AlgorithmProvider) -> None:
    assert algorithms.supported() == ["HS256", "RS256", "ES256"]
    assert algorithms.is_supported("HS256") is True
    assert algorithms.is_supported("none") is False
    assert algorithms.is_supported(None) is False
    assert algorithms.is_symmetric("HS256") is True
    assert algorithms.is_symmetric("RS256") is False


def test_unsupported_algorithm_raises(algorithms: AlgorithmProvider) -> None:
    with pytest.raises(SigningKeyError) as exc_info:
        algorithms.sign("HS512", MESSAGE, "s" * 32)

    assert exc_info.value.code == "JWT_UNSUPPORTED_ALGORITHM"


def test_hmac_sign_and_verify(algorithms: AlgorithmProvider) -> None:
    signature = algorithms.sign("HS256", MESSAGE, "s" * 32)

    assert algorithms.verify("HS256", MESSAGE, signature, "s" * 32) is True
    assert algorithms.verify("HS256", MESSAGE, signature, "o" * 32) is False
    assert algorithms.verify("HS256", b"tampered", signature, "s" * 32) is False


@pytest.mark.parametrize(
    "algorithm,factory", [("RS256", _rsa_pem), ("ES256", _ec_pem)]
)
def test_asymmetric_sign_and_verify(
    algorithms: AlgorithmProvider,
    algorithm: str,
    factory: Callable[[], tuple[str, str]],
) -> None:
    private, public = factory()
    signature = algorithms.sign(algorithm, MESSAGE, private)

    assert algorithms.verify(algorithm, MESSAGE, signature, public) is True
    # The private half verifies through its public key
    assert algorithms.verify(algorithm, MESSAGE, signature, private) is True

    _, other_public = factory()
    assert algorithms.verify(algorithm, MESSAGE, signature, other_public) is False


def test_verify_never_raises_on_bad_material(algorithms: AlgorithmProvider) -> None:
    assert algorithms.verify("RS256", MESSAGE, b"sig", "not a pem") is False
    assert algorithms.verify("ES256", MESSAGE, b"", "not a pem") is False
    assert algorithms.verify("HS999", MESSAGE, b"sig", "s" * 32) is False


def test_sign_with_unusable_key_raises(algorithms: AlgorithmProvider) -> None:
    with pytest.raises(SigningKeyError) as exc_info:
        algorithms.sign("RS256", MESSAGE, "not a pem")

    assert exc_info.value.code == "JWT_INVALID_KEY"
