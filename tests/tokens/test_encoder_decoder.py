import hashlib
import hmac
import json

from jwt.utils import base64url_encode
import pytest

from tests.conftest import NOW, OTHER_SECRET, make_config, make_hmac_key
from tests.fakes.clock import FrozenClock
from tokenguard.core.errors.exceptions import (
    ClaimValidationError,
    ExpiredTokenError,
    MalformedTokenError,
    NotYetValidError,
    SignatureError,
    SigningKeyError,
)
from tokenguard.tokens.claims import ClaimsManager
from tokenguard.tokens.decoder import JwtDecoder
from tokenguard.tokens.encoder import JwtEncoder
from tokenguard.tokens.key_factory import KeyFactory
from tokenguard.tokens.keys import SigningKey


def _segment(data: dict[str, object]) -> str:
    return base64url_encode(json.dumps(data).encode()).decode()


def _claims(**extra: object) -> dict[str, object]:
    return {"sub": "42", **extra}


def test_round_trip_preserves_claims(
    encoder: JwtEncoder, decoder: JwtDecoder, hmac_key: SigningKey
) -> None:
    token = encoder.encode_with_defaults(_claims(role="admin"), hmac_key)

    claims = decoder.decode(token, [hmac_key])

    assert claims.get_subject() == "42"
    assert claims.get_claim("role") == "admin"
    assert claims.get_issuer() == "tokenguard"
    assert claims.get_issued_at() == NOW
    assert claims.get_not_before() == NOW
    assert claims.get_expiration() == NOW + 900


def test_header_carries_type_algorithm_and_key_id(
    encoder: JwtEncoder, decoder: JwtDecoder, hmac_key: SigningKey
) -> None:
    token = encoder.encode_with_defaults(_claims(), hmac_key)

    decoded = decoder.decode_without_verification(token)

    assert decoded.header == {"typ": "JWT", "alg": "HS256", "kid": "key-1"}
    assert token.count(".") == 2
    assert "=" not in token


def test_custom_claims_override_configured_defaults(
    encoder: JwtEncoder, hmac_key: SigningKey
) -> None:
    claims = encoder.apply_defaults({"iss": "someone-else", "sub": "7"}, ttl=60)

    assert claims.get_issuer() == "someone-else"
    assert claims.get_expiration() == NOW + 60


def test_configured_audience_and_subject_are_stamped(clock: FrozenClock) -> None:
    config = make_config(JWT_AUDIENCE="api,admin", JWT_SUBJECT="service")
    encoder = JwtEncoder(config.jwt, clock=clock)

    claims = encoder.apply_defaults()

    assert claims.get_audience() == {"api", "admin"}
    assert claims.get_subject() == "service"


def test_encode_rejects_mismatched_header(
    encoder: JwtEncoder, hmac_key: SigningKey
) -> None:
    with pytest.raises(SigningKeyError) as exc_info:
        encoder.encode(_claims(), hmac_key, header={"alg": "RS256"})
    assert exc_info.value.code == "JWT_ALGORITHM_MISMATCH"

    with pytest.raises(SigningKeyError) as exc_info:
        encoder.encode(_claims(), hmac_key, header={"typ": "JWE"})
    assert exc_info.value.code == "JWT_INVALID_HEADER"

    with pytest.raises(SigningKeyError) as exc_info:
        encoder.encode(_claims(), hmac_key, header={"alg": "none"})
    assert exc_info.value.code == "JWT_UNSUPPORTED_ALGORITHM"


def test_encode_rejects_unserializable_claims(
    encoder: JwtEncoder, hmac_key: SigningKey
) -> None:
    with pytest.raises(ClaimValidationError):
        encoder.encode({"sub": "1", "when": object()}, hmac_key)


def test_expiry_boundary(
    encoder: JwtEncoder,
    decoder: JwtDecoder,
    hmac_key: SigningKey,
    clock: FrozenClock,
) -> None:
    token = encoder.encode_with_defaults(_claims(), hmac_key, ttl=900)

    clock.set(NOW + 899)
    decoder.decode(token, [hmac_key])

    clock.set(NOW + 900)
    with pytest.raises(ExpiredTokenError):
        decoder.decode(token, [hmac_key])


def test_leeway_is_applied(clock: FrozenClock, hmac_key: SigningKey) -> None:
    config = make_config(JWT_LEEWAY=30)
    encoder = JwtEncoder(config.jwt, clock=clock)
    decoder = JwtDecoder(config.jwt, clock=clock)
    token = encoder.encode_with_defaults(_claims(), hmac_key, ttl=60)

    clock.set(NOW + 89)
    assert decoder.decode(token, [hmac_key]).get_subject() == "42"

    clock.set(NOW + 90)
    with pytest.raises(ExpiredTokenError):
        decoder.decode(token, [hmac_key])


def test_not_yet_valid_token_is_rejected(
    encoder: JwtEncoder, decoder: JwtDecoder, hmac_key: SigningKey
) -> None:
    token = encoder.encode_with_defaults(_claims(nbf=NOW + 60), hmac_key)

    with pytest.raises(NotYetValidError):
        decoder.decode(token, [hmac_key])


def test_token_signed_with_other_key_is_rejected(
    encoder: JwtEncoder, decoder: JwtDecoder, hmac_key: SigningKey
) -> None:
    other = make_hmac_key(OTHER_SECRET, key_id="key-1")
    token = encoder.encode_with_defaults(_claims(), other)

    with pytest.raises(SignatureError):
        decoder.decode(token, [hmac_key])


def test_tampered_payload_is_rejected(
    encoder: JwtEncoder, decoder: JwtDecoder, hmac_key: SigningKey
) -> None:
    header, _, signature = encoder.encode_with_defaults(_claims(), hmac_key).split(".")
    forged_payload = _segment({"sub": "1", "iss": "tokenguard", "exp": NOW + 900})

    with pytest.raises(SignatureError):
        decoder.decode(f"{header}.{forged_payload}.{signature}", [hmac_key])


def test_key_matching_kid_is_used_first(
    encoder: JwtEncoder, decoder: JwtDecoder, hmac_key: SigningKey
) -> None:
    other = make_hmac_key(OTHER_SECRET, key_id="key-2")
    token = encoder.encode_with_defaults(_claims(), other)

    claims = decoder.decode(token, [hmac_key, other])

    assert claims.get_subject() == "42"
    assert decoder.verify_signature(
        decoder.decode_without_verification(token), [hmac_key, other]
    ) == other


def test_unknown_kid_still_verifies_with_a_candidate(
    encoder: JwtEncoder, decoder: JwtDecoder, hmac_key: SigningKey
) -> None:
    token = encoder.encode_with_defaults(_claims(), hmac_key, header={"kid": "gone"})

    assert decoder.decode(token, [hmac_key]).get_subject() == "42"


def test_algorithm_confusion_is_rejected(decoder: JwtDecoder) -> None:
    rsa_key = KeyFactory(256).create(
        "RS256", now=NOW - 10, lifetime=3600, grace_period=3600
    )
    assert rsa_key.public_key is not None
    header = _segment({"typ": "JWT", "alg": "HS256", "kid": rsa_key.id})
    payload = _segment(
        {"sub": "1", "iss": "tokenguard", "iat": NOW, "nbf": NOW, "exp": NOW + 60}
    )
    signing_input = f"{header}.{payload}".encode()
    # HMAC keyed with the public key, the classic confusion forgery
    signature = hmac.new(
        rsa_key.public_key.encode(), signing_input, hashlib.sha256
    ).digest()
    token = f"{header}.{payload}.{base64url_encode(signature).decode()}"

    with pytest.raises(SignatureError) as exc_info:
        decoder.decode(token, [rsa_key])

    assert exc_info.value.code == "JWT_NO_VERIFICATION_KEY"


def test_asymmetric_round_trip(encoder: JwtEncoder, decoder: JwtDecoder) -> None:
    key = KeyFactory(256).create("ES256", now=NOW - 10, lifetime=3600, grace_period=60)
    token = encoder.encode_with_defaults(_claims(), key)

    verify_only = key.model_copy(update={"private_key": None})

    assert decoder.decode(token, [verify_only]).get_subject() == "42"


@pytest.mark.parametrize(
    "token,code",
    [
        ("", "JWT_EMPTY_TOKEN"),
        (None, "JWT_EMPTY_TOKEN"),
        ("a.b", "JWT_INVALID_FORMAT"),
        ("a.b.c.d", "JWT_INVALID_FORMAT"),
        ("a..c", "JWT_EMPTY_PARTS"),
        ("not.a.jwt!!", None),
        ("e30.e30.a+b", "JWT_INVALID_ENCODING"),
        ("WzFd.e30.c2ln", "JWT_INVALID_JSON"),
    ],
)
def test_malformed_input_raises_malformed_token_error(
    decoder: JwtDecoder, token: object, code: str | None
) -> None:
    with pytest.raises(MalformedTokenError) as exc_info:
        decoder.decode_without_verification(token)

    if code is not None:
        assert exc_info.value.code == code


@pytest.mark.parametrize(
    "header", [{"typ": "JWS", "alg": "HS256"}, {"typ": "JWT", "alg": "none"}, {}]
)
def test_invalid_header_is_malformed(
    decoder: JwtDecoder, hmac_key: SigningKey, header: dict[str, object]
) -> None:
    token = f"{_segment(header)}.{_segment({'sub': '1'})}.c2ln"

    with pytest.raises(MalformedTokenError):
        decoder.decode(token, [hmac_key])


def test_issuer_mismatch_is_rejected(
    encoder: JwtEncoder, decoder: JwtDecoder, hmac_key: SigningKey
) -> None:
    token = encoder.encode_with_defaults(_claims(iss="elsewhere"), hmac_key)

    with pytest.raises(ClaimValidationError) as exc_info:
        decoder.decode(token, [hmac_key])

    assert exc_info.value.code == "JWT_INVALID_ISSUER"


def test_audience_must_intersect(clock: FrozenClock, hmac_key: SigningKey) -> None:
    config = make_config(JWT_AUDIENCE="api")
    encoder = JwtEncoder(config.jwt, clock=clock)
    decoder = JwtDecoder(config.jwt, clock=clock)

    ok = encoder.encode_with_defaults(_claims(aud=["web", "api"]), hmac_key)
    assert decoder.decode(ok, [hmac_key]).get_audience() == {"web", "api"}

    wrong = encoder.encode_with_defaults(_claims(aud="web"), hmac_key)
    with pytest.raises(ClaimValidationError) as exc_info:
        decoder.decode(wrong, [hmac_key])
    assert exc_info.value.code == "JWT_INVALID_AUDIENCE"


def test_missing_required_claims_are_rejected(
    encoder: JwtEncoder, decoder: JwtDecoder, hmac_key: SigningKey
) -> None:
    token = encoder.encode(ClaimsManager({"iss": "tokenguard"}), hmac_key)

    with pytest.raises(ClaimValidationError) as exc_info:
        decoder.decode(token, [hmac_key])

    assert exc_info.value.code == "JWT_MISSING_REQUIRED_CLAIMS"


def test_decode_without_verify_skips_signature(
    encoder: JwtEncoder, decoder: JwtDecoder
) -> None:
    token = encoder.encode_with_defaults(_claims(), make_hmac_key(OTHER_SECRET))

    claims = decoder.decode(token, [], verify=False)

    assert claims.get_subject() == "42"


def test_no_candidate_keys_raises_signature_error(
    encoder: JwtEncoder, decoder: JwtDecoder, hmac_key: SigningKey
) -> None:
    token = encoder.encode_with_defaults(_claims(), hmac_key)

    with pytest.raises(SignatureError) as exc_info:
        decoder.decode(token, [])

    assert exc_info.value.code == "JWT_NO_VERIFICATION_KEY"
