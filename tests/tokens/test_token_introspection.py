import pytest

from tests.conftest import NOW
from tests.fakes.clock import FrozenClock
from tokenguard.core.errors.exceptions import MalformedTokenError
from tokenguard.tokens.decoder import JwtDecoder
from tokenguard.tokens.encoder import JwtEncoder
from tokenguard.tokens.generator import TokenGenerator
from tokenguard.tokens.introspection import TokenIntrospector
from tokenguard.tokens.keys import SigningKey


@pytest.fixture
def introspector(decoder: JwtDecoder) -> TokenIntrospector:
    return TokenIntrospector(decoder)


def test_introspect_auth_token(
    introspector: TokenIntrospector,
    generator: TokenGenerator,
    hmac_key: SigningKey,
    clock: FrozenClock,
) -> None:
    token = generator.generate_auth_token(5, {"tenant": "acme"}, key=hmac_key)
    clock.advance(100)

    report = introspector.introspect(token)

    assert report["valid_structure"] is True
    assert report["header"]["kid"] == "key-1"
    assert report["claims"]["custom"]["tenant"] == "acme"
    assert report["claims"]["standard"]["iat"] == NOW
    assert report["timing"] == {
        "issued_at": NOW,
        "not_before": NOW,
        "expires_at": NOW + 900,
        "is_expired": False,
        "is_not_yet_valid": False,
        "time_to_expiry": 800,
        "age": 100,
    }
    assert report["security"]["warnings"] == []
    assert report["security"]["is_symmetric"] is True
    assert report["security"]["lifetime"] == 900


def test_introspect_malformed_token(introspector: TokenIntrospector) -> None:
    report = introspector.introspect("garbage")

    assert report["valid_structure"] is False
    assert report["code"]


def test_security_warnings(
    introspector: TokenIntrospector, encoder: JwtEncoder, hmac_key: SigningKey
) -> None:
    token = encoder.encode({"sub": "1"}, hmac_key)

    warnings = introspector.assess_token_security(token)["warnings"]

    assert "token never expires" in warnings
    assert "token has no jti and cannot be revoked individually" in warnings


def test_long_lived_access_token_is_flagged(
    introspector: TokenIntrospector, generator: TokenGenerator, hmac_key: SigningKey
) -> None:
    long_lived = generator.generate_auth_token(1, key=hmac_key, ttl=172_800)
    refresh = generator.generate_refresh_token(1, "r-1", key=hmac_key)

    assert introspector.assess_token_security(long_lived)["warnings"] == [
        "long-lived non-refresh token"
    ]
    assert introspector.assess_token_security(refresh)["warnings"] == []


def test_timing_of_expired_token(
    introspector: TokenIntrospector,
    generator: TokenGenerator,
    hmac_key: SigningKey,
    clock: FrozenClock,
) -> None:
    token = generator.generate_auth_token(1, key=hmac_key)
    clock.advance(1000)

    timing = introspector.get_timing_info(token)

    assert timing["is_expired"] is True
    assert timing["time_to_expiry"] == -100


def test_compare_tokens(
    introspector: TokenIntrospector, generator: TokenGenerator, hmac_key: SigningKey
) -> None:
    first = generator.generate_refresh_token(
        1, "r-1", key=hmac_key, extra={"family_id": "fam"}
    )
    second = generator.generate_refresh_token(
        1, "r-2", key=hmac_key, extra={"family_id": "fam"}
    )

    comparison = introspector.compare_tokens(first, second)

    assert comparison["same_subject"] is True
    assert comparison["same_type"] is True
    assert comparison["same_family"] is True
    assert comparison["differing_claims"] == ["jti"]


def test_helpers_reject_malformed_tokens(introspector: TokenIntrospector) -> None:
    with pytest.raises(MalformedTokenError):
        introspector.get_timing_info("a.b")
