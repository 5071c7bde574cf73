from collections.abc import Mapping
import json
from typing import Any

from jwt.utils import base64url_encode

from tokenguard.core.errors.exceptions import ClaimValidationError, SigningKeyError
from tokenguard.core.utils.datetime_utils import Clock, unix_now
from tokenguard.main.config import JWTConfig
from tokenguard.tokens.algorithms import AlgorithmProvider
from tokenguard.tokens.claims import ClaimsManager
from tokenguard.tokens.keys import SigningKey


def _json_segment(data: Mapping[str, Any]) -> bytes:
    return base64url_encode(json.dumps(data, separators=(",", ":")).encode())


class JwtEncoder:
    """
    Produces compact JWS tokens: ``header.payload.signature``, each base64url encoded.
    """

    def __init__(
        self,
        jwt_config: JWTConfig,
        *,
        algorithms: AlgorithmProvider | None = None,
        clock: Clock = unix_now,
    ) -> None:
        self.config = jwt_config
        self.algorithms = algorithms or AlgorithmProvider()
        self.clock = clock

    def build_header(
        self, key: SigningKey, header: Mapping[str, Any] | None = None
    ) -> dict[str, Any]:
        """
        Build and validate the JOSE header for ``key``.

        Raises:
            SigningKeyError: If the header does not describe ``key``
        """
        result: dict[str, Any] = {"typ": "JWT", "alg": key.algorithm, "kid": key.id}
        if header:
            result.update(header)

        if result.get("typ") != "JWT":
            raise SigningKeyError("Header 'typ' must be JWT", code="JWT_INVALID_HEADER")
        if not self.algorithms.is_supported(result.get("alg")):
            raise SigningKeyError(
                f"Unsupported algorithm: {result.get('alg')}",
                code="JWT_UNSUPPORTED_ALGORITHM",
            )
        if result["alg"] != key.algorithm:
            raise SigningKeyError(
                f"Header algorithm {result['alg']} does not match key algorithm "
                f"{key.algorithm}",
                code="JWT_ALGORITHM_MISMATCH",
            )
        return result

    def encode(
        self,
        claims: ClaimsManager | Mapping[str, Any],
        key: SigningKey,
        header: Mapping[str, Any] | None = None,
    ) -> str:
        """
        Sign ``claims`` with ``key``.

        Args:
            claims: Claims to embed, validated when given as a plain mapping
            key: Current signing key
            header: Extra header fields merged over the defaults

        Returns:
            str: Compact serialized token

        Raises:
            ClaimValidationError: If a claim is invalid or not JSON serializable
            SigningKeyError: If the key cannot sign or the header is invalid
        """
        if not isinstance(claims, ClaimsManager):
            claims = ClaimsManager(claims, clock=self.clock)

        jose_header = self.build_header(key, header)
        try:
            payload = claims.to_json().encode()
        except (TypeError, ValueError) as exc:
            raise ClaimValidationError(
                f"Claims are not JSON serializable: {exc}"
            ) from exc

        signing_input = _json_segment(jose_header) + b"." + base64url_encode(payload)
        signature = self.algorithms.sign(
            key.algorithm, signing_input, key.signing_material()
        )
        return (signing_input + b"." + base64url_encode(signature)).decode()

    def apply_defaults(
        self, custom_claims: Mapping[str, Any] | None = None, ttl: int | None = None
    ) -> ClaimsManager:
        """
        Stamp ``iat``, ``nbf``, ``exp`` and the configured iss/aud/sub.

        Explicit values in ``custom_claims`` win over the configured ones.
        """
        now = self.clock()
        claims = ClaimsManager(clock=self.clock)
        claims.set_issued_at(now)
        claims.set_not_before(now)
        claims.set_expiration(now + (ttl or self.config.JWT_TTL))
        if self.config.JWT_ISSUER:
            claims.set_issuer(self.config.JWT_ISSUER)
        if self.config.JWT_AUDIENCE:
            claims.set_audience(self.config.JWT_AUDIENCE)
        if self.config.JWT_SUBJECT:
            claims.set_subject(self.config.JWT_SUBJECT)
        if custom_claims:
            claims.set_claims(custom_claims)
        return claims

    def encode_with_defaults(
        self,
        custom_claims: Mapping[str, Any] | None,
        key: SigningKey,
        *,
        ttl: int | None = None,
        header: Mapping[str, Any] | None = None,
    ) -> str:
        return self.encode(self.apply_defaults(custom_claims, ttl), key, header)
