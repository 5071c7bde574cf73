from typing import Any

from tokenguard.core.errors.exceptions import TokenException
from tokenguard.tokens.claims import ClaimsManager
from tokenguard.tokens.decoder import DecodedToken, JwtDecoder

LONG_LIVED_THRESHOLD = 86_400


class TokenIntrospector:
    """
    Read-only inspection of tokens for debugging and admin tooling.

    Nothing here verifies signatures; the results must not drive
    authorization decisions.
    """

    def __init__(self, decoder: JwtDecoder) -> None:
        self.decoder = decoder

    def _claims(self, decoded: DecodedToken) -> ClaimsManager:
        return ClaimsManager.unchecked(decoded.payload, clock=self.decoder.clock)

    def introspect(self, token: str) -> dict[str, Any]:
        try:
            decoded = self.decoder.decode_without_verification(token)
        except TokenException as exc:
            return {"valid_structure": False, "error": exc.message, "code": exc.code}

        claims = self._claims(decoded)
        return {
            "valid_structure": True,
            "header": decoded.header,
            "payload": decoded.payload,
            "claims": {
                "standard": claims.get_standard_claims(),
                "custom": claims.get_custom_claims(),
            },
            "timing": self._timing(claims),
            "security": self._security(decoded, claims),
        }

    def get_timing_info(self, token: str) -> dict[str, Any]:
        decoded = self.decoder.decode_without_verification(token)
        return self._timing(self._claims(decoded))

    def assess_token_security(self, token: str) -> dict[str, Any]:
        decoded = self.decoder.decode_without_verification(token)
        return self._security(decoded, self._claims(decoded))

    def compare_tokens(self, first: str, second: str) -> dict[str, Any]:
        a = self.decoder.decode_without_verification(first).payload
        b = self.decoder.decode_without_verification(second).payload
        differing = sorted(k for k in a.keys() | b.keys() if a.get(k) != b.get(k))
        return {
            "same_subject": a.get("sub") == b.get("sub"),
            "same_type": a.get("type") == b.get("type"),
            "same_family": a.get("family_id") is not None
            and a.get("family_id") == b.get("family_id"),
            "differing_claims": differing,
        }

    def _timing(self, claims: ClaimsManager) -> dict[str, Any]:
        now = self.decoder.clock()
        exp = claims.get_claim("exp")
        iat = claims.get_claim("iat")
        timestamps_ok = all(
            isinstance(v, int) or v is None for v in (exp, iat, claims.get_claim("nbf"))
        )
        return {
            "issued_at": iat,
            "not_before": claims.get_claim("nbf"),
            "expires_at": exp,
            "is_expired": timestamps_ok and claims.is_expired(),
            "is_not_yet_valid": timestamps_ok and claims.is_not_yet_valid(),
            "time_to_expiry": exp - now if isinstance(exp, int) else None,
            "age": now - iat if isinstance(iat, int) else None,
        }

    def _security(
        self, decoded: DecodedToken, claims: ClaimsManager
    ) -> dict[str, Any]:
        algorithm = decoded.header.get("alg")
        warnings: list[str] = []
        exp, iat = claims.get_claim("exp"), claims.get_claim("iat")
        lifetime = exp - iat if isinstance(exp, int) and isinstance(iat, int) else None

        if not self.decoder.algorithms.is_supported(algorithm):
            warnings.append(f"unsupported algorithm: {algorithm}")
        if exp is None:
            warnings.append("token never expires")
        if not claims.get_claim("jti"):
            warnings.append("token has no jti and cannot be revoked individually")
        if (
            lifetime is not None
            and lifetime > LONG_LIVED_THRESHOLD
            and claims.get_claim("type") != "refresh"
        ):
            warnings.append("long-lived non-refresh token")

        return {
            "algorithm": algorithm,
            "key_id": decoded.header.get("kid"),
            "is_symmetric": isinstance(algorithm, str) and algorithm.startswith("HS"),
            "lifetime": lifetime,
            "warnings": warnings,
        }
