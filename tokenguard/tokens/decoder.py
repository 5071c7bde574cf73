from collections.abc import Iterable
import json
import re
from typing import Any

from jwt.utils import base64url_decode
from pydantic import BaseModel

from loggers import get_logger
from tokenguard.core.errors.exceptions import (
    ClaimValidationError,
    MalformedTokenError,
    SignatureError,
)
from tokenguard.core.utils.datetime_utils import Clock, unix_now
from tokenguard.main.config import JWTConfig
from tokenguard.tokens.algorithms import AlgorithmProvider
from tokenguard.tokens.claims import ClaimsManager
from tokenguard.tokens.keys import SigningKey

logger = get_logger(__name__)

BASE64URL_SEGMENT = re.compile(r"^[A-Za-z0-9_-]+$")


class DecodedToken(BaseModel):
    header: dict[str, Any]
    payload: dict[str, Any]
    signature: bytes
    signing_input: bytes


def _decode_segment(segment: str, name: str) -> bytes:
    if not BASE64URL_SEGMENT.match(segment):
        raise MalformedTokenError(
            f"Token {name} is not valid base64url", code="JWT_INVALID_ENCODING"
        )
    try:
        return base64url_decode(segment)
    except ValueError as exc:
        raise MalformedTokenError(
            f"Token {name} is not valid base64url", code="JWT_INVALID_ENCODING"
        ) from exc


def _decode_json_segment(segment: str, name: str) -> dict[str, Any]:
    raw = _decode_segment(segment, name)
    try:
        data = json.loads(raw)
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise MalformedTokenError(
            f"Token {name} is not valid JSON", code="JWT_INVALID_JSON"
        ) from exc
    if not isinstance(data, dict):
        raise MalformedTokenError(
            f"Token {name} must be a JSON object", code="JWT_INVALID_JSON"
        )
    return data


class JwtDecoder:
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

    def decode_without_verification(self, token: Any) -> DecodedToken:
        """
        Parse a token without checking its signature or claims.

        Raises:
            MalformedTokenError: If the token is not three base64url JSON segments
        """
        if not isinstance(token, str) or not token.strip():
            raise MalformedTokenError("Token cannot be empty", code="JWT_EMPTY_TOKEN")

        parts = token.split(".")
        if len(parts) != 3:
            raise MalformedTokenError(
                "Token must have exactly three parts", code="JWT_INVALID_FORMAT"
            )
        if not all(parts):
            raise MalformedTokenError(
                "Token parts cannot be empty", code="JWT_EMPTY_PARTS"
            )

        header_segment, payload_segment, signature_segment = parts
        return DecodedToken(
            header=_decode_json_segment(header_segment, "header"),
            payload=_decode_json_segment(payload_segment, "payload"),
            signature=_decode_segment(signature_segment, "signature"),
            signing_input=f"{header_segment}.{payload_segment}".encode(),
        )

    def validate_header(self, header: dict[str, Any]) -> str:
        if header.get("typ") != "JWT":
            raise MalformedTokenError(
                "Invalid token type in header", code="JWT_INVALID_HEADER"
            )
        algorithm = header.get("alg")
        if not self.algorithms.is_supported(algorithm):
            raise MalformedTokenError(
                f"Unsupported algorithm: {algorithm}",
                code="JWT_UNSUPPORTED_ALGORITHM",
            )
        return str(algorithm)

    def _candidate_keys(
        self, keys: Iterable[SigningKey], algorithm: str, kid: Any
    ) -> list[SigningKey]:
        candidates: list[SigningKey] = []
        for key in keys:
            # Never verify with a key of another algorithm, whatever the header says
            if key.algorithm != algorithm:
                continue
            if not key.verification_material():
                continue
            candidates.append(key)
        candidates.sort(key=lambda k: k.id != kid)
        return candidates

    def verify_signature(
        self, decoded: DecodedToken, keys: Iterable[SigningKey]
    ) -> SigningKey:
        """
        Find the key that produced the token's signature.

        Raises:
            SignatureError: If no candidate key verifies the signature
        """
        algorithm = self.validate_header(decoded.header)
        candidates = self._candidate_keys(keys, algorithm, decoded.header.get("kid"))
        if not candidates:
            raise SignatureError(
                f"No verification key available for {algorithm}",
                code="JWT_NO_VERIFICATION_KEY",
            )

        for key in candidates:
            material = key.verification_material()
            if material and self.algorithms.verify(
                algorithm, decoded.signing_input, decoded.signature, material
            ):
                return key

        logger.debug(
            "Signature rejected by %d candidate key(s) for kid=%s",
            len(candidates),
            decoded.header.get("kid"),
        )
        raise SignatureError("Token signature verification failed")

    def validate_claims(self, claims: ClaimsManager) -> None:
        """
        Raises:
            ClaimValidationError: Missing claims, wrong issuer or audience
            ExpiredTokenError: Token is past ``exp``
            NotYetValidError: Token is before ``nbf``
        """
        claims.validate_required_claims(self.config.JWT_REQUIRED_CLAIMS)
        claims.validate_timing(self.config.JWT_LEEWAY)

        issuer = self.config.JWT_ISSUER
        if issuer and claims.get_issuer() != issuer:
            raise ClaimValidationError(
                "Invalid token issuer",
                additional_info={"expected": issuer, "actual": claims.get_issuer()},
                code="JWT_INVALID_ISSUER",
            )

        audience = set(self.config.JWT_AUDIENCE)
        if audience and not audience & claims.get_audience():
            raise ClaimValidationError(
                "Invalid token audience",
                additional_info={
                    "expected": sorted(audience),
                    "actual": sorted(claims.get_audience()),
                },
                code="JWT_INVALID_AUDIENCE",
            )

    def decode(
        self,
        token: Any,
        keys: Iterable[SigningKey],
        *,
        verify: bool = True,
        validate_claims: bool = True,
    ) -> ClaimsManager:
        """
        Decode and verify a token.

        Args:
            token: Compact serialized token
            keys: Candidate verification keys
            verify: Check the signature against ``keys``
            validate_claims: Enforce required claims, timing, issuer and audience

        Returns:
            ClaimsManager: The token's claims

        Raises:
            MalformedTokenError: Token cannot be parsed
            SignatureError: Signature does not verify
            ClaimValidationError: Claims are invalid
            ExpiredTokenError, NotYetValidError: Timing checks failed
        """
        decoded = self.decode_without_verification(token)
        if verify:
            self.verify_signature(decoded, keys)
        else:
            self.validate_header(decoded.header)

        claims = ClaimsManager(decoded.payload, clock=self.clock)
        if validate_claims:
            self.validate_claims(claims)
        return claims
