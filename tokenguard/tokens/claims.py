"""
JWT claims container.

Holds a token's claims, validates the registered claims on write and answers
timing questions against an injected clock.
"""

from collections.abc import Iterable, Mapping
import json
from typing import Any

from tokenguard.core.errors.exceptions import (
    ClaimValidationError,
    ExpiredTokenError,
    NotYetValidError,
)
from tokenguard.core.utils.datetime_utils import Clock, unix_now

STANDARD_CLAIMS = ("iss", "sub", "aud", "exp", "nbf", "iat", "jti")
TIMESTAMP_CLAIMS = ("exp", "nbf", "iat")
STRING_CLAIMS = ("iss", "sub", "jti")


def _validate_timestamp(name: str, value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ClaimValidationError(
            f"Claim '{name}' must be a positive integer timestamp",
            additional_info={"claim": name},
        )
    return value


def _validate_string(name: str, value: Any) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ClaimValidationError(
            f"Claim '{name}' must be a non-empty string",
            additional_info={"claim": name},
        )
    return value


def _normalize_audience(value: Any) -> set[str]:
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, (list, tuple, set, frozenset)) or not value:
        raise ClaimValidationError(
            "Claim 'aud' must be a non-empty string or list of strings",
            additional_info={"claim": "aud"},
        )
    audience = set()
    for item in value:
        audience.add(_validate_string("aud", item))
    return audience


class ClaimsManager:
    def __init__(
        self, claims: Mapping[str, Any] | None = None, *, clock: Clock = unix_now
    ) -> None:
        self._claims: dict[str, Any] = {}
        self._clock = clock
        if claims:
            self.set_claims(claims)

    @classmethod
    def from_dict(
        cls, claims: Mapping[str, Any], *, clock: Clock = unix_now
    ) -> "ClaimsManager":
        return cls(claims, clock=clock)

    @classmethod
    def unchecked(
        cls, claims: Mapping[str, Any], *, clock: Clock = unix_now
    ) -> "ClaimsManager":
        """Wrap claims as-is, skipping registered-claim validation."""
        instance = cls(clock=clock)
        instance._claims = dict(claims)
        return instance

    # ----- Generic access ----- #
    def set_claim(self, name: str, value: Any) -> "ClaimsManager":
        """
        Set a single claim, validating registered claim names.

        Raises:
            ClaimValidationError: If the name is empty or the value is invalid
        """
        if not isinstance(name, str) or not name.strip():
            raise ClaimValidationError("Claim name cannot be empty")

        if name in TIMESTAMP_CLAIMS:
            value = _validate_timestamp(name, value)
        elif name in STRING_CLAIMS:
            value = _validate_string(name, value)
        elif name == "aud":
            value = _normalize_audience(value)

        self._claims[name] = value
        return self

    def set_claims(self, claims: Mapping[str, Any]) -> "ClaimsManager":
        for name, value in claims.items():
            self.set_claim(name, value)
        return self

    def get_claim(self, name: str, default: Any = None) -> Any:
        return self._claims.get(name, default)

    def has_claim(self, name: str) -> bool:
        return name in self._claims

    def remove_claim(self, name: str) -> "ClaimsManager":
        self._claims.pop(name, None)
        return self

    def get_all_claims(self) -> dict[str, Any]:
        return dict(self._claims)

    def get_standard_claims(self) -> dict[str, Any]:
        return {k: v for k, v in self._claims.items() if k in STANDARD_CLAIMS}

    def get_custom_claims(self) -> dict[str, Any]:
        return {k: v for k, v in self._claims.items() if k not in STANDARD_CLAIMS}

    # ----- Registered claims ----- #
    def set_issuer(self, issuer: str) -> "ClaimsManager":
        return self.set_claim("iss", issuer)

    def get_issuer(self) -> str | None:
        return self._claims.get("iss")

    def set_subject(self, subject: str) -> "ClaimsManager":
        return self.set_claim("sub", subject)

    def get_subject(self) -> str | None:
        return self._claims.get("sub")

    def set_audience(self, audience: str | Iterable[str]) -> "ClaimsManager":
        return self.set_claim("aud", audience)

    def get_audience(self) -> set[str]:
        return set(self._claims.get("aud", set()))

    def set_expiration(self, timestamp: int) -> "ClaimsManager":
        return self.set_claim("exp", timestamp)

    def get_expiration(self) -> int | None:
        return self._claims.get("exp")

    def set_not_before(self, timestamp: int) -> "ClaimsManager":
        return self.set_claim("nbf", timestamp)

    def get_not_before(self) -> int | None:
        return self._claims.get("nbf")

    def set_issued_at(self, timestamp: int) -> "ClaimsManager":
        return self.set_claim("iat", timestamp)

    def get_issued_at(self) -> int | None:
        return self._claims.get("iat")

    def set_jwt_id(self, jti: str) -> "ClaimsManager":
        return self.set_claim("jti", jti)

    def get_jwt_id(self) -> str | None:
        return self._claims.get("jti")

    # ----- Timing ----- #
    def is_expired(self, leeway: int = 0) -> bool:
        exp = self.get_expiration()
        if exp is None:
            return False
        return self._clock() - leeway >= exp

    def is_not_yet_valid(self, leeway: int = 0) -> bool:
        nbf = self.get_not_before()
        if nbf is None:
            return False
        return self._clock() + leeway < nbf

    def validate_timing(self, leeway: int = 0) -> None:
        """
        Raises:
            ExpiredTokenError: If the token reached its expiration time
            NotYetValidError: If the token's not-before time is in the future
        """
        if self.is_expired(leeway):
            raise ExpiredTokenError(
                "Token has expired",
                additional_info={"exp": self.get_expiration(), "leeway": leeway},
            )
        if self.is_not_yet_valid(leeway):
            raise NotYetValidError(
                "Token is not yet valid",
                additional_info={"nbf": self.get_not_before(), "leeway": leeway},
            )

    def validate_required_claims(self, names: Iterable[str]) -> None:
        missing = [name for name in names if name not in self._claims]
        if missing:
            raise ClaimValidationError(
                f"Missing required claims: {', '.join(missing)}",
                additional_info={"missing": missing},
                code="JWT_MISSING_REQUIRED_CLAIMS",
            )

    # ----- Serialization ----- #
    def to_dict(self) -> dict[str, Any]:
        """JSON-ready claims; the audience set is emitted as a sorted list."""
        data = dict(self._claims)
        if "aud" in data:
            data["aud"] = sorted(data["aud"])
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), separators=(",", ":"))

    def __repr__(self) -> str:
        return f"ClaimsManager({self.to_dict()!r})"
