import hashlib

from pydantic import BaseModel, ConfigDict, Field
from starlette.requests import Request

FINGERPRINT_HEADERS = ("accept-language", "accept-encoding")


class RequestContext(BaseModel):
    """The parts of an HTTP request the security components look at."""

    ip: str
    user_agent: str = ""
    method: str = "GET"
    path: str = "/"
    headers: dict[str, str] = Field(default_factory=dict)

    model_config = ConfigDict(frozen=True)

    @classmethod
    def from_request(
        cls, request: Request, *, trust_proxy_headers: bool = False
    ) -> "RequestContext":
        """
        Build a context from a Starlette request.

        Forwarding headers are only honoured with ``trust_proxy_headers``.
        """
        ip = request.client.host if request.client else "unknown"
        if trust_proxy_headers:
            x_forwarded_for = request.headers.get("X-Forwarded-For")
            x_real_ip = request.headers.get("X-Real-IP")
            if x_forwarded_for:
                ip = x_forwarded_for.split(",")[0].strip() or ip
            elif x_real_ip:
                ip = x_real_ip.strip() or ip

        headers = {k.lower(): v for k, v in request.headers.items()}
        headers.pop("authorization", None)
        headers.pop("cookie", None)
        return cls(
            ip=ip,
            user_agent=request.headers.get("user-agent", ""),
            method=request.method,
            path=request.url.path,
            headers=headers,
        )

    @property
    def fingerprint(self) -> str:
        parts = [self.ip, self.user_agent]
        parts.extend(self.headers.get(name, "") for name in FINGERPRINT_HEADERS)
        return hashlib.sha256("|".join(parts).encode()).hexdigest()
