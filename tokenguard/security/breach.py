"""
Breach and threat detection over sliding time windows.

Windows are JSON lists of ``{"timestamp": ..., ...}`` entries stored in the
shared cache with a TTL equal to the window; each write drops entries older
than the window before appending. Updates are read-modify-write, so counts are
best effort under concurrent writers.

Detection and lookups fail open: when the cache is unreachable an error is
logged and callers see "not blocked, no alerts". Manual block, unblock and
clear operations propagate cache errors.
"""

from collections import Counter
from collections.abc import Awaitable, Callable
from enum import StrEnum
from typing import Any, TypeVar

from pydantic import BaseModel, ConfigDict, Field

from loggers import get_logger
from tokenguard.core.errors.exceptions import CacheUnavailableError
from tokenguard.core.redis.cache.backend.interface import CacheBackend
from tokenguard.core.utils.datetime_utils import Clock, unix_now
from tokenguard.main.config import BreachDetectionConfig
from tokenguard.security.request_context import RequestContext

logger = get_logger(__name__)

T = TypeVar("T")

ALERTS_KEY = "breach:alerts"
BLOCKED_IPS_KEY = "breach:blocked_ips"
BLOCKED_USERS_KEY = "breach:blocked_users"


class AlertType(StrEnum):
    BRUTE_FORCE = "brute_force_detected"
    HIGH_REQUEST_VOLUME = "high_request_volume"
    TOKEN_REPLAY = "token_replay_attack"


class Severity(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class SecurityAlert(BaseModel):
    type: AlertType
    severity: Severity
    ip: str | None = None
    user_id: str | None = None
    token_id: str | None = None
    timestamp: int
    message: str
    details: dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(frozen=True)


class DetectionResult(BaseModel):
    blocked: bool = False
    alerts: list[SecurityAlert] = Field(default_factory=list)
    ip: str | None = None
    user_id: str | None = None
    timestamp: int = 0

    def has_alert(self, alert_type: AlertType) -> bool:
        return any(alert.type == alert_type for alert in self.alerts)


def threat_level(score: int) -> Severity:
    if score >= 50:
        return Severity.CRITICAL
    if score >= 20:
        return Severity.HIGH
    if score >= 10:
        return Severity.MEDIUM
    return Severity.LOW


class BreachDetectionManager:
    def __init__(
        self,
        cache: CacheBackend,
        config: BreachDetectionConfig,
        *,
        clock: Clock = unix_now,
    ) -> None:
        self.cache = cache
        self.config = config
        self.clock = clock

    @property
    def enabled(self) -> bool:
        return self.config.BREACH_ENABLED

    async def _fail_open(
        self, operation: str, call: Callable[[], Awaitable[T]], default: T
    ) -> T:
        try:
            return await call()
        except CacheUnavailableError as exc:
            logger.error(
                "Breach detection degraded, %s skipped: %s", operation, exc.message
            )
            return default

    # ----- Windows ----- #
    async def _append_to_window(
        self, key: str, entry: dict[str, Any], window: int
    ) -> list[dict[str, Any]]:
        now = self.clock()
        entries = await self.cache.get_value(key) or []
        entries = [e for e in entries if e.get("timestamp", 0) > now - window]
        entries.append({"timestamp": now, **entry})
        await self.cache.set_value(key, entries, ttl=window)
        return entries

    async def _store_alert(self, alert: SecurityAlert) -> None:
        now = self.clock()
        retention = self.config.BREACH_ALERT_RETENTION
        alerts = await self.cache.get_value(ALERTS_KEY) or []
        alerts = [a for a in alerts if a.get("timestamp", 0) > now - retention]
        alerts.append(alert.model_dump(mode="json"))
        await self.cache.set_value(ALERTS_KEY, alerts, ttl=retention)
        logger.warning(
            "Security alert %s (%s): %s", alert.type, alert.severity, alert.message
        )

    # ----- Recording ----- #
    async def record_auth_attempt(
        self,
        context: RequestContext,
        user_id: Any = None,
        success: bool = False,
        reason: str = "",
    ) -> DetectionResult:
        """
        Record an authentication attempt and evaluate the IP's windows.

        Args:
            context: Request the attempt came from
            user_id: User the attempt targeted, when known
            success: Whether authentication succeeded
            reason: Failure reason, logged only

        Returns:
            DetectionResult: Alerts raised by this attempt and the block state
        """
        now = self.clock()
        uid = str(user_id) if user_id is not None else None
        empty = DetectionResult(ip=context.ip, user_id=uid, timestamp=now)
        if not self.enabled:
            return empty

        async def _record() -> DetectionResult:
            if self.config.BREACH_LOG_ALL_ATTEMPTS:
                logger.info(
                    "Auth attempt ip=%s user=%s success=%s reason=%s",
                    context.ip,
                    uid,
                    success,
                    reason,
                )

            alerts: list[SecurityAlert] = []
            activity = await self._append_to_window(
                f"breach:ip_activity:{context.ip}",
                {"user_id": uid, "success": success},
                self.config.BREACH_IP_REQUEST_WINDOW,
            )
            if not success:
                failures = await self._append_to_window(
                    f"breach:failed:{context.ip}",
                    {
                        "user_id": uid,
                        "reason": reason,
                        "fingerprint": context.fingerprint,
                    },
                    self.config.BREACH_FAILED_AUTH_WINDOW,
                )
                if len(failures) >= self.config.BREACH_FAILED_AUTH_THRESHOLD:
                    alerts.append(
                        SecurityAlert(
                            type=AlertType.BRUTE_FORCE,
                            severity=Severity.HIGH,
                            ip=context.ip,
                            user_id=uid,
                            timestamp=now,
                            message=(
                                f"{len(failures)} failed authentication attempts "
                                f"from {context.ip}"
                            ),
                            details={
                                "failed_attempts": len(failures),
                                "threshold": self.config.BREACH_FAILED_AUTH_THRESHOLD,
                                "window": self.config.BREACH_FAILED_AUTH_WINDOW,
                            },
                        )
                    )

            if len(activity) >= self.config.BREACH_IP_REQUEST_THRESHOLD:
                alerts.append(
                    SecurityAlert(
                        type=AlertType.HIGH_REQUEST_VOLUME,
                        severity=Severity.MEDIUM,
                        ip=context.ip,
                        user_id=uid,
                        timestamp=now,
                        message=f"High request volume from {context.ip}",
                        details={
                            "request_count": len(activity),
                            "threshold": self.config.BREACH_IP_REQUEST_THRESHOLD,
                            "window": self.config.BREACH_IP_REQUEST_WINDOW,
                        },
                    )
                )

            for alert in alerts:
                await self._store_alert(alert)
                if (
                    alert.type == AlertType.BRUTE_FORCE
                    and self.config.BREACH_AUTO_BLOCK_ENABLED
                ):
                    await self._block(
                        "ip",
                        context.ip,
                        self.config.BREACH_BLOCK_IP_DURATION,
                        reason=alert.type,
                    )

            blocked = await self.cache.has(f"breach:blocked_ip:{context.ip}")
            if not blocked and uid is not None:
                blocked = await self.cache.has(f"breach:blocked_user:{uid}")
            return DetectionResult(
                blocked=blocked,
                alerts=alerts,
                ip=context.ip,
                user_id=uid,
                timestamp=now,
            )

        return await self._fail_open("record_auth_attempt", _record, empty)

    async def record_token_usage(
        self, token_id: str, user_id: Any = None, ip: str | None = None
    ) -> DetectionResult:
        """
        Record a use of ``token_id``. Reaching the reuse threshold from more than
        one IP raises a ``token_replay_attack`` alert and blocks the user.
        """
        now = self.clock()
        uid = str(user_id) if user_id is not None else None
        empty = DetectionResult(ip=ip, user_id=uid, timestamp=now)
        if not self.enabled:
            return empty

        async def _record() -> DetectionResult:
            usages = await self._append_to_window(
                f"breach:token_usage:{token_id}",
                {"ip": ip, "user_id": uid},
                self.config.BREACH_TOKEN_REUSE_WINDOW,
            )
            ips = sorted({u["ip"] for u in usages if u.get("ip")})
            alerts: list[SecurityAlert] = []
            if len(usages) >= self.config.BREACH_TOKEN_REUSE_THRESHOLD and len(ips) > 1:
                alert = SecurityAlert(
                    type=AlertType.TOKEN_REPLAY,
                    severity=Severity.HIGH,
                    ip=ip,
                    user_id=uid,
                    token_id=token_id,
                    timestamp=now,
                    message=f"Token {token_id} used from {len(ips)} different IPs",
                    details={
                        "usage_count": len(usages),
                        "unique_ips": len(ips),
                        "ips": ips,
                        "threshold": self.config.BREACH_TOKEN_REUSE_THRESHOLD,
                    },
                )
                alerts.append(alert)
                await self._store_alert(alert)
                if uid is not None and self.config.BREACH_AUTO_BLOCK_ENABLED:
                    await self._block(
                        "user",
                        uid,
                        self.config.BREACH_BLOCK_USER_DURATION,
                        reason=alert.type,
                    )

            blocked = uid is not None and await self.cache.has(
                f"breach:blocked_user:{uid}"
            )
            return DetectionResult(
                blocked=blocked, alerts=alerts, ip=ip, user_id=uid, timestamp=now
            )

        return await self._fail_open("record_token_usage", _record, empty)

    # ----- Blocking ----- #
    async def _block(
        self, kind: str, value: str, duration: int, reason: str = "manual"
    ) -> None:
        now = self.clock()
        record = {
            "value": value,
            "blocked_at": now,
            "until": now + duration,
            "reason": str(reason),
        }
        await self.cache.set_value(
            f"breach:blocked_{kind}:{value}", record, ttl=duration
        )

        index_key = BLOCKED_IPS_KEY if kind == "ip" else BLOCKED_USERS_KEY
        index = await self._read_index(index_key)
        index[value] = record
        await self.cache.set_value(index_key, index, ttl=None)
        logger.warning("Blocked %s %s for %ss (%s)", kind, value, duration, reason)

    async def _unblock(self, kind: str, value: str) -> None:
        await self.cache.delete(f"breach:blocked_{kind}:{value}")
        index_key = BLOCKED_IPS_KEY if kind == "ip" else BLOCKED_USERS_KEY
        index = await self._read_index(index_key)
        if index.pop(value, None) is not None:
            await self.cache.set_value(index_key, index, ttl=None)
        logger.info("Unblocked %s %s", kind, value)

    async def _read_index(self, index_key: str) -> dict[str, dict[str, Any]]:
        now = self.clock()
        index = await self.cache.get_value(index_key) or {}
        return {k: v for k, v in index.items() if v.get("until", 0) > now}

    async def block_ip(
        self, ip: str, duration: int | None = None, reason: str = "manual"
    ) -> None:
        await self._block(
            "ip", ip, duration or self.config.BREACH_BLOCK_IP_DURATION, reason
        )

    async def unblock_ip(self, ip: str) -> None:
        await self._unblock("ip", ip)

    async def block_user(
        self, user_id: Any, duration: int | None = None, reason: str = "manual"
    ) -> None:
        await self._block(
            "user",
            str(user_id),
            duration or self.config.BREACH_BLOCK_USER_DURATION,
            reason,
        )

    async def unblock_user(self, user_id: Any) -> None:
        await self._unblock("user", str(user_id))

    async def is_ip_blocked(self, ip: str) -> bool:
        if not self.enabled:
            return False
        return await self._fail_open(
            "is_ip_blocked",
            lambda: self.cache.has(f"breach:blocked_ip:{ip}"),
            False,
        )

    async def is_user_blocked(self, user_id: Any) -> bool:
        if not self.enabled or user_id is None:
            return False
        return await self._fail_open(
            "is_user_blocked",
            lambda: self.cache.has(f"breach:blocked_user:{user_id}"),
            False,
        )

    async def get_blocked_ips(self) -> list[dict[str, Any]]:
        index = await self._fail_open(
            "get_blocked_ips", lambda: self._read_index(BLOCKED_IPS_KEY), {}
        )
        return list(index.values())

    async def get_blocked_users(self) -> list[dict[str, Any]]:
        index = await self._fail_open(
            "get_blocked_users", lambda: self._read_index(BLOCKED_USERS_KEY), {}
        )
        return list(index.values())

    # ----- Reporting ----- #
    async def get_security_alerts(self, since: int = 0) -> list[SecurityAlert]:
        async def _read() -> list[SecurityAlert]:
            now = self.clock()
            retention = self.config.BREACH_ALERT_RETENTION
            alerts = await self.cache.get_value(ALERTS_KEY) or []
            return [
                SecurityAlert.model_validate(a)
                for a in alerts
                if a.get("timestamp", 0) >= since
                and a.get("timestamp", 0) > now - retention
            ]

        return await self._fail_open("get_security_alerts", _read, [])

    async def get_security_stats(self, hours: int = 24) -> dict[str, Any]:
        since = self.clock() - hours * 3600
        alerts = await self.get_security_alerts(since)
        blocked_ips = await self.get_blocked_ips()
        blocked_users = await self.get_blocked_users()

        score = len(alerts) + len(blocked_ips) * 2 + len(blocked_users) * 3
        top_ips = Counter(alert.ip for alert in alerts if alert.ip)
        return {
            "period_hours": hours,
            "total_alerts": len(alerts),
            "alerts_by_type": dict(Counter(str(a.type) for a in alerts)),
            "alerts_by_severity": dict(Counter(str(a.severity) for a in alerts)),
            "blocked_ips": len(blocked_ips),
            "blocked_users": len(blocked_users),
            "top_ips": [
                {"ip": ip, "alerts": count} for ip, count in top_ips.most_common(10)
            ],
            "threat_score": score,
            "threat_level": str(threat_level(score)),
        }

    async def clear_security_data(self) -> None:
        """Drop alerts and every block. Per-IP and per-token windows just expire."""
        for kind, index_key in (("ip", BLOCKED_IPS_KEY), ("user", BLOCKED_USERS_KEY)):
            for value in await self._read_index(index_key):
                await self.cache.delete(f"breach:blocked_{kind}:{value}")
            await self.cache.delete(index_key)
        await self.cache.delete(ALERTS_KEY)
        logger.warning("Security data cleared")
