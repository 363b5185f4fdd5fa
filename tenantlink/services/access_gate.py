from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import logging
import time
from typing import Callable, Protocol

from redis.asyncio import Redis
from redis.exceptions import RedisError

from tenantlink.core.config import get_settings
from tenantlink.domain.models import CompanyProjectAccess
from tenantlink.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

REASON_RATE_LIMITED_MINUTE = "rate_limited_minute"
REASON_RATE_LIMITED_HOUR = "rate_limited_hour"
REASON_CIRCUIT_OPEN = "circuit_open"
REASON_PROBE_IN_FLIGHT = "probe_in_flight"
REASON_LIMITER_UNAVAILABLE = "rate_limit_unavailable"

_MINUTE_TTL_S = 120
_HOUR_TTL_S = 7200


@dataclass(frozen=True)
class AdmissionDecision:
    # Denial is an outcome, not an error; callers back off on a falsy decision.
    allowed: bool
    reason: str | None = None
    retry_after_s: int = 0
    degraded: bool = False

    def __bool__(self) -> bool:
        return self.allowed


class CounterStore(Protocol):
    async def get_many(self, keys: list[str]) -> list[int]:
        ...

    async def incr(self, key: str, ttl_s: int) -> int:
        ...


_redis_pool: Redis | None = None
_redis_loop: asyncio.AbstractEventLoop | None = None
_redis_lock = asyncio.Lock()


async def _get_redis() -> Redis:
    # Cache Redis connections to avoid reconnecting per request.
    global _redis_pool, _redis_loop
    current_loop = asyncio.get_running_loop()
    if _redis_pool is not None and _redis_loop == current_loop:
        return _redis_pool
    if _redis_pool is not None and _redis_loop != current_loop:
        _redis_pool = None
    async with _redis_lock:
        if _redis_pool is None:
            settings = get_settings()
            _redis_pool = Redis.from_url(
                settings.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
            _redis_loop = current_loop
    return _redis_pool


class RedisCounterStore:
    def __init__(self, redis: Redis | None = None) -> None:
        self._redis = redis

    async def _client(self) -> Redis:
        if self._redis is not None:
            return self._redis
        return await _get_redis()

    async def get_many(self, keys: list[str]) -> list[int]:
        redis = await self._client()
        values = await redis.mget(keys)
        return [int(value) if value is not None else 0 for value in values]

    async def incr(self, key: str, ttl_s: int) -> int:
        # INCR and EXPIRE in one MULTI so a counter never outlives its window.
        redis = await self._client()
        async with redis.pipeline(transaction=True) as pipe:
            pipe.incr(key)
            pipe.expire(key, ttl_s)
            value, _ = await pipe.execute()
        return int(value)


class LocalCounterStore:
    """In-process counters for single-node deployments and tests.

    Expired windows are swept at most once per ``sweep_interval_s``, so the
    store holds roughly the live minute and hour keys of each access.
    """

    def __init__(
        self,
        *,
        time_provider: Callable[[], float] | None = None,
        sweep_interval_s: float = 60.0,
    ) -> None:
        self._time_provider = time_provider or time.time
        self._values: dict[str, tuple[int, float]] = {}
        self._sweep_interval_s = sweep_interval_s
        self._next_sweep_at = 0.0

    def __len__(self) -> int:
        return len(self._values)

    def _live_value(self, key: str) -> int:
        entry = self._values.get(key)
        if entry is None:
            return 0
        value, expires_at = entry
        if expires_at <= self._time_provider():
            del self._values[key]
            return 0
        return value

    def _sweep(self, now: float) -> None:
        if now < self._next_sweep_at:
            return
        self._next_sweep_at = now + self._sweep_interval_s
        expired = [key for key, (_, expires_at) in self._values.items() if expires_at <= now]
        for key in expired:
            del self._values[key]

    async def get_many(self, keys: list[str]) -> list[int]:
        return [self._live_value(key) for key in keys]

    async def incr(self, key: str, ttl_s: int) -> int:
        now = self._time_provider()
        self._sweep(now)
        value = self._live_value(key) + 1
        self._values[key] = (value, now + ttl_s)
        return value


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class RateLimitGate:
    def __init__(
        self,
        counter_store: CounterStore | None = None,
        *,
        time_provider: Callable[[], float] | None = None,
        failure_threshold: int | None = None,
        open_seconds: int | None = None,
        fail_mode: str | None = None,
    ) -> None:
        settings = get_settings()
        # Allow injecting time for deterministic tests.
        self._time_provider = time_provider or time.time
        self._store = counter_store or _default_counter_store(self._time_provider)
        self._failure_threshold = failure_threshold or settings.cb_failure_threshold
        self._open_seconds = open_seconds or settings.cb_open_seconds
        self._fail_mode = (fail_mode or settings.rl_fail_mode).lower()

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._time_provider(), tz=timezone.utc)

    def _window_keys(self, access_id: str, now: datetime) -> tuple[str, str]:
        prefix = get_settings().rl_redis_prefix
        minute_key = f"{prefix}:{access_id}:minute:{now.strftime('%Y-%m-%d-%H-%M')}"
        hour_key = f"{prefix}:{access_id}:hour:{now.strftime('%Y-%m-%d-%H')}"
        return minute_key, hour_key

    def _deny(self, access: CompanyProjectAccess, reason: str, retry_after_s: int) -> AdmissionDecision:
        increment_counter(f"access_gate_denied_total.{reason}")
        logger.info("access_gate_denied access_id=%s reason=%s", access.id, reason)
        return AdmissionDecision(allowed=False, reason=reason, retry_after_s=max(0, retry_after_s))

    def _transition(self, access: CompanyProjectAccess, target: str) -> None:
        # Emit logs on breaker state transitions for operator visibility.
        if access.circuit_breaker_state != target:
            logger.warning(
                "circuit_breaker_transition access_id=%s from=%s to=%s",
                access.id,
                access.circuit_breaker_state,
                target,
            )
            increment_counter(f"circuit_breaker_transition_total.{target}")
        access.circuit_breaker_state = target

    async def admit(self, access: CompanyProjectAccess) -> AdmissionDecision:
        # Caller must hold the access row lock until record() has run.
        now = self._now()
        state = access.circuit_breaker_state or "closed"
        reset_at = _as_utc(access.circuit_breaker_reset_at)
        breaker_pending = reset_at is not None and reset_at > now
        if state == "open" and breaker_pending:
            return self._deny(access, REASON_CIRCUIT_OPEN, int((reset_at - now).total_seconds()) + 1)
        if state == "half_open" and breaker_pending:
            return self._deny(access, REASON_PROBE_IN_FLIGHT, int((reset_at - now).total_seconds()) + 1)

        degraded = False
        minute_key, hour_key = self._window_keys(access.id, now)
        try:
            minute_count, hour_count = await self._store.get_many([minute_key, hour_key])
        except (RedisError, OSError) as exc:
            if self._fail_mode == "closed":
                logger.error("access_gate_store_unavailable access_id=%s", access.id, exc_info=exc)
                return self._deny(access, REASON_LIMITER_UNAVAILABLE, 1)
            logger.warning("access_gate_store_degraded access_id=%s", access.id, exc_info=exc)
            minute_count, hour_count = 0, 0
            degraded = True

        if minute_count >= access.rate_limit_per_minute:
            return self._deny(access, REASON_RATE_LIMITED_MINUTE, 60 - now.second)
        if hour_count >= access.rate_limit_per_hour:
            return self._deny(access, REASON_RATE_LIMITED_HOUR, 3600 - (now.minute * 60 + now.second))

        if state in {"open", "half_open"}:
            # Cool-down elapsed: let exactly one probe through until it is recorded or its deadline passes.
            self._transition(access, "half_open")
            access.circuit_breaker_reset_at = now + timedelta(seconds=self._open_seconds)
        return AdmissionDecision(allowed=True, degraded=degraded)

    async def record(self, access: CompanyProjectAccess, success: bool) -> None:
        # Only admitted calls that actually executed reach this point, so both windows count them.
        now = self._now()
        minute_key, hour_key = self._window_keys(access.id, now)
        try:
            await self._store.incr(minute_key, _MINUTE_TTL_S)
            await self._store.incr(hour_key, _HOUR_TTL_S)
        except (RedisError, OSError) as exc:
            logger.warning("access_gate_counter_write_failed access_id=%s", access.id, exc_info=exc)

        if success:
            if access.circuit_breaker_state == "half_open":
                self._transition(access, "closed")
                access.circuit_breaker_reset_at = None
            access.circuit_breaker_failures = 0
            return

        access.circuit_breaker_failures = (access.circuit_breaker_failures or 0) + 1
        if (
            access.circuit_breaker_state == "half_open"
            or access.circuit_breaker_failures >= self._failure_threshold
        ):
            self._transition(access, "open")
            access.circuit_breaker_reset_at = now + timedelta(seconds=self._open_seconds)


_local_store: LocalCounterStore | None = None


def _default_counter_store(time_provider: Callable[[], float]) -> CounterStore:
    # Share one in-process store so counters persist across gate instances.
    global _local_store
    if get_settings().rl_counter_backend.lower() == "redis":
        return RedisCounterStore()
    if _local_store is None:
        _local_store = LocalCounterStore(time_provider=time_provider)
    return _local_store


def reset_access_gate_state() -> None:
    # Reset cached Redis connections and local counters for deterministic test setup.
    global _redis_pool, _redis_loop, _local_store
    _redis_pool = None
    _redis_loop = None
    _local_store = None
