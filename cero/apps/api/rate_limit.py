from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
import math
import time
from typing import Callable, Protocol

from fastapi import HTTPException, Request, status
from redis.asyncio import Redis
from redis.exceptions import RedisError
from sqlalchemy.ext.asyncio import AsyncSession

from cero.core.config import get_settings
from cero.services.audit import record_request_event


logger = logging.getLogger(__name__)

SCOPE_CLIENT_IP = "client_ip"

# Buckets idle longer than their refill window are dropped once the table grows past this.
_MEMORY_PRUNE_THRESHOLD = 10_000


@dataclass(frozen=True)
class BucketConfig:
    # Sustained rate in tokens per second and the bucket capacity.
    rps: float
    burst: int

    @property
    def idle_ttl_s(self) -> int:
        # Twice the time an empty bucket needs to refill completely.
        if self.rps <= 0:
            return max(1, self.burst)
        return max(1, math.ceil(2 * self.burst / self.rps))


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    scope: str
    retry_after_ms: int
    remaining: float | None = None
    # True only for the first denial after the bucket last granted a request.
    newly_exhausted: bool = False


@dataclass(frozen=True)
class BucketState:
    tokens: float
    updated_ms: int
    exhausted: bool = False


class RateLimiterBackend(Protocol):
    async def check(self, *, client_key: str, cost: int, limits: BucketConfig) -> RateLimitDecision: ...


def refill(state: BucketState | None, *, now_ms: int, limits: BucketConfig) -> float:
    """Tokens available at ``now_ms``; a new client starts with a full bucket."""
    if state is None:
        return float(limits.burst)
    elapsed_ms = max(0, now_ms - state.updated_ms)
    return min(float(limits.burst), state.tokens + limits.rps * elapsed_ms / 1000.0)


def wait_ms(tokens: float, *, cost: int, limits: BucketConfig) -> int:
    shortfall = cost - tokens
    if shortfall <= 0:
        return 0
    if limits.rps <= 0:
        return 1000
    return math.ceil(shortfall * 1000 / limits.rps)


# KEYS[1] bucket hash; ARGV now_ms, rps, burst, cost, ttl_s. Mirrors refill()/wait_ms().
_TOKEN_BUCKET_LUA = r"""
local now = tonumber(ARGV[1])
local rps = tonumber(ARGV[2])
local burst = tonumber(ARGV[3])
local cost = tonumber(ARGV[4])

local saved = redis.call("HMGET", KEYS[1], "tokens", "updated_ms", "exhausted")
local available = burst
if saved[1] then
  local elapsed = math.max(0, now - tonumber(saved[2]))
  available = math.min(burst, tonumber(saved[1]) + rps * elapsed / 1000.0)
end

local granted = 0
local wait = 0
local newly = 0
if available >= cost then
  granted = 1
  available = available - cost
elseif rps > 0 then
  wait = math.ceil((cost - available) * 1000 / rps)
else
  wait = 1000
end

local exhausted = 0
if granted == 0 then
  exhausted = 1
  if saved[3] ~= "1" then
    newly = 1
  end
end

redis.call("HSET", KEYS[1], "tokens", available, "updated_ms", now, "exhausted", exhausted)
redis.call("EXPIRE", KEYS[1], tonumber(ARGV[5]))
return {granted, tostring(available), wait, newly}
"""


class MemoryRateLimiter:
    """Token buckets held in this process, one per client key.

    Suitable for a single uvicorn worker; run the redis backend when several
    processes must share one budget.
    """

    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._buckets: dict[str, BucketState] = {}
        self._lock = asyncio.Lock()

    async def check(self, *, client_key: str, cost: int, limits: BucketConfig) -> RateLimitDecision:
        now_ms = int(self._clock() * 1000)
        async with self._lock:
            if len(self._buckets) > _MEMORY_PRUNE_THRESHOLD:
                self._prune(now_ms, limits)
            previous = self._buckets.get(client_key)
            available = refill(previous, now_ms=now_ms, limits=limits)
            allowed = available >= cost
            retry_after_ms = wait_ms(available, cost=cost, limits=limits)
            if allowed:
                available -= cost
            newly_exhausted = not allowed and (previous is None or not previous.exhausted)
            self._buckets[client_key] = BucketState(tokens=available, updated_ms=now_ms, exhausted=not allowed)
        return RateLimitDecision(
            allowed=allowed,
            scope=SCOPE_CLIENT_IP,
            retry_after_ms=retry_after_ms,
            remaining=available,
            newly_exhausted=newly_exhausted,
        )

    def _prune(self, now_ms: int, limits: BucketConfig) -> None:
        cutoff = now_ms - limits.idle_ttl_s * 1000
        self._buckets = {key: state for key, state in self._buckets.items() if state.updated_ms >= cutoff}


class RedisRateLimiter:
    def __init__(self, client: Redis, *, prefix: str, clock: Callable[[], float] = time.time) -> None:
        self._client = client
        self._prefix = prefix
        self._clock = clock
        self._script = client.register_script(_TOKEN_BUCKET_LUA)

    async def check(self, *, client_key: str, cost: int, limits: BucketConfig) -> RateLimitDecision:
        # Refill and spend happen inside Redis so every worker shares one bucket per client.
        granted, remaining, wait, newly = await self._script(
            keys=[f"{self._prefix}:ip:{client_key}"],
            args=[int(self._clock() * 1000), limits.rps, limits.burst, cost, limits.idle_ttl_s],
        )
        return RateLimitDecision(
            allowed=int(granted) == 1,
            scope=SCOPE_CLIENT_IP,
            retry_after_ms=int(wait),
            remaining=float(remaining),
            newly_exhausted=int(newly) == 1,
        )


_limiter: RateLimiterBackend | None = None
_limiter_loop: asyncio.AbstractEventLoop | None = None


def _get_rate_limiter() -> RateLimiterBackend:
    """Return the configured backend, built lazily.

    Redis clients are bound to the event loop that created them, so a new
    loop gets a new client.
    """
    global _limiter, _limiter_loop
    settings = get_settings()
    use_redis = settings.rate_limit_backend.lower() == "redis"
    if use_redis:
        loop = asyncio.get_running_loop()
        if _limiter is None or _limiter_loop is not loop:
            client = Redis.from_url(settings.redis_url, encoding="utf-8", decode_responses=True)
            _limiter = RedisRateLimiter(client, prefix=settings.rl_redis_prefix)
            _limiter_loop = loop
    elif _limiter is None:
        _limiter = MemoryRateLimiter()
    return _limiter


def reset_rate_limiter_state() -> None:
    # Forget buckets and Redis clients; tests call this between cases.
    global _limiter, _limiter_loop
    _limiter = None
    _limiter_loop = None


def _limits() -> BucketConfig:
    settings = get_settings()
    return BucketConfig(
        rps=settings.rate_limit_requests_per_minute / 60.0,
        burst=settings.rate_limit_capacity(),
    )


def throttled(decision: RateLimitDecision) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        detail={
            "code": "RATE_LIMITED",
            "message": "Too Many Requests",
            "scope": decision.scope,
            "retry_after_ms": decision.retry_after_ms,
        },
        headers={
            # Whole seconds, never zero, for clients that only read Retry-After.
            "Retry-After": str(max(1, math.ceil(decision.retry_after_ms / 1000))),
            "X-RateLimit-Scope": decision.scope,
            "X-RateLimit-Retry-After-Ms": str(decision.retry_after_ms),
        },
    )


async def enforce_rate_limit(*, request: Request, db: AsyncSession, client_ip: str) -> None:
    """Spend one token from the caller's bucket or raise 429.

    Runs before the session cookie is looked at, so anonymous floods are cut
    off without touching the sessions table.
    """
    settings = get_settings()
    if not settings.rate_limit_enabled:
        return

    try:
        decision = await _get_rate_limiter().check(client_key=client_ip, cost=1, limits=_limits())
    except (RedisError, OSError) as exc:
        if settings.rl_fail_mode.lower() != "closed":
            logger.warning("rate_limit_backend_error fail_mode=open path=%s error=%s", request.url.path, exc)
            return
        logger.error("rate_limit_backend_error fail_mode=closed path=%s", request.url.path, exc_info=exc)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"code": "RATE_LIMIT_UNAVAILABLE", "message": "Rate limiting unavailable"},
        ) from exc

    if decision.allowed:
        return
    if not decision.newly_exhausted:
        # Already audited when this bucket ran dry.
        logger.debug("rate_limited client_ip=%s path=%s", client_ip, request.url.path)
        raise throttled(decision)

    logger.warning(
        "rate_limited client_ip=%s path=%s retry_after_ms=%s",
        client_ip,
        request.url.path,
        decision.retry_after_ms,
    )
    await record_request_event(
        session=db,
        request=request,
        account_id=None,
        user_id=None,
        action="rate_limited",
        outcome="failure",
        resource_type="rate_limit",
        details={
            "scope": decision.scope,
            "retry_after_ms": decision.retry_after_ms,
            "path": request.url.path,
        },
    )
    raise throttled(decision)
