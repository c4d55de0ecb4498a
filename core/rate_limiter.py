# core/rate_limiter.py
"""
Sliding-window rate limiter with pluggable storage

Each client key owns an ordered list of request timestamps. A request is
admitted while fewer than ``max_requests`` timestamps fall inside the last
``window_ms`` milliseconds, so a burst at a window boundary decays gradually
instead of resetting to zero.

Storage backends:
- InMemoryRateLimitStore: per-process dict, single-process deployments and tests
- RedisRateLimitStore: sorted set per key, atomic check-and-record via Lua,
  shared by every worker process
"""

import logging
import math
import threading
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Tuple

import redis

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitPolicy:
    """Window length and request budget for one endpoint class"""
    window_ms: int
    max_requests: int


DEFAULT_PRESETS: Dict[str, RateLimitPolicy] = {
    'auth': RateLimitPolicy(window_ms=15 * 60 * 1000, max_requests=5),
    'api': RateLimitPolicy(window_ms=15 * 60 * 1000, max_requests=100),
    'upload': RateLimitPolicy(window_ms=60 * 60 * 1000, max_requests=10),
    'contact': RateLimitPolicy(window_ms=60 * 60 * 1000, max_requests=3),
    'newsletter': RateLimitPolicy(window_ms=60 * 60 * 1000, max_requests=5),
}


@dataclass
class RateLimitResult:
    """Outcome of a single rate limit check"""
    allowed: bool
    remaining: int
    reset_at: datetime
    limit: int
    retry_after: int = 0

    def headers(self) -> Dict[str, str]:
        """X-RateLimit-* response headers"""
        reset = self.reset_at.isoformat(timespec='milliseconds').replace('+00:00', 'Z')
        return {
            'X-RateLimit-Limit': str(self.limit),
            'X-RateLimit-Remaining': str(self.remaining),
            'X-RateLimit-Reset': reset
        }


class RateLimitStore(ABC):
    """
    Storage for per-key request timestamps (epoch milliseconds)

    ``record_hit`` must be atomic with respect to concurrent callers: two
    requests may never both observe ``count < max_requests`` when only one
    slot is left.
    """

    @abstractmethod
    def get(self, key: str) -> List[float]:
        """Return the stored timestamps for ``key`` (oldest first)"""

    @abstractmethod
    def set(self, key: str, timestamps: List[float], ttl_ms: int) -> None:
        """Replace the timestamps for ``key``; empty list evicts the key"""

    @abstractmethod
    def delete(self, key: str) -> None:
        """Forget ``key``"""

    @abstractmethod
    def record_hit(self, key: str, now: float, window_ms: int,
                   max_requests: int) -> Tuple[bool, int]:
        """
        Prune timestamps outside the window and record ``now`` if allowed

        Returns:
            Tuple of (allowed, count of in-window timestamps before this hit)
        """


class InMemoryRateLimitStore(RateLimitStore):
    """
    Process-local store guarded by a lock

    Every worker process gets its own independent quota with this store.
    Use RedisRateLimitStore when the application runs as more than one process.
    """

    def __init__(self):
        self._records: Dict[str, List[float]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> List[float]:
        with self._lock:
            return list(self._records.get(key, ()))

    def set(self, key: str, timestamps: List[float], ttl_ms: int = 0) -> None:
        with self._lock:
            if timestamps:
                self._records[key] = sorted(timestamps)
            else:
                self._records.pop(key, None)

    def delete(self, key: str) -> None:
        with self._lock:
            self._records.pop(key, None)

    def record_hit(self, key: str, now: float, window_ms: int,
                   max_requests: int) -> Tuple[bool, int]:
        window_start = now - window_ms

        with self._lock:
            records = [ts for ts in self._records.get(key, ()) if ts > window_start]
            count = len(records)

            if count >= max_requests:
                if records:
                    self._records[key] = records
                else:
                    self._records.pop(key, None)
                return False, count

            records.append(now)
            self._records[key] = records
            return True, count

    def sweep(self, now: float, window_ms: int) -> int:
        """
        Drop expired timestamps for every key and evict empty keys

        Returns:
            Number of evicted keys
        """
        window_start = now - window_ms
        evicted = 0

        with self._lock:
            for key in list(self._records):
                records = [ts for ts in self._records[key] if ts > window_start]
                if records:
                    self._records[key] = records
                else:
                    del self._records[key]
                    evicted += 1

        return evicted

    def __len__(self) -> int:
        return len(self._records)


# Runs inside Redis so prune, count and record happen as one step.
# KEYS[1]: sorted set of timestamps for the client key
# ARGV[1]: now (epoch ms), ARGV[2]: window_ms, ARGV[3]: max_requests,
# ARGV[4]: unique member for this hit
# Returns: {allowed (0/1), count before this hit}
SLIDING_WINDOW_LUA = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local max_requests = tonumber(ARGV[3])

redis.call('ZREMRANGEBYSCORE', key, '-inf', now - window)
local count = redis.call('ZCARD', key)

if count >= max_requests then
    return {0, count}
end

redis.call('ZADD', key, now, ARGV[4])
redis.call('PEXPIRE', key, math.ceil(window))
return {1, count}
"""


class RedisRateLimitStore(RateLimitStore):
    """
    Shared store backed by Redis sorted sets

    Each key expires ``window_ms`` after its last recorded hit, which evicts
    idle clients without a separate sweep.
    """

    def __init__(self, redis_client: redis.Redis, key_prefix: str = 'rate_limit'):
        self.redis = redis_client
        self.key_prefix = key_prefix
        self._script = redis_client.register_script(SLIDING_WINDOW_LUA)

    def _key(self, key: str) -> str:
        return f"{self.key_prefix}:{key}"

    @staticmethod
    def _member(timestamp: float) -> str:
        return f"{timestamp!r}-{uuid.uuid4().hex}"

    def get(self, key: str) -> List[float]:
        entries = self.redis.zrange(self._key(key), 0, -1, withscores=True)
        return [float(score) for _, score in entries]

    def set(self, key: str, timestamps: List[float], ttl_ms: int) -> None:
        redis_key = self._key(key)
        pipe = self.redis.pipeline()
        pipe.delete(redis_key)
        if timestamps:
            pipe.zadd(redis_key, {self._member(ts): ts for ts in timestamps})
            pipe.pexpire(redis_key, int(ttl_ms))
        pipe.execute()

    def delete(self, key: str) -> None:
        self.redis.delete(self._key(key))

    def record_hit(self, key: str, now: float, window_ms: int,
                   max_requests: int) -> Tuple[bool, int]:
        allowed, count = self._script(
            keys=[self._key(key)],
            args=[repr(now), window_ms, max_requests, self._member(now)]
        )
        return bool(int(allowed)), int(count)


def _wall_clock_ms() -> float:
    return time.time() * 1000


class RateLimiter:
    """
    Sliding-window limiter over a RateLimitStore

    Rejected attempts are not recorded, so a client hammering a closed
    window does not push its own recovery further out.
    """

    def __init__(self, store: Optional[RateLimitStore] = None,
                 presets: Optional[Dict[str, RateLimitPolicy]] = None,
                 clock: Optional[Callable[[], float]] = None,
                 sweep_interval_ms: int = 60 * 1000):
        """
        Args:
            store: Timestamp storage (in-memory when omitted)
            presets: Endpoint class -> policy table
            clock: Returns the current time in epoch milliseconds
            sweep_interval_ms: Minimum gap between global sweeps of an in-memory store
        """
        self.store = store or InMemoryRateLimitStore()
        self.presets = dict(presets or DEFAULT_PRESETS)
        self.clock = clock or _wall_clock_ms
        self.sweep_interval_ms = sweep_interval_ms
        self._last_sweep = None
        self._max_window_ms = 0
        self._sweep_lock = threading.Lock()

    def check(self, key: str, window_ms: int, max_requests: int) -> RateLimitResult:
        """
        Check and, when allowed, record one request for ``key``

        Args:
            key: Client identity (usually "<class>:<ip>")
            window_ms: Sliding window length in milliseconds
            max_requests: Requests admitted per window

        Returns:
            RateLimitResult with allowed flag, remaining budget and reset time
        """
        now = self.clock()

        try:
            allowed, count = self.store.record_hit(key, now, window_ms, max_requests)
        except redis.RedisError as e:
            # Fail open: a broken cache must not take the site down
            logger.error(f"Rate limit check failed for {key}: {str(e)}")
            return self._result(True, max(0, max_requests - 1), now, window_ms, max_requests)

        self._maybe_sweep(now, window_ms)

        if not allowed:
            logger.debug(f"Rate limit reached for {key} ({count}/{max_requests})")
            return self._result(False, 0, now, window_ms, max_requests)

        return self._result(True, max_requests - count - 1, now, window_ms, max_requests)

    def check_preset(self, limit_class: str, key: str) -> RateLimitResult:
        """Check ``key`` against a named preset such as 'auth' or 'contact'"""
        policy = self.presets[limit_class]
        return self.check(f"{limit_class}:{key}", policy.window_ms, policy.max_requests)

    def policy(self, limit_class: str) -> RateLimitPolicy:
        return self.presets[limit_class]

    def _result(self, allowed: bool, remaining: int, now: float,
                window_ms: int, max_requests: int) -> RateLimitResult:
        reset_at = datetime.fromtimestamp((now + window_ms) / 1000, tz=timezone.utc)
        return RateLimitResult(
            allowed=allowed,
            remaining=remaining,
            reset_at=reset_at,
            limit=max_requests,
            retry_after=max(1, math.ceil(window_ms / 1000))
        )

    def _maybe_sweep(self, now: float, window_ms: int) -> None:
        if not isinstance(self.store, InMemoryRateLimitStore):
            return

        # Only one thread claims each sweep interval
        with self._sweep_lock:
            self._max_window_ms = max(self._max_window_ms, window_ms)
            if self._last_sweep is None:
                self._last_sweep = now
                return
            if now - self._last_sweep < self.sweep_interval_ms:
                return
            self._last_sweep = now
            max_window_ms = self._max_window_ms

        evicted = self.store.sweep(now, max_window_ms)
        if evicted:
            logger.debug(f"Rate limit sweep evicted {evicted} idle keys")
