from __future__ import annotations

import math
import threading
import uuid
from collections import deque
from dataclasses import asdict, dataclass
from typing import Callable, Deque, Dict, Mapping, Optional, Tuple

import redis
import structlog

from ..core.errors import StoreUnavailable
from ..core.utils import now_ms
from ..settings import RateLimitRule

log = structlog.get_logger(__name__)

DEFAULT_RULE = RateLimitRule(limit=10, window_ms=60_000)
ACTIONS = ("execute", "priority", "batch")


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    limit: int
    current: int
    reset_time: int
    retry_after: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


class RateLimitStore:
    """Sliding-window storage. ``hit`` must be atomic per key.

    Both methods return (count, oldest_timestamp_ms or None) after purging
    entries older than ``now - window``; ``hit`` records ``now`` only when
    the count is below ``limit``.
    """

    def hit(self, key: str, now: int, window_ms: int, limit: int) -> Tuple[bool, int, Optional[int]]:
        raise NotImplementedError

    def peek(self, key: str, now: int, window_ms: int) -> Tuple[int, Optional[int]]:
        raise NotImplementedError

    def reset(self, key: str) -> None:
        raise NotImplementedError


class InMemoryRateLimitStore(RateLimitStore):
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._windows: Dict[str, Deque[int]] = {}

    def _purge(self, key: str, now: int, window_ms: int) -> Deque[int]:
        q = self._windows.get(key)
        if q is None:
            return deque()
        while q and q[0] <= now - window_ms:
            q.popleft()
        if not q:
            del self._windows[key]
        return q

    def __len__(self) -> int:
        with self._lock:
            return len(self._windows)

    def hit(self, key, now, window_ms, limit):
        with self._lock:
            q = self._purge(key, now, window_ms)
            if len(q) >= limit:
                return False, len(q), q[0] if q else None
            q.append(now)
            self._windows[key] = q
            return True, len(q), q[0]

    def peek(self, key, now, window_ms):
        with self._lock:
            q = self._purge(key, now, window_ms)
            return len(q), (q[0] if q else None)

    def reset(self, key):
        with self._lock:
            self._windows.pop(key, None)


# purge, count, conditionally add; one round trip, atomic on the server
_HIT_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])
redis.call('ZREMRANGEBYSCORE', key, 0, now - window)
local current = redis.call('ZCARD', key)
local allowed = 0
if current < limit then
  redis.call('ZADD', key, now, ARGV[4])
  redis.call('PEXPIRE', key, window)
  current = current + 1
  allowed = 1
end
local oldest = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
local oldest_score = -1
if oldest[2] then oldest_score = tonumber(oldest[2]) end
return {allowed, current, oldest_score}
"""


class RedisRateLimitStore(RateLimitStore):
    def __init__(self, url: str, socket_timeout: float = 1.0, client: Optional[redis.Redis] = None):
        self.r = client or redis.from_url(
            url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._hit = self.r.register_script(_HIT_SCRIPT)

    def hit(self, key, now, window_ms, limit):
        try:
            allowed, current, oldest = self._hit(
                keys=[key], args=[now, window_ms, limit, f"{now}-{uuid.uuid4().hex[:8]}"]
            )
        except redis.RedisError as e:
            raise StoreUnavailable(str(e)) from e
        oldest = int(oldest)
        return bool(allowed), int(current), (oldest if oldest >= 0 else None)

    def peek(self, key, now, window_ms):
        try:
            pipe = self.r.pipeline()
            pipe.zremrangebyscore(key, 0, now - window_ms)
            pipe.zcard(key)
            pipe.zrange(key, 0, 0, withscores=True)
            _, current, oldest = pipe.execute()
        except redis.RedisError as e:
            raise StoreUnavailable(str(e)) from e
        return int(current), (int(oldest[0][1]) if oldest else None)

    def reset(self, key):
        try:
            self.r.delete(key)
        except redis.RedisError as e:
            raise StoreUnavailable(str(e)) from e


class RateLimiter:
    """Per-(user, action) sliding-window admission gate.

    When the store cannot be reached the limiter fails open: judging stays
    available, fairness is what gives.
    """

    def __init__(
        self,
        store: RateLimitStore,
        rules: Mapping[str, RateLimitRule],
        clock: Callable[[], int] = now_ms,
    ):
        self.store = store
        self.rules = dict(rules)
        self.clock = clock

    @staticmethod
    def key(user_id: str, action: str) -> str:
        return f"rate_limit:{action}:{user_id}"

    def rule(self, action: str) -> RateLimitRule:
        return self.rules.get(action, DEFAULT_RULE)

    def admit(self, user_id: str, action: str = "execute") -> RateLimitDecision:
        rule = self.rule(action)
        now = self.clock()
        try:
            allowed, current, oldest = self.store.hit(
                self.key(user_id, action), now, rule.window_ms, rule.limit
            )
        except StoreUnavailable as e:
            log.warning("rate_limit_store_unavailable", user_id=user_id, action=action, error=str(e))
            return RateLimitDecision(
                allowed=True, limit=rule.limit, current=0, reset_time=now + rule.window_ms
            )

        if not allowed:
            reset_time = (oldest + rule.window_ms) if oldest is not None else now + rule.window_ms
            log.info("rate_limited", user_id=user_id, action=action, current=current)
            return RateLimitDecision(
                allowed=False,
                limit=rule.limit,
                current=current,
                reset_time=reset_time,
                retry_after=max(0, math.ceil((reset_time - now) / 1000)),
            )
        return RateLimitDecision(
            allowed=True, limit=rule.limit, current=current, reset_time=now + rule.window_ms
        )

    def user_stats(self, user_id: str) -> Dict[str, dict]:
        stats = {}
        now = self.clock()
        for action in sorted(set(ACTIONS) | set(self.rules)):
            rule = self.rule(action)
            current, oldest = self.store.peek(self.key(user_id, action), now, rule.window_ms)
            stats[action] = {
                "current": current,
                "limit": rule.limit,
                "remaining": max(0, rule.limit - current),
                "reset_time": (oldest + rule.window_ms) if oldest is not None else now + rule.window_ms,
            }
        return stats

    def reset_user(self, user_id: str) -> None:
        for action in sorted(set(ACTIONS) | set(self.rules)):
            self.store.reset(self.key(user_id, action))
        log.info("rate_limit_reset", user_id=user_id)
