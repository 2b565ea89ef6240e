# core/rate_limiter.py
"""
Sliding-window attempt limiter

This limiter is ADVISORY. Its state lives wherever the caller keeps it (a
browser-like key/value store, or Redis keyed by client), and a client that
controls its own store can wipe it and try again. Authoritative limiting of
the public endpoints is done by Flask-Limiter in app.py; use this class to
give early feedback on repeated actions (login, MFA codes, contact form).
"""

import json
import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

import redis

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitRule:
    """Per-key configuration"""
    max_attempts: int
    window_ms: int


class MemoryTimestampStore:
    """Timestamp lists held in a plain dict"""

    def __init__(self):
        self._data: Dict[str, List[float]] = {}

    def load(self, key: str) -> List[float]:
        return list(self._data.get(key, []))

    def save(self, key: str, timestamps: List[float]) -> None:
        self._data[key] = list(timestamps)

    def delete(self, key: str) -> None:
        self._data.pop(key, None)


class RedisTimestampStore:
    """
    Timestamp lists serialized as JSON in Redis

    Keys expire after the longest window so abandoned entries do not pile up.
    """

    def __init__(self, redis_client: redis.Redis, prefix: str = 'rate_limit', ttl_seconds: int = 3600):
        self.redis_client = redis_client
        self.prefix = prefix
        self.ttl_seconds = ttl_seconds

    def _key(self, key: str) -> str:
        return f"{self.prefix}:{key}"

    def load(self, key: str) -> List[float]:
        raw = self.redis_client.get(self._key(key))
        if not raw:
            return []
        try:
            return [float(value) for value in json.loads(raw)]
        except (TypeError, ValueError):
            logger.warning(f"Discarding unreadable rate limit state for {key}")
            return []

    def save(self, key: str, timestamps: List[float]) -> None:
        self.redis_client.setex(self._key(key), self.ttl_seconds, json.dumps(timestamps))

    def delete(self, key: str) -> None:
        self.redis_client.delete(self._key(key))


class RateLimiter:
    """
    Cap attempts for named actions within a sliding window

    Args:
        rules: Mapping of action key to RateLimitRule
        store: Timestamp store (memory or Redis)
        clock: Returns the current time in milliseconds
        default_rule: Rule for keys without an explicit entry
    """

    def __init__(self, rules: Optional[Dict[str, RateLimitRule]] = None, store=None,
                 clock: Optional[Callable[[], float]] = None,
                 default_rule: RateLimitRule = RateLimitRule(max_attempts=5, window_ms=60000)):
        self.rules = dict(rules or {})
        self.store = store or MemoryTimestampStore()
        self.clock = clock or (lambda: time.time() * 1000)
        self.default_rule = default_rule

    def rule_for(self, key: str) -> RateLimitRule:
        # Keys may be namespaced per client: "login:203.0.113.9"
        action = key.split(':', 1)[0]
        return self.rules.get(key) or self.rules.get(action) or self.default_rule

    def _in_window(self, key: str, now: float) -> Tuple[RateLimitRule, List[float]]:
        rule = self.rule_for(key)
        timestamps = [ts for ts in self.store.load(key) if now - ts < rule.window_ms]
        return rule, sorted(timestamps)

    def check(self, key: str) -> bool:
        """
        Record an attempt if the window allows it

        Returns:
            True when the attempt is accepted, False when the cap is reached
        """
        now = self.clock()
        rule, timestamps = self._in_window(key, now)

        if len(timestamps) >= rule.max_attempts:
            self.store.save(key, timestamps)
            logger.info(f"Rate limit reached for {key} ({rule.max_attempts} per {rule.window_ms}ms)")
            return False

        timestamps.append(now)
        self.store.save(key, timestamps)
        return True

    def get_remaining_time(self, key: str) -> float:
        """Milliseconds until the oldest in-window attempt expires, never negative"""
        now = self.clock()
        rule, timestamps = self._in_window(key, now)
        if not timestamps:
            return 0
        return max(0, timestamps[0] + rule.window_ms - now)

    def get_remaining_attempts(self, key: str) -> int:
        now = self.clock()
        rule, timestamps = self._in_window(key, now)
        return max(0, rule.max_attempts - len(timestamps))

    def reset(self, key: str) -> None:
        self.store.delete(key)


def rules_from_config(config_limits: Dict[str, Tuple[int, int]]) -> Dict[str, RateLimitRule]:
    """Turn {'login': (5, 60)} (seconds) into RateLimitRule entries"""
    return {
        name: RateLimitRule(max_attempts=max_attempts, window_ms=window_seconds * 1000)
        for name, (max_attempts, window_seconds) in config_limits.items()
    }
