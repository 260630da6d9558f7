"""Fixed-window request rate limiting.

A key gets ``max_requests`` requests per window. The window starts with the
first request and resets entirely once ``reset_at`` passes, so a caller can
burst up to twice the limit across a window boundary.

Two stores:

- InMemoryRateLimitStore: process-local, lost on cold start. Fine for a
  single container or tests.
- DynamoDBRateLimitStore: shared across Lambda containers. One conditional
  UpdateItem increments an open window atomically. Fails open: an
  infrastructure error allows the request.
"""

import logging
import math
import os
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass

from botocore.exceptions import BotoCoreError, ClientError

from rental_core.models.errors import RateLimitedError

from .dynamodb import DynamoDBService, get_dynamodb_service

logger = logging.getLogger(__name__)

RATE_LIMITS_TABLE = "rate-limits"

# In-memory store prunes expired keys once it holds more than this many
MAX_IN_MEMORY_KEYS = 10_000


@dataclass(frozen=True)
class RateLimitConfig:
    """Limit for one class of requests."""

    window_ms: int
    max_requests: int
    key_prefix: str = "rl"


@dataclass(frozen=True)
class RateLimitResult:
    """Outcome of one rate limit check.

    ``reset_at`` is epoch milliseconds.
    """

    allowed: bool
    remaining: int
    reset_at: int

    def retry_after_seconds(self, now_ms: int) -> int:
        return max(1, math.ceil((self.reset_at - now_ms) / 1000))


def now_millis() -> int:
    return int(time.time() * 1000)


class RateLimitStore(ABC):
    """Counts requests in the current window for a key."""

    @abstractmethod
    def increment(self, key: str, window_ms: int, now_ms: int) -> tuple[int, int]:
        """Count one request.

        Returns:
            Tuple of (count in current window, window reset_at in epoch ms).
        """


class InMemoryRateLimitStore(RateLimitStore):
    """Process-local counters."""

    def __init__(self, max_keys: int = MAX_IN_MEMORY_KEYS) -> None:
        self._records: dict[str, tuple[int, int]] = {}
        self._max_keys = max_keys
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._records)

    def increment(self, key: str, window_ms: int, now_ms: int) -> tuple[int, int]:
        with self._lock:
            if len(self._records) > self._max_keys:
                self._prune(now_ms)

            record = self._records.get(key)
            if record is None or now_ms >= record[1]:
                record = (1, now_ms + window_ms)
            else:
                record = (record[0] + 1, record[1])
            self._records[key] = record
            return record

    def _prune(self, now_ms: int) -> None:
        expired = [key for key, (_, reset_at) in self._records.items() if now_ms >= reset_at]
        for key in expired:
            del self._records[key]
        logger.debug("Pruned %d expired rate limit keys", len(expired))


class DynamoDBRateLimitStore(RateLimitStore):
    """Counters in the rate-limits table with a TTL on ``expires_at``."""

    def __init__(self, db: DynamoDBService | None = None) -> None:
        self._db = db or get_dynamodb_service()

    def increment(self, key: str, window_ms: int, now_ms: int) -> tuple[int, int]:
        try:
            for _ in range(2):
                counted = self._increment_open_window(key, now_ms)
                if counted is not None:
                    return counted
                started = self._start_window(key, window_ms, now_ms)
                if started is not None:
                    return started
                # Another container opened the window first; count against it
        except (ClientError, BotoCoreError) as e:
            logger.warning("Rate limit store unavailable for %s, allowing request: %s", key, e)
            return 0, now_ms + window_ms

        logger.warning("Rate limit contention for %s, allowing request", key)
        return 0, now_ms + window_ms

    def _increment_open_window(self, key: str, now_ms: int) -> tuple[int, int] | None:
        attrs = self._db.update_item(
            RATE_LIMITS_TABLE,
            {"rate_key": key},
            "ADD request_count :one",
            expression_attribute_values={":one": 1, ":now": now_ms},
            condition_expression="attribute_exists(rate_key) AND reset_at > :now",
        )
        if attrs is None:
            return None
        return int(attrs["request_count"]), int(attrs["reset_at"])

    def _start_window(self, key: str, window_ms: int, now_ms: int) -> tuple[int, int] | None:
        reset_at = now_ms + window_ms
        item = {
            "rate_key": key,
            "request_count": 1,
            "reset_at": reset_at,
            "expires_at": math.ceil(reset_at / 1000) + 60,
        }
        started = self._db.put_item(
            RATE_LIMITS_TABLE,
            item,
            condition_expression="attribute_not_exists(rate_key) OR reset_at <= :now",
            expression_attribute_values={":now": now_ms},
        )
        return (1, reset_at) if started else None


_default_store: RateLimitStore | None = None


def get_rate_limit_store() -> RateLimitStore:
    """Store selected by RATE_LIMIT_BACKEND (``dynamodb`` or ``memory``)."""
    global _default_store
    if _default_store is None:
        backend = os.environ.get("RATE_LIMIT_BACKEND", "dynamodb").lower()
        if backend == "memory":
            _default_store = InMemoryRateLimitStore()
        else:
            _default_store = DynamoDBRateLimitStore()
    return _default_store


def reset_rate_limit_store() -> None:
    """Drop the cached store (for testing only)."""
    global _default_store
    _default_store = None


def check_rate_limit(
    key: str,
    config: RateLimitConfig,
    store: RateLimitStore | None = None,
    now_ms: int | None = None,
) -> RateLimitResult:
    """Count a request for ``key`` and decide whether it is allowed.

    Args:
        key: Caller identity (user ID or client IP)
        config: Window and limit
        store: Counter store (defaults to the configured store)
        now_ms: Current time in epoch ms (defaults to the wall clock)

    Returns:
        RateLimitResult with allowed, remaining and reset_at.
    """
    now = now_ms if now_ms is not None else now_millis()
    if store is None:
        store = get_rate_limit_store()
    count, reset_at = store.increment(f"{config.key_prefix}:{key}", config.window_ms, now)
    return RateLimitResult(
        allowed=count <= config.max_requests,
        remaining=max(0, config.max_requests - count),
        reset_at=reset_at,
    )


def enforce_rate_limit(
    key: str,
    config: RateLimitConfig,
    store: RateLimitStore | None = None,
    now_ms: int | None = None,
) -> RateLimitResult:
    """Like check_rate_limit, but raises RateLimitedError when denied."""
    now = now_ms if now_ms is not None else now_millis()
    result = check_rate_limit(key, config, store=store, now_ms=now)
    if not result.allowed:
        logger.warning("Rate limit exceeded for %s:%s", config.key_prefix, key)
        raise RateLimitedError(
            retry_after_seconds=result.retry_after_seconds(now),
            reset_at=result.reset_at,
        )
    return result


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name)
    return int(value) if value else default


def payment_intent_limit() -> RateLimitConfig:
    return RateLimitConfig(
        window_ms=60_000,
        max_requests=_env_int("RATE_LIMIT_PAYMENT_INTENTS_PER_MIN", 10),
        key_prefix="payment-intent",
    )


def deposit_hold_limit() -> RateLimitConfig:
    return RateLimitConfig(
        window_ms=60_000,
        max_requests=_env_int("RATE_LIMIT_DEPOSIT_HOLDS_PER_MIN", 5),
        key_prefix="deposit-hold",
    )
