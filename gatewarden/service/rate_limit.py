"""Per-client token buckets kept in process memory.

State is never persisted: a restart, or an idle sweep, hands the client a
fresh full bucket.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from gatewarden.logging import get_logger

logger = get_logger(__name__)

DEFAULT_SWEEP_SECONDS = 300
# Absorbs float error in elapsed * rate so a wait of exactly 1/rate yields a token
REFILL_TOLERANCE = 1e-9


@dataclass(frozen=True)
class RateConfig:
    rate: float
    burst: int

    def __post_init__(self) -> None:
        if self.rate <= 0:
            raise ValueError("rate must be positive")
        if self.burst < 1:
            raise ValueError("burst must be at least 1")


class TokenBucket:
    """Continuously refilling bucket; not thread-safe on its own."""

    __slots__ = ("capacity", "rate", "tokens", "updated_at", "last_seen")

    def __init__(self, config: RateConfig, now: float) -> None:
        self.capacity = float(config.burst)
        self.rate = float(config.rate)
        self.tokens = self.capacity
        self.updated_at = now
        self.last_seen = now

    def take(self, now: float, cost: float = 1.0) -> bool:
        elapsed = max(0.0, now - self.updated_at)
        self.tokens = min(self.capacity, self.tokens + elapsed * self.rate)
        self.updated_at = now
        self.last_seen = now
        if self.tokens + REFILL_TOLERANCE >= cost:
            self.tokens = max(0.0, self.tokens - cost)
            return True
        return False


class RateLimiter:
    def __init__(
        self,
        config: RateConfig,
        *,
        sweep_interval: float = DEFAULT_SWEEP_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config
        self.sweep_interval = sweep_interval
        self._clock = clock
        self._buckets: Dict[str, TokenBucket] = {}
        # Guards both registry lookup/creation and the debit
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def allow(self, key: str, config: Optional[RateConfig] = None) -> bool:
        with self._lock:
            now = self._clock()
            bucket = self._buckets.get(key)
            if bucket is None:
                bucket = TokenBucket(config or self.config, now)
                self._buckets[key] = bucket
            allowed = bucket.take(now)
        if not allowed:
            logger.warning("rate_limited", client=key)
        return allowed

    def sweep(self, now: Optional[float] = None) -> int:
        """Drop buckets idle for longer than the sweep interval."""

        with self._lock:
            current = self._clock() if now is None else now
            stale = [
                key
                for key, bucket in self._buckets.items()
                if current - bucket.last_seen > self.sweep_interval
            ]
            for key in stale:
                del self._buckets[key]
            remaining = len(self._buckets)
        if stale:
            logger.info("limiter_swept", removed=len(stale), remaining=remaining)
        return len(stale)

    def start(self) -> None:
        """Start the background sweeper thread."""
        if self._thread is not None and self._thread.is_alive():
            logger.warning("limiter_sweeper_already_running")
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run_loop, name="rate-limit-sweeper", daemon=True
        )
        self._thread.start()
        logger.info("limiter_sweeper_started", interval=self.sweep_interval)

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        """Stop the background sweeper thread."""
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("limiter_sweeper_stopped")

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _run_loop(self) -> None:
        while not self._stop_event.wait(self.sweep_interval):
            self.sweep()

    def __len__(self) -> int:
        with self._lock:
            return len(self._buckets)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._buckets
