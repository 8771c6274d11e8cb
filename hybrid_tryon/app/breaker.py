from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

from . import config

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BreakerSnapshot:
    consecutive_failures: int
    last_attempt_at: Optional[float]
    open: bool


class CircuitBreaker:
    """Stops calling the remote compositor after repeated failures.

    State is read and written from the event loop only, so each method is
    atomic. Two requests that both read the breaker, suspend on the remote
    call and then record outcomes may interleave; the resulting counts are
    approximate, which is acceptable for this guard.
    """

    def __init__(
        self,
        *,
        threshold: int = config.BREAKER_FAILURE_THRESHOLD,
        cooldown_seconds: float = config.BREAKER_COOLDOWN_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.threshold = threshold
        self.cooldown_seconds = cooldown_seconds
        self._clock = clock
        self.consecutive_failures = 0
        self.last_attempt_at: Optional[float] = None

    def now(self) -> float:
        return self._clock()

    def should_skip(self, now: Optional[float] = None) -> bool:
        if self.consecutive_failures < self.threshold or self.last_attempt_at is None:
            return False
        now = self.now() if now is None else now
        return (now - self.last_attempt_at) < self.cooldown_seconds

    def record_failure(self, now: Optional[float] = None) -> None:
        self.last_attempt_at = self.now() if now is None else now
        self.consecutive_failures += 1
        logger.warning(
            "Remote compositor failure recorded (consecutive=%s, threshold=%s)",
            self.consecutive_failures,
            self.threshold,
        )

    def record_success(self) -> None:
        if self.consecutive_failures:
            logger.info("Remote compositor recovered after %s failures", self.consecutive_failures)
        self.consecutive_failures = 0

    def snapshot(self) -> BreakerSnapshot:
        return BreakerSnapshot(
            consecutive_failures=self.consecutive_failures,
            last_attempt_at=self.last_attempt_at,
            open=self.should_skip(),
        )
