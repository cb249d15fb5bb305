import logging
import time
from dataclasses import replace
from typing import Callable, Optional

from .logs import get_logger, log_event
from .models import PerformanceMetrics

logger = get_logger("coach_stream.performance")

SLOW_FIRST_TOKEN_MS = 3000
SLOW_TOKENS_PER_SECOND = 10


class PerformanceTracker:
    """Phase timestamps and derived metrics for one logical turn.

    Pure bookkeeping: no method raises. Progress is a display heuristic and
    saturates at 90 until the turn completes.
    """

    def __init__(self, clock: Optional[Callable[[], float]] = None):
        self._clock = clock or time.perf_counter
        self._metrics = PerformanceMetrics()
        self._started_at: Optional[float] = None
        self._first_token_seen = False

    @property
    def metrics(self) -> PerformanceMetrics:
        return replace(self._metrics)

    def _elapsed_ms(self) -> float:
        if self._started_at is None:
            return 0.0
        return max(0.0, (self._clock() - self._started_at) * 1000.0)

    def start(self) -> None:
        m = self._metrics
        self._started_at = self._clock()
        self._first_token_seen = False
        m.first_token_time = None
        m.total_duration = None
        m.tokens_per_second = 0.0
        m.context_load_time = None
        m.token_count = 0
        m.stage = "connecting"
        m.progress = 0.0

    def mark_context_loaded(self) -> None:
        self._metrics.context_load_time = self._elapsed_ms()
        self._metrics.stage = "context-loaded"
        self._metrics.progress = max(self._metrics.progress, 25.0)

    def mark_first_token(self) -> None:
        if self._first_token_seen:
            return
        self._first_token_seen = True
        self._metrics.first_token_time = self._elapsed_ms()
        self._metrics.stage = "streaming"
        self._metrics.progress = max(self._metrics.progress, 50.0)

    def mark_progress(self, tokens_so_far: int) -> None:
        try:
            tokens = max(0, int(tokens_so_far))
        except (TypeError, ValueError):
            return
        m = self._metrics
        m.token_count = max(m.token_count, tokens)
        estimate = min(90.0, 50.0 + tokens / 100.0 * 40.0)
        m.progress = max(m.progress, estimate)

    def mark_complete(self, token_count: Optional[int] = None) -> None:
        m = self._metrics
        if token_count is not None:
            m.token_count = max(0, int(token_count))
        m.total_duration = self._elapsed_ms()
        seconds = m.total_duration / 1000.0
        m.tokens_per_second = (m.token_count / seconds) if seconds > 0 else 0.0
        m.stage = "complete"
        m.progress = 100.0

        slow_start = m.first_token_time is not None and m.first_token_time > SLOW_FIRST_TOKEN_MS
        slow_rate = m.tokens_per_second < SLOW_TOKENS_PER_SECOND
        if slow_start or slow_rate:
            log_event(
                logger,
                logging.WARNING,
                "stream_performance_degraded",
                firstTokenMs=m.first_token_time,
                tokensPerSecond=round(m.tokens_per_second, 2),
                totalMs=m.total_duration,
                grade=m.grade(),
            )

    def mark_error(self, message: str) -> None:
        self._metrics.streaming_error_count += 1
        self._metrics.stage = "error"
        self._metrics.last_error = message

    def grade(self) -> str:
        return self._metrics.grade()

    @property
    def is_healthy(self) -> bool:
        return self._metrics.is_healthy

    def reset(self) -> None:
        self._metrics = PerformanceMetrics()
        self._started_at = None
        self._first_token_seen = False
