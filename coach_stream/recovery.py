import asyncio
import logging
from dataclasses import replace
from typing import Awaitable, Callable, Optional, Sequence, TypeVar

from .config import DEFAULT_STRATEGIES
from .errors import (
    AuthenticationError,
    ConnectionEstablishmentError,
    ServerError,
)
from .logs import get_logger, log_event
from .metrics import RECOVERY_RETRIES_TOTAL
from .models import RecoveryState

logger = get_logger("coach_stream.recovery")

T = TypeVar("T")

EXHAUSTED = "exhausted"


def categorize_error(error_text: str) -> str:
    text = (error_text or "").lower()
    if "timeout" in text or "timed out" in text:
        return "timeout"
    if "401" in text or "403" in text or "auth" in text:
        return "auth"
    if "429" in text or "rate limit" in text or "rate-limit" in text:
        return "rate_limit"
    if "abort" in text or "cancel" in text:
        return "aborted"
    if "network" in text or "fetch" in text or "connect" in text:
        return "network"
    if "500" in text or "502" in text or "503" in text or "server error" in text:
        return "server_error"
    return "unknown"


_ADVICE = {
    "timeout": "The coach is taking too long to respond. Please try again.",
    "rate_limit": "Too many requests right now. Please wait a moment and try again.",
    "network": "Network problem. Please check your connection and try again.",
    "auth": "Your session has expired. Please sign in again.",
    "aborted": "The connection was interrupted. Please try again.",
    "server_error": "Server error. Please try again in a few seconds.",
}
DEFAULT_ADVICE = "Something went wrong. Please try again."


def advise_message(error_text: str) -> str:
    """Map raw error text to guidance a user can act on."""
    return _ADVICE.get(categorize_error(error_text), DEFAULT_ADVICE)


def is_retryable(exc: BaseException) -> bool:
    # Rate limits and 5xx are transient; other 4xx will fail the same way again
    if isinstance(exc, AuthenticationError):
        return False
    if isinstance(exc, ServerError):
        return exc.status_code == 429 or exc.status_code >= 500
    return isinstance(exc, ConnectionEstablishmentError)


class RecoveryPolicy:
    """Bounded retry of a fallible async operation with linear backoff.

    The first attempt runs immediately; retry N waits ``retry_delay * N``.
    Every retry records the next strategy name, clamped to the last one.
    """

    def __init__(
        self,
        max_retries: int = 3,
        retry_delay: float = 1.0,
        strategies: Optional[Sequence[str]] = None,
        should_retry: Callable[[BaseException], bool] = is_retryable,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.max_retries = max(0, int(max_retries))
        self.retry_delay = max(0.0, float(retry_delay))
        self.strategies = tuple(strategies or DEFAULT_STRATEGIES)
        self._should_retry = should_retry
        self._sleep = sleep
        self._state = RecoveryState()

    @property
    def state(self) -> RecoveryState:
        return replace(self._state, attempted_strategies=list(self._state.attempted_strategies))

    @property
    def is_recovering(self) -> bool:
        return self._state.is_recovering

    @property
    def can_retry(self) -> bool:
        return self._state.attempt_count < self.max_retries

    def reset(self) -> None:
        self._state = RecoveryState()

    def _strategy_for(self, retry_number: int) -> str:
        idx = min(retry_number - 1, len(self.strategies) - 1)
        return self.strategies[idx]

    async def execute(self, operation: Callable[[], Awaitable[T]], context_label: str = "operation") -> T:
        self.reset()
        retry_number = 0
        while True:
            try:
                result = await operation()
            except asyncio.CancelledError:
                self._state.is_recovering = False
                raise
            except Exception as exc:
                self._state.last_error_message = str(exc)
                if not self._should_retry(exc):
                    self._state.is_recovering = False
                    raise
                if retry_number >= self.max_retries:
                    self._state.is_recovering = False
                    self._state.current_strategy = EXHAUSTED
                    log_event(
                        logger,
                        logging.ERROR,
                        "recovery_exhausted",
                        context=context_label,
                        attempts=retry_number + 1,
                        error=str(exc),
                    )
                    raise
                retry_number += 1
                strategy = self._strategy_for(retry_number)
                self._state.is_recovering = True
                self._state.attempt_count = retry_number
                self._state.current_strategy = strategy
                self._state.attempted_strategies.append(strategy)
                delay = self.retry_delay * retry_number
                log_event(
                    logger,
                    logging.WARNING,
                    "recovery_retry",
                    context=context_label,
                    attempt=retry_number,
                    maxRetries=self.max_retries,
                    strategy=strategy,
                    delaySeconds=delay,
                    error=str(exc),
                )
                try:
                    RECOVERY_RETRIES_TOTAL.labels(strategy=strategy).inc()
                except Exception:
                    pass
                try:
                    await self._sleep(delay)
                except asyncio.CancelledError:
                    self._state.is_recovering = False
                    raise
                continue
            if retry_number:
                log_event(logger, logging.INFO, "recovery_succeeded", context=context_label, attempts=retry_number + 1)
            self.reset()
            return result

    def advise_message(self, error_text: str) -> str:
        return advise_message(error_text)
