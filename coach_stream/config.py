import os
from dataclasses import dataclass, field, replace
from typing import Optional, Tuple

# Load environment variables from .env if available, but avoid during pytest to keep tests deterministic
from dotenv import load_dotenv

if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv()


DEFAULT_STRATEGIES: Tuple[str, ...] = ("retry", "fallback-endpoint", "offline-mode")


def _env_str(name: str, default: str = "") -> str:
    return os.getenv(name, default).strip()


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)))
    except Exception:
        return default


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except Exception:
        return default


def _env_bool(name: str, default: bool) -> bool:
    try:
        v = os.getenv(name, "1" if default else "0").strip().lower()
        return v in ("1", "true", "yes", "on")
    except Exception:
        return default


def _env_list(name: str, default: Tuple[str, ...]) -> Tuple[str, ...]:
    raw = _env_str(name)
    if not raw:
        return default
    items = tuple(p.strip() for p in raw.split(",") if p.strip())
    return items or default


@dataclass(frozen=True)
class StreamConfig:
    """Settings for one client instance.

    All durations are seconds. Phase budgets map to the session phases:
    connect_timeout -> connecting, context_timeout -> loading-context,
    streaming_timeout -> streaming.
    """

    endpoint_url: str = "http://localhost:54321/functions/v1/coach-stream"
    bearer_token: Optional[str] = None
    api_key: Optional[str] = None
    streaming: bool = True
    transport: str = "http"
    user_agent: str = "coach-stream/0.1.0"

    connect_timeout: float = 10.0
    # httpx connect timeout for one open attempt, capped at connect_timeout
    connect_attempt_timeout: float = 3.0
    context_timeout: float = 30.0
    streaming_timeout: float = 45.0
    fallback_timeout: float = 60.0
    settle_delay: float = 0.2

    # Transparent resubmission of abort-class failures
    max_auto_retries: int = 3
    auto_retry_base_delay: float = 1.0
    auto_retry_max_delay: float = 5.0
    auto_retry_user_stop: bool = False

    # Connection-level recovery
    recovery_max_retries: int = 3
    recovery_retry_delay: float = 1.0
    recovery_strategies: Tuple[str, ...] = field(default=DEFAULT_STRATEGIES)

    def phase_timeout(self, phase: str) -> float:
        return {
            "connecting": self.connect_timeout,
            "loading-context": self.context_timeout,
            "streaming": self.streaming_timeout,
        }.get(phase, self.fallback_timeout)

    def with_overrides(self, **changes) -> "StreamConfig":
        return replace(self, **changes)

    @classmethod
    def from_env(cls) -> "StreamConfig":
        """Build a config from COACH_STREAM_* environment variables.

        Unset or unparsable values fall back to the dataclass defaults.
        """
        d = cls()
        return cls(
            endpoint_url=_env_str("COACH_STREAM_ENDPOINT_URL", d.endpoint_url) or d.endpoint_url,
            bearer_token=_env_str("COACH_STREAM_BEARER_TOKEN") or None,
            api_key=_env_str("COACH_STREAM_API_KEY") or None,
            streaming=_env_bool("COACH_STREAM_STREAMING", d.streaming),
            transport=(_env_str("COACH_STREAM_TRANSPORT", d.transport) or d.transport).lower(),
            user_agent=_env_str("COACH_STREAM_USER_AGENT", d.user_agent) or d.user_agent,
            connect_timeout=_env_float("COACH_STREAM_CONNECT_TIMEOUT_SECONDS", d.connect_timeout),
            connect_attempt_timeout=_env_float("COACH_STREAM_CONNECT_ATTEMPT_TIMEOUT_SECONDS", d.connect_attempt_timeout),
            context_timeout=_env_float("COACH_STREAM_CONTEXT_TIMEOUT_SECONDS", d.context_timeout),
            streaming_timeout=_env_float("COACH_STREAM_STREAMING_TIMEOUT_SECONDS", d.streaming_timeout),
            fallback_timeout=_env_float("COACH_STREAM_FALLBACK_TIMEOUT_SECONDS", d.fallback_timeout),
            settle_delay=_env_float("COACH_STREAM_SETTLE_DELAY_SECONDS", d.settle_delay),
            max_auto_retries=_env_int("COACH_STREAM_MAX_AUTO_RETRIES", d.max_auto_retries),
            auto_retry_base_delay=_env_float("COACH_STREAM_AUTO_RETRY_BASE_SECONDS", d.auto_retry_base_delay),
            auto_retry_max_delay=_env_float("COACH_STREAM_AUTO_RETRY_MAX_SECONDS", d.auto_retry_max_delay),
            auto_retry_user_stop=_env_bool("COACH_STREAM_AUTO_RETRY_USER_STOP", d.auto_retry_user_stop),
            recovery_max_retries=_env_int("COACH_STREAM_RECOVERY_MAX_RETRIES", d.recovery_max_retries),
            recovery_retry_delay=_env_float("COACH_STREAM_RECOVERY_RETRY_DELAY_SECONDS", d.recovery_retry_delay),
            recovery_strategies=_env_list("COACH_STREAM_RECOVERY_STRATEGIES", d.recovery_strategies),
        )
