import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional, Union

from .config import StreamConfig
from .errors import CoachStreamError, StreamAbortedError, StreamTimeoutError, is_abort_class
from .logs import get_logger, log_event
from .metrics import AUTO_RETRIES_TOTAL, ERRORS_TOTAL, TTFT_SECONDS, TURN_SECONDS, TURNS_TOTAL
from .models import (
    ConversationTurnRequest,
    PerformanceMetrics,
    PriorTurn,
    RecoveryState,
    StreamingMessage,
    StreamPhase,
)
from .performance import PerformanceTracker
from .recovery import RecoveryPolicy, categorize_error
from .session import StreamSession
from .state import StreamStateMachine
from .transports.base import ChatTransport
from .transports.factory import get_transport

logger = get_logger("coach_stream.client")

TokenProvider = Callable[[], Union[Optional[str], Awaitable[Optional[str]]]]


class CoachStreamClient:
    """Presentation-facing chat client for the coaching backend.

    Runs one turn at a time: starting a turn while another is in flight
    cancels the old one, waits for its resources to be released, and settles
    for ``config.settle_delay`` before opening a new transport. Abort-class
    failures are resubmitted transparently up to ``config.max_auto_retries``
    times per turn; everything else is surfaced through ``error`` and
    ``last_exception``.

    Usage:
        async with CoachStreamClient(StreamConfig.from_env()) as client:
            ok = await client.start_turn("user-1", "How do I pace a 10k?", "coach-lucy")
            print(client.message.content if ok else client.error)
    """

    def __init__(
        self,
        config: Optional[StreamConfig] = None,
        transport: Optional[ChatTransport] = None,
        token_provider: Optional[TokenProvider] = None,
        recovery: Optional[RecoveryPolicy] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Optional[Callable[[], float]] = None,
        on_stream_start: Optional[Callable[[], None]] = None,
        on_stream_end: Optional[Callable[[], None]] = None,
        on_error: Optional[Callable[[CoachStreamError, str], None]] = None,
    ):
        self.config = config or StreamConfig.from_env()
        self.transport = transport or get_transport(self.config)
        self.recovery = recovery or RecoveryPolicy(
            max_retries=self.config.recovery_max_retries,
            retry_delay=self.config.recovery_retry_delay,
            strategies=self.config.recovery_strategies,
            sleep=sleep,
        )
        self._token_provider = token_provider
        self._sleep = sleep
        self._clock = clock
        self._on_stream_start = on_stream_start
        self._on_stream_end = on_stream_end
        self._on_error = on_error

        self._tracker = PerformanceTracker(clock=clock)
        self._machine = StreamStateMachine(self._tracker, max_restarts=self.config.max_auto_retries)
        self._session: Optional[StreamSession] = None
        self._generation = 0
        self._retry_pending = False
        self._auto_attempts = 0
        self._error: Optional[str] = None
        self._last_exception: Optional[CoachStreamError] = None
        self._closed = False

    # -----------------------------
    # Observables
    # -----------------------------

    @property
    def message(self) -> Optional[StreamingMessage]:
        if self._session is None or self._session.message is None:
            return None
        return self._session.message.snapshot()

    @property
    def phase(self) -> StreamPhase:
        return self._machine.phase

    @property
    def is_connected(self) -> bool:
        return self.phase in (StreamPhase.LOADING_CONTEXT, StreamPhase.STREAMING)

    @property
    def metrics(self) -> PerformanceMetrics:
        return self._tracker.metrics

    @property
    def error(self) -> Optional[str]:
        return self._error

    @property
    def last_exception(self) -> Optional[CoachStreamError]:
        return self._last_exception

    @property
    def recovery_state(self) -> RecoveryState:
        return self.recovery.state

    @property
    def is_recovering(self) -> bool:
        return self.recovery.is_recovering

    @property
    def retry_count(self) -> int:
        return self._auto_attempts

    @property
    def can_retry(self) -> bool:
        return self._auto_attempts < self.config.max_auto_retries

    @property
    def is_healthy(self) -> bool:
        return self._tracker.is_healthy and self.phase is not StreamPhase.ERROR

    def grade(self) -> str:
        return self._tracker.grade()

    # -----------------------------
    # Commands
    # -----------------------------

    async def start_turn(
        self,
        user_id: str,
        message: str,
        coach_id: str,
        history: Iterable[Union[PriorTurn, Dict[str, Any]]] = (),
        *,
        conversation_id: Optional[str] = None,
        attachments: Iterable[Dict[str, Any]] = (),
    ) -> bool:
        """Send one user message and stream the coach's reply.

        Returns True when the reply completed. On failure returns False with
        ``error`` holding human guidance and ``last_exception`` the typed
        error (AuthenticationError means the caller must sign in again).
        """
        if self._closed:
            raise RuntimeError("CoachStreamClient is closed")
        request = ConversationTurnRequest.create(
            user_id=user_id,
            message=message,
            coach_id=coach_id,
            history=history,
            conversation_id=conversation_id,
            attachments=attachments,
        )
        # Bump first so the superseded turn sees it is stale and stays quiet
        self._generation += 1
        generation = self._generation
        self._retry_pending = False
        if self._session is not None and self._session.is_active:
            log_event(logger, logging.WARNING, "stream_already_active", traceId=self._session.trace_id)
            await self._cancel_active("New turn starting", origin="superseded")
            await self._sleep(self.config.settle_delay)
        if generation != self._generation:
            # Another start_turn/stop/aclose overtook us during the settle delay
            return False

        self._auto_attempts = 0
        self._error = None
        self._last_exception = None
        self._tracker.reset()
        self._machine = StreamStateMachine(self._tracker, max_restarts=self.config.max_auto_retries)
        return await self._submit(request, generation)

    async def stop(self) -> None:
        """Caller-initiated stop. The partial message stays until clear_message()."""
        if self._retry_pending:
            # No session is running during a retry backoff: cancel the pending resubmission
            self._generation += 1
            self._abort_pending_retry("Manual stop")
            return
        if not self.config.auto_retry_user_stop:
            self._generation += 1
        await self._cancel_active("Manual stop", origin="user")

    def clear_message(self) -> None:
        if self._session is not None and not self._session.discard_message():
            log_event(logger, logging.WARNING, "clear_message_ignored", traceId=self._session.trace_id, phase=self.phase.value)

    async def aclose(self) -> None:
        """Teardown: cancel any in-flight turn and release its transport."""
        if self._closed:
            return
        self._generation += 1
        self._abort_pending_retry("Component unmount")
        await self._cancel_active("Component unmount", origin="teardown")
        self._closed = True
        await self.transport.aclose()

    async def __aenter__(self) -> "CoachStreamClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        await self.aclose()
        return False

    # -----------------------------
    # Internals
    # -----------------------------

    async def _credential(self) -> Optional[str]:
        if self._token_provider is None:
            return self.config.bearer_token
        token = self._token_provider()
        if inspect.isawaitable(token):
            token = await token
        return token

    def _abort_pending_retry(self, reason: str) -> None:
        if not self._retry_pending:
            return
        self._retry_pending = False
        log_event(logger, logging.INFO, "stream_retry_cancelled", reason=reason, autoAttempts=self._auto_attempts)
        if self._machine.can_transition(StreamPhase.ABORTED):
            self._machine.transition(StreamPhase.ABORTED, reason=reason)

    async def _cancel_active(self, reason: str, origin: str) -> None:
        session = self._session
        if session is None:
            return
        session.abort(reason, origin=origin)
        await session.wait_closed()

    async def _submit(self, request: ConversationTurnRequest, generation: int) -> bool:
        while True:
            session = StreamSession(
                request=request,
                config=self.config,
                transport=self.transport,
                recovery=self.recovery,
                machine=self._machine,
                credential=self._credential,
            )
            self._session = session
            self._notify(self._on_stream_start)
            task = asyncio.ensure_future(session.run())
            session.bind(task)
            try:
                await task
            except CoachStreamError as exc:
                if generation != self._generation:
                    # Superseded, stopped or torn down meanwhile: nothing to surface
                    return False
                if self._should_auto_retry(exc):
                    self._auto_attempts += 1
                    delay = min(
                        self.config.auto_retry_base_delay * (2 ** (self._auto_attempts - 1)),
                        self.config.auto_retry_max_delay,
                    )
                    log_event(
                        logger,
                        logging.WARNING,
                        "stream_auto_retry",
                        attempt=self._auto_attempts,
                        maxAttempts=self.config.max_auto_retries,
                        delaySeconds=delay,
                        error=str(exc),
                    )
                    try:
                        AUTO_RETRIES_TOTAL.inc()
                    except Exception:
                        pass
                    self._retry_pending = True
                    try:
                        await self._sleep(delay)
                    finally:
                        if generation == self._generation:
                            self._retry_pending = False
                    if generation != self._generation:
                        return False
                    continue
                self._surface(exc, session)
                return False
            self._record_success()
            self._notify(self._on_stream_end)
            return True

    def _should_auto_retry(self, exc: CoachStreamError) -> bool:
        if self._auto_attempts >= self.config.max_auto_retries:
            return False
        if not is_abort_class(exc):
            return False
        if isinstance(exc, StreamAbortedError) and exc.initiated_locally:
            return exc.origin == "user" and self.config.auto_retry_user_stop
        return True

    def _surface(self, exc: CoachStreamError, session: StreamSession) -> None:
        if isinstance(exc, StreamTimeoutError):
            advice = exc.message
        else:
            advice = self.recovery.advise_message(str(exc))
        self._error = advice
        self._last_exception = exc
        # A caller stop keeps the partial reply for clear_message(); real failures discard it
        if not (isinstance(exc, StreamAbortedError) and exc.origin == "user"):
            session.discard_message()
        category = categorize_error(str(exc))
        try:
            TURNS_TOTAL.labels(outcome="aborted" if isinstance(exc, StreamAbortedError) else "error").inc()
            ERRORS_TOTAL.labels(category=category).inc()
        except Exception:
            pass
        log_event(
            logger,
            logging.ERROR,
            "stream_failed",
            traceId=session.trace_id,
            code=exc.code,
            category=category,
            error=str(exc),
            advice=advice,
            autoAttempts=self._auto_attempts,
        )
        if self._on_error is not None:
            try:
                self._on_error(exc, advice)
            except Exception as cb_exc:
                log_event(logger, logging.WARNING, "on_error_callback_failed", error=str(cb_exc))

    def _record_success(self) -> None:
        m = self._tracker.metrics
        try:
            TURNS_TOTAL.labels(outcome="complete").inc()
            if m.first_token_time is not None:
                TTFT_SECONDS.observe(m.first_token_time / 1000.0)
            if m.total_duration is not None:
                TURN_SECONDS.observe(m.total_duration / 1000.0)
        except Exception:
            pass

    def _notify(self, callback: Optional[Callable[[], None]]) -> None:
        if callback is None:
            return
        try:
            callback()
        except Exception as e:
            log_event(logger, logging.WARNING, "callback_failed", error=str(e))
