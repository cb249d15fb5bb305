import asyncio
import logging
from typing import Awaitable, Callable, Dict, Optional

from .config import StreamConfig
from .errors import (
    AuthenticationError,
    CoachStreamError,
    StreamAbortedError,
    StreamTimeoutError,
)
from .logs import get_logger, log_event
from .metrics import PHASE_TIMEOUTS_TOTAL
from .models import (
    ConversationTurnRequest,
    StreamingMessage,
    StreamPhase,
    new_turn_id,
)
from .performance import PerformanceTracker
from .protocol import RecordParser, estimate_tokens, parse_single_shot
from .recovery import RecoveryPolicy
from .state import StreamStateMachine
from .transports.base import ChatTransport, TransportHandle

logger = get_logger("coach_stream.session")

P = StreamPhase

CredentialSource = Callable[[], Awaitable[Optional[str]]]


class StreamSession:
    """One attempt at one conversation turn.

    The session opens the transport, parses the reply into ``message`` and
    walks the shared state machine through its phases. Each timed phase arms
    its own budget; a fired budget cancels the running task exactly like
    ``abort()`` does. Whatever ends the attempt, ``release()`` closes the
    reader, aborts the network handle and clears the timer before the phase
    flips to error/aborted.
    """

    def __init__(
        self,
        request: ConversationTurnRequest,
        config: StreamConfig,
        transport: ChatTransport,
        recovery: RecoveryPolicy,
        machine: StreamStateMachine,
        credential: CredentialSource,
    ):
        self.request = request
        self.config = config
        self.machine = machine
        self.turn_id = new_turn_id()
        self.trace_id = f"trace-{self.turn_id}"
        self.message: Optional[StreamingMessage] = StreamingMessage(id=self.turn_id)
        self.cancelled = False

        self._transport = transport
        self._recovery = recovery
        self._credential = credential
        self._handle: Optional[TransportHandle] = None
        self._reader = None
        self._timer: Optional[asyncio.TimerHandle] = None
        self._task: Optional[asyncio.Task] = None
        self._started = False
        self._cancel_reason: Optional[str] = None
        self._cancel_origin = "user"
        self._timed_out: Optional[StreamPhase] = None
        self._releasing = False
        self._fragments = 0

    # -----------------------------
    # Observables
    # -----------------------------

    @property
    def phase(self) -> StreamPhase:
        return self.machine.phase

    @property
    def tracker(self) -> PerformanceTracker:
        return self.machine.tracker

    @property
    def is_active(self) -> bool:
        return self.machine.is_active and not (self._task is not None and self._task.done())

    @property
    def holds_resources(self) -> bool:
        return self._handle is not None or self._reader is not None or self._timer is not None

    def discard_message(self) -> bool:
        if self.machine.is_active:
            return False
        self.message = None
        return True

    # -----------------------------
    # Lifecycle
    # -----------------------------

    def bind(self, task: asyncio.Task) -> None:
        self._task = task

    async def run(self) -> StreamingMessage:
        self._started = True
        if self._task is None:
            self._task = asyncio.current_task()
        try:
            self._enter(P.CONNECTING)
            log_event(
                logger,
                logging.INFO,
                "stream_start",
                traceId=self.trace_id,
                userId=self.request.user_id,
                coachId=self.request.coach_id,
                streaming=self.config.streaming,
                historyLen=len(self.request.history),
                restarts=self.machine.restarts,
            )
            if self.config.streaming:
                await self._exchange_streaming()
            else:
                await self._exchange_single_shot()
            return self.message.snapshot()
        except asyncio.CancelledError:
            error = self._cancellation_error()
            await self.release()
            if error is None:
                # Caller task was cancelled underneath us: treat as teardown
                self.cancelled = True
                self._settle(StreamAbortedError("component teardown", origin="teardown"))
                raise
            self._settle(error)
            raise error from None
        except CoachStreamError as exc:
            error = self._cancellation_error() or exc
            await self.release()
            self._settle(error)
            if error is exc:
                raise
            raise error from exc
        except Exception as exc:
            await self.release()
            error = CoachStreamError(f"{type(exc).__name__}: {exc}")
            self._settle(error)
            raise error from exc
        finally:
            await self.release()

    def abort(self, reason: str, origin: str = "user") -> None:
        """Request cancellation. Resources are released by the running task."""
        if self.cancelled:
            return
        self.cancelled = True
        self._cancel_reason = reason
        self._cancel_origin = origin
        self._clear_timeout()
        log_event(logger, logging.INFO, "stream_abort", traceId=self.trace_id, reason=reason, origin=origin, phase=self.phase.value)
        if not self._started:
            if self.machine.can_transition(P.ABORTED):
                self.machine.transition(P.ABORTED, reason=reason)
            if self.message is not None:
                self.message.is_streaming = False
        if not self._releasing:
            self._cancel_task()

    async def wait_closed(self) -> None:
        task = self._task
        if task is not None and not task.done() and task is not asyncio.current_task():
            await asyncio.wait({task})

    async def release(self) -> None:
        """Close reader, abort network handle, clear timer. Safe to call repeatedly."""
        self._releasing = True
        reader, self._reader = self._reader, None
        if reader is not None:
            try:
                await reader.aclose()
            except Exception as e:
                log_event(logger, logging.WARNING, "reader_cleanup_error", traceId=self.trace_id, error=str(e))
        handle, self._handle = self._handle, None
        if handle is not None and not handle.aborted:
            try:
                await handle.abort()
            except Exception as e:
                log_event(logger, logging.WARNING, "handle_cleanup_error", traceId=self.trace_id, error=str(e))
        self._clear_timeout()

    # -----------------------------
    # Exchanges
    # -----------------------------

    async def _open(self) -> TransportHandle:
        token = await self._credential()
        if not token:
            raise AuthenticationError("Not authenticated - please sign in again")
        headers = self._headers(token)
        payload = self.request.to_payload(self.turn_id, self.trace_id, self.config.streaming)
        handle = await self._recovery.execute(lambda: self._transport.open(payload, headers), context_label="connect")
        self._handle = handle
        self._check_cancelled()
        return handle

    async def _exchange_streaming(self) -> None:
        handle = await self._open()
        self._enter(P.LOADING_CONTEXT)
        parser = RecordParser()
        self._reader = handle.iter_bytes()
        async for chunk in self._reader:
            self._check_cancelled()
            if self.phase is P.LOADING_CONTEXT:
                self._context_loaded()
            for event in parser.feed(chunk):
                if event.kind == "done":
                    log_event(logger, logging.DEBUG, "stream_done_signal", traceId=self.trace_id)
                    self._complete()
                    return
                self._append(event.text)
        for event in parser.flush():
            if event.kind == "done":
                self._complete()
                return
            self._append(event.text)
        if self.phase is P.LOADING_CONTEXT:
            self._context_loaded()
        log_event(logger, logging.INFO, "stream_ended_without_sentinel", traceId=self.trace_id, fragments=self._fragments)
        self._complete()

    async def _exchange_single_shot(self) -> None:
        handle = await self._open()
        self._enter(P.LOADING_CONTEXT)
        body = await handle.read()
        self._check_cancelled()
        self._context_loaded()
        text = parse_single_shot(body)
        self._append(text, tokens=estimate_tokens(text))
        self._complete()

    # -----------------------------
    # Buffer + phase helpers
    # -----------------------------

    def _headers(self, token: str) -> Dict[str, str]:
        headers = {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
            "Accept": "text/event-stream" if self.config.streaming else "application/json",
            "User-Agent": self.config.user_agent,
            "X-Request-Id": self.trace_id,
        }
        if self.config.api_key:
            headers["apikey"] = self.config.api_key
        return headers

    def _context_loaded(self) -> None:
        self.tracker.mark_context_loaded()
        self._enter(P.STREAMING)

    def _append(self, text: str, tokens: int = 1) -> None:
        self._check_cancelled()
        if self.message is None or self.message.is_complete:
            return
        self.tracker.mark_first_token()
        self.message.content += text
        self.message.is_streaming = True
        self._fragments += tokens
        self.tracker.mark_progress(self._fragments)

    def _complete(self) -> None:
        self._check_cancelled()
        self._clear_timeout()
        self.tracker.mark_progress(self._fragments)
        self.machine.transition(P.COMPLETING)
        if self.message is not None:
            self.message.is_complete = True
            self.message.is_streaming = False
        self.machine.transition(P.IDLE)
        m = self.tracker.metrics
        log_event(
            logger,
            logging.INFO,
            "stream_complete",
            traceId=self.trace_id,
            chars=len(self.message.content) if self.message else 0,
            fragments=self._fragments,
            firstTokenMs=m.first_token_time,
            totalMs=m.total_duration,
            tokensPerSecond=round(m.tokens_per_second, 2),
            grade=m.grade(),
        )

    def _enter(self, phase: StreamPhase) -> None:
        self.machine.transition(phase)
        self._arm_timeout(phase)

    def _arm_timeout(self, phase: StreamPhase) -> None:
        self._clear_timeout()
        budget = self.config.phase_timeout(phase.value)
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(budget, self._on_timeout, phase)

    def _clear_timeout(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _on_timeout(self, phase: StreamPhase) -> None:
        self._timer = None
        if self.phase is not phase or self.cancelled or self._releasing:
            return
        budget = self.config.phase_timeout(phase.value)
        self._timed_out = phase
        self.cancelled = True
        log_event(logger, logging.ERROR, "stream_phase_timeout", traceId=self.trace_id, phase=phase.value, budgetSeconds=budget)
        try:
            PHASE_TIMEOUTS_TOTAL.labels(phase=phase.value).inc()
        except Exception:
            pass
        self._cancel_task()

    def _cancel_task(self) -> None:
        task = self._task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    def _cancellation_error(self) -> Optional[CoachStreamError]:
        if self._timed_out is not None:
            return StreamTimeoutError(
                self._timed_out.value,
                budget=self.config.phase_timeout(self._timed_out.value),
                traceId=self.trace_id,
            )
        if self.cancelled:
            return StreamAbortedError(self._cancel_reason or "cancelled", origin=self._cancel_origin, traceId=self.trace_id)
        return None

    def _check_cancelled(self) -> None:
        if self.cancelled:
            raise self._cancellation_error()

    def _settle(self, error: CoachStreamError) -> None:
        if self.message is not None:
            self.message.is_streaming = False
        local_abort = isinstance(error, StreamAbortedError) and error.initiated_locally
        target = P.ABORTED if local_abort else P.ERROR
        if self.machine.can_transition(target):
            self.machine.transition(target, reason=str(error))
        log_event(
            logger,
            logging.INFO if local_abort else logging.ERROR,
            "stream_aborted" if local_abort else "stream_error",
            traceId=self.trace_id,
            code=error.code,
            error=str(error),
            phase=self.phase.value,
        )
