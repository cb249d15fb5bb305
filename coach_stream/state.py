import logging
from typing import Dict, FrozenSet, List, Optional, Tuple

from .errors import InvalidTransitionError
from .logs import get_logger, log_event
from .models import ACTIVE_PHASES, StreamPhase
from .performance import PerformanceTracker

logger = get_logger("coach_stream.state")

P = StreamPhase

TRANSITIONS: Dict[StreamPhase, FrozenSet[StreamPhase]] = {
    P.IDLE: frozenset({P.CONNECTING, P.ABORTED}),
    P.CONNECTING: frozenset({P.LOADING_CONTEXT, P.ERROR, P.ABORTED}),
    P.LOADING_CONTEXT: frozenset({P.STREAMING, P.ERROR, P.ABORTED}),
    P.STREAMING: frozenset({P.COMPLETING, P.ERROR, P.ABORTED}),
    P.COMPLETING: frozenset({P.IDLE, P.ERROR, P.ABORTED}),
    P.ERROR: frozenset({P.CONNECTING, P.ABORTED}),
    P.ABORTED: frozenset({P.CONNECTING}),
}

RESTART_FROM = frozenset({P.ERROR, P.ABORTED})


class StreamStateMachine:
    """Phase lifecycle of one logical turn.

    Phases only move forward, except for restarting from error/aborted back
    to connecting, which is allowed ``max_restarts`` times per turn.
    Transition side effects are applied to the shared tracker.
    """

    def __init__(self, tracker: PerformanceTracker, max_restarts: int = 3, trace_id: Optional[str] = None):
        self.tracker = tracker
        self.max_restarts = max_restarts
        self.trace_id = trace_id
        self._phase = P.IDLE
        self.restarts = 0
        self.history: List[Tuple[StreamPhase, StreamPhase]] = []

    @property
    def phase(self) -> StreamPhase:
        return self._phase

    @property
    def is_active(self) -> bool:
        return self._phase in ACTIVE_PHASES

    def can_transition(self, target: StreamPhase) -> bool:
        if target not in TRANSITIONS[self._phase]:
            return False
        if self._phase in RESTART_FROM and target is P.CONNECTING:
            return self.restarts < self.max_restarts
        return True

    def transition(self, target: StreamPhase, reason: Optional[str] = None) -> None:
        current = self._phase
        if not self.can_transition(target):
            raise InvalidTransitionError(current.value, target.value)
        if current in RESTART_FROM and target is P.CONNECTING:
            self.restarts += 1
        self._phase = target
        self.history.append((current, target))
        log_event(
            logger,
            logging.DEBUG,
            "stream_phase",
            traceId=self.trace_id,
            src=current.value,
            dst=target.value,
            reason=reason,
        )

        if target is P.CONNECTING:
            self.tracker.start()
        elif target is P.COMPLETING:
            self.tracker.mark_complete()
        elif target is P.ERROR:
            self.tracker.mark_error(reason or "error")
