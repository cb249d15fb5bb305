"""Resilient streaming chat client for the coaching backend.

Modules:
- client: CoachStreamClient, the presentation-facing contract
- session: one attempt at one turn (transport, parsing, phase budgets)
- state: phase lifecycle
- protocol: framed stream + single-shot reply parsing
- performance: latency/throughput tracking
- recovery: bounded retry + user-facing advice
- transports: http (httpx) and mock backends
"""
from .client import CoachStreamClient
from .config import StreamConfig
from .errors import (
    AuthenticationError,
    CoachStreamError,
    ConnectionEstablishmentError,
    InvalidTransitionError,
    ServerError,
    StreamAbortedError,
    StreamProtocolError,
    StreamTimeoutError,
)
from .models import (
    ConversationTurnRequest,
    PerformanceMetrics,
    PriorTurn,
    RecoveryState,
    StreamingMessage,
    StreamPhase,
)
from .performance import PerformanceTracker
from .recovery import RecoveryPolicy, advise_message

__version__ = "0.1.0"

__all__ = [
    "AuthenticationError",
    "CoachStreamClient",
    "CoachStreamError",
    "ConnectionEstablishmentError",
    "ConversationTurnRequest",
    "InvalidTransitionError",
    "PerformanceMetrics",
    "PerformanceTracker",
    "PriorTurn",
    "RecoveryPolicy",
    "RecoveryState",
    "ServerError",
    "StreamAbortedError",
    "StreamConfig",
    "StreamPhase",
    "StreamProtocolError",
    "StreamTimeoutError",
    "StreamingMessage",
    "advise_message",
]
