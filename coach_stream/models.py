from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, Iterable, List, Literal, Optional, Tuple, Union


class StreamPhase(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    LOADING_CONTEXT = "loading-context"
    STREAMING = "streaming"
    COMPLETING = "completing"
    ERROR = "error"
    ABORTED = "aborted"


# Phases during which a transport may be open
ACTIVE_PHASES = frozenset(
    {StreamPhase.CONNECTING, StreamPhase.LOADING_CONTEXT, StreamPhase.STREAMING, StreamPhase.COMPLETING}
)


@dataclass(frozen=True)
class PriorTurn:
    role: Literal["user", "assistant", "system"]
    content: str

    def to_dict(self) -> Dict[str, str]:
        return {"role": self.role, "content": self.content}

    @classmethod
    def coerce(cls, item: Union["PriorTurn", Dict[str, Any]]) -> "PriorTurn":
        if isinstance(item, PriorTurn):
            return item
        return cls(role=str(item.get("role") or "user"), content=str(item.get("content") or ""))


@dataclass(frozen=True)
class ConversationTurnRequest:
    user_id: str
    message: str
    coach_id: str
    conversation_id: Optional[str] = None
    history: Tuple[PriorTurn, ...] = ()
    attachments: Tuple[Dict[str, Any], ...] = ()

    @classmethod
    def create(
        cls,
        user_id: str,
        message: str,
        coach_id: str,
        history: Iterable[Union[PriorTurn, Dict[str, Any]]] = (),
        conversation_id: Optional[str] = None,
        attachments: Iterable[Dict[str, Any]] = (),
    ) -> "ConversationTurnRequest":
        return cls(
            user_id=user_id,
            message=message,
            coach_id=coach_id,
            conversation_id=conversation_id,
            history=tuple(PriorTurn.coerce(h) for h in (history or ())),
            attachments=tuple(dict(a) for a in (attachments or ())),
        )

    def to_payload(self, turn_id: str, trace_id: str, streaming: bool) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "userId": self.user_id,
            "conversationId": self.conversation_id or self.user_id,
            "message": self.message,
            "messageId": turn_id,
            "coachId": self.coach_id,
            "conversationHistory": [h.to_dict() for h in self.history],
            "enableStreaming": streaming,
            "traceId": trace_id,
        }
        if self.attachments:
            payload["attachments"] = [dict(a) for a in self.attachments]
        return payload


def new_turn_id() -> str:
    return f"stream-{uuid.uuid4().hex[:16]}"


@dataclass
class StreamingMessage:
    id: str
    content: str = ""
    is_complete: bool = False
    is_streaming: bool = True

    def snapshot(self) -> "StreamingMessage":
        return replace(self)


@dataclass
class PerformanceMetrics:
    """Per-turn latency/throughput figures. Times are milliseconds."""

    first_token_time: Optional[float] = None
    total_duration: Optional[float] = None
    tokens_per_second: float = 0.0
    context_load_time: Optional[float] = None
    streaming_error_count: int = 0
    token_count: int = 0
    stage: str = "idle"
    progress: float = 0.0
    last_error: Optional[str] = None

    def grade(self) -> str:
        ftt = self.first_token_time
        tps = self.tokens_per_second
        if ftt is None:
            return "F"
        if ftt < 1000 and tps > 30:
            return "A"
        if ftt < 2000 and tps > 20:
            return "B"
        if ftt < 3000 and tps > 15:
            return "C"
        if ftt < 5000 and tps > 10:
            return "D"
        return "F"

    @property
    def is_healthy(self) -> bool:
        return self.first_token_time is not None and self.first_token_time < 2000 and self.tokens_per_second > 15


@dataclass
class RecoveryState:
    is_recovering: bool = False
    attempt_count: int = 0
    last_error_message: Optional[str] = None
    current_strategy: Optional[str] = None
    attempted_strategies: List[str] = field(default_factory=list)
