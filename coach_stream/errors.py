"""Error taxonomy for chat turns.

Everything a turn can fail with derives from CoachStreamError so the client
boundary can classify and surface it in one place.
"""
from typing import Optional


class CoachStreamError(Exception):
    """Base error.

    Attributes:
        code: machine-readable error code (e.g. "NETWORK_ERROR").
        message: human-readable detail.
        extra: additional context such as trace_id or phase.
    """

    code: str = "STREAM_ERROR"

    def __init__(self, message: str, code: Optional[str] = None, **extra):
        self.message = message
        if code:
            self.code = code
        self.extra = extra
        super().__init__(message)


class ConnectionEstablishmentError(CoachStreamError):
    """DNS failure, refused connection, connect timeout."""

    code = "NETWORK_ERROR"


class AuthenticationError(CoachStreamError):
    """Missing or rejected credential. Callers should re-authenticate instead of retrying."""

    code = "AUTH_ERROR"


class ServerError(CoachStreamError):
    """Backend answered with a non-2xx status."""

    code = "SERVER_ERROR"

    def __init__(self, status_code: int, body: str = "", **extra):
        self.status_code = status_code
        self.body = body
        super().__init__(f"Server error {status_code}: {body}", **extra)


class StreamProtocolError(CoachStreamError):
    """Malformed reply or an error-tagged stream record."""

    code = "PROTOCOL_ERROR"


_TIMEOUT_MESSAGES = {
    "connecting": "Timeout while connecting - please try again",
    "loading-context": "Timeout while building context - please try again",
    "streaming": "Timeout while generating the reply - please try again",
}


class StreamTimeoutError(CoachStreamError):
    code = "TIMEOUT"

    def __init__(self, phase: str, budget: Optional[float] = None, **extra):
        self.phase = phase
        self.budget = budget
        message = _TIMEOUT_MESSAGES.get(phase, f"Timeout in {phase} - please try again")
        super().__init__(message, **extra)


ABORT_ORIGINS = ("transport", "user", "superseded", "teardown")


class StreamAbortedError(CoachStreamError):
    """The turn was cancelled.

    ``origin`` tells who cancelled it: the transport/peer, the caller (stop),
    a newer turn, or client teardown.
    """

    code = "ABORTED"

    def __init__(self, reason: str, origin: str = "transport", **extra):
        self.reason = reason
        self.origin = origin if origin in ABORT_ORIGINS else "transport"
        super().__init__(f"Request aborted: {reason}", **extra)

    @property
    def initiated_locally(self) -> bool:
        return self.origin != "transport"


class InvalidTransitionError(CoachStreamError):
    code = "STATE_ERROR"

    def __init__(self, current: str, target: str):
        self.current = current
        self.target = target
        super().__init__(f"Illegal phase transition {current} -> {target}")


def is_abort_class(exc: BaseException) -> bool:
    """True when the error message indicates cancellation rather than a real failure."""
    if isinstance(exc, StreamAbortedError):
        return True
    if isinstance(exc, StreamTimeoutError):
        return False
    text = str(exc).lower()
    return "abort" in text or "cancel" in text
