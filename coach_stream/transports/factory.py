from typing import Optional

from ..config import StreamConfig
from .base import ChatTransport
from .http import HttpxTransport
from .mock import MockTransport


def get_transport(config: StreamConfig, name: Optional[str] = None) -> ChatTransport:
    """Return a transport based on the config or an explicit override.

    Precedence:
      - explicit ``name``
      - config.transport (COACH_STREAM_TRANSPORT)
      - defaults to 'http'
    Unknown names fall back to http.
    """
    prov = (name or config.transport or "http").strip().lower()

    if prov in ("mock", "test"):
        return MockTransport()

    return HttpxTransport(config.endpoint_url, connect_timeout=min(config.connect_attempt_timeout, config.connect_timeout))
