from __future__ import annotations

import abc
from typing import Any, AsyncIterator, Dict


class TransportHandle(abc.ABC):
    """One open exchange with the backend.

    Owned by the session that opened it. ``abort()`` must be idempotent and
    release the underlying connection.
    """

    status_code: int = 200

    @property
    @abc.abstractmethod
    def aborted(self) -> bool:
        ...

    @abc.abstractmethod
    def iter_bytes(self) -> AsyncIterator[bytes]:
        """Return the body reader. The caller closes it with ``aclose()``."""
        ...

    @abc.abstractmethod
    async def read(self) -> bytes:
        ...

    @abc.abstractmethod
    async def abort(self) -> None:
        ...


class ChatTransport(abc.ABC):
    """Opens exchanges with the conversation backend.

    ``open`` returns once the request is sent and response headers are in.
    Non-2xx responses raise AuthenticationError / ServerError.
    """

    transport_name: str = "unknown"

    @abc.abstractmethod
    async def open(self, payload: Dict[str, Any], headers: Dict[str, str]) -> TransportHandle:
        ...

    async def aclose(self) -> None:
        return None
