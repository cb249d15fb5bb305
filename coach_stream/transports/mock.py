import asyncio
import json
from typing import Any, AsyncIterator, Dict, List

from .base import ChatTransport, TransportHandle


def _chunk_text(s: str, size: int = 6):
    for i in range(0, len(s), size):
        yield s[i : i + size]


class MockHandle(TransportHandle):
    def __init__(self, chunks: List[bytes], delay: float, owner: "MockTransport"):
        self._chunks = chunks
        self._delay = delay
        self._owner = owner
        self._aborted = False

    @property
    def aborted(self) -> bool:
        return self._aborted

    def iter_bytes(self) -> AsyncIterator[bytes]:
        return self._iter()

    async def _iter(self) -> AsyncIterator[bytes]:
        for chunk in self._chunks:
            await asyncio.sleep(self._delay)
            yield chunk

    async def read(self) -> bytes:
        await asyncio.sleep(self._delay)
        return b"".join(self._chunks)

    async def abort(self) -> None:
        if self._aborted:
            return
        self._aborted = True
        self._owner.closed += 1


class MockTransport(ChatTransport):
    """Echoes the user's message back deterministically.

    Streams 6-char fragments as data records in streaming mode, or a single
    ``{"response": ...}`` document otherwise. Counts opened/closed handles.
    """

    transport_name: str = "mock"

    def __init__(self, delay: float = 0.05):
        self.delay = delay
        self.opened = 0
        self.closed = 0

    @property
    def open_handles(self) -> int:
        return self.opened - self.closed

    async def open(self, payload: Dict[str, Any], headers: Dict[str, str]) -> TransportHandle:
        text = str(payload.get("message") or "") or "Hello, world!"
        if payload.get("enableStreaming", True):
            chunks = [
                ("data: " + json.dumps({"type": "content", "content": token}) + "\n\n").encode("utf-8")
                for token in _chunk_text(text, size=6)
            ]
            chunks.append(b"data: [DONE]\n\n")
        else:
            chunks = [json.dumps({"response": text}).encode("utf-8")]
        self.opened += 1
        return MockHandle(chunks, self.delay, self)
