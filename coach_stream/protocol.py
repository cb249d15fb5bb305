"""Reply parsing for both backend response modes.

Incremental mode: a byte stream of ``data: <json>\\n\\n`` records ending with
``data: [DONE]``. Single-shot mode: one JSON document carrying the whole
reply under one of several accepted field names.
"""
import codecs
import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Iterator, List, Optional, Tuple

from .errors import StreamProtocolError
from .logs import get_logger, log_event
from .metrics import MALFORMED_RECORDS_TOTAL

logger = get_logger("coach_stream.protocol")

DATA_PREFIX = "data:"
DONE_SENTINEL = "[DONE]"
RECORD_DELIMITER = "\n\n"


@dataclass(frozen=True)
class StreamEvent:
    kind: str  # "delta" | "done"
    text: str = ""


DONE = StreamEvent(kind="done")


def _record_payload(record: str, prefix: str) -> Optional[str]:
    # Records must start with the data prefix; multi-line data is joined with newlines
    if not record.startswith(prefix):
        return None
    parts = []
    for line in record.split("\n"):
        if line.startswith(prefix):
            parts.append(line[len(prefix):].strip())
    return "\n".join(parts).strip()


def parse_payload(data: str, sentinel: str = DONE_SENTINEL) -> Optional[StreamEvent]:
    """Turn one record payload into an event.

    Returns None for payloads that carry nothing to apply (heartbeats, open
    notices, unknown types, malformed JSON). Raises StreamProtocolError for
    error-tagged records.
    """
    if not data:
        return None
    if data == sentinel:
        return DONE
    try:
        event = json.loads(data)
    except ValueError:
        log_event(logger, logging.WARNING, "stream_record_malformed", data=data[:256])
        try:
            MALFORMED_RECORDS_TOTAL.inc()
        except Exception:
            pass
        return None
    if not isinstance(event, dict):
        log_event(logger, logging.WARNING, "stream_record_unexpected_shape", data=data[:256])
        return None

    kind = event.get("type")
    if kind == "error":
        raise StreamProtocolError(str(event.get("error") or "Stream error occurred"))
    if kind == "stream_done":
        return DONE
    if kind == "content" and event.get("content"):
        return StreamEvent(kind="delta", text=str(event["content"]))
    if kind == "delta" and event.get("delta"):
        return StreamEvent(kind="delta", text=str(event["delta"]))
    return None


class RecordParser:
    """Incremental parser for the framed text stream.

    Feed raw bytes in arrival order; complete records are parsed as soon as
    their blank-line delimiter shows up. Partial records and split UTF-8
    sequences stay buffered until the next chunk.
    """

    def __init__(self, prefix: str = DATA_PREFIX, sentinel: str = DONE_SENTINEL):
        self.prefix = prefix
        self.sentinel = sentinel
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""

    @property
    def pending(self) -> str:
        return self._buffer

    def feed(self, chunk: bytes) -> Iterator[StreamEvent]:
        # Normalise after joining so a CRLF split across chunks still forms a delimiter
        self._buffer = (self._buffer + self._decoder.decode(chunk)).replace("\r\n", "\n")
        while True:
            boundary = self._buffer.find(RECORD_DELIMITER)
            if boundary == -1:
                return
            record = self._buffer[:boundary].strip()
            self._buffer = self._buffer[boundary + len(RECORD_DELIMITER):]
            event = self._parse_record(record)
            if event is not None:
                yield event

    def flush(self) -> Iterator[StreamEvent]:
        """Parse whatever is left once the transport reports end-of-stream."""
        self._buffer = (self._buffer + self._decoder.decode(b"", final=True)).replace("\r\n", "\n")
        record = self._buffer.strip()
        self._buffer = ""
        if record:
            event = self._parse_record(record)
            if event is not None:
                yield event

    def _parse_record(self, record: str) -> Optional[StreamEvent]:
        data = _record_payload(record, self.prefix)
        if data is None:
            return None
        return parse_payload(data, self.sentinel)


# -----------------------------
# Single-shot replies
# -----------------------------

def _field(name: str) -> Callable[[Any], Optional[str]]:
    def extract(doc: Any) -> Optional[str]:
        if isinstance(doc, dict):
            value = doc.get(name)
            if isinstance(value, str) and value:
                return value
        return None

    return extract


def _bare_string(doc: Any) -> Optional[str]:
    return doc if isinstance(doc, str) and doc else None


REPLY_EXTRACTORS: List[Tuple[str, Callable[[Any], Optional[str]]]] = [
    ("response", _field("response")),
    ("message", _field("message")),
    ("content", _field("content")),
    ("string", _bare_string),
]


def extract_reply(doc: Any) -> Tuple[str, str]:
    """Return ``(extractor_name, text)`` for the first matching reply shape."""
    for name, extractor in REPLY_EXTRACTORS:
        text = extractor(doc)
        if text is not None:
            return name, text
    raise StreamProtocolError(f"Unexpected response format: {json.dumps(doc, default=str)[:512]}")


def parse_single_shot(body: bytes) -> str:
    try:
        doc = json.loads(body.decode("utf-8", errors="replace"))
    except ValueError as e:
        raise StreamProtocolError(f"Reply is not valid JSON: {e}") from e
    name, text = extract_reply(doc)
    log_event(logger, logging.DEBUG, "single_shot_reply", shape=name, chars=len(text))
    return text


def estimate_tokens(text: str) -> int:
    # Very rough heuristic: ~1 token per 4 chars
    return max(1, int(len(text) / 4))
