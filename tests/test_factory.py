import pytest

from coach_stream.client import CoachStreamClient
from coach_stream.config import StreamConfig
from coach_stream.transports.factory import get_transport
from coach_stream.transports.http import HttpxTransport
from coach_stream.transports.mock import MockTransport


@pytest.mark.parametrize("name, cls", [
    ("mock", MockTransport),
    ("TEST", MockTransport),
    ("http", HttpxTransport),
    ("unknown", HttpxTransport),
])
def test_explicit_name_selects_transport(name, cls):
    assert isinstance(get_transport(StreamConfig(), name), cls)


def test_config_transport_is_used_by_default():
    assert isinstance(get_transport(StreamConfig(transport="mock")), MockTransport)
    t = get_transport(StreamConfig(endpoint_url="http://x.test/coach"))
    assert isinstance(t, HttpxTransport)
    assert t.endpoint_url == "http://x.test/coach"


@pytest.mark.asyncio
@pytest.mark.parametrize("streaming", [True, False])
async def test_mock_transport_echoes_message(streaming):
    cfg = StreamConfig(transport="mock", bearer_token="t", streaming=streaming)
    async with CoachStreamClient(config=cfg) as client:
        client.transport.delay = 0.0
        assert await client.start_turn("u", "Keep your cadence steady", "coach") is True
        assert client.message.content == "Keep your cadence steady"
        assert client.transport.open_handles == 0


def test_http_connect_timeout_is_per_attempt():
    t = get_transport(StreamConfig())
    assert t._connect_timeout == 3.0
    t = get_transport(StreamConfig(connect_timeout=2.0, connect_attempt_timeout=5.0))
    assert t._connect_timeout == 2.0
