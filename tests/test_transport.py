"""Tests for the websocket transcription transport."""

import asyncio
import base64
import json
from unittest.mock import AsyncMock, patch

import pytest
from websockets.exceptions import InvalidURI

from streamscribe.config import TranscribeConfig
from streamscribe.errors import ConnectError, InvalidStateError
from streamscribe.events import ErrorNotice, FinalTranscript, PartialTranscript
from streamscribe.transport import (
    TranscriptionTransport,
    TransportState,
    build_stream_url,
)

ENDPOINT = "ws://backend.test/stream"


@pytest.fixture
def config():
    return TranscribeConfig(endpoint=ENDPOINT, open_timeout_s=3.0)


@pytest.fixture
def transport(config):
    return TranscriptionTransport(config)


@pytest.mark.asyncio
async def test_connect_opens(transport, fake_connection):
    """Test that connect moves Idle -> Open and passes the timeouts."""
    with patch(
        "streamscribe.transport.connect", AsyncMock(return_value=fake_connection)
    ) as mock_connect:
        await transport.connect()

    assert transport.state is TransportState.OPEN
    assert transport.is_open
    mock_connect.assert_awaited_once()
    args, kwargs = mock_connect.call_args
    assert args == (f"{ENDPOINT}?language-code=zh-TW&sample-rate=16000",)
    assert kwargs["open_timeout"] == 3.0


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "error",
    [OSError("refused"), TimeoutError(), InvalidURI("bad", "no scheme")],
)
async def test_connect_failure(transport, error):
    """Test that handshake failures raise ConnectError and leave Errored."""
    with patch("streamscribe.transport.connect", AsyncMock(side_effect=error)):
        with pytest.raises(ConnectError):
            await transport.connect()

    assert transport.state is TransportState.ERRORED


@pytest.mark.asyncio
async def test_connect_twice_rejected(transport, fake_connection):
    """Test that a transport cannot be connected again."""
    with patch("streamscribe.transport.connect", AsyncMock(return_value=fake_connection)):
        await transport.connect()
        with pytest.raises(InvalidStateError):
            await transport.connect()


@pytest.mark.asyncio
async def test_connect_cancelled(transport):
    """Test that a cancelled handshake leaves the transport closed."""

    async def hang(*args, **kwargs):
        await asyncio.sleep(10)

    with patch("streamscribe.transport.connect", side_effect=hang):
        task = asyncio.create_task(transport.connect())
        await asyncio.sleep(0)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    assert transport.state is TransportState.CLOSED


@pytest.mark.asyncio
async def test_send_requires_open(transport):
    """Test that sending before connect is a programming error."""
    with pytest.raises(InvalidStateError):
        await transport.send(b"\x00\x00")


@pytest.mark.asyncio
async def test_send_binary_framing(transport, fake_connection):
    """Test that binary framing sends raw PCM bytes."""
    with patch("streamscribe.transport.connect", AsyncMock(return_value=fake_connection)):
        await transport.connect()
    await transport.send(b"\x01\x02")
    await transport.send(b"\x03\x04")

    assert fake_connection.sent == [b"\x01\x02", b"\x03\x04"]
    assert transport.bytes_sent == 4
    assert transport.chunks_sent == 2


@pytest.mark.asyncio
async def test_send_json_framing(fake_connection):
    """Test that json framing wraps the chunk in a base64 AudioEvent."""
    transport = TranscriptionTransport(TranscribeConfig(endpoint=ENDPOINT, framing="json"))
    with patch("streamscribe.transport.connect", AsyncMock(return_value=fake_connection)):
        await transport.connect()
    await transport.send(b"\xff\x7f")

    message = json.loads(fake_connection.sent[0])
    assert base64.b64decode(message["AudioEvent"]["AudioChunk"]) == b"\xff\x7f"


@pytest.mark.asyncio
async def test_send_after_connection_lost(transport, fake_connection):
    """Test that a send on a dead connection raises ConnectError."""
    with patch("streamscribe.transport.connect", AsyncMock(return_value=fake_connection)):
        await transport.connect()
    fake_connection.closed = True

    with pytest.raises(ConnectError):
        await transport.send(b"\x00\x00")
    assert transport.state is TransportState.ERRORED


@pytest.mark.asyncio
async def test_events_in_arrival_order(transport, fake_connection):
    """Test that events are yielded in wire order and skip bad messages."""
    with patch("streamscribe.transport.connect", AsyncMock(return_value=fake_connection)):
        await transport.connect()

    fake_connection.push_partial("a")
    fake_connection.push("garbage")
    fake_connection.push_json({"TranscriptEvent": {"Transcript": {"Results": []}}})
    fake_connection.push_final("ab")
    fake_connection.end()

    events = [event async for event in transport.events()]
    assert events == [PartialTranscript("a", 0), FinalTranscript("ab", 0)]


@pytest.mark.asyncio
async def test_error_notice_marks_errored(transport, fake_connection):
    """Test that a backend error is delivered and marks the transport Errored."""
    with patch("streamscribe.transport.connect", AsyncMock(return_value=fake_connection)):
        await transport.connect()

    fake_connection.push_json({"Errors": [{"Message": "LimitExceeded"}]})
    fake_connection.end()

    events = [event async for event in transport.events()]
    assert events == [ErrorNotice("LimitExceeded")]
    assert transport.state is TransportState.ERRORED

    with pytest.raises(InvalidStateError):
        await transport.send(b"\x00\x00")


@pytest.mark.asyncio
async def test_events_abnormal_close(transport, fake_connection):
    """Test that an abnormal close raises ConnectError."""
    with patch("streamscribe.transport.connect", AsyncMock(return_value=fake_connection)):
        await transport.connect()
    fake_connection.fail()

    with pytest.raises(ConnectError):
        async for _ in transport.events():
            pass
    assert transport.state is TransportState.ERRORED


@pytest.mark.asyncio
async def test_close_is_idempotent(transport, fake_connection):
    """Test that close closes the connection exactly once."""
    with patch("streamscribe.transport.connect", AsyncMock(return_value=fake_connection)):
        await transport.connect()

    await transport.close()
    await transport.close()

    assert transport.state is TransportState.CLOSED
    fake_connection.close.assert_awaited_once()


@pytest.mark.asyncio
async def test_close_ends_event_stream(transport, fake_connection):
    """Test that closing locally ends a pending events() iteration."""
    with patch("streamscribe.transport.connect", AsyncMock(return_value=fake_connection)):
        await transport.connect()

    received = []

    async def consume():
        async for event in transport.events():
            received.append(event)

    consumer = asyncio.create_task(consume())
    fake_connection.push_partial("x")
    await asyncio.sleep(0.01)
    await transport.close()
    await asyncio.wait_for(consumer, timeout=1.0)

    assert received == [PartialTranscript("x", 0)]


@pytest.mark.asyncio
async def test_close_before_connect(transport):
    """Test that closing an unused transport is allowed."""
    await transport.close()
    assert transport.state is TransportState.CLOSED


def test_stream_url_adds_missing_parameters():
    """Test that language and sample rate are appended to a bare endpoint."""
    url = build_stream_url("wss://backend.test/stream?token=abc", "en-US", 8000)

    assert url == "wss://backend.test/stream?token=abc&language-code=en-US&sample-rate=8000"


def test_stream_url_keeps_presigned_parameters():
    """Test that parameters already in the endpoint are left untouched."""
    endpoint = (
        "wss://transcribestreaming.test:8443/stream-transcription-websocket"
        "?language-code=zh-TW&sample-rate=16000&X-Amz-Signature=abc%2Fdef"
    )

    assert build_stream_url(endpoint, "en-US", 8000) == endpoint


@pytest.mark.asyncio
async def test_connect_uses_configured_language(fake_connection):
    """Test that the configured language code reaches the handshake URL."""
    transport = TranscriptionTransport(
        TranscribeConfig(endpoint=ENDPOINT, language_code="ja-JP")
    )
    with patch(
        "streamscribe.transport.connect", AsyncMock(return_value=fake_connection)
    ) as mock_connect:
        await transport.connect()

    assert "language-code=ja-JP" in mock_connect.call_args.args[0]
