"""Shared fakes for the microphone and the backend websocket."""

import asyncio
import json
from typing import List, Optional
from unittest.mock import AsyncMock

import numpy as np
import pytest
from websockets.exceptions import ConnectionClosedError, ConnectionClosedOK

_CLOSED = object()


class FakeConnection:
    """Stands in for a websockets ClientConnection."""

    def __init__(self):
        self.sent: List[object] = []
        self.log: List[tuple] = []
        self.closed = False
        self._incoming: asyncio.Queue = asyncio.Queue()
        self.close = AsyncMock(side_effect=self._close)

    async def _close(self) -> None:
        self.log.append(("close",))
        self.closed = True
        self._incoming.put_nowait(_CLOSED)

    async def send(self, message) -> None:
        if self.closed:
            raise ConnectionClosedOK(None, None)
        self.sent.append(message)
        self.log.append(("send", message))

    def push(self, message) -> None:
        """Queue a raw message from the backend."""
        self._incoming.put_nowait(message)

    def push_json(self, data: dict) -> None:
        self.push(json.dumps(data, ensure_ascii=False))

    def push_partial(self, text: str) -> None:
        self.push_json(transcript_message(text, is_partial=True))

    def push_final(self, text: str) -> None:
        self.push_json(transcript_message(text, is_partial=False))

    def end(self) -> None:
        """Backend closes the connection normally."""
        self._incoming.put_nowait(_CLOSED)

    def fail(self) -> None:
        """Backend connection drops."""
        self._incoming.put_nowait(ConnectionClosedError(None, None))

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self._incoming.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        if isinstance(item, BaseException):
            raise item
        return item


class FakeCapture:
    """Stands in for AudioCaptureSource with frames fed by the test."""

    def __init__(self, start_error: Optional[Exception] = None):
        self.start_error = start_error
        self.started = False
        self.stop_calls = 0
        self.ended_unexpectedly = False
        self._queue: asyncio.Queue = asyncio.Queue()
        self._running = False

    async def start(self, sample_rate: int, frame_size: int) -> None:
        if self.start_error is not None:
            raise self.start_error
        self.started = True
        self._running = True

    async def stop(self) -> None:
        self.stop_calls += 1
        if self._running:
            self._running = False
            self._queue.put_nowait(None)

    def feed(self, frame) -> None:
        if self._running:
            self._queue.put_nowait(np.asarray(frame, dtype=np.float32))

    def device_lost(self) -> None:
        self.ended_unexpectedly = True
        self._running = False
        self._queue.put_nowait(None)

    async def read(self):
        return await self._queue.get()


def transcript_message(text: str, is_partial: bool) -> dict:
    return {
        "TranscriptEvent": {
            "Transcript": {
                "Results": [
                    {"Alternatives": [{"Transcript": text}], "IsPartial": is_partial}
                ]
            }
        }
    }


async def settle(rounds: int = 10) -> None:
    """Let pending tasks on the event loop run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


async def eventually(predicate, timeout: float = 2.0) -> None:
    """Wait until predicate() is true or fail after timeout."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("Condition not met before timeout")
        await asyncio.sleep(0.01)


@pytest.fixture
def fake_connection():
    """Create a fake backend connection."""
    return FakeConnection()
