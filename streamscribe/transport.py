"""Duplex websocket channel to the transcription backend."""

import asyncio
import base64
import json
import logging
from enum import Enum
from typing import AsyncIterator, Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed, ConnectionClosedError, WebSocketException

from .config import TranscribeConfig
from .errors import BackendProtocolError, ConnectError, InvalidStateError
from .events import ErrorNotice, TranscriptEvent, parse_backend_message

logger = logging.getLogger(__name__)

# Transcript messages are small, but leave room for long final results
MAX_MESSAGE_SIZE = 1024 * 1024


def build_stream_url(endpoint: str, language_code: str, sample_rate: int) -> str:
    """Add the language-code and sample-rate query parameters to an endpoint.

    Parameters already present, as in a pre-signed URL, are kept untouched.
    """
    parts = urlsplit(endpoint)
    present = {key for key, _ in parse_qsl(parts.query, keep_blank_values=True)}
    missing = [
        (key, value)
        for key, value in (("language-code", language_code), ("sample-rate", str(sample_rate)))
        if key not in present
    ]
    if not missing:
        return endpoint

    query = "&".join(filter(None, [parts.query, urlencode(missing)]))
    return urlunsplit(parts._replace(query=query))


class TransportState(str, Enum):
    """Connection lifecycle states."""

    IDLE = "Idle"
    CONNECTING = "Connecting"
    OPEN = "Open"
    CLOSING = "Closing"
    CLOSED = "Closed"
    ERRORED = "Errored"


class TranscriptionTransport:
    """Sends audio chunks and receives transcript events over one websocket.

    A transport is used for exactly one connection. It never retries; the
    owner decides whether to open a new one.
    """

    def __init__(self, config: TranscribeConfig):
        """Initialize the transport.

        Args:
            config: Transcription backend configuration.
        """
        self.config = config
        self._state = TransportState.IDLE
        self._connection: Optional[ClientConnection] = None
        self.bytes_sent = 0
        self.chunks_sent = 0

    @property
    def state(self) -> TransportState:
        return self._state

    @property
    def is_open(self) -> bool:
        return self._state is TransportState.OPEN

    def _encode_chunk(self, chunk: bytes):
        if self.config.framing == "json":
            payload = base64.b64encode(chunk).decode("ascii")
            return json.dumps({"AudioEvent": {"AudioChunk": payload}})
        return chunk

    async def connect(self, endpoint: Optional[str] = None) -> None:
        """Open the connection to the backend.

        Args:
            endpoint: Websocket URL, defaults to the configured endpoint.

        Raises:
            InvalidStateError: If the transport was already used.
            ConnectError: If the handshake fails.
        """
        if self._state is not TransportState.IDLE:
            raise InvalidStateError(f"Cannot connect from state {self._state.value}")

        endpoint = build_stream_url(
            endpoint or self.config.endpoint,
            self.config.language_code,
            self.config.sample_rate,
        )
        logger.info(f"Connecting to transcription backend at {endpoint}")
        self._state = TransportState.CONNECTING

        try:
            connection = await connect(
                endpoint,
                open_timeout=self.config.open_timeout_s,
                close_timeout=self.config.close_timeout_s,
                max_size=MAX_MESSAGE_SIZE,
            )
        except asyncio.CancelledError:
            logger.info("Connection attempt cancelled")
            self._state = TransportState.CLOSED
            raise
        except (OSError, WebSocketException) as e:
            self._state = TransportState.ERRORED
            logger.error(f"Failed to connect to transcription backend: {e}")
            raise ConnectError(f"Could not connect to {endpoint}: {e}") from e

        if self._state is not TransportState.CONNECTING:
            # close() was called while the handshake was in flight
            await connection.close()
            raise ConnectError("Transport closed during connection handshake")

        self._connection = connection
        self._state = TransportState.OPEN
        logger.info("Transcription backend connection open")

    async def send(self, chunk: bytes) -> None:
        """Send one audio chunk.

        Raises:
            InvalidStateError: If the transport is not open.
            ConnectError: If the connection failed while sending.
        """
        if self._state is not TransportState.OPEN:
            raise InvalidStateError(f"Cannot send while transport is {self._state.value}")

        try:
            await self._connection.send(self._encode_chunk(chunk))
        except ConnectionClosed as e:
            self._state = TransportState.ERRORED
            raise ConnectError(f"Connection lost while sending audio: {e}") from e

        self.bytes_sent += len(chunk)
        self.chunks_sent += 1
        logger.debug(f"Sent chunk #{self.chunks_sent} ({len(chunk)} bytes)")

    async def events(self) -> AsyncIterator[TranscriptEvent]:
        """Iterate over transcript events in the order the backend sent them.

        Ends when the connection closes normally.

        Raises:
            InvalidStateError: If the transport is not open.
            ConnectError: If the connection closes abnormally.
        """
        if self._state is not TransportState.OPEN:
            raise InvalidStateError(f"Cannot receive while transport is {self._state.value}")

        connection = self._connection
        try:
            async for raw in connection:
                try:
                    events = parse_backend_message(raw)
                except BackendProtocolError as e:
                    logger.warning(f"Skipping unreadable backend message: {e}")
                    continue

                for event in events:
                    if isinstance(event, ErrorNotice):
                        logger.error(f"Backend reported an error: {event.message}")
                        self._state = TransportState.ERRORED
                    yield event
        except ConnectionClosedError as e:
            if self._state in (TransportState.CLOSING, TransportState.CLOSED):
                return
            self._state = TransportState.ERRORED
            raise ConnectError(f"Connection to transcription backend lost: {e}") from e

        logger.info("Transcription backend closed the event stream")

    async def close(self) -> None:
        """Close the connection. Closing twice is a no-op."""
        if self._state in (TransportState.CLOSING, TransportState.CLOSED):
            return

        previous = self._state
        self._state = TransportState.CLOSING
        connection, self._connection = self._connection, None

        if connection is not None:
            logger.info(f"Closing transcription backend connection (was {previous.value})")
            try:
                await connection.close()
            except Exception as e:
                logger.warning(f"Error closing backend connection: {e}")

        self._state = TransportState.CLOSED
