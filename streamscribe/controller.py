"""Orchestrates a streaming transcription session."""

import asyncio
import logging
from datetime import datetime
from typing import Optional

from .aggregator import FrameAggregator
from .audio_capture import AudioCaptureSource
from .config import AppConfig
from .encoder import encode_pcm16
from .errors import (
    BackendProtocolError,
    CaptureError,
    ConnectError,
    InvalidStateError,
    PipelineError,
)
from .events import ErrorNotice
from .reconciler import TranscriptReconciler
from .state import ACTIVE_STATUSES, PipelineStatus, SessionSnapshot, SessionStateManager
from .transport import TranscriptionTransport
from .wav import write_wav

logger = logging.getLogger(__name__)

# How often the pump checks the aggregator's time trigger while no audio arrives
AGGREGATOR_POLL_S = 0.1

# Upper bound for draining already captured frames on stop
PUMP_DRAIN_TIMEOUT_S = 5.0

# How long to wait for the receiver to report why the connection left Open
RECEIVER_GRACE_S = 1.0


class PipelineController:
    """Owns one session at a time: capture, aggregation, transport and transcript.

    Every handler runs on the event loop, so the transcript is only ever
    written by the receive task, one event at a time.
    """

    def __init__(
        self,
        config: AppConfig,
        state_manager: Optional[SessionStateManager] = None,
    ):
        """Initialize the controller.

        Args:
            config: Application configuration.
            state_manager: Optional shared state manager; one is created if omitted.
        """
        self.config = config
        self.state_manager = state_manager or SessionStateManager()
        self._reconciler = TranscriptReconciler()

        # Session resources
        self._capture: Optional[AudioCaptureSource] = None
        self._transport: Optional[TranscriptionTransport] = None
        self._aggregator: Optional[FrameAggregator] = None
        self._archive: Optional[bytearray] = None
        self._started_at: Optional[datetime] = None

        # Session tasks
        self._connect_task: Optional[asyncio.Task] = None
        self._pump_task: Optional[asyncio.Task] = None
        self._receive_task: Optional[asyncio.Task] = None
        self._supervisor_task: Optional[asyncio.Task] = None
        self._teardown_task: Optional[asyncio.Task] = None

    @property
    def status(self) -> PipelineStatus:
        return self.state_manager.status

    def snapshot(self) -> SessionSnapshot:
        return self.state_manager.snapshot()

    async def start_session(self) -> None:
        """Acquire the microphone, connect and start streaming.

        Raises:
            InvalidStateError: If a session is already active.
            CaptureError: If the microphone cannot be acquired.
            ConnectError: If the backend handshake fails.
        """
        status = self.state_manager.status
        if status in ACTIVE_STATUSES:
            raise InvalidStateError(f"A session is already active ({status.value})")

        logger.info("Starting transcription session")
        self._teardown_task = None
        self._started_at = datetime.now()
        self._archive = bytearray() if self.config.archive.enabled else None
        self._aggregator = FrameAggregator(
            max_chunks=self.config.aggregator.max_chunks,
            max_interval_s=self.config.aggregator.max_interval_s,
        )

        self.state_manager.set_status(PipelineStatus.REQUESTING_ACCESS)
        self._capture = AudioCaptureSource(device=self.config.audio.device)
        try:
            await self._capture.start(
                self.config.audio.sample_rate, self.config.audio.frame_size
            )
        except CaptureError as e:
            logger.error(f"Session start failed: {e}")
            await asyncio.shield(self._begin_teardown(e))
            raise

        if self.state_manager.status is not PipelineStatus.REQUESTING_ACCESS:
            logger.info("Session stopped while acquiring the microphone")
            return

        self.state_manager.set_status(PipelineStatus.CONNECTING)
        self._transport = TranscriptionTransport(self.config.transcribe)
        self._connect_task = asyncio.create_task(
            self._transport.connect(self.config.transcribe.endpoint)
        )
        try:
            await self._connect_task
        except asyncio.CancelledError:
            if asyncio.current_task().cancelling():
                self._begin_teardown(None)
                raise
            logger.info("Connection handshake cancelled by stop request")
            return
        except ConnectError as e:
            logger.error(f"Session start failed: {e}")
            await asyncio.shield(self._begin_teardown(e))
            raise
        finally:
            self._connect_task = None

        if self.state_manager.status is not PipelineStatus.CONNECTING:
            return

        self.state_manager.set_status(PipelineStatus.STREAMING)
        self._pump_task = asyncio.create_task(self._pump())
        self._receive_task = asyncio.create_task(self._receive())
        self._supervisor_task = asyncio.create_task(self._supervise())
        logger.info("Session streaming")

    async def stop_session(self) -> None:
        """Stop the session, sending any buffered audio first. Safe in any state."""
        if self._teardown_task is not None:
            await asyncio.shield(self._teardown_task)
            return

        if self.state_manager.status not in ACTIVE_STATUSES:
            logger.debug("No active session to stop")
            return

        logger.info("Stopping transcription session")
        await asyncio.shield(self._begin_teardown(None))

    def clear(self) -> None:
        """Discard the transcript.

        Raises:
            InvalidStateError: If a session is active.
        """
        status = self.state_manager.status
        if status in ACTIVE_STATUSES:
            raise InvalidStateError(f"Cannot clear the transcript while {status.value}")

        self._reconciler.clear()
        self.state_manager.set_transcript(self._reconciler.state)
        logger.info("Transcript cleared")

    async def _send(self, chunk: bytes) -> None:
        await self._transport.send(chunk)
        if self._archive is not None:
            self._archive.extend(chunk)

    async def _pump(self) -> None:
        """Move frames from the microphone through the encoder to the backend."""
        capture, aggregator, transport = self._capture, self._aggregator, self._transport
        logger.info("Audio pump started")

        while True:
            try:
                frame = await asyncio.wait_for(capture.read(), timeout=AGGREGATOR_POLL_S)
            except asyncio.TimeoutError:
                chunk = aggregator.poll()
            else:
                if frame is None:
                    if capture.ended_unexpectedly:
                        raise CaptureError("Microphone stopped delivering audio")
                    break
                chunk = aggregator.add(encode_pcm16(frame))

            if not chunk:
                continue
            if not transport.is_open:
                # The receiver reports why the connection left Open
                logger.info(
                    f"Backend connection is {transport.state.value}, "
                    f"dropping {len(chunk)} bytes and stopping audio pump"
                )
                break
            await self._send(chunk)

        logger.info("Audio pump finished")

    async def _receive(self) -> None:
        """Fold backend events into the transcript in arrival order."""
        logger.info("Event receiver started")
        async for event in self._transport.events():
            self.state_manager.set_transcript(self._reconciler.apply(event))
            if isinstance(event, ErrorNotice):
                raise BackendProtocolError(f"Transcription backend error: {event.message}")
        logger.info("Event receiver finished")

    async def _supervise(self) -> None:
        """Turn the first pump or receiver exit into a session failure.

        The receiver's error takes precedence over the pump's.
        """
        pump, receiver = self._pump_task, self._receive_task
        done, _ = await asyncio.wait({pump, receiver}, return_when=asyncio.FIRST_COMPLETED)
        if receiver not in done and not self._transport.is_open:
            await asyncio.wait({receiver}, timeout=RECEIVER_GRACE_S)

        error = None
        for task in (receiver, pump):
            if task.done() and not task.cancelled() and task.exception() is not None:
                error = task.exception()
                break
        if error is None:
            if receiver.done():
                error = ConnectError("Transcription backend closed the connection")
            else:
                error = CaptureError("Audio capture ended")

        logger.error(f"Session failed: {error}")
        self._begin_teardown(error)

    def _begin_teardown(self, error: Optional[BaseException]) -> asyncio.Task:
        """Start the session teardown once; later callers share the same task."""
        if self._teardown_task is None:
            self.state_manager.set_status(PipelineStatus.STOPPING)
            self._teardown_task = asyncio.create_task(self._teardown(error))
        return self._teardown_task

    async def _teardown(self, error: Optional[BaseException]) -> None:
        """Release session resources in stop order: capture, buffer, connection."""
        if self._supervisor_task is not None and not self._supervisor_task.done():
            self._supervisor_task.cancel()
        if self._connect_task is not None and not self._connect_task.done():
            self._connect_task.cancel()

        if self._capture is not None:
            await self._capture.stop()

        if self._pump_task is not None:
            try:
                await asyncio.wait_for(self._pump_task, timeout=PUMP_DRAIN_TIMEOUT_S)
            except asyncio.TimeoutError:
                logger.warning("Timeout draining captured audio")
            except asyncio.CancelledError:
                logger.debug("Audio pump was cancelled")
            except Exception as e:
                logger.debug(f"Audio pump ended with error: {e}")

        residual = self._aggregator.flush() if self._aggregator is not None else None
        if residual:
            if self._transport is not None and self._transport.is_open:
                try:
                    await self._send(residual)
                    logger.info(f"Flushed {len(residual)} bytes of buffered audio")
                except PipelineError as e:
                    logger.error(f"Failed to flush buffered audio: {e}")
                    if error is None:
                        error = e
            else:
                logger.warning(
                    f"Discarding {len(residual)} bytes of buffered audio, "
                    "backend connection is not open"
                )

        if self._transport is not None:
            await self._transport.close()

        if self._receive_task is not None and not self._receive_task.done():
            self._receive_task.cancel()
        if self._receive_task is not None:
            await asyncio.gather(self._receive_task, return_exceptions=True)

        if self._archive:
            await self._write_archive(bytes(self._archive))

        self._capture = None
        self._transport = None
        self._aggregator = None
        self._archive = None
        self._pump_task = None
        self._receive_task = None
        self._supervisor_task = None

        if error is not None:
            self.state_manager.set_error(str(error) or type(error).__name__)
            logger.info("Session ended with error")
        else:
            self.state_manager.set_status(PipelineStatus.STOPPED)
            logger.info("Session stopped")

    async def _write_archive(self, pcm: bytes) -> None:
        directory = self.config.archive.computed_directory
        started = self._started_at or datetime.now()
        path = directory / f"session-{started:%Y%m%d-%H%M%S}.wav"
        try:
            await asyncio.to_thread(
                write_wav, path, pcm, self.config.transcribe.sample_rate
            )
        except OSError as e:
            logger.error(f"Failed to archive session audio to {path}: {e}")
