"""Audio capture module."""

import asyncio
import logging
from enum import Enum
from typing import AsyncIterator, Callable, Optional, Union

import numpy as np

from .errors import CaptureError, InvalidStateError

logger = logging.getLogger(__name__)

# Settings required by the transcription backend
SAMPLE_RATE = 16000
NUM_CHANNELS = 1
AUDIO_DTYPE = np.float32
FRAME_SIZE = 1024


def open_input_stream(
    sample_rate: int,
    frame_size: int,
    callback: Callable,
    finished_callback: Callable[[], None],
    device: Optional[Union[int, str]] = None,
):
    """Open (but do not start) a PortAudio input stream via sounddevice."""
    # Imported here so a missing PortAudio library surfaces as a capture error
    import sounddevice as sd

    return sd.InputStream(
        device=device,
        samplerate=sample_rate,
        channels=NUM_CHANNELS,
        dtype=AUDIO_DTYPE,
        blocksize=frame_size,
        callback=callback,
        finished_callback=finished_callback,
    )


class CaptureState(str, Enum):
    """Lifecycle of a capture source. A source is never restarted."""

    IDLE = "Idle"
    RUNNING = "Running"
    STOPPED = "Stopped"


class AudioCaptureSource:
    """Captures fixed-size float frames from the microphone.

    Frames are produced on the device's callback thread and handed to the
    event loop, where they are read in order through read() or frames().
    """

    def __init__(
        self,
        device: Optional[Union[int, str]] = None,
        stream_factory: Optional[Callable] = None,
    ):
        """Initialize audio capture.

        Args:
            device: Input device name or index, None for the system default.
            stream_factory: Callable opening the platform input stream,
                defaults to open_input_stream.
        """
        self.device = device
        self._stream_factory = stream_factory

        self._state = CaptureState.IDLE
        self._stream = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._queue: asyncio.Queue = asyncio.Queue()
        self._ended = False
        self._ended_unexpectedly = False
        self.sample_rate: Optional[int] = None
        self.frame_size: Optional[int] = None

    @property
    def state(self) -> CaptureState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state is CaptureState.RUNNING

    @property
    def ended_unexpectedly(self) -> bool:
        """True if the device stopped delivering audio without stop() being called."""
        return self._ended_unexpectedly

    def _audio_callback(self, indata: np.ndarray, frames: int, time_info, status) -> None:
        """Device-thread callback for each captured block."""
        if status:
            logger.warning(f"Audio callback status: {status}")

        frame = np.array(indata[:, 0], dtype=AUDIO_DTYPE, copy=True)
        try:
            self._loop.call_soon_threadsafe(self._enqueue, frame)
        except RuntimeError:
            # Event loop already closed; the session is gone
            logger.debug("Dropping audio frame, event loop is closed")

    def _finished_callback(self) -> None:
        """Device-thread callback once the stream has finished."""
        try:
            self._loop.call_soon_threadsafe(self._on_stream_finished)
        except RuntimeError:
            logger.debug("Audio stream finished after event loop closed")

    def _enqueue(self, frame: np.ndarray) -> None:
        if self._state is CaptureState.RUNNING:
            self._queue.put_nowait(frame)

    def _on_stream_finished(self) -> None:
        if self._state is not CaptureState.RUNNING:
            return

        logger.error("Audio stream finished unexpectedly")
        self._ended_unexpectedly = True
        self._state = CaptureState.STOPPED
        stream, self._stream = self._stream, None
        if stream is not None:
            try:
                stream.close()
            except Exception as e:
                logger.warning(f"Error closing finished audio stream: {e}")
        self._queue.put_nowait(None)

    async def start(self, sample_rate: int = SAMPLE_RATE, frame_size: int = FRAME_SIZE) -> None:
        """Acquire the microphone and begin producing frames.

        Args:
            sample_rate: Required capture rate in Hz. No resampling is done.
            frame_size: Samples per frame.

        Raises:
            InvalidStateError: If the source was already started.
            CaptureError: If the device cannot be opened at the requested rate.
        """
        if self._state is not CaptureState.IDLE:
            raise InvalidStateError(f"Audio capture cannot start from state {self._state.value}")

        logger.info(
            f"Starting audio capture (Device: {self.device or 'default'}, "
            f"Rate: {sample_rate}Hz, Frame: {frame_size} samples)"
        )
        self._loop = asyncio.get_running_loop()

        stream_factory = self._stream_factory or open_input_stream
        try:
            stream = stream_factory(
                sample_rate,
                frame_size,
                self._audio_callback,
                self._finished_callback,
                device=self.device,
            )
        except Exception as e:
            self._state = CaptureState.STOPPED
            logger.error(f"Failed to open microphone: {e}")
            raise CaptureError(f"Could not open microphone: {e}") from e

        actual_rate = int(getattr(stream, "samplerate", sample_rate))
        if actual_rate != sample_rate:
            stream.close()
            self._state = CaptureState.STOPPED
            raise CaptureError(
                f"Microphone runs at {actual_rate}Hz but {sample_rate}Hz is required"
            )

        self._stream = stream
        self._state = CaptureState.RUNNING
        try:
            stream.start()
        except Exception as e:
            self._state = CaptureState.STOPPED
            self._stream = None
            stream.close()
            logger.error(f"Failed to start microphone stream: {e}")
            raise CaptureError(f"Could not start microphone: {e}") from e

        self.sample_rate = sample_rate
        self.frame_size = frame_size
        logger.info("Audio capture started")

    async def stop(self) -> None:
        """Release the microphone. Safe to call repeatedly."""
        if self._state is CaptureState.STOPPED:
            return

        logger.info("Stopping audio capture")
        self._state = CaptureState.STOPPED

        stream, self._stream = self._stream, None
        if stream is not None:
            try:
                await asyncio.to_thread(stream.stop)
            except Exception as e:
                logger.warning(f"Error stopping audio stream: {e}")
            finally:
                stream.close()

        self._queue.put_nowait(None)
        logger.info("Audio capture stopped")

    async def read(self) -> Optional[np.ndarray]:
        """Return the next frame, or None once the source has ended."""
        if self._state is CaptureState.IDLE:
            raise InvalidStateError("Audio capture has not been started")
        if self._ended:
            return None

        frame = await self._queue.get()
        if frame is None:
            self._ended = True
        return frame

    async def frames(self) -> AsyncIterator[np.ndarray]:
        """Iterate over captured frames until the source ends."""
        while True:
            frame = await self.read()
            if frame is None:
                return
            yield frame
