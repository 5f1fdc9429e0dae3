"""Observable session state for the streamscribe daemon."""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, List, Optional

from .reconciler import TranscriptState

logger = logging.getLogger(__name__)


class PipelineStatus(str, Enum):
    """Possible states of a transcription session."""

    IDLE = "Idle"
    REQUESTING_ACCESS = "RequestingAccess"
    CONNECTING = "Connecting"
    STREAMING = "Streaming"
    STOPPING = "Stopping"
    STOPPED = "Stopped"
    ERROR = "Error"


# Statuses in which a session owns the microphone or the connection
ACTIVE_STATUSES = frozenset(
    {
        PipelineStatus.REQUESTING_ACCESS,
        PipelineStatus.CONNECTING,
        PipelineStatus.STREAMING,
        PipelineStatus.STOPPING,
    }
)


@dataclass(frozen=True)
class SessionSnapshot:
    """Everything an observer needs to render the session."""

    status: PipelineStatus
    partial_text: str
    final_text: str
    last_error: Optional[str] = None


class SessionStateManager:
    """Single source of truth for session status, transcript and last error."""

    def __init__(self):
        """Initialize state manager with IDLE status and an empty transcript."""
        self._status: PipelineStatus = PipelineStatus.IDLE
        self._last_error: Optional[str] = None
        self._transcript = TranscriptState()
        self._observers: List[Callable[[SessionSnapshot], Any]] = []

    @property
    def status(self) -> PipelineStatus:
        return self._status

    @property
    def last_error(self) -> Optional[str]:
        return self._last_error

    @property
    def transcript(self) -> TranscriptState:
        return self._transcript

    def add_observer(self, observer: Callable[[SessionSnapshot], Any]) -> None:
        """Add an observer callback, called with a SessionSnapshot on every change."""
        self._observers.append(observer)

    def remove_observer(self, observer: Callable[[SessionSnapshot], Any]) -> None:
        if observer in self._observers:
            self._observers.remove(observer)

    def snapshot(self) -> SessionSnapshot:
        return SessionSnapshot(
            status=self._status,
            partial_text=self._transcript.partial_text,
            final_text=self._transcript.final_text,
            last_error=self._last_error,
        )

    def _notify_observers(self) -> None:
        snapshot = self.snapshot()
        for observer in list(self._observers):
            try:
                observer(snapshot)
            except Exception:
                logger.exception("Session observer failed")

    def set_status(self, new_status: PipelineStatus) -> None:
        """Set the session status.

        Raises:
            TypeError: If the provided status is not a PipelineStatus.
        """
        if not isinstance(new_status, PipelineStatus):
            raise TypeError(f"Status must be a PipelineStatus, got {type(new_status)}")

        # Reset error when moving out of error state
        changed = self._status != new_status
        if new_status != PipelineStatus.ERROR and self._last_error is not None:
            self._last_error = None
            changed = True

        if changed:
            logger.debug(f"Session status: {self._status.value} -> {new_status.value}")
            self._status = new_status
            self._notify_observers()

    def set_error(self, message: str) -> None:
        """Enter the ERROR status with the provided message."""
        changed = self._status != PipelineStatus.ERROR or self._last_error != message
        self._last_error = message
        self._status = PipelineStatus.ERROR

        if changed:
            self._notify_observers()

    def set_transcript(self, transcript: TranscriptState) -> None:
        if transcript != self._transcript:
            self._transcript = transcript
            self._notify_observers()
