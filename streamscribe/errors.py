"""Error taxonomy for the streaming pipeline."""


class PipelineError(Exception):
    """Base class for all pipeline errors."""


class CaptureError(PipelineError):
    """The microphone could not be acquired or stopped delivering audio."""


class ConnectError(PipelineError):
    """The transcription backend could not be reached or the connection dropped."""


class InvalidStateError(PipelineError):
    """An operation was requested in a state that does not allow it."""


class BackendProtocolError(PipelineError):
    """The backend reported an error inside the event stream."""


class EncodingError(PipelineError):
    """Audio samples could not be converted to PCM."""
