"""Transcript events and the backend's JSON wire format."""

import json
import logging
from dataclasses import dataclass
from typing import List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import BackendProtocolError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PartialTranscript:
    """Revisable recognition result for the utterance in progress."""

    text: str
    result_index: int = 0
    result_id: Optional[str] = None


@dataclass(frozen=True)
class FinalTranscript:
    """Recognition result the backend will not revise."""

    text: str
    result_index: int = 0
    result_id: Optional[str] = None


@dataclass(frozen=True)
class ErrorNotice:
    """Error reported by the backend inside the event stream."""

    message: str


TranscriptEvent = Union[PartialTranscript, FinalTranscript, ErrorNotice]


class _WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class WireAlternative(_WireModel):
    transcript: str = Field(default="", alias="Transcript")


class WireResult(_WireModel):
    alternatives: List[WireAlternative] = Field(default_factory=list, alias="Alternatives")
    is_partial: bool = Field(default=False, alias="IsPartial")
    result_id: Optional[str] = Field(default=None, alias="ResultId")


class WireTranscript(_WireModel):
    results: List[WireResult] = Field(default_factory=list, alias="Results")


class WireTranscriptEvent(_WireModel):
    transcript: WireTranscript = Field(default_factory=WireTranscript, alias="Transcript")


class WireError(_WireModel):
    message: str = Field(default="", alias="Message")


class BackendMessage(_WireModel):
    """One JSON message pushed by the transcription backend."""

    transcript_event: Optional[WireTranscriptEvent] = Field(
        default=None, alias="TranscriptEvent"
    )
    errors: Optional[List[WireError]] = Field(default=None, alias="Errors")


def events_from_message(message: BackendMessage) -> List[TranscriptEvent]:
    """Convert a parsed backend message into transcript events, in wire order."""
    if message.errors:
        text = ", ".join(e.message for e in message.errors if e.message)
        return [ErrorNotice(message=text or "Unknown backend error")]

    if message.transcript_event is None:
        return []

    events: List[TranscriptEvent] = []
    for index, result in enumerate(message.transcript_event.transcript.results):
        if not result.alternatives:
            continue
        text = result.alternatives[0].transcript
        if result.is_partial:
            events.append(
                PartialTranscript(text=text, result_index=index, result_id=result.result_id)
            )
        else:
            events.append(
                FinalTranscript(text=text, result_index=index, result_id=result.result_id)
            )
    return events


def parse_backend_message(raw: Union[str, bytes]) -> List[TranscriptEvent]:
    """Parse one raw backend message into transcript events.

    Raises:
        BackendProtocolError: If the message is not valid JSON or has the
            wrong shape.
    """
    if isinstance(raw, bytes):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise BackendProtocolError(f"Backend message is not UTF-8: {e}") from e

    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise BackendProtocolError(f"Invalid JSON from backend: {e}") from e

    if not isinstance(data, dict):
        raise BackendProtocolError(f"Unexpected backend message: {raw[:100]}")

    try:
        message = BackendMessage.model_validate(data)
    except ValidationError as e:
        raise BackendProtocolError(f"Malformed backend message: {e}") from e

    return events_from_message(message)
