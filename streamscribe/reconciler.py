"""Merges partial and final transcript events into one transcript."""

from dataclasses import dataclass, replace
from typing import Tuple

from .events import ErrorNotice, FinalTranscript, PartialTranscript, TranscriptEvent

SPAN_SEPARATOR = " "


@dataclass(frozen=True)
class TranscriptState:
    """Finalized spans plus the preview of the utterance in progress."""

    final_spans: Tuple[str, ...] = ()
    partial_text: str = ""

    @property
    def final_text(self) -> str:
        return "".join(span + SPAN_SEPARATOR for span in self.final_spans)


def reduce(state: TranscriptState, event: TranscriptEvent) -> TranscriptState:
    """Apply one event to the transcript state.

    Partials replace the preview, finals are appended and clear it, and
    error notices leave the state untouched.
    """
    if isinstance(event, PartialTranscript):
        return replace(state, partial_text=event.text)
    if isinstance(event, FinalTranscript):
        return TranscriptState(final_spans=state.final_spans + (event.text,), partial_text="")
    if isinstance(event, ErrorNotice):
        return state
    raise TypeError(f"Unknown transcript event: {event!r}")


class TranscriptReconciler:
    """Holds the transcript state and folds events into it in arrival order."""

    def __init__(self, state: TranscriptState = TranscriptState()):
        self._state = state

    @property
    def state(self) -> TranscriptState:
        return self._state

    def apply(self, event: TranscriptEvent) -> TranscriptState:
        self._state = reduce(self._state, event)
        return self._state

    def clear(self) -> None:
        self._state = TranscriptState()
