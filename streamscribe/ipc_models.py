"""IPC command and response models for the streamscribe daemon."""

import json
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, Field, RootModel

from .state import SessionSnapshot


class StartCommand(BaseModel):
    """Command to start a transcription session."""

    command: Literal["start"] = "start"


class StopCommand(BaseModel):
    """Command to stop the current session."""

    command: Literal["stop"] = "stop"


class ToggleCommand(BaseModel):
    """Command to start a session if none is active, otherwise stop it."""

    command: Literal["toggle"] = "toggle"


class ClearCommand(BaseModel):
    """Command to discard the transcript."""

    command: Literal["clear"] = "clear"


class StatusCommand(BaseModel):
    """Command to get the session snapshot."""

    command: Literal["status"] = "status"


class SubscribeCommand(BaseModel):
    """Command to subscribe to session change notifications."""

    command: Literal["subscribe"] = "subscribe"


class ShutdownCommand(BaseModel):
    """Command to shut down the daemon."""

    command: Literal["shutdown"] = "shutdown"


DaemonCommand = Annotated[
    Union[
        StartCommand,
        StopCommand,
        ToggleCommand,
        ClearCommand,
        StatusCommand,
        SubscribeCommand,
        ShutdownCommand,
    ],
    Field(discriminator="command"),
]


class CommandWrapper(RootModel[DaemonCommand]):
    """Wrapper model for parsing incoming commands."""

    root: DaemonCommand


class SessionModel(BaseModel):
    """Serializable view of a SessionSnapshot."""

    status: str
    partial_text: str = ""
    final_text: str = ""
    last_error: Optional[str] = None

    @classmethod
    def from_snapshot(cls, snapshot: SessionSnapshot) -> "SessionModel":
        return cls(
            status=snapshot.status.value,
            partial_text=snapshot.partial_text,
            final_text=snapshot.final_text,
            last_error=snapshot.last_error,
        )


class AckResponse(BaseModel):
    """Acknowledgment carrying the session after the command ran."""

    response_type: Literal["ack"] = "ack"
    session: Optional[SessionModel] = None


class StatusResponse(BaseModel):
    """Response containing the session snapshot."""

    response_type: Literal["status"] = "status"
    session: SessionModel


class ErrorResponse(BaseModel):
    """Response indicating an error."""

    response_type: Literal["error"] = "error"
    message: str


class StateNotification(BaseModel):
    """Notification broadcast when the session changes."""

    response_type: Literal["state_change"] = "state_change"
    session: SessionModel


DaemonResponse = Annotated[
    Union[AckResponse, StatusResponse, ErrorResponse, StateNotification],
    Field(discriminator="response_type"),
]


class ResponseWrapper(RootModel[DaemonResponse]):
    """Wrapper model for serializing outgoing and parsing incoming responses."""

    root: DaemonResponse

    def to_line(self) -> bytes:
        """Serialize as one newline-terminated JSON line."""
        return self.model_dump_json().encode("utf-8") + b"\n"

    @classmethod
    def from_line(cls, line: Union[str, bytes]) -> "ResponseWrapper":
        """Parse one JSON line sent by the daemon."""
        if isinstance(line, bytes):
            line = line.decode("utf-8")
        try:
            data = json.loads(line)
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON: {e}") from e
        return cls.model_validate(data)
