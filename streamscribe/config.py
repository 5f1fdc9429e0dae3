"""Configuration handling for the streamscribe daemon."""

import getpass
import os
import tomllib
from pathlib import Path
from typing import Literal, Optional, Union

from pydantic import BaseModel, Field, field_validator, model_validator


def get_default_config_path() -> Path:
    """Get the default config file path following the XDG base directory layout."""
    xdg_config = os.environ.get("XDG_CONFIG_HOME")
    if xdg_config:
        base_dir = Path(xdg_config)
    else:
        base_dir = Path.home() / ".config"

    return base_dir / "streamscribe" / "config.toml"


def get_default_socket_path() -> Path:
    """Get the default socket path following the XDG base directory layout."""
    xdg_runtime_dir = os.environ.get("XDG_RUNTIME_DIR")
    if xdg_runtime_dir:
        sock_dir = Path(xdg_runtime_dir) / "streamscribe"
        try:
            sock_dir.mkdir(parents=True, exist_ok=True)
            if not os.access(sock_dir, os.W_OK | os.X_OK):
                raise OSError("Insufficient permissions for XDG runtime dir.")
            return sock_dir / "daemon.sock"
        except (OSError, PermissionError) as e:
            print(
                f"Warning: Could not use XDG_RUNTIME_DIR ({e}), falling back to /tmp."
            )

    uid = getpass.getuser()
    return Path(f"/tmp/streamscribe-{uid}.sock")


def get_default_log_path() -> Path:
    """Get the default log file path following the XDG base directory layout."""
    xdg_state = os.environ.get("XDG_STATE_HOME")
    if xdg_state:
        base_dir = Path(xdg_state)
    else:
        base_dir = Path.home() / ".local" / "state"

    log_dir = base_dir / "streamscribe"
    log_dir.mkdir(parents=True, exist_ok=True)
    return log_dir / "streamscribed.log"


def get_default_archive_dir() -> Path:
    """Get the default directory for archived recordings following the XDG base directory layout."""
    xdg_data = os.environ.get("XDG_DATA_HOME")
    if xdg_data:
        base_dir = Path(xdg_data)
    else:
        base_dir = Path.home() / ".local" / "share"

    return base_dir / "streamscribe" / "recordings"


class AudioConfig(BaseModel):
    """Microphone capture configuration."""

    sample_rate: int = Field(
        default=16000, gt=0, description="Capture sample rate in Hz."
    )
    frame_size: int = Field(
        default=1024, gt=0, description="Samples per frame delivered by the device."
    )
    device: Optional[Union[int, str]] = Field(
        default=None, description="Input device name or index (None = system default)."
    )


class AggregatorConfig(BaseModel):
    """Outbound chunk aggregation configuration.

    Leaving both thresholds unset sends the whole recording as one chunk on stop.
    """

    max_chunks: Optional[int] = Field(
        default=5, ge=1, description="Encoded frames per outbound chunk."
    )
    max_interval_s: Optional[float] = Field(
        default=1.0,
        gt=0,
        description="Maximum time audio may wait in the buffer before sending (s).",
    )


class TranscribeConfig(BaseModel):
    """Transcription backend configuration."""

    endpoint: str = Field(
        default="ws://localhost:8080/stream-transcription",
        description="Websocket URL of the streaming transcription endpoint.",
    )
    sample_rate: int = Field(
        default=16000, gt=0, description="Sample rate accepted by the backend (Hz)."
    )
    language_code: str = Field(
        default="zh-TW", description="Language code of the spoken audio."
    )
    framing: Literal["binary", "json"] = Field(
        default="binary",
        description="Outbound framing: raw binary PCM or base64 AudioEvent JSON.",
    )
    open_timeout_s: float = Field(
        default=10.0, gt=0, description="Timeout for the connection handshake (s)."
    )
    close_timeout_s: float = Field(
        default=2.0, gt=0, description="Timeout for the closing handshake (s)."
    )

    @field_validator("endpoint")
    @classmethod
    def check_endpoint_scheme(cls, v: str) -> str:
        if not v.startswith(("ws://", "wss://")):
            raise ValueError("Transcription endpoint must be a ws:// or wss:// URL")
        return v


class ArchiveConfig(BaseModel):
    """Archival of captured audio as WAV files."""

    enabled: bool = Field(
        default=False, description="Write each session's audio to a WAV file."
    )
    directory: Optional[Path] = Field(
        default=None, description="Optional custom directory for recordings."
    )

    @property
    def computed_directory(self) -> Path:
        return self.directory or get_default_archive_dir()


class DaemonConfig(BaseModel):
    """Daemon runtime configuration."""

    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL).",
    )
    log_file: Optional[Path] = Field(
        default=None, description="Optional custom log file path."
    )
    socket_path: Optional[Path] = Field(
        default=None, description="Optional custom socket path for IPC."
    )

    @field_validator("log_level")
    @classmethod
    def check_log_level(cls, v: str) -> str:
        allowed_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        upper_v = v.upper()
        if upper_v not in allowed_levels:
            raise ValueError(f"Invalid log level. Choose from {allowed_levels}")
        return upper_v

    @property
    def computed_log_file(self) -> Path:
        return self.log_file or get_default_log_path()

    @property
    def computed_socket_path(self) -> Path:
        return self.socket_path or get_default_socket_path()


class AppConfig(BaseModel):
    """Root configuration."""

    audio: AudioConfig = Field(default_factory=AudioConfig)
    aggregator: AggregatorConfig = Field(default_factory=AggregatorConfig)
    transcribe: TranscribeConfig = Field(default_factory=TranscribeConfig)
    archive: ArchiveConfig = Field(default_factory=ArchiveConfig)
    daemon: DaemonConfig = Field(default_factory=DaemonConfig)

    @model_validator(mode="after")
    def check_sample_rates_match(self) -> "AppConfig":
        # Audio is never resampled, so capture must run at the backend's rate.
        if self.audio.sample_rate != self.transcribe.sample_rate:
            raise ValueError(
                f"audio.sample_rate ({self.audio.sample_rate}) does not match "
                f"transcribe.sample_rate ({self.transcribe.sample_rate})"
            )
        return self


def load_config(path: Optional[Path] = None) -> AppConfig:
    """Load and validate configuration.

    If path is not provided, looks for config in standard locations.
    If no config file is found, returns default configuration.

    Args:
        path: Optional path to config file.

    Returns:
        Validated AppConfig instance.

    Raises:
        ValueError: If config file exists but has invalid format/content.
        OSError: If config file exists but can't be read.
    """
    if path is None:
        path = get_default_config_path()

    if not path.exists():
        return AppConfig()

    try:
        with open(path, "rb") as f:
            config_data = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ValueError(f"Error decoding TOML file: {path}\n{e}") from e
    except OSError as e:
        raise OSError(f"Error reading file: {path}\n{e}") from e

    try:
        return AppConfig(**config_data)
    except Exception as e:
        raise ValueError(f"Configuration validation failed for {path}: {e}") from e
