"""WAV container for archived PCM audio."""

import io
import logging
from pathlib import Path

import numpy as np
import soundfile as sf

from .encoder import BYTES_PER_SAMPLE, PCM16_DTYPE

logger = logging.getLogger(__name__)

NUM_CHANNELS = 1


def encode_wav(pcm: bytes, sample_rate: int) -> bytes:
    """Wrap mono 16-bit little-endian PCM in a RIFF/WAVE container."""
    audio = np.frombuffer(pcm, dtype=PCM16_DTYPE)
    buffer = io.BytesIO()
    with sf.SoundFile(
        buffer,
        mode="w",
        samplerate=sample_rate,
        channels=NUM_CHANNELS,
        subtype="PCM_16",
        format="WAV",
    ) as sound_file:
        sound_file.write(audio)
    return buffer.getvalue()


def write_wav(path: Path, pcm: bytes, sample_rate: int) -> Path:
    """Write PCM audio to a WAV file, creating parent directories."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(encode_wav(pcm, sample_rate))
    duration = len(pcm) / (BYTES_PER_SAMPLE * sample_rate)
    logger.info(f"Archived {duration:.1f}s of audio to {path}")
    return path
