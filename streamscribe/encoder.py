"""Float to signed 16-bit PCM conversion."""

import numpy as np

from .errors import EncodingError

# Little-endian signed 16-bit, the only layout the backend accepts
PCM16_DTYPE = np.dtype("<i2")
BYTES_PER_SAMPLE = PCM16_DTYPE.itemsize

# Fixed full-scale mapping, identical for every chunk of the stream
POSITIVE_FULL_SCALE = 32767.0
NEGATIVE_FULL_SCALE = 32768.0

# Conversion factor for s16 back to float
INT16_TO_FLOAT32 = 1.0 / 32768.0


def encode_pcm16(samples) -> bytes:
    """Convert float samples in [-1, 1] to little-endian int16 bytes.

    Out-of-range samples are clamped. The scale is fixed, never derived
    from the chunk's own peak, so loudness stays consistent across chunks.

    Args:
        samples: One-dimensional sequence or array of float samples.

    Returns:
        The encoded PCM buffer.

    Raises:
        EncodingError: If the input is not a 1-D array of finite numbers.
    """
    try:
        audio = np.asarray(samples, dtype=np.float64)
    except (TypeError, ValueError) as e:
        raise EncodingError(f"Cannot interpret samples as audio: {e}") from e

    if audio.ndim != 1:
        raise EncodingError(f"Expected mono 1-D samples, got shape {audio.shape}")
    if not np.all(np.isfinite(audio)):
        raise EncodingError("Audio frame contains NaN or infinite samples")

    clipped = np.clip(audio, -1.0, 1.0)
    scaled = np.where(
        clipped < 0, clipped * NEGATIVE_FULL_SCALE, clipped * POSITIVE_FULL_SCALE
    )
    return scaled.astype(PCM16_DTYPE).tobytes()


def decode_pcm16(data: bytes) -> np.ndarray:
    """Convert little-endian int16 bytes back to float32 samples."""
    if len(data) % BYTES_PER_SAMPLE:
        raise EncodingError(f"PCM buffer length {len(data)} is not a whole sample count")
    return np.frombuffer(data, dtype=PCM16_DTYPE).astype(np.float32) * INT16_TO_FLOAT32
