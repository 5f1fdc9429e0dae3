"""Tests for WAV archival."""

import struct

import soundfile as sf

from streamscribe.encoder import encode_pcm16
from streamscribe.wav import encode_wav, write_wav


def test_wav_header_fields():
    """Test the RIFF/WAVE header for mono 16-bit PCM."""
    pcm = encode_pcm16([0.0, 0.5, -1.0, 1.0])
    data = encode_wav(pcm, 16000)

    assert data[0:4] == b"RIFF"
    assert struct.unpack("<I", data[4:8])[0] == len(data) - 8
    assert data[8:12] == b"WAVE"
    assert data[12:16] == b"fmt "

    _, audio_format, channels, rate, byte_rate, block_align, bits = struct.unpack(
        "<IHHIIHH", data[16:36]
    )
    assert audio_format == 1
    assert channels == 1
    assert rate == 16000
    assert byte_rate == 32000
    assert block_align == 2
    assert bits == 16

    data_offset = data.index(b"data")
    assert struct.unpack("<I", data[data_offset + 4 : data_offset + 8])[0] == len(pcm)
    assert data[data_offset + 8 :] == pcm


def test_write_wav_round_trips_samples(tmp_path):
    """Test that the written file holds the same samples and rate."""
    path = tmp_path / "nested" / "session.wav"
    pcm = encode_pcm16([0.25, -0.25, 0.0, 1.0])

    result = write_wav(path, pcm, 8000)

    assert result == path
    samples, rate = sf.read(path, dtype="int16")
    assert rate == 8000
    assert samples.astype("<i2").tobytes() == pcm
