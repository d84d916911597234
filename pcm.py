"""Fixed-width sample buffers: int16 little-endian PCM, float conversion, WAV container."""

from __future__ import annotations

import io
import struct
import wave
from dataclasses import dataclass
from typing import Union

import numpy as np

from events import EncodingError

WAV_HEADER_SIZE = 44
SAMPLE_WIDTH = 2  # bytes, 16-bit signed
PCM_DTYPE = np.dtype("<i2")

FrameLike = Union[bytes, bytearray, memoryview, np.ndarray]


def bytes_to_samples(data: Union[bytes, bytearray, memoryview]) -> np.ndarray:
    """Interpret raw bytes as little-endian int16 samples."""
    raw = bytes(data)
    if len(raw) % SAMPLE_WIDTH:
        raise EncodingError(f"PCM buffer has odd length {len(raw)}")
    return np.frombuffer(raw, dtype=PCM_DTYPE).astype(np.int16)


def samples_to_bytes(samples: np.ndarray) -> bytes:
    return np.asarray(samples, dtype=np.int16).astype(PCM_DTYPE, copy=False).tobytes()


def float_to_int16(samples: np.ndarray) -> np.ndarray:
    """[-1.0, 1.0] floats to int16; negatives scale by 32768, positives by 32767."""
    data = np.clip(np.asarray(samples, dtype=np.float64), -1.0, 1.0)
    scaled = np.where(data < 0, data * 32768.0, data * 32767.0)
    return np.floor(scaled).astype(np.int16)


def int16_to_float(samples: np.ndarray) -> np.ndarray:
    return (np.asarray(samples, dtype=np.float32) / 32768.0).clip(-1.0, 1.0)


def as_int16_frame(data: FrameLike) -> np.ndarray:
    """Normalise whatever a capture path hands us into a mono int16 array."""
    if isinstance(data, (bytes, bytearray, memoryview)):
        return bytes_to_samples(data)
    arr = np.asarray(data)
    if arr.ndim > 1:
        arr = arr[:, 0]
    if arr.dtype == np.int16:
        return arr.copy()
    if np.issubdtype(arr.dtype, np.floating):
        return float_to_int16(arr)
    if np.issubdtype(arr.dtype, np.integer):
        return np.clip(arr, -32768, 32767).astype(np.int16)
    raise EncodingError(f"Unsupported sample dtype: {arr.dtype}")


def rms(samples: np.ndarray) -> float:
    """Root mean square normalised to full scale (0.0 – 1.0)."""
    if samples.size == 0:
        return 0.0
    data = samples.astype(np.float64) / 32768.0
    return float(np.sqrt(np.mean(np.square(data))))


def encode_wav(samples: np.ndarray, sample_rate: int) -> bytes:
    """Canonical 44-byte-header WAV: mono, 16-bit signed little-endian."""
    if sample_rate <= 0:
        raise EncodingError(f"Invalid sample rate: {sample_rate}")
    try:
        buffer = io.BytesIO()
        with wave.open(buffer, "wb") as wf:
            wf.setnchannels(1)
            wf.setsampwidth(SAMPLE_WIDTH)
            wf.setframerate(sample_rate)
            wf.writeframes(samples_to_bytes(samples))
        return buffer.getvalue()
    except (wave.Error, struct.error, ValueError) as exc:
        raise EncodingError(f"WAV encoding failed: {exc}") from exc


@dataclass(frozen=True)
class WavHeader:
    channels: int
    sample_rate: int
    bits_per_sample: int
    byte_rate: int
    block_align: int
    data_size: int
    riff_size: int


_HEADER = struct.Struct("<4sI4s4sIHHIIHH4sI")


def parse_wav_header(data: bytes) -> WavHeader:
    if len(data) < WAV_HEADER_SIZE:
        raise EncodingError(f"WAV payload shorter than header ({len(data)} bytes)")
    (
        riff,
        riff_size,
        wave_tag,
        fmt_tag,
        fmt_size,
        audio_format,
        channels,
        sample_rate,
        byte_rate,
        block_align,
        bits,
        data_tag,
        data_size,
    ) = _HEADER.unpack_from(data)
    if riff != b"RIFF" or wave_tag != b"WAVE" or fmt_tag != b"fmt " or data_tag != b"data":
        raise EncodingError("Not a canonical RIFF/WAVE container")
    if fmt_size != 16 or audio_format != 1:
        raise EncodingError("Only linear PCM WAV is supported")
    return WavHeader(
        channels=channels,
        sample_rate=sample_rate,
        bits_per_sample=bits,
        byte_rate=byte_rate,
        block_align=block_align,
        data_size=data_size,
        riff_size=riff_size,
    )


__all__ = [
    "WAV_HEADER_SIZE",
    "WavHeader",
    "as_int16_frame",
    "bytes_to_samples",
    "encode_wav",
    "float_to_int16",
    "int16_to_float",
    "parse_wav_header",
    "rms",
    "samples_to_bytes",
]
