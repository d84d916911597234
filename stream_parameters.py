from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

__all__ = [
    "ChunkPolicy",
    "HintConfig",
    "TranscriptionConfig",
    "StreamConfig",
    "load_stream_config",
    "load_openai_api_key",
]


def _env_int(name: str, default: int) -> int:
    val = os.environ.get(name)
    if val is None:
        return default
    try:
        return int(val)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    val = os.environ.get(name)
    if val is None:
        return default
    try:
        return float(val)
    except ValueError:
        return default


def _env_bool(name: str, default: bool) -> bool:
    val = os.environ.get(name)
    if val is None:
        return default
    return val.strip().lower() not in {"0", "false", "no", "off"}


DEFAULT_MODEL = "whisper-1"
DEFAULT_ENDPOINT = "https://api.openai.com/v1/audio/transcriptions"
DEFAULT_LANGUAGE = "en"
DEFAULT_SAMPLE_RATE = 16000


def _default_key_file() -> Path:
    script_dir = Path(__file__).resolve().parent
    candidates = [
        script_dir / "openai_api_key.txt",
        script_dir.parent / "openai_api_key.txt",
    ]
    for path in candidates:
        if path.exists():
            return path
    return candidates[0]


def load_openai_api_key() -> Optional[str]:
    """Load the OpenAI API key from env or a local text file."""
    key = os.environ.get("OPENAI_API_KEY")
    if key:
        key = key.strip()
        if key:
            return key

    key_file = os.environ.get("OPENAI_API_KEY_FILE")
    path = Path(key_file).expanduser() if key_file else _default_key_file()
    if not path.exists():
        return None

    try:
        text = path.read_text(encoding="utf-8").strip()
    except OSError:
        return None
    return text or None


@dataclass
class ChunkPolicy:
    """Thresholds deciding when accumulated audio becomes a chunk."""

    # Rule 1: enough audio for one transcription call
    min_chunk_ms: int = 800
    # Rule 2: worst-case latency, also during silence
    max_gap_ms: int = 1500
    # Rule 3: cap on the running word estimate
    max_words: int = 40

    @classmethod
    def from_env(cls) -> "ChunkPolicy":
        d = cls()
        return cls(
            min_chunk_ms=_env_int("QS_CHUNK_MIN_MS", d.min_chunk_ms),
            max_gap_ms=_env_int("QS_CHUNK_MAX_GAP_MS", d.max_gap_ms),
            max_words=_env_int("QS_CHUNK_MAX_WORDS", d.max_words),
        )


@dataclass
class HintConfig:
    """Rolling-window parameters for the streaming question hint."""

    window_ms: int = 2500
    buffer_entries: int = 15

    @classmethod
    def from_env(cls) -> "HintConfig":
        d = cls()
        return cls(
            window_ms=_env_int("QS_HINT_WINDOW_MS", d.window_ms),
            buffer_entries=_env_int("QS_HINT_BUFFER_ENTRIES", d.buffer_entries),
        )


@dataclass
class TranscriptionConfig:
    """HTTP transcription parameters."""

    model: str = DEFAULT_MODEL
    language: str = DEFAULT_LANGUAGE
    endpoint: str = DEFAULT_ENDPOINT
    timeout_s: float = 30.0
    temperature: float = 0.2
    prompt: Optional[str] = field(default_factory=lambda: os.environ.get("STT_PROMPT"))
    # Normalised RMS below which a chunk is treated as silence and not uploaded
    silence_rms: float = 0.01

    @classmethod
    def from_env(cls) -> "TranscriptionConfig":
        d = cls()
        return cls(
            model=os.environ.get("STT_MODEL", d.model),
            language=os.environ.get("STT_LANGUAGE", d.language),
            endpoint=os.environ.get("STT_ENDPOINT", d.endpoint),
            timeout_s=_env_float("STT_TIMEOUT_S", d.timeout_s),
            temperature=_env_float("STT_TEMPERATURE", d.temperature),
            prompt=os.environ.get("STT_PROMPT", d.prompt),
            silence_rms=_env_float("STT_SILENCE_RMS", d.silence_rms),
        )


@dataclass
class StreamConfig:
    sample_rate: int = DEFAULT_SAMPLE_RATE
    frame_ms: int = 10
    question_detection_enabled: bool = True
    max_in_flight: int = 2
    max_pending: int = 4
    frame_queue_size: int = 256

    chunk: ChunkPolicy = field(default_factory=ChunkPolicy)
    hint: HintConfig = field(default_factory=HintConfig)
    transcription: TranscriptionConfig = field(default_factory=TranscriptionConfig)

    @property
    def frame_samples(self) -> int:
        return self.sample_rate * self.frame_ms // 1000

    @classmethod
    def from_env(cls) -> "StreamConfig":
        d = cls()
        return cls(
            sample_rate=_env_int("QS_SAMPLE_RATE", d.sample_rate),
            frame_ms=_env_int("QS_FRAME_MS", d.frame_ms),
            question_detection_enabled=_env_bool("QS_QUESTION_DETECTION", d.question_detection_enabled),
            max_in_flight=max(1, _env_int("QS_MAX_IN_FLIGHT", d.max_in_flight)),
            max_pending=max(0, _env_int("QS_MAX_PENDING", d.max_pending)),
            frame_queue_size=max(1, _env_int("QS_FRAME_QUEUE_SIZE", d.frame_queue_size)),
            chunk=ChunkPolicy.from_env(),
            hint=HintConfig.from_env(),
            transcription=TranscriptionConfig.from_env(),
        )


def load_stream_config() -> StreamConfig:
    return StreamConfig.from_env()
