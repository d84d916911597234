from __future__ import annotations
import os

# === Simple knobs (edit these numbers if you dislike envs) ===
STT_MODEL = os.environ.get("STT_MODEL", "whisper-1")
STT_LANGUAGE = os.environ.get("STT_LANGUAGE", "en")

# Chunk shaping + hint window (milliseconds / words)
CHUNKING = {
    "MIN_MS": int(os.environ.get("QS_CHUNK_MIN_MS", "800")),
    "MAX_GAP_MS": int(os.environ.get("QS_CHUNK_MAX_GAP_MS", "1500")),
    "MAX_WORDS": int(os.environ.get("QS_CHUNK_MAX_WORDS", "40")),
    "HINT_WINDOW_MS": int(os.environ.get("QS_HINT_WINDOW_MS", "2500")),
}

# Transcription fan-out (calls running / chunks waiting)
BACKPRESSURE = {
    "MAX_IN_FLIGHT": int(os.environ.get("QS_MAX_IN_FLIGHT", "2")),
    "MAX_PENDING": int(os.environ.get("QS_MAX_PENDING", "4")),
}

# Write env once so downstream .from_env() picks them up predictably.
os.environ.setdefault("STT_MODEL", STT_MODEL)
os.environ.setdefault("STT_LANGUAGE", STT_LANGUAGE)

os.environ.setdefault("QS_CHUNK_MIN_MS", str(CHUNKING["MIN_MS"]))
os.environ.setdefault("QS_CHUNK_MAX_GAP_MS", str(CHUNKING["MAX_GAP_MS"]))
os.environ.setdefault("QS_CHUNK_MAX_WORDS", str(CHUNKING["MAX_WORDS"]))
os.environ.setdefault("QS_HINT_WINDOW_MS", str(CHUNKING["HINT_WINDOW_MS"]))
os.environ.setdefault("QS_MAX_IN_FLIGHT", str(BACKPRESSURE["MAX_IN_FLIGHT"]))
os.environ.setdefault("QS_MAX_PENDING", str(BACKPRESSURE["MAX_PENDING"]))

# Re-export existing dataclasses and helpers so the rest of the code imports from `config`.
from stream_parameters import (  # noqa: E402
    ChunkPolicy,
    HintConfig,
    StreamConfig,
    TranscriptionConfig,
    load_openai_api_key,
    load_stream_config,
)
