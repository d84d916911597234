"""Turns the unbounded frame stream into bounded, transcribable chunks."""

from __future__ import annotations

import logging
import threading
import time
import uuid
from dataclasses import dataclass
from typing import Callable, List, Optional

import numpy as np

from stream_parameters import ChunkPolicy

CHUNK_LOG = logging.getLogger("question_stream.chunker")

REASON_DURATION = "duration"
REASON_GAP = "gap"
REASON_WORDS = "words"
REASON_HINT = "hint"
REASON_FLUSH = "flush"


@dataclass
class AudioChunk:
    """A finalized span of mono int16 samples, consumed once by the transcriber."""

    id: str
    sequence: int
    generation: int
    samples: np.ndarray
    sample_rate: int
    timestamp: float
    word_count: int
    reason: str = REASON_DURATION

    @property
    def sample_count(self) -> int:
        return int(self.samples.size)

    @property
    def duration_ms(self) -> float:
        return self.sample_count * 1000.0 / self.sample_rate


class NullHintSource:
    """Hint source used when streaming question hints are disabled."""

    def observe(self, text: str) -> bool:
        return False

    def has_recent_question_activity(self) -> bool:
        return False

    def acknowledge(self) -> None:
        pass

    def clear(self) -> None:
        pass


class ChunkAccumulator:
    """Buffers frames and closes a chunk when any segmentation rule fires.

    Rules, checked after every frame:

    1. accumulated duration >= ``policy.min_chunk_ms``
    2. time since the previous close >= ``policy.max_gap_ms``
    3. running word estimate >= ``policy.max_words``
    4. the hint source reports question-like activity

    The word estimate is a words-per-millisecond rate learned from earlier
    transcripts applied to the audio currently buffered.
    """

    def __init__(
        self,
        policy: ChunkPolicy,
        sample_rate: int,
        on_chunk: Callable[[AudioChunk], None],
        *,
        hint_source=None,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], float] = time.time,
    ):
        self.policy = policy
        self.sample_rate = sample_rate
        self.on_chunk = on_chunk
        self.hint_source = hint_source or NullHintSource()
        self._clock = clock
        self._wall_clock = wall_clock
        self._lock = threading.Lock()
        self._frames: List[np.ndarray] = []
        self._sample_count = 0
        self._last_close: Optional[float] = None
        self._sequence = 0
        self._generation = 0
        self._words_per_ms: Optional[float] = None

    # ---- state ---------------------------------------------------------

    @property
    def accumulated_ms(self) -> float:
        with self._lock:
            return self._sample_count * 1000.0 / self.sample_rate

    @property
    def estimated_words(self) -> int:
        with self._lock:
            return self._estimate_words_locked()

    @property
    def generation(self) -> int:
        return self._generation

    def reset(self, generation: Optional[int] = None) -> None:
        """Drop the in-progress accumulation; sequence numbers restart per generation."""
        with self._lock:
            self._frames.clear()
            self._sample_count = 0
            self._last_close = None
            self._words_per_ms = None
            if generation is not None and generation != self._generation:
                self._generation = generation
                self._sequence = 0

    def record_transcript(self, word_count: int, duration_ms: float) -> None:
        if duration_ms <= 0:
            return
        rate = max(0, word_count) / duration_ms
        with self._lock:
            if self._words_per_ms is None:
                self._words_per_ms = rate
            else:
                self._words_per_ms = 0.7 * self._words_per_ms + 0.3 * rate

    # ---- ingestion -----------------------------------------------------

    def push(self, frame: np.ndarray) -> Optional[AudioChunk]:
        """Append one frame; returns the chunk if this frame closed one."""
        if frame.size == 0:
            return None
        with self._lock:
            now = self._clock()
            if self._last_close is None:
                self._last_close = now
            self._frames.append(frame)
            self._sample_count += int(frame.size)
            reason = self._close_reason_locked(now)
            chunk = self._close_locked(reason, now) if reason else None
        if chunk is not None:
            self._hand_off(chunk)
        return chunk

    def flush(self) -> Optional[AudioChunk]:
        with self._lock:
            chunk = self._close_locked(REASON_FLUSH, self._clock())
        if chunk is not None:
            self._hand_off(chunk)
        return chunk

    # ---- helpers -------------------------------------------------------

    def _estimate_words_locked(self) -> int:
        if self._words_per_ms is None:
            return 0
        return int(round(self._words_per_ms * self._sample_count * 1000.0 / self.sample_rate))

    def _close_reason_locked(self, now: float) -> Optional[str]:
        accumulated_ms = self._sample_count * 1000.0 / self.sample_rate
        if accumulated_ms >= self.policy.min_chunk_ms:
            return REASON_DURATION
        if self._last_close is not None and (now - self._last_close) * 1000.0 >= self.policy.max_gap_ms:
            return REASON_GAP
        if self._estimate_words_locked() >= self.policy.max_words:
            return REASON_WORDS
        if self.hint_source.has_recent_question_activity():
            return REASON_HINT
        return None

    def _close_locked(self, reason: str, now: float) -> Optional[AudioChunk]:
        if not self._frames:
            return None
        samples = np.concatenate(self._frames).astype(np.int16, copy=False)
        self._sequence += 1
        chunk = AudioChunk(
            id=uuid.uuid4().hex,
            sequence=self._sequence,
            generation=self._generation,
            samples=samples,
            sample_rate=self.sample_rate,
            timestamp=self._wall_clock(),
            word_count=self._estimate_words_locked(),
            reason=reason,
        )
        self._frames = []
        self._sample_count = 0
        self._last_close = now
        # any close satisfies a pending hint
        self.hint_source.acknowledge()
        return chunk

    def _hand_off(self, chunk: AudioChunk) -> None:
        CHUNK_LOG.debug(
            "chunk #%d closed (%s) %.0f ms, ~%d words",
            chunk.sequence,
            chunk.reason,
            chunk.duration_ms,
            chunk.word_count,
        )
        self.on_chunk(chunk)


__all__ = [
    "AudioChunk",
    "ChunkAccumulator",
    "NullHintSource",
    "REASON_DURATION",
    "REASON_FLUSH",
    "REASON_GAP",
    "REASON_HINT",
    "REASON_WORDS",
]
