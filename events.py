"""Typed topics, event payloads and the error hierarchy shared by the pipeline."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Generic, List, Optional, TypeVar

if TYPE_CHECKING:  # pragma: no cover
    from audio_sources import AudioSource
    from audio_stream import AudioStreamState
    from chunker import AudioChunk
    from question_detection import DetectedQuestion
    from transcriber import TranscriptionResult

EVENT_LOG = logging.getLogger("question_stream.events")

T = TypeVar("T")


# ---------------------------------------------------------------------------
# Errors


class StreamError(Exception):
    """Base class for pipeline errors."""


class UnknownSourceError(StreamError, ValueError):
    def __init__(self, source_id: str):
        super().__init__(f"Unknown audio source: {source_id}")
        self.source_id = source_id


class CaptureError(StreamError):
    pass


class PermissionDeniedError(CaptureError):
    pass


class SourceSwitchError(CaptureError):
    """Switching failed; ``restored`` is the source that is active again, if any."""

    def __init__(self, message: str, restored: Optional["AudioSource"] = None):
        super().__init__(message)
        self.restored = restored


class TranscriptionError(StreamError):
    pass


class EncodingError(TranscriptionError):
    pass


# ---------------------------------------------------------------------------
# Payloads


@dataclass(frozen=True)
class StreamErrorEvent:
    message: str
    recoverable: bool = True
    kind: str = "stream"


@dataclass(frozen=True)
class CaptureEvent:
    """Lifecycle notification from the capture adapter.

    ``kind`` is one of ``started``, ``stopped``, ``degraded`` (running on the
    microphone instead of the requested source) or ``failed`` (the active
    session died underneath us).
    """

    kind: str
    source: Optional["AudioSource"] = None
    message: str = ""


# ---------------------------------------------------------------------------
# Topics


class Topic(Generic[T]):
    """One event type, many listeners. Listener errors never reach the publisher."""

    def __init__(self, name: str):
        self.name = name
        self._lock = threading.Lock()
        self._listeners: List[Callable[[T], None]] = []

    def subscribe(self, listener: Callable[[T], None]) -> Callable[[], None]:
        with self._lock:
            if listener not in self._listeners:
                self._listeners.append(listener)
            else:
                EVENT_LOG.warning("listener %r already subscribed to %s", listener, self.name)
        return lambda: self.unsubscribe(listener)

    def unsubscribe(self, listener: Callable[[T], None]) -> None:
        with self._lock:
            try:
                self._listeners.remove(listener)
            except ValueError:
                pass

    def publish(self, payload: T) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(payload)
            except Exception:
                name = getattr(listener, "__name__", repr(listener))
                EVENT_LOG.error("listener %s failed handling %s", name, self.name, exc_info=True)

    def clear(self) -> None:
        with self._lock:
            self._listeners.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._listeners)


class StreamEvents:
    """The orchestrator's externally observable events, one topic each."""

    def __init__(self) -> None:
        self.question_detected: Topic["DetectedQuestion"] = Topic("question-detected")
        self.transcription_completed: Topic["TranscriptionResult"] = Topic("transcription-completed")
        self.state_changed: Topic["AudioStreamState"] = Topic("state-changed")
        self.error: Topic[StreamErrorEvent] = Topic("error")
        self.chunk_recorded: Topic["AudioChunk"] = Topic("chunk-recorded")

    def clear(self) -> None:
        for topic in (
            self.question_detected,
            self.transcription_completed,
            self.state_changed,
            self.error,
            self.chunk_recorded,
        ):
            topic.clear()


__all__ = [
    "StreamError",
    "UnknownSourceError",
    "CaptureError",
    "PermissionDeniedError",
    "SourceSwitchError",
    "TranscriptionError",
    "EncodingError",
    "StreamErrorEvent",
    "CaptureEvent",
    "Topic",
    "StreamEvents",
]
