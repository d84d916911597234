"""Listening session orchestration: capture -> chunks -> transcription -> questions.

The orchestrator is the single writer of the session state. Capture frames are
drained by an ingest thread into the chunk accumulator, closed chunks are
transcribed on a bounded worker pool, and completed results are re-ordered by
chunk sequence before anything reaches a subscriber. Every listening session
carries a generation id; work launched under an older generation is discarded
when it completes.

Events are queued while the state lock is held and published after it is
released, so listeners may call back into the orchestrator from any thread.
"""

from __future__ import annotations

import logging
import queue
import threading
import time
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Deque, Dict, List, Optional, Set, Tuple

import numpy as np

from audio_sources import (
    MICROPHONE_ID,
    AudioSource,
    CaptureAdapter,
    CaptureConfig,
    SourceCatalog,
    SourceKind,
)
from chunker import AudioChunk, ChunkAccumulator, NullHintSource
from events import (
    CaptureError,
    CaptureEvent,
    EncodingError,
    PermissionDeniedError,
    SourceSwitchError,
    StreamErrorEvent,
    StreamEvents,
    Topic,
    TranscriptionError,
    UnknownSourceError,
)
from pcm import FrameLike, as_int16_frame
from question_detection import DetectedQuestion, QuestionRefiner, StreamingHintDetector
from stream_parameters import StreamConfig
from transcriber import NullTranscriber, Transcriber, TranscriptionResult

ORCH_LOG = logging.getLogger("question_stream.orchestrator")


@dataclass(frozen=True)
class AudioStreamState:
    is_listening: bool = False
    is_processing: bool = False
    last_activity_time: Optional[float] = None
    current_audio_source: Optional[AudioSource] = None
    questions: Tuple[DetectedQuestion, ...] = ()
    preferred_source_id: str = MICROPHONE_ID


class StreamOrchestrator:
    def __init__(
        self,
        config: Optional[StreamConfig] = None,
        *,
        catalog: Optional[SourceCatalog] = None,
        adapter: Optional[CaptureAdapter] = None,
        transcriber=None,
        refiner: Optional[QuestionRefiner] = None,
        hint_detector=None,
        session_factory=None,
        executor: Optional[ThreadPoolExecutor] = None,
    ):
        self.cfg = config or StreamConfig.from_env()
        self.catalog = catalog or (adapter.catalog if adapter is not None else SourceCatalog())
        self.adapter = adapter or CaptureAdapter(
            self.catalog,
            config=CaptureConfig(sample_rate=self.cfg.sample_rate, blocksize=self.cfg.frame_samples),
            session_factory=session_factory,
            frame_queue_size=self.cfg.frame_queue_size,
        )
        detection = self.cfg.question_detection_enabled
        if transcriber is None:
            transcriber = (
                Transcriber(self.cfg.transcription, sample_rate=self.cfg.sample_rate)
                if detection
                else NullTranscriber(self.cfg.transcription.language)
            )
        self.transcriber = transcriber
        self.refiner = refiner or QuestionRefiner()
        if hint_detector is None:
            hint_detector = (
                StreamingHintDetector(self.cfg.hint, self.refiner.heuristic) if detection else NullHintSource()
            )
        self.hint_detector = hint_detector
        self.accumulator = ChunkAccumulator(
            self.cfg.chunk,
            self.cfg.sample_rate,
            self._on_chunk,
            hint_source=self.hint_detector,
        )
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(
            max_workers=max(1, self.cfg.max_in_flight), thread_name_prefix="transcribe"
        )
        self.events = StreamEvents()

        # source transitions (start/stop/switch/recover) are serialised here
        self._transition = threading.RLock()
        self._lock = threading.RLock()
        self._idle = threading.Condition(self._lock)
        self._emit_lock = threading.Lock()
        self._outbox: Deque[Tuple[Topic, object]] = deque()

        self._listening = False
        self._closed = False
        self._generation = 0
        self._source: Optional[AudioSource] = None
        self._preferred = MICROPHONE_ID
        self._last_activity: Optional[float] = None
        self._questions: List[DetectedQuestion] = []
        self._last_state: Optional[AudioStreamState] = None

        self._pending: Deque[AudioChunk] = deque()
        self._in_flight = 0
        self._outstanding: Set[int] = set()
        self._newest = 0
        self._next_emit = 1
        self._ready: Dict[int, Optional[TranscriptionResult]] = {}

        self._ingest: Optional[Tuple[threading.Thread, threading.Event]] = None
        self._unsubscribe_capture = self.adapter.events.subscribe(self._on_capture_event)

    def __enter__(self) -> "StreamOrchestrator":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Control surface

    def start_listening(self, source_id: Optional[str] = None) -> bool:
        """Open capture on ``source_id`` (default: the preferred source) and begin a session.

        Returns False with a recoverable ``error`` event when capture cannot start.
        Raises UnknownSourceError for an explicitly requested id that does not exist.
        """
        with self._transition:
            with self._lock:
                if self._closed:
                    raise RuntimeError("orchestrator is closed")
                listening, current = self._listening, self._source
            if listening:
                if source_id is None or (current is not None and current.id == source_id):
                    return True
                return self.switch_audio_source(source_id)

            target = source_id or self._preferred
            try:
                known = self.catalog.find(target) is not None
            except CaptureError as exc:
                self._report(f"Failed to start listening: {exc}", kind="capture")
                self._drain_outbox()
                return False
            if not known:
                if source_id is not None:
                    raise UnknownSourceError(source_id)
                self._report(f"Preferred audio source {target!r} is not available", kind="capture")
                self._drain_outbox()
                return False

            with self._lock:
                generation = self._begin_session_locked()
            try:
                source = self.adapter.start(target)
            except CaptureError as exc:
                ORCH_LOG.warning("start_listening(%s) failed: %s", target, exc)
                kind = "permission" if isinstance(exc, PermissionDeniedError) else "capture"
                self._report(f"Failed to start listening: {exc}", kind=kind)
                self._drain_outbox()
                return False

            with self._lock:
                self._listening = True
                self._source = source
                self._preferred = target
                self._start_ingest_locked(generation)
                self._publish_state_locked()
            ORCH_LOG.info("listening on %s (generation %d)", source.name, generation)
        self._drain_outbox()
        return True

    def stop_listening(self) -> bool:
        with self._transition:
            with self._lock:
                if not self._listening:
                    return True
                self._listening = False
                self._generation += 1
                self._source = None
                self._reset_session_locked(self._generation)
                ingest, self._ingest = self._ingest, None
                self._publish_state_locked()
                self._idle.notify_all()
            if ingest is not None:
                ingest[1].set()
            self.adapter.stop()
            if ingest is not None and ingest[0] is not threading.current_thread():
                ingest[0].join(timeout=2)
            ORCH_LOG.info("stopped listening")
        self._drain_outbox()
        return True

    def process_audio_chunk(self, data: FrameLike) -> None:
        """Feed caller-delivered samples (int16 bytes or arrays, or float arrays)."""
        with self._lock:
            if not self._listening:
                ORCH_LOG.debug("ignoring audio frame while idle")
                return
        try:
            frame = as_int16_frame(data)
        except EncodingError as exc:
            self._report(f"Rejected audio frame: {exc}", kind="encoding")
            self._drain_outbox()
            return
        with self._lock:
            self._last_activity = time.time()
        self.accumulator.push(frame)

    def switch_audio_source(self, source_id: str) -> bool:
        """Record a new preference, or move a live session to ``source_id``.

        A failed switch restores the previous source (or the microphone) and
        reports a recoverable error; only an unknown id raises.
        """
        with self._transition:
            try:
                known = self.catalog.find(source_id) is not None
            except CaptureError as exc:
                self._report(f"Failed to switch audio source: {exc}", kind="capture")
                self._drain_outbox()
                return False
            if not known:
                raise UnknownSourceError(source_id)

            with self._lock:
                if not self._listening:
                    self._preferred = source_id
                    self._publish_state_locked()
                    listening = False
                else:
                    listening = True
            if not listening:
                self._drain_outbox()
                return True

            try:
                source = self.adapter.switch_to(source_id)
            except SourceSwitchError as exc:
                ORCH_LOG.warning("switch to %s failed: %s", source_id, exc)
                with self._lock:
                    self._source = exc.restored
                    self.accumulator.reset()
                    self._publish_state_locked()
                self._report(str(exc), kind="switch")
                self._drain_outbox()
                return False
            except CaptureError as exc:
                ORCH_LOG.error("switch to %s left no working source: %s", source_id, exc)
                self._report(f"Audio capture failed: {exc}", kind="capture")
                self.stop_listening()
                return False

            with self._lock:
                self._source = source
                self._preferred = source_id
                self.accumulator.reset()
                self._publish_state_locked()
            ORCH_LOG.info("switched to %s", source.name)
        self._drain_outbox()
        return True

    def get_state(self) -> AudioStreamState:
        with self._lock:
            return self._snapshot_locked()

    def get_questions(self) -> List[DetectedQuestion]:
        with self._lock:
            return list(self._questions)

    def clear_questions(self) -> None:
        with self._lock:
            self._questions.clear()
            self.hint_detector.clear()
            self._publish_state_locked()
        self._drain_outbox()

    def list_sources(self) -> List[AudioSource]:
        try:
            return self.catalog.list_sources()
        except CaptureError as exc:
            self._report(f"Failed to list audio sources: {exc}", kind="capture")
            self._drain_outbox()
            return []

    def request_permission(self, kind) -> bool:
        granted, reason = self.catalog.request_permission(SourceKind(kind))
        if not granted:
            self._report(reason or f"{kind} permission denied", kind="permission")
            self._drain_outbox()
        return granted

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until no chunk is queued or being transcribed."""
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._idle:
            while self._pending or self._in_flight:
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    return False
                self._idle.wait(remaining)
            return True

    def close(self) -> None:
        self.stop_listening()
        with self._lock:
            if self._closed:
                return
            self._closed = True
        self._unsubscribe_capture()
        if self._owns_executor:
            self._executor.shutdown(wait=True)
        close = getattr(self.transcriber, "close", None)
        if callable(close):
            close()

    # ------------------------------------------------------------------
    # Session bookkeeping (state lock held)

    def _begin_session_locked(self) -> int:
        self._generation += 1
        self._reset_session_locked(self._generation)
        self.refiner.reset()
        return self._generation

    def _reset_session_locked(self, generation: int) -> None:
        self.accumulator.reset(generation)
        self.hint_detector.clear()
        self._questions.clear()
        self._pending.clear()
        self._outstanding.clear()
        self._ready.clear()
        self._newest = 0
        self._next_emit = 1

    def _start_ingest_locked(self, generation: int) -> None:
        stop = threading.Event()
        thread = threading.Thread(
            target=self._ingest_loop,
            args=(generation, stop),
            name=f"stream-ingest-{generation}",
            daemon=True,
        )
        self._ingest = (thread, stop)
        thread.start()

    def _snapshot_locked(self) -> AudioStreamState:
        return AudioStreamState(
            is_listening=self._listening,
            is_processing=self._listening and self._newest in self._outstanding,
            last_activity_time=self._last_activity,
            current_audio_source=self._source,
            questions=tuple(self._questions),
            preferred_source_id=self._preferred,
        )

    def _publish_state_locked(self) -> None:
        state = self._snapshot_locked()
        assert not (state.is_processing and not state.is_listening), "processing while not listening"
        if state == self._last_state:
            return
        self._last_state = state
        self._outbox.append((self.events.state_changed, state))

    def _report(self, message: str, *, kind: str, recoverable: bool = True) -> None:
        with self._lock:
            self._outbox.append((self.events.error, StreamErrorEvent(message, recoverable, kind)))

    def _drain_outbox(self) -> None:
        # one drainer at a time; a nested or concurrent caller leaves its events to it
        while True:
            if not self._emit_lock.acquire(blocking=False):
                return
            try:
                while True:
                    with self._lock:
                        if not self._outbox:
                            break
                        topic, payload = self._outbox.popleft()
                    topic.publish(payload)
            finally:
                self._emit_lock.release()
            with self._lock:
                if not self._outbox:
                    return

    # ------------------------------------------------------------------
    # Ingestion and chunk dispatch

    def _ingest_loop(self, generation: int, stop: threading.Event) -> None:
        frames: "queue.Queue[np.ndarray]" = self.adapter.frames
        while not stop.is_set():
            try:
                frame = frames.get(timeout=0.1)
            except queue.Empty:
                continue
            with self._lock:
                live = self._listening and self._generation == generation
                if live:
                    self._last_activity = time.time()
            if live:
                self.accumulator.push(frame)

    def _on_chunk(self, chunk: AudioChunk) -> None:
        with self._lock:
            if not self._listening or chunk.generation != self._generation or chunk.sequence < self._next_emit:
                ORCH_LOG.debug("dropping chunk #%d from generation %d", chunk.sequence, chunk.generation)
                if chunk.generation == self._generation and chunk.sequence >= self._next_emit:
                    # the sequence number is spent; later results must not wait on it
                    self._release_slot_locked(chunk.sequence, None)
                return
            self._last_activity = chunk.timestamp
            self._newest = chunk.sequence
            self._outstanding.add(chunk.sequence)
            self._pending.append(chunk)
            self._outbox.append((self.events.chunk_recorded, chunk))
            self._pump_locked()
            while len(self._pending) > self.cfg.max_pending:
                dropped = self._pending.popleft()
                ORCH_LOG.warning(
                    "transcription backlog full; dropping chunk #%d (%.0f ms)", dropped.sequence, dropped.duration_ms
                )
                self._outstanding.discard(dropped.sequence)
                self._release_slot_locked(dropped.sequence, None)
                self._outbox.append(
                    (
                        self.events.error,
                        StreamErrorEvent(
                            f"Transcription backlog full, dropped {dropped.duration_ms:.0f} ms of audio",
                            True,
                            "backpressure",
                        ),
                    )
                )
            self._publish_state_locked()
            self._idle.notify_all()
        self._drain_outbox()

    def _pump_locked(self) -> None:
        while self._pending and self._in_flight < self.cfg.max_in_flight and not self._closed:
            chunk = self._pending.popleft()
            self._in_flight += 1
            ORCH_LOG.debug("dispatching chunk #%d (%s, %.0f ms)", chunk.sequence, chunk.reason, chunk.duration_ms)
            future = self._executor.submit(self._transcribe, chunk)
            future.add_done_callback(self._log_crash)

    def _transcribe(self, chunk: AudioChunk) -> None:
        result: Optional[TranscriptionResult] = None
        error: Optional[TranscriptionError] = None
        try:
            result = self.transcriber.transcribe(chunk)
        except TranscriptionError as exc:
            ORCH_LOG.warning("chunk #%d transcription failed: %s", chunk.sequence, exc)
            error = exc
        finally:
            self._complete(chunk, result, error)

    @staticmethod
    def _log_crash(future: Future) -> None:
        exc = future.exception()
        if exc is not None:
            ORCH_LOG.error("transcription worker crashed", exc_info=exc)

    def _complete(
        self,
        chunk: AudioChunk,
        result: Optional[TranscriptionResult],
        error: Optional[TranscriptionError],
    ) -> None:
        with self._lock:
            self._in_flight -= 1
            if not self._listening or chunk.generation != self._generation:
                ORCH_LOG.debug("discarding stale result for chunk #%d (generation %d)", chunk.sequence, chunk.generation)
            else:
                self._outstanding.discard(chunk.sequence)
                if error is not None:
                    kind = "encoding" if isinstance(error, EncodingError) else "transcription"
                    self._outbox.append((self.events.error, StreamErrorEvent(str(error), True, kind)))
                    result = None
                elif result is not None and result.text:
                    self.accumulator.record_transcript(len(result.text.split()), chunk.duration_ms)
                    self.hint_detector.observe(result.text)
                self._release_slot_locked(chunk.sequence, result)
                self._publish_state_locked()
            self._pump_locked()
            self._idle.notify_all()
        self._drain_outbox()

    def _release_slot_locked(self, sequence: int, result: Optional[TranscriptionResult]) -> None:
        """Store a finished slot and emit every result that is now in chunk order."""
        self._ready[sequence] = result
        while self._next_emit in self._ready:
            ready = self._ready.pop(self._next_emit)
            self._next_emit += 1
            if ready is not None and ready.text:
                self._emit_result_locked(ready)

    def _emit_result_locked(self, result: TranscriptionResult) -> None:
        self._last_activity = result.timestamp
        self._outbox.append((self.events.transcription_completed, result))
        for question in self.refiner.detect_and_refine(result):
            ORCH_LOG.info("question detected: %s", question.refined_text)
            self._questions.append(question)
            self._outbox.append((self.events.question_detected, question))

    # ------------------------------------------------------------------
    # Capture lifecycle

    def _on_capture_event(self, event: CaptureEvent) -> None:
        if event.kind == "degraded":
            self._report(event.message, kind="capture")
        elif event.kind == "failed":
            with self._lock:
                if not self._listening:
                    return
                generation = self._generation
            # the failing session thread must not wait on its own teardown
            threading.Thread(
                target=self._recover_capture,
                args=(generation, event.message),
                name="capture-recover",
                daemon=True,
            ).start()

    def _recover_capture(self, generation: int, message: str) -> None:
        with self._transition:
            with self._lock:
                if not self._listening or generation != self._generation:
                    return
            ORCH_LOG.warning("capture failed (%s); trying microphone", message)
            try:
                source = self.adapter.recover()
            except (CaptureError, UnknownSourceError) as exc:
                self._report(f"Audio capture failed: {message}; microphone fallback failed: {exc}", kind="capture")
                self.stop_listening()
                return
            with self._lock:
                self._source = source
                self.accumulator.reset()
                self._publish_state_locked()
        self._drain_outbox()


__all__ = ["AudioStreamState", "StreamOrchestrator"]
