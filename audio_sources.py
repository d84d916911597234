from __future__ import annotations

import logging
import queue
import threading
from dataclasses import dataclass, replace
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional, Tuple

import numpy as np

from events import (
    CaptureError,
    CaptureEvent,
    PermissionDeniedError,
    SourceSwitchError,
    Topic,
    UnknownSourceError,
)
from pcm import as_int16_frame

CAPTURE_LOG = logging.getLogger("question_stream.capture")

MICROPHONE_ID = "microphone"
SYSTEM_ID = "system-audio"

LOOPBACK_HINTS = ("blackhole", "loopback", "soundflower", "monitor of", "stereo mix")
_PERMISSION_MARKERS = ("permission", "denied", "not authorized", "not permitted")


def _load_sounddevice():
    """Import sounddevice lazily; PortAudio may be missing on headless hosts."""
    try:
        import sounddevice as sd  # type: ignore
    except (ImportError, OSError) as exc:
        raise CaptureError(f"Audio capture backend unavailable: {exc}") from exc
    return sd


class SourceKind(str, Enum):
    MICROPHONE = "microphone"
    SYSTEM = "system"


@dataclass(frozen=True)
class AudioSource:
    id: str
    name: str
    kind: SourceKind
    available: bool = True
    device_index: Optional[int] = None


@dataclass
class CaptureConfig:
    sample_rate: int = 16000
    blocksize: int = 160
    latency: str = "low"


# ---------------------------------------------------------------------------
# Device helpers


def _match_device(want: str, name: str) -> bool:
    return want.lower() in name.lower()


def _is_loopback(name: str) -> bool:
    return any(_match_device(hint, name) for hint in LOOPBACK_HINTS)


def list_input_devices() -> List[Dict[str, object]]:
    sd = _load_sounddevice()
    devices: List[Dict[str, object]] = []
    for i, dev in enumerate(sd.query_devices()):
        if dev["max_input_channels"] > 0:
            devices.append({"index": i, "name": dev["name"], "channels": dev["max_input_channels"]})
    return devices


def _default_input_index(devices: List[Dict[str, object]]) -> Optional[int]:
    sd = _load_sounddevice()
    default = sd.default.device
    default_in = default[0] if isinstance(default, (list, tuple)) else default
    indices = {dev["index"] for dev in devices}
    if isinstance(default_in, int) and default_in in indices:
        name = next(str(dev["name"]) for dev in devices if dev["index"] == default_in)
        if not _is_loopback(name):
            return default_in
    preferred = None
    for device in devices:
        name_low = str(device.get("name", "")).lower()
        if _is_loopback(name_low):
            continue
        if "microphone" in name_low:
            return int(device["index"])
        if preferred is None:
            preferred = int(device["index"])
    return preferred


def describe_capture_failure(error: Exception) -> str:
    """User-facing text for a requested source that had to fall back to the microphone."""
    message = str(error)
    lowered = message.lower()
    if any(marker in lowered for marker in _PERMISSION_MARKERS):
        return (
            "System audio unavailable, using microphone. Grant audio/screen recording "
            "permission for system capture, then select the source again."
        )
    if "not found" in lowered or "no loopback" in lowered:
        return "System audio unavailable, using microphone. No loopback device (e.g. BlackHole) was found."
    return f"System audio unavailable, using microphone. {message}"


# ---------------------------------------------------------------------------
# Source catalog


class SourceCatalog:
    """Enumerates capture sources from PortAudio and probes their availability on every call."""

    def __init__(self, permission_gate: Optional[Callable[[SourceKind], bool]] = None):
        self.permission_gate = permission_gate

    def list_sources(self) -> List[AudioSource]:
        return [replace(src, available=self._is_accessible(src)) for src in self._query_sources()]

    def find(self, source_id: str) -> Optional[AudioSource]:
        """Look up a source by id without probing it."""
        for source in self._query_sources():
            if source.id == source_id:
                return source
        return None

    def is_system_audio_supported(self) -> bool:
        try:
            return any(src.kind == SourceKind.SYSTEM for src in self._query_sources())
        except CaptureError:
            return False

    def request_permission(self, kind: SourceKind) -> Tuple[bool, Optional[str]]:
        kind = SourceKind(kind)
        if self.permission_gate is not None and not self.permission_gate(kind):
            return False, f"{kind.value} capture not authorised"
        try:
            target = next((src for src in self._query_sources() if src.kind == kind), None)
        except CaptureError as exc:
            return False, str(exc)
        if target is None:
            return False, f"No {kind.value} capture source on this platform"
        try:
            self.check_access(target)
        except CaptureError as exc:
            CAPTURE_LOG.warning("permission probe for %s failed: %s", target.name, exc)
            return False, str(exc)
        return True, None

    def check_access(self, source: AudioSource) -> None:
        """Raise PermissionDeniedError (or CaptureError) if ``source`` cannot be opened right now."""
        self._probe(source)

    def _is_accessible(self, source: AudioSource) -> bool:
        try:
            self.check_access(source)
        except CaptureError as exc:
            CAPTURE_LOG.debug("%s not accessible: %s", source.id, exc)
            return False
        return True

    def _query_sources(self) -> List[AudioSource]:
        devices = list_input_devices()
        sources: List[AudioSource] = []
        mic_idx = _default_input_index(devices)
        if mic_idx is not None:
            mic_name = next(str(dev["name"]) for dev in devices if dev["index"] == mic_idx)
            sources.append(AudioSource(MICROPHONE_ID, f"Microphone ({mic_name})", SourceKind.MICROPHONE, True, mic_idx))
        loopbacks = [dev for dev in devices if _is_loopback(str(dev["name"]))]
        for n, dev in enumerate(loopbacks):
            source_id = SYSTEM_ID if n == 0 else f"{SYSTEM_ID}-{n + 1}"
            sources.append(
                AudioSource(source_id, f"System Audio ({dev['name']})", SourceKind.SYSTEM, True, int(dev["index"]))
            )
        return sources

    def _probe(self, source: AudioSource) -> None:
        sd = _load_sounddevice()
        try:
            sd.check_input_settings(device=source.device_index, channels=1, dtype="float32")
        except Exception as exc:
            raise _classify_capture_error(exc) from exc


class StaticSourceCatalog(SourceCatalog):
    """Fixed source list, for callers that deliver frames themselves."""

    def __init__(
        self,
        sources: Optional[Iterable[AudioSource]] = None,
        *,
        denied: Iterable[SourceKind] = (),
        permission_gate: Optional[Callable[[SourceKind], bool]] = None,
    ):
        super().__init__(permission_gate)
        self._sources = list(sources) if sources is not None else [
            AudioSource(MICROPHONE_ID, "Microphone", SourceKind.MICROPHONE),
        ]
        self._blocked = {SourceKind(kind) for kind in denied}

    def _query_sources(self) -> List[AudioSource]:
        return list(self._sources)

    def _probe(self, source: AudioSource) -> None:
        if source.kind in self._blocked:
            raise PermissionDeniedError(f"Permission denied for {source.name}")


def _classify_capture_error(exc: Exception) -> CaptureError:
    if isinstance(exc, CaptureError):
        return exc
    lowered = str(exc).lower()
    if any(marker in lowered for marker in _PERMISSION_MARKERS):
        return PermissionDeniedError(str(exc))
    return CaptureError(str(exc))


# ---------------------------------------------------------------------------
# Capture sessions


FrameCallback = Callable[[np.ndarray], None]
FailureCallback = Callable[[str], None]


class CaptureSession:
    """One open capture stream. ``open`` raises CaptureError when the stream cannot start."""

    def __init__(self, source: AudioSource, cfg: CaptureConfig, on_frame: FrameCallback, on_failure: FailureCallback):
        self.source = source
        self.cfg = cfg
        self.on_frame = on_frame
        self.on_failure = on_failure

    def open(self) -> None:
        raise NotImplementedError

    def close(self) -> None:
        raise NotImplementedError


class ExternalFeedSession(CaptureSession):
    """No device behind it: frames arrive through ``StreamOrchestrator.process_audio_chunk``."""

    def open(self) -> None:
        CAPTURE_LOG.debug("external feed attached for %s", self.source.id)

    def close(self) -> None:
        CAPTURE_LOG.debug("external feed detached for %s", self.source.id)


class SoundDeviceSession(CaptureSession, threading.Thread):
    def __init__(self, source: AudioSource, cfg: CaptureConfig, on_frame: FrameCallback, on_failure: FailureCallback):
        CaptureSession.__init__(self, source, cfg, on_frame, on_failure)
        threading.Thread.__init__(self, daemon=True, name=f"capture-{source.id}")
        self._stop_event = threading.Event()
        self._ready = threading.Event()
        self._error: Optional[CaptureError] = None

    def open(self, timeout: float = 5.0) -> None:
        self.start()
        if not self._ready.wait(timeout):
            self._stop_event.set()
            raise CaptureError(f"Timed out opening {self.source.name}")
        if self._error is not None:
            raise self._error

    def close(self) -> None:
        self._stop_event.set()
        if self.is_alive() and threading.current_thread() is not self:
            self.join(timeout=2)

    def run(self) -> None:
        try:
            sd = _load_sounddevice()

            def cb(indata, _frames, _time_info, status):
                if status:
                    CAPTURE_LOG.debug("%s status: %s", self.source.id, status)
                if self._stop_event.is_set():
                    raise sd.CallbackStop()
                self.on_frame(as_int16_frame(indata[:, 0]))

            with sd.InputStream(
                samplerate=self.cfg.sample_rate,
                channels=1,
                dtype="float32",
                blocksize=self.cfg.blocksize,
                latency=self.cfg.latency,
                device=self.source.device_index,
                callback=cb,
            ) as stream:
                self._ready.set()
                while not self._stop_event.is_set():
                    if not stream.active:
                        raise CaptureError(f"{self.source.name} stopped delivering audio")
                    sd.sleep(100)
        except Exception as exc:
            error = _classify_capture_error(exc)
            if not self._ready.is_set():
                self._error = error
                self._ready.set()
                return
            if not self._stop_event.is_set():
                CAPTURE_LOG.warning("%s capture failed: %s", self.source.id, error)
                self.on_failure(str(error))


SessionFactory = Callable[[AudioSource, CaptureConfig, FrameCallback, FailureCallback], CaptureSession]


# ---------------------------------------------------------------------------
# Capture adapter


class CaptureAdapter:
    """Owns the single active capture session and its frame queue."""

    def __init__(
        self,
        catalog: SourceCatalog,
        *,
        config: Optional[CaptureConfig] = None,
        session_factory: Optional[SessionFactory] = None,
        frame_queue_size: int = 256,
    ):
        self.catalog = catalog
        self.cfg = config or CaptureConfig()
        self.session_factory: SessionFactory = session_factory or SoundDeviceSession
        self.frames: "queue.Queue[np.ndarray]" = queue.Queue(maxsize=frame_queue_size)
        self.events: Topic[CaptureEvent] = Topic("capture")
        self._lock = threading.RLock()
        self._session: Optional[CaptureSession] = None
        self._source: Optional[AudioSource] = None

    @property
    def active_source(self) -> Optional[AudioSource]:
        with self._lock:
            return self._source

    @property
    def is_capturing(self) -> bool:
        with self._lock:
            return self._session is not None

    def start(self, source_id: str) -> AudioSource:
        """Open ``source_id``; on failure fall back to the microphone once."""
        with self._lock:
            self._require_known(source_id)
            if self._session is not None:
                self._stop_locked()
            try:
                return self._open_locked(source_id)
            except CaptureError as exc:
                if source_id == MICROPHONE_ID:
                    raise
                CAPTURE_LOG.warning("start %s failed (%s); falling back to microphone", source_id, exc)
                try:
                    source = self._open_locked(MICROPHONE_ID)
                except (CaptureError, UnknownSourceError) as fallback_exc:
                    raise CaptureError(
                        f"Failed to start {source_id}: {exc}; microphone fallback failed: {fallback_exc}"
                    ) from fallback_exc
                self.events.publish(CaptureEvent("degraded", source, describe_capture_failure(exc)))
                return source

    def stop(self) -> None:
        with self._lock:
            if self._session is None:
                return
            self._stop_locked()

    def switch_to(self, source_id: str) -> AudioSource:
        """Stop the active session, then start ``source_id``; restore the old one on failure."""
        with self._lock:
            self._require_known(source_id)
            previous = self._source
            if previous is None:
                return self.start(source_id)
            if previous.id == source_id:
                return previous
            self._stop_locked()
            try:
                return self._open_locked(source_id)
            except CaptureError as exc:
                CAPTURE_LOG.warning("switch to %s failed: %s; restoring %s", source_id, exc, previous.id)
                try:
                    restored = self._open_locked(previous.id)
                except (CaptureError, UnknownSourceError) as restore_exc:
                    restored = self._fallback_after_switch(previous, source_id, restore_exc)
                    raise SourceSwitchError(
                        f"Failed to switch to {source_id}: {exc}; using microphone fallback",
                        restored=restored,
                    ) from exc
                raise SourceSwitchError(
                    f"Failed to switch to {source_id}, restored {restored.name}: {exc}",
                    restored=restored,
                ) from exc

    def recover(self) -> AudioSource:
        """Replace a failed session with the microphone."""
        with self._lock:
            failed = self._source
            if self._session is not None:
                self._stop_locked()
            source = self._open_locked(MICROPHONE_ID)
            if failed is not None and failed.id != MICROPHONE_ID:
                self.events.publish(
                    CaptureEvent("degraded", source, f"{failed.name} stopped; switched to microphone")
                )
            return source

    def list_sources(self) -> List[AudioSource]:
        return self.catalog.list_sources()

    # ---- helpers -----------------------------------------------------

    def _require_known(self, source_id: str) -> None:
        if self.catalog.find(source_id) is None:
            raise UnknownSourceError(source_id)

    def _fallback_after_switch(self, previous: AudioSource, requested: str, restore_exc: Exception) -> AudioSource:
        if MICROPHONE_ID in (previous.id, requested):
            raise CaptureError(f"All audio sources failed: {restore_exc}") from restore_exc
        try:
            source = self._open_locked(MICROPHONE_ID)
        except (CaptureError, UnknownSourceError) as mic_exc:
            raise CaptureError(f"All audio sources failed: {mic_exc}") from mic_exc
        self.events.publish(CaptureEvent("degraded", source, "Audio source switch failed, using microphone"))
        return source

    def _open_locked(self, source_id: str) -> AudioSource:
        source = self.catalog.find(source_id)
        if source is None:
            raise UnknownSourceError(source_id)
        self.catalog.check_access(source)
        session = self.session_factory(
            source,
            self.cfg,
            self._push_frame,
            lambda message, _sid=source.id: self._on_session_failure(_sid, message),
        )
        session.open()
        self._session = session
        self._source = source
        CAPTURE_LOG.info("capture started on %s", source.name)
        self.events.publish(CaptureEvent("started", source))
        return source

    def _stop_locked(self) -> None:
        session, source = self._session, self._source
        self._session = None
        self._source = None
        if session is not None:
            try:
                session.close()
            except Exception as exc:
                CAPTURE_LOG.warning("closing %s failed: %s", source.id if source else "?", exc)
        self._drain_frames()
        CAPTURE_LOG.info("capture stopped on %s", source.name if source else "?")
        self.events.publish(CaptureEvent("stopped", source))

    def _drain_frames(self) -> None:
        try:
            while True:
                self.frames.get_nowait()
        except queue.Empty:
            pass

    def _push_frame(self, frame: np.ndarray) -> None:
        try:
            self.frames.put_nowait(frame)
        except queue.Full:
            try:
                _ = self.frames.get_nowait()
            except queue.Empty:
                pass
            try:
                self.frames.put_nowait(frame)
            except queue.Full:
                CAPTURE_LOG.warning("frame dropped (queue saturated)")

    def _on_session_failure(self, source_id: str, message: str) -> None:
        with self._lock:
            source = self._source
            if source is None or source.id != source_id:
                return
        self.events.publish(CaptureEvent("failed", source, message))


__all__ = [
    "MICROPHONE_ID",
    "SYSTEM_ID",
    "AudioSource",
    "CaptureAdapter",
    "CaptureConfig",
    "CaptureSession",
    "ExternalFeedSession",
    "SoundDeviceSession",
    "SourceCatalog",
    "SourceKind",
    "StaticSourceCatalog",
    "describe_capture_failure",
    "list_input_devices",
]
