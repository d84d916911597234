from types import SimpleNamespace

import numpy as np
import pytest

import audio_sources
from audio_sources import (
    MICROPHONE_ID,
    SYSTEM_ID,
    AudioSource,
    CaptureAdapter,
    CaptureSession,
    SourceCatalog,
    SourceKind,
    StaticSourceCatalog,
)
from events import CaptureError, PermissionDeniedError, SourceSwitchError, UnknownSourceError


class FakeSession(CaptureSession):
    def __init__(self, source, cfg, on_frame, on_failure, factory):
        super().__init__(source, cfg, on_frame, on_failure)
        self.factory = factory
        self.closed = False

    def open(self):
        if self.source.id in self.factory.failing:
            raise CaptureError(f"cannot open {self.source.id}")

    def close(self):
        self.closed = True


class FakeSessions:
    def __init__(self, failing=()):
        self.failing = set(failing)
        self.sessions = []

    def __call__(self, source, cfg, on_frame, on_failure):
        session = FakeSession(source, cfg, on_frame, on_failure, self)
        self.sessions.append(session)
        return session


def _catalog(**kwargs):
    return StaticSourceCatalog(
        [
            AudioSource(MICROPHONE_ID, "Microphone", SourceKind.MICROPHONE),
            AudioSource(SYSTEM_ID, "System Audio", SourceKind.SYSTEM),
            AudioSource("system-audio-2", "Second Loopback", SourceKind.SYSTEM),
        ],
        **kwargs,
    )


def _adapter(failing=(), frame_queue_size=8, **catalog_kwargs):
    sessions = FakeSessions(failing)
    adapter = CaptureAdapter(_catalog(**catalog_kwargs), session_factory=sessions, frame_queue_size=frame_queue_size)
    events = []
    adapter.events.subscribe(events.append)
    return adapter, sessions, events


def test_start_opens_requested_source():
    adapter, sessions, events = _adapter()
    source = adapter.start(SYSTEM_ID)
    assert source.id == SYSTEM_ID
    assert adapter.active_source.id == SYSTEM_ID
    assert [e.kind for e in events] == ["started"]


def test_failed_system_start_falls_back_to_microphone():
    adapter, sessions, events = _adapter(failing={SYSTEM_ID})
    source = adapter.start(SYSTEM_ID)
    assert source.id == MICROPHONE_ID
    assert adapter.is_capturing
    degraded = [e for e in events if e.kind == "degraded"]
    assert len(degraded) == 1
    assert degraded[0].message.startswith("System audio unavailable, using microphone")


def test_microphone_failure_is_not_retried():
    adapter, _, _ = _adapter(failing={MICROPHONE_ID})
    with pytest.raises(CaptureError):
        adapter.start(MICROPHONE_ID)
    assert adapter.active_source is None


def test_unknown_source_raises_value_error():
    adapter, _, _ = _adapter()
    with pytest.raises(UnknownSourceError):
        adapter.start("nope")
    with pytest.raises(ValueError):
        adapter.switch_to("nope")


def test_switch_failure_restores_previous_source():
    adapter, sessions, _ = _adapter(failing={"system-audio-2"})
    adapter.start(SYSTEM_ID)
    with pytest.raises(SourceSwitchError) as info:
        adapter.switch_to("system-audio-2")
    assert info.value.restored.id == SYSTEM_ID
    assert adapter.active_source.id == SYSTEM_ID
    assert sessions.sessions[0].closed


def test_switch_falls_back_to_microphone_when_restore_fails():
    adapter, sessions, events = _adapter()
    adapter.start("system-audio-2")
    sessions.failing.update({SYSTEM_ID, "system-audio-2"})
    with pytest.raises(SourceSwitchError) as info:
        adapter.switch_to(SYSTEM_ID)
    assert info.value.restored.id == MICROPHONE_ID
    assert adapter.active_source.id == MICROPHONE_ID
    assert any(e.kind == "degraded" for e in events)


def test_switch_with_every_source_failing_leaves_nothing_active():
    adapter, sessions, _ = _adapter()
    adapter.start(SYSTEM_ID)
    sessions.failing.update({SYSTEM_ID, "system-audio-2", MICROPHONE_ID})
    with pytest.raises(CaptureError) as info:
        adapter.switch_to("system-audio-2")
    assert not isinstance(info.value, SourceSwitchError)
    assert adapter.active_source is None


def test_denied_kind_is_unavailable_and_falls_back():
    adapter, _, events = _adapter(denied=[SourceKind.SYSTEM])
    granted, reason = adapter.catalog.request_permission(SourceKind.SYSTEM)
    assert granted is False and "denied" in reason.lower()
    listed = {src.id: src.available for src in adapter.list_sources()}
    assert listed[SYSTEM_ID] is False and listed[MICROPHONE_ID] is True
    assert adapter.start(SYSTEM_ID).id == MICROPHONE_ID
    assert "permission" in [e for e in events if e.kind == "degraded"][0].message


def test_access_granted_after_denial_is_seen_without_new_request():
    adapter, _, events = _adapter(denied=[SourceKind.SYSTEM])
    assert adapter.catalog.request_permission(SourceKind.SYSTEM)[0] is False
    # access granted outside the process, e.g. in OS privacy settings
    adapter.catalog._blocked.discard(SourceKind.SYSTEM)
    listed = {src.id: src.available for src in adapter.list_sources()}
    assert listed[SYSTEM_ID] is True
    assert adapter.start(SYSTEM_ID).id == SYSTEM_ID
    assert not any(e.kind == "degraded" for e in events)


def test_permission_gate_can_refuse():
    catalog = StaticSourceCatalog(permission_gate=lambda kind: kind != SourceKind.MICROPHONE)
    granted, reason = catalog.request_permission(SourceKind.MICROPHONE)
    assert granted is False and reason


def test_session_failure_is_published_only_for_active_source():
    adapter, sessions, events = _adapter()
    adapter.start(MICROPHONE_ID)
    sessions.sessions[0].on_failure("device unplugged")
    assert events[-1].kind == "failed" and events[-1].message == "device unplugged"
    adapter.stop()
    sessions.sessions[0].on_failure("late")
    assert events[-1].kind == "stopped"


def test_recover_moves_to_microphone():
    adapter, _, events = _adapter()
    adapter.start(SYSTEM_ID)
    source = adapter.recover()
    assert source.id == MICROPHONE_ID
    assert events[-1].kind == "degraded"


def test_frame_queue_drops_oldest_when_full():
    adapter, sessions, _ = _adapter(frame_queue_size=2)
    adapter.start(MICROPHONE_ID)
    push = sessions.sessions[0].on_frame
    for value in (1, 2, 3):
        push(np.full(4, value, dtype=np.int16))
    kept = [adapter.frames.get_nowait()[0] for _ in range(2)]
    assert kept == [2, 3]
    adapter.stop()
    assert adapter.frames.empty()


def _fake_sounddevice(check=None):
    devices = [
        {"name": "MacBook Pro Microphone", "max_input_channels": 1},
        {"name": "BlackHole 2ch", "max_input_channels": 2},
        {"name": "Speakers", "max_input_channels": 0},
    ]
    return SimpleNamespace(
        query_devices=lambda: devices,
        default=SimpleNamespace(device=(1, 2)),
        check_input_settings=check or (lambda **kwargs: None),
    )


def test_catalog_enumerates_microphone_and_loopback(monkeypatch):
    monkeypatch.setattr(audio_sources, "_load_sounddevice", lambda: _fake_sounddevice())
    catalog = SourceCatalog()
    sources = catalog.list_sources()
    assert [(s.id, s.kind, s.device_index) for s in sources] == [
        (MICROPHONE_ID, SourceKind.MICROPHONE, 0),
        (SYSTEM_ID, SourceKind.SYSTEM, 1),
    ]
    assert catalog.is_system_audio_supported()
    assert catalog.request_permission(SourceKind.SYSTEM) == (True, None)


def test_catalog_marks_denied_probe(monkeypatch):
    def check(**kwargs):
        raise RuntimeError("Permission denied by OS")

    monkeypatch.setattr(audio_sources, "_load_sounddevice", lambda: _fake_sounddevice(check))
    catalog = SourceCatalog()
    granted, reason = catalog.request_permission(SourceKind.SYSTEM)
    assert granted is False and "Permission denied" in reason
    assert {src.id: src.available for src in catalog.list_sources()} == {MICROPHONE_ID: False, SYSTEM_ID: False}


def test_catalog_rechecks_availability_on_every_listing(monkeypatch):
    denied = {"on": True}

    def check(**kwargs):
        if denied["on"] and kwargs["device"] == 1:
            raise RuntimeError("Permission denied by OS")

    monkeypatch.setattr(audio_sources, "_load_sounddevice", lambda: _fake_sounddevice(check))
    catalog = SourceCatalog()
    assert {src.id: src.available for src in catalog.list_sources()} == {MICROPHONE_ID: True, SYSTEM_ID: False}
    denied["on"] = False
    assert {src.id: src.available for src in catalog.list_sources()} == {MICROPHONE_ID: True, SYSTEM_ID: True}


def test_catalog_without_backend(monkeypatch):
    def missing():
        raise CaptureError("Audio capture backend unavailable: PortAudio library not found")

    monkeypatch.setattr(audio_sources, "_load_sounddevice", missing)
    catalog = SourceCatalog()
    assert catalog.is_system_audio_supported() is False
    assert catalog.request_permission(SourceKind.MICROPHONE)[0] is False
    with pytest.raises(CaptureError):
        catalog.list_sources()


def test_permission_denied_error_is_capture_error():
    assert issubclass(PermissionDeniedError, CaptureError)
