import argparse

import pytest

import main
from audio_sources import MICROPHONE_ID, SYSTEM_ID, AudioSource, ExternalFeedSession, SourceKind, StaticSourceCatalog
from audio_stream import StreamOrchestrator
from events import CaptureError
from stream_parameters import StreamConfig
from transcriber import NullTranscriber


def _catalog(**kwargs):
    return StaticSourceCatalog(
        [
            AudioSource(MICROPHONE_ID, "Microphone", SourceKind.MICROPHONE),
            AudioSource(SYSTEM_ID, "System Audio (BlackHole 2ch)", SourceKind.SYSTEM),
        ],
        **kwargs,
    )


def test_sources_command_lists_catalog(monkeypatch, capsys):
    monkeypatch.setattr(main, "SourceCatalog", _catalog)
    assert main.main(["sources"]) == 0
    out = capsys.readouterr().out
    assert "microphone" in out and "system-audio" in out


def test_sources_command_reports_missing_backend(capsys):
    class Broken(StaticSourceCatalog):
        def _query_sources(self):
            raise CaptureError("PortAudio library not found")

    assert main.cmd_sources(argparse.Namespace(), Broken()) == 2
    assert "PortAudio" in capsys.readouterr().err


def test_permission_command_exit_codes(capsys):
    catalog = _catalog(denied=[SourceKind.SYSTEM])
    assert main.cmd_permission(argparse.Namespace(kind="microphone"), catalog) == 0
    assert main.cmd_permission(argparse.Namespace(kind="system"), catalog) == 1
    assert "denied" in capsys.readouterr().err


def _orchestrator(failing=()):
    class Session(ExternalFeedSession):
        def open(self):
            if self.source.id in failing:
                raise CaptureError("busy")

    return StreamOrchestrator(
        StreamConfig(question_detection_enabled=False),
        catalog=_catalog(),
        session_factory=Session,
        transcriber=NullTranscriber(),
    )


def _listen_args(**kwargs):
    base = dict(source=None, sink="console", context_file=None, quiet=True)
    base.update(kwargs)
    return argparse.Namespace(**base)


def test_listen_returns_1_when_capture_cannot_start(capsys):
    orch = _orchestrator(failing={MICROPHONE_ID})
    assert main.cmd_listen(_listen_args(), orch) == 1
    assert "[capture]" in capsys.readouterr().err


def test_listen_rejects_unknown_source(capsys):
    assert main.cmd_listen(_listen_args(source="bogus"), _orchestrator()) == 2
    assert "bogus" in capsys.readouterr().err


def test_listen_runs_until_session_ends():
    orch = _orchestrator()
    stopper = orch.events.state_changed.subscribe(
        lambda state: state.is_listening and orch.stop_listening()
    )
    assert main.cmd_listen(_listen_args(), orch) == 0
    stopper()
    assert orch.get_state().is_listening is False


def test_parser_requires_command():
    with pytest.raises(SystemExit):
        main.build_parser().parse_args([])
    args = main.build_parser().parse_args(["listen", "--sink", "llm", "--source", SYSTEM_ID])
    assert args.sink == "llm" and args.source == SYSTEM_ID and args.func is main.cmd_listen
