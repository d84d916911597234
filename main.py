#!/usr/bin/env python3
"""Command-line entry point: list sources, check permissions, or listen for questions."""

from __future__ import annotations

import argparse
import logging
import os
import sys
import threading
import time
from pathlib import Path
from typing import List, Optional, Sequence

from answerer import OpenAIAnswerer
from audio_sources import SourceCatalog, SourceKind
from audio_stream import StreamOrchestrator
from events import CaptureError, StreamErrorEvent, TranscriptionError, UnknownSourceError
from question_detection import DetectedQuestion
from config import load_stream_config

CONTEXT_MAX_CHARS = 8_000


def _configure_logging(quiet: bool) -> None:
    logging.basicConfig(
        level=logging.WARNING if quiet else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _load_context_file(path: Path) -> Optional[str]:
    if not path.exists():
        print(f"Context file not found: {path}", file=sys.stderr)
        return None
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        print(f"Failed to read context file {path}: {exc}", file=sys.stderr)
        return None
    if len(text) > CONTEXT_MAX_CHARS:
        print(f"Context truncated to {CONTEXT_MAX_CHARS} characters.", file=sys.stderr)
        text = text[:CONTEXT_MAX_CHARS]
    return text.strip() or None


def cmd_sources(args, catalog: Optional[SourceCatalog] = None) -> int:
    catalog = catalog or SourceCatalog()
    try:
        sources = catalog.list_sources()
    except CaptureError as exc:
        print(f"Cannot enumerate audio devices: {exc}", file=sys.stderr)
        return 2
    if not sources:
        print("No audio capture sources found.", file=sys.stderr)
        return 2
    for src in sources:
        flag = "" if src.available else "  (unavailable)"
        print(f"{src.id:<16} {src.kind.value:<10} {src.name}{flag}")
    return 0


def cmd_permission(args, catalog: Optional[SourceCatalog] = None) -> int:
    catalog = catalog or SourceCatalog()
    kind = SourceKind.SYSTEM if args.kind == "system" else SourceKind.MICROPHONE
    granted, reason = catalog.request_permission(kind)
    if granted:
        print(f"{kind.value}: granted")
        return 0
    print(f"{kind.value}: denied ({reason})", file=sys.stderr)
    return 1


def cmd_listen(args, orchestrator: Optional[StreamOrchestrator] = None) -> int:
    if orchestrator is None:
        try:
            orchestrator = StreamOrchestrator(load_stream_config())
        except TranscriptionError as exc:
            print(f"Cannot start transcription: {exc}", file=sys.stderr)
            return 2

    context_text = _load_context_file(Path(args.context_file)) if args.context_file else None
    answerer = OpenAIAnswerer() if args.sink == "llm" else None
    print_lock = threading.Lock()

    def _answer(question: DetectedQuestion) -> None:
        assert answerer is not None
        try:
            reply = answerer.answer(question.refined_text, context_text)
        except Exception as exc:  # noqa: BLE001
            with print_lock:
                print(f"LLM error: {exc}", file=sys.stderr)
            return
        with print_lock:
            print(f"[{time.strftime('%H:%M:%S')}] === ANSWER ===\n{reply.strip()}\n")

    def on_question(question: DetectedQuestion) -> None:
        with print_lock:
            print(f"[{time.strftime('%H:%M:%S')}] Q: {question.refined_text}", flush=True)
        if answerer is not None:
            threading.Thread(target=_answer, args=(question,), name="answer", daemon=True).start()

    def on_error(event: StreamErrorEvent) -> None:
        with print_lock:
            print(f"[{event.kind}] {event.message}", file=sys.stderr)

    orchestrator.events.question_detected.subscribe(on_question)
    orchestrator.events.error.subscribe(on_error)

    try:
        try:
            started = orchestrator.start_listening(args.source)
        except UnknownSourceError as exc:
            print(str(exc), file=sys.stderr)
            return 2
        if not started:
            return 1
        if not args.quiet:
            src = orchestrator.get_state().current_audio_source
            print(f"Listening on {src.name if src else '?'}… (Ctrl+C to stop)")
        try:
            while orchestrator.get_state().is_listening:
                time.sleep(0.25)
        except KeyboardInterrupt:
            pass
    finally:
        orchestrator.close()
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Live audio → transcript → question stream")
    sub = parser.add_subparsers(dest="command", required=True)

    p_sources = sub.add_parser("sources", help="List capture sources")
    p_sources.set_defaults(func=cmd_sources)

    p_listen = sub.add_parser("listen", help="Capture audio and print detected questions")
    p_listen.add_argument("--source", default=os.environ.get("QS_SOURCE"), help="Source id (default: microphone)")
    p_listen.add_argument(
        "--sink",
        default=os.environ.get("QS_SINK", "console"),
        choices=["console", "llm"],
        help="console prints questions; llm also answers them via OpenAI",
    )
    p_listen.add_argument(
        "--context-file",
        default=os.environ.get("QS_CONTEXT_FILE"),
        help="Optional text file passed to the answerer as context",
    )
    p_listen.add_argument("--quiet", action="store_true", help="Reduce console logs")
    p_listen.set_defaults(func=cmd_listen)

    p_perm = sub.add_parser("permission", help="Probe capture permission")
    p_perm.add_argument("kind", choices=["microphone", "system"])
    p_perm.set_defaults(func=cmd_permission)
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(list(argv) if argv is not None else None)
    _configure_logging(getattr(args, "quiet", False))
    return args.func(args)


__all__: List[str] = ["build_parser", "cmd_listen", "cmd_permission", "cmd_sources", "main"]


if __name__ == "__main__":
    raise SystemExit(main())
