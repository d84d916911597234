from __future__ import annotations

import json
import logging
import os
import tempfile
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional

import httpx

from chunker import AudioChunk
from events import EncodingError, TranscriptionError
from pcm import encode_wav, rms
from stream_parameters import TranscriptionConfig, load_openai_api_key

HTTP_LOG = logging.getLogger("question_stream.transcriber")


@dataclass(frozen=True)
class TranscriptionResult:
    id: str
    text: str
    timestamp: float
    confidence: float
    chunk_id: str
    language: str = ""


def _empty_result(chunk: AudioChunk, language: str = "") -> TranscriptionResult:
    return TranscriptionResult(
        id=uuid.uuid4().hex,
        text="",
        timestamp=chunk.timestamp,
        confidence=0.0,
        chunk_id=chunk.id,
        language=language,
    )


class Transcriber:
    """Uploads one chunk as a WAV file to an OpenAI-compatible transcription endpoint."""

    def __init__(
        self,
        config: Optional[TranscriptionConfig] = None,
        *,
        sample_rate: int = 16000,
        api_key: Optional[str] = None,
        client: Optional[httpx.Client] = None,
        tmp_dir: Optional[Path] = None,
    ):
        self.cfg = config or TranscriptionConfig.from_env()
        self.sample_rate = sample_rate
        self.tmp_dir = Path(tmp_dir) if tmp_dir else None
        self._api_key = api_key or load_openai_api_key()
        if client is None:
            if not self._api_key:
                raise TranscriptionError("OPENAI_API_KEY missing; transcription disabled")
            headers: Dict[str, str] = {"Authorization": f"Bearer {self._api_key}"}
            client = httpx.Client(timeout=httpx.Timeout(self.cfg.timeout_s, connect=10.0), headers=headers)
        self._client = client

    def close(self) -> None:
        self._client.close()

    def transcribe(self, chunk: AudioChunk) -> TranscriptionResult:
        if chunk.sample_count == 0:
            return _empty_result(chunk, self.cfg.language)
        level = rms(chunk.samples)
        if level <= self.cfg.silence_rms:
            HTTP_LOG.debug("chunk #%d below silence gate (rms=%.4f)", chunk.sequence, level)
            return _empty_result(chunk, self.cfg.language)

        payload = encode_wav(chunk.samples, chunk.sample_rate or self.sample_rate)
        tmp_path = self._write_temp(payload)
        try:
            text = self._post(tmp_path, chunk)
        finally:
            tmp_path.unlink(missing_ok=True)

        return TranscriptionResult(
            id=uuid.uuid4().hex,
            text=text,
            timestamp=chunk.timestamp,
            confidence=1.0,
            chunk_id=chunk.id,
            language=self.cfg.language,
        )

    # ---- helpers -----------------------------------------------------

    def _write_temp(self, payload: bytes) -> Path:
        if self.tmp_dir is not None:
            self.tmp_dir.mkdir(parents=True, exist_ok=True)
        fd, name = tempfile.mkstemp(prefix=f"chunk_{int(time.time() * 1000)}_", suffix=".wav", dir=self.tmp_dir)
        path = Path(name)
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(payload)
        except OSError as exc:
            path.unlink(missing_ok=True)
            raise EncodingError(f"Failed to write WAV payload: {exc}") from exc
        return path

    def _post(self, path: Path, chunk: AudioChunk) -> str:
        data = {
            "model": self.cfg.model,
            "language": self.cfg.language,
            "response_format": "text",
            "temperature": str(self.cfg.temperature),
        }
        if self.cfg.prompt:
            data["prompt"] = self.cfg.prompt

        HTTP_LOG.info("chunk #%d POST %s model=%s (%.0f ms)", chunk.sequence, self.cfg.endpoint, self.cfg.model, chunk.duration_ms)
        try:
            with path.open("rb") as handle:
                files = {"file": ("chunk.wav", handle, "audio/wav")}
                response = self._client.post(self.cfg.endpoint, data=data, files=files)
        except httpx.TimeoutException as exc:
            raise TranscriptionError(f"Transcription timed out: {exc}") from exc
        except httpx.HTTPError as exc:
            raise TranscriptionError(f"Transcription upload failed: {exc}") from exc

        if response.status_code != 200:
            try:
                detail = response.json()
            except Exception:
                detail = response.text
            if response.status_code == 429:
                raise TranscriptionError(f"Transcription rate limited: {detail!r}")
            raise TranscriptionError(f"Transcription error {response.status_code}: {detail!r}")
        return self._extract_text(response)

    @staticmethod
    def _extract_text(response: httpx.Response) -> str:
        content_type = response.headers.get("content-type", "")
        if "json" not in content_type:
            return response.text.strip()
        try:
            payload = response.json()
        except (json.JSONDecodeError, ValueError) as exc:
            raise TranscriptionError(f"Malformed transcription response: {exc}") from exc
        if isinstance(payload, dict):
            text = payload.get("text")
            if isinstance(text, str):
                return text.strip()
        if isinstance(payload, str):
            return payload.strip()
        raise TranscriptionError(f"Malformed transcription response: {payload!r}")


class NullTranscriber:
    """Stands in for the transcriber when question detection is switched off."""

    def __init__(self, language: str = ""):
        self.language = language

    def transcribe(self, chunk: AudioChunk) -> TranscriptionResult:
        return _empty_result(chunk, self.language)

    def close(self) -> None:
        pass


__all__ = ["NullTranscriber", "Transcriber", "TranscriptionResult"]
