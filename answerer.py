"""Answer generation for detected questions (OpenAI Responses API)."""

from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Protocol

from openai import OpenAI

from events import StreamError
from stream_parameters import load_openai_api_key

ANSWER_LOG = logging.getLogger("question_stream.answerer")


class AnswerError(StreamError):
    pass


class Answerer(Protocol):
    def answer(self, question_text: str, context: Optional[str] = None) -> str:
        ...


@dataclass
class AnswererConfig:
    model: str = field(default_factory=lambda: os.environ.get("LLM_OPENAI_MODEL", os.environ.get("OPENAI_MODEL", "gpt-5")))
    api_key: Optional[str] = field(default_factory=load_openai_api_key)
    base_url: Optional[str] = field(default_factory=lambda: os.environ.get("OPENAI_BASE_URL"))
    timeout_s: float = field(default_factory=lambda: float(os.environ.get("OPENAI_TIMEOUT_S", "120")))
    reasoning_effort: Optional[str] = field(default_factory=lambda: os.environ.get("LLM_REASONING_EFFORT", "low"))


class OpenAIAnswerer:
    """Answers one question per call, chaining responses so follow-ups keep context."""

    def __init__(self, cfg: Optional[AnswererConfig] = None, *, client=None):
        self.cfg = cfg or AnswererConfig()
        self._client = client
        self._last_response_id: Optional[str] = None
        # one answer at a time so each call chains onto the previous response
        self._lock = threading.Lock()

    def answer(
        self,
        question_text: str,
        context: Optional[str] = None,
        *,
        on_stream: Optional[Callable[[str], None]] = None,
    ) -> str:
        with self._lock:
            return self._answer_locked(question_text, context, on_stream)

    def _answer_locked(
        self,
        question_text: str,
        context: Optional[str],
        on_stream: Optional[Callable[[str], None]],
    ) -> str:
        prompt = build_prompt(context, question_text)
        client = self._ensure_client()
        kwargs: Dict[str, object] = {
            "model": self.cfg.model,
            "input": [{"role": "user", "content": prompt}],
            "timeout": self.cfg.timeout_s,
        }
        if self.cfg.reasoning_effort:
            kwargs["reasoning"] = {"effort": self.cfg.reasoning_effort}
        if self._last_response_id:
            kwargs["previous_response_id"] = self._last_response_id

        ANSWER_LOG.info("answering with %s: %s", self.cfg.model, question_text)
        if on_stream is not None:
            return self._stream(client, kwargs, on_stream)
        try:
            response = client.responses.create(**kwargs)
        except Exception as exc:
            raise AnswerError(f"OpenAI completion failed: {exc}") from exc
        if response is not None:
            self._last_response_id = getattr(response, "id", None)
        return _extract_response_text(response)

    def _stream(self, client, kwargs: Dict[str, object], on_stream: Callable[[str], None]) -> str:
        output: List[str] = []
        final = None
        try:
            with client.responses.stream(**kwargs) as stream:
                for event in stream:
                    etype = getattr(event, "type", "")
                    if etype == "response.output_text.delta":
                        delta = getattr(event, "delta", None)
                        if delta:
                            output.append(str(delta))
                            on_stream(str(delta))
                    elif etype == "response.completed":
                        break
                final = stream.get_final_response()
        except Exception as exc:
            raise AnswerError(f"OpenAI streaming failed: {exc}") from exc
        if final is not None:
            self._last_response_id = getattr(final, "id", None)
        if output:
            return "".join(output).strip()
        return _extract_response_text(final)

    def _ensure_client(self):
        if self._client is not None:
            return self._client
        if not self.cfg.api_key:
            raise AnswerError("OPENAI_API_KEY is not set (or openai_api_key.txt is missing).")
        self._client = OpenAI(api_key=self.cfg.api_key, base_url=self.cfg.base_url)
        return self._client


def _extract_response_text(response) -> str:
    """Pull the text out of a Responses API result; its shape varies between SDK versions."""
    if response is None:
        return ""
    text = getattr(response, "output_text", None)
    if callable(text):
        text = text()
    if isinstance(text, str):
        return text.strip()

    content = getattr(response, "content", None)
    if content:
        parts = []
        for item in content:
            if isinstance(item, dict):
                parts.append(item.get("text") or "")
            else:
                parts.append(str(getattr(item, "text", "")))
        joined = " ".join(p.strip() for p in parts if p)
        if joined:
            return joined.strip()

    return str(response).strip()


def build_prompt(context: Optional[str], question: str) -> str:
    context = (context or "").strip()
    parts = []
    if context:
        parts.append("Context:\n" + context)
    parts.append("Question:\n" + question.strip())
    parts.append("\nTask: Answer the question concisely, as if speaking in a live conversation.")
    return "\n\n".join(parts)


__all__ = ["AnswerError", "Answerer", "AnswererConfig", "OpenAIAnswerer", "build_prompt"]
