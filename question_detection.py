"""Question heuristics, streaming hints and refinement of transcript text into questions."""

from __future__ import annotations

import re
import threading
import time
import uuid
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, List, Optional, Sequence, Set

from stream_parameters import HintConfig


@dataclass(frozen=True)
class DetectedQuestion:
    id: str
    text: str
    refined_text: str
    timestamp: float
    chunk_id: str
    confidence: float = 1.0


_CJK = re.compile(r"[぀-ヿ㐀-鿿]")
_WS = re.compile(r"\s+")


def normalize_question(text: str) -> str:
    """Case-fold and collapse whitespace; the identity used for de-duplication."""
    return _WS.sub(" ", text.casefold()).strip()


def _has_cjk(text: str) -> bool:
    return bool(_CJK.search(text))


# ---------------------------------------------------------------------------
# Heuristic strategy


class QuestionHeuristic:
    """Strategy deciding what looks like a question. Subclass to swap languages or rules."""

    def is_question(self, sentence: str) -> bool:
        raise NotImplementedError

    def has_activity(self, text: str) -> bool:
        """Cheap check over recent transcript text, used for early chunk cuts."""
        raise NotImplementedError

    def trim_preface(self, sentence: str) -> str:
        return sentence.strip()

    def is_filler(self, token: str) -> bool:
        return False


class InterrogativeHeuristic(QuestionHeuristic):
    """English and Japanese structural cues: interrogatives, question endings, polite requests."""

    EN_WH_WORDS = frozenset({"what", "how", "why", "when", "where", "who", "whom", "whose", "which"})
    EN_AUX_OPENERS = frozenset(
        {
            "can", "could", "should", "would", "will", "shall", "may", "might",
            "is", "are", "was", "were", "do", "does", "did", "have", "has", "had",
        }
    )
    EN_REQUEST_OPENERS = ("tell me", "explain", "describe", "walk me through", "talk about", "give me an example")
    EN_FILLERS = frozenset({"um", "uh", "umm", "uhh", "erm", "hmm", "mm"})
    EN_PREFACE = re.compile(r"^(so|okay|ok|well|alright|all right|right|now|and|um|uh)\b[,\s]+", re.IGNORECASE)

    JA_STARTERS = (
        "どう", "どの", "どこ", "いつ", "なぜ", "なん", "何", "だれ", "誰",
        "どちら", "どれ", "いくら", "いくつ", "どんな",
    )
    JA_ENDINGS = re.compile(
        r"(ですか|ますか|でしょうか|ませんか|かしら|のか|んですか|んでしょうか|か)[。?？\s]*$"
    )
    JA_REQUESTS = re.compile(
        r"(教えて(ください|くれ|もらえ|いただけ)|お聞かせ(ください|いただけ)|お願い(します|できますか)"
        r"|いただけ(ます|ません)か|もらえ(ます|ません)か|くれ(ます|ません)か|てください)"
    )
    JA_FILLERS = frozenset(
        {
            "えー", "あー", "うー", "んー", "そのー", "あのー", "えーっと", "あーと", "まあ", "まぁ",
            "なんか", "やっぱり", "やっぱ", "うん", "えっと", "えと", "あの", "とりあえず", "う〜ん",
        }
    )
    JA_PREFACE = re.compile(
        r"^(じゃあ|では|それでは|さて|ちなみに|ところで|えっと|えと|あの|その|とりあえず|まぁ|まず|えー|あー|うー|そのー|えーっと)[、\s]+"
    )
    JA_QUICK = (
        "ですか", "ますか", "でしょうか", "ませんか", "か？", "か。", "かしら", "のか",
        "教えて", "お聞かせ", "いただけ", "もらえ",
    )

    def is_question(self, sentence: str) -> bool:
        text = sentence.strip()
        if not text:
            return False
        if text.endswith(("?", "？")):
            return True
        if _has_cjk(text):
            return (
                bool(self.JA_ENDINGS.search(text))
                or bool(self.JA_REQUESTS.search(text))
                or any(text.startswith(starter) for starter in self.JA_STARTERS)
            )
        lowered = text.lower()
        words = re.findall(r"[a-z']+", lowered)
        if not words:
            return False
        if words[0] in self.EN_WH_WORDS or words[0] in self.EN_AUX_OPENERS:
            return True
        return lowered.startswith(self.EN_REQUEST_OPENERS)

    def has_activity(self, text: str) -> bool:
        if "?" in text or "？" in text:
            return True
        if any(pattern in text for pattern in self.JA_QUICK):
            return True
        lowered = text.lower()
        return any(word in self.EN_WH_WORDS for word in re.findall(r"[a-z']+", lowered))

    def trim_preface(self, sentence: str) -> str:
        result = sentence.strip()
        pattern = self.JA_PREFACE if _has_cjk(result) else self.EN_PREFACE
        for _ in range(3):
            trimmed = pattern.sub("", result, count=1).strip()
            if trimmed == result:
                break
            result = trimmed
        return result

    def is_filler(self, token: str) -> bool:
        lowered = token.lower().strip(",、")
        return lowered in self.EN_FILLERS or lowered in self.JA_FILLERS


def has_question_activity(window: Sequence[str], heuristic: QuestionHeuristic) -> bool:
    """Pure check over the rolling transcript window."""
    return heuristic.has_activity(" ".join(window))


# ---------------------------------------------------------------------------
# Streaming hint


class StreamingHintDetector:
    """Rolling window of recent transcript text that can request an early chunk cut."""

    def __init__(
        self,
        config: Optional[HintConfig] = None,
        heuristic: Optional[QuestionHeuristic] = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.cfg = config or HintConfig()
        self.heuristic = heuristic or InterrogativeHeuristic()
        self._clock = clock
        self._lock = threading.Lock()
        self._window: Deque[str] = deque(maxlen=max(1, self.cfg.buffer_entries))
        self._hint_at: Optional[float] = None

    @property
    def window(self) -> List[str]:
        with self._lock:
            return list(self._window)

    def observe(self, text: str) -> bool:
        """Add a transcript to the window; True when it raised a fresh hint."""
        if not text or not text.strip():
            return False
        with self._lock:
            self._window.append(text.strip().lower())
            # only the newest entry can turn an acknowledged window into a new hint
            if not has_question_activity([self._window[-1]], self.heuristic):
                return False
            self._hint_at = self._clock()
            return True

    def has_recent_question_activity(self) -> bool:
        with self._lock:
            if self._hint_at is None:
                return False
            if (self._clock() - self._hint_at) * 1000.0 > self.cfg.window_ms:
                self._hint_at = None
                return False
            return True

    def acknowledge(self) -> None:
        with self._lock:
            self._hint_at = None

    def clear(self) -> None:
        with self._lock:
            self._window.clear()
            self._hint_at = None


# ---------------------------------------------------------------------------
# Refinement


_SENTENCE_SPLIT = re.compile(r"(?<=[?？!！。])|(?<=\.)(?=\s)|\n+")
_TRAILING_PUNCT = re.compile(r"[、。！？!?.,\s]+$")
_JA_TRAILING_PARTICLE = re.compile(r"\s*(よね|かな|ね|よ)$")
_TOKEN_SPLIT = re.compile(r"[\s、]+")
_JA_CONNECTORS = ("それから", "あと", "次に", "つぎに")


class QuestionRefiner:
    """Splits transcripts into candidate sentences and emits new, normalised questions."""

    def __init__(self, heuristic: Optional[QuestionHeuristic] = None, *, min_length: int = 3):
        self.heuristic = heuristic or InterrogativeHeuristic()
        self.min_length = min_length
        self._lock = threading.Lock()
        self._seen: Set[str] = set()

    def reset(self) -> None:
        with self._lock:
            self._seen.clear()

    def detect_and_refine(self, result) -> List[DetectedQuestion]:
        text = (result.text or "").strip()
        if len(text) < self.min_length:
            return []

        questions: List[DetectedQuestion] = []
        for candidate in self.split_sentences(text):
            core = self.heuristic.trim_preface(candidate)
            if len(core.strip()) < 2 or not self.heuristic.is_question(core):
                continue
            refined = self.refine(core)
            key = normalize_question(refined)
            with self._lock:
                if key in self._seen:
                    continue
                self._seen.add(key)
            questions.append(
                DetectedQuestion(
                    id=uuid.uuid4().hex,
                    text=core.strip(),
                    refined_text=refined,
                    timestamp=result.timestamp,
                    chunk_id=result.chunk_id,
                    confidence=result.confidence,
                )
            )
        return questions

    def split_sentences(self, text: str) -> List[str]:
        parts = [p.strip() for p in _SENTENCE_SPLIT.split(text) if p and p.strip()]
        out: List[str] = []
        for part in parts:
            pieces = [part]
            if _has_cjk(part):
                for connector in _JA_CONNECTORS:
                    pieces = [s.strip() for piece in pieces for s in piece.split(connector) if s.strip()]
            out.extend(p.strip("、 ") for p in pieces)
        return [p for p in out if len(p) >= 2]

    def refine(self, text: str) -> str:
        japanese = _has_cjk(text)
        tokens = [t for t in _TOKEN_SPLIT.split(text.strip()) if t]
        kept: List[str] = []
        for token in tokens:
            if self.heuristic.is_filler(token):
                continue
            if kept and token.lower() == kept[-1].lower():
                continue
            kept.append(token.rstrip(","))
        refined = " ".join(kept) if not japanese else "".join(kept)
        refined = _WS.sub(" ", refined).strip()
        refined = _TRAILING_PUNCT.sub("", refined)
        if japanese:
            refined = _JA_TRAILING_PARTICLE.sub("", refined)
            refined += "？"
        else:
            refined += "?"
        if refined and refined[0].isascii() and refined[0].isalpha():
            refined = refined[0].upper() + refined[1:]
        if len(refined.rstrip("?？").strip()) < 2:
            return text.strip()
        return refined


__all__ = [
    "DetectedQuestion",
    "InterrogativeHeuristic",
    "QuestionHeuristic",
    "QuestionRefiner",
    "StreamingHintDetector",
    "has_question_activity",
    "normalize_question",
]
