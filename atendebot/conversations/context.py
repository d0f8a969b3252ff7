"""Bounded prompt context and farewell detection.

Short conversations are sent to the model verbatim. Longer ones are folded:
everything but the last few turns is summarised by a separate model call and
only the recent window is kept word for word.
"""
from __future__ import annotations

import logging
import re
from enum import Enum
from typing import Callable, Optional, Sequence

from ..nlp import detect_intent, normalize_text
from .models import ChatTurn, ConversationContext
from .repository import ConversationRepository

logger = logging.getLogger(__name__)

Summarizer = Callable[[Sequence[ChatTurn]], Optional[str]]

DEFAULT_HISTORY_THRESHOLD = 10
DEFAULT_RECENT_WINDOW = 5
MAX_FAREWELL_LENGTH = 100
MAX_TRAILING_WORDS = 4


class ContextAssembler:
    def __init__(
        self,
        repository: ConversationRepository,
        summarizer: Summarizer | None = None,
        *,
        history_threshold: int = DEFAULT_HISTORY_THRESHOLD,
        recent_window: int = DEFAULT_RECENT_WINDOW,
    ) -> None:
        if recent_window < 1 or history_threshold < recent_window:
            raise ValueError("recent_window must be >= 1 and <= history_threshold")
        self._repository = repository
        self._summarizer = summarizer
        self._history_threshold = history_threshold
        self._recent_window = recent_window

    def prepare_conversation_context(self, conversation_id: str) -> ConversationContext:
        try:
            messages = self._repository.list_messages(conversation_id)
        except Exception:
            logger.exception("Failed to load history for conversation %s", conversation_id)
            return ConversationContext()

        turns = [ChatTurn.from_message(message) for message in messages]
        total = len(turns)
        if total <= self._history_threshold:
            return ConversationContext(
                summary=None,
                recent_messages=turns,
                detected_intent=_intent_of(turns),
                total_messages=total,
            )

        older = turns[: -self._recent_window]
        recent = turns[-self._recent_window :]
        return ConversationContext(
            summary=self._summarize(conversation_id, older),
            recent_messages=recent,
            detected_intent=_intent_of(recent),
            total_messages=total,
        )

    def _summarize(self, conversation_id: str, older: Sequence[ChatTurn]) -> str | None:
        if self._summarizer is None:
            return None
        try:
            summary = self._summarizer(older)
        except Exception:
            logger.warning("Summary failed for conversation %s", conversation_id, exc_info=True)
            return None
        return summary.strip() if summary and summary.strip() else None


def _intent_of(turns: Sequence[ChatTurn]):
    return detect_intent([turn.content for turn in turns if turn.role == "user"])


def format_context_for_prompt(context: ConversationContext) -> str:
    if not context.summary:
        return ""
    formatted = f"\n\n=== RESUMO DA CONVERSA ANTERIOR ===\n{context.summary}"
    if context.detected_intent is not None and context.detected_intent.is_actionable:
        formatted += f"\n\nIntenção detectada: {context.detected_intent.value}"
    return formatted


# ---------------------------------------------------------------------------
# Farewell detection


class FarewellType(str, Enum):
    THANKING = "THANKING"
    GOODBYE = "GOODBYE"
    CONFIRMATION = "CONFIRMATION"
    BRIEF = "BRIEF"


# Normalised (lowercase, no accents) closing phrases.
_FAREWELL_PHRASES = (
    "tchau", "ate mais", "ate logo", "ate breve", "ate a proxima", "flw", "vlw flw",
    "adeus", "bye", "xau", "falou",
    "muito obrigado", "muito obrigada", "obrigado pela ajuda", "obrigada pela ajuda",
    "valeu pela ajuda", "agradeco muito", "ok obrigado", "ok obrigada",
    "beleza obrigado", "beleza obrigada", "obrigado", "obrigada", "brigado", "brigada",
    "obrigado mesmo", "obrigada mesmo", "thanks", "obg",
    "era isso", "era so isso", "so isso mesmo", "era isso mesmo", "so isso", "e so isso",
    "valeu", "vlw", "blz vlw", "beleza vlw", "perfeito", "show", "top",
)
# Longest first so "ate mais" is consumed before anything shorter could match.
_ORDERED_PHRASES = sorted(_FAREWELL_PHRASES, key=len, reverse=True)

# Words that signal the customer is continuing rather than closing.
_CONTINUATION_WORDS = frozenset(
    {
        "mas", "porem", "quero", "queria", "preciso", "gostaria", "quanto", "qual",
        "quais", "mais", "outro", "outra", "tambem", "ainda", "pode", "poderia",
        "manda", "mandar", "envia", "enviar", "como", "onde", "quando",
    }
)

_CLOSING_EMOJI = frozenset("👋🙏😊✌👍❤🥰😉🤝️")
_OBRIGADO_RE = re.compile(r"^(muito )?obrigad[oa]( mesmo| pela ajuda)?$")
_TRAILING_PUNCT_RE = re.compile(r"[!.\s]+$")
_NON_WORD_RE = re.compile(r"[^\w\s]", re.UNICODE)
_SPACES_RE = re.compile(r"\s+")


def _prepare(text: str) -> str:
    normalized = _TRAILING_PUNCT_RE.sub("", normalize_text(text))
    return normalized.strip()


def _words_only(text: str) -> str:
    return _SPACES_RE.sub(" ", _NON_WORD_RE.sub(" ", text)).strip()


def _is_closing_emoji(text: str) -> bool:
    compact = text.replace(" ", "")
    return bool(compact) and all(ch in _CLOSING_EMOJI for ch in compact)


def _strip_farewell_phrases(words: str) -> tuple[str, bool]:
    """Remove farewell phrases from ``words``; report whether any matched.

    Phrases of one or two words only count at the start or end of the message;
    longer phrases count anywhere.
    """

    remainder = words
    matched = False
    for phrase in _ORDERED_PHRASES:
        pattern = re.compile(rf"(?<!\w){re.escape(phrase)}(?!\w)")
        short = len(phrase.split()) <= 2
        while True:
            hit = None
            for candidate in pattern.finditer(remainder):
                if not short or candidate.start() == 0 or candidate.end() == len(remainder):
                    hit = candidate
                    break
            if hit is None:
                break
            matched = True
            remainder = (remainder[: hit.start()] + " " + remainder[hit.end() :]).strip()
            remainder = _SPACES_RE.sub(" ", remainder)
    return remainder, matched


def detect_end_of_conversation(text: str | None) -> bool:
    """Whether ``text`` is a short closing utterance (thanks, goodbye, "era isso")."""

    if not text or not text.strip():
        return False
    if "?" in text:
        return False
    prepared = _prepare(text)
    if not prepared or len(prepared) > MAX_FAREWELL_LENGTH:
        return False
    if _is_closing_emoji(prepared):
        return True

    words = _words_only(prepared)
    if not words:
        return False
    if _OBRIGADO_RE.match(words):
        return True

    remainder, matched = _strip_farewell_phrases(words)
    if not matched:
        return False
    leftover = remainder.split()
    if any(word in _CONTINUATION_WORDS for word in leftover):
        return False
    return len(leftover) <= MAX_TRAILING_WORDS


def detect_farewell_type(text: str | None) -> FarewellType | None:
    if not detect_end_of_conversation(text):
        return None
    prepared = _prepare(text or "")
    if _is_closing_emoji(prepared):
        if "🙏" in prepared:
            return FarewellType.THANKING
        if "👋" in prepared:
            return FarewellType.GOODBYE
        return FarewellType.BRIEF
    words = _words_only(prepared)
    if re.search(r"obrigad[oa]|brigad[oa]|agradeco|valeu pela|thanks|obg", words):
        return FarewellType.THANKING
    if re.search(r"tchau|ate (mais|logo|breve|a proxima)|adeus|bye|flw|xau|falou", words):
        return FarewellType.GOODBYE
    if re.search(r"era (so )?isso|so isso|e so", words):
        return FarewellType.CONFIRMATION
    return FarewellType.BRIEF
