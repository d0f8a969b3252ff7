"""Lightweight text utilities shared by routing, context and prompt code."""
from __future__ import annotations

import unicodedata
from enum import Enum
from typing import Iterable, Optional, Sequence, Tuple

from langdetect import DetectorFactory, LangDetectException, detect

DetectorFactory.seed = 0


def strip_accents(text: str) -> str:
    decomposed = unicodedata.normalize("NFD", text)
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch))


def normalize_text(text: str | None) -> str:
    """Lowercase, strip diacritics and surrounding whitespace.

    ``"Promoção"`` and ``"promocao"`` normalise to the same string, so keyword
    matching is insensitive to case and accents.
    """

    if not text:
        return ""
    return strip_accents(text.lower()).strip()


class CustomerIntent(str, Enum):
    FALAR_HUMANO = "FALAR_HUMANO"
    RECLAMACAO = "RECLAMACAO"
    DUVIDA_PRECO = "DUVIDA_PRECO"
    COMPRAR = "COMPRAR"
    AGENDAMENTO = "AGENDAMENTO"
    SUPORTE = "SUPORTE"
    INFORMACAO = "INFORMACAO"
    OUTRO = "OUTRO"

    @property
    def is_actionable(self) -> bool:
        return self is not CustomerIntent.OUTRO


# Checked in order; the first matching rule wins.
_INTENT_RULES: Tuple[Tuple[CustomerIntent, Tuple[str, ...]], ...] = (
    (CustomerIntent.FALAR_HUMANO, ("humano", "atendente", "pessoa")),
    (CustomerIntent.RECLAMACAO, ("reclamar", "problema", "nao funciona")),
    (CustomerIntent.DUVIDA_PRECO, ("preco", "valor", "quanto custa")),
    (CustomerIntent.COMPRAR, ("comprar", "quero", "pedir")),
    (CustomerIntent.AGENDAMENTO, ("agendar", "horario", "marcar")),
    (CustomerIntent.SUPORTE, ("ajuda", "como faco", "suporte")),
)


def detect_intent(customer_texts: Sequence[str], window: int = 3) -> CustomerIntent:
    """Classify the last ``window`` customer utterances with a keyword heuristic."""

    recent = [text for text in customer_texts if text and text.strip()][-window:]
    if not recent:
        return CustomerIntent.OUTRO
    joined = normalize_text("\n".join(recent))
    for intent, keywords in _INTENT_RULES:
        if any(keyword in joined for keyword in keywords):
            return intent
    return CustomerIntent.INFORMACAO


def count_keyword_hits(text: str, keywords: Iterable[str]) -> int:
    """Number of distinct non-empty ``keywords`` that occur in ``text``."""

    haystack = normalize_text(text)
    seen = set()
    for keyword in keywords:
        needle = normalize_text(keyword)
        if needle and needle in haystack:
            seen.add(needle)
    return len(seen)


def detect_language(text: str) -> Optional[str]:
    """Best-effort language code for ``text`` (``None`` when undetectable)."""

    if not text or len(text.strip()) < 3:
        return None
    try:
        return detect(text)
    except LangDetectException:
        return None
