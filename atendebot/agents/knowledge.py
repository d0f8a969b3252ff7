"""Training-data retrieval for the system prompt.

An agent's training entries (FAQs, policies, price lists) are ranked against
the customer's message with BM25 and the best matches are rendered into the
knowledge block of the prompt. When no entry shares a term with the message
every entry is used, so a short greeting still sees the whole knowledge base.
"""
from __future__ import annotations

import logging
from typing import List, Sequence

from rank_bm25 import BM25Okapi

from ..nlp import normalize_text
from .schemas import TrainingData

logger = logging.getLogger(__name__)

DEFAULT_TOP_K = 4

# Short function words that would otherwise match almost every entry.
_STOPWORDS = frozenset(
    {
        "com", "como", "das", "dos", "esta", "isso", "mais", "mas", "nao", "para",
        "pela", "pelo", "por", "qual", "quais", "que", "sim", "sobre", "uma", "voce", "voces",
    }
)


def _tokenize(text: str) -> List[str]:
    """Lowercase, strip accents and keep alpha-numeric terms of three or more characters."""
    cleaned = "".join(c if c.isalnum() else " " for c in normalize_text(text))
    return [t for t in cleaned.split() if len(t) >= 3 and t not in _STOPWORDS]


def _entry_text(item: TrainingData) -> str:
    return f"{item.title}\n{item.content}"


def rank_training_data(query: str, items: Sequence[TrainingData], k: int = DEFAULT_TOP_K) -> List[TrainingData]:
    """Return up to ``k`` entries sharing a term with ``query``, best BM25 score first."""

    terms = _tokenize(query)
    if not terms or not items:
        return []
    corpus = [_tokenize(_entry_text(item)) for item in items]
    wanted = set(terms)
    matching = [index for index, tokens in enumerate(corpus) if wanted.intersection(tokens)]
    if not matching:
        return []
    scores = BM25Okapi(corpus).get_scores(terms)
    matching.sort(key=lambda index: scores[index], reverse=True)
    return [items[index] for index in matching[:k]]


def build_knowledge_block(query: str, items: Sequence[TrainingData], k: int = DEFAULT_TOP_K) -> str:
    """Render the entries relevant to ``query`` as ``title: content`` lines.

    Falls back to every entry when none is relevant; empty when the agent has
    no training data.
    """

    if not items:
        return ""
    selected = rank_training_data(query, items, k)
    if selected:
        logger.debug("Using %d of %d training entries", len(selected), len(items))
    else:
        selected = list(items)
        logger.debug("No training entry matched; using all %d", len(items))
    return "\n".join(f"{item.title}: {item.content}" for item in selected)
