"""
Text Utilities

Tokenization, overlap measures, token estimation and lossy compression
helpers shared by the memory store, knowledge base, builder and optimizer.
"""

import math
import re

_WHITESPACE = re.compile(r"\s+")
_SENTENCE = re.compile(r"[^.!?]+[.!?]*")
_FILLER = re.compile(r"\b(?:very|really|quite|pretty)\s+", re.IGNORECASE)
_OK_VARIANTS = re.compile(r"\b(?:okay|ok|alright)\b", re.IGNORECASE)

CHARS_PER_TOKEN = 4


def words(text: str | None) -> list[str]:
    """Lowercased whitespace-separated words."""
    if not text:
        return []
    return [w for w in _WHITESPACE.split(text.lower()) if w]


def token_set(text: str | None) -> set[str]:
    return set(words(text))


def jaccard(a: str | None, b: str | None) -> float:
    """Jaccard similarity of the two texts' word sets."""
    left, right = token_set(a), token_set(b)
    union = left | right
    if not union:
        return 0.0
    return len(left & right) / len(union)


def estimate_tokens(text: str | None) -> int:
    """Rough token estimate: one token per four characters."""
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def collapse_whitespace(text: str) -> str:
    return _WHITESPACE.sub(" ", text).strip()


def compress_sentences(text: str, ratio: float) -> str:
    """
    Keep the leading share of sentences given by ratio.

    At least one sentence always survives and the result is never longer
    than the input.
    """
    if ratio >= 1.0 or not text:
        return text
    sentences = [s for s in _SENTENCE.findall(text) if s.strip()]
    if not sentences:
        return text
    keep = max(1, math.floor(len(sentences) * ratio))
    compressed = collapse_whitespace("".join(sentences[:keep]))
    return compressed if len(compressed) <= len(text) else text


def strip_filler(text: str) -> str:
    """Collapse whitespace, drop intensifiers and normalise 'ok' variants."""
    result = collapse_whitespace(text)
    result = _FILLER.sub("", result)
    return _OK_VARIANTS.sub("ok", result)


def truncate(text: str, length: int, suffix: str = "...") -> str:
    if len(text) <= length:
        return text
    return text[:length] + suffix


def snippet(text: str | None, query: str, radius: int) -> tuple[str, str] | None:
    """
    Excerpt around the first case-insensitive occurrence of query.

    Returns (plain, highlighted) or None when the query does not occur.
    """
    if not text or not query:
        return None
    index = text.lower().find(query.lower())
    if index < 0:
        return None
    start = max(0, index - radius)
    end = min(len(text), index + len(query) + radius)
    plain = text[start:end]
    highlighted = re.sub(
        re.escape(query),
        lambda m: f"**{m.group(0)}**",
        plain,
        flags=re.IGNORECASE,
    )
    return plain, highlighted
