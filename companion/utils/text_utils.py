"""
Text processing utility functions.

This module provides the sentence and token helpers shared by the reply
shaper, the loop detector and the memory layer.
"""

import re
from typing import Any, List

_TERMINALS = ".!?…"
_CLOSERS = "\"')]}»”’"

# Lowercased words that end with a period without ending the sentence
ABBREVIATIONS = frozenset(
    {"mr", "mrs", "ms", "dr", "st", "vs", "jr", "sr", "prof", "e.g", "i.e", "approx", "no"}
)

_WORD_RE = re.compile(r"[a-z0-9']+")


def tokenize(text: Any) -> List[str]:
    """Lowercase word tokens, apostrophes kept so contractions stay whole."""
    if not isinstance(text, str):
        return []
    return _WORD_RE.findall(text.lower())


def normalize_for_comparison(text: Any) -> str:
    """Lowercase, punctuation-free, single-spaced form used for similarity checks."""
    return " ".join(tokenize(text))


def _ends_with_abbreviation(segment: str) -> bool:
    words = segment.split()
    if not words:
        return False
    last = words[-1].lstrip("\"'([{").lower()
    return last in ABBREVIATIONS


def split_sentences(text: Any) -> List[str]:
    """
    Split text into sentences by scanning for terminal punctuation.

    A boundary is a run of ``.``, ``!``, ``?`` or ``…`` (plus any closing
    quotes or brackets) followed by whitespace or the end of the text. A single
    period after a known abbreviation is not a boundary, and a period inside a
    token ("3.5", "example.com") never is. Trailing text without terminal
    punctuation is returned as a final sentence. Sentences are returned
    stripped and never split mid-word.

    Examples:
        >>> split_sentences("Hello there. How are you? I am fine.")
        ['Hello there.', 'How are you?', 'I am fine.']
        >>> split_sentences("Ask Dr. Lee about it. Then rest")
        ['Ask Dr. Lee about it.', 'Then rest']
    """
    if not isinstance(text, str) or not text.strip():
        return []

    sentences: List[str] = []
    start = 0
    i = 0
    n = len(text)
    while i < n:
        ch = text[i]
        if ch not in _TERMINALS:
            i += 1
            continue
        j = i
        while j < n and text[j] in _TERMINALS:
            j += 1
        while j < n and text[j] in _CLOSERS:
            j += 1
        at_boundary = j >= n or text[j].isspace()
        single_period = ch == "." and j - i == 1
        if at_boundary and not (single_period and _ends_with_abbreviation(text[start:i])):
            sentence = text[start:j].strip()
            if sentence:
                sentences.append(sentence)
            start = j
        i = j

    tail = text[start:].strip()
    if tail:
        sentences.append(tail)
    return sentences


def count_sentences(text: Any) -> int:
    """Number of sentences according to :func:`split_sentences`."""
    return len(split_sentences(text))


def ends_with_terminal(text: str) -> bool:
    """True when the text (ignoring closing quotes/brackets) ends in terminal punctuation."""
    stripped = (text or "").rstrip().rstrip(_CLOSERS)
    return bool(stripped) and stripped[-1] in _TERMINALS
