"""Text normalization applied before embedding and before key comparison."""
from __future__ import annotations

import re
from typing import Dict, Optional

_QUOTE_PATTERN = re.compile("['\"‘’“”]")
# Anything that is not a Unicode letter, number or whitespace.
_NON_WORD_PATTERN = re.compile(r"[^\w\s]|_")
_FILLER_WORD_PATTERN = re.compile(r"\b(?:with|the)\b")
_WHITESPACE_PATTERN = re.compile(r"\s+")

# Kept deliberately small: a broad stemmer would merge distinct dishes.
PLURAL_SINGULARS: Dict[str, str] = {
    "chips": "chip",
    "burritos": "burrito",
    "tacos": "taco",
    "salsas": "salsa",
    "nachos": "nacho",
    "enchiladas": "enchilada",
    "quesadillas": "quesadilla",
}
_PLURAL_PATTERN = re.compile(
    r"\b(" + "|".join(re.escape(word) for word in sorted(PLURAL_SINGULARS)) + r")\b"
)


def normalize_for_embedding(text: Optional[str]) -> str:
    """Return the canonical form of an item name used for embedding requests.

    Lowercases, expands ``&`` to ``and``, strips quotes, turns punctuation into
    spaces, drops the filler words "with" and "the" and collapses whitespace.
    The function is total and idempotent.

    Args:
        text: Raw item text. ``None`` is treated as empty.

    Returns:
        str: Normalized text, possibly empty.
    """

    if text is None:
        return ""
    normalized = str(text).lower().strip()
    normalized = normalized.replace("&", " and ")
    normalized = _QUOTE_PATTERN.sub("", normalized)
    normalized = _NON_WORD_PATTERN.sub(" ", normalized)
    normalized = _FILLER_WORD_PATTERN.sub(" ", normalized)
    normalized = _WHITESPACE_PATTERN.sub(" ", normalized)
    return normalized.strip()


def normalize_for_key(text: Optional[str]) -> str:
    """Return the grouping key for an item name.

    Applies :func:`normalize_for_embedding` and then singularizes a fixed set
    of common plural dish names as whole words.

    Args:
        text: Raw item text. ``None`` is treated as empty.

    Returns:
        str: Normalized key, possibly empty.
    """

    normalized = normalize_for_embedding(text)
    if not normalized:
        return ""
    return _PLURAL_PATTERN.sub(lambda match: PLURAL_SINGULARS[match.group(1)], normalized).strip()


def title_case(text: Optional[str]) -> str:
    """Capitalize the first letter of each whitespace-separated word."""

    if not text:
        return ""
    words = [word for word in str(text).split() if word]
    return " ".join(word[0].upper() + word[1:].lower() for word in words)
