from __future__ import annotations

import re
from datetime import UTC, datetime

STOPWORDS = frozenset(
    {
        "a",
        "an",
        "and",
        "are",
        "as",
        "at",
        "be",
        "by",
        "for",
        "from",
        "in",
        "is",
        "it",
        "of",
        "on",
        "or",
        "that",
        "the",
        "this",
        "to",
        "was",
        "with",
    }
)


def now_utc_iso() -> str:
    return datetime.now(UTC).isoformat()


def keyword_tokens(text: str, *, min_length: int = 3) -> list[str]:
    """Split free text into lowercase keywords, dropping stopwords and short tokens.

    Repeated words are kept so callers can count them.
    """
    words = re.findall(r"[^\W\d_]+", text.lower())
    return [word for word in words if len(word) >= min_length and word not in STOPWORDS]
