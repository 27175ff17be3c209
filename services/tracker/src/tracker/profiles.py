from __future__ import annotations

from collections import Counter
from collections.abc import Iterable
from typing import Protocol

from common.utils import keyword_tokens

from tracker.models import UserProfile
from tracker.repository import LedgerRepository

DEFAULT_MAX_KEYWORDS = 50
DEFAULT_DECAY = 0.8
FILE_KEYWORD_LIMIT = 200


def extract_keywords(text: str, *, limit: int = FILE_KEYWORD_LIMIT) -> dict[str, int]:
    counts = Counter(keyword_tokens(text))
    return dict(counts.most_common(limit))


class ProfileBuilder(Protocol):
    def rebuild(self, user_id: str, documents: Iterable[dict[str, int]]) -> UserProfile: ...


class KeywordProfileBuilder:
    """Blends fresh document keywords into a user's stored keyword weights.

    Existing weights decay by ``decay`` on every rebuild; each document then
    contributes its relative term frequencies. Only the ``max_keywords``
    heaviest terms are kept.
    """

    def __init__(
        self,
        repository: LedgerRepository,
        *,
        max_keywords: int = DEFAULT_MAX_KEYWORDS,
        decay: float = DEFAULT_DECAY,
    ) -> None:
        self.repository = repository
        self.max_keywords = max_keywords
        self.decay = decay

    def rebuild(self, user_id: str, documents: Iterable[dict[str, int]]) -> UserProfile:
        existing = self.repository.get_user_profile(user_id)
        weights: dict[str, float] = {}
        if existing is not None:
            weights = {word: weight * self.decay for word, weight in existing.keywords.items()}

        for document in documents:
            total = sum(document.values())
            if total <= 0:
                continue
            for word, count in document.items():
                weights[word] = weights.get(word, 0.0) + count / total

        ranked = sorted(weights.items(), key=lambda item: (-item[1], item[0]))
        top = {word: round(weight, 4) for word, weight in ranked[: self.max_keywords]}
        return self.repository.upsert_user_profile(user_id, top)
