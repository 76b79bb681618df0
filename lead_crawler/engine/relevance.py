"""Order deduplicated candidates by how well they match the search intent."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Mapping, Sequence

from ..models import Candidate
from ..services.base import SearchHit

_KEYWORD_SPLIT = re.compile(r"[,\s]+")

KEYWORD_SCORE = 10
EMAIL_SCORE = 20
PHONE_SCORE = 5
RATING_SCORE = 5
REVIEWS_SCORE = 3
DESCRIPTION_SCORE = 2


def intent_keywords(intent: str) -> list[str]:
    """Lowercased words of the intent longer than two characters."""

    return [word for word in _KEYWORD_SPLIT.split(intent.lower()) if len(word) > 2]


@dataclass
class RankedCandidates:
    ranked: list[Candidate] = field(default_factory=list)
    scores: dict[str, int] = field(default_factory=dict)
    dropped: int = 0


class RelevanceRanker:
    """Score candidates against intent keywords and the place data from the search.

    Each keyword found in the name, description, address or category adds
    ``KEYWORD_SCORE``; an email, a phone number, a rating above 4, more than 10
    reviews and a description longer than 50 characters add smaller bonuses.
    Ties keep their incoming order. With ``limit`` only the best ``limit``
    candidates are kept.
    """

    def __init__(self, intent: str) -> None:
        self.keywords = intent_keywords(intent)

    def score(self, candidate: Candidate, hit: SearchHit | None = None) -> int:
        text = " ".join(
            part
            for part in (
                candidate.name,
                candidate.description,
                hit.address if hit else None,
                hit.category if hit else None,
            )
            if part
        ).lower()
        total = sum(KEYWORD_SCORE for keyword in self.keywords if keyword in text)
        if candidate.has_email:
            total += EMAIL_SCORE
        if hit is not None:
            if hit.phone:
                total += PHONE_SCORE
            if hit.rating is not None and hit.rating > 4:
                total += RATING_SCORE
            if hit.reviews_count is not None and hit.reviews_count > 10:
                total += REVIEWS_SCORE
        if len(candidate.description or "") > 50:
            total += DESCRIPTION_SCORE
        return total

    def rank(
        self,
        candidates: Sequence[Candidate],
        hits: Mapping[str, SearchHit] | None = None,
        limit: int | None = None,
    ) -> RankedCandidates:
        by_url = {url.lower(): hit for url, hit in (hits or {}).items()}
        scored = [
            (self.score(candidate, by_url.get(candidate.source_url.lower())), candidate)
            for candidate in candidates
        ]
        scored.sort(key=lambda pair: pair[0], reverse=True)
        kept = scored if limit is None else scored[:limit]
        return RankedCandidates(
            ranked=[candidate for _, candidate in kept],
            scores={candidate.source_url: score for score, candidate in kept},
            dropped=len(scored) - len(kept),
        )


__all__ = ["RankedCandidates", "RelevanceRanker", "intent_keywords"]
