"""Deduplication of scraped candidates against an owner's persisted contacts."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, Protocol, Sequence

from ..models import Candidate, normalize_email


class ContactIndex(Protocol):
    def existing_emails(self, owner: str, emails: Iterable[str]) -> set[str]: ...


@dataclass
class DeduplicationResult:
    unique: list[Candidate] = field(default_factory=list)
    duplicate_count: int = 0
    skipped_without_email: int = 0

    @property
    def has_new(self) -> bool:
        return bool(self.unique)


class DeduplicationEngine:
    """Keep only candidates whose primary email the owner has not stored yet.

    Lookups go to the store in batches of ``batch_size`` addresses. A repeat of
    an address already accepted earlier in the same call counts as a duplicate.
    """

    def __init__(self, store: ContactIndex, batch_size: int = 1000) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self.store = store
        self.batch_size = batch_size

    def filter_new(self, owner: str, candidates: Sequence[Candidate]) -> DeduplicationResult:
        result = DeduplicationResult()
        keyed: list[tuple[str, Candidate]] = []
        for candidate in candidates:
            email = normalize_email(candidate.contact_email)
            if email is None:
                result.skipped_without_email += 1
                continue
            keyed.append((email, candidate))

        known = self._lookup(owner, [email for email, _ in keyed])
        for email, candidate in keyed:
            if email in known:
                result.duplicate_count += 1
                continue
            known.add(email)
            result.unique.append(candidate)
        return result

    def _lookup(self, owner: str, emails: list[str]) -> set[str]:
        distinct = list(dict.fromkeys(emails))
        found: set[str] = set()
        for start in range(0, len(distinct), self.batch_size):
            found |= self.store.existing_emails(owner, distinct[start : start + self.batch_size])
        return found


__all__ = ["ContactIndex", "DeduplicationEngine", "DeduplicationResult"]
