from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, List, Optional

from .store import CandidateToken, FormStore


@dataclass(frozen=True)
class Cursor:
    """Resumption point: (created_at, token) of the last token in a committed page."""
    created_at: datetime
    token: Any

    @classmethod
    def after(cls, page: List[CandidateToken]) -> "Cursor":
        last = page[-1]
        return cls(last.created_at, last.token)

    def as_tuple(self):
        return (self.created_at, self.token)


def compute_cutoff(now: datetime, retention_days: int) -> datetime:
    """Tokens created strictly before the returned instant are expired."""
    return now - timedelta(days=retention_days)


def locate_candidates(store: FormStore, cutoff: datetime, cursor: Optional[Cursor],
                      batch_size: int) -> List[CandidateToken]:
    """Next page of expired, uncompleted tokens after `cursor`; an empty page means no more work."""
    return store.fetch_candidates(cutoff, cursor.as_tuple() if cursor else None, batch_size)
