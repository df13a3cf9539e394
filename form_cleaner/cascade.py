import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from .liveness import SAFE, Classification, entity_verdicts
from .store import CandidateToken, FormStore

CATEGORIES = ("corpus", "relationships", "tokens", "entities")


@dataclass
class DeleteCounts:
    corpus: int = 0
    relationships: int = 0
    tokens: int = 0
    entities: int = 0

    def add(self, other: "DeleteCounts") -> None:
        for c in CATEGORIES:
            setattr(self, c, getattr(self, c) + getattr(other, c))

    def as_dict(self) -> Dict[str, int]:
        return {c: getattr(self, c) for c in CATEGORIES}

    @property
    def total(self) -> int:
        return sum(self.as_dict().values())


def _recheck_entities(store: FormStore, page: List[CandidateToken], classification: Classification,
                      cutoff: datetime) -> List[Any]:
    candidates = classification.safe_entities
    if not candidates:
        return []
    locked = store.lock_entities(candidates)
    verdicts = entity_verdicts(store, locked, cutoff, [t.token for t in page])
    confirmed = [e for e in locked if verdicts.get(e) == SAFE]
    dropped = [e for e in candidates if e not in confirmed]
    if dropped:
        logging.warning(f"[RECHECK] {len(dropped)} entities no longer safe to delete, keeping them: {dropped}")
    return confirmed


def delete_page(store: FormStore,
                page: List[CandidateToken],
                classification: Classification,
                cutoff: datetime,
                commit: bool = True,
                archive_buffers: Optional[Dict[str, List[Tuple]]] = None) -> DeleteCounts:
    """
    Remove one page of expired tokens and everything that hangs off them, as one transaction.

    Order is children before parents: corpus, relationships, tokens, entities.
    Entities classified safe are locked and re-checked first; one that picked up a
    live reference since classification is kept along with its corpus, and the
    rest of the page goes ahead. With commit=False everything runs and is rolled back.
    """
    counts = DeleteCounts()
    buffers: Dict[str, List[Tuple]] = {}
    tables = store.table_names()

    with store.transaction(commit=commit):
        confirmed = _recheck_entities(store, page, classification, cutoff)

        pairs = list(classification.relationships)
        live_now = store.fetch_live_pairs(pairs, cutoff) if pairs else set()
        rel_ids = [rid for pair, ids in classification.relationships.items() if pair not in live_now for rid in ids]
        if confirmed:
            # Any other in-progress relationship of a removable entity goes with it.
            for r in store.fetch_new_relationships(entity_ids=confirmed):
                if r.id not in rel_ids:
                    rel_ids.append(r.id)

        steps = (
            ("corpus", lambda: store.delete_corpus(confirmed)),
            ("relationships", lambda: store.delete_relationships(rel_ids)),
            ("tokens", lambda: store.delete_tokens([t.token for t in page], cutoff)),
            ("entities", lambda: store.delete_entities(confirmed)),
        )
        for category, step in steps:
            rows = step()
            setattr(counts, category, len(rows))
            if rows:
                buffers.setdefault(tables[category], []).extend(rows)
            logging.info(f"[DELETE] {tables[category]}: {'Would delete' if not commit else 'Deleted'} {len(rows)} rows.")

    if commit and archive_buffers is not None:
        for tbl, rows in buffers.items():
            archive_buffers.setdefault(tbl, []).extend(rows)
    return counts
