"""Decide which records hanging off a page of expired tokens may be removed.

Relationships are matched on (product_id, entity_id) with status `new`. An
entity is removable only when nothing but this page's tokens still points at
it: no unexpired or completed token, no resolved relationship, and no other
expired token still waiting in a later page (that page removes the entity).
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Set

from .store import CandidateToken, FormStore, Pair, RelationshipRef

SAFE = "safe"
LIVE = "live"
DEFERRED = "deferred"


@dataclass
class Classification:
    entity_verdicts: Dict[Any, str] = field(default_factory=dict)
    # (product_id, entity_id) -> `new` relationships eligible for removal
    relationships: Dict[Pair, List[Any]] = field(default_factory=dict)
    live_pairs: Set[Pair] = field(default_factory=set)

    @property
    def safe_entities(self) -> List[Any]:
        return [e for e, v in self.entity_verdicts.items() if v == SAFE]

    @property
    def relationship_ids(self) -> List[Any]:
        return [rid for ids in self.relationships.values() for rid in ids]

    def count(self, verdict: str) -> int:
        return sum(1 for v in self.entity_verdicts.values() if v == verdict)


def page_pairs(page: List[CandidateToken]) -> List[Pair]:
    seen = {}
    for t in page:
        if t.entity_id is not None and t.product_id is not None:
            seen.setdefault((t.product_id, t.entity_id), None)
    return list(seen)


def page_entities(page: List[CandidateToken]) -> List[Any]:
    seen = {}
    for t in page:
        if t.entity_id is not None:
            seen.setdefault(t.entity_id, None)
    return list(seen)


def entity_verdicts(store: FormStore, entity_ids: Iterable[Any], cutoff: datetime,
                    page_tokens: Iterable[Any]) -> Dict[Any, str]:
    """
    Verdict per entity. Also used by the deleter to re-check inside its
    transaction, so it must read the store every time.
    """
    entity_ids = list(entity_ids)
    if not entity_ids:
        return {}
    live_tokens = store.count_live_tokens(entity_ids, cutoff)
    resolved = store.count_resolved_relationships(entity_ids)
    outside = store.count_tokens_outside(entity_ids, page_tokens)

    verdicts = {}
    for e in entity_ids:
        if live_tokens.get(e, 0) or resolved.get(e, 0):
            verdicts[e] = LIVE
        elif outside.get(e, 0):
            # Only expired, uncompleted tokens remain elsewhere; live ones were counted above.
            verdicts[e] = DEFERRED
        else:
            verdicts[e] = SAFE
    return verdicts


def eligible_relationships(relationships: Iterable[RelationshipRef],
                           live_pairs: Set[Pair]) -> Dict[Pair, List[Any]]:
    out: Dict[Pair, List[Any]] = {}
    for r in relationships:
        pair = (r.product_id, r.entity_id)
        if pair in live_pairs:
            continue
        out.setdefault(pair, []).append(r.id)
    return out


def classify(store: FormStore, page: List[CandidateToken], cutoff: datetime) -> Classification:
    pairs = page_pairs(page)
    live_pairs = store.fetch_live_pairs(pairs, cutoff) if pairs else set()
    relationships = store.fetch_new_relationships(pairs=pairs) if pairs else []
    verdicts = entity_verdicts(store, page_entities(page), cutoff, [t.token for t in page])
    return Classification(
        entity_verdicts=verdicts,
        relationships=eligible_relationships(relationships, live_pairs),
        live_pairs=live_pairs,
    )
