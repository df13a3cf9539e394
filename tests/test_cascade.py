from __future__ import annotations

import pytest

from fakes import NOW, ForeignKeyViolation, InMemoryFormStore, days_ago
from form_cleaner.cascade import DeleteCounts, delete_page
from form_cleaner.liveness import classify
from form_cleaner.locator import compute_cutoff

CUTOFF = compute_cutoff(NOW, 7)


def _garbage_store():
    store = InMemoryFormStore()
    store.add_entity("E1")
    store.add_token("T1", days_ago(10), entity_id="E1", product_id="P1")
    store.add_relationship("R1", "P1", "E1")
    store.add_relationship("R-other-product", "P7", "E1")
    store.add_corpus("C1", "E1")
    return store


def _classified(store):
    page = store.fetch_candidates(CUTOFF, None, 100)
    return page, classify(store, page, CUTOFF)


def test_deletes_children_before_parents() -> None:
    store = _garbage_store()
    page, classification = _classified(store)
    store.calls.clear()

    counts = delete_page(store, page, classification, CUTOFF)

    deletes = [c for c in store.calls if c.startswith("delete_")]
    assert deletes == ["delete_corpus", "delete_relationships", "delete_tokens", "delete_entities"]
    assert store.calls.index("lock_entities") < store.calls.index("delete_corpus")
    assert counts == DeleteCounts(corpus=1, relationships=2, tokens=1, entities=1)
    assert store.commits == 1


def test_entity_that_turned_live_before_commit_is_kept_with_its_corpus() -> None:
    store = _garbage_store()
    page, classification = _classified(store)
    assert classification.safe_entities == ["E1"]

    def concurrent_submission(s):
        s.add_token("T-new", NOW, entity_id="E1", product_id="P2")

    store.on_lock = concurrent_submission
    counts = delete_page(store, page, classification, CUTOFF)

    assert set(store.entities) == {"E1"}
    assert set(store.corpus) == {"C1"}
    # The in-progress relationship for the expired token still goes; unrelated ones stay.
    assert set(store.relationships) == {"R-other-product"}
    assert set(store.tokens) == {"T-new"}
    assert counts == DeleteCounts(corpus=0, relationships=1, tokens=1, entities=0)


def test_token_completed_concurrently_is_not_deleted() -> None:
    store = _garbage_store()
    page, classification = _classified(store)

    def concurrent_completion(s):
        s.tokens["T1"]["completed"] = True

    store.on_lock = concurrent_completion
    counts = delete_page(store, page, classification, CUTOFF)

    assert set(store.tokens) == {"T1"}
    assert set(store.entities) == {"E1"}
    assert set(store.relationships) == {"R1", "R-other-product"}
    assert counts.total == 0


def test_dry_run_counts_everything_and_keeps_everything() -> None:
    store = _garbage_store()
    page, classification = _classified(store)
    buffers = {}

    counts = delete_page(store, page, classification, CUTOFF, commit=False, archive_buffers=buffers)

    assert counts == DeleteCounts(corpus=1, relationships=2, tokens=1, entities=1)
    assert set(store.entities) == {"E1"} and set(store.tokens) == {"T1"}
    assert store.commits == 0
    assert buffers == {}


def test_archive_buffers_receive_deleted_rows_per_table() -> None:
    store = _garbage_store()
    page, classification = _classified(store)
    buffers = {}

    delete_page(store, page, classification, CUTOFF, archive_buffers=buffers)

    assert set(buffers) == {"public.new_corpus", "public.relationship", "public.public_forms_tokens", "public.entity"}
    assert [row[0] for row in buffers["public.public_forms_tokens"]] == ["T1"]
    assert sorted(row[0] for row in buffers["public.relationship"]) == ["R-other-product", "R1"]


def test_failure_rolls_back_the_whole_page() -> None:
    store = _garbage_store()
    page, classification = _classified(store)
    store.fail("delete_tokens", ForeignKeyViolation("boom"))
    buffers = {}

    with pytest.raises(ForeignKeyViolation):
        delete_page(store, page, classification, CUTOFF, archive_buffers=buffers)

    assert set(store.corpus) == {"C1"}
    assert set(store.relationships) == {"R1", "R-other-product"}
    assert store.rollbacks == 1
    assert buffers == {}


def test_delete_counts_accumulate() -> None:
    total = DeleteCounts()
    total.add(DeleteCounts(corpus=2, tokens=1))
    total.add(DeleteCounts(relationships=3, tokens=1, entities=1))

    assert total.as_dict() == {"corpus": 2, "relationships": 3, "tokens": 2, "entities": 1}
    assert total.total == 8
