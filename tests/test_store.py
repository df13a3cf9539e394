from __future__ import annotations

import psycopg2
import pytest

from fakes import NOW
from form_cleaner.config import SchemaSettings
from form_cleaner.pg import build_typed_values_clause
from form_cleaner.store import CandidateToken, FormStore, PgFormStore, RelationshipRef

COLUMN_TYPES = {"token": "uuid", "entity_id": "uuid", "product_id": "uuid", "id": "uuid"}


class _Cursor:
    def __init__(self, conn):
        self.conn = conn
        self._rows = []

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def execute(self, query, params=None):
        if isinstance(query, str) and "pg_attribute" in query:
            self._rows = [(c, COLUMN_TYPES[c]) for c in params[1]]
            return
        self.conn.executed.append((query, params))
        self._rows = self.conn.results.pop(0) if self.conn.results else []

    def fetchall(self):
        return self._rows


class _Conn:
    def __init__(self, results=None):
        self.results = list(results or [])
        self.executed = []
        self.commits = 0
        self.rollbacks = 0
        self.closed = False

    def cursor(self, cursor_factory=None):
        return _Cursor(self)

    def commit(self):
        self.commits += 1

    def rollback(self):
        self.rollbacks += 1

    def close(self):
        self.closed = True


def _store(*results, statement_timeout=0):
    conn = _Conn(results)
    return PgFormStore(lambda: conn, SchemaSettings(), statement_timeout=statement_timeout), conn


def test_fetch_candidates_pages_after_cursor() -> None:
    row = ("t-2", "e-1", "p-1", NOW)
    store, conn = _store([row])

    page = store.fetch_candidates(NOW, (NOW, "t-1"), 100)

    assert page == [CandidateToken("t-2", "e-1", "p-1", NOW)]
    assert conn.executed[0][1] == [NOW, NOW, "t-1", 100]


def test_first_page_has_no_cursor_params() -> None:
    store, conn = _store([])

    assert store.fetch_candidates(NOW, None, 10) == []
    assert conn.executed[0][1] == [NOW, 10]


def test_new_relationships_by_pair_and_entity() -> None:
    store, conn = _store([("r-1", "p-1", "e-1")])

    rels = store.fetch_new_relationships(pairs=[("p-1", "e-1")], entity_ids=["e-2"])

    assert rels == [RelationshipRef("r-1", "p-1", "e-1")]
    assert conn.executed[0][1] == ["new", "p-1", "e-1", ["e-2"]]


def test_counts_are_grouped_by_entity() -> None:
    store, conn = _store([("e-1", 2), ("e-3", 1)])

    counts = store.count_live_tokens(["e-1", "e-2", "e-3"], NOW)

    assert counts == {"e-1": 2, "e-3": 1}
    assert conn.executed[0][1] == [["e-1", "e-2", "e-3"], NOW]


def test_tokens_outside_page_passes_page_tokens() -> None:
    store, conn = _store([])

    assert store.count_tokens_outside(["e-1"], ["t-1", "t-2"]) == {}
    assert conn.executed[0][1] == [["e-1"], ["t-1", "t-2"]]


def test_guarded_deletes_pass_their_guards() -> None:
    store, conn = _store([("t-1",)], [("r-1",)])

    assert store.delete_tokens(["t-1"], NOW) == [("t-1",)]
    assert store.delete_relationships(["r-1"]) == [("r-1",)]
    assert conn.executed[0][1] == [["t-1"], NOW]
    assert conn.executed[1][1] == [["r-1"], "new"]


def test_empty_inputs_skip_the_database() -> None:
    store, conn = _store()

    assert store.fetch_new_relationships() == []
    assert store.fetch_live_pairs([], NOW) == set()
    assert store.count_resolved_relationships([]) == {}
    assert store.lock_entities([]) == []
    assert store.delete_corpus([]) == []
    assert store.delete_entities([]) == []
    assert conn.executed == []


def test_transaction_commits_or_rolls_back() -> None:
    store, conn = _store()

    with store.transaction():
        pass
    with store.transaction(commit=False):
        pass
    with pytest.raises(RuntimeError):
        with store.transaction():
            raise RuntimeError("boom")

    assert conn.commits == 1
    assert conn.rollbacks == 2


def test_reconnects_and_sets_statement_timeout() -> None:
    conns = []

    def connect():
        conns.append(_Conn())
        return conns[-1]

    store = PgFormStore(connect, SchemaSettings(), statement_timeout=15)
    store.fetch_candidates(NOW, None, 1)
    conns[0].closed = True
    store.fetch_candidates(NOW, None, 1)

    assert len(conns) == 2
    for conn in conns:
        assert conn.executed[0] == ("SET statement_timeout = %s", ("15s",))
        assert conn.commits == 1


def test_typed_values_clause_params_follow_rows() -> None:
    _, params = build_typed_values_clause([("p-1", "e-1"), ("p-2", "e-2")], ["uuid", "uuid"])

    assert params == ["p-1", "e-1", "p-2", "e-2"]
    with pytest.raises(ValueError):
        build_typed_values_clause([("p-1",)], ["uuid", "uuid"])


def test_rollback_ends_a_failed_read() -> None:
    store, conn = _store()

    store.rollback()
    assert conn.rollbacks == 0

    store.fetch_candidates(NOW, None, 1)
    store.rollback()
    assert conn.rollbacks == 1
    assert not conn.closed


def test_rollback_on_a_broken_connection_reconnects() -> None:
    class _BrokenConn(_Conn):
        def rollback(self):
            raise psycopg2.InterfaceError("connection already closed")

    conns = [_BrokenConn(), _Conn()]
    store = PgFormStore(lambda: conns.pop(0), SchemaSettings())
    store.fetch_candidates(NOW, None, 1)
    broken = store.conn

    store.rollback()
    store.fetch_candidates(NOW, None, 1)

    assert broken.closed
    assert store.conn is not broken
    assert conns == []


def test_incomplete_store_cannot_be_built() -> None:
    class ReadOnlyStore(FormStore):
        def fetch_candidates(self, cutoff, after, limit):
            return []

    with pytest.raises(TypeError):
        ReadOnlyStore()
