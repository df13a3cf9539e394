"""Store collaborator: every read and write the cleanup engine issues.

`FormStore` is the contract; `PgFormStore` implements it with psycopg2 against
the intake tables named in `SchemaSettings`. Reads run on the connection's
implicit transaction; writes only happen inside `transaction()`.
"""

import logging
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, ContextManager, Dict, Iterable, List, Optional, Set, Tuple

import psycopg2
from psycopg2 import sql
from psycopg2.extensions import connection as PGConnection

from .config import SchemaSettings
from .pg import (
    build_typed_values_clause,
    fetch_batch,
    get_column_types,
    live_token_sql,
    not_completed_sql,
    table_ident,
)
from .sql_render import ErrorLoggingCursorParam
from .utils import format_pg_error, split_schema_table

Pair = Tuple[Any, Any]


@dataclass(frozen=True)
class CandidateToken:
    token: Any
    entity_id: Optional[Any]
    product_id: Optional[Any]
    created_at: datetime


@dataclass(frozen=True)
class RelationshipRef:
    id: Any
    product_id: Any
    entity_id: Any


class FormStore(ABC):
    """Operations the engine needs from the relational store."""

    # paged filtered read
    @abstractmethod
    def fetch_candidates(self, cutoff: datetime, after: Optional[Tuple[datetime, Any]],
                         limit: int) -> List[CandidateToken]:
        ...

    # batch filtered reads
    @abstractmethod
    def fetch_new_relationships(self, pairs: Iterable[Pair] = (),
                                entity_ids: Iterable[Any] = ()) -> List[RelationshipRef]:
        """`new` relationships matching any (product_id, entity_id) pair or any entity id."""

    @abstractmethod
    def fetch_live_pairs(self, pairs: Iterable[Pair], cutoff: datetime) -> Set[Pair]:
        """Pairs that still have an unexpired or completed token."""

    # count-under-filter
    @abstractmethod
    def count_live_tokens(self, entity_ids: Iterable[Any], cutoff: datetime) -> Dict[Any, int]:
        ...

    @abstractmethod
    def count_resolved_relationships(self, entity_ids: Iterable[Any]) -> Dict[Any, int]:
        ...

    @abstractmethod
    def count_tokens_outside(self, entity_ids: Iterable[Any], tokens: Iterable[Any]) -> Dict[Any, int]:
        """Tokens of each entity that are not in `tokens`, whatever their state."""

    # atomic multi-statement write
    @abstractmethod
    def transaction(self, commit: bool = True) -> ContextManager["FormStore"]:
        """Commit on clean exit (roll back instead when `commit` is False); roll back on error."""

    @abstractmethod
    def rollback(self) -> None:
        """End whatever transaction a failed read or write left open, so the next call starts clean."""

    @abstractmethod
    def lock_entities(self, entity_ids: Iterable[Any]) -> List[Any]:
        ...

    @abstractmethod
    def delete_corpus(self, entity_ids: Iterable[Any]) -> List[Tuple]:
        ...

    @abstractmethod
    def delete_relationships(self, relationship_ids: Iterable[Any]) -> List[Tuple]:
        """Deletes only rows still in `new` status."""

    @abstractmethod
    def delete_tokens(self, tokens: Iterable[Any], cutoff: datetime) -> List[Tuple]:
        """Deletes only rows still expired and uncompleted."""

    @abstractmethod
    def delete_entities(self, entity_ids: Iterable[Any]) -> List[Tuple]:
        ...

    @abstractmethod
    def table_names(self) -> Dict[str, str]:
        ...


class PgFormStore(FormStore):
    def __init__(self, connect: Callable[[], PGConnection], schema: SchemaSettings,
                 statement_timeout: int = 0):
        self._connect = connect
        self.schema = schema
        self.statement_timeout = statement_timeout
        self._conn: Optional[PGConnection] = None
        self._types: Dict[Tuple[str, str], str] = {}

    @property
    def conn(self) -> PGConnection:
        if self._conn is None or self._conn.closed:
            if self._conn is not None:
                logging.warning("[STORE] Connection lost, reconnecting")
                self._discard()
            self._conn = self._connect()
            if self.statement_timeout:
                with self._conn.cursor(cursor_factory=ErrorLoggingCursorParam) as cur:
                    cur.execute("SET statement_timeout = %s", (f"{self.statement_timeout}s",))
                self._conn.commit()
        return self._conn

    def _discard(self) -> None:
        invalidate = getattr(self._conn, "invalidate", None)
        try:
            if invalidate is not None:
                invalidate()
            else:
                self._conn.close()
        except psycopg2.Error as e:
            logging.warning(f"[STORE] Discarding broken connection failed: {format_pg_error(e)}")
        self._conn = None

    def close(self) -> None:
        if self._conn is not None and not self._conn.closed:
            self._conn.close()
        self._conn = None

    def table_names(self) -> Dict[str, str]:
        s = self.schema
        return {
            "tokens": s.tokens_table,
            "relationships": s.relationships_table,
            "corpus": s.corpus_table,
            "entities": s.entities_table,
        }

    def _type(self, table: str, column: str) -> str:
        key = (table, column)
        if key not in self._types:
            schema, tbl = split_schema_table(table)
            self._types[key] = get_column_types(self.conn, schema, tbl, [column])[0]
        return self._types[key]

    def _array(self, table: str, column: str) -> sql.Composable:
        return sql.SQL("%s::{}[]").format(sql.SQL(self._type(table, column)))

    def _pairs_clause(self, table: str, product_col: str, entity_col: str,
                      pairs: List[Pair]) -> Tuple[sql.Composable, List[Any]]:
        types = [self._type(table, product_col), self._type(table, entity_col)]
        vals_sql, vals_params = build_typed_values_clause(pairs, types)
        clause = sql.SQL("({p}, {e}) IN (VALUES {vals})").format(
            p=sql.Identifier(product_col), e=sql.Identifier(entity_col), vals=vals_sql
        )
        return clause, vals_params

    def _fetch(self, q: sql.Composable, params: List[Any]) -> List[Tuple]:
        with self.conn.cursor(cursor_factory=ErrorLoggingCursorParam) as cur:
            cur.execute(q, params)
            return [tuple(r) for r in cur.fetchall()]

    def _counts(self, q: sql.Composable, params: List[Any]) -> Dict[Any, int]:
        return {k: int(v) for k, v in self._fetch(q, params)}

    def fetch_candidates(self, cutoff, after, limit):
        s = self.schema
        rows = fetch_batch(self.conn, s, self._type(s.tokens_table, s.token_column), cutoff, after, limit)
        return [CandidateToken(*r) for r in rows]

    def fetch_new_relationships(self, pairs=(), entity_ids=()):
        s = self.schema
        pairs, entity_ids = list(pairs), list(entity_ids)
        if not pairs and not entity_ids:
            return []
        tbl = s.relationships_table
        clauses: List[sql.Composable] = []
        params: List[Any] = [s.new_status]
        if pairs:
            clause, vals = self._pairs_clause(tbl, s.relationship_product_column, s.relationship_entity_column, pairs)
            clauses.append(clause)
            params.extend(vals)
        if entity_ids:
            clauses.append(sql.SQL("{e} = ANY({arr})").format(
                e=sql.Identifier(s.relationship_entity_column), arr=self._array(tbl, s.relationship_entity_column)))
            params.append(entity_ids)
        q = sql.SQL("SELECT {id}, {p}, {e} FROM {tbl} WHERE {status} = %s AND ({match})").format(
            id=sql.Identifier(s.relationship_id_column),
            p=sql.Identifier(s.relationship_product_column),
            e=sql.Identifier(s.relationship_entity_column),
            tbl=table_ident(tbl),
            status=sql.Identifier(s.relationship_status_column),
            match=sql.SQL(" OR ").join(clauses),
        )
        return [RelationshipRef(*r) for r in self._fetch(q, params)]

    def fetch_live_pairs(self, pairs, cutoff):
        s = self.schema
        pairs = list(pairs)
        if not pairs:
            return set()
        clause, vals = self._pairs_clause(s.tokens_table, s.token_product_column, s.token_entity_column, pairs)
        q = sql.SQL("SELECT DISTINCT {p}, {e} FROM {tbl} WHERE {match} AND {live}").format(
            p=sql.Identifier(s.token_product_column),
            e=sql.Identifier(s.token_entity_column),
            tbl=table_ident(s.tokens_table),
            match=clause,
            live=live_token_sql(s),
        )
        return set(self._fetch(q, vals + [cutoff]))

    def _count_by_entity(self, table: str, entity_col: str, extra: sql.Composable,
                         entity_ids: List[Any], params: List[Any]) -> Dict[Any, int]:
        if not entity_ids:
            return {}
        q = sql.SQL("SELECT {e}, COUNT(*) FROM {tbl} WHERE {e} = ANY({arr}) AND {extra} GROUP BY {e}").format(
            e=sql.Identifier(entity_col),
            tbl=table_ident(table),
            arr=self._array(table, entity_col),
            extra=extra,
        )
        return self._counts(q, [entity_ids] + params)

    def count_live_tokens(self, entity_ids, cutoff):
        s = self.schema
        return self._count_by_entity(s.tokens_table, s.token_entity_column, live_token_sql(s),
                                     list(entity_ids), [cutoff])

    def count_resolved_relationships(self, entity_ids):
        s = self.schema
        extra = sql.SQL("{status} IS DISTINCT FROM %s").format(status=sql.Identifier(s.relationship_status_column))
        return self._count_by_entity(s.relationships_table, s.relationship_entity_column, extra,
                                     list(entity_ids), [s.new_status])

    def count_tokens_outside(self, entity_ids, tokens):
        s = self.schema
        extra = sql.SQL("NOT ({t} = ANY({arr}))").format(
            t=sql.Identifier(s.token_column), arr=self._array(s.tokens_table, s.token_column))
        return self._count_by_entity(s.tokens_table, s.token_entity_column, extra,
                                     list(entity_ids), [list(tokens)])

    @contextmanager
    def transaction(self, commit: bool = True):
        conn = self.conn
        try:
            yield self
        except BaseException:
            self._rollback(conn)
            raise
        if commit:
            conn.commit()
        else:
            conn.rollback()

    def rollback(self) -> None:
        if self._conn is None:
            return
        if not self._rollback(self._conn):
            self._discard()

    def _rollback(self, conn: PGConnection) -> bool:
        if conn.closed:
            return False
        try:
            conn.rollback()
        except psycopg2.Error as e:
            # The original error is re-raised by the caller; a failed rollback means the connection is gone.
            logging.warning(f"[STORE] Rollback failed: {format_pg_error(e)}")
            return False
        return True

    def lock_entities(self, entity_ids):
        s = self.schema
        entity_ids = list(entity_ids)
        if not entity_ids:
            return []
        q = sql.SQL("SELECT {id} FROM {tbl} WHERE {id} = ANY({arr}) ORDER BY {id} FOR UPDATE").format(
            id=sql.Identifier(s.entity_id_column),
            tbl=table_ident(s.entities_table),
            arr=self._array(s.entities_table, s.entity_id_column),
        )
        return [r[0] for r in self._fetch(q, [entity_ids])]

    def _delete_returning(self, table: str, key_col: str, keys: List[Any],
                          extra: Optional[sql.Composable] = None,
                          extra_params: Optional[List[Any]] = None) -> List[Tuple]:
        if not keys:
            return []
        q = sql.SQL("DELETE FROM {tbl} WHERE {k} = ANY({arr})").format(
            tbl=table_ident(table), k=sql.Identifier(key_col), arr=self._array(table, key_col))
        if extra is not None:
            q = q + sql.SQL(" AND ") + extra
        q = q + sql.SQL(" RETURNING *")
        return self._fetch(q, [keys] + (extra_params or []))

    def delete_corpus(self, entity_ids):
        s = self.schema
        return self._delete_returning(s.corpus_table, s.corpus_entity_column, list(entity_ids))

    def delete_relationships(self, relationship_ids):
        s = self.schema
        extra = sql.SQL("{status} = %s").format(status=sql.Identifier(s.relationship_status_column))
        return self._delete_returning(s.relationships_table, s.relationship_id_column,
                                      list(relationship_ids), extra, [s.new_status])

    def delete_tokens(self, tokens, cutoff):
        s = self.schema
        extra = sql.SQL("{created} < %s AND {not_completed}").format(
            created=sql.Identifier(s.token_created_column), not_completed=not_completed_sql(s))
        return self._delete_returning(s.tokens_table, s.token_column, list(tokens), extra, [cutoff])

    def delete_entities(self, entity_ids):
        s = self.schema
        return self._delete_returning(s.entities_table, s.entity_id_column, list(entity_ids))
