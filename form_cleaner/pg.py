from datetime import datetime
from typing import List, Tuple, Any, Optional

from psycopg2 import sql
from psycopg2.extensions import connection as PGConnection

from .config import SchemaSettings
from .sql_render import ErrorLoggingCursorParam
from .utils import split_schema_table


def get_column_types(conn: PGConnection, schema: str, table: str, columns: List[str]) -> List[str]:
    q = """
    SELECT a.attname, t.typname
    FROM pg_attribute a
    JOIN pg_type t ON t.oid = a.atttypid
    WHERE a.attrelid = %s::regclass
      AND a.attname = ANY(%s)
      AND a.attnum > 0
    """
    regclass = f"{schema}.{table}"
    with conn.cursor(cursor_factory=ErrorLoggingCursorParam) as cur:
        cur.execute(q, (regclass, columns))
        rows = cur.fetchall()
    typemap = {name: typ for name, typ in rows}
    missing = [c for c in columns if c not in typemap]
    if missing:
        raise ValueError(f"Columns {missing} not found on {schema}.{table}")
    return [typemap[c] for c in columns]


def build_typed_values_clause(keys: List[Tuple], col_types: List[str]) -> Tuple[sql.Composable, List[Any]]:
    if not keys:
        return sql.SQL(""), []
    params: List[Any] = []
    row_templates: List[sql.Composable] = []
    for tup in keys:
        if len(tup) != len(col_types):
            raise ValueError("Each key tuple needs to be as long as col_types.")
        cols = []
        for i, typ in enumerate(col_types):
            cols.append(sql.SQL("%s::{}").format(sql.SQL(typ)))
            params.append(tup[i])
        row_templates.append(sql.SQL("(") + sql.SQL(",").join(cols) + sql.SQL(")"))
    return sql.SQL(",").join(row_templates), params


def table_ident(qualified: str) -> sql.Identifier:
    schema, tbl = split_schema_table(qualified)
    return sql.Identifier(schema, tbl)


def completed_sql(schema: SchemaSettings) -> sql.Composable:
    col = sql.Identifier(schema.completion_column)
    if schema.completion_kind == "boolean":
        return sql.SQL("{} IS TRUE").format(col)
    return sql.SQL("{} IS NOT NULL").format(col)


def not_completed_sql(schema: SchemaSettings) -> sql.Composable:
    col = sql.Identifier(schema.completion_column)
    if schema.completion_kind == "boolean":
        return sql.SQL("{} IS NOT TRUE").format(col)
    return sql.SQL("{} IS NULL").format(col)


def live_token_sql(schema: SchemaSettings) -> sql.Composable:
    """Predicate for a token that still protects its entity; takes the cutoff as one param."""
    return sql.SQL("({created} >= %s OR {completed})").format(
        created=sql.Identifier(schema.token_created_column),
        completed=completed_sql(schema),
    )


def fetch_batch(conn: PGConnection,
                schema: SchemaSettings,
                token_type: str,
                cutoff: datetime,
                after: Optional[Tuple[datetime, Any]],
                batch_size: int) -> List[Tuple]:
    """
    Keyset page of expired, uncompleted tokens ordered by (created_at, token).

    `after` is the (created_at, token) of the last row already handled; rows
    sharing its timestamp but with a larger token still come back.
    """
    created = sql.Identifier(schema.token_created_column)
    token = sql.Identifier(schema.token_column)
    with conn.cursor(cursor_factory=ErrorLoggingCursorParam) as cur:
        q = sql.SQL("SELECT {token}, {entity}, {product}, {created} FROM {tbl} "
                    "WHERE {created} < %s AND {not_completed}").format(
            token=token,
            entity=sql.Identifier(schema.token_entity_column),
            product=sql.Identifier(schema.token_product_column),
            created=created,
            tbl=table_ident(schema.tokens_table),
            not_completed=not_completed_sql(schema),
        )
        params: List[Any] = [cutoff]
        if after is not None:
            q = q + sql.SQL(" AND ({created}, {token}) > (%s, %s::{typ})").format(
                created=created, token=token, typ=sql.SQL(token_type)
            )
            params.extend(after)
        q = q + sql.SQL(" ORDER BY {created} ASC, {token} ASC LIMIT %s").format(created=created, token=token)
        params.append(batch_size)

        cur.execute(q, params)
        rows = cur.fetchall()
    return [tuple(r) for r in rows]
