import logging

import psycopg2
from psycopg2.extensions import cursor as BaseCursor

from .utils import _normalize_casts, _shorten


def render_sql(cur, query, vars) -> str:
    """
    Render a statement the way it reached the server:
    - psycopg2.sql objects (SQL/Composed/Identifier) go through as_string.
    - Params are bound with mogrify; if binding fails the bare SQL text is kept.
    - Duplicated casts (::uuid::uuid) are collapsed.
    """
    try:
        qtxt = query.as_string(cur.connection) if hasattr(query, "as_string") else str(query)
    except Exception:
        qtxt = str(query)
    final = qtxt
    if vars is not None:
        try:
            final = cur.mogrify(qtxt, vars).decode()
        except Exception:
            final = qtxt
    return _normalize_casts(" ".join(final.split()))


class ErrorLoggingCursorParam(BaseCursor):
    """
    Cursor that logs the failing statement, params bound, whenever the server rejects it.

    Nothing is logged on success; the error is always re-raised untouched so the
    batch driver can classify it.
    """

    def execute(self, query, vars=None):
        try:
            return super().execute(query, vars)
        except psycopg2.Error as e:
            msg = _shorten(render_sql(self, query, vars))
            logging.error(f"[SQL-ERROR] sqlstate={e.pgcode} {msg}")
            raise
