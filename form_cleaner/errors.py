"""Error taxonomy for the cleanup job.

Transient errors are retried page-by-page by the batch driver; anything else
aborts the run with the cursor left at the last committed page.
"""

from typing import Any, List, Optional

import psycopg2

# serialization_failure, deadlock_detected, lock_not_available, query_canceled
TRANSIENT_SQLSTATES = {"40001", "40P01", "55P03", "57014"}
CONNECTION_SQLSTATE_CLASS = "08"


class CleanupError(Exception):
    """Base class for errors raised by form_cleaner."""


class ConfigError(CleanupError):
    """Invalid or missing configuration; raised before any batch runs."""


class BatchAbortedError(CleanupError):
    """A page could not be fetched, classified or committed; the run stopped without advancing past it."""

    def __init__(self, message: str, *, page_first: Optional[str] = None,
                 page_last: Optional[str] = None, page_size: int = 0,
                 entity_ids: Optional[List[Any]] = None,
                 attempts: int = 0, cursor=None, summary=None):
        super().__init__(message)
        self.page_first = page_first
        self.page_last = page_last
        self.page_size = page_size
        self.entity_ids = list(entity_ids or [])
        self.attempts = attempts
        self.cursor = cursor
        self.summary = summary


def is_transient(exc: BaseException) -> bool:
    """
    True if a page that failed with `exc` may succeed when retried unchanged.

    Connection loss, statement timeouts, lock and serialization conflicts are
    transient. Constraint violations and programming errors are not.
    """
    if isinstance(exc, psycopg2.Error):
        code = getattr(exc, "pgcode", None)
        if code:
            return code in TRANSIENT_SQLSTATES or code.startswith(CONNECTION_SQLSTATE_CLASS)
        # No SQLSTATE: the client lost the server (closed socket, broken connection).
        return isinstance(exc, (psycopg2.OperationalError, psycopg2.InterfaceError))
    return False
