import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable

from psycopg2 import sql
from psycopg2.extensions import connection as PGConnection

from .config import CleanupSettings, SchemaSettings
from .driver import BatchDriver, RunSummary
from .locator import compute_cutoff
from .pg import table_ident
from .sql_render import ErrorLoggingCursorParam
from .store import FormStore
from .utils import format_duration, format_error

COMPLETED = "completed"
FAILED = "failed"


@dataclass(frozen=True)
class JobDescriptor:
    id: Any
    invoked_at: datetime


class JobStatusReporter(ABC):
    @abstractmethod
    def report(self, job_id: Any, outcome: str) -> None:
        ...


class PgJobStatusReporter(JobStatusReporter):
    """Writes the outcome onto the scheduler's queue row, on a connection of its own."""

    def __init__(self, connect: Callable[[], PGConnection], schema: SchemaSettings):
        self._connect = connect
        self.schema = schema

    def report(self, job_id, outcome):
        s = self.schema
        conn = self._connect()
        try:
            with conn.cursor(cursor_factory=ErrorLoggingCursorParam) as cur:
                q = sql.SQL("UPDATE {tbl} SET {status} = %s WHERE {id} = %s").format(
                    tbl=table_ident(s.jobs_table),
                    status=sql.Identifier(s.job_status_column),
                    id=sql.Identifier(s.job_id_column),
                )
                cur.execute(q, (outcome, job_id))
                if cur.rowcount == 0:
                    logging.warning(f"[JOB] No row in {s.jobs_table} for job {job_id}; status '{outcome}' not recorded")
            conn.commit()
        finally:
            conn.close()


def cleanup_unsubmitted_forms(job: JobDescriptor, store: FormStore, reporter: JobStatusReporter,
                              settings: CleanupSettings) -> RunSummary:
    """
    Retire every intake token older than the retention window that was never completed,
    together with its orphaned entity, relationships and corpus.

    The outcome is reported exactly once. On failure the reporter gets `failed`
    and the original error is re-raised to the scheduler.
    """
    cutoff = compute_cutoff(job.invoked_at, settings.retention_days)
    mode = " (dry run, nothing is committed)" if settings.dry_run else ""
    msg = (f"[START] Job {job.id}: cleaning unsubmitted forms older than {settings.retention_days} days "
           f"(before {cutoff.isoformat()}), batch size {settings.batch_size}{mode}.")
    print(msg)
    logging.info(msg)

    try:
        summary = BatchDriver(store, settings).run(cutoff)
    except Exception as e:
        logging.error(f"[JOB] Job {job.id} failed: {format_error(e)}")
        try:
            reporter.report(job.id, FAILED)
        except Exception as report_error:
            logging.error(f"[JOB] Could not record failure of job {job.id}: {format_error(report_error)}")
        raise

    reporter.report(job.id, COMPLETED)

    verb = "would delete" if summary.dry_run else "deleted"
    msg = (f"[DONE] Job {job.id} completed: {summary.batches} batches, {summary.candidates} expired tokens, "
           f"{summary.retries} retries in {format_duration(summary.duration)}.")
    print(msg)
    logging.info(msg)
    for category, cnt in summary.deleted.as_dict().items():
        print(f"  - {category}: {verb} {cnt} rows.")
        logging.info(f"[TOTAL] {category}: {verb} {cnt} rows.")
    return summary
