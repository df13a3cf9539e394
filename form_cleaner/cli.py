import logging
import os
import sys
import uuid
from datetime import datetime, timezone

from sqlalchemy import create_engine

from .config import DEFAULT_CONFIG_PATH, load_config, load_settings
from .errors import ConfigError
from .jobs import JobDescriptor, PgJobStatusReporter, cleanup_unsubmitted_forms
from .store import PgFormStore
from .utils import setup_logging, format_error


def main() -> int:
    try:
        cfg = load_config(os.environ.get("FORM_CLEANER_CONFIG", DEFAULT_CONFIG_PATH))
        settings = load_settings(cfg)
    except ConfigError as e:
        print(f"[ERROR] Invalid configuration: {e}", file=sys.stderr)
        return 2

    setup_logging(settings.log_file, rotate=settings.log_rotate, console=settings.log_console)

    job = JobDescriptor(
        id=os.environ.get("CLEANUP_JOB_ID") or str(uuid.uuid4()),
        invoked_at=datetime.now(timezone.utc),
    )

    engine = create_engine(settings.db_uri, pool_pre_ping=True)
    store = PgFormStore(engine.raw_connection, settings.schema, statement_timeout=settings.statement_timeout)
    reporter = PgJobStatusReporter(engine.raw_connection, settings.schema)
    try:
        cleanup_unsubmitted_forms(job, store, reporter, settings)
    except Exception as e:
        # Already logged with page context and reported as failed.
        print(f"[ERROR] Cleanup job {job.id} failed: {format_error(e)}", file=sys.stderr)
        return 1
    finally:
        store.close()
        engine.dispose()
        logging.shutdown()
    return 0


if __name__ == "__main__":
    sys.exit(main())
