import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from tenacity import RetryCallState, Retrying, retry_if_exception, stop_after_attempt, wait_exponential

from .archive import flush_archive
from .cascade import DeleteCounts, delete_page
from .config import CleanupSettings
from .errors import BatchAbortedError, is_transient
from .liveness import DEFERRED, LIVE, Classification, classify
from .locator import Cursor, locate_candidates
from .store import CandidateToken, FormStore
from .utils import format_duration, format_error

FETCHING = "fetching"
CLASSIFYING = "classifying"
DELETING = "deleting"
ADVANCING = "advancing"
DONE = "done"
ABORTED = "aborted"


@dataclass
class RunSummary:
    state: str = FETCHING
    batches: int = 0
    candidates: int = 0
    retries: int = 0
    deleted: DeleteCounts = field(default_factory=DeleteCounts)
    cursor: Optional[Cursor] = None
    dry_run: bool = False
    duration: float = 0.0
    # Entities whose latest verdict was `deferred`. A committed run always settles them on
    # their last page; a dry run rolls earlier pages back and leaves them here.
    deferred_entities: Set[Any] = field(default_factory=set)


@dataclass
class _Attempt:
    page: List[CandidateToken] = field(default_factory=list)
    classification: Optional[Classification] = None
    counts: Optional[DeleteCounts] = None


def _page_label(page: List[CandidateToken]) -> str:
    if not page:
        return "empty page"
    return f"{len(page)} tokens [{page[0].token} .. {page[-1].token}]"


class BatchDriver:
    """
    Runs fetch -> classify -> delete -> advance until no expired token is left.

    Pages are strictly sequential. The cursor moves only after a page commits
    (or, in dry-run mode, after its rollback), so a crashed or aborted run can
    be started again from scratch or from `RunSummary.cursor` without skipping
    or repeating work.

    A transient store error in any phase re-runs the whole page from the same
    cursor, up to `max_attempts` tries with exponential backoff.
    """

    def __init__(self, store: FormStore, settings: CleanupSettings,
                 sleep: Callable[[float], None] = time.sleep):
        self.store = store
        self.settings = settings
        self._sleep = sleep

    def run(self, cutoff: datetime, cursor: Optional[Cursor] = None) -> RunSummary:
        settings = self.settings
        summary = RunSummary(cursor=cursor, dry_run=settings.dry_run)
        archive_buffers: Optional[Dict[str, List[Tuple]]] = {} if settings.archive and not settings.dry_run else None
        start = time.time()

        state = FETCHING
        while state not in (DONE, ABORTED):
            summary.state = state
            if settings.max_batches is not None and summary.batches >= settings.max_batches:
                logging.info(f"[STOP] Reached max_batches={settings.max_batches}, remaining tokens are left for the next run.")
                state = DONE
                continue

            batch_start = time.time()
            attempt = self._page_with_retry(cutoff, summary, archive_buffers)
            if not attempt.page:
                state = DONE
                continue

            page, counts = attempt.page, attempt.counts
            summary.deleted.add(counts)
            summary.candidates += len(page)
            for entity_id, verdict in attempt.classification.entity_verdicts.items():
                if verdict == DEFERRED:
                    summary.deferred_entities.add(entity_id)
                else:
                    summary.deferred_entities.discard(entity_id)
            verb = "Would delete" if settings.dry_run else "Deleted"
            msg = (f"[BATCH {summary.batches + 1}] {verb} "
                   + ", ".join(f"{c}={n}" for c, n in counts.as_dict().items())
                   + f" in {format_duration(time.time() - batch_start)}.")
            print(msg)
            logging.info(msg)

            summary.state = ADVANCING
            summary.cursor = Cursor.after(page)
            summary.batches += 1
            if archive_buffers:
                flush_archive(archive_buffers, settings.archive_path, summary.batches)
            state = FETCHING

        if settings.dry_run and summary.deferred_entities:
            msg = (f"[DRY-RUN] {len(summary.deferred_entities)} entities have expired tokens on several pages. "
                   f"Earlier pages were rolled back, so they stayed deferred; a real run would also remove them "
                   f"with their corpus and relationships, which the entity and corpus totals do not include.")
            print(msg)
            logging.info(msg)

        summary.state = state
        summary.duration = time.time() - start
        return summary

    def _attempt_page(self, cutoff: datetime, summary: RunSummary, attempt: _Attempt,
                      archive_buffers: Optional[Dict[str, List[Tuple]]]) -> None:
        summary.state = FETCHING
        attempt.page = locate_candidates(self.store, cutoff, summary.cursor, self.settings.batch_size)
        if not attempt.page:
            return

        summary.state = CLASSIFYING
        classification = classify(self.store, attempt.page, cutoff)
        attempt.classification = classification
        logging.info(
            f"[BATCH {summary.batches + 1}] {_page_label(attempt.page)}: "
            f"{len(classification.safe_entities)} entities safe, {classification.count(LIVE)} live, "
            f"{classification.count(DEFERRED)} deferred, "
            f"{len(classification.relationship_ids)} new relationships eligible."
        )

        summary.state = DELETING
        attempt.counts = delete_page(self.store, attempt.page, classification, cutoff,
                                     commit=not self.settings.dry_run, archive_buffers=archive_buffers)

    def _page_with_retry(self, cutoff: datetime, summary: RunSummary,
                         archive_buffers: Optional[Dict[str, List[Tuple]]]) -> _Attempt:
        max_attempts = self.settings.max_attempts
        attempt = _Attempt()

        def before_sleep(retry_state: RetryCallState) -> None:
            summary.retries += 1
            # Leave the failed read or write transaction before the page is fetched again.
            self.store.rollback()
            logging.warning(
                f"[RETRY] {self._where(attempt, summary)} failed while {summary.state} "
                f"(attempt {retry_state.attempt_number}/{max_attempts}), "
                f"retrying in {retry_state.next_action.sleep:.1f}s: {format_error(retry_state.outcome.exception())}"
            )

        retrying = Retrying(
            retry=retry_if_exception(is_transient),
            stop=stop_after_attempt(max_attempts),
            wait=wait_exponential(multiplier=self.settings.retry_delay),
            sleep=self._sleep,
            before_sleep=before_sleep,
            reraise=True,
        )
        attempt_number = 0
        try:
            for attempt_state in retrying:
                with attempt_state:
                    attempt_number = attempt_state.retry_state.attempt_number
                    attempt = _Attempt()
                    self._attempt_page(cutoff, summary, attempt, archive_buffers)
        except Exception as e:
            raise self._abort(e, attempt, attempt_number, summary) from e
        return attempt

    def _where(self, attempt: _Attempt, summary: RunSummary) -> str:
        return _page_label(attempt.page) if attempt.page else f"page after cursor {summary.cursor}"

    def _abort(self, error: Exception, attempt: _Attempt, attempt_number: int,
               summary: RunSummary) -> BatchAbortedError:
        phase = summary.state
        summary.state = ABORTED
        transient = is_transient(error)
        detail = format_error(error)
        entity_ids: List[Any] = attempt.classification.safe_entities if attempt.classification else []
        reason = "transient error, retries exhausted" if transient else "permanent error"
        logging.error(
            f"[ERROR] {self._where(attempt, summary)} failed while {phase} after {attempt_number} attempt(s) "
            f"({reason}); entities {entity_ids}; last committed cursor {summary.cursor}: {detail}"
        )
        page = attempt.page
        return BatchAbortedError(
            f"Page after cursor {summary.cursor} could not be processed while {phase} ({reason}): {detail}",
            page_first=page[0].token if page else None,
            page_last=page[-1].token if page else None,
            page_size=len(page),
            entity_ids=entity_ids,
            attempts=attempt_number,
            cursor=summary.cursor,
            summary=summary,
        )
