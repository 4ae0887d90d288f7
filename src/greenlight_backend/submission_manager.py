"""
Submission lifecycle coordination.

This module moves a manuscript through its states:

    uploaded -> processing -> completed
                           -> error

- ``submit`` validates the upload, stores an ``uploaded`` record and hands
  the id to a background worker.
- ``process`` claims the record with a compare-and-swap on its status, runs
  the analysis and records the outcome. Terminal records are returned as
  they are; the analyzer is never called twice for one submission.
- ``reconcile`` picks up records left behind by a crashed worker or a
  dropped background task.

The SubmissionManager is the only writer of status changes. Request handlers
and background workers share one instance.
"""

from __future__ import annotations

import logging
import re
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Protocol

from . import pdf
from .analysis import AnalysisError
from .configuration import Settings
from .database import InvalidSubmissionId, SubmissionDatabase, is_valid_submission_id
from .models import AnalysisResult, SubmissionDetail, SubmissionStatus
from .utils import sanitize_file_name

logger = logging.getLogger(__name__)

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

UNEXPECTED_FAILURE_MESSAGE = "Unexpected error during analysis"


class Analyzer(Protocol):
    def analyze(self, text: str, synopsis: str) -> AnalysisResult:
        ...


class InvalidSubmission(ValueError):
    """Upload or signup input that fails validation."""


class SubmissionNotFound(LookupError):
    pass


@dataclass
class ProcessOutcome:
    """
    Result of one ``process`` call.

    Attributes:
        status: Status of the submission after the call
        analysis: Stored analysis when completed
        error: Stored error message when failed
        ran_analysis: True if this call invoked the analyzer
        failure: Exception raised by the analyzer during this call
    """

    status: SubmissionStatus
    analysis: Optional[AnalysisResult] = None
    error: Optional[str] = None
    ran_analysis: bool = False
    failure: Optional[Exception] = None


def _outcome_from_record(record: Dict[str, Any]) -> ProcessOutcome:
    analysis = record.get("analysis")
    return ProcessOutcome(
        status=record["status"],
        analysis=AnalysisResult.model_validate(analysis) if analysis else None,
        error=record.get("error"),
    )


class SubmissionManager:
    """
    Central coordinator for the submission lifecycle.

    Background analysis runs on a thread pool owned by the manager. Status
    changes are compare-and-swap updates in the store, so the manager stays
    correct when several processes share one database.
    """

    def __init__(self, store: SubmissionDatabase, analyzer: Analyzer, settings: Settings) -> None:
        self.store = store
        self.analyzer = analyzer
        self.settings = settings
        self._executor = ThreadPoolExecutor(
            max_workers=settings.lifecycle.analysis_workers,
            thread_name_prefix="analysis",
        )
        self._extraction_pool = ThreadPoolExecutor(
            max_workers=settings.lifecycle.extraction_workers,
            thread_name_prefix="extract",
        )

    def _validate_synopsis(self, synopsis: Optional[str]) -> str:
        if synopsis is None or not synopsis.strip():
            raise InvalidSubmission("Missing required fields: synopsis")
        limit = self.settings.limits.max_synopsis_chars
        if len(synopsis) > limit:
            raise InvalidSubmission(f"Synopsis exceeds {limit} character limit")
        return synopsis

    def _extract(self, data: bytes) -> pdf.ExtractedDocument:
        """
        Run PDF validation on the extraction pool, bounded by the extraction timeout.

        The timeout covers time spent queued as well as parsing. A parse that
        is already running cannot be interrupted: on timeout the caller gets
        ``ExtractionFailed`` but the worker stays busy until PyMuPDF returns,
        so ``lifecycle.extraction_workers`` bounds how many hung parses the
        service tolerates before every upload times out.
        """
        timeout = self.settings.lifecycle.extraction_timeout_seconds
        future = self._extraction_pool.submit(pdf.validate, data, self.settings.limits)
        try:
            return future.result(timeout=timeout)
        except FuturesTimeout as exc:
            future.cancel()
            raise pdf.ExtractionFailed(f"Text extraction did not finish within {timeout:g} seconds") from exc

    def submit(self, data: bytes, file_name: Optional[str], synopsis: Optional[str]) -> str:
        """
        Validate an upload, store it and start its analysis.

        Args:
            data: Raw PDF bytes
            file_name: Client-supplied file name
            synopsis: Author synopsis, stored exactly as given

        Returns:
            The new submission id

        Raises:
            InvalidSubmission: Synopsis missing or too long
            PdfValidationError: The PDF was rejected
            StoreUnavailable: The record could not be written

        Note:
            A failure to schedule the background analysis is logged and
            otherwise ignored; the reconcile sweep picks the record up later.
        """
        synopsis = self._validate_synopsis(synopsis)
        if not data:
            raise InvalidSubmission("Missing required fields: file")

        document = self._extract(data)
        submission_id = self.store.insert({
            "synopsis": synopsis,
            "text": document.text,
            "file_name": sanitize_file_name(file_name),
            "file_size": len(data),
        })
        self.schedule(submission_id)
        return submission_id

    def schedule(self, submission_id: str) -> bool:
        try:
            self._executor.submit(self._process_in_background, submission_id)
        except RuntimeError as exc:
            logger.warning(f"Could not schedule analysis for {submission_id}: {exc}")
            return False
        return True

    def _process_in_background(self, submission_id: str) -> None:
        try:
            outcome = self.process(submission_id)
        except Exception:
            logger.exception(f"Background processing of {submission_id} failed")
            return
        logger.info(f"Background processing of {submission_id} finished with status {outcome.status.value}")

    def _load(self, submission_id: str) -> Dict[str, Any]:
        record = self.store.get(submission_id)
        if record is None:
            raise SubmissionNotFound("Submission not found")
        return record

    def get_status(self, submission_id: str) -> SubmissionDetail:
        return SubmissionDetail(**self._load(submission_id))

    def process(self, submission_id: str) -> ProcessOutcome:
        """
        Run the analysis for a submission unless it already ran.

        Raises:
            InvalidSubmissionId: Malformed id; no query is issued
            SubmissionNotFound: No record with this id
        """
        record = self._load(submission_id)
        if record["status"] is not SubmissionStatus.UPLOADED:
            return _outcome_from_record(record)

        if not self.store.transition(submission_id, [SubmissionStatus.UPLOADED], SubmissionStatus.PROCESSING):
            # Another worker claimed it between our read and the swap.
            return _outcome_from_record(self._load(submission_id))

        return self._run_analysis(submission_id, record)

    def _run_analysis(self, submission_id: str, record: Dict[str, Any]) -> ProcessOutcome:
        try:
            analysis = self.analyzer.analyze(record["text"], record["synopsis"])
        except AnalysisError as exc:
            message = str(exc) or exc.__class__.__name__
            logger.warning(f"Analysis of {submission_id} failed: {message}")
            self._record_failure(submission_id, message)
            return ProcessOutcome(SubmissionStatus.ERROR, error=message, ran_analysis=True, failure=exc)
        except Exception as exc:
            logger.exception(f"Unexpected failure analyzing {submission_id}")
            self._record_failure(submission_id, UNEXPECTED_FAILURE_MESSAGE)
            return ProcessOutcome(SubmissionStatus.ERROR, error=UNEXPECTED_FAILURE_MESSAGE, ran_analysis=True, failure=exc)

        if not self.store.transition(
            submission_id, [SubmissionStatus.PROCESSING], SubmissionStatus.COMPLETED, analysis=analysis
        ):
            logger.warning(f"Submission {submission_id} left processing before its analysis was stored")
            return _outcome_from_record(self._load(submission_id))
        return ProcessOutcome(SubmissionStatus.COMPLETED, analysis=analysis, ran_analysis=True)

    def _record_failure(self, submission_id: str, message: str) -> None:
        if not self.store.transition(
            submission_id, [SubmissionStatus.PROCESSING], SubmissionStatus.ERROR, error=message
        ):
            logger.warning(f"Submission {submission_id} left processing before its failure was stored")

    def _resume(self, submission_id: str) -> None:
        try:
            record = self._load(submission_id)
            if record["status"] is SubmissionStatus.PROCESSING:
                outcome = self._run_analysis(submission_id, record)
                logger.info(f"Resumed analysis of {submission_id} finished with status {outcome.status.value}")
        except Exception:
            logger.exception(f"Resuming analysis of {submission_id} failed")

    def reconcile(self, now: Optional[datetime] = None) -> int:
        """
        Restart submissions that have been idle past the stale threshold.

        ``uploaded`` records are scheduled again. ``processing`` records are
        re-claimed with a compare-and-swap on ``updated_at`` and analyzed
        again, so concurrent sweeps never pick the same record twice.

        Returns:
            Number of submissions handed to the worker pool
        """
        now = now or datetime.now(timezone.utc)
        cutoff = now - timedelta(seconds=self.settings.lifecycle.stale_after_seconds)
        scheduled = 0
        for item in self.store.list_stale([SubmissionStatus.UPLOADED, SubmissionStatus.PROCESSING], cutoff):
            submission_id, status = item["id"], item["status"]
            if not self.store.claim_stale(submission_id, status, cutoff):
                continue
            try:
                if status is SubmissionStatus.UPLOADED:
                    self._executor.submit(self._process_in_background, submission_id)
                else:
                    self._executor.submit(self._resume, submission_id)
            except RuntimeError as exc:
                logger.warning(f"Could not reschedule {submission_id}: {exc}")
                continue
            scheduled += 1
        if scheduled:
            logger.info(f"Reconcile sweep rescheduled {scheduled} submissions")
        return scheduled

    def signup(self, email: str, submission_id: str) -> str:
        email = (email or "").strip()
        if not email or not submission_id:
            raise InvalidSubmission("Missing required fields")
        if not EMAIL_PATTERN.match(email):
            raise InvalidSubmission("Invalid email address")
        if not is_valid_submission_id(submission_id):
            raise InvalidSubmissionId("Invalid submission ID format")
        return self.store.insert_signup(email, submission_id)

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait, cancel_futures=True)
        self._extraction_pool.shutdown(wait=False, cancel_futures=True)
