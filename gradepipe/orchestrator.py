"""
Pipeline orchestrator.

Runs each submission through fetching, visible and hidden testing,
similarity checking and aggregation on a bounded worker pool. An
infrastructure failure ends one submission's pipeline and never its siblings.
"""

import concurrent.futures
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable

from .aggregator import INITIAL_REASON, compose_grade_report, escalate_for_review
from .config import CORPUS_FILENAME, DEFAULT_GRADES_DIR, DEFAULT_WORKERS
from .config_loader import PipelineConfig, RubricConfig, SimilarityConfig
from .corpus import Corpus
from .errors import AlreadyGradedError, PipelineError
from .fetcher import SubmissionFetcher
from .models import (
    GradeReport,
    PipelineRun,
    PipelineState,
    SimilarityReport,
    Submission,
    SuiteVisibility,
    TestResult,
)
from .report_store import ReportStore
from .sandbox import SandboxRunner, create_runner
from .similarity import SimilarityScorer
from .suites import AccessRole, SuiteRegistry

logger = logging.getLogger(__name__)


class _Cancelled(Exception):
    """Raised at a stage boundary once cancellation was requested."""


class PipelineOrchestrator:
    """
    Grades submissions concurrently, one pipeline per worker at a time.
    """

    def __init__(
        self,
        fetcher: SubmissionFetcher,
        runner: SandboxRunner,
        scorer: SimilarityScorer,
        corpus: Corpus,
        report_store: ReportStore,
        registry: SuiteRegistry,
        rubric: RubricConfig,
        similarity_config: SimilarityConfig | None = None,
        workers: int = DEFAULT_WORKERS,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """
        Initialize the orchestrator.

        Args:
            fetcher: Fetches submissions into workspaces.
            runner: Runs suites in the sandbox.
            scorer: Fingerprints and compares submissions.
            corpus: Shared corpus of graded submissions.
            report_store: Append-only report storage.
            registry: Suites of the assignment.
            rubric: Weights and thresholds for aggregation.
            similarity_config: Thresholds for attaching similarity reports.
            workers: Number of pipelines run concurrently.
            clock: Source of timestamps.

        Raises:
            SuiteAccessError: If fetched workspaces could reach hidden suites.
        """
        registry.ensure_isolated(fetcher.workspace_root)
        self.fetcher = fetcher
        self.runner = runner
        self.scorer = scorer
        self.corpus = corpus
        self.report_store = report_store
        self.registry = registry
        self.rubric = rubric
        self.similarity_config = similarity_config or scorer.config
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="gradepipe")
        self._lock = threading.RLock()
        self._active: dict[str, tuple[Future, PipelineRun]] = {}
        self._cancel_requested: set[str] = set()

    @classmethod
    def from_config(cls, config: PipelineConfig, workers: int | None = None) -> "PipelineOrchestrator":
        grades_dir = config.grades_dir or DEFAULT_GRADES_DIR
        return cls(
            fetcher=SubmissionFetcher(config.fetch, workspace_root=config.workspace_root),
            runner=create_runner(config.sandbox),
            scorer=SimilarityScorer(config.similarity),
            corpus=Corpus(grades_dir / CORPUS_FILENAME),
            report_store=ReportStore(grades_dir),
            registry=SuiteRegistry.from_config(config.suites, config.visible_store, config.hidden_store),
            rubric=config.rubric,
            similarity_config=config.similarity,
            workers=workers or config.workers,
        )

    def __enter__(self) -> "PipelineOrchestrator":
        return self

    def __exit__(self, *exc_info) -> None:
        self.shutdown()

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)

    # ------------------------------------------------------------------
    # Submitting work
    # ------------------------------------------------------------------

    def submit(self, submission: Submission) -> Future:
        """
        Queue a submission for its first grading.

        Returns:
            Future resolving to the finished PipelineRun.

        Raises:
            AlreadyGradedError: If the submission already has a report or is in progress.
        """
        future, _ = self._submit(submission, reason=INITIAL_REASON, regrade=False)
        return future

    def regrade(self, submission: Submission, reason: str) -> Future:
        """
        Queue an audited regrade. The pipeline restarts from fetching and the
        resulting report is appended after the existing ones.

        Raises:
            ValueError: If no reason is given.
            AlreadyGradedError: If the submission is currently in progress.
        """
        if not reason or not reason.strip():
            raise ValueError("A regrade needs a reason")
        future, _ = self._submit(submission, reason=f"regrade: {reason.strip()}", regrade=True)
        return future

    def _submit(self, submission: Submission, reason: str, regrade: bool) -> tuple[Future, PipelineRun]:
        submission_id = submission.submission_id
        with self._lock:
            if submission_id in self._active:
                raise AlreadyGradedError(f"{submission_id} is already being graded")
            if not regrade and self.report_store.has_report(submission_id):
                raise AlreadyGradedError(f"{submission_id} already has a report; request a regrade instead")
            run = PipelineRun(submission_id=submission_id, reason=reason)
            future = self._executor.submit(self._run_pipeline, submission, run)
            self._active[submission_id] = (future, run)

        future.add_done_callback(lambda f: self._forget(submission_id, f))
        logger.info("Queued %s (%s)", submission_id, reason)
        return future, run

    def _forget(self, submission_id: str, future: Future) -> None:
        with self._lock:
            entry = self._active.get(submission_id)
            if entry is not None and entry[0] is future:
                del self._active[submission_id]
            self._cancel_requested.discard(submission_id)

    def cancel(self, submission_id: str) -> bool:
        """
        Cancel a submission's pipeline.

        A pending pipeline is cancelled at once. A running one completes its
        current stage first, so a sandbox is never abandoned mid-suite.

        Returns:
            True if the submission was pending or running.
        """
        with self._lock:
            entry = self._active.get(submission_id)
            if entry is None:
                return False
            future, run = entry
            cancelled_now = future.cancel()
            if cancelled_now:
                run.advance(PipelineState.CANCELLED)
                run.finished_at = self._clock()
                logger.info("Cancelled pending pipeline of %s", submission_id)
            else:
                self._cancel_requested.add(submission_id)
                logger.info("Cancellation of %s takes effect after its current stage", submission_id)
        if cancelled_now:
            self.report_store.record_run(run)
        return True

    def grade_all(self, submissions: list[Submission]) -> list[PipelineRun]:
        """
        Grade every submission that has no report yet and write the summary.

        Returns:
            One PipelineRun per queued submission, in input order.
        """
        handles: list[tuple[Future, PipelineRun]] = []
        for submission in submissions:
            try:
                handles.append(self._submit(submission, reason=INITIAL_REASON, regrade=False))
            except AlreadyGradedError as e:
                logger.warning("Skipping %s: %s", submission.submission_id, e)

        concurrent.futures.wait([future for future, _ in handles])
        self.report_store.save_summary()
        return [run for _, run in handles]

    # ------------------------------------------------------------------
    # Student-facing checks
    # ------------------------------------------------------------------

    def check_visible(self, submission: Submission) -> list[TestResult]:
        """
        Run the visible suites for a student. No report is written and the
        corpus is left untouched.

        Raises:
            FetchError, SandboxError: On infrastructure failures.
        """
        suites = self.registry.suites_for(AccessRole.STUDENT)
        with self.fetcher.fetch(submission) as workspace:
            return [self.runner.run_suite(workspace.path, suite) for suite in suites]

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    def _stage(self, run: PipelineRun, state: PipelineState) -> None:
        with self._lock:
            if run.submission_id in self._cancel_requested:
                raise _Cancelled()
        logger.debug("%s -> %s", run.submission_id, state.value)
        run.advance(state)

    def _run_suites(self, workspace: Path, visibility: SuiteVisibility) -> list[TestResult]:
        results = []
        for suite in self.registry.suites_for(AccessRole.GRADER, visibility):
            result = self.runner.run_suite(workspace, suite)
            logger.info("%s suite '%s': %d/%d passed", visibility.value, suite.name, result.passes, result.total)
            results.append(result)
        return results

    def _run_pipeline(self, submission: Submission, run: PipelineRun) -> PipelineRun:
        run.started_at = self._clock()
        try:
            self._stage(run, PipelineState.FETCHING)
            with self.fetcher.fetch(submission) as workspace:
                fetched = workspace.submission

                self._stage(run, PipelineState.VISIBLE_TESTING)
                test_results = self._run_suites(workspace.path, SuiteVisibility.VISIBLE)

                self._stage(run, PipelineState.HIDDEN_TESTING)
                test_results += self._run_suites(workspace.path, SuiteVisibility.HIDDEN)

                self._stage(run, PipelineState.SIMILARITY_CHECKING)
                snapshot = self.corpus.snapshot()
                fingerprint = self.scorer.fingerprint_workspace(
                    workspace.path, fetched.submission_id, fetched.student_id
                )
                similarity = self.scorer.score_against(fingerprint, snapshot)

            self._stage(run, PipelineState.AGGREGATING)
            with self.corpus.writer():
                # Members that joined after the snapshot are compared here, so
                # every pair is compared exactly once, by whichever appends last.
                seen = {fp.submission_id for fp in snapshot}
                late = tuple(fp for fp in self.corpus.snapshot() if fp.submission_id not in seen)
                similarity = sorted(
                    similarity + self.scorer.score_against(fingerprint, late),
                    key=lambda r: r.other_submission_id,
                )
                report = compose_grade_report(
                    fetched,
                    test_results,
                    similarity,
                    self.rubric,
                    attempt=self.report_store.next_attempt(fetched.submission_id),
                    created_at=self._clock(),
                    flag_threshold=self.similarity_config.flag_threshold,
                    reason=run.reason,
                )
                escalations = self._escalations(similarity)

                # A report is only saved once its fingerprint is in the corpus
                self.corpus.append(fingerprint)
                self.report_store.append(report)
                run.report = report
                run.attempt = report.attempt
                self._append_escalations(escalations)

            run.advance(PipelineState.DONE)
            logger.info(
                "%s done: score %s%s", run.submission_id,
                "withheld" if report.score is None else f"{report.score:.3f}",
                " (manual review required)" if report.requires_manual_review else "",
            )
        except _Cancelled:
            run.advance(PipelineState.CANCELLED)
            logger.info("%s cancelled after %s", run.submission_id, run.history[-2].value)
        except PipelineError as e:
            self._fail(run, e)
        except Exception as e:
            logger.exception("Unexpected error while grading %s", run.submission_id)
            self._fail(run, e)
        finally:
            run.finished_at = self._clock()
            self.report_store.record_run(run)
        return run

    def _fail(self, run: PipelineRun, error: Exception) -> None:
        run.failed_stage = run.state
        run.error = f"{type(error).__name__}: {error}"
        run.advance(PipelineState.FAILED)
        logger.error("%s failed during %s: %s", run.submission_id, run.failed_stage.value, run.error)

    def _escalations(self, similarity: list[SimilarityReport]) -> list[tuple[GradeReport, SimilarityReport]]:
        """
        Build a manual-review report for every earlier submission this one
        was flagged against. Must be called under the corpus writer lock.

        Returns:
            Pairs of the escalated report and the similarity report behind it.
        """
        escalations = []
        for similarity_report in similarity:
            if similarity_report.score <= self.rubric.manual_review_flag_threshold:
                continue
            other_id = similarity_report.other_submission_id
            prior: GradeReport | None = self.report_store.latest(other_id)
            if prior is None:
                logger.warning("No report for corpus member %s; cannot escalate", other_id)
                continue
            already = any(
                r.other_submission_id == similarity_report.submission_id and r.score == similarity_report.score
                for r in prior.similarity_reports
            )
            if already and prior.requires_manual_review:
                continue
            escalated = escalate_for_review(prior, similarity_report, self.rubric, created_at=self._clock())
            escalations.append((escalated, similarity_report))
        return escalations

    def _append_escalations(self, escalations: list[tuple[GradeReport, SimilarityReport]]) -> None:
        """
        Save escalated reports. A failed write is logged and leaves the run
        of the submission being graded done.
        """
        for escalated, similarity_report in escalations:
            try:
                self.report_store.append(escalated)
            except OSError as e:
                logger.error(
                    "Could not escalate %s to manual review (similarity %.2f with %s): %s",
                    escalated.submission_id, similarity_report.score, similarity_report.submission_id, e,
                )
                continue
            logger.warning(
                "%s escalated to manual review (similarity %.2f with %s)",
                escalated.submission_id, similarity_report.score, similarity_report.submission_id,
            )
