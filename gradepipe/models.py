"""
Pydantic models for the grade pipeline.

Defines the records that flow between the fetcher, the sandbox, the
similarity scorer and the grade aggregator, and the exported report schema.
"""

from datetime import datetime
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, model_validator


class SuiteVisibility(str, Enum):
    """Whether a suite may be shown to students."""

    VISIBLE = "visible"
    HIDDEN = "hidden"


class PipelineState(str, Enum):
    """States of a single submission's pipeline."""

    PENDING = "pending"
    FETCHING = "fetching"
    VISIBLE_TESTING = "visible_testing"
    HIDDEN_TESTING = "hidden_testing"
    SIMILARITY_CHECKING = "similarity_checking"
    AGGREGATING = "aggregating"
    DONE = "done"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (PipelineState.DONE, PipelineState.FAILED, PipelineState.CANCELLED)


class Submission(BaseModel):
    """
    One student's code tree at one version-control reference.

    Attributes:
        submission_id: Unique identifier of the submission.
        student_id: Identifier of the student (or team).
        repository: URL or local path of the git repository.
        reference: Branch, tag or commit to grade.
        fetched_at: When the tree was fetched, None before fetching.
        resolved_commit: Commit the reference resolved to when fetched.
        github_repo: GitHub owner/name, when known.
    """

    model_config = ConfigDict(frozen=True)

    submission_id: str = Field(..., min_length=1, description="Unique submission identifier")
    student_id: str = Field(..., min_length=1, description="Student identifier")
    repository: str = Field(..., description="Git repository URL or local path")
    reference: str = Field(default="HEAD", description="Branch, tag or commit")
    fetched_at: datetime | None = Field(default=None, description="Fetch timestamp")
    resolved_commit: str | None = Field(default=None, description="Resolved commit hash")
    github_repo: str | None = Field(default=None, description="GitHub repository owner/name")

    def mark_fetched(self, commit: str, at: datetime) -> "Submission":
        return self.model_copy(update={"resolved_commit": commit, "fetched_at": at})


class TestSuiteSpec(BaseModel):
    """
    A named, ordered set of test cases.

    Attributes:
        name: Suite name, unique within an assignment.
        visibility: Visible suites may be run for students, hidden ones may not.
        path: Directory holding the suite's test files and fixtures.
        tests: Ordered pytest node ids, relative to ``path``.
        timeout_seconds: Wall-clock bound overriding the sandbox default.
        service_command: Command starting the student's HTTP service, if any.
        service_port: Loopback port the service listens on.
        service_health_path: Path polled until the service answers.
    """

    __test__ = False

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., min_length=1, description="Suite name")
    visibility: SuiteVisibility = Field(..., description="visible or hidden")
    path: Path = Field(..., description="Suite fixture directory")
    tests: list[str] = Field(..., min_length=1, description="Ordered test node ids")
    timeout_seconds: int | None = Field(default=None, gt=0, description="Suite timeout")
    service_command: list[str] | None = Field(default=None, description="Service start command")
    service_port: int = Field(default=8080, gt=0, lt=65536, description="Service loopback port")
    service_health_path: str = Field(default="/", description="Service readiness path")

    @model_validator(mode="after")
    def _unique_tests(self) -> "TestSuiteSpec":
        if len(set(self.tests)) != len(self.tests):
            raise ValueError(f"Suite '{self.name}' lists a test more than once")
        return self


class TestCaseResult(BaseModel):
    """
    Outcome of one test case.

    Attributes:
        test_id: Node id as listed in the suite.
        passed: Whether the test passed.
        reason: Why the test did not pass (failed, error, skipped, timeout,
            not_run, harness_error).
        message: Failure message, if any.
        duration_seconds: Time taken to run the test.
    """

    __test__ = False

    model_config = ConfigDict(frozen=True)

    test_id: str = Field(..., description="Test node id")
    passed: bool = Field(..., description="Whether the test passed")
    reason: str | None = Field(default=None, description="Failure reason")
    message: str = Field(default="", description="Failure message")
    duration_seconds: float = Field(default=0.0, ge=0, description="Test duration")


class TestResult(BaseModel):
    """
    Result of running one suite against one submission.

    Attributes:
        suite_name: Name of the suite that was run.
        visibility: Visibility of the suite.
        passes: Number of passing tests.
        fails: Number of failing tests, including timed-out and unrun ones.
        cases: Per-test outcomes, in suite order.
        stdout: Captured standard output, truncated.
        stderr: Captured standard error, truncated.
        duration_seconds: Wall-clock duration of the run.
        timed_out: Whether the suite hit its timeout.
        harness_error: Whether the harness failed to run the suite.
        harness_message: Diagnostic for a harness error.
    """

    __test__ = False

    model_config = ConfigDict(frozen=True)

    suite_name: str = Field(..., description="Suite name")
    visibility: SuiteVisibility = Field(..., description="Suite visibility")
    passes: int = Field(..., ge=0, description="Passing tests")
    fails: int = Field(..., ge=0, description="Failing tests")
    cases: list[TestCaseResult] = Field(default_factory=list, description="Per-test outcomes")
    stdout: str = Field(default="", description="Captured stdout (truncated)")
    stderr: str = Field(default="", description="Captured stderr (truncated)")
    duration_seconds: float = Field(default=0.0, ge=0, description="Wall-clock duration")
    timed_out: bool = Field(default=False, description="Whether the suite timed out")
    harness_error: bool = Field(default=False, description="Whether the harness failed")
    harness_message: str = Field(default="", description="Harness error diagnostic")

    @property
    def total(self) -> int:
        return self.passes + self.fails


class SimilarityReport(BaseModel):
    """
    Pairwise similarity between two submissions.

    Attributes:
        submission_id: Submission being graded.
        other_submission_id: Corpus member it was compared against.
        score: Shared-shingle fraction in [0, 1].
        matched_spans: Number of maximal matching token runs.
    """

    model_config = ConfigDict(frozen=True)

    submission_id: str = Field(..., description="Submission being graded")
    other_submission_id: str = Field(..., description="Compared corpus member")
    score: float = Field(..., ge=0.0, le=1.0, description="Similarity score")
    matched_spans: int = Field(default=0, ge=0, description="Matched span count")

    @model_validator(mode="after")
    def _not_self(self) -> "SimilarityReport":
        if self.submission_id == self.other_submission_id:
            raise ValueError("A submission is never compared against itself")
        return self

    def mirrored(self) -> "SimilarityReport":
        return self.model_copy(
            update={
                "submission_id": self.other_submission_id,
                "other_submission_id": self.submission_id,
            }
        )


class ReviewAnnotation(BaseModel):
    """Human-supplied note attached to a grade report (e.g. commit-history review)."""

    model_config = ConfigDict(frozen=True)

    reviewer: str = Field(..., min_length=1, description="Who wrote the note")
    note: str = Field(..., min_length=1, description="Annotation text")
    created_at: datetime = Field(..., description="When the note was written")


class GradeReport(BaseModel):
    """
    Final grading artifact for one submission attempt.

    Attributes:
        submission_id: Graded submission.
        student_id: Student identifier.
        attempt: 1 for the first grading, incremented on every appended report.
        score: Weighted score in [0, 1], None while withheld for manual review.
        requires_manual_review: Whether a similarity flag needs a human decision.
        test_results: Contributing suite results.
        similarity_reports: Similarity reports above the flag threshold.
        rubric_notes: Notes explaining how the score was reached.
        annotations: Human annotations carried by this attempt.
        reason: Why this attempt exists (initial grading, regrade, escalation).
        resolved_commit: Commit that was graded.
        created_at: When the report was composed.
    """

    model_config = ConfigDict(frozen=True)

    submission_id: str = Field(..., description="Graded submission")
    student_id: str = Field(..., description="Student identifier")
    attempt: int = Field(..., ge=1, description="Attempt number")
    score: float | None = Field(..., ge=0.0, le=1.0, description="Score, None when withheld")
    requires_manual_review: bool = Field(..., description="Manual review required")
    test_results: list[TestResult] = Field(default_factory=list, description="Suite results")
    similarity_reports: list[SimilarityReport] = Field(
        default_factory=list, description="Flagged similarity reports"
    )
    rubric_notes: list[str] = Field(default_factory=list, description="Rubric notes")
    annotations: list[ReviewAnnotation] = Field(default_factory=list, description="Human notes")
    reason: str = Field(default="initial grading", description="Why this attempt exists")
    resolved_commit: str | None = Field(default=None, description="Graded commit")
    github_repo: str | None = Field(default=None, description="GitHub repository owner/name")
    created_at: datetime = Field(..., description="Creation timestamp")


class PipelineRun(BaseModel):
    """
    Audit record of one pipeline execution for one submission.

    Unlike the other records this one is updated as the run advances, and is
    only written to the run log once it reaches a terminal state.
    """

    submission_id: str = Field(..., description="Submission being graded")
    attempt: int | None = Field(default=None, ge=1, description="Attempt number of the produced report")
    reason: str = Field(default="initial grading", description="Why this run was started")
    state: PipelineState = Field(default=PipelineState.PENDING, description="Current state")
    history: list[PipelineState] = Field(
        default_factory=lambda: [PipelineState.PENDING], description="States visited"
    )
    failed_stage: PipelineState | None = Field(default=None, description="Stage that failed")
    error: str | None = Field(default=None, description="Infrastructure error, if failed")
    report: GradeReport | None = Field(default=None, description="Report of a done run")
    started_at: datetime | None = Field(default=None, description="When the first stage began")
    finished_at: datetime | None = Field(default=None, description="When a terminal state was reached")

    def advance(self, state: PipelineState) -> None:
        if self.state.is_terminal:
            raise RuntimeError(f"Run for {self.submission_id} already {self.state.value}")
        self.state = state
        self.history.append(state)
