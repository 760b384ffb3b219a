"""
Pytest configuration and fixtures
"""
import subprocess
import sys
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path

import pytest

# Add project root to Python path
project_root = Path(__file__).parent.parent
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))

from gradepipe.config_loader import RubricConfig, SimilarityConfig  # noqa: E402
from gradepipe.errors import FetchError  # noqa: E402
from gradepipe.fetcher import Workspace  # noqa: E402
from gradepipe.models import (  # noqa: E402
    Submission,
    SuiteVisibility,
    TestCaseResult,
    TestResult,
    TestSuiteSpec,
)

FIXED_NOW = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)


def git(cwd: Path, *args: str) -> str:
    """Run git with a throwaway identity."""
    result = subprocess.run(
        ["git", "-c", "user.name=Test", "-c", "user.email=test@example.com", *args],
        cwd=str(cwd),
        capture_output=True,
        text=True,
        check=True,
    )
    return result.stdout.strip()


@pytest.fixture
def make_repo(tmp_path):
    """Create a git repository with one commit on ``main``."""

    def _make(name: str, files: dict[str, str]) -> Path:
        repo = tmp_path / "repos" / name
        repo.mkdir(parents=True)
        git(repo, "init", "-q")
        git(repo, "symbolic-ref", "HEAD", "refs/heads/main")
        for relative, content in files.items():
            path = repo / relative
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content, encoding="utf-8")
        git(repo, "add", "-A")
        git(repo, "commit", "-q", "-m", "initial")
        return repo

    return _make


def make_result(
    suite_name: str,
    visibility: SuiteVisibility,
    passes: int,
    total: int,
    harness_error: bool = False,
    timed_out: bool = False,
) -> TestResult:
    """Build a TestResult with ``passes`` of ``total`` tests passing."""
    if harness_error:
        passes = 0
    cases = []
    for i in range(total):
        if i < passes:
            cases.append(TestCaseResult(test_id=f"test_{i}", passed=True))
        else:
            reason = "harness_error" if harness_error else ("timeout" if timed_out else "failed")
            cases.append(TestCaseResult(test_id=f"test_{i}", passed=False, reason=reason))
    return TestResult(
        suite_name=suite_name,
        visibility=visibility,
        passes=passes,
        fails=total - passes,
        cases=cases,
        timed_out=timed_out,
        harness_error=harness_error,
        harness_message="boom" if harness_error else "",
    )


@pytest.fixture
def rubric():
    return RubricConfig(
        visible_weight=0.4,
        hidden_weight=0.6,
        similarity_penalty_threshold=0.6,
        similarity_penalty_factor=0.5,
        manual_review_flag_threshold=0.8,
    )


@pytest.fixture
def similarity_config():
    return SimilarityConfig(shingle_size=3, informational_threshold=0.2, flag_threshold=0.5)


@pytest.fixture
def submission():
    return Submission(submission_id="sub-1", student_id="alice", repository="/repos/alice", reference="main")


@pytest.fixture
def stores(tmp_path):
    visible = tmp_path / "suites" / "visible"
    hidden = tmp_path / "suites" / "hidden"
    visible.mkdir(parents=True)
    hidden.mkdir(parents=True)
    return visible, hidden


@pytest.fixture
def suite_specs(stores):
    visible, hidden = stores
    return [
        TestSuiteSpec(name="basic", visibility=SuiteVisibility.VISIBLE, path=visible / "basic",
                      tests=["test_a.py::test_1", "test_a.py::test_2", "test_a.py::test_3"]),
        TestSuiteSpec(name="secret", visibility=SuiteVisibility.HIDDEN, path=hidden / "secret",
                      tests=[f"test_b.py::test_{i}" for i in range(5)]),
    ]


class StubFetcher:
    """Fetcher writing preset files into a workspace instead of using git."""

    def __init__(self, workspace_root: Path, trees: dict[str, dict[str, str]], failing: set[str] = frozenset()):
        self.workspace_root = workspace_root
        self.trees = trees
        self.failing = set(failing)
        self.fetched: list[str] = []

    @contextmanager
    def fetch(self, submission: Submission):
        if submission.submission_id in self.failing:
            raise FetchError(f"Reference '{submission.reference}' not found")
        self.fetched.append(submission.submission_id)
        path = self.workspace_root / f"{submission.submission_id}-{len(self.fetched)}"
        path.mkdir(parents=True)
        for name, content in self.trees.get(submission.submission_id, {}).items():
            (path / name).write_text(content, encoding="utf-8")
        try:
            yield Workspace(path=path, submission=submission.mark_fetched("0" * 40, FIXED_NOW))
        finally:
            for child in path.iterdir():
                child.unlink()
            path.rmdir()


class StubRunner:
    """Runner returning preset pass counts per suite name."""

    def __init__(self, outcomes: dict[str, tuple[int, int]], harness_errors: set[str] = frozenset(),
                 errors: dict[str, Exception] | None = None, timeouts: set[str] = frozenset()):
        self.outcomes = outcomes
        self.harness_errors = set(harness_errors)
        self.timeouts = set(timeouts)
        self.errors = errors or {}
        self.calls: list[tuple[str, str]] = []
        self.hook = None
        self._lock = threading.Lock()

    def run_suite(self, workspace: Path, suite: TestSuiteSpec) -> TestResult:
        with self._lock:
            self.calls.append((workspace.name, suite.name))
        if self.hook is not None:
            self.hook(workspace, suite)
        if suite.name in self.errors:
            raise self.errors[suite.name]
        passes, total = self.outcomes[suite.name]
        return make_result(suite.name, suite.visibility, passes, total,
                           harness_error=suite.name in self.harness_errors, timed_out=suite.name in self.timeouts)
