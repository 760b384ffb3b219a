"""
Submission fetcher.

Resolves a version-control reference to a file tree in an isolated
workspace directory that is removed again when grading is over.
"""

import logging
import os
import re
import shutil
import subprocess
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator

from .config import IGNORED_SUBMISSION_DIRS
from .config_loader import FetchConfig
from .errors import FetchError
from .models import Submission

logger = logging.getLogger(__name__)

DEFAULT_WORKSPACE_ROOT: Path = Path(tempfile.gettempdir()) / "gradepipe-workspaces"


@dataclass(frozen=True)
class Workspace:
    """A fetched tree and the submission it belongs to."""

    path: Path
    submission: Submission


class SubmissionFetcher:
    """
    Fetches submissions from git into throwaway workspaces.
    """

    def __init__(self, config: FetchConfig | None = None, workspace_root: Path | None = None) -> None:
        """
        Initialize the fetcher.

        Args:
            config: Size, file-count and timeout limits.
            workspace_root: Directory workspaces are created in.
        """
        self.config = config or FetchConfig()
        self.workspace_root = workspace_root or DEFAULT_WORKSPACE_ROOT

    @contextmanager
    def fetch(self, submission: Submission) -> Iterator[Workspace]:
        """
        Fetch a submission into a fresh workspace.

        The workspace only contains the files at the resolved commit; the
        repository metadata is removed. The directory is deleted on exit,
        whether grading succeeded or not.

        Args:
            submission: Submission to fetch.

        Yields:
            Workspace with the tree path and the fetched submission.

        Raises:
            FetchError: If the repository or reference cannot be resolved,
                git times out, or the tree breaks the configured limits.
        """
        self.workspace_root.mkdir(parents=True, exist_ok=True)
        safe_id = re.sub(r"[^A-Za-z0-9_.-]", "_", submission.submission_id)
        workdir = Path(tempfile.mkdtemp(prefix=f"{safe_id}-", dir=self.workspace_root))
        try:
            tree = workdir / "tree"
            logger.info("Fetching %s (%s @ %s)", submission.submission_id, submission.repository, submission.reference)
            self._git(["clone", "--quiet", "--no-checkout", submission.repository, str(tree)], cwd=workdir)
            commit = self._resolve_reference(tree, submission.reference)
            self._git(["checkout", "--quiet", "--detach", commit], cwd=tree)
            shutil.rmtree(tree / ".git")
            self._check_limits(tree)

            fetched = submission.mark_fetched(commit, datetime.now(timezone.utc))
            logger.debug("Fetched %s at %s into %s", submission.submission_id, commit, tree)
            yield Workspace(path=tree, submission=fetched)
        finally:
            shutil.rmtree(workdir, ignore_errors=True)

    def _git(self, args: list[str], cwd: Path) -> str:
        env = os.environ.copy()
        env["GIT_TERMINAL_PROMPT"] = "0"
        try:
            process = subprocess.run(
                ["git", *args],
                cwd=str(cwd),
                env=env,
                capture_output=True,
                text=True,
                timeout=self.config.timeout_seconds,
                check=True,
            )
        except FileNotFoundError as e:
            raise FetchError("git executable not found") from e
        except subprocess.TimeoutExpired as e:
            raise FetchError(f"git {args[0]} timed out after {self.config.timeout_seconds}s") from e
        except subprocess.CalledProcessError as e:
            raise FetchError(f"git {args[0]} failed: {e.stderr.strip() or e.returncode}") from e
        return process.stdout.strip()

    def _resolve_reference(self, tree: Path, reference: str) -> str:
        for candidate in (reference, f"origin/{reference}"):
            try:
                return self._git(["rev-parse", "--verify", "--quiet", f"{candidate}^{{commit}}"], cwd=tree)
            except FetchError:
                continue
        raise FetchError(f"Reference '{reference}' not found")

    def _check_limits(self, tree: Path) -> None:
        """
        Reject trees with too many files, too many bytes, or escaping symlinks.
        """
        resolved_tree = tree.resolve()
        file_count = 0
        total_bytes = 0
        for dirpath, dirnames, filenames in os.walk(tree):
            for name in filenames + dirnames:
                entry = Path(dirpath) / name
                if entry.is_symlink():
                    target = entry.resolve()
                    if target != resolved_tree and resolved_tree not in target.parents:
                        raise FetchError(f"Symlink {entry.relative_to(tree)} points outside the submission")
            for name in filenames:
                file_count += 1
                total_bytes += (Path(dirpath) / name).lstat().st_size
            if file_count > self.config.max_files:
                raise FetchError(f"Submission has more than {self.config.max_files} files")
            if total_bytes > self.config.max_total_bytes:
                raise FetchError(f"Submission is larger than {self.config.max_total_bytes} bytes")


def discover_submissions(submissions_dir: Path, reference: str) -> list[Submission]:
    """
    Find all student clones in a directory.

    Each non-hidden sub-directory is one student; its folder name is used as
    both the student id and the submission id.

    Args:
        submissions_dir: Path to directory containing student folders.
        reference: Reference to grade in every clone.

    Returns:
        List of Submission objects, sorted by folder name.
    """
    submissions: list[Submission] = []

    for item in sorted(submissions_dir.iterdir()):
        if not item.is_dir():
            continue

        # Skip hidden directories and common non-submission dirs
        if item.name.startswith(".") or item.name in IGNORED_SUBMISSION_DIRS:
            continue

        # Try to find GitHub repository
        github_repo = None
        try:
            result = subprocess.run(
                ["git", "remote", "get-url", "origin"],
                cwd=str(item),
                capture_output=True,
                text=True,
                check=False,
            )
        except OSError as e:
            logger.debug("Could not read the origin remote of %s: %s", item.name, e)
        else:
            if result.returncode == 0:
                # Handle git@github.com:owner/repo.git or https://github.com/owner/repo.git
                match = re.search(r"github\.com[:/](.+?)(?:\.git)?$", result.stdout.strip())
                if match:
                    github_repo = match.group(1)

        submissions.append(
            Submission(
                submission_id=item.name,
                student_id=item.name,
                repository=str(item.resolve()),
                reference=reference,
                github_repo=github_repo,
            )
        )

    return submissions
