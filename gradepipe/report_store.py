"""
Append-only store for grade reports.

Every grading attempt is saved as its own JSON file; summaries in JSON and
CSV are rebuilt from the latest attempt of each submission.
"""

import csv
import json
import logging
import re
import threading
from datetime import datetime, timezone
from pathlib import Path
from urllib.parse import quote

from pydantic import ValidationError

from .config import (
    ATTEMPT_FILENAME_TEMPLATE,
    DEFAULT_GRADES_DIR,
    GRADES_CSV_FILENAME,
    GRADES_SUMMARY_FILENAME,
    RUN_LOG_FILENAME,
)
from .models import GradeReport, PipelineRun

logger = logging.getLogger(__name__)

_ATTEMPT_PATTERN = re.compile(r"^attempt-(\d+)\.json$")


class ReportStore:
    """
    Persists grade reports and pipeline runs under one grades directory.
    """

    def __init__(self, output_dir: Path | None = None) -> None:
        """
        Initialize the report store.

        Args:
            output_dir: Directory to save reports in. Defaults to ./grades/
        """
        self.output_dir = output_dir or DEFAULT_GRADES_DIR
        self._lock = threading.Lock()

    def _submission_dir(self, submission_id: str) -> Path:
        # Distinct ids map to distinct directories
        name = quote(submission_id, safe="")
        if name in (".", ".."):
            name = name.replace(".", "%2E")
        return self.output_dir / name

    def _attempt_paths(self, submission_id: str) -> list[tuple[int, Path]]:
        directory = self._submission_dir(submission_id)
        if not directory.is_dir():
            return []
        attempts = []
        for path in directory.iterdir():
            match = _ATTEMPT_PATTERN.match(path.name)
            if match:
                attempts.append((int(match.group(1)), path))
        return sorted(attempts)

    def has_report(self, submission_id: str) -> bool:
        return bool(self._attempt_paths(submission_id))

    def next_attempt(self, submission_id: str) -> int:
        attempts = self._attempt_paths(submission_id)
        return attempts[-1][0] + 1 if attempts else 1

    def history(self, submission_id: str) -> list[GradeReport]:
        """
        All reports of a submission, oldest first.
        """
        reports = []
        for _, path in self._attempt_paths(submission_id):
            with open(path, "r", encoding="utf-8") as f:
                reports.append(GradeReport.model_validate_json(f.read()))
        return reports

    def latest(self, submission_id: str) -> GradeReport | None:
        attempts = self._attempt_paths(submission_id)
        if not attempts:
            return None
        with open(attempts[-1][1], "r", encoding="utf-8") as f:
            return GradeReport.model_validate_json(f.read())

    def append(self, report: GradeReport) -> Path:
        """
        Save a report as a new attempt.

        Raises:
            FileExistsError: If this attempt was already written; reports are
                never overwritten.
        """
        with self._lock:
            directory = self._submission_dir(report.submission_id)
            directory.mkdir(parents=True, exist_ok=True)
            path = directory / ATTEMPT_FILENAME_TEMPLATE.format(attempt=report.attempt)
            with open(path, "x", encoding="utf-8") as f:
                f.write(report.model_dump_json(indent=2))
        logger.info("Saved %s attempt %d to %s", report.submission_id, report.attempt, path)
        return path

    def record_run(self, run: PipelineRun) -> None:
        """
        Append a finished pipeline run to the audit log.
        """
        with self._lock:
            self.output_dir.mkdir(parents=True, exist_ok=True)
            entry = run.model_dump(mode="json", exclude={"report"})
            entry["report_attempt"] = run.report.attempt if run.report else None
            with open(self.output_dir / RUN_LOG_FILENAME, "a", encoding="utf-8") as f:
                f.write(json.dumps(entry) + "\n")

    def latest_reports(self) -> list[GradeReport]:
        """
        Latest report of every submission in the store, sorted like the summary.
        """
        reports = []
        if not self.output_dir.is_dir():
            return reports
        for directory in sorted(p for p in self.output_dir.iterdir() if p.is_dir()):
            attempts = [p for p in directory.iterdir() if _ATTEMPT_PATTERN.match(p.name)]
            if not attempts:
                continue
            latest = max(attempts, key=lambda p: int(_ATTEMPT_PATTERN.match(p.name).group(1)))
            with open(latest, "r", encoding="utf-8") as f:
                reports.append(GradeReport.model_validate_json(f.read()))
        reports.sort(key=lambda x: (x.github_repo or "", x.student_id, x.submission_id))
        return reports

    def save_summary(self) -> dict[str, Path]:
        """
        Write the summary files for the latest reports.

        Creates:
        - Summary JSON with statistics and all latest reports
        - Summary CSV for easy import to a gradebook

        Returns:
            Dictionary of output file paths.
        """
        self.output_dir.mkdir(parents=True, exist_ok=True)
        reports = self.latest_reports()
        output_files: dict[str, Path] = {}

        summary_path = self.output_dir / GRADES_SUMMARY_FILENAME
        summary_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "total_submissions": len(reports),
            "statistics": calculate_statistics(reports),
            "reports": [report.model_dump(mode="json") for report in reports],
        }
        with open(summary_path, "w", encoding="utf-8") as f:
            json.dump(summary_data, f, indent=2)
        output_files["summary_json"] = summary_path

        csv_path = self.output_dir / GRADES_CSV_FILENAME
        self._save_csv(csv_path, reports)
        output_files["summary_csv"] = csv_path

        return output_files

    def _save_csv(self, csv_path: Path, reports: list[GradeReport]) -> None:
        """
        Save latest reports as CSV file, one column per suite.
        """
        suite_names: list[str] = []
        for report in reports:
            for result in report.test_results:
                if result.suite_name not in suite_names:
                    suite_names.append(result.suite_name)

        header = ["submission_id", "student_id", "attempt", "score", "requires_manual_review", "github_repo"]
        header.extend(suite_names)
        header.append("max_similarity")

        with open(csv_path, "w", newline="", encoding="utf-8") as f:
            writer = csv.writer(f)
            writer.writerow(header)

            for report in reports:
                row = [
                    report.submission_id,
                    report.student_id,
                    report.attempt,
                    "withheld" if report.score is None else f"{report.score:.4f}",
                    "Yes" if report.requires_manual_review else "No",
                    report.github_repo or "",
                ]
                by_suite = {r.suite_name: r for r in report.test_results}
                for name in suite_names:
                    result = by_suite.get(name)
                    row.append(f"{result.passes}/{result.total}" if result else "")
                row.append(max((s.score for s in report.similarity_reports), default=""))
                writer.writerow(row)


def calculate_statistics(reports: list[GradeReport]) -> dict:
    """
    Calculate summary statistics over reports with a released score.

    Returns:
        Dictionary with statistics.
    """
    if not reports:
        return {}

    scores = [r.score for r in reports if r.score is not None]
    flagged = sum(1 for r in reports if r.requires_manual_review)

    stats = {
        "scored_count": len(scores),
        "manual_review_count": flagged,
        "manual_review_percent": (flagged / len(reports)) * 100,
    }
    if scores:
        stats.update(
            average_score=sum(scores) / len(scores),
            highest_score=max(scores),
            lowest_score=min(scores),
        )
    return stats


def load_reports_from_dir(grades_dir: Path) -> list[GradeReport]:
    """
    Load the latest reports from a grades directory.

    Args:
        grades_dir: Path to the grades directory.

    Returns:
        List of GradeReport objects.
    """
    # Try loading from summary file first
    summary_path = grades_dir / GRADES_SUMMARY_FILENAME
    if summary_path.exists():
        try:
            with open(summary_path, "r", encoding="utf-8") as f:
                data = json.load(f)
            return [GradeReport(**report_data) for report_data in data.get("reports", [])]
        except (json.JSONDecodeError, ValidationError) as e:
            logger.warning("Ignoring unreadable summary %s: %s", summary_path, e)

    # Fall back to individual attempt files
    return ReportStore(grades_dir).latest_reports()
