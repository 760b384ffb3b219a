"""
Grade Pipeline: automated grading with hidden tests and similarity checks

Usage:
  main.py grade [--config=PATH] [--workers=N]
  main.py regrade <submission_id> --reason=TEXT [--config=PATH]
  main.py check <submission_id> [--config=PATH]
  main.py annotate <submission_id> --reviewer=NAME --note=TEXT [--config=PATH]
  main.py summary [--config=PATH]
  main.py (-h | --help)

Options:
  --config=PATH     Path to YAML configuration file [default: grader_config.yml].
  --workers=N       Number of submissions graded concurrently (overrides config).
  --reason=TEXT     Why the submission is regraded (recorded in the report).
  --reviewer=NAME   Who wrote the annotation.
  --note=TEXT       Annotation text, e.g. the outcome of a commit-history review.
  -h --help         Show this screen.

Exit status is 0 when every pipeline reached "done" and 1 otherwise; it does
not reflect the grades themselves.
"""

import logging
import sys
from datetime import datetime, timezone
from pathlib import Path

from docopt import docopt

from gradepipe.aggregator import annotate
from gradepipe.config import DEFAULT_GRADES_DIR
from gradepipe.config_loader import PipelineConfig, load_config
from gradepipe.errors import PipelineError
from gradepipe.fetcher import discover_submissions
from gradepipe.models import GradeReport, PipelineRun, PipelineState, ReviewAnnotation, Submission, TestResult
from gradepipe.orchestrator import PipelineOrchestrator
from gradepipe.report_store import ReportStore, calculate_statistics, load_reports_from_dir


def configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)-7s %(threadName)s %(name)s: %(message)s",
    )


def collect_submissions(config: PipelineConfig) -> list[Submission]:
    """
    Build the submission list from explicit entries and the submissions directory.

    Args:
        config: Loaded configuration.

    Returns:
        List of Submission objects; explicit entries win over discovered ones.
    """
    submissions = [Submission(**entry.model_dump()) for entry in config.submissions]
    if config.submissions_dir:
        known = {s.submission_id for s in submissions}
        for discovered in discover_submissions(config.submissions_dir, config.default_reference):
            if discovered.submission_id not in known:
                submissions.append(discovered)
    return submissions


def find_submission(config: PipelineConfig, submission_id: str) -> Submission | None:
    for submission in collect_submissions(config):
        if submission.submission_id == submission_id:
            return submission
    return None


def print_test_result(result: TestResult) -> None:
    flag = ""
    if result.harness_error:
        flag = " [harness error]"
    elif result.timed_out:
        flag = " [timeout]"
    print(f"  {result.visibility.value:<7} {result.suite_name}: {result.passes}/{result.total}{flag}")
    for case in result.cases:
        if not case.passed:
            print(f"      - {case.test_id}: {case.reason}")


def print_grade_summary(report: GradeReport) -> None:
    """
    Print a summary of a grade report to console.

    Args:
        report: GradeReport to summarize.
    """
    print(f"\n  {'='*50}")
    print(f"  Submission: {report.submission_id} (student {report.student_id}, attempt {report.attempt})")
    if report.score is None:
        print("  Score: withheld")
    else:
        print(f"  Score: {report.score:.3f}")
    print(f"  Manual review: {'REQUIRED' if report.requires_manual_review else 'No'}")
    print(f"  {'='*50}")

    for result in report.test_results:
        print_test_result(result)
    for similarity in report.similarity_reports:
        print(f"  [!] similarity {similarity.score:.2f} with {similarity.other_submission_id}"
              f" ({similarity.matched_spans} matched spans)")
    print()


def print_run_diagnostic(run: PipelineRun) -> None:
    stage = run.failed_stage.value if run.failed_stage else "unknown"
    print(f"  FAILED {run.submission_id} during {stage}: {run.error}")


def run_grading(config: PipelineConfig, workers: int | None = None) -> int:
    """
    Grade every submission without a report.

    Returns:
        Exit code (0 if every run is done, 1 otherwise).
    """
    submissions = collect_submissions(config)
    print(f"Found {len(submissions)} submissions")
    if not submissions:
        print("No submissions found!")
        return 0

    with PipelineOrchestrator.from_config(config, workers=workers) as orchestrator:
        runs = orchestrator.grade_all(submissions)

    done = [r for r in runs if r.state is PipelineState.DONE]
    failed = [r for r in runs if r.state is PipelineState.FAILED]
    for run in done:
        print_grade_summary(run.report)

    print("\n" + "=" * 60)
    print("GRADING COMPLETE")
    print("=" * 60)
    print(f"Pipelines run: {len(runs)}  done: {len(done)}  failed: {len(failed)}")
    for run in failed:
        print_run_diagnostic(run)

    return 0 if len(done) == len(runs) else 1


def run_regrade(config: PipelineConfig, submission_id: str, reason: str) -> int:
    submission = find_submission(config, submission_id)
    if submission is None:
        print(f"Error: Unknown submission: {submission_id}")
        return 1

    with PipelineOrchestrator.from_config(config, workers=1) as orchestrator:
        run = orchestrator.regrade(submission, reason).result()
        orchestrator.report_store.save_summary()

    if run.state is not PipelineState.DONE:
        print_run_diagnostic(run)
        return 1
    print_grade_summary(run.report)
    return 0


def run_check(config: PipelineConfig, submission_id: str) -> int:
    submission = find_submission(config, submission_id)
    if submission is None:
        print(f"Error: Unknown submission: {submission_id}")
        return 1

    with PipelineOrchestrator.from_config(config, workers=1) as orchestrator:
        try:
            results = orchestrator.check_visible(submission)
        except PipelineError as e:
            print(f"  FAILED {submission_id} during {e.stage}: {e}")
            return 1

    print(f"Visible suites for {submission_id}:")
    for result in results:
        print_test_result(result)
    return 0


def run_annotate(config: PipelineConfig, submission_id: str, reviewer: str, note: str) -> int:
    store = ReportStore(config.grades_dir or DEFAULT_GRADES_DIR)
    prior = store.latest(submission_id)
    if prior is None:
        print(f"Error: No report for submission: {submission_id}")
        return 1

    now = datetime.now(timezone.utc)
    annotation = ReviewAnnotation(reviewer=reviewer, note=note, created_at=now)
    report = annotate(prior, annotation, created_at=now)
    store.append(report)
    store.save_summary()
    print_grade_summary(report)
    return 0


def run_summary(config: PipelineConfig) -> int:
    grades_dir = config.grades_dir or DEFAULT_GRADES_DIR
    if not grades_dir.exists():
        print(f"Error: Grades directory not found: {grades_dir}")
        return 1

    reports = load_reports_from_dir(grades_dir)
    if not reports:
        print("No grades found.")
        return 1
    for report in reports:
        print_grade_summary(report)
    stats = calculate_statistics(reports)
    print(f"Submissions: {len(reports)}  scored: {stats.get('scored_count', 0)}"
          f"  manual review: {stats.get('manual_review_count', 0)}")
    if "average_score" in stats:
        print(f"Average score: {stats['average_score']:.3f}")
    return 0


def main() -> int:
    """
    Main CLI entrypoint.

    Returns:
        Exit code (0 for success, 1 for error).
    """
    arguments = docopt(__doc__)
    config_path = Path(arguments["--config"])

    try:
        config = load_config(config_path)
    except PipelineError as e:
        print(f"Error loading config: {e}")
        return 1

    configure_logging(config.verbose)
    print(f"Loaded configuration from {config_path}")

    workers = None
    if arguments["--workers"]:
        try:
            workers = int(arguments["--workers"])
        except ValueError:
            print(f"Error: --workers must be an integer, got {arguments['--workers']}")
            return 1

    try:
        if arguments["grade"]:
            return run_grading(config, workers=workers)
        if arguments["regrade"]:
            return run_regrade(config, arguments["<submission_id>"], arguments["--reason"])
        if arguments["check"]:
            return run_check(config, arguments["<submission_id>"])
        if arguments["annotate"]:
            return run_annotate(config, arguments["<submission_id>"], arguments["--reviewer"], arguments["--note"])
        if arguments["summary"]:
            return run_summary(config)
    except KeyboardInterrupt:
        print("\nGrading interrupted by user.")
        return 1
    except PipelineError as e:
        print(f"\nError during {e.stage}: {e}")
        return 1
    return 1


if __name__ == "__main__":
    sys.exit(main())
