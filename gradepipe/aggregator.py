"""
Grade aggregator.

Turns test results and similarity reports into a GradeReport. Every function
here is pure: the same inputs always produce the same report.
"""

from datetime import datetime
from typing import Iterable

from .config_loader import RubricConfig
from .models import (
    GradeReport,
    ReviewAnnotation,
    SimilarityReport,
    Submission,
    SuiteVisibility,
    TestResult,
)

INITIAL_REASON = "initial grading"


def pass_fractions(test_results: Iterable[TestResult]) -> dict[SuiteVisibility, float]:
    """
    Pass fraction per visibility, over all tests of that visibility.

    Visibilities without any suite are absent from the result.
    """
    passes: dict[SuiteVisibility, int] = {}
    totals: dict[SuiteVisibility, int] = {}
    for result in test_results:
        passes[result.visibility] = passes.get(result.visibility, 0) + result.passes
        totals[result.visibility] = totals.get(result.visibility, 0) + result.total
    return {
        visibility: (passes[visibility] / total if total else 0.0)
        for visibility, total in totals.items()
    }


def base_score(test_results: list[TestResult], rubric: RubricConfig) -> float:
    """
    Weighted pass fraction across visible and hidden suites.

    When one visibility has no suites, the other carries the full weight.
    """
    fractions = pass_fractions(test_results)
    weights = {
        SuiteVisibility.VISIBLE: rubric.visible_weight,
        SuiteVisibility.HIDDEN: rubric.hidden_weight,
    }
    present = {v: w for v, w in weights.items() if v in fractions}
    total_weight = sum(present.values())
    if total_weight <= 0:
        return 0.0
    score = sum(fractions[v] * w for v, w in present.items()) / total_weight
    return round(score, 6)


def requires_manual_review(similarity_reports: Iterable[SimilarityReport], rubric: RubricConfig) -> bool:
    return any(r.score > rubric.manual_review_flag_threshold for r in similarity_reports)


def _suite_notes(test_results: list[TestResult]) -> list[str]:
    notes = []
    for result in test_results:
        summary = f"{result.visibility.value} suite '{result.suite_name}': {result.passes}/{result.total} passed"
        if result.harness_error:
            summary += " (harness error, counted as 0)"
        elif result.timed_out:
            summary += " (timed out, unfinished tests failed)"
        notes.append(summary)
    return notes


def compose_grade_report(
    submission: Submission,
    test_results: list[TestResult],
    similarity_reports: list[SimilarityReport],
    rubric: RubricConfig,
    *,
    attempt: int,
    created_at: datetime,
    flag_threshold: float,
    annotations: Iterable[ReviewAnnotation] = (),
    reason: str = INITIAL_REASON,
) -> GradeReport:
    """
    Compose the grade report for one submission attempt.

    Args:
        submission: The graded submission.
        test_results: Results of every suite that was run.
        similarity_reports: Reports against every compared corpus member.
        rubric: Weights and thresholds.
        attempt: Attempt number of the report.
        created_at: Timestamp recorded in the report.
        flag_threshold: Reports scoring above this are attached to the report.
        annotations: Human annotations to carry.
        reason: Why this attempt exists.

    Returns:
        GradeReport. When a similarity score exceeds the manual-review
        threshold the score is withheld (None), not zeroed.
    """
    annotations = list(annotations)
    notes = _suite_notes(test_results)
    score: float | None = base_score(test_results, rubric)

    highest = max((r.score for r in similarity_reports), default=0.0)
    if highest > rubric.similarity_penalty_threshold:
        score = round(score * (1 - rubric.similarity_penalty_factor), 6)
        notes.append(
            f"Similarity {highest:.2f} above {rubric.similarity_penalty_threshold:.2f}: "
            f"score reduced by {rubric.similarity_penalty_factor:.0%}"
        )

    review = requires_manual_review(similarity_reports, rubric)
    if review:
        score = None
        notes.append(
            f"Similarity {highest:.2f} above {rubric.manual_review_flag_threshold:.2f}: "
            "automated score withheld pending manual review"
        )

    notes.extend(f"Reviewer {a.reviewer}: {a.note}" for a in annotations)

    cutoff = min(flag_threshold, rubric.manual_review_flag_threshold)
    flagged = [r for r in similarity_reports if r.score > cutoff]

    return GradeReport(
        submission_id=submission.submission_id,
        student_id=submission.student_id,
        attempt=attempt,
        score=score,
        requires_manual_review=review,
        test_results=list(test_results),
        similarity_reports=flagged,
        rubric_notes=notes,
        annotations=annotations,
        reason=reason,
        resolved_commit=submission.resolved_commit,
        github_repo=submission.github_repo,
        created_at=created_at,
    )


def escalate_for_review(
    prior: GradeReport,
    similarity_report: SimilarityReport,
    rubric: RubricConfig,
    *,
    created_at: datetime,
) -> GradeReport:
    """
    Append-only escalation of an already graded submission.

    Used when a later submission is flagged against ``prior``. The returned
    report is the next attempt, carries the mirrored similarity report and
    withholds the score.

    Args:
        prior: Latest report of the earlier submission.
        similarity_report: Report computed for the later submission.
        rubric: Weights and thresholds.
        created_at: Timestamp recorded in the report.
    """
    mirrored = similarity_report
    if mirrored.submission_id != prior.submission_id:
        mirrored = similarity_report.mirrored()
    others = [r for r in prior.similarity_reports if r.other_submission_id != mirrored.other_submission_id]
    review = requires_manual_review([*others, mirrored], rubric)
    return prior.model_copy(
        update={
            "attempt": prior.attempt + 1,
            "score": None if review else prior.score,
            "requires_manual_review": review,
            "similarity_reports": sorted([*others, mirrored], key=lambda r: r.other_submission_id),
            "rubric_notes": [
                *prior.rubric_notes,
                f"Similarity {mirrored.score:.2f} with later submission {mirrored.other_submission_id}: "
                "automated score withheld pending manual review",
            ],
            "reason": f"escalated by similarity with {mirrored.other_submission_id}",
            "created_at": created_at,
        }
    )


def annotate(prior: GradeReport, annotation: ReviewAnnotation, *, created_at: datetime) -> GradeReport:
    """
    Append a human annotation as a new attempt; score and flags are unchanged.
    """
    return prior.model_copy(
        update={
            "attempt": prior.attempt + 1,
            "annotations": [*prior.annotations, annotation],
            "rubric_notes": [*prior.rubric_notes, f"Reviewer {annotation.reviewer}: {annotation.note}"],
            "reason": f"annotated by {annotation.reviewer}",
            "created_at": created_at,
        }
    )
