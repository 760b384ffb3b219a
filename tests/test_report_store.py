"""
Unit tests for the append-only report store
"""
import csv
import json

import pytest

from conftest import FIXED_NOW, make_result
from gradepipe.aggregator import compose_grade_report
from gradepipe.models import PipelineRun, PipelineState, SimilarityReport, Submission, SuiteVisibility
from gradepipe.report_store import ReportStore, calculate_statistics, load_reports_from_dir


def report_for(submission_id, student_id, rubric, attempt=1, similarity=()):
    submission = Submission(submission_id=submission_id, student_id=student_id, repository="/r")
    results = [make_result("basic", SuiteVisibility.VISIBLE, 2, 4), make_result("secret", SuiteVisibility.HIDDEN, 5, 5)]
    return compose_grade_report(
        submission, results, list(similarity), rubric,
        attempt=attempt, created_at=FIXED_NOW, flag_threshold=0.5,
    )


class TestReportStore:
    def test_append_and_latest(self, tmp_path, rubric):
        store = ReportStore(tmp_path / "grades")
        assert store.latest("s1") is None
        assert store.next_attempt("s1") == 1

        first = report_for("s1", "alice", rubric)
        path = store.append(first)

        assert path.name == "attempt-1.json"
        assert store.has_report("s1")
        assert store.latest("s1") == first
        assert store.next_attempt("s1") == 2

    def test_never_overwrites(self, tmp_path, rubric):
        store = ReportStore(tmp_path)
        store.append(report_for("s1", "alice", rubric))
        with pytest.raises(FileExistsError):
            store.append(report_for("s1", "alice", rubric))

    def test_history_keeps_every_attempt(self, tmp_path, rubric):
        store = ReportStore(tmp_path)
        for attempt in (1, 2, 10):
            store.append(report_for("s1", "alice", rubric, attempt=attempt))
        assert [r.attempt for r in store.history("s1")] == [1, 2, 10]
        assert store.latest("s1").attempt == 10

    def test_distinct_ids_never_share_history(self, tmp_path, rubric):
        store = ReportStore(tmp_path / "grades")
        store.append(report_for("a/b", "alice", rubric))
        store.append(report_for("a_b", "bob", rubric))

        assert [r.student_id for r in store.history("a/b")] == ["alice"]
        assert [r.student_id for r in store.history("a_b")] == ["bob"]
        assert store.next_attempt("a/b") == store.next_attempt("a_b") == 2

    @pytest.mark.parametrize("submission_id", ["..", ".", "../escape"])
    def test_ids_stay_inside_output_dir(self, tmp_path, rubric, submission_id):
        grades = tmp_path / "grades"
        path = ReportStore(grades).append(report_for(submission_id, "alice", rubric))

        assert path.resolve().parent.parent == grades.resolve()
        assert ReportStore(grades).latest(submission_id).submission_id == submission_id

    def test_export_field_names(self, tmp_path, rubric):
        store = ReportStore(tmp_path)
        path = store.append(report_for("s1", "alice", rubric))
        data = json.loads(path.read_text(encoding="utf-8"))
        for field in ("submission_id", "score", "requires_manual_review", "test_results", "similarity_reports"):
            assert field in data

    def test_summary_files(self, tmp_path, rubric):
        store = ReportStore(tmp_path)
        store.append(report_for("s1", "alice", rubric))
        flagged = SimilarityReport(submission_id="s2", other_submission_id="s1", score=0.9)
        store.append(report_for("s2", "bob", rubric, similarity=[flagged]))

        outputs = store.save_summary()

        summary = json.loads(outputs["summary_json"].read_text(encoding="utf-8"))
        assert summary["total_submissions"] == 2
        assert summary["statistics"]["manual_review_count"] == 1
        with open(outputs["summary_csv"], newline="", encoding="utf-8") as f:
            rows = list(csv.DictReader(f))
        assert [row["submission_id"] for row in rows] == ["s1", "s2"]
        assert rows[0]["basic"] == "2/4"
        assert rows[1]["score"] == "withheld"
        assert rows[1]["requires_manual_review"] == "Yes"

        reloaded = load_reports_from_dir(tmp_path)
        assert [r.submission_id for r in reloaded] == ["s1", "s2"]

    def test_load_without_summary_uses_attempts(self, tmp_path, rubric):
        store = ReportStore(tmp_path)
        store.append(report_for("s1", "alice", rubric))
        store.append(report_for("s1", "alice", rubric, attempt=2))
        assert [r.attempt for r in load_reports_from_dir(tmp_path)] == [2]

    def test_record_run(self, tmp_path):
        store = ReportStore(tmp_path)
        run = PipelineRun(submission_id="s1")
        run.advance(PipelineState.FETCHING)
        run.failed_stage = PipelineState.FETCHING
        run.error = "FetchError: Reference 'main' not found"
        run.advance(PipelineState.FAILED)
        store.record_run(run)

        entry = json.loads((tmp_path / "pipeline_runs.jsonl").read_text(encoding="utf-8"))
        assert entry["state"] == "failed"
        assert entry["failed_stage"] == "fetching"
        assert entry["history"] == ["pending", "fetching", "failed"]
        assert entry["report_attempt"] is None


def test_statistics_skip_withheld_scores(rubric):
    scored = report_for("s1", "alice", rubric)
    withheld = report_for("s2", "bob", rubric,
                          similarity=[SimilarityReport(submission_id="s2", other_submission_id="s1", score=0.99)])
    stats = calculate_statistics([scored, withheld])
    assert stats["scored_count"] == 1
    assert stats["average_score"] == pytest.approx(scored.score)
    assert calculate_statistics([]) == {}
