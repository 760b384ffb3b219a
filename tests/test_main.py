"""
Tests for the command-line entry point
"""
import sys

import pytest
import yaml

import main
from conftest import FIXED_NOW, make_result
from gradepipe.aggregator import compose_grade_report
from gradepipe.config_loader import load_config
from gradepipe.models import Submission, SuiteVisibility
from gradepipe.report_store import ReportStore


@pytest.fixture
def config_path(tmp_path, make_repo):
    make_repo("alice", {"app.py": "x = 1\n"})
    make_repo("bob", {"app.py": "y = 2\n"})
    (tmp_path / "suites" / "visible" / "basic").mkdir(parents=True)
    (tmp_path / "suites" / "hidden" / "secret").mkdir(parents=True)
    data = {
        "submissions": [
            {"submission_id": "bob", "student_id": "robert", "repository": "repos/bob", "reference": "main"},
        ],
        "submissions_dir": "repos",
        "default_reference": "main",
        "visible_store": "suites/visible",
        "hidden_store": "suites/hidden",
        "grades_dir": "grades",
        "suites": [{"name": "basic", "visibility": "visible", "path": "basic", "tests": ["test_a.py"]}],
    }
    path = tmp_path / "grader_config.yml"
    path.write_text(yaml.safe_dump(data), encoding="utf-8")
    return path


def store_report(config, rubric):
    submission = Submission(submission_id="alice", student_id="alice", repository="/r")
    report = compose_grade_report(
        submission, [make_result("basic", SuiteVisibility.VISIBLE, 1, 2)], [], rubric,
        attempt=1, created_at=FIXED_NOW, flag_threshold=0.5,
    )
    ReportStore(config.grades_dir).append(report)
    return report


class TestCli:
    def test_explicit_submissions_win_over_discovered(self, config_path):
        config = load_config(config_path)

        submissions = main.collect_submissions(config)

        assert [s.submission_id for s in submissions] == ["bob", "alice"]
        assert submissions[0].student_id == "robert"
        assert main.find_submission(config, "nobody") is None

    def test_annotate_appends_attempt(self, config_path, rubric, capsys):
        config = load_config(config_path)
        prior = store_report(config, rubric)

        assert main.run_annotate(config, "alice", "ta", "History shows steady work") == 0

        latest = ReportStore(config.grades_dir).latest("alice")
        assert latest.attempt == 2
        assert latest.score == prior.score
        assert latest.annotations[0].reviewer == "ta"
        assert "attempt 2" in capsys.readouterr().out

    def test_annotate_unknown_submission(self, config_path):
        assert main.run_annotate(load_config(config_path), "ghost", "ta", "note") == 1

    def test_summary_command(self, config_path, rubric, monkeypatch, capsys):
        store_report(load_config(config_path), rubric)
        monkeypatch.setattr(sys, "argv", ["main.py", "summary", f"--config={config_path}"])

        assert main.main() == 0
        assert "Submissions: 1" in capsys.readouterr().out

    def test_missing_config(self, tmp_path, monkeypatch, capsys):
        monkeypatch.setattr(sys, "argv", ["main.py", "summary", f"--config={tmp_path / 'nope.yml'}"])

        assert main.main() == 1
        assert "Error loading config" in capsys.readouterr().out
