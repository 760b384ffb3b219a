"""
Unit tests for the similarity scorer
"""
import pytest

from gradepipe.config_loader import SimilarityConfig
from gradepipe.models import SimilarityReport
from gradepipe.similarity import (
    Fingerprint,
    SimilarityScorer,
    comment_style,
    count_matched_spans,
    shingle_hashes,
    strip_comments,
    tokenize,
)

ORIGINAL = '''
def create_student(db, name, age):
    """Insert a student row."""
    if age < 0:
        raise ValueError("age must be positive")
    student = {"name": name, "age": age}
    db.append(student)
    return student


def find_student(db, name):
    for student in db:
        if student["name"] == name:
            return student
    return None
'''

REFORMATTED = '''
# copied from a friend
def create_student(db,   name, age):
    if age < 0:  # guard
        raise ValueError("age must be positive")

    student = {"name": name,
               "age": age}
    db.append(student)
    return student
def find_student(db, name):
    for student in db:
        if student["name"] == name:
            return student
    return None
'''

UNRELATED = '''
import math

class Circle:
    def __init__(self, radius):
        self.radius = radius

    def area(self):
        return math.pi * self.radius ** 2
'''


@pytest.fixture
def scorer(similarity_config):
    return SimilarityScorer(similarity_config)


class TestNormalization:
    def test_comments_and_whitespace_do_not_produce_tokens(self):
        assert tokenize("x = 1  # note\n\n\ny=1") == ["x", "=", "1", "y", "=", "1"]

    def test_hash_inside_string_is_kept(self):
        assert tokenize('s = "#not a comment"') == ["s", "=", '"#not a comment"']

    def test_c_style_comments(self):
        code = "int x = 1; // trailing\n/* block\n comment */ int y = 2;"
        assert "comment" not in strip_comments(code, "c")
        assert tokenize(code, "c") == ["int", "x", "=", "1", ";", "int", "y", "=", "2", ";"]

    def test_floor_division_survives_in_python(self):
        assert "//" in tokenize("a = b // c")

    def test_comment_style_by_suffix(self):
        assert comment_style(".py") == "hash"
        assert comment_style(".java") == "c"

    def test_shingles_are_deterministic(self):
        tokens = tokenize(ORIGINAL)
        assert shingle_hashes(tokens, 4) == shingle_hashes(list(tokens), 4)

    def test_short_stream_is_one_shingle(self):
        assert len(shingle_hashes(["a", "b"], 5)) == 1
        assert shingle_hashes([], 5) == []


class TestComparison:
    def test_whitespace_and_comment_changes_score_one(self, scorer):
        a = scorer.fingerprint_text("s1", "alice", ORIGINAL)
        b = scorer.fingerprint_text("s2", "bob", REFORMATTED)
        report = scorer.compare(a, b)
        assert report.score == 1.0
        assert report.matched_spans == 1

    def test_score_is_symmetric(self, scorer):
        a = scorer.fingerprint_text("s1", "alice", ORIGINAL)
        b = scorer.fingerprint_text("s2", "bob", ORIGINAL + UNRELATED)
        assert scorer.compare(a, b).score == scorer.compare(b, a).score
        assert 0.0 < scorer.compare(a, b).score < 1.0

    def test_unrelated_code_scores_low_without_spans(self, scorer):
        a = scorer.fingerprint_text("s1", "alice", ORIGINAL)
        b = scorer.fingerprint_text("s2", "bob", UNRELATED)
        report = scorer.compare(a, b)
        assert report.score < 0.2
        assert report.matched_spans == 0

    def test_spans_reported_below_flag_but_above_informational(self):
        scorer = SimilarityScorer(SimilarityConfig(shingle_size=3, informational_threshold=0.1, flag_threshold=0.9))
        a = scorer.fingerprint_text("s1", "alice", ORIGINAL + UNRELATED)
        b = scorer.fingerprint_text("s2", "bob", UNRELATED + "\nvalue = compute(1, 2, 3)\n")
        report = scorer.compare(a, b)
        assert 0.1 <= report.score < 0.9
        assert report.matched_spans >= 1

    def test_count_matched_spans(self):
        assert count_matched_spans([1, 2, 9, 3, 9, 9, 4], frozenset({1, 2, 3, 4})) == 3


class TestScoreAgainst:
    def test_skips_self_and_same_student(self, scorer):
        new = scorer.fingerprint_text("s1", "alice", ORIGINAL)
        snapshot = (
            scorer.fingerprint_text("s1", "alice", ORIGINAL),
            scorer.fingerprint_text("s0", "alice", ORIGINAL),
            scorer.fingerprint_text("s3", "carol", UNRELATED),
            scorer.fingerprint_text("s2", "bob", REFORMATTED),
        )
        reports = scorer.score_against(new, snapshot)
        assert [r.other_submission_id for r in reports] == ["s2", "s3"]
        assert all(r.submission_id != r.other_submission_id for r in reports)

    def test_idempotent(self, scorer):
        new = scorer.fingerprint_text("s1", "alice", ORIGINAL)
        snapshot = (scorer.fingerprint_text("s2", "bob", REFORMATTED),
                    scorer.fingerprint_text("s3", "carol", UNRELATED))
        assert scorer.score_against(new, snapshot) == scorer.score_against(new, snapshot)

    def test_empty_corpus(self, scorer):
        assert scorer.score_against(scorer.fingerprint_text("s1", "alice", ORIGINAL), ()) == []

    def test_self_report_rejected(self):
        with pytest.raises(ValueError):
            SimilarityReport(submission_id="s1", other_submission_id="s1", score=1.0)


class TestWorkspaceFingerprint:
    def test_reads_source_files_in_sorted_order(self, tmp_path, scorer):
        (tmp_path / "pkg").mkdir()
        (tmp_path / "pkg" / "b.py").write_text(UNRELATED, encoding="utf-8")
        (tmp_path / "a.py").write_text(ORIGINAL, encoding="utf-8")
        (tmp_path / "notes.txt").write_text("not source", encoding="utf-8")
        (tmp_path / "__pycache__").mkdir()
        (tmp_path / "__pycache__" / "c.py").write_text("ignored = True", encoding="utf-8")

        files = scorer.source_files(tmp_path)
        assert [p.relative_to(tmp_path).as_posix() for p in files] == ["a.py", "pkg/b.py"]

        fingerprint = scorer.fingerprint_workspace(tmp_path, "s1", "alice")
        expected = scorer.fingerprint_text("s1", "alice", ORIGINAL + "\n" + UNRELATED)
        assert fingerprint.shingles == expected.shingles

    def test_fingerprint_repr(self):
        assert "s1" in repr(Fingerprint("s1", "alice", [1, 2, 2]))
