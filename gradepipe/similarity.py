"""
Similarity scorer.

Compares a submission's source text against previously graded submissions
using deterministic token shingling. Comments and whitespace are stripped
before tokenizing, so texts that differ only in those score 1.0.
"""

import hashlib
import logging
import os
import re
from pathlib import Path

from .config import SKIP_DIRS
from .config_loader import SimilarityConfig
from .errors import ScoringError
from .models import SimilarityReport

logger = logging.getLogger(__name__)

# Strings first so comment markers inside literals survive
_STRING = r'"""[\s\S]*?"""|\'\'\'[\s\S]*?\'\'\'|"(?:\\.|[^"\\\n])*"|\'(?:\\.|[^\'\\\n])*\''
_COMMENTS = {
    "hash": r"#[^\n]*",
    "c": r"/\*[\s\S]*?\*/|//[^\n]*",
}
_STRIP_PATTERNS = {
    style: re.compile(rf"(?P<string>{_STRING})|(?P<comment>{comment})")
    for style, comment in _COMMENTS.items()
}
_HASH_COMMENT_SUFFIXES = frozenset({".py", ".rb", ".sh", ".r", ".pl"})
_DOCSTRING_PATTERN = re.compile(r'^\s*(?:"""[\s\S]*?"""|\'\'\'[\s\S]*?\'\'\')\s*$', re.MULTILINE)
_TOKEN_PATTERN = re.compile(
    rf"{_STRING}|[A-Za-z_][A-Za-z0-9_]*|\d+(?:\.\d+)?|==|!=|<=|>=|->|=>|&&|\|\||::|//|\S"
)


def comment_style(suffix: str) -> str:
    """Comment syntax of a source file: ``hash`` or ``c``."""
    return "hash" if suffix.lower() in _HASH_COMMENT_SUFFIXES else "c"


def strip_comments(code: str, style: str = "hash") -> str:
    """
    Remove comments (and, for hash-comment languages, standalone docstrings),
    leaving string literals intact.
    """
    if style == "hash":
        code = _DOCSTRING_PATTERN.sub("", code)
    return _STRIP_PATTERNS[style].sub(lambda m: m.group("string") or " ", code)


def tokenize(code: str, style: str = "hash") -> list[str]:
    """
    Split source text into tokens after comment stripping.

    Whitespace never produces a token, so formatting changes do not affect
    the token stream.
    """
    return _TOKEN_PATTERN.findall(strip_comments(code, style))


def shingle_hashes(tokens: list[str], size: int) -> list[int]:
    """
    Hash every window of ``size`` consecutive tokens, in order.

    Streams shorter than one window produce a single shingle of all tokens.
    """
    if not tokens:
        return []
    windows = [tokens] if len(tokens) < size else [tokens[i:i + size] for i in range(len(tokens) - size + 1)]
    hashes = []
    for window in windows:
        digest = hashlib.blake2b("\x1f".join(window).encode("utf-8"), digest_size=8).digest()
        hashes.append(int.from_bytes(digest, "big"))
    return hashes


def jaccard(a: frozenset[int], b: frozenset[int]) -> float:
    """Shared-shingle fraction of two shingle sets. Symmetric in its arguments."""
    union = len(a | b)
    if union == 0:
        return 0.0
    return round(len(a & b) / union, 6)


def count_matched_spans(sequence: list[int], other: frozenset[int]) -> int:
    """Count maximal runs of consecutive shingles in ``sequence`` found in ``other``."""
    spans = 0
    in_span = False
    for shingle in sequence:
        if shingle in other:
            if not in_span:
                spans += 1
            in_span = True
        else:
            in_span = False
    return spans


class Fingerprint:
    """
    Shingle fingerprint of one submission.

    Attributes:
        submission_id: Submission the fingerprint belongs to.
        student_id: Student who owns the submission.
        sequence: Shingle hashes in source order.
    """

    def __init__(self, submission_id: str, student_id: str, sequence: list[int]) -> None:
        self.submission_id = submission_id
        self.student_id = student_id
        self.sequence = list(sequence)
        self.shingles = frozenset(self.sequence)

    def __repr__(self) -> str:
        return f"Fingerprint({self.submission_id!r}, shingles={len(self.shingles)})"


class SimilarityScorer:
    """
    Builds fingerprints and compares them against a corpus snapshot.
    """

    def __init__(self, config: SimilarityConfig | None = None) -> None:
        self.config = config or SimilarityConfig()

    def source_files(self, workspace: Path) -> list[Path]:
        """
        List comparable source files under ``workspace`` in sorted order.
        """
        extensions = {ext.lower() for ext in self.config.extensions}
        files = []
        for dirpath, dirnames, filenames in os.walk(workspace):
            dirnames[:] = sorted(d for d in dirnames if d not in SKIP_DIRS)
            for name in sorted(filenames):
                path = Path(dirpath) / name
                if path.suffix.lower() in extensions and not path.is_symlink():
                    files.append(path)
        return sorted(files, key=lambda p: p.relative_to(workspace).as_posix())

    def fingerprint_text(self, submission_id: str, student_id: str, text: str, style: str = "hash") -> Fingerprint:
        tokens = tokenize(text, style)
        return Fingerprint(submission_id, student_id, shingle_hashes(tokens, self.config.shingle_size))

    def fingerprint_workspace(self, workspace: Path, submission_id: str, student_id: str) -> Fingerprint:
        """
        Fingerprint all source files of a workspace as one token stream.

        Raises:
            ScoringError: If a source file cannot be read.
        """
        tokens: list[str] = []
        for path in self.source_files(workspace):
            try:
                text = path.read_text(encoding="utf-8", errors="replace")
                tokens.extend(tokenize(text, comment_style(path.suffix)))
            except OSError as e:
                raise ScoringError(f"Could not read {path.relative_to(workspace)}: {e}") from e
        logger.debug("Fingerprinted %s: %d tokens", submission_id, len(tokens))
        return Fingerprint(submission_id, student_id, shingle_hashes(tokens, self.config.shingle_size))

    def compare(self, fingerprint: Fingerprint, other: Fingerprint) -> SimilarityReport:
        """
        Compare two fingerprints.

        The score is symmetric. Matched spans are counted along the submission
        being graded, and only from the informational threshold upwards.
        """
        score = jaccard(fingerprint.shingles, other.shingles)
        spans = 0
        if score >= self.config.informational_threshold and score > 0:
            spans = count_matched_spans(fingerprint.sequence, other.shingles)
        return SimilarityReport(
            submission_id=fingerprint.submission_id,
            other_submission_id=other.submission_id,
            score=score,
            matched_spans=spans,
        )

    def score_against(self, fingerprint: Fingerprint, snapshot: tuple[Fingerprint, ...]) -> list[SimilarityReport]:
        """
        Compare a submission against every eligible corpus member.

        The submission itself and other submissions by the same student are
        skipped.

        Returns:
            One SimilarityReport per compared member, sorted by member id.
        """
        reports = [
            self.compare(fingerprint, other)
            for other in snapshot
            if other.submission_id != fingerprint.submission_id and other.student_id != fingerprint.student_id
        ]
        reports.sort(key=lambda r: r.other_submission_id)
        informational = [r for r in reports if r.score >= self.config.informational_threshold]
        if informational:
            logger.info(
                "%s: %d of %d corpus members at or above %.2f similarity",
                fingerprint.submission_id, len(informational), len(reports), self.config.informational_threshold,
            )
        return reports
