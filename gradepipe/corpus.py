"""
Append-only corpus of graded submissions.

Readers take immutable snapshots; appends go through a single writer lock
and are persisted as JSON Lines so the corpus survives across runs.
"""

import json
import logging
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator

from pydantic import BaseModel, Field, ValidationError

from .errors import ScoringError
from .similarity import Fingerprint

logger = logging.getLogger(__name__)


class CorpusEntry(BaseModel):
    """
    One persisted corpus line.
    """

    submission_id: str = Field(..., description="Graded submission")
    student_id: str = Field(..., description="Owner of the submission")
    sequence: list[int] = Field(..., description="Shingle hashes in source order")
    added_at: datetime = Field(..., description="When the entry was appended")

    def to_fingerprint(self) -> Fingerprint:
        return Fingerprint(self.submission_id, self.student_id, self.sequence)


class Corpus:
    """
    Shared corpus of fingerprints used for similarity checks.

    Entries are never removed. A regraded submission appends a new entry,
    and snapshots only expose the latest entry per submission.
    """

    def __init__(self, path: Path | None = None) -> None:
        """
        Initialize the corpus, loading persisted entries when ``path`` exists.

        Args:
            path: JSON Lines file backing the corpus; None keeps it in memory.

        Raises:
            ScoringError: If the file cannot be read or a line is corrupt.
        """
        self.path = path
        self._lock = threading.RLock()
        self._entries: list[CorpusEntry] = []
        if path is not None and path.exists():
            self._entries = self._load(path)
            logger.info("Loaded %d corpus entries from %s", len(self._entries), path)

    @staticmethod
    def _load(path: Path) -> list[CorpusEntry]:
        entries: list[CorpusEntry] = []
        try:
            with open(path, "r", encoding="utf-8") as f:
                for line_number, line in enumerate(f, 1):
                    if not line.strip():
                        continue
                    try:
                        entries.append(CorpusEntry(**json.loads(line)))
                    except (json.JSONDecodeError, TypeError, ValidationError) as e:
                        raise ScoringError(f"Corrupt corpus line {line_number} in {path}: {e}") from e
        except OSError as e:
            raise ScoringError(f"Could not read corpus {path}: {e}") from e
        return entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    @contextmanager
    def writer(self) -> Iterator["Corpus"]:
        """Hold the single-writer lock across several corpus updates."""
        with self._lock:
            yield self

    def snapshot(self) -> tuple[Fingerprint, ...]:
        """
        Return an immutable view of the corpus: the latest entry per submission,
        ordered by first appearance.
        """
        with self._lock:
            entries = list(self._entries)
        latest: dict[str, CorpusEntry] = {}
        for entry in entries:
            latest[entry.submission_id] = entry
        return tuple(entry.to_fingerprint() for entry in latest.values())

    def append(self, fingerprint: Fingerprint) -> None:
        """
        Append a fingerprint and persist it.

        Raises:
            ScoringError: If the corpus file cannot be written.
        """
        entry = CorpusEntry(
            submission_id=fingerprint.submission_id,
            student_id=fingerprint.student_id,
            sequence=fingerprint.sequence,
            added_at=datetime.now(timezone.utc),
        )
        with self._lock:
            if self.path is not None:
                try:
                    self.path.parent.mkdir(parents=True, exist_ok=True)
                    with open(self.path, "a", encoding="utf-8") as f:
                        f.write(entry.model_dump_json() + "\n")
                except OSError as e:
                    raise ScoringError(f"Could not write corpus {self.path}: {e}") from e
            self._entries.append(entry)
        logger.debug("Added %s to corpus", fingerprint.submission_id)
