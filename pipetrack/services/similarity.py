"""
Near-duplicate drawing detection.

A new drawing number that is almost, but not exactly, an existing one is
usually a typo ("DWG-10045-A" vs "DWG-10045-B" on the wrong sheet, "P-1001"
keyed as "P-1010").  The detector surfaces those so a human can decide.

Scoring is rapidfuzz's normalized Indel similarity (``fuzz.ratio / 100``)
on normalized values.  Scanning every drawing in a large project for every
new number would be quadratic, so candidates come from a character-trigram
inverted index first:

    * two strings at ratio ≥ t must have lengths within the bound
      2·min / (la + lb) ≥ t, so anything outside the length window is
      skipped without scoring;
    * a candidate must share at least one padded trigram with the query.

The index is built from one bulk read and lives only as long as the caller
holds it (one import validation, one API call).
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass

from flask import current_app
from rapidfuzz import fuzz

from pipetrack.models.project import Drawing

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLD = 0.85
DEFAULT_LIMIT = 3


@dataclass(frozen=True)
class SimilarMatch:
    document_id: int
    normalized_value: str
    score: float

    def to_dict(self) -> dict:
        return {
            "drawing_id": self.document_id,
            "normalized_value": self.normalized_value,
            "score": self.score,
        }


def _trigrams(value: str) -> set[str]:
    padded = f"  {value} "
    return {padded[i:i + 3] for i in range(len(padded) - 2)}


class ShingleIndex:
    """Trigram inverted index over (document_id, normalized_value) pairs."""

    def __init__(self):
        self._postings: dict[str, set[int]] = defaultdict(set)
        self._values: dict[int, str] = {}

    def __len__(self):
        return len(self._values)

    def add(self, document_id: int, normalized_value: str) -> None:
        if not normalized_value:
            return
        self._values[document_id] = normalized_value
        for gram in _trigrams(normalized_value):
            self._postings[gram].add(document_id)

    def candidates(self, normalized_value: str, threshold: float) -> set[int]:
        """Document ids that could possibly score ≥ threshold."""
        length = len(normalized_value)
        found: set[int] = set()
        for gram in _trigrams(normalized_value):
            found |= self._postings.get(gram, set())
        return {
            doc_id for doc_id in found
            if _length_bound(length, len(self._values[doc_id])) >= threshold
        }

    def value(self, document_id: int) -> str:
        return self._values[document_id]

    @classmethod
    def for_project(cls, project_id: int) -> "ShingleIndex":
        """Build the index from every active drawing of a project (one query)."""
        index = cls()
        rows = (
            Drawing.query_active()
            .with_entities(Drawing.id, Drawing.drawing_no_norm)
            .filter(Drawing.project_id == project_id)
            .all()
        )
        for doc_id, norm in rows:
            index.add(doc_id, norm)
        return index


def _length_bound(la: int, lb: int) -> float:
    if la + lb == 0:
        return 0.0
    return 2 * min(la, lb) / (la + lb)


def score(a: str, b: str) -> float:
    """Similarity in [0, 1]; 1.0 only for identical strings."""
    if not a or not b:
        return 0.0
    return fuzz.ratio(a, b) / 100.0


def _config(key, default):
    try:
        return current_app.config.get(key, default)
    except RuntimeError:
        # outside an application context
        return default


def find_similar(
    project_id: int,
    normalized_candidate: str,
    threshold: float | None = None,
    limit: int | None = None,
    exclude_document_id: int | None = None,
    index: ShingleIndex | None = None,
) -> list[SimilarMatch]:
    """Active drawings of *project_id* whose normalized value scores ≥ threshold.

    Sorted by score descending, ties by normalized value ascending, at most
    *limit* results.  Pass a prebuilt *index* to reuse one bulk read across
    many lookups.
    """
    if threshold is None:
        threshold = float(_config("SIMILARITY_THRESHOLD", DEFAULT_THRESHOLD))
    if limit is None:
        limit = int(_config("SIMILARITY_RESULT_LIMIT", DEFAULT_LIMIT))
    if not normalized_candidate or limit <= 0:
        return []

    if index is None:
        index = ShingleIndex.for_project(project_id)

    matches = []
    for doc_id in index.candidates(normalized_candidate, threshold):
        if exclude_document_id is not None and doc_id == exclude_document_id:
            continue
        value = index.value(doc_id)
        s = score(normalized_candidate, value)
        if s >= threshold:
            matches.append(SimilarMatch(document_id=doc_id, normalized_value=value, score=round(s, 4)))

    matches.sort(key=lambda m: (-m.score, m.normalized_value))
    logger.debug(
        "find_similar project=%s candidate=%s scanned=%d matched=%d",
        project_id, normalized_candidate, len(index), len(matches),
    )
    return matches[:limit]
