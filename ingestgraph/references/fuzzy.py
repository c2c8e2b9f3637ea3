"""Fuzzy resolution of loose file mentions.

Used when a reference comes from prose instead of import or link syntax.
The cascade stops at the first confident hit:

1. exact path                  -> 1.0   ``exact``
2. path suffix (path-shaped)   -> 1.0   ``ends_with``
3. filename, unique            -> 0.95  ``filename``
   filename, ambiguous         -> 0.7   ``filename``
4. same-extension similarity   -> score ``fuzzy`` (if >= min_similarity)
5. global similarity           -> score ``fuzzy`` (no-extension compare x0.9)

Ambiguity never raises: one deterministic pick (shortest path, then
lexical order) with a lower score.
"""

import posixpath
from typing import Any, Iterable

from ingestgraph import schema
from ingestgraph.log_config import get_logger
from ingestgraph.models import FuzzyCandidate, FuzzyMatchResult, MatchType
from ingestgraph.references.formats import extension_of

log = get_logger("references.fuzzy")

UNIQUE_FILENAME_SCORE = 0.95
AMBIGUOUS_FILENAME_SCORE = 0.7
NO_EXTENSION_WEIGHT = 0.9
DEFAULT_MIN_SIMILARITY = 0.7


def levenshtein(a: str, b: str) -> int:
    """Edit distance with unit costs for insert, delete and substitute."""
    if a == b:
        return 0
    if len(a) < len(b):
        a, b = b, a
    if not b:
        return len(a)

    previous = list(range(len(b) + 1))
    for i, char_a in enumerate(a, start=1):
        current = [i]
        for j, char_b in enumerate(b, start=1):
            current.append(min(
                previous[j] + 1,
                current[j - 1] + 1,
                previous[j - 1] + (char_a != char_b),
            ))
        previous = current
    return previous[-1]


def similarity(a: str, b: str) -> float:
    """1 - levenshtein / max length. 1.0 exactly when a == b."""
    longest = max(len(a), len(b))
    if longest == 0:
        return 1.0
    return 1.0 - levenshtein(a, b) / longest


def _stem(filename: str) -> str:
    ext = extension_of(filename)
    return filename[: -len(ext)] if ext else filename


def _pick(candidates: Iterable[FuzzyCandidate]) -> FuzzyCandidate:
    return min(candidates, key=lambda c: (len(c.path), c.path))


def _result(candidate: FuzzyCandidate, score: float, match_type: MatchType) -> FuzzyMatchResult:
    return FuzzyMatchResult(
        id=candidate.id,
        path=candidate.path,
        name=candidate.name,
        score=round(score, 6),
        match_type=match_type,
        labels=list(candidate.labels),
    )


class FuzzyResolver:
    """Runs the loose-reference cascade over candidate file nodes."""

    def __init__(self, min_similarity: float = DEFAULT_MIN_SIMILARITY):
        self.min_similarity = min_similarity

    def resolve(
        self,
        reference: str,
        candidates: list[FuzzyCandidate],
        min_similarity: float | None = None,
    ) -> FuzzyMatchResult | None:
        """Resolve a mention against candidate files.

        Args:
            reference: Mention text, a path or a bare filename
            candidates: File nodes to consider
            min_similarity: Threshold for the similarity stages

        Returns:
            The best match, or None when nothing clears the threshold
        """
        threshold = self.min_similarity if min_similarity is None else min_similarity
        ref = reference.strip().replace("\\", "/")
        if not ref or not candidates:
            return None
        while ref.startswith("./"):
            ref = ref[2:]

        exact = [c for c in candidates if c.path == ref]
        if exact:
            return _result(_pick(exact), 1.0, MatchType.EXACT)

        if "/" in ref:
            suffix = ref.lstrip("/")
            ends_with = [c for c in candidates if c.path == suffix or c.path.endswith("/" + suffix)]
            if ends_with:
                return _result(_pick(ends_with), 1.0, MatchType.ENDS_WITH)

        filename = posixpath.basename(ref).lower()
        same_name = [c for c in candidates if c.name.lower() == filename]
        if len(same_name) == 1:
            return _result(same_name[0], UNIQUE_FILENAME_SCORE, MatchType.FILENAME)
        if same_name:
            log.debug(f"Ambiguous filename {filename}: {len(same_name)} candidates")
            return _result(_pick(same_name), AMBIGUOUS_FILENAME_SCORE, MatchType.FILENAME)

        ext = extension_of(filename)
        if ext:
            scoped = [c for c in candidates if extension_of(c.name) == ext]
            best = self._best(
                (c, similarity(filename, c.name.lower())) for c in scoped
            )
            if best and best[1] >= threshold:
                return _result(best[0], best[1], MatchType.FUZZY)

        stem = _stem(filename)
        scored = []
        for c in candidates:
            name = c.name.lower()
            with_ext = similarity(filename, name)
            without_ext = similarity(stem, _stem(name)) * NO_EXTENSION_WEIGHT
            scored.append((c, max(with_ext, without_ext)))
        best = self._best(scored)
        if best and best[1] >= threshold:
            return _result(best[0], best[1], MatchType.FUZZY)

        return None

    @staticmethod
    def _best(scored: Iterable[tuple[FuzzyCandidate, float]]) -> tuple[FuzzyCandidate, float] | None:
        ranked = sorted(scored, key=lambda item: (-item[1], len(item[0].path), item[0].path))
        return ranked[0] if ranked else None

    def resolve_in_project(
        self,
        graph: Any,
        project_id: str,
        reference: str,
        min_similarity: float | None = None,
    ) -> FuzzyMatchResult | None:
        """Read the project's file nodes from the store and resolve against them."""
        return self.resolve(reference, fetch_file_candidates(graph, project_id), min_similarity)


def fetch_file_candidates(graph: Any, project_id: str) -> list[FuzzyCandidate]:
    """Read-only fetch of a project's File nodes."""
    result = graph.run(
        """
        MATCH (f:File {projectId: $projectId})
        RETURN f.uuid AS uuid, f.path AS path, f.name AS name, labels(f) AS labels
        ORDER BY f.path
        """,
        {"projectId": project_id},
    )
    return [
        FuzzyCandidate(
            id=row["uuid"],
            path=row["path"],
            name=row["name"] or posixpath.basename(row["path"]),
            labels=[label for label in row["labels"] or [] if label != schema.LABEL_BASE],
        )
        for row in result.records()
    ]
