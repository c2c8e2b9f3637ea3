"""Pending reference ledger.

Keeps references that could not be resolved when their file was
ingested, so they converge once the target shows up, without re-scanning
source files:

- structural references (imports, links) are stored as
  ``:PendingReference`` nodes and retried with exact resolution only
- loose mentions are stored as ``:PendingMention`` nodes and retried with
  the fuzzy cascade

Both are side-table nodes keyed by a deterministic id and carrying the
``sourceId`` of the node the reference starts from. Resolving a record
creates the edge and deletes the record in the same statement, so a
record and its resolved edge never coexist.
"""

from dataclasses import dataclass
from typing import Any, Callable, Protocol

from ingestgraph import schema
from ingestgraph.db.graph_protocol import GraphStore
from ingestgraph.db.merge import utc_now
from ingestgraph.log_config import get_logger
from ingestgraph.models import FuzzyCandidate, MentionRecord, PendingRecord
from ingestgraph.references.fuzzy import FuzzyResolver, fetch_file_candidates
from ingestgraph.references.resolver import PathResolver

log = get_logger("references.ledger")

# Scope kinds that produce a runtime value, preferred over type-only declarations
VALUE_KINDS = ("function", "class", "const", "constant", "method", "variable")

# Import symbols that name a module rather than a declaration
_MODULE_SYMBOLS = frozenset({"*", "default"})


class ConfidencePolicy(Protocol):
    """Combines extraction confidence and match score into edge confidence."""

    def __call__(self, extraction_confidence: float, match_score: float) -> float:
        ...


class ProductConfidence:
    """Product of both inputs, clamped to [0, 1]."""

    def __call__(self, extraction_confidence: float, match_score: float) -> float:
        return max(0.0, min(1.0, extraction_confidence * match_score))


@dataclass
class SweepResult:
    resolved: int = 0
    remaining: int = 0

    def to_dict(self) -> dict[str, int]:
        return {"resolved": self.resolved, "remaining": self.remaining}


def pick_scope(rows: list[dict[str, Any]]) -> dict[str, Any] | None:
    """Deterministic choice among same-named scopes: value kinds first, then uuid."""
    if not rows:
        return None

    def rank(row: dict[str, Any]) -> tuple[int, str]:
        kind = row.get("kind") or ""
        return (VALUE_KINDS.index(kind) if kind in VALUE_KINDS else len(VALUE_KINDS), row["uuid"])

    return min(rows, key=rank)


class PendingLedger:
    """Records and retries deferred references for a project."""

    def __init__(
        self,
        store: GraphStore,
        fuzzy: FuzzyResolver | None = None,
        scoring: ConfidencePolicy | None = None,
        clock: Callable[[], str] = utc_now,
    ):
        """Initialize the ledger.

        Args:
            store: Graph store exposing ``run(query, params)``
            fuzzy: Fuzzy resolver for mention sweeps
            scoring: Confidence policy for resolved mentions (default: product)
            clock: Timestamp source
        """
        self.store = store
        self.fuzzy = fuzzy or FuzzyResolver()
        self.scoring = scoring or ProductConfidence()
        self.clock = clock

    # =========================================================================
    # Recording
    # =========================================================================

    def record_pending(self, records: list[PendingRecord]) -> int:
        """Upsert pending structural references. Returns the number written."""
        rows = [r.to_dict() for r in records if r.source_id]
        if not rows:
            return 0
        result = self.store.run(
            f"""
            UNWIND $records AS rec
            MERGE (p:`{schema.LABEL_PENDING_REFERENCE}` {{id: rec.id}})
            SET p += rec, p.recordedAt = $now
            RETURN count(p) AS count
            """,
            {"records": rows, "now": self.clock()},
        )
        written = result.single_value(0) or 0
        log.debug(f"Recorded {written} pending references")
        return written

    def record_mentions(self, records: list[MentionRecord]) -> int:
        """Upsert unresolved mentions with their provenance."""
        rows = [r.to_dict() for r in records if r.source_id]
        if not rows:
            return 0
        result = self.store.run(
            f"""
            UNWIND $records AS rec
            MERGE (m:`{schema.LABEL_PENDING_MENTION}` {{id: rec.id}})
            SET m += rec, m.recordedAt = $now
            RETURN count(m) AS count
            """,
            {"records": rows, "now": self.clock()},
        )
        written = result.single_value(0) or 0
        log.debug(f"Recorded {written} pending mentions")
        return written

    def clear_for_files(self, project_id: str, paths: list[str]) -> int:
        """Drop pending references and mentions recorded for these files.

        Called before a file is re-ingested, so records of scopes that no
        longer exist do not linger.
        """
        if not paths:
            return 0
        cleared = 0
        for label in (schema.LABEL_PENDING_REFERENCE, schema.LABEL_PENDING_MENTION):
            result = self.store.run(
                f"""
                UNWIND $paths AS path
                MATCH (p:`{label}` {{projectId: $projectId, file: path}})
                DETACH DELETE p
                RETURN count(p) AS count
                """,
                {"projectId": project_id, "paths": list(paths)},
            )
            cleared += result.single_value(0) or 0
        log.trace(f"Cleared {cleared} ledger records for {len(paths)} files")
        return cleared

    def count_pending(self, project_id: str) -> int:
        return self._count(schema.LABEL_PENDING_REFERENCE, project_id)

    def count_mentions(self, project_id: str) -> int:
        return self._count(schema.LABEL_PENDING_MENTION, project_id)

    def _count(self, label: str, project_id: str) -> int:
        result = self.store.run(
            f"MATCH (p:`{label}` {{projectId: $projectId}}) RETURN count(p) AS count",
            {"projectId": project_id},
        )
        return result.single_value(0) or 0

    # =========================================================================
    # Sweeps
    # =========================================================================

    def sweep_pending(self, project_id: str) -> SweepResult:
        """Retry exact resolution of pending structural references.

        Resolution tries the same candidates as ingestion-time resolution,
        against the project's file paths currently in the graph. Fuzzy
        matching is never used here.
        """
        records = self.store.run(
            f"""
            MATCH (p:`{schema.LABEL_PENDING_REFERENCE}` {{projectId: $projectId}})
            RETURN p.id AS id, p.sourceId AS sourceId, p.targetPath AS targetPath,
                   p.relationType AS relationType, p.symbols AS symbols
            ORDER BY p.id
            """,
            {"projectId": project_id},
        ).records()
        if not records:
            return SweepResult()

        files = {c.path: c for c in fetch_file_candidates(self.store, project_id)}
        resolver = PathResolver.for_known_paths(files)
        now = self.clock()
        result = SweepResult()

        for record in records:
            found = resolver.locate(record["targetPath"])
            if found is None:
                result.remaining += 1
                continue

            target_ids = self._target_ids(project_id, record, found, files[found])
            if self._resolve_pending(record, target_ids, now):
                result.resolved += 1
            else:
                result.remaining += 1

        log.info(f"Pending sweep for {project_id}: {result.resolved} resolved, {result.remaining} remaining")
        return result

    def _target_ids(self, project_id: str, record: dict[str, Any], path: str, file_node: FuzzyCandidate) -> list[str]:
        """Scopes named by the record's symbols in the target file, else the file."""
        symbols = [s for s in (record.get("symbols") or []) if s not in _MODULE_SYMBOLS]
        if record["relationType"] != schema.REL_CONSUMES or not symbols:
            return [file_node.id]

        rows = self.store.run(
            f"""
            MATCH (s:`{schema.LABEL_SCOPE}`)
            WHERE s.projectId = $projectId AND s.file = $file AND s.name IN $names
            RETURN s.uuid AS uuid, s.name AS name, s.type AS kind
            ORDER BY s.uuid
            """,
            {"projectId": project_id, "file": path, "names": symbols},
        ).records()

        target_ids = []
        for symbol in symbols:
            chosen = pick_scope([row for row in rows if row["name"] == symbol])
            if chosen is not None and chosen["uuid"] not in target_ids:
                target_ids.append(chosen["uuid"])
        return target_ids or [file_node.id]

    def _resolve_pending(self, record: dict[str, Any], target_ids: list[str], now: str) -> bool:
        target_ids = [t for t in target_ids if t != record["sourceId"]]
        if not target_ids:
            return False
        result = self.store.run(
            f"""
            MATCH (p:`{schema.LABEL_PENDING_REFERENCE}` {{id: $pendingId}})
            MATCH (src:`{schema.LABEL_BASE}` {{uuid: $sourceId}})
            MATCH (dst:`{schema.LABEL_BASE}`) WHERE dst.uuid IN $targetIds
            MERGE (src)-[r:`{record["relationType"]}`]->(dst)
            SET r += $props
            WITH p, count(r) AS created
            DETACH DELETE p
            RETURN created
            """,
            {
                "pendingId": record["id"],
                "sourceId": record["sourceId"],
                "targetIds": target_ids,
                "props": {"resolvedFrom": "pending", "resolvedAt": now},
            },
        )
        return bool(result.single_value(0))

    def sweep_mentions(self, project_id: str, min_similarity: float | None = None) -> SweepResult:
        """Retry the fuzzy cascade for unresolved mentions."""
        records = self.store.run(
            f"""
            MATCH (m:`{schema.LABEL_PENDING_MENTION}` {{projectId: $projectId}})
            RETURN m.id AS id, m.sourceId AS sourceId, m.file AS file, m.mention AS mention,
                   m.confidence AS confidence, m.line AS line
            ORDER BY m.id
            """,
            {"projectId": project_id},
        ).records()
        if not records:
            return SweepResult()

        candidates = fetch_file_candidates(self.store, project_id)
        now = self.clock()
        result = SweepResult()

        for record in records:
            # A document naming itself is not a cross-reference
            others = [c for c in candidates if c.path != record["file"]]
            match = self.fuzzy.resolve(record["mention"], others, min_similarity)
            if match is None:
                result.remaining += 1
                continue

            extraction_confidence = record["confidence"] if record["confidence"] is not None else 1.0
            props = {
                "resolved": True,
                "confidence": self.scoring(extraction_confidence, match.score),
                "matchType": match.match_type.value,
                "score": match.score,
                "mention": record["mention"],
                "line": record["line"],
                "resolvedFrom": "deferred",
                "resolvedAt": now,
            }
            created = self.store.run(
                f"""
                MATCH (m:`{schema.LABEL_PENDING_MENTION}` {{id: $mentionId}})
                MATCH (src:`{schema.LABEL_BASE}` {{uuid: $sourceId}})
                MATCH (dst:`{schema.LABEL_BASE}` {{uuid: $targetId}})
                MERGE (src)-[r:`{schema.REL_MENTIONS_FILE}`]->(dst)
                SET r += $props
                WITH m, count(r) AS created
                DETACH DELETE m
                RETURN created
                """,
                {
                    "mentionId": record["id"],
                    "sourceId": record["sourceId"],
                    "targetId": match.id,
                    "props": {k: v for k, v in props.items() if v is not None},
                },
            ).single_value(0)
            if created:
                result.resolved += 1
            else:
                result.remaining += 1

        log.info(f"Mention sweep for {project_id}: {result.resolved} resolved, {result.remaining} remaining")
        return result
