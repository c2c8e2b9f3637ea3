"""File-level reference linking.

Plans what to do with the references extracted from one file's content:

- local structural references to files in the graph become
  ``REFERENCES_*`` / ``CONSUMES`` edges
- local structural references to missing files become PendingRecords
- URLs become ExternalURL nodes with ``LINKS_TO`` edges
- loose mentions go through the fuzzy cascade; misses become
  MentionRecords for later sweeps
- external package imports are dropped

The edge starts at the scope enclosing the reference line, else the
file's document node, else the File node. Planning is pure; the
ingestor merges the plan and writes the ledger records.
"""

from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

from ingestgraph import schema
from ingestgraph.identity import IdentityAssigner
from ingestgraph.log_config import get_logger
from ingestgraph.models import (
    FuzzyCandidate,
    GraphBatch,
    GraphNode,
    GraphRelationship,
    MentionRecord,
    PendingRecord,
    RawReference,
    ReferenceType,
)
from ingestgraph.references.formats import FileFormat, classify_format, relation_type_for
from ingestgraph.references.fuzzy import FuzzyResolver
from ingestgraph.references.ledger import ConfidencePolicy, ProductConfidence
from ingestgraph.references.resolver import PathResolver

log = get_logger("references.linker")

_CODE_FORMATS = frozenset({FileFormat.SCRIPT, FileFormat.PYTHON, FileFormat.COMPONENT})


@dataclass
class ScopeSpan:
    """Line range of a scope, used to attribute a reference to its scope."""

    id: str
    start_line: int
    end_line: int


@dataclass
class LinkPlan:
    batch: GraphBatch = field(default_factory=GraphBatch)
    mentions: list[MentionRecord] = field(default_factory=list)
    references_resolved: int = 0
    mentions_resolved: int = 0
    dropped: int = 0


class ReferenceLinker:
    """Plans edges, pending records and mentions for extracted references."""

    def __init__(
        self,
        identity: IdentityAssigner,
        fuzzy: FuzzyResolver | None = None,
        scoring: ConfidencePolicy | None = None,
        min_similarity: float | None = None,
    ):
        self.identity = identity
        self.fuzzy = fuzzy or FuzzyResolver()
        self.scoring = scoring or ProductConfidence()
        self.min_similarity = min_similarity

    @staticmethod
    def _origin(ref: RawReference, spans: list[ScopeSpan], fallback_id: str) -> str:
        if ref.line is not None:
            enclosing = [s for s in spans if s.start_line <= ref.line <= s.end_line]
            if enclosing:
                # Innermost scope wins
                return min(enclosing, key=lambda s: (s.end_line - s.start_line, s.id)).id
        return fallback_id

    def plan(
        self,
        project_id: str,
        path: str,
        refs: list[RawReference],
        files: dict[str, FuzzyCandidate],
        spans: list[ScopeSpan] | None = None,
        document_id: str | None = None,
        project_root: str | Path | None = None,
    ) -> LinkPlan:
        """Plan graph changes for the references of one file.

        Args:
            project_id: Project of the file
            path: Project-relative path of the file
            refs: References extracted from its content
            files: Project files in the graph or in the current batch, by path
            spans: Scopes of the file, to attribute references by line
            document_id: Document node of the file, if it has one
            project_root: Root used for absolute paths on pending records

        Returns:
            LinkPlan with a batch to merge and mentions to record
        """
        plan = LinkPlan()
        spans = spans or []
        fallback_id = document_id or self.identity.file_id(path)
        resolver = PathResolver.for_known_paths(files)
        has_scopes = bool(spans)
        code_file = classify_format(path) in _CODE_FORMATS
        others = [c for p, c in sorted(files.items()) if p != path]

        for ref in refs:
            origin = self._origin(ref, spans, fallback_id)

            if ref.type == ReferenceType.URL:
                self._link_url(plan.batch, origin, ref)
                continue

            if ref.is_mention:
                self._link_mention(plan, project_id, path, origin, ref, others)
                continue

            if not ref.is_local:
                plan.dropped += 1
                continue

            # Scope-level imports are linked by the relationship builder
            if code_file and has_scopes and ref.type == ReferenceType.CODE:
                continue

            resolved = resolver.resolve(ref, path, project_root or ".")
            if resolved is not None:
                target = files[resolved.relative_path]
                props = {"symbols": list(ref.symbols), "line": ref.line}
                if plan.batch.add_relationship(GraphRelationship(
                    resolved.relation_type, origin, target.id, {k: v for k, v in props.items() if v is not None}
                )):
                    plan.references_resolved += 1
                continue

            target_path = resolver.guess_target(ref, path)
            if target_path is None:
                plan.batch.warnings.append(f"{path}:{ref.line or 0}: {ref.source} points outside the project")
                plan.dropped += 1
                continue
            plan.batch.add_pending(PendingRecord(
                source_id=origin,
                project_id=project_id,
                file=path,
                target_path=target_path,
                relation_type=relation_type_for(target_path, ref.type),
                symbols=list(ref.symbols),
                absolute_path=str(Path(project_root) / target_path) if project_root else target_path,
                line=ref.line,
            ))

        log.debug(
            f"{path}: {plan.references_resolved} linked, {len(plan.batch.pending)} pending, "
            f"{plan.mentions_resolved} mentions resolved, {len(plan.mentions)} mentions deferred"
        )
        return plan

    def _link_url(self, batch: GraphBatch, origin: str, ref: RawReference) -> None:
        url = ref.url or ref.source
        url_id = self.identity.url_id(url)
        batch.add_node(GraphNode(
            labels=(schema.LABEL_EXTERNAL_URL,),
            id=url_id,
            properties={"url": url, "domain": urlparse(url).netloc},
        ))
        props = {"line": ref.line, "context": ref.context}
        batch.add_relationship(GraphRelationship(
            schema.REL_LINKS_TO, origin, url_id, {k: v for k, v in props.items() if v is not None}
        ))

    def _link_mention(
        self,
        plan: LinkPlan,
        project_id: str,
        path: str,
        origin: str,
        ref: RawReference,
        candidates: list[FuzzyCandidate],
    ) -> None:
        match = self.fuzzy.resolve(ref.source, candidates, self.min_similarity)
        if match is None:
            plan.mentions.append(MentionRecord(
                source_id=origin,
                project_id=project_id,
                file=path,
                mention=ref.source,
                reference_type=ref.type,
                confidence=ref.confidence,
                line=ref.line,
                context=ref.context,
            ))
            return

        props = {
            "resolved": True,
            "confidence": self.scoring(ref.confidence, match.score),
            "matchType": match.match_type.value,
            "score": match.score,
            "mention": ref.source,
            "line": ref.line,
            "resolvedFrom": "ingestion",
        }
        if plan.batch.add_relationship(GraphRelationship(
            schema.REL_MENTIONS_FILE, origin, match.id, {k: v for k, v in props.items() if v is not None}
        )):
            plan.mentions_resolved += 1

