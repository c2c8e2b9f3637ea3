"""Data model for the ingestion core.

Dataclasses for references, graph nodes and relationships, deferred
reference bookkeeping, fuzzy match results, and the structural records
supplied by upstream parsers.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from ingestgraph.hashing import deterministic_uuid


class ReferenceType(str, Enum):
    """Kind of target a raw reference points at."""

    CODE = "code"
    ASSET = "asset"
    DOCUMENT = "document"
    STYLESHEET = "stylesheet"
    DATA = "data"
    EXTERNAL = "external"
    URL = "url"


class LifecycleState(str, Enum):
    """Position of a content-bearing node in the parse -> link -> embed pipeline."""

    PARSED = "parsed"
    LINKED = "linked"
    EMBEDDING_PENDING = "embedding-pending"

    @property
    def rank(self) -> int:
        return _STATE_RANK[self]

    def can_advance_to(self, target: "LifecycleState") -> bool:
        """States only move forward; re-embed requests bypass this check."""
        return target.rank > self.rank


_STATE_RANK = {
    LifecycleState.PARSED: 0,
    LifecycleState.LINKED: 1,
    LifecycleState.EMBEDDING_PENDING: 2,
}


class MatchType(str, Enum):
    EXACT = "exact"
    ENDS_WITH = "ends_with"
    FILENAME = "filename"
    FUZZY = "fuzzy"


# =============================================================================
# References
# =============================================================================


@dataclass
class RawReference:
    """A reference found in file content, before resolution.

    References carrying a ``confidence`` come from loose prose heuristics
    (mentions); references without one come from precise import or link
    syntax (structural).
    """

    source: str
    type: ReferenceType
    symbols: list[str] = field(default_factory=list)
    line: int | None = None
    is_local: bool = False
    confidence: float | None = None
    context: str | None = None
    url: str | None = None

    @property
    def is_mention(self) -> bool:
        return self.confidence is not None and self.type != ReferenceType.URL

    @property
    def dedup_key(self) -> tuple[str, str]:
        return (self.type.value, self.source)

    def to_dict(self) -> dict[str, Any]:
        return {
            "source": self.source,
            "symbols": list(self.symbols),
            "type": self.type.value,
            "line": self.line,
            "isLocal": self.is_local,
            "confidence": self.confidence,
            "context": self.context,
            "url": self.url,
        }


@dataclass
class ResolvedReference:
    """A raw reference together with the file it resolved to."""

    reference: RawReference
    absolute_path: str
    relative_path: str
    relation_type: str

    @property
    def source(self) -> str:
        return self.reference.source

    @property
    def symbols(self) -> list[str]:
        return self.reference.symbols

    @property
    def line(self) -> int | None:
        return self.reference.line


# =============================================================================
# Graph batch
# =============================================================================


@dataclass
class GraphNode:
    """A node to merge. ``labels[0]`` is the primary type."""

    labels: tuple[str, ...]
    id: str
    properties: dict[str, Any] = field(default_factory=dict)


@dataclass
class GraphRelationship:
    """A relationship to merge between two node ids.

    ``merge_keys`` names properties that belong to the relationship's
    identity, so two edges of the same type between the same endpoints stay
    distinct when those properties differ.
    """

    type: str
    from_id: str
    to_id: str
    properties: dict[str, Any] = field(default_factory=dict)
    merge_keys: tuple[str, ...] = ()

    @property
    def key(self) -> tuple:
        return (
            self.type,
            self.from_id,
            self.to_id,
            tuple(self.properties.get(k) for k in self.merge_keys),
        )


@dataclass
class PendingRecord:
    """A structural reference whose target is not in the graph yet."""

    source_id: str
    project_id: str
    file: str
    target_path: str
    relation_type: str
    symbols: list[str] = field(default_factory=list)
    absolute_path: str = ""
    line: int | None = None

    @property
    def id(self) -> str:
        return deterministic_uuid(f"pending:{self.source_id}:{self.target_path}:{self.relation_type}")

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "sourceId": self.source_id,
            "projectId": self.project_id,
            "file": self.file,
            "targetPath": self.target_path,
            "relationType": self.relation_type,
            "symbols": list(self.symbols),
            "absolutePath": self.absolute_path,
            "line": self.line,
        }


@dataclass
class MentionRecord:
    """A loose prose mention that did not match any file yet."""

    source_id: str
    project_id: str
    file: str
    mention: str
    reference_type: ReferenceType
    confidence: float
    line: int | None = None
    context: str | None = None

    @property
    def id(self) -> str:
        return deterministic_uuid(f"mention:{self.source_id}:{self.mention}")

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "sourceId": self.source_id,
            "projectId": self.project_id,
            "file": self.file,
            "mention": self.mention,
            "referenceType": self.reference_type.value,
            "confidence": self.confidence,
            "line": self.line,
            "context": self.context,
        }


@dataclass
class GraphBatch:
    """Nodes, relationships, and deferred records produced for one merge."""

    nodes: list[GraphNode] = field(default_factory=list)
    relationships: list[GraphRelationship] = field(default_factory=list)
    pending: list[PendingRecord] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    _node_index: dict[str, GraphNode] = field(default_factory=dict, repr=False)
    _rel_keys: set = field(default_factory=set, repr=False)
    _pending_ids: set = field(default_factory=set, repr=False)

    def add_node(self, node: GraphNode) -> GraphNode:
        """Add a node, overlaying properties when the id was already added."""
        existing = self._node_index.get(node.id)
        if existing is not None:
            existing.properties.update(node.properties)
            return existing
        self._node_index[node.id] = node
        self.nodes.append(node)
        return node

    def add_relationship(self, rel: GraphRelationship) -> bool:
        """Add a relationship unless an identical one is already present."""
        if rel.from_id == rel.to_id:
            return False
        if rel.key in self._rel_keys:
            return False
        self._rel_keys.add(rel.key)
        self.relationships.append(rel)
        return True

    def has_relationship(self, rel_type: str, from_id: str, to_id: str) -> bool:
        return (rel_type, from_id, to_id, ()) in self._rel_keys

    def add_pending(self, record: PendingRecord) -> None:
        if record.id in self._pending_ids:
            return
        self._pending_ids.add(record.id)
        self.pending.append(record)

    def get_node(self, node_id: str) -> GraphNode | None:
        return self._node_index.get(node_id)

    def extend(self, other: "GraphBatch") -> None:
        """Fold another batch into this one with the same dedup rules."""
        for node in other.nodes:
            self.add_node(node)
        for rel in other.relationships:
            self.add_relationship(rel)
        for record in other.pending:
            self.add_pending(record)
        self.warnings.extend(other.warnings)


# =============================================================================
# Fuzzy matching
# =============================================================================


@dataclass
class FuzzyCandidate:
    """A file node considered by the fuzzy cascade."""

    id: str
    path: str
    name: str
    labels: list[str] = field(default_factory=list)


@dataclass
class FuzzyMatchResult:
    id: str
    path: str
    name: str
    score: float
    match_type: MatchType
    labels: list[str] = field(default_factory=list)


# =============================================================================
# Upstream structural records
# =============================================================================


@dataclass
class ScopeParameter:
    name: str
    type: str | None = None
    optional: bool = False
    default: str | None = None


@dataclass
class HeritageClause:
    """``extends`` or ``implements`` clause with the named base types."""

    clause: str
    types: list[str] = field(default_factory=list)


@dataclass
class ImportReference:
    source: str
    imported: str
    is_local: bool = False


@dataclass
class IdentifierReference:
    """An identifier used inside a scope.

    ``kind`` is ``local_scope`` for names defined in the same file and
    ``import`` for names brought in through an import statement.
    """

    identifier: str
    kind: str
    source: str | None = None
    context: str | None = None


@dataclass
class ScopeRecord:
    """A named code construct produced by a language parser."""

    name: str
    kind: str
    file: str
    start_line: int
    end_line: int
    content: str = ""
    signature: str | None = None
    parent_name: str | None = None
    parameters: list[ScopeParameter] = field(default_factory=list)
    modifiers: list[str] = field(default_factory=list)
    return_type: str | None = None
    docstring: str | None = None
    decorators: list[str] = field(default_factory=list)
    heritage: list[HeritageClause] = field(default_factory=list)
    generics: list[str] = field(default_factory=list)
    import_references: list[ImportReference] = field(default_factory=list)
    identifier_references: list[IdentifierReference] = field(default_factory=list)
    value: str | None = None


@dataclass
class SectionRecord:
    """A heading-delimited section of a document."""

    title: str
    level: int
    start_line: int
    end_line: int
    content: str = ""
    parent_start_line: int | None = None


@dataclass
class CodeBlockRecord:
    """A fenced code block inside a document."""

    language: str
    start_line: int
    end_line: int
    content: str = ""
    section_start_line: int | None = None


@dataclass
class SourceFile:
    """One file handed to an ingestion cycle.

    ``path`` is project-relative with forward slashes.
    """

    path: str
    content: str = ""
    scopes: list[ScopeRecord] = field(default_factory=list)
    sections: list[SectionRecord] = field(default_factory=list)
    code_blocks: list[CodeBlockRecord] = field(default_factory=list)
