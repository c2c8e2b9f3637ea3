"""Graph merge engine.

Commits a batch of nodes and relationships with update-in-place
semantics: nodes are MERGEd on their label set's unique keys and supplied
properties are overlaid with ``+=``. A supplied None removes the stored
property; properties absent from the payload (stored embeddings in
particular) are never touched, so there is no capture/restore step around
derived data.

Every merged node also carries ``schema.LABEL_BASE``, and all lookups by
uuid match on that label so they can use its index.

Writes are chunked per label group and per relationship group. Every
chunk is its own transaction; a failing chunk raises ``MergeBatchError``
and leaves earlier chunks committed. MERGE is idempotent, so callers can
replay a failed batch as-is.
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Iterable

from ingestgraph import schema
from ingestgraph.db.graph_protocol import GraphStore
from ingestgraph.errors import MergeBatchError
from ingestgraph.log_config import get_logger, log_timing
from ingestgraph.models import GraphBatch, GraphNode, GraphRelationship, LifecycleState

log = get_logger("db.merge")

DEFAULT_BATCH_SIZE = 500


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _label_pattern(labels: Iterable[str]) -> str:
    return "".join(f":`{label}`" for label in labels)


def _chunks(items: list, size: int) -> Iterable[list]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


@dataclass
class MergeStats:
    """Counters gathered while merging one batch."""

    nodes_created: int = 0
    nodes_updated: int = 0
    nodes_unchanged: int = 0
    relationships_merged: int = 0
    nodes_linked: int = 0
    nodes_marked_for_embedding: int = 0
    groups_committed: list[str] = field(default_factory=list)
    changed_ids: list[str] = field(default_factory=list)

    @property
    def nodes_total(self) -> int:
        return self.nodes_created + self.nodes_updated + self.nodes_unchanged

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data.pop("changed_ids")
        data["nodes_total"] = self.nodes_total
        return data


class GraphMergeEngine:
    """Merges graph batches into a store.

    Uses dependency injection for the store so tests can substitute an
    in-memory implementation.
    """

    def __init__(
        self,
        store: GraphStore,
        batch_size: int = DEFAULT_BATCH_SIZE,
        clock: Callable[[], str] = utc_now,
    ):
        """Initialize the merge engine.

        Args:
            store: Graph store exposing ``run(query, params)``
            batch_size: Rows per write transaction (default: 500)
            clock: Returns the timestamp stamped on written nodes
        """
        if batch_size < 1:
            raise ValueError(f"batch_size must be positive, got {batch_size}")
        self.store = store
        self.batch_size = batch_size
        self.clock = clock

    # =========================================================================
    # Batch merge
    # =========================================================================

    def merge(
        self,
        batch: GraphBatch,
        mark_for_reembed: bool = True,
    ) -> MergeStats:
        """Merge nodes, then relationships, then advance lifecycle states.

        Args:
            batch: Nodes and relationships to commit
            mark_for_reembed: Move created or changed content-bearing nodes to
                ``embedding-pending``

        Returns:
            MergeStats for the whole batch

        Raises:
            MergeBatchError: A chunk failed; carries the stats gathered so far
        """
        stats = MergeStats()
        now = self.clock()

        with log_timing(f"Merged {len(batch.nodes)} nodes, {len(batch.relationships)} relationships", log):
            for labels, nodes in self._group_nodes(batch.nodes).items():
                self._merge_node_group(labels, nodes, now, stats)

            for (rel_type, merge_keys), rels in self._group_relationships(batch.relationships).items():
                self._merge_relationship_group(rel_type, merge_keys, rels, stats)

            endpoint_ids = sorted({r.from_id for r in batch.relationships} | {r.to_id for r in batch.relationships})
            if endpoint_ids:
                stats.nodes_linked = self._advance(
                    "lifecycle:link", self._link_query(), endpoint_ids, now, stats, LifecycleState.LINKED
                )

            if mark_for_reembed and stats.changed_ids:
                stats.nodes_marked_for_embedding = self._advance(
                    "lifecycle:embed", self._reembed_query(), stats.changed_ids, now, stats,
                    LifecycleState.EMBEDDING_PENDING,
                )

        log.info(
            f"Merge: {stats.nodes_created} created, {stats.nodes_updated} updated, "
            f"{stats.nodes_unchanged} unchanged, {stats.relationships_merged} relationships"
        )
        return stats

    @staticmethod
    def _group_nodes(nodes: list[GraphNode]) -> dict[tuple[str, ...], list[GraphNode]]:
        groups: dict[tuple[str, ...], list[GraphNode]] = {}
        for node in nodes:
            groups.setdefault(tuple(node.labels), []).append(node)
        return groups

    @staticmethod
    def _group_relationships(
        rels: list[GraphRelationship],
    ) -> dict[tuple[str, tuple[str, ...]], list[GraphRelationship]]:
        groups: dict[tuple[str, tuple[str, ...]], list[GraphRelationship]] = {}
        for rel in rels:
            groups.setdefault((rel.type, tuple(rel.merge_keys)), []).append(rel)
        return groups

    def _node_rows(self, labels: tuple[str, ...], nodes: list[GraphNode]) -> list[dict[str, Any]]:
        keys = schema.unique_keys_for(labels)
        rows: dict[tuple, dict[str, Any]] = {}
        for node in nodes:
            props = dict(node.properties)
            props["uuid"] = node.id
            for key in keys:
                if props.get(key) is None:
                    raise ValueError(f"Node {node.id} with labels {labels} has no '{key}' property")
            version = schema.compute_schema_version(labels, props)
            if version is not None:
                props[schema.PROP_SCHEMA_VERSION] = version
            identity = tuple(props[key] for key in keys)
            existing = rows.get(identity)
            if existing is not None:
                existing["props"].update(props)
            else:
                rows[identity] = {"props": props}
        return list(rows.values())

    @staticmethod
    def _node_query(labels: tuple[str, ...], keys: tuple[str, ...], content: bool) -> str:
        pattern = _label_pattern((schema.LABEL_BASE, *labels))
        identity = ", ".join(f"{key}: row.props.{key}" for key in keys)
        on_create = "n += row.props, n._createdAt = $now, n._updatedAt = $now"
        if content:
            on_create += ", n._state = $parsed, n._parsedAt = $now, n._stateChangedAt = $now"
        return f"""
        UNWIND $rows AS row
        OPTIONAL MATCH (existing{pattern} {{{identity}}})
        WITH row, existing IS NULL AS created,
             existing IS NOT NULL
               AND coalesce(existing.contentHash, '') = coalesce(row.props.contentHash, '')
               AND coalesce(existing._schemaVersion, '') = coalesce(row.props._schemaVersion, '') AS unchanged
        MERGE (n{pattern} {{{identity}}})
        ON CREATE SET {on_create}
        ON MATCH SET n += row.props,
            n._updatedAt = CASE WHEN unchanged THEN n._updatedAt ELSE $now END
        RETURN row.props.uuid AS id, created, unchanged
        """

    def _merge_node_group(
        self,
        labels: tuple[str, ...],
        nodes: list[GraphNode],
        now: str,
        stats: MergeStats,
    ) -> None:
        content = schema.is_content_node(labels)
        rows = self._node_rows(labels, nodes)
        query = self._node_query(labels, schema.unique_keys_for(labels), content)
        group = f"nodes:{':'.join(labels)}"

        for chunk in _chunks(rows, self.batch_size):
            try:
                result = self.store.run(
                    query,
                    {"rows": chunk, "now": now, "parsed": LifecycleState.PARSED.value},
                )
            except Exception as e:
                log.error(f"Node group {group} failed after {len(stats.groups_committed)} committed groups: {e}")
                raise MergeBatchError(group, stats, e) from e

            for record in result.records():
                if record["created"]:
                    stats.nodes_created += 1
                elif record["unchanged"]:
                    stats.nodes_unchanged += 1
                else:
                    stats.nodes_updated += 1
                if content and not record["unchanged"]:
                    stats.changed_ids.append(record["id"])

        stats.groups_committed.append(group)
        log.debug(f"Merged {len(rows)} nodes into {group}")

    @staticmethod
    def _relationship_query(rel_type: str, merge_keys: tuple[str, ...]) -> str:
        identity = ""
        if merge_keys:
            identity = " {" + ", ".join(f"{k}: rel.props.{k}" for k in merge_keys) + "}"
        return f"""
        UNWIND $rels AS rel
        MATCH (a:`{schema.LABEL_BASE}` {{uuid: rel.fromId}})
        MATCH (b:`{schema.LABEL_BASE}` {{uuid: rel.toId}})
        MERGE (a)-[r:`{rel_type}`{identity}]->(b)
        SET r += rel.props
        RETURN count(r) AS count
        """

    def _merge_relationship_group(
        self,
        rel_type: str,
        merge_keys: tuple[str, ...],
        rels: list[GraphRelationship],
        stats: MergeStats,
    ) -> None:
        query = self._relationship_query(rel_type, merge_keys)
        group = f"relationships:{rel_type}"
        rows = [{"fromId": r.from_id, "toId": r.to_id, "props": dict(r.properties)} for r in rels]

        for chunk in _chunks(rows, self.batch_size):
            try:
                result = self.store.run(query, {"rels": chunk})
            except Exception as e:
                log.error(f"Relationship group {group} failed: {e}")
                raise MergeBatchError(group, stats, e) from e
            stats.relationships_merged += result.single_value(0) or 0

        stats.groups_committed.append(group)
        log.debug(f"Merged {len(rows)} {rel_type} relationships")

    # =========================================================================
    # Lifecycle
    # =========================================================================

    @staticmethod
    def _link_query() -> str:
        return f"""
        UNWIND $ids AS id
        MATCH (n:`{schema.LABEL_BASE}` {{uuid: id}})
        WHERE n._state = $from_state
        SET n._state = $to_state, n._linkedAt = $now, n._stateChangedAt = $now
        RETURN count(n) AS count
        """

    @staticmethod
    def _reembed_query() -> str:
        return f"""
        UNWIND $ids AS id
        MATCH (n:`{schema.LABEL_BASE}` {{uuid: id}})
        WHERE n._state IS NOT NULL AND n._state <> $to_state
        SET n._state = $to_state, n._stateChangedAt = $now
        RETURN count(n) AS count
        """

    def _advance(
        self,
        group: str,
        query: str,
        ids: list[str],
        now: str,
        stats: MergeStats,
        to_state: LifecycleState,
    ) -> int:
        params = {"now": now, "from_state": LifecycleState.PARSED.value, "to_state": to_state.value}
        total = 0
        for chunk in _chunks(ids, self.batch_size):
            try:
                result = self.store.run(query, {**params, "ids": chunk})
            except Exception as e:
                log.error(f"Lifecycle update {group} failed: {e}")
                raise MergeBatchError(group, stats, e) from e
            total += result.single_value(0) or 0
        stats.groups_committed.append(group)
        return total

    # =========================================================================
    # Auxiliary operations
    # =========================================================================

    def delete_for_files(self, paths: list[str], project_id: str | None = None) -> int:
        """Detach-delete every node belonging to the given files.

        Only for deleted files or format changes; merge never deletes.

        Returns:
            Number of nodes deleted
        """
        if not paths:
            return 0
        project_filter = " AND n.projectId = $projectId" if project_id else ""
        result = self.store.run(
            f"""
            UNWIND $paths AS p
            MATCH (n:`{schema.LABEL_BASE}`)
            WHERE (n.file = p OR n.path = p OR n.sourcePath = p){project_filter}
            DETACH DELETE n
            RETURN count(n) AS count
            """,
            {"paths": list(paths), "projectId": project_id},
        )
        deleted = result.single_value(0) or 0
        log.info(f"Deleted {deleted} nodes for {len(paths)} files")
        return deleted

    def mark_for_reembed(self, paths: list[str], project_id: str | None = None) -> int:
        """Flip content-bearing nodes of these files to ``embedding-pending``.

        Content properties are left alone.

        Returns:
            Number of nodes marked
        """
        if not paths:
            return 0
        project_filter = " AND n.projectId = $projectId" if project_id else ""
        result = self.store.run(
            f"""
            UNWIND $paths AS p
            MATCH (n:`{schema.LABEL_BASE}`)
            WHERE (n.file = p OR n.sourcePath = p) AND n._state IS NOT NULL{project_filter}
            SET n._state = $to_state, n._stateChangedAt = $now
            RETURN count(n) AS count
            """,
            {
                "paths": list(paths),
                "projectId": project_id,
                "to_state": LifecycleState.EMBEDDING_PENDING.value,
                "now": self.clock(),
            },
        )
        marked = result.single_value(0) or 0
        log.info(f"Marked {marked} nodes for re-embedding")
        return marked

    def ensure_indexes(self, labels: Iterable[str] | None = None, dialect: str = "memgraph") -> None:
        """Create lookup indexes on unique keys. Safe to call repeatedly.

        Args:
            labels: Labels to index (default: the base label, every content
                label and the structural ones)
            dialect: ``memgraph`` or ``neo4j`` index syntax
        """
        targets = sorted(labels) if labels is not None else sorted(
            schema.CONTENT_NODE_LABELS | {
                schema.LABEL_BASE,
                schema.LABEL_PROJECT,
                schema.LABEL_DIRECTORY,
                schema.LABEL_FILE,
                schema.LABEL_EXTERNAL_LIBRARY,
                schema.LABEL_EXTERNAL_URL,
                schema.LABEL_PENDING_REFERENCE,
                schema.LABEL_PENDING_MENTION,
            }
        )

        for label in targets:
            props = {"uuid", *schema.unique_keys_for([label])}
            if label in (schema.LABEL_PENDING_REFERENCE, schema.LABEL_PENDING_MENTION):
                props |= {"id", "projectId"}
            for prop in sorted(props):
                if dialect == "neo4j":
                    query = f"CREATE INDEX IF NOT EXISTS FOR (n:`{label}`) ON (n.{prop})"
                else:
                    query = f"CREATE INDEX ON :`{label}`({prop})"
                try:
                    self.store.run(query)
                except Exception as e:
                    error_msg = str(e).lower()
                    if "already exists" in error_msg or "index already" in error_msg:
                        log.trace(f"Index already exists: {query}")
                    else:
                        log.warning(f"Index creation issue: {e}")
        log.debug(f"Indexes ensured for {len(targets)} labels")
