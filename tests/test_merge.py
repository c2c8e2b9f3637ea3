"""Graph merge engine tests.

Tests:
- merge() - create/update/unchanged counts, idempotence, property preservation
- lifecycle - parsed -> linked -> embedding-pending
- failure handling - MergeBatchError with partial stats, replay
- delete_for_files() / mark_for_reembed() / ensure_indexes()
"""

from __future__ import annotations

import re

import pytest

from ingestgraph import schema
from ingestgraph.builder import RelationshipBuilder
from ingestgraph.db.merge import GraphMergeEngine, MergeStats
from ingestgraph.errors import MergeBatchError
from ingestgraph.identity import IdentityAssigner
from ingestgraph.models import GraphBatch, GraphNode, GraphRelationship, LifecycleState

from fixtures.factories import create_class, create_function, create_markdown, create_source, uses


def scope_batch(project_id: str, content_hash: str = "h1", **extra) -> GraphBatch:
    """Project, one file and one scope, wired together."""
    batch = GraphBatch()
    batch.add_node(GraphNode((schema.LABEL_PROJECT,), project_id, {"projectId": project_id, "name": "demo"}))
    batch.add_node(GraphNode(
        (schema.LABEL_FILE,), "F1", {"path": "src/app.ts", "file": "src/app.ts", "projectId": project_id}
    ))
    batch.add_node(GraphNode(
        (schema.LABEL_SCOPE,),
        "S1",
        {"name": "run", "file": "src/app.ts", "contentHash": content_hash, "projectId": project_id, **extra},
    ))
    batch.add_relationship(GraphRelationship(schema.REL_DEFINED_IN, "S1", "F1"))
    batch.add_relationship(GraphRelationship(schema.REL_BELONGS_TO, "S1", project_id))
    batch.add_relationship(GraphRelationship(schema.REL_BELONGS_TO, "F1", project_id))
    return batch


def project_batch(project_id: str) -> GraphBatch:
    helper = create_function("helper", start_line=1)
    main = create_function("main", start_line=3, identifier_references=uses("helper"))
    widget = create_class("Widget", start_line=10)
    files = [
        create_source("src/app.ts", "function helper() {}\nfunction main() {}\n", [helper, main, widget]),
        create_markdown("docs/guide.md", "# Guide\n\nIntro\n\n## Usage\n\nRun it\n"),
    ]
    return RelationshipBuilder(IdentityAssigner(project_id)).build(project_id, files, project_root="/repo")


@pytest.fixture
def engine(graph_store, clock) -> GraphMergeEngine:
    return GraphMergeEngine(graph_store, clock=clock)


# ============================================================================
# Merge counts and idempotence
# ============================================================================


class TestMerge:
    """Tests for GraphMergeEngine.merge()."""

    def test_first_merge_creates(self, engine, graph_store, project_id):
        stats = engine.merge(scope_batch(project_id))

        assert stats.nodes_created == 3
        assert stats.nodes_updated == 0
        assert stats.relationships_merged == 3
        assert graph_store.node("S1").props["_createdAt"] == graph_store.node("S1").props["_updatedAt"]
        assert len(graph_store.relationships(schema.REL_BELONGS_TO)) == 2

    def test_second_merge_is_unchanged(self, engine, graph_store, project_id):
        engine.merge(scope_batch(project_id))
        before = graph_store.snapshot()

        stats = engine.merge(scope_batch(project_id))

        assert stats.nodes_unchanged == 3
        assert stats.nodes_created == 0
        assert stats.nodes_marked_for_embedding == 0
        assert graph_store.snapshot() == before

    def test_rebuild_is_idempotent(self, engine, graph_store, project_id):
        """Two builds of the same files leave an identical graph."""
        engine.merge(project_batch(project_id))
        before = graph_store.snapshot()

        stats = engine.merge(project_batch(project_id))

        assert stats.nodes_created == 0
        assert stats.nodes_updated == 0
        assert graph_store.snapshot() == before

    def test_changed_content_updates_in_place(self, engine, graph_store, project_id):
        engine.merge(scope_batch(project_id))
        graph_store.node("S1").props["embedding"] = [0.1, 0.2]
        created_at = graph_store.node("S1").props["_createdAt"]

        stats = engine.merge(scope_batch(project_id, content_hash="h2"))

        node = graph_store.node("S1")
        assert stats.nodes_updated == 1
        assert stats.nodes_unchanged == 2
        assert node.props["contentHash"] == "h2"
        assert node.props["embedding"] == [0.1, 0.2]
        assert node.props["_createdAt"] == created_at
        assert node.props["_updatedAt"] != created_at
        assert len(graph_store.with_label(schema.LABEL_SCOPE)) == 1

    def test_new_property_changes_schema_version(self, engine, graph_store, project_id):
        """Same content hash but a new property key counts as a change."""
        engine.merge(scope_batch(project_id))
        first = graph_store.node("S1").props[schema.PROP_SCHEMA_VERSION]

        stats = engine.merge(scope_batch(project_id, docstring="Runs it."))

        assert stats.nodes_updated == 1
        assert graph_store.node("S1").props[schema.PROP_SCHEMA_VERSION] != first

    def test_none_properties_are_not_written(self, engine, graph_store, project_id):
        engine.merge(scope_batch(project_id, docstring=None))
        assert "docstring" not in graph_store.node("S1").props

    def test_none_clears_stored_property(self, engine, graph_store, project_id):
        """A property dropped at the source is removed; derived data stays."""
        engine.merge(scope_batch(project_id, docstring="Old doc."))
        graph_store.node("S1").props["embedding"] = [0.4]

        stats = engine.merge(scope_batch(project_id, docstring=None))

        node = graph_store.node("S1")
        assert "docstring" not in node.props
        assert node.props["embedding"] == [0.4]
        assert stats.nodes_updated == 1

    def test_same_path_in_two_projects_stays_apart(self, engine, graph_store):
        """Files are keyed by project and path together."""
        for project in ("p1", "p2"):
            batch = GraphBatch()
            batch.add_node(GraphNode(
                (schema.LABEL_FILE,), f"F-{project}", {"path": "src/app.ts", "projectId": project}
            ))
            engine.merge(batch)

        files = graph_store.with_label(schema.LABEL_FILE)
        assert sorted((n.uuid, n.props["projectId"]) for n in files) == [("F-p1", "p1"), ("F-p2", "p2")]

    def test_relationship_merge_keys_keep_edges_apart(self, engine, graph_store, project_id):
        batch = scope_batch(project_id)
        batch.add_node(GraphNode((schema.LABEL_EXTERNAL_LIBRARY,), "L1", {"name": "lodash"}))
        for symbol in ("map", "filter"):
            batch.add_relationship(GraphRelationship(
                schema.REL_USES_LIBRARY, "S1", "L1", {"symbol": symbol}, merge_keys=("symbol",)
            ))

        engine.merge(batch)
        engine.merge(batch)

        used = graph_store.relationships(schema.REL_USES_LIBRARY, "S1", "L1")
        assert sorted(r.props["symbol"] for r in used) == ["filter", "map"]

    def test_relationship_to_missing_node_is_skipped(self, engine, graph_store, project_id):
        batch = scope_batch(project_id)
        batch.add_relationship(GraphRelationship(schema.REL_CONSUMES, "S1", "GONE"))

        stats = engine.merge(batch)

        assert stats.relationships_merged == 3
        assert graph_store.relationships(schema.REL_CONSUMES) == []

    def test_node_without_unique_key_rejected(self, engine, project_id):
        batch = GraphBatch()
        batch.add_node(GraphNode((schema.LABEL_FILE,), "F1", {"name": "app.ts", "projectId": "p1"}))
        with pytest.raises(ValueError, match="has no 'path' property"):
            engine.merge(batch)

    def test_chunking(self, graph_store, clock, project_id):
        batch = GraphBatch()
        for i in range(5):
            batch.add_node(GraphNode((schema.LABEL_SCOPE,), f"S{i}", {"name": f"s{i}", "contentHash": str(i)}))

        stats = GraphMergeEngine(graph_store, batch_size=2, clock=clock).merge(batch, mark_for_reembed=False)

        node_queries = [q for q, _ in graph_store.queries if "UNWIND $rows" in q]
        assert len(node_queries) == 3
        assert stats.nodes_created == 5

    def test_batch_size_must_be_positive(self, graph_store):
        with pytest.raises(ValueError, match="batch_size"):
            GraphMergeEngine(graph_store, batch_size=0)

    def test_stats_to_dict(self):
        stats = MergeStats(nodes_created=2, nodes_unchanged=1, changed_ids=["a", "b"])
        data = stats.to_dict()
        assert data["nodes_total"] == 3
        assert "changed_ids" not in data


# ============================================================================
# Lifecycle
# ============================================================================


class TestLifecycle:
    """Tests for lifecycle state transitions during merge."""

    def test_created_content_node_reaches_embedding_pending(self, engine, graph_store, project_id):
        stats = engine.merge(scope_batch(project_id))

        node = graph_store.node("S1")
        assert node.props[schema.PROP_STATE] == LifecycleState.EMBEDDING_PENDING.value
        assert node.props[schema.PROP_PARSED_AT]
        assert node.props[schema.PROP_LINKED_AT]
        assert stats.nodes_linked == 1
        assert stats.nodes_marked_for_embedding == 1

    def test_structural_nodes_have_no_state(self, engine, graph_store, project_id):
        engine.merge(scope_batch(project_id))
        assert schema.PROP_STATE not in graph_store.node("F1").props
        assert schema.PROP_STATE not in graph_store.node(project_id).props

    def test_linked_without_reembed(self, engine, graph_store, project_id):
        engine.merge(scope_batch(project_id), mark_for_reembed=False)
        assert graph_store.node("S1").props[schema.PROP_STATE] == LifecycleState.LINKED.value

    def test_node_without_relationships_stays_parsed(self, engine, graph_store):
        batch = GraphBatch()
        batch.add_node(GraphNode((schema.LABEL_SCOPE,), "S1", {"name": "lonely", "contentHash": "h"}))

        engine.merge(batch, mark_for_reembed=False)

        assert graph_store.node("S1").props[schema.PROP_STATE] == LifecycleState.PARSED.value

    def test_unchanged_node_keeps_state(self, engine, graph_store, project_id):
        engine.merge(scope_batch(project_id), mark_for_reembed=False)
        stats = engine.merge(scope_batch(project_id))

        assert stats.nodes_marked_for_embedding == 0
        assert graph_store.node("S1").props[schema.PROP_STATE] == LifecycleState.LINKED.value

    def test_changed_node_returns_to_embedding_pending(self, engine, graph_store, project_id):
        engine.merge(scope_batch(project_id), mark_for_reembed=False)
        stats = engine.merge(scope_batch(project_id, content_hash="h2"))

        assert stats.nodes_marked_for_embedding == 1
        assert graph_store.node("S1").props[schema.PROP_STATE] == LifecycleState.EMBEDDING_PENDING.value

    def test_states_only_move_forward(self):
        assert LifecycleState.PARSED.can_advance_to(LifecycleState.LINKED)
        assert LifecycleState.LINKED.can_advance_to(LifecycleState.EMBEDDING_PENDING)
        assert not LifecycleState.EMBEDDING_PENDING.can_advance_to(LifecycleState.LINKED)
        assert not LifecycleState.LINKED.can_advance_to(LifecycleState.LINKED)


# ============================================================================
# Failure handling
# ============================================================================


class TestFailures:
    """Tests for partial failure and replay."""

    def test_failed_group_reports_progress(self, engine, graph_store, project_id):
        graph_store.fail_on = "[r:`DEFINED_IN`]"

        with pytest.raises(MergeBatchError) as exc_info:
            engine.merge(scope_batch(project_id))

        error = exc_info.value
        assert error.group == "relationships:DEFINED_IN"
        assert error.stats.nodes_created == 3
        assert "nodes:Scope" in error.stats.groups_committed
        assert isinstance(error.cause, RuntimeError)
        # Committed groups stay committed
        assert graph_store.node("S1") is not None

    def test_replay_after_failure_converges(self, engine, graph_store, project_id):
        graph_store.fail_on = "[r:`DEFINED_IN`]"
        with pytest.raises(MergeBatchError):
            engine.merge(scope_batch(project_id))

        graph_store.fail_on = None
        stats = engine.merge(scope_batch(project_id))

        assert stats.nodes_created == 0
        assert graph_store.relationships(schema.REL_DEFINED_IN, "S1", "F1")
        assert graph_store.node("S1").props[schema.PROP_STATE] == LifecycleState.LINKED.value

    def test_node_group_failure(self, engine, graph_store, project_id):
        graph_store.fail_on = ":`Scope`"
        with pytest.raises(MergeBatchError) as exc_info:
            engine.merge(scope_batch(project_id))
        assert exc_info.value.group == "nodes:Scope"


# ============================================================================
# Auxiliary operations
# ============================================================================


class TestAuxiliary:
    """Tests for delete, re-embed and index helpers."""

    def test_delete_for_files(self, engine, graph_store, project_id):
        engine.merge(scope_batch(project_id))

        deleted = engine.delete_for_files(["src/app.ts"], project_id)

        assert deleted == 2
        assert graph_store.node("S1") is None
        assert graph_store.node("F1") is None
        assert graph_store.node(project_id) is not None
        assert graph_store.relationships(schema.REL_DEFINED_IN) == []

    def test_delete_respects_project(self, engine, graph_store, project_id):
        engine.merge(scope_batch(project_id))
        assert engine.delete_for_files(["src/app.ts"], "other-project") == 0

    def test_delete_nothing(self, engine, graph_store):
        assert engine.delete_for_files([]) == 0
        assert graph_store.queries == []

    def test_mark_for_reembed(self, engine, graph_store, project_id):
        engine.merge(scope_batch(project_id, embedding=[0.5]), mark_for_reembed=False)

        marked = engine.mark_for_reembed(["src/app.ts"], project_id)

        node = graph_store.node("S1")
        assert marked == 1
        assert node.props[schema.PROP_STATE] == LifecycleState.EMBEDDING_PENDING.value
        assert node.props["embedding"] == [0.5]
        assert node.props["contentHash"] == "h1"

    def test_mark_for_reembed_nothing(self, engine):
        assert engine.mark_for_reembed([]) == 0

    def test_ensure_indexes_neo4j(self, engine, graph_store):
        engine.ensure_indexes([schema.LABEL_FILE], dialect="neo4j")
        queries = [q for q, _ in graph_store.queries]
        assert "CREATE INDEX IF NOT EXISTS FOR (n:`File`) ON (n.path)" in queries
        assert "CREATE INDEX IF NOT EXISTS FOR (n:`File`) ON (n.projectId)" in queries
        assert "CREATE INDEX IF NOT EXISTS FOR (n:`File`) ON (n.uuid)" in queries

    def test_base_label_index_by_default(self, engine, graph_store):
        engine.ensure_indexes()
        assert f"CREATE INDEX ON :`{schema.LABEL_BASE}`(uuid)" in [q for q, _ in graph_store.queries]

    def test_uuid_lookups_match_on_base_label(self, engine, graph_store, project_id):
        """Every merged node carries the base label and every uuid lookup names it."""
        engine.merge(scope_batch(project_id))
        engine.mark_for_reembed(["src/app.ts"], project_id)

        assert all(schema.LABEL_BASE in n.labels for n in graph_store.nodes)
        lookups = [label for q, _ in graph_store.queries for label in re.findall(r"\(\w+(:`\w+`)? \{uuid:", q)]
        assert lookups
        assert set(lookups) == {f":`{schema.LABEL_BASE}`"}

    def test_ensure_indexes_tolerates_failures(self, engine, graph_store):
        graph_store.fail_on = "CREATE INDEX"
        engine.ensure_indexes()
        assert any(":`PendingReference`(projectId)" in q for q, _ in graph_store.queries)
