"""End-to-end ingestion tests against the in-memory graph store.

Tests:
- one cycle: batch, linking, merge, ledger recording
- convergence across cycles as missing targets arrive
- re-ingestion idempotence
- per-project locking
- maintenance operations (remove, reembed, sweep)
"""

from __future__ import annotations

import threading

import pytest

from ingestgraph import schema
from ingestgraph.errors import ProjectBusyError
from ingestgraph.identity import IdentityAssigner
from ingestgraph.ingestion import IngestionReport, ProjectIngestor, ProjectLocks
from ingestgraph.models import LifecycleState, ScopeParameter, SourceFile

from fixtures.factories import create_class, create_function, create_markdown, create_scope, create_source, imports

APP_TS = "import { format } from './utils'\n\nexport function main() { return format() }\n"
UTILS_TS = "export function format() { return 'x' }\n"
README = (
    "# Demo\n"
    "\n"
    "See [guide](docs/guide.md) and https://example.com/help.\n"
    "History lives in CHANGELOG.md.\n"
)


def main_scope():
    return create_function(
        "main",
        start_line=3,
        content="export function main() { return format() }",
        identifier_references=imports("./utils", "format"),
    )


def format_scope():
    return create_function("format", start_line=1, content="export function format() { return 'x' }")


def first_files() -> list[SourceFile]:
    return [create_source("src/app.ts", APP_TS, [main_scope()]), create_markdown("README.md", README)]


def second_files() -> list[SourceFile]:
    return [
        create_source("src/utils.ts", UTILS_TS, [format_scope()]),
        create_markdown("docs/guide.md", "# Guide\n\nHow to use it.\n"),
        SourceFile("CHANGELOG.md", "# Changelog\n"),
    ]


@pytest.fixture
def ingestor(graph_store, config) -> ProjectIngestor:
    return ProjectIngestor(graph_store, config, import_resolver_factory=lambda root: None)


@pytest.fixture
def ids(project_id):
    identity = IdentityAssigner(project_id)
    return {
        "main": identity.scope_id(main_scope(), "src/app.ts"),
        "format": identity.scope_id(format_scope(), "src/utils.ts"),
        "readme": identity.document_id("markdown", "README.md"),
        "guide_file": identity.file_id("docs/guide.md"),
        "changelog_file": identity.file_id("CHANGELOG.md"),
    }


# ============================================================================
# Single cycle
# ============================================================================


class TestIngestCycle:
    """Tests for one ingestion cycle."""

    def test_unresolved_references_are_recorded(self, ingestor, graph_store, project_id, tmp_path):
        report = ingestor.ingest(project_id, tmp_path, first_files())

        assert isinstance(report, IngestionReport)
        assert report.files == 2
        assert report.pending_recorded == 2
        assert report.mentions_recorded == 1
        assert report.pending_sweep.remaining == 2
        assert report.mention_sweep.remaining == 1
        assert ingestor.ledger.count_pending(project_id) == 2
        assert ingestor.ledger.count_mentions(project_id) == 1

    def test_graph_contents(self, ingestor, graph_store, project_id, tmp_path, ids):
        ingestor.ingest(project_id, tmp_path, first_files())

        assert graph_store.node(project_id).props["rootPath"] == str(tmp_path)
        main = graph_store.node(ids["main"])
        assert main.props["name"] == "main"
        assert main.props[schema.PROP_STATE] == LifecycleState.EMBEDDING_PENDING.value
        assert graph_store.relationships(schema.REL_LINKS_TO, ids["readme"])
        assert graph_store.with_label(schema.LABEL_EXTERNAL_URL)[0].props["domain"] == "example.com"

    def test_in_batch_references_resolve_immediately(self, ingestor, graph_store, project_id, tmp_path, ids):
        report = ingestor.ingest(project_id, tmp_path, first_files() + second_files())

        assert report.pending_recorded == 0
        assert report.mentions_recorded == 0
        assert report.mentions_resolved == 1
        assert report.references_resolved == 1
        assert graph_store.relationships(schema.REL_CONSUMES, ids["main"], ids["format"])
        assert graph_store.relationships(schema.REL_REFERENCES_DOC, ids["readme"], ids["guide_file"])
        mention = graph_store.relationships(schema.REL_MENTIONS_FILE, ids["readme"], ids["changelog_file"])[0]
        assert mention.props["resolvedFrom"] == "ingestion"

    def test_report_to_dict(self, ingestor, project_id, tmp_path):
        data = ingestor.ingest(project_id, tmp_path, first_files()).to_dict()

        assert data["project_id"] == project_id
        assert data["merge"]["nodes_created"] > 0
        assert data["pending_sweep"] == {"resolved": 0, "remaining": 2}
        assert isinstance(data["duration_seconds"], float)

    def test_outside_reference_warns(self, ingestor, project_id, tmp_path):
        files = [create_markdown("README.md", "# Demo\n\nSee [other](../../other/README.md).\n")]
        report = ingestor.ingest(project_id, tmp_path, files)
        assert report.warnings == ["README.md:3: ../../other/README.md points outside the project"]

    def test_overrides(self, ingestor, graph_store, project_id, tmp_path, ids):
        report = ingestor.ingest(project_id, tmp_path, first_files(), mark_for_reembed=False, sweep=False)

        assert report.merge.nodes_marked_for_embedding == 0
        assert graph_store.node(ids["main"]).props[schema.PROP_STATE] == LifecycleState.LINKED.value
        assert report.pending_sweep.to_dict() == {"resolved": 0, "remaining": 0}

    def test_default_import_resolver_reads_project(self, graph_store, config, project_id, tmp_path, ids):
        (tmp_path / "src").mkdir()
        (tmp_path / "src" / "app.ts").write_text(APP_TS)
        (tmp_path / "src" / "utils.ts").write_text(UTILS_TS)
        files = [
            create_source("src/app.ts", APP_TS, [main_scope()]),
            create_source("src/utils.ts", UTILS_TS, [format_scope()]),
        ]

        ProjectIngestor(graph_store, config).ingest(project_id, tmp_path, files)

        consumes = graph_store.relationships(schema.REL_CONSUMES, ids["main"], ids["format"])
        assert consumes[0].props["importedFrom"] == "./utils"

    def test_unresolvable_import_stays_pending(self, graph_store, config, project_id, tmp_path):
        """A unique name elsewhere in the project is not taken for an import of a missing module."""
        (tmp_path / "a.ts").write_text("import { foo } from './b'\n")
        (tmp_path / "c.ts").write_text("export function foo() {}\n")
        user = create_function("main", file="a.ts", identifier_references=imports("./b", "foo"))
        foo = create_function("foo", file="c.ts")
        files = [
            create_source("a.ts", "import { foo } from './b'\n", [user]),
            create_source("c.ts", "export function foo() {}\n", [foo]),
        ]

        ingestor = ProjectIngestor(graph_store, config)
        report = ingestor.ingest(project_id, tmp_path, files)

        assert graph_store.relationships(schema.REL_CONSUMES) == []
        assert report.pending_recorded >= 1
        targets = {n.props["targetPath"] for n in graph_store.with_label(schema.LABEL_PENDING_REFERENCE)}
        assert targets == {"b"}


# ============================================================================
# Convergence and idempotence
# ============================================================================


class TestConvergence:
    """Tests for references converging across cycles."""

    def test_targets_arriving_later_resolve(self, ingestor, graph_store, project_id, tmp_path, ids):
        ingestor.ingest(project_id, tmp_path, first_files())

        report = ingestor.ingest(project_id, tmp_path, second_files())

        assert report.pending_sweep.to_dict() == {"resolved": 2, "remaining": 0}
        assert report.mention_sweep.resolved == 1
        assert graph_store.relationships(schema.REL_CONSUMES, ids["main"], ids["format"])
        assert graph_store.relationships(schema.REL_REFERENCES_DOC, ids["readme"], ids["guide_file"])
        mention = graph_store.relationships(schema.REL_MENTIONS_FILE, ids["readme"], ids["changelog_file"])[0]
        assert mention.props["resolvedFrom"] == "deferred"
        assert ingestor.ledger.count_pending(project_id) == 0
        assert ingestor.ledger.count_mentions(project_id) == 0

    def test_reingest_is_idempotent(self, ingestor, graph_store, project_id, tmp_path):
        ingestor.ingest(project_id, tmp_path, first_files())
        ingestor.ingest(project_id, tmp_path, second_files())
        nodes_before, edges_before = graph_store.snapshot()

        report = ingestor.ingest(project_id, tmp_path, first_files())

        nodes_after, edges_after = graph_store.snapshot()
        assert report.merge.nodes_created == 0
        assert report.merge.nodes_updated == 0
        assert report.pending_recorded == 0
        assert edges_after == edges_before
        assert nodes_after == nodes_before

    def test_edited_body_keeps_scope_id(self, ingestor, graph_store, project_id, tmp_path, ids):
        ingestor.ingest(project_id, tmp_path, first_files())
        graph_store.node(ids["main"]).props["embedding"] = [0.3]

        edited = create_function(
            "main",
            start_line=3,
            content="export function main() { return format() + 1 }",
            identifier_references=imports("./utils", "format"),
        )
        report = ingestor.ingest(project_id, tmp_path, [create_source("src/app.ts", APP_TS, [edited])])

        node = graph_store.node(ids["main"])
        assert report.merge.nodes_updated >= 1
        assert node.props["embedding"] == [0.3]
        assert node.props[schema.PROP_STATE] == LifecycleState.EMBEDDING_PENDING.value
        assert len([n for n in graph_store.with_label(schema.LABEL_SCOPE) if n.props["name"] == "main"]) == 1

    def test_same_method_name_in_two_classes_keeps_ids(self, ingestor, graph_store, project_id, tmp_path):
        """Changing B.foo's signature reuses B.foo's stored id, never A.foo's."""
        def source(b_params):
            scopes = [
                create_class("A", file="ab.ts", start_line=1),
                create_scope("foo", "method", file="ab.ts", start_line=2, parent_name="A"),
                create_class("B", file="ab.ts", start_line=5),
                create_scope(
                    "foo", "method", file="ab.ts", start_line=6, parent_name="B",
                    parameters=[ScopeParameter(p) for p in b_params],
                ),
            ]
            return create_source("ab.ts", "", scopes)

        def method_ids():
            return {
                n.props["parentName"]: n.uuid
                for n in graph_store.with_label(schema.LABEL_SCOPE) if n.props["name"] == "foo"
            }

        ingestor.ingest(project_id, tmp_path, [source([])])
        before = method_ids()

        ingestor.ingest(project_id, tmp_path, [source(["x"])])

        assert method_ids() == before
        assert len(graph_store.with_label(schema.LABEL_SCOPE)) == 4

    def test_reingest_replaces_stale_ledger_records(self, ingestor, project_id, tmp_path):
        ingestor.ingest(project_id, tmp_path, first_files())

        # The import is gone from the new version of the file
        plain = create_function("main", start_line=1, content="export function main() { return 1 }")
        ingestor.ingest(project_id, tmp_path, [create_source("src/app.ts", "export function main() {}\n", [plain])])

        assert ingestor.ledger.count_pending(project_id) == 1


# ============================================================================
# Project isolation
# ============================================================================


class TestProjectIsolation:
    """Tests for two projects sharing relative paths in one database."""

    def test_same_path_in_two_projects(self, ingestor, graph_store, tmp_path):
        for project in ("p1", "p2"):
            ingestor.ingest(project, tmp_path / project, [create_source("src/app.ts", APP_TS, [main_scope()])])

        files = graph_store.with_label(schema.LABEL_FILE)
        scopes = graph_store.with_label(schema.LABEL_SCOPE)
        assert sorted(n.props["projectId"] for n in files) == ["p1", "p2"]
        assert sorted(n.props["projectId"] for n in scopes) == ["p1", "p2"]
        assert len(graph_store.with_label(schema.LABEL_DIRECTORY)) == 2
        assert len({n.uuid for n in files}) == 2

    def test_removing_files_leaves_other_project(self, ingestor, graph_store, tmp_path):
        for project in ("p1", "p2"):
            ingestor.ingest(project, tmp_path / project, [create_source("src/app.ts", APP_TS, [main_scope()])])

        ingestor.remove_files("p1", ["src/app.ts"])

        assert [n.props["projectId"] for n in graph_store.with_label(schema.LABEL_FILE)] == ["p2"]
        assert [n.props["projectId"] for n in graph_store.with_label(schema.LABEL_SCOPE)] == ["p2"]


# ============================================================================
# Locking
# ============================================================================


class TestLocking:
    """Tests for one cycle per project at a time."""

    def test_busy_project_fails_fast(self, graph_store, config, project_id, tmp_path):
        locks = ProjectLocks()
        ingestor = ProjectIngestor(graph_store, config, locks=locks, import_resolver_factory=lambda root: None)

        with locks.hold(project_id):
            assert locks.is_locked(project_id)
            with pytest.raises(ProjectBusyError, match=project_id):
                ingestor.ingest(project_id, tmp_path, first_files(), blocking=False)

        assert not locks.is_locked(project_id)
        assert graph_store.queries == []

    def test_other_projects_are_independent(self, project_id):
        locks = ProjectLocks()
        with locks.hold(project_id):
            with locks.hold("another-project", blocking=False):
                assert locks.is_locked("another-project")

    def test_lock_released_on_error(self, project_id):
        locks = ProjectLocks()
        with pytest.raises(RuntimeError):
            with locks.hold(project_id):
                raise RuntimeError("boom")
        assert not locks.is_locked(project_id)

    def test_waiting_cycle_runs_after_release(self, project_id):
        locks = ProjectLocks()
        order = []
        entered = threading.Event()
        release = threading.Event()

        def first():
            with locks.hold(project_id):
                entered.set()
                release.wait(5)
                order.append("first")

        def second():
            with locks.hold(project_id):
                order.append("second")

        t1 = threading.Thread(target=first)
        t1.start()
        entered.wait(5)
        t2 = threading.Thread(target=second)
        t2.start()
        release.set()
        t1.join(5)
        t2.join(5)

        assert order == ["first", "second"]

    def test_timeout(self, project_id):
        locks = ProjectLocks()
        with locks.hold(project_id):
            result = []

            def attempt():
                try:
                    with locks.hold(project_id, timeout=0.05):
                        result.append("acquired")
                except ProjectBusyError:
                    result.append("busy")

            thread = threading.Thread(target=attempt)
            thread.start()
            thread.join(5)

        assert result == ["busy"]


# ============================================================================
# Maintenance
# ============================================================================


class TestMaintenance:
    """Tests for remove_files, reembed and sweep."""

    def test_remove_files(self, ingestor, graph_store, project_id, tmp_path, ids):
        ingestor.ingest(project_id, tmp_path, first_files())

        deleted = ingestor.remove_files(project_id, ["README.md"])

        assert deleted >= 2
        assert graph_store.node(ids["readme"]) is None
        assert graph_store.node(IdentityAssigner(project_id).file_id("README.md")) is None
        assert ingestor.ledger.count_mentions(project_id) == 0
        assert ingestor.ledger.count_pending(project_id) == 1

    def test_reembed(self, ingestor, graph_store, project_id, tmp_path, ids):
        ingestor.ingest(project_id, tmp_path, first_files(), mark_for_reembed=False)

        assert ingestor.reembed(project_id, ["src/app.ts"]) == 1
        assert graph_store.node(ids["main"]).props[schema.PROP_STATE] == LifecycleState.EMBEDDING_PENDING.value

    def test_sweep(self, ingestor, project_id, tmp_path):
        ingestor.ingest(project_id, tmp_path, first_files(), sweep=False)
        ingestor.ingest(project_id, tmp_path, second_files(), sweep=False)

        pending, mentions = ingestor.sweep(project_id)

        assert pending.resolved == 2
        assert mentions.resolved == 1
