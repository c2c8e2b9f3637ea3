"""Project ingestion.

Runs one ingestion cycle for a project: build the batch from parsed
files, link the file-level references found in their content, merge,
record what stayed unresolved, and sweep the ledger. One cycle per
project at a time.
"""

import posixpath
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

from ingestgraph import schema
from ingestgraph.builder import RelationshipBuilder, ScopeRef
from ingestgraph.config import Config
from ingestgraph.db.graph_protocol import GraphStore
from ingestgraph.db.merge import GraphMergeEngine, MergeStats
from ingestgraph.errors import ProjectBusyError
from ingestgraph.identity import IdentityAssigner
from ingestgraph.log_config import get_logger, log_timing
from ingestgraph.models import FuzzyCandidate, GraphBatch, MentionRecord, SourceFile
from ingestgraph.references.extractor import extract_references
from ingestgraph.references.fuzzy import FuzzyResolver, fetch_file_candidates
from ingestgraph.references.imports import FileSystemImportResolver, ImportResolver
from ingestgraph.references.ledger import PendingLedger, SweepResult
from ingestgraph.references.linker import ReferenceLinker, ScopeSpan

log = get_logger("ingestion")

ImportResolverFactory = Callable[[Path], ImportResolver | None]


class ProjectLocks:
    """Registry of per-project locks.

    Locks are not reentrant: a cycle that tries to start a second cycle
    for the same project blocks (or fails with ``blocking=False``).
    """

    def __init__(self):
        self._locks: dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()

    def _lock_for(self, project_id: str) -> threading.Lock:
        with self._registry_lock:
            lock = self._locks.get(project_id)
            if lock is None:
                lock = self._locks[project_id] = threading.Lock()
            return lock

    def is_locked(self, project_id: str) -> bool:
        return self._lock_for(project_id).locked()

    @contextmanager
    def hold(self, project_id: str, blocking: bool = True, timeout: float = -1):
        """Hold the project's lock for the duration of the block.

        Raises:
            ProjectBusyError: The lock could not be acquired
        """
        lock = self._lock_for(project_id)
        if not lock.acquire(blocking, timeout if blocking else -1):
            raise ProjectBusyError(project_id)
        try:
            yield
        finally:
            lock.release()


@dataclass
class IngestionReport:
    project_id: str
    files: int = 0
    merge: MergeStats = field(default_factory=MergeStats)
    references_resolved: int = 0
    mentions_resolved: int = 0
    pending_recorded: int = 0
    mentions_recorded: int = 0
    pending_sweep: SweepResult = field(default_factory=SweepResult)
    mention_sweep: SweepResult = field(default_factory=SweepResult)
    warnings: list[str] = field(default_factory=list)
    duration_seconds: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "project_id": self.project_id,
            "files": self.files,
            "merge": self.merge.to_dict(),
            "references_resolved": self.references_resolved,
            "mentions_resolved": self.mentions_resolved,
            "pending_recorded": self.pending_recorded,
            "mentions_recorded": self.mentions_recorded,
            "pending_sweep": self.pending_sweep.to_dict(),
            "mention_sweep": self.mention_sweep.to_dict(),
            "warnings": list(self.warnings),
            "duration_seconds": round(self.duration_seconds, 3),
        }


def _default_import_resolver(project_root: Path) -> ImportResolver | None:
    return FileSystemImportResolver(project_root) if project_root.is_dir() else None


class ProjectIngestor:
    """Ingests parsed files of a project into the graph store.

    Uses dependency injection for the store, the locks and the import
    resolver so tests can substitute in-memory versions.
    """

    def __init__(
        self,
        store: GraphStore,
        config: Config | None = None,
        locks: ProjectLocks | None = None,
        import_resolver_factory: ImportResolverFactory = _default_import_resolver,
    ):
        self.store = store
        self.config = config or Config()
        self.locks = locks or ProjectLocks()
        self.import_resolver_factory = import_resolver_factory
        self.fuzzy = FuzzyResolver(self.config.min_similarity)
        self.engine = GraphMergeEngine(store, batch_size=self.config.merge_batch_size)
        self.ledger = PendingLedger(store, fuzzy=self.fuzzy)

    # =========================================================================
    # Stored state
    # =========================================================================

    def _stored_scopes(self, project_id: str) -> list[ScopeRef]:
        rows = self.store.run(
            f"""
            MATCH (s:`{schema.LABEL_SCOPE}` {{projectId: $projectId}})
            RETURN s.uuid AS uuid, s.name AS name, s.type AS kind, s.file AS file,
                   s.startLine AS startLine, s.endLine AS endLine, s.parentName AS parentName
            ORDER BY s.file, s.startLine, s.uuid
            """,
            {"projectId": project_id},
        ).records()
        return [
            ScopeRef(
                id=row["uuid"],
                name=row["name"],
                kind=row["kind"] or "",
                file=row["file"],
                start_line=row["startLine"] or 0,
                end_line=row["endLine"] or 0,
                parent=row["parentName"],
            )
            for row in rows
        ]

    # =========================================================================
    # Ingestion
    # =========================================================================

    def ingest(
        self,
        project_id: str,
        project_root: str | Path,
        files: list[SourceFile],
        mark_for_reembed: bool | None = None,
        sweep: bool | None = None,
        blocking: bool = True,
    ) -> IngestionReport:
        """Run one ingestion cycle.

        Args:
            project_id: Project the files belong to
            project_root: Root directory the file paths are relative to
            files: Parsed files to ingest
            mark_for_reembed: Override ``config.mark_for_reembed``
            sweep: Override ``config.sweep_after_ingest``
            blocking: Wait for a running cycle of the same project instead of
                failing

        Returns:
            IngestionReport with merge and resolution statistics

        Raises:
            ProjectBusyError: Another cycle holds the project and ``blocking`` is False
            MergeBatchError: A merge group failed to commit
        """
        root = Path(project_root)
        mark = self.config.mark_for_reembed if mark_for_reembed is None else mark_for_reembed
        do_sweep = self.config.sweep_after_ingest if sweep is None else sweep
        started = time.monotonic()

        with self.locks.hold(project_id, blocking=blocking):
            report = IngestionReport(project_id=project_id, files=len(files))
            paths = [f.path for f in files]
            self.ledger.clear_for_files(project_id, paths)

            stored_scopes = self._stored_scopes(project_id)
            stored_files = {c.path: c for c in fetch_file_candidates(self.store, project_id)}

            identity = IdentityAssigner(project_id)
            in_batch = set(paths)
            for source in files:
                entries = [(s.parent, s.name, s.kind, s.id) for s in stored_scopes if s.file == source.path]
                if entries:
                    identity.seed_existing(source.path, entries, source.scopes)

            builder = RelationshipBuilder(identity, import_resolver=self.import_resolver_factory(root))
            batch = builder.build(
                project_id,
                files,
                project_root=root,
                existing_scopes=[s for s in stored_scopes if s.file not in in_batch],
                existing_files=list(stored_files),
            )

            mentions = self._link_files(project_id, root, files, batch, identity, builder, stored_files, report)
            report.warnings.extend(batch.warnings)

            report.merge = self.engine.merge(batch, mark_for_reembed=mark)
            report.pending_recorded = self.ledger.record_pending(batch.pending)
            report.mentions_recorded = self.ledger.record_mentions(mentions)

            if do_sweep:
                report.pending_sweep = self.ledger.sweep_pending(project_id)
                report.mention_sweep = self.ledger.sweep_mentions(project_id, self.config.min_similarity)

        report.duration_seconds = time.monotonic() - started
        log.info(
            f"Ingested {len(files)} files into {project_id}: "
            f"{report.merge.nodes_created} created, {report.merge.nodes_updated} updated, "
            f"{report.pending_recorded} pending, {report.mentions_recorded} mentions deferred "
            f"({report.duration_seconds:.2f}s)"
        )
        return report

    def _link_files(
        self,
        project_id: str,
        root: Path,
        files: list[SourceFile],
        batch: GraphBatch,
        identity: IdentityAssigner,
        builder: RelationshipBuilder,
        stored_files: dict[str, FuzzyCandidate],
        report: IngestionReport,
    ) -> list[MentionRecord]:
        """Link references found in file content; returns mentions left for the ledger."""
        known = dict(stored_files)
        for source in files:
            node = batch.get_node(identity.file_id(source.path))
            known[source.path] = FuzzyCandidate(
                id=identity.file_id(source.path),
                path=source.path,
                name=posixpath.basename(source.path),
                labels=list(node.labels) if node else [schema.LABEL_FILE],
            )

        linker = ReferenceLinker(identity, fuzzy=self.fuzzy, min_similarity=self.config.min_similarity)
        mentions: list[MentionRecord] = []
        with log_timing(f"Linked references of {len(files)} files", log):
            for source in files:
                refs = extract_references(source.content, source.path)
                if not refs:
                    continue
                spans = [
                    ScopeSpan(identity.scope_id(scope, source.path), scope.start_line, scope.end_line)
                    for scope in source.scopes
                ]
                plan = linker.plan(
                    project_id,
                    source.path,
                    refs,
                    known,
                    spans=spans,
                    document_id=builder.document_id_for(source.path),
                    project_root=root,
                )
                batch.extend(plan.batch)
                mentions.extend(plan.mentions)
                report.references_resolved += plan.references_resolved
                report.mentions_resolved += plan.mentions_resolved
        return mentions

    # =========================================================================
    # Maintenance
    # =========================================================================

    def remove_files(self, project_id: str, paths: list[str]) -> int:
        """Delete the nodes and ledger records of files removed from the project."""
        with self.locks.hold(project_id):
            self.ledger.clear_for_files(project_id, paths)
            return self.engine.delete_for_files(paths, project_id=project_id)

    def reembed(self, project_id: str, paths: list[str]) -> int:
        """Ask downstream to re-embed these files without changing their content."""
        with self.locks.hold(project_id):
            return self.engine.mark_for_reembed(paths, project_id=project_id)

    def sweep(self, project_id: str) -> tuple[SweepResult, SweepResult]:
        """Run both ledger sweeps outside an ingestion cycle."""
        with self.locks.hold(project_id):
            return (
                self.ledger.sweep_pending(project_id),
                self.ledger.sweep_mentions(project_id, self.config.min_similarity),
            )
