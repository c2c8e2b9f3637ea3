"""Relationship builder.

Turns parsed files (scope records, document sections, code blocks) into
the node and relationship batch the merge engine commits:

- containment: Project, Directory, File, documents, scopes
- HAS_PARENT between scopes of the same file
- CONSUMES for same-file identifier use and for resolved imports
- INHERITS_FROM / IMPLEMENTS from heritage clauses, with a text
  heuristic only for scopes that have no heritage metadata
- DECORATED_BY for decorators defined in the project
- USES_LIBRARY, one edge per imported symbol of an external package

Local imports whose target cannot be found become PendingRecords on the
importing scope. Ambiguous names always resolve to one deterministic
choice.
"""

import posixpath
import re
from dataclasses import dataclass
from pathlib import Path

from ingestgraph import schema
from ingestgraph.identity import IdentityAssigner
from ingestgraph.log_config import get_logger
from ingestgraph.models import (
    GraphBatch,
    GraphNode,
    GraphRelationship,
    PendingRecord,
    RawReference,
    ReferenceType,
    ScopeRecord,
    SourceFile,
)
from ingestgraph.references.formats import FileFormat, classify_format, extension_of, is_local_path
from ingestgraph.references.imports import ImportResolver
from ingestgraph.references.resolver import PathResolver

log = get_logger("builder")

# Preference order when several same-named scopes compete for a reference
VALUE_KIND_ORDER = ("function", "class", "const", "constant", "method", "variable")
TYPE_KIND_ORDER = ("class", "interface", "type", "type_alias", "enum")

# Base names that never point at a project scope
_IGNORED_PYTHON_BASES = frozenset({"object", "ABC", "Protocol", "Generic", "Enum", "Exception", "NamedTuple"})

_EXTENDS_RE = re.compile(r"\bextends\s+([\w.]+)")
_PY_CLASS_RE = re.compile(r"^\s*class\s+\w+\s*\(([^)]*)\)\s*:")

# Document node label and id prefix per format
_DOCUMENT_KINDS: dict[FileFormat, tuple[str, str]] = {
    FileFormat.MARKDOWN: (schema.LABEL_MARKDOWN_DOCUMENT, "markdown"),
    FileFormat.HTML: (schema.LABEL_WEB_DOCUMENT, "webdoc"),
    FileFormat.STYLESHEET: (schema.LABEL_STYLESHEET, "stylesheet"),
    FileFormat.DATA: (schema.LABEL_DATA_FILE, "datafile"),
    FileFormat.TEXT: (schema.LABEL_GENERIC_FILE, "generic"),
}

_MEDIA_LABELS: dict[str, tuple[str, ...]] = {
    **dict.fromkeys(
        (".png", ".jpg", ".jpeg", ".gif", ".svg", ".webp", ".ico", ".bmp"),
        (schema.LABEL_IMAGE_FILE, schema.LABEL_MEDIA_FILE),
    ),
    **dict.fromkeys((".glb", ".gltf", ".obj", ".fbx"), (schema.LABEL_THREED_FILE, schema.LABEL_MEDIA_FILE)),
    **dict.fromkeys((".pdf", ".doc", ".docx"), (schema.LABEL_DOCUMENT_FILE,)),
}


@dataclass(frozen=True)
class ScopeRef:
    """A scope known to the builder, from this batch or already stored."""

    id: str
    name: str
    kind: str
    file: str
    start_line: int = 0
    end_line: int = 0
    parent: str | None = None


def library_name(source: str) -> str:
    """Package a non-local specifier belongs to (``@org/pkg/sub`` -> ``@org/pkg``)."""
    if source.startswith("@"):
        return "/".join(source.split("/")[:2])
    if "/" in source:
        return source.split("/")[0]
    return source.split(".")[0] if not source.startswith(".") else source


def _base_name(type_name: str) -> str:
    """``ns.Base<T>`` -> ``Base``."""
    return type_name.split("<")[0].split("[")[0].strip().split(".")[-1]


def _document_kind(path: str) -> tuple[str, str] | None:
    file_format = classify_format(path)
    if file_format == FileFormat.COMPONENT:
        if extension_of(path) == ".vue":
            return (schema.LABEL_VUE_SFC, "vue")
        return (schema.LABEL_SVELTE_COMPONENT, "svelte")
    return _DOCUMENT_KINDS.get(file_format)


def _pick(candidates: list[ScopeRef], order: tuple[str, ...]) -> ScopeRef | None:
    if not candidates:
        return None

    def rank(ref: ScopeRef) -> tuple[int, str, str]:
        kind_rank = order.index(ref.kind) if ref.kind in order else len(order)
        return (kind_rank, ref.file, ref.id)

    return min(candidates, key=rank)


class RelationshipBuilder:
    """Builds the graph batch for one ingestion of a project."""

    def __init__(
        self,
        identity: IdentityAssigner,
        import_resolver: ImportResolver | None = None,
        path_resolver: PathResolver | None = None,
    ):
        """Initialize the builder.

        Args:
            identity: Identity assigner shared across the ingestion
            import_resolver: Maps import specifiers to project files
            path_resolver: Computes pending target paths for unresolved imports
        """
        self.identity = identity
        self.import_resolver = import_resolver
        self.path_resolver = path_resolver or PathResolver()

    def build(
        self,
        project_id: str,
        files: list[SourceFile],
        project_root: str | Path | None = None,
        project_name: str | None = None,
        existing_scopes: list[ScopeRef] | None = None,
        existing_files: list[str] | None = None,
    ) -> GraphBatch:
        """Build nodes, relationships and pending records for ``files``.

        Args:
            project_id: Project the files belong to
            files: Parsed files, paths relative to the project root
            project_root: Root directory (stored on the Project node)
            project_name: Display name (default: last path component of the root)
            existing_scopes: Scopes already stored for files outside this batch
            existing_files: File paths already stored for the project

        Returns:
            GraphBatch ready for the merge engine

        Raises:
            ValueError: The identity assigner is namespaced to another project
        """
        if self.identity.project_id and self.identity.project_id != project_id:
            raise ValueError(f"Identity assigner belongs to {self.identity.project_id}, not {project_id}")

        batch = GraphBatch()
        root = str(project_root) if project_root is not None else ""
        name = project_name or (Path(root).name if root else project_id)

        batch.add_node(GraphNode(
            labels=(schema.LABEL_PROJECT,),
            id=project_id,
            properties={"projectId": project_id, "name": name, "rootPath": root},
        ))

        in_batch = {f.path for f in files}
        known: list[ScopeRef] = [s for s in (existing_scopes or []) if s.file not in in_batch]
        known_files = in_batch | set(existing_files or []) | {s.file for s in known}
        scope_ids: dict[int, str] = {}

        for source in files:
            file_id = self._add_file(batch, project_id, source)
            self._add_document(batch, project_id, source, file_id)
            for scope in source.scopes:
                scope_id = self.identity.scope_id(scope, source.path)
                scope_ids[id(scope)] = scope_id
                known.append(ScopeRef(
                    scope_id, scope.name, scope.kind, source.path, scope.start_line, scope.end_line, scope.parent_name
                ))
                self._add_scope(batch, project_id, source.path, file_id, scope, scope_id)

        by_file: dict[str, list[ScopeRef]] = {}
        by_name: dict[str, list[ScopeRef]] = {}
        for ref in known:
            by_file.setdefault(ref.file, []).append(ref)
            by_name.setdefault(ref.name, []).append(ref)

        pending: dict[str, PendingRecord] = {}
        for source in files:
            for scope in source.scopes:
                scope_id = scope_ids[id(scope)]
                self._link_parent(batch, scope, scope_id, by_file.get(source.path, []))
                self._link_local_uses(batch, scope, scope_id, by_file.get(source.path, []))
                self._link_imports(
                    batch, project_id, root, source.path, scope, scope_id, by_file, by_name, known_files, pending
                )
                self._link_heritage(batch, scope, scope_id, source.path, by_file, by_name)
                self._link_decorators(batch, scope, scope_id, source.path, by_file, by_name)

        for record in pending.values():
            batch.add_pending(record)

        log.info(
            f"Built batch for {project_id}: {len(batch.nodes)} nodes, "
            f"{len(batch.relationships)} relationships, {len(batch.pending)} pending"
        )
        return batch

    # =========================================================================
    # Containment
    # =========================================================================

    def _add_directories(self, batch: GraphBatch, project_id: str, directory: str) -> str | None:
        """Add the directory chain of a path; returns the innermost directory id."""
        if not directory:
            return None
        parts = directory.split("/")
        parent_id = None
        for depth in range(1, len(parts) + 1):
            path = "/".join(parts[:depth])
            dir_id = self.identity.directory_id(path)
            batch.add_node(GraphNode(
                labels=(schema.LABEL_DIRECTORY,),
                id=dir_id,
                properties={"path": path, "name": parts[depth - 1], "projectId": project_id, "depth": depth},
            ))
            batch.add_relationship(GraphRelationship(schema.REL_BELONGS_TO, dir_id, project_id))
            if parent_id is not None:
                batch.add_relationship(GraphRelationship(schema.REL_PARENT_OF, parent_id, dir_id))
            parent_id = dir_id
        return parent_id

    def _add_file(self, batch: GraphBatch, project_id: str, source: SourceFile) -> str:
        ext = extension_of(source.path)
        file_id = self.identity.file_id(source.path)
        labels = (*_MEDIA_LABELS.get(ext, ()), schema.LABEL_FILE)
        props = {
            "path": source.path,
            "file": source.path,
            "name": posixpath.basename(source.path),
            "extension": ext,
            "projectId": project_id,
            "contentHash": self.identity.text_hash(source.content),
            "lineCount": source.content.count("\n") + 1 if source.content else 0,
        }
        batch.add_node(GraphNode(labels=labels, id=file_id, properties=props))
        batch.add_relationship(GraphRelationship(schema.REL_BELONGS_TO, file_id, project_id))

        dir_id = self._add_directories(batch, project_id, posixpath.dirname(source.path))
        if dir_id is not None:
            batch.add_relationship(GraphRelationship(schema.REL_IN_DIRECTORY, file_id, dir_id))
        return file_id

    def document_id_for(self, path: str) -> str | None:
        """Id of the document node a file gets, None for plain code and binary files."""
        kind = _document_kind(path)
        return self.identity.document_id(kind[1], path) if kind else None

    def _add_document(self, batch: GraphBatch, project_id: str, source: SourceFile, file_id: str) -> None:
        kind = _document_kind(source.path)
        if kind is None:
            return

        label, prefix = kind
        doc_id = self.identity.document_id(prefix, source.path)
        title = next((s.title for s in source.sections if s.level == 1), None)
        batch.add_node(GraphNode(
            labels=(label,),
            id=doc_id,
            properties={
                "file": source.path,
                "name": posixpath.basename(source.path),
                "title": title,
                "content": source.content,
                "contentHash": self.identity.text_hash(source.content),
                "projectId": project_id,
            },
        ))
        batch.add_relationship(GraphRelationship(schema.REL_DEFINED_IN, doc_id, file_id))
        batch.add_relationship(GraphRelationship(schema.REL_BELONGS_TO, doc_id, project_id))

        section_ids: dict[int, str] = {}
        for section in source.sections:
            section_id = self.identity.section_id(source.path, section.start_line)
            section_ids[section.start_line] = section_id
            batch.add_node(GraphNode(
                labels=(schema.LABEL_MARKDOWN_SECTION,),
                id=section_id,
                properties={
                    "title": section.title,
                    "level": section.level,
                    "startLine": section.start_line,
                    "endLine": section.end_line,
                    "content": section.content,
                    "contentHash": self.identity.text_hash(f"{section.title}\n{section.content}"),
                    "file": source.path,
                    "projectId": project_id,
                },
            ))
            batch.add_relationship(GraphRelationship(schema.REL_HAS_SECTION, doc_id, section_id))

        for section in source.sections:
            parent_id = section_ids.get(section.parent_start_line) if section.parent_start_line else None
            if parent_id is not None:
                batch.add_relationship(
                    GraphRelationship(schema.REL_CHILD_OF, section_ids[section.start_line], parent_id)
                )

        for block in source.code_blocks:
            block_id = self.identity.code_block_id(source.path, block.start_line)
            batch.add_node(GraphNode(
                labels=(schema.LABEL_CODE_BLOCK,),
                id=block_id,
                properties={
                    "language": block.language,
                    "startLine": block.start_line,
                    "endLine": block.end_line,
                    "content": block.content,
                    "contentHash": self.identity.text_hash(block.content),
                    "file": source.path,
                    "projectId": project_id,
                },
            ))
            owner = section_ids.get(block.section_start_line, doc_id) if block.section_start_line else doc_id
            batch.add_relationship(GraphRelationship(schema.REL_HAS_CODE_BLOCK, owner, block_id))

    def _add_scope(
        self,
        batch: GraphBatch,
        project_id: str,
        path: str,
        file_id: str,
        scope: ScopeRecord,
        scope_id: str,
    ) -> None:
        props = {
            "name": scope.name,
            "type": scope.kind,
            "file": path,
            "startLine": scope.start_line,
            "endLine": scope.end_line,
            "content": scope.content,
            "signature": scope.signature or None,
            "docstring": scope.docstring,
            "parentName": scope.parent_name,
            "returnType": scope.return_type,
            "value": scope.value,
            "parameters": [f"{p.name}: {p.type}" if p.type else p.name for p in scope.parameters],
            "modifiers": list(scope.modifiers),
            "decorators": list(scope.decorators),
            "generics": list(scope.generics),
            "contentHash": self.identity.content_hash(scope),
            "projectId": project_id,
        }
        batch.add_node(GraphNode(labels=(schema.LABEL_SCOPE,), id=scope_id, properties=props))
        batch.add_relationship(GraphRelationship(schema.REL_DEFINED_IN, scope_id, file_id))
        batch.add_relationship(GraphRelationship(schema.REL_BELONGS_TO, scope_id, project_id))

    # =========================================================================
    # Scope relationships
    # =========================================================================

    @staticmethod
    def _link_parent(batch: GraphBatch, scope: ScopeRecord, scope_id: str, same_file: list[ScopeRef]) -> None:
        if not scope.parent_name:
            return
        candidates = [s for s in same_file if s.name == scope.parent_name and s.id != scope_id]
        enclosing = [
            s for s in candidates if s.start_line <= scope.start_line and s.end_line >= scope.end_line
        ]
        parent = _pick(enclosing or candidates, TYPE_KIND_ORDER + VALUE_KIND_ORDER)
        if parent is not None:
            batch.add_relationship(GraphRelationship(schema.REL_HAS_PARENT, scope_id, parent.id))

    @staticmethod
    def _link_local_uses(batch: GraphBatch, scope: ScopeRecord, scope_id: str, same_file: list[ScopeRef]) -> None:
        for ref in scope.identifier_references:
            if ref.kind != "local_scope":
                continue
            target = _pick(
                [s for s in same_file if s.name == ref.identifier and s.id != scope_id],
                VALUE_KIND_ORDER,
            )
            if target is not None:
                batch.add_relationship(GraphRelationship(schema.REL_CONSUMES, scope_id, target.id))

    def _link_imports(
        self,
        batch: GraphBatch,
        project_id: str,
        root: str,
        path: str,
        scope: ScopeRecord,
        scope_id: str,
        by_file: dict[str, list[ScopeRef]],
        by_name: dict[str, list[ScopeRef]],
        known_files: set[str],
        pending: dict[str, PendingRecord],
    ) -> None:
        imports: list[tuple[str, str]] = []
        for ref in scope.identifier_references:
            if ref.kind == "import" and ref.source:
                imports.append((ref.source, ref.identifier))
        for imp in scope.import_references:
            imports.append((imp.source, imp.imported))

        for source, symbol in dict.fromkeys(imports):
            if not is_local_path(source):
                self._link_library(batch, scope_id, source, symbol)
                continue

            target_id = self._resolve_import_target(path, source, symbol, by_file, by_name, known_files)
            if target_id is not None:
                if target_id != scope_id:
                    batch.add_relationship(GraphRelationship(
                        schema.REL_CONSUMES, scope_id, target_id, {"importedFrom": source}
                    ))
                continue

            self._add_pending(pending, project_id, root, path, scope_id, source, symbol)

    def _resolve_import_target(
        self,
        path: str,
        source: str,
        symbol: str,
        by_file: dict[str, list[ScopeRef]],
        by_name: dict[str, list[ScopeRef]],
        known_files: set[str],
    ) -> str | None:
        """Id of the scope (or module file) an import names, None when not in the graph yet.

        Without an import resolver a name defined in exactly one other file
        is taken as the target. With one, an unresolvable specifier stays
        unresolved so the reference is deferred rather than guessed.
        """
        if self.import_resolver is None:
            candidates = [s for s in by_name.get(symbol, []) if s.file != path]
            return candidates[0].id if len(candidates) == 1 else None

        target_file = self.import_resolver.resolve_import(source, path)
        if target_file is None:
            return None
        target_file = self.import_resolver.follow_re_exports(target_file, symbol)
        scope = _pick([s for s in by_file.get(target_file, []) if s.name == symbol], VALUE_KIND_ORDER)
        if scope is not None:
            return scope.id
        if target_file in known_files and (symbol in ("*", "default") or not by_file.get(target_file)):
            return self.identity.file_id(target_file)
        return None

    def _add_pending(
        self,
        pending: dict[str, PendingRecord],
        project_id: str,
        root: str,
        path: str,
        scope_id: str,
        source: str,
        symbol: str,
    ) -> None:
        ref = RawReference(source=source, type=ReferenceType.CODE, symbols=[symbol], is_local=True)
        target_path = self.path_resolver.guess_target(ref, path)
        if target_path is None:
            log.debug(f"Import {source} in {path} points outside the project")
            return
        record = PendingRecord(
            source_id=scope_id,
            project_id=project_id,
            file=path,
            target_path=target_path,
            relation_type=schema.REL_CONSUMES,
            symbols=[symbol],
            absolute_path=str(Path(root) / target_path) if root else target_path,
        )
        existing = pending.get(record.id)
        if existing is None:
            pending[record.id] = record
        elif symbol not in existing.symbols:
            existing.symbols.append(symbol)

    def _link_library(self, batch: GraphBatch, scope_id: str, source: str, symbol: str) -> None:
        name = library_name(source)
        lib_id = self.identity.library_id(name)
        batch.add_node(GraphNode(
            labels=(schema.LABEL_EXTERNAL_LIBRARY,),
            id=lib_id,
            properties={"name": name},
        ))
        batch.add_relationship(GraphRelationship(
            schema.REL_USES_LIBRARY,
            scope_id,
            lib_id,
            {"symbol": symbol or "*", "source": source},
            merge_keys=("symbol",),
        ))

    def _lookup(
        self,
        name: str,
        path: str,
        by_file: dict[str, list[ScopeRef]],
        by_name: dict[str, list[ScopeRef]],
        order: tuple[str, ...],
        exclude: str,
    ) -> ScopeRef | None:
        """Same-file match first, then one deterministic global match."""
        same_file = [s for s in by_file.get(path, []) if s.name == name and s.id != exclude]
        if same_file:
            return _pick(same_file, order)
        return _pick([s for s in by_name.get(name, []) if s.id != exclude], order)

    def _link_heritage(
        self,
        batch: GraphBatch,
        scope: ScopeRecord,
        scope_id: str,
        path: str,
        by_file: dict[str, list[ScopeRef]],
        by_name: dict[str, list[ScopeRef]],
    ) -> None:
        if scope.heritage:
            for clause in scope.heritage:
                rel_type = schema.REL_IMPLEMENTS if clause.clause == "implements" else schema.REL_INHERITS_FROM
                for type_name in clause.types:
                    target = self._lookup(_base_name(type_name), path, by_file, by_name, TYPE_KIND_ORDER, scope_id)
                    if target is not None:
                        batch.add_relationship(GraphRelationship(
                            rel_type, scope_id, target.id, {"explicit": True, "clause": clause.clause}
                        ))
            return

        if scope.kind not in ("class", "interface"):
            return
        for base in self._heuristic_bases(scope):
            target = self._lookup(base, path, by_file, by_name, TYPE_KIND_ORDER, scope_id)
            if target is None or batch.has_relationship(schema.REL_INHERITS_FROM, scope_id, target.id):
                continue
            batch.add_relationship(GraphRelationship(
                schema.REL_INHERITS_FROM, scope_id, target.id, {"explicit": False}
            ))

    @staticmethod
    def _heuristic_bases(scope: ScopeRecord) -> list[str]:
        """Base names read from the signature or the first line of a Python class."""
        bases = []
        match = _EXTENDS_RE.search(scope.signature or "")
        if match:
            bases.append(_base_name(match.group(1)))
        first_line = scope.content.lstrip().split("\n", 1)[0] if scope.content else ""
        py_match = _PY_CLASS_RE.match(first_line)
        if py_match:
            for part in py_match.group(1).split(","):
                part = part.strip()
                if not part or "=" in part:
                    continue
                name = _base_name(part)
                if name not in _IGNORED_PYTHON_BASES:
                    bases.append(name)
        return list(dict.fromkeys(bases))

    def _link_decorators(
        self,
        batch: GraphBatch,
        scope: ScopeRecord,
        scope_id: str,
        path: str,
        by_file: dict[str, list[ScopeRef]],
        by_name: dict[str, list[ScopeRef]],
    ) -> None:
        for decorator in scope.decorators:
            name = decorator.lstrip("@").split("(")[0].strip().split(".")[-1]
            if not name:
                continue
            target = self._lookup(name, path, by_file, by_name, ("function", "class"), scope_id)
            if target is not None and target.kind in ("function", "class"):
                batch.add_relationship(GraphRelationship(
                    schema.REL_DECORATED_BY, scope_id, target.id, {"decorator": decorator}
                ))
