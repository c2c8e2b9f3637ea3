"""Deterministic identity assignment for graph entities.

Four id strategies, chosen per entity kind:
- by-path: files, directories, whole documents
- by-signature: code scopes (parent-qualified signature hash)
- by-content: external libraries and URLs
- by-position: sections and code blocks inside a document

Content hashes are computed separately from the implementation body and
are used only for change detection, never for identity.
"""

import textwrap
from collections import defaultdict

from ingestgraph.hashing import deterministic_uuid, short_hash
from ingestgraph.log_config import get_logger
from ingestgraph.models import ScopeParameter, ScopeRecord

log = get_logger("identity")

# Kinds whose name and signature are not unique within a file
POSITIONAL_KINDS = frozenset({"variable", "constant"})


def _format_parameter(param: ScopeParameter) -> str:
    text = param.name + ("?" if param.optional else "")
    if param.type:
        text += f": {param.type}"
    return text


def signature_of(scope: ScopeRecord) -> str:
    """Signature string for a scope.

    Uses the parser's signature when present, otherwise builds one from
    modifiers, kind, name, parameters and return type. The body never takes
    part, so edits inside a function keep its signature.
    """
    if scope.signature and scope.signature.strip():
        return " ".join(scope.signature.split())

    parts = [*scope.modifiers, scope.kind, scope.name]
    sig = " ".join(p for p in parts if p)
    if scope.generics:
        sig += f"<{', '.join(scope.generics)}>"
    if scope.parameters or scope.kind in ("function", "method", "constructor"):
        sig += f"({', '.join(_format_parameter(p) for p in scope.parameters)})"
    if scope.return_type:
        sig += f": {scope.return_type}"
    return sig


def normalize_body(content: str) -> str:
    """Strip common indentation, trailing whitespace and blank edges."""
    lines = [line.rstrip() for line in textwrap.dedent(content.expandtabs(4)).splitlines()]
    while lines and not lines[0]:
        lines.pop(0)
    while lines and not lines[-1]:
        lines.pop()
    return "\n".join(lines)


class IdentityAssigner:
    """Assigns stable ids and content hashes.

    By-path, by-signature and by-position ids are namespaced by
    ``project_id``, so the same relative path in two projects gives two
    nodes. Libraries and URLs are shared between projects and keep a
    project-free id.

    Holds a per-file cache from ``name:kind:signatureHash`` to id. Workers
    processing disjoint file sets can each own an instance.
    """

    def __init__(self, project_id: str = ""):
        self.project_id = project_id
        self._namespace = f"{project_id}:" if project_id else ""
        self._cache: dict[str, dict[str, str]] = defaultdict(dict)
        self._existing: dict[str, dict[tuple, list[str]]] = defaultdict(lambda: defaultdict(list))
        self._assigned: dict[str, set[str]] = defaultdict(set)

    def _id(self, value: str) -> str:
        return deterministic_uuid(self._namespace + value)

    # -------------------------------------------------------------------------
    # by-path
    # -------------------------------------------------------------------------

    def file_id(self, path: str) -> str:
        return self._id(f"file:{path}")

    def directory_id(self, path: str) -> str:
        return self._id(f"dir:{path}")

    def document_id(self, prefix: str, path: str) -> str:
        """Id of a whole-document node, e.g. ``document_id("markdown", "README.md")``."""
        return self._id(f"{prefix}:{path}")

    # -------------------------------------------------------------------------
    # by-signature
    # -------------------------------------------------------------------------

    @staticmethod
    def signature_hash(scope: ScopeRecord) -> str:
        parent_prefix = f"{scope.parent_name}." if scope.parent_name else ""
        value = parent_prefix + signature_of(scope)
        if scope.kind in POSITIONAL_KINDS:
            value += f":line{scope.start_line}"
        return short_hash(value, 8)

    def _natural_id(self, scope: ScopeRecord, file_path: str) -> str:
        return self._id(f"{file_path}:{scope.name}:{scope.kind}:{self.signature_hash(scope)}")

    def seed_existing(
        self,
        file_path: str,
        entries: list[tuple[str | None, str, str, str]],
        scopes: list[ScopeRecord] | None = None,
    ) -> None:
        """Register ids already stored for a file.

        ``entries`` are ``(parent_name, name, kind, id)`` tuples in
        declaration order. Ids that one of the file's current ``scopes``
        computes anyway are left to that scope. The rest are handed out in
        order to new scopes with the same parent, name and kind, so a scope
        whose signature changed keeps its id.
        """
        natural = {self._natural_id(s, file_path) for s in scopes or []}
        for parent_name, name, kind, scope_id in entries:
            if scope_id in natural or kind in POSITIONAL_KINDS:
                continue
            self._existing[file_path][(parent_name or None, name, kind)].append(scope_id)

    def scope_id(self, scope: ScopeRecord, file_path: str | None = None) -> str:
        file_path = file_path or scope.file
        cache_key = f"{scope.name}:{scope.kind}:{self.signature_hash(scope)}"

        file_cache = self._cache[file_path]
        cached = file_cache.get(cache_key)
        if cached is not None:
            return cached

        assigned = self._assigned[file_path]
        scope_id = self._natural_id(scope, file_path)
        stored = self._existing.get(file_path, {}).get((scope.parent_name or None, scope.name, scope.kind), [])
        if scope_id in stored:
            stored.remove(scope_id)
        else:
            while stored:
                candidate = stored.pop(0)
                if candidate not in assigned:
                    log.trace(f"Reusing stored id for {file_path}:{scope.name}")
                    scope_id = candidate
                    break

        assigned.add(scope_id)
        file_cache[cache_key] = scope_id
        return scope_id

    def clear_file(self, file_path: str) -> None:
        self._cache.pop(file_path, None)
        self._existing.pop(file_path, None)
        self._assigned.pop(file_path, None)

    # -------------------------------------------------------------------------
    # by-content
    # -------------------------------------------------------------------------

    @staticmethod
    def library_id(name: str) -> str:
        return deterministic_uuid(f"lib:{name}")

    @staticmethod
    def url_id(url: str) -> str:
        return deterministic_uuid(f"url:{url}")

    # -------------------------------------------------------------------------
    # by-position
    # -------------------------------------------------------------------------

    def section_id(self, path: str, start_line: int) -> str:
        return self._id(f"section:{path}:{start_line}")

    def code_block_id(self, path: str, start_line: int) -> str:
        return self._id(f"codeblock:{path}:{start_line}")

    # -------------------------------------------------------------------------
    # change detection
    # -------------------------------------------------------------------------

    @staticmethod
    def content_hash(scope: ScopeRecord) -> str:
        """Hash of the meaningful content of a scope, independent of its id."""
        parent_prefix = f"{scope.parent_name}." if scope.parent_name else ""
        docstring = normalize_body(scope.docstring or "")
        body = normalize_body(scope.content)
        return short_hash(f"{parent_prefix}{scope.name}:{scope.kind}:{docstring}:{body}", 16)

    @staticmethod
    def text_hash(text: str) -> str:
        return short_hash(normalize_body(text), 16)
