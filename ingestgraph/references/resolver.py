"""Exact resolution of local references to files.

Lookup order for a reference target:
1. the path as written
2. the source sibling of a transpiled extension (``.js`` -> ``.ts``/``.tsx``)
3. the path with each source extension appended
4. the path as a directory holding an index file

The existence check is injected so the same resolver works against the
file system during ingestion and against the graph's known file set
during pending sweeps.
"""

import posixpath
from pathlib import Path
from typing import Callable, Iterable, Iterator

from ingestgraph.log_config import get_logger
from ingestgraph.models import RawReference, ResolvedReference
from ingestgraph.references.formats import TYPE_BY_EXTENSION, extension_of, relation_type_for

log = get_logger("references.resolver")

SOURCE_EXTENSIONS = (".ts", ".tsx", ".js", ".jsx", ".mjs", ".cjs", ".vue", ".svelte", ".py")
INDEX_FILES = ("index.ts", "index.tsx", "index.js", "index.jsx", "index.mjs", "__init__.py")
TRANSPILED_SOURCES = {
    ".js": (".ts", ".tsx"),
    ".jsx": (".tsx",),
}

ExistsCheck = Callable[[str], bool]


def normalize_relative(path: str) -> str | None:
    """Normalize a project-relative path; None when it leaves the project."""
    normalized = posixpath.normpath(path.replace("\\", "/"))
    if normalized in (".", "") or normalized == ".." or normalized.startswith("../"):
        return None
    return normalized


def python_module_to_path(source: str, source_file: str) -> str | None:
    """Turn a dotted relative module (``..pkg.mod``) into a relative path."""
    dots = len(source) - len(source.lstrip("."))
    module = source[dots:]
    base_dir = posixpath.dirname(source_file)
    for _ in range(dots - 1):
        if not base_dir:
            return None
        base_dir = posixpath.dirname(base_dir)
    target = posixpath.join(base_dir, module.replace(".", "/")) if module else base_dir
    return normalize_relative(target) if target else None


class PathResolver:
    """Resolves local references to existing project files."""

    def __init__(self, exists: ExistsCheck | None = None):
        """Initialize resolver.

        Args:
            exists: Predicate over project-relative paths. Defaults to a
                file-system check under the project root.
        """
        self._exists = exists

    @classmethod
    def for_known_paths(cls, paths: Iterable[str]) -> "PathResolver":
        known = frozenset(paths)
        return cls(exists=known.__contains__)

    def _file_exists(self, project_root: str | Path, relative: str) -> bool:
        if self._exists is not None:
            return self._exists(relative)
        return (Path(project_root) / relative).is_file()

    def guess_target(self, ref: RawReference, source_file: str) -> str | None:
        """Project-relative path a local reference points at, before extensions are tried."""
        source = ref.source.strip()
        if not source:
            return None
        if source.startswith(".") and "/" not in source and source_file.endswith((".py", ".pyw")):
            return python_module_to_path(source, source_file)
        if source.startswith("/"):
            return normalize_relative(source.lstrip("/"))
        return normalize_relative(posixpath.join(posixpath.dirname(source_file), source))

    @staticmethod
    def candidates(base: str) -> Iterator[str]:
        """Paths tried for a base target, in order."""
        ext = extension_of(base)
        yield base

        for alt in TRANSPILED_SOURCES.get(ext, ()):
            yield base[: -len(ext)] + alt

        if ext not in TYPE_BY_EXTENSION:
            for source_ext in SOURCE_EXTENSIONS:
                yield base + source_ext

        for index_file in INDEX_FILES:
            yield f"{base}/{index_file}"

    def locate(self, base: str, project_root: str | Path = ".") -> str | None:
        """First existing candidate for a base target, or None."""
        for candidate in self.candidates(base):
            if self._file_exists(project_root, candidate):
                return candidate
        return None

    def resolve(
        self,
        ref: RawReference,
        source_file: str,
        project_root: str | Path,
    ) -> ResolvedReference | None:
        """Resolve a reference from ``source_file`` (project-relative).

        Non-local references return None and are not tracked further.
        """
        if not ref.is_local:
            return None

        base = self.guess_target(ref, source_file)
        if base is None:
            log.trace(f"Reference {ref.source} from {source_file} leaves the project")
            return None

        found = self.locate(base, project_root)
        if found is not None:
            return ResolvedReference(
                reference=ref,
                absolute_path=str(Path(project_root) / found),
                relative_path=found,
                relation_type=relation_type_for(found),
            )

        log.trace(f"Unresolved reference {ref.source} from {source_file}")
        return None
