"""Import resolution collaborator for the relationship builder.

Maps a module specifier seen in one file to the project file it names,
and follows re-export chains (``export { x } from``, ``export * from``,
``from .mod import x`` in package ``__init__`` files) to the file that
actually declares a symbol. All paths are project-relative.
"""

import re
from pathlib import Path
from typing import Protocol

from ingestgraph.log_config import get_logger
from ingestgraph.models import RawReference, ReferenceType
from ingestgraph.references.formats import is_local_path
from ingestgraph.references.resolver import PathResolver

log = get_logger("references.imports")

_REEXPORT = re.compile(r"export\s+(?:type\s+)?\{([\s\S]*?)\}\s*from\s*['\"]([^'\"]+)['\"]")
_EXPORT_ALL = re.compile(r"export\s*\*\s*from\s*['\"]([^'\"]+)['\"]")
_PY_REEXPORT = re.compile(r"^\s*from\s+(\.[\w.]*)\s+import\s+([^#\n(]+)", re.MULTILINE)


class ImportResolver(Protocol):
    """What the relationship builder needs to link imports across files."""

    def resolve_import(self, specifier: str, current_file: str) -> str | None:
        """Project-relative path of the module ``specifier`` names, or None."""
        ...

    def follow_re_exports(self, path: str, symbol: str) -> str:
        """File that declares ``symbol`` when reached through ``path``."""
        ...


def _alias_map(block: str) -> dict[str, str]:
    """Exported name -> name in the source module for an export list."""
    mapping = {}
    for part in block.split(","):
        part = re.sub(r"^type\s+", "", part.strip())
        if not part:
            continue
        pieces = re.split(r"\s+as\s+", part)
        original = pieces[0].strip()
        exported = pieces[-1].strip()
        mapping[exported] = original
    return mapping


def _declares(content: str, symbol: str) -> bool:
    name = re.escape(symbol)
    script = re.compile(
        rf"(?:^|\n)\s*(?:export\s+)?(?:default\s+)?(?:declare\s+)?(?:abstract\s+)?(?:async\s+)?"
        rf"(?:function\*?|class|const|let|var|interface|type|enum)\s+{name}\b"
    )
    python = re.compile(rf"(?:^|\n)(?:async\s+def|def|class)\s+{name}\b|(?:^|\n){name}\s*(?::[^=\n]+)?=")
    return bool(script.search(content) or python.search(content))


class FileSystemImportResolver:
    """Import resolver reading files under a project root."""

    def __init__(self, project_root: str | Path, resolver: PathResolver | None = None, max_depth: int = 10):
        self.project_root = Path(project_root)
        self.resolver = resolver or PathResolver()
        self.max_depth = max_depth
        self._contents: dict[str, str | None] = {}

    def _read(self, path: str) -> str | None:
        if path not in self._contents:
            try:
                self._contents[path] = (self.project_root / path).read_text(encoding="utf-8", errors="replace")
            except OSError as e:
                log.debug(f"Cannot read {path}: {e}")
                self._contents[path] = None
        return self._contents[path]

    def resolve_import(self, specifier: str, current_file: str) -> str | None:
        ref = RawReference(source=specifier, type=ReferenceType.CODE, is_local=is_local_path(specifier))
        resolved = self.resolver.resolve(ref, current_file, self.project_root)
        return resolved.relative_path if resolved else None

    def follow_re_exports(self, path: str, symbol: str) -> str:
        if symbol in ("*", "default"):
            return path
        found = self._follow(path, symbol, 0, set())
        if found and found != path:
            log.trace(f"{symbol}: {path} re-exports from {found}")
        return found or path

    def _follow(self, path: str, symbol: str, depth: int, visited: set[tuple[str, str]]) -> str | None:
        if depth > self.max_depth or (path, symbol) in visited:
            return None
        visited.add((path, symbol))

        content = self._read(path)
        if content is None:
            return None
        if _declares(content, symbol):
            return path

        for source, name in self._re_export_sources(content, symbol):
            target = self.resolve_import(source, path)
            if target is None:
                continue
            found = self._follow(target, name, depth + 1, visited)
            if found:
                return found
        return None

    @staticmethod
    def _re_export_sources(content: str, symbol: str) -> list[tuple[str, str]]:
        """(specifier, name in that module) pairs that may provide ``symbol``."""
        sources = []
        for match in _REEXPORT.finditer(content):
            mapping = _alias_map(match.group(1))
            if symbol in mapping:
                sources.append((match.group(2), mapping[symbol]))
        for match in _PY_REEXPORT.finditer(content):
            mapping = _alias_map(match.group(2))
            if symbol in mapping:
                sources.append((match.group(1), mapping[symbol]))
        for match in _EXPORT_ALL.finditer(content):
            sources.append((match.group(1), symbol))
        return sources
