"""File-system import resolver tests.

Tests:
- resolve_import() - relative specifiers, extension lookup, packages
- follow_re_exports() - export lists, export *, Python __init__ re-exports
- cycle and depth guards
"""

from __future__ import annotations

from pathlib import Path

import pytest

from ingestgraph.references.imports import FileSystemImportResolver


def write(root: Path, files: dict[str, str]) -> None:
    for path, content in files.items():
        target = root / path
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content)


@pytest.fixture
def project(tmp_path) -> Path:
    write(tmp_path, {
        "src/app.ts": "import { format } from './lib';\n",
        "src/lib/index.ts": "export { format, parse as read } from './format';\nexport * from './dates';\n",
        "src/lib/format.ts": "export function format(v: string) { return v; }\nexport const parse = () => 1;\n",
        "src/lib/dates.ts": "export class Calendar {}\n",
        "pkg/__init__.py": "from .models import User, Group as Team\n",
        "pkg/models.py": "class User:\n    pass\n\n\nclass Group:\n    pass\n",
    })
    return tmp_path


class TestResolveImport:
    """Tests for mapping specifiers to project files."""

    def test_directory_index(self, project):
        resolver = FileSystemImportResolver(project)
        assert resolver.resolve_import("./lib", "src/app.ts") == "src/lib/index.ts"

    def test_extension_appended(self, project):
        resolver = FileSystemImportResolver(project)
        assert resolver.resolve_import("./format", "src/lib/index.ts") == "src/lib/format.ts"

    def test_python_relative_module(self, project):
        resolver = FileSystemImportResolver(project)
        assert resolver.resolve_import(".models", "pkg/__init__.py") == "pkg/models.py"

    @pytest.mark.parametrize("specifier", ["react", "./missing", "../../outside"])
    def test_unresolvable(self, project, specifier):
        assert FileSystemImportResolver(project).resolve_import(specifier, "src/app.ts") is None


class TestFollowReExports:
    """Tests for locating the declaring file of a symbol."""

    def test_named_re_export(self, project):
        resolver = FileSystemImportResolver(project)
        assert resolver.follow_re_exports("src/lib/index.ts", "format") == "src/lib/format.ts"

    def test_aliased_re_export(self, project):
        resolver = FileSystemImportResolver(project)
        assert resolver.follow_re_exports("src/lib/index.ts", "read") == "src/lib/format.ts"

    def test_export_all(self, project):
        resolver = FileSystemImportResolver(project)
        assert resolver.follow_re_exports("src/lib/index.ts", "Calendar") == "src/lib/dates.ts"

    def test_python_package_init(self, project):
        resolver = FileSystemImportResolver(project)
        assert resolver.follow_re_exports("pkg/__init__.py", "User") == "pkg/models.py"
        assert resolver.follow_re_exports("pkg/__init__.py", "Team") == "pkg/models.py"

    def test_declaring_file_is_itself(self, project):
        resolver = FileSystemImportResolver(project)
        assert resolver.follow_re_exports("src/lib/format.ts", "format") == "src/lib/format.ts"

    @pytest.mark.parametrize("symbol", ["*", "default", "Unknown"])
    def test_falls_back_to_path(self, project, symbol):
        resolver = FileSystemImportResolver(project)
        assert resolver.follow_re_exports("src/lib/index.ts", symbol) == "src/lib/index.ts"

    def test_unreadable_file(self, tmp_path):
        resolver = FileSystemImportResolver(tmp_path)
        assert resolver.follow_re_exports("gone.ts", "x") == "gone.ts"


class TestGuards:
    """Tests for re-export cycles and chain depth."""

    def test_cycle_terminates(self, tmp_path):
        write(tmp_path, {
            "a.ts": "export * from './b';\n",
            "b.ts": "export * from './a';\n",
        })
        resolver = FileSystemImportResolver(tmp_path)
        assert resolver.follow_re_exports("a.ts", "missing") == "a.ts"

    def test_depth_limit(self, tmp_path):
        files = {f"m{i}.ts": f"export * from './m{i + 1}';\n" for i in range(5)}
        files["m5.ts"] = "export const deep = 1;\n"
        write(tmp_path, files)

        assert FileSystemImportResolver(tmp_path).follow_re_exports("m0.ts", "deep") == "m5.ts"
        assert FileSystemImportResolver(tmp_path, max_depth=2).follow_re_exports("m0.ts", "deep") == "m0.ts"
