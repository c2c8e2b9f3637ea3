"""Per-format reference extraction.

``extract_references`` classifies a file and runs the one extractor
registered for its format. Extractors are generators, so a failure part
way through a file still keeps every reference yielded before it.
Extraction never raises.
"""

import re
from typing import Callable, Iterator

from ingestgraph.log_config import get_logger
from ingestgraph.models import RawReference, ReferenceType
from ingestgraph.references.formats import (
    FileFormat,
    classify_format,
    extension_of,
    is_local_path,
    reference_type_for,
)
from ingestgraph.references.generic import extract_generic_references

log = get_logger("references.extractor")

Extractor = Callable[[str], Iterator[RawReference]]

_EXTERNAL_PREFIXES = ("http://", "https://", "//")


def _line_of(content: str, index: int) -> int:
    return content.count("\n", 0, index) + 1


def _split_symbols(block: str) -> list[str]:
    """Split an import list into imported names, dropping ``type`` and aliases."""
    symbols = []
    for part in block.split(","):
        name = re.sub(r"^type\s+", "", part.strip())
        name = re.split(r"\s+as\s+", name)[0].strip()
        if name:
            symbols.append(name)
    return symbols


# =============================================================================
# TypeScript / JavaScript
# =============================================================================

_TS_NAMED_IMPORT = re.compile(r"import\s*(?:type\s+)?(?:\w+\s*,\s*)?\{([\s\S]*?)\}\s*from\s*['\"]([^'\"]+)['\"]")
_TS_DEFAULT_IMPORT = re.compile(r"import\s+(\w+)\s*(?:,\s*\{[^}]*\}\s*)?from\s*['\"]([^'\"]+)['\"]")
_TS_NAMESPACE_IMPORT = re.compile(r"import\s*\*\s*as\s+(\w+)\s*from\s*['\"]([^'\"]+)['\"]")
_TS_SIDE_EFFECT_IMPORT = re.compile(r"import\s+['\"]([^'\"]+)['\"]")
_TS_DESTRUCTURED_DYNAMIC = re.compile(
    r"(?:const|let|var)\s*\{([^}]+)\}\s*=\s*await\s+import\s*\(\s*['\"]([^'\"]+)['\"]\s*\)"
)
_TS_NAMESPACE_DYNAMIC = re.compile(
    r"(?:const|let|var)\s+(\w+)\s*=\s*await\s+import\s*\(\s*['\"]([^'\"]+)['\"]\s*\)"
)
_TS_INLINE_DYNAMIC = re.compile(r"\(\s*await\s+import\s*\(\s*['\"]([^'\"]+)['\"]\s*\)\s*\)\.(\w+)")
_TS_SIMPLE_DYNAMIC = re.compile(r"\bimport\s*\(\s*['\"]([^'\"]+)['\"]\s*\)")
_TS_REEXPORT = re.compile(r"export\s+(?:type\s+)?\{([\s\S]*?)\}\s*from\s*['\"]([^'\"]+)['\"]")
_TS_EXPORT_ALL = re.compile(r"export\s*\*\s*(?:as\s+\w+\s+)?from\s*['\"]([^'\"]+)['\"]")


def extract_script_references(content: str) -> Iterator[RawReference]:
    """Imports, dynamic imports and re-exports of TS/JS modules."""

    def code_ref(source: str, symbols: list[str], index: int) -> RawReference:
        return RawReference(
            source=source,
            symbols=symbols,
            type=ReferenceType.CODE,
            line=_line_of(content, index),
            is_local=is_local_path(source),
        )

    for match in _TS_NAMED_IMPORT.finditer(content):
        yield code_ref(match.group(2), _split_symbols(match.group(1)), match.start())

    for match in _TS_DEFAULT_IMPORT.finditer(content):
        if match.group(1) == "type":
            continue
        yield code_ref(match.group(2), ["default"], match.start())

    for match in _TS_NAMESPACE_IMPORT.finditer(content):
        yield code_ref(match.group(2), ["*"], match.start())

    for match in _TS_SIDE_EFFECT_IMPORT.finditer(content):
        source = match.group(1)
        yield RawReference(
            source=source,
            type=reference_type_for(source),
            line=_line_of(content, match.start()),
            is_local=is_local_path(source),
        )

    captured: set[tuple[str, int]] = set()

    for match in _TS_DESTRUCTURED_DYNAMIC.finditer(content):
        ref = code_ref(match.group(2), _split_symbols(match.group(1).replace(":", " as ")), match.start())
        captured.add((ref.source, ref.line))
        yield ref

    for match in _TS_NAMESPACE_DYNAMIC.finditer(content):
        ref = code_ref(match.group(2), ["*"], match.start())
        captured.add((ref.source, ref.line))
        yield ref

    for match in _TS_INLINE_DYNAMIC.finditer(content):
        ref = code_ref(match.group(1), [match.group(2)], match.start())
        captured.add((ref.source, ref.line))
        yield ref

    for match in _TS_SIMPLE_DYNAMIC.finditer(content):
        ref = code_ref(match.group(1), ["*"], match.start())
        if (ref.source, ref.line) not in captured:
            captured.add((ref.source, ref.line))
            yield ref

    for match in _TS_REEXPORT.finditer(content):
        yield code_ref(match.group(2), _split_symbols(match.group(1)), match.start())

    for match in _TS_EXPORT_ALL.finditer(content):
        yield code_ref(match.group(1), ["*"], match.start())


# =============================================================================
# Python
# =============================================================================

_PY_FROM_IMPORT = re.compile(r"^\s*from\s+(\.*[\w.]*)\s+import\s+(.+)")
_PY_IMPORT = re.compile(r"^\s*import\s+([\w.]+(?:\s+as\s+\w+)?(?:\s*,\s*[\w.]+(?:\s+as\s+\w+)?)*)")


def extract_python_references(content: str) -> Iterator[RawReference]:
    """``from x import y`` and ``import x`` statements."""
    lines = content.splitlines()
    i = 0
    while i < len(lines):
        line = lines[i]
        line_no = i + 1
        i += 1

        from_match = _PY_FROM_IMPORT.match(line)
        if from_match:
            source = from_match.group(1)
            symbols_part = from_match.group(2).split("#")[0]
            # Parenthesized imports may continue over several lines
            if "(" in symbols_part and ")" not in symbols_part:
                while i < len(lines):
                    continuation = lines[i].split("#")[0]
                    symbols_part += " " + continuation
                    i += 1
                    if ")" in continuation:
                        break
            symbols = _split_symbols(symbols_part.replace("(", " ").replace(")", " ").replace("\\", " "))
            yield RawReference(
                source=source,
                symbols=symbols,
                type=ReferenceType.CODE,
                line=line_no,
                is_local=source.startswith("."),
            )
            continue

        import_match = _PY_IMPORT.match(line)
        if import_match:
            for module in import_match.group(1).split(","):
                name = re.split(r"\s+as\s+", module.strip())[0]
                yield RawReference(
                    source=name,
                    symbols=["*"],
                    type=ReferenceType.CODE,
                    line=line_no,
                    is_local=False,
                )


# =============================================================================
# Markdown
# =============================================================================

_MD_LINK = re.compile(r"(?<!!)\[([^\]\n]*)\]\(([^)\s]+)(?:\s+\"[^\"]*\")?\)")
_MD_IMAGE = re.compile(r"!\[([^\]\n]*)\]\(([^)\s]+)(?:\s+\"[^\"]*\")?\)")


def _blank_local_links(content: str) -> str:
    """Blank out local link syntax so the generic sweep does not re-read it."""

    def blank(match: re.Match) -> str:
        if match.group(2).startswith(_EXTERNAL_PREFIXES):
            return match.group(0)
        return " " * len(match.group(0))

    return _MD_IMAGE.sub(blank, _MD_LINK.sub(blank, content))


def extract_markdown_references(content: str) -> Iterator[RawReference]:
    """Links and images, followed by a generic sweep of the prose."""
    for index, line in enumerate(content.splitlines(), start=1):
        for match in _MD_LINK.finditer(line):
            target = match.group(2)
            if target.startswith(_EXTERNAL_PREFIXES + ("mailto:",)):
                continue
            target = target.split("#")[0]
            if not target:
                continue
            yield RawReference(
                source=target,
                type=reference_type_for(target, ReferenceType.DOCUMENT),
                line=index,
                is_local=True,
            )

        for match in _MD_IMAGE.finditer(line):
            target = match.group(2)
            if target.startswith(_EXTERNAL_PREFIXES + ("data:",)):
                continue
            yield RawReference(source=target, type=ReferenceType.ASSET, line=index, is_local=True)

    yield from extract_generic_references(_blank_local_links(content))


# =============================================================================
# CSS / SCSS / Less
# =============================================================================

_CSS_IMPORT = re.compile(r"@import\s+(?:url\s*\(\s*)?['\"]([^'\"]+)['\"]\s*\)?")
_CSS_URL = re.compile(r"url\s*\(\s*['\"]?([^'\")]+)['\"]?\s*\)")


def extract_stylesheet_references(content: str) -> Iterator[RawReference]:
    """``@import`` rules and ``url()`` values."""
    for index, line in enumerate(content.splitlines(), start=1):
        for match in _CSS_IMPORT.finditer(line):
            source = match.group(1)
            if source.startswith(_EXTERNAL_PREFIXES):
                continue
            yield RawReference(source=source, type=ReferenceType.STYLESHEET, line=index, is_local=True)

        if "@import" in line:
            continue
        for match in _CSS_URL.finditer(line):
            source = match.group(1).strip()
            if source.startswith(_EXTERNAL_PREFIXES + ("data:", "#")):
                continue
            yield RawReference(
                source=source,
                type=reference_type_for(source, ReferenceType.ASSET),
                line=index,
                is_local=True,
            )


# =============================================================================
# HTML
# =============================================================================

_HTML_SCRIPT = re.compile(r"<script[^>]+src\s*=\s*['\"]([^'\"]+)['\"]", re.IGNORECASE)
_HTML_LINK = re.compile(r"<link[^>]+href\s*=\s*['\"]([^'\"]+)['\"]", re.IGNORECASE)
_HTML_IMG = re.compile(r"<img[^>]+src\s*=\s*['\"]([^'\"]+)['\"]", re.IGNORECASE)
_HTML_ANCHOR = re.compile(r"<a\s[^>]*href\s*=\s*['\"]([^'\"]+)['\"]", re.IGNORECASE)


def extract_html_references(content: str) -> Iterator[RawReference]:
    """Script, stylesheet, image and internal anchor references."""
    for match in _HTML_SCRIPT.finditer(content):
        source = match.group(1)
        if source.startswith(_EXTERNAL_PREFIXES):
            continue
        yield RawReference(
            source=source, type=ReferenceType.CODE, line=_line_of(content, match.start()), is_local=True
        )

    for match in _HTML_LINK.finditer(content):
        source = match.group(1)
        if source.startswith(_EXTERNAL_PREFIXES):
            continue
        if extension_of(source) in (".css", ".scss"):
            ref_type = ReferenceType.STYLESHEET
        else:
            ref_type = reference_type_for(source, ReferenceType.ASSET)
        yield RawReference(source=source, type=ref_type, line=_line_of(content, match.start()), is_local=True)

    for match in _HTML_IMG.finditer(content):
        source = match.group(1)
        if source.startswith(_EXTERNAL_PREFIXES + ("data:",)):
            continue
        yield RawReference(
            source=source, type=ReferenceType.ASSET, line=_line_of(content, match.start()), is_local=True
        )

    for match in _HTML_ANCHOR.finditer(content):
        source = match.group(1)
        if source.startswith(_EXTERNAL_PREFIXES + ("mailto:", "tel:", "#", "javascript:")):
            continue
        source = source.split("#")[0]
        if not source:
            continue
        yield RawReference(
            source=source,
            type=reference_type_for(source, ReferenceType.DOCUMENT),
            line=_line_of(content, match.start()),
            is_local=True,
        )


# =============================================================================
# Vue / Svelte components
# =============================================================================

_COMPONENT_SCRIPT = re.compile(r"<script[^>]*>([\s\S]*?)</script>", re.IGNORECASE)
_COMPONENT_STYLE = re.compile(r"<style[^>]*>([\s\S]*?)</style>", re.IGNORECASE)
_COMPONENT_TEMPLATE = re.compile(r"<template[^>]*>([\s\S]*)</template>", re.IGNORECASE)


def _with_offset(refs: Iterator[RawReference], offset: int) -> Iterator[RawReference]:
    for ref in refs:
        if ref.line is not None:
            ref.line += offset
        yield ref


def _blank_blocks(content: str, pattern: re.Pattern) -> str:
    """Replace matched blocks by newlines only, keeping line numbers."""
    return pattern.sub(lambda m: "\n" * m.group(0).count("\n"), content)


def extract_component_references(content: str) -> Iterator[RawReference]:
    """Delegate script, style and markup sections with their line offsets."""
    for match in _COMPONENT_SCRIPT.finditer(content):
        offset = _line_of(content, match.start(1)) - 1
        yield from _with_offset(extract_script_references(match.group(1)), offset)

    for match in _COMPONENT_STYLE.finditer(content):
        offset = _line_of(content, match.start(1)) - 1
        yield from _with_offset(extract_stylesheet_references(match.group(1)), offset)

    template = _COMPONENT_TEMPLATE.search(content)
    if template:
        offset = _line_of(content, template.start(1)) - 1
        yield from _with_offset(extract_html_references(template.group(1)), offset)
    else:
        # Svelte markup lives at the top level next to script and style
        markup = _blank_blocks(_blank_blocks(content, _COMPONENT_SCRIPT), _COMPONENT_STYLE)
        yield from extract_html_references(markup)


def _extract_nothing(content: str) -> Iterator[RawReference]:
    return iter(())


_EXTRACTORS: dict[FileFormat, Extractor] = {
    FileFormat.SCRIPT: extract_script_references,
    FileFormat.PYTHON: extract_python_references,
    FileFormat.MARKDOWN: extract_markdown_references,
    FileFormat.STYLESHEET: extract_stylesheet_references,
    FileFormat.HTML: extract_html_references,
    FileFormat.COMPONENT: extract_component_references,
    FileFormat.TEXT: extract_generic_references,
    FileFormat.DATA: extract_generic_references,
    FileFormat.BINARY: _extract_nothing,
}

_missing = set(FileFormat) - set(_EXTRACTORS)
if _missing:
    raise RuntimeError(f"No extractor registered for formats: {sorted(f.value for f in _missing)}")


def extractor_for(file_format: FileFormat) -> Extractor:
    return _EXTRACTORS[file_format]


def extract_references(content: str, file_path: str) -> list[RawReference]:
    """Extract references from a file's content.

    Args:
        content: Raw file content
        file_path: Path used to pick the format

    Returns:
        References deduplicated by (type, source), first occurrence kept.
        Malformed content yields an empty or partial list.
    """
    file_format = classify_format(file_path)
    refs: list[RawReference] = []
    seen: set[tuple[str, str]] = set()

    if not content:
        return refs

    try:
        for ref in _EXTRACTORS[file_format](content):
            if not ref.source or ref.dedup_key in seen:
                continue
            seen.add(ref.dedup_key)
            refs.append(ref)
    except Exception as e:
        log.debug(f"Reference extraction stopped early for {file_path}: {e}")

    log.trace(f"{file_path}: {len(refs)} references ({file_format.value})")
    return refs
