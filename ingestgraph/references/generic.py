"""Loose reference extraction from arbitrary text.

Finds URLs and file-path-looking tokens in prose. Everything produced here
carries a confidence: 1.0 for URLs, 0.9 for path-shaped tokens, 0.6 for
bare filenames.
"""

import re
from typing import Iterator

from ingestgraph.models import RawReference, ReferenceType
from ingestgraph.references.formats import TYPE_BY_EXTENSION, reference_type_for

URL_CONFIDENCE = 1.0
PATH_CONFIDENCE = 0.9
FILENAME_CONFIDENCE = 0.6

_CONTEXT_MAX = 200

URL_RE = re.compile(r"https?://[^\s<>\"'`)\]]+")

_EXTENSIONS = "|".join(sorted((ext[1:] for ext in TYPE_BY_EXTENSION), key=len, reverse=True))

# At least one directory separator and a file extension
PATH_RE = re.compile(
    r"(?<![\w/.@-])((?:\.{1,2}/)?(?:[\w@.-]+/)+[\w.-]+\.[A-Za-z0-9]{1,8})(?![\w/])"
)

# A single filename with a known extension
FILENAME_RE = re.compile(rf"(?<![\w/.@-])([\w-]+(?:\.[\w-]+)*\.(?:{_EXTENSIONS}))(?![\w/]|\.\w)", re.IGNORECASE)

# Lines that read like code rather than prose
CODE_LINE_RE = re.compile(
    r"^\s*(?:import\s|from\s+\S+\s+import\s|export\s|const\s|let\s|var\s|def\s|class\s|"
    r"function\s|return\s|#include\b|package\s|using\s|@import\s)"
    r"|\brequire\s*\("
)


def _blank(text: str, start: int, end: int) -> str:
    return text[:start] + " " * (end - start) + text[end:]


def _clean_url(url: str) -> str:
    return url.rstrip(".,;:!?")


def extract_generic_references(content: str) -> Iterator[RawReference]:
    """Yield URL and loose file references found in free text."""
    for index, line in enumerate(content.splitlines(), start=1):
        if not line.strip() or CODE_LINE_RE.search(line):
            continue
        context = line.strip()[:_CONTEXT_MAX]
        remaining = line

        for match in URL_RE.finditer(line):
            url = _clean_url(match.group(0))
            remaining = _blank(remaining, match.start(), match.end())
            yield RawReference(
                source=url,
                type=ReferenceType.URL,
                line=index,
                is_local=False,
                confidence=URL_CONFIDENCE,
                context=context,
                url=url,
            )

        for match in PATH_RE.finditer(remaining):
            path = match.group(1).rstrip(".")
            remaining = _blank(remaining, match.start(1), match.end(1))
            yield RawReference(
                source=path,
                type=reference_type_for(path, ReferenceType.DOCUMENT),
                line=index,
                is_local=True,
                confidence=PATH_CONFIDENCE,
                context=context,
            )

        for match in FILENAME_RE.finditer(remaining):
            name = match.group(1)
            yield RawReference(
                source=name,
                type=reference_type_for(name, ReferenceType.DOCUMENT),
                line=index,
                is_local=True,
                confidence=FILENAME_CONFIDENCE,
                context=context,
            )
