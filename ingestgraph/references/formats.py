"""File format classification and the extension taxonomy.

``classify_format`` is a pure function from path to a closed set of
formats. Each format has exactly one extractor (see ``extractor.py``).
"""

from enum import Enum
from pathlib import PurePosixPath

from ingestgraph import schema
from ingestgraph.models import ReferenceType


class FileFormat(str, Enum):
    SCRIPT = "script"          # TS/JS family
    PYTHON = "python"
    MARKDOWN = "markdown"
    STYLESHEET = "stylesheet"
    HTML = "html"
    COMPONENT = "component"    # Vue/Svelte single-file components
    TEXT = "text"
    DATA = "data"
    BINARY = "binary"


_FORMAT_BY_EXTENSION: dict[str, FileFormat] = {
    **dict.fromkeys((".ts", ".tsx", ".js", ".jsx", ".mjs", ".cjs"), FileFormat.SCRIPT),
    **dict.fromkeys((".py", ".pyw", ".pyi"), FileFormat.PYTHON),
    **dict.fromkeys((".md", ".mdx", ".markdown"), FileFormat.MARKDOWN),
    **dict.fromkeys((".css", ".scss", ".sass", ".less"), FileFormat.STYLESHEET),
    **dict.fromkeys((".html", ".htm"), FileFormat.HTML),
    **dict.fromkeys((".vue", ".svelte"), FileFormat.COMPONENT),
    **dict.fromkeys((".txt", ".rst", ".log", ".go", ".rs", ".rb", ".php"), FileFormat.TEXT),
    **dict.fromkeys((".json", ".yaml", ".yml", ".xml", ".toml", ".ini", ".env", ".csv"), FileFormat.DATA),
}

TYPE_BY_EXTENSION: dict[str, ReferenceType] = {
    **dict.fromkeys(
        (".ts", ".tsx", ".js", ".jsx", ".mjs", ".cjs", ".py", ".pyw",
         ".vue", ".svelte", ".go", ".rs", ".rb", ".php"),
        ReferenceType.CODE,
    ),
    **dict.fromkeys(
        (".png", ".jpg", ".jpeg", ".gif", ".svg", ".webp", ".ico", ".bmp",
         ".woff", ".woff2", ".ttf", ".eot", ".otf",
         ".mp3", ".wav", ".ogg", ".mp4", ".webm", ".mov",
         ".glb", ".gltf", ".obj", ".fbx", ".zip"),
        ReferenceType.ASSET,
    ),
    **dict.fromkeys(
        (".pdf", ".md", ".mdx", ".markdown", ".doc", ".docx", ".txt", ".rtf"),
        ReferenceType.DOCUMENT,
    ),
    **dict.fromkeys((".css", ".scss", ".sass", ".less"), ReferenceType.STYLESHEET),
    **dict.fromkeys((".json", ".yaml", ".yml", ".xml", ".toml", ".ini", ".env"), ReferenceType.DATA),
}

_RELATION_BY_TYPE: dict[ReferenceType, str] = {
    ReferenceType.ASSET: schema.REL_REFERENCES_ASSET,
    ReferenceType.DOCUMENT: schema.REL_REFERENCES_DOC,
    ReferenceType.STYLESHEET: schema.REL_REFERENCES_STYLE,
    ReferenceType.DATA: schema.REL_REFERENCES_DATA,
}

_BINARY_EXTENSIONS = frozenset(
    ext for ext, ref_type in TYPE_BY_EXTENSION.items() if ref_type == ReferenceType.ASSET
) | {".pdf", ".doc", ".docx"}


def extension_of(path: str) -> str:
    return PurePosixPath(path.replace("\\", "/")).suffix.lower()


def classify_format(path: str) -> FileFormat:
    """Pick the format of a file from its extension."""
    ext = extension_of(path)
    if ext in _FORMAT_BY_EXTENSION:
        return _FORMAT_BY_EXTENSION[ext]
    if ext in _BINARY_EXTENSIONS:
        return FileFormat.BINARY
    return FileFormat.TEXT


def reference_type_for(path: str, default: ReferenceType = ReferenceType.CODE) -> ReferenceType:
    return TYPE_BY_EXTENSION.get(extension_of(path), default)


def relation_type_for(path: str, default: ReferenceType = ReferenceType.CODE) -> str:
    """Relation type for an edge pointing at a file with this extension.

    ``default`` is the reference type assumed when the extension is unknown.
    """
    return _RELATION_BY_TYPE.get(reference_type_for(path, default), schema.REL_CONSUMES)


def is_local_path(source: str) -> bool:
    """Relative or absolute file-system specifier (not a bare package name)."""
    return source.startswith(("./", "../", "/", ".")) and not source.startswith("//")
