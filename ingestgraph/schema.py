"""Stable schema surface of the ingestion graph.

Node labels, per-label unique keys, lifecycle and content-hash property
names. Other components read these names directly; renaming any of them
needs a data migration.
"""

from typing import Any, Iterable

from ingestgraph.hashing import short_hash

# Carried by every merged node; uuid lookups match on it
LABEL_BASE = "GraphEntity"

# Node labels
LABEL_PROJECT = "Project"
LABEL_DIRECTORY = "Directory"
LABEL_FILE = "File"
LABEL_SCOPE = "Scope"
LABEL_EXTERNAL_LIBRARY = "ExternalLibrary"
LABEL_EXTERNAL_URL = "ExternalURL"
LABEL_MARKDOWN_DOCUMENT = "MarkdownDocument"
LABEL_MARKDOWN_SECTION = "MarkdownSection"
LABEL_CODE_BLOCK = "CodeBlock"
LABEL_WEB_DOCUMENT = "WebDocument"
LABEL_STYLESHEET = "Stylesheet"
LABEL_DATA_FILE = "DataFile"
LABEL_GENERIC_FILE = "GenericFile"
LABEL_VUE_SFC = "VueSFC"
LABEL_SVELTE_COMPONENT = "SvelteComponent"
LABEL_MEDIA_FILE = "MediaFile"
LABEL_IMAGE_FILE = "ImageFile"
LABEL_THREED_FILE = "ThreeDFile"
LABEL_DOCUMENT_FILE = "DocumentFile"
LABEL_PDF_DOCUMENT = "PDFDocument"
LABEL_WORD_DOCUMENT = "WordDocument"
LABEL_SPREADSHEET_DOCUMENT = "SpreadsheetDocument"
LABEL_WEB_PAGE = "WebPage"

# Deferred-reference side tables
LABEL_PENDING_REFERENCE = "PendingReference"
LABEL_PENDING_MENTION = "PendingMention"

# Relationship types
REL_BELONGS_TO = "BELONGS_TO"
REL_DEFINED_IN = "DEFINED_IN"
REL_IN_DIRECTORY = "IN_DIRECTORY"
REL_PARENT_OF = "PARENT_OF"
REL_HAS_PARENT = "HAS_PARENT"
REL_CONSUMES = "CONSUMES"
REL_INHERITS_FROM = "INHERITS_FROM"
REL_IMPLEMENTS = "IMPLEMENTS"
REL_DECORATED_BY = "DECORATED_BY"
REL_USES_LIBRARY = "USES_LIBRARY"
REL_REFERENCES_ASSET = "REFERENCES_ASSET"
REL_REFERENCES_DOC = "REFERENCES_DOC"
REL_REFERENCES_STYLE = "REFERENCES_STYLE"
REL_REFERENCES_DATA = "REFERENCES_DATA"
REL_MENTIONS_FILE = "MENTIONS_FILE"
REL_LINKS_TO = "LINKS_TO"
REL_HAS_SECTION = "HAS_SECTION"
REL_CHILD_OF = "CHILD_OF"
REL_HAS_CODE_BLOCK = "HAS_CODE_BLOCK"

# Lifecycle and bookkeeping properties
PROP_STATE = "_state"
PROP_STATE_CHANGED_AT = "_stateChangedAt"
PROP_CREATED_AT = "_createdAt"
PROP_UPDATED_AT = "_updatedAt"
PROP_PARSED_AT = "_parsedAt"
PROP_LINKED_AT = "_linkedAt"
PROP_EMBEDDED_AT = "_embeddedAt"
PROP_SCHEMA_VERSION = "_schemaVersion"
PROP_CONTENT_HASH = "contentHash"

# Graph-side node types whose properties hold embeddable text
CONTENT_NODE_LABELS = frozenset({
    LABEL_SCOPE,
    LABEL_MEDIA_FILE,
    LABEL_IMAGE_FILE,
    LABEL_THREED_FILE,
    LABEL_DOCUMENT_FILE,
    LABEL_MARKDOWN_SECTION,
    LABEL_CODE_BLOCK,
    LABEL_MARKDOWN_DOCUMENT,
    LABEL_SPREADSHEET_DOCUMENT,
    LABEL_PDF_DOCUMENT,
    LABEL_WORD_DOCUMENT,
    LABEL_WEB_PAGE,
    LABEL_VUE_SFC,
    LABEL_SVELTE_COMPONENT,
    LABEL_STYLESHEET,
    LABEL_DATA_FILE,
    LABEL_GENERIC_FILE,
    LABEL_WEB_DOCUMENT,
})

# File-like labels that are keyed by uuid even when combined with File
_UUID_KEYED_FILE_LABELS = frozenset({
    LABEL_MEDIA_FILE,
    LABEL_IMAGE_FILE,
    LABEL_THREED_FILE,
    LABEL_DOCUMENT_FILE,
})

# Properties that never take part in the schema version stamp
_SCHEMA_EXCLUDED_KEYS = frozenset({
    "uuid",
    "projectId",
    "file",
    "path",
    "sourcePath",
    "startLine",
    "endLine",
    PROP_CONTENT_HASH,
    PROP_SCHEMA_VERSION,
    PROP_STATE,
    PROP_STATE_CHANGED_AT,
    PROP_CREATED_AT,
    PROP_UPDATED_AT,
    PROP_PARSED_AT,
    PROP_LINKED_AT,
    PROP_EMBEDDED_AT,
})


def unique_keys_for(labels: Iterable[str]) -> tuple[str, ...]:
    """Return the properties a node with these labels is merged on.

    Paths are project-relative, so files and directories are keyed by
    project and path together.
    """
    label_set = set(labels)
    if LABEL_PROJECT in label_set:
        return ("projectId",)
    if label_set & {LABEL_FILE, LABEL_DIRECTORY} and not label_set & _UUID_KEYED_FILE_LABELS:
        return ("projectId", "path")
    return ("uuid",)


def is_content_node(labels: Iterable[str]) -> bool:
    return any(label in CONTENT_NODE_LABELS for label in labels)


def content_label(labels: Iterable[str]) -> str | None:
    """Most specific content label: the first content label in label order."""
    for label in labels:
        if label in CONTENT_NODE_LABELS:
            return label
    return None


def compute_schema_version(labels: Iterable[str], properties: dict[str, Any]) -> str | None:
    """Hash of the content label and the sorted meaningful property keys.

    Keys whose value is None are left out, since merging them removes the
    property.

    Returns None for nodes that are not content-bearing.
    """
    label = content_label(labels)
    if label is None:
        return None
    keys = sorted(
        k for k, v in properties.items()
        if v is not None and k not in _SCHEMA_EXCLUDED_KEYS and not k.startswith("_")
    )
    return short_hash(f"{label}:{','.join(keys)}", 12)
