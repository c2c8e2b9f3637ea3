"""ingestgraph - Incremental code and document knowledge graph ingestion.

Turns parsed source files into a property graph with:
- Deterministic node ids that survive re-ingestion
- Update-in-place MERGE with an embedding lifecycle
- Reference extraction with exact, fuzzy and deferred resolution
- Memgraph / Neo4j over Bolt as the store
"""

__version__ = "0.1.0"

from ingestgraph.config import Config
from ingestgraph.db.merge import GraphMergeEngine, MergeStats
from ingestgraph.identity import IdentityAssigner
from ingestgraph.ingestion import IngestionReport, ProjectIngestor, ProjectLocks
from ingestgraph.models import GraphBatch, RawReference, ScopeRecord, SourceFile

__all__ = [
    "Config",
    "GraphBatch",
    "GraphMergeEngine",
    "IdentityAssigner",
    "IngestionReport",
    "MergeStats",
    "ProjectIngestor",
    "ProjectLocks",
    "RawReference",
    "ScopeRecord",
    "SourceFile",
]
