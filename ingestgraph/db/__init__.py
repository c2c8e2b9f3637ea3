"""Graph store access for ingestgraph.

Module Structure:
- graph_protocol.py: QueryResult and the store protocol
- bolt_store.py: Memgraph / Neo4j store over the Bolt driver
- store_factory.py: Store creation from Config
- merge.py: GraphMergeEngine, the update-in-place batch merge

Example:
    from ingestgraph.config import Config
    from ingestgraph.db import create_graph_store

    store = create_graph_store(Config(), ready_timeout=30)
    print(store.health_check())
"""

from ingestgraph.db.bolt_store import BoltGraphStore
from ingestgraph.db.graph_protocol import BaseGraphStore, GraphStore, QueryResult
from ingestgraph.db.merge import GraphMergeEngine, MergeStats
from ingestgraph.db.store_factory import create_graph_store

__all__ = [
    "BaseGraphStore",
    "BoltGraphStore",
    "GraphMergeEngine",
    "GraphStore",
    "MergeStats",
    "QueryResult",
    "create_graph_store",
]
