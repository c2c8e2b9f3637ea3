"""Graph store factory.

Builds the store from ``Config``. Environment overrides:
- INGESTGRAPH_GRAPH_URI / INGESTGRAPH_GRAPH_HOST / INGESTGRAPH_GRAPH_PORT
- INGESTGRAPH_GRAPH_USERNAME / INGESTGRAPH_GRAPH_PASSWORD
- INGESTGRAPH_GRAPH_DATABASE
"""

import time

from ingestgraph.config import Config
from ingestgraph.db.bolt_store import BoltGraphStore
from ingestgraph.db.graph_protocol import GraphStore
from ingestgraph.errors import StoreError
from ingestgraph.log_config import get_logger

log = get_logger("db.factory")


def create_graph_store(
    config: Config | None = None,
    ready_timeout: float = 0.0,
    ready_interval: float = 0.5,
) -> GraphStore:
    """Create a connected graph store.

    Args:
        config: Configuration (defaults to ``Config()`` from the environment)
        ready_timeout: Seconds to keep retrying while the server starts up
        ready_interval: Delay between connection attempts

    Returns:
        Connected GraphStore

    Raises:
        StoreError: If the store cannot be reached within ready_timeout
    """
    config = config or Config()
    deadline = time.monotonic() + ready_timeout
    attempt = 0

    while True:
        attempt += 1
        try:
            return BoltGraphStore(
                uri=config.bolt_uri,
                username=config.graph_username,
                password=config.graph_password,
                database=config.graph_database,
                connection_timeout=config.connection_timeout,
            )
        except Exception as e:
            if time.monotonic() >= deadline:
                log.error(f"Graph store unavailable at {config.bolt_uri} after {attempt} attempt(s): {e}")
                raise StoreError(f"Graph store unavailable at {config.bolt_uri}: {e}") from e
            log.debug(f"Graph store not ready (attempt {attempt}): {e}")
            time.sleep(ready_interval)
