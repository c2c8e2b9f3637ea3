"""Bolt graph store for ingestgraph.

Wraps the neo4j Python driver. Works against Memgraph and Neo4j, both of
which speak Bolt and accept the parameterized MERGE/UNWIND statements the
merge engine issues.
"""

from typing import Any

from neo4j import GraphDatabase

from ingestgraph.db.graph_protocol import BaseGraphStore, QueryResult
from ingestgraph.errors import StoreError
from ingestgraph.log_config import get_logger

log = get_logger("db.bolt")


class BoltGraphStore(BaseGraphStore):
    """Graph store over the Bolt protocol.

    Every ``run`` call executes in its own auto-commit session, so a
    statement is the unit of commit and of retry.
    """

    def __init__(
        self,
        uri: str = "bolt://localhost:7687",
        username: str = "",
        password: str = "",
        database: str = "",
        connection_timeout: float = 30.0,
        verify: bool = True,
    ):
        """Initialize Bolt connection.

        Args:
            uri: Bolt URI
            username: Optional username for authentication
            password: Optional password for authentication
            database: Database name (empty for the server default)
            connection_timeout: Connection timeout in seconds (default: 30.0)
            verify: Verify connectivity before returning
        """
        self._uri = uri
        self._database = database or None

        log.info(f"Connecting to graph store at {uri} (auth={'yes' if password else 'no'})")

        if username or password:
            self._driver = GraphDatabase.driver(
                uri,
                auth=(username, password),
                connection_timeout=connection_timeout,
            )
        else:
            self._driver = GraphDatabase.driver(uri, connection_timeout=connection_timeout)

        if verify:
            self._driver.verify_connectivity()
            log.info(f"Graph store connected: {uri}")

    @property
    def store_name(self) -> str:
        return "bolt"

    def run(self, query: str, params: dict[str, Any] | None = None) -> QueryResult:
        """Execute a Cypher statement.

        Raises:
            StoreError: When the driver reports a failure
        """
        log.trace(f"Bolt query: {query.strip()[:100]}...")

        try:
            with self._driver.session(database=self._database) as session:
                result = session.run(query, params or {})
                records = list(result)
                header = list(result.keys())
                summary = result.consume()

                result_set = [list(record.values()) for record in records]

                counters = summary.counters
                stats = {
                    "nodes_created": counters.nodes_created,
                    "nodes_deleted": counters.nodes_deleted,
                    "relationships_created": counters.relationships_created,
                    "relationships_deleted": counters.relationships_deleted,
                    "properties_set": counters.properties_set,
                }
                return QueryResult(result_set=result_set, header=header, stats=stats)

        except Exception as e:
            log.error(f"Bolt query failed: {e}")
            log.debug(f"Query was: {query}")
            raise StoreError(str(e), query=query) from e

    def health_check(self) -> bool:
        try:
            with self._driver.session(database=self._database) as session:
                session.run("RETURN 1").consume()
            return True
        except Exception as e:
            log.warning(f"Graph store health check failed: {e}")
            return False

    def close(self) -> None:
        """Close the driver."""
        log.info("Closing graph store connection")
        if self._driver:
            self._driver.close()
