"""Graph store protocol for ingestgraph.

Minimal client abstraction the ingestion core writes through: run a
parameterized Cypher statement, close the connection.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable


@dataclass
class QueryResult:
    """Result of one statement.

    Attributes:
        result_set: List of result rows (each row is a list of values)
        header: Column names if available
        stats: Query statistics reported by the store
    """
    result_set: list[list[Any]]
    header: list[str] | None = None
    stats: dict[str, Any] | None = None

    def __iter__(self):
        """Allow iteration over result set."""
        return iter(self.result_set)

    def __len__(self):
        """Return number of result rows."""
        return len(self.result_set)

    def __bool__(self):
        """Check if result has any rows."""
        return len(self.result_set) > 0

    def records(self) -> list[dict[str, Any]]:
        """Rows as dicts keyed by column name."""
        header = self.header or []
        return [dict(zip(header, row)) for row in self.result_set]

    def single_value(self, default: Any = None) -> Any:
        """First column of the first row."""
        if not self.result_set or not self.result_set[0]:
            return default
        return self.result_set[0][0]


@runtime_checkable
class GraphStore(Protocol):
    """Protocol for graph stores the ingestion core writes to."""

    def run(self, query: str, params: dict[str, Any] | None = None) -> QueryResult:
        """Execute one Cypher statement in its own transaction.

        Args:
            query: Cypher query string
            params: Optional query parameters (use $param syntax)

        Returns:
            QueryResult with result_set, header, and stats
        """
        ...

    def close(self) -> None:
        """Close the connection and release resources."""
        ...


class BaseGraphStore(ABC):
    """Abstract base class for graph stores with common functionality."""

    @property
    @abstractmethod
    def store_name(self) -> str:
        """Return the store name (e.g., 'memgraph', 'neo4j')."""

    @abstractmethod
    def run(self, query: str, params: dict[str, Any] | None = None) -> QueryResult:
        """Execute a Cypher statement."""

    @abstractmethod
    def health_check(self) -> bool:
        """Check store health."""

    @abstractmethod
    def close(self) -> None:
        """Close connection."""

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
