"""Configuration for ingestgraph.

Simple dataclass-based configuration with sensible defaults.
Override via environment variables with INGESTGRAPH_ prefix.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

from ingestgraph.log_config import get_logger

log = get_logger("config")

# Look for .env in the working directory and the package parent
_pkg_dir = Path(__file__).parent.parent
_env_loaded = load_dotenv(Path.cwd() / ".env") or load_dotenv(_pkg_dir / ".env")
log.debug(f"Loaded .env file: {_env_loaded}")


def _get_env(key: str, default: str) -> str:
    """Get environment variable with INGESTGRAPH_ prefix."""
    return os.getenv(f"INGESTGRAPH_{key}", default)


def _get_env_bool(key: str, default: bool) -> bool:
    """Get boolean environment variable."""
    val = os.getenv(f"INGESTGRAPH_{key}")
    if val is None:
        return default
    return val.lower() in ("true", "1", "yes")


@dataclass
class Config:
    """ingestgraph configuration.

    Attributes:
        data_dir: Directory for local state (default: ~/.ingestgraph)
        graph_uri: Full Bolt URI; overrides host/port when set
        graph_host: Bolt host (default: localhost)
        graph_port: Bolt port (default: 7687)
        graph_username: Optional username
        graph_password: Optional password
        graph_database: Database name for Neo4j multi-database servers (empty for default)
        connection_timeout: Driver connection timeout in seconds
        merge_batch_size: Rows per write transaction (default: 500)
        min_similarity: Acceptance threshold for fuzzy matches (default: 0.7)
        mark_for_reembed: Move changed content nodes to embedding-pending on merge
        sweep_after_ingest: Run the pending and mention sweeps after each ingestion
    """

    data_dir: Path = field(
        default_factory=lambda: Path(_get_env("DATA_DIR", str(Path.home() / ".ingestgraph")))
    )

    graph_uri: str = field(default_factory=lambda: _get_env("GRAPH_URI", ""))
    graph_host: str = field(default_factory=lambda: _get_env("GRAPH_HOST", "localhost"))
    graph_port: int = field(default_factory=lambda: int(_get_env("GRAPH_PORT", "7687")))
    graph_username: str = field(default_factory=lambda: _get_env("GRAPH_USERNAME", ""))
    graph_password: str = field(default_factory=lambda: _get_env("GRAPH_PASSWORD", ""))
    graph_database: str = field(default_factory=lambda: _get_env("GRAPH_DATABASE", ""))
    connection_timeout: float = field(
        default_factory=lambda: float(_get_env("CONNECTION_TIMEOUT", "30"))
    )

    merge_batch_size: int = field(default_factory=lambda: int(_get_env("MERGE_BATCH_SIZE", "500")))
    min_similarity: float = field(default_factory=lambda: float(_get_env("MIN_SIMILARITY", "0.7")))
    mark_for_reembed: bool = field(default_factory=lambda: _get_env_bool("MARK_FOR_REEMBED", True))
    sweep_after_ingest: bool = field(
        default_factory=lambda: _get_env_bool("SWEEP_AFTER_INGEST", True)
    )

    def __post_init__(self):
        """Normalize paths and validate numeric settings."""
        if isinstance(self.data_dir, str):
            self.data_dir = Path(self.data_dir)

        if self.merge_batch_size < 1:
            raise ValueError(f"merge_batch_size must be positive, got {self.merge_batch_size}")
        if not 0.0 <= self.min_similarity <= 1.0:
            raise ValueError(f"min_similarity must be within [0, 1], got {self.min_similarity}")

        log.debug(f"data_dir={self.data_dir}")
        log.debug(f"bolt_uri={self.bolt_uri} (auth={'yes' if self.graph_password else 'no'})")
        log.debug(f"merge_batch_size={self.merge_batch_size}, min_similarity={self.min_similarity}")

    @property
    def bolt_uri(self) -> str:
        """Bolt URI built from host and port unless graph_uri is set."""
        return self.graph_uri or f"bolt://{self.graph_host}:{self.graph_port}"
