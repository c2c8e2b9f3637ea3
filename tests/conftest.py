"""Shared pytest fixtures for ingestgraph tests."""

from __future__ import annotations

import itertools
import os
import tempfile

# Keep test runs out of the user's log directory
os.environ.setdefault("INGESTGRAPH_LOG_DIR", tempfile.mkdtemp(prefix="ingestgraph-logs-"))

import pytest

from fixtures.graph_store import FakeGraphStore


@pytest.fixture
def graph_store() -> FakeGraphStore:
    """Empty in-memory graph store."""
    return FakeGraphStore()


@pytest.fixture
def project_id() -> str:
    """Standard test project id."""
    return "test-project"


@pytest.fixture
def clock():
    """Deterministic timestamps, one second apart per call."""
    counter = itertools.count()

    def _now() -> str:
        return f"2024-01-01T00:00:{next(counter):02d}+00:00"

    return _now


@pytest.fixture
def config(tmp_path):
    """Config isolated from the environment."""
    from ingestgraph.config import Config

    return Config(
        data_dir=tmp_path,
        graph_uri="bolt://localhost:7687",
        merge_batch_size=500,
        min_similarity=0.7,
        mark_for_reembed=True,
        sweep_after_ingest=True,
    )
