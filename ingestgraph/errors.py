"""Exceptions raised by ingestgraph."""

from typing import Any


class IngestGraphError(Exception):
    """Base class for ingestgraph errors."""


class StoreError(IngestGraphError):
    """A statement failed in the graph store."""

    def __init__(self, message: str, query: str = ""):
        super().__init__(message)
        self.query = query


class MergeBatchError(IngestGraphError):
    """A merge group failed to commit.

    Groups committed before the failure stay committed; ``stats`` holds what
    was gathered up to that point.
    """

    def __init__(self, group: str, stats: Any, cause: Exception):
        super().__init__(f"Merge group {group} failed: {cause}")
        self.group = group
        self.stats = stats
        self.cause = cause


class ProjectBusyError(IngestGraphError):
    """Another ingestion holds the lock for this project."""

    def __init__(self, project_id: str):
        super().__init__(f"Ingestion already running for project {project_id}")
        self.project_id = project_id
