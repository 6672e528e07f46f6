# shipline/models/store.py
"""
Run store protocol definition.

Defines the abstract interface that both InMemoryRunStore and SQLiteRunStore implement.
"""

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from shipline.models.runs import RunRecord


class RunStore(ABC):
    """
    Abstract base class for run storage implementations.

    Both in-memory and persistent (SQLite) stores implement this protocol.
    """

    @abstractmethod
    async def add(self, record: "RunRecord") -> None:
        """
        Add a run record to the store.

        Raises:
            ValueError: If run_id already exists
        """
        pass

    @abstractmethod
    async def get(self, run_id: str) -> "RunRecord | None":
        """Get a run record by ID (None if not found)."""
        pass

    @abstractmethod
    async def list_all(self, pipeline: str | None = None) -> "list[RunRecord]":
        """
        List run records, newest first.

        Args:
            pipeline: Only runs of this pipeline (None = all)
        """
        pass

    @abstractmethod
    async def update(self, run_id: str, **kwargs) -> None:
        """
        Update fields on an existing run record.

        Raises:
            ValueError: If run_id doesn't exist or a field name is unknown
        """
        pass

    @abstractmethod
    async def get_next_queued(self) -> "RunRecord | None":
        """Get the next queued run (FIFO - oldest first)."""
        pass

    @abstractmethod
    async def claim(self, run_id: str) -> bool:
        """
        Atomically move a run from QUEUED to RUNNING.

        Returns:
            True if this caller took the run, False if it was not queued
        """
        pass

    @abstractmethod
    async def get_last_successful(self, pipeline: str) -> "RunRecord | None":
        """Get the most recent succeeded run of a pipeline (last-known-good)."""
        pass

    async def close(self) -> None:
        """Release resources (no-op by default)."""
        return None
